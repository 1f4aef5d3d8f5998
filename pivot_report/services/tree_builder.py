"""
Tree building service: groups flat rows into a hierarchical rollup.

Given flat rows and an ordered dimension list, each level groups the current
row set by one dimension and emits one TreeNode per distinct value with the
metrics of its full row group. Parent rollups are computed from the rows, not
by summing children, so derived ratios stay correct at every level.

Key Format:
    key = parent_key + '::' + value      (root: key = value)
    depth = number of '::' separators in key

A missing dimension value is grouped under its own node, displayed as
"Unknown" and encoded in keys with MISSING_KEY_TOKEN. A real value "Unknown"
therefore gets a separate node with a different key.

Build Modes:
- eager: every level is materialized (children lists all the way down)
- lazy: roots carry their materialized children; deeper levels are left
  unfetched (children is None) for the expansion reconciler to fill in

Leaf nodes (depth == len(dimensions) - 1) always have hasChildren False and
children None.
"""

from collections import OrderedDict
from typing import (
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
)

from pivot_report.models.schemas import TableFilter, TreeNode


KEY_SEPARATOR = '::'

# NUL never appears in PostgreSQL text, so it cannot collide with real data
MISSING_KEY_TOKEN = '\x00'

UNKNOWN_LABEL = 'Unknown'


class DimensionalRow(Protocol):
    def dimension_value(self, dimension: str) -> Optional[str]: ...


RowT = TypeVar('RowT', bound=DimensionalRow)
MetricsFn = Callable[[Sequence[RowT]], Dict[str, float]]
AttributeFn = Callable[[str, Optional[str]], str]


# =============================================================================
# Key Helpers
# =============================================================================


def encode_key_part(value: Optional[str]) -> str:
    return MISSING_KEY_TOKEN if value is None else value


def decode_key_part(part: str) -> Optional[str]:
    return None if part == MISSING_KEY_TOKEN else part


def make_key(parent_key: Optional[str], value: Optional[str]) -> str:
    """Mint a node key from its parent's key and its own dimension value."""
    part = encode_key_part(value)
    return f"{parent_key}{KEY_SEPARATOR}{part}" if parent_key else part


def key_depth(key: str) -> int:
    return key.count(KEY_SEPARATOR)


def split_key(key: str) -> List[Optional[str]]:
    """Dimension values along a key's path, with missing values as None."""
    return [decode_key_part(part) for part in key.split(KEY_SEPARATOR)]


def parse_key_to_parent_filters(
    key: str,
    dimensions: Sequence[str],
) -> Dict[str, Optional[str]]:
    """
    Map a node key to {dimension: value} for the node and its ancestors.

    Key parts map to dimensions by position; parts beyond the dimension list
    are ignored.

    Example:
        >>> parse_key_to_parent_filters('NO::Flex Repair', ['country', 'product'])
        {'country': 'NO', 'product': 'Flex Repair'}
    """
    return {
        dimension: value
        for dimension, value in zip(dimensions, split_key(key))
    }


def group_keys_by_depth(keys: Sequence[str]) -> Dict[int, List[str]]:
    """Group keys by depth, ascending, preserving input order within a depth."""
    by_depth: Dict[int, List[str]] = {}
    for key in keys:
        by_depth.setdefault(key_depth(key), []).append(key)
    return OrderedDict(sorted(by_depth.items()))


# =============================================================================
# Attribute Formatting
# =============================================================================


def title_case(text: str) -> str:
    """Capitalize the first letter of each word, leaving the rest untouched."""
    return ' '.join(word[:1].upper() + word[1:] for word in text.split(' '))


def format_attribute(dimension: str, value: Optional[str]) -> str:
    """Display label for a dimension value (sales dashboard)."""
    return UNKNOWN_LABEL if value is None else value


def format_marketing_attribute(dimension: str, value: Optional[str]) -> str:
    """Display label for an ad-spend dimension value."""
    if value is None:
        return UNKNOWN_LABEL
    if dimension == 'classifiedCountry':
        return value.upper()
    if dimension == 'date':
        return value
    return title_case(value)


# =============================================================================
# Building
# =============================================================================


def _group_rows(rows: Sequence[RowT], dimension: str) -> Dict[Optional[str], List[RowT]]:
    groups: Dict[Optional[str], List[RowT]] = OrderedDict()
    for row in rows:
        groups.setdefault(row.dimension_value(dimension), []).append(row)
    return groups


def _build_nodes(
    rows: Sequence[RowT],
    dimensions: Sequence[str],
    depth: int,
    parent_key: Optional[str],
    metrics_fn: MetricsFn,
    attribute_fn: AttributeFn,
    materialize_depth: int,
) -> List[TreeNode]:
    """Nodes at `depth`; children are built while depth < materialize_depth."""
    if depth >= len(dimensions) or not rows:
        return []

    dimension = dimensions[depth]
    is_leaf = depth == len(dimensions) - 1
    nodes = []

    for value, group in _group_rows(rows, dimension).items():
        key = make_key(parent_key, value)
        children = None
        if not is_leaf and depth < materialize_depth:
            children = _build_nodes(
                group, dimensions, depth + 1, key,
                metrics_fn, attribute_fn, materialize_depth,
            )
        nodes.append(TreeNode(
            key=key,
            attribute=attribute_fn(dimension, value),
            depth=depth,
            hasChildren=not is_leaf,
            children=children,
            metrics=metrics_fn(group),
        ))

    return nodes


def build_tree(
    rows: Sequence[RowT],
    dimensions: Sequence[str],
    metrics_fn: MetricsFn,
    lazy: bool = False,
    attribute_fn: AttributeFn = format_attribute,
) -> List[TreeNode]:
    """
    Build root-level TreeNodes from flat rows.

    Args:
        rows: Flat rows exposing dimension_value().
        dimensions: Ordered dimension list.
        metrics_fn: Reduces a row group to a metrics record.
        lazy: Materialize only the roots and their children.
        attribute_fn: Display label for (dimension, value).

    Returns:
        Root nodes in first-seen order (unsorted). Empty rows or an empty
        dimension list yield [].
    """
    if not rows or not dimensions:
        return []
    materialize_depth = 1 if lazy else len(dimensions)
    return _build_nodes(rows, dimensions, 0, None, metrics_fn, attribute_fn, materialize_depth)


def filter_rows(
    rows: Sequence[RowT],
    parent_filters: Mapping[str, Optional[str]],
    filters: Sequence[TableFilter] = (),
) -> List[RowT]:
    """
    Rows whose dimension values equal every parent filter (None matches
    missing) and that pass every table filter.
    """
    return [
        row for row in rows
        if all(row.dimension_value(dim) == value for dim, value in parent_filters.items())
        and all(f.matches(row.dimension_value(f.field)) for f in filters)
    ]


def build_level(
    rows: Sequence[RowT],
    dimensions: Sequence[str],
    depth: int,
    parent_filters: Mapping[str, Optional[str]],
    metrics_fn: MetricsFn,
    attribute_fn: AttributeFn = format_attribute,
    filters: Sequence[TableFilter] = (),
) -> List[TreeNode]:
    """
    Build the single level at `depth` under the node selected by parent_filters.

    This is the child fetch behind expand/restore: returned nodes carry keys
    prefixed with the parent's key and leave their own children unfetched.
    Table filters narrow the rows before grouping, so every level (and every
    rollup) reflects the same filtered row set.
    """
    if depth >= len(dimensions):
        return []
    ancestors = dimensions[:depth]
    parent_key = None
    for dimension in ancestors:
        parent_key = make_key(parent_key, parent_filters.get(dimension))
    scoped = filter_rows(rows, {dim: parent_filters.get(dim) for dim in ancestors}, filters)
    return _build_nodes(scoped, dimensions, depth, parent_key, metrics_fn, attribute_fn, depth)


def update_has_children(nodes: Sequence[TreeNode], dimension_count: int) -> List[TreeNode]:
    """
    Recompute hasChildren after the dimension list changed.

    Returns new nodes; materialized children are updated recursively.
    """
    updated = []
    for node in nodes:
        changes = {'hasChildren': node.depth < dimension_count - 1}
        if node.children:
            changes['children'] = update_has_children(node.children, dimension_count)
        updated.append(node.model_copy(update=changes))
    return updated


__all__ = [
    'KEY_SEPARATOR',
    'MISSING_KEY_TOKEN',
    'UNKNOWN_LABEL',
    'make_key',
    'key_depth',
    'split_key',
    'parse_key_to_parent_filters',
    'group_keys_by_depth',
    'title_case',
    'format_attribute',
    'format_marketing_attribute',
    'filter_rows',
    'build_tree',
    'build_level',
    'update_has_children',
]
