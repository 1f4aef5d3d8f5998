"""
Tree sorting service.

Sorts a tree level by one metric and recurses into every materialized
children list with the same comparator, so sort order is uniform at all
depths. Levels whose dimension is `date` ignore the requested metric and are
always ordered most recent first.

Sorting is stable and returns new node objects; input nodes are untouched.
"""

from datetime import date, datetime
from typing import List, Optional, Sequence

from pivot_report.models.schemas import TreeNode


DATE_DIMENSION = 'date'

_DATE_FORMATS = ('%d/%m/%Y', '%Y-%m-%d')


def parse_date_attribute(value: str) -> date:
    """Parse a dd/mm/yyyy or YYYY-MM-DD label; unparseable labels sort oldest."""
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return date.min


def metric_sort_value(node: TreeNode, sort_by: Optional[str]) -> float:
    """Numeric sort value of a metric; missing or non-numeric reads as 0."""
    if sort_by is None:
        return 0.0
    value = node.metrics.get(sort_by)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return float(value)


def is_ascending(direction: Optional[str]) -> bool:
    """'ascend' (UI) or 'ASC' (query) sort ascending; anything else descends."""
    return direction in ('ascend', 'ASC')


def _sort_level(
    nodes: Sequence[TreeNode],
    sort_by: Optional[str],
    ascending: bool,
    dimensions: Sequence[str],
) -> List[TreeNode]:
    if not nodes:
        return []

    depth = nodes[0].depth
    dimension = dimensions[depth] if depth < len(dimensions) else None

    if dimension == DATE_DIMENSION:
        ordered = sorted(nodes, key=lambda n: parse_date_attribute(n.attribute), reverse=True)
    else:
        ordered = sorted(nodes, key=lambda n: metric_sort_value(n, sort_by), reverse=not ascending)

    result = []
    for node in ordered:
        if node.children is None:
            result.append(node.model_copy())
        else:
            children = _sort_level(node.children, sort_by, ascending, dimensions)
            result.append(node.model_copy(update={'children': children}))
    return result


def sort_tree(
    nodes: Sequence[TreeNode],
    sort_by: Optional[str],
    direction: Optional[str],
    dimensions: Sequence[str],
) -> List[TreeNode]:
    """
    Sort a tree by a metric at every level.

    Args:
        nodes: Root-level (or any single-level) nodes.
        sort_by: Metric name; None leaves metric levels in input order.
        direction: 'ascend'/'ASC' or 'descend'/'DESC'; None means descend.
        dimensions: Active dimension list, used to detect date levels.

    Returns:
        A new sorted list of new nodes.
    """
    return _sort_level(nodes, sort_by, is_ascending(direction), dimensions)


__all__ = [
    'DATE_DIMENSION',
    'parse_date_attribute',
    'metric_sort_value',
    'is_ascending',
    'sort_tree',
]
