"""
Cross-dataset matching service: attaches CRM counts onto ad-spend rows.

The ad-spend warehouse and the CRM share no primary key. Rows are joined on a
composite key built from the matchable dimensions (network, campaign, ad set,
ad, date), each side resolving its own vocabulary:

    Dimension   Ad-spend row            CRM sale
    ---------   --------------------    ------------------------------
    network     dimensions['network']   source (normalized to network)
    campaign    campaign_id             tracking_id_4
    adset       adset_id                tracking_id_2
    ad          ad_id                   tracking_id
    date        dd/mm/yyyy -> ISO       date (YYYY-MM-DD)

Matching Phases:
1. Exact: CRM sales are grouped by the full composite key and each group's
   CrmCounts is attached to every ad row carrying that key. With no
   classification dimension this is a strict 1:1 join.
2. Proportional: when the dimension list contains a manually-classified
   dimension (classifiedProduct, classifiedCountry), several ad rows can share
   one join key; the group's counts are split across them by a weight measure
   (impressions by default) instead of being duplicated.
3. Fallback (opt-in): CRM groups that matched no ad row are retried on
   progressively shorter key prefixes and split by weight at that level.

Input rows are never mutated; every returned row is a copy carrying its
counts in AdSpendRecord.attached.
"""

import logging
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pivot_report.models.schemas import (
    AdSpendRecord,
    CrmCounts,
    EMPTY_CRM_COUNTS,
    SaleRecord,
    normalize_dimension_value,
)
from pivot_report.services.metrics import compute_crm_counts


logger = logging.getLogger(__name__)


MatchKey = Tuple[Optional[str], ...]


# =============================================================================
# Vocabulary Mapping
# =============================================================================

# Dimensions that can be resolved on both sides, in join-key order
MATCHABLE_DIMENSIONS: Tuple[str, ...] = ('network', 'campaign', 'adset', 'ad', 'date')

# Manually-classified dimensions the CRM cannot resolve
CLASSIFICATION_DIMENSIONS = frozenset({'classifiedProduct', 'classifiedCountry'})

# Canonical ad network name -> CRM source spellings (lowercase)
NETWORK_SOURCE_ALIASES: Dict[str, Tuple[str, ...]] = {
    'google ads': ('adwords', 'google'),
    'facebook': ('facebook', 'meta', 'fb'),
}

_SOURCE_TO_NETWORK: Dict[str, str] = {
    alias: network
    for network, aliases in NETWORK_SOURCE_ALIASES.items()
    for alias in aliases
}


def normalize_network(value: Optional[str]) -> Optional[str]:
    """
    Canonical lowercase network name for an ad network or a CRM source.

    Unknown sources pass through lowercased so that a network the mapping
    does not know can still match a CRM source spelled the same way.
    """
    text = normalize_dimension_value(value)
    if text is None:
        return None
    lowered = text.lower()
    return _SOURCE_TO_NETWORK.get(lowered, lowered)


def marketing_date_to_crm_date(value: Optional[str]) -> Optional[str]:
    """Convert dd/mm/yyyy to YYYY-MM-DD; other formats pass through."""
    if value is None:
        return None
    parts = value.split('/')
    if len(parts) == 3:
        day, month, year = parts
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return value


_SALE_MATCH_FIELDS: Dict[str, Callable[[SaleRecord], Optional[str]]] = {
    'network': lambda sale: normalize_network(sale.source),
    'campaign': lambda sale: sale.tracking_id_4,
    'adset': lambda sale: sale.tracking_id_2,
    'ad': lambda sale: sale.tracking_id,
    'date': lambda sale: sale.date,
}

_AD_MATCH_FIELDS: Dict[str, Callable[[AdSpendRecord], Optional[str]]] = {
    'network': lambda row: normalize_network(row.dimension_value('network')),
    'campaign': lambda row: row.campaign_id,
    'adset': lambda row: row.adset_id,
    'ad': lambda row: row.ad_id,
    'date': lambda row: marketing_date_to_crm_date(row.dimension_value('date')),
}


def matchable_dimensions(dimensions: Iterable[str]) -> List[str]:
    """The dimensions, in request order, that both datasets can resolve."""
    return [dim for dim in dimensions if dim in _SALE_MATCH_FIELDS]


def sale_match_key(sale: SaleRecord, match_dims: Sequence[str]) -> MatchKey:
    return tuple(_SALE_MATCH_FIELDS[dim](sale) for dim in match_dims)


def ad_match_key(row: AdSpendRecord, match_dims: Sequence[str]) -> MatchKey:
    return tuple(_AD_MATCH_FIELDS[dim](row) for dim in match_dims)


def group_sales_by_key(
    sales: Iterable[SaleRecord],
    match_dims: Sequence[str],
) -> Dict[MatchKey, List[SaleRecord]]:
    """Group CRM sales by composite match key, preserving first-seen order."""
    groups: Dict[MatchKey, List[SaleRecord]] = OrderedDict()
    for sale in sales:
        groups.setdefault(sale_match_key(sale, match_dims), []).append(sale)
    return groups


# =============================================================================
# Attach
# =============================================================================


def _weights_by_key(
    rows: Sequence[AdSpendRecord],
    keys: Sequence[MatchKey],
    weight_measure: str,
) -> Dict[MatchKey, float]:
    totals: Dict[MatchKey, float] = {}
    for row, key in zip(rows, keys):
        totals[key] = totals.get(key, 0.0) + row.measure(weight_measure)
    return totals


def _proportion(row: AdSpendRecord, total_weight: float, weight_measure: str) -> float:
    if total_weight <= 0:
        return 0.0
    return row.measure(weight_measure) / total_weight


def attach_crm_metrics(
    rows: Sequence[AdSpendRecord],
    sales: Sequence[SaleRecord],
    dimensions: Sequence[str],
    weight_measure: str = 'impressions',
    fallback: bool = False,
) -> List[AdSpendRecord]:
    """
    Attach CRM counts to each ad-spend row.

    Args:
        rows: Ad-spend flat rows.
        sales: CRM sales for the same date window.
        dimensions: Active dimension list of the report.
        weight_measure: Base measure used for proportional distribution.
        fallback: Retry unmatched CRM groups on shorter key prefixes.

    Returns:
        New rows with `attached` set. Rows without a CRM match carry zero
        counts. When no dimension is matchable the input rows are returned
        unchanged (still unattached).
    """
    match_dims = matchable_dimensions(dimensions)
    if not match_dims:
        logger.debug(f"No matchable dimension in {list(dimensions)}, skipping CRM attach")
        return list(rows)

    accumulated: List[CrmCounts] = [EMPTY_CRM_COUNTS] * len(rows)
    row_keys = [ad_match_key(row, match_dims) for row in rows]
    crm_groups = group_sales_by_key(sales, match_dims)

    split_by_weight = any(dim in CLASSIFICATION_DIMENSIONS for dim in dimensions)
    weights = _weights_by_key(rows, row_keys, weight_measure)
    group_counts: Dict[MatchKey, CrmCounts] = {}
    matched_keys = set()

    # Phase 1: exact (or proportional) match on the full key
    for index, (row, key) in enumerate(zip(rows, row_keys)):
        group = crm_groups.get(key)
        if group is None:
            continue
        matched_keys.add(key)
        counts = group_counts.get(key)
        if counts is None:
            counts = group_counts[key] = compute_crm_counts(group)
        if split_by_weight:
            counts = counts.scaled(_proportion(row, weights[key], weight_measure))
        accumulated[index] = accumulated[index] + counts

    unmatched_sales = [
        sale
        for key, group in crm_groups.items()
        if key not in matched_keys
        for sale in group
    ]
    logger.debug(
        f"CRM attach: {len(matched_keys)} groups matched, "
        f"{len(crm_groups) - len(matched_keys)} unmatched ({len(unmatched_sales)} sales)"
    )

    # Phase 2: progressively shorter prefixes for what is left
    if fallback:
        level = len(match_dims) - 1
        while level >= 1 and unmatched_sales:
            prefix_dims = match_dims[:level]
            prefix_keys = [key[:level] for key in row_keys]
            prefix_weights = _weights_by_key(rows, prefix_keys, weight_measure)
            rows_by_prefix: Dict[MatchKey, List[int]] = {}
            for index, key in enumerate(prefix_keys):
                rows_by_prefix.setdefault(key, []).append(index)

            still_unmatched: List[SaleRecord] = []
            for key, group in group_sales_by_key(unmatched_sales, prefix_dims).items():
                indices = rows_by_prefix.get(key)
                if indices is None:
                    still_unmatched.extend(group)
                    continue
                counts = compute_crm_counts(group)
                for index in indices:
                    share = _proportion(rows[index], prefix_weights[key], weight_measure)
                    accumulated[index] = accumulated[index] + counts.scaled(share)

            logger.debug(
                f"CRM fallback on {prefix_dims}: {len(still_unmatched)} sales still unmatched"
            )
            unmatched_sales = still_unmatched
            level -= 1

    return [row.with_attached(counts) for row, counts in zip(rows, accumulated)]


# =============================================================================
# Node Detail Filtering
# =============================================================================


def filter_sales_for_node(
    sales: Sequence[SaleRecord],
    dimension_filters: Mapping[str, Optional[str]],
    rows: Sequence[AdSpendRecord],
    dimensions: Sequence[str],
) -> List[SaleRecord]:
    """
    CRM sales behind one marketing node.

    The node's dimension filters select the ad rows under it; the match keys
    of those rows then select the CRM sales. Display values such as campaign
    names are resolved to tracking IDs through the ad rows.

    Returns:
        Matching sales in input order. Empty when no ad row matches the
        filters; all sales when no dimension is matchable.
    """
    if not sales:
        return []

    node_rows = [
        row for row in rows
        if all(row.dimension_value(dim) == value for dim, value in dimension_filters.items())
    ]
    if not node_rows:
        return []

    match_dims = matchable_dimensions(dimensions)
    if not match_dims:
        return list(sales)

    node_keys = {ad_match_key(row, match_dims) for row in node_rows}
    return [sale for sale in sales if sale_match_key(sale, match_dims) in node_keys]


__all__ = [
    'MATCHABLE_DIMENSIONS',
    'CLASSIFICATION_DIMENSIONS',
    'NETWORK_SOURCE_ALIASES',
    'normalize_network',
    'marketing_date_to_crm_date',
    'matchable_dimensions',
    'sale_match_key',
    'ad_match_key',
    'group_sales_by_key',
    'attach_crm_metrics',
    'filter_sales_for_node',
]
