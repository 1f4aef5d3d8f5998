"""
Pivot Report Services Module

Business logic behind the hierarchical pivot tables. Everything except the
row sources and the expansion reconciler is pure and synchronous.

Services:
- metrics: Metrics aggregation for CRM sales and ad-spend row groups
- crm_matching: Attaches CRM counts to ad-spend rows via tracking IDs
- tree_builder: Groups flat rows into TreeNodes; node key helpers
- tree_sorter: Uniform metric sort with date levels most recent first
- expansion: Expanded-key state machine (load, restore, toggle, persistence)
- row_source: asyncpg and pandas flat-row sources, per-level tree fetchers

All services are consumed by the API layer (pivot_report/api/).
"""

# =============================================================================
# Metrics Aggregation
# =============================================================================

from pivot_report.services.metrics import (
    compute_crm_counts,
    calculate_sales_metrics,
    calculate_ad_metrics,
    round_for_display,
    round_tree_for_display,
    aggregate_by_date,
    safe_ratio,
)

# =============================================================================
# CRM Matching
# =============================================================================

from pivot_report.services.crm_matching import (
    attach_crm_metrics,
    filter_sales_for_node,
    matchable_dimensions,
    normalize_network,
    marketing_date_to_crm_date,
)

# =============================================================================
# Tree Building and Sorting
# =============================================================================

from pivot_report.services.tree_builder import (
    build_tree,
    build_level,
    update_has_children,
    make_key,
    key_depth,
    parse_key_to_parent_filters,
    group_keys_by_depth,
    UNKNOWN_LABEL,
)

from pivot_report.services.tree_sorter import sort_tree

# =============================================================================
# Expansion Reconciler
# =============================================================================

from pivot_report.services.expansion import (
    ExpansionReconciler,
    ReconcilerError,
    ReconcilerBusyError,
    RestoreAlreadyRanError,
    ChildFetchError,
    RestoreResult,
    ViewParams,
    TreeArena,
    ViewStatePersistence,
    InMemoryKeyValueStore,
    encode_expanded_keys,
    decode_expanded_keys,
)

# =============================================================================
# Row Sources
# =============================================================================

from pivot_report.services.row_source import (
    DatabaseRowSource,
    FrameRowSource,
    MarketingLevelSource,
    SalesLevelSource,
)

__all__ = [
    # metrics
    'compute_crm_counts',
    'calculate_sales_metrics',
    'calculate_ad_metrics',
    'round_for_display',
    'round_tree_for_display',
    'aggregate_by_date',
    'safe_ratio',
    # crm_matching
    'attach_crm_metrics',
    'filter_sales_for_node',
    'matchable_dimensions',
    'normalize_network',
    'marketing_date_to_crm_date',
    # tree_builder / tree_sorter
    'build_tree',
    'build_level',
    'update_has_children',
    'make_key',
    'key_depth',
    'parse_key_to_parent_filters',
    'group_keys_by_depth',
    'UNKNOWN_LABEL',
    'sort_tree',
    # expansion
    'ExpansionReconciler',
    'ReconcilerError',
    'ReconcilerBusyError',
    'RestoreAlreadyRanError',
    'ChildFetchError',
    'RestoreResult',
    'ViewParams',
    'TreeArena',
    'ViewStatePersistence',
    'InMemoryKeyValueStore',
    'encode_expanded_keys',
    'decode_expanded_keys',
    # row_source
    'DatabaseRowSource',
    'FrameRowSource',
    'MarketingLevelSource',
    'SalesLevelSource',
]
