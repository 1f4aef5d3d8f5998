"""
Package initialization file for pivot report models.

Re-exports the enumerations and record/schema types so other modules can
import them from pivot_report.models directly:

    from pivot_report.models import SaleRecord, TreeNode, RowQuery
"""

# =============================================================================
# Enums
# =============================================================================

from pivot_report.models.enums import (
    SaleKind,
    SortDirection,
    QuerySortDirection,
    FilterOperator,
    ReconcilerState,
    MarketingDimension,
    SalesDimension,
)

# =============================================================================
# Schemas
# =============================================================================

from pivot_report.models.schemas import (
    # Flat records
    CrmCounts,
    EMPTY_CRM_COUNTS,
    SaleRecord,
    AdSpendRecord,
    SALES_DIMENSION_FIELDS,
    normalize_dimension_value,
    # Tree
    TreeNode,
    # Row source parameters
    DateRange,
    RowQuery,
    TableFilter,
    # HTTP models
    TreeQueryResponse,
    CrmDetailsRequest,
    CrmDetailsResponse,
    DailyAggregate,
    TimeSeriesRequest,
    TimeSeriesResponse,
)

__all__ = [
    # Enums
    'SaleKind',
    'SortDirection',
    'QuerySortDirection',
    'FilterOperator',
    'ReconcilerState',
    'MarketingDimension',
    'SalesDimension',
    # Flat records
    'CrmCounts',
    'EMPTY_CRM_COUNTS',
    'SaleRecord',
    'AdSpendRecord',
    'SALES_DIMENSION_FIELDS',
    'normalize_dimension_value',
    # Tree
    'TreeNode',
    # Row source parameters
    'DateRange',
    'RowQuery',
    'TableFilter',
    # HTTP models
    'TreeQueryResponse',
    'CrmDetailsRequest',
    'CrmDetailsResponse',
    'DailyAggregate',
    'TimeSeriesRequest',
    'TimeSeriesResponse',
]
