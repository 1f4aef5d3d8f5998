"""
Pydantic models and record types for the pivot report backend.

This module provides the typed shapes flowing through the tree pipeline:

- SaleRecord: one CRM flat row (subscription, one-time sale or upsell)
- AdSpendRecord: one ad-spend flat row, with an explicit `attached` slot for
  CRM counts matched onto it
- CrmCounts: the CRM counters, as floats so proportional shares survive
  aggregation without mid-pipeline rounding
- TreeNode: one node of the hierarchical rollup
- RowQuery / DateRange / TableFilter: parameters sent to a row source
- Request/response models for the HTTP surface

All models use Pydantic v2 syntax. Field names on the wire-facing models are
camelCase to match the table UI's contracts.
"""

from dataclasses import dataclass, fields
from datetime import date as DateType
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pivot_report.models.enums import FilterOperator, QuerySortDirection, SaleKind


# Values the query layer uses for "no value"; normalized to None on ingest.
NULL_LIKE_VALUES = frozenset({"", "null", "undefined"})


def normalize_dimension_value(value: object) -> Optional[str]:
    """
    Normalize a raw dimension value to a string, or None when missing.

    Data-shape problems are never fatal: blanks, 'null' strings and NaN all
    become None and group under the missing-value node.
    """
    if value is None:
        return None
    if isinstance(value, float) and value != value:  # NaN
        return None
    text = str(value).strip()
    if text.lower() in NULL_LIKE_VALUES:
        return None
    return text


# =============================================================================
# CRM Counters
# =============================================================================


@dataclass(frozen=True)
class CrmCounts:
    """
    CRM counters for a group of sales, or a proportional share of one.

    Counts are floats: a proportional split of 10 trials over impressions
    300/100 yields 7.5 and 2.5, and those fractions are kept until display.
    """
    customers: float = 0.0
    upsell_new_customers: float = 0.0
    subscriptions: float = 0.0
    upsell_subs: float = 0.0
    upsell_sub_trials: float = 0.0
    trials: float = 0.0
    trials_approved: float = 0.0
    on_hold: float = 0.0
    ots: float = 0.0
    ots_approved: float = 0.0
    upsells: float = 0.0
    upsells_approved: float = 0.0
    upsells_deleted: float = 0.0

    def scaled(self, proportion: float) -> "CrmCounts":
        """Return every counter multiplied by proportion."""
        return CrmCounts(**{f.name: getattr(self, f.name) * proportion for f in fields(self)})

    def __add__(self, other: "CrmCounts") -> "CrmCounts":
        if not isinstance(other, CrmCounts):
            return NotImplemented
        return CrmCounts(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    def as_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


EMPTY_CRM_COUNTS = CrmCounts()


# =============================================================================
# Flat Records
# =============================================================================


# Maps sales dimension IDs to the SaleRecord field used for grouping
SALES_DIMENSION_FIELDS: Dict[str, str] = {
    'country': 'country',
    'productGroup': 'product_group',
    'product': 'product',
    'source': 'source',
    'date': 'date',
}


class SaleRecord(BaseModel):
    """
    One CRM sale event.

    Three kinds of sales:
    - subscription: dated by the subscription's creation date
    - one_time_sale: standalone invoice, dated by its order date
    - upsell: invoice tagged with a parent subscription, dated by the parent
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    kind: SaleKind = Field(..., alias="type")
    date: str = Field(..., description="Sale date as YYYY-MM-DD")
    customer_id: int
    is_new_customer: bool = False
    country: Optional[str] = None
    product_group: Optional[str] = None
    product: Optional[str] = None
    source: Optional[str] = None
    tracking_id: Optional[str] = Field(default=None, description="Ad ID")
    tracking_id_2: Optional[str] = Field(default=None, description="Ad set ID")
    tracking_id_4: Optional[str] = Field(default=None, description="Campaign ID")
    total: float = 0.0
    has_trial: bool = False
    is_approved: bool = False
    is_on_hold: bool = False
    is_deleted: bool = False
    is_upsell_sub: bool = False

    @field_validator('date', mode='before')
    @classmethod
    def _coerce_date(cls, value: object) -> object:
        if isinstance(value, DateType):
            return value.isoformat()
        return value

    @field_validator(
        'country', 'product_group', 'product', 'source',
        'tracking_id', 'tracking_id_2', 'tracking_id_4',
        mode='before',
    )
    @classmethod
    def _normalize_optional_text(cls, value: object) -> Optional[str]:
        return normalize_dimension_value(value)

    def dimension_value(self, dimension: str) -> Optional[str]:
        """Value of a sales dimension; None when missing."""
        field_name = SALES_DIMENSION_FIELDS.get(dimension)
        if field_name is None:
            return None
        return normalize_dimension_value(getattr(self, field_name))


class AdSpendRecord(BaseModel):
    """
    One ad-spend flat row.

    `dimensions` holds display values per dimension (None when missing);
    the ad-hierarchy IDs are kept alongside because CRM tracking fields refer
    to IDs, not names. `attached` is None until CRM counts are matched on.
    The `date` dimension uses the ad platform's dd/mm/yyyy convention.
    """
    model_config = ConfigDict(frozen=True)

    dimensions: Dict[str, Optional[str]] = Field(default_factory=dict)
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    cost: float = 0.0
    clicks: float = 0.0
    impressions: float = 0.0
    conversions: float = 0.0
    attached: Optional[CrmCounts] = None

    @field_validator('dimensions', mode='before')
    @classmethod
    def _normalize_dimensions(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(k): normalize_dimension_value(v) for k, v in value.items()}
        return value

    @field_validator('campaign_id', 'adset_id', 'ad_id', mode='before')
    @classmethod
    def _normalize_ids(cls, value: object) -> Optional[str]:
        return normalize_dimension_value(value)

    @field_validator('cost', 'clicks', 'impressions', 'conversions', mode='before')
    @classmethod
    def _coerce_measure(cls, value: object) -> float:
        if value is None:
            return 0.0
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        return number if number == number else 0.0

    @property
    def is_matched(self) -> bool:
        return self.attached is not None

    def dimension_value(self, dimension: str) -> Optional[str]:
        return self.dimensions.get(dimension)

    def measure(self, name: str) -> float:
        """Base measure by name; unknown measures read as 0."""
        value = getattr(self, name, 0.0)
        return float(value) if isinstance(value, (int, float)) else 0.0

    def with_attached(self, counts: CrmCounts) -> "AdSpendRecord":
        """Copy of this row carrying the given CRM counts."""
        return self.model_copy(update={'attached': counts})


# =============================================================================
# Tree
# =============================================================================


class TreeNode(BaseModel):
    """
    One node of the hierarchical rollup.

    - key: '::'-joined path of dimension values from the root
    - depth: number of '::' separators in key
    - hasChildren: depth < len(dimensions) - 1 at build time
    - children: None until fetched; otherwise the complete child list
    - metrics: aggregate over the node's full row group
    """
    key: str
    attribute: str
    depth: int = Field(..., ge=0)
    hasChildren: bool = False
    children: Optional[List["TreeNode"]] = None
    metrics: Dict[str, float] = Field(default_factory=dict)


TreeNode.model_rebuild()


# =============================================================================
# Row Source Parameters
# =============================================================================


class DateRange(BaseModel):
    """Inclusive ISO date pair."""
    start: DateType
    end: DateType

    @model_validator(mode='after')
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"start ({self.start}) must be <= end ({self.end})")
        return self


class TableFilter(BaseModel):
    """
    User-defined filter on one dimension, applied to every level fetch.

    Comparisons follow SQL NULL semantics so the database and DataFrame
    sources agree: a missing value only matches equals "Unknown" (and fails
    not_equals "Unknown"); every other comparison against it is False.
    """
    model_config = ConfigDict(frozen=True)

    field: str
    operator: FilterOperator = FilterOperator.EQUALS
    value: str = ""

    @property
    def targets_missing(self) -> bool:
        return self.value == "Unknown" and self.operator in (
            FilterOperator.EQUALS, FilterOperator.NOT_EQUALS,
        )

    def matches(self, value: Optional[str]) -> bool:
        if self.targets_missing:
            return (value is None) == (self.operator == FilterOperator.EQUALS)
        if value is None:
            return False
        if self.operator == FilterOperator.EQUALS:
            return value == self.value
        if self.operator == FilterOperator.NOT_EQUALS:
            return value != self.value
        if self.operator == FilterOperator.CONTAINS:
            return self.value in value
        return self.value not in value


class RowQuery(BaseModel):
    """
    Parameters for one row-source call.

    `parentFilters` maps dimension -> value for the ancestors of the level
    being fetched (None selects rows whose value is missing). `filters` are
    the user's table filters; blank-valued filters are dropped.
    """
    dateRange: DateRange
    dimensions: List[str] = Field(..., min_length=1)
    depth: int = Field(default=0, ge=0)
    parentFilters: Dict[str, Optional[str]] = Field(default_factory=dict)
    filters: List[TableFilter] = Field(default_factory=list)
    sortBy: Optional[str] = None
    sortDirection: QuerySortDirection = QuerySortDirection.DESC

    @field_validator('filters')
    @classmethod
    def _drop_blank_filters(cls, value: List[TableFilter]) -> List[TableFilter]:
        return [f for f in value if f.value]

    @model_validator(mode='after')
    def _check_depth(self) -> "RowQuery":
        if self.depth >= len(self.dimensions):
            raise ValueError(
                f"depth {self.depth} out of range for {len(self.dimensions)} dimensions"
            )
        return self


# =============================================================================
# HTTP Models
# =============================================================================


class TreeQueryResponse(BaseModel):
    """Response for the tree query endpoints."""
    success: bool = True
    data: List[TreeNode] = Field(default_factory=list)


class CrmDetailsRequest(BaseModel):
    """CRM sales behind one marketing node."""
    dateRange: DateRange
    dimensions: List[str] = Field(..., min_length=1)
    dimensionFilters: Dict[str, Optional[str]] = Field(default_factory=dict)


class CrmDetailsResponse(BaseModel):
    success: bool = True
    data: List[SaleRecord] = Field(default_factory=list)


class DailyAggregate(BaseModel):
    """One day of the sales time series."""
    date: str
    customers: float = 0
    subscriptions: float = 0
    trialsApproved: float = 0
    onHold: float = 0
    approvalRate: float = 0
    upsells: float = 0
    ots: float = 0


class TimeSeriesRequest(BaseModel):
    dateRange: DateRange


class TimeSeriesResponse(BaseModel):
    success: bool = True
    data: List[DailyAggregate] = Field(default_factory=list)
