"""
Flat-row sources and per-level tree fetchers.

Flat-row sources return ungrouped rows for a date window:
- DatabaseRowSource: asyncpg queries against the warehouse and CRM pools
- FrameRowSource: pandas DataFrames (CSV exports, fixtures, notebooks)

Both expose the same two coroutines:
    fetch_ad_rows(date_range, dimensions, filters=()) -> List[AdSpendRecord]
    fetch_sales(date_range) -> List[SaleRecord]

Level fetchers turn a RowQuery into the sorted TreeNodes of one level and are
the collaborators the expansion reconciler and the HTTP routers call:
- MarketingLevelSource: ad-spend rows with CRM counts attached
- SalesLevelSource: CRM sales rows (sales dashboard)

Frame Normalization:
- column names lowercased and stripped, except dimension IDs that are
  camelCase (productGroup, classifiedProduct, classifiedCountry)
- numeric measures coerced with errors='coerce' and NaN filled with 0
- boolean CRM flags coerced from 0/1, 'true'/'false' and blanks
- ad-spend dates rendered as dd/mm/yyyy, CRM dates as YYYY-MM-DD
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

import pandas as pd

from pivot_report.core.config import Settings, get_settings
from pivot_report.core.database import execute_query, get_crm_pool, get_db_pool
from pivot_report.models.schemas import (
    AdSpendRecord,
    DateRange,
    RowQuery,
    SaleRecord,
    TableFilter,
    TreeNode,
)
from pivot_report.services.crm_matching import attach_crm_metrics, matchable_dimensions
from pivot_report.services.metrics import calculate_ad_metrics, calculate_sales_metrics
from pivot_report.services.tree_builder import (
    build_level,
    filter_rows,
    format_attribute,
    format_marketing_attribute,
)
from pivot_report.services.tree_sorter import sort_tree
from pivot_report.sql import (
    CRM_SALES_ROWS_QUERY,
    build_table_filter_clause,
    get_ad_spend_rows_query,
)


logger = logging.getLogger(__name__)


AD_MEASURE_COLUMNS: List[str] = ['cost', 'clicks', 'impressions', 'conversions']
AD_ID_COLUMNS: List[str] = ['campaign_id', 'adset_id', 'ad_id']

SALES_FLAG_COLUMNS: List[str] = [
    'is_new_customer',
    'has_trial',
    'is_approved',
    'is_on_hold',
    'is_deleted',
    'is_upsell_sub',
]

# camelCase dimension IDs that survive column normalization
CAMEL_CASE_COLUMNS: Dict[str, str] = {
    'productgroup': 'product_group',
    'classifiedproduct': 'classifiedProduct',
    'classifiedcountry': 'classifiedCountry',
}

_TRUE_STRINGS = frozenset({'true', 't', '1', 'yes', 'y'})


class FlatRowSource(Protocol):
    async def fetch_ad_rows(
        self,
        date_range: DateRange,
        dimensions: Sequence[str],
        filters: Sequence[TableFilter] = (),
    ) -> List[AdSpendRecord]: ...

    async def fetch_sales(self, date_range: DateRange) -> List[SaleRecord]: ...


# =============================================================================
# Record Conversion
# =============================================================================


def ad_row_from_mapping(record: Mapping[str, Any], dimensions: Sequence[str]) -> AdSpendRecord:
    """Build an AdSpendRecord from a DB record or frame row."""
    return AdSpendRecord(
        dimensions={dim: record.get(dim) for dim in dimensions},
        campaign_id=record.get('campaign_id'),
        adset_id=record.get('adset_id'),
        ad_id=record.get('ad_id'),
        cost=record.get('cost'),
        clicks=record.get('clicks'),
        impressions=record.get('impressions'),
        conversions=record.get('conversions'),
    )


def sale_from_mapping(record: Mapping[str, Any]) -> SaleRecord:
    return SaleRecord.model_validate(dict(record))


# =============================================================================
# Database Source
# =============================================================================


class DatabaseRowSource:
    """Flat rows from PostgreSQL via the shared asyncpg pools."""

    async def fetch_ad_rows(
        self,
        date_range: DateRange,
        dimensions: Sequence[str],
        filters: Sequence[TableFilter] = (),
    ) -> List[AdSpendRecord]:
        pool = await get_db_pool()
        _, filter_params = build_table_filter_clause(filters)
        records = await execute_query(
            get_ad_spend_rows_query(list(dimensions), filters),
            date_range.start,
            date_range.end,
            *filter_params,
            pool=pool,
        )
        logger.debug(f"Fetched {len(records)} ad-spend rows for {date_range.start}..{date_range.end}")
        return [ad_row_from_mapping(dict(record), dimensions) for record in records]

    async def fetch_sales(self, date_range: DateRange) -> List[SaleRecord]:
        pool = await get_crm_pool()
        records = await execute_query(CRM_SALES_ROWS_QUERY, date_range.start, date_range.end, pool=pool)
        logger.debug(f"Fetched {len(records)} CRM sales for {date_range.start}..{date_range.end}")
        return [sale_from_mapping(record) for record in records]


# =============================================================================
# DataFrame Source
# =============================================================================


def _normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df_normalized = df.copy()
    lowered = df_normalized.columns.str.lower().str.strip()
    df_normalized.columns = [CAMEL_CASE_COLUMNS.get(col, col) for col in lowered]
    return df_normalized


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_STRINGS


def _object_column(series: pd.Series) -> pd.Series:
    """Object dtype with NaN replaced by None."""
    return series.astype(object).where(series.notna(), None)


def normalize_ad_frame(df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize an ad-spend frame.

    Adds a `_day` column (datetime64) used for window filtering and renders
    `date` as dd/mm/yyyy. Dates are parsed day-first unless ISO formatted.
    """
    df_normalized = _normalize_columns(df)

    for col in AD_MEASURE_COLUMNS:
        if col in df_normalized.columns:
            df_normalized[col] = pd.to_numeric(df_normalized[col], errors='coerce').fillna(0)
        else:
            df_normalized[col] = 0.0

    for col in AD_ID_COLUMNS:
        if col in df_normalized.columns:
            ids = _object_column(df_normalized[col])
            df_normalized[col] = ids.map(lambda v: None if v is None else str(v))

    if 'date' in df_normalized.columns:
        raw = df_normalized['date'].astype(str).str.strip()
        iso = raw.str.match(r'^\d{4}-\d{2}-\d{2}')
        day = pd.to_datetime(raw.where(iso).str.slice(0, 10), format='%Y-%m-%d', errors='coerce')
        day = day.fillna(pd.to_datetime(raw.where(~iso), format='%d/%m/%Y', errors='coerce'))
        df_normalized['_day'] = day
        df_normalized['date'] = _object_column(day.dt.strftime('%d/%m/%Y'))

    return df_normalized


def normalize_sales_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Normalize a CRM sales frame; `date` becomes YYYY-MM-DD plus `_day`."""
    df_normalized = _normalize_columns(df)

    for col in SALES_FLAG_COLUMNS:
        if col in df_normalized.columns:
            df_normalized[col] = df_normalized[col].map(_to_bool)
        else:
            df_normalized[col] = False

    if 'total' in df_normalized.columns:
        df_normalized['total'] = pd.to_numeric(df_normalized['total'], errors='coerce').fillna(0)

    for col in ('tracking_id', 'tracking_id_2', 'tracking_id_4'):
        if col in df_normalized.columns:
            ids = _object_column(df_normalized[col])
            df_normalized[col] = ids.map(lambda v: None if v is None else str(v))

    day = pd.to_datetime(df_normalized['date'], errors='coerce')
    df_normalized['_day'] = day
    df_normalized['date'] = day.dt.strftime('%Y-%m-%d')
    return df_normalized.dropna(subset=['_day'])


def _window(df: pd.DataFrame, date_range: DateRange) -> pd.DataFrame:
    if '_day' not in df.columns:
        return df
    start = pd.Timestamp(date_range.start)
    end = pd.Timestamp(date_range.end)
    return df[(df['_day'] >= start) & (df['_day'] <= end)]


def _scalar(value: Any) -> Any:
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    return value


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Frame rows as dicts, without helper columns, NaN as None."""
    visible = [col for col in df.columns if not col.startswith('_')]
    return [
        {col: _scalar(value) for col, value in row.items()}
        for row in df[visible].to_dict(orient='records')
    ]


class FrameRowSource:
    """
    Flat rows from pandas DataFrames.

    Example:
        source = FrameRowSource.from_csv('ads.csv', 'sales.csv')
        rows = await source.fetch_ad_rows(date_range, ['network', 'campaign'])
    """

    def __init__(self, ad_frame: Optional[pd.DataFrame] = None, sales_frame: Optional[pd.DataFrame] = None):
        self.ad_frame = normalize_ad_frame(ad_frame) if ad_frame is not None else None
        self.sales_frame = normalize_sales_frame(sales_frame) if sales_frame is not None else None

    @classmethod
    def from_csv(
        cls,
        ad_path: Optional[Union[str, Any]] = None,
        sales_path: Optional[Union[str, Any]] = None,
    ) -> "FrameRowSource":
        """Load ad-spend and/or CRM sales exports; IDs are read as text."""
        text_columns = {col: str for col in AD_ID_COLUMNS + ['tracking_id', 'tracking_id_2', 'tracking_id_4']}
        ad_frame = pd.read_csv(ad_path, dtype=text_columns) if ad_path is not None else None
        sales_frame = pd.read_csv(sales_path, dtype=text_columns) if sales_path is not None else None
        return cls(ad_frame, sales_frame)

    async def fetch_ad_rows(
        self,
        date_range: DateRange,
        dimensions: Sequence[str],
        filters: Sequence[TableFilter] = (),
    ) -> List[AdSpendRecord]:
        if self.ad_frame is None:
            return []
        rows = _records(_window(self.ad_frame, date_range))
        if not filters:
            return [ad_row_from_mapping(row, dimensions) for row in rows]
        # filtered fields need not be report dimensions
        fields = list(dict.fromkeys([*dimensions, *(f.field for f in filters)]))
        kept = filter_rows([ad_row_from_mapping(row, fields) for row in rows], {}, filters)
        return [
            row.model_copy(update={'dimensions': {dim: row.dimensions.get(dim) for dim in dimensions}})
            for row in kept
        ]

    async def fetch_sales(self, date_range: DateRange) -> List[SaleRecord]:
        if self.sales_frame is None:
            return []
        return [sale_from_mapping(row) for row in _records(_window(self.sales_frame, date_range))]


# =============================================================================
# Level Fetchers
# =============================================================================


class MarketingLevelSource:
    """
    One level of the marketing tree per RowQuery.

    Table filters narrow the ad-spend rows before CRM counts are attached.
    CRM sales are only fetched when a dimension in the query is matchable.
    """

    def __init__(self, rows: FlatRowSource, settings: Optional[Settings] = None):
        self.rows = rows
        self.settings = settings or get_settings()

    async def fetch_attached_rows(
        self,
        date_range: DateRange,
        dimensions: Sequence[str],
        filters: Sequence[TableFilter] = (),
    ) -> List[AdSpendRecord]:
        ad_rows = await self.rows.fetch_ad_rows(date_range, dimensions, filters)
        if not matchable_dimensions(dimensions):
            return ad_rows
        sales = await self.rows.fetch_sales(date_range)
        return attach_crm_metrics(
            ad_rows,
            sales,
            dimensions,
            weight_measure=self.settings.crm_weight_measure,
            fallback=self.settings.crm_fallback_enabled,
        )

    async def fetch_level(self, query: RowQuery) -> List[TreeNode]:
        rows = await self.fetch_attached_rows(query.dateRange, query.dimensions, query.filters)
        nodes = build_level(
            rows,
            query.dimensions,
            query.depth,
            query.parentFilters,
            calculate_ad_metrics,
            attribute_fn=format_marketing_attribute,
        )
        sort_by = query.sortBy or self.settings.default_sort_column
        return sort_tree(nodes, sort_by, query.sortDirection.value, query.dimensions)

    __call__ = fetch_level


class SalesLevelSource:
    """One level of the sales dashboard tree per RowQuery."""

    def __init__(self, rows: FlatRowSource, settings: Optional[Settings] = None):
        self.rows = rows
        self.settings = settings or get_settings()

    async def fetch_level(self, query: RowQuery) -> List[TreeNode]:
        sales = await self.rows.fetch_sales(query.dateRange)
        nodes = build_level(
            sales,
            query.dimensions,
            query.depth,
            query.parentFilters,
            calculate_sales_metrics,
            attribute_fn=format_attribute,
            filters=query.filters,
        )
        sort_by = query.sortBy or self.settings.default_sales_sort_column
        return sort_tree(nodes, sort_by, query.sortDirection.value, query.dimensions)

    __call__ = fetch_level


__all__ = [
    'FlatRowSource',
    'ad_row_from_mapping',
    'sale_from_mapping',
    'DatabaseRowSource',
    'normalize_ad_frame',
    'normalize_sales_frame',
    'FrameRowSource',
    'MarketingLevelSource',
    'SalesLevelSource',
]
