"""
Parameterized SQL for the two flat-row sources.

Both queries return ungrouped rows for a date window; grouping into a tree
happens in Python so that rollups, CRM matching and child levels all work
from the same partition of rows.

Sources:
    merged_ads_spending: one row per ad per day across ad networks, with the
        network-native campaign/adset/ad IDs kept next to their names.
    app_campaign_classifications / app_products: manual product and country
        classification of campaigns (LEFT JOIN; unclassified rows are NULL).
    crm_sales_flat: one row per CRM sale (subscription, one-time sale or
        upsell invoice) with the flags the metrics aggregator counts.

Placeholders use asyncpg positional syntax ($1, $2); table filter values
follow the date pair as $3, $4, ...
"""

from typing import Dict, List, Sequence, Tuple

from pivot_report.models.enums import FilterOperator
from pivot_report.models.schemas import TableFilter


# Ad-spend dimension id -> SQL expression
AD_DIMENSION_COLUMNS: Dict[str, str] = {
    'network': 'm.network',
    'campaign': 'm.campaign_name',
    'adset': 'm.adset_name',
    'ad': 'm.ad_name',
    'date': "to_char(m.date::date, 'DD/MM/YYYY')",
    'classifiedProduct': 'ap.name',
    'classifiedCountry': 'cc.country_code',
}

CLASSIFICATION_JOINS = """
    LEFT JOIN app_campaign_classifications cc
        ON m.campaign_id = cc.campaign_id AND cc.is_ignored = false
    LEFT JOIN app_products ap ON cc.product_id = ap.id
"""


CLASSIFIED_DIMENSIONS = ('classifiedProduct', 'classifiedCountry')

# operator -> condition template over (column, placeholder)
FILTER_CONDITIONS: Dict[FilterOperator, str] = {
    FilterOperator.EQUALS: "{column} = {placeholder}",
    FilterOperator.NOT_EQUALS: "{column} != {placeholder}",
    FilterOperator.CONTAINS: "{column} LIKE CONCAT('%', {placeholder}, '%')",
    FilterOperator.NOT_CONTAINS: "{column} NOT LIKE CONCAT('%', {placeholder}, '%')",
}


def build_table_filter_clause(
    filters: Sequence[TableFilter],
    param_offset: int = 2,
) -> Tuple[str, List[str]]:
    """
    AND-joined WHERE conditions for table filters on ad-spend dimensions.

    "Unknown" with equals/not_equals becomes an IS [NOT] NULL check and takes
    no parameter. Filters on fields without a column are skipped.

    Args:
        filters: Table filters (blank values already dropped).
        param_offset: Number of placeholders already used by the query.

    Returns:
        (clause starting with ' AND ' or '', parameter values in order)
    """
    conditions: List[str] = []
    params: List[str] = []
    for table_filter in filters:
        column = AD_DIMENSION_COLUMNS.get(table_filter.field)
        if column is None:
            continue
        if table_filter.targets_missing:
            negate = 'NOT ' if table_filter.operator == FilterOperator.NOT_EQUALS else ''
            conditions.append(f"{column} IS {negate}NULL")
            continue
        params.append(table_filter.value)
        placeholder = f"${param_offset + len(params)}::text"
        conditions.append(
            FILTER_CONDITIONS[table_filter.operator].format(column=column, placeholder=placeholder)
        )
    clause = ''.join(f' AND {condition}' for condition in conditions)
    return clause, params


def get_ad_spend_rows_query(dimensions: List[str], filters: Sequence[TableFilter] = ()) -> str:
    """
    Flat ad-spend rows for a date window.

    Only the requested dimensions are selected (aliased to their dimension
    IDs); classification joins are added when a classified dimension is
    requested or filtered on.

    Args:
        dimensions: Ad-spend dimension IDs; unknown IDs are ignored.
        filters: Table filters; their values are bound after the dates
            (see build_table_filter_clause for the parameter list).

    Returns:
        str: Query taking $1 = start date, $2 = end date (inclusive), then
        one parameter per valued filter.

    Example:
        >>> sql = get_ad_spend_rows_query(['network', 'campaign'])
        >>> rows = await conn.fetch(sql, start, end)
    """
    selected = [dim for dim in dict.fromkeys(dimensions) if dim in AD_DIMENSION_COLUMNS]
    dimension_columns = ''.join(
        f'        {AD_DIMENSION_COLUMNS[dim]} AS "{dim}",\n' for dim in selected
    )
    filter_clause, _ = build_table_filter_clause(filters)
    needs_joins = any(
        dim in CLASSIFIED_DIMENSIONS
        for dim in selected + [f.field for f in filters]
    )
    joins = CLASSIFICATION_JOINS if needs_joins else ''

    return f"""
    SELECT
{dimension_columns}        m.campaign_id::text AS campaign_id,
        m.adset_id::text AS adset_id,
        m.ad_id::text AS ad_id,
        COALESCE(m.cost, 0)::float8 AS cost,
        COALESCE(m.clicks, 0)::float8 AS clicks,
        COALESCE(m.impressions, 0)::float8 AS impressions,
        COALESCE(m.conversions, 0)::float8 AS conversions
    FROM merged_ads_spending m
    {joins}
    WHERE m.date::date BETWEEN $1::date AND $2::date{filter_clause}
    """


CRM_SALES_ROWS_QUERY = """
    SELECT
        s.id,
        s.type,
        s.date::date AS date,
        s.customer_id,
        COALESCE(s.is_new_customer, false) AS is_new_customer,
        s.country,
        s.product_group,
        s.product,
        s.source,
        s.tracking_id,
        s.tracking_id_2,
        s.tracking_id_4,
        COALESCE(s.total, 0)::float8 AS total,
        COALESCE(s.has_trial, false) AS has_trial,
        COALESCE(s.is_approved, false) AS is_approved,
        COALESCE(s.is_on_hold, false) AS is_on_hold,
        COALESCE(s.is_deleted, false) AS is_deleted,
        COALESCE(s.is_upsell_sub, false) AS is_upsell_sub
    FROM crm_sales_flat s
    WHERE s.date::date BETWEEN $1::date AND $2::date
    ORDER BY s.date, s.id
"""


__all__ = [
    'AD_DIMENSION_COLUMNS',
    'CLASSIFICATION_JOINS',
    'CLASSIFIED_DIMENSIONS',
    'build_table_filter_clause',
    'get_ad_spend_rows_query',
    'CRM_SALES_ROWS_QUERY',
]
