"""
SQL query module for the pivot report backend.

Re-exports the parameterized queries behind the two flat-row sources so
callers can import from pivot_report.sql directly:

    from pivot_report.sql import get_ad_spend_rows_query, CRM_SALES_ROWS_QUERY
"""

from pivot_report.sql.row_queries import (
    AD_DIMENSION_COLUMNS,
    CLASSIFICATION_JOINS,
    build_table_filter_clause,
    get_ad_spend_rows_query,
    CRM_SALES_ROWS_QUERY,
)

__all__ = [
    'AD_DIMENSION_COLUMNS',
    'CLASSIFICATION_JOINS',
    'build_table_filter_clause',
    'get_ad_spend_rows_query',
    'CRM_SALES_ROWS_QUERY',
]
