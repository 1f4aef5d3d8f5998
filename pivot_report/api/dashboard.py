"""
FastAPI router module for the sales dashboard.

The dashboard tree groups CRM sales by country, product group, product,
source or date. The time series aggregates the same sales per day.

Key Endpoints:
- POST /dashboard/query: One level of the sales tree
- POST /dashboard/timeseries: Daily aggregates for a date range
"""

import logging
from typing import Set

from fastapi import APIRouter, HTTPException

from pivot_report.api.marketing import validate_dimensions
from pivot_report.core.dependencies import RowSourceDep, SettingsDep
from pivot_report.models.enums import SalesDimension
from pivot_report.models.schemas import (
    RowQuery,
    TimeSeriesRequest,
    TimeSeriesResponse,
    TreeQueryResponse,
)
from pivot_report.services.metrics import aggregate_by_date, round_tree_for_display
from pivot_report.services.row_source import SalesLevelSource


logger = logging.getLogger(__name__)

router = APIRouter()

SALES_DIMENSIONS: Set[str] = {dim.value for dim in SalesDimension}


@router.post("/query", response_model=TreeQueryResponse)
async def query_sales_tree(
    query: RowQuery,
    rows: RowSourceDep,
    settings: SettingsDep,
) -> TreeQueryResponse:
    """
    Return one level of the sales dashboard tree.

    Raises:
        HTTPException 400: Unknown dimension or filter field.
        HTTPException 500: Row source failure.
    """
    validate_dimensions(query.dimensions, SALES_DIMENSIONS)
    validate_dimensions([f.field for f in query.filters], SALES_DIMENSIONS)
    try:
        nodes = await SalesLevelSource(rows, settings).fetch_level(query)
        return TreeQueryResponse(success=True, data=round_tree_for_display(nodes))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error querying dashboard tree: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to query dashboard data: {str(e)}",
        )


@router.post("/timeseries", response_model=TimeSeriesResponse)
async def dashboard_timeseries(
    request: TimeSeriesRequest,
    rows: RowSourceDep,
) -> TimeSeriesResponse:
    """Daily sales aggregates, oldest day first."""
    try:
        sales = await rows.fetch_sales(request.dateRange)
        return TimeSeriesResponse(success=True, data=aggregate_by_date(sales))
    except Exception as e:
        logger.error(f"Error building dashboard time series: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to build time series: {str(e)}",
        )
