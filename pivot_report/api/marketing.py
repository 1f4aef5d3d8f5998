"""
FastAPI router module for the marketing report.

The marketing tree groups ad-spend rows by ad dimensions (network, campaign,
ad set, ad, date, classified product/country) and attaches CRM counts matched
through tracking IDs.

Key Endpoints:
- POST /marketing/query: One level of the marketing tree
- POST /marketing/crm-details: CRM sales behind one marketing node

Request flow for /query:
1. Validate dimension and filter field IDs (400 on unknown IDs)
2. Fetch flat ad-spend rows for the window and table filters (plus CRM sales when a matchable
   dimension is present) and attach CRM counts
3. Build the level at `depth` under `parentFilters`, sort it
4. Round count metrics for display
"""

import logging
from typing import Iterable, Set

from fastapi import APIRouter, HTTPException

from pivot_report.core.dependencies import RowSourceDep, SettingsDep
from pivot_report.models.enums import MarketingDimension
from pivot_report.models.schemas import (
    CrmDetailsRequest,
    CrmDetailsResponse,
    RowQuery,
    TreeQueryResponse,
)
from pivot_report.services.crm_matching import filter_sales_for_node
from pivot_report.services.metrics import round_tree_for_display
from pivot_report.services.row_source import MarketingLevelSource


logger = logging.getLogger(__name__)

router = APIRouter()

MARKETING_DIMENSIONS: Set[str] = {dim.value for dim in MarketingDimension}


def validate_dimensions(dimensions: Iterable[str], allowed: Set[str]) -> None:
    """Raise HTTPException(400) for dimension IDs outside `allowed`."""
    unknown = [dim for dim in dimensions if dim not in allowed]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown dimension(s): {', '.join(unknown)}",
        )


@router.post("/query", response_model=TreeQueryResponse)
async def query_marketing_tree(
    query: RowQuery,
    rows: RowSourceDep,
    settings: SettingsDep,
) -> TreeQueryResponse:
    """
    Return one level of the marketing tree.

    Args:
        query: Date range, dimensions, depth, parent filters, table filters
            and sort.

    Returns:
        TreeQueryResponse with the level's nodes (children unfetched).

    Raises:
        HTTPException 400: Unknown dimension or filter field.
        HTTPException 500: Row source failure.
    """
    validate_dimensions(query.dimensions, MARKETING_DIMENSIONS)
    validate_dimensions([f.field for f in query.filters], MARKETING_DIMENSIONS)
    try:
        nodes = await MarketingLevelSource(rows, settings).fetch_level(query)
        logger.info(
            f"Marketing level depth={query.depth} dims={query.dimensions}: {len(nodes)} nodes"
        )
        return TreeQueryResponse(success=True, data=round_tree_for_display(nodes))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error querying marketing tree: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to query marketing data: {str(e)}",
        )


@router.post("/crm-details", response_model=CrmDetailsResponse)
async def marketing_crm_details(
    request: CrmDetailsRequest,
    rows: RowSourceDep,
) -> CrmDetailsResponse:
    """
    Return the CRM sales attributed to one marketing node.

    `dimensionFilters` holds the node's path (dimension -> value). Campaign,
    ad set and ad names are resolved to tracking IDs through the ad rows.
    """
    validate_dimensions(request.dimensions, MARKETING_DIMENSIONS)
    validate_dimensions(request.dimensionFilters, MARKETING_DIMENSIONS)
    try:
        ad_rows = await rows.fetch_ad_rows(request.dateRange, request.dimensions)
        sales = await rows.fetch_sales(request.dateRange)
        matched = filter_sales_for_node(sales, request.dimensionFilters, ad_rows, request.dimensions)
        return CrmDetailsResponse(success=True, data=matched)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching CRM details: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to fetch CRM details: {str(e)}",
        )
