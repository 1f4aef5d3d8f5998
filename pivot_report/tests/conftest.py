"""
Pytest Configuration and Shared Fixtures for Pivot Report Backend Tests.

This module provides fixtures and configuration for all backend tests, supporting:
- Async test execution with pytest-asyncio
- Sample CRM sales and ad-spend rows matching the flat-row schemas
- The two-level country/product scenario used across tree and expansion tests
- A stub level fetcher standing in for the HTTP/database row source
- pandas frames shaped like CSV exports for the frame row source
- Settings with short timeouts and small fetch batches

Dependency References:
- pivot_report/core/config.py: Settings for tuning knobs
- pivot_report/models/schemas.py: SaleRecord, AdSpendRecord, TreeNode, RowQuery
- pivot_report/services/tree_builder.py: build_tree for stub tree levels
- pivot_report/services/metrics.py: calculate_sales_metrics for stub metrics
"""

import asyncio
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import pytest

from pivot_report.core.config import Settings
from pivot_report.models.schemas import (
    AdSpendRecord,
    DateRange,
    RowQuery,
    SaleRecord,
    TreeNode,
)
from pivot_report.services.expansion import ViewParams
from pivot_report.services.metrics import calculate_sales_metrics
from pivot_report.services.tree_builder import build_tree, make_key


# ============================================================
# PYTEST PLUGINS CONFIGURATION
# ============================================================

pytest_plugins: List[str] = ['pytest_asyncio']


# ============================================================
# PYTEST HOOKS
# ============================================================

def pytest_configure(config) -> None:
    """
    Configure custom pytest markers for test organization.

    Custom markers defined:
    - slow: Marks tests as slow (deselect with -m "not slow")
    - integration: Marks tests that need a live PostgreSQL instance
    """
    config.addinivalue_line(
        'markers',
        'slow: marks tests as slow (deselect with -m "not slow")'
    )
    config.addinivalue_line(
        'markers',
        'integration: marks tests requiring a live database'
    )


# ============================================================
# RECORD FACTORIES
# ============================================================

def make_sale(sale_id: int, **overrides: Any) -> SaleRecord:
    """
    Build a SaleRecord with sensible defaults.

    Defaults describe an approved primary subscription with a trial, by a
    new customer whose ID equals the sale ID.
    """
    values: Dict[str, Any] = {
        'id': sale_id,
        'type': 'subscription',
        'date': '2024-01-05',
        'customer_id': sale_id,
        'is_new_customer': True,
        'has_trial': True,
        'is_approved': True,
    }
    values.update(overrides)
    return SaleRecord(**values)


def make_ad_row(dimensions: Dict[str, Optional[str]], **overrides: Any) -> AdSpendRecord:
    """Build an AdSpendRecord with zero measures unless overridden."""
    return AdSpendRecord(dimensions=dimensions, **overrides)


def subscriptions_for(country: Optional[str], product: Optional[str], count: int, start_id: int) -> List[SaleRecord]:
    return [
        make_sale(start_id + offset, country=country, product=product)
        for offset in range(count)
    ]


# ============================================================
# STUB LEVEL FETCHER
# ============================================================

def parent_key_of(query: RowQuery) -> Optional[str]:
    """Key of the node whose children the query asks for."""
    parent_key = None
    for dimension in query.dimensions[:query.depth]:
        parent_key = make_key(parent_key, query.parentFilters.get(dimension))
    return parent_key


def _index(nodes: Iterable[TreeNode], index: Dict[str, TreeNode]) -> Dict[str, TreeNode]:
    for node in nodes:
        index[node.key] = node
        if node.children:
            _index(node.children, index)
    return index


class TreeServerStub:
    """
    In-memory level fetcher over a fully built sales tree.

    Root queries return the roots with their children materialized (or bare,
    with materialize_roots=False); child queries return one level with
    children unfetched. Keys in fail_keys raise; keys in slow_keys sleep
    for `delay` seconds first. Every query is recorded in `calls` and the
    peak number of concurrent child fetches in `max_in_flight`.
    """

    def __init__(
        self,
        rows: List[SaleRecord],
        dimensions: List[str],
        fail_keys: Iterable[str] = (),
        slow_keys: Iterable[str] = (),
        delay: float = 0.0,
        materialize_roots: bool = True,
    ):
        self.dimensions = list(dimensions)
        self.full = build_tree(rows, self.dimensions, calculate_sales_metrics)
        self.index = _index(self.full, {})
        self.fail_keys = set(fail_keys)
        self.slow_keys = set(slow_keys)
        self.delay = delay
        self.materialize_roots = materialize_roots
        self.fail_roots = False
        self.calls: List[RowQuery] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @staticmethod
    def _unfetched(nodes: Iterable[TreeNode]) -> List[TreeNode]:
        return [node.model_copy(update={'children': None}) for node in nodes]

    def child_calls(self) -> List[Optional[str]]:
        return [parent_key_of(query) for query in self.calls if query.depth > 0]

    async def __call__(self, query: RowQuery) -> List[TreeNode]:
        self.calls.append(query)
        if query.depth == 0:
            if self.fail_roots:
                raise RuntimeError('root query failed')
            if not self.materialize_roots:
                return self._unfetched(self.full)
            return [
                node.model_copy(update={'children': self._unfetched(node.children)})
                if node.children is not None else node.model_copy()
                for node in self.full
            ]

        key = parent_key_of(query)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay if key in self.slow_keys else 0)
            if key in self.fail_keys:
                raise RuntimeError(f'children of {key} failed')
            node = self.index.get(key)
            return self._unfetched(node.children or []) if node is not None else []
        finally:
            self.in_flight -= 1


# ============================================================
# SETTINGS AND VIEW FIXTURES
# ============================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings with a short child timeout and small fetch batches."""
    return Settings(
        database_url=None,
        child_fetch_timeout_seconds=0.5,
        level_fetch_batch_size=2,
    )


@pytest.fixture
def january() -> DateRange:
    return DateRange(start=date(2024, 1, 1), end=date(2024, 1, 31))


@pytest.fixture
def country_product_view(january: DateRange) -> ViewParams:
    return ViewParams(
        date_range=january,
        dimensions=('country', 'product'),
        sort_by='subscriptions',
    )


# ============================================================
# SALES FIXTURES
# ============================================================

@pytest.fixture
def two_level_sales() -> List[SaleRecord]:
    """
    Country -> product scenario.

    NO/A: 2 subscriptions, NO/B: 3 subscriptions, SE/A: 1 subscription.
    """
    return (
        subscriptions_for('NO', 'A', 2, start_id=1)
        + subscriptions_for('NO', 'B', 3, start_id=10)
        + subscriptions_for('SE', 'A', 1, start_id=20)
    )


@pytest.fixture
def three_level_sales() -> List[SaleRecord]:
    """Country -> product group -> product, with two groups under NO."""
    return [
        make_sale(1, country='NO', product_group='A', product='x'),
        make_sale(2, country='NO', product_group='A', product='x'),
        make_sale(3, country='NO', product_group='B', product='y'),
        make_sale(4, country='SE', product_group='A', product='x'),
    ]


@pytest.fixture
def mixed_sales() -> List[SaleRecord]:
    """One sale of every bucket, plus repeat and upsell-only customers."""
    return [
        # customer 1: new, two primary subscriptions (counts once)
        make_sale(1, customer_id=1),
        make_sale(2, customer_id=1, is_approved=False, is_on_hold=True),
        # customer 2: upsell subscription only, new
        make_sale(3, customer_id=2, is_upsell_sub=True, is_approved=False),
        # customer 1 again on an upsell subscription: already counted
        make_sale(4, customer_id=1, is_upsell_sub=True, has_trial=False),
        # one-time sales
        make_sale(5, type='ots', customer_id=3, is_new_customer=False),
        make_sale(6, type='one_time_sale', customer_id=4, is_new_customer=False, is_approved=False),
        # upsell invoices: approved, deleted (approved flag ignored), pending
        make_sale(7, type='upsell', customer_id=5, is_new_customer=False),
        make_sale(8, type='upsell', customer_id=5, is_new_customer=False, is_deleted=True),
        make_sale(9, type='upsell', customer_id=6, is_new_customer=False, is_approved=False),
    ]


# ============================================================
# AD-SPEND FIXTURES
# ============================================================

@pytest.fixture
def facebook_ad_rows() -> List[AdSpendRecord]:
    """Two Facebook campaigns and one Google campaign."""
    return [
        make_ad_row(
            {'network': 'Facebook', 'campaign': 'spring sale'},
            campaign_id='c1', cost=100.0, clicks=50.0, impressions=1000.0, conversions=5.0,
        ),
        make_ad_row(
            {'network': 'Facebook', 'campaign': 'summer sale'},
            campaign_id='c2', cost=40.0, clicks=20.0, impressions=800.0, conversions=2.0,
        ),
        make_ad_row(
            {'network': 'Google Ads', 'campaign': 'brand'},
            campaign_id='g1', cost=60.0, clicks=30.0, impressions=600.0, conversions=3.0,
        ),
    ]


@pytest.fixture
def campaign_sales() -> List[SaleRecord]:
    """CRM sales tracked to the campaigns in facebook_ad_rows."""
    return [
        make_sale(1, source='facebook', tracking_id_4='c1'),
        make_sale(2, source='meta', tracking_id_4='c1'),
        make_sale(3, source='fb', tracking_id_4='c2', is_approved=False),
        make_sale(4, source='adwords', tracking_id_4='g1'),
        # no ad row carries campaign c9
        make_sale(5, source='facebook', tracking_id_4='c9'),
    ]


# ============================================================
# DATAFRAME FIXTURES
# ============================================================

@pytest.fixture
def ads_frame() -> pd.DataFrame:
    """Ad-spend export with mixed date formats and uppercase headers."""
    return pd.DataFrame({
        'Network': ['Facebook', 'Facebook', 'Google Ads', 'Facebook'],
        'Campaign': ['spring sale', 'summer sale', 'brand', 'spring sale'],
        'campaign_id': ['c1', 'c2', 'g1', 'c1'],
        'Date': ['2024-01-05', '06/01/2024', '2024-01-05', '2024-02-10'],
        'Cost': [100.0, 40.0, 60.0, 999.0],
        'Clicks': [50, 20, None, 1],
        'Impressions': [1000, 800, 600, 1],
        'Conversions': [5, 2, 3, 0],
        'ClassifiedProduct': ['flex', None, 'brand', 'flex'],
    })


@pytest.fixture
def sales_frame() -> pd.DataFrame:
    """CRM sales export with 0/1 and string flags."""
    return pd.DataFrame({
        'id': [1, 2, 3, 4, 5],
        'type': ['subscription', 'subscription', 'ots', 'upsell', 'subscription'],
        'date': ['2024-01-05', '2024-01-05', '2024-01-06', '2024-01-06', '2024-03-01'],
        'customer_id': [1, 2, 3, 1, 9],
        'is_new_customer': [1, 'true', 0, '', 1],
        'country': ['NO', 'SE', 'NO', None, 'NO'],
        'productGroup': ['A', 'A', 'B', 'A', 'A'],
        'product': ['x', 'x', 'y', 'x', 'x'],
        'source': ['facebook', 'adwords', 'facebook', 'facebook', 'facebook'],
        'tracking_id_4': ['c1', 'g1', 'c2', 'c1', 'c1'],
        'total': [10.0, 20.0, 5.5, 3.0, 1.0],
        'has_trial': [1, 1, 0, 0, 1],
        'is_approved': ['true', 'false', 'true', 'true', 'true'],
    })
