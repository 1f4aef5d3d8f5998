"""
Test Module for the Metrics Aggregation Service.

Validates:
- CRM bucket assignment (primary subscription, upsell subscription,
  one-time sale, upsell invoice) is mutually exclusive
- Customer deduplication and the upsell-only new customer count
- Ratio metrics are 0 when the denominator is 0
- Ad-spend metrics are derived from summed measures, never averaged
- Fractional counts survive aggregation and are rounded only for display
- Daily aggregates come back in chronological order

Dependency References:
- pivot_report/services/metrics.py: Functions under test
- pivot_report/tests/conftest.py: make_sale, make_ad_row and sample sales
"""

import pytest

from pivot_report.models.schemas import CrmCounts, TreeNode
from pivot_report.services.metrics import (
    COUNT_METRICS,
    aggregate_by_date,
    calculate_ad_metrics,
    calculate_sales_metrics,
    compute_crm_counts,
    crm_counts_to_metrics,
    round_for_display,
    round_tree_for_display,
    safe_ratio,
)
from pivot_report.tests.conftest import make_ad_row, make_sale


# ============================================================
# CRM COUNTERS
# ============================================================

class TestComputeCrmCounts:
    """Single-pass bucket counting over CRM sales."""

    def test_buckets_are_mutually_exclusive(self, mixed_sales):
        counts = compute_crm_counts(mixed_sales)

        assert counts.subscriptions == 2
        assert counts.upsell_subs == 2
        assert counts.ots == 2
        assert counts.upsells == 3
        # every sale lands in exactly one bucket
        assert counts.subscriptions + counts.upsell_subs + counts.ots + counts.upsells == len(mixed_sales)

    def test_primary_subscription_flags(self, mixed_sales):
        counts = compute_crm_counts(mixed_sales)

        assert counts.trials == 2
        assert counts.trials_approved == 1
        assert counts.on_hold == 1

    def test_upsell_subscription_trials_counted_separately(self, mixed_sales):
        counts = compute_crm_counts(mixed_sales)

        # sale 3 has a trial, sale 4 does not; neither counts as a primary trial
        assert counts.upsell_sub_trials == 1
        assert counts.trials == 2

    def test_customers_are_deduplicated(self):
        sales = [make_sale(i, customer_id=42) for i in range(1, 5)]

        assert compute_crm_counts(sales).customers == 1

    def test_upsell_new_customers_excludes_primary_customers(self, mixed_sales):
        counts = compute_crm_counts(mixed_sales)

        # customer 1 is new on a primary subscription; only customer 2 remains
        assert counts.customers == 1
        assert counts.upsell_new_customers == 1

    def test_deleted_upsell_is_not_approved(self, mixed_sales):
        counts = compute_crm_counts(mixed_sales)

        assert counts.upsells_deleted == 1
        assert counts.upsells_approved == 1

    def test_ots_alias_maps_to_one_time_sale(self):
        counts = compute_crm_counts([make_sale(1, type='ots', is_new_customer=False)])

        assert counts.ots == 1
        assert counts.ots_approved == 1
        assert counts.subscriptions == 0

    def test_empty_group(self):
        assert compute_crm_counts([]) == CrmCounts()


class TestCrmCountsArithmetic:
    """Proportional shares and summation of CrmCounts."""

    def test_scaled_keeps_fractions(self):
        share = CrmCounts(trials=10.0, subscriptions=10.0).scaled(0.75)

        assert share.trials == pytest.approx(7.5)
        assert share.subscriptions == pytest.approx(7.5)

    def test_add_is_field_wise(self):
        total = CrmCounts(trials=7.5, ots=1.0) + CrmCounts(trials=2.5, upsells=2.0)

        assert total.trials == pytest.approx(10.0)
        assert total.ots == 1.0
        assert total.upsells == 2.0


# ============================================================
# RATIOS
# ============================================================

class TestRatios:
    """Derived ratios and the zero-denominator rule."""

    @pytest.mark.parametrize('numerator,denominator,expected', [
        (5.0, 10.0, 0.5),
        (5.0, 0.0, 0.0),
        (0.0, 0.0, 0.0),
        (3.0, -1.0, 0.0),
    ])
    def test_safe_ratio(self, numerator, denominator, expected):
        assert safe_ratio(numerator, denominator) == expected

    def test_crm_ratio_metrics(self, mixed_sales):
        metrics = crm_counts_to_metrics(compute_crm_counts(mixed_sales))

        assert metrics['approvalRate'] == pytest.approx(0.5)
        assert metrics['otsApprovalRate'] == pytest.approx(0.5)
        assert metrics['upsellApprovalRate'] == pytest.approx(1 / 3)

    def test_ratios_are_zero_without_sales(self):
        metrics = crm_counts_to_metrics(CrmCounts())

        assert metrics['approvalRate'] == 0
        assert metrics['otsApprovalRate'] == 0
        assert metrics['upsellApprovalRate'] == 0


# ============================================================
# METRICS RECORDS
# ============================================================

class TestCalculateSalesMetrics:
    """Sales dashboard metrics record."""

    def test_includes_revenue_total(self):
        sales = [make_sale(1, total=10.0), make_sale(2, total=2.5)]

        metrics = calculate_sales_metrics(sales)

        assert metrics['total'] == pytest.approx(12.5)
        assert metrics['subscriptions'] == 2
        assert metrics['customers'] == 2

    def test_camel_case_names(self, mixed_sales):
        metrics = calculate_sales_metrics(mixed_sales)

        for name in ('trialsApproved', 'onHold', 'upsellSubs', 'upsellNewCustomers', 'otsApproved'):
            assert name in metrics


class TestCalculateAdMetrics:
    """Marketing metrics record over ad-spend rows."""

    def test_base_measures_are_summed(self, facebook_ad_rows):
        metrics = calculate_ad_metrics(facebook_ad_rows)

        assert metrics['cost'] == pytest.approx(200.0)
        assert metrics['clicks'] == pytest.approx(100.0)
        assert metrics['impressions'] == pytest.approx(2400.0)
        assert metrics['conversions'] == pytest.approx(10.0)

    def test_derived_metrics_use_sums(self, facebook_ad_rows):
        metrics = calculate_ad_metrics(facebook_ad_rows)

        assert metrics['ctr'] == pytest.approx(100.0 / 2400.0)
        assert metrics['cpc'] == pytest.approx(2.0)
        assert metrics['cpm'] == pytest.approx(200.0 / 2400.0 * 1000)
        assert metrics['conversionRate'] == pytest.approx(10.0 / 2400.0)

    def test_zero_denominators(self):
        metrics = calculate_ad_metrics([make_ad_row({'network': 'x'}, cost=10.0)])

        assert metrics['ctr'] == 0
        assert metrics['cpc'] == 0
        assert metrics['cpm'] == 0
        assert metrics['realCpa'] == 0

    def test_attached_counts_are_summed_and_kept_fractional(self):
        rows = [
            make_ad_row({'network': 'x'}, cost=30.0, attached=CrmCounts(trials=7.5, subscriptions=7.5)),
            make_ad_row({'network': 'x'}, cost=10.0, attached=CrmCounts(trials=2.5, subscriptions=2.5)),
            make_ad_row({'network': 'x'}, cost=10.0),
        ]

        metrics = calculate_ad_metrics(rows)

        assert metrics['trials'] == pytest.approx(10.0)
        assert metrics['subscriptions'] == pytest.approx(10.0)
        assert metrics['realCpa'] == pytest.approx(5.0)

    def test_fractional_share_not_rounded(self):
        rows = [make_ad_row({'network': 'x'}, attached=CrmCounts(trials=2.5))]

        assert calculate_ad_metrics(rows)['trials'] == pytest.approx(2.5)


# ============================================================
# DISPLAY ROUNDING
# ============================================================

class TestRoundForDisplay:
    """Count metrics are whole numbers only at serialization."""

    def test_counts_rounded_ratios_kept(self):
        rounded = round_for_display({'trials': 7.5, 'subscriptions': 2.4, 'ctr': 0.123456})

        assert rounded['trials'] == 8
        assert rounded['subscriptions'] == 2
        assert rounded['ctr'] == pytest.approx(0.123456)

    def test_real_cpa_is_a_count_metric(self):
        assert 'realCpa' in COUNT_METRICS
        assert round_for_display({'realCpa': 12.6})['realCpa'] == 13

    def test_tree_rounding_recurses_and_copies(self):
        child = TreeNode(key='NO::A', attribute='A', depth=1, metrics={'trials': 1.4})
        root = TreeNode(
            key='NO', attribute='NO', depth=0, hasChildren=True,
            children=[child], metrics={'trials': 2.6},
        )

        (rounded,) = round_tree_for_display([root])

        assert rounded.metrics['trials'] == 3
        assert rounded.children[0].metrics['trials'] == 1
        assert root.metrics['trials'] == 2.6


# ============================================================
# TIME SERIES
# ============================================================

class TestAggregateByDate:
    """Daily aggregates for the dashboard chart."""

    def test_chronological_order(self):
        sales = [
            make_sale(1, date='2024-01-07'),
            make_sale(2, date='2024-01-05'),
            make_sale(3, date='2024-01-07', is_approved=False),
        ]

        days = aggregate_by_date(sales)

        assert [day.date for day in days] == ['2024-01-05', '2024-01-07']
        assert days[1].subscriptions == 2
        assert days[1].trialsApproved == 1
        assert days[1].approvalRate == pytest.approx(0.5)

    def test_empty(self):
        assert aggregate_by_date([]) == []
