"""
Test Module for CRM Matching.

Validates attaching CRM counts onto ad-spend rows:
- Network/source vocabulary normalization and date format conversion
- Strict 1:1 exact matching on tracking IDs
- Proportional split by impressions when a classified dimension makes
  several ad rows share one join key
- Conservation of counts across a split, zero-weight groups
- Opt-in prefix fallback for unmatched CRM groups
- Input rows are never mutated
- Node detail filtering (sales behind one marketing node)

Dependency References:
- pivot_report/services/crm_matching.py: Functions under test
- pivot_report/tests/conftest.py: facebook_ad_rows, campaign_sales
"""

import pytest

from pivot_report.models.schemas import CrmCounts
from pivot_report.services.crm_matching import (
    ad_match_key,
    attach_crm_metrics,
    filter_sales_for_node,
    marketing_date_to_crm_date,
    matchable_dimensions,
    normalize_network,
    sale_match_key,
)
from pivot_report.services.metrics import compute_crm_counts
from pivot_report.tests.conftest import make_ad_row, make_sale


# ============================================================
# VOCABULARY
# ============================================================

class TestNormalizeNetwork:

    @pytest.mark.parametrize('raw,expected', [
        ('Google Ads', 'google ads'),
        ('adwords', 'google ads'),
        ('Google', 'google ads'),
        ('Facebook', 'facebook'),
        ('META', 'facebook'),
        ('fb', 'facebook'),
        ('TikTok', 'tiktok'),
        (None, None),
        ('', None),
    ])
    def test_aliases(self, raw, expected):
        assert normalize_network(raw) == expected


class TestMarketingDateToCrmDate:

    def test_day_first_to_iso(self):
        assert marketing_date_to_crm_date('05/01/2024') == '2024-01-05'

    def test_pads_single_digits(self):
        assert marketing_date_to_crm_date('5/1/2024') == '2024-01-05'

    def test_other_formats_pass_through(self):
        assert marketing_date_to_crm_date('2024-01-05') == '2024-01-05'
        assert marketing_date_to_crm_date(None) is None


class TestMatchKeys:

    def test_matchable_dimensions_keep_request_order(self):
        dims = ['classifiedProduct', 'campaign', 'network', 'date']

        assert matchable_dimensions(dims) == ['campaign', 'network', 'date']

    def test_both_sides_resolve_to_the_same_key(self):
        row = make_ad_row(
            {'network': 'Facebook', 'campaign': 'spring sale', 'adset': 'a', 'ad': 'b', 'date': '05/01/2024'},
            campaign_id='c1', adset_id='s1', ad_id='ad1',
        )
        sale = make_sale(
            1, source='meta', tracking_id_4='c1', tracking_id_2='s1',
            tracking_id='ad1', date='2024-01-05',
        )
        dims = ['network', 'campaign', 'adset', 'ad', 'date']

        assert ad_match_key(row, dims) == sale_match_key(sale, dims)
        assert ad_match_key(row, dims) == ('facebook', 'c1', 's1', 'ad1', '2024-01-05')


# ============================================================
# EXACT MATCHING
# ============================================================

class TestExactMatch:
    """One CRM group per join key, attached to the row carrying that key."""

    def test_one_to_one_counts_equal_group_counts(self, facebook_ad_rows, campaign_sales):
        attached = attach_crm_metrics(facebook_ad_rows, campaign_sales, ['network', 'campaign'])

        assert attached[0].attached == compute_crm_counts(campaign_sales[0:2])
        assert attached[1].attached == compute_crm_counts(campaign_sales[2:3])
        assert attached[2].attached == compute_crm_counts(campaign_sales[3:4])

    def test_unmatched_crm_group_is_not_attached(self, facebook_ad_rows, campaign_sales):
        attached = attach_crm_metrics(facebook_ad_rows, campaign_sales, ['network', 'campaign'])

        total_subs = sum(row.attached.subscriptions for row in attached)
        # sale 5 (campaign c9) has no ad row
        assert total_subs == 4

    def test_row_without_match_gets_zero_counts(self, campaign_sales):
        rows = [make_ad_row({'network': 'Facebook', 'campaign': 'x'}, campaign_id='nope')]

        (row,) = attach_crm_metrics(rows, campaign_sales, ['network', 'campaign'])

        assert row.attached == CrmCounts()

    def test_no_matchable_dimension_returns_rows_unchanged(self, facebook_ad_rows, campaign_sales):
        result = attach_crm_metrics(facebook_ad_rows, campaign_sales, ['classifiedProduct'])

        assert result == facebook_ad_rows
        assert all(row.attached is None for row in result)

    def test_input_rows_are_not_mutated(self, facebook_ad_rows, campaign_sales):
        attach_crm_metrics(facebook_ad_rows, campaign_sales, ['network', 'campaign'])

        assert all(row.attached is None for row in facebook_ad_rows)

    def test_network_only_join(self, facebook_ad_rows, campaign_sales):
        attached = attach_crm_metrics(facebook_ad_rows[:1] + facebook_ad_rows[2:], campaign_sales, ['network'])

        # all four facebook/meta/fb sales land on the only Facebook row
        assert attached[0].attached.subscriptions == 4
        assert attached[1].attached.subscriptions == 1


# ============================================================
# PROPORTIONAL SPLIT
# ============================================================

class TestProportionalSplit:
    """Classified dimensions split one CRM group across rows by impressions."""

    @pytest.fixture
    def classified_rows(self):
        return [
            make_ad_row(
                {'network': 'Facebook', 'campaign': 'spring', 'classifiedProduct': 'flex'},
                campaign_id='c1', impressions=300.0,
            ),
            make_ad_row(
                {'network': 'Facebook', 'campaign': 'spring', 'classifiedProduct': 'repair'},
                campaign_id='c1', impressions=100.0,
            ),
        ]

    @pytest.fixture
    def ten_trials(self):
        return [make_sale(i, source='facebook', tracking_id_4='c1') for i in range(1, 11)]

    def test_split_by_impressions(self, classified_rows, ten_trials):
        dims = ['network', 'campaign', 'classifiedProduct']

        flex, repair = attach_crm_metrics(classified_rows, ten_trials, dims)

        assert flex.attached.trials == pytest.approx(7.5)
        assert repair.attached.trials == pytest.approx(2.5)

    def test_split_conserves_group_totals(self, classified_rows, ten_trials):
        dims = ['network', 'campaign', 'classifiedProduct']

        attached = attach_crm_metrics(classified_rows, ten_trials, dims)

        group = compute_crm_counts(ten_trials)
        for name, value in group.as_dict().items():
            assert sum(getattr(row.attached, name) for row in attached) == pytest.approx(value)

    def test_zero_weight_rows_get_zero(self, ten_trials):
        rows = [
            make_ad_row({'network': 'Facebook', 'classifiedProduct': 'a'}, campaign_id='c1', impressions=0.0),
            make_ad_row({'network': 'Facebook', 'classifiedProduct': 'b'}, campaign_id='c1', impressions=0.0),
        ]

        attached = attach_crm_metrics(rows, ten_trials, ['network', 'classifiedProduct'])

        assert [row.attached.trials for row in attached] == [0.0, 0.0]

    def test_custom_weight_measure(self, ten_trials):
        rows = [
            make_ad_row({'network': 'Facebook', 'classifiedCountry': 'no'}, cost=1.0, impressions=9.0),
            make_ad_row({'network': 'Facebook', 'classifiedCountry': 'se'}, cost=3.0, impressions=1.0),
        ]

        no, se = attach_crm_metrics(rows, ten_trials, ['network', 'classifiedCountry'], weight_measure='cost')

        assert no.attached.trials == pytest.approx(2.5)
        assert se.attached.trials == pytest.approx(7.5)


# ============================================================
# FALLBACK
# ============================================================

class TestFallback:
    """Opt-in retry of unmatched CRM groups on shorter key prefixes."""

    @pytest.fixture
    def rows(self):
        return [
            make_ad_row({'network': 'Facebook', 'campaign': 'a'}, campaign_id='c1', impressions=300.0),
            make_ad_row({'network': 'Facebook', 'campaign': 'b'}, campaign_id='c2', impressions=100.0),
        ]

    @pytest.fixture
    def orphan_sales(self):
        # tracked to a campaign no ad row carries
        return [make_sale(i, source='facebook', tracking_id_4='gone') for i in range(1, 5)]

    def test_disabled_by_default(self, rows, orphan_sales):
        attached = attach_crm_metrics(rows, orphan_sales, ['network', 'campaign'])

        assert sum(row.attached.trials for row in attached) == 0

    def test_distributes_on_network_prefix(self, rows, orphan_sales):
        a, b = attach_crm_metrics(rows, orphan_sales, ['network', 'campaign'], fallback=True)

        assert a.attached.trials == pytest.approx(3.0)
        assert b.attached.trials == pytest.approx(1.0)

    def test_exact_matches_are_kept(self, rows, orphan_sales):
        sales = orphan_sales + [make_sale(99, source='facebook', tracking_id_4='c2')]

        a, b = attach_crm_metrics(rows, sales, ['network', 'campaign'], fallback=True)

        assert b.attached.trials == pytest.approx(2.0)
        assert a.attached.trials + b.attached.trials == pytest.approx(5.0)


# ============================================================
# NODE DETAILS
# ============================================================

class TestFilterSalesForNode:
    """CRM sales behind one marketing node."""

    def test_campaign_name_resolved_through_ad_rows(self, facebook_ad_rows, campaign_sales):
        matched = filter_sales_for_node(
            campaign_sales,
            {'network': 'Facebook', 'campaign': 'spring sale'},
            facebook_ad_rows,
            ['network', 'campaign'],
        )

        assert [sale.id for sale in matched] == [1, 2]

    def test_network_node(self, facebook_ad_rows, campaign_sales):
        matched = filter_sales_for_node(
            campaign_sales,
            {'network': 'Facebook'},
            facebook_ad_rows,
            ['network', 'campaign'],
        )

        assert [sale.id for sale in matched] == [1, 2, 3]

    def test_no_matching_ad_row(self, facebook_ad_rows, campaign_sales):
        matched = filter_sales_for_node(
            campaign_sales, {'network': 'TikTok'}, facebook_ad_rows, ['network'],
        )

        assert matched == []

    def test_no_sales(self, facebook_ad_rows):
        assert filter_sales_for_node([], {'network': 'Facebook'}, facebook_ad_rows, ['network']) == []
