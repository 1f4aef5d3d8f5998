"""
Metrics aggregation service for the pivot report backend.

This module reduces a group of flat rows into one metrics record. It is the
only place metric formulas live; the tree builder, the CRM matcher and the
time-series endpoint all call into it so every consumer sees identical
numbers.

Key Functions:
- compute_crm_counts: Single pass over CRM sales into CrmCounts
- calculate_sales_metrics: Metrics record for a group of CRM sales
- calculate_ad_metrics: Metrics record for a group of ad-spend rows
  (base measures plus attached CRM counts)
- aggregate_by_date: Daily sales aggregates for the time-series chart
- round_for_display: Rounds count metrics at serialization time
- round_tree_for_display: Same, over a tree of nodes

CRM Buckets (mutually exclusive per sale):
- primary subscription: kind == subscription and not is_upsell_sub
- upsell subscription: kind == subscription and is_upsell_sub
- one-time sale: kind == one_time_sale
- upsell invoice: kind == upsell

Derived Metrics (ratio := 0 when the denominator is 0):
- approvalRate = trialsApproved / subscriptions
- otsApprovalRate = otsApproved / ots
- upsellApprovalRate = upsellsApproved / upsells
- ctr = clicks / impressions
- cpc = cost / clicks
- cpm = cost / impressions * 1000
- conversionRate = conversions / impressions
- realCpa = cost / trials

Customer Counting:
- customers: distinct customer IDs flagged new on a primary subscription
- upsellNewCustomers: distinct new customers seen only via upsell
  subscriptions within the group

All functions are pure: same inputs, same outputs, no logging.
"""

from collections import OrderedDict
from typing import Dict, Iterable, List, Sequence, Set

from pivot_report.models.enums import SaleKind
from pivot_report.models.schemas import (
    AdSpendRecord,
    CrmCounts,
    DailyAggregate,
    SaleRecord,
    TreeNode,
)


# Metrics that are counts of things and display as integers
COUNT_METRICS = frozenset({
    'customers',
    'upsellNewCustomers',
    'subscriptions',
    'upsellSubs',
    'upsellSubTrials',
    'trials',
    'trialsApproved',
    'onHold',
    'ots',
    'otsApproved',
    'upsells',
    'upsellsApproved',
    'upsellsDeleted',
    'realCpa',
})

AD_BASE_MEASURES = ('cost', 'clicks', 'impressions', 'conversions')


def safe_ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0.0 when the denominator is not positive."""
    return numerator / denominator if denominator > 0 else 0.0


# =============================================================================
# CRM Counters
# =============================================================================


def compute_crm_counts(sales: Iterable[SaleRecord]) -> CrmCounts:
    """
    Reduce a group of CRM sales into CrmCounts in a single pass.

    Each sale lands in exactly one bucket so sums never double count.
    Customer counts are deduplicated by customer_id, so several sales by the
    same new customer count once.

    Args:
        sales: CRM sale records sharing a dimension prefix.

    Returns:
        CrmCounts for the group. Sales of an unrecognized kind are ignored.

    Example:
        >>> counts = compute_crm_counts(sales)
        >>> counts.subscriptions
        12.0
    """
    subscriptions = 0
    upsell_subs = 0
    upsell_sub_trials = 0
    trials = 0
    trials_approved = 0
    on_hold = 0
    ots = 0
    ots_approved = 0
    upsells = 0
    upsells_approved = 0
    upsells_deleted = 0

    new_customer_ids: Set[int] = set()
    upsell_new_customer_ids: Set[int] = set()

    for sale in sales:
        if sale.kind == SaleKind.SUBSCRIPTION:
            if sale.is_upsell_sub:
                upsell_subs += 1
                if sale.has_trial:
                    upsell_sub_trials += 1
                if sale.is_new_customer:
                    upsell_new_customer_ids.add(sale.customer_id)
            else:
                subscriptions += 1
                if sale.has_trial:
                    trials += 1
                if sale.is_approved:
                    trials_approved += 1
                if sale.is_on_hold:
                    on_hold += 1
                if sale.is_new_customer:
                    new_customer_ids.add(sale.customer_id)
        elif sale.kind == SaleKind.ONE_TIME_SALE:
            ots += 1
            if sale.is_approved:
                ots_approved += 1
        elif sale.kind == SaleKind.UPSELL:
            upsells += 1
            if sale.is_deleted:
                upsells_deleted += 1
            elif sale.is_approved:
                upsells_approved += 1

    return CrmCounts(
        customers=float(len(new_customer_ids)),
        upsell_new_customers=float(len(upsell_new_customer_ids - new_customer_ids)),
        subscriptions=float(subscriptions),
        upsell_subs=float(upsell_subs),
        upsell_sub_trials=float(upsell_sub_trials),
        trials=float(trials),
        trials_approved=float(trials_approved),
        on_hold=float(on_hold),
        ots=float(ots),
        ots_approved=float(ots_approved),
        upsells=float(upsells),
        upsells_approved=float(upsells_approved),
        upsells_deleted=float(upsells_deleted),
    )


def crm_counts_to_metrics(counts: CrmCounts) -> Dict[str, float]:
    """
    Expand CrmCounts into the camelCase CRM section of a metrics record,
    including the CRM ratio metrics.
    """
    return {
        'customers': counts.customers,
        'upsellNewCustomers': counts.upsell_new_customers,
        'subscriptions': counts.subscriptions,
        'upsellSubs': counts.upsell_subs,
        'upsellSubTrials': counts.upsell_sub_trials,
        'trials': counts.trials,
        'trialsApproved': counts.trials_approved,
        'approvalRate': safe_ratio(counts.trials_approved, counts.subscriptions),
        'onHold': counts.on_hold,
        'ots': counts.ots,
        'otsApproved': counts.ots_approved,
        'otsApprovalRate': safe_ratio(counts.ots_approved, counts.ots),
        'upsells': counts.upsells,
        'upsellsApproved': counts.upsells_approved,
        'upsellsDeleted': counts.upsells_deleted,
        'upsellApprovalRate': safe_ratio(counts.upsells_approved, counts.upsells),
    }


# =============================================================================
# Metrics Records
# =============================================================================


def calculate_sales_metrics(sales: Sequence[SaleRecord]) -> Dict[str, float]:
    """
    Metrics record for a group of CRM sales (sales dashboard tree).

    Returns:
        The CRM counters and ratios plus `total` revenue.
    """
    metrics = crm_counts_to_metrics(compute_crm_counts(sales))
    metrics['total'] = float(sum(sale.total for sale in sales))
    return metrics


def calculate_ad_metrics(rows: Sequence[AdSpendRecord]) -> Dict[str, float]:
    """
    Metrics record for a group of ad-spend rows (marketing tree).

    Base measures and attached CRM counts are summed across the group and
    every derived metric is computed from those sums, never averaged from
    per-row ratios. Attached counts may be fractional; they stay fractional
    here and are rounded by round_for_display.

    Args:
        rows: Ad-spend rows, matched or not. Unmatched rows contribute zero
            CRM counts.

    Returns:
        Metrics record with cost, clicks, impressions, conversions, ctr, cpc,
        cpm, conversionRate, the CRM section and realCpa.
    """
    sums = dict.fromkeys(AD_BASE_MEASURES, 0.0)
    attached = CrmCounts()

    for row in rows:
        for measure in AD_BASE_MEASURES:
            sums[measure] += row.measure(measure)
        if row.attached is not None:
            attached = attached + row.attached

    cost = sums['cost']
    clicks = sums['clicks']
    impressions = sums['impressions']
    conversions = sums['conversions']

    metrics: Dict[str, float] = {
        'cost': cost,
        'clicks': clicks,
        'impressions': impressions,
        'conversions': conversions,
        'ctr': safe_ratio(clicks, impressions),
        'cpc': safe_ratio(cost, clicks),
        'cpm': safe_ratio(cost, impressions) * 1000,
        'conversionRate': safe_ratio(conversions, impressions),
    }
    metrics.update(crm_counts_to_metrics(attached))
    metrics['realCpa'] = safe_ratio(cost, attached.trials)
    return metrics


def round_for_display(metrics: Dict[str, float]) -> Dict[str, float]:
    """
    Round count metrics to whole numbers for display.

    Only called when serializing a response; the pipeline itself keeps
    fractional counts so proportional shares do not compound rounding error.
    """
    return {
        name: float(round(value)) if name in COUNT_METRICS else value
        for name, value in metrics.items()
    }


def round_tree_for_display(nodes: Sequence[TreeNode]) -> List[TreeNode]:
    """Copies of the nodes (and materialized children) with display-rounded metrics."""
    rounded = []
    for node in nodes:
        changes: Dict[str, object] = {'metrics': round_for_display(node.metrics)}
        if node.children is not None:
            changes['children'] = round_tree_for_display(node.children)
        rounded.append(node.model_copy(update=changes))
    return rounded


# =============================================================================
# Time Series
# =============================================================================


def aggregate_by_date(sales: Sequence[SaleRecord]) -> List[DailyAggregate]:
    """
    Aggregate CRM sales by date for the time-series chart.

    Returns:
        One DailyAggregate per distinct date, sorted chronologically.
    """
    by_date: Dict[str, List[SaleRecord]] = OrderedDict()
    for sale in sales:
        by_date.setdefault(sale.date, []).append(sale)

    result = []
    for day in sorted(by_date):
        metrics = calculate_sales_metrics(by_date[day])
        result.append(DailyAggregate(
            date=day,
            customers=metrics['customers'],
            subscriptions=metrics['subscriptions'],
            trialsApproved=metrics['trialsApproved'],
            onHold=metrics['onHold'],
            approvalRate=metrics['approvalRate'],
            upsells=metrics['upsells'],
            ots=metrics['ots'],
        ))
    return result


__all__ = [
    'COUNT_METRICS',
    'safe_ratio',
    'compute_crm_counts',
    'crm_counts_to_metrics',
    'calculate_sales_metrics',
    'calculate_ad_metrics',
    'round_for_display',
    'round_tree_for_display',
    'aggregate_by_date',
]
