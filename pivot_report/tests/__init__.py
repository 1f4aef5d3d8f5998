'''
Pivot Report Backend Test Suite

Test Modules:
-------------
- test_metrics.py: Metrics aggregation
  - Mutually exclusive CRM buckets, customer deduplication
  - Zero-denominator ratios, ad-spend derived metrics
  - Display rounding, daily aggregates

- test_crm_matching.py: CRM counts attached to ad-spend rows
  - Network/source vocabulary, date conversion
  - 1:1 exact match, proportional split, conservation
  - Opt-in prefix fallback, node detail filtering

- test_tree_builder.py: Flat rows to TreeNodes
  - Keys, depth, leaves, rollups computed from rows
  - "Unknown" missing-value node, lazy and single-level builds

- test_tree_sorter.py: Uniform metric sort, date levels most recent first

- test_expansion_state.py: Key codec, arena, reducer, persistence rules

- test_expansion.py: Load / restore / toggle against a stub fetcher
  - Partial failure, stale keys, cancellation, busy guard
  - Batching, timeouts, one-tick persistence hold

- test_row_source.py: DataFrame and asyncpg row sources, level fetchers

- test_api.py: HTTP contract (200/400/500)

Running Tests:
--------------
    pip install -e ".[test]"
    pytest pivot_report/tests/ -v

Configuration:
--------------
See conftest.py for shared fixtures and test configuration.
'''

__all__ = []
