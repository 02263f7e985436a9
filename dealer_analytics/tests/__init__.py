'''
Dealer Analytics Test Suite

Test Modules:
-------------
- test_scope.py: Scope filter construction
  - Tenant always taken from identity
  - Restricted callers can only narrow, never widen
  - Inclusive date ranges, malformed input rejected

- test_aggregation.py: Pipeline composition and execution
  - Scope match placement after lookups
  - Joins, unwind, group, rollup, sort, limit

- test_metrics.py: Null-safe derivation
  - Zero/absent denominators yield 0
  - Half-up rounding, dependency ordering, cycle detection

- test_scoring.py: Composite scores, bands and rule tables

- test_trends.py: Time-bucketed timelines and value ranges

- test_envelope.py: Success and error envelopes

- test_repository.py: asyncpg and in-memory repositories

- test_reports.py: Every registered report over sample documents

- test_api.py: HTTP status codes and envelopes through TestClient

Running Tests:
--------------
    pip install -e ".[test]"
    pytest -v
    pytest -m scoping

Configuration:
--------------
See conftest.py for shared fixtures and test configuration.
'''

# This file enables pytest discovery of the tests directory

__all__ = []
