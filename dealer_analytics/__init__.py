"""
Dealer Analytics Package.

FastAPI service producing tenant-scoped analytics reports over dealership
operations data. Every report runs the same pipeline: scope filter,
aggregation, metric derivation, composite scoring, response envelope.

Subpackages:
    - api: FastAPI route handlers
    - core: Configuration, database, errors and dependencies
    - models: Pydantic schemas and enums
    - services: Pipeline services (scope, aggregation, metrics, scoring, envelope)
    - reports: Report definitions and the report registry
    - sql: Parameterized SQL queries
"""

__version__ = "1.0.0"
