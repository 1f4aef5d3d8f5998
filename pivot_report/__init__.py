"""
Pivot Report Backend Package.

FastAPI service layer behind the hierarchical pivot tables: ad-spend rows
with CRM sales matched on, and CRM sales on their own, rolled up into
expandable trees.

Subpackages:
    - api: FastAPI route handlers
    - core: Configuration, database, and dependencies
    - models: Pydantic schemas and enums
    - services: Metrics, CRM matching, tree building/sorting, expansion
      reconciliation and row sources
    - sql: Parameterized SQL queries
"""

__version__ = "1.0.0"
