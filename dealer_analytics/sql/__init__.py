"""
SQL Query Module for the report service.

Provides the parameterized queries used by PostgresRepository to load
tenant-scoped documents. Re-exported here so callers can write:

    from dealer_analytics.sql import get_tenant_documents_query
"""

from dealer_analytics.sql.document_queries import (
    DOCUMENT_TABLES,
    get_table_name,
    get_tenant_documents_query,
)


__all__ = [
    'DOCUMENT_TABLES',
    'get_table_name',
    'get_tenant_documents_query',
]
