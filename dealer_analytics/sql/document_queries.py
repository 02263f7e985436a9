"""
Parameterized SQL for the report document store.

Each entity lives in its own table with the layout:

    <entity> (id text PRIMARY KEY, company_id text NOT NULL, document jsonb NOT NULL)

Only the tenant match is pushed down to PostgreSQL; every later pipeline
stage runs in process over the returned documents. Table names are taken
from the EntityType enum, never from request input, and the tenant id is
always a bound parameter.
"""

from typing import Dict

from dealer_analytics.models.enums import EntityType


# Resolved once; a value outside this mapping can never reach a query
DOCUMENT_TABLES: Dict[EntityType, str] = {entity: entity.value for entity in EntityType}


def get_table_name(entity: EntityType) -> str:
    """Backing table for `entity`. Raises KeyError for unknown entities."""
    return DOCUMENT_TABLES[EntityType(entity)]


def get_tenant_documents_query(entity: EntityType) -> str:
    """
    SQL returning every document of one entity for one tenant.

    Parameters:
        $1: tenant (company) id

    Returns:
        str: Query yielding (company_id, document) rows in insertion order.

    Example:
        >>> get_tenant_documents_query(EntityType.VEHICLE)
        'SELECT company_id, document FROM vehicles WHERE company_id = $1 ORDER BY id'
    """
    table = get_table_name(entity)
    return f"SELECT company_id, document FROM {table} WHERE company_id = $1 ORDER BY id"


__all__ = [
    "DOCUMENT_TABLES",
    "get_table_name",
    "get_tenant_documents_query",
]
