"""
Report Repositories

Reports never reach for a collection handle themselves: the repository that
executes their pipelines is injected explicitly (a FastAPI dependency in
production, a fixture in tests).

Implementations:
- ReportRepository: abstract interface. run_aggregation() loads the source
  and joined documents via fetch_documents() and runs the in-process stages.
- InMemoryRepository: documents held in plain lists, used by tests and local
  tooling.
- PostgresRepository: JSONB documents loaded through the shared asyncpg pool.
  The tenant match is pushed down as `WHERE company_id = $1` and every fetch
  is bounded by Settings.query_timeout_seconds.

Error Classification:
- asyncio.TimeoutError -> DatabaseError(timed_out=True)
- asyncpg.PostgresError, asyncpg.InterfaceError, OSError -> DatabaseError
- asyncio.CancelledError is never caught; a cancelled request abandons its
  in-flight query.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

import asyncpg
from asyncpg import Pool

from dealer_analytics.core.config import Settings
from dealer_analytics.core.database import get_db_pool
from dealer_analytics.core.errors import DatabaseError
from dealer_analytics.models.enums import EntityType
from dealer_analytics.services.aggregation import TENANT_FIELD, Pipeline, execute_pipeline
from dealer_analytics.services.entities import id_of
from dealer_analytics.sql.document_queries import get_tenant_documents_query


logger = logging.getLogger(__name__)


class ReportRepository(ABC):
    """Read-only access to tenant documents plus pipeline execution."""

    @abstractmethod
    async def fetch_documents(self, entity: EntityType, tenant_id: str) -> List[Dict[str, Any]]:
        """Return every document of `entity` belonging to `tenant_id`."""

    async def run_aggregation(self, pipeline: Pipeline) -> List[Dict[str, Any]]:
        """
        Execute a composed pipeline.

        Args:
            pipeline: Output of compose_pipeline().

        Returns:
            Ordered group result rows.

        Raises:
            DatabaseError: If loading any entity fails or times out.
        """
        documents = await self.fetch_documents(pipeline.source, pipeline.tenant_id)

        join_documents: Dict[EntityType, List[Dict[str, Any]]] = {}
        for join in pipeline.lookups:
            entity = EntityType(join.entity)
            if entity in join_documents:
                continue
            if entity == pipeline.source:
                join_documents[entity] = documents
            else:
                join_documents[entity] = await self.fetch_documents(entity, pipeline.tenant_id)

        return execute_pipeline(pipeline, documents, join_documents)


class InMemoryRepository(ReportRepository):
    """
    Repository over in-process document lists.

    Args:
        collections: Documents keyed by entity (enum member or table name).
    """

    def __init__(self, collections: Optional[Mapping[Any, Iterable[Mapping[str, Any]]]] = None) -> None:
        self._collections: Dict[EntityType, List[Dict[str, Any]]] = {}
        for entity, documents in (collections or {}).items():
            self._collections[EntityType(entity)] = [dict(doc) for doc in documents]

    async def fetch_documents(self, entity: EntityType, tenant_id: str) -> List[Dict[str, Any]]:
        documents = [
            dict(doc) for doc in self._collections.get(EntityType(entity), [])
            if id_of(doc.get(TENANT_FIELD)) == tenant_id
        ]
        logger.debug("Loaded %d %s documents from memory", len(documents), EntityType(entity).value)
        return documents


class PostgresRepository(ReportRepository):
    """
    Repository over the PostgreSQL JSONB document tables.

    Args:
        settings: Application settings; supplies the query timeout.
        pool: asyncpg pool. When omitted the shared pool from
            core/database.py is used, created on first fetch.
    """

    def __init__(self, settings: Settings, pool: Optional[Pool] = None) -> None:
        self._pool = pool
        self._timeout = settings.query_timeout_seconds

    @staticmethod
    def _to_document(row: Mapping[str, Any]) -> Dict[str, Any]:
        document = row["document"]
        # Connections without the JSONB codec hand back text
        if isinstance(document, (str, bytes)):
            document = json.loads(document)
        document = dict(document)
        document.setdefault(TENANT_FIELD, row["company_id"])
        return document

    async def _fetch(self, query: str, tenant_id: str) -> List[Mapping[str, Any]]:
        pool = self._pool if self._pool is not None else await get_db_pool()
        async with pool.acquire() as conn:
            return await conn.fetch(query, tenant_id)

    async def fetch_documents(self, entity: EntityType, tenant_id: str) -> List[Dict[str, Any]]:
        entity = EntityType(entity)
        query = get_tenant_documents_query(entity)

        try:
            rows = await asyncio.wait_for(self._fetch(query, tenant_id), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                "Timed out after %.1fs loading %s for tenant %s",
                self._timeout, entity.value, tenant_id,
            )
            raise DatabaseError(
                f"Timed out loading {entity.value}",
                details={"entity": entity.value, "timeout_seconds": self._timeout},
                timed_out=True,
            ) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("Failed loading %s for tenant %s: %s", entity.value, tenant_id, e)
            raise DatabaseError(
                f"Failed loading {entity.value}",
                details={"entity": entity.value, "driver_error": type(e).__name__},
            ) from e

        try:
            documents = [self._to_document(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise DatabaseError(
                f"Malformed {entity.value} document",
                details={"entity": entity.value},
            ) from e

        logger.debug("Loaded %d %s documents for tenant %s", len(documents), entity.value, tenant_id)
        return documents


__all__ = [
    "ReportRepository",
    "InMemoryRepository",
    "PostgresRepository",
]
