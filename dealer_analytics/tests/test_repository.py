"""
Report Repository Tests

Covers:
- PostgresRepository query shape, JSONB decoding and tenant defaulting
- Timeout and driver failures classified as DatabaseError
- InMemoryRepository tenant filtering and copy semantics
- Parameterized document queries
"""

import asyncio
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest

from dealer_analytics.core.config import Settings
from dealer_analytics.core.errors import DatabaseError
from dealer_analytics.models.enums import EntityType
from dealer_analytics.services.repository import InMemoryRepository, PostgresRepository
from dealer_analytics.sql.document_queries import get_table_name, get_tenant_documents_query


# =============================================================================
# SQL
# =============================================================================

class TestDocumentQueries:

    def test_tenant_is_bound_parameter(self):
        query = get_tenant_documents_query(EntityType.VEHICLE)

        assert query == "SELECT company_id, document FROM vehicles WHERE company_id = $1 ORDER BY id"

    def test_table_names_come_from_enum(self):
        assert get_table_name(EntityType.WORKSHOP_QUOTE) == "workshop_quotes"
        assert get_table_name("currencies") == "currencies"

    def test_unknown_table_is_rejected(self):
        with pytest.raises(ValueError):
            get_table_name("vehicles; DROP TABLE users")


# =============================================================================
# PostgreSQL Repository
# =============================================================================

@pytest.mark.asyncio
class TestPostgresRepository:
    """PostgresRepository over a mocked asyncpg pool."""

    async def test_fetch_documents(self, test_settings, mock_db_pool, mock_connection):
        mock_connection.fetch.return_value = [
            {"company_id": "company-1", "document": {"_id": "veh-1", "vehicle_type": "inspection"}},
        ]
        repo = PostgresRepository(test_settings, pool=mock_db_pool)

        documents = await repo.fetch_documents(EntityType.VEHICLE, "company-1")

        assert documents == [{"_id": "veh-1", "vehicle_type": "inspection", "company_id": "company-1"}]
        mock_connection.fetch.assert_awaited_once_with(
            get_tenant_documents_query(EntityType.VEHICLE), "company-1"
        )

    async def test_text_documents_are_decoded(self, test_settings, mock_db_pool, mock_connection):
        mock_connection.fetch.return_value = [
            {"company_id": "company-1", "document": '{"_id": "veh-1", "company_id": "company-1"}'},
        ]
        repo = PostgresRepository(test_settings, pool=mock_db_pool)

        documents = await repo.fetch_documents(EntityType.VEHICLE, "company-1")

        assert documents[0]["_id"] == "veh-1"

    async def test_malformed_document(self, test_settings, mock_db_pool, mock_connection):
        mock_connection.fetch.return_value = [{"company_id": "company-1", "document": 42}]
        repo = PostgresRepository(test_settings, pool=mock_db_pool)

        with pytest.raises(DatabaseError, match="Malformed vehicles"):
            await repo.fetch_documents(EntityType.VEHICLE, "company-1")

    async def test_timeout(self, mock_db_pool):
        settings = Settings(database_url="postgresql://localhost/test", query_timeout_seconds=0.01)
        repo = PostgresRepository(settings, pool=mock_db_pool)

        async def slow_fetch(query, tenant_id):
            await asyncio.sleep(1)
            return []

        with patch.object(repo, "_fetch", side_effect=slow_fetch):
            with pytest.raises(DatabaseError) as exc_info:
                await repo.fetch_documents(EntityType.WORKFLOW_EXECUTION, "company-1")

        assert exc_info.value.timed_out is True
        assert exc_info.value.details["entity"] == "workflow_executions"

    async def test_os_error(self, test_settings, mock_db_pool, mock_connection):
        mock_connection.fetch.side_effect = OSError("connection refused")
        repo = PostgresRepository(test_settings, pool=mock_db_pool)

        with pytest.raises(DatabaseError) as exc_info:
            await repo.fetch_documents(EntityType.USER, "company-1")

        assert exc_info.value.timed_out is False
        assert exc_info.value.details["driver_error"] == "OSError"

    async def test_interface_error(self, test_settings, mock_db_pool, mock_connection):
        mock_connection.fetch.side_effect = asyncpg.InterfaceError("pool is closed")
        repo = PostgresRepository(test_settings, pool=mock_db_pool)

        with pytest.raises(DatabaseError):
            await repo.fetch_documents(EntityType.USER, "company-1")

    async def test_unreachable_shared_pool(self, test_settings):
        repo = PostgresRepository(test_settings)

        with patch(
            "dealer_analytics.services.repository.get_db_pool",
            AsyncMock(side_effect=OSError("could not connect")),
        ):
            with pytest.raises(DatabaseError):
                await repo.fetch_documents(EntityType.VEHICLE, "company-1")

    async def test_error_message_hides_driver_detail(self, test_settings, mock_db_pool, mock_connection):
        mock_connection.fetch.side_effect = OSError("10.0.0.5:5432 refused")
        repo = PostgresRepository(test_settings, pool=mock_db_pool)

        with pytest.raises(DatabaseError) as exc_info:
            await repo.fetch_documents(EntityType.USER, "company-1")

        assert "10.0.0.5" not in exc_info.value.message


# =============================================================================
# In-Memory Repository
# =============================================================================

@pytest.mark.asyncio
class TestInMemoryRepository:

    @pytest.mark.scoping
    async def test_tenant_filter(self, repository):
        vehicles = await repository.fetch_documents(EntityType.VEHICLE, "company-1")

        assert {doc["_id"] for doc in vehicles} == {"veh-1", "veh-2", "veh-3"}

    async def test_other_tenant(self, repository):
        vehicles = await repository.fetch_documents(EntityType.VEHICLE, "company-2")

        assert [doc["_id"] for doc in vehicles] == ["veh-9"]

    async def test_missing_collection_is_empty(self, empty_repository):
        assert await empty_repository.fetch_documents(EntityType.CURRENCY, "company-1") == []

    async def test_documents_are_copies(self, repository):
        first = await repository.fetch_documents(EntityType.VEHICLE, "company-1")
        first[0]["make"] = "Changed"

        second = await repository.fetch_documents(EntityType.VEHICLE, "company-1")

        assert second[0].get("make") != "Changed"

    async def test_accepts_table_names(self):
        repo = InMemoryRepository({"currencies": [{"_id": "cur-1", "company_id": "company-1"}]})

        assert len(await repo.fetch_documents(EntityType.CURRENCY, "company-1")) == 1
