"""
HTTP API Tests

Exercises the FastAPI app through TestClient with the repository and
settings dependencies overridden, covering:
- Success envelopes and effective filter echo
- 400 envelopes for malformed filters
- 401 when no tenant identity is attached
- 500 envelopes with generic messages for store and wiring failures
- Catalog, health and root endpoints
"""

from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from dealer_analytics.core.dependencies import get_repository, get_settings_dependency
from dealer_analytics.core.errors import DatabaseError
from dealer_analytics.main import app
from dealer_analytics.models.enums import EntityType
from dealer_analytics.reports import REPORT_REGISTRY
from dealer_analytics.services.repository import ReportRepository


ADMIN_HEADERS = {"X-Tenant-Id": "company-1", "X-User-Role": "company_super_admin", "X-Primary-Admin": "true"}
RESTRICTED_HEADERS = {"X-Tenant-Id": "company-1", "X-User-Role": "company_admin", "X-Dealership-Ids": "dealer-1"}


class FailingRepository(ReportRepository):
    """Repository whose every fetch raises `error`."""

    def __init__(self, error: Exception) -> None:
        self.error = error

    async def fetch_documents(self, entity: EntityType, tenant_id: str) -> List[Dict[str, Any]]:
        raise self.error


@pytest.fixture
def client(repository, test_settings):
    """TestClient with the sample repository injected (lifespan not started)."""
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_settings_dependency] = lambda: test_settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use_repository(repo: ReportRepository) -> None:
    app.dependency_overrides[get_repository] = lambda: repo


# =============================================================================
# Report Endpoints
# =============================================================================

@pytest.mark.integration
class TestReportEndpoints:

    def test_success_envelope(self, client):
        response = client.get("/api/company/reports/vehicle/overview-by-type", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["summary"]["totalVehicles"] == 3
        assert body["metadata"]["reportType"] == "vehicle/overview-by-type"
        assert body["metadata"]["totalRecords"] == 1
        assert body["metadata"]["filters"] == {
            "tenantId": "company-1",
            "dealershipIds": None,
            "dateRange": None,
        }

    def test_query_parameters_narrow_scope(self, client):
        response = client.get(
            "/api/company/reports/vehicle/overview-by-type",
            params={"dealershipId": "dealer-2", "startDate": "2024-04-01", "endDate": "2024-04-30"},
            headers=ADMIN_HEADERS,
        )

        body = response.json()
        assert body["data"]["summary"]["totalVehicles"] == 1
        assert body["metadata"]["filters"]["dealershipIds"] == ["dealer-2"]
        assert body["metadata"]["filters"]["dateRange"]["start"] == "2024-04-01T00:00:00Z"

    @pytest.mark.scoping
    def test_restricted_caller_cannot_widen_scope(self, client):
        response = client.get(
            "/api/company/reports/workshop-quote/overview-by-status",
            params={"dealershipId": "dealer-2"},
            headers=RESTRICTED_HEADERS,
        )

        body = response.json()
        assert response.status_code == 200
        assert body["metadata"]["filters"]["dealershipIds"] == ["dealer-1"]
        assert body["data"]["summary"]["totalQuotes"] == 1

    @pytest.mark.scoping
    def test_tenant_comes_from_identity(self, client):
        response = client.get(
            "/api/company/reports/vehicle/overview-by-type",
            params={"tenantId": "company-1"},
            headers={"X-Tenant-Id": "company-2", "X-Primary-Admin": "true"},
        )

        body = response.json()
        assert body["metadata"]["filters"]["tenantId"] == "company-2"
        assert body["data"]["summary"]["totalVehicles"] == 1

    def test_bad_date_is_400(self, client):
        response = client.get(
            "/api/company/reports/vehicle/overview-by-type",
            params={"startDate": "not-a-date"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["kind"] == "ValidationError"
        assert "startDate" in body["error"]["message"]

    def test_inverted_range_is_400(self, client):
        response = client.get(
            "/api/company/reports/service-bay/utilization",
            params={"startDate": "2024-05-01", "endDate": "2024-04-01"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "startDate must not be after endDate"

    def test_missing_tenant_is_401(self, client):
        response = client.get("/api/company/reports/vehicle/overview-by-type")

        assert response.status_code == 401

    def test_database_error_is_generic_500(self, client):
        _use_repository(FailingRepository(DatabaseError("connection refused at 10.0.0.5", timed_out=True)))

        response = client.get("/api/company/reports/workflow/success-rates", headers=ADMIN_HEADERS)

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": {"kind": "DatabaseError", "message": "Error generating Workflow Success Rates report"},
        }

    def test_unclassified_error_is_configuration_500(self, client):
        _use_repository(FailingRepository(RuntimeError("boom")))

        response = client.get("/api/company/reports/integration/status-overview", headers=ADMIN_HEADERS)

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["kind"] == "ConfigurationError"
        assert "boom" not in body["error"]["message"]

    def test_empty_tenant_is_200(self, client):
        response = client.get(
            "/api/company/reports/cost-configuration/type-utilization",
            headers={"X-Tenant-Id": "company-without-data", "X-Primary-Admin": "true"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["summary"]["totalCostTypes"] == 0

    @pytest.mark.parametrize("report_type", sorted(REPORT_REGISTRY))
    def test_every_report_is_routed(self, client, report_type):
        response = client.get(f"/api/company/reports/{report_type}", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["metadata"]["reportType"] == report_type


# =============================================================================
# Catalog and Service Endpoints
# =============================================================================

class TestServiceEndpoints:

    def test_catalog(self, client):
        response = client.get("/api/company/reports", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == len(REPORT_REGISTRY)
        paths = {entry["path"] for entry in body["reports"]}
        assert "/api/company/reports/service-bay/holiday-impact" in paths

    def test_catalog_requires_identity(self, client):
        assert client.get("/api/company/reports").status_code == 401

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root(self, client):
        body = client.get("/").json()

        assert body["name"] == "Dealer Analytics API"
        assert body["reports"] == len(REPORT_REGISTRY)
