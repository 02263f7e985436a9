"""
Response Envelope Formatter Tests

Covers:
- Success envelope shape and metadata
- totalRecords for list and non-list payloads
- Effective (post-narrowing) filters echoed back
- Generic messages for non-validation failures
"""

import pytest

from dealer_analytics.core.errors import ConfigurationError, DatabaseError, ValidationError
from dealer_analytics.services.envelope import (
    describe_scope,
    format_error_response,
    format_report_response,
)
from dealer_analytics.services.scope import build_scope_filter

from dealer_analytics.tests.conftest import FIXED_NOW


class TestReportResponse:
    """format_report_response()"""

    def test_success_shape(self, admin_identity):
        scope = build_scope_filter(admin_identity)

        response = format_report_response("vehicle/overview-by-type", [{"a": 1}], scope, FIXED_NOW)

        assert response["success"] is True
        assert response["data"] == [{"a": 1}]
        assert set(response["metadata"]) == {"reportType", "filters", "generatedAt", "totalRecords"}
        assert response["metadata"]["reportType"] == "vehicle/overview-by-type"
        assert response["metadata"]["generatedAt"] == "2024-06-15T12:00:00Z"

    def test_total_records_for_list(self, admin_identity):
        scope = build_scope_filter(admin_identity)

        response = format_report_response("x", [1, 2, 3], scope, FIXED_NOW)

        assert response["metadata"]["totalRecords"] == 3

    def test_total_records_for_object_and_empty_list(self, admin_identity):
        scope = build_scope_filter(admin_identity)

        assert format_report_response("x", {"summary": {}}, scope)["metadata"]["totalRecords"] == 1
        assert format_report_response("x", [], scope)["metadata"]["totalRecords"] == 0

    def test_generated_at_defaults_to_now(self, admin_identity):
        response = format_report_response("x", [], build_scope_filter(admin_identity))

        assert response["metadata"]["generatedAt"].endswith("Z")


class TestAppliedFilters:
    """Metadata echoes the enforced scope, not the requested one."""

    def test_tenant_wide_scope(self, admin_identity):
        filters = describe_scope(build_scope_filter(admin_identity))

        assert filters.tenantId == "company-1"
        assert filters.dealershipIds is None
        assert filters.dateRange is None

    @pytest.mark.scoping
    def test_narrowed_scope_is_echoed(self, restricted_identity):
        scope = build_scope_filter(restricted_identity, dealership_id="dealer-2")

        response = format_report_response("x", [], scope, FIXED_NOW)

        # dealer-2 was requested but is not permitted
        assert response["metadata"]["filters"]["dealershipIds"] == ["dealer-1"]

    def test_dealership_ids_are_sorted(self):
        from dealer_analytics.models.schemas import CallerIdentity

        caller = CallerIdentity(
            tenant_id="company-1",
            role="company_admin",
            permitted_dealership_ids=frozenset({"dealer-3", "dealer-1", "dealer-2"}),
        )

        filters = describe_scope(build_scope_filter(caller))

        assert filters.dealershipIds == ["dealer-1", "dealer-2", "dealer-3"]

    def test_date_range_is_iso(self, admin_identity):
        scope = build_scope_filter(admin_identity, start_date="2024-04-01", end_date="2024-04-30")

        date_range = format_report_response("x", [], scope, FIXED_NOW)["metadata"]["filters"]["dateRange"]

        assert date_range["start"] == "2024-04-01T00:00:00Z"
        assert date_range["end"].startswith("2024-04-30T23:59:59")


class TestErrorResponse:
    """format_error_response()"""

    def test_validation_message_is_exposed(self):
        error = ValidationError("startDate must not be after endDate")

        response = format_error_response(error, "Vehicle Overview")

        assert response == {
            "success": False,
            "error": {"kind": "ValidationError", "message": "startDate must not be after endDate"},
        }

    def test_database_message_is_generic(self):
        error = DatabaseError("connection refused at 10.0.0.5:5432", timed_out=False)

        response = format_error_response(error, "Vehicle Overview")

        assert response["error"]["kind"] == "DatabaseError"
        assert response["error"]["message"] == "Error generating Vehicle Overview report"

    def test_configuration_message_is_generic(self):
        response = format_error_response(ConfigurationError("Unknown field 'x.y'"), "Bay Usage")

        assert response["error"] == {
            "kind": "ConfigurationError",
            "message": "Error generating Bay Usage report",
        }

    def test_unclassified_error_is_rejected(self):
        with pytest.raises(TypeError):
            format_error_response(RuntimeError("boom"), "Vehicle Overview")
