"""
Scope Filter Builder Tests

Covers:
- Tenant always taken from the identity
- Tenant-wide callers (primary admin, configured roles) and narrowing
- Restricted callers: requested ids can only narrow, never widen
- Date parsing: date-only vs datetime bounds, open sides, blanks
- ValidationError on malformed dates and inverted ranges
"""

from datetime import datetime, timezone

import pytest

from dealer_analytics.core.errors import ValidationError
from dealer_analytics.models.schemas import CallerIdentity
from dealer_analytics.services.scope import build_scope_filter, is_tenant_wide, parse_date_range


# =============================================================================
# Dealership Resolution
# =============================================================================

@pytest.mark.scoping
class TestDealershipResolution:
    """Which dealerships end up in the effective scope."""

    def test_primary_admin_is_tenant_wide(self, admin_identity):
        scope = build_scope_filter(admin_identity)

        assert scope.tenant_id == "company-1"
        assert scope.dealership_ids is None
        assert not scope.is_dealership_restricted

    def test_primary_admin_narrows_to_requested_dealership(self, admin_identity):
        scope = build_scope_filter(admin_identity, dealership_id="dealer-2")

        assert scope.dealership_ids == frozenset({"dealer-2"})

    def test_tenant_wide_role_without_primary_flag(self):
        caller = CallerIdentity(tenant_id="company-1", role="master_admin")

        assert is_tenant_wide(caller)
        assert build_scope_filter(caller).dealership_ids is None

    def test_custom_tenant_wide_roles(self):
        caller = CallerIdentity(tenant_id="company-1", role="auditor")

        assert build_scope_filter(caller, tenant_wide_roles=["auditor"]).dealership_ids is None
        assert build_scope_filter(caller).dealership_ids == frozenset()

    def test_restricted_caller_gets_permitted_set(self, restricted_identity):
        scope = build_scope_filter(restricted_identity)

        assert scope.dealership_ids == frozenset({"dealer-1"})

    def test_restricted_caller_narrows_within_permitted_set(self):
        caller = CallerIdentity(
            tenant_id="company-1",
            role="company_admin",
            permitted_dealership_ids=frozenset({"dealer-1", "dealer-2"}),
        )

        scope = build_scope_filter(caller, dealership_id="dealer-2")

        assert scope.dealership_ids == frozenset({"dealer-2"})

    def test_requested_dealership_outside_permitted_set_is_ignored(self, restricted_identity):
        scope = build_scope_filter(restricted_identity, dealership_id="dealer-2")

        assert scope.dealership_ids == frozenset({"dealer-1"})

    def test_restricted_caller_with_empty_permitted_set_matches_nothing(self):
        caller = CallerIdentity(tenant_id="company-1", role="company_admin")

        scope = build_scope_filter(caller, dealership_id="dealer-1")

        assert scope.dealership_ids == frozenset()

    def test_blank_dealership_is_absent(self, admin_identity):
        assert build_scope_filter(admin_identity, dealership_id="  ").dealership_ids is None


# =============================================================================
# Date Range Parsing
# =============================================================================

class TestDateRange:
    """ISO-8601 parsing and validation of startDate / endDate."""

    def test_no_dates_means_no_range(self):
        assert parse_date_range(None, None) is None
        assert parse_date_range("", "   ") is None

    def test_date_only_end_covers_whole_day(self):
        date_range = parse_date_range("2024-04-01", "2024-04-30")

        assert date_range.start == datetime(2024, 4, 1, tzinfo=timezone.utc)
        assert date_range.contains(datetime(2024, 4, 30, 23, 59, 59, tzinfo=timezone.utc))
        assert not date_range.contains(datetime(2024, 5, 1, tzinfo=timezone.utc))

    def test_datetime_bounds_are_exact(self):
        date_range = parse_date_range("2024-04-01T10:00:00Z", "2024-04-01T12:00:00+00:00")

        assert date_range.contains(datetime(2024, 4, 1, 10, tzinfo=timezone.utc))
        assert not date_range.contains(datetime(2024, 4, 1, 12, 0, 1, tzinfo=timezone.utc))

    def test_offsets_are_normalized_to_utc(self):
        date_range = parse_date_range("2024-04-01T10:00:00+02:00", None)

        assert date_range.start == datetime(2024, 4, 1, 8, tzinfo=timezone.utc)
        assert date_range.end is None

    def test_open_start(self):
        date_range = parse_date_range(None, "2024-04-30")

        assert date_range.start is None
        assert date_range.span_days() is None

    @pytest.mark.parametrize("raw", ["2024-13-01", "yesterday", "2024-02-30", "01/04/2024"])
    def test_malformed_start_raises(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            parse_date_range(raw, None)

        assert exc_info.value.http_status == 400
        assert exc_info.value.details["parameter"] == "startDate"

    def test_malformed_end_raises(self, admin_identity):
        with pytest.raises(ValidationError):
            build_scope_filter(admin_identity, end_date="not-a-date")

    def test_start_after_end_raises(self, admin_identity):
        with pytest.raises(ValidationError, match="startDate must not be after endDate"):
            build_scope_filter(admin_identity, start_date="2024-05-01", end_date="2024-04-01")

    def test_same_day_range_is_valid(self):
        date_range = parse_date_range("2024-04-01", "2024-04-01")

        assert date_range.contains(datetime(2024, 4, 1, 18, tzinfo=timezone.utc))

    def test_scope_is_immutable(self, admin_identity):
        scope = build_scope_filter(admin_identity)

        with pytest.raises(Exception):
            scope.dealership_ids = frozenset({"dealer-2"})
