"""
Scope Filter Builder

Turns the caller's identity and the raw `dealershipId` / `startDate` /
`endDate` query parameters into a ScopeFilter. Every report applies this
filter before any aggregation runs.

Rules:
- tenant_id always comes from the identity.
- Tenant-wide callers (primary admins and the configured tenant-wide roles)
  see every dealership; a requested dealershipId narrows them to it.
- Every other caller is restricted to the permitted dealership set. A
  requested id inside the set narrows to it. An id outside the set is
  ignored: caller input can only narrow, never widen, the permitted scope.
- Dates are ISO-8601 dates or datetimes. A date-only end date covers the
  whole day. Naive values are taken as UTC. Either side may be omitted.
- Malformed dates and start > end raise ValidationError.

The builder is a pure function of its inputs.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Iterable, Optional, Tuple

from dealer_analytics.core.errors import ValidationError
from dealer_analytics.models.schemas import CallerIdentity, DateRange, ScopeFilter


logger = logging.getLogger(__name__)


DEFAULT_TENANT_WIDE_ROLES: Tuple[str, ...] = ("master_admin",)


# =============================================================================
# Date Parsing
# =============================================================================

def _parse_boundary(raw: str, param_name: str, end_of_day: bool) -> datetime:
    """
    Parse one date boundary into an aware UTC datetime.

    Args:
        raw: ISO-8601 date ('2024-03-01') or datetime ('2024-03-01T10:00:00Z').
        param_name: Query parameter name, used in the error message.
        end_of_day: Expand a date-only value to the last microsecond of the day.

    Raises:
        ValidationError: If the value is not a valid ISO-8601 date or datetime.
    """
    text = raw.strip()
    is_date_only = "T" not in text and " " not in text and ":" not in text

    try:
        if is_date_only:
            day = date.fromisoformat(text)
            moment = datetime.combine(day, time.max if end_of_day else time.min)
        else:
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            moment = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(
            f"Invalid {param_name}: expected an ISO-8601 date, got '{raw}'",
            details={"parameter": param_name, "value": raw},
        )

    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_date_range(
    start_date: Optional[str],
    end_date: Optional[str],
) -> Optional[DateRange]:
    """
    Build a DateRange from raw query parameters.

    Blank values are treated as not supplied. Returns None when neither side
    is given.

    Raises:
        ValidationError: If a supplied value is malformed or start > end.
    """
    start = None
    end = None
    if start_date is not None and start_date.strip():
        start = _parse_boundary(start_date, "startDate", end_of_day=False)
    if end_date is not None and end_date.strip():
        end = _parse_boundary(end_date, "endDate", end_of_day=True)

    if start is None and end is None:
        return None

    # Checked here so the caller gets a ValidationError, not a pydantic one
    if start is not None and end is not None and start > end:
        raise ValidationError(
            "startDate must not be after endDate",
            details={"startDate": start_date, "endDate": end_date},
        )

    return DateRange(start=start, end=end)


# =============================================================================
# Scope Resolution
# =============================================================================

def is_tenant_wide(
    identity: CallerIdentity,
    tenant_wide_roles: Iterable[str] = DEFAULT_TENANT_WIDE_ROLES,
) -> bool:
    """True when the caller is not restricted to a dealership set."""
    return identity.is_primary_admin or identity.role in set(tenant_wide_roles)


def build_scope_filter(
    identity: CallerIdentity,
    dealership_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    tenant_wide_roles: Iterable[str] = DEFAULT_TENANT_WIDE_ROLES,
) -> ScopeFilter:
    """
    Build the effective, tenant-safe ScopeFilter for one request.

    Args:
        identity: Caller identity supplied by the auth layer.
        dealership_id: Requested dealership (optional, may only narrow).
        start_date: Inclusive ISO-8601 lower bound (optional).
        end_date: Inclusive ISO-8601 upper bound (optional).
        tenant_wide_roles: Roles that are never dealership-restricted.

    Returns:
        ScopeFilter: tenant always set; dealership_ids None only for
        tenant-wide callers without a requested dealership.

    Raises:
        ValidationError: If a date is malformed or start > end.

    Example:
        >>> caller = CallerIdentity(tenant_id="c1", role="company_admin",
        ...                         permitted_dealership_ids={"d1", "d2"})
        >>> build_scope_filter(caller, dealership_id="d9").dealership_ids
        frozenset({'d1', 'd2'})
    """
    date_range = parse_date_range(start_date, end_date)
    requested = dealership_id.strip() if dealership_id else None

    if is_tenant_wide(identity, tenant_wide_roles):
        dealership_ids = frozenset({requested}) if requested else None
    else:
        permitted = frozenset(identity.permitted_dealership_ids)
        if requested and requested in permitted:
            dealership_ids = frozenset({requested})
        else:
            if requested:
                logger.debug(
                    "Ignoring dealership %s outside permitted scope of tenant %s",
                    requested,
                    identity.tenant_id,
                )
            dealership_ids = permitted

    return ScopeFilter(
        tenant_id=identity.tenant_id,
        dealership_ids=dealership_ids,
        date_range=date_range,
    )


__all__ = [
    "DEFAULT_TENANT_WIDE_ROLES",
    "build_scope_filter",
    "is_tenant_wide",
    "parse_date_range",
]
