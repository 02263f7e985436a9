"""
Pydantic models for caller identity, scope filters and response envelopes.

These are the request-scoped value objects that flow through the report
pipeline:

- CallerIdentity: who is asking (supplied by the upstream auth layer)
- DateRange / ScopeFilter: the effective tenant/dealership/date constraints
- ReportMetadata / ReportEnvelope: successful response wrapper
- ErrorDetail / ErrorEnvelope: failure response wrapper

All models use Pydantic v2 syntax. ScopeFilter and DateRange are frozen so a
filter cannot be widened after it leaves the scope builder.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dealer_analytics.models.enums import ErrorKind


# =============================================================================
# Identity and Scope
# =============================================================================


class CallerIdentity(BaseModel):
    """
    Identity of the current caller as resolved by the authentication layer.

    `tenant_id` is never read from query parameters; it always comes from the
    authenticated session.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "tenant_id": "company-1",
                "role": "company_admin",
                "is_primary_admin": False,
                "permitted_dealership_ids": ["dealer-1", "dealer-2"],
            }
        }
    )

    tenant_id: str = Field(
        ...,
        min_length=1,
        description="Tenant (company) the caller belongs to"
    )
    role: str = Field(
        default="",
        description="Caller role, e.g. company_super_admin"
    )
    is_primary_admin: bool = Field(
        default=False,
        description="Primary admins see every dealership of their tenant"
    )
    permitted_dealership_ids: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Dealerships a restricted caller may see"
    )


class DateRange(BaseModel):
    """
    Closed, inclusive date interval. Either side may be open (None).
    """
    model_config = ConfigDict(frozen=True)

    start: Optional[datetime] = Field(
        default=None,
        description="Inclusive lower bound (UTC)"
    )
    end: Optional[datetime] = Field(
        default=None,
        description="Inclusive upper bound (UTC)"
    )

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    def contains(self, moment: datetime) -> bool:
        """Return True when `moment` lies within the range, bounds included."""
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True

    def span_days(self) -> Optional[float]:
        """Length of a closed range in days, or None when either side is open."""
        if self.start is None or self.end is None:
            return None
        return (self.end - self.start).total_seconds() / 86400


class ScopeFilter(BaseModel):
    """
    Effective, tenant-safe scope applied before any aggregation.

    - tenant_id is always present
    - dealership_ids is None for tenant-wide callers, a set for restricted ones
    - date_range is None when no date filter was requested
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    dealership_ids: Optional[FrozenSet[str]] = Field(default=None)
    date_range: Optional[DateRange] = Field(default=None)

    @property
    def is_dealership_restricted(self) -> bool:
        return self.dealership_ids is not None


# =============================================================================
# Response Envelopes
# =============================================================================


class AppliedDateRange(BaseModel):
    """Date range as echoed back in envelope metadata."""
    start: Optional[str] = Field(default=None, description="ISO-8601 lower bound")
    end: Optional[str] = Field(default=None, description="ISO-8601 upper bound")


class AppliedFilters(BaseModel):
    """Effective filters echoed back to the caller (post-narrowing)."""
    tenantId: str = Field(..., description="Tenant the report was scoped to")
    dealershipIds: Optional[List[str]] = Field(
        default=None,
        description="Dealerships enforced, sorted; null means tenant-wide"
    )
    dateRange: Optional[AppliedDateRange] = Field(
        default=None,
        description="Inclusive date range enforced, if any"
    )


class ReportMetadata(BaseModel):
    """Metadata attached to every successful report response."""
    reportType: str = Field(..., description="Report slug")
    filters: AppliedFilters = Field(..., description="Filters actually enforced")
    generatedAt: str = Field(..., description="ISO-8601 UTC formatting time")
    totalRecords: int = Field(..., ge=0, description="Length of data when a list, else 1")


class ReportEnvelope(BaseModel):
    """Successful report response."""
    success: bool = Field(default=True)
    data: Any = Field(..., description="Report-specific payload")
    metadata: ReportMetadata


class ErrorDetail(BaseModel):
    """Classified failure detail."""
    kind: ErrorKind = Field(..., description="Error classification")
    message: str = Field(..., description="Human-readable message")


class ErrorEnvelope(BaseModel):
    """Failed report response."""
    success: bool = Field(default=False)
    error: ErrorDetail


class ReportCatalogEntry(BaseModel):
    """One registered report as listed by the catalog endpoint."""
    reportType: str
    path: str
    title: str
    description: Optional[str] = None


class ReportCatalog(BaseModel):
    """Catalog of registered reports."""
    reports: List[ReportCatalogEntry] = Field(default_factory=list)
    total: int = Field(default=0, ge=0)


__all__ = [
    "CallerIdentity",
    "DateRange",
    "ScopeFilter",
    "AppliedDateRange",
    "AppliedFilters",
    "ReportMetadata",
    "ReportEnvelope",
    "ErrorDetail",
    "ErrorEnvelope",
    "ReportCatalogEntry",
    "ReportCatalog",
]
