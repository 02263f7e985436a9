"""
Response Envelope Formatter

Every report response, success or failure, has the same outer shape:

    {"success": true, "data": ..., "metadata": {"reportType", "filters",
     "generatedAt", "totalRecords"}}

    {"success": false, "error": {"kind", "message"}}

`filters` echoes the effective scope after narrowing, so the caller sees
what was enforced rather than what was requested. Only classified
ReportError instances can be formatted as failures; for anything but a
ValidationError the message is replaced by a generic one, so driver errors
and stack traces never reach the caller.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dealer_analytics.core.errors import ReportError
from dealer_analytics.models.schemas import (
    AppliedDateRange,
    AppliedFilters,
    ErrorDetail,
    ErrorEnvelope,
    ReportEnvelope,
    ReportMetadata,
    ScopeFilter,
)


def _iso(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def describe_scope(scope: ScopeFilter) -> AppliedFilters:
    """Effective filters as echoed in envelope metadata."""
    date_range = None
    if scope.date_range is not None:
        date_range = AppliedDateRange(
            start=_iso(scope.date_range.start),
            end=_iso(scope.date_range.end),
        )
    dealership_ids = None
    if scope.dealership_ids is not None:
        dealership_ids = sorted(scope.dealership_ids)
    return AppliedFilters(
        tenantId=scope.tenant_id,
        dealershipIds=dealership_ids,
        dateRange=date_range,
    )


def format_report_response(
    report_type: str,
    data: Any,
    scope: ScopeFilter,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Wrap a successful report payload.

    Args:
        report_type: Report slug, e.g. "vehicle/overview-by-type".
        data: Report-specific payload.
        scope: Effective ScopeFilter used to produce `data`.
        now: Formatting time; defaults to the current UTC time.

    Returns:
        JSON-ready envelope dict.
    """
    generated_at = now or datetime.now(timezone.utc)
    envelope = ReportEnvelope(
        success=True,
        data=data,
        metadata=ReportMetadata(
            reportType=report_type,
            filters=describe_scope(scope),
            generatedAt=_iso(generated_at),
            totalRecords=len(data) if isinstance(data, list) else 1,
        ),
    )
    return envelope.model_dump(mode="json")


def generic_error_message(report_title: str) -> str:
    return f"Error generating {report_title} report"


def format_error_response(error: ReportError, report_title: str) -> Dict[str, Any]:
    """
    Wrap a classified error.

    Args:
        error: A ReportError subclass instance.
        report_title: Human-readable report name for the generic message.

    Raises:
        TypeError: If `error` is not a ReportError.
    """
    if not isinstance(error, ReportError):
        raise TypeError(f"Only classified ReportError instances can be formatted, got {type(error).__name__}")

    message = error.message if error.expose_message else generic_error_message(report_title)
    envelope = ErrorEnvelope(
        success=False,
        error=ErrorDetail(kind=error.kind, message=message),
    )
    return envelope.model_dump(mode="json")


__all__ = [
    "describe_scope",
    "format_error_response",
    "format_report_response",
    "generic_error_message",
]
