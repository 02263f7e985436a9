"""
FastAPI router exposing every registered report.

Each report in REPORT_REGISTRY becomes its own route:

    GET /api/company/reports/<category>/<slug>
        ?dealershipId=...&startDate=...&endDate=...

and GET /api/company/reports lists the catalog.

Request flow per report:
    identity headers + query -> build_scope_filter -> ReportContext
    -> report handler (aggregation, derivation, scoring) -> envelope

Status codes:
- 200: success, including empty results
- 400: ValidationError (bad filter input)
- 500: ConfigurationError / DatabaseError, generic message only
"""

import logging
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from dealer_analytics.core.dependencies import CallerDep, RepositoryDep, SettingsDep
from dealer_analytics.core.errors import ConfigurationError, ReportError, ValidationError
from dealer_analytics.models.schemas import ReportCatalog, ReportCatalogEntry
from dealer_analytics.reports import ReportContext, ReportDefinition, list_reports
from dealer_analytics.services.envelope import format_error_response, format_report_response
from dealer_analytics.services.scope import build_scope_filter


# Configure logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/company/reports", tags=["reports"])


DealershipIdQuery = Annotated[
    Optional[str],
    Query(alias="dealershipId", description="Narrow the report to one dealership"),
]
StartDateQuery = Annotated[
    Optional[str],
    Query(alias="startDate", description="Inclusive ISO-8601 lower bound"),
]
EndDateQuery = Annotated[
    Optional[str],
    Query(alias="endDate", description="Inclusive ISO-8601 upper bound; a date covers the whole day"),
]


# =============================================================================
# Report Execution
# =============================================================================

async def run_report(
    definition: ReportDefinition,
    caller,
    repository,
    settings,
    dealership_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> JSONResponse:
    """
    Run one report end to end and wrap the outcome in an envelope.

    Args:
        definition: Registered report to run.
        caller: CallerIdentity from the auth layer.
        repository: Injected ReportRepository.
        settings: Application settings.
        dealership_id: Requested dealership (may only narrow the scope).
        start_date: Raw startDate query parameter.
        end_date: Raw endDate query parameter.

    Returns:
        JSONResponse carrying a success or error envelope.
    """
    try:
        scope = build_scope_filter(
            caller,
            dealership_id=dealership_id,
            start_date=start_date,
            end_date=end_date,
            tenant_wide_roles=settings.tenant_wide_roles,
        )
        now = datetime.now(timezone.utc)
        ctx = ReportContext(scope=scope, repository=repository, settings=settings, now=now)

        logger.info(
            "Running report %s for tenant %s (dealerships=%s)",
            definition.report_type,
            scope.tenant_id,
            "all" if scope.dealership_ids is None else len(scope.dealership_ids),
        )
        data = await definition.handler(ctx)
        return JSONResponse(content=format_report_response(definition.report_type, data, scope, now))

    except ValidationError as e:
        logger.warning("Rejected %s request: %s", definition.report_type, e.message)
        return JSONResponse(status_code=e.http_status, content=format_error_response(e, definition.title))

    except ReportError as e:
        logger.error("Error generating %s: %s", definition.report_type, e.message, exc_info=True)
        return JSONResponse(status_code=e.http_status, content=format_error_response(e, definition.title))

    except Exception as e:
        logger.error("Unexpected error generating %s: %s", definition.report_type, e, exc_info=True)
        error = ConfigurationError(f"Unexpected {type(e).__name__} in {definition.report_type}")
        return JSONResponse(status_code=error.http_status, content=format_error_response(error, definition.title))


def _make_endpoint(definition: ReportDefinition):
    async def endpoint(
        caller: CallerDep,
        repository: RepositoryDep,
        settings: SettingsDep,
        dealership_id: DealershipIdQuery = None,
        start_date: StartDateQuery = None,
        end_date: EndDateQuery = None,
    ) -> JSONResponse:
        return await run_report(
            definition,
            caller,
            repository,
            settings,
            dealership_id=dealership_id,
            start_date=start_date,
            end_date=end_date,
        )

    endpoint.__name__ = definition.report_type.replace("/", "_").replace("-", "_")
    endpoint.__doc__ = definition.description
    return endpoint


# =============================================================================
# Routes
# =============================================================================

@router.get("", response_model=ReportCatalog)
async def list_report_catalog(caller: CallerDep) -> ReportCatalog:
    """List every registered report type."""
    entries = [
        ReportCatalogEntry(
            reportType=definition.report_type,
            path=f"{router.prefix}{definition.path}",
            title=definition.title,
            description=definition.description or None,
        )
        for definition in list_reports()
    ]
    return ReportCatalog(reports=entries, total=len(entries))


for _definition in list_reports():
    router.add_api_route(
        _definition.path,
        _make_endpoint(_definition),
        methods=["GET"],
        summary=_definition.title,
        response_class=JSONResponse,
    )


__all__ = [
    "router",
    "run_report",
]
