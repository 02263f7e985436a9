"""
FastAPI dependency injection module for the report service.

Endpoint handlers never reach for globals: settings, the caller's identity and
the report repository are all injected here, so tests can swap any of them via
`app.dependency_overrides`.

Key Dependencies Provided:
- get_settings_dependency: Returns the cached Settings singleton
- get_caller_identity: Builds the CallerIdentity from the auth layer's headers
- get_repository: Yields a PostgresRepository bound to the shared pool
- SettingsDep / CallerDep / RepositoryDep: Annotated aliases for endpoints

Identity Headers (set by the upstream authentication middleware):
- X-Tenant-Id: tenant (company) id, required
- X-User-Role: caller role
- X-Primary-Admin: "true" when the caller is the tenant's primary admin
- X-Dealership-Ids: comma-separated permitted dealership ids

Usage Examples:
    @router.get("/vehicle/overview-by-type")
    async def overview(
        caller: CallerDep,
        repository: RepositoryDep,
        settings: SettingsDep,
    ) -> JSONResponse:
        ...

    # In tests
    app.dependency_overrides[get_repository] = lambda: InMemoryRepository(docs)
"""

from typing import Annotated, AsyncGenerator, FrozenSet, Optional

from fastapi import Depends, Header, HTTPException

from dealer_analytics.core.config import Settings, get_settings
from dealer_analytics.models.schemas import CallerIdentity
from dealer_analytics.services.repository import PostgresRepository, ReportRepository


# =============================================================================
# Settings Dependency
# =============================================================================

def get_settings_dependency() -> Settings:
    """
    Return the Settings singleton instance.

    Thin wrapper around get_settings() so tests can override it:

        app.dependency_overrides[get_settings_dependency] = lambda: test_settings
    """
    return get_settings()


SettingsDep = Annotated[Settings, Depends(get_settings_dependency)]


# =============================================================================
# Caller Identity Dependency
# =============================================================================

def _parse_dealership_ids(raw: Optional[str]) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


async def get_caller_identity(
    x_tenant_id: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
    x_primary_admin: Annotated[Optional[str], Header()] = None,
    x_dealership_ids: Annotated[Optional[str], Header()] = None,
) -> CallerIdentity:
    """
    Build the caller identity from headers set by the auth middleware.

    The tenant is always taken from the authenticated session, never from
    query parameters.

    Raises:
        HTTPException: 401 when no tenant is attached to the request.
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Missing tenant identity")

    return CallerIdentity(
        tenant_id=tenant_id,
        role=(x_user_role or "").strip(),
        is_primary_admin=(x_primary_admin or "").strip().lower() in ("true", "1", "yes"),
        permitted_dealership_ids=_parse_dealership_ids(x_dealership_ids),
    )


CallerDep = Annotated[CallerIdentity, Depends(get_caller_identity)]


# =============================================================================
# Repository Dependency
# =============================================================================

async def get_repository(
    settings: SettingsDep,
) -> AsyncGenerator[ReportRepository, None]:
    """
    Yield a repository backed by the shared asyncpg pool.

    The pool itself is process-wide and is acquired inside the repository, so
    an unreachable database surfaces as a DatabaseError envelope.
    """
    yield PostgresRepository(settings)


RepositoryDep = Annotated[ReportRepository, Depends(get_repository)]


__all__ = [
    "get_settings_dependency",
    "get_caller_identity",
    "get_repository",
    "SettingsDep",
    "CallerDep",
    "RepositoryDep",
]
