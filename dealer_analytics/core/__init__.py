"""
Core infrastructure package for the report service.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL connectivity via asyncpg
- The classified error taxonomy shared by every pipeline stage

Re-exports the most used components so other modules can write:

    from dealer_analytics.core import get_settings, ValidationError

FastAPI dependencies live in dealer_analytics.core.dependencies and are not
re-exported here; they depend on the services layer, which itself imports
this package.

Usage Examples:
    # Database pool lifecycle (in FastAPI lifespan)
    from dealer_analytics.core import init_db, close_db

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db()
        yield
        await close_db()
"""

# =============================================================================
# Re-exports from dealer_analytics.core.config
# =============================================================================
from dealer_analytics.core.config import Settings, get_settings

# =============================================================================
# Re-exports from dealer_analytics.core.database
# =============================================================================
from dealer_analytics.core.database import init_db, close_db, get_db_pool

# =============================================================================
# Re-exports from dealer_analytics.core.errors
# =============================================================================
from dealer_analytics.core.errors import (
    ReportError,
    ValidationError,
    ConfigurationError,
    DatabaseError,
)


__all__ = [
    # Configuration management (from config.py)
    'Settings',
    'get_settings',
    # Database pool lifecycle (from database.py)
    'init_db',
    'close_db',
    'get_db_pool',
    # Error taxonomy (from errors.py)
    'ReportError',
    'ValidationError',
    'ConfigurationError',
    'DatabaseError',
]
