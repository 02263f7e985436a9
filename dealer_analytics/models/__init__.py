"""
Package initialization file for report service models.

Re-exports the Pydantic schemas and enumerations so other modules can write:

    from dealer_analytics.models import ScopeFilter, CallerIdentity, ErrorKind
"""

# =============================================================================
# Enums
# =============================================================================

from dealer_analytics.models.enums import (
    AccumulatorOp,
    Comparator,
    DerivationOp,
    EntityType,
    ErrorKind,
    ExecutionStatus,
    IntegrationEnvironment,
    QuoteStatus,
    QuoteType,
    ScaleKind,
    SupplierResponseStatus,
    WorkflowStatus,
    WorkflowType,
)

# =============================================================================
# Schemas
# =============================================================================

from dealer_analytics.models.schemas import (
    AppliedDateRange,
    AppliedFilters,
    CallerIdentity,
    DateRange,
    ErrorDetail,
    ErrorEnvelope,
    ReportCatalog,
    ReportCatalogEntry,
    ReportEnvelope,
    ReportMetadata,
    ScopeFilter,
)


__all__ = [
    # Enums
    'AccumulatorOp',
    'Comparator',
    'DerivationOp',
    'EntityType',
    'ErrorKind',
    'ExecutionStatus',
    'IntegrationEnvironment',
    'QuoteStatus',
    'QuoteType',
    'ScaleKind',
    'SupplierResponseStatus',
    'WorkflowStatus',
    'WorkflowType',
    # Schemas
    'AppliedDateRange',
    'AppliedFilters',
    'CallerIdentity',
    'DateRange',
    'ErrorDetail',
    'ErrorEnvelope',
    'ReportCatalog',
    'ReportCatalogEntry',
    'ReportEnvelope',
    'ReportMetadata',
    'ScopeFilter',
]
