"""
Report definitions.

Importing this package registers every report with REPORT_REGISTRY:
- vehicles: overview by type, status distribution, workshop integration,
  pricing analysis, attachment analysis
- workshop_quotes: overview by status, lifecycle analysis, approval rates,
  supplier performance, response time analysis, cost analysis
- workshop_reports: overview, cost breakdown, quality metrics, technician
  performance, completion time, revenue analysis
- service_bays: utilization, holiday impact, booking patterns, user assignment
- group_permissions: usage, effectiveness
- integrations: status overview, environment usage, type distribution
- workflows: execution metrics, type distribution, success rates
- cost_configuration: type utilization, setter effectiveness, currency distribution
"""

from dealer_analytics.reports.base import (
    REPORT_REGISTRY,
    ReportContext,
    ReportDefinition,
    get_report,
    list_reports,
    register_report,
)

# Report modules register themselves on import
from dealer_analytics.reports import (  # noqa: F401
    cost_configuration,
    group_permissions,
    integrations,
    service_bays,
    vehicles,
    workflows,
    workshop_quotes,
    workshop_reports,
)


__all__ = [
    "REPORT_REGISTRY",
    "ReportContext",
    "ReportDefinition",
    "get_report",
    "list_reports",
    "register_report",
]
