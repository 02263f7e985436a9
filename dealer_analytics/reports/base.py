"""
Report definitions and the report registry.

A report is an async handler that receives a ReportContext (effective scope,
injected repository, settings and a fixed `now`) and returns its data payload.
Handlers register themselves with @register_report; the API layer turns every
registered report into a GET route under /api/company/reports/<category>/<slug>.

Handlers must return a zero-valued payload when nothing matches: empty result
sets are never an error.

Example:
    @register_report("vehicle", "overview-by-type", "Vehicle Overview by Type")
    async def vehicle_overview_by_type(ctx: ReportContext) -> Dict[str, Any]:
        rows = await ctx.aggregate(AggregationRequest(...))
        return {"typeDistribution": rows}
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from dealer_analytics.core.config import Settings
from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.models.enums import AccumulatorOp, EntityType
from dealer_analytics.models.schemas import ScopeFilter
from dealer_analytics.services.aggregation import (
    AggregationRequest,
    GroupKey,
    MetricSpec,
    Predicate,
    ScopeFields,
    ValueFn,
    run_aggregation,
    sort_key,
)
from dealer_analytics.services.entities import JoinSpec
from dealer_analytics.services.metrics import round_half_up
from dealer_analytics.services.repository import ReportRepository


logger = logging.getLogger(__name__)


# =============================================================================
# Report Context
# =============================================================================

@dataclass
class ReportContext:
    """
    Everything a report handler may use.

    `now` is fixed once per request so that every relative window inside one
    report (recent logins, stale quotes, ages) is computed against the same
    instant.
    """
    scope: ScopeFilter
    repository: ReportRepository
    settings: Settings
    now: datetime

    async def aggregate(self, request: AggregationRequest) -> List[Dict[str, Any]]:
        """Compose `request` under this context's scope and execute it."""
        return await run_aggregation(self.repository, self.scope, request)

    async def records(
        self,
        source: EntityType,
        fields: Mapping[str, Union[str, ValueFn]],
        joins: Tuple[JoinSpec, ...] = (),
        where: Optional[Predicate] = None,
        scope: Optional[ScopeFields] = None,
    ) -> List[Dict[str, Any]]:
        """
        One projected row per scoped document (grouped on `_id`).

        `fields` maps output names to a FieldPath or a value callable.
        """
        metrics = tuple(
            MetricSpec(name, AccumulatorOp.FIRST, field=spec)
            if isinstance(spec, str)
            else MetricSpec(name, AccumulatorOp.FIRST, value=spec)
            for name, spec in fields.items()
        )
        return await self.aggregate(AggregationRequest(
            source=source,
            group_keys=(GroupKey("_id", path="_id"),),
            metrics=metrics,
            joins=joins,
            where=where,
            scope=scope,
        ))

    def days_ago(self, days: float) -> datetime:
        return self.now - timedelta(days=days)

    def weeks_in_range(self) -> int:
        """
        Whole weeks covered by a closed date range (at least 1).

        Falls back to Settings.default_weeks_in_range when either side of the
        range is open.
        """
        date_range = self.scope.date_range
        span = date_range.span_days() if date_range is not None else None
        if span is None:
            return self.settings.default_weeks_in_range
        return max(1, math.ceil(span / 7))

    def in_date_range(self, moment: Optional[datetime]) -> bool:
        """True when no date range is active or `moment` falls inside it."""
        if self.scope.date_range is None:
            return True
        return moment is not None and self.scope.date_range.contains(moment)


ReportHandler = Callable[[ReportContext], Awaitable[Any]]


# =============================================================================
# Registry
# =============================================================================

@dataclass(frozen=True)
class ReportDefinition:
    category: str
    slug: str
    title: str
    handler: ReportHandler
    description: str = ""

    @property
    def report_type(self) -> str:
        return f"{self.category}/{self.slug}"

    @property
    def path(self) -> str:
        return f"/{self.category}/{self.slug}"


REPORT_REGISTRY: Dict[str, ReportDefinition] = {}


def register_report(
    category: str,
    slug: str,
    title: str,
    description: str = "",
) -> Callable[[ReportHandler], ReportHandler]:
    """
    Decorator registering an async report handler.

    Raises:
        ConfigurationError: If the same category/slug is registered twice.
    """
    def decorator(handler: ReportHandler) -> ReportHandler:
        definition = ReportDefinition(
            category=category,
            slug=slug,
            title=title,
            handler=handler,
            description=description or (handler.__doc__ or "").strip().split("\n")[0],
        )
        if definition.report_type in REPORT_REGISTRY:
            raise ConfigurationError(f"Report '{definition.report_type}' registered twice")
        REPORT_REGISTRY[definition.report_type] = definition
        return handler

    return decorator


def get_report(report_type: str) -> ReportDefinition:
    return REPORT_REGISTRY[report_type]


def list_reports() -> List[ReportDefinition]:
    """Registered reports ordered by category, then slug."""
    return sorted(REPORT_REGISTRY.values(), key=lambda d: (d.category, d.slug))


# =============================================================================
# Small Builders Shared by Reports
# =============================================================================

def count(name: str, where: Optional[Predicate] = None) -> MetricSpec:
    return MetricSpec(name, AccumulatorOp.COUNT, where=where)


def total(name: str, field: Optional[str] = None, value=None, where: Optional[Predicate] = None) -> MetricSpec:
    return MetricSpec(name, AccumulatorOp.SUM, field=field, value=value, where=where)


def average(name: str, field: Optional[str] = None, value=None, where: Optional[Predicate] = None) -> MetricSpec:
    return MetricSpec(name, AccumulatorOp.AVG, field=field, value=value, where=where)


def distinct(name: str, field: Optional[str] = None, value=None) -> MetricSpec:
    return MetricSpec(name, AccumulatorOp.ADD_TO_SET, field=field, value=value)


def first(name: str, field: Optional[str] = None, value=None) -> MetricSpec:
    return MetricSpec(name, AccumulatorOp.FIRST, field=field, value=value)


def minimum(name: str, field: Optional[str] = None, value=None) -> MetricSpec:
    return MetricSpec(name, AccumulatorOp.MIN, field=field, value=value)


def maximum(name: str, field: Optional[str] = None, value=None) -> MetricSpec:
    return MetricSpec(name, AccumulatorOp.MAX, field=field, value=value)


def only_one(rows: List[Dict[str, Any]], default: Dict[str, Any]) -> Dict[str, Any]:
    """The single row of an ungrouped aggregation, or `default` when empty."""
    return rows[0] if rows else dict(default)


def round_or_none(value: Any, digits: int = 0) -> Optional[Union[int, float]]:
    """Half-up rounding that keeps a missing value missing."""
    if value is None:
        return None
    return round_half_up(value, digits)


def round_fields(row: Dict[str, Any], digits: int, *names: str) -> Dict[str, Any]:
    """Round `names` of `row` in place; missing values stay None."""
    for name in names:
        if name in row:
            row[name] = round_or_none(row[name], digits)
    return row


def sort_rows(rows: List[Dict[str, Any]], field: str, descending: bool = True) -> List[Dict[str, Any]]:
    """Stable sort on a derived column, missing values last."""
    present = [row for row in rows if row.get(field) is not None]
    missing = [row for row in rows if row.get(field) is None]
    return sorted(present, key=lambda row: sort_key(row[field]), reverse=descending) + missing


__all__ = [
    "REPORT_REGISTRY",
    "ReportContext",
    "ReportDefinition",
    "ReportHandler",
    "average",
    "count",
    "distinct",
    "first",
    "get_report",
    "list_reports",
    "maximum",
    "minimum",
    "only_one",
    "register_report",
    "round_fields",
    "round_or_none",
    "sort_rows",
    "total",
]
