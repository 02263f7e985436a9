"""
Workflow reports.

Workflows and their executions are tenant-level. Workflows are never
date-scoped; executions are date-scoped on their creation time and joined to
their workflow. Executions whose workflow no longer exists are left out of
per-workflow and per-type figures.

- workflow/execution-metrics
- workflow/type-distribution
- workflow/success-rates
"""

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from dealer_analytics.models.enums import (
    Comparator,
    EntityType,
    ExecutionStatus,
    WorkflowStatus,
    WorkflowType,
)
from dealer_analytics.reports.base import (
    ReportContext,
    average,
    count,
    distinct,
    maximum,
    minimum,
    register_report,
    sort_rows,
    total,
)
from dealer_analytics.services.aggregation import (
    AggregationRequest,
    GroupKey,
    MetricSpec,
    SortKey,
)
from dealer_analytics.services.entities import (
    JoinSpec,
    as_number,
    coerce_datetime,
    id_of,
    user_full_name,
)
from dealer_analytics.services.metrics import (
    DerivedMetric,
    apply_derivations,
    percentage,
    round_half_up,
    rounded_percentage,
)
from dealer_analytics.services.scoring import (
    Band,
    CompositeResult,
    CompositeScoreDefinition,
    RatingRule,
    ScoreInput,
    ThresholdRule,
    compute_composite_score,
    first_matching_rating,
)
from dealer_analytics.services.trends import TrendFrequency, build_timeline


WORKFLOW_JOIN = JoinSpec("workflow_record", EntityType.WORKFLOW, "workflow_id")
WORKFLOW_CREATOR_JOIN = JoinSpec("creator_record", EntityType.USER, "created_by")
WORKFLOW_MODIFIER_JOIN = JoinSpec("modifier_record", EntityType.USER, "last_modified_by")

WORKFLOW_TYPES = tuple(workflow_type.value for workflow_type in WorkflowType)
UNKNOWN_ERROR = "Unknown error"

PERFORMANCE_RATINGS = (
    RatingRule("Excellent", (
        ThresholdRule("successRate", Comparator.GTE, 95, ""),
        ThresholdRule("avgExecutionDuration", Comparator.LT, 5000, ""),
    )),
    RatingRule("Good", (
        ThresholdRule("successRate", Comparator.GTE, 80, ""),
        ThresholdRule("avgExecutionDuration", Comparator.LT, 10000, ""),
    )),
    RatingRule("Fair", (
        ThresholdRule("successRate", Comparator.GTE, 60, ""),
        ThresholdRule("avgExecutionDuration", Comparator.LT, 20000, ""),
    )),
    RatingRule("Poor", (ThresholdRule("successRate", Comparator.GTE, 40, ""),)),
)
VERY_POOR = "Very Poor"

RELIABILITY_SCORE = CompositeScoreDefinition(
    name="reliabilityScore",
    inputs=(
        ScoreInput("successRate", 0.6),
        ScoreInput("consistency", 0.2),
        ScoreInput("vehicleSuccessRate", 0.2),
    ),
    bands=(
        Band(0, VERY_POOR),
        Band(40, "Poor"),
        Band(60, "Fair"),
        Band(75, "Good"),
        Band(90, "Excellent"),
    ),
)
# Executions needed for full consistency credit
CONSISTENCY_EXECUTIONS = 10

RELIABILITY_RULES = (
    (ThresholdRule("failureRate", Comparator.GT, 30, "High failure rate"),
     "Review workflow configuration and error logs"),
    (ThresholdRule("totalExecutions", Comparator.LT, 5, "Insufficient execution history"),
     "Monitor workflow performance over time"),
    (ThresholdRule("successTrend", Comparator.LT, 0, "Success rate declining"),
     "Investigate recent changes or external factors"),
    (ThresholdRule("lowVehicleSuccess", Comparator.EQ, 1, "Low vehicle-level success rate"),
     "Review vehicle data validation and processing logic"),
)


# =============================================================================
# Shared execution aggregation
# =============================================================================

def _status_is(status: ExecutionStatus):
    return lambda execution: execution.get("execution_status") == status.value


def _duration(execution) -> Optional[float]:
    duration = as_number(execution.get("execution_duration_ms"))
    return duration if duration else None


def _number(field: str):
    return lambda execution: as_number(execution.get(field))


def _has_workflow(execution) -> bool:
    return isinstance(execution.get("workflow_record"), Mapping)


EXECUTION_METRICS: Sequence[MetricSpec] = (
    count("totalExecutions"),
    count("successfulExecutions", where=_status_is(ExecutionStatus.SUCCESS)),
    count("partialSuccessExecutions", where=_status_is(ExecutionStatus.PARTIAL_SUCCESS)),
    count("failedExecutions", where=_status_is(ExecutionStatus.FAILED)),
    average("avgExecutionDuration", value=_duration),
    minimum("minExecutionDuration", value=_duration),
    maximum("maxExecutionDuration", value=_duration),
    total("totalVehiclesProcessed", value=_number("total_vehicles")),
    total("totalVehiclesSuccessful", value=_number("successful_vehicles")),
    total("totalVehiclesFailed", value=_number("failed_vehicles")),
    total("totalVehiclesCreated", field="database_changes.vehicles_created"),
    total("totalVehiclesUpdated", field="database_changes.vehicles_updated"),
    minimum("firstExecutionAt", value=lambda execution: coerce_datetime(execution.get("created_at"))),
)

EXECUTION_RATES = (
    DerivedMetric("successRate", "successfulExecutions", "totalExecutions"),
    DerivedMetric("partialSuccessRate", "partialSuccessExecutions", "totalExecutions"),
    DerivedMetric("failureRate", "failedExecutions", "totalExecutions"),
    DerivedMetric("vehicleSuccessRate", "totalVehiclesSuccessful", "totalVehiclesProcessed"),
)
# Kept unrounded under "unrounded" for ratings, scores and ordering
EXACT_FIELDS = tuple(rate.name for rate in EXECUTION_RATES) + ("avgExecutionDuration",)

EMPTY_EXECUTION_METRICS: Dict[str, Any] = {
    "totalExecutions": 0,
    "successfulExecutions": 0,
    "partialSuccessExecutions": 0,
    "failedExecutions": 0,
    "avgExecutionDuration": 0,
    "minExecutionDuration": 0,
    "maxExecutionDuration": 0,
    "totalVehiclesProcessed": 0,
    "totalVehiclesSuccessful": 0,
    "totalVehiclesFailed": 0,
    "totalVehiclesCreated": 0,
    "totalVehiclesUpdated": 0,
    "firstExecutionAt": None,
    "successRate": 0,
    "partialSuccessRate": 0,
    "failureRate": 0,
    "vehicleSuccessRate": 0,
    "unrounded": {name: 0.0 for name in EXACT_FIELDS},
}


async def _execution_stats(
    ctx: ReportContext,
    key: GroupKey,
    extra_metrics: Sequence[MetricSpec] = (),
    require_workflow: bool = True,
) -> Dict[Any, Dict[str, Any]]:
    """Execution aggregates with derived rates, keyed by `key` value."""
    rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKFLOW_EXECUTION,
        joins=(WORKFLOW_JOIN,),
        where=_has_workflow if require_workflow else None,
        group_keys=(key,),
        metrics=tuple(EXECUTION_METRICS) + tuple(extra_metrics),
    ))
    rows = apply_derivations(rows, EXECUTION_RATES)
    for row in rows:
        row["avgExecutionDuration"] = row["avgExecutionDuration"] or 0.0
        row["unrounded"] = {name: row[name] for name in EXACT_FIELDS}
        for name in EXACT_FIELDS:
            row[name] = round_half_up(row[name])
        row["minExecutionDuration"] = row["minExecutionDuration"] or 0
        row["maxExecutionDuration"] = row["maxExecutionDuration"] or 0
    return {row[key.name]: row for row in rows}


BY_WORKFLOW = GroupKey("workflowId", value=lambda execution: id_of(execution.get("workflow_id")))
BY_TYPE = GroupKey("workflowType", path="workflow_record.workflow_type")
ALL_EXECUTIONS = GroupKey("all", value=lambda execution: "all")


def _person(user: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(user, Mapping):
        return None
    return {"name": user_full_name(user), "email": user.get("email")}


def _iso(value: Any) -> Optional[str]:
    moment = coerce_datetime(value)
    return moment.isoformat().replace("+00:00", "Z") if moment is not None else None


def _public(metrics: Mapping[str, Any]) -> Dict[str, Any]:
    return {name: value for name, value in metrics.items() if name not in ("firstExecutionAt", "workflowId", "workflowType", "all", "unrounded")}


def _exact(metrics: Mapping[str, Any]) -> Dict[str, Any]:
    """`metrics` with its rates and mean duration replaced by their unrounded values."""
    return dict(metrics, **metrics["unrounded"])


async def _workflows(ctx: ReportContext) -> List[Dict[str, Any]]:
    return await ctx.records(
        EntityType.WORKFLOW,
        {
            "name": "name",
            "description": "description",
            "workflowType": "workflow_type",
            "status": "status",
            "createdAt": "created_at",
            "updatedAt": "updated_at",
            "createdBy": lambda workflow: _person(workflow.get("creator_record")),
            "lastModifiedBy": lambda workflow: _person(workflow.get("modifier_record")),
            "lastExecution": "execution_stats.last_execution",
            "lastExecutionStatus": "execution_stats.last_execution_status",
        },
        joins=(WORKFLOW_CREATOR_JOIN, WORKFLOW_MODIFIER_JOIN),
    )


async def _executions(ctx: ReportContext) -> List[Dict[str, Any]]:
    return await ctx.records(
        EntityType.WORKFLOW_EXECUTION,
        {
            "workflowId": lambda execution: id_of(execution.get("workflow_id")),
            "workflowType": "workflow_record.workflow_type",
            "status": "execution_status",
            "createdAt": lambda execution: coerce_datetime(execution.get("created_at")),
            "startedAt": "execution_started_at",
            "completedAt": "execution_completed_at",
            "duration": "execution_duration_ms",
            "totalVehicles": "total_vehicles",
            "successfulVehicles": "successful_vehicles",
            "failedVehicles": "failed_vehicles",
            "errorMessage": "error_message",
        },
        joins=(WORKFLOW_JOIN,),
    )


def _newest_first(executions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sort_rows(executions, "createdAt")


def _type_name(workflow_type: str) -> str:
    return " ".join(word.capitalize() for word in workflow_type.split("_"))


def _pivot_by_type(rows: List[Dict[str, Any]], period_name: str) -> List[Dict[str, Any]]:
    """Turn timeline rows grouped by workflow type into one row per period."""
    pivot: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        entry = pivot.setdefault(row["period"], {period_name: row["period"], **{t: 0 for t in WORKFLOW_TYPES}})
        if row["workflowType"] in entry:
            entry[row["workflowType"]] += row["count"]
    return list(pivot.values())


# =============================================================================
# workflow/execution-metrics
# =============================================================================

@register_report("workflow", "execution-metrics", "Workflow Execution Metrics")
async def workflow_execution_metrics(ctx: ReportContext) -> Dict[str, Any]:
    """Per-workflow execution outcomes, durations and performance ratings."""
    workflows = await _workflows(ctx)
    stats = await _execution_stats(ctx, BY_WORKFLOW)
    executions = await _executions(ctx)

    by_workflow: Dict[str, List[Dict[str, Any]]] = {}
    for execution in executions:
        by_workflow.setdefault(execution["workflowId"], []).append(execution)

    metrics_rows = []
    for workflow in workflows:
        workflow_id = id_of(workflow["_id"])
        metrics = dict(stats.get(workflow_id, EMPTY_EXECUTION_METRICS))

        first_at = metrics["firstExecutionAt"]
        days_active = max(1, math.ceil((ctx.now - first_at).total_seconds() / 86400)) if first_at else 0
        metrics["executionsPerDay"] = (
            round_half_up(metrics["totalExecutions"] / days_active, 2) if days_active else 0
        )
        metrics["performanceRating"] = first_matching_rating(_exact(metrics), PERFORMANCE_RATINGS, VERY_POOR)

        recent = _newest_first(by_workflow.get(workflow_id, []))[:10]
        metrics_rows.append({
            "workflowId": workflow["_id"],
            "name": workflow["name"],
            "description": workflow["description"],
            "workflowType": workflow["workflowType"],
            "status": workflow["status"],
            "createdAt": _iso(workflow["createdAt"]),
            "updatedAt": _iso(workflow["updatedAt"]),
            "createdBy": workflow["createdBy"],
            "lastModifiedBy": workflow["lastModifiedBy"],
            "executionMetrics": _public(metrics),
            "recentExecutions": [
                {
                    "executionId": execution["_id"],
                    "status": execution["status"],
                    "startedAt": _iso(execution["startedAt"]),
                    "completedAt": _iso(execution["completedAt"]),
                    "duration": execution["duration"],
                    "totalVehicles": execution["totalVehicles"],
                    "successfulVehicles": execution["successfulVehicles"],
                    "failedVehicles": execution["failedVehicles"],
                    "errorMessage": execution["errorMessage"],
                }
                for execution in recent
            ],
            "lastExecution": _iso(workflow["lastExecution"]),
            "lastExecutionStatus": workflow["lastExecutionStatus"],
        })

    metrics_rows.sort(key=lambda row: row["executionMetrics"]["totalExecutions"], reverse=True)

    overall = (await _execution_stats(ctx, ALL_EXECUTIONS, require_workflow=False)).get("all", EMPTY_EXECUTION_METRICS)

    timeline = build_timeline(
        executions, "createdAt", TrendFrequency.DAILY,
        sums={
            "successfulExecutions": lambda e: e["status"] == ExecutionStatus.SUCCESS.value,
            "failedExecutions": lambda e: e["status"] == ExecutionStatus.FAILED.value,
            "partialSuccessExecutions": lambda e: e["status"] == ExecutionStatus.PARTIAL_SUCCESS.value,
        },
    )

    executed = [row for row in metrics_rows if row["executionMetrics"]["totalExecutions"] > 0]
    def exact_success(row) -> float:
        return stats.get(id_of(row["workflowId"]), EMPTY_EXECUTION_METRICS)["unrounded"]["successRate"]

    top = sorted(executed, key=exact_success, reverse=True)[:10]

    def with_status(status: WorkflowStatus) -> int:
        return sum(1 for row in metrics_rows if row["status"] == status.value)

    return {
        "workflows": metrics_rows,
        "overallStatistics": {
            "totalWorkflows": len(metrics_rows),
            "activeWorkflows": with_status(WorkflowStatus.ACTIVE),
            "inactiveWorkflows": with_status(WorkflowStatus.INACTIVE),
            "draftWorkflows": with_status(WorkflowStatus.DRAFT),
            "totalExecutions": overall["totalExecutions"],
            "successfulExecutions": overall["successfulExecutions"],
            "partialSuccessExecutions": overall["partialSuccessExecutions"],
            "failedExecutions": overall["failedExecutions"],
            "overallSuccessRate": overall["successRate"],
            "overallFailureRate": overall["failureRate"],
            "overallAvgExecutionDuration": overall["avgExecutionDuration"],
            "totalVehiclesProcessed": overall["totalVehiclesProcessed"],
            "totalVehiclesSuccessful": overall["totalVehiclesSuccessful"],
            "totalVehiclesFailed": overall["totalVehiclesFailed"],
        },
        "executionTimeline": [
            {
                "date": row["period"],
                "totalExecutions": row["count"],
                "successfulExecutions": row["successfulExecutions"],
                "failedExecutions": row["failedExecutions"],
                "partialSuccessExecutions": row["partialSuccessExecutions"],
            }
            for row in timeline
        ],
        "topPerformingWorkflows": [
            {
                "id": row["workflowId"],
                "name": row["name"],
                "workflowType": row["workflowType"],
                "successRate": row["executionMetrics"]["successRate"],
                "totalExecutions": row["executionMetrics"]["totalExecutions"],
                "avgDuration": row["executionMetrics"]["avgExecutionDuration"],
                "performanceRating": row["executionMetrics"]["performanceRating"],
            }
            for row in top
        ],
        "underperformingWorkflows": [
            {
                "id": row["workflowId"],
                "name": row["name"],
                "workflowType": row["workflowType"],
                "successRate": row["executionMetrics"]["successRate"],
                "failureRate": row["executionMetrics"]["failureRate"],
                "totalExecutions": row["executionMetrics"]["totalExecutions"],
                "performanceRating": row["executionMetrics"]["performanceRating"],
            }
            for row in executed if exact_success(row) < 60
        ],
        "workflowsWithoutExecutions": [
            {
                "id": row["workflowId"],
                "name": row["name"],
                "workflowType": row["workflowType"],
                "status": row["status"],
                "createdAt": row["createdAt"],
            }
            for row in metrics_rows if row["executionMetrics"]["totalExecutions"] == 0
        ],
    }


# =============================================================================
# workflow/type-distribution
# =============================================================================

@register_report("workflow", "type-distribution", "Workflow Type Distribution")
async def workflow_type_distribution(ctx: ReportContext) -> Dict[str, Any]:
    """Workflow counts, execution volume and success rate per workflow type."""
    workflows = await _workflows(ctx)
    stats = await _execution_stats(ctx, BY_TYPE)
    per_workflow = await _execution_stats(ctx, BY_WORKFLOW)
    executions = [e for e in await _executions(ctx) if e["workflowType"] is not None]

    total_workflows = len(workflows)
    total_executions = sum(row["totalExecutions"] for row in stats.values())

    distribution = []
    for workflow_type in WORKFLOW_TYPES:
        of_type = [w for w in workflows if w["workflowType"] == workflow_type]
        metrics = dict(stats.get(workflow_type, EMPTY_EXECUTION_METRICS))
        metrics["executionPercentage"] = rounded_percentage(metrics["totalExecutions"], total_executions)
        for name in ("partialSuccessRate", "failureRate", "vehicleSuccessRate", "minExecutionDuration", "maxExecutionDuration"):
            metrics.pop(name, None)

        distribution.append({
            "workflowType": workflow_type,
            "typeName": _type_name(workflow_type),
            "totalWorkflows": len(of_type),
            "activeWorkflows": sum(1 for w in of_type if w["status"] == WorkflowStatus.ACTIVE.value),
            "inactiveWorkflows": sum(1 for w in of_type if w["status"] == WorkflowStatus.INACTIVE.value),
            "draftWorkflows": sum(1 for w in of_type if w["status"] == WorkflowStatus.DRAFT.value),
            "usagePercentage": rounded_percentage(len(of_type), total_workflows),
            "executionMetrics": _public(metrics),
            "workflows": [
                {
                    "id": w["_id"],
                    "name": w["name"],
                    "status": w["status"],
                    "createdAt": _iso(w["createdAt"]),
                    "totalExecutions": per_workflow.get(id_of(w["_id"]), EMPTY_EXECUTION_METRICS)["totalExecutions"],
                }
                for w in of_type
            ],
        })

    distribution.sort(key=lambda row: row["totalWorkflows"], reverse=True)

    def leader(rows, value):
        best = None
        for row in rows:
            if best is None or value(row) > value(best):
                best = row
        return best

    popular = leader(distribution, lambda row: row["totalWorkflows"])
    executed = leader(distribution, lambda row: row["executionMetrics"]["totalExecutions"])
    best = leader(
        [row for row in distribution if row["executionMetrics"]["totalExecutions"] > 0],
        lambda row: stats[row["workflowType"]]["unrounded"]["successRate"],
    )

    creation = build_timeline(
        workflows, "createdAt", TrendFrequency.MONTHLY,
        by=lambda w: w["workflowType"], by_name="workflowType",
    )
    execution_timeline = build_timeline(
        executions, "createdAt", TrendFrequency.DAILY,
        by=lambda e: e["workflowType"], by_name="workflowType",
    )

    return {
        "typeDistribution": distribution,
        "overallStatistics": {
            "totalWorkflows": total_workflows,
            "totalExecutions": total_executions,
            "mostPopularType": {
                "type": popular["workflowType"],
                "typeName": popular["typeName"],
                "count": popular["totalWorkflows"],
            } if popular else None,
            "mostExecutedType": {
                "type": executed["workflowType"],
                "typeName": executed["typeName"],
                "executions": executed["executionMetrics"]["totalExecutions"],
            } if executed else None,
            "bestPerformingType": {
                "type": best["workflowType"],
                "typeName": best["typeName"],
                "successRate": best["executionMetrics"]["successRate"],
            } if best else None,
        },
        "typeCreationTimeline": _pivot_by_type(creation, "month"),
        "typeExecutionTimeline": _pivot_by_type(execution_timeline, "date"),
    }


# =============================================================================
# workflow/success-rates
# =============================================================================

def _reliability(metrics: Mapping[str, Any]) -> CompositeResult:
    """Reliability composite over the unrounded execution rates."""
    values = dict(
        _exact(metrics),
        consistency=min(100, metrics["totalExecutions"] * 100 / CONSISTENCY_EXECUTIONS),
    )
    return compute_composite_score(RELIABILITY_SCORE, values)


@register_report("workflow", "success-rates", "Workflow Success Rates")
async def workflow_success_rates(ctx: ReportContext) -> Dict[str, Any]:
    """Reliability ranking per workflow and type, error patterns and success trends."""
    window = ctx.settings.recent_activity_days
    recent_start = ctx.days_ago(window)
    previous_start = ctx.days_ago(2 * window)

    def created(execution):
        return coerce_datetime(execution.get("created_at"))

    def is_recent(execution) -> bool:
        moment = created(execution)
        return moment is not None and moment >= recent_start

    def is_previous(execution) -> bool:
        moment = created(execution)
        return moment is not None and previous_start <= moment < recent_start

    def succeeded(execution) -> bool:
        return execution.get("execution_status") == ExecutionStatus.SUCCESS.value

    window_metrics = (
        count("recentExecutions", where=is_recent),
        count("recentSuccessful", where=lambda e: is_recent(e) and succeeded(e)),
        count("previousExecutions", where=is_previous),
        count("previousSuccessful", where=lambda e: is_previous(e) and succeeded(e)),
    )

    workflows = await _workflows(ctx)
    stats = await _execution_stats(ctx, BY_WORKFLOW, window_metrics)
    type_stats = await _execution_stats(ctx, BY_TYPE)
    executions = await _executions(ctx)

    def failed(execution) -> bool:
        return execution.get("execution_status") == ExecutionStatus.FAILED.value

    error_rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKFLOW_EXECUTION,
        joins=(WORKFLOW_JOIN,),
        where=failed,
        group_keys=(
            BY_WORKFLOW,
            GroupKey("errorMessage", value=lambda e: e.get("error_message") or UNKNOWN_ERROR),
        ),
        metrics=(
            count("count"),
            minimum("firstOccurrence", value=created),
            maximum("lastOccurrence", value=created),
        ),
        sort=(SortKey("count", descending=True),),
    ))
    overall_errors = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKFLOW_EXECUTION,
        joins=(WORKFLOW_JOIN,),
        where=failed,
        group_keys=(GroupKey("errorMessage", value=lambda e: e.get("error_message") or UNKNOWN_ERROR),),
        metrics=(
            count("count"),
            distinct("affectedWorkflows", value=lambda e: id_of(e.get("workflow_id"))),
        ),
        sort=(SortKey("count", descending=True),),
    ))

    failures_by_workflow: Dict[str, List[Dict[str, Any]]] = {}
    for execution in executions:
        if execution["status"] == ExecutionStatus.FAILED.value:
            failures_by_workflow.setdefault(execution["workflowId"], []).append(execution)

    analysis = []
    exact_reliability: Dict[str, float] = {}
    for workflow in workflows:
        workflow_id = id_of(workflow["_id"])
        metrics = dict(stats.get(workflow_id, EMPTY_EXECUTION_METRICS))
        reliability = _reliability(metrics)
        metrics["reliabilityScore"] = reliability.score
        metrics["reliabilityRating"] = reliability.band
        exact_reliability[workflow_id] = reliability.raw_score

        recent_rate = percentage(metrics.get("recentSuccessful", 0), metrics.get("recentExecutions", 0))
        previous_rate = percentage(metrics.get("previousSuccessful", 0), metrics.get("previousExecutions", 0))
        trend = recent_rate - previous_rate
        direction = "improving" if trend > 0 else "declining" if trend < 0 else "stable"

        patterns = [
            {
                "errorMessage": row["errorMessage"],
                "count": row["count"],
                "firstOccurrence": _iso(row["firstOccurrence"]),
                "lastOccurrence": _iso(row["lastOccurrence"]),
            }
            for row in error_rows if row["workflowId"] == workflow_id
        ]

        exact = _exact(metrics)
        rule_values = dict(
            exact,
            successTrend=trend,
            lowVehicleSuccess=int(exact["totalVehiclesProcessed"] > 0 and exact["vehicleSuccessRate"] < 80),
        )
        issues, recommendations = [], []
        for rule, recommendation in RELIABILITY_RULES:
            if rule.fires(rule_values):
                issues.append(rule.message)
                recommendations.append(recommendation)
        if patterns and patterns[0]["count"] > metrics["failedExecutions"] * 0.5:
            issues.append("Recurring error pattern detected")
            recommendations.append(f"Address primary error: {patterns[0]['errorMessage']}")

        analysis.append({
            "workflowId": workflow["_id"],
            "name": workflow["name"],
            "description": workflow["description"],
            "workflowType": workflow["workflowType"],
            "status": workflow["status"],
            "createdAt": _iso(workflow["createdAt"]),
            "successMetrics": {
                "totalExecutions": metrics["totalExecutions"],
                "successfulExecutions": metrics["successfulExecutions"],
                "partialSuccessExecutions": metrics["partialSuccessExecutions"],
                "failedExecutions": metrics["failedExecutions"],
                "successRate": metrics["successRate"],
                "partialSuccessRate": metrics["partialSuccessRate"],
                "failureRate": metrics["failureRate"],
                "reliabilityScore": metrics["reliabilityScore"],
                "reliabilityRating": metrics["reliabilityRating"],
            },
            "vehicleMetrics": {
                "totalVehiclesProcessed": metrics["totalVehiclesProcessed"],
                "totalVehiclesSuccessful": metrics["totalVehiclesSuccessful"],
                "totalVehiclesFailed": metrics["totalVehiclesFailed"],
                "vehicleSuccessRate": metrics["vehicleSuccessRate"],
            },
            "trends": {
                "recentSuccessRate": round_half_up(recent_rate),
                "previousSuccessRate": round_half_up(previous_rate),
                "successTrend": round_half_up(trend),
                "trendDirection": direction,
            },
            "errorAnalysis": {
                "totalErrors": metrics["failedExecutions"],
                "uniqueErrorPatterns": len(patterns),
                "topErrorPatterns": patterns[:5],
                "recentFailures": [
                    {
                        "executionId": execution["_id"],
                        "failedAt": _iso(execution["createdAt"]),
                        "errorMessage": execution["errorMessage"],
                        "totalVehicles": execution["totalVehicles"],
                        "failedVehicles": execution["failedVehicles"],
                    }
                    for execution in _newest_first(failures_by_workflow.get(workflow_id, []))[:10]
                ],
            },
            "issues": issues,
            "recommendations": recommendations,
        })

    def reliability_of(row) -> float:
        return exact_reliability[id_of(row["workflowId"])]

    analysis.sort(key=reliability_of, reverse=True)
    executed = [row for row in analysis if row["successMetrics"]["totalExecutions"] > 0]
    least = sorted(executed, key=reliability_of)

    type_ranking = []
    exact_type_success: Dict[str, float] = {}
    for workflow_type in WORKFLOW_TYPES:
        metrics = type_stats.get(workflow_type, EMPTY_EXECUTION_METRICS)
        reliability = _reliability(metrics)
        exact_type_success[workflow_type] = metrics["unrounded"]["successRate"]
        type_ranking.append({
            "workflowType": workflow_type,
            "typeName": _type_name(workflow_type),
            "totalExecutions": metrics["totalExecutions"],
            "successRate": metrics["successRate"],
            "failureRate": metrics["failureRate"],
            "reliabilityScore": reliability.score,
            "reliabilityRating": reliability.band,
        })
    type_ranking.sort(key=lambda row: exact_type_success[row["workflowType"]], reverse=True)

    overall = (await _execution_stats(ctx, ALL_EXECUTIONS, require_workflow=False)).get("all", EMPTY_EXECUTION_METRICS)

    def rating_count(label):
        return sum(1 for row in analysis if row["successMetrics"]["reliabilityRating"] == label)

    status_sums = {
        "successfulExecutions": lambda e: e["status"] == ExecutionStatus.SUCCESS.value,
        "failedExecutions": lambda e: e["status"] == ExecutionStatus.FAILED.value,
    }
    success_rate = (DerivedMetric("successRate", "successfulExecutions", "count", rounding_digits=0),)

    def trend_rows(frequency: TrendFrequency, period_name: str):
        return [
            {
                period_name: row["period"],
                "totalExecutions": row["count"],
                "successfulExecutions": row["successfulExecutions"],
                "failedExecutions": row["failedExecutions"],
                "successRate": row["successRate"],
            }
            for row in apply_derivations(build_timeline(executions, "createdAt", frequency, sums=status_sums), success_rate)
        ]

    return {
        "workflows": analysis,
        "workflowTypes": type_ranking,
        "overallStatistics": {
            "totalWorkflows": len(analysis),
            "totalExecutions": overall["totalExecutions"],
            "successfulExecutions": overall["successfulExecutions"],
            "partialSuccessExecutions": overall["partialSuccessExecutions"],
            "failedExecutions": overall["failedExecutions"],
            "overallSuccessRate": overall["successRate"],
            "overallPartialSuccessRate": overall["partialSuccessRate"],
            "overallFailureRate": overall["failureRate"],
            "reliabilityDistribution": {
                "excellent": rating_count("Excellent"),
                "good": rating_count("Good"),
                "fair": rating_count("Fair"),
                "poor": rating_count("Poor"),
                "veryPoor": rating_count(VERY_POOR),
            },
        },
        "mostReliableWorkflows": [
            {
                "id": row["workflowId"],
                "name": row["name"],
                "workflowType": row["workflowType"],
                "reliabilityScore": row["successMetrics"]["reliabilityScore"],
                "reliabilityRating": row["successMetrics"]["reliabilityRating"],
                "successRate": row["successMetrics"]["successRate"],
                "totalExecutions": row["successMetrics"]["totalExecutions"],
            }
            for row in executed[:10]
        ],
        "leastReliableWorkflows": [
            {
                "id": row["workflowId"],
                "name": row["name"],
                "workflowType": row["workflowType"],
                "reliabilityScore": row["successMetrics"]["reliabilityScore"],
                "reliabilityRating": row["successMetrics"]["reliabilityRating"],
                "failureRate": row["successMetrics"]["failureRate"],
                "totalExecutions": row["successMetrics"]["totalExecutions"],
                "issues": row["issues"],
            }
            for row in least[:10]
        ],
        "errorAnalysis": {
            "totalErrors": overall["failedExecutions"],
            "uniqueErrorTypes": len(overall_errors),
            "topErrors": [
                {
                    "errorMessage": row["errorMessage"],
                    "count": row["count"],
                    "affectedWorkflowsCount": len(row["affectedWorkflows"]),
                }
                for row in overall_errors[:10]
            ],
        },
        "successRateTimeline": trend_rows(TrendFrequency.DAILY, "date"),
        "monthlySuccessTrend": trend_rows(TrendFrequency.MONTHLY, "month"),
    }
