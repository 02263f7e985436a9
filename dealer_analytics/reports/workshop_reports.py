"""
Workshop report reports.

A workshop report is the generated record of all workshop work done on one
vehicle: cost totals and durations in `workshop_summary`, pass rates and
per-technician figures in `statistics`, and every quote with its work entries
in `quotes_data`. Reports reference their vehicle by id and are scoped to a
dealership through it. The date range applies to the report's creation time;
trends are bucketed on `generated_at`.

- workshop-report/overview
- workshop-report/cost-breakdown
- workshop-report/quality-metrics
- workshop-report/technician-performance
- workshop-report/completion-time
- workshop-report/revenue-analysis

Work entries sit two arrays deep (quotes_data[].work_details.work_entries[]),
so entry-level figures are computed over the projected report rows rather
than with an unwind.
"""

from typing import Any, Dict, List, Mapping, Optional

from dealer_analytics.models.enums import DerivationOp, EntityType
from dealer_analytics.reports.base import (
    ReportContext,
    average,
    count,
    distinct,
    maximum,
    minimum,
    only_one,
    register_report,
    round_fields,
    round_or_none,
    sort_rows,
    total,
)
from dealer_analytics.services.aggregation import (
    AggregationRequest,
    GroupKey,
    SortKey,
    UnwindSpec,
)
from dealer_analytics.services.entities import as_bool, as_number, coerce_datetime, has_text
from dealer_analytics.services.metrics import (
    DerivedMetric,
    apply_derivations,
    mean_or_zero,
    percentage,
    ratio,
    round_half_up,
    rounded_percentage,
)
from dealer_analytics.services.trends import TrendFrequency, bucket_by_range, build_timeline


COST_BOUNDARIES = (0, 1000, 2500, 5000, 10000, 25000, 50000)
COST_DEFAULT_RANGE = "Over 50000"
DURATION_BOUNDARIES = (0, 7, 14, 21, 30, 60, 90)
DURATION_DEFAULT_RANGE = "Over 90 days"
QUALITY_BOUNDARIES = (0, 0.25, 0.5, 0.75, 1.0)
NO_QUALITY_DATA = "No Quality Data"

# Reports whose mean pass rate is below this are listed as quality issues
QUALITY_ISSUE_THRESHOLD = 0.75

# (output label, statistics.quality_metrics key, work entry quality_check key)
QUALITY_CHECKS = (
    ("Visual", "visual_inspection_passed", "visual_inspection"),
    ("Functional", "functional_test_passed", "functional_test"),
    ("Road", "road_test_passed", "road_test"),
    ("Safety", "safety_check_passed", "safety_check"),
)

COST_COLUMNS = {
    "total": "totalCost",
    "average": "avgCost",
    "parts": "totalPartsCost",
    "labor": "totalLaborCost",
    "gst": "totalGst",
}
REVENUE_COLUMNS = {
    "total": "totalRevenue",
    "average": "avgRevenuePerReport",
    "parts": "partsRevenue",
    "labor": "laborRevenue",
    "gst": "gstCollected",
}

VEHICLE_TYPE = GroupKey("vehicleType", path="vehicle_type")
REPORT_TYPE = GroupKey("reportType", path="report_type")


# =============================================================================
# Document accessors
# =============================================================================

def _summary_value(report: Mapping[str, Any], key: str) -> Any:
    summary = report.get("workshop_summary")
    return summary.get(key) if isinstance(summary, Mapping) else None


def _summary(key: str):
    return lambda report: as_number(_summary_value(report, key))


_grand_total = _summary("grand_total")
_parts_cost = _summary("parts_cost")
_labor_cost = _summary("labor_cost")
_gst = _summary("total_gst")
_duration = _summary("duration_days")
_entry_count = _summary("total_work_entries")
_field_count = _summary("total_fields")


def _statistics(report: Mapping[str, Any], key: str) -> Any:
    statistics = report.get("statistics")
    return statistics.get(key) if isinstance(statistics, Mapping) else None


def _pass_rate(key: str):
    def extract(report):
        metrics = _statistics(report, "quality_metrics")
        return as_number(metrics.get(key)) if isinstance(metrics, Mapping) else None
    return extract


PASS_RATES = {label: _pass_rate(key) for label, key, _ in QUALITY_CHECKS}


def _quality_score(report: Mapping[str, Any]) -> Optional[float]:
    """Mean of the recorded pass rates, None when none is recorded."""
    rates = [rate for rate in (extract(report) for extract in PASS_RATES.values()) if rate is not None]
    return sum(rates) / len(rates) if rates else None


def _completion_rate(report: Mapping[str, Any]) -> float:
    return percentage(_summary("total_work_completed")(report), _field_count(report))


def _per(numerator, denominator):
    """Per-report ratio, None when either side is missing or the divisor is not positive."""
    def extract(report):
        top = numerator(report)
        bottom = denominator(report)
        if top is None or bottom is None or bottom <= 0:
            return None
        return top / bottom
    return extract


def _vehicle_detail(report: Mapping[str, Any], key: str) -> Any:
    details = report.get("vehicle_details")
    return details.get(key) if isinstance(details, Mapping) else None


def _work_entries(report: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    entries: List[Mapping[str, Any]] = []
    for quote in report.get("quotes_data") or ():
        details = quote.get("work_details") if isinstance(quote, Mapping) else None
        if not isinstance(details, Mapping):
            continue
        entries.extend(entry for entry in details.get("work_entries") or () if isinstance(entry, Mapping))
    return entries


def _technicians(report: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    performance = _statistics(report, "technician_performance")
    if not isinstance(performance, list):
        return []
    return [entry for entry in performance if isinstance(entry, Mapping)]


def _iso(value: Any) -> Optional[str]:
    moment = coerce_datetime(value)
    return moment.isoformat().replace("+00:00", "Z") if moment is not None else None


REPORT_FIELDS = {
    "vehicleId": "vehicle_id",
    "vehicleStockId": "vehicle_stock_id",
    "vehicleType": "vehicle_type",
    "reportType": "report_type",
    "make": lambda report: _vehicle_detail(report, "make"),
    "model": lambda report: _vehicle_detail(report, "model"),
    "year": lambda report: _vehicle_detail(report, "year"),
    "generatedAt": "generated_at",
    "grandTotal": _grand_total,
    "partsCost": _parts_cost,
    "laborCost": _labor_cost,
    "gst": _gst,
    "durationDays": _duration,
    "workEntries": _entry_count,
    "startDate": lambda report: _iso(_summary_value(report, "start_date")),
    "completionDate": lambda report: _iso(_summary_value(report, "completion_date")),
    "passRates": lambda report: {label: extract(report) for label, extract in PASS_RATES.items()},
    "qualityScore": _quality_score,
    "technicians": _technicians,
    "entries": _work_entries,
}


async def _workshop_reports(ctx: ReportContext) -> List[Dict[str, Any]]:
    """One projected row per scoped workshop report."""
    return await ctx.records(EntityType.WORKSHOP_REPORT, REPORT_FIELDS)


def _brief(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "reportId": row["_id"],
        "vehicleStockId": row["vehicleStockId"],
        "vehicleType": row["vehicleType"],
        "reportType": row["reportType"],
        "make": row["make"],
        "model": row["model"],
        "year": row["year"],
    }


def _top(rows: List[Dict[str, Any]], field: str, limit: int, descending: bool = True) -> List[Dict[str, Any]]:
    return sort_rows([row for row in rows if row[field] is not None], field, descending)[:limit]


# =============================================================================
# Cost and revenue columns
# =============================================================================

def _money_metrics(columns: Mapping[str, str]) -> tuple:
    return (
        count("reportCount"),
        total(columns["total"], value=_grand_total),
        average(columns["average"], value=_grand_total),
        total(columns["parts"], value=_parts_cost),
        total(columns["labor"], value=_labor_cost),
        total(columns["gst"], value=_gst),
    )


def _money_shares(rows: List[Dict[str, Any]], columns: Mapping[str, str]) -> List[Dict[str, Any]]:
    """Share of parts, labor and GST in the grand total; columns rounded after deriving."""
    rows = apply_derivations(rows, [
        DerivedMetric("partsPercentage", columns["parts"], columns["total"], rounding_digits=1),
        DerivedMetric("laborPercentage", columns["labor"], columns["total"], rounding_digits=1),
        DerivedMetric("gstPercentage", columns["gst"], columns["total"], rounding_digits=1),
        DerivedMetric(
            "partsToLaborRatio", columns["parts"], columns["labor"],
            op=DerivationOp.RATIO, rounding_digits=2,
        ),
    ])
    for row in rows:
        if row.get(columns["average"]) is None:
            row[columns["average"]] = 0
        round_fields(row, 2, *columns.values())
    return rows


async def _money_by(ctx: ReportContext, key: GroupKey, columns: Mapping[str, str]) -> List[Dict[str, Any]]:
    return _money_shares(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        group_keys=(key,),
        metrics=_money_metrics(columns),
        sort=(SortKey(columns["total"], descending=True),),
    )), columns)


async def _money_overall(ctx: ReportContext, columns: Mapping[str, str]) -> Dict[str, Any]:
    default = {"reportCount": 0, **{name: 0 for name in columns.values()}}
    row = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        metrics=_money_metrics(columns),
    )), default)
    return _money_shares([row], columns)[0]


def _money_timeline(rows: List[Dict[str, Any]], columns: Mapping[str, str]) -> List[Dict[str, Any]]:
    timeline = build_timeline(
        rows, "generatedAt", TrendFrequency.MONTHLY,
        sums={
            columns["total"]: lambda row: row["grandTotal"],
            columns["parts"]: lambda row: row["partsCost"],
            columns["labor"]: lambda row: row["laborCost"],
        },
        means={columns["average"]: lambda row: row["grandTotal"]},
    )
    for row in timeline:
        round_fields(row, 2, columns["total"], columns["parts"], columns["labor"], columns["average"])
    return timeline


def _cost_ranges(rows: List[Dict[str, Any]], total_name: str) -> List[Dict[str, Any]]:
    buckets = bucket_by_range(
        rows, lambda row: row["grandTotal"], COST_BOUNDARIES, COST_DEFAULT_RANGE,
        sums={total_name: lambda row: row["grandTotal"]},
        means={"avgDurationDays": lambda row: row["durationDays"]},
    )
    for bucket in buckets:
        round_fields(bucket, 2, total_name)
        round_fields(bucket, 1, "avgDurationDays")
    return buckets


# =============================================================================
# workshop-report/overview
# =============================================================================

async def _type_distribution(ctx: ReportContext, key: GroupKey, total_reports: int) -> List[Dict[str, Any]]:
    rows = apply_derivations(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        group_keys=(key,),
        metrics=(
            count("count"),
            total("totalCost", value=_grand_total),
            average("avgCost", value=_grand_total),
            average("avgDurationDays", value=_duration),
            average("avgCompletionRate", value=_completion_rate),
        ),
        sort=(SortKey("count", descending=True),),
    )), [DerivedMetric("percentage", "count", total_reports, rounding_digits=1)])
    for row in rows:
        round_fields(row, 2, "totalCost", "avgCost")
        round_fields(row, 1, "avgDurationDays", "avgCompletionRate")
    return rows


@register_report("workshop-report", "overview", "Workshop Report Overview")
async def workshop_report_overview(ctx: ReportContext) -> Dict[str, Any]:
    """Workshop report volume, cost and completion by vehicle and report type."""
    summary = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        metrics=(
            count("totalReports"),
            distinct("vehicles", field="vehicle_id"),
            total("totalCost", value=_grand_total),
            average("avgCost", value=_grand_total),
            average("avgDurationDays", value=_duration),
            total("totalWorkEntries", value=_entry_count),
            total("totalQuotes", value=_summary("total_quotes")),
            average("completionRate", value=_completion_rate),
        ),
    )), {
        "totalReports": 0,
        "vehicles": [],
        "totalCost": 0,
        "avgCost": 0,
        "avgDurationDays": 0,
        "totalWorkEntries": 0,
        "totalQuotes": 0,
        "completionRate": 0,
    })
    summary["uniqueVehicles"] = len(summary.pop("vehicles"))
    for name in ("avgCost", "avgDurationDays", "completionRate"):
        summary[name] = summary[name] or 0
    round_fields(summary, 2, "totalCost", "avgCost")
    round_fields(summary, 1, "avgDurationDays", "completionRate")

    by_vehicle_type = await _type_distribution(ctx, VEHICLE_TYPE, summary["totalReports"])
    by_report_type = await _type_distribution(ctx, REPORT_TYPE, summary["totalReports"])

    reports = await _workshop_reports(ctx)
    monthly_trends = build_timeline(
        reports, "generatedAt", TrendFrequency.MONTHLY,
        sums={"totalCost": lambda row: row["grandTotal"]},
        means={"avgDurationDays": lambda row: row["durationDays"]},
    )
    for row in monthly_trends:
        round_fields(row, 2, "totalCost")
        round_fields(row, 1, "avgDurationDays")

    top_vehicles = [
        {**_brief(row), "grandTotal": round_half_up(row["grandTotal"], 2), "durationDays": row["durationDays"]}
        for row in _top(reports, "grandTotal", 10)
    ]

    return {
        "summary": summary,
        "vehicleTypeDistribution": by_vehicle_type,
        "reportTypeDistribution": by_report_type,
        "monthlyTrends": monthly_trends,
        "revenueMetrics": await _money_overall(ctx, REVENUE_COLUMNS),
        "topVehiclesByCost": top_vehicles,
    }


# =============================================================================
# workshop-report/cost-breakdown
# =============================================================================

def _entry_cost(entry: Mapping[str, Any], key: str) -> float:
    return as_number(entry.get(key)) or 0.0


@register_report("workshop-report", "cost-breakdown", "Workshop Cost Breakdown")
async def workshop_cost_breakdown(ctx: ReportContext) -> Dict[str, Any]:
    """Parts, labor and GST split by vehicle type, report type and month."""
    reports = await _workshop_reports(ctx)

    efficiency = apply_derivations(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        group_keys=(VEHICLE_TYPE, REPORT_TYPE),
        metrics=(
            count("reportCount"),
            total("totalCost", value=_grand_total),
            total("totalWorkEntries", value=_entry_count),
            total("totalFields", value=_field_count),
        ),
        sort=(SortKey("totalCost", descending=True),),
    )), [
        DerivedMetric("costPerWorkEntry", "totalCost", "totalWorkEntries", op=DerivationOp.RATIO, rounding_digits=2),
        DerivedMetric("costPerField", "totalCost", "totalFields", op=DerivationOp.RATIO, rounding_digits=2),
    ])
    for row in efficiency:
        round_fields(row, 2, "totalCost")

    entries = [entry for row in reports for entry in row["entries"]]
    parts = [_entry_cost(entry, "parts_cost") for entry in entries]
    labor = [_entry_cost(entry, "labor_cost") for entry in entries]
    gst = [_entry_cost(entry, "gst") for entry in entries]
    entry_analysis = {
        "totalWorkEntries": len(entries),
        "completedEntries": sum(1 for entry in entries if as_bool(entry.get("completed"))),
        "totalPartsCost": round_half_up(sum(parts), 2),
        "totalLaborCost": round_half_up(sum(labor), 2),
        "totalGst": round_half_up(sum(gst), 2),
        "avgPartsCost": round_half_up(mean_or_zero(parts), 2),
        "avgLaborCost": round_half_up(mean_or_zero(labor), 2),
        "avgEntryCost": round_half_up(mean_or_zero([p + l + g for p, l, g in zip(parts, labor, gst)]), 2),
    }

    return {
        "overallCosts": await _money_overall(ctx, COST_COLUMNS),
        "costByVehicleType": await _money_by(ctx, VEHICLE_TYPE, COST_COLUMNS),
        "costByReportType": await _money_by(ctx, REPORT_TYPE, COST_COLUMNS),
        "monthlyCostTrends": _money_timeline(reports, COST_COLUMNS),
        "costEfficiency": efficiency,
        "costDistribution": _cost_ranges(reports, "totalCost"),
        "workEntryCostAnalysis": entry_analysis,
    }


# =============================================================================
# workshop-report/quality-metrics
# =============================================================================

def _quality_metrics() -> tuple:
    metrics = []
    for label, extract in PASS_RATES.items():
        metrics.append(total(f"total{label}Passed", value=extract))
        metrics.append(average(f"avg{label}Passed", value=extract))
    return tuple(metrics)


def _with_quality_score(row: Dict[str, Any]) -> Dict[str, Any]:
    """Overall score is the mean of the per-check averages that are present."""
    averages = [row.get(f"avg{label}Passed") for label, _, _ in QUALITY_CHECKS]
    present = [value for value in averages if value is not None]
    row["overallQualityScore"] = round_half_up(sum(present) / len(present), 3) if present else 0.0
    round_fields(row, 3, *(f"avg{label}Passed" for label, _, _ in QUALITY_CHECKS))
    round_fields(row, 3, *(f"total{label}Passed" for label, _, _ in QUALITY_CHECKS))
    return row


async def _quality_by(ctx: ReportContext, key: GroupKey) -> List[Dict[str, Any]]:
    rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        group_keys=(key,),
        metrics=(count("reportCount"),) + _quality_metrics(),
    ))
    return sort_rows([_with_quality_score(row) for row in rows], "overallQualityScore")


def _entry_quality(entries: List[Mapping[str, Any]]) -> Dict[str, Any]:
    checked = [entry["quality_check"] for entry in entries if isinstance(entry.get("quality_check"), Mapping)]
    analysis: Dict[str, Any] = {"totalWorkEntries": len(checked)}
    for label, _, key in QUALITY_CHECKS:
        passed = sum(1 for check in checked if check.get(key) is True)
        analysis[f"{label.lower()}Passed"] = passed
        analysis[f"{label.lower()}PassRate"] = rounded_percentage(passed, len(checked), 1)
    return analysis


def _pass_rate_mean(label: str):
    return lambda row: row["passRates"][label]


@register_report("workshop-report", "quality-metrics", "Workshop Quality Metrics")
async def workshop_quality_metrics(ctx: ReportContext) -> Dict[str, Any]:
    """Quality check pass rates, score distribution and low-scoring reports."""
    overall = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        metrics=(count("totalReports"),) + _quality_metrics(),
    )), {"totalReports": 0})
    overall = _with_quality_score(overall)
    for label, _, _ in QUALITY_CHECKS:
        for name in (f"total{label}Passed", f"avg{label}Passed"):
            overall[name] = overall.get(name) or 0

    reports = await _workshop_reports(ctx)

    monthly = build_timeline(
        reports, "generatedAt", TrendFrequency.MONTHLY,
        means={f"avg{label}Passed": _pass_rate_mean(label) for label, _, _ in QUALITY_CHECKS},
    )
    monthly = [_with_quality_score(row) for row in monthly]

    distribution = bucket_by_range(
        reports, lambda row: row["qualityScore"], QUALITY_BOUNDARIES, NO_QUALITY_DATA,
        collect={"vehicles": lambda row: {
            "stockId": row["vehicleStockId"],
            "vehicleType": row["vehicleType"],
            "qualityScore": round_or_none(row["qualityScore"], 3),
        }},
        include_upper=True,
    )

    issues = [
        {
            **_brief(row),
            **{f"{label.lower()}Passed": row["passRates"][label] for label, _, _ in QUALITY_CHECKS},
            "overallQualityScore": round_half_up(row["qualityScore"], 3),
        }
        for row in _top(reports, "qualityScore", 20, descending=False)
        if row["qualityScore"] < QUALITY_ISSUE_THRESHOLD
    ]

    return {
        "overallQualityMetrics": overall,
        "qualityByVehicleType": await _quality_by(ctx, VEHICLE_TYPE),
        "workEntryQualityAnalysis": _entry_quality([entry for row in reports for entry in row["entries"]]),
        "monthlyQualityTrends": monthly,
        "qualityScoreDistribution": distribution,
        "qualityIssues": issues,
        "qualityByReportType": await _quality_by(ctx, REPORT_TYPE),
    }


# =============================================================================
# workshop-report/technician-performance
# =============================================================================

def _technician(report: Mapping[str, Any]) -> Mapping[str, Any]:
    entry = _statistics(report, "technician_performance")
    return entry if isinstance(entry, Mapping) else {}


def _technician_number(key: str):
    return lambda report: as_number(_technician(report).get(key))


def _entry_technicians(entries: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    stats: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        name = entry.get("technician")
        if not has_text(name):
            continue
        row = stats.setdefault(name, {
            "technician": name,
            "totalEntries": 0,
            "completedEntries": 0,
            "totalPartsCost": 0.0,
            "totalLaborCost": 0.0,
            "laborHours": [],
        })
        row["totalEntries"] += 1
        row["completedEntries"] += 1 if as_bool(entry.get("completed")) else 0
        row["totalPartsCost"] += _entry_cost(entry, "parts_cost")
        row["totalLaborCost"] += _entry_cost(entry, "labor_cost")
        hours = as_number(entry.get("labor_hours"))
        if hours is not None:
            row["laborHours"].append(hours)

    analysis = []
    for row in stats.values():
        hours = row.pop("laborHours")
        analysis.append({
            **row,
            "completionRate": rounded_percentage(row["completedEntries"], row["totalEntries"], 1),
            "totalPartsCost": round_half_up(row["totalPartsCost"], 2),
            "totalLaborCost": round_half_up(row["totalLaborCost"], 2),
            "totalRevenue": round_half_up(row["totalPartsCost"] + row["totalLaborCost"], 2),
            "avgLaborHours": round_half_up(mean_or_zero(hours), 1),
        })
    return sort_rows(analysis, "totalEntries")


@register_report("workshop-report", "technician-performance", "Workshop Technician Performance")
async def workshop_technician_performance(ctx: ReportContext) -> Dict[str, Any]:
    """Per-technician work volume, completion time and quality scores."""
    performance = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        unwind=UnwindSpec("statistics.technician_performance"),
        where=lambda report: has_text(_technician(report).get("technician_name")),
        group_keys=(GroupKey("technicianName", value=lambda report: _technician(report)["technician_name"]),),
        metrics=(
            total("totalWorkEntries", value=_technician_number("work_entries_completed")),
            average("avgCompletionTime", value=_technician_number("avg_completion_time")),
            average("avgQualityScore", value=_technician_number("quality_score")),
            count("reportsWorkedOn"),
            distinct("vehicleTypes", field="vehicle_type"),
        ),
        sort=(SortKey("totalWorkEntries", descending=True),),
    ))
    for row in performance:
        round_fields(row, 2, "avgCompletionTime")
        round_fields(row, 3, "avgQualityScore")

    reports = await _workshop_reports(ctx)

    ranked = []
    for row in reports:
        for entry in row["technicians"]:
            if not has_text(entry.get("technician_name")):
                continue
            ranked.append({
                "technicianName": entry["technician_name"],
                "vehicleStockId": row["vehicleStockId"],
                "workEntriesCompleted": as_number(entry.get("work_entries_completed")) or 0,
                "avgCompletionTime": as_number(entry.get("avg_completion_time")) or 0,
                "qualityScore": as_number(entry.get("quality_score")) or 0,
            })
    ranked.sort(key=lambda row: (row["qualityScore"], row["workEntriesCompleted"]), reverse=True)

    return {
        "technicianPerformance": performance,
        "workEntryTechnicianAnalysis": _entry_technicians([entry for row in reports for entry in row["entries"]]),
        "topTechnicians": ranked[:10],
    }


# =============================================================================
# workshop-report/completion-time
# =============================================================================

def _duration_metrics() -> tuple:
    return (
        count("reportCount"),
        average("avgDurationDays", value=_duration),
        minimum("minDurationDays", value=_duration),
        maximum("maxDurationDays", value=_duration),
        average("avgWorkEntries", value=_entry_count),
    )


async def _duration_by(ctx: ReportContext, key: GroupKey) -> List[Dict[str, Any]]:
    rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        group_keys=(key,),
        metrics=_duration_metrics(),
    ))
    for row in rows:
        round_fields(row, 1, "avgDurationDays", "minDurationDays", "maxDurationDays", "avgWorkEntries")
    return sort_rows(rows, "avgDurationDays", descending=False)


@register_report("workshop-report", "completion-time", "Workshop Completion Time")
async def workshop_completion_time(ctx: ReportContext) -> Dict[str, Any]:
    """Workshop durations by type, duration ranges and longest-running reports."""
    overall = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        metrics=_duration_metrics() + (count("reportsWithDuration", where=lambda r: _duration(r) is not None),),
    )), {"reportCount": 0, "reportsWithDuration": 0})
    for name in ("avgDurationDays", "minDurationDays", "maxDurationDays", "avgWorkEntries"):
        overall[name] = round_or_none(overall.get(name), 1) or 0

    efficiency = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        group_keys=(VEHICLE_TYPE,),
        metrics=(
            count("reportCount"),
            average("avgDaysPerWorkEntry", value=_per(_duration, _entry_count)),
            average("avgDaysPerField", value=_per(_duration, _field_count)),
        ),
        sort=(SortKey("reportCount", descending=True),),
    ))
    for row in efficiency:
        round_fields(row, 2, "avgDaysPerWorkEntry", "avgDaysPerField")

    reports = await _workshop_reports(ctx)
    timed = [row for row in reports if row["durationDays"] is not None]

    distribution = bucket_by_range(
        timed, lambda row: row["durationDays"], DURATION_BOUNDARIES, DURATION_DEFAULT_RANGE,
        means={"avgCost": lambda row: row["grandTotal"]},
        collect={"vehicleTypes": lambda row: row["vehicleType"]},
    )
    for bucket in distribution:
        round_fields(bucket, 2, "avgCost")

    monthly = build_timeline(
        timed, "generatedAt", TrendFrequency.MONTHLY,
        means={"avgDurationDays": lambda row: row["durationDays"]},
    )
    for row in monthly:
        round_fields(row, 1, "avgDurationDays")

    longest = [
        {
            **_brief(row),
            "durationDays": row["durationDays"],
            "workEntries": row["workEntries"],
            "startDate": row["startDate"],
            "completionDate": row["completionDate"],
        }
        for row in _top(timed, "durationDays", 20)
    ]

    return {
        "overallCompletionMetrics": overall,
        "completionByVehicleType": await _duration_by(ctx, VEHICLE_TYPE),
        "completionByReportType": await _duration_by(ctx, REPORT_TYPE),
        "durationDistribution": distribution,
        "completionEfficiency": efficiency,
        "monthlyCompletionTrends": monthly,
        "longestRunning": longest,
    }


# =============================================================================
# workshop-report/revenue-analysis
# =============================================================================

@register_report("workshop-report", "revenue-analysis", "Workshop Revenue Analysis")
async def workshop_revenue_analysis(ctx: ReportContext) -> Dict[str, Any]:
    """Workshop revenue by type and month, revenue ranges and profitability."""
    reports = await _workshop_reports(ctx)

    profitability = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_REPORT,
        group_keys=(VEHICLE_TYPE,),
        metrics=(
            count("reportCount"),
            total("totalRevenue", value=_grand_total),
            total("totalDays", value=_duration),
            total("totalWorkEntries", value=_entry_count),
        ),
    ))
    for row in profitability:
        row["revenuePerDay"] = round_half_up(ratio(row["totalRevenue"], row["totalDays"]), 2)
        row["revenuePerWorkEntry"] = round_half_up(ratio(row["totalRevenue"], row["totalWorkEntries"]), 2)
        round_fields(row, 2, "totalRevenue")
    profitability = sort_rows(profitability, "revenuePerDay")

    top_reports = [
        {
            **_brief(row),
            "totalRevenue": round_half_up(row["grandTotal"], 2),
            "partsRevenue": round_half_up(row["partsCost"] or 0, 2),
            "laborRevenue": round_half_up(row["laborCost"] or 0, 2),
            "generatedAt": _iso(row["generatedAt"]),
        }
        for row in _top(reports, "grandTotal", 20)
    ]

    return {
        "overallRevenue": await _money_overall(ctx, REVENUE_COLUMNS),
        "revenueByVehicleType": await _money_by(ctx, VEHICLE_TYPE, REVENUE_COLUMNS),
        "revenueByReportType": await _money_by(ctx, REPORT_TYPE, REVENUE_COLUMNS),
        "monthlyRevenueTrends": _money_timeline(reports, REVENUE_COLUMNS),
        "revenueDistribution": _cost_ranges(reports, "totalRevenue"),
        "topRevenueReports": top_reports,
        "profitabilityMetrics": profitability,
    }
