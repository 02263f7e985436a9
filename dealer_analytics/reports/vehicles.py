"""
Vehicle reports.

- vehicle/overview-by-type: type x status distribution rolled up to type,
  monthly intake per type, dealership comparison and fleet summary
- vehicle/status-distribution: status counts, status x type breakdown,
  per-status workshop/attachment rates and queue status
- vehicle/workshop-integration: workshop, report-ready and report-preparing
  rates per type, stage metrics for inspection/trade-in vehicles and
  dealership workshop performance
- vehicle/pricing-analysis: purchase, retail and sold prices per type and
  make/model, retail price ranges and fleet revenue
- vehicle/attachment-analysis: attachment counts and storage by type,
  category, MIME type, size range, upload month and dealership

Workshop flags are a boolean on most vehicles and an array of per-stage
booleans on inspection and trade-in vehicles; they are only ever read through
the accessors in services/entities.py.
"""

from typing import Any, Dict, List

from dealer_analytics.models.enums import EntityType
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
    RollupSpec,
    SortKey,
    UnwindSpec,
)
from dealer_analytics.services.entities import (
    array_length,
    as_number,
    days_between,
    flag_stage_count,
    is_staged,
    vehicle_detail_number,
    vehicle_has_attachments,
    vehicle_in_workshop,
    vehicle_report_preparing,
    vehicle_report_ready,
)
from dealer_analytics.services.metrics import DerivedMetric, apply_derivations, round_half_up
from dealer_analytics.services.trends import TrendFrequency, bucket_by_range, build_timeline


STAGED_VEHICLE_TYPES = ("inspection", "tradein")

TYPE = GroupKey("type", path="vehicle_type")
STATUS = GroupKey("status", path="status")
DEALERSHIP = GroupKey("dealershipId", path="dealership_id")

RETAIL_PRICE_BOUNDARIES = (0, 10000, 20000, 30000, 50000, 75000, 100000, 150000, 200000, 500000)
ATTACHMENT_SIZE_BOUNDARIES = (0, 102400, 512000, 1048576, 5242880, 10485760, 52428800)
BYTES_PER_MB = 1048576
ATTACHMENTS = UnwindSpec("vehicle_attachments")


def _retail_price(vehicle):
    return vehicle_detail_number(vehicle, "retail_price")


def _purchase_price(vehicle):
    return vehicle_detail_number(vehicle, "purchase_price")


def _nest_timeline(timeline: List[Dict[str, Any]], by_name: str, list_name: str) -> List[Dict[str, Any]]:
    """Regroup flat timeline rows into one entry per group key."""
    nested: Dict[Any, Dict[str, Any]] = {}
    for row in timeline:
        key = row[by_name]
        entry = nested.setdefault(repr(key), {by_name: key, list_name: []})
        entry[list_name].append({k: v for k, v in row.items() if k != by_name})
    return list(nested.values())


# =============================================================================
# vehicle/overview-by-type
# =============================================================================

@register_report("vehicle", "overview-by-type", "Vehicle Overview by Type")
async def vehicle_overview_by_type(ctx: ReportContext) -> Dict[str, Any]:
    """Vehicle distribution by type with status breakdown, trends and summary."""
    type_distribution = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(TYPE, STATUS),
        metrics=(
            count("count"),
            average("avgRetailPrice", value=_retail_price),
            average("avgPurchasePrice", value=_purchase_price),
        ),
        rollup=RollupSpec(
            keys=("type",),
            metrics=(
                total("totalCount", field="count"),
                average("avgRetailPrice", field="avgRetailPrice"),
                average("avgPurchasePrice", field="avgPurchasePrice"),
            ),
            breakdown_field="statusBreakdown",
            breakdown_keys=("status", "count"),
        ),
        sort=(SortKey("totalCount", descending=True),),
    ))
    for row in type_distribution:
        round_fields(row, 2, "avgRetailPrice", "avgPurchasePrice")

    vehicles = await ctx.records(EntityType.VEHICLE, {
        "type": "vehicle_type",
        "created_at": "created_at",
    })
    monthly_trends = _nest_timeline(
        build_timeline(
            vehicles, "created_at", TrendFrequency.MONTHLY,
            by=lambda row: row["type"], by_name="type",
        ),
        "type",
        "trends",
    )

    dealership_comparison = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(DEALERSHIP, TYPE),
        metrics=(count("count"),),
        rollup=RollupSpec(
            keys=("dealershipId",),
            metrics=(total("totalVehicles", field="count"),),
            breakdown_field="typeBreakdown",
            breakdown_keys=("type", "count"),
        ),
        sort=(SortKey("totalVehicles", descending=True),),
    ))

    detailed_breakdown = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(TYPE, GroupKey("make", path="make"), GroupKey("year", path="year")),
        metrics=(
            count("count"),
            average("avgRetailPrice", value=_retail_price),
            minimum("minRetailPrice", value=_retail_price),
            maximum("maxRetailPrice", value=_retail_price),
        ),
        sort=(SortKey("count", descending=True),),
        limit=50,
    ))
    for row in detailed_breakdown:
        round_fields(row, 2, "avgRetailPrice")

    summary_rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        metrics=(
            count("totalVehicles"),
            distinct("uniqueMakes", field="make"),
            distinct("uniqueModels", field="model"),
            average("avgYear", field="year"),
            minimum("minYear", field="year"),
            maximum("maxYear", field="year"),
        ),
    ))
    summary = {
        "totalVehicles": 0,
        "uniqueMakesCount": 0,
        "uniqueModelsCount": 0,
        "avgYear": 0,
        "minYear": 0,
        "maxYear": 0,
    }
    if summary_rows:
        row = summary_rows[0]
        summary = {
            "totalVehicles": row["totalVehicles"],
            "uniqueMakesCount": len(row["uniqueMakes"]),
            "uniqueModelsCount": len(row["uniqueModels"]),
            "avgYear": round_or_none(row["avgYear"], 0) or 0,
            "minYear": row["minYear"] if row["minYear"] is not None else 0,
            "maxYear": row["maxYear"] if row["maxYear"] is not None else 0,
        }

    return {
        "typeDistribution": type_distribution,
        "monthlyTrends": monthly_trends,
        "dealershipComparison": dealership_comparison,
        "detailedBreakdown": detailed_breakdown,
        "summary": summary,
    }


# =============================================================================
# vehicle/status-distribution
# =============================================================================

@register_report("vehicle", "status-distribution", "Vehicle Status Distribution")
async def vehicle_status_distribution(ctx: ReportContext) -> Dict[str, Any]:
    """Vehicle status counts, per-type breakdown and per-status metrics."""
    now = ctx.now

    def days_since_creation(vehicle):
        return days_between(now, vehicle.get("created_at"))

    def days_since_update(vehicle):
        return days_between(now, vehicle.get("updated_at"))

    status_distribution = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(STATUS,),
        metrics=(count("count"), distinct("types", field="vehicle_type")),
        sort=(SortKey("count", descending=True),),
    ))

    status_by_type = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(STATUS, TYPE),
        metrics=(count("count"),),
        rollup=RollupSpec(
            keys=("status",),
            metrics=(total("totalCount", field="count"),),
            breakdown_field="typeBreakdown",
            breakdown_keys=("type", "count"),
        ),
        sort=(SortKey("totalCount", descending=True),),
    ))

    dealership_breakdown = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(DEALERSHIP, STATUS),
        metrics=(count("count"),),
        rollup=RollupSpec(
            keys=("dealershipId",),
            metrics=(total("totalVehicles", field="count"),),
            breakdown_field="statusBreakdown",
            breakdown_keys=("status", "count"),
        ),
        sort=(SortKey("totalVehicles", descending=True),),
    ))

    status_metrics = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(STATUS,),
        metrics=(
            count("count"),
            average("avgRetailPrice", value=_retail_price),
            average("avgPurchasePrice", value=_purchase_price),
            average("avgDaysSinceCreation", value=days_since_creation),
            count("vehiclesWithWorkshop", where=vehicle_in_workshop),
            count("vehiclesWithAttachments", where=vehicle_has_attachments),
        ),
        sort=(SortKey("count", descending=True),),
    ))
    status_metrics = apply_derivations(status_metrics, [
        DerivedMetric("workshopPercentage", "vehiclesWithWorkshop", "count", rounding_digits=1),
        DerivedMetric("attachmentPercentage", "vehiclesWithAttachments", "count", rounding_digits=1),
    ])
    for row in status_metrics:
        round_fields(row, 2, "avgRetailPrice", "avgPurchasePrice")
        round_fields(row, 1, "avgDaysSinceCreation")

    queue_status = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(GroupKey("queueStatus", path="queue_status"), STATUS),
        metrics=(count("count"), average("avgProcessingAttempts", field="processing_attempts")),
        rollup=RollupSpec(
            keys=("queueStatus",),
            metrics=(
                total("totalCount", field="count"),
                average("avgProcessingAttempts", field="avgProcessingAttempts"),
            ),
            breakdown_field="vehicleStatusBreakdown",
            breakdown_keys=("status", "count"),
        ),
        sort=(SortKey("totalCount", descending=True),),
    ))
    for row in queue_status:
        round_fields(row, 2, "avgProcessingAttempts")

    vehicles = await ctx.records(EntityType.VEHICLE, {
        "status": "status",
        "updated_at": "updated_at",
        "daysSinceCreation": lambda v: days_between(v.get("updated_at"), v.get("created_at")),
    })
    status_timeline = build_timeline(
        vehicles, "updated_at", TrendFrequency.MONTHLY,
        means={"avgDaysSinceCreation": lambda row: row["daysSinceCreation"]},
        by=lambda row: row["status"], by_name="status",
    )
    for row in status_timeline:
        round_fields(row, 1, "avgDaysSinceCreation")

    summary_row = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        metrics=(
            count("totalVehicles"),
            distinct("uniqueStatuses", field="status"),
            average("avgDaysSinceCreation", value=days_since_creation),
            average("avgDaysSinceUpdate", value=days_since_update),
        ),
    )), {"totalVehicles": 0, "uniqueStatuses": [], "avgDaysSinceCreation": 0, "avgDaysSinceUpdate": 0})

    return {
        "statusDistribution": status_distribution,
        "statusByType": status_by_type,
        "statusTimeline": status_timeline,
        "dealershipStatusBreakdown": dealership_breakdown,
        "statusMetrics": status_metrics,
        "queueStatusDistribution": queue_status,
        "summary": {
            "totalVehicles": summary_row["totalVehicles"],
            "uniqueStatusCount": len(summary_row["uniqueStatuses"]),
            "avgDaysSinceCreation": round_or_none(summary_row["avgDaysSinceCreation"], 1) or 0,
            "avgDaysSinceUpdate": round_or_none(summary_row["avgDaysSinceUpdate"], 1) or 0,
        },
    }


# =============================================================================
# vehicle/workshop-integration
# =============================================================================

def _is_staged_type(vehicle) -> bool:
    return vehicle.get("vehicle_type") in STAGED_VEHICLE_TYPES


@register_report("vehicle", "workshop-integration", "Vehicle Workshop Integration")
async def vehicle_workshop_integration(ctx: ReportContext) -> Dict[str, Any]:
    """Workshop status, report readiness and stage metrics per vehicle type."""
    status_overview = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(TYPE,),
        metrics=(
            count("totalVehicles"),
            count("vehiclesInWorkshop", where=vehicle_in_workshop),
            count("vehiclesWithReportReady", where=vehicle_report_ready),
            count("vehiclesWithReportPreparing", where=vehicle_report_preparing),
        ),
    ))
    status_overview = apply_derivations(status_overview, [
        DerivedMetric("workshopPercentage", "vehiclesInWorkshop", "totalVehicles", rounding_digits=1),
        DerivedMetric("reportReadyPercentage", "vehiclesWithReportReady", "totalVehicles", rounding_digits=1),
        DerivedMetric("reportPreparingPercentage", "vehiclesWithReportPreparing", "totalVehicles", rounding_digits=1),
    ])

    progress_analysis = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        where=vehicle_in_workshop,
        group_keys=(TYPE, GroupKey("progress", path="workshop_progress")),
        metrics=(count("count"),),
        rollup=RollupSpec(
            keys=("type",),
            metrics=(total("totalInWorkshop", field="count"),),
            breakdown_field="progressBreakdown",
            breakdown_keys=("progress", "count"),
        ),
    ))

    flag_shapes = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(TYPE,),
        metrics=(
            count("totalVehicles"),
            count("withStagedWorkshopFlag", where=lambda v: is_staged(v.get("is_workshop"))),
            count("withStagedReportReadyFlag", where=lambda v: is_staged(v.get("workshop_report_ready"))),
            count("withStagedReportPreparingFlag", where=lambda v: is_staged(v.get("workshop_report_preparing"))),
        ),
    ))

    stage_metrics = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        where=_is_staged_type,
        group_keys=(TYPE,),
        metrics=(
            count("totalVehicles"),
            average("avgReportReadyCount", value=lambda v: flag_stage_count(v.get("workshop_report_ready"))),
            average("avgReportPreparingCount", value=lambda v: flag_stage_count(v.get("workshop_report_preparing"))),
            average("avgWorkshopStageCount", value=lambda v: flag_stage_count(v.get("is_workshop"))),
            count("vehiclesWithMultipleStages", where=lambda v: flag_stage_count(v.get("is_workshop")) > 1),
        ),
    ))
    stage_metrics = apply_derivations(stage_metrics, [
        DerivedMetric("multipleStagesPercentage", "vehiclesWithMultipleStages", "totalVehicles", rounding_digits=1),
    ])
    for row in stage_metrics:
        round_fields(row, 2, "avgReportReadyCount", "avgReportPreparingCount", "avgWorkshopStageCount")

    dealership_performance = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(DEALERSHIP,),
        metrics=(
            count("totalVehicles"),
            count("vehiclesInWorkshop", where=vehicle_in_workshop),
            count("vehiclesWithReportReady", where=vehicle_report_ready),
            count("inspectionVehicles", where=lambda v: v.get("vehicle_type") == "inspection"),
            count("tradeinVehicles", where=lambda v: v.get("vehicle_type") == "tradein"),
        ),
    ))
    dealership_performance = sort_rows(apply_derivations(dealership_performance, [
        DerivedMetric("workshopUtilization", "vehiclesInWorkshop", "totalVehicles", rounding_digits=1),
        DerivedMetric("reportCompletionRate", "vehiclesWithReportReady", "vehiclesInWorkshop", rounding_digits=1),
    ]), "workshopUtilization")

    in_workshop = await ctx.records(
        EntityType.VEHICLE,
        {
            "type": "vehicle_type",
            "created_at": "created_at",
            "reportReady": vehicle_report_ready,
        },
        where=vehicle_in_workshop,
    )
    timeline = build_timeline(
        in_workshop, "created_at", TrendFrequency.MONTHLY,
        sums={"withReportReady": lambda row: bool(row["reportReady"])},
        by=lambda row: row["type"], by_name="type",
    )

    return {
        "workshopStatusOverview": status_overview,
        "workshopProgressAnalysis": progress_analysis,
        "workshopFlagShapes": flag_shapes,
        "reportPreparationStatus": stage_metrics,
        "dealershipWorkshopPerformance": dealership_performance,
        "workshopTimelineAnalysis": timeline,
    }


# =============================================================================
# vehicle/pricing-analysis
# =============================================================================

def _sold_price(vehicle):
    return vehicle_detail_number(vehicle, "sold_price")


def _detail(key: str):
    return lambda vehicle: vehicle_detail_number(vehicle, key)


def _markup(price, base):
    """Percentage by which `price` exceeds `base`; None when either is missing."""
    if price is None or not base:
        return None
    return round_half_up((price - base) / base * 100, 2)


PRICE_AVERAGES = ("avgPurchasePrice", "avgRetailPrice", "avgSoldPrice")


@register_report("vehicle", "pricing-analysis", "Vehicle Pricing Analysis")
async def vehicle_pricing_analysis(ctx: ReportContext) -> Dict[str, Any]:
    """Purchase, retail and sold prices with margins by type and make/model."""
    by_type = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(TYPE,),
        metrics=(
            count("count"),
            average("avgPurchasePrice", value=_purchase_price),
            average("avgRetailPrice", value=_retail_price),
            average("avgSoldPrice", value=_sold_price),
            total("totalPurchaseCost", value=_purchase_price),
            total("totalRetailValue", value=_retail_price),
            total("totalRevenue", value=_sold_price),
            average("avgExactExpenses", value=_detail("exact_expenses")),
            average("avgEstimatedExpenses", value=_detail("estimated_expenses")),
            minimum("minPurchasePrice", value=_purchase_price),
            maximum("maxPurchasePrice", value=_purchase_price),
            minimum("minRetailPrice", value=_retail_price),
            maximum("maxRetailPrice", value=_retail_price),
            minimum("minSoldPrice", value=_sold_price),
            maximum("maxSoldPrice", value=_sold_price),
        ),
        sort=(SortKey("totalRevenue", descending=True),),
    ))
    for row in by_type:
        row["profitMargin"] = _markup(row["avgSoldPrice"], row["avgPurchasePrice"])
        row["retailMarkup"] = _markup(row["avgRetailPrice"], row["avgPurchasePrice"])
        row["priceRange"] = {
            kind: {"min": row.pop(f"min{kind.capitalize()}Price"), "max": row.pop(f"max{kind.capitalize()}Price")}
            for kind in ("purchase", "retail", "sold")
        }
        round_fields(
            row, 2, *PRICE_AVERAGES,
            "totalPurchaseCost", "totalRetailValue", "totalRevenue",
            "avgExactExpenses", "avgEstimatedExpenses",
        )

    vehicles = await ctx.records(EntityType.VEHICLE, {
        "created_at": "created_at",
        "type": "vehicle_type",
        "retailPrice": _retail_price,
        "purchasePrice": _purchase_price,
        "soldPrice": _sold_price,
    })
    price_ranges = bucket_by_range(
        vehicles, lambda v: v["retailPrice"], RETAIL_PRICE_BOUNDARIES, "500000+",
        means={"avgPrice": lambda v: v["retailPrice"]},
        collect={"types": lambda v: v["type"]},
    )
    for row in price_ranges:
        round_fields(row, 2, "avgPrice")

    trends = build_timeline(
        vehicles, "created_at", TrendFrequency.MONTHLY,
        means={
            "avgPurchasePrice": lambda v: v["purchasePrice"],
            "avgRetailPrice": lambda v: v["retailPrice"],
            "avgSoldPrice": lambda v: v["soldPrice"],
        },
        by=lambda v: v["type"],
        by_name="type",
    )
    for row in trends:
        round_fields(row, 2, *PRICE_AVERAGES)

    by_make_model = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(GroupKey("make", path="make"), GroupKey("model", path="model")),
        metrics=(
            count("count"),
            average("avgPurchasePrice", value=_purchase_price),
            average("avgRetailPrice", value=_retail_price),
            average("avgSoldPrice", value=_sold_price),
            total("totalRevenue", value=_sold_price),
        ),
        sort=(SortKey("totalRevenue", descending=True),),
        limit=20,
    ))
    for row in by_make_model:
        row["profitMargin"] = _markup(row["avgSoldPrice"], row["avgPurchasePrice"])
        round_fields(row, 2, *PRICE_AVERAGES, "totalRevenue")

    revenue = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        metrics=(
            count("totalVehicles"),
            total("totalPurchaseCost", value=_purchase_price),
            total("totalRetailValue", value=_retail_price),
            total("totalRevenue", value=_sold_price),
            total("totalExactExpenses", value=_detail("exact_expenses")),
            total("totalEstimatedExpenses", value=_detail("estimated_expenses")),
            count("vehiclesWithSoldPrice", where=lambda v: (_sold_price(v) or 0) > 0),
        ),
    )), {
        "totalVehicles": 0,
        "totalPurchaseCost": 0,
        "totalRetailValue": 0,
        "totalRevenue": 0,
        "totalExactExpenses": 0,
        "totalEstimatedExpenses": 0,
        "vehiclesWithSoldPrice": 0,
    })
    gross = revenue["totalRevenue"] - revenue["totalPurchaseCost"]
    revenue["grossProfit"] = round_half_up(gross, 2)
    revenue["netProfit"] = round_half_up(gross - revenue["totalExactExpenses"], 2)
    revenue["avgProfitPerVehicle"] = (
        round_half_up(gross / revenue["vehiclesWithSoldPrice"], 2) if revenue["vehiclesWithSoldPrice"] else 0
    )
    round_fields(
        revenue, 2,
        "totalPurchaseCost", "totalRetailValue", "totalRevenue", "totalExactExpenses", "totalEstimatedExpenses",
    )

    return {
        "pricingByType": by_type,
        "priceRangeDistribution": price_ranges,
        "pricingTrends": trends,
        "pricingByMakeModel": by_make_model,
        "revenueMetrics": revenue,
    }


# =============================================================================
# vehicle/attachment-analysis
# =============================================================================

def _attachment(vehicle) -> Dict[str, Any]:
    attachment = vehicle.get("vehicle_attachments")
    return attachment if isinstance(attachment, dict) else {}


def _attachment_field(name: str):
    return lambda vehicle: _attachment(vehicle).get(name)


def _attachment_size(vehicle):
    return as_number(_attachment(vehicle).get("size"))


def _attachments_of_type(vehicle, kind: str) -> int:
    attachments = vehicle.get("vehicle_attachments")
    if not isinstance(attachments, list):
        return 0
    return sum(1 for a in attachments if isinstance(a, dict) and a.get("type") == kind)


def _storage_bytes(vehicle) -> float:
    attachments = vehicle.get("vehicle_attachments")
    if not isinstance(attachments, list):
        return 0.0
    return sum(as_number(a.get("size")) or 0 for a in attachments if isinstance(a, dict))


def _megabytes(size) -> float:
    return round_half_up((size or 0) / BYTES_PER_MB, 2)


def _with_megabytes(rows: List[Dict[str, Any]], *names: str) -> List[Dict[str, Any]]:
    for row in rows:
        for name in names:
            row[f"{name}MB"] = _megabytes(row[name])
        round_fields(row, 0, *names)
    return rows


async def _attachment_category(ctx: ReportContext, kind: str, category_field: str) -> List[Dict[str, Any]]:
    rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        unwind=ATTACHMENTS,
        where=lambda v: _attachment(v).get("type") == kind,
        group_keys=(GroupKey("category", value=_attachment_field(category_field)),),
        metrics=(
            count("count"),
            average("avgSize", value=_attachment_size),
            total("totalSize", value=_attachment_size),
        ),
        sort=(SortKey("count", descending=True),),
    ))
    return _with_megabytes(rows, "avgSize", "totalSize")


@register_report("vehicle", "attachment-analysis", "Vehicle Attachment Analysis")
async def vehicle_attachment_analysis(ctx: ReportContext) -> Dict[str, Any]:
    """Attachment counts and storage by type, category, size and dealership."""
    overview = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        unwind=ATTACHMENTS,
        group_keys=(GroupKey("type", value=_attachment_field("type")),),
        metrics=(
            count("count"),
            total("totalSize", value=_attachment_size),
            average("avgSize", value=_attachment_size),
            distinct("vehicles", field="_id"),
        ),
        sort=(SortKey("count", descending=True),),
    ))
    for row in overview:
        row["uniqueVehicleCount"] = len(row.pop("vehicles"))
    _with_megabytes(overview, "totalSize", "avgSize")

    per_vehicle = apply_derivations(await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(TYPE,),
        metrics=(
            count("totalVehicles"),
            average("avgAttachments", value=lambda v: array_length(v.get("vehicle_attachments"))),
            average("avgImages", value=lambda v: _attachments_of_type(v, "image")),
            average("avgFiles", value=lambda v: _attachments_of_type(v, "file")),
            count("vehiclesWithAttachments", where=vehicle_has_attachments),
            count("vehiclesWithoutAttachments", where=lambda v: not vehicle_has_attachments(v)),
        ),
    )), [DerivedMetric("attachmentCoverage", "vehiclesWithAttachments", "totalVehicles", rounding_digits=1)])
    for row in per_vehicle:
        round_fields(row, 2, "avgAttachments", "avgImages", "avgFiles")

    mime_types = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        unwind=ATTACHMENTS,
        group_keys=(GroupKey("mimeType", value=_attachment_field("mime_type")),),
        metrics=(count("count"), average("avgSize", value=_attachment_size)),
        sort=(SortKey("count", descending=True),),
        limit=20,
    ))
    for row in mime_types:
        row["avgSizeMB"] = _megabytes(row.pop("avgSize"))

    vehicles = await ctx.records(EntityType.VEHICLE, {"attachments": "vehicle_attachments"})
    attachments = [
        attachment
        for vehicle in vehicles
        for attachment in (vehicle["attachments"] or ())
        if isinstance(attachment, dict)
    ]
    sizes = bucket_by_range(
        attachments, lambda a: as_number(a.get("size")), ATTACHMENT_SIZE_BOUNDARIES, "50MB+",
        collect={"types": lambda a: a.get("type")},
    )
    uploads = build_timeline(
        attachments, "uploaded_at", TrendFrequency.MONTHLY,
        sums={"totalSize": lambda a: as_number(a.get("size")) or 0},
        by=lambda a: a.get("type"),
        by_name="type",
    )
    for row in uploads:
        row["totalSizeMB"] = _megabytes(row.pop("totalSize"))

    dealerships = await ctx.aggregate(AggregationRequest(
        source=EntityType.VEHICLE,
        group_keys=(DEALERSHIP,),
        metrics=(
            count("totalVehicles"),
            total("totalAttachments", value=lambda v: array_length(v.get("vehicle_attachments"))),
            average("avgAttachmentsPerVehicle", value=lambda v: array_length(v.get("vehicle_attachments"))),
            total("totalStorageSize", value=_storage_bytes),
        ),
        sort=(SortKey("totalAttachments", descending=True),),
    ))
    for row in dealerships:
        storage = row.pop("totalStorageSize")
        row["totalStorageSizeMB"] = _megabytes(storage)
        row["avgStoragePerVehicleMB"] = _megabytes(storage / row["totalVehicles"])
        round_fields(row, 2, "avgAttachmentsPerVehicle")

    return {
        "attachmentOverview": overview,
        "avgAttachmentsPerVehicle": per_vehicle,
        "imageCategoryAnalysis": await _attachment_category(ctx, "image", "image_category"),
        "fileCategoryAnalysis": await _attachment_category(ctx, "file", "file_category"),
        "mimeTypeDistribution": mime_types,
        "sizeDistribution": sizes,
        "uploadTimeline": uploads,
        "dealershipComparison": dealerships,
    }
