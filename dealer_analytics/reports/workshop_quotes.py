"""
Workshop quote reports.

Quotes carry no dealership of their own. They are scoped through the quoted
vehicle (quote.vehicle -> vehicles._id -> dealership_id); the join is
declared once in the entity registry. A quote whose vehicle no longer exists
keeps a null dealership: it is reported for tenant-wide callers and excluded
for dealership-restricted ones.

- workshop-quote/overview-by-status
- workshop-quote/lifecycle-analysis
- workshop-quote/approval-rates
- workshop-quote/supplier-performance
- workshop-quote/response-time-analysis
- workshop-quote/cost-analysis

Supplier responses are unwound after the scope match, so supplier names are
resolved against the tenant's suppliers once the responses are grouped.
"""

from typing import Any, Dict, List, Mapping, Optional

from dealer_analytics.models.enums import EntityType, QuoteStatus, QuoteType, SupplierResponseStatus
from dealer_analytics.reports.base import (
    ReportContext,
    average,
    count,
    distinct,
    first,
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
from dealer_analytics.services.entities import JoinSpec, as_number, days_between, hours_between, id_of
from dealer_analytics.services.metrics import (
    DerivationOp,
    DerivedMetric,
    apply_derivations,
    percentage,
    ratio,
    round_half_up,
)
from dealer_analytics.services.trends import TrendFrequency, bucket_by_range, build_timeline


APPROVED_STATUSES = frozenset({
    QuoteStatus.QUOTE_APPROVED.value,
    QuoteStatus.WORK_IN_PROGRESS.value,
    QuoteStatus.WORK_REVIEW.value,
    QuoteStatus.COMPLETED_JOBS.value,
})
REJECTED_STATUSES = frozenset({QuoteStatus.BOOKING_REJECTED.value})
PENDING_STATUSES = frozenset({
    QuoteStatus.QUOTE_REQUEST.value,
    QuoteStatus.QUOTE_SENT.value,
    QuoteStatus.BOOKING_REQUEST.value,
})
OPEN_STATUSES = frozenset({
    QuoteStatus.QUOTE_REQUEST.value,
    QuoteStatus.QUOTE_SENT.value,
    QuoteStatus.WORK_IN_PROGRESS.value,
    QuoteStatus.WORK_REVIEW.value,
})

STATUS = GroupKey("status", path="status")
QUOTE_TYPE = GroupKey("quoteType", path="quote_type")

QUOTE_DEALERSHIP_JOIN = JoinSpec(
    alias="dealership_record",
    entity=EntityType.DEALERSHIP,
    local_field="vehicle_record.dealership_id",
)

SUPPLIER_RESPONSES = UnwindSpec("supplier_responses")
PERFORMANCE_RESPONSE_HOURS = (0, 2, 6, 12, 24, 48, 72, 168)
RESPONSE_TIME_HOURS = (0, 1, 2, 4, 8, 12, 24, 48, 72)
QUOTE_AMOUNT_BOUNDARIES = (0, 500, 1000, 2500, 5000, 10000, 25000, 50000)

# Quotes that finished under budget count half towards estimate accuracy
UNDER_BUDGET_CREDIT = 0.5


def _amount(quote):
    return as_number(quote.get("quote_amount"))


def _status_is(*statuses):
    wanted = frozenset(statuses)
    return lambda quote: quote.get("status") in wanted


def _type_is(quote_type: QuoteType):
    return lambda quote: quote.get("quote_type") == quote_type.value


def _rates(rows, **pairs):
    """Add percentage columns rounded to 1 decimal: name=(numerator, denominator)."""
    return apply_derivations(rows, [
        DerivedMetric(name, numerator, denominator, rounding_digits=1)
        for name, (numerator, denominator) in pairs.items()
    ])


# =============================================================================
# workshop-quote/overview-by-status
# =============================================================================

@register_report("workshop-quote", "overview-by-status", "Quote Overview by Status")
async def quote_overview_by_status(ctx: ReportContext) -> Dict[str, Any]:
    """Quote counts and values by status, quote type and dealership."""
    status_distribution = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(STATUS, QUOTE_TYPE),
        metrics=(
            count("count"),
            average("avgAmount", value=_amount),
            total("totalAmount", value=_amount),
        ),
        rollup=RollupSpec(
            keys=("status",),
            metrics=(
                total("totalCount", field="count"),
                average("avgQuoteAmount", field="avgAmount"),
                total("totalQuoteAmount", field="totalAmount"),
            ),
            breakdown_field="quoteTypeBreakdown",
            breakdown_keys=("quoteType", "count", "avgAmount"),
        ),
        sort=(SortKey("totalCount", descending=True),),
    ))
    for row in status_distribution:
        round_fields(row, 2, "avgQuoteAmount", "totalQuoteAmount")
        for entry in row["quoteTypeBreakdown"]:
            round_fields(entry, 2, "avgAmount")

    type_distribution = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(QUOTE_TYPE,),
        metrics=(
            count("count"),
            average("avgQuoteAmount", value=_amount),
            total("totalQuoteAmount", value=_amount),
        ),
        sort=(SortKey("count", descending=True),),
    ))
    type_status_counts = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(QUOTE_TYPE, STATUS),
        metrics=(count("count"),),
    ))
    for row in type_distribution:
        row["statusCounts"] = {
            entry["status"]: entry["count"]
            for entry in type_status_counts
            if entry["quoteType"] == row["quoteType"] and entry["status"] is not None
        }
        round_fields(row, 2, "avgQuoteAmount", "totalQuoteAmount")

    dealership_analysis = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        joins=(QUOTE_DEALERSHIP_JOIN,),
        group_keys=(GroupKey("dealershipId", path="vehicle_record.dealership_id"),),
        metrics=(
            first("dealershipName", field="dealership_record.dealership_name"),
            count("totalQuotes"),
            average("avgQuoteAmount", value=_amount),
            count("supplierQuotes", where=_type_is(QuoteType.SUPPLIER)),
            count("bayQuotes", where=_type_is(QuoteType.BAY)),
            count("manualQuotes", where=_type_is(QuoteType.MANUAL)),
        ),
        sort=(SortKey("totalQuotes", descending=True),),
    ))
    for row in dealership_analysis:
        round_fields(row, 2, "avgQuoteAmount")

    summary = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        metrics=(
            count("totalQuotes"),
            total("totalQuoteValue", value=_amount),
            average("avgQuoteAmount", value=_amount),
            count("supplierQuotes", where=_type_is(QuoteType.SUPPLIER)),
            count("bayQuotes", where=_type_is(QuoteType.BAY)),
            count("manualQuotes", where=_type_is(QuoteType.MANUAL)),
            count("completedQuotes", where=_status_is(QuoteStatus.COMPLETED_JOBS.value)),
            count("inProgressQuotes", where=_status_is(QuoteStatus.WORK_IN_PROGRESS.value)),
        ),
    )), {
        "totalQuotes": 0,
        "totalQuoteValue": 0,
        "avgQuoteAmount": 0,
        "supplierQuotes": 0,
        "bayQuotes": 0,
        "manualQuotes": 0,
        "completedQuotes": 0,
        "inProgressQuotes": 0,
    })
    if summary["avgQuoteAmount"] is None:
        summary["avgQuoteAmount"] = 0
    round_fields(summary, 2, "totalQuoteValue", "avgQuoteAmount")

    return {
        "statusDistribution": status_distribution,
        "quoteTypeDistribution": type_distribution,
        "dealershipAnalysis": dealership_analysis,
        "summary": summary,
    }


# =============================================================================
# workshop-quote/lifecycle-analysis
# =============================================================================

def _stage_hours(later: str, earlier: str):
    return lambda quote: hours_between(quote.get(later), quote.get(earlier))


@register_report("workshop-quote", "lifecycle-analysis", "Quote Lifecycle Analysis")
async def quote_lifecycle_analysis(ctx: ReportContext) -> Dict[str, Any]:
    """Stage durations, status funnel, stale quotes and completion rates."""
    cycle_hours = _stage_hours("work_completed_at", "created_at")

    stage_durations = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(QUOTE_TYPE,),
        metrics=(
            count("totalQuotes"),
            average("avgTimeToApproval", value=_stage_hours("approved_at", "created_at")),
            average("avgTimeToWorkStart", value=_stage_hours("work_started_at", "approved_at")),
            average("avgTimeToSubmission", value=_stage_hours("work_submitted_at", "work_started_at")),
            average("avgTimeToCompletion", value=_stage_hours("work_completed_at", "work_submitted_at")),
            average("avgTotalCycleTime", value=cycle_hours),
            minimum("minCycleTime", value=cycle_hours),
            maximum("maxCycleTime", value=cycle_hours),
        ),
    ))
    for row in stage_durations:
        round_fields(
            row, 1,
            "avgTimeToApproval", "avgTimeToWorkStart", "avgTimeToSubmission",
            "avgTimeToCompletion", "avgTotalCycleTime", "minCycleTime", "maxCycleTime",
        )

    status_funnel = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(STATUS,),
        metrics=(count("count"), average("avgQuoteAmount", value=_amount)),
        sort=(SortKey("count", descending=True),),
    ))
    for row in status_funnel:
        round_fields(row, 2, "avgQuoteAmount")

    now = ctx.now
    stale_after = ctx.settings.stale_quote_days

    def days_open(quote):
        return days_between(now, quote.get("created_at"))

    def is_stale(quote):
        age = days_open(quote)
        return quote.get("status") in OPEN_STATUSES and age is not None and age > stale_after

    bottlenecks = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        where=is_stale,
        group_keys=(STATUS,),
        metrics=(
            count("count"),
            average("avgDaysStuck", value=days_open),
            distinct("quotes", value=lambda quote: {
                "vehicleStockId": quote.get("vehicle_stock_id"),
                "fieldName": quote.get("field_name"),
                "quoteType": quote.get("quote_type"),
                "daysStuck": round_or_none(days_open(quote), 1),
            }),
        ),
        sort=(SortKey("avgDaysStuck", descending=True),),
    ))
    for row in bottlenecks:
        round_fields(row, 1, "avgDaysStuck")

    completion_rates = _rates(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(QUOTE_TYPE,),
        metrics=(
            count("totalQuotes"),
            count("completedQuotes", where=_status_is(QuoteStatus.COMPLETED_JOBS.value)),
            count("inProgressQuotes", where=_status_is(QuoteStatus.WORK_IN_PROGRESS.value)),
            count("pendingQuotes", where=_status_is(QuoteStatus.QUOTE_REQUEST.value, QuoteStatus.QUOTE_SENT.value)),
        ),
    )), completionRate=("completedQuotes", "totalQuotes"))

    quotes = await ctx.records(EntityType.WORKSHOP_QUOTE, {
        "created_at": "created_at",
        "status": "status",
        "cycleHours": cycle_hours,
    })
    monthly_trends = _rates(
        build_timeline(
            quotes, "created_at", TrendFrequency.MONTHLY,
            sums={"completedQuotes": lambda q: q["status"] == QuoteStatus.COMPLETED_JOBS.value},
            means={"avgCycleTime": lambda q: q["cycleHours"]},
        ),
        completionRate=("completedQuotes", "count"),
    )
    for row in monthly_trends:
        round_fields(row, 1, "avgCycleTime")

    return {
        "stageDurations": stage_durations,
        "statusFunnel": status_funnel,
        "bottlenecks": bottlenecks,
        "staleQuoteCount": sum(row["count"] for row in bottlenecks),
        "completionRates": completion_rates,
        "monthlyTrends": monthly_trends,
    }


# =============================================================================
# workshop-quote/approval-rates
# =============================================================================

@register_report("workshop-quote", "approval-rates", "Quote Approval Rates")
async def quote_approval_rates(ctx: ReportContext) -> Dict[str, Any]:
    """Approval, rejection and completion rates per quote type, month and field."""
    approved = _status_is(*APPROVED_STATUSES)

    by_type = _rates(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(QUOTE_TYPE,),
        metrics=(
            count("totalQuotes"),
            count("approvedQuotes", where=approved),
            count("rejectedQuotes", where=_status_is(*REJECTED_STATUSES)),
            count("pendingQuotes", where=_status_is(*PENDING_STATUSES)),
            count("completedQuotes", where=_status_is(QuoteStatus.COMPLETED_JOBS.value)),
        ),
    )),
        approvalRate=("approvedQuotes", "totalQuotes"),
        rejectionRate=("rejectedQuotes", "totalQuotes"),
        completionRate=("completedQuotes", "totalQuotes"),
    )

    quotes = await ctx.records(EntityType.WORKSHOP_QUOTE, {
        "created_at": "created_at",
        "status": "status",
    })
    trends = _rates(
        build_timeline(
            quotes, "created_at", TrendFrequency.MONTHLY,
            sums={
                "approvedQuotes": lambda q: q["status"] in APPROVED_STATUSES,
                "rejectedQuotes": lambda q: q["status"] in REJECTED_STATUSES,
            },
        ),
        approvalRate=("approvedQuotes", "count"),
        rejectionRate=("rejectedQuotes", "count"),
    )

    by_field = _rates(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        group_keys=(GroupKey("fieldName", path="field_name"),),
        metrics=(
            count("totalQuotes"),
            count("approvedQuotes", where=approved),
            average("avgQuoteAmount", value=_amount),
        ),
        sort=(SortKey("totalQuotes", descending=True),),
        limit=20,
    )), approvalRate=("approvedQuotes", "totalQuotes"))
    for row in by_field:
        round_fields(row, 2, "avgQuoteAmount")

    return {
        "approvalRatesByType": by_type,
        "approvalTrends": trends,
        "approvalByField": by_field,
    }


# =============================================================================
# Supplier responses
# =============================================================================

def _response(quote) -> Mapping[str, Any]:
    response = quote.get("supplier_responses")
    return response if isinstance(response, Mapping) else {}


def _responder(quote) -> Optional[str]:
    return id_of(_response(quote).get("supplier_id"))


def _response_hours(quote) -> Optional[float]:
    return hours_between(_response(quote).get("responded_at"), quote.get("created_at"))


def _estimated_cost(quote) -> Optional[float]:
    return as_number(_response(quote).get("estimated_cost"))


def _responded(status: SupplierResponseStatus):
    return lambda quote: _response(quote).get("status") == status.value


def _supplier_response(quote) -> bool:
    return quote.get("quote_type") == QuoteType.SUPPLIER.value and _responder(quote) is not None


def _approved_supplier(quote) -> Optional[str]:
    return id_of(quote.get("approved_supplier"))


def _final_price(quote) -> Optional[float]:
    sheet = quote.get("comment_sheet")
    return as_number(sheet.get("final_price")) if isinstance(sheet, Mapping) else None


def _quote_difference(quote) -> Optional[float]:
    sheet = quote.get("comment_sheet")
    return as_number(sheet.get("quote_difference")) if isinstance(sheet, Mapping) else None


def _variance(quote) -> Optional[float]:
    final_price = _final_price(quote)
    amount = _amount(quote)
    if final_price is None or amount is None:
        return None
    return final_price - amount


async def _supplier_directory(ctx: ReportContext) -> Dict[str, Dict[str, Any]]:
    suppliers = await ctx.records(EntityType.SUPPLIER, {"name": "name", "email": "email"})
    return {id_of(row["_id"]): row for row in suppliers}


def _named(rows: List[Dict[str, Any]], directory: Mapping[str, Mapping[str, Any]], email: bool = False):
    """Attach supplierName (and optionally supplierEmail) in place."""
    for row in rows:
        supplier = directory.get(row["supplierId"], {})
        row["supplierName"] = supplier.get("name")
        if email:
            row["supplierEmail"] = supplier.get("email")
    return rows


async def _responses(ctx: ReportContext) -> List[Dict[str, Any]]:
    """One row per supplier response on a scoped supplier quote."""
    return await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        unwind=SUPPLIER_RESPONSES,
        where=_supplier_response,
        group_keys=(
            GroupKey("quoteId", path="_id"),
            GroupKey("supplierId", value=_responder),
        ),
        metrics=(
            first("status", value=lambda q: _response(q).get("status")),
            first("estimatedCost", value=_estimated_cost),
            first("responseHours", value=_response_hours),
        ),
    ))


def _bidding(responses: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Lowest/highest bidder counts per supplier against each quote's other bids."""
    by_quote: Dict[str, List[Mapping[str, Any]]] = {}
    for response in responses:
        by_quote.setdefault(response["quoteId"], []).append(response)

    suppliers: Dict[str, Dict[str, Any]] = {}
    for bids in by_quote.values():
        costs = [bid["estimatedCost"] for bid in bids if bid["estimatedCost"] is not None]
        lowest, highest = (min(costs), max(costs)) if costs else (None, None)
        market = sum(costs) / len(costs) if costs else None
        for bid in bids:
            entry = suppliers.setdefault(bid["supplierId"], {
                "supplierId": bid["supplierId"],
                "totalQuotes": 0,
                "timesLowestBidder": 0,
                "timesHighestBidder": 0,
                "_gaps": [],
            })
            entry["totalQuotes"] += 1
            cost = bid["estimatedCost"]
            if cost is None:
                continue
            entry["timesLowestBidder"] += int(cost == lowest)
            entry["timesHighestBidder"] += int(cost == highest)
            entry["_gaps"].append(cost - market)

    rows = []
    for entry in suppliers.values():
        gaps = entry.pop("_gaps")
        entry["avgCostVsMarket"] = round_half_up(sum(gaps) / len(gaps), 2) if gaps else None
        entry["lowestBidderRate"] = round_half_up(percentage(entry["timesLowestBidder"], entry["totalQuotes"]), 1)
        rows.append(entry)
    return sort_rows(rows, "lowestBidderRate")


# =============================================================================
# workshop-quote/supplier-performance
# =============================================================================

@register_report("workshop-quote", "supplier-performance", "Quote Supplier Performance")
async def quote_supplier_performance(ctx: ReportContext) -> Dict[str, Any]:
    """Supplier approval, response speed, bid competitiveness and job accuracy."""
    directory = await _supplier_directory(ctx)

    ranking = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        unwind=SUPPLIER_RESPONSES,
        where=_supplier_response,
        group_keys=(GroupKey("supplierId", value=_responder),),
        metrics=(
            count("totalQuotesReceived"),
            count("approvedQuotes", where=_responded(SupplierResponseStatus.APPROVED)),
            count("rejectedQuotes", where=_responded(SupplierResponseStatus.REJECTED)),
            count("notInterestedCount", where=_responded(SupplierResponseStatus.NOT_INTERESTED)),
            average("avgEstimatedCost", value=_estimated_cost),
            average("avgResponseTime", value=_response_hours),
        ),
    ))
    ranking = apply_derivations(ranking, [
        DerivedMetric("approvalRate", "approvedQuotes", "totalQuotesReceived"),
        DerivedMetric("respondedQuotes", "totalQuotesReceived", "notInterestedCount", DerivationOp.DIFFERENCE),
        DerivedMetric("responseRate", "respondedQuotes", "totalQuotesReceived"),
    ])
    ranking.sort(key=lambda row: (
        -row["approvalRate"],
        row["avgResponseTime"] is None,
        row["avgResponseTime"] or 0,
    ))
    for row in ranking:
        del row["respondedQuotes"]
        round_fields(row, 1, "approvalRate", "responseRate", "avgResponseTime")
        round_fields(row, 2, "avgEstimatedCost")
    _named(ranking, directory, email=True)

    responses = await _responses(ctx)
    response_distribution = bucket_by_range(
        responses, lambda r: r["responseHours"], PERFORMANCE_RESPONSE_HOURS, "Over 1 week",
        collect={"suppliers": lambda r: r["supplierId"]},
    )
    bidding = _named(_bidding(responses), directory)

    quality = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        where=lambda q: (
            q.get("quote_type") == QuoteType.SUPPLIER.value
            and q.get("status") == QuoteStatus.COMPLETED_JOBS.value
            and _approved_supplier(q) is not None
        ),
        group_keys=(GroupKey("supplierId", value=_approved_supplier),),
        metrics=(
            count("completedJobs"),
            average("avgQuoteDifference", value=_quote_difference),
            average("avgFinalPrice", value=_final_price),
            total("totalRevenue", value=_final_price),
        ),
    ))
    for row in quality:
        difference, final_price = row["avgQuoteDifference"], row["avgFinalPrice"]
        row["quoteAccuracy"] = (
            round_half_up(100 - ratio(abs(difference), final_price) * 100, 1)
            if difference is not None and final_price else None
        )
        round_fields(row, 2, "avgQuoteDifference", "avgFinalPrice", "totalRevenue")
    quality = _named(sort_rows(quality, "quoteAccuracy"), directory)

    top = apply_derivations(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        where=lambda q: q.get("quote_type") == QuoteType.SUPPLIER.value and _approved_supplier(q) is not None,
        group_keys=(GroupKey("supplierId", value=_approved_supplier),),
        metrics=(
            count("totalApprovedQuotes"),
            total("totalQuoteValue", value=_amount),
            count("completedJobs", where=_status_is(QuoteStatus.COMPLETED_JOBS.value)),
        ),
        sort=(SortKey("totalApprovedQuotes", descending=True),),
        limit=10,
    )), [DerivedMetric("completionRate", "completedJobs", "totalApprovedQuotes", rounding_digits=1)])
    for row in top:
        round_fields(row, 2, "totalQuoteValue")

    return {
        "supplierRanking": ranking,
        "responseTimeAnalysis": response_distribution,
        "costAnalysis": bidding,
        "qualityMetrics": quality,
        "topSuppliers": _named(top, directory),
    }


# =============================================================================
# workshop-quote/response-time-analysis
# =============================================================================

@register_report("workshop-quote", "response-time-analysis", "Quote Response Time Analysis")
async def quote_response_time_analysis(ctx: ReportContext) -> Dict[str, Any]:
    """How quickly suppliers answer quote requests."""
    responses = await _responses(ctx)

    per_supplier: Dict[str, List[float]] = {}
    for response in responses:
        hours = per_supplier.setdefault(response["supplierId"], [])
        if response["responseHours"] is not None:
            hours.append(response["responseHours"])

    counts: Dict[str, int] = {}
    for response in responses:
        counts[response["supplierId"]] = counts.get(response["supplierId"], 0) + 1

    supplier_times = sort_rows([
        {
            "supplierId": supplier_id,
            "avgResponseTime": sum(hours) / len(hours) if hours else None,
            "minResponseTime": min(hours) if hours else None,
            "maxResponseTime": max(hours) if hours else None,
            "totalResponses": counts[supplier_id],
        }
        for supplier_id, hours in per_supplier.items()
    ], "avgResponseTime", descending=False)
    for row in supplier_times:
        round_fields(row, 1, "avgResponseTime", "minResponseTime", "maxResponseTime")
    _named(supplier_times, await _supplier_directory(ctx))

    timed = [r["responseHours"] for r in responses if r["responseHours"] is not None]
    fastest = supplier_times[0] if supplier_times and supplier_times[0]["avgResponseTime"] is not None else None
    return {
        "supplierResponseTimes": supplier_times,
        "responseTimeDistribution": bucket_by_range(
            responses, lambda r: r["responseHours"], RESPONSE_TIME_HOURS, "Over 72 hours",
        ),
        "summary": {
            "totalResponses": len(responses),
            "timedResponses": len(timed),
            "respondingSuppliers": len(supplier_times),
            "avgResponseTime": round_half_up(sum(timed) / len(timed), 1) if timed else None,
            "fastestSupplier": fastest["supplierName"] if fastest else None,
        },
    }


# =============================================================================
# workshop-quote/cost-analysis
# =============================================================================

def _variance_percentage(quote) -> Optional[float]:
    variance = _variance(quote)
    amount = _amount(quote)
    if variance is None or not amount:
        return None
    return variance / amount * 100


def _work_entry(name: str):
    def value(quote):
        sheet = quote.get("comment_sheet")
        entry = sheet.get("work_entries") if isinstance(sheet, Mapping) else None
        return as_number(entry.get(name)) if isinstance(entry, Mapping) else None
    return value


def _has_final_price(quote) -> bool:
    return _final_price(quote) is not None


@register_report("workshop-quote", "cost-analysis", "Quote Cost Analysis")
async def quote_cost_analysis(ctx: ReportContext) -> Dict[str, Any]:
    """Quoted amounts against final prices, with parts and labour breakdown."""
    variance = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        where=_has_final_price,
        group_keys=(QUOTE_TYPE,),
        metrics=(
            count("totalQuotes"),
            average("avgQuoteAmount", value=_amount),
            average("avgFinalPrice", value=_final_price),
            average("avgVariance", value=_variance),
            average("avgVariancePercentage", value=_variance_percentage),
            count("underBudgetCount", where=lambda q: (_variance(q) or 0) < 0),
            count("overBudgetCount", where=lambda q: (_variance(q) or 0) > 0),
            count("onBudgetCount", where=lambda q: _variance(q) == 0),
        ),
    ))
    for row in variance:
        accurate = row["onBudgetCount"] + row["underBudgetCount"] * UNDER_BUDGET_CREDIT
        row["accuracyRate"] = round_half_up(percentage(accurate, row["totalQuotes"]), 1)
        round_fields(row, 2, "avgQuoteAmount", "avgFinalPrice", "avgVariance")
        round_fields(row, 1, "avgVariancePercentage")

    parts, labor, gst = _work_entry("parts_cost"), _work_entry("labor_cost"), _work_entry("gst")
    breakdown = apply_derivations(await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        unwind=UnwindSpec("comment_sheet.work_entries"),
        where=lambda q: isinstance((q.get("comment_sheet") or {}).get("work_entries"), Mapping),
        group_keys=(QUOTE_TYPE,),
        metrics=(
            count("totalWorkEntries"),
            total("totalPartsCost", value=parts),
            total("totalLaborCost", value=labor),
            total("totalGST", value=gst),
            average("avgPartsCost", value=parts),
            average("avgLaborCost", value=labor),
            average("avgGST", value=gst),
        ),
    )), [
        DerivedMetric("partsAndLabor", "totalPartsCost", "totalLaborCost", DerivationOp.SUM),
        DerivedMetric("totalCost", "partsAndLabor", "totalGST", DerivationOp.SUM),
        DerivedMetric("partsPercentage", "totalPartsCost", "totalCost", rounding_digits=1),
        DerivedMetric("laborPercentage", "totalLaborCost", "totalCost", rounding_digits=1),
        DerivedMetric("gstPercentage", "totalGST", "totalCost", rounding_digits=1),
    ])
    for row in breakdown:
        del row["partsAndLabor"]
        round_fields(
            row, 2,
            "totalPartsCost", "totalLaborCost", "totalGST", "totalCost",
            "avgPartsCost", "avgLaborCost", "avgGST",
        )

    quotes = await ctx.records(EntityType.WORKSHOP_QUOTE, {
        "created_at": "created_at",
        "quoteType": "quote_type",
        "quoteAmount": _amount,
        "finalPrice": _final_price,
        "variance": _variance,
    })

    def of_type(quote_type: QuoteType):
        return lambda q: int(q["quoteType"] == quote_type.value)

    distribution = bucket_by_range(
        quotes, lambda q: q["quoteAmount"], QUOTE_AMOUNT_BOUNDARIES, "Over 50000",
        sums={
            "supplierQuotes": of_type(QuoteType.SUPPLIER),
            "bayQuotes": of_type(QuoteType.BAY),
            "manualQuotes": of_type(QuoteType.MANUAL),
        },
        means={"avgQuoteAmount": lambda q: q["quoteAmount"], "avgFinalPrice": lambda q: q["finalPrice"]},
    )
    for row in distribution:
        round_fields(row, 2, "avgQuoteAmount", "avgFinalPrice")

    monthly = build_timeline(
        quotes, "created_at", TrendFrequency.MONTHLY,
        sums={"totalQuoteAmount": lambda q: q["quoteAmount"] or 0, "totalFinalPrice": lambda q: q["finalPrice"] or 0},
        means={"avgQuoteAmount": lambda q: q["quoteAmount"], "avgFinalPrice": lambda q: q["finalPrice"]},
        by=lambda q: q["quoteType"],
        by_name="quoteType",
    )
    for row in monthly:
        round_fields(row, 2, "totalQuoteAmount", "totalFinalPrice", "avgQuoteAmount", "avgFinalPrice")

    accuracy = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        where=lambda q: (
            q.get("quote_type") == QuoteType.SUPPLIER.value
            and _approved_supplier(q) is not None
            and _has_final_price(q)
        ),
        group_keys=(GroupKey("supplierId", value=_approved_supplier),),
        metrics=(
            count("totalJobs"),
            average("avgQuoteAmount", value=_amount),
            average("avgFinalPrice", value=_final_price),
            average("avgVariance", value=_variance),
            total("totalRevenue", value=_final_price),
        ),
    ))
    for row in accuracy:
        quoted, drift = row["avgQuoteAmount"], row["avgVariance"]
        row["accuracyScore"] = (
            round_half_up(100 - ratio(abs(drift), quoted) * 100, 1)
            if drift is not None and quoted else None
        )
        round_fields(row, 2, "avgQuoteAmount", "avgFinalPrice", "avgVariance", "totalRevenue")
    accuracy = _named(sort_rows(accuracy, "accuracyScore")[:20], await _supplier_directory(ctx))

    amounts = [q["quoteAmount"] for q in quotes if q["quoteAmount"] is not None]
    finished = [q for q in quotes if q["variance"] is not None]
    finished_quoted = sum(q["quoteAmount"] for q in finished)
    total_variance = sum(q["variance"] for q in finished)
    finals = [q["finalPrice"] for q in quotes if q["finalPrice"] is not None]

    summary = {
        "totalQuotes": len(quotes),
        "totalQuoteValue": round_half_up(sum(amounts), 2),
        "totalFinalValue": round_half_up(sum(finals), 2),
        "avgQuoteAmount": round_half_up(sum(amounts) / len(amounts), 2) if amounts else 0,
        "avgFinalPrice": round_half_up(sum(finals) / len(finals), 2) if finals else 0,
        "minQuoteAmount": min(amounts) if amounts else None,
        "maxQuoteAmount": max(amounts) if amounts else None,
        "totalVariance": round_half_up(total_variance, 2),
        "overallVariancePercentage": round_half_up(percentage(total_variance, finished_quoted), 1),
    }

    return {
        "costVariance": variance,
        "partsLaborBreakdown": breakdown,
        "costDistribution": distribution,
        "monthlyCostTrends": monthly,
        "supplierCostAccuracy": accuracy,
        "summary": summary,
    }
