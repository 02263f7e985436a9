"""
Service bay reports.

Bays are dealership-scoped and never date-scoped. Bay bookings are workshop
quotes with quote_type "bay": they are date-scoped on their creation time and
attributed to a dealership through their bay, so only bookings of bays in
scope are counted.

- service-bay/utilization
- service-bay/holiday-impact
- service-bay/booking-patterns
- service-bay/user-assignment
"""

from typing import Any, Dict, List, Mapping, Optional

from dealer_analytics.models.enums import EntityType, QuoteStatus, QuoteType
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
    ScopeFields,
    SortKey,
    UnwindSpec,
)
from dealer_analytics.services.entities import (
    JoinSpec,
    as_number,
    bay_working_days,
    bay_working_hours_per_week,
    coerce_datetime,
    holiday_hours,
    id_of,
    user_full_name,
)
from dealer_analytics.services.metrics import mean_or_zero, percentage, round_half_up, rounded_percentage
from dealer_analytics.services.scoring import Band, classify_band
from dealer_analytics.services.trends import build_timeline


CAPACITY_BANDS = (Band(0, "Low"), Band(50, "Medium"), Band(80, "High"))
HOLIDAY_IMPACT_BANDS = (Band(0, "Low"), Band(10, "Medium"), Band(20, "High"))

# Bookings per user, completion rate per user, assigned users per bay
WORKLOAD_BANDS = (Band(0, "Low"), Band(10, "Medium"), Band(20, "High"))
PRODUCTIVITY_BANDS = (Band(0, "Low"), Band(60, "Medium"), Band(80, "High"))
STAFFING_BANDS = (Band(0, "Unstaffed"), Band(1, "Minimal"), Band(2, "Adequate"), Band(4, "Well-Staffed"))
WORKLOAD_BALANCE_BANDS = (Band(0, "Imbalanced"), Band(40, "Moderate"), Band(70, "Balanced"))

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
AFTERNOON_HOUR = 12
EVENING_HOUR = 17

PENDING_BOOKING_STATUSES = frozenset({
    QuoteStatus.QUOTE_REQUEST.value,
    QuoteStatus.QUOTE_SENT.value,
    QuoteStatus.BOOKING_REQUEST.value,
    QuoteStatus.QUOTE_APPROVED.value,
})
CANCELLED_BOOKING_STATUSES = frozenset({
    QuoteStatus.BOOKING_REJECTED.value,
    QuoteStatus.REJECTED.value,
})

BAY_DEALERSHIP_JOIN = JoinSpec("dealership_record", EntityType.DEALERSHIP, "dealership_id")
BAY_USERS_JOIN = JoinSpec("bay_user_records", EntityType.USER, "bay_users", many=True)
BAY_ADMIN_JOIN = JoinSpec("primary_admin_record", EntityType.USER, "primary_admin")

# Bookings are attributed through their bay; dealership scope is applied to the bays
BOOKING_SCOPE = ScopeFields(dealership_field=None, timestamp_field="created_at")

UNSPECIFIED_REASON = "Unspecified"


def _user_summary(user: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(user, Mapping):
        return None
    return {"id": id_of(user.get("_id")), "name": user_full_name(user), "email": user.get("email")}


def _is_booking(quote) -> bool:
    return quote.get("quote_type") == QuoteType.BAY.value


def _quote_amount(quote):
    return as_number(quote.get("quote_amount"))


async def _scoped_bays(ctx: ReportContext) -> List[Dict[str, Any]]:
    return await ctx.records(
        EntityType.SERVICE_BAY,
        {
            "bayName": "bay_name",
            "bayDescription": "bay_description",
            "isActive": "is_active",
            "dealershipId": "dealership_id",
            "dealershipName": "dealership_record.dealership_name",
            "assignedUsers": lambda bay: [
                _user_summary(user) for user in bay.get("bay_user_records") or ()
            ],
            "primaryAdmin": lambda bay: _user_summary(bay.get("primary_admin_record")),
            "userRoles": lambda bay: {
                id_of(user.get("_id")): user.get("role") for user in bay.get("bay_user_records") or ()
                if isinstance(user, Mapping)
            },
            "workingHoursPerWeek": bay_working_hours_per_week,
            "workingDays": bay_working_days,
            "holidays": lambda bay: bay.get("bay_holidays") or [],
        },
        joins=(BAY_DEALERSHIP_JOIN, BAY_USERS_JOIN, BAY_ADMIN_JOIN),
    )


async def _booking_stats(ctx: ReportContext, bay_ids) -> Dict[str, Dict[str, Any]]:
    """Booking aggregates per bay id, limited to `bay_ids`."""
    wanted = frozenset(bay_ids)
    rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        scope=BOOKING_SCOPE,
        where=lambda quote: _is_booking(quote) and id_of(quote.get("bay_id")) in wanted,
        group_keys=(GroupKey("bayId", value=lambda quote: id_of(quote.get("bay_id"))),),
        metrics=(
            count("totalBookings"),
            count("completedBookings", where=lambda q: q.get("status") == QuoteStatus.COMPLETED_JOBS.value),
            count("inProgressBookings", where=lambda q: q.get("status") == QuoteStatus.WORK_IN_PROGRESS.value),
            count("pendingBookings", where=lambda q: q.get("status") in PENDING_BOOKING_STATUSES),
            count("cancelledBookings", where=lambda q: q.get("status") in CANCELLED_BOOKING_STATUSES),
            count("rejectedBookings", where=lambda q: q.get("status") == QuoteStatus.REJECTED.value),
            total("totalQuoteValue", value=_quote_amount),
            average("avgQuoteAmount", value=_quote_amount),
            minimum("earliestBooking", value=lambda q: coerce_datetime(q.get("booking_date"))),
            maximum("latestBooking", value=lambda q: coerce_datetime(q.get("booking_date"))),
        ),
    ))
    return {row["bayId"]: row for row in rows}


def _iso(moment) -> Optional[str]:
    return moment.isoformat().replace("+00:00", "Z") if moment is not None else None


# =============================================================================
# service-bay/utilization
# =============================================================================

@register_report("service-bay", "utilization", "Service Bay Utilization")
async def service_bay_utilization(ctx: ReportContext) -> Dict[str, Any]:
    """Bay capacity against bookings, with completion rates and capacity bands."""
    bays = await _scoped_bays(ctx)
    stats = await _booking_stats(ctx, [id_of(bay["_id"]) for bay in bays])

    weeks = ctx.weeks_in_range()
    booking_hours_each = ctx.settings.default_booking_hours

    results = []
    exact_utilization: List[float] = []
    exact_completion: List[float] = []
    for bay in bays:
        booking = stats.get(id_of(bay["_id"]), {})
        total_bookings = booking.get("totalBookings", 0)
        completed = booking.get("completedBookings", 0)

        available_hours = bay["workingHoursPerWeek"] * weeks
        booking_hours = total_bookings * booking_hours_each
        exact_utilization.append(percentage(booking_hours, available_hours))
        exact_completion.append(percentage(completed, total_bookings))
        utilization = round_half_up(exact_utilization[-1])

        results.append({
            "bayId": bay["_id"],
            "bayName": bay["bayName"],
            "bayDescription": bay["bayDescription"],
            "dealership": {"id": bay["dealershipId"], "name": bay["dealershipName"]},
            "isActive": bool(bay["isActive"]),
            "assignedUsers": [user for user in bay["assignedUsers"] if user is not None],
            "primaryAdmin": bay["primaryAdmin"],
            "workingHours": {
                "perWeek": round_half_up(bay["workingHoursPerWeek"], 1),
                "perDay": round_half_up(bay["workingHoursPerWeek"] / 7, 1),
                "workingDays": bay["workingDays"],
            },
            "bookingMetrics": {
                "total": total_bookings,
                "completed": completed,
                "inProgress": booking.get("inProgressBookings", 0),
                "pending": booking.get("pendingBookings", 0),
                "cancelled": booking.get("cancelledBookings", 0),
                "completionRate": round_half_up(exact_completion[-1]),
                "totalValue": round_half_up(booking.get("totalQuoteValue", 0), 2),
                "avgValue": round_half_up(booking.get("avgQuoteAmount") or 0),
            },
            "utilizationMetrics": {
                "utilizationRate": utilization,
                "totalAvailableHours": round_half_up(available_hours),
                "totalBookingHours": round_half_up(booking_hours),
                "capacityStatus": classify_band(exact_utilization[-1], CAPACITY_BANDS),
                "bookingsPerWeek": round_half_up(total_bookings / weeks, 1),
            },
            "holidayCount": len(bay["holidays"]),
            "dateRange": {
                "earliest": _iso(booking.get("earliestBooking")),
                "latest": _iso(booking.get("latestBooking")),
            },
        })

    total_revenue = sum(stats.get(id_of(bay["_id"]), {}).get("totalQuoteValue", 0) for bay in bays)
    results.sort(key=lambda row: row["utilizationMetrics"]["utilizationRate"], reverse=True)

    def capacity_count(label):
        return sum(1 for row in results if row["utilizationMetrics"]["capacityStatus"] == label)

    summary = {
        "totalBays": len(results),
        "activeBays": sum(1 for row in results if row["isActive"]),
        "inactiveBays": sum(1 for row in results if not row["isActive"]),
        "totalBookings": sum(row["bookingMetrics"]["total"] for row in results),
        "totalCompletedBookings": sum(row["bookingMetrics"]["completed"] for row in results),
        "avgUtilizationRate": round_half_up(mean_or_zero(exact_utilization)),
        "avgCompletionRate": round_half_up(mean_or_zero(exact_completion)),
        "totalRevenue": round_half_up(total_revenue, 2),
        "weeksInRange": weeks,
        "capacityDistribution": {
            "high": capacity_count("High"),
            "medium": capacity_count("Medium"),
            "low": capacity_count("Low"),
        },
    }
    return {"bays": results, "summary": summary}


# =============================================================================
# service-bay/holiday-impact
# =============================================================================

def _holiday_summary(holiday: Mapping[str, Any], users: Mapping[str, Any]) -> Dict[str, Any]:
    marked_by = users.get(id_of(holiday.get("marked_by")))
    return {
        "date": _iso(coerce_datetime(holiday.get("date"))),
        "startTime": holiday.get("start_time"),
        "endTime": holiday.get("end_time"),
        "reason": holiday.get("reason"),
        "markedBy": _user_summary(marked_by),
    }


@register_report("service-bay", "holiday-impact", "Service Bay Holiday Impact")
async def service_bay_holiday_impact(ctx: ReportContext) -> Dict[str, Any]:
    """Capacity and estimated revenue lost to bay holidays."""
    default_hours = ctx.settings.default_holiday_hours
    bays = await _scoped_bays(ctx)
    stats = await _booking_stats(ctx, [id_of(bay["_id"]) for bay in bays])
    weeks = ctx.weeks_in_range()

    def holiday_in_range(bay) -> bool:
        holiday = bay.get("bay_holidays")
        return isinstance(holiday, Mapping) and ctx.in_date_range(coerce_datetime(holiday.get("date")))

    reason_rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.SERVICE_BAY,
        unwind=UnwindSpec("bay_holidays"),
        where=holiday_in_range,
        group_keys=(
            GroupKey("bayId", path="_id"),
            GroupKey("reason", value=lambda bay: bay["bay_holidays"].get("reason") or UNSPECIFIED_REASON),
        ),
        metrics=(
            count("count"),
            total("totalHours", value=lambda bay: holiday_hours(bay["bay_holidays"], default_hours)),
        ),
        sort=(SortKey("count", descending=True),),
    ))

    markers = await ctx.records(
        EntityType.USER,
        {"first_name": "first_name", "last_name": "last_name", "username": "username", "email": "email"},
        scope=ScopeFields(dealership_field=None, timestamp_field=None),
    )
    users_by_id = {row["_id"]: row for row in markers}

    results = []
    exact_hours: List[float] = []
    exact_loss: List[float] = []
    exact_revenue_loss: List[float] = []
    exact_missed: List[float] = []
    for bay in bays:
        holidays = [
            holiday for holiday in bay["holidays"]
            if isinstance(holiday, Mapping) and ctx.in_date_range(coerce_datetime(holiday.get("date")))
        ]
        holiday_total = sum(holiday_hours(holiday, default_hours) for holiday in holidays)
        available_hours = bay["workingHoursPerWeek"] * weeks
        exact_capacity_loss = percentage(holiday_total, available_hours)
        capacity_loss = round_half_up(exact_capacity_loss, 1)

        by_reason = [
            {
                "reason": row["reason"],
                "count": row["count"],
                "totalHours": round_half_up(row["totalHours"], 1),
                "percentage": rounded_percentage(row["count"], len(holidays)),
            }
            for row in reason_rows if row["bayId"] == bay["_id"]
        ]

        dated = [(coerce_datetime(holiday.get("date")), holiday) for holiday in holidays]
        upcoming = sorted((pair for pair in dated if pair[0] is not None and pair[0] > ctx.now), key=lambda pair: pair[0])
        recent = sorted(
            (pair for pair in dated if pair[0] is not None and pair[0] <= ctx.now),
            key=lambda pair: pair[0],
            reverse=True,
        )

        booking = stats.get(id_of(bay["_id"]), {})
        total_bookings = booking.get("totalBookings", 0)
        total_value = booking.get("totalQuoteValue", 0)
        exact_hours.append(holiday_total)
        exact_loss.append(exact_capacity_loss)
        exact_revenue_loss.append(total_value * exact_capacity_loss / 100)
        exact_missed.append(total_bookings * exact_capacity_loss / 100)

        results.append({
            "bayId": bay["_id"],
            "bayName": bay["bayName"],
            "dealership": {"id": bay["dealershipId"], "name": bay["dealershipName"]},
            "holidayMetrics": {
                "totalHolidays": len(holidays),
                "totalHolidayHours": round_half_up(holiday_total, 1),
                "avgHoursPerHoliday": round_half_up(holiday_total / len(holidays), 1) if holidays else 0,
                "capacityLossPercentage": capacity_loss,
                "holidaysPerMonth": round_half_up(len(holidays) / weeks * 4.33, 1),
            },
            "holidaysByReason": by_reason,
            "upcomingHolidays": [_holiday_summary(h, users_by_id) for _, h in upcoming[:5]],
            "recentHolidays": [_holiday_summary(h, users_by_id) for _, h in recent[:5]],
            "impactLevel": classify_band(exact_capacity_loss, HOLIDAY_IMPACT_BANDS),
            "operationalImpact": {
                "totalBookings": total_bookings,
                "totalRevenue": round_half_up(total_value, 2),
                "estimatedRevenueLoss": round_half_up(exact_revenue_loss[-1]),
                "estimatedMissedBookings": round_half_up(exact_missed[-1]),
                "revenueImpactPercentage": capacity_loss,
            },
        })

    results.sort(key=lambda row: row["holidayMetrics"]["capacityLossPercentage"], reverse=True)

    top_reasons: Dict[str, Dict[str, Any]] = {}
    for row in reason_rows:
        entry = top_reasons.setdefault(row["reason"], {"reason": row["reason"], "count": 0, "totalHours": 0.0, "baysAffected": 0})
        entry["count"] += row["count"]
        entry["totalHours"] += row["totalHours"]
        entry["baysAffected"] += 1
    reasons = sort_rows(list(top_reasons.values()), "count")[:10]
    for entry in reasons:
        entry["avgHoursPerOccurrence"] = round_half_up(entry["totalHours"] / entry["count"], 1)
        entry["totalHours"] = round_half_up(entry["totalHours"], 1)

    def impact_count(label):
        return sum(1 for row in results if row["impactLevel"] == label)

    summary = {
        "totalBays": len(results),
        "baysWithHolidays": sum(1 for row in results if row["holidayMetrics"]["totalHolidays"] > 0),
        "totalHolidays": sum(row["holidayMetrics"]["totalHolidays"] for row in results),
        "totalHolidayHours": round_half_up(sum(exact_hours), 1),
        "avgHolidaysPerBay": round_half_up(
            mean_or_zero([row["holidayMetrics"]["totalHolidays"] for row in results]), 1
        ),
        "avgCapacityLoss": round_half_up(mean_or_zero(exact_loss), 1),
        "totalEstimatedRevenueLoss": round_half_up(sum(exact_revenue_loss)),
        "totalEstimatedMissedBookings": round_half_up(sum(exact_missed)),
        "impactDistribution": {
            "high": impact_count("High"),
            "medium": impact_count("Medium"),
            "low": impact_count("Low"),
        },
        "topReasons": reasons,
    }
    return {"bays": results, "summary": summary}


# =============================================================================
# service-bay/booking-patterns
# =============================================================================

def _day_number(quote) -> Optional[int]:
    """1 = Sunday through 7 = Saturday."""
    moment = coerce_datetime(quote.get("booking_date"))
    return (moment.weekday() + 1) % 7 + 1 if moment is not None else None


def _start_hour(quote) -> Optional[int]:
    start = quote.get("booking_start_time")
    if not isinstance(start, str) or not start[:2].isdigit():
        return None
    return int(start[:2])


def _time_of_day(hour: int) -> str:
    if hour < AFTERNOON_HOUR:
        return "Morning"
    return "Afternoon" if hour < EVENING_HOUR else "Evening"


def _is_completed(quote) -> bool:
    return quote.get("status") == QuoteStatus.COMPLETED_JOBS.value


async def _bookings_by(ctx: ReportContext, bay_ids, name: str, key) -> List[Dict[str, Any]]:
    """Booking counts and values grouped on `key`; bookings without a key are skipped."""
    wanted = frozenset(bay_ids)
    return await ctx.aggregate(AggregationRequest(
        source=EntityType.WORKSHOP_QUOTE,
        scope=BOOKING_SCOPE,
        where=lambda q: _is_booking(q) and id_of(q.get("bay_id")) in wanted and key(q) is not None,
        group_keys=(GroupKey(name, value=key),),
        metrics=(
            count("bookingCount"),
            count("completedCount", where=_is_completed),
            total("totalValue", value=_quote_amount),
            average("avgValue", value=_quote_amount),
            distinct("bays", value=lambda q: id_of(q.get("bay_id"))),
        ),
        sort=(SortKey(name),),
    ))


@register_report("service-bay", "booking-patterns", "Service Bay Booking Patterns")
async def service_bay_booking_patterns(ctx: ReportContext) -> Dict[str, Any]:
    """Bay bookings by weekday, start hour, month and bay."""
    bays = await _scoped_bays(ctx)
    bay_ids = [id_of(bay["_id"]) for bay in bays]

    days = [
        {
            "dayOfWeek": DAY_NAMES[row["dayNumber"] - 1],
            "dayNumber": row["dayNumber"],
            "totalBookings": row["bookingCount"],
            "totalValue": round_half_up(row["totalValue"], 2),
            "avgValue": round_half_up(row["avgValue"] or 0),
            "completedBookings": row["completedCount"],
            "completionRate": rounded_percentage(row["completedCount"], row["bookingCount"]),
            "avgBookingsPerBay": round_half_up(row["bookingCount"] / max(len(row["bays"]), 1), 1),
        }
        for row in await _bookings_by(ctx, bay_ids, "dayNumber", _day_number)
    ]
    slots = [
        {
            "timeSlot": f"{row['hour']:02d}:00",
            "hour": row["hour"],
            "bookingCount": row["bookingCount"],
            "totalValue": round_half_up(row["totalValue"], 2),
            "avgValue": round_half_up(row["avgValue"] or 0),
            "completedCount": row["completedCount"],
            "completionRate": rounded_percentage(row["completedCount"], row["bookingCount"]),
            "timeOfDay": _time_of_day(row["hour"]),
        }
        for row in await _bookings_by(ctx, bay_ids, "hour", _start_hour)
    ]

    wanted = frozenset(bay_ids)
    dated = await ctx.records(
        EntityType.WORKSHOP_QUOTE,
        {"bookingDate": "booking_date", "quoteAmount": _quote_amount, "completed": _is_completed},
        where=lambda q: _is_booking(q) and id_of(q.get("bay_id")) in wanted,
        scope=BOOKING_SCOPE,
    )
    monthly = build_timeline(
        dated, "bookingDate",
        sums={"totalValue": lambda r: r["quoteAmount"] or 0, "completedCount": lambda r: int(r["completed"])},
        means={"avgValue": lambda r: r["quoteAmount"]},
    )
    for row in monthly:
        row["completionRate"] = rounded_percentage(row["completedCount"], row["count"])
        row["avgValue"] = round_half_up(row["avgValue"] or 0)
        row["totalValue"] = round_half_up(row["totalValue"], 2)

    stats = await _booking_stats(ctx, bay_ids)
    patterns = []
    for bay in bays:
        booking = stats.get(id_of(bay["_id"]), {})
        total_bookings = booking.get("totalBookings", 0)
        rejected = booking.get("rejectedBookings", 0)
        patterns.append({
            "bayId": bay["_id"],
            "bayName": bay["bayName"],
            "totalBookings": total_bookings,
            "avgQuoteAmount": round_half_up(booking.get("avgQuoteAmount") or 0),
            "completedBookings": booking.get("completedBookings", 0),
            "cancelledBookings": rejected,
            "completionRate": rounded_percentage(booking.get("completedBookings", 0), total_bookings),
            "cancellationRate": rounded_percentage(rejected, total_bookings),
        })

    peak_day = sort_rows(days, "totalBookings")[:1]
    peak_slot = sort_rows(slots, "bookingCount")[:1]
    total_bookings = sum(day["totalBookings"] for day in days)

    def booked_at(label):
        return sum(slot["bookingCount"] for slot in slots if slot["timeOfDay"] == label)

    summary = {
        "totalBookings": total_bookings,
        "totalValue": round_half_up(sum(day["totalValue"] for day in days), 2),
        "avgBookingsPerDay": round_half_up(total_bookings / len(days), 1) if days else 0,
        "peakBookingDay": (
            {"day": peak_day[0]["dayOfWeek"], "bookings": peak_day[0]["totalBookings"]} if peak_day else None
        ),
        "peakBookingTime": (
            {"time": peak_slot[0]["timeSlot"], "bookings": peak_slot[0]["bookingCount"]} if peak_slot else None
        ),
        "timeOfDayDistribution": {
            "morning": booked_at("Morning"),
            "afternoon": booked_at("Afternoon"),
            "evening": booked_at("Evening"),
        },
    }

    return {
        "dayOfWeekAnalysis": days,
        "timeSlotAnalysis": slots,
        "monthlyTrends": monthly,
        "bayPatterns": patterns,
        "summary": summary,
    }


# =============================================================================
# service-bay/user-assignment
# =============================================================================

@register_report("service-bay", "user-assignment", "Service Bay User Assignment")
async def service_bay_user_assignment(ctx: ReportContext) -> Dict[str, Any]:
    """Booking workload carried by each bay user and staffing of each bay."""
    bays = await _scoped_bays(ctx)
    stats = await _booking_stats(ctx, [id_of(bay["_id"]) for bay in bays])

    users: Dict[str, Dict[str, Any]] = {}
    for bay in bays:
        for user in bay["assignedUsers"]:
            if user is None:
                continue
            entry = users.setdefault(user["id"], {**user, "role": bay["userRoles"].get(user["id"]), "bays": []})
            entry["bays"].append({
                "bayId": bay["_id"],
                "bayName": bay["bayName"],
                "dealership": bay["dealershipName"],
            })

    def bay_stat(bay_id, name):
        return stats.get(id_of(bay_id), {}).get(name, 0)

    analysis = []
    exact_completion: Dict[str, float] = {}
    for user_id, user in users.items():
        bay_ids = [bay["bayId"] for bay in user["bays"]]
        total_bookings = sum(bay_stat(bay_id, "totalBookings") for bay_id in bay_ids)
        completed = sum(bay_stat(bay_id, "completedBookings") for bay_id in bay_ids)
        total_value = sum(bay_stat(bay_id, "totalQuoteValue") for bay_id in bay_ids)
        exact_completion[user_id] = percentage(completed, total_bookings)
        analysis.append({
            "userId": user_id,
            "name": user["name"],
            "email": user["email"],
            "role": user["role"],
            "assignedBays": user["bays"],
            "bayCount": len(bay_ids),
            "workloadMetrics": {
                "totalBookings": total_bookings,
                "completedBookings": completed,
                "inProgressBookings": sum(bay_stat(bay_id, "inProgressBookings") for bay_id in bay_ids),
                "pendingBookings": sum(bay_stat(bay_id, "pendingBookings") for bay_id in bay_ids),
                "completionRate": round_half_up(exact_completion[user_id]),
                "totalValue": round_half_up(total_value, 2),
                "avgValue": round_half_up(total_value / total_bookings) if total_bookings else 0,
                "bookingsPerBay": round_half_up(total_bookings / len(bay_ids), 1) if bay_ids else 0,
            },
            "workloadLevel": classify_band(total_bookings, WORKLOAD_BANDS),
            "productivity": classify_band(exact_completion[user_id], PRODUCTIVITY_BANDS),
        })
    analysis.sort(key=lambda row: row["workloadMetrics"]["totalBookings"], reverse=True)

    staffing = []
    for bay in bays:
        assigned = [user for user in bay["assignedUsers"] if user is not None]
        workload = bay_stat(bay["_id"], "totalBookings")
        staffing.append({
            "bayId": bay["_id"],
            "bayName": bay["bayName"],
            "dealership": {"id": bay["dealershipId"], "name": bay["dealershipName"]},
            "assignedUserCount": len(assigned),
            "assignedUsers": assigned,
            "primaryAdmin": bay["primaryAdmin"],
            "totalWorkload": workload,
            "workloadPerUser": round_half_up(workload / len(assigned), 1) if assigned else 0,
            "staffingLevel": classify_band(len(assigned), STAFFING_BANDS),
        })
    staffing.sort(key=lambda row: row["workloadPerUser"], reverse=True)

    workloads = [row["workloadMetrics"]["totalBookings"] for row in analysis]
    avg_workload = mean_or_zero(workloads)
    spread = (max(workloads) - min(workloads)) if workloads else 0
    balance = max(0.0, 100 - spread / avg_workload * 100) if avg_workload > 0 else 100.0
    assignments = sum(row["bayCount"] for row in analysis)

    def level_count(field, label):
        return sum(1 for row in analysis if row[field] == label)

    summary = {
        "totalUsers": len(analysis),
        "totalBays": len(bays),
        "unstaffedBays": sum(1 for row in staffing if row["staffingLevel"] == "Unstaffed"),
        "avgUsersPerBay": round_half_up(assignments / len(bays), 1) if bays else 0,
        "avgBaysPerUser": round_half_up(assignments / len(analysis), 1) if analysis else 0,
        "totalBookings": sum(workloads),
        "avgWorkloadPerUser": round_half_up(avg_workload, 1),
        "workloadBalance": {
            "score": round_half_up(balance),
            "maxWorkload": max(workloads) if workloads else 0,
            "minWorkload": min(workloads) if workloads else 0,
            "variance": spread,
            "status": classify_band(balance, WORKLOAD_BALANCE_BANDS),
        },
        "workloadDistribution": {
            "high": level_count("workloadLevel", "High"),
            "medium": level_count("workloadLevel", "Medium"),
            "low": level_count("workloadLevel", "Low"),
        },
        "productivityDistribution": {
            "high": level_count("productivity", "High"),
            "medium": level_count("productivity", "Medium"),
            "low": level_count("productivity", "Low"),
        },
    }
    return {"users": analysis, "bays": staffing, "summary": summary}
