"""
Group permission reports.

Group permissions are tenant-level documents. Their assigned users are
populated through a users join that carries the caller's dealership scope, so
a restricted caller only sees assignments of users in their dealerships.
Login windows use Settings.recent_activity_days and
Settings.weekly_activity_days against the request's fixed `now`.

- group-permission/usage
- group-permission/effectiveness
"""

import math
from typing import Any, Dict, List, Mapping, Optional

from dealer_analytics.models.enums import Comparator, EntityType
from dealer_analytics.reports.base import (
    ReportContext,
    count,
    distinct,
    first,
    only_one,
    register_report,
    sort_rows,
)
from dealer_analytics.services.aggregation import AggregationRequest, GroupKey, UnwindSpec
from dealer_analytics.services.entities import (
    JoinSpec,
    array_length,
    as_bool,
    coerce_datetime,
    days_between,
    id_of,
    user_full_name,
)
from dealer_analytics.services.metrics import mean_or_zero, percentage, round_half_up, rounded_percentage
from dealer_analytics.services.scoring import (
    Band,
    CompositeScoreDefinition,
    ScoreInput,
    ThresholdRule,
    classify_band,
    compute_composite_score,
    evaluate_rules,
)
from dealer_analytics.services.trends import TrendFrequency, build_timeline


ASSIGNED_USERS_JOIN = JoinSpec(
    alias="assigned_users",
    entity=EntityType.USER,
    local_field="_id",
    foreign_field="group_permissions",
    many=True,
    dealership_field="dealership_ids",
)
CREATOR_JOIN = JoinSpec("creator_record", EntityType.USER, "created_by")

COMPLEXITY_BANDS = (Band(0, "Low"), Band(11, "Medium"), Band(21, "High"))

EFFECTIVENESS_BANDS = (
    Band(0, "Very Poor"),
    Band(20, "Poor"),
    Band(40, "Fair"),
    Band(60, "Good"),
    Band(80, "Excellent"),
)
NOT_USED = "Not Used"

UTILIZATION_SCORE = CompositeScoreDefinition(
    name="utilizationScore",
    inputs=(
        ScoreInput("activeUserRate", 0.4),
        ScoreInput("activityRate", 0.4),
        ScoreInput("retentionRate", 0.2),
    ),
    bands=EFFECTIVENESS_BANDS,
)
ACTIVITY_SCORE = CompositeScoreDefinition(
    name="activityScore",
    inputs=(
        ScoreInput("weeklyActivityRate", 0.6),
        ScoreInput("activityRate", 0.4),
    ),
    bands=EFFECTIVENESS_BANDS,
)
OVERALL_EFFECTIVENESS_SCORE = CompositeScoreDefinition(
    name="overallEffectivenessScore",
    inputs=(
        ScoreInput("utilizationScore", 0.4),
        ScoreInput("activityScore", 0.4),
        ScoreInput("retentionScore", 0.2),
    ),
    bands=EFFECTIVENESS_BANDS,
)

ISSUE_RULES = (
    ThresholdRule("neverLoggedInRate", Comparator.GT, 50, "High percentage of users never logged in"),
    ThresholdRule("activeUserRate", Comparator.LT, 50, "Low active user rate"),
    ThresholdRule("activityRate", Comparator.LT, 30, "Low recent activity rate"),
    ThresholdRule("retentionRate", Comparator.LT, 60, "Low user retention"),
    ThresholdRule("permissionCount", Comparator.EQ, 0, "No permissions assigned"),
    ThresholdRule("permissionCount", Comparator.GT, 50, "Very high permission count - consider splitting"),
)
RECOMMENDATION_RULES = (
    ThresholdRule("neverLoggedInRate", Comparator.GT, 30, "Review users who have never logged in"),
    ThresholdRule("activityRate", Comparator.LT, 50, "Investigate low activity rates and user engagement"),
    ThresholdRule(
        "permissionCount", Comparator.GT, 30,
        "Consider breaking down into smaller, more focused permission groups",
    ),
    ThresholdRule("retentionRate", Comparator.LT, 70, "Review user onboarding and training processes"),
)
UNUSED_RECOMMENDATION = "Consider assigning users or removing unused group permission"


def _creator(user: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(user, Mapping):
        return None
    return {"name": user_full_name(user), "email": user.get("email")}


def _iso(value: Any) -> Optional[str]:
    moment = coerce_datetime(value)
    return moment.isoformat().replace("+00:00", "Z") if moment is not None else None


async def _groups_with_users(ctx: ReportContext) -> List[Dict[str, Any]]:
    """
    One row per group permission with its in-scope assigned users.

    Groups without in-scope users are kept with an empty `users` list.
    """
    def assigned(record) -> bool:
        return isinstance(record.get("assigned_users"), Mapping)

    rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.GROUP_PERMISSION,
        joins=(ASSIGNED_USERS_JOIN, CREATOR_JOIN),
        unwind=UnwindSpec("assigned_users", preserve_empty=True),
        group_keys=(GroupKey("groupPermissionId", path="_id"),),
        metrics=(
            first("name", field="name"),
            first("description", field="description"),
            first("isActive", field="is_active"),
            first("permissions", field="permissions"),
            first("createdBy", value=lambda record: _creator(record.get("creator_record"))),
            first("createdAt", field="created_at"),
            first("updatedAt", field="updated_at"),
            count("totalAssignedUsers", where=assigned),
            distinct("users", field="assigned_users"),
        ),
    ))
    for row in rows:
        row["isActive"] = as_bool(row["isActive"])
        row["permissionCount"] = array_length(row["permissions"])
        row["permissions"] = row["permissions"] if isinstance(row["permissions"], list) else []
    return rows


# =============================================================================
# group-permission/usage
# =============================================================================

@register_report("group-permission", "usage", "Group Permission Usage")
async def group_permission_usage(ctx: ReportContext) -> Dict[str, Any]:
    """Assignment, activity and complexity per group permission."""
    recent_days = ctx.settings.recent_activity_days
    groups = await _groups_with_users(ctx)

    def since_login(user) -> Optional[float]:
        return days_between(ctx.now, user.get("last_login"))

    usage_rows = []
    for group in groups:
        users = group["users"]
        total_users = len(users)
        active = sum(1 for user in users if as_bool(user.get("is_active")))
        recent = sum(
            1 for user in users
            if since_login(user) is not None and since_login(user) <= recent_days
        )

        roles: Dict[str, int] = {}
        dealerships: Dict[str, int] = {}
        for user in users:
            role = user.get("role")
            roles[role] = roles.get(role, 0) + 1
            for dealership_id in user.get("dealership_ids") or ():
                key = id_of(dealership_id)
                dealerships[key] = dealerships.get(key, 0) + 1

        usage_rows.append({
            "groupPermissionId": group["groupPermissionId"],
            "name": group["name"],
            "description": group["description"],
            "isActive": group["isActive"],
            "permissionCount": group["permissionCount"],
            "permissions": group["permissions"],
            "createdBy": group["createdBy"],
            "createdAt": _iso(group["createdAt"]),
            "updatedAt": _iso(group["updatedAt"]),
            "usage": {
                "totalAssignedUsers": total_users,
                "activeAssignedUsers": active,
                "inactiveAssignedUsers": total_users - active,
                "usersWithRecentLogin": recent,
                "assignmentRate": rounded_percentage(active, total_users),
                "activityRate": rounded_percentage(recent, total_users),
            },
            "roleDistribution": roles,
            "dealershipDistribution": dealerships,
            "dealershipCount": len(dealerships),
            "assignedUsers": [
                {
                    "userId": id_of(user.get("_id")),
                    "username": user.get("username"),
                    "fullName": user_full_name(user),
                    "email": user.get("email"),
                    "role": user.get("role"),
                    "isActive": as_bool(user.get("is_active")),
                    "dealershipCount": array_length(user.get("dealership_ids")),
                    "lastLogin": _iso(user.get("last_login")),
                    "daysSinceLastLogin": (
                        math.floor(since_login(user)) if since_login(user) is not None else None
                    ),
                }
                for user in users
            ],
        })

    usage_rows.sort(key=lambda row: row["usage"]["totalAssignedUsers"], reverse=True)

    total_groups = len(usage_rows)
    active_groups = sum(1 for row in usage_rows if row["isActive"])
    total_assigned = sum(row["usage"]["totalAssignedUsers"] for row in usage_rows)
    total_permissions = sum(row["permissionCount"] for row in usage_rows)
    unused = [row for row in usage_rows if row["usage"]["totalAssignedUsers"] == 0]
    popular = [row for row in usage_rows if row["usage"]["totalAssignedUsers"] > 0][:10]

    user_totals = only_one(await ctx.aggregate(AggregationRequest(
        source=EntityType.USER,
        metrics=(
            count("totalUsers"),
            count("usersWithoutGroupPermissions", where=lambda user: not user.get("group_permissions")),
        ),
    )), {"totalUsers": 0, "usersWithoutGroupPermissions": 0})

    timeline = build_timeline(
        [{"created_at": row["createdAt"]} for row in usage_rows],
        "created_at",
        TrendFrequency.MONTHLY,
    )

    return {
        "groupPermissions": usage_rows,
        "overallStatistics": {
            "totalGroupPermissions": total_groups,
            "activeGroupPermissions": active_groups,
            "inactiveGroupPermissions": total_groups - active_groups,
            "totalAssignedUsers": total_assigned,
            "avgUsersPerGroup": round_half_up(total_assigned / total_groups) if total_groups else 0,
            "totalPermissions": total_permissions,
            "avgPermissionsPerGroup": round_half_up(total_permissions / total_groups) if total_groups else 0,
            "unusedGroupPermissionsCount": len(unused),
            "totalUsers": user_totals["totalUsers"],
            "usersWithoutGroupPermissions": user_totals["usersWithoutGroupPermissions"],
            "groupPermissionCoverage": rounded_percentage(
                user_totals["totalUsers"] - user_totals["usersWithoutGroupPermissions"],
                user_totals["totalUsers"],
            ),
        },
        "unusedGroupPermissions": [
            {
                "id": row["groupPermissionId"],
                "name": row["name"],
                "description": row["description"],
                "permissionCount": row["permissionCount"],
                "createdAt": row["createdAt"],
            }
            for row in unused
        ],
        "mostPopularGroupPermissions": [
            {
                "id": row["groupPermissionId"],
                "name": row["name"],
                "userCount": row["usage"]["totalAssignedUsers"],
                "activeUserCount": row["usage"]["activeAssignedUsers"],
                "activityRate": row["usage"]["activityRate"],
                "permissionCount": row["permissionCount"],
            }
            for row in popular
        ],
        "permissionComplexity": [
            {
                "name": row["name"],
                "permissionCount": row["permissionCount"],
                "userCount": row["usage"]["totalAssignedUsers"],
                "complexity": classify_band(row["permissionCount"], COMPLEXITY_BANDS),
            }
            for row in usage_rows
        ],
        "creationTimeline": {row["period"]: row["count"] for row in timeline},
    }


# =============================================================================
# group-permission/effectiveness
# =============================================================================

RATE_FIELDS = ("activeUserRate", "activityRate", "weeklyActivityRate", "neverLoggedInRate", "retentionRate")
SCORE_FIELDS = ("utilizationScore", "activityScore", "retentionScore")


def _effectiveness_scores(users: List[Mapping[str, Any]], ctx: ReportContext) -> Dict[str, Any]:
    """
    Unrounded rates and chained composite scores for one group's users.

    Sub-scores feed the overall score through their `raw_score`, so rounding
    happens only when the payload is built.
    """
    total_users = len(users)
    recent_days = ctx.settings.recent_activity_days
    weekly_days = ctx.settings.weekly_activity_days

    def since_login(user) -> Optional[float]:
        return days_between(ctx.now, user.get("last_login"))

    def logged_in_within(user, days) -> bool:
        elapsed = since_login(user)
        return elapsed is not None and elapsed <= days

    active = [user for user in users if as_bool(user.get("is_active"))]
    recent = sum(1 for user in users if logged_in_within(user, recent_days))
    weekly = sum(1 for user in users if logged_in_within(user, weekly_days))
    never = sum(1 for user in users if coerce_datetime(user.get("last_login")) is None)

    established = [
        user for user in users
        if (days_between(ctx.now, user.get("created_at")) or 0) > recent_days
    ]
    retained = sum(
        1 for user in established
        if as_bool(user.get("is_active")) and coerce_datetime(user.get("last_login")) is not None
    )
    # Groups whose users are all newer than the window count as fully retained
    retention_rate = percentage(retained, len(established)) if established else 100.0

    values: Dict[str, Any] = {
        "activeUserRate": percentage(len(active), total_users),
        "activityRate": percentage(recent, total_users),
        "weeklyActivityRate": percentage(weekly, total_users),
        "neverLoggedInRate": percentage(never, total_users),
        "retentionRate": retention_rate,
    }
    values["utilizationScore"] = compute_composite_score(UTILIZATION_SCORE, values).raw_score
    values["activityScore"] = compute_composite_score(ACTIVITY_SCORE, values).raw_score
    values["retentionScore"] = retention_rate
    overall = compute_composite_score(OVERALL_EFFECTIVENESS_SCORE, values)
    values["overallEffectivenessScore"] = overall.raw_score

    values.update(
        totalUsers=total_users,
        activeUsers=len(active),
        usersWithRecentActivity=recent,
        usersWithVeryRecentActivity=weekly,
        usersNeverLoggedIn=never,
        loginAges=[since_login(user) for user in active if since_login(user) is not None],
        effectivenessRating=overall.band,
    )
    return values


def _effectiveness_payload(scores: Optional[Mapping[str, Any]], permission_count: int) -> Dict[str, Any]:
    """Rounded effectiveness payload; None scores mean the group has no users."""
    if not scores:
        return {
            "totalUsers": 0,
            "activeUsers": 0,
            "utilizationScore": 0,
            "activityScore": 0,
            "retentionScore": 0,
            "overallEffectivenessScore": 0,
            "effectivenessRating": NOT_USED,
        }

    total_users = scores["totalUsers"]
    login_ages = scores["loginAges"]

    return {
        "totalUsers": total_users,
        "activeUsers": scores["activeUsers"],
        "inactiveUsers": total_users - scores["activeUsers"],
        "usersWithRecentActivity": scores["usersWithRecentActivity"],
        "usersWithVeryRecentActivity": scores["usersWithVeryRecentActivity"],
        "usersNeverLoggedIn": scores["usersNeverLoggedIn"],
        **{field: round_half_up(scores[field]) for field in RATE_FIELDS + SCORE_FIELDS},
        "avgDaysSinceLastLogin": round_half_up(mean_or_zero(login_ages)) if login_ages else None,
        "overallEffectivenessScore": round_half_up(scores["overallEffectivenessScore"]),
        "effectivenessRating": scores["effectivenessRating"],
        "permissionDensity": round_half_up(permission_count / total_users, 2),
    }


def _effectiveness(users: List[Mapping[str, Any]], permission_count: int, ctx: ReportContext) -> Dict[str, Any]:
    """Rounded effectiveness payload for one group's in-scope users."""
    scores = _effectiveness_scores(users, ctx) if users else None
    return _effectiveness_payload(scores, permission_count)


@register_report("group-permission", "effectiveness", "Group Permission Effectiveness")
async def group_permission_effectiveness(ctx: ReportContext) -> Dict[str, Any]:
    """Composite effectiveness scores, issues and recommendations per group."""
    groups = await _groups_with_users(ctx)

    analysis = []
    unrounded: Dict[Any, Dict[str, Any]] = {}
    for group in groups:
        scores = _effectiveness_scores(group["users"], ctx) if group["users"] else None
        effectiveness = _effectiveness_payload(scores, group["permissionCount"])
        if scores:
            unrounded[group["groupPermissionId"]] = scores
            rule_values = dict(scores, permissionCount=group["permissionCount"])
            issues = evaluate_rules(rule_values, ISSUE_RULES)
            recommendations = evaluate_rules(rule_values, RECOMMENDATION_RULES)
        else:
            issues = []
            recommendations = [UNUSED_RECOMMENDATION]
        analysis.append({
            "groupPermissionId": group["groupPermissionId"],
            "name": group["name"],
            "description": group["description"],
            "isActive": group["isActive"],
            "permissionCount": group["permissionCount"],
            "createdAt": _iso(group["createdAt"]),
            "updatedAt": _iso(group["updatedAt"]),
            "createdBy": group["createdBy"],
            "effectiveness": effectiveness,
            "issues": issues,
            "recommendations": recommendations,
        })

    def overall_of(row) -> float:
        scores = unrounded.get(row["groupPermissionId"])
        return scores["overallEffectivenessScore"] if scores else 0.0

    analysis.sort(key=overall_of, reverse=True)
    in_use = [row for row in analysis if row["effectiveness"]["totalUsers"] > 0]

    def rating_count(label):
        return sum(1 for row in analysis if row["effectiveness"]["effectivenessRating"] == label)

    def average_of(field):
        return round_half_up(mean_or_zero([unrounded[row["groupPermissionId"]][field] for row in in_use]))

    return {
        "groupPermissions": analysis,
        "overallStatistics": {
            "totalGroupPermissions": len(analysis),
            "groupPermissionsInUse": len(in_use),
            "unusedGroupPermissions": len(analysis) - len(in_use),
            "avgEffectivenessScore": average_of("overallEffectivenessScore"),
            "effectivenessDistribution": {
                "excellent": rating_count("Excellent"),
                "good": rating_count("Good"),
                "fair": rating_count("Fair"),
                "poor": rating_count("Poor"),
                "veryPoor": rating_count("Very Poor"),
                "notUsed": rating_count(NOT_USED),
            },
            "activityTrends": {
                "avgWeeklyActivityRate": average_of("weeklyActivityRate"),
                "avgMonthlyActivityRate": average_of("activityRate"),
                "avgRetentionRate": average_of("retentionRate"),
            },
        },
        "topPerformingGroupPermissions": [
            {
                "id": row["groupPermissionId"],
                "name": row["name"],
                "effectivenessScore": row["effectiveness"]["overallEffectivenessScore"],
                "effectivenessRating": row["effectiveness"]["effectivenessRating"],
                "totalUsers": row["effectiveness"]["totalUsers"],
                "activityRate": row["effectiveness"]["activityRate"],
            }
            for row in in_use[:10]
        ],
        "underperformingGroupPermissions": [
            {
                "id": row["groupPermissionId"],
                "name": row["name"],
                "effectivenessScore": row["effectiveness"]["overallEffectivenessScore"],
                "effectivenessRating": row["effectiveness"]["effectivenessRating"],
                "totalUsers": row["effectiveness"]["totalUsers"],
                "issues": row["issues"],
                "recommendations": row["recommendations"],
            }
            for row in in_use if row["effectiveness"]["overallEffectivenessScore"] < 40
        ],
        "complexityVsEffectiveness": sort_rows(
            [
                {
                    "name": row["name"],
                    "permissionCount": row["permissionCount"],
                    "effectivenessScore": row["effectiveness"]["overallEffectivenessScore"],
                    "userCount": row["effectiveness"]["totalUsers"],
                }
                for row in in_use
            ],
            "permissionCount",
        ),
    }
