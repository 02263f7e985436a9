"""
Integration reports.

Integrations are tenant-level and date-scoped on their creation time.
Environment configuration blobs are opaque: only their presence and key
count are inspected, never their contents.

- integration/status-overview
- integration/environment-usage
- integration/type-distribution
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple

from dealer_analytics.models.enums import Comparator, EntityType, IntegrationEnvironment
from dealer_analytics.reports.base import ReportContext, register_report, sort_rows
from dealer_analytics.services.entities import (
    JoinSpec,
    as_bool,
    coerce_datetime,
    environment_status,
    user_full_name,
)
from dealer_analytics.services.metrics import mean_or_zero, ratio, round_half_up, rounded_percentage
from dealer_analytics.services.scoring import (
    BOOLEAN_SCALE,
    Band,
    CompositeScoreDefinition,
    RatingRule,
    ScoreInput,
    ThresholdRule,
    classify_band,
    compute_composite_score,
    evaluate_rules,
    first_matching_rating,
)


ENVIRONMENTS = tuple(env.value for env in IntegrationEnvironment)
NOT_SET = "not_set"

HEALTH_SCORE = CompositeScoreDefinition(
    name="healthScore",
    inputs=(
        ScoreInput("isActive", 20, BOOLEAN_SCALE),
        ScoreInput("productionActive", 30, BOOLEAN_SCALE),
        ScoreInput("productionConfigured", 20, BOOLEAN_SCALE),
        ScoreInput("multipleActiveEnvironments", 15, BOOLEAN_SCALE),
        ScoreInput("multipleConfiguredEnvironments", 15, BOOLEAN_SCALE),
    ),
    bands=(Band(0, "Poor"), Band(40, "Fair"), Band(60, "Good"), Band(80, "Healthy")),
)

# Share of healthy integrations, in percent
OVERALL_HEALTH_BANDS = (
    Band(0, "Needs Improvement"),
    Band(30, "Fair"),
    Band(50, "Good"),
    Band(70, "Excellent"),
)

ISSUE_RULES = (
    ThresholdRule("isActive", Comparator.EQ, 0, "Integration is inactive"),
    ThresholdRule("productionActive", Comparator.EQ, 0, "Production environment is not active"),
    ThresholdRule("productionConfigured", Comparator.EQ, 0, "Production environment not configured"),
    ThresholdRule("activeEnvironmentsCount", Comparator.EQ, 0, "No environments are active"),
    ThresholdRule("configuredEnvironmentsCount", Comparator.EQ, 0, "No environments are configured"),
)
CRITICAL_MARKERS = ("Production", "inactive", "No environments")

INTEGRATION_CREATOR_JOIN = JoinSpec("creator_record", EntityType.USER, "created_by")
INTEGRATION_UPDATER_JOIN = JoinSpec("updater_record", EntityType.USER, "updated_by")

# Tiered per-type health: each tier reached adds its weight
TYPE_HEALTH_SCORE = CompositeScoreDefinition(
    name="typeHealthScore",
    inputs=(
        ScoreInput("activeAbove30", 10, BOOLEAN_SCALE),
        ScoreInput("activeAbove50", 10, BOOLEAN_SCALE),
        ScoreInput("activeAbove70", 10, BOOLEAN_SCALE),
        ScoreInput("productionAbove30", 15, BOOLEAN_SCALE),
        ScoreInput("productionAbove50", 10, BOOLEAN_SCALE),
        ScoreInput("productionAbove70", 15, BOOLEAN_SCALE),
        ScoreInput("configuredAbove30", 10, BOOLEAN_SCALE),
        ScoreInput("configuredAbove50", 10, BOOLEAN_SCALE),
        ScoreInput("configuredAbove70", 10, BOOLEAN_SCALE),
    ),
    bands=(Band(0, "Poor"), Band(40, "Fair"), Band(60, "Good"), Band(80, "Excellent")),
)
TYPE_HEALTH_TIERS = (30, 50, 70)

PRODUCTION_READY_PERCENT = 70
NOT_PRODUCTION_READY_PERCENT = 50

# Herfindahl index of integration counts per type
CONCENTRATION_LEVELS = (
    RatingRule("High", (ThresholdRule("typeConcentration", Comparator.GT, 0.5, "High"),)),
    RatingRule("Medium", (ThresholdRule("typeConcentration", Comparator.GT, 0.25, "Medium"),)),
)


def _person(user: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(user, Mapping):
        return None
    return {"name": user_full_name(user), "email": user.get("email")}


def _iso(value: Any) -> Optional[str]:
    moment = coerce_datetime(value)
    return moment.isoformat().replace("+00:00", "Z") if moment is not None else None


def _environments(integration: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    result = {}
    for name in ENVIRONMENTS:
        is_active, config_keys = environment_status(integration, name)
        result[name] = {
            "isActive": is_active,
            "isConfigured": config_keys > 0,
            "configKeys": config_keys,
        }
    return result


async def _integrations(ctx: ReportContext) -> List[Dict[str, Any]]:
    return await ctx.records(
        EntityType.INTEGRATION,
        {
            "integrationType": "integration_type",
            "displayName": "display_name",
            "isActive": "is_active",
            "activeEnvironment": "active_environment",
            "environments": _environments,
            "createdBy": lambda doc: _person(doc.get("creator_record")),
            "updatedBy": lambda doc: _person(doc.get("updater_record")),
            "createdAt": "created_at",
            "updatedAt": "updated_at",
        },
        joins=(INTEGRATION_CREATOR_JOIN, INTEGRATION_UPDATER_JOIN),
    )


def _preferences(integrations: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    counts: Dict[str, int] = {}
    for integration in integrations:
        env = integration.get("activeEnvironment") or NOT_SET
        counts[env] = counts.get(env, 0) + 1
    return [
        {
            "environment": env,
            "count": number,
            "percentage": rounded_percentage(number, len(integrations)),
        }
        for env, number in counts.items()
    ]


def _mismatched(integration: Mapping[str, Any]) -> bool:
    active_env = integration.get("activeEnvironment")
    if not active_env:
        return False
    env = integration["environments"].get(active_env)
    return not (env and env["isActive"])


# =============================================================================
# integration/status-overview
# =============================================================================

@register_report("integration", "status-overview", "Integration Status Overview")
async def integration_status_overview(ctx: ReportContext) -> Dict[str, Any]:
    """Health score, status band and issues for each integration."""
    integrations = await _integrations(ctx)

    analysis = []
    for integration in integrations:
        envs = integration["environments"]
        active_count = sum(1 for env in envs.values() if env["isActive"])
        configured_count = sum(1 for env in envs.values() if env["isConfigured"])
        is_active = as_bool(integration["isActive"])

        values = {
            "isActive": int(is_active),
            "productionActive": int(envs["production"]["isActive"]),
            "productionConfigured": int(envs["production"]["isConfigured"]),
            "multipleActiveEnvironments": int(active_count >= 2),
            "multipleConfiguredEnvironments": int(configured_count >= 2),
            "activeEnvironmentsCount": active_count,
            "configuredEnvironmentsCount": configured_count,
        }
        health = compute_composite_score(HEALTH_SCORE, values)
        issues = evaluate_rules(values, ISSUE_RULES)
        if _mismatched(integration):
            issues.append(f"Active environment ({integration['activeEnvironment']}) is not enabled")

        analysis.append({
            "integrationId": integration["_id"],
            "integrationType": integration["integrationType"],
            "displayName": integration["displayName"],
            "isActive": is_active,
            "activeEnvironment": integration["activeEnvironment"],
            "environments": envs,
            "activeEnvironmentsCount": active_count,
            "configuredEnvironmentsCount": configured_count,
            "healthScore": health.score,
            "healthStatus": health.band,
            "issues": issues,
            "createdBy": integration["createdBy"],
            "updatedBy": integration["updatedBy"],
            "createdAt": _iso(integration["createdAt"]),
            "updatedAt": _iso(integration["updatedAt"]),
        })

    total = len(analysis)

    def with_status(label):
        return sum(1 for row in analysis if row["healthStatus"] == label)

    def env_count(name, flag):
        return sum(1 for row in analysis if row["environments"][name][flag])

    with_issues = [row for row in analysis if row["issues"]]
    critical = [
        row for row in analysis
        if any(marker in issue for issue in row["issues"] for marker in CRITICAL_MARKERS)
    ]
    ranked = sort_rows(analysis, "healthScore")
    needing_attention = sorted(
        (row for row in analysis if row["healthStatus"] == "Poor" or len(row["issues"]) > 2),
        key=lambda row: row["healthScore"],
    )
    healthy = with_status("Healthy")

    summary = {
        "totalIntegrations": total,
        "activeIntegrations": sum(1 for row in analysis if row["isActive"]),
        "inactiveIntegrations": sum(1 for row in analysis if not row["isActive"]),
        "activePercentage": rounded_percentage(sum(1 for row in analysis if row["isActive"]), total),
        "healthyIntegrations": healthy,
        "goodIntegrations": with_status("Good"),
        "fairIntegrations": with_status("Fair"),
        "poorIntegrations": with_status("Poor"),
        "healthyPercentage": rounded_percentage(healthy, total),
        "avgHealthScore": round_half_up(mean_or_zero([row["healthScore"] for row in analysis])),
        "developmentActive": env_count("development", "isActive"),
        "testingActive": env_count("testing", "isActive"),
        "productionActive": env_count("production", "isActive"),
        "developmentConfigured": env_count("development", "isConfigured"),
        "testingConfigured": env_count("testing", "isConfigured"),
        "productionConfigured": env_count("production", "isConfigured"),
        "integrationsWithIssues": len(with_issues),
        "criticalIssues": len(critical),
        "overallHealth": classify_band(ratio(healthy, total) * 100, OVERALL_HEALTH_BANDS),
    }

    return {
        "integrations": analysis,
        "topIntegrations": [
            {
                "displayName": row["displayName"],
                "integrationType": row["integrationType"],
                "healthScore": row["healthScore"],
                "healthStatus": row["healthStatus"],
                "activeEnvironmentsCount": row["activeEnvironmentsCount"],
            }
            for row in ranked[:5]
        ],
        "integrationsNeedingAttention": [
            {
                "displayName": row["displayName"],
                "integrationType": row["integrationType"],
                "healthScore": row["healthScore"],
                "healthStatus": row["healthStatus"],
                "issues": row["issues"],
            }
            for row in needing_attention[:5]
        ],
        "activeEnvironmentDistribution": _preferences(integrations),
        "summary": summary,
    }


# =============================================================================
# integration/environment-usage
# =============================================================================

def _brief(integration: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "integrationId": integration["_id"],
        "integrationType": integration["integrationType"],
        "displayName": integration["displayName"],
    }


@register_report("integration", "environment-usage", "Integration Environment Usage")
async def integration_environment_usage(ctx: ReportContext) -> Dict[str, Any]:
    """Activation and configuration of each environment across integrations."""
    integrations = await _integrations(ctx)
    total = len(integrations)

    environments = []
    for name in ENVIRONMENTS:
        members = []
        for integration in integrations:
            env = integration["environments"][name]
            members.append({
                **_brief(integration),
                "isActive": env["isActive"],
                "isConfigured": env["isConfigured"],
                "configKeys": env["configKeys"],
                "isActiveEnvironment": integration["activeEnvironment"] == name,
            })
        members.sort(key=lambda row: (row["isActive"], row["configKeys"]), reverse=True)

        active = sum(1 for row in members if row["isActive"])
        configured = [row for row in members if row["isConfigured"]]
        environments.append({
            "environment": name,
            "environmentName": name.capitalize(),
            "totalIntegrations": total,
            "activeCount": active,
            "inactiveCount": total - active,
            "configuredCount": len(configured),
            "notConfiguredCount": total - len(configured),
            "totalConfigKeys": sum(row["configKeys"] for row in configured),
            "activePercentage": rounded_percentage(active, total),
            "configuredPercentage": rounded_percentage(len(configured), total),
            "avgConfigKeys": round_half_up(mean_or_zero([row["configKeys"] for row in configured]), 1),
            "integrations": members,
        })

    def every_env(integration, flag):
        return all(env[flag] for env in integration["environments"].values())

    def no_env(integration, flag):
        return not any(env[flag] for env in integration["environments"].values())

    fully_active = [i for i in integrations if every_env(i, "isActive")]
    none_active = [i for i in integrations if no_env(i, "isActive")]
    mismatched = [i for i in integrations if _mismatched(i)]
    preferences = _preferences(integrations)
    most_used = sort_rows(preferences, "count")

    by_name = {env["environment"]: env for env in environments}
    summary = {
        "totalIntegrations": total,
        "developmentActive": by_name["development"]["activeCount"],
        "developmentConfigured": by_name["development"]["configuredCount"],
        "testingActive": by_name["testing"]["activeCount"],
        "testingConfigured": by_name["testing"]["configuredCount"],
        "productionActive": by_name["production"]["activeCount"],
        "productionConfigured": by_name["production"]["configuredCount"],
        "fullyActiveIntegrations": len(fully_active),
        "noActiveEnvironments": len(none_active),
        "mismatchedActiveEnvironment": len(mismatched),
        "fullyConfiguredIntegrations": sum(1 for i in integrations if every_env(i, "isConfigured")),
        "notConfiguredIntegrations": sum(1 for i in integrations if no_env(i, "isConfigured")),
        "mostUsedEnvironment": most_used[0]["environment"] if most_used else "none",
        "avgEnvironmentsActivePerIntegration": round_half_up(
            ratio(sum(env["activeCount"] for env in environments), total), 1
        ),
        "avgEnvironmentsConfiguredPerIntegration": round_half_up(
            ratio(sum(env["configuredCount"] for env in environments), total), 1
        ),
    }

    return {
        "environments": environments,
        "environmentComparison": [
            {
                "environment": env["environmentName"],
                "activeCount": env["activeCount"],
                "configuredCount": env["configuredCount"],
                "activePercentage": env["activePercentage"],
                "configuredPercentage": env["configuredPercentage"],
                "avgConfigKeys": env["avgConfigKeys"],
            }
            for env in environments
        ],
        "activeEnvironmentPreferences": preferences,
        "fullyActiveIntegrations": [_brief(i) for i in fully_active],
        "noActiveEnvironments": [_brief(i) for i in none_active],
        "mismatchedActiveEnvironment": [
            dict(_brief(i), activeEnvironment=i["activeEnvironment"]) for i in mismatched
        ],
        "summary": summary,
    }


# =============================================================================
# integration/type-distribution
# =============================================================================

def _tiers(prefix: str, percent: float) -> Dict[str, int]:
    return {f"{prefix}Above{tier}": int(percent >= tier) for tier in TYPE_HEALTH_TIERS}


def _type_row(integration_type: str, members: List[Mapping[str, Any]], total: int) -> Tuple[Dict[str, Any], float]:
    """Per-type row plus the unrounded production-active percentage."""
    count = len(members)
    active = sum(1 for i in members if as_bool(i["isActive"]))

    environments = {}
    configured_envs = 0
    config_keys = 0
    for name in ENVIRONMENTS:
        env_active = sum(1 for i in members if i["environments"][name]["isActive"])
        env_configured = [i for i in members if i["environments"][name]["isConfigured"]]
        configured_envs += len(env_configured)
        config_keys += sum(i["environments"][name]["configKeys"] for i in env_configured)
        environments[name] = {
            "activeCount": env_active,
            "configuredCount": len(env_configured),
            "activePercentage": rounded_percentage(env_active, count),
        }

    active_percent = ratio(active, count) * 100
    production_percent = ratio(environments["production"]["activeCount"], count) * 100
    configured_percent = ratio(configured_envs, count * len(ENVIRONMENTS)) * 100
    health = compute_composite_score(TYPE_HEALTH_SCORE, {
        **_tiers("active", active_percent),
        **_tiers("production", production_percent),
        **_tiers("configured", configured_percent),
    })

    preferences = sort_rows(_preferences(members), "count")
    created = [moment for moment in (coerce_datetime(i["createdAt"]) for i in members) if moment]

    return {
        "integrationType": integration_type,
        "count": count,
        "percentage": rounded_percentage(count, total),
        "activeCount": active,
        "inactiveCount": count - active,
        "activePercentage": round_half_up(active_percent),
        "productionActivePercentage": round_half_up(production_percent),
        "environments": environments,
        "totalConfigKeys": config_keys,
        "avgConfigKeysPerIntegration": round_half_up(ratio(config_keys, count), 1),
        "typeHealthScore": health.score,
        "typeHealthStatus": health.band,
        "mostUsedEnvironment": preferences[0]["environment"] if preferences else "none",
        "oldestCreation": _iso(min(created)) if created else None,
        "newestCreation": _iso(max(created)) if created else None,
        "integrations": [
            {
                "integrationId": i["_id"],
                "displayName": i["displayName"],
                "isActive": as_bool(i["isActive"]),
                "activeEnvironment": i["activeEnvironment"],
                "createdAt": _iso(i["createdAt"]),
            }
            for i in members
        ],
    }, production_percent


def _readiness(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "integrationType": row["integrationType"],
        "count": row["count"],
        "productionActivePercentage": row["productionActivePercentage"],
    }


@register_report("integration", "type-distribution", "Integration Type Distribution")
async def integration_type_distribution(ctx: ReportContext) -> Dict[str, Any]:
    """Integrations grouped by type with tiered per-type health."""
    integrations = await _integrations(ctx)
    total = len(integrations)

    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for integration in integrations:
        grouped.setdefault(integration["integrationType"] or "unknown", []).append(integration)

    production: Dict[str, float] = {}
    rows = []
    for name, members in grouped.items():
        row, production[name] = _type_row(name, members, total)
        rows.append(row)
    rows = sort_rows(rows, "count")
    by_health = sort_rows(rows, "typeHealthScore")
    ready = [row for row in rows if production[row["integrationType"]] >= PRODUCTION_READY_PERCENT]
    not_ready = [row for row in rows if production[row["integrationType"]] < NOT_PRODUCTION_READY_PERCENT]
    concentration = sum(ratio(row["count"], total) ** 2 for row in rows)

    def with_status(label):
        return sum(1 for row in rows if row["typeHealthStatus"] == label)

    most, least = (rows[0], rows[-1]) if rows else (None, None)
    healthiest, weakest = (by_health[0], by_health[-1]) if by_health else (None, None)

    summary = {
        "totalIntegrations": total,
        "uniqueTypes": len(rows),
        "typesWithMultipleInstances": sum(1 for row in rows if row["count"] > 1),
        "typesWithSingleInstance": sum(1 for row in rows if row["count"] == 1),
        "mostPopularType": most["integrationType"] if most else None,
        "mostPopularTypeCount": most["count"] if most else 0,
        "leastPopularType": least["integrationType"] if least else None,
        "leastPopularTypeCount": least["count"] if least else 0,
        "healthiestType": healthiest["integrationType"] if healthiest else None,
        "healthiestTypeScore": healthiest["typeHealthScore"] if healthiest else 0,
        "leastHealthyType": weakest["integrationType"] if weakest else None,
        "leastHealthyTypeScore": weakest["typeHealthScore"] if weakest else 0,
        "excellentTypes": with_status("Excellent"),
        "goodTypes": with_status("Good"),
        "fairTypes": with_status("Fair"),
        "poorTypes": with_status("Poor"),
        "productionReadyTypes": len(ready),
        "notProductionReadyTypes": len(not_ready),
        "typeConcentration": round_half_up(concentration, 3),
        "concentrationLevel": first_matching_rating(
            {"typeConcentration": concentration}, CONCENTRATION_LEVELS, "Low"
        ),
        "avgIntegrationsPerType": round_half_up(ratio(total, len(rows)), 1),
        "avgTypeHealthScore": round_half_up(mean_or_zero([row["typeHealthScore"] for row in rows])),
    }

    return {
        "types": rows,
        "mostPopularType": _readiness(most) if most else None,
        "healthiestType": (
            {
                "integrationType": healthiest["integrationType"],
                "typeHealthScore": healthiest["typeHealthScore"],
                "typeHealthStatus": healthiest["typeHealthStatus"],
            }
            if healthiest else None
        ),
        "productionReadyTypes": [_readiness(row) for row in ready],
        "notProductionReadyTypes": [_readiness(row) for row in not_ready],
        "summary": summary,
    }
