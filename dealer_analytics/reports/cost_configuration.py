"""
Cost configuration reports.

A tenant holds one cost configuration document with an array of cost types
and an array of cost setters (enabled cost types per vehicle purchase type).
Neither is dealership- nor date-scoped.

- cost-configuration/type-utilization
- cost-configuration/setter-effectiveness
- cost-configuration/currency-distribution
"""

from typing import Any, Dict, List, Mapping, Optional

from dealer_analytics.models.enums import EntityType
from dealer_analytics.reports.base import (
    ReportContext,
    count,
    distinct,
    first,
    register_report,
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
from dealer_analytics.services.entities import JoinSpec, array_length, has_text, id_of
from dealer_analytics.services.metrics import (
    DerivedMetric,
    apply_derivations,
    mean_or_zero,
    percentage,
    ratio,
    round_half_up,
    rounded_percentage,
)
from dealer_analytics.services.scoring import (
    BOOLEAN_SCALE,
    Band,
    CompositeScoreDefinition,
    ScoreInput,
    classify_band,
    compute_composite_score,
)


CURRENCIES_JOIN = JoinSpec(
    "currency_records",
    EntityType.CURRENCY,
    "cost_types.currency_id",
    many=True,
)

UNSPECIFIED = "unspecified"
UNKNOWN_CODE = "unknown"
UNKNOWN_NAME = "Unknown"
NO_TAX = "none"
# Cost types without a display order sort last
DEFAULT_DISPLAY_ORDER = 999

SETTER_EFFECTIVENESS = CompositeScoreDefinition(
    name="setterEffectiveness",
    inputs=(
        ScoreInput("anyEnabled", 40, BOOLEAN_SCALE),
        ScoreInput("halfUtilized", 30, BOOLEAN_SCALE),
        ScoreInput("mostlyUtilized", 30, BOOLEAN_SCALE),
    ),
    bands=(Band(0, "Low"), Band(40, "Medium"), Band(70, "High")),
)

CONFIGURED_HEALTH = (Band(0, "Needs Improvement"), Band(40, "Moderate"), Band(70, "Healthy"))


# =============================================================================
# Cost type accessors
# =============================================================================

def _cost_type(row: Mapping[str, Any]) -> Mapping[str, Any]:
    cost_type = row.get("cost_types")
    return cost_type if isinstance(cost_type, Mapping) else {}


def _currency(row: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    """Currency document of the unwound cost type, if it resolves."""
    wanted = id_of(_cost_type(row).get("currency_id"))
    for currency in row.get("currency_records") or ():
        if id_of(currency.get("_id")) == wanted:
            return currency
    return None


def _currency_field(name: str, default: Any = None):
    def extract(row):
        currency = _currency(row)
        value = currency.get(name) if currency is not None else None
        return value if value is not None else default
    return extract


def _section_type(row) -> str:
    return _cost_type(row).get("section_type") or UNSPECIFIED


def _tax_type(row) -> str:
    return _cost_type(row).get("default_tax_type") or NO_TAX


def _tax_rate(row) -> Any:
    rate = _cost_type(row).get("default_tax_rate")
    return rate if rate else NO_TAX


def _has_default(row) -> bool:
    return has_text(_cost_type(row).get("default_value"))


def _cost_type_request(**overrides) -> AggregationRequest:
    return AggregationRequest(
        source=EntityType.COST_CONFIGURATION,
        joins=(CURRENCIES_JOIN,),
        unwind=UnwindSpec("cost_types"),
        **overrides,
    )


COST_TYPE_FIELDS = {
    "costType": "cost_types.cost_type",
    "sectionType": "cost_types.section_type",
    "currencyCode": _currency_field("currency_code"),
    "currencyName": _currency_field("currency_name"),
    "currencySymbol": _currency_field("currency_symbol"),
    "defaultTaxRate": "cost_types.default_tax_rate",
    "defaultTaxType": "cost_types.default_tax_type",
    "changeCurrency": "cost_types.change_currency",
    "defaultValue": "cost_types.default_value",
    "hasDefaultValue": _has_default,
    "displayOrder": "cost_types.display_order",
    "createdAt": "cost_types.created_at",
    "updatedAt": "cost_types.updated_at",
}


async def _cost_types(ctx: ReportContext) -> List[Dict[str, Any]]:
    """One row per configured cost type, keyed by its id."""
    return await ctx.aggregate(_cost_type_request(
        group_keys=(GroupKey("costTypeId", value=lambda row: id_of(_cost_type(row).get("_id"))),),
        metrics=tuple(
            first(name, field=spec) if isinstance(spec, str) else first(name, value=spec)
            for name, spec in COST_TYPE_FIELDS.items()
        ),
    ))


async def _distribution(ctx: ReportContext, name: str, key) -> List[Dict[str, Any]]:
    return await ctx.aggregate(_cost_type_request(
        group_keys=(GroupKey(name, value=key),),
        metrics=(count("count"),),
        sort=(SortKey("count", descending=True),),
    ))


# =============================================================================
# cost-configuration/type-utilization
# =============================================================================

@register_report("cost-configuration", "type-utilization", "Cost Type Utilization")
async def cost_type_utilization(ctx: ReportContext) -> Dict[str, Any]:
    """
    Cost type usage across the tenant's configuration.

    Section type and currency distributions come from grouping the unwound
    cost types; completeness averages the default-value and change-currency
    coverage.
    """
    cost_types = await _cost_types(ctx)

    sections = await ctx.aggregate(_cost_type_request(
        group_keys=(GroupKey("sectionType", value=_section_type),),
        metrics=(
            count("count"),
            distinct("costTypes", value=lambda row: {
                "costType": _cost_type(row).get("cost_type"),
                "currencyCode": _currency_field("currency_code")(row),
                "defaultTaxRate": _cost_type(row).get("default_tax_rate"),
                "defaultTaxType": _cost_type(row).get("default_tax_type"),
                "changeCurrency": _cost_type(row).get("change_currency"),
                "defaultValue": _cost_type(row).get("default_value"),
                "displayOrder": _cost_type(row).get("display_order"),
            }),
        ),
        sort=(SortKey("count", descending=True),),
    ))

    currencies = await ctx.aggregate(_cost_type_request(
        group_keys=(GroupKey("currencyCode", value=_currency_field("currency_code", UNKNOWN_CODE)),),
        metrics=(
            first("currencyName", value=_currency_field("currency_name", UNKNOWN_NAME)),
            first("currencySymbol", value=_currency_field("currency_symbol")),
            count("count"),
            distinct("costTypes", field="cost_types.cost_type"),
        ),
        sort=(SortKey("count", descending=True),),
    ))

    tax_types = await _distribution(ctx, "taxType", _tax_type)
    tax_rates = await _distribution(ctx, "taxRate", _tax_rate)

    total_types = len(cost_types)
    change_enabled = sum(1 for row in cost_types if row["changeCurrency"] is True)
    change_disabled = sum(1 for row in cost_types if row["changeCurrency"] is False)
    with_default = sum(1 for row in cost_types if row["hasDefaultValue"])

    by_display_order = sorted(
        cost_types,
        key=lambda row: row["displayOrder"] or DEFAULT_DISPLAY_ORDER,
    )

    return {
        "costTypes": [
            {name: row[name] for name in COST_TYPE_FIELDS if name != "hasDefaultValue"}
            for row in cost_types
        ],
        "sectionTypeAnalysis": sections,
        "currencyDistribution": currencies,
        "taxTypeDistribution": tax_types,
        "taxRateDistribution": tax_rates,
        "topCostTypes": [
            {
                "costType": row["costType"],
                "sectionType": row["sectionType"],
                "currencyCode": row["currencyCode"],
                "defaultTaxRate": row["defaultTaxRate"],
                "defaultTaxType": row["defaultTaxType"],
                "changeCurrency": row["changeCurrency"],
                "hasDefaultValue": row["hasDefaultValue"],
                "displayOrder": row["displayOrder"],
            }
            for row in by_display_order[:10]
        ],
        "summary": {
            "totalCostTypes": total_types,
            "uniqueSectionTypes": len(sections),
            "uniqueCurrencies": len(currencies),
            "uniqueTaxTypes": len(tax_types),
            "uniqueTaxRates": len(tax_rates),
            "changeCurrencyEnabled": change_enabled,
            "changeCurrencyDisabled": change_disabled,
            "changeCurrencyPercentage": rounded_percentage(change_enabled, total_types),
            "withDefaultValue": with_default,
            "withoutDefaultValue": total_types - with_default,
            "defaultValuePercentage": rounded_percentage(with_default, total_types),
            "configurationCompleteness": rounded_percentage(with_default + change_enabled, total_types * 2),
        },
    }


# =============================================================================
# cost-configuration/setter-effectiveness
# =============================================================================

def _setter_effectiveness(enabled_count: int, utilization_rate: float) -> Dict[str, Any]:
    result = compute_composite_score(SETTER_EFFECTIVENESS, {
        "anyEnabled": enabled_count > 0,
        "halfUtilized": utilization_rate >= 50,
        "mostlyUtilized": utilization_rate >= 80,
    })
    return {"effectivenessScore": result.score, "effectivenessLevel": result.band}


@register_report("cost-configuration", "setter-effectiveness", "Cost Setter Effectiveness")
async def cost_setter_effectiveness(ctx: ReportContext) -> Dict[str, Any]:
    """Enabled cost types per purchase type setter, scored on coverage."""
    cost_types = await _cost_types(ctx)
    by_id = {row["costTypeId"]: row for row in cost_types}

    setter_rows = await ctx.aggregate(AggregationRequest(
        source=EntityType.COST_CONFIGURATION,
        unwind=UnwindSpec("cost_setter"),
        group_keys=(
            GroupKey("setterId", value=lambda row: id_of((row.get("cost_setter") or {}).get("_id"))),
            GroupKey("vehiclePurchaseType", path="cost_setter.vehicle_purchase_type"),
        ),
        metrics=(
            first("enabledCostTypeIds", field="cost_setter.enabled_cost_types"),
            first("createdAt", field="cost_setter.created_at"),
            first("updatedAt", field="cost_setter.updated_at"),
        ),
    ))

    total_types = len(cost_types)
    usage: Dict[str, int] = {}
    setters = []
    exact_utilization: List[float] = []
    for row in setter_rows:
        enabled_ids = [id_of(type_id) for type_id in row["enabledCostTypeIds"] or ()]
        for type_id in enabled_ids:
            usage[type_id] = usage.get(type_id, 0) + 1
        enabled_count = array_length(row["enabledCostTypeIds"])
        exact_utilization.append(percentage(enabled_count, total_types))
        utilization = round_half_up(exact_utilization[-1])
        setters.append({
            "vehiclePurchaseType": row["vehiclePurchaseType"],
            "enabledCostTypeCount": enabled_count,
            "enabledCostTypes": [
                {
                    "costType": by_id[type_id]["costType"],
                    "sectionType": by_id[type_id]["sectionType"],
                    "currencyCode": by_id[type_id]["currencyCode"],
                }
                for type_id in enabled_ids if type_id in by_id
            ],
            "utilizationRate": utilization,
            **_setter_effectiveness(enabled_count, exact_utilization[-1]),
            "createdAt": row["createdAt"],
            "updatedAt": row["updatedAt"],
        })

    purchase_types = await ctx.aggregate(AggregationRequest(
        source=EntityType.COST_CONFIGURATION,
        unwind=UnwindSpec("cost_setter"),
        group_keys=(GroupKey(
            "purchaseType",
            value=lambda row: (row.get("cost_setter") or {}).get("vehicle_purchase_type") or UNSPECIFIED,
        ),),
        metrics=(count("count"),),
    ))
    total_setters = len(setters)
    purchase_types = apply_derivations(
        [dict(row, totalSetters=total_setters) for row in purchase_types],
        (DerivedMetric("percentage", "count", "totalSetters", rounding_digits=0),),
    )

    type_usage = sort_rows(
        [
            {
                "costTypeId": type_id,
                "costType": by_id[type_id]["costType"] if type_id in by_id else UNKNOWN_NAME,
                "sectionType": by_id[type_id]["sectionType"] if type_id in by_id else None,
                "usageCount": used,
                "usagePercentage": rounded_percentage(used, total_setters),
            }
            for type_id, used in usage.items()
        ],
        "usageCount",
    )

    unused = [
        {
            "costType": row["costType"],
            "sectionType": row["sectionType"],
            "currencyCode": row["currencyCode"],
        }
        for row in cost_types if row["costTypeId"] not in usage
    ]

    configured = sum(1 for setter in setters if setter["enabledCostTypeCount"] > 0)

    def at_level(level):
        return sum(1 for setter in setters if setter["effectivenessLevel"] == level)

    return {
        "costSetters": setters,
        "purchaseTypeDistribution": [
            {"purchaseType": row["purchaseType"], "count": row["count"], "percentage": row["percentage"]}
            for row in purchase_types
        ],
        "costTypeUsage": type_usage,
        "unusedCostTypes": unused,
        "summary": {
            "totalCostSetters": total_setters,
            "totalCostTypes": total_types,
            "uniquePurchaseTypes": len(purchase_types),
            "fullyConfiguredSetters": configured,
            "emptySetters": total_setters - configured,
            "highEffectivenessSetters": at_level("High"),
            "mediumEffectivenessSetters": at_level("Medium"),
            "lowEffectivenessSetters": at_level("Low"),
            "avgEnabledCostTypesPerSetter": round_half_up(
                mean_or_zero([setter["enabledCostTypeCount"] for setter in setters]), 1
            ),
            "avgUtilizationRate": round_half_up(mean_or_zero(exact_utilization)),
            "avgEffectivenessScore": round_half_up(mean_or_zero([setter["effectivenessScore"] for setter in setters])),
            "totalEnabledCostTypes": len(usage),
            "unusedCostTypesCount": len(unused),
            "costTypeUtilizationRate": rounded_percentage(len(usage), total_types),
            "overallHealth": classify_band(percentage(configured, total_setters), CONFIGURED_HEALTH),
        },
    }


# =============================================================================
# cost-configuration/currency-distribution
# =============================================================================

CURRENCY_DIVERSITY = (Band(0, "Low"), Band(2, "Medium"), Band(3, "High"))


def _currency_id(row) -> str:
    currency = _currency(row)
    return id_of(currency.get("_id")) if currency is not None else UNKNOWN_CODE


def _currency_active(row) -> bool:
    currency = _currency(row)
    return currency is None or currency.get("is_active") is not False


def _configuration_health(multi_currency: bool, change_enabled: int) -> str:
    if multi_currency and change_enabled > 0:
        return "Flexible"
    if multi_currency:
        return "Moderate"
    return "Limited"


@register_report("cost-configuration", "currency-distribution", "Cost Currency Distribution")
async def cost_currency_distribution(ctx: ReportContext) -> Dict[str, Any]:
    """Currencies used by cost types, per section type, and currencies left unused."""
    cost_types = await _cost_types(ctx)
    total_types = len(cost_types)

    rows = await ctx.aggregate(_cost_type_request(
        group_keys=(GroupKey("currencyId", value=_currency_id),),
        metrics=(
            first("currencyCode", value=_currency_field("currency_code", UNKNOWN_CODE)),
            first("currencyName", value=_currency_field("currency_name", UNKNOWN_NAME)),
            first("currencySymbol", value=_currency_field("currency_symbol", "")),
            first("isActive", value=_currency_active),
            count("costTypeCount"),
            distinct("costTypes", value=lambda row: {
                "costType": _cost_type(row).get("cost_type"),
                "sectionType": _cost_type(row).get("section_type"),
                "changeCurrency": _cost_type(row).get("change_currency"),
                "hasDefaultValue": _has_default(row),
            }),
            distinct("sectionTypes", field="cost_types.section_type"),
            count("changeCurrencyEnabled", where=lambda row: bool(_cost_type(row).get("change_currency"))),
            count("withDefaultValue", where=_has_default),
        ),
        sort=(SortKey("costTypeCount", descending=True),),
    ))
    currencies = []
    for row in rows:
        cost_type_count = row["costTypeCount"]
        currencies.append({
            **row,
            "changeCurrencyDisabled": cost_type_count - row["changeCurrencyEnabled"],
            "withoutDefaultValue": cost_type_count - row["withDefaultValue"],
            "sectionTypeCount": len(row["sectionTypes"]),
            "changeCurrencyPercentage": rounded_percentage(row["changeCurrencyEnabled"], cost_type_count),
            "defaultValuePercentage": rounded_percentage(row["withDefaultValue"], cost_type_count),
            "usagePercentage": rounded_percentage(cost_type_count, total_types),
        })

    by_section = await ctx.aggregate(_cost_type_request(
        group_keys=(
            GroupKey("sectionType", value=_section_type),
            GroupKey("currencyCode", value=_currency_field("currency_code", UNKNOWN_CODE)),
        ),
        metrics=(count("count"),),
        rollup=RollupSpec(
            keys=("sectionType",),
            metrics=(total("totalCostTypes", field="count"),),
            breakdown_field="currencies",
            breakdown_keys=("currencyCode", "count"),
        ),
    ))
    section_analysis = []
    for row in by_section:
        ranked = sort_rows(row["currencies"], "count")
        section_analysis.append({
            "sectionType": row["sectionType"],
            "totalCostTypes": row["totalCostTypes"],
            "currencies": ranked,
            "uniqueCurrencies": len(ranked),
            "dominantCurrency": ranked[0]["currencyCode"] if ranked else None,
        })

    available = await ctx.records(EntityType.CURRENCY, {
        "currencyCode": "currency_code",
        "currencyName": "currency_name",
        "currencySymbol": "currency_symbol",
        "isActive": "is_active",
    })
    used_ids = {row["currencyId"] for row in currencies}
    unused = [
        {
            "currencyId": row["_id"],
            "currencyCode": row["currencyCode"],
            "currencyName": row["currencyName"],
            "currencySymbol": row["currencySymbol"],
            "isActive": row["isActive"],
        }
        for row in available if id_of(row["_id"]) not in used_ids
    ]

    primary = currencies[0] if currencies else None
    multi_currency = len(currencies) > 1
    change_enabled = sum(1 for row in cost_types if row["changeCurrency"] is True)

    return {
        "currencies": currencies,
        "primaryCurrency": primary,
        "secondaryCurrencies": currencies[1:],
        "sectionTypeCurrencyAnalysis": section_analysis,
        "unusedCurrencies": unused,
        "summary": {
            "totalCostTypes": total_types,
            "totalCurrenciesUsed": len(currencies),
            "totalCurrenciesAvailable": len(available),
            "unusedCurrenciesCount": len(unused),
            "currencyUtilizationRate": rounded_percentage(len(currencies), len(available)),
            "multiCurrencyEnabled": multi_currency,
            "activeCurrenciesCount": sum(1 for row in currencies if row["isActive"]),
            "inactiveCurrenciesCount": sum(1 for row in currencies if not row["isActive"]),
            "primaryCurrency": {
                "currencyCode": primary["currencyCode"],
                "currencyName": primary["currencyName"],
                "usagePercentage": primary["usagePercentage"],
            } if primary is not None else None,
            "changeCurrencyEnabled": change_enabled,
            "changeCurrencyDisabled": sum(1 for row in cost_types if row["changeCurrency"] is False),
            "changeCurrencyPercentage": rounded_percentage(change_enabled, total_types),
            "avgCostTypesPerCurrency": round_half_up(ratio(total_types, len(currencies)), 1),
            "currencyDiversity": classify_band(len(currencies), CURRENCY_DIVERSITY),
            "configurationHealth": _configuration_health(multi_currency, change_enabled),
        },
    }
