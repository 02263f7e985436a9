"""
Entity Registry and Typed Accessors

The report store holds loosely-shaped documents. Different entities model the
same concept differently: `is_workshop` is a plain boolean on most vehicles but
an array of per-stage booleans on inspection and trade-in vehicles, and
integration environments carry configuration blobs with arbitrary keys.

This module is the single place that knows about those shapes:

- ENTITY_SCHEMAS: for each entity, the registered top-level fields (used by the
  composer to reject unknown field paths), where the dealership and primary
  timestamp live, and any join needed to reach a scoping field that lives on a
  related entity.
- Typed accessors: small normalizers that turn heterogeneous values into a
  common boolean / count / number / datetime representation. Derivation and
  scoring code only ever sees the normalized values.

Configuration blobs are treated as opaque: the only questions asked of them are
"is it present" and "how many keys does it have".
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from dealer_analytics.models.enums import EntityType


# =============================================================================
# Join and Entity Declarations
# =============================================================================

@dataclass(frozen=True)
class JoinSpec:
    """
    Declared foreign-key relationship resolved by the lookup stage.

    Attributes:
        alias: Name under which the joined document(s) are attached.
        entity: Target entity collection.
        local_field: Field path on the (already joined) record holding the key.
        foreign_field: Field on the target entity matched against the key.
            An array-valued foreign field matches any of its elements.
        many: Attach the list of all matches instead of the first match.
        dealership_field: When set and the scope is dealership-restricted,
            joined documents outside the scope are dropped.
    """
    alias: str
    entity: EntityType
    local_field: str
    foreign_field: str = "_id"
    many: bool = False
    dealership_field: Optional[str] = None


@dataclass(frozen=True)
class EntitySchema:
    """
    Registered shape of one entity.

    Attributes:
        entity: Collection this schema describes.
        fields: Registered top-level fields. Paths below them are opaque.
        dealership_field: Default path of the dealership scoping field, or
            None for tenant-level entities.
        timestamp_field: Default primary timestamp compared against the date
            range, or None when the entity is not date scoped.
        scope_joins: Joins needed to reach a scoping field on a related entity.
    """
    entity: EntityType
    fields: FrozenSet[str]
    dealership_field: Optional[str] = None
    timestamp_field: Optional[str] = "created_at"
    scope_joins: Tuple[JoinSpec, ...] = field(default_factory=tuple)


# Workshop quotes carry no dealership of their own; scope through the vehicle
QUOTE_VEHICLE_JOIN = JoinSpec(
    alias="vehicle_record",
    entity=EntityType.VEHICLE,
    local_field="vehicle",
)

# Workshop reports reference their vehicle by id
REPORT_VEHICLE_JOIN = JoinSpec(
    alias="vehicle_record",
    entity=EntityType.VEHICLE,
    local_field="vehicle_id",
)


ENTITY_SCHEMAS: Dict[EntityType, EntitySchema] = {
    EntityType.VEHICLE: EntitySchema(
        entity=EntityType.VEHICLE,
        fields=frozenset({
            "_id", "company_id", "dealership_id", "vehicle_type", "vehicle_stock_id",
            "status", "make", "model", "year", "vehicle_other_details",
            "vehicle_attachments", "is_workshop", "workshop_progress",
            "workshop_report_ready", "workshop_report_preparing", "queue_status",
            "processing_attempts", "created_at", "updated_at",
        }),
        dealership_field="dealership_id",
    ),
    EntityType.WORKSHOP_QUOTE: EntitySchema(
        entity=EntityType.WORKSHOP_QUOTE,
        fields=frozenset({
            "_id", "company_id", "vehicle", "vehicle_stock_id", "vehicle_type",
            "field_name", "quote_type", "status", "quote_amount", "bay_id",
            "booking_date", "booking_start_time", "approved_at", "work_started_at",
            "work_submitted_at", "work_completed_at", "supplier_responses",
            "approved_supplier", "comment_sheet", "created_at", "updated_at",
        }),
        dealership_field="vehicle_record.dealership_id",
        scope_joins=(QUOTE_VEHICLE_JOIN,),
    ),
    EntityType.DEALERSHIP: EntitySchema(
        entity=EntityType.DEALERSHIP,
        fields=frozenset({
            "_id", "company_id", "dealership_name", "is_active", "created_at",
        }),
        dealership_field="_id",
    ),
    EntityType.SERVICE_BAY: EntitySchema(
        entity=EntityType.SERVICE_BAY,
        fields=frozenset({
            "_id", "company_id", "dealership_id", "bay_name", "bay_description",
            "is_active", "bay_users", "primary_admin", "bay_timings",
            "bay_holidays", "created_at", "updated_at",
        }),
        dealership_field="dealership_id",
        # Date ranges apply to bookings and holidays, not to bays
        timestamp_field=None,
    ),
    EntityType.USER: EntitySchema(
        entity=EntityType.USER,
        fields=frozenset({
            "_id", "company_id", "username", "first_name", "last_name", "email",
            "role", "is_active", "dealership_ids", "group_permissions",
            "last_login", "created_at",
        }),
        dealership_field="dealership_ids",
        timestamp_field=None,
    ),
    EntityType.GROUP_PERMISSION: EntitySchema(
        entity=EntityType.GROUP_PERMISSION,
        fields=frozenset({
            "_id", "company_id", "name", "description", "is_active",
            "permissions", "created_by", "created_at", "updated_at",
        }),
        timestamp_field=None,
    ),
    EntityType.INTEGRATION: EntitySchema(
        entity=EntityType.INTEGRATION,
        fields=frozenset({
            "_id", "company_id", "integration_type", "display_name", "is_active",
            "active_environment", "environments", "created_by", "updated_by",
            "created_at", "updated_at",
        }),
    ),
    EntityType.WORKFLOW: EntitySchema(
        entity=EntityType.WORKFLOW,
        fields=frozenset({
            "_id", "company_id", "name", "description", "workflow_type", "status",
            "execution_stats", "created_by", "last_modified_by", "created_at",
            "updated_at",
        }),
        timestamp_field=None,
    ),
    EntityType.WORKFLOW_EXECUTION: EntitySchema(
        entity=EntityType.WORKFLOW_EXECUTION,
        fields=frozenset({
            "_id", "company_id", "workflow_id", "execution_status",
            "execution_started_at", "execution_completed_at",
            "execution_duration_ms", "total_vehicles", "successful_vehicles",
            "failed_vehicles", "database_changes", "error_message", "created_at",
        }),
    ),
    EntityType.COST_CONFIGURATION: EntitySchema(
        entity=EntityType.COST_CONFIGURATION,
        fields=frozenset({
            "_id", "company_id", "cost_types", "cost_setter", "created_at",
            "updated_at",
        }),
        timestamp_field=None,
    ),
    EntityType.CURRENCY: EntitySchema(
        entity=EntityType.CURRENCY,
        fields=frozenset({
            "_id", "company_id", "currency_name", "currency_code", "currency_symbol",
            "is_active", "created_at", "updated_at",
        }),
        timestamp_field=None,
    ),
    EntityType.WORKSHOP_REPORT: EntitySchema(
        entity=EntityType.WORKSHOP_REPORT,
        fields=frozenset({
            "_id", "company_id", "vehicle_id", "vehicle_stock_id", "vehicle_type",
            "report_type", "vehicle_details", "workshop_summary", "statistics",
            "quotes_data", "generated_at", "created_at",
        }),
        dealership_field="vehicle_record.dealership_id",
        scope_joins=(REPORT_VEHICLE_JOIN,),
    ),
    EntityType.SUPPLIER: EntitySchema(
        entity=EntityType.SUPPLIER,
        fields=frozenset({
            "_id", "company_id", "name", "email", "supplier_shop_name", "tags",
            "is_active", "created_at",
        }),
        timestamp_field=None,
    ),
}


def get_entity_schema(entity: EntityType) -> EntitySchema:
    """Return the registered schema for `entity`."""
    return ENTITY_SCHEMAS[entity]


# =============================================================================
# Scalar Normalizers
# =============================================================================

def as_number(value: Any) -> Optional[float]:
    """
    Coerce a numeric-looking value to float.

    Booleans, blanks, non-numeric strings and non-finite numbers yield None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def as_bool(value: Any) -> bool:
    """Interpret a scalar flag; strings 'true'/'yes'/'1' count as set."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value) if isinstance(value, (bool, int, float)) else False


def coerce_datetime(value: Any) -> Optional[datetime]:
    """
    Normalize a stored timestamp to an aware UTC datetime.

    Accepts datetime, date, ISO-8601 strings (a trailing 'Z' included) and
    epoch milliseconds. Anything unparsable yields None. Naive values are
    taken as UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime.combine(value, time.min)
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def hours_between(later: Any, earlier: Any) -> Optional[float]:
    """Elapsed hours from `earlier` to `later`, or None if either is missing."""
    end = coerce_datetime(later)
    start = coerce_datetime(earlier)
    if end is None or start is None:
        return None
    return (end - start).total_seconds() / 3600


def days_between(later: Any, earlier: Any) -> Optional[float]:
    """Elapsed days from `earlier` to `later`, or None if either is missing."""
    hours = hours_between(later, earlier)
    return hours / 24 if hours is not None else None


def id_of(value: Any) -> Optional[str]:
    """Normalize a reference (raw id or embedded document) to its string id."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        inner = value.get("_id")
        return str(inner) if inner is not None else None
    return str(value)


def first_element(value: Any) -> Any:
    """First element of an array field, the value itself for scalars."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


# =============================================================================
# Flag Normalizers (boolean vs array-of-stage-booleans)
# =============================================================================

def flag_is_set(value: Any) -> bool:
    """
    True when a flag is set, whatever its shape.

    - bool / scalar: its truth value
    - array of stage booleans: True when any stage is set
    - missing: False
    """
    if isinstance(value, (list, tuple)):
        return any(as_bool(stage) for stage in value)
    return as_bool(value)


def flag_stage_count(value: Any) -> int:
    """Number of stages recorded for a flag; scalars have no stages."""
    if isinstance(value, (list, tuple)):
        return len(value)
    return 0


def flag_set_count(value: Any) -> int:
    """Number of set stages (a scalar flag counts as one stage)."""
    if isinstance(value, (list, tuple)):
        return sum(1 for stage in value if as_bool(stage))
    return 1 if as_bool(value) else 0


def is_staged(value: Any) -> bool:
    """True when the flag is modelled as an array of stages."""
    return isinstance(value, (list, tuple))


# =============================================================================
# Opaque Blob Normalizers
# =============================================================================

def config_key_count(blob: Any) -> int:
    """Number of keys in a configuration blob; non-mappings have none."""
    if isinstance(blob, Mapping):
        return len(blob)
    return 0


def is_configured(blob: Any) -> bool:
    """A configuration blob counts as configured when it has at least one key."""
    return config_key_count(blob) > 0


def array_length(value: Any) -> int:
    """Length of an array field; missing or scalar values count as zero."""
    if isinstance(value, (list, tuple)):
        return len(value)
    return 0


# =============================================================================
# Clock Times (service bay timings and holidays)
# =============================================================================

def parse_clock_hours(value: Any) -> Optional[float]:
    """Convert an 'HH:MM' string into fractional hours, or None if malformed."""
    if not isinstance(value, str) or ":" not in value:
        return None
    hour_text, _, minute_text = value.strip().partition(":")
    try:
        hours = int(hour_text)
        minutes = int(minute_text[:2])
    except ValueError:
        return None
    if not (0 <= hours <= 24 and 0 <= minutes < 60):
        return None
    return hours + minutes / 60


def clock_span_hours(start: Any, end: Any) -> Optional[float]:
    """Hours between two 'HH:MM' clock times, or None if either is malformed."""
    start_hours = parse_clock_hours(start)
    end_hours = parse_clock_hours(end)
    if start_hours is None or end_hours is None:
        return None
    return end_hours - start_hours


# =============================================================================
# Entity-Specific Accessors
# =============================================================================

def vehicle_in_workshop(vehicle: Mapping[str, Any]) -> bool:
    return flag_is_set(vehicle.get("is_workshop"))


def vehicle_report_ready(vehicle: Mapping[str, Any]) -> bool:
    return flag_is_set(vehicle.get("workshop_report_ready"))


def vehicle_report_preparing(vehicle: Mapping[str, Any]) -> bool:
    return flag_is_set(vehicle.get("workshop_report_preparing"))


def vehicle_has_attachments(vehicle: Mapping[str, Any]) -> bool:
    return array_length(vehicle.get("vehicle_attachments")) > 0


def vehicle_detail_number(vehicle: Mapping[str, Any], key: str) -> Optional[float]:
    """Numeric value from the first `vehicle_other_details` entry."""
    details = first_element(vehicle.get("vehicle_other_details"))
    if not isinstance(details, Mapping):
        return None
    return as_number(details.get(key))


def user_full_name(user: Optional[Mapping[str, Any]]) -> Optional[str]:
    """'first last' for a user document, falling back to username/name."""
    if not user:
        return None
    parts = [user.get("first_name"), user.get("last_name")]
    name = " ".join(str(part) for part in parts if part)
    return name or user.get("username") or user.get("name")


def bay_working_hours_per_week(bay: Mapping[str, Any]) -> float:
    """Sum of working hours across the bay's per-day timings."""
    total = 0.0
    timings = bay.get("bay_timings")
    if not isinstance(timings, list):
        return total
    for timing in timings:
        if not isinstance(timing, Mapping) or not as_bool(timing.get("is_working_day")):
            continue
        hours = clock_span_hours(timing.get("start_time"), timing.get("end_time"))
        if hours is not None and hours > 0:
            total += hours
    return total


def bay_working_days(bay: Mapping[str, Any]) -> int:
    timings = bay.get("bay_timings")
    if not isinstance(timings, list):
        return 0
    return sum(
        1 for timing in timings
        if isinstance(timing, Mapping) and as_bool(timing.get("is_working_day"))
    )


def holiday_hours(holiday: Mapping[str, Any], default_hours: float) -> float:
    """
    Hours lost to a holiday.

    A holiday without valid times, or whose end is not after its start,
    counts `default_hours`.
    """
    hours = clock_span_hours(holiday.get("start_time"), holiday.get("end_time"))
    if hours is None or hours <= 0:
        return default_hours
    return hours


def environment_status(integration: Mapping[str, Any], name: str) -> Tuple[bool, int]:
    """
    (is_active, configuration key count) for one integration environment.

    Missing environments and non-mapping values count as inactive and
    unconfigured.
    """
    environments = integration.get("environments")
    if not isinstance(environments, Mapping):
        return False, 0
    env = environments.get(name)
    if not isinstance(env, Mapping):
        return False, 0
    return as_bool(env.get("is_active")), config_key_count(env.get("configuration"))


def has_text(value: Any) -> bool:
    """True for a non-blank string."""
    return isinstance(value, str) and value.strip() != ""


def count_where(items: Iterable[Any], predicate) -> int:
    return sum(1 for item in items if predicate(item))
