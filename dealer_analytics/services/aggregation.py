"""
Aggregation Pipeline Composer and Stage Executor

Every report describes what it wants as an AggregationRequest: a source
entity, optional joins, group keys and accumulators, and optional unwind,
filter, rollup, sort and limit steps. compose_pipeline() validates the request
against the entity registry and the caller's ScopeFilter and produces an
ordered Pipeline. The repository then executes it.

Stage Order:
1. TenantMatch: company_id == scope.tenant_id (pushed down to the store and
   re-asserted in process)
2. Lookup: one per JoinSpec, attaching the related document(s) under an alias
3. ScopeMatch: dealership set and inclusive date range on the joined record
4. Unwind: one record per element of an array field
5. Filter: report-specific predicate
6. Group: raw accumulators per group key
7. Rollup: re-group finer rows to coarser keys, keeping a breakdown array
8. Sort: stable multi-key sort, None last
9. Limit

Validation Rules (ConfigurationError, fail fast):
- Every FieldPath root must be a registered field of the source entity or a
  declared join alias; a join alias's next segment must be a registered field
  of the joined entity. Paths below a registered field are opaque.
- Joins must name a known entity, use a unique alias and reference known
  fields.
- Non-count accumulators need a field or a value callable.
- Group key, metric and breakdown names must not collide.

Heterogeneous Data (never crashes the executor):
- Numeric accumulators skip non-numeric values
- Lists and dicts are frozen before being used as group keys
- Mixed-type values are ordered by a fixed type rank

Example:
    >>> request = AggregationRequest(
    ...     source=EntityType.VEHICLE,
    ...     group_keys=("vehicle_type", "status"),
    ...     metrics=(MetricSpec("count", AccumulatorOp.COUNT),),
    ...     rollup=RollupSpec(
    ...         keys=("vehicle_type",),
    ...         metrics=(MetricSpec("total", AccumulatorOp.SUM, field="count"),),
    ...         breakdown_field="statusBreakdown",
    ...         breakdown_keys=("status", "count"),
    ...     ),
    ... )
    >>> rows = await run_aggregation(repository, scope, request)
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np

from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.models.enums import AccumulatorOp, EntityType
from dealer_analytics.models.schemas import DateRange, ScopeFilter
from dealer_analytics.services.entities import (
    ENTITY_SCHEMAS,
    EntitySchema,
    JoinSpec,
    coerce_datetime,
    id_of,
)


logger = logging.getLogger(__name__)


TENANT_FIELD = "company_id"

_SEGMENT_PATTERN = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_]*|\d+)$")
_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Record = Dict[str, Any]
Predicate = Callable[[Mapping[str, Any]], bool]
ValueFn = Callable[[Mapping[str, Any]], Any]


# =============================================================================
# Request Data Classes
# =============================================================================

@dataclass(frozen=True)
class GroupKey:
    """
    One grouping dimension.

    Either `path` (a FieldPath on the record) or `value` (a callable computing
    the key from the record) must be given.
    """
    name: str
    path: Optional[str] = None
    value: Optional[ValueFn] = None


@dataclass(frozen=True)
class MetricSpec:
    """
    One raw accumulator computed per group.

    Attributes:
        name: Output column name.
        op: Accumulator operation.
        field: FieldPath the accumulator reads.
        value: Callable computing the accumulated value from the record.
        where: Only records satisfying this predicate contribute.
    """
    name: str
    op: Union[AccumulatorOp, str]
    field: Optional[str] = None
    value: Optional[ValueFn] = None
    where: Optional[Predicate] = None


@dataclass(frozen=True)
class RollupSpec:
    """
    Multi-level re-group of finer group rows.

    `keys` must be a subset of the request's group key names. `metrics` read
    columns of the finer rows. Each coarser row keeps the finer rows,
    projected to `breakdown_keys`, under `breakdown_field`.
    """
    keys: Tuple[str, ...]
    metrics: Tuple[MetricSpec, ...] = ()
    breakdown_field: str = "breakdown"
    breakdown_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SortKey:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class UnwindSpec:
    """Expand an array field into one record per element."""
    path: str
    preserve_empty: bool = False


@dataclass(frozen=True)
class ScopeFields:
    """
    Where the scope filter applies on the (joined) record.

    A None field disables that dimension for entities that do not carry it.
    """
    dealership_field: Optional[str] = None
    timestamp_field: Optional[str] = None


@dataclass(frozen=True)
class AggregationRequest:
    """
    Declarative description of one aggregation.

    `scope` defaults to the source entity's registered dealership and
    timestamp fields; any join the registry declares for reaching a scoping
    field is added automatically.
    """
    source: EntityType
    group_keys: Tuple[Union[str, GroupKey], ...] = ()
    metrics: Tuple[MetricSpec, ...] = ()
    joins: Tuple[JoinSpec, ...] = ()
    scope: Optional[ScopeFields] = None
    unwind: Optional[UnwindSpec] = None
    where: Optional[Predicate] = None
    rollup: Optional[RollupSpec] = None
    sort: Tuple[SortKey, ...] = ()
    limit: Optional[int] = None

    @property
    def sources(self) -> Tuple[EntityType, ...]:
        """Source entity followed by every joined entity."""
        return (self.source,) + tuple(join.entity for join in self.joins)


# =============================================================================
# Pipeline Stages
# =============================================================================

@dataclass(frozen=True)
class LookupStage:
    join: JoinSpec


@dataclass(frozen=True)
class ScopeMatchStage:
    dealership_ids: Optional[FrozenSet[str]]
    dealership_field: Optional[str]
    date_range: Optional[DateRange]
    timestamp_field: Optional[str]


@dataclass(frozen=True)
class UnwindStage:
    spec: UnwindSpec


@dataclass(frozen=True)
class FilterStage:
    predicate: Predicate


@dataclass(frozen=True)
class GroupStage:
    keys: Tuple[GroupKey, ...]
    metrics: Tuple[MetricSpec, ...]


@dataclass(frozen=True)
class RollupStage:
    spec: RollupSpec


@dataclass(frozen=True)
class SortStage:
    keys: Tuple[SortKey, ...]


@dataclass(frozen=True)
class LimitStage:
    count: int


Stage = Union[
    LookupStage, ScopeMatchStage, UnwindStage, FilterStage,
    GroupStage, RollupStage, SortStage, LimitStage,
]


@dataclass
class Pipeline:
    """
    Validated, ordered stage list for one aggregation.

    The tenant match is carried as `tenant_id` so repositories can push it
    down to the store.
    """
    source: EntityType
    tenant_id: str
    stages: List[Stage] = field(default_factory=list)

    @property
    def lookups(self) -> List[JoinSpec]:
        return [stage.join for stage in self.stages if isinstance(stage, LookupStage)]

    @property
    def entities(self) -> List[EntityType]:
        """Every entity the pipeline reads, source first, without duplicates."""
        seen: List[EntityType] = [self.source]
        for join in self.lookups:
            if join.entity not in seen:
                seen.append(join.entity)
        return seen


# =============================================================================
# Field Path Helpers
# =============================================================================

def split_path(path: str) -> List[str]:
    """
    Split and syntax-check a dotted FieldPath.

    Raises:
        ConfigurationError: If the path is empty or a segment is malformed.
    """
    if not isinstance(path, str) or not path:
        raise ConfigurationError(f"Invalid field path: {path!r}")
    segments = path.split(".")
    for segment in segments:
        if not _SEGMENT_PATTERN.match(segment):
            raise ConfigurationError(f"Invalid field path segment {segment!r} in {path!r}")
    if segments[0].isdigit():
        raise ConfigurationError(f"Field path must start with a field name: {path!r}")
    return segments


def resolve_path(record: Any, path: str) -> Any:
    """
    Read a dotted path from a nested document.

    Numeric segments index into arrays. A name segment applied to an array
    collects that field from every element that has it. Missing values
    resolve to None.
    """
    current = record
    for segment in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, (list, tuple)):
            if segment.isdigit():
                index = int(segment)
                current = current[index] if index < len(current) else None
            else:
                current = [
                    item.get(segment) for item in current
                    if isinstance(item, Mapping) and item.get(segment) is not None
                ]
        else:
            return None
    return current


def _assign_path(record: Mapping[str, Any], segments: Sequence[str], value: Any) -> Record:
    """Copy `record` with `value` written at `segments`, copying dicts along the way."""
    updated = dict(record)
    head = segments[0]
    if len(segments) == 1:
        updated[head] = value
        return updated
    child = record.get(head)
    updated[head] = _assign_path(child if isinstance(child, Mapping) else {}, segments[1:], value)
    return updated


def freeze(value: Any) -> Any:
    """Make a value hashable so it can be used as a group or set key."""
    if isinstance(value, Mapping):
        return tuple(sorted((str(k), freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, set):
        return tuple(sorted((freeze(v) for v in value), key=sort_key))
    return value


def _type_rank(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 5
    if isinstance(value, (int, float)):
        return 1
    if isinstance(value, str):
        return 2
    if isinstance(value, Mapping):
        return 3
    if isinstance(value, (list, tuple)):
        return 4
    if isinstance(value, (datetime, date)):
        return 6
    return 7


def sort_key(value: Any) -> Tuple[int, Any]:
    """
    Total ordering key across mixed types.

    Rank: None < numbers < strings < objects < arrays < booleans < dates.
    """
    rank = _type_rank(value)
    if rank == 1:
        number = float(value)
        return rank, number if not np.isnan(number) else float("-inf")
    if rank == 5:
        return rank, int(value)
    if rank == 6:
        return rank, coerce_datetime(value).timestamp()
    if rank in (2,):
        return rank, value
    if rank == 0:
        return rank, 0
    return rank, repr(freeze(value))


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return bool(np.isfinite(value))


# =============================================================================
# Composer
# =============================================================================

def _as_group_key(key: Union[str, GroupKey]) -> GroupKey:
    if isinstance(key, GroupKey):
        return key
    if isinstance(key, str):
        return GroupKey(name=key.replace(".", "_"), path=key)
    raise ConfigurationError(f"Invalid group key: {key!r}")


def _as_op(spec: MetricSpec) -> AccumulatorOp:
    try:
        return AccumulatorOp(spec.op)
    except ValueError:
        raise ConfigurationError(
            f"Unknown accumulator '{spec.op}' for metric '{spec.name}'"
        )


class _PathValidator:
    """Checks FieldPaths against the source schema and declared join aliases."""

    def __init__(self, source: EntitySchema) -> None:
        self.source = source
        self.aliases: Dict[str, EntitySchema] = {}

    def add_alias(self, join: JoinSpec) -> None:
        try:
            target = ENTITY_SCHEMAS[EntityType(join.entity)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Join '{join.alias}' targets unknown entity {join.entity!r}")
        if not isinstance(join.alias, str) or not _NAME_PATTERN.match(join.alias):
            raise ConfigurationError(f"Invalid join alias: {join.alias!r}")
        if join.alias in self.aliases:
            raise ConfigurationError(f"Duplicate join alias '{join.alias}'")
        if join.alias in self.source.fields:
            raise ConfigurationError(
                f"Join alias '{join.alias}' shadows a field of {self.source.entity.value}"
            )
        self.check(join.local_field, f"join '{join.alias}' local field")
        self.check_on(target, join.foreign_field, f"join '{join.alias}' foreign field")
        if join.dealership_field is not None:
            self.check_on(target, join.dealership_field, f"join '{join.alias}' dealership field")
        self.aliases[join.alias] = target

    def check(self, path: str, context: str) -> None:
        segments = split_path(path)
        root = segments[0]
        if root in self.aliases:
            if len(segments) > 1 and segments[1] not in self.aliases[root].fields:
                raise ConfigurationError(
                    f"Unknown field '{segments[1]}' on join '{root}' in {context}: {path}"
                )
            return
        if root not in self.source.fields:
            raise ConfigurationError(
                f"Unknown field '{root}' on {self.source.entity.value} in {context}: {path}"
            )

    @staticmethod
    def check_on(schema: EntitySchema, path: str, context: str) -> None:
        segments = split_path(path)
        if segments[0] not in schema.fields:
            raise ConfigurationError(
                f"Unknown field '{segments[0]}' on {schema.entity.value} in {context}: {path}"
            )


def _check_name(name: Any, context: str) -> None:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise ConfigurationError(f"Invalid {context} name: {name!r}")


def _path_root(path: Optional[str]) -> Optional[str]:
    return path.split(".", 1)[0] if path else None


def _referenced_roots(request: AggregationRequest, scope_fields: ScopeFields) -> set:
    paths: List[Optional[str]] = [
        scope_fields.dealership_field,
        scope_fields.timestamp_field,
        request.unwind.path if request.unwind else None,
    ]
    paths.extend(key.path for key in map(_as_group_key, request.group_keys))
    paths.extend(metric.field for metric in request.metrics)
    paths.extend(join.local_field for join in request.joins)
    return {_path_root(path) for path in paths if path}


def _validate_metrics(
    metrics: Sequence[MetricSpec],
    check_field: Callable[[str, str], None],
    taken: set,
) -> None:
    for metric in metrics:
        _check_name(metric.name, "metric")
        op = _as_op(metric)
        if metric.field is not None and metric.value is not None:
            raise ConfigurationError(f"Metric '{metric.name}' declares both field and value")
        if op is not AccumulatorOp.COUNT and metric.field is None and metric.value is None:
            raise ConfigurationError(f"Metric '{metric.name}' ({op.value}) has no field or value")
        if metric.field is not None:
            check_field(metric.field, f"metric '{metric.name}'")
        if metric.name in taken:
            raise ConfigurationError(f"Duplicate output name '{metric.name}'")
        taken.add(metric.name)


def compose_pipeline(scope: ScopeFilter, request: AggregationRequest) -> Pipeline:
    """
    Validate an AggregationRequest and build its ordered Pipeline.

    Args:
        scope: Effective scope from the scope builder.
        request: Report-specific aggregation description.

    Returns:
        Pipeline: Stages in execution order, tenant carried for pushdown.

    Raises:
        ConfigurationError: If any path, join, metric, rollup or sort is
            wired incorrectly.
    """
    try:
        source = EntityType(request.source)
    except ValueError:
        raise ConfigurationError(f"Unknown source entity {request.source!r}")
    schema = ENTITY_SCHEMAS[source]

    scope_fields = request.scope or ScopeFields(
        dealership_field=schema.dealership_field,
        timestamp_field=schema.timestamp_field,
    )

    # Registry joins needed to reach a scoping field on a related entity
    declared = {join.alias for join in request.joins}
    roots = _referenced_roots(request, scope_fields)
    joins = [
        join for join in schema.scope_joins
        if join.alias in roots and join.alias not in declared
    ] + list(request.joins)

    validator = _PathValidator(schema)
    stages: List[Stage] = []
    for join in joins:
        validator.add_alias(join)
        stages.append(LookupStage(join=join))

    if scope_fields.dealership_field:
        validator.check(scope_fields.dealership_field, "scope dealership field")
    if scope_fields.timestamp_field:
        validator.check(scope_fields.timestamp_field, "scope timestamp field")
    stages.append(ScopeMatchStage(
        dealership_ids=scope.dealership_ids,
        dealership_field=scope_fields.dealership_field,
        date_range=scope.date_range,
        timestamp_field=scope_fields.timestamp_field,
    ))

    if request.unwind is not None:
        validator.check(request.unwind.path, "unwind")
        stages.append(UnwindStage(spec=request.unwind))

    if request.where is not None:
        if not callable(request.where):
            raise ConfigurationError("Filter predicate must be callable")
        stages.append(FilterStage(predicate=request.where))

    group_keys = tuple(_as_group_key(key) for key in request.group_keys)
    columns: set = set()
    for key in group_keys:
        _check_name(key.name, "group key")
        if (key.path is None) == (key.value is None):
            raise ConfigurationError(f"Group key '{key.name}' needs exactly one of path or value")
        if key.path is not None:
            validator.check(key.path, f"group key '{key.name}'")
        if key.name in columns:
            raise ConfigurationError(f"Duplicate group key '{key.name}'")
        columns.add(key.name)
    _validate_metrics(request.metrics, validator.check, columns)
    stages.append(GroupStage(keys=group_keys, metrics=tuple(request.metrics)))

    if request.rollup is not None:
        columns = _validate_rollup(request.rollup, group_keys, columns)
        stages.append(RollupStage(spec=request.rollup))

    for sort in request.sort:
        if sort.field not in columns:
            raise ConfigurationError(f"Sort field '{sort.field}' is not an output column")
    if request.sort:
        stages.append(SortStage(keys=tuple(request.sort)))

    if request.limit is not None:
        if isinstance(request.limit, bool) or not isinstance(request.limit, int) or request.limit < 0:
            raise ConfigurationError(f"Invalid limit: {request.limit!r}")
        stages.append(LimitStage(count=request.limit))

    return Pipeline(source=source, tenant_id=scope.tenant_id, stages=stages)


def _validate_rollup(
    rollup: RollupSpec,
    group_keys: Sequence[GroupKey],
    fine_columns: set,
) -> set:
    key_names = {key.name for key in group_keys}
    for key in rollup.keys:
        if key not in key_names:
            raise ConfigurationError(f"Rollup key '{key}' is not a group key")

    def check_column(path: str, context: str) -> None:
        if split_path(path)[0] not in fine_columns:
            raise ConfigurationError(f"Unknown column in {context}: {path}")

    for column in rollup.breakdown_keys:
        if column not in fine_columns:
            raise ConfigurationError(f"Unknown column in rollup breakdown: {column}")

    coarse_columns = set(rollup.keys)
    _validate_metrics(rollup.metrics, check_column, coarse_columns)
    _check_name(rollup.breakdown_field, "breakdown field")
    if rollup.breakdown_field in coarse_columns:
        raise ConfigurationError(f"Duplicate output name '{rollup.breakdown_field}'")
    coarse_columns.add(rollup.breakdown_field)
    return coarse_columns


# =============================================================================
# Stage Executors
# =============================================================================

def _join_keys(value: Any) -> List[str]:
    """Normalized join keys for a local or foreign value (arrays expand)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        keys: List[str] = []
        for item in value:
            keys.extend(_join_keys(item))
        return keys
    key = id_of(value)
    return [key] if key is not None else []


def _in_dealerships(value: Any, dealership_ids: FrozenSet[str]) -> bool:
    """A list-valued field matches on any overlap; None never matches."""
    return any(key in dealership_ids for key in _join_keys(value))


def _run_lookup(
    records: List[Record],
    join: JoinSpec,
    foreign_documents: Iterable[Mapping[str, Any]],
    dealership_ids: Optional[FrozenSet[str]],
) -> List[Record]:
    index: Dict[str, List[Mapping[str, Any]]] = {}
    for document in foreign_documents:
        if dealership_ids is not None and join.dealership_field:
            if not _in_dealerships(resolve_path(document, join.dealership_field), dealership_ids):
                continue
        for key in _join_keys(resolve_path(document, join.foreign_field)):
            index.setdefault(key, []).append(document)

    joined: List[Record] = []
    for record in records:
        matches: List[Mapping[str, Any]] = []
        seen_ids = set()
        for key in _join_keys(resolve_path(record, join.local_field)):
            for document in index.get(key, ()):
                if id(document) not in seen_ids:
                    seen_ids.add(id(document))
                    matches.append(document)
        attached = matches if join.many else (matches[0] if matches else None)
        joined.append({**record, join.alias: attached})
    return joined


def _run_scope_match(records: List[Record], stage: ScopeMatchStage) -> List[Record]:
    kept = records
    if stage.dealership_ids is not None and stage.dealership_field:
        kept = [
            record for record in kept
            if _in_dealerships(resolve_path(record, stage.dealership_field), stage.dealership_ids)
        ]
    if stage.date_range is not None and stage.timestamp_field:
        in_range = []
        for record in kept:
            moment = coerce_datetime(resolve_path(record, stage.timestamp_field))
            if moment is not None and stage.date_range.contains(moment):
                in_range.append(record)
        kept = in_range
    return kept


def _run_unwind(records: List[Record], spec: UnwindSpec) -> List[Record]:
    segments = spec.path.split(".")
    unwound: List[Record] = []
    for record in records:
        value = resolve_path(record, spec.path)
        if isinstance(value, (list, tuple)) and value:
            unwound.extend(_assign_path(record, segments, element) for element in value)
        elif isinstance(value, (list, tuple)) or value is None:
            if spec.preserve_empty:
                unwound.append(_assign_path(record, segments, None))
        else:
            unwound.append(record)
    return unwound


def _metric_value(metric: MetricSpec, record: Mapping[str, Any]) -> Any:
    if metric.value is not None:
        return metric.value(record)
    if metric.field is not None:
        return resolve_path(record, metric.field)
    return None


def accumulate(metric: MetricSpec, records: Sequence[Mapping[str, Any]]) -> Any:
    """Compute one accumulator over a group of records."""
    op = AccumulatorOp(metric.op)
    contributing = [r for r in records if metric.where is None or metric.where(r)]

    if op is AccumulatorOp.COUNT:
        if metric.field is None and metric.value is None:
            return len(contributing)
        return sum(1 for r in contributing if _metric_value(metric, r) is not None)

    values = [_metric_value(metric, r) for r in contributing]

    if op is AccumulatorOp.SUM:
        return sum(v for v in values if _is_number(v))
    if op is AccumulatorOp.AVG:
        numbers = [v for v in values if _is_number(v)]
        return float(np.mean(numbers)) if numbers else None
    if op in (AccumulatorOp.MIN, AccumulatorOp.MAX):
        present = [v for v in values if v is not None]
        if not present:
            return None
        chooser = min if op is AccumulatorOp.MIN else max
        return chooser(present, key=sort_key)
    if op is AccumulatorOp.ADD_TO_SET:
        distinct: Dict[Any, Any] = {}
        for value in values:
            if value is not None:
                distinct.setdefault(freeze(value), value)
        return list(distinct.values())
    if op is AccumulatorOp.FIRST:
        return next((v for v in values if v is not None), None)

    raise ConfigurationError(f"Unsupported accumulator '{op.value}'")


def _group(
    records: Sequence[Mapping[str, Any]],
    keys: Sequence[GroupKey],
    metrics: Sequence[MetricSpec],
) -> List[Record]:
    if not records:
        return []

    groups: Dict[Tuple[Any, ...], Tuple[Tuple[Any, ...], List[Mapping[str, Any]]]] = {}
    for record in records:
        raw = tuple(
            key.value(record) if key.value is not None else resolve_path(record, key.path)
            for key in keys
        )
        frozen = tuple(freeze(value) for value in raw)
        if frozen not in groups:
            groups[frozen] = (raw, [])
        groups[frozen][1].append(record)

    rows: List[Record] = []
    for raw, members in groups.values():
        row: Record = {key.name: value for key, value in zip(keys, raw)}
        for metric in metrics:
            row[metric.name] = accumulate(metric, members)
        rows.append(row)
    return rows


def _run_rollup(rows: List[Record], spec: RollupSpec) -> List[Record]:
    keys = [GroupKey(name=name, path=name) for name in spec.keys]
    rolled = _group(rows, keys, spec.metrics)
    if not rolled:
        return []

    breakdown_keys = spec.breakdown_keys
    buckets: Dict[Tuple[Any, ...], List[Record]] = {}
    for row in rows:
        bucket = tuple(freeze(row.get(name)) for name in spec.keys)
        if breakdown_keys:
            projected = {name: row.get(name) for name in breakdown_keys}
        else:
            projected = {k: v for k, v in row.items() if k not in spec.keys}
        buckets.setdefault(bucket, []).append(projected)

    for coarse in rolled:
        bucket = tuple(freeze(coarse.get(name)) for name in spec.keys)
        coarse[spec.breakdown_field] = buckets.get(bucket, [])
    return rolled


def _run_sort(rows: List[Record], keys: Sequence[SortKey]) -> List[Record]:
    ordered = list(rows)
    # Least significant key first; list.sort is stable, even with reverse=True
    for key in reversed(keys):
        present = [row for row in ordered if row.get(key.field) is not None]
        missing = [row for row in ordered if row.get(key.field) is None]
        present.sort(key=lambda row: sort_key(row[key.field]), reverse=key.descending)
        ordered = present + missing
    return ordered


def execute_pipeline(
    pipeline: Pipeline,
    documents: Iterable[Mapping[str, Any]],
    join_documents: Optional[Mapping[EntityType, Iterable[Mapping[str, Any]]]] = None,
) -> List[Record]:
    """
    Run a composed pipeline over already-fetched documents.

    Args:
        pipeline: Output of compose_pipeline().
        documents: Source entity documents (tenant-filtered by the store).
        join_documents: Documents of each joined entity, keyed by entity.

    Returns:
        List of flat result rows: group key values plus accumulators, and a
        breakdown list when a rollup is declared.
    """
    join_documents = join_documents or {}
    tenant_id = pipeline.tenant_id

    def same_tenant(docs: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        return [doc for doc in docs if id_of(doc.get(TENANT_FIELD)) == tenant_id]

    scope_stage = next(
        (stage for stage in pipeline.stages if isinstance(stage, ScopeMatchStage)),
        None,
    )
    dealership_ids = scope_stage.dealership_ids if scope_stage else None

    records: List[Any] = [dict(doc) for doc in same_tenant(documents)]
    for stage in pipeline.stages:
        if isinstance(stage, LookupStage):
            foreign = same_tenant(join_documents.get(stage.join.entity, ()))
            records = _run_lookup(records, stage.join, foreign, dealership_ids)
        elif isinstance(stage, ScopeMatchStage):
            records = _run_scope_match(records, stage)
        elif isinstance(stage, UnwindStage):
            records = _run_unwind(records, stage.spec)
        elif isinstance(stage, FilterStage):
            records = [record for record in records if stage.predicate(record)]
        elif isinstance(stage, GroupStage):
            records = _group(records, stage.keys, stage.metrics)
        elif isinstance(stage, RollupStage):
            records = _run_rollup(records, stage.spec)
        elif isinstance(stage, SortStage):
            records = _run_sort(records, stage.keys)
        elif isinstance(stage, LimitStage):
            records = records[:stage.count]

    return records


async def run_aggregation(repository, scope: ScopeFilter, request: AggregationRequest) -> List[Record]:
    """
    Compose `request` under `scope` and execute it through `repository`.

    Raises:
        ConfigurationError: If the request is wired incorrectly.
        DatabaseError: If the store fails or times out.
    """
    pipeline = compose_pipeline(scope, request)
    rows = await repository.run_aggregation(pipeline)
    logger.debug(
        "Aggregation over %s for tenant %s produced %d rows",
        pipeline.source.value,
        scope.tenant_id,
        len(rows),
    )
    return rows


__all__ = [
    "AggregationRequest",
    "GroupKey",
    "JoinSpec",
    "MetricSpec",
    "Pipeline",
    "RollupSpec",
    "ScopeFields",
    "SortKey",
    "UnwindSpec",
    "accumulate",
    "compose_pipeline",
    "execute_pipeline",
    "freeze",
    "resolve_path",
    "run_aggregation",
    "sort_key",
    "split_path",
]
