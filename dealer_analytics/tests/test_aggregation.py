"""
Aggregation Pipeline Composer Tests

Covers:
- Stage ordering produced by compose_pipeline
- Configuration errors for mis-wired requests (unknown paths, duplicate
  names, bad limits, sort on unknown columns)
- Tenant and dealership isolation through joins and scope matching
- Accumulator semantics (count/sum/avg/min/max/addToSet/first)
- Unwind, rollup with breakdown, sort and limit
- Holiday hours from clock times
"""

from datetime import datetime, timezone

import pytest

from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.models.enums import AccumulatorOp, EntityType
from dealer_analytics.models.schemas import DateRange, ScopeFilter
from dealer_analytics.services.aggregation import (
    AggregationRequest,
    GroupKey,
    LimitStage,
    LookupStage,
    MetricSpec,
    RollupSpec,
    ScopeFields,
    ScopeMatchStage,
    SortKey,
    UnwindSpec,
    accumulate,
    compose_pipeline,
    resolve_path,
    run_aggregation,
)
from dealer_analytics.services.entities import JoinSpec, holiday_hours


TENANT_SCOPE = ScopeFilter(tenant_id="company-1")


def _metric(name, op, **kwargs):
    return MetricSpec(name, op, **kwargs)


# =============================================================================
# Composition
# =============================================================================

class TestComposePipeline:
    """Validation and stage layout of composed pipelines."""

    def test_scope_match_follows_lookups(self):
        pipeline = compose_pipeline(TENANT_SCOPE, AggregationRequest(
            source=EntityType.WORKSHOP_QUOTE,
            group_keys=("status",),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
        ))

        kinds = [type(stage) for stage in pipeline.stages]
        assert kinds[0] is LookupStage
        assert kinds[1] is ScopeMatchStage
        assert pipeline.stages[0].join.alias == "vehicle_record"
        assert pipeline.tenant_id == "company-1"

    def test_registry_join_added_only_once(self):
        join = JoinSpec("vehicle_record", EntityType.VEHICLE, "vehicle")

        pipeline = compose_pipeline(TENANT_SCOPE, AggregationRequest(
            source=EntityType.WORKSHOP_QUOTE,
            joins=(join,),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
        ))

        lookups = [stage.join.alias for stage in pipeline.stages if isinstance(stage, LookupStage)]
        assert lookups == ["vehicle_record"]

    def test_unknown_source_field_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown field 'colour'"):
            compose_pipeline(TENANT_SCOPE, AggregationRequest(
                source=EntityType.VEHICLE,
                group_keys=(GroupKey("colour", path="colour"),),
            ))

    def test_unknown_joined_field_raises(self):
        with pytest.raises(ConfigurationError, match="on join 'vehicle_record'"):
            compose_pipeline(TENANT_SCOPE, AggregationRequest(
                source=EntityType.WORKSHOP_QUOTE,
                group_keys=(GroupKey("colour", path="vehicle_record.colour"),),
            ))

    def test_metric_without_input_raises(self):
        with pytest.raises(ConfigurationError, match="has no field or value"):
            compose_pipeline(TENANT_SCOPE, AggregationRequest(
                source=EntityType.VEHICLE,
                metrics=(_metric("total", AccumulatorOp.SUM),),
            ))

    def test_duplicate_output_name_raises(self):
        with pytest.raises(ConfigurationError, match="Duplicate output name"):
            compose_pipeline(TENANT_SCOPE, AggregationRequest(
                source=EntityType.VEHICLE,
                group_keys=(GroupKey("status", path="status"),),
                metrics=(_metric("status", AccumulatorOp.COUNT),),
            ))

    def test_sort_on_unknown_column_raises(self):
        with pytest.raises(ConfigurationError, match="not an output column"):
            compose_pipeline(TENANT_SCOPE, AggregationRequest(
                source=EntityType.VEHICLE,
                group_keys=(GroupKey("status", path="status"),),
                sort=(SortKey("count"),),
            ))

    @pytest.mark.parametrize("limit", [-1, True, 2.5])
    def test_invalid_limit_raises(self, limit):
        with pytest.raises(ConfigurationError, match="Invalid limit"):
            compose_pipeline(TENANT_SCOPE, AggregationRequest(
                source=EntityType.VEHICLE,
                limit=limit,
            ))

    def test_group_key_needs_path_or_value(self):
        with pytest.raises(ConfigurationError, match="exactly one of path or value"):
            compose_pipeline(TENANT_SCOPE, AggregationRequest(
                source=EntityType.VEHICLE,
                group_keys=(GroupKey("status"),),
            ))

    def test_limit_stage_is_last(self):
        pipeline = compose_pipeline(TENANT_SCOPE, AggregationRequest(
            source=EntityType.VEHICLE,
            group_keys=(GroupKey("status", path="status"),),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
            sort=(SortKey("count", descending=True),),
            limit=5,
        ))

        assert isinstance(pipeline.stages[-1], LimitStage)


# =============================================================================
# Accumulators
# =============================================================================

class TestAccumulate:
    """Per-group accumulator semantics."""

    RECORDS = [
        {"price": 10, "make": "Toyota", "tags": {"a": 1}},
        {"price": None, "make": "Honda", "tags": {"a": 1}},
        {"price": 30, "make": "Toyota", "tags": {"b": 2}},
        {"price": "n/a", "make": None},
    ]

    def test_count_all_and_where(self):
        assert accumulate(_metric("n", AccumulatorOp.COUNT), self.RECORDS) == 4
        toyota = _metric("n", AccumulatorOp.COUNT, where=lambda r: r["make"] == "Toyota")
        assert accumulate(toyota, self.RECORDS) == 2

    def test_count_with_field_skips_missing(self):
        assert accumulate(_metric("n", AccumulatorOp.COUNT, field="price"), self.RECORDS) == 3

    def test_sum_ignores_non_numbers(self):
        assert accumulate(_metric("s", AccumulatorOp.SUM, field="price"), self.RECORDS) == 40

    def test_avg_of_numbers_only(self):
        assert accumulate(_metric("a", AccumulatorOp.AVG, field="price"), self.RECORDS) == pytest.approx(20.0)

    def test_avg_of_nothing_is_none(self):
        assert accumulate(_metric("a", AccumulatorOp.AVG, field="missing"), self.RECORDS) is None

    def test_min_max_handle_datetimes(self):
        records = [
            {"at": datetime(2024, 3, 1, tzinfo=timezone.utc)},
            {"at": datetime(2024, 1, 1, tzinfo=timezone.utc)},
            {"at": None},
        ]
        assert accumulate(_metric("m", AccumulatorOp.MIN, field="at"), records).month == 1
        assert accumulate(_metric("m", AccumulatorOp.MAX, field="at"), records).month == 3

    def test_add_to_set_is_distinct_even_for_objects(self):
        makes = accumulate(_metric("m", AccumulatorOp.ADD_TO_SET, field="make"), self.RECORDS)
        tags = accumulate(_metric("t", AccumulatorOp.ADD_TO_SET, field="tags"), self.RECORDS)

        assert makes == ["Toyota", "Honda"]
        assert tags == [{"a": 1}, {"b": 2}]

    def test_first_skips_missing(self):
        assert accumulate(_metric("f", AccumulatorOp.FIRST, field="price"), self.RECORDS[1:]) == 30


class TestResolvePath:

    def test_nested_and_indexed(self):
        doc = {"details": [{"price": 5}, {"price": 7}], "env": {"prod": {"on": True}}}

        assert resolve_path(doc, "details.1.price") == 7
        assert resolve_path(doc, "details.price") == [5, 7]
        assert resolve_path(doc, "env.prod.on") is True
        assert resolve_path(doc, "env.dev.on") is None


# =============================================================================
# Execution
# =============================================================================

@pytest.mark.asyncio
class TestRunAggregation:
    """End-to-end aggregation through the in-memory repository."""

    async def test_tenant_isolation(self, repository):
        rows = await run_aggregation(repository, TENANT_SCOPE, AggregationRequest(
            source=EntityType.VEHICLE,
            metrics=(_metric("count", AccumulatorOp.COUNT),),
        ))

        assert rows == [{"count": 3}]

    async def test_empty_input_yields_no_rows(self, empty_repository):
        rows = await run_aggregation(empty_repository, TENANT_SCOPE, AggregationRequest(
            source=EntityType.VEHICLE,
            metrics=(_metric("count", AccumulatorOp.COUNT),),
        ))

        assert rows == []

    @pytest.mark.scoping
    async def test_dealership_scope_through_join(self, repository):
        scope = ScopeFilter(tenant_id="company-1", dealership_ids=frozenset({"dealer-1"}))

        rows = await run_aggregation(repository, scope, AggregationRequest(
            source=EntityType.WORKSHOP_QUOTE,
            group_keys=(GroupKey("quoteId", path="_id"),),
        ))

        # quote-3 references a deleted vehicle: null dealership never matches
        assert [row["quoteId"] for row in rows] == ["quote-1"]

    async def test_dangling_join_kept_for_tenant_wide_caller(self, repository):
        rows = await run_aggregation(repository, TENANT_SCOPE, AggregationRequest(
            source=EntityType.WORKSHOP_QUOTE,
            group_keys=(GroupKey("dealershipId", path="vehicle_record.dealership_id"),),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
        ))

        by_dealership = {row["dealershipId"]: row["count"] for row in rows}
        assert by_dealership == {"dealer-1": 1, "dealer-2": 1, None: 1}

    async def test_date_range_uses_schema_timestamp(self, repository):
        scope = ScopeFilter(
            tenant_id="company-1",
            date_range=DateRange(
                start=datetime(2024, 4, 1, tzinfo=timezone.utc),
                end=datetime(2024, 4, 30, tzinfo=timezone.utc),
            ),
        )

        rows = await run_aggregation(repository, scope, AggregationRequest(
            source=EntityType.VEHICLE,
            group_keys=(GroupKey("vehicleId", path="_id"),),
        ))

        assert sorted(row["vehicleId"] for row in rows) == ["veh-2", "veh-3"]

    async def test_scope_fields_none_disables_scoping(self, repository):
        scope = ScopeFilter(
            tenant_id="company-1",
            dealership_ids=frozenset({"dealer-2"}),
            date_range=DateRange(start=datetime(2030, 1, 1, tzinfo=timezone.utc)),
        )

        rows = await run_aggregation(repository, scope, AggregationRequest(
            source=EntityType.VEHICLE,
            metrics=(_metric("count", AccumulatorOp.COUNT),),
            scope=ScopeFields(None, None),
        ))

        assert rows == [{"count": 3}]

    async def test_rollup_with_breakdown_sorted(self, repository):
        rows = await run_aggregation(repository, TENANT_SCOPE, AggregationRequest(
            source=EntityType.VEHICLE,
            group_keys=(GroupKey("type", path="vehicle_type"), GroupKey("status", path="status")),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
            rollup=RollupSpec(
                keys=("type",),
                metrics=(_metric("total", AccumulatorOp.SUM, field="count"),),
                breakdown_field="statusBreakdown",
                breakdown_keys=("status", "count"),
            ),
            sort=(SortKey("total", descending=True),),
        ))

        assert [row["type"] for row in rows] == ["inspection", "tradein"]
        assert rows[0]["total"] == 2
        assert {entry["status"] for entry in rows[0]["statusBreakdown"]} == {"completed", "pending"}

    async def test_unwind_then_group(self, repository):
        rows = await run_aggregation(repository, TENANT_SCOPE, AggregationRequest(
            source=EntityType.SERVICE_BAY,
            unwind=UnwindSpec("bay_holidays"),
            group_keys=(GroupKey("reason", path="bay_holidays.reason"),),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
            sort=(SortKey("reason"),),
        ))

        assert rows == [
            {"reason": "Maintenance", "count": 1},
            {"reason": "Public holiday", "count": 1},
        ]

    async def test_unwind_preserve_empty(self, repository):
        rows = await run_aggregation(repository, TENANT_SCOPE, AggregationRequest(
            source=EntityType.SERVICE_BAY,
            unwind=UnwindSpec("bay_holidays", preserve_empty=True),
            group_keys=(GroupKey("bayId", path="_id"),),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
        ))

        assert {row["bayId"]: row["count"] for row in rows} == {"bay-1": 2, "bay-2": 1}

    async def test_sort_and_limit(self, repository):
        rows = await run_aggregation(repository, TENANT_SCOPE, AggregationRequest(
            source=EntityType.VEHICLE,
            group_keys=(GroupKey("make", path="make"),),
            metrics=(_metric("count", AccumulatorOp.COUNT),),
            sort=(SortKey("count", descending=True),),
            limit=1,
        ))

        assert rows == [{"make": "Toyota", "count": 2}]

    async def test_many_join_with_dealership_filter(self, repository):
        scope = ScopeFilter(tenant_id="company-1", dealership_ids=frozenset({"dealer-1"}))
        join = JoinSpec(
            "members", EntityType.USER, "_id",
            foreign_field="group_permissions", many=True, dealership_field="dealership_ids",
        )

        rows = await run_aggregation(repository, scope, AggregationRequest(
            source=EntityType.GROUP_PERMISSION,
            joins=(join,),
            group_keys=(GroupKey("groupId", path="_id"),),
            metrics=(_metric("members", AccumulatorOp.FIRST, field="members"),),
        ))

        members = {row["groupId"]: row["members"] for row in rows}
        assert [user["_id"] for user in members["group-1"]] == ["user-1"]
        assert members["group-2"] == []


# =============================================================================
# Field Normalizers
# =============================================================================

class TestHolidayHours:
    """Hours a bay holiday removes from capacity."""

    def test_span_between_clock_times(self):
        assert holiday_hours({"start_time": "08:00", "end_time": "12:30"}, 8) == 4.5

    def test_missing_times_use_default(self):
        assert holiday_hours({"reason": "Public holiday"}, 8) == 8

    @pytest.mark.parametrize("start, end", [("12:00", "08:00"), ("09:00", "09:00"), ("9am", "17:00")])
    def test_inverted_empty_or_malformed_span_uses_default(self, start, end):
        assert holiday_hours({"start_time": start, "end_time": end}, 8) == 8
