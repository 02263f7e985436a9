"""
Report Pipeline Services

Every report runs through the same stateless pipeline:

    scope -> aggregation -> metric derivation -> (scoring) -> envelope

Services:
- scope: ScopeFilter construction from caller identity and query parameters
- entities: entity registry and typed accessors for heterogeneous shapes
- aggregation: pipeline composer and in-process stage executor
- repository: injected repositories (in-memory, PostgreSQL)
- metrics: null-safe rates, half-up rounding, chained derivations
- scoring: composite scores, bands and threshold rule tables
- trends: pandas-based daily/monthly timelines and value-range buckets
- envelope: success and error response envelopes
"""

from dealer_analytics.services.scope import (
    build_scope_filter,
    is_tenant_wide,
    parse_date_range,
)

from dealer_analytics.services.entities import (
    ENTITY_SCHEMAS,
    EntitySchema,
    JoinSpec,
    config_key_count,
    flag_is_set,
    flag_stage_count,
    is_configured,
    parse_clock_hours,
)

from dealer_analytics.services.aggregation import (
    AggregationRequest,
    GroupKey,
    MetricSpec,
    Pipeline,
    RollupSpec,
    ScopeFields,
    SortKey,
    UnwindSpec,
    compose_pipeline,
    execute_pipeline,
    run_aggregation,
)

from dealer_analytics.services.repository import (
    InMemoryRepository,
    PostgresRepository,
    ReportRepository,
)

from dealer_analytics.services.metrics import (
    DerivedMetric,
    apply_derivations,
    derive_metrics,
    percentage,
    ratio,
    round_half_up,
    rounded_percentage,
)

from dealer_analytics.services.scoring import (
    Band,
    CompositeResult,
    CompositeScoreDefinition,
    MetricScale,
    ScoreInput,
    ThresholdRule,
    classify_band,
    compute_composite_score,
    evaluate_rules,
)

from dealer_analytics.services.trends import TrendFrequency, bucket_by_range, build_timeline

from dealer_analytics.services.envelope import (
    describe_scope,
    format_error_response,
    format_report_response,
)


__all__ = [
    # Scope
    'build_scope_filter',
    'is_tenant_wide',
    'parse_date_range',
    # Entities
    'ENTITY_SCHEMAS',
    'EntitySchema',
    'JoinSpec',
    'config_key_count',
    'flag_is_set',
    'flag_stage_count',
    'is_configured',
    'parse_clock_hours',
    # Aggregation
    'AggregationRequest',
    'GroupKey',
    'MetricSpec',
    'Pipeline',
    'RollupSpec',
    'ScopeFields',
    'SortKey',
    'UnwindSpec',
    'compose_pipeline',
    'execute_pipeline',
    'run_aggregation',
    # Repositories
    'InMemoryRepository',
    'PostgresRepository',
    'ReportRepository',
    # Metrics
    'DerivedMetric',
    'apply_derivations',
    'derive_metrics',
    'percentage',
    'ratio',
    'round_half_up',
    'rounded_percentage',
    # Scoring
    'Band',
    'CompositeResult',
    'CompositeScoreDefinition',
    'MetricScale',
    'ScoreInput',
    'ThresholdRule',
    'classify_band',
    'compute_composite_score',
    'evaluate_rules',
    # Trends
    'TrendFrequency',
    'bucket_by_range',
    'build_timeline',
    # Envelope
    'describe_scope',
    'format_error_response',
    'format_report_response',
]
