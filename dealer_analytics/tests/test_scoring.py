"""
Composite Scoring Engine Tests

Covers:
- Weighted composite scores with percent, boolean and range scales
- Degenerate inputs (absent metrics, zero total weight) never raise
- Band validation and classification
- Threshold rule tables and ordered rating tables
- Band tables used by the reports cover every score exactly once
"""

import pytest

from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.models.enums import Comparator, ScaleKind
from dealer_analytics.reports import cost_configuration, group_permissions, integrations, service_bays, workflows
from dealer_analytics.services.scoring import (
    BOOLEAN_SCALE,
    Band,
    CompositeScoreDefinition,
    MetricScale,
    RatingRule,
    ScoreInput,
    ThresholdRule,
    classify_band,
    compute_composite_score,
    evaluate_rules,
    first_matching_rating,
    range_scale,
    validate_bands,
)


BANDS = (Band(0, "Poor"), Band(50, "Fair"), Band(80, "Good"))


def _definition(*inputs, bands=BANDS):
    return CompositeScoreDefinition("test", tuple(inputs), bands)


# =============================================================================
# Composite Scores
# =============================================================================

class TestCompositeScore:
    """compute_composite_score() weighting, scaling and bounding."""

    def test_weighted_average(self):
        definition = _definition(ScoreInput("a", 0.4), ScoreInput("b", 0.6))

        result = compute_composite_score(definition, {"a": 100, "b": 0})

        assert result.score == 40
        assert result.band == "Poor"

    def test_weights_are_normalized(self):
        definition = _definition(ScoreInput("a", 40), ScoreInput("b", 60))

        assert compute_composite_score(definition, {"a": 100, "b": 100}).score == 100

    def test_boolean_inputs(self):
        definition = _definition(
            ScoreInput("active", 40, BOOLEAN_SCALE),
            ScoreInput("configured", 30, BOOLEAN_SCALE),
            ScoreInput("tested", 30, BOOLEAN_SCALE),
        )

        result = compute_composite_score(
            definition, {"active": True, "configured": "yes", "tested": False}
        )

        assert result.score == 70
        assert result.band == "Fair"

    def test_range_scale(self):
        definition = _definition(ScoreInput("hours", 1, range_scale(0, 40)))

        assert compute_composite_score(definition, {"hours": 30}).score == 75
        assert compute_composite_score(definition, {"hours": 80}).score == 100
        assert compute_composite_score(definition, {"hours": -5}).score == 0

    def test_degenerate_range_normalizes_to_zero(self):
        scale = MetricScale(ScaleKind.RANGE, 10, 10)

        assert scale.normalize(10) == 0.0

    def test_score_is_clamped(self):
        definition = _definition(ScoreInput("rate", 1))

        assert compute_composite_score(definition, {"rate": 250}).score == 100
        assert compute_composite_score(definition, {"rate": -20}).score == 0

    def test_absent_input_counts_as_zero(self):
        definition = _definition(ScoreInput("a", 1), ScoreInput("b", 1))

        result = compute_composite_score(definition, {"a": 80})

        assert result.score == 40

    def test_all_inputs_absent(self):
        definition = _definition(ScoreInput("a", 1))

        result = compute_composite_score(definition, {})

        assert result.score == 0
        assert result.band == "Poor"

    def test_zero_total_weight(self):
        definition = _definition(ScoreInput("a", 0), ScoreInput("b", 0))

        result = compute_composite_score(definition, {"a": 100, "b": 100})

        assert result.score == 0
        assert result.raw_score == 0.0
        assert result.band == "Poor"

    def test_band_uses_rounded_score(self):
        definition = _definition(ScoreInput("a", 1))

        result = compute_composite_score(definition, {"a": 49.6})

        assert result.score == 50
        assert result.raw_score == pytest.approx(49.6)
        assert result.band == "Fair"

    def test_digits(self):
        definition = _definition(ScoreInput("a", 1), ScoreInput("b", 2))

        result = compute_composite_score(definition, {"a": 100, "b": 0}, digits=2)

        assert result.score == 33.33

    def test_to_dict(self):
        definition = _definition(ScoreInput("a", 1))

        assert compute_composite_score(definition, {"a": 90}).to_dict() == {
            "score": 90, "band": "Good",
        }


class TestDefinitionValidation:
    """Definitions are checked when constructed."""

    def test_no_inputs(self):
        with pytest.raises(ConfigurationError, match="no inputs"):
            _definition()

    def test_negative_weight(self):
        with pytest.raises(ConfigurationError, match="invalid weight"):
            _definition(ScoreInput("a", -1))

    def test_no_bands(self):
        with pytest.raises(ConfigurationError, match="no bands"):
            _definition(ScoreInput("a", 1), bands=())

    def test_lowest_band_above_zero(self):
        with pytest.raises(ConfigurationError, match="must start at 0"):
            validate_bands([Band(10, "Low"), Band(50, "High")])

    def test_duplicate_minimum(self):
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            validate_bands([Band(0, "Low"), Band(50, "Mid"), Band(50, "High")])

    def test_minimum_above_hundred(self):
        with pytest.raises(ConfigurationError, match="must not exceed 100"):
            validate_bands([Band(0, "Low"), Band(101, "Impossible")])

    def test_bands_sorted_on_construction(self):
        definition = _definition(
            ScoreInput("a", 1),
            bands=(Band(80, "Good"), Band(0, "Poor"), Band(50, "Fair")),
        )

        assert [band.label for band in definition.bands] == ["Poor", "Fair", "Good"]


class TestClassifyBand:

    @pytest.mark.parametrize("score,label", [
        (0, "Poor"),
        (49.99, "Poor"),
        (50, "Fair"),
        (79, "Fair"),
        (80, "Good"),
        (100, "Good"),
    ])
    def test_boundaries(self, score, label):
        assert classify_band(score, BANDS) == label

    def test_non_numeric_score_is_lowest_band(self):
        assert classify_band(None, BANDS) == "Poor"


# =============================================================================
# Rule Tables
# =============================================================================

class TestThresholdRules:
    """evaluate_rules() emits messages in rule order."""

    RULES = (
        ThresholdRule("successRate", Comparator.LT, 50, "Low success rate"),
        ThresholdRule("failures", Comparator.GTE, 3, "Frequent failures"),
        ThresholdRule("executions", Comparator.EQ, 0, "Never executed"),
    )

    def test_firing_rules_in_order(self):
        values = {"successRate": 40, "failures": 3, "executions": 5}

        assert evaluate_rules(values, self.RULES) == ["Low success rate", "Frequent failures"]

    def test_boundary_is_exclusive_for_lt(self):
        assert evaluate_rules({"successRate": 50}, self.RULES) == []

    def test_absent_metric_never_fires(self):
        assert evaluate_rules({}, self.RULES) == []

    def test_eq_comparator(self):
        assert evaluate_rules({"executions": 0}, self.RULES) == ["Never executed"]

    @pytest.mark.parametrize("comparator,value,expected", [
        (Comparator.LT, 9, True),
        (Comparator.LTE, 10, True),
        (Comparator.GT, 10, False),
        (Comparator.GTE, 10, True),
        (Comparator.EQ, 10, True),
    ])
    def test_comparators(self, comparator, value, expected):
        rule = ThresholdRule("x", comparator, 10, "fired")

        assert rule.fires({"x": value}) is expected


class TestRatingTables:
    """first_matching_rating() picks the first row whose conditions hold."""

    TABLE = (
        RatingRule("Excellent", (
            ThresholdRule("successRate", Comparator.GTE, 95, ""),
            ThresholdRule("executions", Comparator.GTE, 10, ""),
        )),
        RatingRule("Good", (ThresholdRule("successRate", Comparator.GTE, 80, ""),)),
    )

    def test_first_match_wins(self):
        assert first_matching_rating(
            {"successRate": 99, "executions": 20}, self.TABLE, "Poor"
        ) == "Excellent"

    def test_all_conditions_must_hold(self):
        assert first_matching_rating(
            {"successRate": 99, "executions": 2}, self.TABLE, "Poor"
        ) == "Good"

    def test_default(self):
        assert first_matching_rating({"successRate": 10}, self.TABLE, "Poor") == "Poor"

    def test_row_without_conditions_always_matches(self):
        assert first_matching_rating({}, (RatingRule("Any"),), "Never") == "Any"


# =============================================================================
# Report Band Tables
# =============================================================================

REPORT_BAND_TABLES = {
    "service-bay capacity": service_bays.CAPACITY_BANDS,
    "service-bay holiday impact": service_bays.HOLIDAY_IMPACT_BANDS,
    "service-bay productivity": service_bays.PRODUCTIVITY_BANDS,
    "service-bay workload balance": service_bays.WORKLOAD_BALANCE_BANDS,
    "group-permission complexity": group_permissions.COMPLEXITY_BANDS,
    "group-permission effectiveness": group_permissions.EFFECTIVENESS_BANDS,
    "workflow reliability": workflows.RELIABILITY_SCORE.bands,
    "integration health": integrations.HEALTH_SCORE.bands,
    "integration type health": integrations.TYPE_HEALTH_SCORE.bands,
    "integration overall health": integrations.OVERALL_HEALTH_BANDS,
    "cost setter effectiveness": cost_configuration.SETTER_EFFECTIVENESS.bands,
    "cost setter health": cost_configuration.CONFIGURED_HEALTH,
    "currency diversity": cost_configuration.CURRENCY_DIVERSITY,
}


class TestReportBandTables:
    """Every score from 0 to 100 falls into exactly one band of each table."""

    @pytest.mark.parametrize("bands", list(REPORT_BAND_TABLES.values()), ids=list(REPORT_BAND_TABLES))
    def test_bands_cover_zero_to_hundred_without_overlap(self, bands):
        ordered = sorted(bands, key=lambda band: band.min_score)
        assert ordered[0].min_score == 0
        upper_bounds = [band.min_score for band in ordered[1:]] + [float("inf")]

        for step in range(201):
            score = step / 2
            matching = [
                band.label
                for band, upper in zip(ordered, upper_bounds)
                if band.min_score <= score < upper
            ]
            assert len(matching) == 1, score
            assert classify_band(score, bands) == matching[0]

    @pytest.mark.parametrize("bands", list(REPORT_BAND_TABLES.values()), ids=list(REPORT_BAND_TABLES))
    def test_labels_are_unique(self, bands):
        labels = [band.label for band in bands]

        assert len(labels) == len(set(labels))
