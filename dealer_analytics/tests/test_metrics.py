"""
Metric Derivation Engine Tests

Covers:
- Null-safe ratio / percentage (zero, negative, absent denominators)
- Half-up rounding at the output boundary
- Chained derived metrics evaluated in dependency order
- ConfigurationError on cycles, duplicates, shadowing and unknown references
"""

import math

import numpy as np
import pytest

from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.models.enums import DerivationOp
from dealer_analytics.services.metrics import (
    DerivedMetric,
    apply_derivations,
    derive_metrics,
    mean_or_zero,
    percentage,
    plan_derivations,
    ratio,
    round_half_up,
    rounded_percentage,
    to_finite,
)


# =============================================================================
# Scalar Helpers
# =============================================================================

class TestNullSafeDivision:
    """ratio() and percentage() never produce NaN, None or infinity."""

    def test_percentage(self):
        assert percentage(1, 4) == 25.0

    def test_ratio(self):
        assert ratio(3, 2) == 1.5

    @pytest.mark.parametrize("denominator", [0, -5, None, "ten", float("nan"), float("inf")])
    def test_degenerate_denominator_yields_zero(self, denominator):
        assert percentage(10, denominator) == 0.0
        assert ratio(10, denominator) == 0.0

    def test_non_numeric_numerator_counts_as_zero(self):
        assert percentage(None, 10) == 0.0
        assert ratio("n/a", 10) == 0.0

    def test_booleans_are_not_numbers(self):
        assert to_finite(True) is None
        assert ratio(1, True) == 0.0

    def test_numpy_scalars_are_accepted(self):
        assert to_finite(np.int64(4)) == 4.0
        assert percentage(np.float64(1), np.int64(2)) == 50.0


class TestRoundHalfUp:
    """Half away from zero, never banker's rounding."""

    def test_half_rounds_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4

    def test_half_rounds_away_from_zero_when_negative(self):
        assert round_half_up(-2.5) == -3

    def test_two_digits(self):
        assert round_half_up(0.125, 2) == 0.13
        assert round_half_up(66.666666, 2) == 66.67

    def test_zero_digits_returns_int(self):
        result = round_half_up(41.6)

        assert result == 42
        assert isinstance(result, int)

    def test_large_values_keep_their_magnitude(self):
        assert round_half_up(1e30, 2) == 1e30
        assert round_half_up(1e30) == 10 ** 30
        assert round_half_up(-2.5e20, 1) == -2.5e20

    def test_non_numeric_rounds_to_zero(self):
        assert round_half_up(None) == 0
        assert round_half_up(float("nan"), 1) == 0.0

    def test_rounded_percentage(self):
        assert rounded_percentage(1, 3) == 33
        assert rounded_percentage(2, 3, 2) == 66.67
        assert rounded_percentage(5, 0) == 0


class TestMeanOrZero:

    def test_mean_ignores_non_numbers(self):
        assert mean_or_zero([2, None, 4, "x"]) == 3.0

    def test_empty_is_zero(self):
        assert mean_or_zero([]) == 0.0
        assert mean_or_zero([None]) == 0.0


# =============================================================================
# Derived Metrics
# =============================================================================

class TestDeriveMetrics:
    """derive_metrics() over a single aggregate row."""

    def test_basic_percentage(self):
        result = derive_metrics(
            {"completed": 3, "total": 4},
            [DerivedMetric("completionRate", "completed", "total", rounding_digits=0)],
        )

        assert result == {"completionRate": 75}

    def test_all_operators(self):
        aggregates = {"a": 6, "b": 4}
        definitions = [
            DerivedMetric("pct", "a", "b", DerivationOp.PERCENTAGE),
            DerivedMetric("rat", "a", "b", DerivationOp.RATIO),
            DerivedMetric("diff", "a", "b", DerivationOp.DIFFERENCE),
            DerivedMetric("total", "a", "b", DerivationOp.SUM),
        ]

        assert derive_metrics(aggregates, definitions) == {
            "pct": 150.0, "rat": 1.5, "diff": 2.0, "total": 10.0,
        }

    def test_literal_operands(self):
        result = derive_metrics(
            {"hours": 30},
            [DerivedMetric("utilization", "hours", 40, rounding_digits=1)],
        )

        assert result == {"utilization": 75.0}

    def test_chain_defined_out_of_order(self):
        definitions = [
            DerivedMetric("margin", "gross_profit", "revenue", rounding_digits=1),
            DerivedMetric("gross_profit", "revenue", "cost", DerivationOp.DIFFERENCE),
        ]

        result = derive_metrics({"revenue": 200, "cost": 150}, definitions)

        assert result == {"margin": 25.0, "gross_profit": 50.0}
        # Output keeps declaration order
        assert list(result) == ["margin", "gross_profit"]

    def test_chained_inputs_are_unrounded(self):
        definitions = [
            DerivedMetric("third", 1, 3, DerivationOp.RATIO, rounding_digits=0),
            DerivedMetric("whole", "third", 3, DerivationOp.PERCENTAGE, rounding_digits=2),
        ]

        result = derive_metrics({}, definitions)

        assert result["third"] == 0
        # 0.3333.. / 3 * 100, not 0 / 3 * 100
        assert result["whole"] == 11.11

    def test_zero_denominator_in_chain(self):
        definitions = [
            DerivedMetric("rate", "done", "total", rounding_digits=0),
            DerivedMetric("gap", 100, "rate", DerivationOp.DIFFERENCE),
        ]

        assert derive_metrics({"done": 0, "total": 0}, definitions) == {"rate": 0, "gap": 100.0}

    def test_null_aggregate_counts_as_zero(self):
        result = derive_metrics(
            {"revenue": None, "cost": 10},
            [DerivedMetric("profit", "revenue", "cost", DerivationOp.DIFFERENCE)],
        )

        assert result == {"profit": -10.0}

    def test_results_are_finite(self):
        result = derive_metrics(
            {"a": 1e308, "b": 1e308},
            [DerivedMetric("big", "a", "b", DerivationOp.SUM)],
        )

        assert math.isfinite(result["big"])


class TestDerivationErrors:
    """Misconfigured definitions raise ConfigurationError."""

    def test_cycle(self):
        definitions = [
            DerivedMetric("a", "b", 1, DerivationOp.SUM),
            DerivedMetric("b", "a", 1, DerivationOp.SUM),
        ]

        with pytest.raises(ConfigurationError, match="Cyclic") as exc_info:
            plan_derivations(definitions)

        assert exc_info.value.details["cycle"][0] == exc_info.value.details["cycle"][-1]

    def test_self_reference_is_a_cycle(self):
        with pytest.raises(ConfigurationError):
            derive_metrics({}, [DerivedMetric("a", "a", 1, DerivationOp.SUM)])

    def test_duplicate_name(self):
        definitions = [DerivedMetric("a", 1, 1), DerivedMetric("a", 2, 1)]

        with pytest.raises(ConfigurationError, match="Duplicate"):
            derive_metrics({}, definitions)

    def test_shadowing_raw_aggregate(self):
        with pytest.raises(ConfigurationError, match="shadows"):
            derive_metrics({"total": 4}, [DerivedMetric("total", 1, 1, DerivationOp.SUM)])

    def test_unknown_reference(self):
        with pytest.raises(ConfigurationError, match="unknown 'missing'"):
            derive_metrics({"total": 4}, [DerivedMetric("rate", "missing", "total")])

    def test_unknown_operator(self):
        with pytest.raises(ConfigurationError):
            plan_derivations([DerivedMetric("a", 1, 1, "median")])

    def test_error_is_not_exposed(self):
        with pytest.raises(ConfigurationError) as exc_info:
            plan_derivations([DerivedMetric("", 1, 1)])

        assert exc_info.value.http_status == 500
        assert not exc_info.value.expose_message


class TestApplyDerivations:

    def test_rows_are_copied_and_enriched(self):
        rows = [{"done": 1, "total": 2}, {"done": 0, "total": 0}]

        result = apply_derivations(rows, [DerivedMetric("rate", "done", "total", rounding_digits=0)])

        assert [row["rate"] for row in result] == [50, 0]
        assert "rate" not in rows[0]
        assert result[0]["done"] == 1
