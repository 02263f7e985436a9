"""
Composite Scoring Engine

Combines weighted metrics into one bounded score, classifies it into a
qualitative band, and evaluates deterministic threshold rule tables that
produce issues and recommendations.

Score:
    score = clamp(sum(w_i / sum(w) * normalize_i(metric_i)), 0, 100)

Normalization scales:
- percent: the value is already on 0..100
- boolean: truthy -> 100, falsy -> 0
- range(min, max): linear map of [min, max] onto 0..100

Degenerate input never raises: an absent input contributes 0, and a zero
total weight (or all inputs absent) yields score 0 and the lowest band.

Bands are validated when a definition is constructed: at least one band, the
lowest starting at 0, minima strictly increasing and <= 100. Together these
guarantee every score in [0, 100] maps to exactly one band.

Each report keeps its own CompositeScoreDefinition; weight splits are not
shared between reports.
"""

import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.models.enums import Comparator, ScaleKind
from dealer_analytics.services.entities import as_bool
from dealer_analytics.services.metrics import round_half_up, to_finite


# =============================================================================
# Definitions
# =============================================================================

@dataclass(frozen=True)
class MetricScale:
    """Maps a metric's natural range onto 0..100."""
    kind: ScaleKind = ScaleKind.PERCENT
    minimum: float = 0.0
    maximum: float = 100.0

    def normalize(self, value: Any) -> Optional[float]:
        """Normalized value, or None when the metric is absent."""
        kind = ScaleKind(self.kind)
        if kind is ScaleKind.BOOLEAN:
            if value is None:
                return None
            return 100.0 if as_bool(value) else 0.0
        number = to_finite(value)
        if number is None:
            return None
        if kind is ScaleKind.RANGE:
            span = self.maximum - self.minimum
            if span <= 0:
                return 0.0
            number = (number - self.minimum) / span * 100
        return float(np.clip(number, 0.0, 100.0))


PERCENT_SCALE = MetricScale(ScaleKind.PERCENT)
BOOLEAN_SCALE = MetricScale(ScaleKind.BOOLEAN)


def range_scale(minimum: float, maximum: float) -> MetricScale:
    return MetricScale(ScaleKind.RANGE, minimum, maximum)


@dataclass(frozen=True)
class ScoreInput:
    metric: str
    weight: float
    scale: MetricScale = PERCENT_SCALE


@dataclass(frozen=True)
class Band:
    min_score: float
    label: str


@dataclass(frozen=True)
class CompositeScoreDefinition:
    """
    One named composite score.

    Args:
        name: Score name, used in error messages.
        inputs: Weighted, scaled metric inputs.
        bands: Band thresholds in any order.

    Raises:
        ConfigurationError: If inputs or bands are invalid.
    """
    name: str
    inputs: Tuple[ScoreInput, ...]
    bands: Tuple[Band, ...]

    def __post_init__(self) -> None:
        if not self.inputs:
            raise ConfigurationError(f"Composite score '{self.name}' has no inputs")
        for score_input in self.inputs:
            weight = to_finite(score_input.weight)
            if weight is None or weight < 0:
                raise ConfigurationError(
                    f"Composite score '{self.name}' has invalid weight "
                    f"{score_input.weight!r} for '{score_input.metric}'"
                )
            try:
                ScaleKind(score_input.scale.kind)
            except ValueError:
                raise ConfigurationError(
                    f"Composite score '{self.name}' has unknown scale for '{score_input.metric}'"
                )
        ordered = validate_bands(self.bands, self.name)
        # Stored ascending so classification is a simple scan
        object.__setattr__(self, "bands", ordered)

    @property
    def total_weight(self) -> float:
        return float(sum(score_input.weight for score_input in self.inputs))


def validate_bands(bands: Sequence[Band], name: str = "bands") -> Tuple[Band, ...]:
    """
    Check bands are contiguous and exhaustive over [0, 100].

    Returns:
        The bands sorted by ascending minimum.

    Raises:
        ConfigurationError: On an empty table, a lowest band above 0,
            duplicate or non-increasing minima, or a minimum above 100.
    """
    if not bands:
        raise ConfigurationError(f"'{name}' defines no bands")
    ordered = tuple(sorted(bands, key=lambda band: band.min_score))
    if ordered[0].min_score != 0:
        raise ConfigurationError(f"Lowest band of '{name}' must start at 0")
    for lower, upper in zip(ordered, ordered[1:]):
        if upper.min_score <= lower.min_score:
            raise ConfigurationError(f"Band minima of '{name}' must be strictly increasing")
    if ordered[-1].min_score > 100:
        raise ConfigurationError(f"Band minima of '{name}' must not exceed 100")
    return ordered


# =============================================================================
# Evaluation
# =============================================================================

@dataclass(frozen=True)
class CompositeResult:
    score: Union[int, float]
    raw_score: float
    band: str

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "band": self.band}


def classify_band(score: Any, bands: Sequence[Band]) -> str:
    """Label of the highest band whose minimum is <= score (lowest band if none)."""
    ordered = sorted(bands, key=lambda band: band.min_score)
    value = to_finite(score)
    label = ordered[0].label
    if value is None:
        return label
    for band in ordered:
        if value >= band.min_score:
            label = band.label
    return label


def compute_composite_score(
    definition: CompositeScoreDefinition,
    values: Mapping[str, Any],
    digits: int = 0,
) -> CompositeResult:
    """
    Compute a composite score from metric values.

    Args:
        definition: Score inputs and bands.
        values: Metric values keyed by input metric name.
        digits: Half-up rounding applied to the reported score.

    Returns:
        CompositeResult with the rounded score, the unrounded raw_score and
        the band of the rounded score.

    Example:
        >>> definition = CompositeScoreDefinition(
        ...     "example",
        ...     (ScoreInput("a", 0.4), ScoreInput("b", 0.6)),
        ...     (Band(0, "Low"), Band(50, "High")),
        ... )
        >>> compute_composite_score(definition, {"a": 100, "b": 0}).score
        40
    """
    total_weight = definition.total_weight
    if total_weight <= 0:
        return CompositeResult(
            score=round_half_up(0, digits),
            raw_score=0.0,
            band=definition.bands[0].label,
        )

    weighted = 0.0
    for score_input in definition.inputs:
        normalized = score_input.scale.normalize(values.get(score_input.metric))
        if normalized is None:
            continue
        weighted += (score_input.weight / total_weight) * normalized

    raw_score = float(np.clip(weighted, 0.0, 100.0)) if np.isfinite(weighted) else 0.0
    score = round_half_up(raw_score, digits)
    return CompositeResult(
        score=score,
        raw_score=raw_score,
        band=classify_band(score, definition.bands),
    )


# =============================================================================
# Threshold Rule Tables
# =============================================================================

_COMPARATORS: Dict[Comparator, Callable[[float, float], bool]] = {
    Comparator.LT: operator.lt,
    Comparator.LTE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GTE: operator.ge,
    Comparator.EQ: operator.eq,
}


@dataclass(frozen=True)
class ThresholdRule:
    """Fires `message` when `metric <comparator> threshold` holds."""
    metric: str
    comparator: Comparator
    threshold: float
    message: str

    def fires(self, values: Mapping[str, Any]) -> bool:
        value = to_finite(values.get(self.metric))
        if value is None:
            return False
        return _COMPARATORS[Comparator(self.comparator)](value, self.threshold)


def evaluate_rules(values: Mapping[str, Any], rules: Sequence[ThresholdRule]) -> List[str]:
    """Messages of every firing rule, in rule order. Absent metrics never fire."""
    return [rule.message for rule in rules if rule.fires(values)]


@dataclass(frozen=True)
class RatingRule:
    """One row of an ordered rating table: all conditions hold -> label."""
    label: str
    conditions: Tuple[ThresholdRule, ...] = field(default_factory=tuple)


def first_matching_rating(
    values: Mapping[str, Any],
    table: Sequence[RatingRule],
    default: str,
) -> str:
    """Label of the first row whose conditions all hold, else `default`."""
    for row in table:
        if all(condition.fires(values) for condition in row.conditions):
            return row.label
    return default


__all__ = [
    "BOOLEAN_SCALE",
    "Band",
    "CompositeResult",
    "CompositeScoreDefinition",
    "MetricScale",
    "PERCENT_SCALE",
    "RatingRule",
    "ScoreInput",
    "ThresholdRule",
    "classify_band",
    "compute_composite_score",
    "evaluate_rules",
    "first_matching_rating",
    "range_scale",
    "validate_bands",
]
