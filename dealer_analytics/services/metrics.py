"""
Metric Derivation Engine

Computes null-safe rates, ratios and chained derived metrics from the raw
aggregates produced by the group stage.

Formulas:
- percentage(n, d) = n / d * 100
- ratio(n, d)      = n / d
- difference(a, b) = a - b
- sum(a, b)        = a + b

Null Safety:
- A denominator that is absent, non-numeric or <= 0 yields 0, never NaN,
  None or infinity
- A non-numeric numerator counts as 0
- Any non-finite intermediate collapses to 0

Rounding:
- Half-up, applied once at the output boundary. Chained derivations always
  see unrounded inputs so rounding error does not compound.

Chaining:
- A derived metric may reference raw aggregates, literal numbers or other
  derived metrics. Definitions are evaluated in dependency order; a cycle,
  a duplicate name, an unknown reference or a name that shadows a raw
  aggregate raises ConfigurationError.

Example:
    >>> definitions = [
    ...     DerivedMetric("gross_profit", "revenue", "cost", DerivationOp.DIFFERENCE),
    ...     DerivedMetric("margin", "gross_profit", "revenue", rounding_digits=1),
    ... ]
    >>> derive_metrics({"revenue": 200, "cost": 150}, definitions)
    {'gross_profit': 50.0, 'margin': 25.0}
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.models.enums import DerivationOp


Operand = Union[str, int, float]


# =============================================================================
# Scalar Helpers
# =============================================================================

def to_finite(value: Any) -> Optional[float]:
    """Return `value` as a finite float, or None for anything else."""
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, np.integer, np.floating)):
        return None
    number = float(value)
    return number if np.isfinite(number) else None


def ratio(numerator: Any, denominator: Any) -> float:
    """numerator / denominator, or 0 when the denominator is absent or <= 0."""
    d = to_finite(denominator)
    if d is None or d <= 0:
        return 0.0
    n = to_finite(numerator) or 0.0
    result = n / d
    return result if np.isfinite(result) else 0.0


def percentage(numerator: Any, denominator: Any) -> float:
    """numerator / denominator * 100, or 0 when the denominator is absent or <= 0."""
    result = ratio(numerator, denominator) * 100
    return result if np.isfinite(result) else 0.0


def round_half_up(value: Any, digits: int = 0) -> Union[int, float]:
    """
    Round half away from zero to `digits` decimals.

    With digits=0 an int is returned. Non-numeric and non-finite input
    rounds to 0.

    Example:
        >>> round_half_up(2.5)
        3
        >>> round_half_up(0.125, 2)
        0.13
    """
    number = to_finite(value)
    if number is None:
        return 0 if digits == 0 else 0.0
    # quantize needs room for every integer digit plus the requested decimals
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(str(int(abs(number)))) + max(digits, 0) + 2)
        quantum = Decimal(1).scaleb(-digits)
        rounded = Decimal(repr(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    if digits == 0:
        return int(rounded)
    return float(rounded)


def rounded_percentage(numerator: Any, denominator: Any, digits: int = 0) -> Union[int, float]:
    """percentage() rounded half-up at the output boundary."""
    return round_half_up(percentage(numerator, denominator), digits)


def mean_or_zero(values: Iterable[Any]) -> float:
    """Mean of the finite numbers in `values`, 0 when there are none."""
    numbers = [n for n in (to_finite(v) for v in values) if n is not None]
    if not numbers:
        return 0.0
    return float(np.mean(numbers))


# =============================================================================
# Derived Metric Definitions
# =============================================================================

@dataclass(frozen=True)
class DerivedMetric:
    """
    One derived metric.

    Attributes:
        name: Output name.
        numerator: Raw aggregate name, derived metric name or literal number.
        denominator: Second operand (absent means 0 for percentage/ratio).
        op: Formula applied to the two operands.
        rounding_digits: Half-up rounding applied at output; None keeps the
            unrounded value.
    """
    name: str
    numerator: Operand
    denominator: Optional[Operand] = None
    op: DerivationOp = DerivationOp.PERCENTAGE
    rounding_digits: Optional[int] = None

    def references(self) -> List[str]:
        return [
            operand for operand in (self.numerator, self.denominator)
            if isinstance(operand, str)
        ]


def _apply(op: DerivationOp, a: Optional[float], b: Optional[float]) -> float:
    if op is DerivationOp.PERCENTAGE:
        return percentage(a, b)
    if op is DerivationOp.RATIO:
        return ratio(a, b)
    if op is DerivationOp.DIFFERENCE:
        result = (a or 0.0) - (b or 0.0)
    elif op is DerivationOp.SUM:
        result = (a or 0.0) + (b or 0.0)
    else:
        raise ConfigurationError(f"Unsupported derivation '{op}'")
    return result if np.isfinite(result) else 0.0


def plan_derivations(definitions: Sequence[DerivedMetric]) -> List[DerivedMetric]:
    """
    Validate definitions and return them in dependency order.

    Raises:
        ConfigurationError: On duplicate names, invalid operators or cycles.
    """
    by_name: Dict[str, DerivedMetric] = {}
    for definition in definitions:
        if not isinstance(definition.name, str) or not definition.name:
            raise ConfigurationError(f"Invalid derived metric name: {definition.name!r}")
        if definition.name in by_name:
            raise ConfigurationError(f"Duplicate derived metric '{definition.name}'")
        try:
            DerivationOp(definition.op)
        except ValueError:
            raise ConfigurationError(
                f"Unknown derivation '{definition.op}' for '{definition.name}'"
            )
        for operand in (definition.numerator, definition.denominator):
            if operand is not None and not isinstance(operand, str) and to_finite(operand) is None:
                raise ConfigurationError(
                    f"Invalid operand {operand!r} in derived metric '{definition.name}'"
                )
        by_name[definition.name] = definition

    ordered: List[DerivedMetric] = []
    state: Dict[str, str] = {}

    def visit(name: str, path: List[str]) -> None:
        if state.get(name) == "done":
            return
        if state.get(name) == "visiting":
            cycle = path[path.index(name):] + [name]
            raise ConfigurationError(
                f"Cyclic metric dependency: {' -> '.join(cycle)}",
                details={"cycle": cycle},
            )
        state[name] = "visiting"
        for dependency in by_name[name].references():
            if dependency in by_name:
                visit(dependency, path + [name])
        state[name] = "done"
        ordered.append(by_name[name])

    for definition in definitions:
        visit(definition.name, [])
    return ordered


def derive_metrics(
    aggregates: Mapping[str, Any],
    definitions: Sequence[DerivedMetric],
) -> Dict[str, Union[int, float]]:
    """
    Evaluate every derived metric against one set of raw aggregates.

    Args:
        aggregates: Raw aggregate values (e.g. one group row).
        definitions: Derived metric definitions, in any order.

    Returns:
        Dict of derived values keyed by name, rounded per definition.

    Raises:
        ConfigurationError: If definitions are cyclic, duplicated, shadow a
            raw aggregate or reference an unknown name.
    """
    ordered = plan_derivations(definitions)

    for definition in ordered:
        if definition.name in aggregates:
            raise ConfigurationError(
                f"Derived metric '{definition.name}' shadows a raw aggregate"
            )

    derived_names = {definition.name for definition in ordered}
    values: Dict[str, Optional[float]] = {}

    def operand_value(operand: Optional[Operand], owner: str) -> Optional[float]:
        if operand is None:
            return None
        if not isinstance(operand, str):
            return to_finite(operand)
        if operand in values:
            return values[operand]
        if operand in aggregates:
            return to_finite(aggregates[operand])
        if operand in derived_names:
            return None
        raise ConfigurationError(f"Derived metric '{owner}' references unknown '{operand}'")

    for definition in ordered:
        a = operand_value(definition.numerator, definition.name)
        b = operand_value(definition.denominator, definition.name)
        values[definition.name] = _apply(DerivationOp(definition.op), a, b)

    output: Dict[str, Union[int, float]] = {}
    for definition in definitions:
        value = values[definition.name]
        if definition.rounding_digits is None:
            output[definition.name] = value
        else:
            output[definition.name] = round_half_up(value, definition.rounding_digits)
    return output


def apply_derivations(
    rows: Iterable[Mapping[str, Any]],
    definitions: Sequence[DerivedMetric],
) -> List[Dict[str, Any]]:
    """Return copies of `rows`, each enriched with its derived metrics."""
    return [{**row, **derive_metrics(row, definitions)} for row in rows]


__all__ = [
    "DerivedMetric",
    "apply_derivations",
    "derive_metrics",
    "mean_or_zero",
    "percentage",
    "plan_derivations",
    "ratio",
    "round_half_up",
    "rounded_percentage",
    "to_finite",
]
