"""
Time-bucketed trend and value-range helpers.

Reports emit daily and monthly timelines (vehicle intake per month, quote
volume per month, workflow executions per day). Bucketing is done with
pandas: timestamps are parsed with pd.to_datetime(utc=True) and mapped to
calendar periods with dt.to_period().

Records whose timestamp is missing or unparsable are left out of every
bucket. Periods are returned in ascending order; within a period, groups
keep their first-appearance order.

Value ranges (cost, duration, response time and file size distributions) are
bucketed with pd.cut over half-open [lower, upper) intervals. Values outside
the boundaries, or missing, fall into a single named default bucket.
"""

from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from dealer_analytics.core.errors import ConfigurationError
from dealer_analytics.services.aggregation import resolve_path
from dealer_analytics.services.entities import coerce_datetime


class TrendFrequency(str, Enum):
    """Calendar bucket size; values are pandas period aliases."""
    DAILY = "D"
    MONTHLY = "M"


ValueFn = Callable[[Mapping[str, Any]], Any]


def _numeric_or_nan(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return np.nan
    if isinstance(value, (int, float)):
        return float(value)
    return np.nan


def build_timeline(
    records: Iterable[Mapping[str, Any]],
    timestamp: str,
    frequency: TrendFrequency = TrendFrequency.MONTHLY,
    sums: Optional[Mapping[str, ValueFn]] = None,
    means: Optional[Mapping[str, ValueFn]] = None,
    by: Optional[ValueFn] = None,
    by_name: str = "group",
) -> List[Dict[str, Any]]:
    """
    Bucket records into calendar periods.

    Args:
        records: Documents or result rows.
        timestamp: FieldPath of the timestamp to bucket on.
        frequency: Daily or monthly buckets.
        sums: Output name -> value extractor, summed per bucket.
        means: Output name -> value extractor, averaged per bucket
            (None when a bucket has no numeric values).
        by: Optional extractor for a secondary grouping key.
        by_name: Output name of the secondary key.

    Returns:
        Rows of {"period": "YYYY-MM" | "YYYY-MM-DD", [by_name], "count", ...}.

    Example:
        >>> build_timeline(quotes, "created_at", TrendFrequency.MONTHLY,
        ...                sums={"approved": lambda q: q["status"] == "quote_approved"})
        [{'period': '2024-03', 'count': 4, 'approved': 1}, ...]
    """
    sums = dict(sums or {})
    means = dict(means or {})

    rows: List[Dict[str, Any]] = []
    for record in records:
        moment = coerce_datetime(resolve_path(record, timestamp))
        if moment is None:
            continue
        row: Dict[str, Any] = {"_ts": moment}
        if by is not None:
            row["_by"] = by(record)
        for name, extract in sums.items():
            value = extract(record)
            row[name] = float(value) if isinstance(value, (bool, int, float)) else 0.0
        for name, extract in means.items():
            row[name] = _numeric_or_nan(extract(record))
        rows.append(row)

    if not rows:
        return []

    frame = pd.DataFrame(rows)
    stamps = pd.to_datetime(frame["_ts"], utc=True)
    frame["period"] = stamps.dt.tz_convert(None).dt.to_period(frequency.value).astype(str)

    keys = ["period", "_by"] if by is not None else ["period"]
    if by is not None:
        # Stable first-appearance order of groups within each period
        frame["_by_order"] = pd.factorize(frame["_by"].map(repr))[0]
        frame["_by_key"] = frame["_by"].map(repr)
        keys = ["period", "_by_order", "_by_key"]

    grouped = frame.groupby(keys, sort=True, dropna=False)
    summary = grouped.size().rename("count").to_frame()
    for name in sums:
        summary[name] = grouped[name].sum()
    for name in means:
        summary[name] = grouped[name].mean()
    summary = summary.reset_index()

    first_value: Dict[str, Any] = {}
    if by is not None:
        for raw, key in zip(frame["_by"], frame["_by_key"]):
            first_value.setdefault(key, raw)

    timeline: List[Dict[str, Any]] = []
    for record in summary.to_dict(orient="records"):
        entry: Dict[str, Any] = {"period": record["period"]}
        if by is not None:
            entry[by_name] = first_value[record["_by_key"]]
        entry["count"] = int(record["count"])
        for name in sums:
            total = float(record[name])
            entry[name] = int(total) if total.is_integer() else total
        for name in means:
            value = record[name]
            entry[name] = None if pd.isna(value) else float(value)
        timeline.append(entry)
    return timeline


def _bound_label(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def bucket_by_range(
    records: Iterable[Mapping[str, Any]],
    value: ValueFn,
    boundaries: Sequence[float],
    default_label: str,
    sums: Optional[Mapping[str, ValueFn]] = None,
    means: Optional[Mapping[str, ValueFn]] = None,
    collect: Optional[Mapping[str, ValueFn]] = None,
    include_upper: bool = False,
) -> List[Dict[str, Any]]:
    """
    Bucket records by a numeric value into fixed ranges.

    Bucket i holds values in [boundaries[i], boundaries[i + 1]). Values below
    the first boundary, at or above the last one, or missing land in the
    `default_label` bucket. With `include_upper`, a value equal to the last
    boundary belongs to the last range instead. Only non-empty buckets are
    returned, in boundary order, with the default bucket last.

    Args:
        records: Documents or result rows.
        value: Extractor for the bucketed value.
        boundaries: At least two strictly increasing bounds.
        default_label: Range label of the catch-all bucket.
        sums: Output name -> value extractor, summed per bucket.
        means: Output name -> value extractor, averaged per bucket
            (None when a bucket has no numeric values).
        collect: Output name -> extractor whose non-null values are listed
            per bucket in appearance order.
        include_upper: Close the last range on the right.

    Returns:
        Rows of {"range": "0-1000" | default_label, "min", "max", "count", ...}.

    Raises:
        ConfigurationError: If the boundaries are not strictly increasing.

    Example:
        >>> bucket_by_range(reports, grand_total, [0, 1000, 2500], "Over 2500")
        [{'range': '0-1000', 'min': 0, 'max': 1000, 'count': 3}, ...]
    """
    edges = [float(bound) for bound in boundaries]
    if len(edges) < 2 or any(upper <= lower for lower, upper in zip(edges, edges[1:])):
        raise ConfigurationError(f"Bucket boundaries must be strictly increasing: {list(boundaries)!r}")
    sums = dict(sums or {})
    means = dict(means or {})
    collect = dict(collect or {})

    rows: List[Dict[str, Any]] = []
    collected: List[Dict[str, Any]] = []
    for record in records:
        row: Dict[str, Any] = {"_value": _numeric_or_nan(value(record))}
        for name, extract in sums.items():
            number = _numeric_or_nan(extract(record))
            row[name] = 0.0 if np.isnan(number) else number
        for name, extract in means.items():
            row[name] = _numeric_or_nan(extract(record))
        rows.append(row)
        collected.append({name: extract(record) for name, extract in collect.items()})

    if not rows:
        return []

    frame = pd.DataFrame(rows)
    default_index = len(edges) - 1
    codes = pd.cut(frame["_value"], bins=edges, right=False, labels=False)
    if include_upper:
        codes = codes.mask(frame["_value"] == edges[-1], default_index - 1)
    frame["_bucket"] = codes.fillna(default_index).astype(int)

    grouped = frame.groupby("_bucket", sort=True)
    summary = grouped.size().rename("count").to_frame()
    for name in sums:
        summary[name] = grouped[name].sum()
    for name in means:
        summary[name] = grouped[name].mean()
    summary = summary.reset_index()

    members: Dict[int, Dict[str, List[Any]]] = {}
    for index, extras in zip(frame["_bucket"], collected):
        entry = members.setdefault(int(index), {name: [] for name in collect})
        for name, item in extras.items():
            if item is not None and item not in entry[name]:
                entry[name].append(item)

    buckets: List[Dict[str, Any]] = []
    for record in summary.to_dict(orient="records"):
        index = int(record["_bucket"])
        if index == default_index:
            bucket: Dict[str, Any] = {"range": default_label, "min": None, "max": None}
        else:
            lower, upper = boundaries[index], boundaries[index + 1]
            bucket = {
                "range": f"{_bound_label(lower)}-{_bound_label(upper)}",
                "min": lower,
                "max": upper,
            }
        bucket["count"] = int(record["count"])
        for name in sums:
            amount = float(record[name])
            bucket[name] = int(amount) if amount.is_integer() else amount
        for name in means:
            mean = record[name]
            bucket[name] = None if pd.isna(mean) else float(mean)
        for name in collect:
            bucket[name] = members.get(index, {}).get(name, [])
        buckets.append(bucket)
    return buckets


__all__ = [
    "TrendFrequency",
    "bucket_by_range",
    "build_timeline",
]
