"""
Stream Statistics Primitives

Pure numeric summaries over a single telemetry channel.

Design principles:
- Never divide by zero. Empty input yields zeroed results, never NaN.
- Integer physiological channels (heart rate, power, cadence, temperature)
  use zero as a "no reading" sentinel, so zeros are dropped before
  computing. Float channels (distance, altitude, speed, grade) keep zeros
  where zero is a legitimate reading.
- Percentiles use linear interpolation at rank p*(n-1).

Public API:
    compute_int_stats(values) -> MetricStats
    compute_float_stats(values) -> MetricStats
    compute_boolean_stats(values) -> BooleanStats
    compute_location_stats(pairs) -> LocationStats
    percentile(sorted_values, p) -> float
    median(sorted_values) -> float
    quartiles(values) -> (q25, q50, q75)
    variability_metrics(values) -> (cv, iqr, mad)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional, Sequence, Tuple


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetricStats:
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    variability: float = 0.0  # coefficient of variation (std_dev / mean)
    range: float = 0.0
    q25: float = 0.0
    q75: float = 0.0
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BooleanStats:
    true_count: int = 0
    false_count: int = 0
    total_count: int = 0
    true_percent: float = 0.0
    false_percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BoundingBox:
    north_lat: float = 0.0
    south_lat: float = 0.0
    east_lng: float = 0.0
    west_lng: float = 0.0


@dataclass(frozen=True)
class LocationStats:
    start_lat: float = 0.0
    start_lng: float = 0.0
    end_lat: float = 0.0
    end_lng: float = 0.0
    bounding_box: BoundingBox = field(default_factory=BoundingBox)
    total_points: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Order statistics
# ---------------------------------------------------------------------------

def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear-interpolation percentile on pre-sorted data.

    p=0 returns the minimum, p=1 the maximum. Empty input returns 0.
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0
    if p <= 0:
        return float(sorted_values[0])
    if p >= 1:
        return float(sorted_values[-1])

    rank = p * (n - 1)
    lower = int(math.floor(rank))
    upper = int(math.ceil(rank))
    if lower == upper:
        return float(sorted_values[lower])
    weight = rank - lower
    return float(sorted_values[lower]) * (1 - weight) + float(sorted_values[upper]) * weight


def median(sorted_values: Sequence[float]) -> float:
    n = len(sorted_values)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2 == 0:
        return (float(sorted_values[mid - 1]) + float(sorted_values[mid])) / 2
    return float(sorted_values[mid])


def quartiles(values: Sequence[float]) -> Tuple[float, float, float]:
    """(Q25, Q50, Q75) of unsorted values."""
    ordered = sorted(values)
    return (
        percentile(ordered, 0.25),
        percentile(ordered, 0.50),
        percentile(ordered, 0.75),
    )


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _population_std(values: Sequence[float], mean: float) -> float:
    if not values:
        return 0.0
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def variability_metrics(values: Sequence[float]) -> Tuple[float, float, float]:
    """(coefficient of variation, interquartile range, median absolute deviation)."""
    if not values:
        return 0.0, 0.0, 0.0

    data = [float(v) for v in values]
    mean = _mean(data)
    std = _population_std(data, mean)
    cv = std / mean if mean != 0 else 0.0

    ordered = sorted(data)
    iqr = percentile(ordered, 0.75) - percentile(ordered, 0.25)

    med = median(ordered)
    deviations = sorted(abs(v - med) for v in data)
    mad = median(deviations)
    return cv, iqr, mad


# ---------------------------------------------------------------------------
# Channel summaries
# ---------------------------------------------------------------------------

def _metric_stats(data: List[float]) -> MetricStats:
    if not data:
        return MetricStats()

    ordered = sorted(data)
    mean = _mean(data)
    std = _population_std(data, mean)
    lo = ordered[0]
    hi = ordered[-1]

    return MetricStats(
        min=lo,
        max=hi,
        mean=mean,
        median=median(ordered),
        std_dev=std,
        variability=std / mean if mean != 0 else 0.0,
        range=hi - lo,
        q25=percentile(ordered, 0.25),
        q75=percentile(ordered, 0.75),
        count=len(data),
    )


def compute_int_stats(values: Optional[Sequence[Any]]) -> MetricStats:
    """Stats for integer physiological channels. Zeros (no reading) are dropped."""
    data = [float(v) for v in (values or []) if v is not None and v != 0]
    return _metric_stats(data)


def compute_float_stats(values: Optional[Sequence[Any]]) -> MetricStats:
    """Stats for float channels. Zeros are kept."""
    data = [float(v) for v in (values or []) if v is not None]
    return _metric_stats(data)


def compute_boolean_stats(values: Optional[Sequence[Any]]) -> BooleanStats:
    data = list(values or [])
    total = len(data)
    if total == 0:
        return BooleanStats()

    true_count = sum(1 for v in data if v)
    false_count = total - true_count
    return BooleanStats(
        true_count=true_count,
        false_count=false_count,
        total_count=total,
        true_percent=true_count / total * 100,
        false_percent=false_count / total * 100,
    )


def _valid_fix(pair: Any) -> bool:
    if not isinstance(pair, (list, tuple)) or len(pair) < 2:
        return False
    lat, lng = pair[0], pair[1]
    if lat is None or lng is None:
        return False
    return not (lat == 0 and lng == 0)


def compute_location_stats(pairs: Optional[Sequence[Any]]) -> LocationStats:
    """GPS summary. (0, 0) pairs are missing fixes and are excluded."""
    valid = [(float(p[0]), float(p[1])) for p in (pairs or []) if _valid_fix(p)]
    if not valid:
        return LocationStats()

    lats = [p[0] for p in valid]
    lngs = [p[1] for p in valid]
    return LocationStats(
        start_lat=valid[0][0],
        start_lng=valid[0][1],
        end_lat=valid[-1][0],
        end_lng=valid[-1][1],
        bounding_box=BoundingBox(
            north_lat=max(lats),
            south_lat=min(lats),
            east_lng=max(lngs),
            west_lng=min(lngs),
        ),
        total_points=len(valid),
    )
