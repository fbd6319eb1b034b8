"""
Stream Feature Detectors

Detects inflection points, spikes and sustained trends in a single
telemetry channel, then filters and caps detector output so a long
activity yields a bounded, most-significant set of signals.

Design principles:
- Pure functions over (values, times) lists. No IO.
- Mismatched or too-short inputs return an empty list, never raise.
- Deterministic: ties keep input order (heapq.nlargest is stable).

Public API:
    detect_inflection_points(values, times, metric, threshold)
    detect_spikes(values, times, metric, threshold_std_devs)
    analyze_trends(values, times, metric, window_seconds, min_change)
    filter_inflection_points(points, min_magnitude, min_spacing_s)
    filter_spikes(spikes, min_magnitude, min_spacing_s)
    filter_trends(trends, min_magnitude)
    top_by_magnitude(items, limit)
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, TypeVar

from services.stream_statistics import compute_float_stats


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------

class InflectionDirection(str, Enum):
    peak = "peak"
    valley = "valley"
    increase = "increase"
    decrease = "decrease"


class TrendDirection(str, Enum):
    increasing = "increasing"
    decreasing = "decreasing"
    stable = "stable"


# Caps on the number of detections surfaced per activity
MAX_INFLECTION_POINTS = 20
MAX_TRENDS = 15
MAX_SPIKES = 10

# Below these raw counts filtering is skipped so sparse activities still
# surface something. Candidate for a density-based rule.
INFLECTION_FILTER_MIN_COUNT = 10
TREND_FILTER_MIN_COUNT = 5
SPIKE_FILTER_MIN_COUNT = 5

# Minimum spacing between same-metric detections (seconds)
INFLECTION_MIN_SPACING_S = 120
SPIKE_MIN_SPACING_S = 60

# Trend quality gates
TREND_MIN_DURATION_S = 60
TREND_MIN_CONFIDENCE = 0.6


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InflectionPoint:
    index: int
    time: int
    value: float
    metric: str
    direction: InflectionDirection
    magnitude: float

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["direction"] = self.direction.value
        return d


@dataclass(frozen=True)
class Trend:
    start_index: int
    end_index: int
    start_time: int
    end_time: int
    metric: str
    direction: TrendDirection
    slope: float
    magnitude: float
    confidence: float

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["direction"] = self.direction.value
        return d


@dataclass(frozen=True)
class Spike:
    index: int
    time: int
    value: float
    metric: str
    magnitude: float  # standard deviations from the mean
    duration: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Regression helpers
# ---------------------------------------------------------------------------

def _linear_fit(xs: Sequence[float], ys: Sequence[float]) -> Tuple[float, float, float]:
    """Least-squares fit. Returns (slope, intercept, r_squared).

    A vertical or single-point set yields slope 0. A perfectly flat series
    is a perfect fit (r_squared 1.0).
    """
    n = len(xs)
    if n == 0:
        return 0.0, 0.0, 0.0
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    sxx = sum((x - mean_x) ** 2 for x in xs)
    if sxx == 0:
        return 0.0, mean_y, 0.0
    sxy = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    slope = sxy / sxx
    intercept = mean_y - slope * mean_x

    ss_tot = sum((y - mean_y) ** 2 for y in ys)
    if ss_tot == 0:
        return slope, intercept, 1.0
    ss_res = sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, ys))
    r_squared = max(0.0, min(1.0, 1 - ss_res / ss_tot))
    return slope, intercept, r_squared


def linear_slope(values: Sequence[float], times: Sequence[float]) -> float:
    """Least-squares slope of values over times."""
    slope, _, _ = _linear_fit([float(t) for t in times], [float(v) for v in values])
    return slope


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------

def detect_inflection_points(
    values: Optional[Sequence[float]],
    times: Optional[Sequence[int]],
    metric: str,
    threshold: float,
) -> List[InflectionPoint]:
    """Points where the local slope changes by more than threshold.

    The slope before index i is fitted over [i-2, i], the slope after over
    [i, i+2].
    """
    if not values or not times or len(values) != len(times) or len(values) < 5:
        return []

    data = [float(v) for v in values]
    ts = [float(t) for t in times]
    window = 2
    points: List[InflectionPoint] = []

    for i in range(window, len(data) - window):
        before = linear_slope(data[i - window:i + 1], ts[i - window:i + 1])
        after = linear_slope(data[i:i + window + 1], ts[i:i + window + 1])
        change = abs(after - before)
        if change <= threshold:
            continue

        if before > 0 and after < 0:
            direction = InflectionDirection.peak
        elif before < 0 and after > 0:
            direction = InflectionDirection.valley
        elif after > before:
            direction = InflectionDirection.increase
        else:
            direction = InflectionDirection.decrease

        points.append(InflectionPoint(
            index=i,
            time=int(times[i]),
            value=data[i],
            metric=metric,
            direction=direction,
            magnitude=change,
        ))

    return points


def detect_spikes(
    values: Optional[Sequence[float]],
    times: Optional[Sequence[int]],
    metric: str,
    threshold_std_devs: float,
) -> List[Spike]:
    """Samples more than threshold_std_devs away from the global mean."""
    if not values or not times or len(values) != len(times) or len(values) < 3:
        return []

    stats = compute_float_stats(values)
    if stats.std_dev == 0:
        return []

    spikes: List[Spike] = []
    last = len(values) - 1
    for i, raw in enumerate(values):
        v = float(raw)
        deviation = abs(v - stats.mean)
        if deviation <= threshold_std_devs * stats.std_dev:
            continue
        if 0 < i < last:
            duration = int(times[i + 1]) - int(times[i - 1])
        else:
            duration = 1
        spikes.append(Spike(
            index=i,
            time=int(times[i]),
            value=v,
            metric=metric,
            magnitude=deviation / stats.std_dev,
            duration=duration,
        ))
    return spikes


def _window_bounds(times: Sequence[float], window_seconds: float) -> List[Tuple[int, int]]:
    """Inclusive index ranges of consecutive fixed-length time windows."""
    bounds: List[Tuple[int, int]] = []
    start = 0
    n = len(times)
    while start < n:
        window_end_time = times[start] + window_seconds
        end = start
        while end + 1 < n and times[end + 1] < window_end_time:
            end += 1
        bounds.append((start, end))
        start = end + 1
    return bounds


def _classify(change: float, min_change: float) -> TrendDirection:
    if change > min_change:
        return TrendDirection.increasing
    if change < -min_change:
        return TrendDirection.decreasing
    return TrendDirection.stable


def _fit_trend(
    data: List[float],
    ts: List[float],
    times: Sequence[int],
    start: int,
    end: int,
    metric: str,
    direction: TrendDirection,
) -> Trend:
    xs = ts[start:end + 1]
    slope, _, r_squared = _linear_fit(xs, data[start:end + 1])
    span = ts[end] - ts[start]
    return Trend(
        start_index=start,
        end_index=end,
        start_time=int(times[start]),
        end_time=int(times[end]),
        metric=metric,
        direction=direction,
        slope=slope,
        magnitude=abs(slope * span),
        confidence=r_squared,
    )


def analyze_trends(
    values: Optional[Sequence[float]],
    times: Optional[Sequence[int]],
    metric: str,
    window_seconds: float = 60,
    min_change: float = 0.1,
) -> List[Trend]:
    """Sustained directional movement over fixed time windows.

    Each window with at least 3 samples gets a least-squares fit; the fitted
    change across the window decides its direction. Adjacent windows with the
    same direction are merged and re-fitted over the merged span.
    """
    if not values or not times or len(values) != len(times) or len(values) < 3:
        return []
    if window_seconds <= 0:
        return []

    data = [float(v) for v in values]
    ts = [float(t) for t in times]

    classified: List[Tuple[int, int, TrendDirection]] = []
    for start, end in _window_bounds(ts, window_seconds):
        if end - start + 1 < 3:
            continue
        slope, _, _ = _linear_fit(ts[start:end + 1], data[start:end + 1])
        change = slope * (ts[end] - ts[start])
        classified.append((start, end, _classify(change, min_change)))

    merged: List[Tuple[int, int, TrendDirection]] = []
    for start, end, direction in classified:
        if merged and merged[-1][2] == direction and merged[-1][1] + 1 == start:
            merged[-1] = (merged[-1][0], end, direction)
        else:
            merged.append((start, end, direction))

    return [
        _fit_trend(data, ts, times, start, end, metric, direction)
        for start, end, direction in merged
    ]


# ---------------------------------------------------------------------------
# Filtering and capping
# ---------------------------------------------------------------------------

T = TypeVar("T", InflectionPoint, Trend, Spike)


def top_by_magnitude(items: Sequence[T], limit: int) -> List[T]:
    """Highest-magnitude items, ties in input order."""
    if len(items) <= limit:
        return sorted(items, key=lambda item: item.magnitude, reverse=True)
    return heapq.nlargest(limit, items, key=lambda item: item.magnitude)


def _enforce_spacing(items: Sequence[T], min_spacing_s: float) -> List[T]:
    """Keep the strongest of any same-metric detections closer than min_spacing_s."""
    kept: List[T] = []
    for item in sorted(items, key=lambda it: (-it.magnitude, it.time)):
        conflict = False
        for other in kept:
            if other.metric == item.metric and abs(other.time - item.time) < min_spacing_s:
                conflict = True
                break
        if not conflict:
            kept.append(item)
    return sorted(kept, key=lambda it: (it.time, it.metric))


def filter_inflection_points(
    points: Sequence[InflectionPoint],
    min_magnitude: Dict[str, float],
    min_spacing_s: float = INFLECTION_MIN_SPACING_S,
    limit: int = MAX_INFLECTION_POINTS,
) -> List[InflectionPoint]:
    """Drop weak points, enforce spacing, cap by magnitude."""
    if len(points) < INFLECTION_FILTER_MIN_COUNT:
        return list(points)

    strong = [
        p for p in points
        if p.magnitude >= min_magnitude.get(p.metric, 0.0)
    ]
    spaced = _enforce_spacing(strong, min_spacing_s)
    return top_by_magnitude(spaced, limit)


def filter_spikes(
    spikes: Sequence[Spike],
    min_magnitude: float,
    min_spacing_s: float = SPIKE_MIN_SPACING_S,
    limit: int = MAX_SPIKES,
) -> List[Spike]:
    if len(spikes) < SPIKE_FILTER_MIN_COUNT:
        return list(spikes)

    strong = [s for s in spikes if s.magnitude >= min_magnitude]
    spaced = _enforce_spacing(strong, min_spacing_s)
    return top_by_magnitude(spaced, limit)


def filter_trends(
    trends: Sequence[Trend],
    min_magnitude: Dict[str, float],
    limit: int = MAX_TRENDS,
) -> List[Trend]:
    """Keep long, confident, directional trends above the per-metric minimum."""
    if len(trends) < TREND_FILTER_MIN_COUNT:
        return list(trends)

    significant = [
        t for t in trends
        if t.direction != TrendDirection.stable
        and t.duration >= TREND_MIN_DURATION_S
        and t.confidence >= TREND_MIN_CONFIDENCE
        and t.magnitude >= min_magnitude.get(t.metric, 0.0)
    ]
    return top_by_magnitude(significant, limit)

