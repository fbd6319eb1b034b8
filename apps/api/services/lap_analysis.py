"""
Lap Analysis

Per-lap summaries and cross-lap comparisons. When an activity has no
recorded laps the distance channel is split into fixed-size segments
which are then analyzed as synthetic laps.

Lap indices are inclusive sample indices into the telemetry channels.
A lap whose index range does not fit the time channel yields a summary
with metadata only (number, name, distance, duration).
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional, Sequence

from services.stream_features import TrendDirection, linear_slope
from services.stream_statistics import (
    MetricStats,
    compute_float_stats,
    compute_int_stats,
)
from services.telemetry import Lap, Telemetry

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_SIZE_M = 1000.0
LAP_SPIKE_STD_DEVS = 2.0

# Slope thresholds (units per second) separating a lap trend from stable
LAP_TREND_SLOPE_THRESHOLDS = {
    "heart_rate": 0.01,
    "power": 0.1,
    "speed": 0.001,
}


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LapTrend:
    metric: str
    direction: TrendDirection
    magnitude: float  # absolute slope
    confidence: float  # share of sample-to-sample steps in the dominant direction


@dataclass(frozen=True)
class LapSpike:
    metric: str
    time_offset: int  # seconds since lap start
    value: float
    magnitude: float
    duration: int


@dataclass
class LapStatistics:
    heart_rate: Optional[MetricStats] = None
    power: Optional[MetricStats] = None
    speed: Optional[MetricStats] = None
    cadence: Optional[MetricStats] = None
    elevation: Optional[MetricStats] = None
    temperature: Optional[MetricStats] = None


@dataclass
class LapSummary:
    lap_number: int
    lap_name: str = ""
    start_time: int = 0
    end_time: int = 0
    duration: int = 0
    distance: float = 0.0
    elevation_gain: float = 0.0
    elevation_loss: float = 0.0
    avg_speed: float = 0.0
    max_speed: float = 0.0
    avg_heart_rate: float = 0.0
    max_heart_rate: float = 0.0
    avg_power: float = 0.0
    max_power: float = 0.0
    avg_cadence: float = 0.0
    max_cadence: float = 0.0
    avg_temperature: float = 0.0
    statistics: LapStatistics = field(default_factory=LapStatistics)
    trends: List[LapTrend] = field(default_factory=list)
    spikes: List[LapSpike] = field(default_factory=list)


@dataclass(frozen=True)
class LapComparisons:
    fastest_lap: int = 0
    slowest_lap: int = 0
    highest_power_lap: int = 0
    lowest_power_lap: int = 0
    highest_hr_lap: int = 0
    lowest_hr_lap: int = 0
    speed_variation: float = 0.0
    power_variation: float = 0.0
    hr_variation: float = 0.0
    consistency_score: float = 0.0


@dataclass
class LapAnalysis:
    total_laps: int = 0
    lap_summaries: List[LapSummary] = field(default_factory=list)
    lap_comparisons: LapComparisons = field(default_factory=LapComparisons)
    segmentation_type: str = "laps"  # "laps" | "distance"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DistanceSegment:
    segment_number: int
    start_distance: float
    end_distance: float
    start_index: int
    end_index: int
    distance: float


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def analyze_lap_by_lap(telemetry: Telemetry, laps: Optional[Sequence[Lap]]) -> LapAnalysis:
    """Summaries for each recorded lap; distance segments when there are none."""
    if not laps:
        return analyze_distance_segments(telemetry, DEFAULT_SEGMENT_SIZE_M)

    summaries = [analyze_single_lap(telemetry, lap, i + 1) for i, lap in enumerate(laps)]
    return LapAnalysis(
        total_laps=len(laps),
        lap_summaries=summaries,
        lap_comparisons=compare_laps(summaries),
        segmentation_type="laps",
    )


def analyze_distance_segments(
    telemetry: Telemetry,
    segment_size: float = DEFAULT_SEGMENT_SIZE_M,
) -> LapAnalysis:
    if not telemetry.distance or not telemetry.time:
        return LapAnalysis(segmentation_type="distance")

    segments = create_distance_segments(telemetry.distance, segment_size)
    if not segments:
        return LapAnalysis(segmentation_type="distance")

    summaries: List[LapSummary] = []
    time = telemetry.time
    for i, segment in enumerate(segments):
        elapsed = 0
        if len(time) > segment.end_index:
            elapsed = time[segment.end_index] - time[segment.start_index]
        synthetic = Lap(
            start_index=segment.start_index,
            end_index=segment.end_index,
            lap_index=i,
            distance=segment.distance,
            elapsed_time=elapsed,
            moving_time=elapsed,
        )
        summary = analyze_single_lap(telemetry, synthetic, i + 1)
        summary.lap_name = f"Segment {i + 1} ({segment.distance / 1000:.1f}km)"
        summaries.append(summary)

    return LapAnalysis(
        total_laps=len(summaries),
        lap_summaries=summaries,
        lap_comparisons=compare_laps(summaries),
        segmentation_type="distance",
    )


# ---------------------------------------------------------------------------
# Single lap
# ---------------------------------------------------------------------------

def _lap_slice(values: Optional[List[Any]], lap: Lap) -> Optional[List[Any]]:
    """Lap window of a channel, or None when the channel does not cover the lap."""
    if not values or len(values) <= lap.end_index:
        return None
    return values[lap.start_index:lap.end_index + 1]


def analyze_single_lap(telemetry: Telemetry, lap: Lap, lap_number: int) -> LapSummary:
    summary = LapSummary(
        lap_number=lap_number,
        lap_name=lap.name,
        distance=lap.distance,
        duration=lap.elapsed_time,
    )

    time = telemetry.time or []
    if lap.start_index < 0 or lap.end_index >= len(time) or lap.start_index >= lap.end_index:
        logger.debug(
            f"Lap {lap_number} index range {lap.start_index}-{lap.end_index} "
            f"outside time channel ({len(time)} samples)"
        )
        return summary

    summary.start_time = time[lap.start_index]
    summary.end_time = time[lap.end_index]
    stats = summary.statistics

    hr = _lap_slice(telemetry.heartrate, lap)
    if hr:
        stats.heart_rate = compute_int_stats(hr)
        summary.avg_heart_rate = stats.heart_rate.mean
        summary.max_heart_rate = stats.heart_rate.max

    power = _lap_slice(telemetry.watts, lap)
    if power:
        stats.power = compute_int_stats(power)
        summary.avg_power = stats.power.mean
        summary.max_power = stats.power.max

    speed = _lap_slice(telemetry.velocity_smooth, lap)
    if speed:
        stats.speed = compute_float_stats(speed)
        summary.avg_speed = stats.speed.mean
        summary.max_speed = stats.speed.max

    cadence = _lap_slice(telemetry.cadence, lap)
    if cadence:
        stats.cadence = compute_int_stats(cadence)
        summary.avg_cadence = stats.cadence.mean
        summary.max_cadence = stats.cadence.max

    altitude = _lap_slice(telemetry.altitude, lap)
    if altitude:
        stats.elevation = compute_float_stats(altitude)
        for prev, cur in zip(altitude, altitude[1:]):
            delta = float(cur) - float(prev)
            if delta > 0:
                summary.elevation_gain += delta
            else:
                summary.elevation_loss += -delta

    temp = _lap_slice(telemetry.temp, lap)
    if temp:
        stats.temperature = compute_int_stats(temp)
        summary.avg_temperature = stats.temperature.mean

    summary.trends = lap_trends(telemetry, lap)
    summary.spikes = lap_spikes(telemetry, lap)
    return summary


def direction_consistency(values: Sequence[float]) -> float:
    """Share of sample-to-sample steps in the dominant direction (flat = 1.0)."""
    if len(values) < 3:
        return 0.0
    increases = 0
    decreases = 0
    for prev, cur in zip(values, values[1:]):
        if cur > prev:
            increases += 1
        elif cur < prev:
            decreases += 1
    total = increases + decreases
    if total == 0:
        return 1.0
    return max(increases, decreases) / total


def lap_trends(telemetry: Telemetry, lap: Lap) -> List[LapTrend]:
    time = telemetry.time or []
    channels = (
        ("heart_rate", telemetry.heartrate),
        ("power", telemetry.watts),
        ("speed", telemetry.velocity_smooth),
    )
    trends: List[LapTrend] = []
    for metric, values in channels:
        window = _lap_slice(values, lap)
        if not window or len(window) <= 5:
            continue
        data = [float(v or 0) for v in window]
        times = time[lap.start_index:lap.start_index + len(data)]
        slope = linear_slope(data, times)
        threshold = LAP_TREND_SLOPE_THRESHOLDS[metric]
        if slope > threshold:
            direction = TrendDirection.increasing
        elif slope < -threshold:
            direction = TrendDirection.decreasing
        else:
            direction = TrendDirection.stable
        trends.append(LapTrend(
            metric=metric,
            direction=direction,
            magnitude=abs(slope),
            confidence=direction_consistency(data),
        ))
    return trends


def lap_spikes(telemetry: Telemetry, lap: Lap) -> List[LapSpike]:
    time = telemetry.time or []
    lap_start_time = time[lap.start_index] if len(time) > lap.start_index else 0
    channels = (
        ("power", telemetry.watts),
        ("heart_rate", telemetry.heartrate),
    )
    spikes: List[LapSpike] = []
    for metric, values in channels:
        window = _lap_slice(values, lap)
        if not window or len(window) <= 3:
            continue
        data = [float(v or 0) for v in window]
        stats = compute_float_stats(data)
        if stats.std_dev == 0:
            continue
        for i, v in enumerate(data):
            deviation = abs(v - stats.mean)
            if deviation <= LAP_SPIKE_STD_DEVS * stats.std_dev:
                continue
            offset = 0
            if len(time) > lap.start_index + i:
                offset = time[lap.start_index + i] - lap_start_time
            spikes.append(LapSpike(
                metric=metric,
                time_offset=offset,
                value=v,
                magnitude=deviation / stats.std_dev,
                duration=1,
            ))
    return spikes


# ---------------------------------------------------------------------------
# Cross-lap comparisons
# ---------------------------------------------------------------------------

def compare_laps(summaries: Sequence[LapSummary]) -> LapComparisons:
    """Fastest/slowest, power and HR extremes, variation and a consistency score.

    Lap numbers are 1-based; 0 means "no lap qualified".
    """
    if not summaries:
        return LapComparisons()

    fastest = slowest = 0
    fastest_speed = 0.0
    slowest_speed = float("inf")
    high_power = low_power = high_hr = low_hr = 0
    speeds: List[float] = []
    powers: List[float] = []
    hrs: List[float] = []

    for number, lap in enumerate(summaries, start=1):
        if lap.avg_speed > fastest_speed:
            fastest_speed = lap.avg_speed
            fastest = number
        if 0 < lap.avg_speed < slowest_speed:
            slowest_speed = lap.avg_speed
            slowest = number
        speeds.append(lap.avg_speed)

        if lap.avg_power > 0:
            if not high_power or lap.avg_power > summaries[high_power - 1].avg_power:
                high_power = number
            if not low_power or lap.avg_power < summaries[low_power - 1].avg_power:
                low_power = number
            powers.append(lap.avg_power)

        if lap.avg_heart_rate > 0:
            if not high_hr or lap.avg_heart_rate > summaries[high_hr - 1].avg_heart_rate:
                high_hr = number
            if not low_hr or lap.avg_heart_rate < summaries[low_hr - 1].avg_heart_rate:
                low_hr = number
            hrs.append(lap.avg_heart_rate)

    speed_cv = compute_float_stats(speeds).variability if speeds else 0.0
    power_cv = compute_float_stats(powers).variability if powers else 0.0
    hr_cv = compute_float_stats(hrs).variability if hrs else 0.0

    total_variation = speed_cv + max(power_cv, 0.0) + max(hr_cv, 0.0)
    consistency = max(0.0, 1.0 - total_variation) if total_variation > 0 else 1.0

    return LapComparisons(
        fastest_lap=fastest,
        slowest_lap=slowest,
        highest_power_lap=high_power,
        lowest_power_lap=low_power,
        highest_hr_lap=high_hr,
        lowest_hr_lap=low_hr,
        speed_variation=speed_cv,
        power_variation=power_cv,
        hr_variation=hr_cv,
        consistency_score=consistency,
    )


# ---------------------------------------------------------------------------
# Distance segmentation
# ---------------------------------------------------------------------------

def find_distance_index(distance: Sequence[float], target: float) -> int:
    """First index whose cumulative distance is >= target (clamped to the last index)."""
    if not distance:
        return 0
    return min(bisect.bisect_left(distance, target), len(distance) - 1)


def create_distance_segments(distance: Sequence[float], segment_size: float) -> List[DistanceSegment]:
    if not distance or segment_size <= 0:
        return []

    total = float(distance[-1])
    if total < segment_size:
        return [DistanceSegment(
            segment_number=1,
            start_distance=0.0,
            end_distance=total,
            start_index=0,
            end_index=len(distance) - 1,
            distance=total,
        )]

    segments: List[DistanceSegment] = []
    number = 1
    current = 0.0
    while current < total:
        target = min(current + segment_size, total)
        start_index = find_distance_index(distance, current)
        end_index = find_distance_index(distance, target)
        if start_index < end_index:
            segments.append(DistanceSegment(
                segment_number=number,
                start_distance=current,
                end_distance=target,
                start_index=start_index,
                end_index=end_index,
                distance=target - current,
            ))
        current = target
        number += 1
    return segments
