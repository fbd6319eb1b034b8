"""
Derived Features

Turns full-resolution telemetry into a bounded statistical report:
summary metrics, per-channel statistics, filtered inflection points,
trends and spikes, a handful of sample points, cross-channel correlations
and (when laps are supplied) lap-by-lap analysis.

A DerivedFeatures instance is created fresh per request and is never
persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services.lap_analysis import LapAnalysis, analyze_lap_by_lap
from services.physiological_metrics import (
    Correlations,
    correlations,
    elevation_analysis,
    heart_rate_drift,
    normalized_power,
)
from services.stream_errors import StreamErrorKind, StreamProcessingError
from services.stream_features import (
    MAX_INFLECTION_POINTS,
    MAX_SPIKES,
    MAX_TRENDS,
    InflectionPoint,
    Spike,
    Trend,
    analyze_trends,
    detect_inflection_points,
    detect_spikes,
    filter_inflection_points,
    filter_spikes,
    filter_trends,
    top_by_magnitude,
)
from services.stream_monitoring import PerformanceMonitor
from services.stream_statistics import (
    BooleanStats,
    LocationStats,
    MetricStats,
    compute_boolean_stats,
    compute_float_stats,
    compute_int_stats,
    compute_location_stats,
)
from services.telemetry import Lap, Telemetry, paired

logger = logging.getLogger(__name__)


# Detector threshold / post-filter minimum magnitude per metric
INFLECTION_THRESHOLDS = {
    "heart_rate": (15.0, 10.0),
    "power": (30.0, 25.0),
    "speed": (2.5, 2.0),
    "altitude": (15.0, 10.0),
}

TREND_WINDOW_S = 60
# Minimum fitted change per metric (bpm, W, m/s)
TREND_MIN_CHANGE = {
    "heart_rate": 10.0,
    "power": 25.0,
    "speed": 2.0,
}

SPIKE_DETECT_STD_DEVS = 3.0
SPIKE_FILTER_STD_DEVS = 3.5


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureSummary:
    stream_types: List[str] = field(default_factory=list)
    total_data_points: int = 0
    duration: int = 0
    total_distance: float = 0.0
    elevation_gain: float = 0.0
    elevation_loss: float = 0.0
    avg_speed: float = 0.0
    max_speed: float = 0.0
    avg_heart_rate: float = 0.0
    max_heart_rate: float = 0.0
    heart_rate_drift: float = 0.0
    avg_power: float = 0.0
    max_power: float = 0.0
    normalized_power: float = 0.0
    avg_cadence: float = 0.0
    max_cadence: float = 0.0
    avg_temperature: float = 0.0
    moving_time_percent: float = 0.0


@dataclass(frozen=True)
class StreamStatistics:
    time: Optional[MetricStats] = None
    distance: Optional[MetricStats] = None
    altitude: Optional[MetricStats] = None
    velocity_smooth: Optional[MetricStats] = None
    heart_rate: Optional[MetricStats] = None
    cadence: Optional[MetricStats] = None
    power: Optional[MetricStats] = None
    temperature: Optional[MetricStats] = None
    grade: Optional[MetricStats] = None
    moving: Optional[BooleanStats] = None
    latlng: Optional[LocationStats] = None


@dataclass(frozen=True)
class DataPoint:
    time_offset: int
    values: Dict[str, Any]


@dataclass(frozen=True)
class DerivedFeatures:
    activity_id: int
    summary: FeatureSummary
    statistics: StreamStatistics
    inflection_points: List[InflectionPoint] = field(default_factory=list)
    trends: List[Trend] = field(default_factory=list)
    spikes: List[Spike] = field(default_factory=list)
    sample_data: List[DataPoint] = field(default_factory=list)
    correlations: Correlations = field(default_factory=Correlations)
    lap_analysis: Optional[LapAnalysis] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Section builders
# ---------------------------------------------------------------------------

def feature_summary(telemetry: Telemetry) -> FeatureSummary:
    values: Dict[str, Any] = {
        "stream_types": telemetry.available_stream_types(),
        "total_data_points": telemetry.count_data_points(),
    }
    if telemetry.time:
        values["duration"] = telemetry.time[-1] - telemetry.time[0]
    if telemetry.distance:
        values["total_distance"] = float(telemetry.distance[-1]) - float(telemetry.distance[0])
    if telemetry.altitude:
        elevation = elevation_analysis(telemetry.altitude, telemetry.distance, telemetry.time)
        values["elevation_gain"] = elevation.total_gain
        values["elevation_loss"] = elevation.total_loss
    if telemetry.velocity_smooth:
        speed = compute_float_stats(telemetry.velocity_smooth)
        values["avg_speed"] = speed.mean
        values["max_speed"] = speed.max
    if telemetry.heartrate:
        hr = compute_int_stats(telemetry.heartrate)
        values["avg_heart_rate"] = hr.mean
        values["max_heart_rate"] = hr.max
        values["heart_rate_drift"] = heart_rate_drift(telemetry.heartrate, telemetry.time)
    if telemetry.watts:
        power = compute_int_stats(telemetry.watts)
        values["avg_power"] = power.mean
        values["max_power"] = power.max
        values["normalized_power"] = normalized_power(telemetry.watts, telemetry.time)
    if telemetry.cadence:
        cadence = compute_int_stats(telemetry.cadence)
        values["avg_cadence"] = cadence.mean
        values["max_cadence"] = cadence.max
    if telemetry.temp:
        values["avg_temperature"] = compute_int_stats(telemetry.temp).mean
    if telemetry.moving:
        values["moving_time_percent"] = compute_boolean_stats(telemetry.moving).true_percent
    return FeatureSummary(**values)


def stream_statistics(telemetry: Telemetry) -> StreamStatistics:
    def floats(values):
        return compute_float_stats(values) if values else None

    def ints(values):
        return compute_int_stats(values) if values else None

    return StreamStatistics(
        time=floats(telemetry.time),
        distance=floats(telemetry.distance),
        altitude=floats(telemetry.altitude),
        velocity_smooth=floats(telemetry.velocity_smooth),
        heart_rate=ints(telemetry.heartrate),
        cadence=ints(telemetry.cadence),
        power=ints(telemetry.watts),
        temperature=ints(telemetry.temp),
        grade=floats(telemetry.grade_smooth),
        moving=compute_boolean_stats(telemetry.moving) if telemetry.moving else None,
        latlng=compute_location_stats(telemetry.latlng) if telemetry.latlng else None,
    )


def _metric_channels(telemetry: Telemetry) -> Dict[str, Optional[Tuple[List[Any], List[int]]]]:
    """Each detector channel cut to the index range it shares with time."""
    channels = {
        "heart_rate": telemetry.heartrate,
        "power": telemetry.watts,
        "speed": telemetry.velocity_smooth,
        "altitude": telemetry.altitude,
    }
    aligned: Dict[str, Optional[Tuple[List[Any], List[int]]]] = {}
    for metric, values in channels.items():
        n = paired(values, telemetry.time)
        aligned[metric] = (values[:n], telemetry.time[:n]) if n else None
    return aligned


def extract_inflection_points(telemetry: Telemetry) -> List[InflectionPoint]:
    if not telemetry.time:
        return []
    channels = _metric_channels(telemetry)
    points: List[InflectionPoint] = []
    for metric, (threshold, min_magnitude) in INFLECTION_THRESHOLDS.items():
        channel = channels[metric]
        if channel is None:
            continue
        values, times = channel
        raw = detect_inflection_points(values, times, metric, threshold)
        points.extend(filter_inflection_points(raw, {metric: min_magnitude}))
    return top_by_magnitude(points, MAX_INFLECTION_POINTS)


def extract_trends(telemetry: Telemetry) -> List[Trend]:
    if not telemetry.time:
        return []
    channels = _metric_channels(telemetry)
    trends: List[Trend] = []
    for metric, min_change in TREND_MIN_CHANGE.items():
        channel = channels[metric]
        if channel is None:
            continue
        values, times = channel
        raw = analyze_trends(values, times, metric, TREND_WINDOW_S, min_change)
        trends.extend(filter_trends(raw, {metric: min_change}))
    return top_by_magnitude(trends, MAX_TRENDS)


def extract_spikes(telemetry: Telemetry) -> List[Spike]:
    if not telemetry.time:
        return []
    channels = _metric_channels(telemetry)
    spikes: List[Spike] = []
    for metric in ("heart_rate", "power", "speed"):
        channel = channels[metric]
        if channel is None:
            continue
        values, times = channel
        raw = detect_spikes(values, times, metric, SPIKE_DETECT_STD_DEVS)
        spikes.extend(filter_spikes(raw, SPIKE_FILTER_STD_DEVS))
    return top_by_magnitude(spikes, MAX_SPIKES)


def sample_data(telemetry: Telemetry) -> List[DataPoint]:
    """Values at 0%, 25%, 50%, 75% and 100% of the activity."""
    time = telemetry.time
    if not time:
        return []

    n = len(time)
    points: List[DataPoint] = []
    for idx in (0, n // 4, n // 2, n * 3 // 4, n - 1):
        values: Dict[str, Any] = {}
        for key, channel in (
            ("heart_rate", telemetry.heartrate),
            ("power", telemetry.watts),
            ("speed", telemetry.velocity_smooth),
            ("cadence", telemetry.cadence),
        ):
            if channel and idx < len(channel) and channel[idx] and channel[idx] > 0:
                values[key] = channel[idx]
        if telemetry.altitude and idx < len(telemetry.altitude):
            values["altitude"] = telemetry.altitude[idx]
        if telemetry.distance and idx < len(telemetry.distance):
            values["distance"] = telemetry.distance[idx]
        points.append(DataPoint(time_offset=time[idx], values=values))
    return points


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class DerivedFeaturesProcessor:
    """Feature extraction entry point used by the derived and ai-summary modes."""

    def __init__(self, monitor: Optional[PerformanceMonitor] = None):
        self.monitor = monitor

    def extract_features(
        self,
        telemetry: Optional[Telemetry],
        laps: Optional[Sequence[Lap]] = None,
        activity_id: int = 0,
    ) -> DerivedFeatures:
        if telemetry is None:
            raise StreamProcessingError(
                StreamErrorKind.data_corrupted,
                "stream data is missing",
                activity_id=activity_id,
                processing_mode="derived",
            )

        size = len(telemetry.time or [])
        timer = self.monitor.start_operation("extract_features", size) if self.monitor else None
        logger.info(f"Extracting derived features for activity {activity_id} ({size} time points)")

        try:
            lap_analysis = None
            if laps:
                try:
                    lap_analysis = self.extract_lap_features(telemetry, laps)
                except (StreamProcessingError, ValueError, IndexError, TypeError) as e:
                    logger.warning(f"Lap analysis failed for activity {activity_id}: {e}")

            features = DerivedFeatures(
                activity_id=activity_id,
                summary=feature_summary(telemetry),
                statistics=stream_statistics(telemetry),
                inflection_points=extract_inflection_points(telemetry),
                trends=extract_trends(telemetry),
                spikes=extract_spikes(telemetry),
                sample_data=sample_data(telemetry),
                correlations=correlations(telemetry),
                lap_analysis=lap_analysis,
            )
        except Exception as e:
            if timer:
                timer.end(e)
            raise

        if timer:
            timer.end()
        logger.info(
            f"Derived features for activity {activity_id}: "
            f"{len(features.inflection_points)} inflection points, "
            f"{len(features.trends)} trends, {len(features.spikes)} spikes"
        )
        return features

    def extract_lap_features(self, telemetry: Telemetry, laps: Optional[Sequence[Lap]]) -> LapAnalysis:
        if telemetry is None or not laps:
            raise StreamProcessingError(
                StreamErrorKind.data_corrupted,
                "insufficient data for lap analysis",
            )
        logger.info(f"Extracting lap features for {len(laps)} laps")
        return analyze_lap_by_lap(telemetry, laps)
