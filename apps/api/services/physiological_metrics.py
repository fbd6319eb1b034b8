"""
Physiological Metrics

Elevation profile, normalized power, heart-rate drift and cross-channel
correlations computed from raw telemetry channels.

All functions bound-check per channel and return zeroed results when a
channel is missing or too short.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional, Sequence

from services.stream_features import linear_slope
from services.telemetry import Telemetry, paired

# Grade (%) above which consecutive steps form a climb segment
CLIMB_GRADE_PCT = 3.0
NP_ROLLING_SAMPLES = 30
NP_MIN_DURATION_S = 60
DRIFT_MIN_SAMPLES = 10


@dataclass(frozen=True)
class ClimbSegment:
    start_index: int
    end_index: int
    distance: float
    elevation_gain: float
    avg_grade: float
    max_grade: float


@dataclass(frozen=True)
class ElevationAnalysis:
    total_gain: float = 0.0
    total_loss: float = 0.0
    net_change: float = 0.0
    max_grade: float = 0.0
    min_grade: float = 0.0
    avg_grade: float = 0.0
    climb_segments: List[ClimbSegment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Correlations:
    power_heart_rate: float = 0.0
    speed_heart_rate: float = 0.0
    cadence_power: float = 0.0
    altitude_speed: float = 0.0
    temperature_heart_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Elevation
# ---------------------------------------------------------------------------

def _climb_segments(grades: List[float], altitude: Sequence[float], distance: Sequence[float]) -> List[ClimbSegment]:
    """Runs of consecutive steps with grade above CLIMB_GRADE_PCT (>= 2 steps).

    grades[k] is the grade of the step from sample k to sample k+1.
    """
    segments: List[ClimbSegment] = []
    run_start: Optional[int] = None

    def close(start: int, end_step: int) -> None:
        if end_step - start + 1 < 2:
            return
        end_index = end_step + 1
        run = grades[start:end_step + 1]
        segments.append(ClimbSegment(
            start_index=start,
            end_index=end_index,
            distance=float(distance[end_index]) - float(distance[start]),
            elevation_gain=float(altitude[end_index]) - float(altitude[start]),
            avg_grade=sum(run) / len(run),
            max_grade=max(run),
        ))

    for k, grade in enumerate(grades):
        if grade > CLIMB_GRADE_PCT:
            if run_start is None:
                run_start = k
        elif run_start is not None:
            close(run_start, k - 1)
            run_start = None
    if run_start is not None:
        close(run_start, len(grades) - 1)
    return segments


def elevation_analysis(
    altitude: Optional[Sequence[float]],
    distance: Optional[Sequence[float]] = None,
    times: Optional[Sequence[int]] = None,
) -> ElevationAnalysis:
    """Gain/loss/net from altitude; grades and climbs when distance lines up."""
    if not altitude or len(altitude) < 2:
        return ElevationAnalysis()

    gain = 0.0
    loss = 0.0
    for prev, cur in zip(altitude, altitude[1:]):
        delta = float(cur) - float(prev)
        if delta > 0:
            gain += delta
        else:
            loss += -delta
    net = float(altitude[-1]) - float(altitude[0])

    if not distance or len(distance) != len(altitude):
        return ElevationAnalysis(total_gain=gain, total_loss=loss, net_change=net)

    # Steps with no horizontal movement carry a zero grade
    grades: List[float] = []
    for k in range(len(altitude) - 1):
        dd = float(distance[k + 1]) - float(distance[k])
        if dd > 0:
            grades.append((float(altitude[k + 1]) - float(altitude[k])) / dd * 100)
        else:
            grades.append(0.0)

    return ElevationAnalysis(
        total_gain=gain,
        total_loss=loss,
        net_change=net,
        max_grade=max(grades),
        min_grade=min(grades),
        avg_grade=sum(grades) / len(grades),
        climb_segments=_climb_segments(grades, altitude, distance),
    )


# ---------------------------------------------------------------------------
# Normalized power
# ---------------------------------------------------------------------------

def normalized_power(power: Optional[Sequence[float]], times: Optional[Sequence[int]] = None) -> float:
    """30-sample rolling average, raised to the 4th power, averaged, 4th root.

    Returns 0 for fewer than 30 samples or less than a minute of data.
    """
    if not power or len(power) < NP_ROLLING_SAMPLES:
        return 0.0
    if times and len(times) >= 2 and (times[-1] - times[0]) < NP_MIN_DURATION_S:
        return 0.0

    data = [float(p or 0) for p in power]
    rolling: List[float] = []
    window_sum = sum(data[:NP_ROLLING_SAMPLES])
    rolling.append(window_sum / NP_ROLLING_SAMPLES)
    for i in range(NP_ROLLING_SAMPLES, len(data)):
        window_sum += data[i] - data[i - NP_ROLLING_SAMPLES]
        rolling.append(window_sum / NP_ROLLING_SAMPLES)

    mean_fourth = sum(max(r, 0.0) ** 4 for r in rolling) / len(rolling)
    return mean_fourth ** 0.25


# ---------------------------------------------------------------------------
# Heart rate drift
# ---------------------------------------------------------------------------

def heart_rate_drift(hr: Optional[Sequence[int]], times: Optional[Sequence[int]]) -> float:
    """Linear HR trend in bpm per hour over samples with a reading."""
    n = paired(hr, times)
    if n < DRIFT_MIN_SAMPLES:
        return 0.0

    values: List[float] = []
    ts: List[float] = []
    for i in range(n):
        if hr[i]:
            values.append(float(hr[i]))
            ts.append(float(times[i]))
    if len(values) < DRIFT_MIN_SAMPLES:
        return 0.0
    return linear_slope(values, ts) * 3600


# ---------------------------------------------------------------------------
# Correlations
# ---------------------------------------------------------------------------

def pearson(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Pearson r over the shared index range. 0 when undefined."""
    n = paired(a, b)
    if n < 2:
        return 0.0

    xs = [float(v or 0) for v in a[:n]]
    ys = [float(v or 0) for v in b[:n]]
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    cov = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    var_x = sum((x - mean_x) ** 2 for x in xs)
    var_y = sum((y - mean_y) ** 2 for y in ys)
    denom = math.sqrt(var_x * var_y)
    if denom == 0:
        return 0.0
    return cov / denom


def correlations(telemetry: Telemetry) -> Correlations:
    return Correlations(
        power_heart_rate=pearson(telemetry.watts, telemetry.heartrate),
        speed_heart_rate=pearson(telemetry.velocity_smooth, telemetry.heartrate),
        cadence_power=pearson(telemetry.cadence, telemetry.watts),
        altitude_speed=pearson(telemetry.altitude, telemetry.velocity_smooth),
        temperature_heart_rate=pearson(telemetry.temp, telemetry.heartrate),
    )
