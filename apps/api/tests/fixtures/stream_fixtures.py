"""Synthetic telemetry generators for stream pipeline tests.

Each generator produces a dict in the plain {stream_type: [...]} form
accepted by Telemetry.from_dict:
    {"time": [...], "heartrate": [...], "velocity_smooth": [...], ...}

All generators are deterministic (no randomness).
"""
import math
from typing import Any, Dict, List

from services.telemetry import Lap, Telemetry


def make_easy_run_stream(
    duration_s: int = 3600,
    warmup_s: int = 600,
    cooldown_s: int = 300,
    steady_pace_m_s: float = 2.8,        # ~5:57/km
    warmup_start_pace_m_s: float = 2.0,  # ~8:20/km
    resting_hr: int = 60,
    steady_hr: int = 140,
    drift_hr_per_hour: float = 8.0,      # bpm/hr cardiac drift
    cadence_spm: int = 172,
) -> Dict[str, List]:
    """60-min easy run: warmup ramp → steady with gradual drift → cooldown.

    Flat course, every channel the same length, heart rate as whole bpm.
    """
    time = list(range(duration_s))
    heartrate = []
    velocity = []
    cadence = []
    distance = []
    cum_dist = 0.0

    for t in time:
        if t < warmup_s:
            frac = t / warmup_s
            v = warmup_start_pace_m_s + frac * (steady_pace_m_s - warmup_start_pace_m_s)
            hr = resting_hr + frac * (steady_hr - resting_hr)
        elif t < duration_s - cooldown_s:
            v = steady_pace_m_s
            hr = steady_hr + drift_hr_per_hour * ((t - warmup_s) / 3600.0)
        else:
            frac = (t - (duration_s - cooldown_s)) / cooldown_s
            v = steady_pace_m_s - frac * (steady_pace_m_s - warmup_start_pace_m_s)
            last_steady_hr = steady_hr + drift_hr_per_hour * ((duration_s - cooldown_s - warmup_s) / 3600.0)
            hr = last_steady_hr - frac * (last_steady_hr - resting_hr - 20)

        cum_dist += v
        velocity.append(round(v, 3))
        heartrate.append(int(round(hr)))
        cadence.append(cadence_spm)
        distance.append(round(cum_dist, 1))

    return {
        "time": time,
        "distance": distance,
        "heartrate": heartrate,
        "cadence": cadence,
        "altitude": [100.0] * duration_s,
        "velocity_smooth": velocity,
        "grade_smooth": [0.0] * duration_s,
        "moving": [True] * duration_s,
    }


def make_interval_ride_stream(
    reps: int = 5,
    warmup_s: int = 300,
    cooldown_s: int = 300,
    work_duration_s: int = 120,
    rest_duration_s: int = 120,
    work_watts: int = 320,
    rest_watts: int = 140,
    work_hr: int = 170,
    rest_hr: int = 135,
    work_speed_m_s: float = 11.0,
    rest_speed_m_s: float = 8.0,
) -> Dict[str, List]:
    """Bike intervals: warmup → (work+recovery)*N → cooldown, with power."""
    total_s = warmup_s + reps * (work_duration_s + rest_duration_s) + cooldown_s
    time = list(range(total_s))
    watts = []
    heartrate = []
    velocity = []
    cadence = []
    distance = []
    temp = []
    cum_dist = 0.0

    for t in time:
        if t < warmup_s:
            frac = t / warmup_s
            w = 100 + frac * (rest_watts - 100)
            hr = 100 + frac * (rest_hr - 100)
            v = rest_speed_m_s * (0.8 + 0.2 * frac)
            cad = 80
        elif t < total_s - cooldown_s:
            within_rep = (t - warmup_s) % (work_duration_s + rest_duration_s)
            if within_rep < work_duration_s:
                w, hr, v, cad = work_watts, work_hr, work_speed_m_s, 95
            else:
                w, hr, v, cad = rest_watts, rest_hr, rest_speed_m_s, 85
        else:
            frac = (t - (total_s - cooldown_s)) / cooldown_s
            w = rest_watts - frac * 40
            hr = rest_hr - frac * 20
            v = rest_speed_m_s * (1 - 0.2 * frac)
            cad = 80

        cum_dist += v
        watts.append(int(round(w)))
        heartrate.append(int(round(hr)))
        velocity.append(round(v, 3))
        cadence.append(cad)
        distance.append(round(cum_dist, 1))
        temp.append(22 + t // 600)

    return {
        "time": time,
        "distance": distance,
        "heartrate": heartrate,
        "watts": watts,
        "cadence": cadence,
        "altitude": [50.0] * total_s,
        "velocity_smooth": velocity,
        "temp": temp,
    }


def make_hill_stream(
    climb_s: int = 300,
    descent_s: int = 300,
    speed_m_s: float = 3.0,
    climb_grade_pct: float = 6.0,
) -> Dict[str, List]:
    """Single climb then descent at constant speed."""
    total_s = climb_s + descent_s
    time = list(range(total_s))
    distance = []
    altitude = []
    alt = 200.0
    cum_dist = 0.0

    for t in time:
        distance.append(round(cum_dist, 2))
        altitude.append(round(alt, 2))
        grade = climb_grade_pct if t < climb_s else -climb_grade_pct
        cum_dist += speed_m_s
        alt += speed_m_s * grade / 100.0

    return {
        "time": time,
        "distance": distance,
        "altitude": altitude,
        "velocity_smooth": [speed_m_s] * total_s,
        "latlng": [[45.0 + t * 1e-5, 7.0 + t * 2e-5] for t in time],
    }


def make_partial_stream(channels: List[str], duration_s: int = 1800) -> Dict[str, List]:
    """Stream with only the requested channels."""
    time = list(range(duration_s))
    result: Dict[str, List] = {"time": time}

    if "heartrate" in channels:
        result["heartrate"] = [140 + t // 300 for t in time]
    if "watts" in channels:
        result["watts"] = [200 + 10 * math.sin(t / 30.0) for t in time]
    if "velocity_smooth" in channels:
        result["velocity_smooth"] = [2.8] * duration_s
    if "cadence" in channels:
        result["cadence"] = [172] * duration_s
    if "distance" in channels:
        result["distance"] = [2.8 * t for t in time]
    if "altitude" in channels:
        result["altitude"] = [100.0] * duration_s

    return result


def make_small_telemetry(samples: int = 60) -> Telemetry:
    """A short activity that fits comfortably in the context budget."""
    return Telemetry.from_dict({
        "time": list(range(samples)),
        "heartrate": [120 + (t % 10) for t in range(samples)],
        "watts": [200 + (t % 7) * 5 for t in range(samples)],
        "velocity_smooth": [3.0 + (t % 5) * 0.1 for t in range(samples)],
        "altitude": [100.0 + t * 0.5 for t in range(samples)],
        "distance": [3.0 * t for t in range(samples)],
    })


def make_laps(sample_count: int, lap_count: int) -> List[Lap]:
    """Equal-length laps covering [0, sample_count)."""
    size = sample_count // lap_count
    laps = []
    for i in range(lap_count):
        start = i * size
        end = sample_count - 1 if i == lap_count - 1 else (i + 1) * size - 1
        laps.append(Lap(
            start_index=start,
            end_index=end,
            name=f"Lap {i + 1}",
            lap_index=i,
            elapsed_time=end - start,
            moving_time=end - start,
        ))
    return laps


def make_strava_streams_response(stream: Dict[str, List]) -> Dict[str, Dict[str, Any]]:
    """Strava key_by_type response body for a generated stream."""
    return {
        stream_type: {
            "type": stream_type,
            "data": data,
            "series_type": "time",
            "original_size": len(data),
            "resolution": "high",
        }
        for stream_type, data in stream.items()
    }
