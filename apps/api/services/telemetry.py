"""
Activity telemetry model.

Telemetry is a set of parallel sequences keyed by Strava stream type.
Index i denotes the same sampling instant across sequences, but a sensor
can drop out so sequences may differ in length or be absent entirely.
Every consumer bound-checks per sequence.

Time is assumed non-decreasing. Nothing here re-sorts it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional


# Canonical stream type order (also the order stream types are listed in output)
STREAM_TYPES = [
    "time", "distance", "heartrate", "watts", "cadence", "altitude",
    "velocity_smooth", "temp", "grade_smooth", "moving", "latlng",
]

# Integer physiological channels: zero means "no reading"
INT_STREAMS = {"heartrate", "watts", "cadence", "temp"}


@dataclass
class Telemetry:
    """Parallel per-sample sequences for one activity. Absent channels are None."""
    time: Optional[List[int]] = None
    distance: Optional[List[float]] = None
    heartrate: Optional[List[int]] = None
    watts: Optional[List[int]] = None
    cadence: Optional[List[int]] = None
    altitude: Optional[List[float]] = None
    velocity_smooth: Optional[List[float]] = None
    temp: Optional[List[int]] = None
    grade_smooth: Optional[List[float]] = None
    moving: Optional[List[bool]] = None
    latlng: Optional[List[List[float]]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Telemetry":
        """Build from {type: [...]} or Strava key_by_type {type: {"data": [...]}}.

        Unknown stream types are ignored.
        """
        kwargs: Dict[str, Any] = {}
        for stream_type, payload in (data or {}).items():
            if stream_type not in STREAM_TYPES:
                continue
            if isinstance(payload, dict):
                payload = payload.get("data")
            if isinstance(payload, list):
                kwargs[stream_type] = list(payload)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, List[Any]]:
        """Present channels only, in canonical order."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name)
        }

    def to_json(self) -> str:
        """Compact canonical serialization (used for size estimation)."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def available_stream_types(self) -> List[str]:
        return [t for t in STREAM_TYPES if getattr(self, t)]

    def count_data_points(self) -> int:
        """Longest channel length."""
        return max((len(getattr(self, t) or []) for t in STREAM_TYPES), default=0)

    def time_range(self) -> Optional[tuple]:
        if not self.time:
            return None
        return (self.time[0], self.time[-1])


@dataclass
class Lap:
    """One recorded lap. start_index/end_index are inclusive sample indices."""
    start_index: int
    end_index: int
    name: str = ""
    lap_index: int = 0
    elapsed_time: int = 0
    moving_time: int = 0
    distance: float = 0.0
    average_speed: float = 0.0
    max_speed: float = 0.0
    average_heartrate: float = 0.0
    max_heartrate: float = 0.0
    average_watts: float = 0.0
    max_watts: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lap":
        """Build from a Strava lap object."""
        return cls(
            start_index=int(data.get("start_index") or 0),
            end_index=int(data.get("end_index") or 0),
            name=data.get("name") or "",
            lap_index=int(data.get("lap_index") or 0),
            elapsed_time=int(data.get("elapsed_time") or 0),
            moving_time=int(data.get("moving_time") or 0),
            distance=float(data.get("distance") or 0.0),
            average_speed=float(data.get("average_speed") or 0.0),
            max_speed=float(data.get("max_speed") or 0.0),
            average_heartrate=float(data.get("average_heartrate") or 0.0),
            max_heartrate=float(data.get("max_heartrate") or 0.0),
            average_watts=float(data.get("average_watts") or 0.0),
            max_watts=float(data.get("max_watts") or 0.0),
        )


def paired(a: Optional[List[Any]], b: Optional[List[Any]]) -> int:
    """Length of the index range shared by two channels."""
    return min(len(a or []), len(b or []))
