from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List

from services.telemetry import Lap


class LapPayload(BaseModel):
    """Strava lap object as delivered by the activity laps endpoint"""
    start_index: int
    end_index: int
    name: str = ""
    lap_index: int = 0
    elapsed_time: int = 0
    moving_time: int = 0
    distance: float = 0.0
    average_speed: float = 0.0
    max_speed: float = 0.0
    average_heartrate: Optional[float] = None
    max_heartrate: Optional[float] = None
    average_watts: Optional[float] = None
    max_watts: Optional[float] = None

    model_config = ConfigDict(extra="ignore")

    def to_lap(self) -> Lap:
        return Lap.from_dict(self.model_dump())


class StreamRequest(BaseModel):
    """Parameters of a get-activity-streams call.

    Range and mode checks live in UnifiedStreamProcessor.validate_request so
    violations surface as invalid_request results instead of schema errors.
    """
    activity_id: int
    stream_types: List[str] = Field(default_factory=list)
    resolution: str = "high"  # low, medium, high
    processing_mode: str = "auto"  # raw, derived, ai-summary, auto
    page_number: int = 1
    page_size: int = 0  # 0 = default page size, -1 = full dataset
    summary_prompt: str = ""
    tool_call_id: str = ""
    laps: Optional[List[LapPayload]] = None

    model_config = ConfigDict(extra="ignore")
