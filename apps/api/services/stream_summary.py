"""
Stream Summary

AI-generated narrative summary of an activity's telemetry, driven by a
caller-supplied prompt. The model never sees raw arrays: telemetry is
reduced to a statistical digest (counts, per-metric stats and the derived
highlights) before it is sent.

Any failure (missing key, API error, empty response) raises
StreamProcessingError(processing_failure) so the dispatcher can fall back
to the derived or raw modes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from openai import OpenAI

from core.config import settings
from services.derived_features import (
    extract_inflection_points,
    extract_spikes,
    extract_trends,
    feature_summary,
)
from services.fetch_deadline import FetchCancelledError, FetchDeadline, check_deadline
from services.physiological_metrics import elevation_analysis
from services.stream_errors import StreamErrorKind, StreamProcessingError
from services.stream_statistics import (
    MetricStats,
    compute_boolean_stats,
    compute_float_stats,
    compute_int_stats,
)
from services.telemetry import Telemetry

logger = logging.getLogger(__name__)

# Highlights included in the digest per category
DIGEST_MAX_HIGHLIGHTS = 5

SYSTEM_PROMPT = """You are an expert sports data analyst specializing in endurance training. You will receive a statistical digest of time-series data from a training activity and a specific prompt about what to analyze.

Your task is to analyze the provided data and respond to the user's specific request. Focus on the data patterns, trends, and insights that directly address their question.

Provide your analysis in a clear, structured format using markdown. Be factual and data-driven in your response."""


@dataclass
class StreamSummary:
    activity_id: int
    summary_prompt: str
    summary: str
    tokens_used: int = 0
    model: str = ""


class Summarizer(Protocol):
    def summarize(
        self,
        telemetry: Telemetry,
        activity_id: int,
        prompt: str,
        deadline: Optional[FetchDeadline] = None,
    ) -> StreamSummary:
        ...


# ---------------------------------------------------------------------------
# Digest
# ---------------------------------------------------------------------------

def _stats_line(label: str, stats: MetricStats, unit: str, fmt: str = ".1f") -> str:
    return (
        f"{label}: {stats.min:{fmt}}-{stats.max:{fmt}} {unit} "
        f"(avg: {stats.mean:{fmt}}, median: {stats.median:{fmt}}, std dev: {stats.std_dev:{fmt}}, "
        f"samples: {stats.count})"
    )


def build_telemetry_digest(telemetry: Telemetry) -> str:
    """Text digest of the telemetry for the summarization prompt."""
    t = telemetry
    lines: List[str] = ["STREAM DATA DIGEST:", ""]
    lines.append(f"Total data points: {t.count_data_points()}")
    time_range = t.time_range()
    if time_range:
        lines.append(f"Duration: {time_range[1] - time_range[0]} seconds")
    lines.append(f"Available streams: {', '.join(t.available_stream_types())}")

    lines.extend(["", "DATA SUMMARY:"])
    if t.heartrate:
        stats = compute_int_stats(t.heartrate)
        if stats.count:
            lines.append(_stats_line("Heart Rate", stats, "bpm"))
    if t.watts:
        stats = compute_int_stats(t.watts)
        if stats.count:
            lines.append(_stats_line("Power", stats, "watts"))
    if t.velocity_smooth:
        stats = compute_float_stats(t.velocity_smooth)
        lines.append(
            f"Speed: {stats.min * 3.6:.1f}-{stats.max * 3.6:.1f} km/h "
            f"(avg: {stats.mean * 3.6:.1f} km/h)"
        )
    if t.cadence:
        stats = compute_int_stats(t.cadence)
        if stats.count:
            lines.append(_stats_line("Cadence", stats, "rpm"))
    if t.altitude:
        stats = compute_float_stats(t.altitude)
        elevation = elevation_analysis(t.altitude, t.distance, t.time)
        lines.append(
            f"Elevation: {stats.min:.1f}-{stats.max:.1f}m (avg: {stats.mean:.1f}m, "
            f"gain: {elevation.total_gain:.1f}m, loss: {elevation.total_loss:.1f}m)"
        )
    if t.temp:
        stats = compute_int_stats(t.temp)
        if stats.count:
            lines.append(_stats_line("Temperature", stats, "°C"))
    if t.distance:
        lines.append(f"Distance: {float(t.distance[-1]) - float(t.distance[0]):.0f}m")
    if t.moving:
        moving = compute_boolean_stats(t.moving)
        lines.append(f"Moving time: {moving.true_percent:.1f}% of samples")

    summary = feature_summary(t)
    if summary.normalized_power > 0:
        lines.append(f"Normalized power: {summary.normalized_power:.0f} watts")
    if summary.heart_rate_drift:
        lines.append(f"Heart rate drift: {summary.heart_rate_drift:+.1f} bpm/hour")

    trends = extract_trends(t)[:DIGEST_MAX_HIGHLIGHTS]
    spikes = extract_spikes(t)[:DIGEST_MAX_HIGHLIGHTS]
    inflections = extract_inflection_points(t)[:DIGEST_MAX_HIGHLIGHTS]
    if trends or spikes or inflections:
        lines.extend(["", "HIGHLIGHTS:"])
    for trend in trends:
        lines.append(
            f"- {trend.metric} {trend.direction.value} from {trend.start_time}s to {trend.end_time}s "
            f"(change {trend.magnitude:.1f}, confidence {trend.confidence:.2f})"
        )
    for spike in spikes:
        lines.append(f"- {spike.metric} spike at {spike.time}s: {spike.value:.1f} ({spike.magnitude:.1f}σ)")
    for point in inflections:
        lines.append(
            f"- {point.metric} {point.direction.value} at {point.time}s: {point.value:.1f} "
            f"(slope change {point.magnitude:.2f})"
        )

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------

class OpenAISummarizer:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.3,
        client: Optional[OpenAI] = None,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.STREAM_SUMMARY_MODEL
        self.max_tokens = max_tokens or settings.STREAM_SUMMARY_MAX_TOKENS
        self.temperature = temperature
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise StreamProcessingError(
                    StreamErrorKind.processing_failure,
                    "OPENAI_API_KEY not configured",
                    processing_mode="ai-summary",
                )
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def summarize(
        self,
        telemetry: Telemetry,
        activity_id: int,
        prompt: str,
        deadline: Optional[FetchDeadline] = None,
    ) -> StreamSummary:
        if telemetry is None:
            raise StreamProcessingError(
                StreamErrorKind.data_corrupted,
                "stream data is missing",
                activity_id=activity_id,
                processing_mode="ai-summary",
            )
        if not prompt or not prompt.strip():
            raise StreamProcessingError(
                StreamErrorKind.invalid_request,
                "summary prompt is required",
                activity_id=activity_id,
                processing_mode="ai-summary",
            )

        digest = build_telemetry_digest(telemetry)
        user_prompt = (
            f"Here is the stream data from activity {activity_id}:\n\n"
            f"{digest}\n\n"
            f"User's request: {prompt}\n\n"
            f"Please analyze this data and provide insights based on the user's specific request."
        )

        try:
            check_deadline(deadline, "stream summary")
            logger.info(f"Invoking LLM for stream summary of activity {activity_id} ({len(user_prompt)} chars)")
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except StreamProcessingError:
            raise
        except FetchCancelledError as e:
            raise StreamProcessingError(
                StreamErrorKind.processing_failure,
                f"summary aborted: {e}",
                activity_id=activity_id,
                processing_mode="ai-summary",
                original_error=e,
            ) from e
        except Exception as e:
            logger.error(f"OpenAI API error during stream summarization: {e}")
            raise StreamProcessingError(
                StreamErrorKind.processing_failure,
                "failed to generate AI summary",
                activity_id=activity_id,
                processing_mode="ai-summary",
                original_error=e,
            ) from e

        if not response.choices:
            raise StreamProcessingError(
                StreamErrorKind.processing_failure,
                "no response from AI summarization",
                activity_id=activity_id,
                processing_mode="ai-summary",
            )

        content = response.choices[0].message.content or ""
        tokens_used = response.usage.total_tokens if response.usage else 0
        logger.info(f"Generated AI summary for activity {activity_id} using {tokens_used} tokens")
        return StreamSummary(
            activity_id=activity_id,
            summary_prompt=prompt,
            summary=content,
            tokens_used=tokens_used,
            model=self.model,
        )
