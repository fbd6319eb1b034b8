"""
Stream Processor

Size-checks telemetry against the context budget and renders the three
outputs that do not need feature extraction:

- raw telemetry summary (within budget),
- the processing options menu (over budget),
- structured error messages with recovery suggestions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from core.config import StreamConfig, get_stream_config
from services.physiological_metrics import elevation_analysis
from services.stream_errors import StreamErrorKind, StreamProcessingError
from services.stream_output_formatter import format_stream_data
from services.stream_pagination import StreamPaginator
from services.stream_statistics import compute_int_stats
from services.telemetry import Telemetry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingOption:
    mode: str
    description: str
    command: str


PROCESSING_OPTIONS = (
    ProcessingOption(
        mode="raw",
        description="Get the actual stream data points (time, heart rate, power, etc.)",
        command="Best for: Detailed analysis, specific time intervals, technical examination",
    ),
    ProcessingOption(
        mode="derived",
        description="Get calculated features, statistics, and insights from the data",
        command="Best for: Performance analysis, training insights, pattern identification",
    ),
    ProcessingOption(
        mode="ai-summary",
        description="Get an AI-generated summary focusing on key findings (requires summary_prompt)",
        command="Best for: Quick overview, coaching insights, narrative understanding",
    ),
    ProcessingOption(
        mode="auto",
        description="Let the system choose the best approach based on data size",
        command="Best for: When unsure which mode to use",
    ),
)

MODE_EMOJI = {
    "raw": "🔍",
    "derived": "📈",
    "ai-summary": "🤖",
    "auto": "⚡",
}

ERROR_EMOJI = {
    StreamErrorKind.strava_api_failure: "🔌",
    StreamErrorKind.context_exceeded: "📏",
    StreamErrorKind.processing_failure: "⚠️",
    StreamErrorKind.invalid_request: "❌",
    StreamErrorKind.data_corrupted: "🔧",
}

RECOVERY_SUGGESTIONS = {
    StreamErrorKind.strava_api_failure: (
        "Check your Strava API connection and authentication",
        "Verify the activity ID exists and is accessible",
        "Try again in a few moments if this is a temporary API issue",
    ),
    StreamErrorKind.context_exceeded: (
        "Use pagination with smaller page_size (e.g., 500-1000 data points)",
        "Try 'derived' mode for statistical analysis instead of raw data",
        "Use 'ai-summary' mode for a condensed overview",
    ),
    StreamErrorKind.processing_failure: (
        "Try a different processing mode (raw, derived, or ai-summary)",
        "Use pagination to process data in smaller chunks",
        "Check if the activity has complete stream data",
    ),
    StreamErrorKind.invalid_request: (
        "Verify all required parameters are provided",
        "Check that activity_id is a valid positive integer",
        "Ensure processing_mode is one of: raw, derived, ai-summary, auto",
    ),
    StreamErrorKind.data_corrupted: (
        "Try requesting different stream types",
        "Use a different resolution (low, medium, high)",
        "Check if the activity was recorded properly in Strava",
    ),
}

DEFAULT_RECOVERY_SUGGESTIONS = (
    "Try a different processing mode",
    "Use pagination to reduce data size",
    "Contact support if the issue persists",
)


@dataclass
class ProcessedStreamResult:
    """Response envelope returned to the tool-calling layer."""
    tool_call_id: str
    content: str
    processing_mode: str = ""
    options: List[ProcessingOption] = field(default_factory=list)
    data: Any = None


def recovery_suggestions(kind: StreamErrorKind) -> List[str]:
    return list(RECOVERY_SUGGESTIONS.get(kind, DEFAULT_RECOVERY_SUGGESTIONS))


class StreamProcessor:
    def __init__(self, config: Optional[StreamConfig] = None, paginator: Optional[StreamPaginator] = None):
        self.config = config or get_stream_config()
        self.paginator = paginator or StreamPaginator(self.config)

    # -----------------------------------------------------------------------
    # Size checks
    # -----------------------------------------------------------------------

    def estimate_tokens(self, telemetry: Optional[Telemetry]) -> int:
        tokens = self.paginator.estimate_tokens(telemetry)
        logger.debug(f"Stream data size estimation: ~{tokens} tokens")
        return tokens

    def should_process(self, telemetry: Optional[Telemetry]) -> bool:
        return self.paginator.should_process(telemetry)

    def get_processing_options(self) -> List[ProcessingOption]:
        return list(PROCESSING_OPTIONS)

    # -----------------------------------------------------------------------
    # Outputs
    # -----------------------------------------------------------------------

    def process_stream_output(
        self,
        telemetry: Optional[Telemetry],
        tool_call_id: str,
        current_context_tokens: int = 0,
    ) -> ProcessedStreamResult:
        """Raw summary when the payload fits, otherwise the options menu."""
        if telemetry is None:
            raise StreamProcessingError(StreamErrorKind.data_corrupted, "stream data is missing")

        if not self.should_process(telemetry):
            return ProcessedStreamResult(
                tool_call_id=tool_call_id,
                content=self.format_raw(telemetry),
                processing_mode="raw",
            )

        options = self.get_processing_options()
        return ProcessedStreamResult(
            tool_call_id=tool_call_id,
            content=self.build_options_message(telemetry, options, current_context_tokens),
            processing_mode="auto",
            options=options,
            data=telemetry,
        )

    def format_raw(self, telemetry: Telemetry) -> str:
        return format_stream_data(telemetry, "raw")

    def build_options_message(
        self,
        telemetry: Telemetry,
        options: List[ProcessingOption],
        current_context_tokens: int = 0,
    ) -> str:
        estimated = self.estimate_tokens(telemetry)
        total_points = telemetry.count_data_points()
        available = self.config.max_context_tokens - current_context_tokens
        stream_count = len(telemetry.available_stream_types())

        lines = [
            "⚠️ **Output too large for context window**",
            "",
            f"The stream data contains {total_points} data points (~{estimated} tokens) which exceeds "
            f"the context window limit of {self.config.max_context_tokens} tokens.",
            "",
            "📊 **Processing Mode Options:**",
            "",
        ]
        for option in options:
            lines.append(f"{MODE_EMOJI.get(option.mode, '')} **{option.mode}** - {option.description}")
            lines.append(f"   {option.command}")
            lines.append("")

        lines.append("📏 **Token Usage Estimates:**")
        for size, tokens in self.paginator.token_usage_estimates(stream_count).items():
            lines.append(f"- Page size {size}: ~{tokens} tokens per page")
        lines.append(f"- Full dataset (-1): ~{estimated} tokens (requires processing)")

        if current_context_tokens > 0:
            lines.append("")
            lines.append(
                f"💡 **Current context usage:** {current_context_tokens} tokens ({available} remaining)"
            )
            lines.append(
                f"**Recommended page size:** {self.paginator.optimal_page_size(available)} "
                f"(fits comfortably in remaining context)"
            )

        lines.append("")
        lines.append(
            "💡 To proceed, call the get-activity-streams tool again with your preferred "
            "processing_mode parameter."
        )
        return "\n".join(lines)

    # -----------------------------------------------------------------------
    # Errors
    # -----------------------------------------------------------------------

    def handle_processing_error(
        self,
        error: BaseException,
        activity_id: int,
        processing_mode: str,
        telemetry: Optional[Telemetry] = None,
        tool_call_id: Optional[str] = None,
    ) -> ProcessedStreamResult:
        """Convert any failure into a successful result carrying the rendered error."""
        logger.warning(
            f"Stream processing error for activity {activity_id} (mode: {processing_mode}): {error}",
            extra={"activity_id": activity_id, "processing_mode": processing_mode, "tool_call_id": tool_call_id},
        )

        stream_error = StreamProcessingError.wrap(error)
        if not stream_error.activity_id:
            stream_error.with_activity_id(activity_id)
        if not stream_error.processing_mode:
            stream_error.with_processing_mode(processing_mode)
        if telemetry is not None and not stream_error.data_size:
            stream_error.with_data_size(self.estimate_tokens(telemetry))

        options = self.get_processing_options()
        stream_error.with_alternatives([o.mode for o in options])

        content = self.format_error_message(stream_error)
        if telemetry is not None:
            content += "\n" + self.fallback_summary(telemetry, stream_error.activity_id, stream_error.processing_mode)

        return ProcessedStreamResult(
            tool_call_id=tool_call_id or f"error_{activity_id}",
            content=content,
            processing_mode="error",
            options=options,
            data=stream_error,
        )

    def format_error_message(self, error: StreamProcessingError) -> str:
        lines = [
            f"{ERROR_EMOJI.get(error.kind, '⚠️')} **Stream Processing Error**",
            "",
            f"**Error:** {error.message}",
        ]
        if error.activity_id > 0:
            lines.append(f"**Activity ID:** {error.activity_id}")
        if error.processing_mode:
            lines.append(f"**Processing Mode:** {error.processing_mode}")
        if error.data_size > 0:
            lines.append(f"**Data Size:** ~{error.data_size} tokens")
        if error.available_tokens > 0:
            lines.append(f"**Available Context:** {error.available_tokens} tokens")

        if error.context:
            lines.append("")
            lines.append("**Additional Context:**")
            for key, value in error.context.items():
                lines.append(f"- {key}: {value}")

        alternatives = [
            option for option in PROCESSING_OPTIONS
            if option.mode in error.alternatives and option.mode != error.processing_mode
        ]
        if alternatives:
            lines.append("")
            lines.append("🔄 **Alternative Processing Methods:**")
            lines.append("")
            for option in alternatives:
                lines.append(f"{MODE_EMOJI.get(option.mode, '')} **{option.mode}** - {option.description}")
                lines.append(f"   {option.command}")
                lines.append("")
        else:
            lines.append("")

        lines.append("💡 **Recovery Suggestions:**")
        lines.extend(f"- {s}" for s in recovery_suggestions(error.kind))
        return "\n".join(lines) + "\n"

    def fallback_summary(self, telemetry: Optional[Telemetry], activity_id: int, failed_mode: str) -> str:
        """Basic stream facts for when every richer mode failed."""
        lines = [
            "🔄 **Fallback Stream Information**",
            "",
            f"**Activity ID:** {activity_id}",
            f"**Failed Processing Mode:** {failed_mode}",
            "**Status:** Providing basic stream information as fallback",
            "",
        ]
        if telemetry is None:
            lines.extend([
                "❌ **No stream data available**",
                "The activity may not have recorded stream data or there was an error retrieving it.",
                "",
                "**Suggestions:**",
                "- Verify the activity ID is correct",
                "- Check if the activity has GPS/sensor data recorded",
                "- Try requesting different stream types",
            ])
            return "\n".join(lines) + "\n"

        lines.append("📊 **Basic Stream Information:**")
        lines.append(f"- **Total Data Points:** {telemetry.count_data_points()}")
        lines.append(f"- **Estimated Size:** ~{self.estimate_tokens(telemetry)} tokens")
        lines.append(f"- **Available Stream Types:** {', '.join(telemetry.available_stream_types())}")
        time_range = telemetry.time_range()
        if time_range:
            duration = time_range[1] - time_range[0]
            lines.append(f"- **Duration:** {duration} seconds ({duration / 60:.1f} minutes)")

        lines.append("")
        lines.append("📈 **Basic Statistics:**")
        t = telemetry
        hr = compute_int_stats(t.heartrate)
        if hr.max > 0:
            lines.append(f"- **Heart Rate:** {hr.min:.0f}-{hr.max:.0f} bpm (avg: {hr.mean:.1f} bpm)")
        power = compute_int_stats(t.watts)
        if power.max > 0:
            lines.append(f"- **Power:** {power.min:.0f}-{power.max:.0f} watts (avg: {power.mean:.1f} watts)")
        if t.velocity_smooth:
            v = t.velocity_smooth
            lines.append(f"- **Speed:** {min(v):.2f}-{max(v):.2f} m/s (avg: {sum(v) / len(v):.2f} m/s)")
        if t.altitude:
            gain = elevation_analysis(t.altitude).total_gain
            lines.append(f"- **Elevation:** {min(t.altitude):.1f}-{max(t.altitude):.1f} m (gain: {gain:.1f} m)")

        lines.extend([
            "",
            "💡 **Next Steps:**",
            "- Try 'derived' mode for detailed statistical analysis",
            "- Use 'ai-summary' mode with a custom prompt for insights",
            "- Use pagination (page_size parameter) for large datasets",
        ])
        return "\n".join(lines) + "\n"

