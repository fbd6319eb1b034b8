"""
Processing Mode Dispatcher

Routes telemetry to one of the processing modes and recovers from failures
with a fixed fallback chain:

    ai-summary -> derived -> raw
    derived    -> raw
    raw        -> derived
    anything else (auto, unknown) -> raw -> derived

A successful fallback is tagged "<mode>-fallback" and its content is
prefixed with a notice naming the failed mode. When every mode fails the
error is rendered with recovery suggestions and returned as a successful
result with processing_mode "error".
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from services.derived_features import DerivedFeaturesProcessor
from services.fetch_deadline import FetchDeadline
from services.stream_errors import StreamErrorKind, StreamProcessingError
from services.stream_monitoring import OperationLog, PerformanceMonitor
from services.stream_output_formatter import format_derived_features, format_stream_summary
from services.stream_processor import ProcessedStreamResult, StreamProcessor
from services.stream_summary import Summarizer
from services.telemetry import Lap, Telemetry

logger = logging.getLogger(__name__)


class ProcessingMode(str, Enum):
    raw = "raw"
    derived = "derived"
    ai_summary = "ai-summary"
    auto = "auto"


SUPPORTED_MODES = [m.value for m in ProcessingMode]

FALLBACK_CHAINS: Dict[str, Tuple[str, ...]] = {
    ProcessingMode.ai_summary.value: (ProcessingMode.derived.value, ProcessingMode.raw.value),
    ProcessingMode.derived.value: (ProcessingMode.raw.value,),
    ProcessingMode.raw.value: (ProcessingMode.derived.value,),
}
DEFAULT_FALLBACK_CHAIN: Tuple[str, ...] = (ProcessingMode.raw.value, ProcessingMode.derived.value)


def fallback_chain(mode: str) -> Tuple[str, ...]:
    return FALLBACK_CHAINS.get(mode, DEFAULT_FALLBACK_CHAIN)


def fallback_notice(mode: str, original_mode: str) -> str:
    return f"🔄 **Fallback Mode:** {mode} ({original_mode} mode failed)\n\n"


class ProcessingModeDispatcher:
    def __init__(
        self,
        stream_processor: Optional[StreamProcessor] = None,
        features_processor: Optional[DerivedFeaturesProcessor] = None,
        summarizer: Optional[Summarizer] = None,
        monitor: Optional[PerformanceMonitor] = None,
        operation_log: Optional[OperationLog] = None,
    ):
        self.stream_processor = stream_processor or StreamProcessor()
        self.features_processor = features_processor or DerivedFeaturesProcessor(monitor=monitor)
        self.summarizer = summarizer
        self.monitor = monitor
        self.operation_log = operation_log

    # -----------------------------------------------------------------------
    # Modes
    # -----------------------------------------------------------------------

    def supported_modes(self) -> List[str]:
        return list(SUPPORTED_MODES)

    def validate_mode(self, mode: str, activity_id: int = 0) -> None:
        if mode not in SUPPORTED_MODES:
            raise StreamProcessingError(
                StreamErrorKind.invalid_request,
                f"unsupported processing mode: {mode}",
                activity_id=activity_id,
                processing_mode=mode,
            ).with_context("requested_mode", mode).with_context("supported_modes", self.supported_modes())

    def _handlers(self) -> Dict[str, Callable[..., ProcessedStreamResult]]:
        return {
            ProcessingMode.raw.value: self._handle_raw,
            ProcessingMode.derived.value: self._handle_derived,
            ProcessingMode.ai_summary.value: self._handle_ai_summary,
            ProcessingMode.auto.value: self._handle_auto,
        }

    def _run_mode(
        self,
        mode: str,
        telemetry: Telemetry,
        activity_id: int,
        tool_call_id: str,
        summary_prompt: str,
        laps: Optional[Sequence[Lap]],
        current_context_tokens: int,
        deadline: Optional[FetchDeadline],
    ) -> ProcessedStreamResult:
        self.validate_mode(mode, activity_id)
        handler = self._handlers()[mode]
        return handler(
            telemetry,
            activity_id=activity_id,
            tool_call_id=tool_call_id,
            summary_prompt=summary_prompt,
            laps=laps,
            current_context_tokens=current_context_tokens,
            deadline=deadline,
        )

    def _handle_raw(self, telemetry: Telemetry, *, tool_call_id: str, **_) -> ProcessedStreamResult:
        return ProcessedStreamResult(
            tool_call_id=tool_call_id,
            content=self.stream_processor.format_raw(telemetry),
            processing_mode=ProcessingMode.raw.value,
            data=telemetry,
        )

    def _handle_derived(
        self,
        telemetry: Telemetry,
        *,
        activity_id: int,
        tool_call_id: str,
        laps: Optional[Sequence[Lap]] = None,
        **_,
    ) -> ProcessedStreamResult:
        features = self.features_processor.extract_features(telemetry, laps=laps, activity_id=activity_id)
        return ProcessedStreamResult(
            tool_call_id=tool_call_id,
            content=format_derived_features(features),
            processing_mode=ProcessingMode.derived.value,
            data=features,
        )

    def _handle_ai_summary(
        self,
        telemetry: Telemetry,
        *,
        activity_id: int,
        tool_call_id: str,
        summary_prompt: str = "",
        deadline: Optional[FetchDeadline] = None,
        **_,
    ) -> ProcessedStreamResult:
        if not summary_prompt or not summary_prompt.strip():
            raise StreamProcessingError(
                StreamErrorKind.invalid_request,
                "summary_prompt is required for ai-summary mode",
                activity_id=activity_id,
                processing_mode=ProcessingMode.ai_summary.value,
            ).with_context("missing_parameter", "summary_prompt")
        if self.summarizer is None:
            raise StreamProcessingError(
                StreamErrorKind.processing_failure,
                "AI summary processor not available",
                activity_id=activity_id,
                processing_mode=ProcessingMode.ai_summary.value,
            ).with_context("processor_type", "summary")

        summary = self.summarizer.summarize(telemetry, activity_id, summary_prompt, deadline=deadline)
        return ProcessedStreamResult(
            tool_call_id=tool_call_id,
            content=format_stream_summary(summary),
            processing_mode=ProcessingMode.ai_summary.value,
            data=summary,
        )

    def _handle_auto(
        self,
        telemetry: Telemetry,
        *,
        tool_call_id: str,
        current_context_tokens: int = 0,
        **_,
    ) -> ProcessedStreamResult:
        return self.stream_processor.process_stream_output(telemetry, tool_call_id, current_context_tokens)

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    def dispatch(
        self,
        telemetry: Optional[Telemetry],
        mode: str,
        activity_id: int,
        tool_call_id: str,
        summary_prompt: str = "",
        laps: Optional[Sequence[Lap]] = None,
        current_context_tokens: int = 0,
        deadline: Optional[FetchDeadline] = None,
    ) -> ProcessedStreamResult:
        """Run mode with fallback. Never raises; total failure is a rendered error."""
        mode = str(mode.value if isinstance(mode, ProcessingMode) else mode)
        started = time.monotonic()
        data_size = len(telemetry.time or []) if telemetry is not None else 0
        logger.info(f"Dispatching stream processing with mode: {mode}, activity: {activity_id}")

        if telemetry is None:
            error = StreamProcessingError(
                StreamErrorKind.data_corrupted,
                "stream data is missing",
                activity_id=activity_id,
                processing_mode=mode,
            ).with_context("validation_stage", "pre_processing")
            return self._fail(error, activity_id, mode, None, tool_call_id, started, data_size)

        run_args = dict(
            telemetry=telemetry,
            activity_id=activity_id,
            tool_call_id=tool_call_id,
            summary_prompt=summary_prompt,
            laps=laps,
            current_context_tokens=current_context_tokens,
            deadline=deadline,
        )

        try:
            result = self._run_mode(mode, **run_args)
            self._record(mode, activity_id, started, data_size, result.processing_mode)
            return result
        except Exception as e:
            original_error = StreamProcessingError.wrap(e)
            if not original_error.processing_mode:
                original_error.with_processing_mode(mode)
            logger.warning(
                f"{mode} mode failed for activity {activity_id}: {original_error}",
                extra={"activity_id": activity_id, "processing_mode": mode, "error_kind": original_error.kind.value},
            )

        for fallback_mode in fallback_chain(mode):
            logger.info(f"Attempting {fallback_mode} mode fallback for activity {activity_id}")
            try:
                result = self._run_mode(fallback_mode, **run_args)
            except Exception as e:
                logger.warning(f"{fallback_mode} fallback failed for activity {activity_id}: {e}")
                continue
            result.content = fallback_notice(fallback_mode, mode) + result.content
            result.processing_mode = f"{fallback_mode}-fallback"
            self._record(mode, activity_id, started, data_size, result.processing_mode,
                         metadata={"original_error": original_error.kind.value})
            return result

        logger.error(
            f"All processing failed for activity {activity_id} mode {mode}",
            extra={"activity_id": activity_id, "processing_mode": mode, "error_kind": original_error.kind.value},
        )
        return self._fail(original_error, activity_id, mode, telemetry, tool_call_id, started, data_size)

    def _fail(
        self,
        error: StreamProcessingError,
        activity_id: int,
        mode: str,
        telemetry: Optional[Telemetry],
        tool_call_id: str,
        started: float,
        data_size: int,
    ) -> ProcessedStreamResult:
        result = self.stream_processor.handle_processing_error(
            error, activity_id, mode, telemetry=telemetry, tool_call_id=tool_call_id
        )
        self._record(mode, activity_id, started, data_size, result.processing_mode, error=error)
        return result

    def _record(
        self,
        mode: str,
        activity_id: int,
        started: float,
        data_size: int,
        result_mode: str,
        error: Optional[BaseException] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        if self.monitor is not None:
            self.monitor.record(f"dispatch_{mode}", duration_ms, data_size, error)
        if self.operation_log is not None:
            self.operation_log.record(
                "dispatch",
                activity_id=activity_id,
                duration_ms=duration_ms,
                data_size=data_size,
                processing_mode=result_mode,
                error=error,
                metadata={"requested_mode": mode, **(metadata or {})},
            )
