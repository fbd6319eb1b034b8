"""
Unified Stream Processor

Paginated get-activity-streams flow:

    1. validate the request (invalid_request on any violation)
    2. page_size < 0: fetch everything; raw mode over budget is context_exceeded
    3. otherwise shrink the page to the remaining context, estimate the page
       count, reject out-of-range pages and fetch the requested slice
    4. hand the slice to the dispatcher (which owns mode fallback); derived
       mode also gets laps, from the request or a best-effort lap fetch,
       re-indexed to the page
    5. wrap it into a StreamPage with navigation instructions

Every failure is returned as a rendered error result; nothing raises out of
process_request.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from core.config import StreamConfig, get_stream_config
from schemas import StreamRequest
from services.fetch_deadline import FetchCancelledError, FetchDeadline
from services.processing_mode_dispatcher import SUPPORTED_MODES, ProcessingMode, ProcessingModeDispatcher
from services.strava_streams import TelemetryFetchError
from services.stream_errors import StreamErrorKind, StreamProcessingError
from services.stream_monitoring import OperationLog, PerformanceMonitor
from services.stream_output_formatter import format_stream_page, navigation_instructions
from services.stream_pagination import FetchStreams, StreamPage, StreamPaginator, slice_laps
from services.stream_processor import ProcessedStreamResult
from services.telemetry import STREAM_TYPES, Lap, Telemetry

logger = logging.getLogger(__name__)

# Share of the remaining context a single page may use
PAGE_CONTEXT_SHARE = 0.8

FULL_DATASET_INSTRUCTIONS = "Full dataset processed. No pagination needed."

# fetch_laps(activity_id, deadline=None) -> List[Lap]
FetchLaps = Callable[..., List[Lap]]


def fetch_error(
    error: BaseException,
    message: str,
    request: StreamRequest,
) -> StreamProcessingError:
    """Map a telemetry source failure to strava_api_failure, keeping its category."""
    stream_error = StreamProcessingError(
        StreamErrorKind.strava_api_failure,
        message,
        activity_id=request.activity_id,
        processing_mode=request.processing_mode,
        original_error=error,
    ).with_context("resolution", request.resolution)

    if isinstance(error, TelemetryFetchError):
        stream_error.with_context("category", error.category)
        if error.status_code:
            stream_error.with_context("status_code", error.status_code)
        retry_after = getattr(error, "retry_after_s", None)
        if retry_after is not None:
            stream_error.with_context("retry_after_s", retry_after)
    elif isinstance(error, FetchCancelledError):
        stream_error.with_context("category", error.reason)
    return stream_error


class UnifiedStreamProcessor:
    def __init__(
        self,
        fetch: FetchStreams,
        dispatcher: Optional[ProcessingModeDispatcher] = None,
        paginator: Optional[StreamPaginator] = None,
        config: Optional[StreamConfig] = None,
        monitor: Optional[PerformanceMonitor] = None,
        operation_log: Optional[OperationLog] = None,
        fetch_laps: Optional[FetchLaps] = None,
    ):
        self.fetch = fetch
        self.fetch_laps = fetch_laps
        self.config = config or get_stream_config()
        self.paginator = paginator or StreamPaginator(self.config)
        self.monitor = monitor
        self.operation_log = operation_log
        self.dispatcher = dispatcher or ProcessingModeDispatcher(monitor=monitor, operation_log=operation_log)

    @classmethod
    def for_source(cls, source, **kwargs) -> "UnifiedStreamProcessor":
        """Build around a telemetry source exposing fetch_streams and fetch_laps."""
        return cls(source.fetch_streams, fetch_laps=source.fetch_laps, **kwargs)

    # -----------------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------------

    def validate_request(self, request: StreamRequest) -> StreamRequest:
        """Return a normalized copy of request or raise invalid_request."""
        problem = None
        page_size = request.page_size if request.page_size != 0 else self.config.default_page_size

        if request.activity_id <= 0:
            problem = "activity_id must be positive"
        elif not request.stream_types:
            problem = "stream_types cannot be empty"
        elif request.page_number < 1 and page_size >= 0:
            problem = "page_number must be >= 1 for paginated requests"
        elif page_size > self.config.max_page_size:
            problem = f"page_size cannot exceed {self.config.max_page_size}"
        elif request.resolution not in self.config.resolutions:
            problem = f"invalid resolution: {request.resolution}"
        elif request.processing_mode not in SUPPORTED_MODES:
            problem = f"invalid processing_mode: {request.processing_mode}"
        elif request.processing_mode == ProcessingMode.ai_summary.value and not request.summary_prompt.strip():
            problem = "summary_prompt is required for ai-summary mode"

        if problem:
            raise StreamProcessingError(
                StreamErrorKind.invalid_request,
                problem,
                activity_id=request.activity_id,
                processing_mode=request.processing_mode,
            ).with_context("page_number", request.page_number) \
             .with_context("page_size", request.page_size) \
             .with_context("stream_types", list(request.stream_types))

        unknown = [t for t in request.stream_types if t not in STREAM_TYPES]
        if unknown:
            logger.info(f"Ignoring unknown stream types for activity {request.activity_id}: {unknown}")
        return request.model_copy(update={"page_size": page_size})

    def would_exceed_context(self, page_size: int, stream_type_count: int, current_context_tokens: int) -> bool:
        estimated = self.paginator.estimate_page_tokens(page_size, stream_type_count)
        available = self.config.max_context_tokens - current_context_tokens
        return estimated > int(available * PAGE_CONTEXT_SHARE)

    # -----------------------------------------------------------------------
    # Request flow
    # -----------------------------------------------------------------------

    def process_request(
        self,
        request: StreamRequest,
        current_context_tokens: int = 0,
        deadline: Optional[FetchDeadline] = None,
    ) -> ProcessedStreamResult:
        started = time.monotonic()
        tool_call_id = request.tool_call_id or f"streams_{request.activity_id}"
        error: Optional[StreamProcessingError] = None
        try:
            request = self.validate_request(request)
            if request.page_size < 0:
                result = self._process_full_dataset(request, tool_call_id, current_context_tokens, deadline)
            else:
                result = self._process_page(request, tool_call_id, current_context_tokens, deadline)
        except Exception as e:
            error = StreamProcessingError.wrap(e)
            result = self.dispatcher.stream_processor.handle_processing_error(
                error, request.activity_id, request.processing_mode, tool_call_id=tool_call_id
            )
        self._record(request, started, error)
        return result

    def _laps_for(self, request: StreamRequest, deadline: Optional[FetchDeadline]) -> Optional[List[Lap]]:
        """Request-supplied laps, else a best-effort fetch for derived mode."""
        if request.laps:
            return [lap.to_lap() for lap in request.laps]
        if self.fetch_laps is None or request.processing_mode != ProcessingMode.derived.value:
            return None
        try:
            return self.fetch_laps(request.activity_id, deadline=deadline) or None
        except (TelemetryFetchError, FetchCancelledError) as e:
            logger.warning(f"Lap fetch failed for activity {request.activity_id}, continuing without laps: {e}")
            return None

    def _fetch(self, request: StreamRequest, deadline: Optional[FetchDeadline], message: str) -> Telemetry:
        try:
            return self.fetch(request.activity_id, list(request.stream_types), request.resolution, deadline=deadline)
        except (TelemetryFetchError, FetchCancelledError) as e:
            raise fetch_error(e, message, request) from e

    def _process_full_dataset(
        self,
        request: StreamRequest,
        tool_call_id: str,
        current_context_tokens: int,
        deadline: Optional[FetchDeadline],
    ) -> ProcessedStreamResult:
        logger.info(f"Processing full dataset request for activity {request.activity_id}")
        telemetry = self._fetch(request, deadline, "Failed to retrieve full stream data from Strava API")

        estimated = self.paginator.estimate_tokens(telemetry)
        available = self.config.max_context_tokens - current_context_tokens
        if estimated > available and request.processing_mode == ProcessingMode.raw.value:
            raise StreamProcessingError(
                StreamErrorKind.context_exceeded,
                f"Full dataset too large for raw mode ({estimated} tokens estimated, {available} available)",
                activity_id=request.activity_id,
                processing_mode=request.processing_mode,
            ).with_data_size(estimated) \
             .with_available_tokens(available) \
             .with_context("suggested_modes", ["derived", "ai-summary"])

        laps = self._laps_for(request, deadline)
        result = self._dispatch(request, telemetry, laps, tool_call_id, current_context_tokens, deadline)
        page = StreamPage(
            activity_id=request.activity_id,
            page_number=1,
            total_pages=1,
            processing_mode=result.processing_mode,
            data=result.content,
            time_range=telemetry.time_range(),
            instructions=FULL_DATASET_INSTRUCTIONS,
            has_next_page=False,
            estimated_tokens=estimated,
        )
        return self._page_result(result, page)

    def _process_page(
        self,
        request: StreamRequest,
        tool_call_id: str,
        current_context_tokens: int,
        deadline: Optional[FetchDeadline],
    ) -> ProcessedStreamResult:
        page_size = request.page_size
        stream_count = len(request.stream_types)
        if self.would_exceed_context(page_size, stream_count, current_context_tokens):
            available = self.config.max_context_tokens - current_context_tokens
            page_size = self.paginator.optimal_page_size(available)
            logger.info(f"Adjusted page size to {page_size} based on available context")
            request = request.model_copy(update={"page_size": page_size})

        try:
            total_pages = self.paginator.estimate_total_pages(
                self.fetch, request.activity_id, request.stream_types,
                request.resolution, page_size, deadline=deadline,
            )
        except (TelemetryFetchError, FetchCancelledError) as e:
            raise fetch_error(e, "Failed to estimate total pages", request) from e

        if request.page_number > total_pages:
            raise StreamProcessingError(
                StreamErrorKind.invalid_request,
                f"Invalid page number {request.page_number} (total pages: {total_pages})",
                activity_id=request.activity_id,
                processing_mode=request.processing_mode,
            ).with_context("requested_page", request.page_number) \
             .with_context("total_pages", total_pages) \
             .with_context("page_size", page_size)

        try:
            telemetry = self.paginator.request_data_chunk(
                self.fetch, request.activity_id, request.stream_types, request.resolution,
                request.page_number, page_size, deadline=deadline,
            )
        except (TelemetryFetchError, FetchCancelledError) as e:
            raise fetch_error(e, "Failed to retrieve stream data from Strava API", request) from e

        start = (request.page_number - 1) * page_size
        laps = slice_laps(self._laps_for(request, deadline), start, start + page_size)
        result = self._dispatch(request, telemetry, laps, tool_call_id, current_context_tokens, deadline)
        page = StreamPage(
            activity_id=request.activity_id,
            page_number=request.page_number,
            total_pages=total_pages,
            processing_mode=result.processing_mode,
            data=result.content,
            time_range=telemetry.time_range(),
            has_next_page=request.page_number < total_pages,
            estimated_tokens=self.paginator.estimate_page_tokens(page_size, stream_count),
        )
        page.instructions = navigation_instructions(page)
        return self._page_result(result, page)

    def _dispatch(
        self,
        request: StreamRequest,
        telemetry: Telemetry,
        laps: Optional[List[Lap]],
        tool_call_id: str,
        current_context_tokens: int,
        deadline: Optional[FetchDeadline],
    ) -> ProcessedStreamResult:
        return self.dispatcher.dispatch(
            telemetry,
            request.processing_mode,
            request.activity_id,
            tool_call_id,
            summary_prompt=request.summary_prompt,
            laps=laps,
            current_context_tokens=current_context_tokens,
            deadline=deadline,
        )

    def _page_result(self, result: ProcessedStreamResult, page: StreamPage) -> ProcessedStreamResult:
        # Rendered errors and option menus are returned as-is, not wrapped into a page
        if result.processing_mode == "error" or result.options:
            return result
        return ProcessedStreamResult(
            tool_call_id=result.tool_call_id,
            content=format_stream_page(page),
            processing_mode=result.processing_mode,
            data=page,
        )

    def _record(self, request: StreamRequest, started: float, error: Optional[StreamProcessingError]) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        if self.monitor is not None:
            self.monitor.record("paginated_stream_request", duration_ms, max(request.page_size, 0), error)
        if self.operation_log is not None:
            self.operation_log.record(
                "paginated_stream_request",
                activity_id=request.activity_id,
                duration_ms=duration_ms,
                data_size=max(request.page_size, 0),
                processing_mode=request.processing_mode,
                error=error,
                metadata={"page_number": request.page_number, "resolution": request.resolution},
            )
