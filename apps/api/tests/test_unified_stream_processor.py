"""Tests for the paginated get-activity-streams flow."""
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fixtures.stream_fixtures import make_laps
from schemas import StreamRequest
from services.fetch_deadline import FetchDeadline
from services.processing_mode_dispatcher import ProcessingModeDispatcher
from services.strava_streams import StravaNotFoundError, StravaRateLimitError, StravaUnauthorizedError
from services.stream_errors import StreamErrorKind, StreamProcessingError
from services.stream_pagination import StreamPage, StreamPaginator
from services.stream_processor import StreamProcessor
from services.telemetry import Telemetry
from services.unified_stream_processor import FULL_DATASET_INSTRUCTIONS, UnifiedStreamProcessor


def _telemetry(samples=250):
    return Telemetry(
        time=list(range(samples)),
        heartrate=[130 + (t % 20) for t in range(samples)],
    )


@pytest.fixture
def make_processor(stream_config, monitor, operation_log):
    def _make(telemetry=None, side_effect=None, fetch_laps=None):
        fetch = MagicMock(return_value=telemetry if telemetry is not None else _telemetry())
        if side_effect is not None:
            fetch.side_effect = side_effect
        dispatcher = ProcessingModeDispatcher(stream_processor=StreamProcessor(stream_config))
        processor = UnifiedStreamProcessor(
            fetch,
            dispatcher=dispatcher,
            paginator=StreamPaginator(stream_config),
            config=stream_config,
            monitor=monitor,
            operation_log=operation_log,
            fetch_laps=fetch_laps,
        )
        return processor, fetch
    return _make


def _request(**overrides):
    values = dict(
        activity_id=5,
        stream_types=["time", "heartrate"],
        resolution="low",
        processing_mode="raw",
        page_number=1,
        page_size=100,
    )
    values.update(overrides)
    return StreamRequest(**values)


class TestValidateRequest:
    @pytest.mark.parametrize("overrides,fragment", [
        ({"activity_id": 0}, "activity_id must be positive"),
        ({"stream_types": []}, "stream_types cannot be empty"),
        ({"page_number": 0}, "page_number must be >= 1"),
        ({"page_size": 6000}, "page_size cannot exceed 5000"),
        ({"resolution": "ultra"}, "invalid resolution"),
        ({"processing_mode": "fancy"}, "invalid processing_mode"),
        ({"processing_mode": "ai-summary"}, "summary_prompt is required"),
    ])
    def test_rejected_without_fetching(self, make_processor, overrides, fragment):
        processor, fetch = make_processor()
        result = processor.process_request(_request(**overrides))

        assert result.processing_mode == "error"
        assert result.data.kind == StreamErrorKind.invalid_request
        assert fragment in result.data.message
        fetch.assert_not_called()

    def test_default_page_size(self, make_processor):
        processor, _ = make_processor()
        normalized = processor.validate_request(_request(page_size=0))
        assert normalized.page_size == 1000

    def test_full_dataset_ignores_page_number(self, make_processor):
        processor, _ = make_processor()
        normalized = processor.validate_request(_request(page_size=-1, page_number=0))
        assert normalized.page_size == -1

    def test_raises_invalid_request(self, make_processor):
        processor, _ = make_processor()
        with pytest.raises(StreamProcessingError) as exc_info:
            processor.validate_request(_request(stream_types=[]))
        assert exc_info.value.context["stream_types"] == []


class TestPagedRequests:
    def test_middle_page(self, make_processor):
        processor, _ = make_processor()
        result = processor.process_request(_request(page_number=2))

        assert result.processing_mode == "raw"
        assert result.tool_call_id == "streams_5"
        page = result.data
        assert isinstance(page, StreamPage)
        assert (page.page_number, page.total_pages) == (2, 3)
        assert page.has_next_page is True
        assert page.time_range == (100, 199)
        assert result.content.startswith("📄 **Page 2 of 3** for Activity 5")
        assert "page_number=3" in result.content

    def test_last_page_is_complete(self, make_processor):
        processor, _ = make_processor()
        result = processor.process_request(_request(page_number=3, tool_call_id="call_7"))
        assert result.tool_call_id == "call_7"
        assert result.data.has_next_page is False
        assert result.data.time_range == (200, 249)
        assert "✅ **Complete:**" in result.content

    def test_page_beyond_total_is_invalid(self, make_processor):
        processor, _ = make_processor()
        result = processor.process_request(_request(page_number=5))
        assert result.processing_mode == "error"
        error = result.data
        assert error.kind == StreamErrorKind.invalid_request
        assert error.context["total_pages"] == 3
        assert error.context["requested_page"] == 5

    def test_page_shrinks_to_remaining_context(self, make_processor):
        processor, _ = make_processor()
        result = processor.process_request(_request(page_size=1000), current_context_tokens=14000)
        page = result.data
        assert page.total_pages == 1
        assert page.estimated_tokens == 1920

    def test_would_exceed_context(self, make_processor):
        processor, _ = make_processor()
        assert processor.would_exceed_context(1000, 2, 14000) is True
        assert processor.would_exceed_context(100, 2, 0) is False

    def test_laps_reach_derived_mode(self, make_processor):
        processor, _ = make_processor()
        laps = [
            {"start_index": 0, "end_index": 124, "name": "Out", "distance": 400.0},
            {"start_index": 125, "end_index": 249, "name": "Back", "distance": 400.0, "split": 2},
        ]
        result = processor.process_request(_request(processing_mode="derived", page_size=0, laps=laps))
        assert result.processing_mode == "derived"
        assert "Lap-by-Lap Analysis" in result.content
        assert "**Out:**" in result.content

    def test_laps_fetched_for_derived_mode(self, make_processor):
        fetch_laps = MagicMock(return_value=make_laps(250, 2))
        processor, _ = make_processor(fetch_laps=fetch_laps)
        result = processor.process_request(_request(processing_mode="derived", page_size=0))

        assert result.processing_mode == "derived"
        assert "Lap-by-Lap Analysis" in result.content
        assert "**Lap 2:**" in result.content
        fetch_laps.assert_called_once_with(5, deadline=None)

    def test_request_laps_skip_lap_fetch(self, make_processor):
        fetch_laps = MagicMock(return_value=make_laps(250, 2))
        processor, _ = make_processor(fetch_laps=fetch_laps)
        laps = [{"start_index": 0, "end_index": 249, "name": "Whole"}]
        result = processor.process_request(_request(processing_mode="derived", page_size=0, laps=laps))
        assert "**Whole:**" in result.content
        fetch_laps.assert_not_called()

    def test_lap_fetch_failure_is_ignored(self, make_processor):
        fetch_laps = MagicMock(side_effect=StravaUnauthorizedError("scope", status_code=403))
        processor, _ = make_processor(fetch_laps=fetch_laps)
        result = processor.process_request(_request(processing_mode="derived", page_size=0))
        assert result.processing_mode == "derived"
        assert "**Lap 1:**" not in result.content

    def test_raw_mode_does_not_fetch_laps(self, make_processor):
        fetch_laps = MagicMock(return_value=make_laps(250, 2))
        processor, _ = make_processor(fetch_laps=fetch_laps)
        processor.process_request(_request())
        fetch_laps.assert_not_called()

    def test_laps_reindexed_to_page(self, make_processor):
        processor, _ = make_processor(fetch_laps=MagicMock(return_value=make_laps(250, 2)))
        with patch.object(processor.dispatcher, "dispatch", wraps=processor.dispatcher.dispatch) as dispatch:
            processor.process_request(_request(processing_mode="derived", page_number=2))
        laps = dispatch.call_args.kwargs["laps"]
        assert [(lap.name, lap.start_index, lap.end_index) for lap in laps] == [
            ("Lap 1", 0, 24),
            ("Lap 2", 25, 99),
        ]

    def test_for_source(self, stream_config):
        source = MagicMock()
        processor = UnifiedStreamProcessor.for_source(source, config=stream_config)
        assert processor.fetch is source.fetch_streams
        assert processor.fetch_laps is source.fetch_laps

    def test_rate_limit_is_strava_failure(self, make_processor):
        error = StravaRateLimitError("429 Rate limited", retry_after_s=120, status_code=429)
        processor, _ = make_processor(side_effect=error)
        result = processor.process_request(_request())

        assert result.processing_mode == "error"
        stream_error = result.data
        assert stream_error.kind == StreamErrorKind.strava_api_failure
        assert stream_error.message == "Failed to estimate total pages"
        assert stream_error.context["category"] == "rate_limited"
        assert stream_error.context["retry_after_s"] == 120
        assert stream_error.context["status_code"] == 429
        assert stream_error.original_error is error

    def test_cancelled_deadline(self, make_processor):
        processor, fetch = make_processor()
        deadline = FetchDeadline()
        deadline.cancel()
        result = processor.process_request(_request(), deadline=deadline)

        assert result.data.kind == StreamErrorKind.strava_api_failure
        assert result.data.context["category"] == "cancelled"
        fetch.assert_not_called()


class TestFullDataset:
    def test_raw_over_budget_is_context_exceeded(self, make_processor, easy_run_telemetry):
        processor, _ = make_processor(telemetry=easy_run_telemetry)
        result = processor.process_request(_request(page_size=-1))

        assert result.processing_mode == "error"
        error = result.data
        assert error.kind == StreamErrorKind.context_exceeded
        assert error.data_size > 15000
        assert error.available_tokens == 15000
        assert error.context["suggested_modes"] == ["derived", "ai-summary"]

    def test_derived_over_budget_is_one_page(self, make_processor, easy_run_telemetry):
        processor, _ = make_processor(telemetry=easy_run_telemetry)
        result = processor.process_request(_request(page_size=-1, processing_mode="derived"))

        assert result.processing_mode == "derived"
        page = result.data
        assert (page.page_number, page.total_pages) == (1, 1)
        assert page.instructions == FULL_DATASET_INSTRUCTIONS
        assert FULL_DATASET_INSTRUCTIONS in result.content

    def test_auto_over_budget_returns_options(self, make_processor, easy_run_telemetry):
        processor, _ = make_processor(telemetry=easy_run_telemetry)
        result = processor.process_request(_request(page_size=-1, processing_mode="auto"))
        assert result.processing_mode == "auto"
        assert len(result.options) == 4
        assert result.data is easy_run_telemetry

    def test_small_raw_fits(self, make_processor):
        processor, fetch = make_processor()
        result = processor.process_request(_request(page_size=-1, resolution="high"))
        assert result.processing_mode == "raw"
        assert result.data.time_range == (0, 249)
        fetch.assert_called_once_with(5, ["time", "heartrate"], "high", deadline=None)

    def test_missing_activity(self, make_processor):
        processor, _ = make_processor(side_effect=StravaNotFoundError("Not found", status_code=404))
        result = processor.process_request(_request(page_size=-1))
        assert result.data.kind == StreamErrorKind.strava_api_failure
        assert result.data.message == "Failed to retrieve full stream data from Strava API"
        assert result.data.context["category"] == "not_found"


class TestRecording:
    def test_request_is_recorded(self, make_processor, monitor, operation_log):
        processor, _ = make_processor()
        processor.process_request(_request(page_number=2))

        assert monitor.get_operation_stats("paginated_stream_request")["count"] == 1
        entry = operation_log.by_operation("paginated_stream_request")[0]
        assert entry.success is True
        assert entry.data_size == 100
        assert entry.metadata == {"page_number": 2, "resolution": "low"}

    def test_failure_is_recorded(self, make_processor, monitor, operation_log):
        processor, _ = make_processor()
        processor.process_request(_request(activity_id=-1))
        assert monitor.get_metrics()["errors_by_kind"] == {"invalid_request": 1}
        assert operation_log.errors()[0].error_type == "invalid_request"
