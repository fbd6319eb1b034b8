"""Tests for the Strava telemetry source."""
import sys
from email.utils import formatdate
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fixtures.stream_fixtures import make_strava_streams_response
from services.fetch_deadline import FetchCancelledError, FetchDeadline
from services.strava_streams import (
    StravaNotFoundError,
    StravaRateLimitError,
    StravaStreamSource,
    StravaUnauthorizedError,
    StravaUnavailableError,
    TelemetryFetchError,
    parse_streams_payload,
)

NOW = 1_700_000_000.0


def _response(status_code=200, body=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = body
    return response


def _source(response=None):
    session = MagicMock()
    if response is not None:
        session.get.return_value = response
    source = StravaStreamSource(
        "token-abc", base_url="https://strava.test/api/v3/", timeout_s=10, session=session,
    )
    return source, session


@pytest.fixture(autouse=True)
def budget():
    with patch("services.strava_streams.acquire_read_budget", return_value=True) as mock_budget:
        yield mock_budget


class TestFetchStreams:
    def test_request_shape_and_telemetry(self):
        body = make_strava_streams_response({"time": [0, 1, 2], "heartrate": [120, 121, 122]})
        source, session = _source(_response(body=body))

        telemetry = source.fetch_streams(42, ["heartrate"], "medium")

        assert telemetry.time == [0, 1, 2]
        assert telemetry.heartrate == [120, 121, 122]
        args, kwargs = session.get.call_args
        assert args[0] == "https://strava.test/api/v3/activities/42/streams"
        assert kwargs["headers"] == {"Authorization": "Bearer token-abc"}
        assert kwargs["params"] == {"keys": "time,heartrate", "key_by_type": "true", "resolution": "medium"}
        assert kwargs["timeout"] == 10

    def test_unknown_types_dropped(self):
        body = make_strava_streams_response({"time": [0, 1]})
        source, session = _source(_response(body=body))
        source.fetch_streams(42, ["time", "smo2"])
        assert session.get.call_args.kwargs["params"]["keys"] == "time"

    def test_empty_payload_is_not_found(self):
        source, _ = _source(_response(body={}))
        with pytest.raises(StravaNotFoundError):
            source.fetch_streams(42, ["time"])

    def test_deadline_bounds_timeout(self):
        body = make_strava_streams_response({"time": [0, 1]})
        source, session = _source(_response(body=body))
        source.fetch_streams(42, ["time"], deadline=FetchDeadline(timeout_s=5))
        assert session.get.call_args.kwargs["timeout"] <= 5

    def test_cancelled_deadline_makes_no_request(self, budget):
        source, session = _source(_response(body={}))
        deadline = FetchDeadline()
        deadline.cancel()
        with pytest.raises(FetchCancelledError):
            source.fetch_streams(42, ["time"], deadline=deadline)
        session.get.assert_not_called()
        budget.assert_not_called()


class TestReadBudget:
    def test_exhausted_budget_raises_without_request(self, budget):
        budget.return_value = False
        source, session = _source(_response(body={}))
        with pytest.raises(StravaRateLimitError) as exc_info:
            source.fetch_streams(42, ["time"])
        assert exc_info.value.retry_after_s > 0
        assert exc_info.value.category == "rate_limited"
        session.get.assert_not_called()

    def test_redis_down_continues(self, budget):
        budget.return_value = None
        body = make_strava_streams_response({"time": [0, 1]})
        source, session = _source(_response(body=body))
        assert source.fetch_streams(42, ["time"]).time == [0, 1]
        session.get.assert_called_once()


class TestStatusMapping:
    def test_429_uses_retry_after(self):
        source, _ = _source(_response(status_code=429, headers={"Retry-After": "45"}))
        with pytest.raises(StravaRateLimitError) as exc_info:
            source.fetch_streams(42, ["time"])
        assert exc_info.value.retry_after_s == 45
        assert exc_info.value.status_code == 429

    def test_429_with_http_date_retry_after(self):
        reset_at = formatdate(NOW + 120, usegmt=True)
        source, _ = _source(_response(status_code=429, headers={"Retry-After": reset_at}))
        with patch("services.strava_streams.time.time", return_value=NOW):
            with pytest.raises(StravaRateLimitError) as exc_info:
                source.fetch_streams(42, ["time"])
        assert exc_info.value.retry_after_s == 120

    def test_429_with_garbage_retry_after_uses_window_reset(self):
        source, _ = _source(_response(status_code=429, headers={"Retry-After": "soon"}))
        with patch("services.strava_streams.seconds_until_window_reset", return_value=321):
            with pytest.raises(StravaRateLimitError) as exc_info:
                source.fetch_streams(42, ["time"])
        assert exc_info.value.retry_after_s == 321

    @pytest.mark.parametrize("status_code,error_type,category", [
        (401, StravaUnauthorizedError, "unauthorized"),
        (403, StravaUnauthorizedError, "unauthorized"),
        (404, StravaNotFoundError, "not_found"),
        (503, StravaUnavailableError, "unavailable"),
        (418, TelemetryFetchError, "upstream_error"),
    ])
    def test_error_statuses(self, status_code, error_type, category):
        source, _ = _source(_response(status_code=status_code))
        with pytest.raises(error_type) as exc_info:
            source.fetch_streams(42, ["time"])
        assert exc_info.value.category == category
        assert exc_info.value.status_code == status_code

    def test_timeout_is_unavailable(self):
        source, session = _source()
        session.get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(StravaUnavailableError):
            source.fetch_streams(42, ["time"])

    def test_connection_error_is_unavailable(self):
        source, session = _source()
        session.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(StravaUnavailableError):
            source.fetch_streams(42, ["time"])

    def test_malformed_json(self):
        response = _response()
        response.json.side_effect = ValueError("Expecting value")
        source, _ = _source(response)
        with pytest.raises(StravaUnavailableError):
            source.fetch_streams(42, ["time"])


class TestFetchLaps:
    def test_laps(self):
        body = [
            {"start_index": 0, "end_index": 599, "name": "Lap 1", "distance": 1609.3, "average_heartrate": 141.2},
            {"start_index": 600, "end_index": 1199, "name": "Lap 2", "distance": 1609.3},
        ]
        source, session = _source(_response(body=body))
        laps = source.fetch_laps(42)

        assert [lap.name for lap in laps] == ["Lap 1", "Lap 2"]
        assert laps[0].average_heartrate == pytest.approx(141.2)
        assert laps[1].average_heartrate == 0.0
        assert session.get.call_args.args[0] == "https://strava.test/api/v3/activities/42/laps"

    def test_non_list_body(self):
        source, _ = _source(_response(body={"message": "odd"}))
        assert source.fetch_laps(42) == []


class TestParseStreamsPayload:
    def test_list_form(self):
        data = [
            {"type": "time", "data": [0, 1]},
            {"type": "heartrate", "data": [120, 121]},
            {"type": "watts"},
            "junk",
        ]
        assert parse_streams_payload(data) == {"time": [0, 1], "heartrate": [120, 121]}

    def test_key_by_type_form(self):
        data = {"time": {"data": [0, 1]}, "distance": [0.0, 2.5], "bogus": 3}
        assert parse_streams_payload(data) == {"time": [0, 1], "distance": [0.0, 2.5]}

    def test_other(self):
        assert parse_streams_payload(None) == {}
