"""Tests for the command-line entry point."""
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import main
from services.stream_processor import ProcessedStreamResult
from services.stream_summary import OpenAISummarizer
from services.telemetry import STREAM_TYPES


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Leave the root logger alone; setup_logging is asserted, not run."""
    with patch.object(main, "setup_logging") as setup:
        yield setup


class TestParseArgs:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("STRAVA_ACCESS_TOKEN", raising=False)
        args = main.parse_args(["123"])
        assert args.activity_id == 123
        assert args.streams.split(",") == list(STREAM_TYPES)
        assert (args.resolution, args.mode) == ("high", "auto")
        assert (args.page, args.page_size, args.context_tokens) == (1, 0, 0)
        assert args.timeout is None
        assert args.token is None

    def test_token_from_env(self, monkeypatch):
        monkeypatch.setenv("STRAVA_ACCESS_TOKEN", "tok_env")
        assert main.parse_args(["1"]).token == "tok_env"

    def test_unknown_mode_rejected(self):
        with pytest.raises(SystemExit):
            main.parse_args(["1", "--mode", "fancy"])


class TestBuildProcessor:
    def test_wires_source(self, monitor, operation_log):
        source = MagicMock()
        processor = main.build_processor(source, monitor, operation_log)
        assert processor.fetch is source.fetch_streams
        assert processor.fetch_laps is source.fetch_laps
        assert isinstance(processor.dispatcher.summarizer, OpenAISummarizer)


class TestMain:
    def test_missing_token(self, monkeypatch, capsys, _quiet_logging):
        monkeypatch.delenv("STRAVA_ACCESS_TOKEN", raising=False)
        assert main.main(["5"]) == 2
        assert "Missing Strava access token" in capsys.readouterr().err
        _quiet_logging.assert_called_once()

    @pytest.mark.parametrize("mode,exit_code", [("raw", 0), ("error", 1)])
    def test_exit_code_follows_result(self, capsys, mode, exit_code):
        processor = MagicMock()
        processor.process_request.return_value = ProcessedStreamResult(
            tool_call_id="streams_5", content="rendered output", processing_mode=mode,
        )
        with patch.object(main, "build_processor", return_value=processor):
            code = main.main(["5", "--token", "tok", "--streams", "time, heartrate", "--mode", "raw", "--page", "2"])

        assert code == exit_code
        assert capsys.readouterr().out.strip() == "rendered output"
        request = processor.process_request.call_args.args[0]
        assert request.activity_id == 5
        assert request.stream_types == ["time", "heartrate"]
        assert request.page_number == 2
        assert processor.process_request.call_args.kwargs["current_context_tokens"] == 0

    def test_full_dataset_end_to_end(self, capsys, small_telemetry):
        source = MagicMock()
        source.fetch_streams.return_value = small_telemetry
        with patch.object(main, "StravaStreamSource", return_value=source) as source_cls:
            code = main.main(["5", "--token", "tok", "--mode", "raw", "--page-size", "-1"])

        assert code == 0
        source_cls.assert_called_once_with("tok")
        assert "for Activity 5" in capsys.readouterr().out
        source.fetch_laps.assert_not_called()
