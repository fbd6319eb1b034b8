"""
Stream pipeline entry point.

Configures logging, wires the Strava telemetry source into the unified
stream processor and runs one get-activity-streams request, printing the
rendered result.

    python main.py 123456 --mode derived --page-size -1
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

from core.config import get_stream_config
from core.logging import setup_logging
from schemas import StreamRequest
from services.fetch_deadline import FetchDeadline
from services.processing_mode_dispatcher import SUPPORTED_MODES, ProcessingModeDispatcher
from services.strava_streams import StravaStreamSource
from services.stream_monitoring import OperationLog, PerformanceMonitor
from services.stream_processor import StreamProcessor
from services.stream_summary import OpenAISummarizer
from services.telemetry import STREAM_TYPES
from services.unified_stream_processor import UnifiedStreamProcessor


def build_processor(
    source: StravaStreamSource,
    monitor: Optional[PerformanceMonitor] = None,
    operation_log: Optional[OperationLog] = None,
) -> UnifiedStreamProcessor:
    config = get_stream_config()
    dispatcher = ProcessingModeDispatcher(
        stream_processor=StreamProcessor(config),
        summarizer=OpenAISummarizer(),
        monitor=monitor,
        operation_log=operation_log,
    )
    return UnifiedStreamProcessor.for_source(
        source,
        dispatcher=dispatcher,
        config=config,
        monitor=monitor,
        operation_log=operation_log,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch and process Strava activity streams")
    parser.add_argument("activity_id", type=int)
    parser.add_argument("--streams", default=",".join(STREAM_TYPES), help="Comma-separated stream types")
    parser.add_argument("--resolution", default="high", choices=["low", "medium", "high"])
    parser.add_argument("--mode", default="auto", choices=list(SUPPORTED_MODES))
    parser.add_argument("--page", type=int, default=1)
    parser.add_argument("--page-size", type=int, default=0, help="0 = default, -1 = full dataset")
    parser.add_argument("--prompt", default="", help="Summary prompt for ai-summary mode")
    parser.add_argument("--context-tokens", type=int, default=0, help="Tokens already used in the conversation")
    parser.add_argument("--timeout", type=float, default=None, help="Overall fetch deadline in seconds")
    # No default for the token. Provide via env or explicit flag.
    parser.add_argument("--token", default=os.getenv("STRAVA_ACCESS_TOKEN"))
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()
    if not args.token:
        print("Missing Strava access token (--token or STRAVA_ACCESS_TOKEN)", file=sys.stderr)
        return 2

    request = StreamRequest(
        activity_id=args.activity_id,
        stream_types=[s.strip() for s in args.streams.split(",") if s.strip()],
        resolution=args.resolution,
        processing_mode=args.mode,
        page_number=args.page,
        page_size=args.page_size,
        summary_prompt=args.prompt,
    )
    with PerformanceMonitor() as monitor, OperationLog() as operation_log:
        processor = build_processor(StravaStreamSource(args.token), monitor, operation_log)
        result = processor.process_request(
            request,
            current_context_tokens=args.context_tokens,
            deadline=FetchDeadline(timeout_s=args.timeout),
        )
    print(result.content)
    return 1 if result.processing_mode == "error" else 0


if __name__ == "__main__":
    raise SystemExit(main())
