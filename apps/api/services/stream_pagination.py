"""
Token Budget and Pagination

Estimates how many model tokens a telemetry payload costs without an exact
tokenizer and slices parallel channels into pages that fit the remaining
context.

Token estimate: compact JSON byte length * token_per_char_ratio
(0.25 by default, i.e. ~4 characters per token).

A page_size of -1 means "the full dataset": no slicing, one page.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.config import StreamConfig, get_stream_config
from services.fetch_deadline import FetchDeadline, check_deadline
from services.telemetry import STREAM_TYPES, Lap, Telemetry

logger = logging.getLogger(__name__)

FULL_DATASET = -1
MIN_PAGE_SIZE = 100
SAFETY_MARGIN = 0.8  # use 80% of available tokens
CHARS_PER_SAMPLE = 4
PAGE_OVERHEAD = 1.2  # JSON structure and formatting

# Sample count of a resolution relative to "low"
RESOLUTION_MULTIPLIERS = {"low": 1, "medium": 3, "high": 8}
DEFAULT_RESOLUTION_MULTIPLIER = 3

USAGE_ESTIMATE_PAGE_SIZES = (500, 1000, 2000, 5000)

# fetch(activity_id, stream_types, resolution, deadline=None) -> Telemetry
FetchStreams = Callable[..., Telemetry]


@dataclass
class StreamPage:
    activity_id: int
    page_number: int
    total_pages: int
    processing_mode: str
    data: Any = None
    time_range: Optional[Tuple[int, int]] = None
    instructions: str = ""
    has_next_page: bool = False
    estimated_tokens: int = 0


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

class StreamPaginator:
    def __init__(self, config: Optional[StreamConfig] = None):
        self.config = config or get_stream_config()

    def estimate_tokens(self, telemetry: Optional[Telemetry]) -> int:
        if telemetry is None:
            return 0
        size = len(telemetry.to_json().encode("utf-8"))
        return int(size * self.config.token_per_char_ratio)

    def should_process(self, telemetry: Optional[Telemetry]) -> bool:
        """True when the payload does not fit the context budget as-is."""
        return self.estimate_tokens(telemetry) > self.config.max_context_tokens

    def optimal_page_size(self, available_tokens: int) -> int:
        """Largest page (in samples) that fits available_tokens, clamped to [100, max]."""
        usable = int(available_tokens * SAFETY_MARGIN)
        tokens_per_sample = CHARS_PER_SAMPLE * self.config.token_per_char_ratio
        size = int(usable / tokens_per_sample) if tokens_per_sample > 0 else self.config.max_page_size
        return max(MIN_PAGE_SIZE, min(size, self.config.max_page_size))

    def estimate_page_tokens(self, page_size: int, stream_type_count: int) -> int:
        raw_chars = CHARS_PER_SAMPLE * stream_type_count * page_size
        return int(raw_chars * PAGE_OVERHEAD * self.config.token_per_char_ratio)

    def token_usage_estimates(self, stream_type_count: int) -> Dict[int, int]:
        return {
            size: self.estimate_page_tokens(size, stream_type_count)
            for size in USAGE_ESTIMATE_PAGE_SIZES
        }

    # -----------------------------------------------------------------------
    # Upstream-backed operations
    # -----------------------------------------------------------------------

    def estimate_total_pages(
        self,
        fetch: FetchStreams,
        activity_id: int,
        stream_types: Sequence[str],
        resolution: str,
        page_size: int,
        deadline: Optional[FetchDeadline] = None,
    ) -> int:
        """Pages needed at page_size, extrapolated from a low-resolution fetch."""
        if page_size < 0:
            return 1
        if page_size == 0:
            page_size = self.config.default_page_size

        check_deadline(deadline, "estimate_total_pages")
        sample = fetch(activity_id, list(stream_types), "low", deadline=deadline)
        points = sample.count_data_points() if sample is not None else 0
        if points == 0:
            return 1

        multiplier = RESOLUTION_MULTIPLIERS.get(resolution, DEFAULT_RESOLUTION_MULTIPLIER)
        estimated = points * multiplier
        total = (estimated + page_size - 1) // page_size
        logger.debug(
            f"Activity {activity_id}: {points} low-res points, ~{estimated} at {resolution}, "
            f"{total} pages of {page_size}"
        )
        return max(1, total)

    def request_data_chunk(
        self,
        fetch: FetchStreams,
        activity_id: int,
        stream_types: Sequence[str],
        resolution: str,
        page_number: int,
        page_size: int,
        deadline: Optional[FetchDeadline] = None,
    ) -> Telemetry:
        """One page of telemetry. page_size < 0 returns the full dataset unchanged."""
        check_deadline(deadline, "request_data_chunk")
        full = fetch(activity_id, list(stream_types), resolution, deadline=deadline)
        if page_size < 0:
            return full

        start = max(0, (page_number - 1) * page_size)
        return slice_telemetry(full, start, start + page_size)


# ---------------------------------------------------------------------------
# Slicing
# ---------------------------------------------------------------------------

def slice_sequence(seq: Optional[List[Any]], start: int, end: int) -> Optional[List[Any]]:
    """seq[start:end] with absent -> None and out-of-range -> []."""
    if seq is None:
        return None
    start = max(0, start)
    if start >= len(seq) or end <= start:
        return []
    return seq[start:min(end, len(seq))]


def slice_telemetry(telemetry: Telemetry, start: int, end: int) -> Telemetry:
    kwargs = {
        f.name: slice_sequence(getattr(telemetry, f.name), start, end)
        for f in fields(telemetry)
        if f.name in STREAM_TYPES
    }
    return Telemetry(**kwargs)


def slice_laps(laps: Optional[Sequence[Lap]], start: int, end: int) -> Optional[List[Lap]]:
    """Laps overlapping samples [start, end), clipped and re-indexed to the page.

    Lap indices are absolute; a page begins at sample `start`. Laps entirely
    outside the page are dropped. Returns None when nothing overlaps so lap
    analysis falls back to distance segments.
    """
    if not laps:
        return None
    paged: List[Lap] = []
    for lap in laps:
        if lap.end_index < start or lap.start_index >= end:
            continue
        paged.append(replace(
            lap,
            start_index=max(lap.start_index, start) - start,
            end_index=min(lap.end_index, end - 1) - start,
        ))
    return paged or None
