"""
Stream Processing Monitoring

Two collectors shared by the dispatcher and the paginated request flow:

- OperationLog: append-only record of stream operations, capped in memory
  and optionally mirrored to a daily JSON-lines file
  (stream_processing_YYYY-MM-DD.log).
- PerformanceMonitor: running per-operation duration and data-size
  aggregates, error counts by
  kind and an overall success rate.

Both are explicitly constructed, injected, and closed. Recording is
fire-and-forget: a collector failure is logged and never reaches the
caller.
"""

import json
import logging
import os
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from core.config import settings
from services.stream_errors import StreamErrorKind, StreamProcessingError

logger = logging.getLogger(__name__)


# =============================================================================
# OPERATION LOG
# =============================================================================

@dataclass
class LogEntry:
    timestamp: str
    level: str
    operation: str
    activity_id: int = 0
    duration_ms: float = 0.0
    data_size: int = 0
    processing_mode: str = ""
    success: bool = True
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OperationLog:
    """Capped, lock-guarded log of stream operations."""

    def __init__(self, log_dir: Optional[str] = None, max_entries: Optional[int] = None):
        self.log_dir = log_dir if log_dir is not None else settings.STREAM_OPERATION_LOG_DIR
        self.max_entries = max_entries or settings.STREAM_OPERATION_LOG_MAX_ENTRIES
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()
        self._file = None
        self._file_date: Optional[str] = None
        self._closed = False

    # --- lifecycle ---

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> "OperationLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- recording ---

    def _file_for_today(self):
        """Open (or roll over to) today's log file. Caller holds the lock."""
        if not self.log_dir:
            return None
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._file is not None and self._file_date == today:
            return self._file
        if self._file is not None:
            self._file.close()
        os.makedirs(self.log_dir, exist_ok=True)
        path = os.path.join(self.log_dir, f"stream_processing_{today}.log")
        self._file = open(path, "a", encoding="utf-8")
        self._file_date = today
        return self._file

    def record(
        self,
        operation: str,
        *,
        activity_id: int = 0,
        duration_ms: float = 0.0,
        data_size: int = 0,
        processing_mode: str = "",
        error: Optional[BaseException] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an entry. Never raises."""
        error_type = None
        if isinstance(error, StreamProcessingError):
            error_type = error.kind.value
        elif error is not None:
            error_type = type(error).__name__

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level="ERROR" if error is not None else "INFO",
            operation=operation,
            activity_id=activity_id,
            duration_ms=duration_ms,
            data_size=data_size,
            processing_mode=processing_mode,
            success=error is None,
            error_message=str(error) if error is not None else None,
            error_type=error_type,
            metadata=dict(metadata or {}),
        )

        try:
            with self._lock:
                if self._closed:
                    return
                self._entries.append(entry)
                overflow = len(self._entries) - self.max_entries
                if overflow > 0:
                    del self._entries[:overflow]

                handle = self._file_for_today()
                if handle is not None:
                    handle.write(json.dumps(entry.to_dict(), default=str) + "\n")
                    handle.flush()
        except OSError as e:
            logger.warning(f"Operation log write failed for {operation}: {e}")

    # --- queries ---

    def recent(self, limit: int = 50) -> List[LogEntry]:
        with self._lock:
            return list(self._entries[-limit:]) if limit > 0 else []

    def by_operation(self, operation: str) -> List[LogEntry]:
        with self._lock:
            return [e for e in self._entries if e.operation == operation]

    def errors(self) -> List[LogEntry]:
        with self._lock:
            return [e for e in self._entries if not e.success]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def report(self) -> Dict[str, Any]:
        """Totals, success rate and error breakdown over the retained entries."""
        with self._lock:
            entries = list(self._entries)

        total = len(entries)
        failures = [e for e in entries if not e.success]
        by_type: Dict[str, int] = defaultdict(int)
        for e in failures:
            by_type[e.error_type or "unknown"] += 1
        by_operation: Dict[str, int] = defaultdict(int)
        for e in entries:
            by_operation[e.operation] += 1

        return {
            "total_operations": total,
            "failed_operations": len(failures),
            "success_rate": (total - len(failures)) / total if total else 1.0,
            "errors_by_type": dict(by_type),
            "operations": dict(by_operation),
        }


# =============================================================================
# PERFORMANCE MONITOR
# =============================================================================

class OperationTimer:
    """Handle returned by PerformanceMonitor.start_operation."""

    def __init__(self, monitor: "PerformanceMonitor", operation: str, data_size: int):
        self._monitor = monitor
        self.operation = operation
        self.data_size = data_size
        self._started = time.monotonic()
        self._ended = False

    def end(self, error: Optional[BaseException] = None) -> float:
        """Record the operation. Returns elapsed milliseconds. Idempotent."""
        elapsed_ms = (time.monotonic() - self._started) * 1000
        if not self._ended:
            self._ended = True
            self._monitor.record(self.operation, elapsed_ms, self.data_size, error)
        return elapsed_ms


@dataclass
class OperationStats:
    """Running aggregate for one operation; constant size however many samples."""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    total_data_size: int = 0

    def add(self, duration_ms: float, data_size: int) -> None:
        if self.count == 0:
            self.min_ms = self.max_ms = duration_ms
        else:
            self.min_ms = min(self.min_ms, duration_ms)
            self.max_ms = max(self.max_ms, duration_ms)
        self.count += 1
        self.total_ms += duration_ms
        self.total_data_size += data_size


class PerformanceMonitor:
    def __init__(self):
        self._lock = threading.Lock()
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._errors_by_kind: Dict[str, int] = defaultdict(int)
        self._total = 0
        self._failed = 0

    def start_operation(self, operation: str, data_size: int = 0) -> OperationTimer:
        return OperationTimer(self, operation, data_size)

    @contextmanager
    def measure(self, operation: str, data_size: int = 0) -> Iterator[OperationTimer]:
        """Time a block; an exception is recorded as a failure and re-raised."""
        timer = self.start_operation(operation, data_size)
        try:
            yield timer
        except Exception as e:
            timer.end(e)
            raise
        timer.end()

    def record(
        self,
        operation: str,
        duration_ms: float,
        data_size: int = 0,
        error: Optional[BaseException] = None,
    ) -> None:
        with self._lock:
            self._total += 1
            self._stats[operation].add(duration_ms, data_size)
            if error is not None:
                self._failed += 1
                if isinstance(error, StreamProcessingError):
                    kind = error.kind.value
                else:
                    kind = StreamErrorKind.unknown.value
                self._errors_by_kind[kind] += 1

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._errors_by_kind.clear()
            self._total = 0
            self._failed = 0

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_operations": self._total,
                "failed_operations": self._failed,
                "success_rate": (self._total - self._failed) / self._total if self._total else 1.0,
                "errors_by_kind": dict(self._errors_by_kind),
                "operations": sorted(self._stats.keys()),
            }

    def get_operation_stats(self, operation: str) -> Dict[str, Any]:
        """avg/min/max duration (ms), total data size and throughput (items/s)."""
        with self._lock:
            stats = self._stats.get(operation)
            stats = OperationStats(**asdict(stats)) if stats is not None else None

        if stats is None:
            return {"count": 0, "avg_ms": 0.0, "min_ms": 0.0, "max_ms": 0.0,
                    "total_data_size": 0, "throughput_per_s": 0.0}

        return {
            "count": stats.count,
            "avg_ms": stats.total_ms / stats.count,
            "min_ms": stats.min_ms,
            "max_ms": stats.max_ms,
            "total_data_size": stats.total_data_size,
            "throughput_per_s": (
                stats.total_data_size / (stats.total_ms / 1000) if stats.total_ms > 0 else 0.0
            ),
        }

    def close(self) -> None:
        self.reset()

    def __enter__(self) -> "PerformanceMonitor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
