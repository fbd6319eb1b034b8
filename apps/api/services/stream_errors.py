"""
Stream processing error taxonomy.

Every failure in the stream pipeline is converted to a StreamProcessingError
carrying a kind and a structured context payload. The dispatcher inspects
`kind` to pick a recovery message; nothing matches on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class StreamErrorKind(str, Enum):
    strava_api_failure = "strava_api_failure"
    context_exceeded = "context_exceeded"
    processing_failure = "processing_failure"
    invalid_request = "invalid_request"
    data_corrupted = "data_corrupted"
    unknown = "unknown"


class StreamProcessingError(Exception):
    """Structured pipeline failure.

    The with_* builders mutate and return self so context can be attached
    as the error travels up:

        raise StreamProcessingError(StreamErrorKind.context_exceeded, "too big") \\
            .with_activity_id(42).with_data_size(150_000)
    """

    def __init__(
        self,
        kind: StreamErrorKind,
        message: str,
        *,
        activity_id: int = 0,
        processing_mode: str = "",
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = StreamErrorKind(kind)
        self.message = message
        self.activity_id = activity_id
        self.processing_mode = processing_mode
        self.data_size = 0
        self.available_tokens = 0
        self.alternatives: List[str] = []
        self.context: Dict[str, Any] = {}
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error is not None:
            return f"{self.kind.value}: {self.message} (caused by: {self.original_error})"
        return f"{self.kind.value}: {self.message}"

    # --- builders ---

    def with_activity_id(self, activity_id: int) -> "StreamProcessingError":
        self.activity_id = activity_id
        return self

    def with_processing_mode(self, mode: str) -> "StreamProcessingError":
        self.processing_mode = mode
        return self

    def with_data_size(self, size: int) -> "StreamProcessingError":
        self.data_size = size
        return self

    def with_available_tokens(self, tokens: int) -> "StreamProcessingError":
        self.available_tokens = tokens
        return self

    def with_alternatives(self, alternatives: List[str]) -> "StreamProcessingError":
        self.alternatives = list(alternatives)
        return self

    def with_context(self, key: str, value: Any) -> "StreamProcessingError":
        self.context[key] = value
        return self

    def with_original_error(self, error: BaseException) -> "StreamProcessingError":
        self.original_error = error
        return self

    # --- conversion ---

    @classmethod
    def wrap(
        cls,
        error: BaseException,
        kind: StreamErrorKind = StreamErrorKind.processing_failure,
        message: Optional[str] = None,
    ) -> "StreamProcessingError":
        """Return error unchanged if already structured, else wrap it."""
        if isinstance(error, cls):
            return error
        return cls(kind, message or str(error) or type(error).__name__, original_error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "activity_id": self.activity_id,
            "processing_mode": self.processing_mode,
            "data_size": self.data_size,
            "available_tokens": self.available_tokens,
            "alternatives": list(self.alternatives),
            "context": dict(self.context),
            "original_error": str(self.original_error) if self.original_error else None,
        }
