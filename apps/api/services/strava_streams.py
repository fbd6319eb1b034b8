"""
Strava telemetry source.

Blocking reads of activity streams and laps. Every HTTP request:
    1. checks the caller's FetchDeadline (cancelled/expired -> no request),
    2. consumes one unit of the shared read budget,
    3. uses a timeout bounded by the deadline.

Failures raise a TelemetryFetchError subclass so callers can tell a missing
activity from an expired token, a rate limit or an upstream outage. There
is no automatic retry: rate-limit rejections surface immediately with
retry_after_s.

Redis down (budget None) falls through in degraded mode, like the other
on-demand read paths.
"""

from __future__ import annotations

import logging
import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Sequence

import requests

from core.config import settings
from core.rate_limit import acquire_read_budget, seconds_until_window_reset
from services.fetch_deadline import FetchDeadline, bounded_timeout, check_deadline
from services.telemetry import STREAM_TYPES, Lap, Telemetry

logger = logging.getLogger(__name__)


class TelemetryFetchError(RuntimeError):
    """Base for upstream telemetry failures. `category` names the failure class."""
    category = "upstream_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StravaRateLimitError(TelemetryFetchError):
    category = "rate_limited"

    def __init__(self, message: str, *, retry_after_s: int, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.retry_after_s = int(retry_after_s)


class StravaNotFoundError(TelemetryFetchError):
    category = "not_found"


class StravaUnauthorizedError(TelemetryFetchError):
    category = "unauthorized"


class StravaUnavailableError(TelemetryFetchError):
    category = "unavailable"


def retry_after_seconds(value: Optional[str]) -> int:
    """Seconds from a Retry-After header (delta-seconds or HTTP-date); window reset otherwise."""
    if value:
        try:
            return max(0, int(value))
        except ValueError:
            pass
        try:
            return max(0, int(parsedate_to_datetime(value).timestamp() - time.time()))
        except (TypeError, ValueError):
            logger.warning(f"Unparseable Retry-After header: {value!r}")
    return seconds_until_window_reset()


def parse_streams_payload(data: Any) -> Dict[str, List[Any]]:
    """Normalize a Strava streams response (list or key_by_type dict) to {type: data}."""
    result: Dict[str, List[Any]] = {}
    if isinstance(data, list):
        for stream_obj in data:
            if not isinstance(stream_obj, dict):
                continue
            stream_type = stream_obj.get("type")
            stream_data = stream_obj.get("data")
            if stream_type and stream_data is not None:
                result[stream_type] = stream_data
    elif isinstance(data, dict):
        for stream_type, stream_obj in data.items():
            if isinstance(stream_obj, dict) and "data" in stream_obj:
                result[stream_type] = stream_obj["data"]
            elif isinstance(stream_obj, list):
                result[stream_type] = stream_obj
    return result


class StravaStreamSource:
    """Telemetry source backed by the Strava REST API for one access token."""

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.STRAVA_API_BASE).rstrip("/")
        self.timeout_s = timeout_s or settings.EXTERNAL_API_TIMEOUT
        self.session = session or requests.Session()

    # -----------------------------------------------------------------------
    # Request plumbing
    # -----------------------------------------------------------------------

    def _acquire_budget(self, what: str) -> None:
        budget = acquire_read_budget()
        if budget is False:
            raise StravaRateLimitError(
                f"Read budget exhausted for {what}",
                retry_after_s=seconds_until_window_reset(),
            )
        if budget is None:
            logger.info(f"Read budget unavailable (Redis down), continuing for {what}")

    def _get(self, path: str, what: str, params: Optional[Dict[str, Any]] = None,
             deadline: Optional[FetchDeadline] = None) -> Any:
        check_deadline(deadline, what)
        self._acquire_budget(what)

        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            r = self.session.get(
                url,
                headers=headers,
                params=params,
                timeout=bounded_timeout(deadline, self.timeout_s),
            )
        except requests.Timeout as e:
            raise StravaUnavailableError(f"Timed out fetching {what}: {e}") from e
        except requests.RequestException as e:
            raise StravaUnavailableError(f"Request failed for {what}: {e}") from e

        if r.status_code == 429:
            retry_after = retry_after_seconds(r.headers.get("Retry-After"))
            raise StravaRateLimitError(
                f"429 Rate limited for {what} (Retry-After {retry_after}s)",
                retry_after_s=retry_after,
                status_code=429,
            )
        if r.status_code in (401, 403):
            raise StravaUnauthorizedError(
                f"Access token rejected for {what}", status_code=r.status_code
            )
        if r.status_code == 404:
            raise StravaNotFoundError(f"Not found: {what}", status_code=404)
        if r.status_code >= 500:
            raise StravaUnavailableError(
                f"Upstream error {r.status_code} for {what}", status_code=r.status_code
            )
        if r.status_code >= 400:
            raise TelemetryFetchError(
                f"Unexpected status {r.status_code} for {what}", status_code=r.status_code
            )

        try:
            return r.json()
        except ValueError as e:
            raise StravaUnavailableError(f"Malformed JSON for {what}") from e

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def fetch_streams(
        self,
        activity_id: int,
        stream_types: Optional[Sequence[str]] = None,
        resolution: str = "high",
        deadline: Optional[FetchDeadline] = None,
    ) -> Telemetry:
        types = [t for t in (stream_types or STREAM_TYPES) if t in STREAM_TYPES]
        if "time" not in types:
            types = ["time"] + types
        params = {
            "keys": ",".join(types),
            "key_by_type": "true",
            "resolution": resolution,
        }
        what = f"activity streams {activity_id}"
        data = self._get(f"/activities/{activity_id}/streams", what, params=params, deadline=deadline)

        streams = parse_streams_payload(data)
        if not streams:
            raise StravaNotFoundError(f"No usable streams for activity {activity_id}")

        telemetry = Telemetry.from_dict(streams)
        logger.info(
            f"Fetched streams for activity {activity_id} "
            f"({telemetry.count_data_points()} points, {resolution} resolution)"
        )
        return telemetry

    def fetch_laps(self, activity_id: int, deadline: Optional[FetchDeadline] = None) -> List[Lap]:
        what = f"activity laps {activity_id}"
        data = self._get(f"/activities/{activity_id}/laps", what, deadline=deadline)
        if not isinstance(data, list):
            return []
        return [Lap.from_dict(item) for item in data if isinstance(item, dict)]
