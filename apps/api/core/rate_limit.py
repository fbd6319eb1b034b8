"""
Upstream Read Budget

Fixed-window counter shared by every process that reads from the telemetry
provider. Every read path (streams, laps, page-count estimation) calls
acquire_read_budget() before making an HTTP request.

Returns:
    True  - read allowed, budget decremented
    False - budget exhausted for the current window
    None  - Redis unavailable; caller applies its degraded-mode policy
"""
import time
import logging
from typing import Optional
from redis.exceptions import RedisError
from core.config import settings
from core.cache import get_redis_client

logger = logging.getLogger(__name__)

_ACQUIRE_LUA = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local current = tonumber(redis.call("GET", key) or "0")
if current >= limit then
    return 0
end
redis.call("INCR", key)
if current == 0 then
    redis.call("EXPIRE", key, ttl)
end
return 1
"""


def _window_key(window_s: int, now: Optional[float] = None) -> str:
    window_id = int(now if now is not None else time.time()) // window_s
    return f"strava:rate:global:window:{window_id}"


def seconds_until_window_reset(window_s: Optional[int] = None, now: Optional[float] = None) -> int:
    """Seconds remaining in the current fixed window."""
    window_s = window_s or settings.STRAVA_READ_WINDOW_S
    current = int(now if now is not None else time.time())
    return window_s - (current % window_s)


def acquire_read_budget(
    window_budget: Optional[int] = None,
    window_s: Optional[int] = None,
) -> Optional[bool]:
    """Consume one read from the current window."""
    window_budget = window_budget or settings.STRAVA_READ_WINDOW_BUDGET
    window_s = window_s or settings.STRAVA_READ_WINDOW_S

    client = get_redis_client()
    if not client:
        return None

    key = _window_key(window_s)
    ttl = window_s + 300  # window + 5-min buffer

    try:
        result = client.eval(_ACQUIRE_LUA, 1, key, str(window_budget), str(ttl))
        return int(result) == 1
    except RedisError as e:
        logger.warning(f"Read budget check failed, treating Redis as unavailable: {e}")
        return None


def get_read_budget_remaining(
    window_budget: Optional[int] = None,
    window_s: Optional[int] = None,
) -> Optional[int]:
    """
    Reads remaining in the current window.

    Returns:
        int  - reads remaining (0..window_budget)
        None - Redis unavailable
    """
    window_budget = window_budget or settings.STRAVA_READ_WINDOW_BUDGET
    window_s = window_s or settings.STRAVA_READ_WINDOW_S

    client = get_redis_client()
    if not client:
        return None

    try:
        current = client.get(_window_key(window_s))
        used = int(current) if current else 0
        return max(0, window_budget - used)
    except RedisError:
        return None
