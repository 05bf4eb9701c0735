"""Sliding-window rate limiter for cowriter LLM requests.

Each user identifier owns a list of unix timestamps, one per admitted
request, kept in a shared cache. On every check the list is pruned to the
trailing window before counting, so the limit applies to any rolling
interval rather than to fixed buckets.

The read-prune-append-write sequence is not atomic: two concurrent requests
for the same user may both be admitted from the same snapshot. Throttling is
therefore best-effort and not a billing-grade quota.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cowriter.cache import CacheBackend

_logger = logging.getLogger("cowriter")

DEFAULT_REQUESTS_PER_MINUTE = 20
DEFAULT_WINDOW_SECONDS = 60

CACHE_PREFIX = "cowriter_ratelimit_"

# Extra lifetime so an entry outlives the window it describes.
TTL_BUFFER_SECONDS = 10


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    _retry_after: Optional[int] = field(
        default=None, init=False, repr=False, compare=False
    )

    def get_headers(self) -> Dict[str, str]:
        """Return the X-RateLimit-* headers for an HTTP response."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_time),
        }

    def get_retry_after(self) -> int:
        """Seconds until the window frees a slot, never negative.

        Computed once per result so the response body and the Retry-After
        header report the same value.
        """
        if self._retry_after is None:
            object.__setattr__(
                self, "_retry_after", max(0, self.reset_time - int(time.time()))
            )
        return self._retry_after


class RateLimiter:
    """Per-user sliding-window limiter backed by a CacheBackend.

    Args:
        cache: Shared store for the per-user timestamp windows.
        requests_per_minute: Requests admitted per window.
        window_seconds: Length of the trailing window.
        logger: Logger for cache failures (defaults to the cowriter logger).

    Raises:
        ValueError: If the limit or the window is below 1.
    """

    def __init__(
        self,
        cache: CacheBackend,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be >= 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        self._cache = cache
        self.requests_per_minute = requests_per_minute
        self.window_seconds = window_seconds
        self._logger = logger or _logger

    def check_limit(self, user_identifier: str) -> RateLimitResult:
        """Admit or deny one request for user_identifier.

        Admitted requests are recorded in the window; denied requests leave
        the stored window untouched. Cache failures fail open.
        """
        cache_key = self.cache_key(user_identifier)
        now = int(time.time())

        try:
            window = self._read_window(cache_key)
        except Exception as exc:
            self._log_cache_error(exc)
            return RateLimitResult(
                allowed=True,
                limit=self.requests_per_minute,
                remaining=self.requests_per_minute,
                reset_time=now + self.window_seconds,
            )

        cutoff = now - self.window_seconds
        window = [ts for ts in window if ts > cutoff]

        if window:
            reset_time = min(window) + self.window_seconds
        else:
            reset_time = now + self.window_seconds

        if len(window) >= self.requests_per_minute:
            return RateLimitResult(
                allowed=False,
                limit=self.requests_per_minute,
                remaining=0,
                reset_time=reset_time,
            )

        window.append(now)
        try:
            self._cache.set(
                cache_key, window, self.window_seconds + TTL_BUFFER_SECONDS
            )
        except Exception as exc:
            self._log_cache_error(exc)

        return RateLimitResult(
            allowed=True,
            limit=self.requests_per_minute,
            remaining=self.requests_per_minute - len(window),
            reset_time=reset_time,
        )

    @staticmethod
    def cache_key(user_identifier: str) -> str:
        """Fixed-length cache key for an arbitrary identifier."""
        digest = hashlib.md5(
            user_identifier.encode("utf-8", "surrogatepass")
        ).hexdigest()
        return CACHE_PREFIX + digest

    def _read_window(self, cache_key: str) -> List[int]:
        data: Any = self._cache.get(cache_key)
        if not isinstance(data, (list, tuple)):
            return []
        # bool is an int subclass but never a timestamp
        return [
            ts for ts in data if isinstance(ts, int) and not isinstance(ts, bool)
        ]

    def _log_cache_error(self, exc: Exception) -> None:
        self._logger.warning("Rate limiter cache error, failing open: %s", exc)
