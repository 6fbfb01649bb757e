"""
Rate limiting utilities for the marketplace integration.

One RateLimiter is shared by every upstream call of a sync run (page fetches,
package detail fetches, tracking fetches), so calls are spaced by at least
``min_delay`` seconds no matter which stage issues them. Responses feed back
into the limiter so 429s and exhausted quotas lengthen the next wait.
"""

import logging
import random
import time
from collections.abc import Callable

from requests import Response

from ..common.http import safe_headers

logger = logging.getLogger(__name__)


class RateLimitInfo:
    """Container for rate limit information from API response headers."""

    def __init__(
        self,
        limit: int | None = None,
        remaining: int | None = None,
        reset_time: float | None = None,
        retry_after: float | None = None,
    ):
        self.limit = limit
        self.remaining = remaining
        self.reset_time = reset_time
        self.retry_after = retry_after

    @property
    def usage_ratio(self) -> float | None:
        """Calculate current usage as ratio (0.0 to 1.0)."""
        if self.limit is None or self.remaining is None:
            return None

        if self.limit == 0:
            return 1.0

        return (self.limit - self.remaining) / self.limit

    def is_near_limit(self, threshold: float = 0.8) -> bool:
        """Check if current usage is near the rate limit."""
        ratio = self.usage_ratio
        if ratio is None:
            return False
        return ratio >= threshold

    def __repr__(self) -> str:
        return (
            f"RateLimitInfo(limit={self.limit}, remaining={self.remaining}, "
            f"retry_after={self.retry_after})"
        )


def _header_number(headers: dict, name: str, cast: Callable) -> int | float | None:
    if name not in headers:
        return None
    try:
        return cast(headers[name])
    except (TypeError, ValueError):
        return None


def parse_rate_limit(response: Response) -> RateLimitInfo:
    """
    Parse generic rate limit headers.

    Headers:
    - X-RateLimit-Limit
    - X-RateLimit-Remaining
    - X-RateLimit-Reset (epoch seconds)
    - Retry-After (seconds)
    """
    headers = safe_headers(response)
    return RateLimitInfo(
        limit=_header_number(headers, "X-RateLimit-Limit", int),
        remaining=_header_number(headers, "X-RateLimit-Remaining", int),
        reset_time=_header_number(headers, "X-RateLimit-Reset", float),
        retry_after=_header_number(headers, "Retry-After", float),
    )


def get_adaptive_delay(
    consecutive_rate_limits: int, base_delay: float = 1.0, max_delay: float = 60.0
) -> float:
    """
    Calculate adaptive delay based on consecutive rate limit hits.

    Uses exponential backoff with jitter.
    """
    if consecutive_rate_limits <= 0:
        return 0.0

    # 1s, 2s, 4s, 8s, ...
    delay = base_delay * (2 ** (consecutive_rate_limits - 1))
    delay *= random.uniform(0.75, 1.25)

    return min(delay, max_delay)


class RateLimiter:
    """
    Leaky-bucket style limiter: at most one upstream call every ``min_delay`` seconds,
    stretched when the upstream signals throttling.
    """

    def __init__(
        self,
        name: str,
        min_delay: float = 0.1,
        max_delay: float = 60.0,
        buffer_ratio: float = 0.8,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.buffer_ratio = buffer_ratio
        self._sleep = sleep
        self._clock = clock
        self.consecutive_rate_limits = 0
        self.last_request_time: float | None = None
        self.last_rate_limit_info: RateLimitInfo | None = None

    def process_response(self, response: Response) -> None:
        """Process API response to extract rate limit information."""
        if response.status_code == 429:
            self.consecutive_rate_limits += 1
        else:
            self.consecutive_rate_limits = 0

        self.last_rate_limit_info = parse_rate_limit(response)
        logger.debug(f"{self.name} rate limit info: {self.last_rate_limit_info}")

    def get_delay(self) -> float:
        """Calculate delay before next request."""
        delays = [0.0]

        if self.last_request_time is not None:
            elapsed = self._clock() - self.last_request_time
            if elapsed < self.min_delay:
                delays.append(self.min_delay - elapsed)

        info = self.last_rate_limit_info
        if info is not None:
            if info.retry_after and self.consecutive_rate_limits > 0:
                delays.append(info.retry_after)
            elif info.is_near_limit(self.buffer_ratio) and info.remaining == 0:
                # Quota exhausted: wait for the window to reset
                if info.reset_time:
                    delays.append(info.reset_time - time.time())
                else:
                    delays.append(5.0)

        if self.consecutive_rate_limits > 0:
            delays.append(
                get_adaptive_delay(self.consecutive_rate_limits, max_delay=self.max_delay)
            )

        return min(max(delays), self.max_delay)

    def wait_if_needed(self) -> float:
        """Wait if rate limiting is needed. Returns the time slept."""
        delay = self.get_delay()

        if delay > 0:
            if delay >= 1.0:
                logger.info(f"{self.name} rate limiting: waiting {delay:.2f}s")
            self._sleep(delay)

        self.last_request_time = self._clock()
        return delay

    def pause(self, seconds: float) -> None:
        """Fixed courtesy pause (e.g. between batches)."""
        if seconds > 0:
            self._sleep(seconds)
