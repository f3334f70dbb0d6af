"""Client-side rate limiting for platform API calls."""

import time
from typing import Callable, Optional


class RateLimiter:
    """Token bucket rate limiter for API requests."""

    def __init__(
        self,
        requests_per_second: Optional[float] = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize rate limiter.

        Args:
            requests_per_second: Maximum requests per second allowed, None to disable
            clock: Monotonic clock
            sleep: Sleep function
        """
        self.requests_per_second = requests_per_second
        self.tokens = requests_per_second or 0.0
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()

    @property
    def enabled(self) -> bool:
        return bool(self.requests_per_second)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(
            self.requests_per_second, self.tokens + elapsed * self.requests_per_second
        )
        self.last_update = now

    def acquire(self) -> None:
        """Acquire a token for making a request.

        Blocks until a token is available.
        """
        if not self.enabled:
            return

        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return

        self._sleep((1 - self.tokens) / self.requests_per_second)
        self.tokens = 0
        self.last_update = self._clock()
