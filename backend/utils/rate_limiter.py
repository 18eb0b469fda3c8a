import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from utils.errors import RateLimitExceeded
from utils.logger import get_logger

logger = get_logger("rate_limiter")


@dataclass
class RateLimitConfig:
    """Rate limit configuration for one outbound operation"""

    max_requests: int
    window_seconds: float


class RateLimiter:
    """Sliding-window request counter.

    Each successful ``check_limit()`` records a timestamp.  Timestamps older
    than the window are discarded on every check, so the limiter admits at
    most ``max_requests`` calls in any rolling ``window_seconds`` span.
    Rejection happens locally, before the caller touches the network.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self.name = name
        self._clock = clock
        self._requests: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window_seconds:
            self._requests.popleft()

    def _seconds_until_reset(self, now: float) -> int:
        if not self._requests:
            return 0
        return max(0, math.ceil(self._requests[0] + self.window_seconds - now))

    def check_limit(self) -> None:
        """Record an attempt, or raise ``RateLimitExceeded`` if the window is full."""
        now = self._clock()
        self._prune(now)

        if len(self._requests) >= self.max_requests:
            seconds = self._seconds_until_reset(now)
            logger.warning(
                "Rate limit exceeded",
                limiter=self.name,
                limit=self.max_requests,
                seconds_until_reset=seconds,
            )
            raise RateLimitExceeded(self.name, seconds)

        self._requests.append(now)

    def get_stats(self) -> dict:
        """Usage snapshot; only prunes expired entries, never records one."""
        now = self._clock()
        self._prune(now)
        used = len(self._requests)
        return {
            "used": used,
            "limit": self.max_requests,
            "remaining": self.max_requests - used,
            "reset_in": self._seconds_until_reset(now),
        }

    def reset(self) -> None:
        self._requests.clear()


class RateLimiterRegistry:
    """Named limiters for the cloud HTTP operations."""

    def __init__(self, limits: Dict[str, RateLimitConfig], clock: Optional[Callable[[], float]] = None):
        self._limiters: Dict[str, RateLimiter] = {}
        for name, config in limits.items():
            kwargs = {"clock": clock} if clock is not None else {}
            self._limiters[name] = RateLimiter(
                config.max_requests, config.window_seconds, name=name, **kwargs
            )

    def get(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def check(self, name: str) -> None:
        self._limiters[name].check_limit()

    def get_status(self) -> Dict[str, dict]:
        """Get current usage for all limiters"""
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}


def cloud_rate_limits(settings) -> Dict[str, RateLimitConfig]:
    """Build the cloud limiter table from settings."""
    return {
        "activation": RateLimitConfig(
            settings.ACTIVATION_RATE_LIMIT, settings.ACTIVATION_RATE_WINDOW_SECONDS
        ),
        "refresh": RateLimitConfig(
            settings.REFRESH_RATE_LIMIT, settings.REFRESH_RATE_WINDOW_SECONDS
        ),
        "telemetry": RateLimitConfig(
            settings.TELEMETRY_RATE_LIMIT, settings.TELEMETRY_RATE_WINDOW_SECONDS
        ),
    }
