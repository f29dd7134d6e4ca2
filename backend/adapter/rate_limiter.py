"""
Client-side rate limiter for the X API.

Keeps the harvester under the published per-window limits for each endpoint
category so a burst of manual triggers cannot exhaust the user's quota.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Configuration for a specific rate limit."""
    requests_per_window: int
    window_seconds: int
    strategy: Literal["sliding_window", "fixed_window"] = "sliding_window"


class RateLimiter:
    """
    Rate limiter keyed by endpoint category (e.g. "x_timeline", "x_user_lookup").

    Features:
    - Sliding window and fixed window strategies
    - Different limits per category
    - Injectable clock and sleep for deterministic tests
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._clock = clock
        self._sleep = sleep

        # category -> request timestamps inside the current sliding window
        self.sliding_windows: Dict[str, List[float]] = defaultdict(list)

        # category -> (window_start, count) for fixed window
        self.fixed_windows: Dict[str, tuple[int, int]] = {}

        self.configs: Dict[str, RateLimitConfig] = {}

    def configure_limit(self, category: str, config: RateLimitConfig) -> None:
        """Configure rate limiting for a specific category."""
        self.configs[category] = config
        logger.info(f"Configured rate limit for {category}: {config.requests_per_window} req/{config.window_seconds}s ({config.strategy})")

    def wait_if_needed(self, category: str = "default") -> float:
        """
        Block until a request in ``category`` is allowed, then record it.

        Returns:
            Seconds spent waiting (0.0 when the request went straight through)
        """
        if category not in self.configs:
            logger.warning(f"No rate limit configured for category '{category}', allowing request")
            return 0.0

        config = self.configs[category]
        if config.strategy == "fixed_window":
            return self._wait_fixed_window(category, config)
        return self._wait_sliding_window(category, config)

    def _wait_sliding_window(self, category: str, config: RateLimitConfig) -> float:
        current_time = self._clock()
        waited = 0.0

        window_times = self.sliding_windows[category]
        window_times[:] = [t for t in window_times if current_time - t < config.window_seconds]

        if len(window_times) >= config.requests_per_window:
            # Wait until the oldest request leaves the window
            wait_time = config.window_seconds - (current_time - min(window_times))
            if wait_time > 0:
                logger.info(f"Rate limiting {category}: waiting {wait_time:.2f} seconds")
                self._sleep(wait_time)
                waited = wait_time
                current_time = self._clock()
                window_times[:] = [t for t in window_times if current_time - t < config.window_seconds]

        window_times.append(current_time)
        return waited

    def _wait_fixed_window(self, category: str, config: RateLimitConfig) -> float:
        current_time = self._clock()
        window_start = int(current_time / config.window_seconds) * config.window_seconds
        waited = 0.0

        stored_window, count = self.fixed_windows.get(category, (window_start, 0))
        if stored_window != window_start:
            count = 0

        if count >= config.requests_per_window:
            wait_time = (window_start + config.window_seconds) - current_time
            if wait_time > 0:
                logger.info(f"Rate limiting {category}: waiting {wait_time:.2f} seconds for next window")
                self._sleep(wait_time)
                waited = wait_time
            window_start = int(self._clock() / config.window_seconds) * config.window_seconds
            count = 0

        self.fixed_windows[category] = (window_start, count + 1)
        return waited

    def get_remaining_requests(self, category: str) -> Optional[int]:
        """
        Estimated remaining requests for a category in its current window.

        Returns None for categories with no configured limit.
        """
        if category not in self.configs:
            return None

        config = self.configs[category]
        current_time = self._clock()

        if config.strategy == "sliding_window":
            recent = [t for t in self.sliding_windows[category] if current_time - t < config.window_seconds]
            return max(0, config.requests_per_window - len(recent))

        window_start = int(current_time / config.window_seconds) * config.window_seconds
        stored_window, count = self.fixed_windows.get(category, (window_start, 0))
        if stored_window != window_start:
            count = 0
        return max(0, config.requests_per_window - count)


# Reverse chronological home timeline: 180 requests per 15 minutes per user
X_TIMELINE_LIMIT = RateLimitConfig(
    requests_per_window=180,
    window_seconds=900,
    strategy="sliding_window"
)

# Authenticated user lookup (/2/users/me): 75 requests per 15 minutes
X_USER_LOOKUP_LIMIT = RateLimitConfig(
    requests_per_window=75,
    window_seconds=900,
    strategy="fixed_window"
)


def create_x_api_limiter() -> RateLimiter:
    """Create a rate limiter configured for the X API endpoints the harvester calls."""
    limiter = RateLimiter()
    limiter.configure_limit("x_timeline", X_TIMELINE_LIMIT)
    limiter.configure_limit("x_user_lookup", X_USER_LOOKUP_LIMIT)
    return limiter


__all__ = ["RateLimiter", "RateLimitConfig", "X_TIMELINE_LIMIT", "X_USER_LOOKUP_LIMIT", "create_x_api_limiter"]
