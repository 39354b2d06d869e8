"""Per-identity rate limiting for Botline.

Fixed windows kept in process memory. A counter is created on the first
message from an identity and reset lazily on the first message after its
window has elapsed; nothing runs in the background.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("botline.rate_limit")

# Defaults: (max_requests, window_seconds)
DEFAULT_MESSAGE_LIMIT = (30, 60)
DEFAULT_REGISTER_LIMIT = (5, 60)


@dataclass
class RateCounter:
    count: int
    reset_at: float


class RateLimiter:
    """Counts requests per identity inside a fixed window."""

    def __init__(
        self,
        max_requests: int = DEFAULT_MESSAGE_LIMIT[0],
        window_seconds: float = DEFAULT_MESSAGE_LIMIT[1],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._counters: dict[str, RateCounter] = {}

    def check_and_record(self, identity: str) -> tuple[bool, int]:
        """Check the limit for ``identity`` and count the request if allowed.

        Args:
            identity: User, agent name or IP address

        Returns:
            Tuple of (is_allowed, current_count)
        """
        now = self._clock()
        counter = self._counters.get(identity)

        if counter is None or now >= counter.reset_at:
            self._counters[identity] = RateCounter(count=1, reset_at=now + self.window_seconds)
            return True, 1

        if counter.count >= self.max_requests:
            logger.warning(
                "rate_limited identity=%s count=%d limit=%d",
                identity, counter.count, self.max_requests,
            )
            return False, counter.count

        counter.count += 1
        return True, counter.count
