"""Fixed-window request rate limiting keyed by room session."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import QuotaConfig

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allows at most ``max_requests`` per key in each window."""

    def __init__(
        self,
        config: Optional[QuotaConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or QuotaConfig()
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_sweep = clock() + self.config.rate_limit_window_seconds
        self._lock = threading.Lock()

    @property
    def window_seconds(self) -> int:
        return self.config.rate_limit_window_seconds

    @property
    def max_requests(self) -> int:
        return self.config.rate_limit_max_requests

    def check_rate_limit(self, key: str) -> bool:
        """
        Count a request against a key.

        Expired windows are swept at most once per window length, so keys
        for sessions that stopped sending requests do not accumulate.

        Args:
            key: Rate limit key (room session id)

        Returns:
            True if the request is allowed, False if the window is full
        """
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._drop_expired(now)
                self._next_sweep = now + self.window_seconds

            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                return True

            if window.count >= self.max_requests:
                logger.warning(f"Rate limit hit for {key}: {window.count}/{self.max_requests}")
                return False

            window.count += 1
            return True

    def get_status(self, key: str) -> dict:
        """Remaining requests and reset time (epoch seconds) for a key."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                return {"remaining": self.max_requests, "reset_at": now + self.window_seconds}
            return {
                "remaining": max(0, self.max_requests - window.count),
                "reset_at": window.reset_at,
            }

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def cleanup_expired(self) -> int:
        """
        Drop windows that have already reset.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            return self._drop_expired(now)

    def _drop_expired(self, now: float) -> int:
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for key in expired:
            del self._windows[key]

        if expired:
            logger.info(f"Cleaned up {len(expired)} rate limit windows")
        return len(expired)
