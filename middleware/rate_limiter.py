"""
Rate Limiting Middleware
Sliding-window request counters keyed by (actor, ip, action)
"""

import threading
import time
from typing import Dict, List, Optional, Tuple
import logging

from config import Config

logger = logging.getLogger(__name__)

RateKey = Tuple[Optional[int], str, str]

# How often idle counters are swept out of memory
SWEEP_INTERVAL_SECONDS = 300


class RateLimiter:
    """Simple in-memory rate limiter; check and increment happen under one lock"""

    def __init__(self, clock=time.time):
        self._requests: Dict[RateKey, List[float]] = {}  # (actor, ip, action) -> [timestamp, ...]
        self._windows: Dict[RateKey, int] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        """Forget counters whose newest request has left its window"""
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        for key in [k for k, stamps in self._requests.items() if stamps[-1] <= now - self._windows.get(k, 0)]:
            del self._requests[key]
            self._windows.pop(key, None)

    def is_rate_limited(
        self,
        actor_id: Optional[int],
        action: str = "general",
        max_requests: int = 10,
        window_seconds: int = 60,
        ip_address: Optional[str] = None,
    ) -> Tuple[bool, Optional[int]]:
        """
        Check a request against the window and record it when allowed

        Args:
            actor_id: User or company performing the action
            action: Action being performed (payment_intent, payout_request...)
            max_requests: Maximum requests allowed in window
            window_seconds: Time window in seconds
            ip_address: Caller IP, part of the counter key when known

        Returns:
            Tuple of (is_limited, seconds_until_reset)
        """
        key = (actor_id, ip_address or "", action)

        with self._lock:
            now = self._clock()
            cutoff = now - window_seconds
            self._sweep(now)

            # Remove expired requests; idle keys are dropped
            timestamps = [t for t in self._requests.get(key, []) if t > cutoff]
            if timestamps:
                self._requests[key] = timestamps
            else:
                self._requests.pop(key, None)
                self._windows.pop(key, None)

            if len(timestamps) >= max_requests:
                reset_time = int(min(timestamps) + window_seconds - now)
                logger.warning(
                    f"⏱️ RATE_LIMITED: actor={actor_id} action={action} "
                    f"({len(timestamps)}/{max_requests} in {window_seconds}s)"
                )
                return True, max(1, reset_time)

            timestamps.append(now)
            self._requests[key] = timestamps
            self._windows[key] = window_seconds
            return False, None

    def check(
        self,
        actor_id: Optional[int],
        action: str,
        ip_address: Optional[str] = None,
    ) -> Tuple[bool, Optional[int]]:
        """Apply the configured limit for `action`"""
        limits = get_rate_limit_config(action)
        return self.is_rate_limited(
            actor_id,
            action,
            limits["max_requests"],
            limits["window_seconds"],
            ip_address=ip_address,
        )


# Global rate limiter instance
rate_limiter = RateLimiter()

DEFAULT_RATE_LIMIT = {"max_requests": 30, "window_seconds": 60}


def get_rate_limit_config(action: str) -> dict:
    """Get rate limit configuration for an action"""
    return Config.rate_limits().get(action, DEFAULT_RATE_LIMIT)
