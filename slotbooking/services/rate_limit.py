"""
In-process rate limiting.

Fixed window counters kept in memory, keyed by caller identity (uid, else
client IP, else "anon"). Best effort only: counters are per process, lost on
restart and not shared between workers. Edge throttling stays the job of
the gateway.

Limits:
- create_appointment: 30 requests / 60 s per caller
"""

import logging
import threading
import time
from typing import Callable, Optional

from .errors import ResourceExhausted

logger = logging.getLogger(__name__)


# ============================================================
# RATE LIMIT CONFIGURATION
# ============================================================

RATE_LIMITS = {
    # Public + dashboard appointment requests
    "create_appointment": {"limit": 30, "window": 60},
}

# Buckets are purged once the map grows beyond this many keys
MAX_BUCKETS = 10_000


class RateLimiter:
    """Fixed window counter per (scope, key)."""

    def __init__(
        self,
        limits: dict | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        source = limits if limits is not None else RATE_LIMITS
        self.limits = {scope: dict(cfg) for scope, cfg in source.items()}
        self.clock = clock
        self._buckets: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, scope: str, key: str) -> tuple[bool, Optional[int]]:
        """
        Count one request. Returns (allowed, retry_after_seconds).

        limit=0 or a missing scope means unlimited.
        """
        config = self.limits.get(scope)
        if not config or config["limit"] <= 0:
            return True, None

        limit, window = config["limit"], config["window"]
        bucket_key = f"{scope}:{key}"
        now = self.clock()

        with self._lock:
            count, reset_at = self._buckets.get(bucket_key, (0, now + window))
            if now > reset_at:
                count, reset_at = 0, now + window
            count += 1
            self._buckets[bucket_key] = (count, reset_at)

            if len(self._buckets) > MAX_BUCKETS:
                self._purge(now)

        if count > limit:
            return False, max(1, int(reset_at - now))
        return True, None

    def check(self, scope: str, key: str) -> None:
        """Raise ResourceExhausted when the caller is over the limit."""
        allowed, retry_after = self.hit(scope, key)
        if not allowed:
            logger.info(f"Rate limit exceeded: scope={scope} key={key}")
            raise ResourceExhausted(retry_after=retry_after)

    def set_limit(self, scope: str, limit: int, window: int = 60) -> None:
        """Change a limit at runtime (tests/ops)."""
        self.limits[scope] = {"limit": limit, "window": window}
        logger.info(f"Rate limit updated: {scope} {limit}/{window}s")

    def _purge(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._buckets.items() if now > reset_at]
        for k in expired:
            del self._buckets[k]
