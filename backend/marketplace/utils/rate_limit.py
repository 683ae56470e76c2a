"""In-process sliding-window throttle used for engineer offer submissions."""

import time
from collections import deque
from threading import Lock

from marketplace.core.config import get_settings

OFFER_WINDOW_SECONDS = 60


class SlidingWindowRateLimiter:
    """Keeps per-key hit timestamps.

    Idle keys are swept every ``prune_interval_seconds`` and immediately once
    more than ``max_buckets`` keys are held.
    """

    def __init__(self, *, max_buckets: int = 50_000, prune_interval_seconds: int = 60) -> None:
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()
        self.max_buckets = max_buckets
        self.prune_interval_seconds = max(1, int(prune_interval_seconds))
        self._next_prune_at = 0.0

    @staticmethod
    def _trim(hits: deque[float], horizon: float) -> None:
        while hits and hits[0] <= horizon:
            hits.popleft()

    def allow(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = time.monotonic()
        horizon = now - window_seconds
        with self._lock:
            if now >= self._next_prune_at or len(self._hits) > self.max_buckets:
                self._sweep(horizon)
                self._next_prune_at = now + self.prune_interval_seconds

            hits = self._hits.setdefault(key, deque())
            self._trim(hits, horizon)
            used = len(hits)
            if used >= limit:
                return False, used
            hits.append(now)
            return True, used + 1

    def _sweep(self, horizon: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            self._trim(hits, horizon)
            if not hits:
                del self._hits[key]

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._next_prune_at = 0.0


rate_limiter = SlidingWindowRateLimiter()


def allow_offer_submission(engineer_id: str) -> bool:
    limit = int(get_settings().rate_limit_offers_per_min or 0)
    allowed, _used = rate_limiter.allow(f"offer:{engineer_id}", limit, OFFER_WINDOW_SECONDS)
    return allowed
