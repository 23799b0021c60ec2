"""Per-cluster token buckets for model usage accounting."""

from __future__ import annotations

import threading
import time
from typing import Callable


class TokenBucket:
    """Bucket of ``ceiling`` tokens refilled evenly over ``window_s`` seconds, one per key."""

    def __init__(
        self,
        *,
        ceiling: int,
        window_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ceiling = ceiling
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, tuple[float, float]] = {}

    def allowed(self, key: str, amount: int) -> bool:
        with self._lock:
            return self._refill(key) >= amount

    def consume(self, key: str, amount: int) -> None:
        with self._lock:
            tokens = self._refill(key) - amount
            # Usage past the ceiling is recorded as debt rather than dropped.
            self._buckets[key] = (tokens, self._clock())

    def available(self, key: str) -> float:
        with self._lock:
            return self._refill(key)

    def _refill(self, key: str) -> float:
        now = self._clock()
        tokens, updated_at = self._buckets.get(key, (float(self.ceiling), now))
        rate = self.ceiling / self.window_s
        tokens = min(float(self.ceiling), tokens + (now - updated_at) * rate)
        self._buckets[key] = (tokens, now)
        return tokens


class ClusterRateLimiter:
    """Minute and hour ceilings evaluated together."""

    def __init__(
        self,
        *,
        per_minute: int,
        per_hour: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.buckets = (
            TokenBucket(ceiling=per_minute, window_s=60.0, clock=clock),
            TokenBucket(ceiling=per_hour, window_s=3600.0, clock=clock),
        )

    def allowed(self, cluster_id: str, amount: int) -> bool:
        return all(bucket.allowed(cluster_id, amount) for bucket in self.buckets)

    def record(self, cluster_id: str, amount: int) -> None:
        for bucket in self.buckets:
            bucket.consume(cluster_id, amount)
