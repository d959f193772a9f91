"""Fixed-window admission control with a swappable bucket store."""
from __future__ import annotations

import hashlib
import logging
import threading
import time
from typing import Callable, Optional

import redis

from .config import Settings, get_settings
from .errors import RateLimited

logger = logging.getLogger(__name__)


class BucketStore:
    """Holds per-key ``(count, window_reset_at)`` buckets.

    ``admit`` must perform the whole admit-or-deny step atomically for a key.
    """

    def admit(self, key: str, limit: int, window_seconds: float, now: float) -> bool:
        raise NotImplementedError


class InMemoryBucketStore(BucketStore):
    """Process-local store for single-instance deployments."""

    def __init__(self, prune_threshold: int = 1000) -> None:
        self._prune_threshold = prune_threshold
        self._buckets: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def get(self, key: str) -> Optional[tuple[int, float]]:
        return self._buckets.get(key)

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for key in expired:
            self._buckets.pop(key, None)
        if expired:
            logger.debug("Pruned %d expired rate-limit buckets", len(expired))

    def admit(self, key: str, limit: int, window_seconds: float, now: float) -> bool:
        with self._lock:
            if len(self._buckets) >= self._prune_threshold:
                self._prune(now)
            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket[1]:
                self._buckets[key] = (1, now + window_seconds)
                return True
            count, reset_at = bucket
            if count >= limit:
                return False
            self._buckets[key] = (count + 1, reset_at)
            return True


_ADMIT_SCRIPT = """
local count = redis.call('GET', KEYS[1])
if not count then
  redis.call('SET', KEYS[1], 1, 'PX', ARGV[2])
  return 1
end
if tonumber(count) >= tonumber(ARGV[1]) then
  return 0
end
redis.call('INCR', KEYS[1])
return 1
"""


class RedisBucketStore(BucketStore):
    """Shared store for multi-instance deployments.

    Window expiry is delegated to key TTLs, so ``now`` is ignored and
    expired buckets disappear without pruning.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "analytics:ratelimit:") -> None:
        self._prefix = prefix
        self._script = client.register_script(_ADMIT_SCRIPT)

    def admit(self, key: str, limit: int, window_seconds: float, now: float) -> bool:
        result = self._script(
            keys=[f"{self._prefix}{key}"],
            args=[limit, max(int(window_seconds * 1000), 1)],
        )
        return bool(int(result))


class FixedWindowRateLimiter:
    """Fixed window rate limiter keyed by identifier.

    Bursts straddling a window boundary may admit up to twice the nominal rate.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        store: Optional[BucketStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._store = store if store is not None else InMemoryBucketStore()
        self._clock = clock

    @property
    def store(self) -> BucketStore:
        return self._store

    def admit(self, key: str) -> bool:
        return self._store.admit(key, self._max_requests, self._window_seconds, self._clock())

    def check(self, key: str) -> None:
        if not self.admit(key):
            raise RateLimited("Rate limit exceeded.")


def hash_client_ip(ip: str, salt: str = "") -> str:
    return hashlib.sha256(f"{salt}:{ip}".encode("utf-8")).hexdigest()[:32]


def build_rate_limiter(
    max_requests: int,
    window_seconds: float,
    settings: Optional[Settings] = None,
) -> FixedWindowRateLimiter:
    settings = settings or get_settings()
    backend = settings.rate_limit_backend
    if backend == "redis":
        client = redis.Redis.from_url(settings.redis_url)
        return FixedWindowRateLimiter(max_requests, window_seconds, RedisBucketStore(client))
    if backend != "memory":
        logger.warning("Unknown rate limit backend %r, using in-memory buckets", backend)
    store = InMemoryBucketStore(prune_threshold=settings.rate_limit_prune_threshold)
    return FixedWindowRateLimiter(max_requests, window_seconds, store)
