"""Atomic bucketed counters for sliding windows and cross-account correlation.

Each sliding window is split into a fixed ring of time buckets. A transaction
increments the count and volume of the current bucket for every window; a
read sums the buckets that still fall inside the window. Buckets expire on
their own, so nothing needs to be swept.

Two implementations share the CounterStore protocol: RedisCounterStore for
multi-worker deployments, InMemoryCounterStore for a single process and tests.
"""

import asyncio
import time
from collections.abc import Callable, Sequence
from typing import Protocol

import structlog
from redis.asyncio import Redis

from .config import SlidingWindow

logger = structlog.get_logger()

Clock = Callable[[], float]


def bucket_index(timestamp: float, window: SlidingWindow) -> int:
    return int(timestamp // window.bucket_seconds)


def window_bucket_indices(timestamp: float, window: SlidingWindow) -> range:
    """Indices of the buckets covering the window ending at ``timestamp``."""
    current = bucket_index(timestamp, window)
    return range(current - window.buckets + 1, current + 1)


class CounterStore(Protocol):
    async def record_transaction(
        self,
        user_id: int,
        amount: float,
        transaction_id: str | None,
        windows: Sequence[SlidingWindow],
    ) -> bool:
        """Count one transaction in every window. False if already counted."""
        ...

    async def read_window(self, user_id: int, window: SlidingWindow) -> tuple[int, float]:
        """Return (count, volume) for the window ending now."""
        ...

    async def record_identifier(
        self, kind: str, value: str, user_id: int, ttl_seconds: int
    ) -> None: ...

    async def count_distinct_users(
        self, kind: str, value: str, exclude_user_id: int | None, window_seconds: int
    ) -> int: ...

    async def increment_blocked_ip(self, ip: str, ttl_seconds: int) -> int: ...

    async def count_blocked_ip(self, ip: str) -> int: ...


# --- Redis ---


class RedisCounterStore:
    """Counters kept in Redis hashes and sorted sets.

    Keys:
      velocity:{user}:{window}:{bucket}  hash {count, volume}
      velocity:seen:{user}:{txn}         idempotency marker
      ident:{kind}:{value}               sorted set of user ids scored by last sighting
      blocked_ip:{ip}                    integer counter
    """

    def __init__(self, redis: Redis, clock: Clock = time.time) -> None:
        self._redis = redis
        self._clock = clock

    async def record_transaction(
        self,
        user_id: int,
        amount: float,
        transaction_id: str | None,
        windows: Sequence[SlidingWindow],
    ) -> bool:
        if not windows:
            return False

        now = self._clock()
        marker = None
        if transaction_id:
            marker = f"velocity:seen:{user_id}:{transaction_id}"
            ttl = max(w.seconds for w in windows)
            if not await self._redis.set(marker, 1, nx=True, ex=ttl):
                logger.debug(
                    "velocity_record_skipped_duplicate",
                    user_id=user_id,
                    transaction_id=transaction_id,
                )
                return False

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for window in windows:
                    key = f"velocity:{user_id}:{window.label}:{bucket_index(now, window)}"
                    pipe.hincrby(key, "count", 1)
                    pipe.hincrbyfloat(key, "volume", amount)
                    pipe.expire(key, window.seconds + window.bucket_seconds)
                await pipe.execute()
        except Exception:
            # Let a retry of the same transaction count it
            if marker:
                await self._redis.delete(marker)
            raise
        return True

    async def read_window(self, user_id: int, window: SlidingWindow) -> tuple[int, float]:
        now = self._clock()
        async with self._redis.pipeline(transaction=False) as pipe:
            for index in window_bucket_indices(now, window):
                pipe.hmget(f"velocity:{user_id}:{window.label}:{index}", "count", "volume")
            rows = await pipe.execute()

        count = 0
        volume = 0.0
        for raw_count, raw_volume in rows:
            if raw_count is not None:
                count += int(raw_count)
            if raw_volume is not None:
                volume += float(raw_volume)
        return count, volume

    async def record_identifier(
        self, kind: str, value: str, user_id: int, ttl_seconds: int
    ) -> None:
        key = f"ident:{kind}:{value}"
        now = self._clock()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {str(user_id): now})
            pipe.zremrangebyscore(key, "-inf", now - ttl_seconds)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def count_distinct_users(
        self, kind: str, value: str, exclude_user_id: int | None, window_seconds: int
    ) -> int:
        now = self._clock()
        members = await self._redis.zrangebyscore(
            f"ident:{kind}:{value}", now - window_seconds, "+inf"
        )
        excluded = str(exclude_user_id) if exclude_user_id is not None else None
        return sum(1 for m in members if _as_str(m) != excluded)

    async def increment_blocked_ip(self, ip: str, ttl_seconds: int) -> int:
        key = f"blocked_ip:{ip}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def count_blocked_ip(self, ip: str) -> int:
        raw = await self._redis.get(f"blocked_ip:{ip}")
        return int(raw) if raw is not None else 0


def _as_str(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


# --- In-process ---


class InMemoryCounterStore:
    """Same bucket math as RedisCounterStore, guarded by an asyncio.Lock."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        # (user, label, bucket) -> [count, volume, expires_at]
        self._buckets: dict[tuple[int, str, int], list[float]] = {}
        self._seen: dict[tuple[int, str], float] = {}
        # (kind, value) -> {user_id: last_seen}, dropped whole once the key expires
        self._identifiers: dict[tuple[str, str], dict[int, float]] = {}
        self._identifier_expiry: dict[tuple[str, str], float] = {}
        self._blocked: dict[str, tuple[int, float]] = {}

    async def record_transaction(
        self,
        user_id: int,
        amount: float,
        transaction_id: str | None,
        windows: Sequence[SlidingWindow],
    ) -> bool:
        if not windows:
            return False

        async with self._lock:
            now = self._clock()
            self._expire(now)

            if transaction_id:
                marker = (user_id, transaction_id)
                if marker in self._seen:
                    return False
                self._seen[marker] = now + max(w.seconds for w in windows)

            for window in windows:
                key = (user_id, window.label, bucket_index(now, window))
                bucket = self._buckets.setdefault(key, [0, 0.0, 0.0])
                bucket[0] += 1
                bucket[1] += amount
                bucket[2] = now + window.seconds + window.bucket_seconds
            return True

    async def read_window(self, user_id: int, window: SlidingWindow) -> tuple[int, float]:
        async with self._lock:
            now = self._clock()
            count = 0
            volume = 0.0
            for index in window_bucket_indices(now, window):
                bucket = self._buckets.get((user_id, window.label, index))
                if bucket is None or bucket[2] <= now:
                    continue
                count += int(bucket[0])
                volume += bucket[1]
            return count, volume

    async def record_identifier(
        self, kind: str, value: str, user_id: int, ttl_seconds: int
    ) -> None:
        async with self._lock:
            now = self._clock()
            self._expire(now)
            key = (kind, value)
            seen = self._identifiers.setdefault(key, {})
            seen[user_id] = now
            self._identifier_expiry[key] = now + ttl_seconds
            cutoff = now - ttl_seconds
            for uid in [u for u, ts in seen.items() if ts < cutoff]:
                del seen[uid]

    async def count_distinct_users(
        self, kind: str, value: str, exclude_user_id: int | None, window_seconds: int
    ) -> int:
        async with self._lock:
            cutoff = self._clock() - window_seconds
            seen = self._identifiers.get((kind, value), {})
            return sum(1 for uid, ts in seen.items() if ts >= cutoff and uid != exclude_user_id)

    async def increment_blocked_ip(self, ip: str, ttl_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            self._expire(now)
            count, _ = self._blocked.get(ip, (0, 0.0))
            count += 1
            self._blocked[ip] = (count, now + ttl_seconds)
            return count

    async def count_blocked_ip(self, ip: str) -> int:
        async with self._lock:
            count, expires_at = self._blocked.get(ip, (0, 0.0))
            return count if expires_at > self._clock() else 0

    def _expire(self, now: float) -> None:
        for key in [k for k, b in self._buckets.items() if b[2] <= now]:
            del self._buckets[key]
        for key in [k for k, exp in self._seen.items() if exp <= now]:
            del self._seen[key]
        for key in [k for k, exp in self._identifier_expiry.items() if exp <= now]:
            del self._identifier_expiry[key]
            self._identifiers.pop(key, None)
        for ip in [i for i, (_, exp) in self._blocked.items() if exp <= now]:
            del self._blocked[ip]
