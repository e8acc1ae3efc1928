"""
Fixed-window rate limiting.

Each (rule scope, client key) pair owns one RateWindow. A window opens on the
first request, counts every admission attempt, and resets once
`period_seconds` have passed since it opened. Requests beyond the limit are
rejected with the time remaining until the window closes.

Algorithm: Fixed Window Counter
    1. now - window_start >= period  ->  window_start = now, count = 0
    2. count += 1
    3. count > limit  ->  Rejected(retry_after = period - (now - window_start))
    4. otherwise Allowed

    Memory is O(active keys); every check is O(1) under a single shard lock.
    Idle windows are swept once they are older than period x retention_factor.

Multi-process deployments use RedisRateLimiter, which keeps the same contract
on top of INCR/EXPIRE in a MULTI transaction.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from redis.exceptions import RedisError

from apishield.core.exceptions import RedisServiceError
from apishield.core.locks import ShardedTable, DEFAULT_SHARD_COUNT
from apishield.core.rate_limit_config import RuleSet

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    """Counter for one key inside one fixed window"""
    key: str
    window_start: float
    count: int
    limit: int
    period_seconds: int

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.period_seconds


@dataclass(frozen=True)
class Allowed:
    limit: int
    remaining: int
    reset_after: float

    allowed = True


@dataclass(frozen=True)
class Rejected:
    retry_after: float
    limit: int

    allowed = False


Admission = Union[Allowed, Rejected]


class RateLimiter:
    """
    In-memory fixed-window rate limiter.

    Thread safety:
        Windows live in a ShardedTable; each admit() holds only the lock of
        the shard its key hashes to, so increments on one key are atomic and
        unrelated keys never wait on each other.
    """

    def __init__(
        self,
        rules: RuleSet,
        retention_factor: float = 2.0,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        shard_count: int = DEFAULT_SHARD_COUNT
    ):
        if retention_factor < 1.0:
            raise ValueError("retention_factor must be >= 1.0")
        self.rules = rules
        self.retention_factor = retention_factor
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._windows: ShardedTable[Tuple[str, str], RateWindow] = ShardedTable(shard_count)
        self._sweep_lock = threading.Lock()
        self._last_sweep = clock()

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimiter":
        """Build from a `RateLimitSettings` section"""
        return cls(
            RuleSet(config.default, config.per_endpoint),
            retention_factor=config.retention_factor,
            sweep_interval=config.sweep_interval_seconds,
            **kwargs
        )

    def admit(
        self,
        key: str,
        now: Optional[float] = None,
        endpoint: Optional[str] = None
    ) -> Admission:
        """
        Count one request for `key` and decide whether it may proceed.

        Args:
            key: Client key (IP or client id)
            now: Timestamp in seconds; defaults to the limiter clock
            endpoint: `"METHOD /path"` used to pick a per-endpoint rule

        Returns:
            Allowed with remaining quota, or Rejected with retry_after > 0
        """
        if now is None:
            now = self._clock()
        scope, rule = self.rules.match(endpoint)
        window_key = (scope, key)
        shard = self._windows.shard(window_key)

        with shard.lock:
            window = shard.items.get(window_key)
            if window is None or window.expired(now):
                window = RateWindow(
                    key=key,
                    window_start=now,
                    count=0,
                    limit=rule.limit,
                    period_seconds=rule.period_seconds
                )
                shard.items[window_key] = window

            window.count += 1
            elapsed = max(0.0, now - window.window_start)
            remaining_time = window.period_seconds - elapsed

            if window.count > window.limit:
                result: Admission = Rejected(retry_after=remaining_time, limit=window.limit)
            else:
                result = Allowed(
                    limit=window.limit,
                    remaining=window.limit - window.count,
                    reset_after=remaining_time
                )

        if isinstance(result, Rejected):
            logger.debug("Rate limit hit for %s on scope %s", key, scope)

        self._maybe_sweep(now)
        return result

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self.sweep_interval:
            return
        # Only one caller sweeps; the others carry on
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._last_sweep = now
            self.evict_idle(now)
        finally:
            self._sweep_lock.release()

    def evict_idle(self, now: Optional[float] = None) -> int:
        """
        Drop windows idle for longer than period x retention_factor.

        A window is never evicted before `window_start + period_seconds`, so
        eviction cannot reset a window that is still counting.
        """
        if now is None:
            now = self._clock()
        evicted = 0
        for shard in self._windows.shards():
            with shard.lock:
                stale = [
                    window_key for window_key, window in shard.items.items()
                    if now > window.window_start + window.period_seconds * self.retention_factor
                ]
                for window_key in stale:
                    del shard.items[window_key]
                evicted += len(stale)

        if evicted:
            logger.debug("🧹 Evicted %d idle rate-limit windows", evicted)
        return evicted

    def get_window(self, key: str, endpoint: Optional[str] = None) -> Optional[RateWindow]:
        """Snapshot of the window that `admit(key, endpoint=endpoint)` would use"""
        scope, _ = self.rules.match(endpoint)
        shard = self._windows.shard((scope, key))
        with shard.lock:
            window = shard.items.get((scope, key))
            if window is None:
                return None
            return RateWindow(**vars(window))

    def clear(self) -> None:
        self._windows.clear()

    def get_stats(self) -> Dict[str, object]:
        return {
            "backend": "memory",
            "tracked_windows": len(self._windows),
            "retention_factor": self.retention_factor,
            "rules": self.rules.describe()
        }


class RedisRateLimiter:
    """
    Fixed-window limiter backed by Redis, shared by every worker process.

    The window key lives for exactly one period: the first INCR opens the
    window and `EXPIRE ... NX` pins its end, so concurrent workers agree on
    one count per window. Timestamps come from the Redis server; the `now`
    argument is accepted for interface parity and ignored.
    """

    KEY_PREFIX = "apishield:rl"

    def __init__(self, redis_service, rules: RuleSet):
        self.redis_service = redis_service
        self.rules = rules

    @classmethod
    def from_config(cls, redis_service, config) -> "RedisRateLimiter":
        return cls(redis_service, RuleSet(config.default, config.per_endpoint))

    def _redis_key(self, scope: str, key: str) -> str:
        return f"{self.KEY_PREFIX}:{scope}:{key}"

    async def admit(
        self,
        key: str,
        now: Optional[float] = None,
        endpoint: Optional[str] = None
    ) -> Admission:
        scope, rule = self.rules.match(endpoint)
        redis_key = self._redis_key(scope, key)

        # Raises ServiceError (503) while Redis is not connected
        client = self.redis_service.client

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, rule.period_seconds, nx=True)
                pipe.pttl(redis_key)
                count, _, pttl = await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis rate limit check failed: {e}")
            raise RedisServiceError(
                "Rate limit check failed",
                key=redis_key,
                operation="admit",
                details={'error_type': type(e).__name__}
            ) from e

        remaining_time = pttl / 1000.0 if pttl and pttl > 0 else float(rule.period_seconds)

        if count > rule.limit:
            return Rejected(retry_after=remaining_time, limit=rule.limit)
        return Allowed(limit=rule.limit, remaining=rule.limit - count, reset_after=remaining_time)

    def clear(self) -> None:
        # Keys expire on their own in Redis
        pass

    def get_stats(self) -> Dict[str, object]:
        return {
            "backend": "redis",
            "connected": self.redis_service.is_connected(),
            "service": self.redis_service.get_metrics(),
            "rules": self.rules.describe()
        }
