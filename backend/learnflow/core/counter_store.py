"""
Counter store backing rate limiting and quota reservations

Every cross-request counter in the service goes through one of these
primitives; callers never read a counter and write it back in two steps.
"""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple
import logging

from limits.aio.storage import MemoryStorage
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from learnflow.core.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def now_ms(clock: Clock = time.time) -> int:
    return int(clock() * 1000)


@dataclass(frozen=True)
class CounterWindow:
    """Post-increment state of one fixed window"""
    count: int
    reset_time: int  # epoch milliseconds, exclusive end of the window


class CounterStore(ABC):
    """Atomic increment-and-expire key/value store"""

    def __init__(self, clock: Clock = time.time):
        self.clock = clock

    def window_for(self, window_ms: int) -> Tuple[int, int]:
        """Return (window_index, reset_time) for the current instant"""
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        index = now_ms(self.clock) // window_ms
        return index, (index + 1) * window_ms

    @abstractmethod
    async def increment(self, key: str, window_ms: int) -> CounterWindow:
        """Increment `{key}:{window_index}` and return the new count"""

    @abstractmethod
    async def add(self, key: str, amount: int, expires_at: int) -> int:
        """Atomically add `amount` (may be negative) to `key`, expiring at `expires_at` ms"""

    @abstractmethod
    async def get(self, key: str) -> int:
        """Current value of `key`, 0 when absent or expired"""

    @abstractmethod
    async def reset(self, prefix: str) -> int:
        """Delete every counter whose key starts with `prefix`; returns how many"""

    async def close(self) -> None:
        return None


class MemoryCounterStore(CounterStore):
    """
    In-process counters for single-instance deployments, kept in a limits
    MemoryStorage. Window indexes follow the injected clock; key expiry is
    handled by the storage on wall-clock time.
    """

    def __init__(self, clock: Clock = time.time, storage: Optional[MemoryStorage] = None):
        super().__init__(clock)
        self.storage = storage or MemoryStorage()

    def _ttl_seconds(self, expires_at: int) -> float:
        return max(expires_at - now_ms(self.clock), 1) / 1000

    async def increment(self, key: str, window_ms: int) -> CounterWindow:
        index, reset_time = self.window_for(window_ms)
        count = await self.storage.incr(f"{key}:{index}", self._ttl_seconds(reset_time), amount=1)
        return CounterWindow(count=count, reset_time=reset_time)

    async def add(self, key: str, amount: int, expires_at: int) -> int:
        return await self.storage.incr(key, self._ttl_seconds(expires_at), amount=amount)

    async def get(self, key: str) -> int:
        return await self.storage.get(key)

    async def reset(self, prefix: str) -> int:
        doomed = [k for k in list(self.storage.storage) if k.startswith(prefix)]
        for k in doomed:
            await self.storage.clear(k)
        return len(doomed)


class RedisCounterStore(CounterStore):
    """Shared counters for multi-instance deployments (INCR + PEXPIREAT in MULTI/EXEC)"""

    def __init__(self, client: "aioredis.Redis", clock: Clock = time.time, scan_count: int = 500):
        super().__init__(clock)
        self.client = client
        self.scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, clock: Clock = time.time) -> "RedisCounterStore":
        return cls(aioredis.from_url(url, decode_responses=True), clock=clock)

    async def increment(self, key: str, window_ms: int) -> CounterWindow:
        index, reset_time = self.window_for(window_ms)
        full_key = f"{key}:{index}"
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(full_key)
                pipe.pexpireat(full_key, reset_time)
                count, _ = await pipe.execute()
        except RedisError as e:
            logger.error(f"Counter increment failed for {full_key}: {e}")
            raise StoreUnavailableError(f"Counter store unavailable: {e}") from e
        return CounterWindow(count=int(count), reset_time=reset_time)

    async def add(self, key: str, amount: int, expires_at: int) -> int:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                pipe.pexpireat(key, expires_at)
                value, _ = await pipe.execute()
        except RedisError as e:
            logger.error(f"Counter add failed for {key}: {e}")
            raise StoreUnavailableError(f"Counter store unavailable: {e}") from e
        return int(value)

    async def get(self, key: str) -> int:
        try:
            value = await self.client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(f"Counter store unavailable: {e}") from e
        return int(value) if value is not None else 0

    async def reset(self, prefix: str) -> int:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
        deleted = 0
        try:
            batch = []
            async for key in self.client.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
        except RedisError as e:
            logger.error(f"Counter reset failed for prefix {prefix}: {e}")
            raise StoreUnavailableError(f"Counter store unavailable: {e}") from e
        return deleted

    async def close(self) -> None:
        await self.client.aclose()


def build_counter_store(backend: str, redis_url: Optional[str] = None, clock: Clock = time.time) -> CounterStore:
    """Construct the configured counter store backend"""
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required for the redis counter store")
        logger.info("Using Redis counter store")
        return RedisCounterStore.from_url(redis_url, clock=clock)
    logger.info("Using in-process counter store")
    return MemoryCounterStore(clock=clock)
