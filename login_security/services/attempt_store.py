"""TTL key/value stores backing the login security counters.

Every public call is time-bounded. A store that cannot be reached logs a
warning and answers with the empty result (0 / None / no-op) so the login
path never blocks or fails because the cache is down.
"""

from __future__ import annotations

import abc
import asyncio
import threading
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from login_security.core.errors import TransientStoreError

logger = structlog.get_logger()

T = TypeVar("T")


class AttemptStore(abc.ABC):
    """Minimal store contract: atomic increment-with-TTL, get, set-with-TTL, swap, delete."""

    transient_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, timeout: float = 0.5) -> None:
        self._timeout = timeout

    # -- public API ---------------------------------------------------------

    async def increment(self, key: str, window_seconds: int) -> int:
        """Atomically add one to ``key``. The TTL is only set when the key is created."""
        return await self._guarded("increment", key, self._increment(key, window_seconds), 0)

    async def get(self, key: str, *, strict: bool = False) -> str | None:
        """Read ``key``. With ``strict`` an outage raises TransientStoreError."""
        if strict:
            return await self._bounded("get", key, self._get(key))
        return await self._guarded("get", key, self._get(key), None)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._guarded("set", key, self._set_with_ttl(key, value, ttl_seconds), None)

    async def swap_with_ttl(self, key: str, value: str, ttl_seconds: int) -> str | None:
        """Atomically replace ``key`` and return its previous value."""
        return await self._guarded("swap", key, self._swap_with_ttl(key, value, ttl_seconds), None)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        await self._guarded("delete", keys[0], self._delete(keys), None)

    async def ping(self) -> bool:
        return bool(await self._guarded("ping", None, self._ping(), False))

    async def close(self) -> None:
        """Release backend resources."""

    async def sweep(self, prefixes: Iterable[str], *, batch_size: int, orphan_ttl_seconds: int) -> int:
        """Run the store-specific cleanup for keys under ``prefixes``.

        Never removes a record whose TTL has not elapsed. Yields to the event
        loop between batches so a scheduled sweep can be cancelled. Raises
        TransientStoreError if the store goes away mid-sweep.
        """
        return await self._sweep(tuple(prefixes), batch_size, orphan_ttl_seconds)

    # -- helpers ------------------------------------------------------------

    async def _bounded(self, operation: str, key: str | None, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TransientStoreError(operation, key, e) from e
        except self.transient_errors as e:
            raise TransientStoreError(operation, key, e) from e

    async def _guarded(self, operation: str, key: str | None, coro: Awaitable[T], default: T) -> T:
        try:
            return await self._bounded(operation, key, coro)
        except TransientStoreError as e:
            logger.warning(
                "attempt_store.unavailable",
                store=type(self).__name__,
                operation=operation,
                key=key,
                error=str(e),
            )
            return default

    # -- backend hooks ------------------------------------------------------

    @abc.abstractmethod
    async def _increment(self, key: str, window_seconds: int) -> int: ...

    @abc.abstractmethod
    async def _get(self, key: str) -> str | None: ...

    @abc.abstractmethod
    async def _set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abc.abstractmethod
    async def _swap_with_ttl(self, key: str, value: str, ttl_seconds: int) -> str | None: ...

    @abc.abstractmethod
    async def _delete(self, keys: tuple[str, ...]) -> None: ...

    @abc.abstractmethod
    async def _ping(self) -> bool: ...

    @abc.abstractmethod
    async def _sweep(self, prefixes: tuple[str, ...], batch_size: int, orphan_ttl_seconds: int) -> int: ...


class RedisAttemptStore(AttemptStore):
    """Production store on a shared Redis (TTL-native)."""

    transient_errors = (RedisError, OSError)

    def __init__(self, client: aioredis.Redis, timeout: float = 0.5) -> None:
        super().__init__(timeout)
        self._redis = client

    async def _increment(self, key: str, window_seconds: int) -> int:
        # INCR + EXPIRE NX in one MULTI: concurrent failures all register and
        # the window stays anchored at the first failure.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def _get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def _set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def _swap_with_ttl(self, key: str, value: str, ttl_seconds: int) -> str | None:
        # SET ... GET (Redis 6.2+)
        return await self._redis.set(key, value, ex=ttl_seconds, get=True)

    async def _delete(self, keys: tuple[str, ...]) -> None:
        await self._redis.delete(*keys)

    async def _ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()

    async def _sweep(self, prefixes: tuple[str, ...], batch_size: int, orphan_ttl_seconds: int) -> int:
        # Redis expires keys by itself; the sweep only repairs keys that lost
        # their TTL (e.g. a crash between INCR and EXPIRE).
        cleaned = 0
        for prefix in prefixes:
            cursor = 0
            while True:
                cursor, keys = await self._bounded(
                    "scan", prefix, self._redis.scan(cursor=cursor, match=f"{prefix}*", count=batch_size)
                )
                if keys:
                    cleaned += await self._bounded("sweep", prefix, self._expire_orphans(keys, orphan_ttl_seconds))
                await asyncio.sleep(0)
                if int(cursor) == 0:
                    break
        return cleaned

    async def _expire_orphans(self, keys: list[str], orphan_ttl_seconds: int) -> int:
        async with self._redis.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.ttl(key)
            ttls = await pipe.execute()

        orphans = [key for key, ttl in zip(keys, ttls) if ttl == -1]
        if not orphans:
            return 0

        async with self._redis.pipeline(transaction=False) as pipe:
            for key in orphans:
                pipe.expire(key, orphan_ttl_seconds, nx=True)
            await pipe.execute()
        return len(orphans)


class MemoryAttemptStore(AttemptStore):
    """In-process store with lazy expiry.

    Used in tests, single-instance deployments, and when no Redis URL is
    configured. Expired entries are dropped on read and by ``sweep``.
    """

    def __init__(self, timeout: float = 0.5, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(timeout)
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at)
        self._entries: dict[str, tuple[str, float]] = {}

    def _live(self, key: str, now: float) -> tuple[str, float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._entries[key]
            return None
        return entry

    async def _increment(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            if entry is None:
                count, expires_at = 1, now + window_seconds
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._entries[key] = (str(count), expires_at)
        return count

    async def _get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key, self._clock())
        return entry[0] if entry else None

    async def _set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def _swap_with_ttl(self, key: str, value: str, ttl_seconds: int) -> str | None:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            self._entries[key] = (value, now + ttl_seconds)
        return entry[0] if entry else None

    async def _delete(self, keys: tuple[str, ...]) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    async def _ping(self) -> bool:
        return True

    async def _sweep(self, prefixes: tuple[str, ...], batch_size: int, orphan_ttl_seconds: int) -> int:
        with self._lock:
            candidates = [key for key in self._entries if key.startswith(prefixes)]

        cleaned = 0
        for start in range(0, len(candidates), batch_size):
            now = self._clock()
            with self._lock:
                for key in candidates[start : start + batch_size]:
                    entry = self._entries.get(key)
                    if entry is not None and entry[1] <= now:
                        del self._entries[key]
                        cleaned += 1
            await asyncio.sleep(0)
        return cleaned

    def __len__(self) -> int:
        return len(self._entries)
