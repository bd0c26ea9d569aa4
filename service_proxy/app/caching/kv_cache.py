"""
Key-value cache shared by the token manager and the proxy.

Redis is the preferred backend. Any Redis failure (missing host, failed
connect, failed command) permanently switches the cache to an in-process
store for the rest of the process lifetime, and the failing call is served
from that store so callers never see backend errors.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, TYPE_CHECKING

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


OK = "OK"
BACKEND_ERRORS = (RedisError, OSError)


class CacheBackend(Enum):
    """Storage backend currently serving the cache."""
    NETWORKED = "networked"
    LOCAL = "local"


@dataclass
class CacheEntry:
    """Value stored in the in-process backend."""

    value: str
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class LocalStore:
    """In-process store with one cancellable eviction timer per expiring key."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        # Timers may fire late relative to the wall clock.
        if entry.is_expired(self._clock()):
            self._cancel_timer(key)
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: str, expires_at: Optional[float] = None) -> str:
        self._cancel_timer(key)
        now = self._clock()
        if expires_at is not None and expires_at <= now:
            self._entries.pop(key, None)
            return OK

        self._entries[key] = CacheEntry(value=value, expires_at=expires_at)
        if expires_at is not None:
            self._schedule_eviction(key, expires_at - now)
        return OK

    def delete(self, key: str) -> int:
        self._cancel_timer(key)
        entry = self._entries.pop(key, None)
        if entry is None or entry.is_expired(self._clock()):
            return 0
        return 1

    def clear(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries.clear()

    def _schedule_eviction(self, key: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(max(delay, 0.0), self._evict, key)

    def _evict(self, key: str) -> None:
        self._timers.pop(key, None)
        entry = self._entries.get(key)
        if entry is None or entry.expires_at is None:
            return
        remaining = entry.expires_at - self._clock()
        if remaining > 0:
            # Loop clock ran ahead of the wall clock; try again later.
            self._schedule_eviction(key, remaining)
            return
        del self._entries[key]

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()


class KeyValueCache:
    """String cache with absolute-expiry writes and one-way Redis fallback."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 6379,
        password: Optional[str] = None,
        *,
        client: Optional[redis.Redis] = None,
        connect_timeout: float = 5.0,
        socket_timeout: float = 5.0,
        local_store: Optional[LocalStore] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.logger = get_logger("proxy.cache")
        self.metrics = metrics
        self.local = local_store or LocalStore()
        self._connected = False
        self._connect_lock = asyncio.Lock()
        self._redis: Optional[redis.Redis] = client

        if self._redis is None and host:
            self._redis = redis.Redis(
                host=host,
                port=port,
                password=password or None,
                decode_responses=True,
                socket_connect_timeout=connect_timeout,
                socket_timeout=socket_timeout,
            )

        if self._redis is None:
            self._backend = CacheBackend.LOCAL
            self.logger.warning("Cache fallback: Redis host is not configured, using in-process store")
            self._record_backend()
        else:
            self._backend = CacheBackend.NETWORKED

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    async def connect(self) -> CacheBackend:
        """Verify the Redis connection once; fall back to the local store on failure."""
        if self._backend is CacheBackend.LOCAL or self._connected:
            return self._backend

        async with self._connect_lock:
            if self._backend is CacheBackend.NETWORKED and not self._connected:
                try:
                    await self._redis.ping()
                except BACKEND_ERRORS as exc:
                    await self._fallback("Redis unavailable", exc)
                else:
                    self._connected = True
                    self.logger.info("Redis connected")
        return self._backend

    async def close(self) -> None:
        """Release Redis; later calls are served by the in-process store."""
        client, self._redis = self._redis, None
        self._connected = False
        self._backend = CacheBackend.LOCAL
        self.local.clear()
        if client is not None:
            await self._close_client(client)

    async def get(self, key: str) -> Optional[str]:
        client = await self._remote()
        if client is not None:
            try:
                return await client.get(key)
            except BACKEND_ERRORS as exc:
                await self._fallback("Redis get failed", exc)
        return self.local.get(key)

    async def set(self, key: str, value: str) -> str:
        client = await self._remote()
        if client is not None:
            try:
                await client.set(key, value)
                return OK
            except BACKEND_ERRORS as exc:
                await self._fallback("Redis set failed", exc)
        return self.local.set(key, value)

    async def set_with_expiry(self, key: str, value: str, unix_seconds: float) -> str:
        """Store ``value`` until the absolute unix time ``unix_seconds``."""
        client = await self._remote()
        if client is not None:
            try:
                await client.set(key, value)
            except BACKEND_ERRORS as exc:
                await self._fallback("Redis set failed", exc)
            else:
                try:
                    await client.expireat(key, int(unix_seconds))
                    return OK
                except BACKEND_ERRORS as exc:
                    # The remote value has no expiry now; the local copy does.
                    await self._fallback("Redis expire failed", exc)
        return self.local.set(key, value, expires_at=float(unix_seconds))

    async def delete(self, key: str) -> int:
        client = await self._remote()
        if client is not None:
            try:
                return int(await client.delete(key))
            except BACKEND_ERRORS as exc:
                await self._fallback("Redis delete failed", exc)
        return self.local.delete(key)

    def health(self) -> Dict[str, object]:
        status: Dict[str, object] = {"backend": self._backend.value}
        if self._backend is CacheBackend.LOCAL:
            status["keys"] = len(self.local)
        return status

    async def _remote(self) -> Optional[redis.Redis]:
        await self.connect()
        if self._backend is CacheBackend.NETWORKED:
            return self._redis
        return None

    async def _fallback(self, reason: str, error: Optional[BaseException] = None) -> None:
        if self._backend is CacheBackend.LOCAL:
            return

        self._backend = CacheBackend.LOCAL
        client, self._redis = self._redis, None
        self.logger.warning(
            "Cache fallback: using in-process store",
            reason=reason,
            error=str(error) if error is not None else None,
        )
        self._record_backend()
        if client is not None:
            await self._close_client(client)

    async def _close_client(self, client: redis.Redis) -> None:
        try:
            await client.aclose()
        except BACKEND_ERRORS as exc:
            self.logger.error("Error closing redis client", error=str(exc))

    def _record_backend(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("cache_backend_local", 1 if self._backend is CacheBackend.LOCAL else 0)
