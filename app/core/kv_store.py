"""
Ephemeral key/value state shared by the CSRF guard, rate limiter and
message dedup guard.

Entries carry an absolute expiry (epoch seconds). An expired entry is never
returned by a read, whether or not the periodic sweep has removed it yet.
"""

import abc
import asyncio
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import redis

from app.core.config import settings
from app.core.errors import ConfigError

logger = logging.getLogger(__name__)

# mutator(current_value) -> (new_value, expires_at, result); new_value None leaves the entry untouched
Mutator = Callable[[Optional[Any]], Tuple[Optional[Any], Optional[float], Any]]


class KeyValueStore(abc.ABC):
    """Store capability used by the security guards."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, or None if absent or expired."""

    @abc.abstractmethod
    def set(self, key: str, value: Any, expires_at: float) -> None:
        """Store value until the absolute time expires_at."""

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abc.abstractmethod
    def update(self, key: str, mutator: Mutator) -> Any:
        """
        Atomically read-modify-write a single key.

        Concurrent updates to the same key are serialized; updates to
        different keys do not wait on each other.

        Returns:
            The third element returned by mutator
        """

    @abc.abstractmethod
    def sweep_expired(self) -> int:
        """Delete expired entries, returning how many were removed."""

    @abc.abstractmethod
    def clear(self) -> None:
        ...


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store backed by a dict.

    Suitable for a single process. Each key gets its own lock while it is
    being updated; the lock is discarded once no thread holds or waits on it.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}
        self._locks: Dict[str, list] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _key_lock(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _live(self, key: str, now: float) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= now:
            return None
        return value

    def get(self, key: str) -> Optional[Any]:
        return self._live(key, self._clock())

    def set(self, key: str, value: Any, expires_at: float) -> None:
        with self._key_lock(key):
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._key_lock(key):
            self._data.pop(key, None)

    def update(self, key: str, mutator: Mutator) -> Any:
        with self._key_lock(key):
            current = self._live(key, self._clock())
            new_value, expires_at, result = mutator(current)
            if new_value is not None:
                self._data[key] = (new_value, expires_at)
            return result

    def sweep_expired(self) -> int:
        now = self._clock()
        removed = 0
        for key, (_, expires_at) in list(self._data.items()):
            if expires_at > now:
                continue
            with self._key_lock(key):
                # Re-check under the lock: an update may have refreshed the entry
                item = self._data.get(key)
                if item is not None and item[1] <= now:
                    del self._data[key]
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._registry_lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store for deployments running several processes.

    Values are JSON encoded and expire natively through PXAT, so the sweep
    has nothing to do.
    """

    def __init__(self, client: redis.Redis, prefix: str = "verify-auth:"):
        self.redis_client = client
        self.prefix = prefix

    def _name(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _expiry_ms(expires_at: float) -> int:
        return int(expires_at * 1000)

    def get(self, key: str) -> Optional[Any]:
        raw = self.redis_client.get(self._name(key))
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, expires_at: float) -> None:
        self.redis_client.set(self._name(key), json.dumps(value), pxat=self._expiry_ms(expires_at))

    def delete(self, key: str) -> None:
        self.redis_client.delete(self._name(key))

    def update(self, key: str, mutator: Mutator) -> Any:
        name = self._name(key)

        def _transaction(pipe: redis.client.Pipeline) -> Any:
            raw = pipe.get(name)
            current = json.loads(raw) if raw is not None else None
            new_value, expires_at, result = mutator(current)
            pipe.multi()
            if new_value is not None:
                pipe.set(name, json.dumps(new_value), pxat=self._expiry_ms(expires_at))
            return result

        # WatchError retries re-run the mutator against the fresh value
        return self.redis_client.transaction(_transaction, name, value_from_callable=True)

    def sweep_expired(self) -> int:
        return 0

    def clear(self) -> None:
        for name in self.redis_client.scan_iter(match=f"{self.prefix}*"):
            self.redis_client.delete(name)


def build_store(backend: str, redis_url: Optional[str] = None) -> KeyValueStore:
    """Create the configured store backend."""
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "redis":
        if not redis_url:
            raise ConfigError(detail="STATE_BACKEND=redis requires a Redis URL", operation="startup")
        return RedisKeyValueStore(redis.Redis.from_url(redis_url, decode_responses=True))
    raise ConfigError(detail=f"Unknown STATE_BACKEND {backend!r}", operation="startup")


async def sweep_periodically(store: KeyValueStore, interval_seconds: float) -> None:
    """Background task: remove expired entries every interval_seconds."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(store.sweep_expired)
            if removed:
                logger.info(f"Swept {removed} expired security state entries")
        except redis.RedisError as e:
            logger.error(f"State sweep failed: {e}")


# Singleton instance shared by the CSRF guard, rate limiter and dedup guard
state_store = build_store(settings.STATE_BACKEND, settings.REDIS_URL)
