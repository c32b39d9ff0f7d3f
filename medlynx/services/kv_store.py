"""
Key-Value Store Capability
==========================

The reminder store persists everything as JSON strings under string keys.
This module defines that narrow capability (get / set / remove) and two
backends:

- ``InMemoryKeyValueStore`` : process-local dict, used in tests and when
                              ``KV_BACKEND=memory``.
- ``RedisKeyValueStore``    : redis-py client (``decode_responses=True``).
                              redis-py is synchronous, so every call is
                              wrapped with ``asyncio.to_thread()`` to keep the
                              event loop free.

Any failure to reach the backend surfaces as ``StorageUnavailableError``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from medlynx.config import REDIS_KEY_PREFIX, REDIS_URL
from medlynx.services.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


def _redis_url_safe(url: str) -> str:
    """
    Mask the password portion of a Redis URL for safe logging.

    ``redis://:secret@host:6379/0`` becomes ``redis://*****@host:6379/0``.
    """
    if "@" in url:
        prefix_end = url.index("://") + 3
        at_pos = url.index("@")
        return url[:prefix_end] + "*****" + url[at_pos:]
    return url


# =============================================================================
# Capability
# =============================================================================

class KeyValueStore(ABC):
    """Async string key-value capability used by ReminderStore."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None when the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete ``key``. Removing an absent key is not an error."""


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store. ``available=False`` simulates an unreachable backend."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self.available = True

    def _check(self, key: str, operation: str) -> None:
        if not self.available:
            raise StorageUnavailableError(
                message="In-memory store marked unavailable",
                key=key,
                operation=operation,
            )

    async def get(self, key: str) -> Optional[str]:
        self._check(key, "get")
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._check(key, "set")
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._check(key, "remove")
        self._data.pop(key, None)

    def keys(self):
        return list(self._data.keys())


# =============================================================================
# Redis Backend
# =============================================================================

class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    Keys are namespaced with ``key_prefix`` so the engine can share a Redis
    database with other applications.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        url: str = REDIS_URL,
        key_prefix: str = REDIS_KEY_PREFIX,
    ):
        """
        Initialize the Redis store.

        Args:
            client: Optional existing redis client (must use decode_responses=True).
                    If not provided, one is created from ``url`` on first use.
            url: Redis connection string
            key_prefix: Namespace prepended to every key
        """
        self._client = client
        self.url = url
        self.key_prefix = key_prefix

    @property
    def client(self) -> Any:
        if self._client is None:
            # Lazy import so the memory backend never needs redis installed at import time
            from redis import Redis  # type: ignore[import-untyped]

            self._client = Redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            logger.info("Redis key-value store initialised (url=%s)", _redis_url_safe(self.url))
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def _call(self, operation: str, key: str, *args: Any) -> Any:
        from redis.exceptions import RedisError  # type: ignore[import-untyped]

        method = getattr(self.client, operation)
        try:
            return await asyncio.to_thread(method, self._key(key), *args)
        except RedisError as e:
            logger.error(f"Redis {operation} failed for key {key}: {e}")
            raise StorageUnavailableError(
                message=f"Redis {operation} failed",
                key=key,
                operation=operation,
                original_error=e,
            ) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key)

    async def set(self, key: str, value: str) -> None:
        await self._call("set", key, value)

    async def remove(self, key: str) -> None:
        await self._call("delete", key)

    def close(self) -> None:
        """Close the underlying connection pool, if one was opened."""
        if self._client is not None:
            self._client.close()
            self._client = None
