"""
Replica Router Read-Through Cache

Cache gateway used by the dispatcher, and two cache stores: an in-process
store and a Redis store shared between processes.
"""

import hashlib
import json
import pickle
import time
from typing import Any, Optional, Protocol, Sequence
import redis
import structlog

from shared.errors import CacheError

logger = structlog.get_logger()

DEFAULT_LIFETIME = 3600  # Seconds
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class _CacheMiss:
    """Marker returned by cache stores when no entry exists."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "CACHE_MISS"

    def __reduce__(self):
        return (_CacheMiss, ())


CACHE_MISS = _CacheMiss()


def cache_key(operation: str, args: Sequence[Any]) -> str:
    """Stable digest of an operation name and its arguments."""
    payload = json.dumps([operation, list(args)], sort_keys=True, default=repr)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CacheStore(Protocol):
    """
    Storage behind the cache gateway.

    ``get`` must return CACHE_MISS when there is no entry, so that cached
    None, False or empty results stay distinguishable from a miss.
    """

    def get(self, operation: str, args: Sequence[Any]) -> Any: ...
    def save(self, operation: str, args: Sequence[Any], result: Any) -> None: ...


# =============================================================================
# Stores
# =============================================================================

class MemoryCacheStore:
    """In-process store. Values are pickled so callers cannot mutate entries."""

    def __init__(self, lifetime: int = DEFAULT_LIFETIME):
        self.lifetime = lifetime
        self._entries: dict[str, tuple[float, bytes]] = {}

    def get(self, operation: str, args: Sequence[Any]) -> Any:
        key = cache_key(operation, args)
        entry = self._entries.get(key)
        if entry is None:
            return CACHE_MISS

        expires_at, data = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return CACHE_MISS
        return pickle.loads(data)

    def save(self, operation: str, args: Sequence[Any], result: Any) -> None:
        now = time.monotonic()
        self._prune(now)
        self._entries[cache_key(operation, args)] = (now + self.lifetime, pickle.dumps(result))

    def _prune(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheStore:
    """
    Redis-backed store shared by every process pointed at the same server.

    Entries are pickled and written with SETEX, so expiry is left to Redis.
    Redis errors propagate to the gateway, which reports them as CacheError.
    """

    def __init__(
        self,
        url: str = DEFAULT_REDIS_URL,
        lifetime: int = DEFAULT_LIFETIME,
        prefix: str = "replica-router:",
        client: Optional[redis.Redis] = None
    ):
        self.url = url
        self.lifetime = lifetime
        self.prefix = prefix
        self._client = client

    def _get_redis(self) -> redis.Redis:
        """Return the Redis client, creating it on first use."""
        if self._client is None:
            self._client = redis.Redis.from_url(
                self.url,
                socket_connect_timeout=2,
                socket_timeout=1,
            )
            logger.info("redis_cache_connected", url=self.url)
        return self._client

    def _key(self, operation: str, args: Sequence[Any]) -> str:
        return self.prefix + cache_key(operation, args)

    def get(self, operation: str, args: Sequence[Any]) -> Any:
        data = self._get_redis().get(self._key(operation, args))
        if data is None:
            return CACHE_MISS
        return pickle.loads(data)

    def save(self, operation: str, args: Sequence[Any], result: Any) -> None:
        self._get_redis().setex(self._key(operation, args), self.lifetime, pickle.dumps(result))

# =============================================================================
# Gateway
# =============================================================================

class CacheGateway:
    """Wraps a cache store, turning store failures into CacheError."""

    def __init__(self, store: CacheStore):
        self.store = store

    def lookup(self, operation: str, args: Sequence[Any]) -> Any:
        """
        Look up a cached result.

        Returns:
            The cached value, or CACHE_MISS
        """
        try:
            value = self.store.get(operation, args)
        except Exception as e:
            logger.warning("cache_lookup_failed", operation=operation, error=str(e))
            raise CacheError(f"Cache lookup failed for '{operation}': {e}") from e

        if value is not CACHE_MISS:
            logger.debug("cache_hit", operation=operation)
        return value

    def populate(self, operation: str, args: Sequence[Any], result: Any) -> None:
        """
        Store a freshly forwarded result.

        On failure the result is attached to the raised CacheError.
        """
        try:
            self.store.save(operation, args, result)
        except Exception as e:
            logger.warning("cache_save_failed", operation=operation, error=str(e))
            raise CacheError(
                f"Cache save failed for '{operation}': {e}", result=result
            ) from e
