import json
import logging
import os
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Key namespaces; bump the version segment when a cached payload changes shape.
CATALOG_PREFIX = "catalog:v1"
DASHBOARD_PREFIX = "dashboard:v1"


class _MemoryBackend:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._cache: dict[str, tuple[float, Any]] = {}
        self.expired = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._cache.get(key)
            if not item:
                return None
            expires_at, value = item
            if expires_at < time.time():
                self._cache.pop(key, None)
                self.expired += 1
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._cache[key] = (time.time() + ttl_seconds, value)

    def invalidate(self, prefix_or_key: str) -> None:
        with self._lock:
            if prefix_or_key in self._cache:
                self._cache.pop(prefix_or_key, None)
                return
            for k in [k for k in self._cache if k.startswith(prefix_or_key)]:
                self._cache.pop(k, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


class _RedisBackend:
    expired = 0

    def __init__(self, url: str) -> None:
        import redis

        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._client.ping()

    def get(self, key: str) -> Optional[Any]:
        val = self._client.get(key)
        if val is None:
            return None
        try:
            return json.loads(val)
        except ValueError:
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
        self._client.setex(key, ttl_seconds, payload)

    def invalidate(self, prefix_or_key: str) -> None:
        if self._client.delete(prefix_or_key):
            return
        pipe = self._client.pipeline(transaction=False)
        for k in self._client.scan_iter(f"{prefix_or_key}*"):
            pipe.delete(k)
        pipe.execute()

    def clear(self) -> None:
        self.invalidate(CATALOG_PREFIX)
        self.invalidate(DASHBOARD_PREFIX)


_CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"
_metrics_lock = threading.RLock()
_cache_hits = 0
_cache_misses = 0
_backend: Any


def _select_backend() -> Any:
    if os.getenv("USE_REDIS_CACHE") == "1":
        url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        try:
            return _RedisBackend(url)
        except Exception as e:
            logger.warning("Redis cache unavailable at %s (%s); using in-process cache", url, e)
    return _MemoryBackend()


_backend = _select_backend()


def cache_get(key: str) -> Optional[Any]:
    global _cache_hits, _cache_misses
    if not _CACHE_ENABLED:
        return None
    try:
        value = _backend.get(key)
    except Exception as e:
        logger.warning("cache get failed key=%s: %s", key, e)
        return None
    with _metrics_lock:
        if value is not None:
            _cache_hits += 1
        else:
            _cache_misses += 1
    logger.debug("cache %s key=%s", "hit" if value is not None else "miss", key)
    return value


def cache_set(key: str, value: Any, ttl_seconds: int) -> None:
    if not _CACHE_ENABLED:
        return
    try:
        _backend.set(key, value, ttl_seconds)
    except Exception as e:
        logger.warning("cache set failed key=%s: %s", key, e)


def cache_invalidate(prefix_or_key: str) -> None:
    try:
        _backend.invalidate(prefix_or_key)
        logger.debug("cache invalidate pattern=%s", prefix_or_key)
    except Exception as e:
        logger.warning("cache invalidate failed pattern=%s: %s", prefix_or_key, e)


def cache_memo(key: str, ttl_seconds: int, producer: Callable[[], Any]) -> Any:
    cached = cache_get(key)
    if cached is not None:
        return cached
    value = producer()
    cache_set(key, value, ttl_seconds)
    return value


def cache_clear() -> None:
    _backend.clear()


def invalidate_catalog() -> None:
    cache_invalidate(CATALOG_PREFIX)
    cache_invalidate(DASHBOARD_PREFIX)


def cache_metrics() -> dict[str, int]:
    with _metrics_lock:
        return {
            "hits": _cache_hits,
            "misses": _cache_misses,
            "expired": getattr(_backend, "expired", 0),
        }
