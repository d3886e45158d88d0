"""
Model cache with explicit TTL.

Two interchangeable implementations: an in-process dictionary for single
workers and tests, and Redis for shared deployments. Cache failures are
logged and treated as misses; the cache is never the source of truth.
"""

import copy
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class ModelCache(ABC):
    """Key-value cache for JSON-serialisable values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class MemoryCache(ModelCache):
    """In-process TTL cache. Values are deep-copied in and out."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: int) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl, copy.deepcopy(value))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(ModelCache):
    """Redis backed cache storing JSON strings with SETEX."""

    def __init__(self, client: redis.Redis):
        self.client = client

    def get(self, key: str) -> Optional[Any]:
        try:
            cached = self.client.get(key)
            if cached:
                return json.loads(cached)
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Cache get error: {e}")
        return None

    def set(self, key: str, value: Any, ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            self.client.setex(key, ttl, json.dumps(value))
        except (redis.RedisError, TypeError) as e:
            logger.error(f"Cache set error: {e}")

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.error(f"Cache invalidation error: {e}")
