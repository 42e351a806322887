"""Keyed blob storage for voice and noise profiles"""

import threading
from typing import Dict, Optional, Protocol

import redis
import structlog

from .config import settings

logger = structlog.get_logger(__name__)


class ProfileStore(Protocol):
    """Minimal durable store: one JSON blob per key"""

    def save(self, key: str, blob: str) -> None:
        ...

    def load(self, key: str) -> Optional[str]:
        ...


class InMemoryProfileStore:
    """Process-local store, used by default and in tests"""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, key: str, blob: str) -> None:
        with self._lock:
            self._data[key] = blob

    def load(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)


class RedisProfileStore:
    """Redis-backed store so profiles survive process restarts"""

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.key_prefix = key_prefix if key_prefix is not None else settings.profile_key_prefix
        self._client = client or redis.Redis.from_url(
            redis_url or settings.redis_url,
            decode_responses=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def save(self, key: str, blob: str) -> None:
        self._client.set(self._key(key), blob)
        logger.debug("Profile blob saved", key=key, size=len(blob))

    def load(self, key: str) -> Optional[str]:
        value = self._client.get(self._key(key))
        if isinstance(value, bytes):
            value = value.decode()
        return value


def create_profile_store(backend: Optional[str] = None) -> ProfileStore:
    """Build the store selected by settings"""
    backend = (backend or settings.profile_store_backend).lower()
    if backend == "redis":
        logger.info("Using Redis profile store", redis_url=settings.redis_url)
        return RedisProfileStore()
    if backend != "memory":
        raise ValueError(f"Unknown profile store backend: {backend}")
    return InMemoryProfileStore()
