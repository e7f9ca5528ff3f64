from __future__ import annotations

# name lookup cache: redis when reachable, bounded process memory otherwise
import json
import logging
import time
from threading import Lock
from typing import Any, Dict, Optional, Tuple

from redis import Connection, ConnectionPool, Redis, SSLConnection
from redis.exceptions import RedisError

from siwe_auth.core.config import settings

logger = logging.getLogger(__name__)

_Entry = Tuple[bytes, Optional[float]]


class _MemoryTier:
    """Byte-bounded dict of (payload, expires_at) entries"""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.entries: Dict[str, _Entry] = {}
        self.used = 0
        self._lock = Lock()

    def _drop(self, key: str) -> None:
        payload, _ = self.entries.pop(key)
        self.used -= len(payload)

    def _make_room(self, needed: int) -> None:
        now = time.time()
        for key in [k for k, (_, exp) in self.entries.items() if exp is not None and exp <= now]:
            self._drop(key)
        # entries without expiry sort last
        by_expiry = sorted(self.entries, key=lambda k: self.entries[k][1] or float("inf"))
        for key in by_expiry:
            if self.used + needed <= self.max_bytes:
                break
            self._drop(key)

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self.entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at is not None and expires_at <= time.time():
                self._drop(key)
                return None
            return payload

    def write(self, key: str, payload: bytes, ttl_seconds: Optional[int]) -> None:
        expires_at = None if ttl_seconds is None else time.time() + ttl_seconds
        with self._lock:
            if key in self.entries:
                self._drop(key)
            if self.used + len(payload) > self.max_bytes:
                self._make_room(len(payload))
            self.entries[key] = (payload, expires_at)
            self.used += len(payload)

    def remove(self, key: str) -> None:
        with self._lock:
            if key in self.entries:
                self._drop(key)


class HybridCacheManager:
    """
    JSON cache shared by name lookups.

    Values go to redis when a host is configured and answering; otherwise
    they land in the memory tier. An unreachable redis is probed again only
    after `recheck_interval` seconds so a dead server does not slow every
    lookup down.
    """

    _instance: Optional['HybridCacheManager'] = None
    _instance_lock = Lock()

    def __init__(
        self,
        redis_host: Optional[str] = None,
        redis_port: Optional[int] = None,
        redis_ssl: bool = False,
        max_connections: Optional[int] = None,
        memory_max_size: int = settings.MEMORY_CACHE_MAX_SIZE,
        recheck_interval: int = settings.REDIS_RECHECK_INTERVAL,
    ):
        self.memory = _MemoryTier(memory_max_size)
        self._recheck_interval = recheck_interval
        self._down_since: Optional[float] = None
        self.pool: Optional[ConnectionPool] = None
        if redis_host and redis_host.strip():
            self.pool = ConnectionPool(
                host=redis_host,
                port=redis_port,
                socket_connect_timeout=0.05,
                socket_timeout=5,
                retry_on_timeout=False,
                max_connections=max_connections,
                connection_class=SSLConnection if redis_ssl else Connection,
            )

    @classmethod
    def shared(cls) -> 'HybridCacheManager':
        """Process-wide instance configured from settings"""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls(
                    redis_host=settings.REDIS_HOST,
                    redis_port=settings.REDIS_PORT,
                    redis_ssl=bool(settings.REDIS_SSL),
                    max_connections=settings.REDIS_MAX_CONNECTIONS,
                )
            return cls._instance

    def redis_connect(self) -> Optional[Redis]:
        """A live client, or None while redis is unset or cooling down"""
        if self.pool is None:
            return None
        now = time.time()
        if self._down_since is not None and now - self._down_since < self._recheck_interval:
            return None
        client = Redis(connection_pool=self.pool)
        try:
            client.ping()
        except RedisError:
            if self._down_since is None:
                logger.warning("redis unreachable, name cache falls back to memory")
            self._down_since = now
            client.close()
            return None
        if self._down_since is not None:
            logger.info("redis reachable again")
            self._down_since = None
        return client

    def get(self, key: str, default: Any = None) -> Any:
        """Cached value, or default on a miss. A cached None is returned as None."""
        payload = None
        client = self.redis_connect()
        if client is not None:
            try:
                payload = client.get(key) or None
            except RedisError:
                logger.warning("redis read failed for %s", key)
            finally:
                client.close()
        if payload is None:
            payload = self.memory.read(key)
        if payload is None:
            return default
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            return default

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        try:
            payload = json.dumps(value, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize cache value for %s: %s", key, e)
            return False

        client = self.redis_connect()
        if client is not None:
            try:
                client.set(key, payload, ex=ttl_seconds if ttl_seconds and ttl_seconds > 0 else None)
                return True
            except RedisError:
                logger.warning("redis write failed for %s, keeping it in memory", key)
            finally:
                client.close()
        self.memory.write(key, payload, ttl_seconds)
        return True

    def delete(self, key: str) -> None:
        client = self.redis_connect()
        if client is not None:
            try:
                client.delete(key)
            except RedisError:
                logger.warning("redis delete failed for %s", key)
            finally:
                client.close()
        self.memory.remove(key)
