"""
Single-use nonce storage for sign-in messages.

A nonce is issued by POST /auth/nonce, embedded by the wallet in the signed
message, and consumed exactly once by the verification flow. consume() is an
atomic test-and-clear: with N concurrent callers presenting the same nonce,
exactly one succeeds.

Two backends:
- MemoryNonceStore: dict guarded by a lock (single process)
- RedisNonceStore: SET NX EX on issue, DEL on consume (shared across workers)
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from siwe_auth.core.errors import ErrorKind, RepositoryError, Result

logger = logging.getLogger(__name__)

NONCE_NUM_BYTES = 16  # 16 bytes = 32 hex characters
REDIS_KEY_PREFIX = "siwe:nonce:"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_nonce(num_bytes: int = NONCE_NUM_BYTES) -> str:
    """
    Generate a cryptographically secure random nonce.

    Args:
        num_bytes: Number of random bytes (default: 16 = 32 hex chars)

    Returns:
        Hex-encoded random string, alphanumeric as sign-in messages require
    """
    if num_bytes <= 0:
        num_bytes = NONCE_NUM_BYTES
    return secrets.token_hex(num_bytes)


@dataclass
class Nonce:
    value: str
    issued_at: datetime
    ttl: timedelta
    consumed: bool = False

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + self.ttl

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class NonceStore(ABC):
    """Issues nonces and consumes them at most once."""

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=5),
        token_factory: Callable[[], str] = generate_nonce,
        clock: Clock = utc_now,
    ):
        self.ttl = ttl
        self._token_factory = token_factory
        self._clock = clock

    @abstractmethod
    def issue(self) -> Nonce:
        """Create and record a fresh nonce."""

    @abstractmethod
    def consume(self, value: str) -> Result:
        """Atomically mark a nonce used. Fails for unknown, used or expired values."""


class MemoryNonceStore(NonceStore):
    """In-process nonce store. Consumed and expired entries are evicted."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._nonces: Dict[str, Nonce] = {}
        self._lock = threading.Lock()

    def issue(self) -> Nonce:
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            value = self._token_factory()
            while value in self._nonces:
                value = self._token_factory()
            nonce = Nonce(value=value, issued_at=now, ttl=self.ttl)
            self._nonces[value] = nonce
        logger.debug("Generated nonce: %s", value)
        return nonce

    def consume(self, value: str) -> Result:
        now = self._clock()
        with self._lock:
            nonce = self._nonces.pop(value, None)
        if nonce is None:
            return Result.failure(ErrorKind.NONCE_INVALID, "nonce not found or already used")
        nonce.consumed = True
        if nonce.is_expired(now):
            return Result.failure(ErrorKind.NONCE_INVALID, "nonce expired")
        logger.debug("Nonce consumed: %s", value)
        return Result.success(nonce)

    def __len__(self) -> int:
        return len(self._nonces)

    def _purge_expired(self, now: datetime) -> None:
        expired = [key for key, nonce in self._nonces.items() if nonce.is_expired(now)]
        for key in expired:
            del self._nonces[key]


class RedisNonceStore(NonceStore):
    """Nonce store shared by every worker through Redis; expiry is Redis TTL."""

    def __init__(self, client: Redis, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client = client

    def issue(self) -> Nonce:
        now = self._clock()
        ttl_seconds = max(int(self.ttl.total_seconds()), 1)
        try:
            for _ in range(5):
                value = self._token_factory()
                if self._client.set(REDIS_KEY_PREFIX + value, now.isoformat(), ex=ttl_seconds, nx=True):
                    logger.debug("Generated nonce: %s", value)
                    return Nonce(value=value, issued_at=now, ttl=self.ttl)
        except RedisError as e:
            raise RepositoryError(f"nonce store unavailable: {e}") from e
        raise RepositoryError("could not allocate a unique nonce")

    def consume(self, value: str) -> Result:
        try:
            # DEL returns the number of removed keys, so only one caller sees 1
            deleted = self._client.delete(REDIS_KEY_PREFIX + value)
        except RedisError as e:
            raise RepositoryError(f"nonce store unavailable: {e}") from e
        if deleted != 1:
            return Result.failure(ErrorKind.NONCE_INVALID, "nonce not found, expired or already used")
        return Result.success(Nonce(value=value, issued_at=self._clock(), ttl=self.ttl, consumed=True))


def build_nonce_store(ttl: timedelta, redis_client: Optional[Redis] = None) -> NonceStore:
    """Redis-backed store when a client is given, in-process store otherwise."""
    if redis_client is not None:
        return RedisNonceStore(redis_client, ttl=ttl)
    return MemoryNonceStore(ttl=ttl)
