"""
Email confirmation links.

Link path: {user_id}/{timestamp}/{hash}
    hash = base64url(HMAC-SHA256(server_secret, "{timestamp}:{user_id}:{email}"))

A link is valid when the hash matches (constant-time), the timestamp is not
in the future and it is younger than the configured TTL.
"""

import base64
import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import timedelta

from siwe_auth.core.errors import ErrorKind, Result
from siwe_auth.services.nonce_store import Clock, utc_now

logger = logging.getLogger(__name__)

CONFIRM_PATH = "/auth/email/confirm"


class EmailVerifier:
    def __init__(self, server_secret: str, ttl: timedelta = timedelta(hours=24), clock: Clock = utc_now):
        if not server_secret:
            raise ValueError("server_secret is required")
        self._secret = server_secret.encode("utf-8")
        self.ttl = ttl
        self._clock = clock

    def make_hash(self, user_id: int, timestamp: int, email: str) -> str:
        data = f"{timestamp}:{user_id}:{email}".encode("utf-8")
        digest = hmac.new(self._secret, data, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def build_path(self, user_id: int, email: str) -> str:
        """Return `{CONFIRM_PATH}/{user_id}/{timestamp}/{hash}` for a pending email."""
        timestamp = int(self._clock().timestamp())
        return f"{CONFIRM_PATH}/{user_id}/{timestamp}/{self.make_hash(user_id, timestamp, email)}"

    def verify(self, user_id: int, timestamp: int, link_hash: str, email: str) -> Result:
        now = int(self._clock().timestamp())
        if timestamp > now:
            return Result.failure(ErrorKind.LINK_INVALID, "timestamp in the future")
        if now - timestamp > self.ttl.total_seconds():
            return Result.failure(ErrorKind.LINK_INVALID, "link expired")
        expected = self.make_hash(user_id, timestamp, email)
        if not secrets.compare_digest(expected.encode("ascii"), (link_hash or "").encode("utf-8")):
            return Result.failure(ErrorKind.LINK_INVALID, "hash mismatch")
        return Result.success()


class VerificationMailer(ABC):
    """Delivers confirmation links."""

    @abstractmethod
    def send(self, email: str, link: str) -> None:
        ...


class LoggingMailer(VerificationMailer):
    """Writes the link to the log instead of sending mail."""

    def send(self, email: str, link: str) -> None:
        logger.info("Email verification link for %s: %s", email, link)
