"""
JWT Token Utilities

This module issues and checks the two kinds of tokens handed out by the sign-in flow.

Flow:
1. /auth/verify authenticates a wallet -> SessionIssuer.finalize() returns an access token
2. /auth/verify needs another step -> SessionIssuer.issue_pending() returns a pending token
3. /auth/email and /auth/username take the pending token, finish the step and finalize
4. Protected endpoints use get_current_user() from dependencies.py (access tokens only)

Access token claims:
- typ: "access"
- wallet_address: lowercase 0x address
- uid: account id
- name: display name
- iat / exp

Pending token claims:
- typ: "pending"
- stage: "needs_email" or "needs_username"
- uid, wallet_address, iat / exp (short expiry, PENDING_TOKEN_EXPIRE_SECONDS)

A token of one kind is never accepted where the other is expected.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, status

from siwe_auth.core.config import settings
from siwe_auth.services.account_repository import IdentityRecord

ACCESS = "access"
PENDING = "pending"


if not settings.ENCODE_KEY:
    raise RuntimeError("ENCODE_KEY is not configured")


class SessionIssuer:
    def __init__(
        self,
        key: str = settings.ENCODE_KEY,
        algorithm: str = settings.ENCODE_ALGORITHM or "HS256",
        access_ttl: timedelta = timedelta(seconds=settings.ACCESS_TOKEN_EXPIRE_SECONDS or 1800),
        pending_ttl: timedelta = timedelta(seconds=settings.PENDING_TOKEN_EXPIRE_SECONDS),
    ):
        if not key:
            raise ValueError("a signing key is required")
        self.key = key
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.pending_ttl = pending_ttl

    def _encode(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = dict(claims)
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int((now + ttl).timestamp())
        return jwt.encode(payload, self.key, algorithm=self.algorithm)

    def finalize(self, identity: IdentityRecord, extra_claims: Optional[Dict[str, Any]] = None) -> str:
        """
        Create the access token for an authenticated identity.

        Raises:
            ValueError: If the identity has no address or id
        """
        if not identity.normalized_address or identity.id is None:
            raise ValueError("identity must be stored before a session is issued")
        claims: Dict[str, Any] = {
            "typ": ACCESS,
            "wallet_address": identity.normalized_address,
            "uid": identity.id,
            "name": identity.display_name,
        }
        if extra_claims:
            claims.update(extra_claims)
        return self._encode(claims, self.access_ttl)

    def issue_pending(self, identity: IdentityRecord, stage: str) -> str:
        """Short-lived token carrying a partially signed-in identity to the next step."""
        return self._encode(
            {"typ": PENDING, "stage": stage, "uid": identity.id, "wallet_address": identity.normalized_address},
            self.pending_ttl,
        )

    def _decode(self, token: str, expected_type: str) -> Dict[str, Any]:
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
        try:
            payload = jwt.decode(token, self.key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

        if payload.get("typ") != expected_type or "wallet_address" not in payload or "uid" not in payload:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
        return payload

    def verify_access(self, token: str) -> Dict[str, Any]:
        """
        Verify and decode an access token.

        Raises:
            HTTPException 401: If the token is missing, expired, invalid or not an access token
        """
        return self._decode(token, ACCESS)

    def verify_pending(self, token: str, stage: Optional[str] = None) -> Dict[str, Any]:
        """Verify a pending token, optionally for one specific stage."""
        payload = self._decode(token, PENDING)
        if stage is not None and payload.get("stage") != stage:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token stage")
        return payload


session_issuer = SessionIssuer()
