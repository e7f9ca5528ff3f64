"""
FastAPI Dependencies

Providers injected into the auth routes.

Process-wide (built once, overridable through app.dependency_overrides):
- get_auth_config: sign-in policy from settings
- get_nonce_store: Redis backed when REDIS_HOST is set, in-process otherwise
- get_name_resolver: None unless name validation is enabled with endpoints
- get_rate_limiter, get_session_issuer, get_email_verifier, get_mailer

Per request:
- get_orchestrator: AuthOrchestrator bound to the request's DB session
- get_current_user: access token payload from the Authorization header
- limit_verify_rate: 429 once a caller exceeds its verification budget

Usage in endpoints:
    @router.get("/protected")
    def protected_route(user: dict = Depends(get_current_user)):
        return {"user": user["wallet_address"]}
"""

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from redis import Redis
from sqlalchemy.orm import Session

from siwe_auth.core.cache import HybridCacheManager
from siwe_auth.core.config import AuthConfig, settings
from siwe_auth.core.errors import ErrorKind
from siwe_auth.core.jwt_utils import SessionIssuer, session_issuer
from siwe_auth.core.rate_limit import RateLimitConfig, RateLimitExceeded, SlidingWindowLimiter
from siwe_auth.db.session import get_db
from siwe_auth.services.account_repository import SqlAccountRepository
from siwe_auth.services.auth_flow import AuthOrchestrator
from siwe_auth.services.email_verification import EmailVerifier, LoggingMailer, VerificationMailer
from siwe_auth.services.identity import IdentityManager
from siwe_auth.services.name_resolver import NameResolver
from siwe_auth.services.nonce_store import NonceStore, build_nonce_store

logger = logging.getLogger(__name__)


@lru_cache()
def get_auth_config() -> AuthConfig:
    return AuthConfig.from_settings(settings)


@lru_cache()
def get_nonce_store() -> NonceStore:
    config = get_auth_config()
    client = None
    if settings.REDIS_HOST:
        client = Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            ssl=bool(settings.REDIS_SSL),
            max_connections=settings.REDIS_MAX_CONNECTIONS,
        )
    return build_nonce_store(config.nonce_ttl, redis_client=client)


@lru_cache()
def get_name_resolver() -> Optional[NameResolver]:
    config = get_auth_config()
    if not (config.enable_name_validation and config.resolver_endpoints):
        return None
    return NameResolver(
        endpoints=config.resolver_endpoints,
        cache=HybridCacheManager.shared(),
        cache_ttl_seconds=int(config.name_cache_ttl.total_seconds()),
        timeout=config.resolver_timeout,
    )


@lru_cache()
def get_rate_limiter() -> SlidingWindowLimiter:
    return SlidingWindowLimiter(
        RateLimitConfig(
            max_requests=settings.RATE_LIMIT_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            enabled=settings.RATE_LIMIT_ENABLED,
        )
    )


def get_session_issuer() -> SessionIssuer:
    return session_issuer


@lru_cache()
def get_email_verifier() -> EmailVerifier:
    return EmailVerifier(settings.SERVER_SECRET, ttl=timedelta(seconds=settings.EMAIL_LINK_TTL_SECONDS))


@lru_cache()
def get_mailer() -> VerificationMailer:
    return LoggingMailer()


def get_identity_manager(db: Session = Depends(get_db)) -> IdentityManager:
    return IdentityManager(SqlAccountRepository(db))


def get_orchestrator(
    identities: IdentityManager = Depends(get_identity_manager),
    config: AuthConfig = Depends(get_auth_config),
    nonce_store: NonceStore = Depends(get_nonce_store),
    name_resolver: Optional[NameResolver] = Depends(get_name_resolver),
    email_verifier: EmailVerifier = Depends(get_email_verifier),
    mailer: VerificationMailer = Depends(get_mailer),
) -> AuthOrchestrator:
    return AuthOrchestrator(
        config=config,
        nonce_store=nonce_store,
        identities=identities,
        name_resolver=name_resolver,
        email_verifier=email_verifier,
        mailer=mailer,
    )


def limit_verify_rate(request: Request, limiter: SlidingWindowLimiter = Depends(get_rate_limiter)) -> None:
    """Budget verification attempts per client address."""
    key = request.client.host if request.client else "unknown"
    try:
        limiter.check(key)
    except RateLimitExceeded as e:
        logger.warning("Sign-in refused (%s) for %s, retry in %.0fs", ErrorKind.RATE_LIMITED.value, key, e.retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many authentication attempts",
            headers={"Retry-After": str(max(int(e.retry_after), 1))},
        )


def _extract_token(authorization: Optional[str]) -> str:
    """
    Extract the token from an Authorization header.
    Supports both "Bearer <token>" and plain token formats.
    Raises:
        HTTPException 401: If Authorization header is missing or invalid
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
        )

    authorization = authorization.strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    else:
        token = authorization
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header",
        )
    return token


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    issuer: SessionIssuer = Depends(get_session_issuer),
) -> Dict[str, Any]:
    """
    returning the access token payload (wallet_address, uid, name).
    """
    return issuer.verify_access(_extract_token(authorization))
