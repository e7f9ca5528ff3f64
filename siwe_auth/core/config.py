from dataclasses import dataclass, field
from datetime import timedelta
from typing import FrozenSet, Tuple

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

from siwe_auth.core.validators import parse_allowed_domains

load_dotenv(override=True)

class Settings(BaseSettings):
    PROJECT_NAME: str = "SIWE Auth"
    # Application settings
    PORT: int | None = 8000
    HOST: str | None = "127.0.0.1"
    VERSION: str | None = "0.1.0"
    DOC_PASSWORD: str | None = None
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*" # comma separated

    # SSL settings
    SSL_KEY: str | None = None
    SSL_CERT: str | None = None

    # SQLAlchemy database URL
    DATABASE_URL: str = "sqlite:///./siwe_auth.db"

    # Login configuration
    ENCODE_KEY: str | None = None # required, no default
    ENCODE_ALGORITHM: str | None = "HS256"
    ACCESS_TOKEN_EXPIRE_SECONDS: int | None = 1800 # 30 minutes
    PENDING_TOKEN_EXPIRE_SECONDS: int = 900 # 15 minutes
    SERVER_SECRET: str | None = None # required, keys email confirmation links

    # Sign-in message policy
    ALLOWED_DOMAINS: str = "localhost:3000" # comma separated
    NONCE_TTL_SECONDS: int = 300 # 5 minutes
    MESSAGE_MAX_AGE_SECONDS: int = 300 # 5 minutes
    CLOCK_SKEW_SECONDS: int = 30

    # Additional sign-in steps
    REQUIRE_EMAIL_VERIFICATION: bool = False
    REQUIRE_USERNAME: bool = False
    EMAIL_LINK_TTL_SECONDS: int = 86400 # 24 hours

    # Name registry (ENS) settings
    ENABLE_NAME_VALIDATION: bool = False
    ENABLE_REVERSE_NAME_LOOKUP: bool = True
    NAME_CACHE_TTL_SECONDS: int = 3600
    RESOLVER_ENDPOINTS: str = "" # comma separated JSON-RPC urls, primary first
    RESOLVER_TIMEOUT_SECONDS: float = 5.0

    # Rate limiting of /auth/verify
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Redis settings (nonce store + name cache), unset -> in-process
    REDIS_HOST: str | None = None
    REDIS_PORT: int | None = 6379
    REDIS_MAX_CONNECTIONS: int | None = 10
    REDIS_SSL: bool | None = False
    # Memory cache settings
    MEMORY_CACHE_MAX_SIZE: int = 64 * 1024 * 1024  # 64MB in bytes
    REDIS_RECHECK_INTERVAL: int = 30 * 60  # 30 minutes in seconds

    # Debug settings
    DEBUG: bool = False

    class Config:
        env_file = ".env"


@dataclass(frozen=True)
class AuthConfig:
    """Policy consumed by the sign-in engine, decoupled from env loading."""

    allowed_domains: FrozenSet[str] = frozenset({"localhost:3000"})
    nonce_ttl: timedelta = timedelta(minutes=5)
    message_max_age: timedelta = timedelta(minutes=5)
    clock_skew_tolerance: timedelta = timedelta(seconds=30)
    require_email_verification: bool = False
    require_username: bool = False
    enable_name_validation: bool = False
    enable_reverse_name_lookup: bool = True
    name_cache_ttl: timedelta = timedelta(hours=1)
    resolver_endpoints: Tuple[str, ...] = field(default_factory=tuple)
    resolver_timeout: float = 5.0
    email_link_ttl: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, s: "Settings") -> "AuthConfig":
        endpoints = tuple(url.strip() for url in s.RESOLVER_ENDPOINTS.split(",") if url.strip())
        return cls(
            allowed_domains=frozenset(parse_allowed_domains(s.ALLOWED_DOMAINS)),
            nonce_ttl=timedelta(seconds=s.NONCE_TTL_SECONDS),
            message_max_age=timedelta(seconds=s.MESSAGE_MAX_AGE_SECONDS),
            clock_skew_tolerance=timedelta(seconds=s.CLOCK_SKEW_SECONDS),
            require_email_verification=s.REQUIRE_EMAIL_VERIFICATION,
            require_username=s.REQUIRE_USERNAME,
            enable_name_validation=s.ENABLE_NAME_VALIDATION,
            enable_reverse_name_lookup=s.ENABLE_REVERSE_NAME_LOOKUP,
            name_cache_ttl=timedelta(seconds=s.NAME_CACHE_TTL_SECONDS),
            resolver_endpoints=endpoints,
            resolver_timeout=s.RESOLVER_TIMEOUT_SECONDS,
            email_link_ttl=timedelta(seconds=s.EMAIL_LINK_TTL_SECONDS),
        )


# Instantiate the settings
settings = Settings()
