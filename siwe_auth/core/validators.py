"""
Temporal and origin checks applied to a parsed sign-in message.
"""

import logging
from datetime import datetime, timedelta
from typing import AbstractSet, Iterable, Optional, Set

from siwe_auth.core.errors import ErrorKind, Result

logger = logging.getLogger(__name__)

DEFAULT_CLOCK_SKEW = timedelta(seconds=30)
DEFAULT_MAX_AGE = timedelta(minutes=5)


def validate_timestamps(
    issued_at: datetime,
    expiration_time: Optional[datetime],
    not_before: Optional[datetime],
    now: datetime,
    skew_tolerance: timedelta = DEFAULT_CLOCK_SKEW,
    max_age: timedelta = DEFAULT_MAX_AGE,
) -> Result:
    """
    Check the validity window of a message against `now`.

    Rules, checked in this order:
    - issued_at must not be later than now + skew_tolerance
    - now - issued_at must not exceed max_age
    - now must not be past expiration_time (when present)
    - now must not precede not_before (when present)

    Both boundaries are inclusive: a message exactly `max_age` old passes.
    """
    if issued_at > now + skew_tolerance:
        return Result.failure(ErrorKind.ISSUED_IN_FUTURE, f"issued at {issued_at.isoformat()}")
    if now - issued_at > max_age:
        return Result.failure(ErrorKind.MESSAGE_TOO_OLD, f"issued at {issued_at.isoformat()}")
    if expiration_time is not None and now > expiration_time:
        return Result.failure(ErrorKind.MESSAGE_EXPIRED, f"expired at {expiration_time.isoformat()}")
    if not_before is not None and now < not_before:
        return Result.failure(ErrorKind.NOT_YET_VALID, f"not before {not_before.isoformat()}")
    return Result.success()


def normalize_domain(value: str) -> str:
    """Strip scheme and trailing slash from a configured domain entry."""
    value = value.strip()
    for scheme in ("https://", "http://"):
        if value.lower().startswith(scheme):
            value = value[len(scheme):]
            break
    return value.rstrip("/")


def parse_allowed_domains(raw: Iterable[str] | str) -> Set[str]:
    """
    Build the allow-list from a comma separated string or an iterable.

    Empty items are dropped. Example: "a.com, https://b.com/" -> {"a.com", "b.com"}
    """
    items = raw.split(",") if isinstance(raw, str) else raw
    return {normalize_domain(item) for item in items if item and item.strip()}


def validate_domain(message_domain: str, allowed_domains: AbstractSet[str]) -> Result:
    """Exact, case-sensitive match of the message domain against the allow-list."""
    logger.debug("Validating domain. Expected: %s, Actual: %s", ", ".join(sorted(allowed_domains)), message_domain)
    if message_domain in allowed_domains:
        return Result.success()
    return Result.failure(ErrorKind.DOMAIN_MISMATCH, f"domain {message_domain!r} not allowed")
