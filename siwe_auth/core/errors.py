"""
Error taxonomy for the wallet sign-in flow.

Validation steps never raise: they return a Result so the orchestrator can
stop at the first failure with an early return. Exceptions are kept for
infrastructure failures (storage, unexpected bugs) which must surface as an
internal error rather than an authentication rejection.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    PARSE_ERROR = "parse_error"
    SIGNATURE_INVALID = "signature_invalid"
    NONCE_INVALID = "nonce_invalid"
    ISSUED_IN_FUTURE = "issued_in_future"
    MESSAGE_TOO_OLD = "message_too_old"
    MESSAGE_EXPIRED = "message_expired"
    NOT_YET_VALID = "not_yet_valid"
    DOMAIN_MISMATCH = "domain_mismatch"
    NAME_RESOLUTION_FAILED = "name_resolution_failed"
    NAME_MISMATCH = "name_mismatch"
    USERNAME_TAKEN = "username_taken"
    USERNAME_INVALID = "username_invalid"
    EMAIL_TAKEN = "email_taken"
    LINK_INVALID = "link_invalid"
    REPOSITORY_ERROR = "repository_error"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a single step: either a value or an ErrorKind with detail."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str = "") -> "Result":
        return cls(error=kind, detail=detail)


class SiweAuthError(Exception):
    """Base class for infrastructure errors raised by this package."""


class RepositoryError(SiweAuthError):
    """Account storage failed."""


class DuplicateAccountError(SiweAuthError):
    """A uniqueness constraint on the accounts table was violated."""

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(f"duplicate {field}: {value}")
