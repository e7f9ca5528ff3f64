"""
Sign-in orchestration.

States:
    AWAITING_VERIFICATION -> REJECTED | VERIFIED | INTERNAL_ERROR
    VERIFIED              -> AUTHENTICATED | NEEDS_EMAIL | NEEDS_USERNAME
    NEEDS_EMAIL           -> AUTHENTICATED | NEEDS_USERNAME | REJECTED
    NEEDS_USERNAME        -> AUTHENTICATED | REJECTED

verify() runs, in order and stopping at the first failure: parse, signature,
signer/message address match, validity window, nonce consumption, domain and
(when enabled) the name claim. Only then is the account looked up or created
and the email/username policy applied, email first.

Rejections carry the specific ErrorKind for logs; the HTTP layer shows
callers one generic message. Storage failures and bugs become INTERNAL_ERROR,
never REJECTED.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from siwe_auth.core import message as message_codec
from siwe_auth.core.config import AuthConfig
from siwe_auth.core.errors import ErrorKind, Result
from siwe_auth.core.signature import normalize_address, verify_signature
from siwe_auth.core.validators import validate_domain, validate_timestamps
from siwe_auth.services.account_repository import IdentityRecord
from siwe_auth.services.email_verification import EmailVerifier, VerificationMailer
from siwe_auth.services.identity import AccountInput, IdentityManager, is_generated_username
from siwe_auth.services.name_resolver import NameResolver
from siwe_auth.services.nonce_store import Clock, NonceStore, utc_now

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    AWAITING_VERIFICATION = "awaiting_verification"
    VERIFIED = "verified"
    AUTHENTICATED = "authenticated"
    NEEDS_EMAIL = "needs_email"
    NEEDS_USERNAME = "needs_username"
    REJECTED = "rejected"
    INTERNAL_ERROR = "internal_error"


TRANSITIONS = {
    AuthState.AWAITING_VERIFICATION: {AuthState.REJECTED, AuthState.VERIFIED, AuthState.INTERNAL_ERROR},
    AuthState.VERIFIED: {
        AuthState.AUTHENTICATED,
        AuthState.NEEDS_EMAIL,
        AuthState.NEEDS_USERNAME,
        AuthState.INTERNAL_ERROR,
    },
    AuthState.NEEDS_EMAIL: {
        AuthState.AUTHENTICATED,
        AuthState.NEEDS_USERNAME,
        AuthState.REJECTED,
        AuthState.INTERNAL_ERROR,
    },
    AuthState.NEEDS_USERNAME: {AuthState.AUTHENTICATED, AuthState.REJECTED, AuthState.INTERNAL_ERROR},
}
TERMINAL_STATES = {AuthState.AUTHENTICATED, AuthState.REJECTED, AuthState.INTERNAL_ERROR}


class InvalidTransition(Exception):
    pass


def check_transition(current: AuthState, target: AuthState) -> AuthState:
    if current in TERMINAL_STATES:
        raise InvalidTransition(f"{current.value} is final")
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"{current.value} -> {target.value}")
    return target


@dataclass(frozen=True)
class AuthOutcome:
    state: AuthState
    identity: Optional[IdentityRecord] = None
    error: Optional[ErrorKind] = None
    detail: str = ""
    name_suggestion: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.state.value


class AuthOrchestrator:
    """Coordinates one sign-in. Holds no state between calls."""

    def __init__(
        self,
        config: AuthConfig,
        nonce_store: NonceStore,
        identities: IdentityManager,
        name_resolver: Optional[NameResolver] = None,
        email_verifier: Optional[EmailVerifier] = None,
        mailer: Optional[VerificationMailer] = None,
        clock: Clock = utc_now,
    ):
        self.config = config
        self.nonce_store = nonce_store
        self.identities = identities
        self.name_resolver = name_resolver
        self.email_verifier = email_verifier
        self.mailer = mailer
        self._clock = clock

    @property
    def name_validation_enabled(self) -> bool:
        return bool(self.config.enable_name_validation and self.name_resolver and self.name_resolver.enabled)

    # ------------------------------------------------------------------
    # outcome helpers
    # ------------------------------------------------------------------

    def _reject(self, current: AuthState, failed: Result) -> AuthOutcome:
        check_transition(current, AuthState.REJECTED)
        logger.warning("Sign-in rejected: %s (%s)", failed.error.value, failed.detail)
        return AuthOutcome(AuthState.REJECTED, error=failed.error, detail=failed.detail)

    def _internal(self, current: AuthState, e: Exception) -> AuthOutcome:
        check_transition(current, AuthState.INTERNAL_ERROR)
        logger.error("Sign-in failed with an internal error: %s", e, exc_info=True)
        return AuthOutcome(AuthState.INTERNAL_ERROR, error=ErrorKind.INTERNAL, detail=type(e).__name__)

    def _next_step(self, current: AuthState, record: IdentityRecord, suggestion: Optional[str] = None) -> AuthOutcome:
        """Apply the email and username policies, email first."""
        if self.config.require_email_verification and not record.email:
            state = check_transition(current, AuthState.NEEDS_EMAIL)
            return AuthOutcome(state, identity=record, name_suggestion=suggestion)
        if self.config.require_username and is_generated_username(record.display_name, record.normalized_address):
            state = check_transition(current, AuthState.NEEDS_USERNAME)
            return AuthOutcome(state, identity=record, name_suggestion=suggestion)
        state = check_transition(current, AuthState.AUTHENTICATED)
        record = self.identities.record_login(record, self._clock())
        logger.info("Authenticated %s as %s", record.normalized_address, record.display_name)
        return AuthOutcome(state, identity=record, name_suggestion=suggestion)

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------

    def verify(self, message_text: str, signature: str, claimed_address: str) -> AuthOutcome:
        state = AuthState.AWAITING_VERIFICATION
        try:
            result = self._verify_message(message_text, signature, claimed_address)
            if not result.ok:
                return self._reject(state, result)
            state = check_transition(state, AuthState.VERIFIED)
            address, verified_name = result.value
            return self._resolve_identity(state, address, verified_name)
        except Exception as e:
            return self._internal(state, e)

    def _verify_message(self, message_text: str, signature: str, claimed_address: str) -> Result:
        """Fail-fast validation chain. Success value: (signer address, verified name or None)."""
        parsed = message_codec.parse(message_text)
        if not parsed.ok:
            return parsed
        msg = parsed.value

        signed = verify_signature(message_text, signature, claimed_address)
        if not signed.ok:
            return signed
        signer = signed.value
        if normalize_address(msg.address) != signer:
            return Result.failure(ErrorKind.SIGNATURE_INVALID, "message address differs from signer")

        timely = validate_timestamps(
            msg.issued_at,
            msg.expiration_time,
            msg.not_before,
            now=self._clock(),
            skew_tolerance=self.config.clock_skew_tolerance,
            max_age=self.config.message_max_age,
        )
        if not timely.ok:
            return timely

        consumed = self.nonce_store.consume(msg.nonce)
        if not consumed.ok:
            return consumed

        domain = validate_domain(msg.domain, self.config.allowed_domains)
        if not domain.ok:
            return domain

        verified_name = None
        claim = msg.name_claim
        if claim and self.name_validation_enabled:
            named = self.name_resolver.validate_claim(signer, claim)
            if not named.ok:
                return named
            verified_name = named.value
        return Result.success((signer, verified_name))

    def _resolve_identity(self, state: AuthState, address: str, verified_name: Optional[str]) -> AuthOutcome:
        if (
            verified_name is None
            and self.config.enable_reverse_name_lookup
            and self.name_validation_enabled
        ):
            reverse = self.name_resolver.resolve_reverse(address)
            if reverse.ok:
                verified_name = reverse.value
            else:
                logger.debug("No verified name for %s: %s", address, reverse.detail)

        record = self.identities.find_or_create(address, AccountInput(name_claim=verified_name))

        suggestion = None
        if verified_name and record.display_name != verified_name:
            if is_generated_username(record.display_name, address):
                renamed = self.identities.rename_if_generated(record, verified_name)
                if renamed.ok:
                    record = renamed.value
                else:
                    logger.warning("Verified name %s not applied to %s: %s", verified_name, address, renamed.error.value)
            else:
                suggestion = verified_name
        return self._next_step(state, record, suggestion)

    # ------------------------------------------------------------------
    # additional steps
    # ------------------------------------------------------------------

    def request_email(self, account_id: int, email: str) -> Result:
        """Record a pending email and send its confirmation link."""
        try:
            if self.email_verifier is None or self.mailer is None:
                raise RuntimeError("email confirmation is not configured")
            record = self.identities.find_by_id(account_id)
            if record is None:
                return Result.failure(ErrorKind.LINK_INVALID, "unknown account")
            stored = self.identities.request_email(record, email)
            if not stored.ok:
                logger.warning("Email request for account %s refused: %s", account_id, stored.error.value)
                return stored
            record = stored.value
            link = self.email_verifier.build_path(record.id, record.pending_email)
            self.mailer.send(record.pending_email, link)
            return Result.success(record)
        except Exception as e:
            logger.error("Email request for account %s failed: %s", account_id, e, exc_info=True)
            return Result.failure(ErrorKind.INTERNAL, type(e).__name__)

    def confirm_email(self, account_id: int, timestamp: int, link_hash: str) -> AuthOutcome:
        state = AuthState.NEEDS_EMAIL
        try:
            record = self.identities.find_by_id(account_id)
            if record is None or not record.pending_email:
                return self._reject(state, Result.failure(ErrorKind.LINK_INVALID, "no pending email"))
            checked = self.email_verifier.verify(account_id, timestamp, link_hash, record.pending_email)
            if not checked.ok:
                return self._reject(state, checked)
            confirmed = self.identities.confirm_email(record)
            if not confirmed.ok:
                return self._reject(state, confirmed)
            return self._next_step(state, confirmed.value)
        except Exception as e:
            return self._internal(state, e)

    def complete_username(self, account_id: int, username: str) -> AuthOutcome:
        state = AuthState.NEEDS_USERNAME
        try:
            record = self.identities.find_by_id(account_id)
            if record is None:
                return self._reject(state, Result.failure(ErrorKind.USERNAME_INVALID, "unknown account"))
            updated = self.identities.set_username(record, username)
            if not updated.ok:
                return self._reject(state, updated)
            return self._next_step(state, updated.value)
        except Exception as e:
            return self._internal(state, e)
