"""
Account identity anchored to a wallet address.

Usernames
- generated: 0x{first4}...{last4} of the lowercase address, `_1`, `_2`, ...
  appended until unique (legacy accounts may carry eth_{first8})
- user chosen: letters, digits, `.`, `_`, `-`; never ending in `.eth`
  (reserved for verified registry names) and never shaped like a generated one
- verified: a registry name proven to resolve to the address

Creation is safe against concurrent sign-ins for the same address: the
unique constraint on the address rejects the second insert and the loser
re-reads the winner's record.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from siwe_auth.core.errors import DuplicateAccountError, ErrorKind, RepositoryError, Result
from siwe_auth.core.signature import normalize_address
from siwe_auth.services.account_repository import AccountRepository, IdentityRecord
from siwe_auth.services.nonce_store import Clock, utc_now

logger = logging.getLogger(__name__)

GENERATED_PATTERN = re.compile(r"^0x[a-fA-F0-9]{4}\.\.\.[a-fA-F0-9]{4}(_\d+)?$")
LEGACY_GENERATED_PATTERN = re.compile(r"^eth_[a-fA-F0-9]{8}(_\d+)?$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
USERNAME_MAX_LENGTH = 60
RESERVED_SUFFIX = ".eth"
MAX_CREATE_ATTEMPTS = 5


@dataclass(frozen=True)
class AccountInput:
    """Optional data supplied when an account is created."""

    name_claim: Optional[str] = None  # verified registry name
    email: Optional[str] = None
    preferred_username: Optional[str] = None


def _generated_base(address: str) -> str:
    hex_part = normalize_address(address)[2:]
    return f"0x{hex_part[:4]}...{hex_part[-4:]}"


def _legacy_base(address: str) -> str:
    hex_part = normalize_address(address)[2:]
    return f"eth_{hex_part[:8]}"


def _matches_base(username: str, base: str) -> bool:
    return username == base or re.fullmatch(re.escape(base) + r"_\d+", username) is not None


def is_generated_username(username: str, address: Optional[str] = None) -> bool:
    """
    Whether a username has the generated shape.

    With an address, only names generated for that address count; without
    one, any name of the generated shape (current or legacy format) counts.
    """
    if not username:
        return False
    if address is None:
        return bool(GENERATED_PATTERN.match(username) or LEGACY_GENERATED_PATTERN.match(username))
    return _matches_base(username, _generated_base(address)) or _matches_base(username, _legacy_base(address))


def validate_username(username: str) -> Result:
    """Rules for a user-chosen name. Uniqueness is checked separately."""
    if not username or len(username) > USERNAME_MAX_LENGTH:
        return Result.failure(ErrorKind.USERNAME_INVALID, "username must be 1-60 characters")
    if not USERNAME_PATTERN.match(username):
        return Result.failure(
            ErrorKind.USERNAME_INVALID,
            "username can only contain letters, numbers, periods, underscores, and hyphens",
        )
    if username.lower().endswith(RESERVED_SUFFIX):
        return Result.failure(ErrorKind.USERNAME_INVALID, "usernames ending in .eth are reserved for verified names")
    if is_generated_username(username):
        return Result.failure(ErrorKind.USERNAME_INVALID, "username looks like a generated name")
    return Result.success(username)


class IdentityManager:
    """Finds, creates and renames accounts through an AccountRepository."""

    def __init__(self, repository: AccountRepository, clock: Clock = utc_now):
        self.repository = repository
        self._clock = clock

    def find_by_address(self, address: str) -> Optional[IdentityRecord]:
        return self.repository.load_by_address(normalize_address(address))

    def find_by_id(self, account_id: int) -> Optional[IdentityRecord]:
        return self.repository.load_by_id(account_id)

    def generate_username(self, address: str) -> str:
        """Deterministic name for an address; suffixed while the base is taken."""
        base = _generated_base(address)
        username = base
        i = 1
        while self.repository.load_by_name(username) is not None:
            username = f"{base}_{i}"
            i += 1
        return username

    def _initial_name(self, address: str, data: AccountInput) -> tuple:
        candidates = [data.name_claim]
        if data.preferred_username:
            preferred = data.preferred_username.strip()
            if validate_username(preferred).ok:
                candidates.append(preferred)
            else:
                logger.info("Ignoring preferred username %r for %s", data.preferred_username, address)
        for candidate in candidates:
            if candidate and self.repository.load_by_name(candidate) is None:
                return candidate, False
        return self.generate_username(address), True

    def find_or_create(self, address: str, data: Optional[AccountInput] = None) -> IdentityRecord:
        """
        Return the account for an address, creating it on first sign-in.

        A verified name (or a preferred username) becomes the display name of
        a new account when it is free; otherwise a generated name is used.

        Raises:
            RepositoryError: If storage fails or the record cannot be created
        """
        address = normalize_address(address)
        data = data or AccountInput()
        existing = self.repository.load_by_address(address)
        if existing is not None:
            return existing

        for attempt in range(MAX_CREATE_ATTEMPTS):
            name, generated = self._initial_name(address, data)
            record = IdentityRecord(
                normalized_address=address,
                display_name=name,
                is_generated_name=generated,
                email=data.email,
                created_at=self._clock(),
            )
            try:
                created = self.repository.create(record)
            except DuplicateAccountError as e:
                if e.field == "wallet_address":
                    # a concurrent sign-in created it first
                    winner = self.repository.load_by_address(address)
                    if winner is not None:
                        return winner
                logger.info("Account create conflict on %s (attempt %s), retrying", e.field, attempt + 1)
                continue
            logger.info("Created account %s for %s", created.display_name, address)
            return created
        raise RepositoryError(f"could not create account for {address}")

    def rename_if_generated(self, record: IdentityRecord, new_name: str) -> Result:
        """
        Replace a generated display name with a verified one.

        A custom name is left untouched; the caller can offer new_name as a
        suggestion. Returns Result.success(record) or USERNAME_TAKEN.
        """
        if record.display_name == new_name:
            return Result.success(record)
        if not is_generated_username(record.display_name, record.normalized_address):
            return Result.success(record)
        holder = self.repository.load_by_name(new_name)
        if holder is not None and holder.id != record.id:
            logger.warning("Cannot update username to %s - already taken by another user", new_name)
            return Result.failure(ErrorKind.USERNAME_TAKEN, new_name)
        try:
            renamed = self.repository.rename(record.id, new_name, is_generated=False)
        except DuplicateAccountError:
            return Result.failure(ErrorKind.USERNAME_TAKEN, new_name)
        logger.info("Updated username from %s to %s", record.display_name, new_name)
        return Result.success(renamed)

    def set_username(self, record: IdentityRecord, username: str) -> Result:
        """Apply a user-chosen name after validating it."""
        username = (username or "").strip()
        valid = validate_username(username)
        if not valid.ok:
            return valid
        if record.display_name == username:
            return Result.success(record)
        holder = self.repository.load_by_name(username)
        if holder is not None and holder.id != record.id:
            return Result.failure(ErrorKind.USERNAME_TAKEN, username)
        try:
            return Result.success(self.repository.rename(record.id, username, is_generated=False))
        except DuplicateAccountError:
            return Result.failure(ErrorKind.USERNAME_TAKEN, username)

    def request_email(self, record: IdentityRecord, email: str) -> Result:
        """Store an email awaiting confirmation. EMAIL_TAKEN if confirmed elsewhere."""
        email = email.strip().lower()
        holder = self.repository.load_by_email(email)
        if holder is not None and holder.id != record.id:
            return Result.failure(ErrorKind.EMAIL_TAKEN, email)
        return Result.success(self.repository.set_pending_email(record.id, email))

    def confirm_email(self, record: IdentityRecord) -> Result:
        try:
            return Result.success(self.repository.confirm_email(record.id))
        except DuplicateAccountError:
            return Result.failure(ErrorKind.EMAIL_TAKEN, record.pending_email or "")

    def record_login(self, record: IdentityRecord, when: Optional[datetime] = None) -> IdentityRecord:
        return self.repository.touch_login(record.id, when or self._clock())
