"""
Account storage behind a small repository interface.

IdentityManager only talks to AccountRepository; SqlAccountRepository is the
SQLAlchemy implementation used by the API. Uniqueness of wallet_address and
display_name is enforced by the database, a violation surfaces as
DuplicateAccountError so callers can retry, any other storage failure as
RepositoryError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from siwe_auth.core.errors import DuplicateAccountError, RepositoryError
from siwe_auth.models.account import Account


@dataclass(frozen=True)
class IdentityRecord:
    normalized_address: str
    display_name: str
    is_generated_name: bool
    created_at: datetime
    email: Optional[str] = None
    pending_email: Optional[str] = None
    last_login: Optional[datetime] = None
    id: Optional[int] = None

    def with_changes(self, **changes) -> "IdentityRecord":
        return replace(self, **changes)


def _to_epoch(value: Optional[datetime]) -> Optional[int]:
    return None if value is None else int(value.timestamp())


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    return None if value is None else datetime.fromtimestamp(value, tz=timezone.utc)


def _to_record(row: Account) -> IdentityRecord:
    return IdentityRecord(
        id=row.id,
        normalized_address=row.wallet_address,
        display_name=row.display_name,
        is_generated_name=bool(row.is_generated_name),
        email=row.email,
        pending_email=row.pending_email,
        created_at=_from_epoch(row.created_at),
        last_login=_from_epoch(row.last_login),
    )


class AccountRepository(ABC):
    @abstractmethod
    def load_by_address(self, address: str) -> Optional[IdentityRecord]:
        ...

    @abstractmethod
    def load_by_id(self, account_id: int) -> Optional[IdentityRecord]:
        ...

    @abstractmethod
    def load_by_name(self, name: str) -> Optional[IdentityRecord]:
        ...

    @abstractmethod
    def load_by_email(self, email: str) -> Optional[IdentityRecord]:
        ...

    @abstractmethod
    def create(self, record: IdentityRecord) -> IdentityRecord:
        """Insert a record. Raises DuplicateAccountError on a unique conflict."""

    @abstractmethod
    def rename(self, account_id: int, name: str, is_generated: bool = False) -> IdentityRecord:
        """Change display_name. Raises DuplicateAccountError if the name is taken."""

    @abstractmethod
    def set_pending_email(self, account_id: int, email: str) -> IdentityRecord:
        ...

    @abstractmethod
    def confirm_email(self, account_id: int) -> IdentityRecord:
        """Promote pending_email to email."""

    @abstractmethod
    def touch_login(self, account_id: int, when: datetime) -> IdentityRecord:
        ...


class SqlAccountRepository(AccountRepository):
    """AccountRepository on a SQLAlchemy session (one session per request)."""

    def __init__(self, db: Session):
        self.db = db

    def _first(self, *criteria) -> Optional[IdentityRecord]:
        try:
            row = self.db.query(Account).filter(*criteria).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"account lookup failed: {e}") from e
        return _to_record(row) if row else None

    def _get_row(self, account_id: int) -> Account:
        try:
            row = self.db.get(Account, account_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"account lookup failed: {e}") from e
        if row is None:
            raise RepositoryError(f"account {account_id} not found")
        return row

    def _commit(self, row: Account, conflict_field: str, conflict_value: str) -> IdentityRecord:
        try:
            self.db.commit()
            self.db.refresh(row)
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateAccountError(conflict_field, conflict_value) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"account write failed: {e}") from e
        return _to_record(row)

    def load_by_address(self, address: str) -> Optional[IdentityRecord]:
        return self._first(Account.wallet_address == address.lower())

    def load_by_id(self, account_id: int) -> Optional[IdentityRecord]:
        return self._first(Account.id == account_id)

    def load_by_name(self, name: str) -> Optional[IdentityRecord]:
        return self._first(Account.display_name == name)

    def load_by_email(self, email: str) -> Optional[IdentityRecord]:
        return self._first(Account.email == email)

    def create(self, record: IdentityRecord) -> IdentityRecord:
        row = Account(
            wallet_address=record.normalized_address,
            display_name=record.display_name,
            is_generated_name=record.is_generated_name,
            email=record.email,
            pending_email=record.pending_email,
            created_at=_to_epoch(record.created_at),
            last_login=_to_epoch(record.last_login),
        )
        self.db.add(row)
        try:
            self.db.commit()
            self.db.refresh(row)
        except IntegrityError as e:
            self.db.rollback()
            # find out which unique column collided
            if self.load_by_address(record.normalized_address) is not None:
                raise DuplicateAccountError("wallet_address", record.normalized_address) from e
            raise DuplicateAccountError("display_name", record.display_name) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"account write failed: {e}") from e
        return _to_record(row)

    def rename(self, account_id: int, name: str, is_generated: bool = False) -> IdentityRecord:
        row = self._get_row(account_id)
        row.display_name = name
        row.is_generated_name = is_generated
        return self._commit(row, "display_name", name)

    def set_pending_email(self, account_id: int, email: str) -> IdentityRecord:
        row = self._get_row(account_id)
        row.pending_email = email
        return self._commit(row, "pending_email", email)

    def confirm_email(self, account_id: int) -> IdentityRecord:
        row = self._get_row(account_id)
        if row.pending_email:
            row.email = row.pending_email
            row.pending_email = None
        return self._commit(row, "email", row.email or "")

    def touch_login(self, account_id: int, when: datetime) -> IdentityRecord:
        row = self._get_row(account_id)
        row.last_login = _to_epoch(when)
        return self._commit(row, "last_login", str(row.last_login))
