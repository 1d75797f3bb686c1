"""
Account persistence behind a small interface.

The reconciliation pipeline only ever needs a handful of lookups plus a
conditional write, so that is all the store exposes. Each call opens its own
session: webhook handlers run on worker threads and must not share one.
"""
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from billing_sync.core.errors import DuplicateAccountError, StorageError
from billing_sync.core.logging_config import get_logger
from billing_sync.core.typing import col, safe_getattr
from billing_sync.models.account import Account

logger = get_logger(__name__)


class AccountStore(Protocol):
    def get(self, account_id: int) -> Optional[Account]: ...

    def find_by_customer_id(self, customer_id: str) -> List[Account]: ...

    def find_by_email(self, email: str) -> List[Account]: ...

    def create(self, **fields: Any) -> Account: ...

    def update_if_unchanged(self, account_id: int, expected_version: int, changes: Dict[str, Any]) -> bool: ...


class SqlAccountStore:
    """AccountStore over a SQLModel engine (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, account_id: int) -> Optional[Account]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                return session.get(Account, account_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load account {account_id}: {e}") from e

    def find_by_customer_id(self, customer_id: str) -> List[Account]:
        """Accounts linked to a Stripe customer, newest first."""
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                return list(session.exec(
                    select(Account)
                    .where(Account.stripe_customer_id == customer_id)
                    .order_by(col(Account.created_at).desc(), col(Account.id).desc())
                ).all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up accounts by customer: {e}") from e

    def find_by_email(self, email: str) -> List[Account]:
        """Accounts with this email (case-insensitive), newest first."""
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                return list(session.exec(
                    select(Account)
                    .where(func.lower(Account.email) == email.strip().lower())
                    .order_by(col(Account.created_at).desc(), col(Account.id).desc())
                ).all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up accounts by email: {e}") from e

    def create(self, **fields: Any) -> Account:
        """Insert a new account. Raises DuplicateAccountError if its customer id is already linked."""
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                account = Account(**fields)
                session.add(account)
                session.commit()
                session.refresh(account)
                return account
        except IntegrityError as e:
            raise DuplicateAccountError(f"Customer already linked to an account: {e}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create account: {e}") from e

    def update_if_unchanged(self, account_id: int, expected_version: int, changes: Dict[str, Any]) -> bool:
        """
        Apply `changes` only if the row still carries `expected_version`.

        Returns False when another writer got there first. The caller decides
        whether to re-read and try again.
        """
        stmt = (
            update(Account)
            .where(col(Account.id) == account_id)
            .where(col(Account.version) == expected_version)
            .values(**changes)
        )
        try:
            with Session(self.engine) as session:
                result = session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update account {account_id}: {e}") from e

        updated = safe_getattr(result, "rowcount", 0) == 1
        if not updated:
            logger.debug("account_version_conflict", account_id=account_id, expected_version=expected_version)
        return updated
