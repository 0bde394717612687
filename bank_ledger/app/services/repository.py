from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, col, select

from ..core.errors import (
    BusyError,
    DuplicateUsernameError,
    IdentifierCollisionError,
    LedgerError,
    StorageFailureError,
)
from ..models import Account, HistoryEntry
from .store import LedgerStore, LedgerTransaction


logger = logging.getLogger(__name__)


def _translate(exc: SQLAlchemyError) -> LedgerError:
    if isinstance(exc, OperationalError) and "locked" in str(exc.orig).lower():
        logger.warning("store.database.locked")
        return BusyError("Database is locked, try again later")
    logger.error("store.failure", exc_info=exc)
    return StorageFailureError("Storage is unavailable")


def row_lock_statement(account_numbers: list[int]):
    """One ``SELECT ... FOR UPDATE`` over the given accounts, locking rows in ascending order."""
    return (
        select(Account)
        .where(col(Account.account_number).in_(account_numbers))
        .order_by(col(Account.account_number))
        .with_for_update()
    )


@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise _translate(exc) from exc


class SqlLedgerTransaction(LedgerTransaction):
    """Unit of work over a single SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._new_usernames: set[str] = set()

    def lock_accounts(self, account_numbers: list[int]) -> None:
        with _storage_errors():
            if self.session.get_bind().dialect.name == "sqlite":
                # No row locks on SQLite: hold the database write lock before any read.
                self.session.connection().exec_driver_sql("BEGIN IMMEDIATE")
                return
            list(self.session.exec(row_lock_statement(account_numbers)))

    def get_account(self, account_number: int) -> Optional[Account]:
        stmt = (
            select(Account)
            .where(Account.account_number == account_number)
            .with_for_update()
        )
        with _storage_errors():
            return self.session.exec(stmt).first()

    def account_number_exists(self, account_number: int) -> bool:
        with _storage_errors():
            return self.session.get(Account, account_number) is not None

    def username_exists(self, username: str) -> bool:
        if username in self._new_usernames:
            return True
        stmt = select(Account.account_number).where(Account.username == username)
        with _storage_errors():
            return self.session.exec(stmt).first() is not None

    def transaction_id_exists(self, transaction_id: int) -> bool:
        with _storage_errors():
            return self.session.get(HistoryEntry, transaction_id) is not None

    def save_account(self, account: Account) -> None:
        if account not in self.session:
            self._new_usernames.add(account.username)
        self.session.add(account)

    def append_history(self, entry: HistoryEntry) -> None:
        self.session.add(entry)

    def commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise self._integrity_failure() from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise _translate(exc) from exc

    def rollback(self) -> None:
        with _storage_errors():
            self.session.rollback()

    def close(self) -> None:
        self.session.close()

    def _integrity_failure(self) -> Exception:
        for username in self._new_usernames:
            stmt = select(Account.account_number).where(Account.username == username)
            if self.session.exec(stmt).first() is not None:
                return DuplicateUsernameError(f"Username {username!r} is already taken")
        return IdentifierCollisionError("Allocated identifier is already in use")


class SqlLedgerStore(LedgerStore):
    """Ledger store backed by a SQLAlchemy engine through SQLModel sessions.

    Each scope first locks its account rows with one ``SELECT ... FOR UPDATE``
    in ascending account-number order, so concurrent processes lock rows in the
    same order. SQLite has no row locks: scopes there start with
    ``BEGIN IMMEDIATE`` and, within one process, also hold a store-wide writer
    lock.
    """

    def __init__(self, engine: Engine, lock_timeout: float = 5.0) -> None:
        super().__init__(lock_timeout)
        self.engine = engine
        self._writer_lock: Optional[threading.Lock] = (
            threading.Lock() if engine.dialect.name == "sqlite" else None
        )

    def _session(self) -> Session:
        return Session(self.engine, autoflush=False, expire_on_commit=False)

    def _begin(self) -> LedgerTransaction:
        return SqlLedgerTransaction(self._session())

    @contextmanager
    def account_scope(self, account_numbers: Iterable[int]) -> Iterator[LedgerTransaction]:
        if self._writer_lock is None:
            with super().account_scope(account_numbers) as tx:
                yield tx
            return

        if not self._writer_lock.acquire(timeout=self.lock_timeout):
            logger.warning("store.writer.timeout", extra={"timeout": self.lock_timeout})
            raise BusyError("Ledger is busy, try again later")
        try:
            with super().account_scope(account_numbers) as tx:
                yield tx
        finally:
            self._writer_lock.release()

    # Reads --------------------------------------------------------------
    def find_account_by_credentials(
        self, username: str, password: str
    ) -> Optional[Account]:
        stmt = (
            select(Account)
            .where(Account.username == username)
            .where(Account.password == password)
        )
        with _storage_errors(), self._session() as session:
            return session.exec(stmt).first()

    def find_account_by_number(self, account_number: int) -> Optional[Account]:
        with _storage_errors(), self._session() as session:
            return session.get(Account, account_number)

    def account_number_exists(self, account_number: int) -> bool:
        return self.find_account_by_number(account_number) is not None

    def username_exists(self, username: str) -> bool:
        stmt = select(Account.account_number).where(Account.username == username)
        with _storage_errors(), self._session() as session:
            return session.exec(stmt).first() is not None

    def history_for_account(self, account_number: int) -> list[HistoryEntry]:
        stmt = (
            select(HistoryEntry)
            .where(HistoryEntry.account_number == account_number)
            .order_by(HistoryEntry.timestamp.desc())
        )
        with _storage_errors(), self._session() as session:
            return list(session.exec(stmt))
