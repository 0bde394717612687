from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Optional, TypeVar

from ..core.errors import BusyError, DuplicateUsernameError, IdentifierCollisionError
from ..models import Account, HistoryEntry


logger = logging.getLogger(__name__)

R = TypeVar("R")


class LedgerTransaction(ABC):
    """Transactional view handed out by :meth:`LedgerStore.account_scope`.

    Writes become visible to other callers only when the scope commits.
    """

    @abstractmethod
    def get_account(self, account_number: int) -> Optional[Account]: ...

    @abstractmethod
    def account_number_exists(self, account_number: int) -> bool: ...

    @abstractmethod
    def username_exists(self, username: str) -> bool: ...

    @abstractmethod
    def transaction_id_exists(self, transaction_id: int) -> bool: ...

    @abstractmethod
    def save_account(self, account: Account) -> None: ...

    @abstractmethod
    def append_history(self, entry: HistoryEntry) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    def close(self) -> None:
        pass

    def lock_accounts(self, account_numbers: list[int]) -> None:
        """Take storage-level locks on ``account_numbers``, given in ascending order."""


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class LedgerStore(ABC):
    """Persistent collection of accounts and their history.

    Mutations only happen inside :meth:`account_scope`, which locks the named
    accounts in ascending order so overlapping scopes cannot deadlock.
    """

    def __init__(self, lock_timeout: float = 5.0) -> None:
        self.lock_timeout = lock_timeout
        # Entries live only while some scope holds or waits for them.
        self._locks: dict[int, _LockEntry] = {}
        self._locks_guard = threading.Lock()

    # Locking ------------------------------------------------------------
    def _checkout(self, account_number: int) -> threading.Lock:
        with self._locks_guard:
            entry = self._locks.get(account_number)
            if entry is None:
                entry = self._locks[account_number] = _LockEntry()
            entry.users += 1
            return entry.lock

    def _checkin(self, account_number: int) -> None:
        with self._locks_guard:
            entry = self._locks[account_number]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[account_number]

    @contextmanager
    def _locked(self, account_numbers: list[int]) -> Iterator[None]:
        checked_out: list[int] = []
        held: list[threading.Lock] = []
        try:
            for account_number in account_numbers:
                lock = self._checkout(account_number)
                checked_out.append(account_number)
                if not lock.acquire(timeout=self.lock_timeout):
                    logger.warning(
                        "store.lock.timeout",
                        extra={
                            "account_number": account_number,
                            "timeout": self.lock_timeout,
                        },
                    )
                    raise BusyError(
                        f"Account {account_number} is busy, try again later"
                    )
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            for account_number in checked_out:
                self._checkin(account_number)

    @abstractmethod
    def _begin(self) -> LedgerTransaction: ...

    @contextmanager
    def account_scope(self, account_numbers: Iterable[int]) -> Iterator[LedgerTransaction]:
        ordered = sorted(set(account_numbers))
        with self._locked(ordered):
            tx = self._begin()
            try:
                try:
                    tx.lock_accounts(ordered)
                    yield tx
                except BaseException:
                    tx.rollback()
                    raise
                tx.commit()
            finally:
                tx.close()

    def with_account_lock(
        self,
        account_numbers: Iterable[int],
        fn: Callable[[LedgerTransaction], R],
    ) -> R:
        with self.account_scope(account_numbers) as tx:
            return fn(tx)

    # Reads --------------------------------------------------------------
    @abstractmethod
    def find_account_by_credentials(
        self, username: str, password: str
    ) -> Optional[Account]: ...

    @abstractmethod
    def find_account_by_number(self, account_number: int) -> Optional[Account]: ...

    @abstractmethod
    def account_number_exists(self, account_number: int) -> bool: ...

    @abstractmethod
    def username_exists(self, username: str) -> bool: ...

    @abstractmethod
    def history_for_account(self, account_number: int) -> list[HistoryEntry]: ...


class InMemoryLedgerStore(LedgerStore):
    """Dictionary backed store. Records are kept as plain dicts so callers
    never share mutable state with the store."""

    def __init__(self, lock_timeout: float = 5.0) -> None:
        super().__init__(lock_timeout)
        self._accounts: dict[int, dict[str, Any]] = {}
        self._usernames: dict[str, int] = {}
        self._history: dict[int, list[dict[str, Any]]] = {}
        self._transaction_ids: set[int] = set()
        self._data_lock = threading.RLock()

    def _begin(self) -> LedgerTransaction:
        return _InMemoryTransaction(self)

    def _apply(
        self,
        created: set[int],
        accounts: dict[int, dict[str, Any]],
        entries: list[dict[str, Any]],
    ) -> None:
        with self._data_lock:
            for account_number in created:
                if account_number in self._accounts:
                    raise IdentifierCollisionError(
                        f"Account number {account_number} already exists"
                    )
            for account_number, record in accounts.items():
                owner = self._usernames.get(record["username"])
                if owner is not None and owner != account_number:
                    raise DuplicateUsernameError(
                        f"Username {record['username']!r} is already taken"
                    )
            seen: set[int] = set()
            for entry in entries:
                transaction_id = entry["transaction_id"]
                if transaction_id in self._transaction_ids or transaction_id in seen:
                    raise IdentifierCollisionError(
                        f"Transaction id {transaction_id} already exists"
                    )
                seen.add(transaction_id)

            for account_number, record in accounts.items():
                self._accounts[account_number] = record
                self._usernames[record["username"]] = account_number
            for entry in entries:
                self._history.setdefault(entry["account_number"], []).append(entry)
                self._transaction_ids.add(entry["transaction_id"])

    def find_account_by_credentials(
        self, username: str, password: str
    ) -> Optional[Account]:
        with self._data_lock:
            account_number = self._usernames.get(username)
            if account_number is None:
                return None
            record = self._accounts[account_number]
            if record["password"] != password:
                return None
            return Account(**record)

    def find_account_by_number(self, account_number: int) -> Optional[Account]:
        with self._data_lock:
            record = self._accounts.get(account_number)
            return Account(**record) if record is not None else None

    def account_number_exists(self, account_number: int) -> bool:
        with self._data_lock:
            return account_number in self._accounts

    def username_exists(self, username: str) -> bool:
        with self._data_lock:
            return username in self._usernames

    def transaction_id_exists(self, transaction_id: int) -> bool:
        with self._data_lock:
            return transaction_id in self._transaction_ids

    def history_for_account(self, account_number: int) -> list[HistoryEntry]:
        with self._data_lock:
            records = list(reversed(self._history.get(account_number, [])))
        records.sort(key=lambda record: record["timestamp"], reverse=True)
        return [HistoryEntry(**record) for record in records]


class _InMemoryTransaction(LedgerTransaction):
    def __init__(self, store: InMemoryLedgerStore) -> None:
        self._store = store
        self._created: set[int] = set()
        self._accounts: dict[int, dict[str, Any]] = {}
        self._entries: list[dict[str, Any]] = []

    def get_account(self, account_number: int) -> Optional[Account]:
        record = self._accounts.get(account_number)
        if record is not None:
            return Account(**record)
        return self._store.find_account_by_number(account_number)

    def account_number_exists(self, account_number: int) -> bool:
        return account_number in self._accounts or self._store.account_number_exists(
            account_number
        )

    def username_exists(self, username: str) -> bool:
        staged = any(record["username"] == username for record in self._accounts.values())
        return staged or self._store.username_exists(username)

    def transaction_id_exists(self, transaction_id: int) -> bool:
        staged = any(entry["transaction_id"] == transaction_id for entry in self._entries)
        return staged or self._store.transaction_id_exists(transaction_id)

    def save_account(self, account: Account) -> None:
        if not self._store.account_number_exists(account.account_number):
            self._created.add(account.account_number)
        self._accounts[account.account_number] = account.model_dump()

    def append_history(self, entry: HistoryEntry) -> None:
        self._entries.append(entry.model_dump())

    def commit(self) -> None:
        self._store._apply(self._created, self._accounts, self._entries)
        self._reset()

    def rollback(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._created.clear()
        self._accounts.clear()
        self._entries.clear()
