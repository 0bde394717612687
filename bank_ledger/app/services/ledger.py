from __future__ import annotations

import logging
import re
import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Tuple, TypeVar

from ..core.errors import (
    AccountNotFoundError,
    AuthenticationFailedError,
    DuplicateUsernameError,
    IdentifierCollisionError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidInputError,
    InvalidPinError,
    ResourceExhaustedError,
)
from ..models import Account, HistoryEntry, HistoryType
from ..models.db import CENT, MAX_MONEY
from .allocator import IdentifierAllocator
from .store import LedgerStore, LedgerTransaction


logger = logging.getLogger(__name__)

R = TypeVar("R")

PIN_PATTERN = re.compile(r"[0-9]{4}")


def to_money(value: Any, error: type[InvalidInputError] = InvalidAmountError) -> Decimal:
    """Convert ``value`` to a two-place Decimal, rejecting anything finer."""
    if isinstance(value, bool):
        raise error(f"Invalid amount: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise error(f"Invalid amount: {value!r}")
        quantized = amount.quantize(CENT)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise error(f"Invalid amount: {value!r}") from exc
    if quantized != amount:
        raise error("Amounts may have at most two decimal places")
    if abs(quantized) > MAX_MONEY:
        raise error(f"Amount exceeds the ledger limit of {MAX_MONEY}")
    return quantized


class MonotonicClock:
    """UTC clock that never hands out the same or an earlier instant twice."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(UTC)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


class LedgerService:
    def __init__(
        self,
        store: LedgerStore,
        allocator: Optional[IdentifierAllocator] = None,
        clock: Optional[MonotonicClock] = None,
    ) -> None:
        self.store = store
        self.allocator = allocator or IdentifierAllocator()
        self.clock = clock or MonotonicClock()

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _positive_amount(self, amount: Any) -> Decimal:
        value = to_money(amount)
        if value <= 0:
            raise InvalidAmountError("Amount must be greater than zero")
        return value

    def _credit(self, account: Account, value: Decimal) -> None:
        if account.balance + value > MAX_MONEY:
            raise InvalidAmountError(
                f"Balance of account {account.account_number} would exceed {MAX_MONEY}"
            )
        account.balance += value

    def _require_text(self, field: str, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InvalidInputError(f"{field} must be a non-empty string")
        return value

    def _locked_account(self, tx: LedgerTransaction, account_number: int) -> Account:
        account = tx.get_account(account_number)
        if account is None:
            raise AccountNotFoundError(f"Account {account_number} not found")
        return account

    def _new_entry(
        self,
        tx: LedgerTransaction,
        used_ids: set[int],
        entry_type: HistoryType,
        amount: Decimal,
        timestamp: datetime,
        account_number: int,
    ) -> HistoryEntry:
        transaction_id = self.allocator.allocate_transaction_id(
            lambda candidate: candidate in used_ids or tx.transaction_id_exists(candidate)
        )
        used_ids.add(transaction_id)
        return HistoryEntry(
            transaction_id=transaction_id,
            type=entry_type,
            amount=amount,
            timestamp=timestamp,
            account_number=account_number,
        )

    def _retry_on_collision(self, operation: str, attempt: Callable[[], R]) -> R:
        for attempt_no in range(1, self.allocator.max_attempts + 1):
            try:
                return attempt()
            except IdentifierCollisionError:
                logger.warning(
                    "identifier.collision.retry",
                    extra={"operation": operation, "attempt": attempt_no},
                )
        raise ResourceExhaustedError(
            f"{operation} failed: no free identifier after "
            f"{self.allocator.max_attempts} attempts"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def login(self, username: str, password: str) -> Account:
        account = self.store.find_account_by_credentials(username, password)
        if account is None:
            logger.info("account.login.failed", extra={"username": username})
            raise AuthenticationFailedError("Invalid username or password")
        logger.info("account.login", extra={"account_number": account.account_number})
        return account

    def verify_pin(self, account_number: int, pin: str) -> Account:
        account = self.get_account(account_number)
        if account.pin != pin:
            logger.info("account.pin.rejected", extra={"account_number": account_number})
            raise InvalidPinError("Wrong transaction PIN")
        return account

    def open_account(
        self,
        name: str,
        initial_balance: Any,
        username: str,
        password: str,
        pin: str,
    ) -> Account:
        self._require_text("name", name)
        self._require_text("username", username)
        self._require_text("password", password)
        if not isinstance(pin, str) or not PIN_PATTERN.fullmatch(pin):
            raise InvalidInputError("PIN must be exactly 4 digits")
        balance = to_money(initial_balance, error=InvalidInputError)
        if balance < 0:
            raise InvalidInputError("Initial balance cannot be negative")
        if self.store.username_exists(username):
            raise DuplicateUsernameError(f"Username {username!r} is already taken")

        def attempt() -> Account:
            account_number = self.allocator.allocate_account_number(
                self.store.account_number_exists
            )

            def _open(tx: LedgerTransaction) -> Account:
                if tx.username_exists(username):
                    raise DuplicateUsernameError(f"Username {username!r} is already taken")
                if tx.account_number_exists(account_number):
                    raise IdentifierCollisionError(
                        f"Account number {account_number} already exists"
                    )
                opened_at = self.clock.now()
                account = Account(
                    account_number=account_number,
                    name=name,
                    username=username,
                    password=password,
                    pin=pin,
                    balance=balance,
                    created_at=opened_at,
                )
                tx.save_account(account)
                tx.append_history(
                    self._new_entry(
                        tx,
                        set(),
                        HistoryType.ACCOUNT_OPENED,
                        balance,
                        opened_at,
                        account_number,
                    )
                )
                return account

            return self.store.with_account_lock({account_number}, _open)

        account = self._retry_on_collision("open_account", attempt)
        logger.info(
            "account.opened",
            extra={"account_number": account.account_number, "balance": str(balance)},
        )
        return account

    def deposit(self, account_number: int, amount: Any) -> Account:
        value = self._positive_amount(amount)

        def _deposit(tx: LedgerTransaction) -> Account:
            account = self._locked_account(tx, account_number)
            self._credit(account, value)
            tx.save_account(account)
            tx.append_history(
                self._new_entry(
                    tx, set(), HistoryType.DEPOSIT, value, self.clock.now(), account_number
                )
            )
            return account

        account = self._retry_on_collision(
            "deposit", lambda: self.store.with_account_lock({account_number}, _deposit)
        )
        logger.info(
            "account.deposit",
            extra={
                "account_number": account_number,
                "amount": str(value),
                "balance": str(account.balance),
            },
        )
        return account

    def withdraw(self, account_number: int, amount: Any) -> Account:
        value = self._positive_amount(amount)

        def _withdraw(tx: LedgerTransaction) -> Account:
            account = self._locked_account(tx, account_number)
            if account.balance < value:
                raise InsufficientFundsError("Insufficient funds for withdrawal")
            account.balance -= value
            tx.save_account(account)
            tx.append_history(
                self._new_entry(
                    tx, set(), HistoryType.WITHDRAWAL, value, self.clock.now(), account_number
                )
            )
            return account

        account = self._retry_on_collision(
            "withdraw", lambda: self.store.with_account_lock({account_number}, _withdraw)
        )
        logger.info(
            "account.withdraw",
            extra={
                "account_number": account_number,
                "amount": str(value),
                "balance": str(account.balance),
            },
        )
        return account

    def transfer(
        self,
        sender_account_number: int,
        receiver_account_number: int,
        amount: Any,
    ) -> Tuple[Account, Account]:
        value = self._positive_amount(amount)
        if sender_account_number == receiver_account_number:
            raise InvalidInputError("Cannot transfer to the same account")

        def _transfer(tx: LedgerTransaction) -> Tuple[Account, Account]:
            receiver = tx.get_account(receiver_account_number)
            if receiver is None:
                raise AccountNotFoundError(
                    f"Receiver account {receiver_account_number} not found"
                )
            sender = self._locked_account(tx, sender_account_number)
            if sender.balance < value:
                raise InsufficientFundsError("Insufficient funds for transfer")

            self._credit(receiver, value)
            sender.balance -= value
            timestamp = self.clock.now()
            used_ids: set[int] = set()
            tx.save_account(sender)
            tx.save_account(receiver)
            tx.append_history(
                self._new_entry(
                    tx,
                    used_ids,
                    HistoryType.TRANSFER_SENT,
                    value,
                    timestamp,
                    sender_account_number,
                )
            )
            tx.append_history(
                self._new_entry(
                    tx,
                    used_ids,
                    HistoryType.TRANSFER_RECEIVED,
                    value,
                    timestamp,
                    receiver_account_number,
                )
            )
            return sender, receiver

        sender, receiver = self._retry_on_collision(
            "transfer",
            lambda: self.store.with_account_lock(
                {sender_account_number, receiver_account_number}, _transfer
            ),
        )
        logger.info(
            "account.transfer",
            extra={
                "sender_account_number": sender_account_number,
                "receiver_account_number": receiver_account_number,
                "amount": str(value),
            },
        )
        return sender, receiver

    def get_account(self, account_number: int) -> Account:
        account = self.store.find_account_by_number(account_number)
        if account is None:
            raise AccountNotFoundError(f"Account {account_number} not found")
        return account

    def get_balance(self, account_number: int) -> Decimal:
        return self.get_account(account_number).balance

    def get_history(self, account_number: int) -> list[HistoryEntry]:
        self.get_account(account_number)
        return self.store.history_for_account(account_number)
