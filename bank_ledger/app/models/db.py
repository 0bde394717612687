from __future__ import annotations
from datetime import datetime, UTC
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from sqlalchemy import BigInteger, DateTime, Numeric, String
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

CENT = Decimal("0.01")
# Largest value a Numeric(18, 2) column holds.
MAX_MONEY = Decimal("9999999999999999.99")


class Money(TypeDecorator):
    """Two-place decimal column. SQLite has no exact decimal storage and would
    round-trip through a float, so there the value is kept as text."""

    impl = Numeric(18, 2)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(24))
        return dialect.type_descriptor(Numeric(18, 2))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        value = Decimal(value).quantize(CENT)
        return str(value) if dialect.name == "sqlite" else value

    def process_result_value(self, value: Any, dialect: Dialect) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(str(value)).quantize(CENT)


class HistoryType(str, Enum):
    ACCOUNT_OPENED = "AccountOpened"
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    TRANSFER_SENT = "TransferSent"
    TRANSFER_RECEIVED = "TransferReceived"


class Account(SQLModel, table=True):
    account_number: int = Field(primary_key=True, sa_type=BigInteger)
    name: str
    username: str = Field(unique=True, index=True)
    password: str
    pin: str
    balance: Decimal = Field(default=Decimal("0.00"), ge=0, sa_type=Money)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), sa_type=DateTime(timezone=True)
    )


class HistoryEntry(SQLModel, table=True):
    """One immutable ledger event. Entries are appended, never updated or removed."""

    __tablename__ = "history_entry"

    transaction_id: int = Field(primary_key=True, sa_type=BigInteger)
    type: HistoryType
    amount: Decimal = Field(sa_type=Money)
    timestamp: datetime = Field(index=True, sa_type=DateTime(timezone=True))
    account_number: int = Field(
        foreign_key="account.account_number", index=True, sa_type=BigInteger
    )
