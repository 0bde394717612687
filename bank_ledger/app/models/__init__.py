from .db import Account, HistoryEntry, HistoryType
from .schemas import (
    AccountOpenRequest,
    AccountResponse,
    BalanceResponse,
    HistoryEntryResponse,
    LoginRequest,
    MoneyMovementRequest,
    TransferRequest,
    TransferResponse,
)

__all__ = [
    "Account",
    "HistoryEntry",
    "HistoryType",
    "AccountOpenRequest",
    "AccountResponse",
    "BalanceResponse",
    "HistoryEntryResponse",
    "LoginRequest",
    "MoneyMovementRequest",
    "TransferRequest",
    "TransferResponse",
]
