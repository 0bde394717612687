from .allocator import IdentifierAllocator
from .ledger import LedgerService, MonotonicClock
from .repository import SqlLedgerStore
from .store import InMemoryLedgerStore, LedgerStore, LedgerTransaction

__all__ = [
    "IdentifierAllocator",
    "InMemoryLedgerStore",
    "LedgerService",
    "LedgerStore",
    "LedgerTransaction",
    "MonotonicClock",
    "SqlLedgerStore",
]
