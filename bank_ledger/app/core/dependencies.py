from functools import lru_cache

from ..services import IdentifierAllocator, LedgerService, SqlLedgerStore
from .config import get_settings
from .db import get_engine


@lru_cache(maxsize=1)
def get_ledger_service() -> LedgerService:
    settings = get_settings()
    store = SqlLedgerStore(get_engine(), lock_timeout=settings.lock_timeout_seconds)
    allocator = IdentifierAllocator(
        bank_code=settings.bank_code,
        max_attempts=settings.id_allocation_attempts,
    )
    return LedgerService(store, allocator)
