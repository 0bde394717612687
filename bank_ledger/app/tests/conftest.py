from decimal import Decimal

import pytest
from sqlmodel import SQLModel

from ..core.db import create_engine_for_url
from ..services import IdentifierAllocator, InMemoryLedgerStore, LedgerService, SqlLedgerStore
from ..services.allocator import ACCOUNT_SUFFIX_MIN


class ScriptedRandom:
    """Stand-in for ``random.Random`` that replays account-number suffixes."""

    def __init__(self, suffixes=(), transaction_ids=()):
        self.suffixes = list(suffixes)
        self.transaction_ids = list(transaction_ids)
        self._counter = 0

    def randint(self, a: int, b: int) -> int:
        if a == ACCOUNT_SUFFIX_MIN:
            return self.suffixes.pop(0)
        if self.transaction_ids:
            return self.transaction_ids.pop(0)
        self._counter += 1
        return self._counter


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLedgerStore(lock_timeout=10.0)
        return

    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    SQLModel.metadata.create_all(engine)
    yield SqlLedgerStore(engine, lock_timeout=10.0)
    engine.dispose()


@pytest.fixture
def allocator() -> IdentifierAllocator:
    return IdentifierAllocator(bank_code="8705", max_attempts=10)


@pytest.fixture
def service(store, allocator) -> LedgerService:
    return LedgerService(store, allocator)


@pytest.fixture
def open_account(service):
    def _open(username: str, initial_balance="0", pin: str = "1234"):
        return service.open_account(
            username.title(), Decimal(initial_balance), username, "secret", pin
        )

    return _open
