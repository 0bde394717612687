from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import SQLModel, create_engine

from ..core.db import create_engine_for_url
from ..core.errors import BusyError, DuplicateUsernameError, StorageFailureError
from ..services import IdentifierAllocator, LedgerService, SqlLedgerStore
from ..services.repository import SqlLedgerTransaction, _translate, row_lock_statement
from .conftest import ScriptedRandom


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def sql_store(db_url):
    engine = create_engine_for_url(db_url)
    SQLModel.metadata.create_all(engine)
    yield SqlLedgerStore(engine, lock_timeout=10.0)
    engine.dispose()


def _open(service: LedgerService, username: str, initial_balance: str = "0"):
    return service.open_account(
        username.title(), Decimal(initial_balance), username, "secret", "1234"
    )


def _fail_commit(monkeypatch, store: SqlLedgerStore, error: Exception) -> None:
    begin = store._begin

    def failing_begin():
        tx = begin()

        def commit():
            raise error

        tx.session.commit = commit
        return tx

    monkeypatch.setattr(store, "_begin", failing_begin)


@pytest.mark.parametrize(
    "error, expected",
    [
        (OperationalError("COMMIT", {}, Exception("database is locked")), BusyError),
        (OperationalError("COMMIT", {}, Exception("disk I/O error")), StorageFailureError),
        (SQLAlchemyError("connection reset"), StorageFailureError),
    ],
)
def test_driver_errors_are_translated(error, expected) -> None:
    assert type(_translate(error)) is expected


def test_row_locks_are_taken_in_account_order() -> None:
    sql = str(row_lock_statement([870522222222, 870511111111]).compile(dialect=postgresql.dialect()))

    assert "ORDER BY account.account_number FOR UPDATE" in sql


def test_sqlite_scope_starts_with_immediate_transaction(sql_store) -> None:
    service = LedgerService(sql_store, IdentifierAllocator())
    low = _open(service, "amy", "100")
    high = _open(service, "ben", "100")
    if low.account_number > high.account_number:
        low, high = high, low
    statements: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(sql_store.engine, "before_cursor_execute", record)
    try:
        service.transfer(high.account_number, low.account_number, 40)
    finally:
        event.remove(sql_store.engine, "before_cursor_execute", record)

    assert statements[0] == "BEGIN IMMEDIATE"
    assert statements.count("BEGIN IMMEDIATE") == 1
    assert any(statement.startswith("UPDATE account") for statement in statements)
    assert service.get_balance(high.account_number) == Decimal("60.00")
    assert service.get_balance(low.account_number) == Decimal("140.00")


def test_open_scope_blocks_writers_from_another_store(sql_store, db_url) -> None:
    service = LedgerService(sql_store, IdentifierAllocator())
    account = _open(service, "cleo", "10")
    other_engine = create_engine(
        db_url, connect_args={"check_same_thread": False, "timeout": 0}
    )
    other = LedgerService(SqlLedgerStore(other_engine), IdentifierAllocator())

    try:
        with sql_store.account_scope([account.account_number]):
            with pytest.raises(BusyError):
                other.deposit(account.account_number, 5)
        other.deposit(account.account_number, 5)
    finally:
        other_engine.dispose()

    assert service.get_balance(account.account_number) == Decimal("15.00")
    assert len(service.get_history(account.account_number)) == 2


def test_transaction_id_collision_at_commit_is_retried(sql_store, monkeypatch) -> None:
    allocator = IdentifierAllocator(
        rng=ScriptedRandom(suffixes=[11111111], transaction_ids=[5, 5, 6])
    )
    service = LedgerService(sql_store, allocator)
    account = _open(service, "dora", "0")

    # A concurrent writer drew the same id after the pre-check.
    monkeypatch.setattr(SqlLedgerTransaction, "transaction_id_exists", lambda self, tid: False)
    service.deposit(account.account_number, 10)

    assert service.get_balance(account.account_number) == Decimal("10.00")
    history = service.get_history(account.account_number)
    assert [entry.transaction_id for entry in history] == [6, 5]


def test_duplicate_username_at_commit(sql_store, monkeypatch) -> None:
    service = LedgerService(sql_store, IdentifierAllocator())
    first = _open(service, "emil", "10")

    monkeypatch.setattr(sql_store, "username_exists", lambda username: False)
    monkeypatch.setattr(SqlLedgerTransaction, "username_exists", lambda self, username: False)
    with pytest.raises(DuplicateUsernameError):
        _open(service, "emil", "20")

    assert service.login("emil", "secret").account_number == first.account_number


@pytest.mark.parametrize(
    "error, expected",
    [
        (OperationalError("COMMIT", {}, Exception("disk I/O error")), StorageFailureError),
        (OperationalError("COMMIT", {}, Exception("database is locked")), BusyError),
        (SQLAlchemyError("connection reset"), StorageFailureError),
    ],
)
def test_failed_commit_leaves_transfer_unapplied(sql_store, monkeypatch, error, expected) -> None:
    service = LedgerService(sql_store, IdentifierAllocator())
    sender = _open(service, "finn", "1500")
    receiver = _open(service, "gina", "200")

    _fail_commit(monkeypatch, sql_store, error)
    with pytest.raises(expected):
        service.transfer(sender.account_number, receiver.account_number, 300)
    monkeypatch.undo()

    assert service.get_balance(sender.account_number) == Decimal("1500.00")
    assert service.get_balance(receiver.account_number) == Decimal("200.00")
    assert len(service.get_history(sender.account_number)) == 1
    assert len(service.get_history(receiver.account_number)) == 1


def test_large_balance_survives_sqlite(sql_store) -> None:
    service = LedgerService(sql_store, IdentifierAllocator())
    account = _open(service, "hugo", "99999999999999.99")

    reloaded = sql_store.find_account_by_number(account.account_number)

    assert reloaded.balance == Decimal("99999999999999.99")
    assert service.get_history(account.account_number)[0].amount == Decimal("99999999999999.99")
