import tempfile
from pathlib import Path

import pytest

from sqlchat_core.domain.exceptions import (
    ConfirmationRequiredError,
    ConnectionNotFoundError,
    QueryExecutionError,
    UnsupportedDriverError,
)
from sqlchat_core.domain.models import DatabaseConnection
from sqlchat_core.drivers import AffectedRows, get_driver
from sqlchat_core.engine.cancellation import CancellationRegistry
from sqlchat_core.engine.query_engine import QueryExecutionEngine, QueryState
from sqlchat_core.infrastructure.storage.json_store import JsonStore


class FakeDriver:
    """按 SQL 文本返回预置结果的驱动替身，记录是否被关闭。"""

    name = "mysql"

    def __init__(self, rows=10, fail_at=None, fail_on_start=False):
        self.rows = rows
        self.fail_at = fail_at
        self.fail_on_start = fail_on_start
        self.pulled = 0
        self.closed = False
        self.calls = []

    def execute(self, connection, sql):
        self.calls.append(sql)
        try:
            if self.fail_on_start:
                raise QueryExecutionError("Access denied for user 'app'@'%'")
            if sql.upper().startswith(("DELETE", "UPDATE", "INSERT")):
                yield AffectedRows(affected_rows=4)
                return
            for i in range(1, self.rows + 1):
                if self.fail_at == i:
                    raise QueryExecutionError("Lost connection to server during query")
                self.pulled += 1
                yield {"id": i, "total": f"{i}.00"}
        finally:
            self.closed = True

    def introspect_schema(self, connection):
        return "Database Type: MySQL\n\n"


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as d:
        s = JsonStore(root=Path(d))
        s.save_connection(
            DatabaseConnection(
                id="1",
                driver="mysql",
                host="db.local",
                port=3306,
                username="app",
                secret="pw",
                database_name="shop",
                user_id="alice",
            )
        )
        yield s


def _engine(store, driver):
    reg = CancellationRegistry()
    return QueryExecutionEngine(store, driver_factory=lambda name: driver, cancellations=reg), reg


def test_rows_stream_then_done(store):
    driver = FakeDriver(rows=10)
    engine, reg = _engine(store, driver)

    run = engine.start("SELECT * FROM orders", "1", execution_id="ex-1", user_id="alice")
    events = list(run.events())

    assert [e.kind for e in events] == ["row"] * 10 + ["done"]
    assert events[0].row == {"id": 1, "total": "1.00"}
    assert run.rows_emitted == driver.pulled == 10
    assert run.state == QueryState.COMPLETED
    assert driver.closed
    assert "ex-1" not in reg


def test_summary_for_mutating_statement_when_confirmed(store):
    driver = FakeDriver()
    engine, _ = _engine(store, driver)

    run = engine.start("DELETE FROM orders", "1", confirmed=True)
    events = list(run.events())

    assert [e.kind for e in events] == ["summary", "done"]
    assert events[0].affected_rows == 4
    assert run.state == QueryState.COMPLETED


def test_mutating_statement_requires_confirmation(store):
    driver = FakeDriver()
    engine, _ = _engine(store, driver)

    with pytest.raises(ConfirmationRequiredError) as ei:
        engine.start("DELETE FROM orders", "1")
    assert ei.value.http_status == 409
    assert ei.value.to_dict()["classification"] == "mutating"
    assert driver.calls == []


def test_unknown_connection_before_streaming(store):
    driver = FakeDriver()
    engine, reg = _engine(store, driver)

    with pytest.raises(ConnectionNotFoundError) as ei:
        engine.start("SELECT 1", "999")
    assert ei.value.http_status == 404
    assert driver.calls == []
    assert len(reg) == 0


def test_unsupported_driver(store):
    store.save_connection(
        DatabaseConnection(id="2", driver="oracle", host="h", port=1521, username="u", secret="p", database_name="d")
    )
    engine = QueryExecutionEngine(store, driver_factory=get_driver, cancellations=CancellationRegistry())
    with pytest.raises(UnsupportedDriverError):
        engine.start("SELECT 1", "2")


def test_execution_error_surfaces_before_stream(store):
    driver = FakeDriver(fail_on_start=True)
    engine, reg = _engine(store, driver)

    with pytest.raises(QueryExecutionError) as ei:
        engine.start("SELECT 1", "1", execution_id="ex-err")
    assert ei.value.http_status == 401
    assert driver.closed
    assert "ex-err" not in reg


def test_cancel_after_two_rows(store):
    driver = FakeDriver(rows=10)
    engine, reg = _engine(store, driver)

    run = engine.start("SELECT * FROM orders", "1", execution_id="ex-2")
    stream = run.events()
    first = next(stream)
    second = next(stream)
    assert (first.row["id"], second.row["id"]) == (1, 2)

    assert engine.cancel("ex-2") is True
    rest = list(stream)

    assert [e.kind for e in rest] == ["done"]
    assert run.rows_emitted == 2
    assert run.state == QueryState.CANCELLED
    assert driver.closed
    assert "ex-2" not in reg


def test_mid_stream_failure_keeps_rows_and_ends_with_error(store):
    driver = FakeDriver(rows=10, fail_at=4)
    engine, reg = _engine(store, driver)

    events = list(engine.start("SELECT * FROM orders", "1").events())

    assert [e.kind for e in events] == ["row", "row", "row", "error"]
    assert "Lost connection" in events[-1].message
    assert len(reg) == 0


def test_close_without_iterating_releases_resources(store):
    driver = FakeDriver(rows=3)
    engine, reg = _engine(store, driver)

    run = engine.start("SELECT * FROM orders", "1", execution_id="ex-3")
    assert "ex-3" in reg
    run.close()
    run.close()

    assert driver.closed
    assert "ex-3" not in reg


def test_introspect_schema_resolves_connection(store):
    engine, _ = _engine(store, FakeDriver())
    assert engine.introspect_schema("1").startswith("Database Type: MySQL")
    with pytest.raises(ConnectionNotFoundError):
        engine.introspect_schema("404")
