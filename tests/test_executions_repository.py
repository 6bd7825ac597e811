from __future__ import annotations

import sqlite3

import pytest

from execution_authority.config import Settings
from execution_authority.errors import IdempotencyConflict, ImmutabilityViolation, LedgerUnavailableError
from execution_authority.repositories import (
    InMemoryExecutionsRepository,
    PostgresExecutionsRepository,
    SqliteExecutionsRepository,
    create_executions_repository,
)


def _record(suffix: str, **overrides) -> dict:
    record = {
        "execution_id": f"exec-00000000-0000-4000-8000-0000000000{suffix}",
        "accepted": True,
        "reason": None,
        "caller_id": "caller_a",
        "org_id": "org_a",
        "simulation_type": "sweep",
        "simulation_context": {"n": 1},
        "authority_signature": "ab" * 32,
        "root_span_id": "11111111-1111-4111-8111-1111111111" + suffix,
        "lineage": {"origin_service": "ruvvector-service"},
        "idempotency_key": None,
        "created_at": f"2026-01-01T00:00:{suffix}.000Z",
    }
    record.update(overrides)
    return record


def test_inmemory_repository_rejects_duplicate_key_and_id():
    repo = InMemoryExecutionsRepository()
    repo.append(record=_record("01", idempotency_key="k"))

    with pytest.raises(IdempotencyConflict):
        repo.append(record=_record("02", idempotency_key="k"))
    with pytest.raises(ImmutabilityViolation):
        repo.append(record=_record("01"))

    assert repo.get_by_idempotency_key(idempotency_key="k")["execution_id"].endswith("01")
    assert repo.list()[1] == 1


def test_inmemory_repository_returns_copies():
    repo = InMemoryExecutionsRepository()
    repo.append(record=_record("01"))
    row = repo.get(execution_id=_record("01")["execution_id"])
    row["simulation_context"]["n"] = 99
    assert repo.get(execution_id=row["execution_id"])["simulation_context"] == {"n": 1}


def test_sqlite_repository_round_trip_and_constraint(tmp_path):
    repo = SqliteExecutionsRepository(str(tmp_path / "ledger" / "executions.sqlite3"))
    repo.ensure_schema()

    assert repo.ping() is True
    assert repo.table_exists() is True
    assert repo.has_idempotency_constraint() is True

    repo.append(record=_record("01", idempotency_key="k1"))
    repo.append(record=_record("02", caller_id="caller_b"))
    repo.append(record=_record("03", accepted=False, reason="rejected"))

    stored = repo.get(execution_id=_record("01")["execution_id"])
    assert stored["accepted"] is True
    assert stored["simulation_context"] == {"n": 1}
    assert stored["lineage"] == {"origin_service": "ruvvector-service"}
    assert stored["idempotency_key"] == "k1"
    assert repo.get(execution_id="exec-missing") is None

    with pytest.raises(IdempotencyConflict):
        repo.append(record=_record("04", idempotency_key="k1"))

    rows, total = repo.list(caller_id="caller_a")
    assert total == 2
    assert [row["execution_id"][-2:] for row in rows] == ["03", "01"]
    assert repo.list(status="rejected")[1] == 1
    assert repo.list(status="unknown")[1] == 3
    page, total = repo.list(limit=1, offset=1)
    assert total == 3
    assert page[0]["execution_id"].endswith("02")


def test_sqlite_repository_duplicate_id_is_not_an_idempotency_conflict(tmp_path):
    repo = SqliteExecutionsRepository(str(tmp_path / "executions.sqlite3"))
    repo.ensure_schema()
    repo.append(record=_record("01", idempotency_key="k1"))
    with pytest.raises(sqlite3.IntegrityError):
        repo.append(record=_record("01", idempotency_key="k2"))


def test_sqlite_repository_reports_missing_constraint(tmp_path):
    db_path = tmp_path / "bare.sqlite3"
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute("CREATE TABLE executions (execution_id TEXT PRIMARY KEY, idempotency_key TEXT)")
    repo = SqliteExecutionsRepository(str(db_path))
    assert repo.table_exists() is True
    assert repo.has_idempotency_constraint() is False


def test_postgres_repository_rejects_invalid_table_name():
    class DummyRunner:
        def run_in_tx(self, *, fn):
            return fn(None)

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresExecutionsRepository(tx_runner=DummyRunner(), table_name="executions;drop table executions")


class _FakeUniqueViolation(Exception):
    sqlstate = "23505"


def _fake_postgres(rows: list[tuple] | None = None, *, fail_insert: Exception | None = None):
    statements: list[tuple[str, tuple | None]] = []

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append((query, params))
            normalized = query.strip().lower()
            if normalized.startswith("insert") and fail_insert is not None:
                raise fail_insert
            self._query = normalized

        def fetchone(self):
            if self._query.startswith("select count"):
                return (len(rows or []),)
            return (rows or [None])[0]

        def fetchall(self):
            return list(rows or [])

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def __init__(self):
            self.calls = 0

        def run_in_tx(self, *, fn):
            self.calls += 1
            return fn(FakeConnection())

    return FakeRunner(), statements


def test_postgres_repository_append_casts_json_columns():
    runner, statements = _fake_postgres()
    repo = PostgresExecutionsRepository(tx_runner=runner)
    repo.append(record=_record("01", idempotency_key="k1"))

    insert_sql, params = statements[0]
    assert insert_sql.startswith("INSERT INTO executions")
    assert insert_sql.count("%s::jsonb") == 2
    assert params[0] == _record("01")["execution_id"]
    assert params[6] == '{"n": 1}'
    assert params[10] == "k1"


def test_postgres_repository_maps_unique_violation_to_conflict():
    runner, _ = _fake_postgres(fail_insert=_FakeUniqueViolation("duplicate key"))
    repo = PostgresExecutionsRepository(tx_runner=runner)
    with pytest.raises(IdempotencyConflict):
        repo.append(record=_record("01", idempotency_key="k1"))

    with pytest.raises(_FakeUniqueViolation):
        repo.append(record=_record("01"))


def test_postgres_repository_get_and_list_decode_rows():
    row = tuple(
        _record("01")[column] if column not in {"simulation_context", "lineage"} else '{"n": 1}'
        for column in (
            "execution_id",
            "accepted",
            "reason",
            "caller_id",
            "org_id",
            "simulation_type",
            "simulation_context",
            "authority_signature",
            "root_span_id",
            "lineage",
            "idempotency_key",
            "created_at",
        )
    )
    runner, statements = _fake_postgres([row])
    repo = PostgresExecutionsRepository(tx_runner=runner)

    fetched = repo.get(execution_id=row[0])
    assert fetched["simulation_context"] == {"n": 1}
    assert "WHERE execution_id = %s" in statements[0][0]

    rows, total = repo.list(caller_id="caller_a", status="accepted", limit=10, offset=0)
    assert total == 1
    assert rows[0]["execution_id"] == row[0]
    count_sql, count_params = statements[1]
    assert "caller_id = %s AND accepted = %s" in count_sql
    assert count_params == ("caller_a", True)
    assert statements[2][1] == ("caller_a", True, 10, 0)


def test_postgres_repository_ping_failure_is_soft():
    class BrokenRunner:
        def run_in_tx(self, *, fn):
            raise OSError("connection refused")

    assert PostgresExecutionsRepository(tx_runner=BrokenRunner()).ping() is False


def test_create_executions_repository_selects_backend(tmp_path):
    memory = create_executions_repository(Settings.from_env({}))
    assert isinstance(memory, InMemoryExecutionsRepository)

    sqlite_settings = Settings.from_env(
        {"LEDGER_BACKEND": "sqlite", "LEDGER_SQLITE_PATH": str(tmp_path / "x.sqlite3")}
    )
    assert isinstance(create_executions_repository(sqlite_settings), SqliteExecutionsRepository)

    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_executions_repository(Settings.from_env({"LEDGER_BACKEND": "postgres"}))

    with pytest.raises(LedgerUnavailableError):
        create_executions_repository(Settings.from_env({"LEDGER_BACKEND": "mongo"}))
