from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from execution_authority.db.immutability import GuardedCursor, validate_event_immutability
from execution_authority.db.ledger_schema import (
    EXECUTION_COLUMNS,
    IDEMPOTENCY_INDEX_SUFFIX,
    validate_identifier,
    postgres_ddl,
    sqlite_ddl,
)
from execution_authority.db.postgres import PostgresTxRunner, is_unique_violation
from execution_authority.errors import IdempotencyConflict, LedgerUnavailableError

logger = logging.getLogger(__name__)

STATUS_FILTERS = {"accepted": True, "rejected": False}


def _status_flag(status: str | None) -> bool | None:
    if status is None:
        return None
    return STATUS_FILTERS.get(status)


def _json_value(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)) and raw:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _row_to_record(row: Any) -> dict[str, Any]:
    record = dict(zip(EXECUTION_COLUMNS, row))
    record["accepted"] = bool(record["accepted"])
    record["simulation_context"] = _json_value(record["simulation_context"])
    record["lineage"] = _json_value(record["lineage"])
    return record


def _insert_params(record: dict[str, Any]) -> tuple[Any, ...]:
    return (
        record["execution_id"],
        bool(record.get("accepted", True)),
        record.get("reason"),
        record.get("caller_id"),
        record.get("org_id"),
        record.get("simulation_type"),
        json.dumps(record.get("simulation_context") or {}, ensure_ascii=True, sort_keys=True),
        record["authority_signature"],
        record["root_span_id"],
        json.dumps(record["lineage"], ensure_ascii=True, sort_keys=True),
        record.get("idempotency_key"),
        record["created_at"],
    )


class InMemoryExecutionsRepository:
    def __init__(self) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def ensure_schema(self) -> None:
        return None

    def append(self, *, record: dict[str, Any]) -> dict[str, Any]:
        execution_id = str(record["execution_id"])
        key = record.get("idempotency_key")
        with self._lock:
            validate_event_immutability(execution_id if execution_id in self._rows else None, "update")
            if key is not None and key in self._by_idempotency_key:
                raise IdempotencyConflict(str(key))
            self._rows[execution_id] = json.loads(json.dumps(record))
            if key is not None:
                self._by_idempotency_key[str(key)] = execution_id
        return dict(record)

    def get(self, *, execution_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(execution_id)
            return json.loads(json.dumps(row)) if row is not None else None

    def get_by_idempotency_key(self, *, idempotency_key: str) -> dict[str, Any] | None:
        with self._lock:
            execution_id = self._by_idempotency_key.get(idempotency_key)
            if execution_id is None:
                return None
            return json.loads(json.dumps(self._rows[execution_id]))

    def list(
        self,
        *,
        caller_id: str | None = None,
        org_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        accepted = _status_flag(status)
        with self._lock:
            rows = [
                row
                for row in self._rows.values()
                if (caller_id is None or row.get("caller_id") == caller_id)
                and (org_id is None or row.get("org_id") == org_id)
                and (accepted is None or bool(row.get("accepted")) is accepted)
            ]
            rows.sort(key=lambda row: (row["created_at"], row["execution_id"]), reverse=True)
            page = [json.loads(json.dumps(row)) for row in rows[offset : offset + limit]]
        return page, len(rows)

    def ping(self) -> bool:
        return True

    def table_exists(self) -> bool:
        return True

    def has_idempotency_constraint(self) -> bool:
        return True


class SqliteExecutionsRepository:
    """Executions ledger persisted to a local SQLite file."""

    def __init__(self, db_path: str, *, table_name: str = "executions") -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table_name = validate_identifier(table_name)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=5.0)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            cur = GuardedCursor(conn.cursor())
            for statement in sqlite_ddl(self._table_name):
                cur.execute(statement)
            conn.commit()

    def append(self, *, record: dict[str, Any]) -> dict[str, Any]:
        placeholders = ", ".join("?" for _ in EXECUTION_COLUMNS)
        sql = f"INSERT INTO {self._table_name} ({', '.join(EXECUTION_COLUMNS)}) VALUES ({placeholders})"
        try:
            with self._connect() as conn:
                GuardedCursor(conn.cursor()).execute(sql, _insert_params(record))
        except sqlite3.IntegrityError as exc:
            key = record.get("idempotency_key")
            if key is not None and "idempotency_key" in str(exc):
                raise IdempotencyConflict(str(key)) from exc
            raise
        return dict(record)

    def _fetch_one(self, where: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        sql = f"SELECT {', '.join(EXECUTION_COLUMNS)} FROM {self._table_name} WHERE {where} LIMIT 1"
        with self._connect() as conn:
            cur = GuardedCursor(conn.cursor())
            cur.execute(sql, params)
            row = cur.fetchone()
        return _row_to_record(row) if row is not None else None

    def get(self, *, execution_id: str) -> dict[str, Any] | None:
        return self._fetch_one("execution_id = ?", (execution_id,))

    def get_by_idempotency_key(self, *, idempotency_key: str) -> dict[str, Any] | None:
        return self._fetch_one("idempotency_key = ?", (idempotency_key,))

    def list(
        self,
        *,
        caller_id: str | None = None,
        org_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if caller_id is not None:
            clauses.append("caller_id = ?")
            params.append(caller_id)
        if org_id is not None:
            clauses.append("org_id = ?")
            params.append(org_id)
        accepted = _status_flag(status)
        if accepted is not None:
            clauses.append("accepted = ?")
            params.append(1 if accepted else 0)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            cur = GuardedCursor(conn.cursor())
            cur.execute(f"SELECT COUNT(*) FROM {self._table_name} {where}", tuple(params))
            total = int(cur.fetchone()[0])
            cur.execute(
                f"SELECT {', '.join(EXECUTION_COLUMNS)} FROM {self._table_name} {where} "
                "ORDER BY created_at DESC, execution_id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            )
            rows = cur.fetchall()
        return [_row_to_record(row) for row in rows], total

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            logger.error("ledger_ping_failed backend=sqlite error=%s", exc)
            return False
        return True

    def table_exists(self) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
                (self._table_name,),
            ).fetchone()
        return row is not None

    def has_idempotency_constraint(self) -> bool:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT sql FROM sqlite_master WHERE type = 'index' AND tbl_name = ?",
                (self._table_name,),
            ).fetchall()
        return any(
            sql and "UNIQUE" in sql.upper() and "idempotency_key" in sql
            for (sql,) in rows
        )


class PostgresExecutionsRepository:
    """Executions ledger for postgres backend; every statement passes the immutability guard."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "executions") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def ensure_schema(self) -> None:
        def _op(conn: Any) -> None:
            with GuardedCursor(conn.cursor()) as cur:
                for statement in postgres_ddl(self._table_name):
                    cur.execute(statement)

        self._tx_runner.run_in_tx(fn=_op)

    def append(self, *, record: dict[str, Any]) -> dict[str, Any]:
        placeholders = ", ".join(
            "%s::jsonb" if column in {"simulation_context", "lineage"} else "%s" for column in EXECUTION_COLUMNS
        )
        sql = f"INSERT INTO {self._table_name} ({', '.join(EXECUTION_COLUMNS)}) VALUES ({placeholders})"

        def _op(conn: Any) -> None:
            with GuardedCursor(conn.cursor()) as cur:
                cur.execute(sql, _insert_params(record))

        try:
            self._tx_runner.run_in_tx(fn=_op)
        except Exception as exc:
            key = record.get("idempotency_key")
            if key is not None and is_unique_violation(exc):
                raise IdempotencyConflict(str(key)) from exc
            raise
        return dict(record)

    def _fetch_one(self, where: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        sql = f"SELECT {', '.join(EXECUTION_COLUMNS)} FROM {self._table_name} WHERE {where} LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with GuardedCursor(conn.cursor()) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return _row_to_record(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, execution_id: str) -> dict[str, Any] | None:
        return self._fetch_one("execution_id = %s", (execution_id,))

    def get_by_idempotency_key(self, *, idempotency_key: str) -> dict[str, Any] | None:
        return self._fetch_one("idempotency_key = %s", (idempotency_key,))

    def list(
        self,
        *,
        caller_id: str | None = None,
        org_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if caller_id is not None:
            clauses.append("caller_id = %s")
            params.append(caller_id)
        if org_id is not None:
            clauses.append("org_id = %s")
            params.append(org_id)
        accepted = _status_flag(status)
        if accepted is not None:
            clauses.append("accepted = %s")
            params.append(accepted)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        count_sql = f"SELECT COUNT(*) FROM {self._table_name} {where}"
        page_sql = (
            f"SELECT {', '.join(EXECUTION_COLUMNS)} FROM {self._table_name} {where} "
            "ORDER BY created_at DESC, execution_id DESC LIMIT %s OFFSET %s"
        )

        def _op(conn: Any) -> tuple[list[dict[str, Any]], int]:
            with GuardedCursor(conn.cursor()) as cur:
                cur.execute(count_sql, tuple(params))
                total = int(cur.fetchone()[0])
                cur.execute(page_sql, (*params, limit, offset))
                rows = cur.fetchall()
            return [_row_to_record(row) for row in rows], total

        return self._tx_runner.run_in_tx(fn=_op)

    def ping(self) -> bool:
        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return cur.fetchone() is not None

        try:
            return bool(self._tx_runner.run_in_tx(fn=_op))
        except Exception as exc:
            logger.error("ledger_ping_failed backend=postgres error=%s", type(exc).__name__)
            return False

    def table_exists(self) -> bool:
        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT tablename FROM pg_tables WHERE schemaname = 'public' AND tablename = %s",
                    (self._table_name,),
                )
                return cur.fetchone() is not None

        return bool(self._tx_runner.run_in_tx(fn=_op))

    def has_idempotency_constraint(self) -> bool:
        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT indexname, indexdef FROM pg_indexes WHERE schemaname = 'public' AND tablename = %s",
                    (self._table_name,),
                )
                rows = cur.fetchall()
            return any(
                ("UNIQUE" in str(indexdef).upper() and "idempotency_key" in str(indexdef))
                or str(indexname).endswith(IDEMPOTENCY_INDEX_SUFFIX)
                for indexname, indexdef in rows
            )

        return bool(self._tx_runner.run_in_tx(fn=_op))


def create_executions_repository(settings: Any) -> Any:
    backend = settings.ledger_backend
    if backend == "sqlite":
        return SqliteExecutionsRepository(settings.ledger_sqlite_path)
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when LEDGER_BACKEND=postgres")
        return PostgresExecutionsRepository(tx_runner=PostgresTxRunner(settings.postgres_dsn))
    if backend != "memory":
        raise LedgerUnavailableError(f"unsupported LEDGER_BACKEND: {backend}")
    return InMemoryExecutionsRepository()
