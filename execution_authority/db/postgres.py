from __future__ import annotations

from collections.abc import Callable
from typing import Any

UNIQUE_VIOLATION_SQLSTATE = "23505"


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def is_unique_violation(exc: BaseException) -> bool:
    sqlstate = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
    return sqlstate == UNIQUE_VIOLATION_SQLSTATE


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction; rolls back when the callback raises."""

    def __init__(self, dsn: str, *, connect_timeout_s: int = 10) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect_timeout_s = connect_timeout_s

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn, connect_timeout=self._connect_timeout_s) as conn:
            try:
                result = fn(conn)
            except Exception:
                conn.rollback()
                raise
            conn.commit()
            return result
