from __future__ import annotations

import logging
import re
from typing import Any

from execution_authority.errors import ImmutabilityViolation

logger = logging.getLogger(__name__)

PROTECTED_TABLES: frozenset[str] = frozenset(
    {
        "executions",
        "decision_events",
        "learning_events",
        "learning_decision_events",
        "approvals",
    }
)

_MUTATION_TEMPLATES: tuple[tuple[str, str], ...] = (
    ("update", r"\bUPDATE\s+(?:ONLY\s+)?(?:\w+\.)?{table}\b"),
    ("delete", r"\bDELETE\s+FROM\s+(?:ONLY\s+)?(?:\w+\.)?{table}\b"),
    ("truncate", r"\bTRUNCATE\s+(?:TABLE\s+)?(?:ONLY\s+)?(?:\w+\.)?{table}\b"),
    ("drop", r"\bDROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:\w+\.)?{table}\b"),
    ("alter_drop", r"\bALTER\s+TABLE\s+(?:ONLY\s+)?(?:\w+\.)?{table}\b.*\bDROP\b"),
)


def _compile(tables: frozenset[str]) -> list[tuple[str, str, re.Pattern[str]]]:
    compiled: list[tuple[str, str, re.Pattern[str]]] = []
    for table in sorted(tables):
        for operation, template in _MUTATION_TEMPLATES:
            pattern = re.compile(template.format(table=re.escape(table)), re.IGNORECASE | re.DOTALL)
            compiled.append((table, operation, pattern))
    return compiled


_PATTERNS = _compile(PROTECTED_TABLES)


def find_mutation(sql: str) -> tuple[str, str] | None:
    for table, operation, pattern in _PATTERNS:
        if pattern.search(sql):
            return table, operation
    return None


def guard_against_mutation(sql: str) -> None:
    hit = find_mutation(sql)
    if hit is None:
        return
    table, operation = hit
    logger.error(
        "immutability_violation table=%s operation=%s statement=%s",
        table,
        operation,
        " ".join(sql.split())[:200],
    )
    raise ImmutabilityViolation(table=table, operation=operation)


def validate_protected_statement(sql: str, table: str) -> bool:
    if table not in PROTECTED_TABLES:
        return True
    guard_against_mutation(sql)
    return True


def validate_event_immutability(existing_id: str | None, operation: str, *, table: str = "executions") -> None:
    """Records are created once; an update of a stored id is always refused."""
    if existing_id and operation == "update":
        logger.error("immutability_violation table=%s operation=update record_id=%s", table, existing_id)
        raise ImmutabilityViolation(table=table, operation="update")


class GuardedCursor:
    """DB-API cursor proxy that refuses mutation statements on append-only tables."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    def __enter__(self) -> "GuardedCursor":
        enter = getattr(self._cursor, "__enter__", None)
        if enter is not None:
            enter()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        exit_ = getattr(self._cursor, "__exit__", None)
        if exit_ is not None:
            return bool(exit_(exc_type, exc, tb))
        close = getattr(self._cursor, "close", None)
        if close is not None:
            close()
        return False

    def execute(self, sql: str, params: Any = None) -> Any:
        guard_against_mutation(sql)
        if params is None:
            return self._cursor.execute(sql)
        return self._cursor.execute(sql, params)

    def fetchone(self) -> Any:
        return self._cursor.fetchone()

    def fetchall(self) -> Any:
        return self._cursor.fetchall()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._cursor, name)
