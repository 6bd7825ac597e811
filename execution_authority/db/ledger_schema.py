from __future__ import annotations

import re

EXECUTION_COLUMNS: tuple[str, ...] = (
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

IDEMPOTENCY_INDEX_SUFFIX = "idempotency_key_unique"


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def idempotency_index_name(table_name: str) -> str:
    return f"idx_{validate_identifier(table_name)}_{IDEMPOTENCY_INDEX_SUFFIX}"


def postgres_ddl(table_name: str) -> list[str]:
    table = validate_identifier(table_name)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
          execution_id TEXT PRIMARY KEY,
          accepted BOOLEAN NOT NULL DEFAULT TRUE,
          reason TEXT,
          caller_id TEXT,
          org_id TEXT,
          simulation_type TEXT,
          simulation_context JSONB NOT NULL DEFAULT '{{}}'::jsonb,
          authority_signature TEXT NOT NULL,
          root_span_id TEXT NOT NULL,
          lineage JSONB NOT NULL,
          idempotency_key TEXT,
          created_at TEXT NOT NULL
        )
        """,
        f"CREATE UNIQUE INDEX IF NOT EXISTS {idempotency_index_name(table)} ON {table} (idempotency_key) "
        "WHERE idempotency_key IS NOT NULL",
        f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table} (created_at DESC)",
        f"CREATE INDEX IF NOT EXISTS idx_{table}_caller_org ON {table} (caller_id, org_id)",
    ]


def sqlite_ddl(table_name: str) -> list[str]:
    table = validate_identifier(table_name)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
          execution_id TEXT PRIMARY KEY,
          accepted INTEGER NOT NULL DEFAULT 1,
          reason TEXT,
          caller_id TEXT,
          org_id TEXT,
          simulation_type TEXT,
          simulation_context TEXT NOT NULL DEFAULT '{{}}',
          authority_signature TEXT NOT NULL,
          root_span_id TEXT NOT NULL,
          lineage TEXT NOT NULL,
          idempotency_key TEXT,
          created_at TEXT NOT NULL
        )
        """,
        f"CREATE UNIQUE INDEX IF NOT EXISTS {idempotency_index_name(table)} ON {table} (idempotency_key) "
        "WHERE idempotency_key IS NOT NULL",
        f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table} (created_at)",
    ]
