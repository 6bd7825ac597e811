from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from execution_authority.config import Settings
from execution_authority.errors import StartupAssertionError

logger = logging.getLogger(__name__)

MIN_PRODUCTION_SECRET_LENGTH = 32
LATENCY_WARN_THRESHOLD_MS = 10000


@dataclass
class StorageHealthResult:
    healthy: bool
    connected: bool
    ping_ms: int
    table_present: bool
    idempotency_constraint: bool
    problems: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "database": {"connected": self.connected, "ping_ms": self.ping_ms},
            "tables": {"verified": self.table_present},
            "append_only_constraints": self.idempotency_constraint,
            "problems": list(self.problems),
        }


def required_env_vars(settings: Settings) -> list[str]:
    names = ["EXECUTION_HMAC_SECRET"]
    if settings.ledger_backend == "postgres":
        names.append("POSTGRES_DSN")
    return names


def run_startup_assertions(settings: Settings, environ: Mapping[str, str]) -> list[str]:
    """Check env and signing configuration; returns warnings, raises when strict startup fails."""
    failures: list[str] = []
    warnings: list[str] = []

    missing = [name for name in required_env_vars(settings) if not str(environ.get(name, "")).strip()]
    if missing:
        failures.append(f"required environment variables missing: {', '.join(missing)}")

    if settings.max_latency_ms <= 0:
        failures.append(f"MAX_LATENCY_MS must be a positive integer, got: {settings.max_latency_ms}")
    elif settings.max_latency_ms > LATENCY_WARN_THRESHOLD_MS:
        warnings.append(f"MAX_LATENCY_MS is very high ({settings.max_latency_ms}ms)")

    if settings.breaker_threshold < 1:
        failures.append(f"CIRCUIT_BREAKER_THRESHOLD must be >= 1, got: {settings.breaker_threshold}")

    if settings.strict_startup and (
        not settings.hmac_secret_configured or len(settings.hmac_secret) < MIN_PRODUCTION_SECRET_LENGTH
    ):
        failures.append(f"EXECUTION_HMAC_SECRET must be at least {MIN_PRODUCTION_SECRET_LENGTH} characters")
    elif not settings.hmac_secret_configured:
        warnings.append("EXECUTION_HMAC_SECRET not set, using development signing key")

    for warning in warnings:
        logger.warning("startup_assertion_warning detail=%s", warning)

    if failures:
        for failure in failures:
            logger.error("startup_assertion_failed detail=%s strict=%s", failure, settings.strict_startup)
        if settings.strict_startup or settings.max_latency_ms <= 0:
            raise StartupAssertionError(failures)
        warnings.extend(failures)

    logger.info(
        "startup_assertions_complete app_env=%s ledger_backend=%s hmac_secret_configured=%s",
        settings.app_env,
        settings.ledger_backend,
        settings.hmac_secret_configured,
    )
    return warnings


def verify_storage_health(repository: Any, settings: Settings) -> StorageHealthResult:
    """Bootstrap the ledger schema, then check connectivity, table and idempotency constraint."""
    problems: list[str] = []
    try:
        repository.ensure_schema()
    except Exception as exc:
        logger.error("ledger_schema_bootstrap_failed error=%s", type(exc).__name__)
        problems.append("schema bootstrap failed")
    started = time.monotonic()
    try:
        connected = bool(repository.ping())
    except Exception as exc:
        logger.error("ledger_ping_failed error=%s", type(exc).__name__)
        connected = False
    ping_ms = int((time.monotonic() - started) * 1000) if connected else -1
    table_present = False
    idempotency_constraint = False
    if not connected:
        problems.append("database connection failed")
    else:
        try:
            table_present = bool(repository.table_exists())
            idempotency_constraint = table_present and bool(repository.has_idempotency_constraint())
        except Exception as exc:
            logger.error("storage_health_query_failed error=%s", type(exc).__name__)
            problems.append("storage verification query failed")
        else:
            if not table_present:
                problems.append("missing table: executions")
            elif not idempotency_constraint:
                problems.append("missing unique constraint on executions.idempotency_key")

    result = StorageHealthResult(
        healthy=not problems,
        connected=connected,
        ping_ms=ping_ms,
        table_present=table_present,
        idempotency_constraint=idempotency_constraint,
        problems=problems,
    )
    logger.info(
        "storage_health_verified healthy=%s connected=%s ping_ms=%s table=%s idempotency_constraint=%s",
        result.healthy,
        connected,
        ping_ms,
        table_present,
        idempotency_constraint,
    )
    if not result.healthy:
        if settings.strict_startup:
            raise StartupAssertionError(problems)
        logger.warning("storage_health_degraded problems=%s", "; ".join(problems))
    return result
