from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

DEV_HMAC_SECRET = "dev-only-execution-hmac-secret-change-me"


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _vector_service_url(env: Mapping[str, str]) -> str:
    explicit = env.get("RUVVECTOR_SERVICE_URL", "").strip()
    if explicit:
        return explicit.rstrip("/")
    host = env.get("RUVVECTOR_HOST", "localhost").strip() or "localhost"
    port = env.get("RUVVECTOR_PORT", "6379").strip() or "6379"
    return f"http://{host}:{port}"


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    service_name: str
    service_version: str
    hmac_secret: str
    hmac_secret_configured: bool
    ledger_backend: str
    ledger_sqlite_path: str
    postgres_dsn: str
    vector_service_url: str
    vector_timeout_ms: int
    breaker_threshold: int
    breaker_timeout_ms: int
    breaker_reset_ms: int
    max_latency_ms: int
    strict_startup: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def vector_timeout_s(self) -> float:
        return max(0.001, self.vector_timeout_ms / 1000.0)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        secret = env.get("EXECUTION_HMAC_SECRET", "").strip()
        return cls(
            app_env=env.get("APP_ENV", "development").strip().lower() or "development",
            log_level=env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            service_name=env.get("SERVICE_NAME", "ruvvector-service").strip() or "ruvvector-service",
            service_version=env.get("SERVICE_VERSION", "1.0.0").strip() or "1.0.0",
            hmac_secret=secret or DEV_HMAC_SECRET,
            hmac_secret_configured=bool(secret),
            ledger_backend=env.get("LEDGER_BACKEND", "memory").strip().lower() or "memory",
            ledger_sqlite_path=env.get("LEDGER_SQLITE_PATH", ".local/ledger.sqlite3"),
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            vector_service_url=_vector_service_url(env),
            vector_timeout_ms=_env_int(env, "RUVVECTOR_TIMEOUT", 30000),
            breaker_threshold=_env_int(env, "CIRCUIT_BREAKER_THRESHOLD", 5),
            breaker_timeout_ms=_env_int(env, "CIRCUIT_BREAKER_TIMEOUT", 30000),
            breaker_reset_ms=_env_int(env, "CIRCUIT_BREAKER_RESET", 60000),
            max_latency_ms=_env_int(env, "MAX_LATENCY_MS", 2000),
            strict_startup=strict_startup_required(env),
        )


def strict_startup_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    if env.get("APP_ENV", "").strip().lower() == "production":
        return True
    return _as_bool(env.get("EXECUTION_STRICT_STARTUP", "false"))


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not any(getattr(h, "_execution_authority", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        handler._execution_authority = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
