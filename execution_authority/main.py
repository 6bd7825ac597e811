from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import Mapping
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from execution_authority.acceptance import AcceptanceService
from execution_authority.config import Settings, configure_logging
from execution_authority.errors import ApiError
from execution_authority.repositories.executions import create_executions_repository
from execution_authority.routes import executions, health, simulations, vectors
from execution_authority.routes._deps import CORRELATION_HEADER, correlation_id_from_request, error_response
from execution_authority.startup import run_startup_assertions, verify_storage_health
from execution_authority.vector_client import VectorClient

logger = logging.getLogger(__name__)


def _incoming_correlation_id(request: Request) -> str:
    for header in (CORRELATION_HEADER, "x-request-id"):
        value = request.headers.get(header, "").strip()
        if value:
            return value
    return str(uuid.uuid4())


def _validation_details(exc: RequestValidationError) -> list[dict[str, str]]:
    details: list[dict[str, str]] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in {"body", "query", "path"}:
            loc = loc[1:]
        details.append({"path": ".".join(loc), "message": str(err.get("msg", ""))})
    return details


def create_app(
    settings: Settings | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    repository: Any = None,
    vector_client: VectorClient | None = None,
) -> FastAPI:
    env = os.environ if environ is None else environ
    cfg = settings or Settings.from_env(env)
    configure_logging(cfg.log_level)
    run_startup_assertions(cfg, env)

    ledger = repository if repository is not None else create_executions_repository(cfg)
    storage_health = verify_storage_health(ledger, cfg)

    app = FastAPI(title="Execution Authority API", version=cfg.service_version)
    app.state.settings = cfg
    app.state.storage_health = storage_health
    app.state.acceptance_service = AcceptanceService(
        repository=ledger,
        hmac_secret=cfg.hmac_secret,
        service_name=cfg.service_name,
        service_version=cfg.service_version,
    )
    app.state.vector_client = vector_client or VectorClient.from_settings(cfg)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        request.state.correlation_id = _incoming_correlation_id(request)
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "unhandled_error correlation_id=%s path=%s error=%s",
                request.state.correlation_id,
                request.url.path,
                type(exc).__name__,
            )
            response = error_response(
                request,
                code="internal_error",
                message="internal server error",
                error_class="internal",
                retryable=True,
                status_code=500,
            )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        if elapsed_ms > cfg.max_latency_ms:
            logger.warning(
                "latency_budget_exceeded correlation_id=%s path=%s duration_ms=%s budget_ms=%s status=%s",
                request.state.correlation_id,
                request.url.path,
                elapsed_ms,
                cfg.max_latency_ms,
                response.status_code,
            )
        response.headers[CORRELATION_HEADER] = request.state.correlation_id
        response.headers["x-latency-budget-ms"] = str(cfg.max_latency_ms)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error(
                "request_failed correlation_id=%s code=%s path=%s",
                correlation_id_from_request(request),
                exc.code,
                request.url.path,
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed correlation_id=%s path=%s fields=%s",
            correlation_id_from_request(request),
            request.url.path,
            ",".join(d["path"] for d in details),
        )
        return error_response(
            request,
            code="validation_error",
            message="Request validation failed",
            error_class="validation",
            retryable=False,
            status_code=400,
            details=details,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="not_found",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="validation_error" if exc.status_code < 500 else "internal_error",
            message=str(exc.detail),
            error_class="validation" if exc.status_code < 500 else "internal",
            retryable=exc.status_code >= 500,
            status_code=exc.status_code,
        )

    app.include_router(health.router)
    app.include_router(executions.router)
    app.include_router(simulations.router)
    app.include_router(vectors.router)
    return app
