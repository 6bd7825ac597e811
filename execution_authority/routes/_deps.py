from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from execution_authority.acceptance import AcceptanceService
from execution_authority.errors import CircuitOpenError, UpstreamError, service_unavailable, upstream_error
from execution_authority.schemas import error_envelope
from execution_authority.vector_client import VectorClient

CORRELATION_HEADER = "x-correlation-id"


def correlation_id_from_request(request: Request) -> str:
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        return correlation_id
    return str(uuid.uuid4())


def acceptance_service(request: Request) -> AcceptanceService:
    return request.app.state.acceptance_service


def vector_client(request: Request) -> VectorClient:
    return request.app.state.vector_client


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: Any = None,
) -> JSONResponse:
    correlation_id = correlation_id_from_request(request)
    response = JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            correlation_id=correlation_id,
            details=details,
        ),
    )
    response.headers[CORRELATION_HEADER] = correlation_id
    return response


def call_vector_backend(fn, *, operation: str) -> Any:
    try:
        return fn()
    except CircuitOpenError as exc:
        raise service_unavailable("Service temporarily unavailable") from exc
    except UpstreamError as exc:
        raise upstream_error(f"Upstream service error during {operation}") from exc
