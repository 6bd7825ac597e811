from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from execution_authority.routes._deps import vector_client
from execution_authority.signing import acceptance_timestamp

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {"status": "healthy", "timestamp": acceptance_timestamp()}


@router.get("/ready")
def ready(request: Request):
    client = vector_client(request)
    connected = client.ping()
    return JSONResponse(
        status_code=200 if connected else 503,
        content={
            "status": "ready" if connected else "not ready",
            "dependencies": {"ruvvector": "connected" if connected else "disconnected"},
            "circuit": client.breaker.snapshot(),
            "timestamp": acceptance_timestamp(),
        },
    )
