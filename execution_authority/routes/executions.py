from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from execution_authority.errors import not_found
from execution_authority.routes._deps import acceptance_service, correlation_id_from_request
from execution_authority.schemas import AcceptExecutionRequest, ValidateExecutionRequest

router = APIRouter(prefix="/v1/executions", tags=["executions"])


def _accept_response(record: dict) -> dict:
    return {
        "execution_id": record["execution_id"],
        "accepted": record["accepted"],
        "reason": record.get("reason"),
        "authority_signature": record["authority_signature"],
        "lineage": record["lineage"],
        "created_at": record["created_at"],
    }


@router.post("/accept")
def accept_execution(payload: AcceptExecutionRequest, request: Request):
    outcome = acceptance_service(request).accept_execution(
        payload,
        correlation_id=correlation_id_from_request(request),
    )
    return JSONResponse(
        status_code=200 if outcome.replayed else 201,
        content=_accept_response(outcome.record),
    )


@router.post("/validate")
def validate_execution(payload: ValidateExecutionRequest, request: Request):
    outcome = acceptance_service(request).validate(
        execution_id=payload.execution_id,
        signature=payload.authority_signature,
        correlation_id=correlation_id_from_request(request),
    )
    return outcome.to_dict()


@router.get("")
def list_executions(
    request: Request,
    caller_id: str | None = None,
    org_id: str | None = None,
    status: str | None = None,
    limit: str | None = Query(default=None),
    offset: str | None = Query(default=None),
):
    return acceptance_service(request).list(
        caller_id=caller_id,
        org_id=org_id,
        status=status,
        limit=_as_int(limit),
        offset=_as_int(offset),
        correlation_id=correlation_id_from_request(request),
    )


@router.get("/{execution_id}")
def get_execution(execution_id: str, request: Request):
    record = acceptance_service(request).get(
        execution_id=execution_id,
        correlation_id=correlation_id_from_request(request),
    )
    if record is None:
        raise not_found(f"execution not found: {execution_id}")
    return record


def _as_int(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None
