from __future__ import annotations

from fastapi import APIRouter, Request

from execution_authority.routes._deps import acceptance_service, correlation_id_from_request
from execution_authority.schemas import SimulationAcceptanceRequest

router = APIRouter(prefix="/v1", tags=["simulations"])


@router.post("/simulations")
def accept_simulation(payload: SimulationAcceptanceRequest, request: Request):
    service = acceptance_service(request)
    outcome = service.accept_intent(payload, correlation_id=correlation_id_from_request(request))
    record = outcome.record
    return {
        "execution_id": record["execution_id"],
        "accepted": record["accepted"],
        "authority_signature": record["authority_signature"],
        "lineage": record["lineage"],
        "created_at": record["created_at"],
        "parent_span_id": record["root_span_id"],
        "authority": service.service_name,
    }
