from __future__ import annotations

import logging
import time
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from execution_authority.routes._deps import call_vector_backend, correlation_id_from_request, vector_client
from execution_authority.schemas import IngestRequest, QueryRequest, SimulateRequest
from execution_authority.signing import acceptance_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["vectors"])


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@router.post("/ingest")
def ingest(payload: IngestRequest, request: Request):
    started = time.monotonic()
    correlation_id = correlation_id_from_request(request)
    vector_id = str(uuid.uuid4())
    result = call_vector_backend(
        lambda: vector_client(request).insert(
            vector_id=vector_id,
            vector=payload.vector,
            payload={"eventId": payload.eventId, **payload.payload},
            metadata=payload.metadata.model_dump(),
        ),
        operation="ingest",
    )
    logger.info(
        "vector_ingested correlation_id=%s event_id=%s vector_id=%s",
        correlation_id,
        payload.eventId,
        result["id"],
    )
    return JSONResponse(
        status_code=201,
        content={
            "eventId": payload.eventId,
            "vectorId": result["id"],
            "status": "stored",
            "timestamp": acceptance_timestamp(),
            "metadata": {"correlationId": correlation_id, "processingTime": _elapsed_ms(started)},
        },
    )


@router.post("/query")
def query(payload: QueryRequest, request: Request):
    started = time.monotonic()
    correlation_id = correlation_id_from_request(request)
    result = call_vector_backend(
        lambda: vector_client(request).query(
            vector=payload.queryVector,
            filters=payload.filters.model_dump(exclude_none=True) if payload.filters else None,
            time_range=payload.timeRange.model_dump() if payload.timeRange else None,
            limit=payload.limit,
            offset=payload.offset,
        ),
        operation="query",
    )
    results = [
        {
            "eventId": item["id"],
            "similarity": item.get("score") if payload.queryVector is not None else None,
            "timestamp": item.get("timestamp", ""),
            "payload": item["payload"],
            "metadata": item.get("metadata") or {},
        }
        for item in result["items"]
    ]
    total = int(result["total"])
    return {
        "results": results,
        "pagination": {
            "total": total,
            "limit": payload.limit,
            "offset": payload.offset,
            "hasMore": payload.offset + len(results) < total,
        },
        "metadata": {"correlationId": correlation_id, "queryTime": _elapsed_ms(started)},
    }


@router.post("/simulate")
def simulate(payload: SimulateRequest, request: Request):
    started = time.monotonic()
    correlation_id = correlation_id_from_request(request)
    result = call_vector_backend(
        lambda: vector_client(request).similarity(
            context_vectors=payload.contextVectors,
            k=payload.nearestNeighbors,
            threshold=payload.similarityThreshold,
            include_metadata=payload.includeMetadata,
        ),
        operation="simulate",
    )
    neighbors = []
    for neighbor in result["neighbors"]:
        entry = {"eventId": neighbor["id"], "similarity": neighbor.get("score"), "payload": neighbor["payload"]}
        if payload.includeVectors:
            entry["vector"] = neighbor.get("vector")
        if payload.includeMetadata:
            entry["metadata"] = neighbor.get("metadata")
        neighbors.append(entry)
    return {
        "results": [
            {"contextIndex": index, "neighbors": neighbors}
            for index in range(len(payload.contextVectors))
        ],
        "execution": {
            "vectorsProcessed": int(result["processed"]),
            "executionTime": _elapsed_ms(started),
            "correlationId": correlation_id,
        },
    }
