from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

INTENT_ALIASES: tuple[str, ...] = ("intent_description", "intent", "scenario", "description")


def _blank_as_absent(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


IdempotencyKey = Annotated[str | None, BeforeValidator(_blank_as_absent)]


class AcceptExecutionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    caller_id: str = Field(min_length=1, max_length=255)
    org_id: str = Field(min_length=1, max_length=255)
    simulation_type: str = Field(min_length=1, max_length=100)
    simulation_context: dict[str, Any]
    idempotency_key: IdempotencyKey = Field(default=None, min_length=1, max_length=255)


class SimulationAcceptanceRequest(BaseModel):
    """Authority-mint variant: only the intent is mandatory."""

    intent_description: str = Field(min_length=1, max_length=2000)
    caller_id: str | None = Field(default=None, min_length=1, max_length=255)
    org_id: str | None = Field(default=None, min_length=1, max_length=255)
    simulation_type: str | None = Field(default=None, min_length=1, max_length=100)
    simulation_context: dict[str, Any] | None = None
    idempotency_key: IdempotencyKey = Field(default=None, min_length=1, max_length=255)

    @model_validator(mode="before")
    @classmethod
    def _normalize_intent_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized = {k: v for k, v in data.items() if k not in INTENT_ALIASES}
        for alias in INTENT_ALIASES:
            value = data.get(alias)
            if value is not None:
                normalized["intent_description"] = value
                break
        return normalized


class ValidateExecutionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    execution_id: str = Field(min_length=1)
    authority_signature: str = Field(min_length=1)


class IngestMetadata(BaseModel):
    source: str = Field(min_length=1)
    type: str = Field(min_length=1)
    version: str = Field(min_length=1)


class IngestRequest(BaseModel):
    eventId: str = Field(min_length=1)
    correlationId: str | None = None
    timestamp: str | None = None
    vector: list[float] = Field(min_length=1)
    payload: dict[str, Any]
    metadata: IngestMetadata


class QueryFilters(BaseModel):
    source: str | list[str] | None = None
    type: str | list[str] | None = None
    metadata: dict[str, Any] | None = None


class TimeRange(BaseModel):
    start: str
    end: str


class QueryRequest(BaseModel):
    queryVector: list[float] | None = None
    filters: QueryFilters | None = None
    timeRange: TimeRange | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class SimulateRequest(BaseModel):
    contextVectors: list[list[float]] = Field(min_length=1)
    nearestNeighbors: int = Field(default=10, ge=1, le=100)
    similarityThreshold: float = Field(default=0.0, ge=0, le=1)
    includeMetadata: bool = True
    includeVectors: bool = False


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    correlation_id: str,
    details: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "correlation_id": correlation_id,
        },
    }
