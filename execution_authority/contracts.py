from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator

from execution_authority.errors import ContractViolationError
from execution_authority.signing import is_valid_execution_id

ModelT = TypeVar("ModelT", bound=BaseModel)


def _require_uuid(value: str) -> str:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError) as exc:
        raise ValueError("must be a uuid") from exc
    return value


def _require_timestamp(value: str) -> str:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError("must be an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        raise ValueError("timestamp must carry a UTC offset")
    return value


UuidStr = Annotated[str, AfterValidator(_require_uuid)]
TimestampStr = Annotated[str, AfterValidator(_require_timestamp)]


class _Contract(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ExecutionRootSpan(_Contract):
    span_id: UuidStr
    type: Literal["execution_root"]
    parent_span_id: None
    created_at: TimestampStr


class AuthoritySpan(_Contract):
    span_id: UuidStr
    type: Literal["authority"]
    origin: str = Field(min_length=1)
    parent: None
    created_at: TimestampStr


class ExecutionLineageMetadata(_Contract):
    origin_service: str = Field(min_length=1)
    origin_version: str = Field(min_length=1)
    acceptance_timestamp: TimestampStr
    root_span: ExecutionRootSpan
    caller_id: str = Field(min_length=1)
    org_id: str = Field(min_length=1)
    simulation_context: dict[str, Any]


class LineageSeed(_Contract):
    origin_service: str = Field(min_length=1)
    origin_version: str = Field(min_length=1)
    acceptance_timestamp: TimestampStr
    root_span: AuthoritySpan
    intent_description: str = Field(min_length=1)
    caller_id: str | None = Field(default=None, min_length=1)
    org_id: str | None = Field(default=None, min_length=1)
    simulation_context: dict[str, Any] | None = None


class ExecutionRecord(_Contract):
    execution_id: str
    accepted: bool
    reason: str | None
    caller_id: str | None
    org_id: str | None
    simulation_type: str | None
    simulation_context: dict[str, Any]
    authority_signature: str = Field(min_length=1)
    root_span_id: UuidStr
    lineage: ExecutionLineageMetadata | LineageSeed
    idempotency_key: str | None
    created_at: TimestampStr

    @field_validator("execution_id")
    @classmethod
    def _execution_id_shape(cls, value: str) -> str:
        if not is_valid_execution_id(value):
            raise ValueError("execution_id must match exec-{uuid} format")
        return value


def _violations(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {
            "path": ".".join(str(part) for part in err.get("loc", ())),
            "message": str(err.get("msg", "")),
            "code": str(err.get("type", "")),
        }
        for err in exc.errors()
    ]


def validate_contract(model: type[ModelT], payload: Any) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ContractViolationError(
            message=f"{model.__name__} contract violation",
            violations=_violations(exc),
        ) from exc


def validate_span_integrity(span: dict[str, Any]) -> None:
    """Root spans carry an explicit null parent; child spans carry a parent id."""
    if not span.get("span_id"):
        raise ContractViolationError(
            message="span_id is required",
            violations=[{"path": "span_id", "message": "span_id is required", "code": "missing"}],
        )
    parent_key = "parent_span_id" if "parent_span_id" in span else "parent"
    if parent_key not in span or (span[parent_key] is not None and not span[parent_key]):
        raise ContractViolationError(
            message="parent_span_id must be explicitly set (null for root spans, uuid for child spans)",
            violations=[{"path": "parent_span_id", "message": "must be explicitly set", "code": "missing"}],
        )
    for key in ("root_span_id", "trace_id"):
        if key in span and not span[key]:
            raise ContractViolationError(
                message=f"{key} must not be empty when provided",
                violations=[{"path": key, "message": "must not be empty", "code": "empty"}],
            )
