from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from execution_authority.contracts import (
    ExecutionLineageMetadata,
    ExecutionRecord,
    LineageSeed,
    validate_contract,
    validate_span_integrity,
)
from execution_authority.errors import (
    ApiError,
    IdempotencyConflict,
    LedgerIntegrityError,
    internal_error,
)
from execution_authority.schemas import AcceptExecutionRequest, SimulationAcceptanceRequest
from execution_authority.signing import (
    acceptance_timestamp,
    generate_root_span_id,
    is_valid_execution_id,
    mint_execution_id,
    sign_execution,
    verify_execution_signature,
)

logger = logging.getLogger(__name__)

REASON_NOT_FOUND = "execution_not_found"
REASON_SIGNATURE_MISMATCH = "signature_mismatch"

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 1000


@dataclass(frozen=True)
class AcceptOutcome:
    record: dict[str, Any]
    replayed: bool

    @property
    def execution_id(self) -> str:
        return str(self.record["execution_id"])


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    execution_id: str
    reason: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "execution_id": self.execution_id, "reason": self.reason}


def clamp_pagination(limit: int | None, offset: int | None) -> tuple[int, int]:
    bounded_limit = DEFAULT_LIST_LIMIT if limit is None else min(max(int(limit), 1), MAX_LIST_LIMIT)
    bounded_offset = 0 if offset is None else max(int(offset), 0)
    return bounded_limit, bounded_offset


class AcceptanceService:
    """Mint-or-replay acceptance and signature validation over the executions ledger.

    Accept fails closed: any storage error surfaces as ``internal_error`` and no
    execution id leaves the service unless its record was appended.
    """

    def __init__(
        self,
        *,
        repository: Any,
        hmac_secret: str,
        service_name: str,
        service_version: str,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._secret = hmac_secret
        self._service_name = service_name
        self._service_version = service_version
        self._now = now

    @property
    def service_name(self) -> str:
        return self._service_name

    def _timestamp(self) -> str:
        return acceptance_timestamp(self._now() if self._now is not None else None)

    def find_replay(self, idempotency_key: str | None, *, correlation_id: str) -> AcceptOutcome | None:
        if idempotency_key is None:
            return None
        try:
            existing = self._repository.get_by_idempotency_key(idempotency_key=idempotency_key)
        except Exception as exc:
            logger.error(
                "execution_replay_lookup_failed correlation_id=%s error=%s",
                correlation_id,
                type(exc).__name__,
            )
            raise internal_error("execution acceptance failed") from exc
        if existing is None:
            return None
        logger.info(
            "execution_replayed correlation_id=%s execution_id=%s",
            correlation_id,
            existing["execution_id"],
        )
        return AcceptOutcome(record=existing, replayed=True)

    def accept_execution(self, request: AcceptExecutionRequest, *, correlation_id: str) -> AcceptOutcome:
        replay = self.find_replay(request.idempotency_key, correlation_id=correlation_id)
        if replay is not None:
            return replay

        def _lineage(root_span_id: str, created_at: str) -> dict[str, Any]:
            lineage = {
                "origin_service": self._service_name,
                "origin_version": self._service_version,
                "acceptance_timestamp": created_at,
                "root_span": {
                    "span_id": root_span_id,
                    "type": "execution_root",
                    "parent_span_id": None,
                    "created_at": created_at,
                },
                "caller_id": request.caller_id,
                "org_id": request.org_id,
                "simulation_context": dict(request.simulation_context),
            }
            validate_contract(ExecutionLineageMetadata, lineage)
            return lineage

        return self._mint_and_append(
            caller_id=request.caller_id,
            org_id=request.org_id,
            simulation_type=request.simulation_type,
            simulation_context=dict(request.simulation_context),
            idempotency_key=request.idempotency_key,
            build_lineage=_lineage,
            correlation_id=correlation_id,
        )

    def accept_intent(self, request: SimulationAcceptanceRequest, *, correlation_id: str) -> AcceptOutcome:
        replay = self.find_replay(request.idempotency_key, correlation_id=correlation_id)
        if replay is not None:
            return replay

        context = dict(request.simulation_context or {})
        context["intent_description"] = request.intent_description

        def _lineage(root_span_id: str, created_at: str) -> dict[str, Any]:
            seed: dict[str, Any] = {
                "origin_service": self._service_name,
                "origin_version": self._service_version,
                "acceptance_timestamp": created_at,
                "root_span": {
                    "span_id": root_span_id,
                    "type": "authority",
                    "origin": self._service_name,
                    "parent": None,
                    "created_at": created_at,
                },
                "intent_description": request.intent_description,
                "simulation_context": context,
            }
            if request.caller_id is not None:
                seed["caller_id"] = request.caller_id
            if request.org_id is not None:
                seed["org_id"] = request.org_id
            validate_contract(LineageSeed, seed)
            return seed

        return self._mint_and_append(
            caller_id=request.caller_id,
            org_id=request.org_id,
            simulation_type=request.simulation_type,
            simulation_context=context,
            idempotency_key=request.idempotency_key,
            build_lineage=_lineage,
            correlation_id=correlation_id,
        )

    def _mint_and_append(
        self,
        *,
        caller_id: str | None,
        org_id: str | None,
        simulation_type: str | None,
        simulation_context: dict[str, Any],
        idempotency_key: str | None,
        build_lineage: Callable[[str, str], dict[str, Any]],
        correlation_id: str,
    ) -> AcceptOutcome:
        execution_id = mint_execution_id()
        root_span_id = generate_root_span_id()
        created_at = self._timestamp()
        lineage = build_lineage(root_span_id, created_at)
        validate_span_integrity(lineage["root_span"])
        record = {
            "execution_id": execution_id,
            "accepted": True,
            "reason": None,
            "caller_id": caller_id,
            "org_id": org_id,
            "simulation_type": simulation_type,
            "simulation_context": simulation_context,
            "authority_signature": sign_execution(execution_id, created_at, self._secret),
            "root_span_id": root_span_id,
            "lineage": lineage,
            "idempotency_key": idempotency_key,
            "created_at": created_at,
        }
        try:
            self._repository.append(record=record)
        except IdempotencyConflict:
            return self._resolve_race(idempotency_key, correlation_id=correlation_id)
        except Exception as exc:
            logger.error(
                "execution_persist_failed correlation_id=%s error=%s",
                correlation_id,
                type(exc).__name__,
            )
            raise internal_error("execution acceptance failed") from exc
        logger.info(
            "execution_accepted correlation_id=%s execution_id=%s root_span_id=%s caller_id=%s org_id=%s",
            correlation_id,
            execution_id,
            root_span_id,
            caller_id,
            org_id,
        )
        return AcceptOutcome(record=record, replayed=False)

    def _resolve_race(self, idempotency_key: str | None, *, correlation_id: str) -> AcceptOutcome:
        logger.info(
            "execution_idempotency_race correlation_id=%s idempotency_key=%s",
            correlation_id,
            idempotency_key,
        )
        winner = self.find_replay(idempotency_key, correlation_id=correlation_id)
        if winner is None:
            logger.error(
                "execution_idempotency_race_unresolved correlation_id=%s idempotency_key=%s",
                correlation_id,
                idempotency_key,
            )
            raise internal_error("execution acceptance failed")
        return winner

    def audit_record(self, record: dict[str, Any]) -> None:
        """Raise LedgerIntegrityError when a stored record no longer matches its own signature."""
        if not verify_execution_signature(
            str(record["execution_id"]),
            str(record["created_at"]),
            record.get("authority_signature"),
            self._secret,
        ):
            logger.error("ledger_integrity_violation execution_id=%s", record.get("execution_id"))
            raise LedgerIntegrityError(f"stored signature does not verify: {record['execution_id']}")
        validate_contract(ExecutionRecord, record)

    def validate(self, *, execution_id: str, signature: str, correlation_id: str) -> ValidationOutcome:
        if not is_valid_execution_id(execution_id):
            return ValidationOutcome(valid=False, execution_id=execution_id, reason=REASON_NOT_FOUND)
        record = self._lookup(execution_id, correlation_id=correlation_id)
        if record is None:
            logger.info(
                "execution_validate_not_found correlation_id=%s execution_id=%s",
                correlation_id,
                execution_id,
            )
            return ValidationOutcome(valid=False, execution_id=execution_id, reason=REASON_NOT_FOUND)
        try:
            self.audit_record(record)
        except (LedgerIntegrityError, ApiError) as exc:
            raise internal_error("execution record failed integrity check") from exc
        valid = verify_execution_signature(execution_id, str(record["created_at"]), signature, self._secret)
        logger.info(
            "execution_validated correlation_id=%s execution_id=%s valid=%s",
            correlation_id,
            execution_id,
            valid,
        )
        if not valid:
            return ValidationOutcome(valid=False, execution_id=execution_id, reason=REASON_SIGNATURE_MISMATCH)
        return ValidationOutcome(valid=True, execution_id=execution_id, reason=None)

    def _lookup(self, execution_id: str, *, correlation_id: str) -> dict[str, Any] | None:
        try:
            return self._repository.get(execution_id=execution_id)
        except Exception as exc:
            logger.error(
                "execution_lookup_failed correlation_id=%s execution_id=%s error=%s",
                correlation_id,
                execution_id,
                type(exc).__name__,
            )
            raise internal_error("execution lookup failed") from exc

    def get(self, *, execution_id: str, correlation_id: str) -> dict[str, Any] | None:
        return self._lookup(execution_id, correlation_id=correlation_id)

    def list(
        self,
        *,
        caller_id: str | None,
        org_id: str | None,
        status: str | None,
        limit: int | None,
        offset: int | None,
        correlation_id: str,
    ) -> dict[str, Any]:
        bounded_limit, bounded_offset = clamp_pagination(limit, offset)
        try:
            rows, total = self._repository.list(
                caller_id=caller_id,
                org_id=org_id,
                status=status,
                limit=bounded_limit,
                offset=bounded_offset,
            )
        except Exception as exc:
            logger.error("execution_list_failed correlation_id=%s error=%s", correlation_id, type(exc).__name__)
            raise internal_error("execution listing failed") from exc
        return {"data": rows, "total": total, "limit": bounded_limit, "offset": bounded_offset}
