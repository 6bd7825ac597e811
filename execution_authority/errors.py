from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class ContractViolationError(ApiError):
    def __init__(self, *, message: str, violations: list[dict[str, str]]) -> None:
        super().__init__(
            code="contract_violation",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details=violations,
        )
        self.violations = violations


def not_found(message: str) -> ApiError:
    return ApiError(
        code="not_found",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def internal_error(message: str = "internal server error") -> ApiError:
    return ApiError(
        code="internal_error",
        message=message,
        error_class="internal",
        retryable=True,
        http_status=500,
    )


def service_unavailable(message: str) -> ApiError:
    return ApiError(
        code="service_unavailable",
        message=message,
        error_class="availability",
        retryable=True,
        http_status=503,
    )


def upstream_error(message: str) -> ApiError:
    return ApiError(
        code="upstream_error",
        message=message,
        error_class="availability",
        retryable=True,
        http_status=502,
    )


class IdempotencyConflict(RuntimeError):
    """Insert lost a race on the unique idempotency key."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"idempotency key already recorded: {idempotency_key}")
        self.idempotency_key = idempotency_key


class LedgerUnavailableError(RuntimeError):
    pass


class LedgerIntegrityError(RuntimeError):
    pass


class ImmutabilityViolation(RuntimeError):
    def __init__(self, *, table: str, operation: str) -> None:
        super().__init__(f"{operation} is not permitted on append-only table {table}")
        self.table = table
        self.operation = operation


class CircuitOpenError(RuntimeError):
    pass


class UpstreamError(RuntimeError):
    pass


class StartupAssertionError(RuntimeError):
    def __init__(self, failures: list[str]) -> None:
        super().__init__("startup assertions failed: " + "; ".join(failures))
        self.failures = failures
