from __future__ import annotations

import http.client
import json
import logging
import time
from collections.abc import Callable
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError

from jsonschema import ValidationError, validate

from execution_authority.circuit_breaker import BreakerPolicy, CircuitBreaker
from execution_authority.errors import CircuitOpenError, UpstreamError

logger = logging.getLogger(__name__)

Transport = Callable[[str, str, "dict[str, Any] | None", float], object]

INSERT_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "properties": {"id": {"type": "string", "minLength": 1}},
}

_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "payload"],
    "properties": {
        "id": {"type": "string"},
        "score": {"type": ["number", "null"]},
        "vector": {"type": ["array", "null"], "items": {"type": "number"}},
        "payload": {"type": "object"},
        "metadata": {"type": ["object", "null"]},
        "timestamp": {"type": "string"},
    },
}

QUERY_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["items", "total"],
    "properties": {
        "items": {"type": "array", "items": _ITEM_SCHEMA},
        "total": {"type": "integer", "minimum": 0},
    },
}

SIMILARITY_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["neighbors", "processed"],
    "properties": {
        "neighbors": {"type": "array", "items": _ITEM_SCHEMA},
        "processed": {"type": "integer", "minimum": 0},
    },
}


def _http_json(method: str, url: str, payload: dict[str, Any] | None, timeout_s: float) -> object:
    body = None
    headers = {"Accept": "application/json"}
    if payload is not None:
        body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
        headers["Content-Type"] = "application/json"
    req = request.Request(url, data=body, method=method, headers=headers)
    with request.urlopen(req, timeout=timeout_s) as resp:
        raw = resp.read().decode("utf-8")
    if not raw.strip():
        return {}
    return json.loads(raw)


class VectorClient:
    """JSON-over-HTTP client for the vector backend, guarded by its own breaker."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float,
        breaker: CircuitBreaker,
        transport: Transport | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url must not be empty")
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_s = timeout_s
        self._breaker = breaker
        self._transport = transport or _http_json

    @classmethod
    def from_settings(cls, settings: Any, *, transport: Transport | None = None) -> "VectorClient":
        return cls(
            base_url=settings.vector_service_url,
            timeout_s=settings.vector_timeout_s,
            breaker=CircuitBreaker(BreakerPolicy.from_settings(settings)),
            transport=transport,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def connection_info(self) -> dict[str, Any]:
        return {"base_url": self._base_url, "timeout_s": self._timeout_s}

    def _request(
        self,
        *,
        operation: str,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
        output_schema: dict[str, Any] | None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"

        def _do() -> dict[str, Any]:
            started = time.monotonic()
            try:
                result = self._transport(method, url, payload, self._timeout_s)
            except HTTPError as exc:
                raise UpstreamError(f"{operation} failed: http {exc.code}") from exc
            except (TimeoutError, URLError, OSError, ValueError, http.client.HTTPException) as exc:
                raise UpstreamError(f"{operation} failed: {type(exc).__name__}") from exc
            if not isinstance(result, dict):
                raise UpstreamError(f"{operation} returned {type(result).__name__}, expected object")
            if output_schema is not None:
                try:
                    validate(instance=result, schema=output_schema)
                except ValidationError as exc:
                    raise UpstreamError(f"{operation} response invalid: {exc.message}") from exc
            logger.debug(
                "vector_call_ok operation=%s latency_ms=%s",
                operation,
                int((time.monotonic() - started) * 1000),
            )
            return result

        try:
            return self._breaker.call(_do)
        except CircuitOpenError:
            logger.warning("vector_call_rejected operation=%s reason=circuit_open", operation)
            raise
        except UpstreamError as exc:
            logger.error("vector_call_failed operation=%s error=%s", operation, exc)
            raise

    def insert(
        self,
        *,
        vector_id: str,
        vector: list[float],
        payload: dict[str, Any],
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        return self._request(
            operation="insert",
            method="POST",
            path="/vectors",
            payload={"id": vector_id, "vector": vector, "payload": payload, "metadata": metadata},
            output_schema=INSERT_OUTPUT_SCHEMA,
        )

    def query(
        self,
        *,
        vector: list[float] | None,
        filters: dict[str, Any] | None,
        time_range: dict[str, Any] | None,
        limit: int,
        offset: int,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"limit": limit, "offset": offset}
        if vector is not None:
            body["vector"] = vector
        if filters:
            body["filters"] = filters
        if time_range:
            body["timeRange"] = time_range
        return self._request(
            operation="query",
            method="POST",
            path="/vectors/query",
            payload=body,
            output_schema=QUERY_OUTPUT_SCHEMA,
        )

    def similarity(
        self,
        *,
        context_vectors: list[list[float]],
        k: int,
        threshold: float,
        include_metadata: bool,
    ) -> dict[str, Any]:
        return self._request(
            operation="similarity",
            method="POST",
            path="/vectors/similarity",
            payload={
                "contextVectors": context_vectors,
                "k": k,
                "threshold": threshold,
                "includeMetadata": include_metadata,
            },
            output_schema=SIMILARITY_OUTPUT_SCHEMA,
        )

    def ping(self) -> bool:
        """Soft health check: never raises, an open breaker reads as disconnected."""
        if self._breaker.is_open():
            return False
        try:
            self._request(operation="ping", method="GET", path="/health", payload=None, output_schema=None)
        except (CircuitOpenError, UpstreamError):
            return False
        except Exception as exc:
            logger.error("vector_ping_failed error=%s", type(exc).__name__)
            return False
        return True
