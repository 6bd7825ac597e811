from __future__ import annotations

import hashlib
import hmac
import re
import uuid
from datetime import datetime, timezone

EXECUTION_ID_PREFIX = "exec-"

_EXECUTION_ID_RE = re.compile(r"^exec-(?i:[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$")
_HEX_RE = re.compile(r"^[0-9a-f]+$")


def mint_execution_id() -> str:
    return f"{EXECUTION_ID_PREFIX}{uuid.uuid4()}"


def is_valid_execution_id(value: object) -> bool:
    return isinstance(value, str) and bool(_EXECUTION_ID_RE.match(value))


def generate_root_span_id() -> str:
    return str(uuid.uuid4())


def acceptance_timestamp(now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    current = current.astimezone(timezone.utc)
    return current.strftime("%Y-%m-%dT%H:%M:%S.") + f"{current.microsecond // 1000:03d}Z"


def sign_execution(execution_id: str, timestamp: str, secret: str) -> str:
    """HMAC-SHA256 over ``execution_id:timestamp``, hex encoded."""
    message = f"{execution_id}:{timestamp}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_execution_signature(
    execution_id: str,
    timestamp: str,
    signature: object,
    secret: str,
) -> bool:
    if not isinstance(signature, str):
        return False
    expected = sign_execution(execution_id, timestamp, secret)
    if len(signature) != len(expected):
        return False
    if not _HEX_RE.match(signature):
        return False
    return hmac.compare_digest(signature, expected)
