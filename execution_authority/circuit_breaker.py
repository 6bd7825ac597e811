from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from execution_authority.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerPolicy:
    threshold: int
    open_timeout_s: float
    reset_timeout_s: float

    @classmethod
    def from_settings(cls, settings: Any) -> "BreakerPolicy":
        return cls(
            threshold=max(1, int(settings.breaker_threshold)),
            open_timeout_s=max(0.0, settings.breaker_timeout_ms / 1000.0),
            reset_timeout_s=max(0.0, settings.breaker_reset_ms / 1000.0),
        )


class CircuitBreaker:
    """Consecutive-failure breaker owned by a single backend client.

    OPEN moves to HALF_OPEN lazily on the first check after the cool-down.
    The trial call's outcome decides the next state.
    """

    def __init__(
        self,
        policy: BreakerPolicy,
        *,
        name: str = "ruvvector",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy
        self._name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def check(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == OPEN:
                if self._last_failure_at is not None and now - self._last_failure_at >= self._policy.open_timeout_s:
                    self._state = HALF_OPEN
                    self._trial_in_flight = True
                    logger.info("circuit_half_open name=%s", self._name)
                    return
                raise CircuitOpenError(f"circuit breaker is open: {self._name}")
            if self._state == HALF_OPEN and self._trial_in_flight:
                raise CircuitOpenError(f"circuit breaker trial in progress: {self._name}")
            if (
                self._state == CLOSED
                and self._failure_count > 0
                and self._last_failure_at is not None
                and now - self._last_failure_at >= self._policy.reset_timeout_s
            ):
                self._failure_count = 0

    def record_success(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            if self._state == HALF_OPEN:
                logger.info("circuit_closed name=%s", self._name)
            self._state = CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            self._failure_count += 1
            self._last_failure_at = self._clock()
            if self._state == HALF_OPEN or self._failure_count >= self._policy.threshold:
                if self._state != OPEN:
                    logger.warning(
                        "circuit_opened name=%s failures=%s",
                        self._name,
                        self._failure_count,
                    )
                self._state = OPEN

    def call(self, fn: Callable[[], T]) -> T:
        self.check()
        try:
            result = fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def is_open(self) -> bool:
        """Non-mutating view used by readiness probes."""
        with self._lock:
            if self._state != OPEN:
                return False
            if self._last_failure_at is None:
                return True
            return self._clock() - self._last_failure_at < self._policy.open_timeout_s

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state,
                "failure_count": self._failure_count,
                "threshold": self._policy.threshold,
                "open_timeout_s": self._policy.open_timeout_s,
                "last_failure_at": self._last_failure_at,
            }
