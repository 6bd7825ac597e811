from __future__ import annotations

import threading

import pytest

from execution_authority.circuit_breaker import CLOSED, HALF_OPEN, OPEN, BreakerPolicy, CircuitBreaker
from execution_authority.config import Settings
from execution_authority.errors import CircuitOpenError, UpstreamError


def _raise(exc: Exception):
    raise exc


def _breaker(clock, *, threshold: int = 5) -> CircuitBreaker:
    return CircuitBreaker(
        BreakerPolicy(threshold=threshold, open_timeout_s=30.0, reset_timeout_s=60.0),
        clock=clock,
    )


def test_threshold_five_opens_rejects_then_half_open_success_closes(clock):
    breaker = _breaker(clock, threshold=5)
    attempts: list[int] = []

    def failing():
        attempts.append(1)
        raise UpstreamError("backend down")

    for _ in range(5):
        with pytest.raises(UpstreamError):
            breaker.call(failing)
    assert breaker.state == OPEN
    assert len(attempts) == 5

    clock.advance(10)
    with pytest.raises(CircuitOpenError):
        breaker.call(failing)
    assert len(attempts) == 5

    clock.advance(20)
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state == CLOSED
    assert breaker.failure_count == 0


def test_half_open_failure_reopens_and_restarts_cool_down(clock):
    breaker = _breaker(clock, threshold=2)
    for _ in range(2):
        breaker.record_failure()
    assert breaker.state == OPEN

    clock.advance(31)
    with pytest.raises(UpstreamError):
        breaker.call(lambda: _raise(UpstreamError("still down")))
    assert breaker.state == OPEN

    clock.advance(29)
    with pytest.raises(CircuitOpenError):
        breaker.check()
    clock.advance(1)
    breaker.check()
    assert breaker.state == HALF_OPEN


def test_half_open_admits_exactly_one_trial(clock):
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()
    clock.advance(30)

    breaker.check()
    assert breaker.state == HALF_OPEN
    with pytest.raises(CircuitOpenError):
        breaker.check()

    breaker.record_success()
    assert breaker.state == CLOSED
    breaker.check()


def test_success_in_closed_resets_consecutive_failures(clock):
    breaker = _breaker(clock, threshold=3)
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == CLOSED
    assert breaker.failure_count == 2


def test_stale_failures_are_cleared_after_reset_timeout(clock):
    breaker = _breaker(clock, threshold=3)
    breaker.record_failure()
    breaker.record_failure()
    clock.advance(61)
    with pytest.raises(UpstreamError):
        breaker.call(lambda: _raise(UpstreamError("blip")))
    assert breaker.state == CLOSED
    assert breaker.failure_count == 1


def test_is_open_does_not_transition_state(clock):
    breaker = _breaker(clock, threshold=1)
    breaker.record_failure()
    assert breaker.is_open() is True
    clock.advance(30)
    assert breaker.is_open() is False
    assert breaker.state == OPEN


def test_snapshot_reports_policy_and_counters(clock):
    breaker = _breaker(clock, threshold=4)
    breaker.record_failure()
    snap = breaker.snapshot()
    assert snap["state"] == CLOSED
    assert snap["failure_count"] == 1
    assert snap["threshold"] == 4
    assert snap["open_timeout_s"] == 30.0
    assert snap["last_failure_at"] == clock.now


def test_concurrent_failures_leave_breaker_in_a_defined_state(clock):
    breaker = _breaker(clock, threshold=5)

    def worker():
        for _ in range(50):
            try:
                breaker.call(lambda: _raise(UpstreamError("x")))
            except (UpstreamError, CircuitOpenError):
                pass

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert breaker.state == OPEN


def test_policy_from_settings_converts_milliseconds():
    settings = Settings.from_env(
        {"CIRCUIT_BREAKER_THRESHOLD": "7", "CIRCUIT_BREAKER_TIMEOUT": "1500", "CIRCUIT_BREAKER_RESET": "90000"}
    )
    policy = BreakerPolicy.from_settings(settings)
    assert policy.threshold == 7
    assert policy.open_timeout_s == 1.5
    assert policy.reset_timeout_s == 90.0
