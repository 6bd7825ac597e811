import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from execution_authority.circuit_breaker import BreakerPolicy, CircuitBreaker
from execution_authority.main import create_app
from execution_authority.repositories.executions import InMemoryExecutionsRepository
from execution_authority.vector_client import VectorClient

TEST_SECRET = "test-execution-hmac-secret-0123456789abcdef"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVectorTransport:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict | None]] = []
        self.fail_with: Exception | None = None
        self.responses: dict[str, object] = {
            "/vectors": {"id": "vec_1"},
            "/vectors/query": {"items": [], "total": 0},
            "/vectors/similarity": {"neighbors": [], "processed": 1},
            "/health": {"status": "ok"},
        }

    def __call__(self, method: str, url: str, payload: dict | None, timeout_s: float) -> object:
        self.calls.append((method, url, payload))
        if self.fail_with is not None:
            raise self.fail_with
        for suffix, response in self.responses.items():
            if url.endswith(suffix):
                return response
        return {}


@pytest.fixture(autouse=True)
def execution_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EXECUTION_HMAC_SECRET", TEST_SECRET)
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("EXECUTION_STRICT_STARTUP", raising=False)
    monkeypatch.delenv("POSTGRES_DSN", raising=False)
    monkeypatch.delenv("MAX_LATENCY_MS", raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def vector_transport() -> FakeVectorTransport:
    return FakeVectorTransport()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(BreakerPolicy(threshold=3, open_timeout_s=30.0, reset_timeout_s=60.0), clock=clock)


@pytest.fixture
def vector_client(vector_transport: FakeVectorTransport, breaker: CircuitBreaker) -> VectorClient:
    return VectorClient(
        base_url="http://ruvvector.test",
        timeout_s=1.0,
        breaker=breaker,
        transport=vector_transport,
    )


@pytest.fixture
def ledger() -> InMemoryExecutionsRepository:
    return InMemoryExecutionsRepository()


@pytest.fixture
def client(ledger: InMemoryExecutionsRepository, vector_client: VectorClient) -> TestClient:
    app = create_app(repository=ledger, vector_client=vector_client)
    return TestClient(app)
