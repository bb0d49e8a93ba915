import time
import pytest

from tunnel_autopilot.logger import setup_logging
from tunnel_autopilot.engines import BackendEngineAdapter, EngineHandle
from tunnel_autopilot.models import BackendKind, Endpoint, ProbeSample, Protocol


# ========
# FIXTURES
# ========
@pytest.fixture(autouse=True)
def configure_logging():
    setup_logging()
    yield   # allow test to run


# =====
# FAKES
# =====
class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProbe:
    """
    Probe stand-in: each endpoint answers with (latency_ms, loss_pct), or
    None for unreachable. Unlisted endpoints use `default`.
    """

    def __init__(self, default=(20.0, 0.0)):
        self.default = default
        self.overrides = {}
        self.calls = []

    def set(self, endpoint, spec):
        self.overrides[endpoint] = spec

    def __call__(self, endpoint, budget=None, attempts=1, throughput=None):
        self.calls.append(endpoint)
        spec = self.overrides.get(endpoint, self.default)
        if spec is None:
            return ProbeSample.unreachable(endpoint)
        latency, loss = spec
        return ProbeSample(endpoint, time.time(), True, loss, latency)


class FakeAdapter(BackendEngineAdapter):
    """In-memory engine: records starts/stops, optionally fails to start."""

    def __init__(self, kind: BackendKind, fail_with: Exception | None = None):
        self.kind = kind
        self.fail_with = fail_with
        self.alive = True
        self.starts = []
        self.stops = []
        self.timeouts = []

    def start(self, endpoint, secret, options, timeout=None):
        self.starts.append(endpoint)
        self.timeouts.append(timeout)
        if self.fail_with is not None:
            raise self.fail_with
        return EngineHandle(self.kind, endpoint)

    def stop(self, handle):
        self.stops.append(handle.endpoint)

    def is_alive(self, handle):
        return self.alive


@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def scripted_probe():
    return ScriptedProbe()

@pytest.fixture
def endpoint():
    return Endpoint(Protocol.UDP, "203.0.113.10", 1377)
