import random
import pytest

from tunnel_autopilot.policy import CyclerPolicy
from tunnel_autopilot.errors import InvalidCandidateList
from tunnel_autopilot.models import Endpoint, Protocol
from tunnel_autopilot.endpoint_cycler import CyclerState, EndpointCycler

from conftest import ScriptedProbe


HOST = "203.0.113.10"
PAIRS = [(Protocol.TCP, 443), (Protocol.WS, 8080), (Protocol.UDP, 53)]

POOR = (400.0, 10.0)    # scores 41
GOOD = (150.0, 0.0)     # scores 74

def ep(protocol, port, host=HOST):
    return Endpoint(protocol, host, port)

@pytest.fixture
def events():
    return {"locks": [], "exhausted": 0}

@pytest.fixture
def make_cycler(clock, events):
    def _make(probe, degraded=False, generation=0):
        def on_exhausted():
            events["exhausted"] += 1

        return EndpointCycler(
            PAIRS,
            HOST,
            on_lock=lambda endpoint, gen: events["locks"].append((endpoint, gen)),
            on_exhausted=on_exhausted,
            policy=CyclerPolicy(failure_ceiling=3),
            probe=probe,
            generation=lambda: generation,
            degraded=lambda: degraded,
            clock=clock,
            rng=random.Random(7),
        )
    return _make


# ==================================
# TEST GROUP: Probing → Locked
# ==================================
def test_locks_first_good_candidate(make_cycler, events, clock):
    """tcp:443 and ws:8080 score Poor, udp:53 scores Good → Locked on udp:53"""
    probe = ScriptedProbe()
    probe.set(ep(Protocol.TCP, 443), POOR)
    probe.set(ep(Protocol.WS, 8080), POOR)
    probe.set(ep(Protocol.UDP, 53), GOOD)
    cycler = make_cycler(probe, generation=4)

    first = cycler.step()
    second = cycler.step()
    dwell = cycler.step()

    assert 5 <= first <= 15 and 5 <= second <= 15
    assert cycler.state == CyclerState.LOCKED
    assert cycler.target == ep(Protocol.UDP, 53)
    assert cycler.consecutive_failures == 0
    assert 300 <= dwell <= 900
    assert cycler.dwell_until == pytest.approx(clock.now + dwell)
    assert events["locks"] == [(ep(Protocol.UDP, 53), 4)]

def test_degraded_dwell_is_shorter(make_cycler):
    probe = ScriptedProbe(default=GOOD)
    cycler = make_cycler(probe, degraded=True)

    dwell = cycler.step()

    assert 180 <= dwell <= 480

def test_locked_holds_until_dwell_then_revalidates(make_cycler, clock):
    probe = ScriptedProbe(default=GOOD)
    cycler = make_cycler(probe)
    dwell = cycler.step()
    probes_after_lock = len(probe.calls)

    clock.advance(dwell / 2)
    remaining = cycler.step()

    assert remaining == pytest.approx(dwell / 2)
    assert len(probe.calls) == probes_after_lock

    probe.set(ep(Protocol.TCP, 443), None)
    clock.advance(dwell)
    cycler.step()

    assert cycler.state == CyclerState.PROBING
    assert cycler.target is None


# =======================================
# TEST GROUP: Exhaustion → Backing Off
# =======================================
def test_ceiling_enters_backing_off_exactly_once(make_cycler, events, clock):
    probe = ScriptedProbe(default=POOR)
    cycler = make_cycler(probe)

    for _ in range(3):
        cycler.step()

    assert cycler.state == CyclerState.BACKING_OFF
    assert events["exhausted"] == 1

    # Still inside the back-off window: no probing, no second emergency
    probes = len(probe.calls)
    for _ in range(5):
        cycler.step()
        clock.advance(10)

    assert events["exhausted"] == 1
    assert len(probe.calls) == probes
    assert events["locks"] == []

def test_backoff_elapses_back_to_probing(make_cycler, clock):
    cycler = make_cycler(ScriptedProbe(default=POOR))
    for _ in range(3):
        cycler.step()

    clock.advance(cycler.policy.backoff_s)
    cycler.step()

    assert cycler.state == CyclerState.PROBING
    assert cycler.consecutive_failures == 0

def test_recovery_notification_leaves_backing_off(make_cycler):
    cycler = make_cycler(ScriptedProbe(default=POOR))
    for _ in range(3):
        cycler.step()

    cycler.notify_recovered()

    assert cycler.state == CyclerState.PROBING
    assert cycler.backoff_until is None


# ===================================
# TEST GROUP: Epochs + Priorities
# ===================================
def test_result_from_old_epoch_is_discarded(make_cycler, events):
    holder = {}
    inner = ScriptedProbe(default=GOOD)

    def probe(endpoint, budget=None, attempts=1, throughput=None):
        holder["cycler"].set_host("198.51.100.20")   # host changes mid-probe
        return inner(endpoint)

    cycler = make_cycler(probe)
    holder["cycler"] = cycler

    assert cycler.step() == 0.0
    assert cycler.state == CyclerState.PROBING
    assert events["locks"] == []

def test_reprioritize_puts_resilient_protocols_first(make_cycler):
    cycler = make_cycler(ScriptedProbe())

    cycler.reprioritize(restricted=True)

    assert [c.protocol for c in cycler.candidates] == [Protocol.WS, Protocol.TCP, Protocol.UDP]

    cycler.reprioritize(restricted=False)

    assert [c.pair for c in cycler.candidates] == PAIRS

def test_empty_pairs_rejected():
    with pytest.raises(InvalidCandidateList):
        EndpointCycler([], HOST, on_lock=lambda e, g: None, on_exhausted=lambda: None)
