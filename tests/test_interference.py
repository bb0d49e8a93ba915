import pytest

from conftest import ScriptedProbe

from tunnel_autopilot.errors import InvalidCandidateList
from tunnel_autopilot.models import Endpoint, Protocol
from tunnel_autopilot.interference import (
    InterferenceDetector,
    RegionalCondition,
    parse_targets,
)


CONTROL = [Endpoint(Protocol.TCP, "192.0.2.1", 443), Endpoint(Protocol.TCP, "192.0.2.2", 443)]
SENSITIVE = [Endpoint(Protocol.TCP, "198.51.100.1", 443), Endpoint(Protocol.TCP, "198.51.100.2", 443)]


def make_detector(probe):
    return InterferenceDetector(control=CONTROL, sensitive=SENSITIVE, probe=probe, interval=1)

def block(probe, targets):
    for target in targets:
        probe.set(target, None)


# ===============================
# TEST GROUP: Target Parsing
# ===============================
def test_parse_targets():
    assert parse_targets(["1.1.1.1:443", "[2001:db8::1]:80"]) == [
        Endpoint(Protocol.TCP, "1.1.1.1", 443),
        Endpoint(Protocol.TCP, "2001:db8::1", 80),
    ]

@pytest.mark.parametrize("item", ["1.1.1.1", ":443", "host:http", "host:0"])
def test_parse_targets_rejects_malformed(item):
    with pytest.raises(InvalidCandidateList):
        parse_targets([item])


# ===============================
# TEST GROUP: Detection
# ===============================
def test_all_reachable_is_normal():
    detector = make_detector(ScriptedProbe())

    assert detector.check() == RegionalCondition.NORMAL
    assert detector.restricted is False

def test_sensitive_blocked_while_control_reachable_is_restricted():
    probe = ScriptedProbe()
    block(probe, SENSITIVE)
    detector = make_detector(probe)

    assert detector.check() == RegionalCondition.RESTRICTED
    assert detector.restricted is True

def test_local_outage_is_inconclusive_and_keeps_previous_condition():
    probe = ScriptedProbe()
    block(probe, SENSITIVE)
    detector = make_detector(probe)
    detector.check()

    block(probe, CONTROL)
    for target in SENSITIVE:
        probe.set(target, (20.0, 0.0))

    assert detector.check() == RegionalCondition.RESTRICTED

def test_listeners_called_only_on_change():
    probe = ScriptedProbe()
    detector = make_detector(probe)
    seen = []
    detector.subscribe(seen.append)

    detector.check()                    # NORMAL → NORMAL
    block(probe, SENSITIVE)
    detector.check()                    # NORMAL → RESTRICTED
    detector.check()                    # unchanged

    assert seen == [RegionalCondition.RESTRICTED]

def test_failing_listener_does_not_block_others():
    probe = ScriptedProbe()
    block(probe, SENSITIVE)
    detector = make_detector(probe)
    seen = []

    def broken(condition):
        raise RuntimeError("boom")

    detector.subscribe(broken)
    detector.subscribe(seen.append)

    detector.check()

    assert seen == [RegionalCondition.RESTRICTED]

def test_checks_skip_throughput():
    calls = []

    def probe(endpoint, budget=None, attempts=1, throughput=None):
        calls.append(throughput)
        return ScriptedProbe()(endpoint)

    make_detector(probe).check()

    assert calls and all(t is False for t in calls)
