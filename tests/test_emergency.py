import pytest

from tunnel_autopilot.emergency import EmergencyRecovery
from tunnel_autopilot.models import Endpoint, Protocol
from tunnel_autopilot.errors import ExhaustedCandidates, InvalidCandidateList


PAIRS = [(Protocol.TCP, 443), (Protocol.WS, 443), (Protocol.UDP, 53)]
PEERS = ["203.0.113.10", "198.51.100.20"]


def test_candidates_are_pair_major_across_peers():
    recovery = EmergencyRecovery(lambda ep, timeout: False, pairs=PAIRS)

    candidates = recovery.candidates(PEERS)

    assert candidates[:2] == [
        Endpoint(Protocol.TCP, "203.0.113.10", 443),
        Endpoint(Protocol.TCP, "198.51.100.20", 443),
    ]
    assert len(candidates) == len(PAIRS) * len(PEERS)

def test_default_pairs_come_from_config():
    recovery = EmergencyRecovery(lambda ep, timeout: False)

    assert recovery.pairs[0] == (Protocol.TCP, 443)
    assert (Protocol.UDP, 53) in recovery.pairs

def test_attempt_stops_at_first_success():
    tried = []
    target = Endpoint(Protocol.WS, "203.0.113.10", 443)

    def try_endpoint(endpoint, timeout):
        tried.append((endpoint, timeout))
        return endpoint == target

    recovery = EmergencyRecovery(try_endpoint, pairs=PAIRS, attempt_timeout=15)
    ordered = recovery.candidates(PEERS)

    assert recovery.attempt(ordered) == target
    assert [ep for ep, _ in tried] == ordered[: ordered.index(target) + 1]
    assert all(timeout == 15 for _, timeout in tried)

def test_crashing_attempt_counts_as_failure():
    def try_endpoint(endpoint, timeout):
        raise RuntimeError("engine exploded")

    recovery = EmergencyRecovery(try_endpoint, pairs=PAIRS)

    assert recovery.attempt(recovery.candidates(PEERS)) is None

def test_recover_raises_when_exhausted():
    recovery = EmergencyRecovery(lambda ep, timeout: False, pairs=PAIRS)

    with pytest.raises(ExhaustedCandidates) as exc:
        recovery.recover(PEERS)

    assert exc.value.attempted == 6

def test_recover_needs_peers():
    recovery = EmergencyRecovery(lambda ep, timeout: True, pairs=PAIRS)

    with pytest.raises(InvalidCandidateList):
        recovery.recover([])
