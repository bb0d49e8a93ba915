import json
import logging
import pytest

from conftest import FakeAdapter

from tunnel_autopilot.config import config
from tunnel_autopilot.errors import InvalidCandidateList
from tunnel_autopilot.models import BackendKind, Endpoint, NodeRole, Protocol
from tunnel_autopilot.bootstrap import (
    bootstrap,
    configured_candidates,
    configured_pairs,
    configured_role,
    discover_runtime_capabilities,
)


class MissingAdapter(FakeAdapter):
    def installed(self) -> bool:
        return False


@pytest.fixture(autouse=True)
def base_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "TUNNEL_MODE", "easytier")
    monkeypatch.setattr(config, "NODE_ROLE", "")
    monkeypatch.setattr(config, "REMOTE_SERVER", ["203.0.113.10"])
    monkeypatch.setattr(config, "PROTOCOL", "udp")
    monkeypatch.setattr(config, "PORT", 1377)
    monkeypatch.setattr(config, "ENABLED_PROTOCOLS", ["udp", "tcp"])
    monkeypatch.setattr(config, "CANDIDATE_PORTS", [1377])
    monkeypatch.setattr(config, "EMERGENCY_PAIRS", ["tcp:443", "ws:80"])
    monkeypatch.setattr(config, "INTERFERENCE_CONTROL_TARGETS", ["192.0.2.1:443"])
    monkeypatch.setattr(config, "INTERFERENCE_SENSITIVE_TARGETS", ["198.51.100.1:443"])
    monkeypatch.setattr(config, "NETWORK_SECRET", "s3cret")
    monkeypatch.setattr(config, "AUTO_SWITCH", True)
    monkeypatch.setattr(config, "STATE_DIR", str(tmp_path))

def adapters(*missing):
    return {
        kind: (MissingAdapter(kind) if kind in missing else FakeAdapter(kind))
        for kind in BackendKind
    }


# ==================================
# TEST GROUP: Configured Candidates
# ==================================
def test_configured_candidates_from_environment():
    candidates = configured_candidates(BackendKind.EASYTIER, NodeRole.CONNECTED)

    assert candidates == [
        Endpoint(Protocol.UDP, "203.0.113.10", 1377),
        Endpoint(Protocol.TCP, "203.0.113.10", 1377),
    ]

def test_listening_role_without_peers_supervises_local_listener(monkeypatch):
    monkeypatch.setattr(config, "REMOTE_SERVER", [])

    candidates = configured_candidates(BackendKind.EASYTIER, NodeRole.STANDALONE)

    assert {c.host for c in candidates} == {"127.0.0.1"}

def test_default_role_follows_backend():
    assert configured_role(BackendKind.RATHOLE) == NodeRole.BIDIRECTIONAL

def test_primary_protocol_must_be_supported(monkeypatch):
    monkeypatch.setattr(config, "PROTOCOL", "quic")

    with pytest.raises(InvalidCandidateList):
        configured_pairs(BackendKind.RATHOLE)


# ==================================
# TEST GROUP: Startup Validation
# ==================================
@pytest.mark.parametrize(
    "attr, value",
    [
        ("REMOTE_SERVER", ["300.1.1.1"]),
        ("REMOTE_SERVER", []),
        ("TUNNEL_MODE", "wireguard"),
        ("NODE_ROLE", "relay"),
        ("EMERGENCY_PAIRS", ["smtp:25"]),
        ("INTERFERENCE_SENSITIVE_TARGETS", ["no-port"]),
    ],
)

def test_invalid_configuration_fails_fast(monkeypatch, attr, value):
    monkeypatch.setattr(config, attr, value)

    with pytest.raises(InvalidCandidateList):
        bootstrap(adapters())

def test_empty_secret_only_warns(monkeypatch, caplog):
    monkeypatch.setattr(config, "NETWORK_SECRET", "")

    with caplog.at_level(logging.WARNING):
        bootstrap(adapters())

    assert "NETWORK_SECRET is empty" in caplog.text

def test_previous_session_is_logged(tmp_path, caplog):
    (tmp_path / "session.json").write_text(json.dumps({
        "saved_at": 0,
        "session": {
            "active_backend": "rathole",
            "active_endpoint": "ws://203.0.113.10:443",
            "controller_mode": "DEGRADED",
        },
        "switches": [],
    }))

    with caplog.at_level(logging.INFO):
        bootstrap(adapters())

    assert "endpoint=ws://203.0.113.10:443" in caplog.text


# ==================================
# TEST GROUP: Runtime Capabilities
# ==================================
def test_capabilities_list_installed_engines():
    caps = discover_runtime_capabilities(adapters())

    assert set(caps.installed_backends) == {BackendKind.EASYTIER, BackendKind.RATHOLE}
    assert caps.preferred_backend == BackendKind.EASYTIER
    assert caps.can_fail_over_backend is True

def test_missing_engine_is_not_fatal():
    caps = discover_runtime_capabilities(adapters(BackendKind.EASYTIER))

    assert caps.installed_backends == (BackendKind.RATHOLE,)
    assert caps.can_fail_over_backend is False
    assert caps.can_start is True

def test_missing_preferred_without_auto_switch_cannot_start(monkeypatch, caplog):
    monkeypatch.setattr(config, "AUTO_SWITCH", False)

    with caplog.at_level(logging.ERROR):
        caps = discover_runtime_capabilities(adapters(BackendKind.EASYTIER))

    assert caps.can_start is False
    assert "no fallback available" in caplog.text

def test_no_engine_installed_cannot_start():
    caps = bootstrap(adapters(BackendKind.EASYTIER, BackendKind.RATHOLE))

    assert caps.installed_backends == ()
    assert caps.can_start is False
