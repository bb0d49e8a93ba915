import os
import time
import pytest

from pathlib import Path

from tunnel_autopilot.config import config
from tunnel_autopilot.errors import (
    BinaryMissing,
    BindFailed,
    ConfigWriteError,
    StartError,
    StartTimeout,
)
from tunnel_autopilot.models import BackendKind, Endpoint, NodeRole, Protocol
from tunnel_autopilot.engines import EasyTierAdapter, RatholeAdapter, default_adapters
from tunnel_autopilot.config_writer import (
    EasyTierConfigWriter,
    EngineOptions,
    RatholeConfigWriter,
)


UDP_EP = Endpoint(Protocol.UDP, "203.0.113.10", 1377)
WS_EP = Endpoint(Protocol.WS, "203.0.113.10", 443)
QUIC_EP = Endpoint(Protocol.QUIC, "203.0.113.10", 443)

@pytest.fixture(autouse=True)
def state_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "STATE_DIR", str(tmp_path / "state"))
    return tmp_path / "state"

def fake_binary(directory: Path, name: str, script: str) -> Path:
    path = directory / name
    path.write_text("#!/bin/sh\n" + script + "\n")
    path.chmod(0o755)
    return path


# ====================================
# TEST GROUP: EasyTier Command Line
# ====================================
def test_easytier_connected_role_dials_peer():
    cmd = EasyTierConfigWriter().command(
        Path("/usr/local/bin/easytier-core"),
        UDP_EP,
        "s3cret",
        EngineOptions(role=NodeRole.CONNECTED, local_ip="10.10.10.2"),
    )

    assert cmd[0] == "/usr/local/bin/easytier-core"
    assert cmd[cmd.index("--peers") + 1] == "udp://203.0.113.10:1377"
    assert cmd[cmd.index("--network-secret") + 1] == "s3cret"
    assert cmd[cmd.index("-i") + 1] == "10.10.10.2"
    assert cmd[cmd.index("--listeners") + 1] == "udp://0.0.0.0:1377"

def test_easytier_standalone_role_only_listens():
    cmd = EasyTierConfigWriter().command(
        Path("easytier-core"), UDP_EP, "s3cret", EngineOptions(role=NodeRole.STANDALONE)
    )

    assert "--peers" not in cmd


# ================================
# TEST GROUP: Rathole TOML
# ================================
def test_rathole_client_config(tmp_path):
    path = tmp_path / "rathole.toml"

    cmd = RatholeConfigWriter(path).command(
        Path("rathole"), WS_EP, "s3cret", EngineOptions(role=NodeRole.CONNECTOR)
    )

    body = path.read_text()
    assert cmd == ["rathole", "-c", str(path)]
    assert 'remote_addr = "203.0.113.10:443"' in body
    assert 'type = "websocket"' in body
    assert 'default_token = "s3cret"' in body

def test_rathole_listener_writes_server_config(tmp_path):
    path = tmp_path / "rathole.toml"

    cmd = RatholeConfigWriter(path).command(
        Path("rathole"), UDP_EP, "s3cret", EngineOptions(role=NodeRole.LISTENER)
    )

    body = path.read_text()
    assert cmd[1] == "-s"
    assert 'bind_addr = "0.0.0.0:1377"' in body
    assert 'type = "udp"' in body

def test_rathole_rejects_unsupported_protocol(tmp_path):
    with pytest.raises(ConfigWriteError):
        RatholeConfigWriter(tmp_path / "r.toml").command(
            Path("rathole"), QUIC_EP, "", EngineOptions(role=NodeRole.CONNECTOR)
        )

def test_rathole_unwritable_path(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")

    with pytest.raises(ConfigWriteError):
        RatholeConfigWriter(blocker / "rathole.toml").command(
            Path("rathole"), WS_EP, "", EngineOptions(role=NodeRole.CONNECTOR)
        )


# ===================================
# TEST GROUP: Process Adapter
# ===================================
def test_missing_binary(tmp_path):
    adapter = EasyTierAdapter(bin_dir=str(tmp_path))

    assert adapter.installed() is False
    with pytest.raises(BinaryMissing):
        adapter.start(UDP_EP, "", EngineOptions(role=NodeRole.CONNECTED))

def test_unsupported_protocol_is_start_error(tmp_path):
    fake_binary(tmp_path, "rathole", "exec sleep 30")
    adapter = RatholeAdapter(bin_dir=str(tmp_path), settle_s=0)

    with pytest.raises(StartError) as exc:
        adapter.start(QUIC_EP, "", EngineOptions(role=NodeRole.CONNECTOR))

    assert not isinstance(exc.value, BinaryMissing)

@pytest.mark.skipif(os.name != "posix", reason="needs /bin/sh")
def test_start_and_stop_process(tmp_path):
    fake_binary(tmp_path, "easytier-core", "exec sleep 30")
    adapter = EasyTierAdapter(bin_dir=str(tmp_path), settle_s=0.2, stop_grace_s=2)

    handle = adapter.start(UDP_EP, "s3cret", EngineOptions(role=NodeRole.CONNECTED))

    assert handle.backend == BackendKind.EASYTIER
    assert adapter.is_alive(handle) is True

    adapter.stop(handle)

    assert adapter.is_alive(handle) is False

@pytest.mark.skipif(os.name != "posix", reason="needs /bin/sh")
def test_bind_error_in_output_is_classified(tmp_path):
    fake_binary(tmp_path, "easytier-core", "echo 'Error: Address already in use' >&2; exit 1")
    adapter = EasyTierAdapter(bin_dir=str(tmp_path), settle_s=0.5)

    with pytest.raises(BindFailed) as exc:
        adapter.start(UDP_EP, "", EngineOptions(role=NodeRole.CONNECTED))

    assert "Address already in use" in exc.value.detail

@pytest.mark.skipif(os.name != "posix", reason="needs /bin/sh")
def test_start_timeout_caps_settle_and_readiness(tmp_path):
    fake_binary(tmp_path, "easytier-core", "exec sleep 30")
    slept = []

    def short_sleep(seconds):
        slept.append(seconds)
        time.sleep(min(seconds, 0.05))

    adapter = EasyTierAdapter(
        bin_dir=str(tmp_path), settle_s=3, start_timeout=30, stop_grace_s=5, sleep=short_sleep
    )
    # Nothing listens on the discard port, so readiness never comes
    options = EngineOptions(role=NodeRole.CONNECTED, ready_port=9)

    started = time.monotonic()
    with pytest.raises(StartTimeout):
        adapter.start(UDP_EP, "", options, timeout=0.5)

    assert slept[0] <= 0.5
    assert time.monotonic() - started < 3


def test_default_adapters_cover_both_backends():
    adapters = default_adapters()

    assert set(adapters) == {BackendKind.EASYTIER, BackendKind.RATHOLE}
    assert adapters[BackendKind.RATHOLE].supports(Protocol.QUIC) is False
    assert adapters[BackendKind.EASYTIER].supports(Protocol.WG) is True
