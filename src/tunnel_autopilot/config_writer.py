# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import socket
from abc import ABC, abstractmethod
from pathlib import Path
from dataclasses import dataclass

# ─── Project imports ───
from .config import config
from .errors import ConfigWriteError
from .logger import get_logger
from .models import Endpoint, NodeRole, Protocol


logger = get_logger("config_writer")


@dataclass(frozen=True)
class EngineOptions:
    """Engine-independent start options."""
    role: NodeRole
    local_ip: str = "10.10.10.1"
    multi_thread: bool = True
    encryption: bool = True
    compression: bool = True
    local_addr: str = "127.0.0.1:8080"
    ready_port: int | None = None   # local port that must accept connections


class ConfigWriter(ABC):
    """
    Turns (endpoint, secret, options) into the artifact an engine consumes.

    Returns the full command line; file-based engines also write their
    config file and reference it from the command line.
    """

    @abstractmethod
    def command(
        self,
        binary: Path,
        endpoint: Endpoint,
        secret: str,
        options: EngineOptions,
    ) -> list[str]:
        ...


class EasyTierConfigWriter(ConfigWriter):
    """EasyTier is configured entirely through command-line flags."""

    PROTOCOL_FLAGS = {
        Protocol.UDP: ["--disable-ipv6"],
        Protocol.TCP: ["--tcp-nodelay"],
        Protocol.QUIC: ["--enable-exit-node"],
        Protocol.WG: ["--enable-wireguard"],
        Protocol.WS: [],
    }

    def command(self, binary, endpoint, secret, options):
        proto = endpoint.protocol.value
        cmd = [
            str(binary),
            "-i", options.local_ip,
            "--hostname", f"autopilot-{socket.gethostname()}",
            "--network-secret", secret,
            "--default-protocol", proto,
            "--listeners", f"{proto}://0.0.0.0:{endpoint.port}",
        ]

        if options.role.dials_out:
            cmd += ["--peers", str(endpoint)]

        if options.multi_thread:
            cmd.append("--multi-thread")
        if not options.encryption:
            cmd.append("--disable-encryption")
        if options.compression:
            cmd += ["--compression", "zstd"]

        cmd += self.PROTOCOL_FLAGS[endpoint.protocol]
        return cmd


class RatholeConfigWriter(ConfigWriter):
    """
    Rathole reads a TOML file. Client mode dials the peer, server mode binds
    the tunnel port; BIDIRECTIONAL dials when a peer host is known.
    """

    TRANSPORTS = {
        Protocol.TCP: "tcp",
        Protocol.UDP: "tcp",      # UDP service carried over the TCP control channel
        Protocol.WS: "websocket",
    }

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path or Path(config.STATE_DIR) / "rathole.toml"

    def command(self, binary, endpoint, secret, options):
        if endpoint.protocol not in self.TRANSPORTS:
            raise ConfigWriteError(f"rathole cannot carry {endpoint.protocol}")

        as_client = options.role in (NodeRole.CONNECTOR, NodeRole.BIDIRECTIONAL)
        body = (
            self._client_toml(endpoint, secret, options)
            if as_client
            else self._server_toml(endpoint, secret)
        )

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(body)
        except OSError as e:
            raise ConfigWriteError(
                f"cannot write {self.config_path}: {e.strerror or e}"
            ) from e

        logger.debug(f"Rathole config written to {self.config_path}")
        return [str(binary), "-c" if as_client else "-s", str(self.config_path)]

    def _service_type(self, endpoint: Endpoint) -> str:
        return "udp" if endpoint.protocol == Protocol.UDP else "tcp"

    def _client_toml(self, endpoint, secret, options) -> str:
        host = f"[{endpoint.host}]" if ":" in endpoint.host else endpoint.host
        return (
            "[client]\n"
            f'remote_addr = "{host}:{endpoint.port}"\n'
            f'default_token = "{secret}"\n'
            "\n"
            "[client.transport]\n"
            f'type = "{self.TRANSPORTS[endpoint.protocol]}"\n'
            "\n"
            "[client.transport.tcp]\n"
            "nodelay = true\n"
            "keepalive_secs = 20\n"
            "\n"
            "[client.services.tunnel]\n"
            f'type = "{self._service_type(endpoint)}"\n'
            f'local_addr = "{options.local_addr}"\n'
        )

    def _server_toml(self, endpoint, secret) -> str:
        _, _, service_port = config.RATHOLE_LOCAL_ADDR.rpartition(":")
        return (
            "[server]\n"
            f'bind_addr = "0.0.0.0:{endpoint.port}"\n'
            f'default_token = "{secret}"\n'
            "\n"
            "[server.transport]\n"
            f'type = "{self.TRANSPORTS[endpoint.protocol]}"\n'
            "\n"
            "[server.transport.tcp]\n"
            "nodelay = true\n"
            "keepalive_secs = 20\n"
            "\n"
            "[server.services.tunnel]\n"
            f'type = "{self._service_type(endpoint)}"\n'
            f'bind_addr = "0.0.0.0:{service_port}"\n'
        )
