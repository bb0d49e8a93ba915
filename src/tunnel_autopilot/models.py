# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import time
from enum import Enum, auto
from dataclasses import dataclass, field


class Protocol(Enum):
    """Transport a candidate endpoint is reached over."""
    UDP = "udp"
    TCP = "tcp"
    WS = "ws"
    QUIC = "quic"
    WG = "wg"

    @property
    def is_stream(self) -> bool:
        return self in (Protocol.TCP, Protocol.WS)

    def __str__(self) -> str:
        return self.value

class BackendKind(Enum):
    """The two interchangeable tunnel engines."""
    EASYTIER = "easytier"
    RATHOLE = "rathole"

    def __str__(self) -> str:
        return self.value

class NodeRole(Enum):
    """
    How this node participates in the tunnel.

    • STANDALONE / CONNECTED: EasyTier mesh roles
    • LISTENER / CONNECTOR / BIDIRECTIONAL: Rathole roles
    """
    STANDALONE = "standalone"
    CONNECTED = "connected"
    LISTENER = "listener"
    CONNECTOR = "connector"
    BIDIRECTIONAL = "bidirectional"

    @property
    def dials_out(self) -> bool:
        """True when this role connects to a remote peer."""
        return self in (
            NodeRole.CONNECTED,
            NodeRole.CONNECTOR,
            NodeRole.BIDIRECTIONAL,
        )

    @classmethod
    def default_for(cls, backend: BackendKind) -> NodeRole:
        match backend:
            case BackendKind.EASYTIER:
                return cls.CONNECTED
            case BackendKind.RATHOLE:
                return cls.BIDIRECTIONAL

class QualityClass(Enum):
    """Quality classes, ordered worst → best by `rank`."""
    CRITICAL = auto()
    POOR = auto()
    GOOD = auto()
    EXCELLENT = auto()

    @property
    def rank(self) -> int:
        return self.value

    def at_least(self, other: QualityClass) -> bool:
        return self.rank >= other.rank

    def __str__(self) -> str:
        return self.name.capitalize()

class ControllerMode(Enum):
    NORMAL = auto()
    DEGRADED = auto()
    EMERGENCY = auto()
    ALERT = auto()

    def __str__(self) -> str:
        return self.name

QUALITY_EMOJI = {
    QualityClass.EXCELLENT: "💚",
    QualityClass.GOOD:      "🟢",
    QualityClass.POOR:      "🟡",
    QualityClass.CRITICAL:  "🔴",
}

MODE_EMOJI = {
    ControllerMode.NORMAL:    "💚",
    ControllerMode.DEGRADED:  "🟡",
    ControllerMode.EMERGENCY: "🟠",
    ControllerMode.ALERT:     "🚨",
}


@dataclass(frozen=True)
class Endpoint:
    """Immutable (protocol, host, port) candidate connection descriptor."""
    protocol: Protocol
    host: str
    port: int

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.protocol.value}://{host}:{self.port}"

    @property
    def pair(self) -> tuple[Protocol, int]:
        return self.protocol, self.port

    @classmethod
    def parse(cls, text: str) -> Endpoint:
        """
        Parse `proto://host:port` (IPv6 hosts in brackets).

        Raises:
            ValueError on any malformed component.
        """
        scheme, sep, rest = text.strip().partition("://")
        if not sep:
            raise ValueError(f"missing protocol in endpoint {text!r}")
        protocol = Protocol(scheme.lower())

        if rest.startswith("["):
            host, _, tail = rest[1:].partition("]")
            port_str = tail.lstrip(":")
        else:
            host, _, port_str = rest.rpartition(":")

        if not host or not port_str.isdigit():
            raise ValueError(f"malformed endpoint {text!r}")
        port = int(port_str)
        if not 0 < port < 65536:
            raise ValueError(f"port out of range in {text!r}")
        return cls(protocol, host, port)


@dataclass(frozen=True)
class ProbeSample:
    """One bounded-time measurement of a single endpoint."""
    endpoint: Endpoint
    timestamp: float
    reachable: bool
    loss_pct: float
    latency_ms: float | None = None
    throughput_kbps: float | None = None

    @classmethod
    def unreachable(cls, endpoint: Endpoint, timestamp: float | None = None) -> ProbeSample:
        return cls(
            endpoint=endpoint,
            timestamp=time.time() if timestamp is None else timestamp,
            reachable=False,
            loss_pct=100.0,
        )


@dataclass(frozen=True)
class QualityScore:
    value: float
    quality: QualityClass
    breakdown: dict[str, float] = field(default_factory=dict, compare=False)

    def __str__(self) -> str:
        return f"{self.value:.0f} ({self.quality})"

    def to_dict(self) -> dict:
        return {"value": self.value, "class": str(self.quality)}


@dataclass(frozen=True)
class GeoCandidate:
    """Cached refinement result, owned by GeoSelector."""
    endpoint: Endpoint
    score: QualityScore
    last_evaluated: float
