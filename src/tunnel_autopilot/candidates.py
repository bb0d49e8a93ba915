# ─── Standard library imports ───
import re
import socket
from typing import Iterable

# ─── Project imports ───
from .errors import InvalidCandidateList
from .models import BackendKind, Endpoint, Protocol


# Protocols each engine can carry
SUPPORTED_PROTOCOLS = {
    BackendKind.EASYTIER: (
        Protocol.UDP, Protocol.TCP, Protocol.WS, Protocol.QUIC, Protocol.WG,
    ),
    BackendKind.RATHOLE: (Protocol.UDP, Protocol.TCP, Protocol.WS),
}

# Ranking under restricted conditions: lower = more resilient to interference
RESILIENCE_RANK = {
    Protocol.WS: 0,
    Protocol.TCP: 1,
    Protocol.QUIC: 2,
    Protocol.UDP: 3,
    Protocol.WG: 4,
}

_HOSTNAME_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)

def is_valid_peer_address(peer: str) -> bool:
    """
    Accept IPv4/IPv6 literals and RFC 1123 hostnames.

    Dotted-quad strings that fail IPv4 parsing (e.g. 300.1.1.1) are rejected
    instead of being treated as hostnames.
    """
    for family in (socket.AF_INET, socket.AF_INET6):
        try:
            socket.inet_pton(family, peer)
            return True
        except (OSError, ValueError):
            continue

    if re.fullmatch(r"[0-9.]+", peer):
        return False
    return bool(_HOSTNAME_RE.match(peer))

def parse_pairs(items: Iterable[str]) -> list[tuple[Protocol, int]]:
    """
    Parse `proto:port` items (e.g. "tcp:443").

    Raises:
        InvalidCandidateList on unknown protocols or bad ports.
    """
    pairs = []
    for item in items:
        proto, _, port = item.strip().partition(":")
        try:
            protocol = Protocol(proto.lower())
            port_num = int(port)
        except ValueError:
            raise InvalidCandidateList(f"invalid protocol/port pair {item!r}") from None
        if not 0 < port_num < 65536:
            raise InvalidCandidateList(f"port out of range in {item!r}")
        pairs.append((protocol, port_num))
    return pairs

def enabled_protocols(
    backend: BackendKind,
    configured: Iterable[str] = (),
) -> list[Protocol]:
    """
    Protocols enabled for a backend: the configured subset if any,
    otherwise everything the engine supports.
    """
    supported = SUPPORTED_PROTOCOLS[backend]
    configured = list(configured)
    if not configured:
        return list(supported)

    protocols = []
    for name in configured:
        try:
            protocol = Protocol(name.lower())
        except ValueError:
            raise InvalidCandidateList(f"unknown protocol {name!r}") from None
        if protocol not in supported:
            raise InvalidCandidateList(
                f"protocol {protocol} is not supported by {backend}"
            )
        protocols.append(protocol)
    return protocols

def build_pairs(
    primary: tuple[Protocol, int],
    protocols: Iterable[Protocol],
    ports: Iterable[int],
) -> list[tuple[Protocol, int]]:
    """
    Prioritized (protocol, port) list.

    The configured primary pair always comes first, followed by every
    enabled protocol on every candidate port, without duplicates.
    """
    ports = list(ports) or [primary[1]]
    ordered = [primary]
    for protocol in protocols:
        for port in ports:
            pair = (protocol, port)
            if pair not in ordered:
                ordered.append(pair)
    return ordered

def build_candidates(
    peers: Iterable[str],
    pairs: Iterable[tuple[Protocol, int]],
) -> list[Endpoint]:
    """
    Cross product of peers × (protocol, port) pairs, peer-major.

    Raises:
        InvalidCandidateList if the result would be empty or a peer is invalid.
    """
    peers = [p.strip() for p in peers if p.strip()]
    pairs = list(pairs)
    if not peers:
        raise InvalidCandidateList("no remote peers configured")
    if not pairs:
        raise InvalidCandidateList("no (protocol, port) pairs configured")

    candidates = []
    for peer in peers:
        if not is_valid_peer_address(peer):
            raise InvalidCandidateList(f"invalid peer address {peer!r}")
        for protocol, port in pairs:
            endpoint = Endpoint(protocol, peer, port)
            if endpoint not in candidates:
                candidates.append(endpoint)
    return candidates

def rank_for_conditions(
    pairs: Iterable[tuple[Protocol, int]],
    restricted: bool,
) -> list[tuple[Protocol, int]]:
    """
    Reorder pairs for the current regional conditions.

    Normal conditions keep configured priority. Restricted conditions move
    interference-resilient protocols first; the sort is stable so configured
    order breaks ties.
    """
    pairs = list(pairs)
    if not restricted:
        return pairs
    return sorted(pairs, key=lambda pair: RESILIENCE_RANK[pair[0]])
