# ─── Standard library imports ───
import os
import time
import socket
import struct
import statistics

# ─── Third-party imports ───
import requests

# ─── Project imports ───
from .config import config
from .logger import get_logger
from .models import Endpoint, ProbeSample, Protocol


# Define the logger once for the entire module
logger = get_logger("probe")

DATAGRAM_RECV_BYTES = 2048

def measure(
    endpoint: Endpoint,
    budget: float | None = None,
    attempts: int = 1,
    throughput: bool | None = None,
) -> ProbeSample:
    """
    Single bounded-time measurement of one candidate endpoint.

    Performs a protocol-appropriate reachability check within a hard
    wall-clock budget:
      - Stream protocols (tcp, ws): TCP handshake, timed as RTT
      - Datagram protocols (udp, quic, wg): datagram round trip

    Args:
        endpoint: Candidate to measure.
        budget: Wall-clock budget in seconds (default PROBE_BUDGET_S).
        attempts: Handshakes to attempt; loss_pct = failed / attempts.
        throughput: Take a bounded throughput sample. Default: only when
                    the budget leaves room for it.

    Returns:
        ProbeSample. Timeouts and errors never raise; they produce
        reachable=False, loss_pct=100.
    """
    budget = config.PROBE_BUDGET_S if budget is None else budget
    attempts = max(1, attempts)
    deadline = time.monotonic() + budget

    rtts: list[float] = []
    for _ in range(attempts):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        rtt = _handshake(endpoint, remaining)
        if rtt is not None:
            rtts.append(rtt)

    if not rtts:
        logger.debug(f"{endpoint} unreachable within {budget:.1f}s")
        return ProbeSample.unreachable(endpoint)

    throughput_kbps = None
    remaining = deadline - time.monotonic()
    want_throughput = (
        throughput if throughput is not None
        else remaining >= config.THROUGHPUT_MIN_BUDGET_S
    )
    if (
        want_throughput
        and endpoint.protocol.is_stream
        and remaining >= config.THROUGHPUT_MIN_BUDGET_S
    ):
        throughput_kbps = _throughput_sample(endpoint, remaining)

    return ProbeSample(
        endpoint=endpoint,
        timestamp=time.time(),
        reachable=True,
        loss_pct=100.0 * (attempts - len(rtts)) / attempts,
        latency_ms=statistics.median(rtts),
        throughput_kbps=throughput_kbps,
    )

def _handshake(endpoint: Endpoint, timeout: float) -> float | None:
    """Return RTT in ms, or None if unreachable within timeout."""
    if endpoint.protocol.is_stream:
        return _tcp_handshake(endpoint, timeout)
    return _datagram_round_trip(endpoint, timeout)

def _tcp_handshake(endpoint: Endpoint, timeout: float) -> float | None:
    start = time.perf_counter()
    try:
        with socket.create_connection((endpoint.host, endpoint.port), timeout=timeout):
            return (time.perf_counter() - start) * 1000
    except (OSError, ValueError) as e:
        logger.debug(f"TCP handshake failed for {endpoint} ({e.__class__.__name__})")
        return None

def _datagram_round_trip(endpoint: Endpoint, timeout: float) -> float | None:
    """
    Send one protocol-appropriate datagram and wait for any reply.

    Silence and ICMP port-unreachable (ConnectionRefusedError on a
    connected UDP socket) both count as unreachable.
    """
    start = time.perf_counter()
    try:
        family, socktype, proto, _, addr = socket.getaddrinfo(
            endpoint.host, endpoint.port, type=socket.SOCK_DGRAM
        )[0]
        with socket.socket(family, socktype, proto) as sock:
            sock.settimeout(max(0.0, timeout - (time.perf_counter() - start)))
            sock.connect(addr)
            sock.send(_datagram_payload(endpoint))
            sock.recv(DATAGRAM_RECV_BYTES)
            return (time.perf_counter() - start) * 1000
    except (OSError, ValueError) as e:
        logger.debug(f"Datagram probe failed for {endpoint} ({e.__class__.__name__})")
        return None

def _datagram_payload(endpoint: Endpoint) -> bytes:
    """
    Payload most likely to provoke a reply from the far side.

    • port 53 → minimal DNS query (root NS)
    • quic    → long-header packet with a reserved version, which a QUIC
                server answers with Version Negotiation
    • other   → single byte
    """
    if endpoint.port == 53:
        query_id = os.urandom(2)
        header = query_id + struct.pack("!HHHHH", 0x0100, 1, 0, 0, 0)
        question = b"\x00" + struct.pack("!HH", 2, 1)   # root, NS, IN
        return header + question

    if endpoint.protocol == Protocol.QUIC:
        dcid = os.urandom(8)
        packet = (
            bytes([0xC0]) + b"\x1a\x2a\x3a\x4a"   # long header, grease version
            + bytes([len(dcid)]) + dcid
            + b"\x00"                             # empty SCID
        )
        return packet.ljust(1200, b"\x00")        # minimum Initial size

    return b"\x00"

def _throughput_sample(endpoint: Endpoint, budget: float) -> float | None:
    """
    Bounded HTTP read from the endpoint, in kbit/s.

    Returns None (not measured, not zero) for non-2xx answers or when
    fewer than THROUGHPUT_MIN_SAMPLE_BYTES arrived.
    """
    host = f"[{endpoint.host}]" if ":" in endpoint.host else endpoint.host
    url = f"http://{host}:{endpoint.port}/"
    deadline = time.monotonic() + budget
    received = 0
    start = time.perf_counter()

    try:
        with requests.get(url, stream=True, timeout=budget) as resp:
            if not resp.ok:
                logger.debug(f"Throughput sample skipped for {endpoint} (HTTP {resp.status_code})")
                return None
            for chunk in resp.iter_content(chunk_size=8192):
                received += len(chunk)
                if (
                    received >= config.THROUGHPUT_SAMPLE_BYTES
                    or time.monotonic() >= deadline
                ):
                    break
    except requests.RequestException as e:
        logger.debug(f"Throughput sample failed for {endpoint} ({e.__class__.__name__})")
        if received == 0:
            return None

    elapsed = time.perf_counter() - start
    if received < config.THROUGHPUT_MIN_SAMPLE_BYTES or elapsed <= 0:
        return None
    return (received * 8 / 1000) / elapsed
