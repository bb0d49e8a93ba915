# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import time
from typing import Callable, Iterable, Sequence

# ─── Project imports ───
from .config import config
from .telemetry import tlog
from .logger import get_logger
from .candidates import parse_pairs
from .errors import ExhaustedCandidates, InvalidCandidateList
from .models import Endpoint, Protocol


# (endpoint, timeout_s) -> True when the endpoint is up and verified
TryFn = Callable[[Endpoint, float], bool]


class EmergencyRecovery:
    """
    Last-resort search over historically reliable (protocol, port) pairs.

    Attempts are strictly sequential, each capped at `attempt_timeout`,
    and the search stops at the first success.
    """

    def __init__(
        self,
        try_endpoint: TryFn,
        pairs: Sequence[tuple[Protocol, int]] | None = None,
        attempt_timeout: float | None = None,
    ):
        self.try_endpoint = try_endpoint
        self.pairs = list(pairs) if pairs is not None else parse_pairs(config.EMERGENCY_PAIRS)
        self.attempt_timeout = attempt_timeout or config.EMERGENCY_ATTEMPT_TIMEOUT_S
        self.logger = get_logger("emergency")

    def candidates(self, peers: Iterable[str]) -> list[Endpoint]:
        """Curated pairs across every peer, pair-major (best pair on all peers first)."""
        peers = [p for p in peers if p]
        if not peers:
            raise InvalidCandidateList("emergency recovery needs at least one peer")
        return [
            Endpoint(protocol, peer, port)
            for protocol, port in self.pairs
            for peer in peers
        ]

    def attempt(self, ordered: Sequence[Endpoint]) -> Endpoint | None:
        total = len(ordered)
        tlog("🟠", "EMERGENCY", "START", primary=f"{total} candidates",
             meta=f"timeout={self.attempt_timeout:.0f}s/attempt", logger=self.logger)

        for i, endpoint in enumerate(ordered, start=1):
            start = time.monotonic()
            try:
                ok = self.try_endpoint(endpoint, self.attempt_timeout)
            except Exception:
                self.logger.exception(f"Emergency attempt crashed for {endpoint}")
                ok = False
            elapsed = time.monotonic() - start

            if ok:
                tlog("🟢", "EMERGENCY", "RECOVERED", primary=str(endpoint),
                     meta=f"attempt={i}/{total} | took={elapsed:.1f}s", logger=self.logger)
                return endpoint

            self.logger.info(f"⛔ Emergency candidate {i}/{total} failed: {endpoint} ({elapsed:.1f}s)")

        tlog("🔴", "EMERGENCY", "EXHAUSTED", primary=f"{total} candidates",
             logger=self.logger)
        return None

    def recover(self, peers: Iterable[str]) -> Endpoint:
        """
        Raises:
            ExhaustedCandidates when no curated candidate comes up.
        """
        ordered = self.candidates(peers)
        endpoint = self.attempt(ordered)
        if endpoint is None:
            raise ExhaustedCandidates(len(ordered))
        return endpoint
