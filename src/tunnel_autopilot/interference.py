# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import threading
from enum import Enum, auto
from typing import Callable, Iterable

# ─── Project imports ───
from .config import config
from .probe import measure
from .telemetry import tlog
from .logger import get_logger
from .errors import InvalidCandidateList
from .models import Endpoint, ProbeSample, Protocol


class RegionalCondition(Enum):
    NORMAL = auto()
    RESTRICTED = auto()

    def __str__(self) -> str:
        return self.name

CONDITION_EMOJI = {
    RegionalCondition.NORMAL:     "🟢",
    RegionalCondition.RESTRICTED: "🧱",
}

# Reachable share of targets that counts as "mostly reachable"
REACHABLE_QUORUM = 0.5


def parse_targets(items: Iterable[str]) -> list[Endpoint]:
    """
    Parse `host:port` probe targets; they are always checked over TCP.

    Raises:
        InvalidCandidateList on malformed entries.
    """
    targets = []
    for item in items:
        host, _, port = item.strip().rpartition(":")
        if not host or not port.isdigit() or not 0 < int(port) < 65536:
            raise InvalidCandidateList(f"invalid probe target {item!r}")
        targets.append(Endpoint(Protocol.TCP, host.strip("[]"), int(port)))
    return targets


class InterferenceDetector:
    """
    Infers whether the network path is being selectively filtered.

    Compares reachability of neutral control targets against targets that
    are known to be filtered under restrictive conditions:

    • control reachable ≥ quorum, sensitive reachable < quorum → RESTRICTED
    • control mostly unreachable → inconclusive (local outage); keep the
      previous condition
    • otherwise → NORMAL

    Listeners are called with the new condition on every change.
    """

    def __init__(
        self,
        control: Iterable[Endpoint] | None = None,
        sensitive: Iterable[Endpoint] | None = None,
        probe: Callable[..., ProbeSample] = measure,
        interval: float | None = None,
    ):
        self.control = list(
            control if control is not None
            else parse_targets(config.INTERFERENCE_CONTROL_TARGETS)
        )
        self.sensitive = list(
            sensitive if sensitive is not None
            else parse_targets(config.INTERFERENCE_SENSITIVE_TARGETS)
        )
        self.probe = probe
        self.interval = interval or config.INTERFERENCE_INTERVAL_S
        self.logger = get_logger("interference")

        self._lock = threading.Lock()
        self._condition = RegionalCondition.NORMAL
        self._listeners: list[Callable[[RegionalCondition], None]] = []

    @property
    def condition(self) -> RegionalCondition:
        with self._lock:
            return self._condition

    @property
    def restricted(self) -> bool:
        return self.condition == RegionalCondition.RESTRICTED

    def subscribe(self, listener: Callable[[RegionalCondition], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _reachable_share(self, targets: list[Endpoint]) -> float:
        if not targets:
            return 0.0
        reachable = sum(
            1 for t in targets if self.probe(t, throughput=False).reachable
        )
        return reachable / len(targets)

    def check(self) -> RegionalCondition:
        """Run one detection pass and publish the result if it changed."""
        control = self._reachable_share(self.control)
        sensitive = self._reachable_share(self.sensitive)
        meta = f"control={control:.0%} | sensitive={sensitive:.0%}"

        if control < REACHABLE_QUORUM:
            tlog("⚪", "INTERFERENCE", "INCONCLUSIVE", primary=str(self.condition),
                 meta=meta, logger=self.logger)
            return self.condition

        observed = (
            RegionalCondition.RESTRICTED if sensitive < REACHABLE_QUORUM
            else RegionalCondition.NORMAL
        )

        with self._lock:
            previous = self._condition
            self._condition = observed
            listeners = list(self._listeners) if observed != previous else []

        if observed == previous:
            self.logger.debug(f"Regional condition unchanged: {observed} ({meta})")
            return observed

        tlog(CONDITION_EMOJI[observed], "INTERFERENCE", f"{previous} → {observed}",
             primary="condition change", meta=meta, logger=self.logger)
        for listener in listeners:
            try:
                listener(observed)
            except Exception:
                self.logger.exception("Interference listener failed")
        return observed

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.check()
            except Exception:
                self.logger.exception("Interference check failed")
            stop.wait(self.interval)
