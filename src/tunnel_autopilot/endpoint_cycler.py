# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import time
import random
import threading
from enum import Enum, auto
from typing import Callable, Sequence

# ─── Project imports ───
from .probe import measure
from .scorer import Scorer
from .telemetry import tlog
from .logger import get_logger
from .policy import CyclerPolicy
from .candidates import rank_for_conditions
from .sample_history import SampleHistory
from .errors import InvalidCandidateList
from .models import Endpoint, ProbeSample, Protocol, QualityClass


class CyclerState(Enum):
    PROBING = auto()
    LOCKED = auto()
    BACKING_OFF = auto()

    def __str__(self) -> str:
        return self.name

CYCLER_EMOJI = {
    CyclerState.PROBING:     "🔍",
    CyclerState.LOCKED:      "🔒",
    CyclerState.BACKING_OFF: "⏸️ ",
}


class EndpointCycler:
    """
    Cycles (protocol, port) candidates for the active peer host.

    States:
    • PROBING: probe + score candidates round-robin
    • LOCKED: a candidate scored ≥ GOOD; hold it for a randomized dwell
    • BACKING_OFF: failure ceiling reached; emergency recovery owns the
                    situation until the back-off elapses or recovery is
                    reported

    Invariants:
    • consecutive_failures resets on any success
    • PROBING → BACKING_OFF fires `on_exhausted` exactly once per entry
    • The cycler never touches SessionState; it only proposes endpoints
      through `on_lock`, tagged with the controller generation at probe start
    """

    def __init__(
        self,
        pairs: Sequence[tuple[Protocol, int]],
        host: str,
        on_lock: Callable[[Endpoint, int], None],
        on_exhausted: Callable[[], None],
        policy: CyclerPolicy | None = None,
        scorer: Scorer | None = None,
        history: SampleHistory | None = None,
        probe: Callable[..., ProbeSample] = measure,
        generation: Callable[[], int] = lambda: 0,
        degraded: Callable[[], bool] = lambda: False,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        if not pairs:
            raise InvalidCandidateList("endpoint cycler needs at least one (protocol, port) pair")

        self.policy = policy or CyclerPolicy()
        self.scorer = scorer or Scorer()
        self.history = history or SampleHistory()
        self.probe = probe
        self.on_lock = on_lock
        self.on_exhausted = on_exhausted
        self.generation = generation
        self.degraded = degraded
        self.clock = clock
        self.rng = rng or random.Random()
        self.logger = get_logger("endpoint_cycler")

        self._lock = threading.RLock()
        self._configured_pairs = list(pairs)
        self._pairs = list(pairs)
        self._host = host
        self._epoch = 0
        self._index = 0

        self.state = CyclerState.PROBING
        self.consecutive_failures = 0
        self.locked_endpoint: Endpoint | None = None
        self.dwell_until: float | None = None
        self.backoff_until: float | None = None

        self._wake = threading.Event()

    # ─── External inputs ───

    @property
    def candidates(self) -> list[Endpoint]:
        with self._lock:
            return [Endpoint(p, self._host, port) for p, port in self._pairs]

    @property
    def target(self) -> Endpoint | None:
        """The currently locked endpoint, if any."""
        with self._lock:
            return self.locked_endpoint if self.state == CyclerState.LOCKED else None

    def set_host(self, host: str) -> None:
        """Follow the controller onto another peer; in-flight results go stale."""
        with self._lock:
            if host == self._host:
                return
            self._host = host
            self._restart_probing()
        self.wake()

    def reprioritize(self, restricted: bool) -> None:
        """Reorder candidates for the detected regional conditions."""
        with self._lock:
            self._pairs = rank_for_conditions(self._configured_pairs, restricted)
            self._restart_probing()
        tlog("🔀", "CYCLER", "REPRIORITIZED",
             primary="restricted" if restricted else "normal",
             meta=", ".join(f"{p}:{port}" for p, port in self._pairs),
             logger=self.logger)
        self.wake()

    def notify_recovered(self) -> None:
        """Emergency recovery succeeded: leave BACKING_OFF immediately."""
        with self._lock:
            if self.state == CyclerState.BACKING_OFF:
                self._transition(CyclerState.PROBING, "recovered")
            self.consecutive_failures = 0
            self.backoff_until = None
        self.wake()

    def wake(self) -> None:
        """Cut the current wait short (used by the controller on POOR)."""
        self._wake.set()

    # ─── State machine ───

    def step(self) -> float:
        """
        Advance the state machine by one action.

        Returns:
            Seconds to wait before the next step.
        """
        with self._lock:
            state = self.state

        match state:
            case CyclerState.PROBING:
                return self._step_probing()
            case CyclerState.LOCKED:
                return self._step_locked()
            case CyclerState.BACKING_OFF:
                return self._step_backing_off()

    def _step_probing(self) -> float:
        with self._lock:
            epoch = self._epoch
            pair = self._pairs[self._index % len(self._pairs)]
            endpoint = Endpoint(pair[0], self._host, pair[1])
        generation = self.generation()

        sample = self.probe(endpoint)

        with self._lock:
            if epoch != self._epoch:
                self.logger.debug(f"Discarding stale probe result for {endpoint}")
                return 0.0

            self.history.add(sample)
            score = self.scorer.score(self.history.window(endpoint, self.scorer.policy.stability_k))
            locked = score.quality.at_least(QualityClass.GOOD)

            if locked:
                self.consecutive_failures = 0
                self.locked_endpoint = endpoint
                delay = self._dwell()
                self.dwell_until = self.clock() + delay
                self._transition(
                    CyclerState.LOCKED,
                    str(endpoint),
                    meta=f"score={score} | dwell={delay:.0f}s",
                )
            else:
                self.consecutive_failures += 1
                self._index = (self._index + 1) % len(self._pairs)
                tlog("🟡", "CYCLER", "CANDIDATE-REJECTED", primary=str(endpoint),
                     meta=(
                         f"score={score} | failures={self.consecutive_failures}/"
                         f"{self.policy.failure_ceiling}"
                     ),
                     logger=self.logger)

                if self.consecutive_failures < self.policy.failure_ceiling:
                    return self.rng.uniform(*self.policy.retry_delay_s)

                delay = self.policy.backoff_s
                self.backoff_until = self.clock() + delay
                self._transition(
                    CyclerState.BACKING_OFF,
                    "failure ceiling",
                    meta=f"backoff={delay:.0f}s",
                )

        # Callbacks run outside the lock; they may call back into the cycler
        if locked:
            self.on_lock(endpoint, generation)
        else:
            self.on_exhausted()
        return delay

    def _step_locked(self) -> float:
        with self._lock:
            remaining = (self.dwell_until or 0) - self.clock()
            endpoint = self.locked_endpoint
            epoch = self._epoch
        if remaining > 0:
            return remaining

        # Dwell elapsed: re-validate the locked endpoint
        sample = self.probe(endpoint)
        with self._lock:
            if epoch != self._epoch:
                return 0.0
            self.history.add(sample)
            score = self.scorer.score(self.history.window(endpoint, self.scorer.policy.stability_k))

            if score.quality.at_least(QualityClass.GOOD):
                dwell = self._dwell()
                self.dwell_until = self.clock() + dwell
                tlog("🔒", "CYCLER", "REVALIDATED", primary=str(endpoint),
                     meta=f"score={score} | dwell={dwell:.0f}s", logger=self.logger)
                return dwell

            self.locked_endpoint = None
            self.dwell_until = None
            self.consecutive_failures = 1
            self._index = (self._index + 1) % len(self._pairs)
            self._transition(CyclerState.PROBING, "revalidation failed",
                             meta=f"score={score}")
            return self.rng.uniform(*self.policy.retry_delay_s)

    def _step_backing_off(self) -> float:
        with self._lock:
            remaining = (self.backoff_until or 0) - self.clock()
            if remaining > 0:
                return remaining
            self.consecutive_failures = 0
            self.backoff_until = None
            self._transition(CyclerState.PROBING, "backoff elapsed")
            return 0.0

    # ─── Loop ───

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                delay = self.step()
            except Exception:
                self.logger.exception("Cycler step failed")
                delay = self.rng.uniform(*self.policy.retry_delay_s)

            # Callers that set `stop` also call wake() to cut this wait short
            self._wake.wait(timeout=max(0.0, delay))
            self._wake.clear()

    # ─── Helpers (caller holds the lock where state is touched) ───

    def _dwell(self) -> float:
        low, high = (
            self.policy.dwell_degraded_s if self.degraded()
            else self.policy.dwell_normal_s
        )
        return self.rng.uniform(low, high)

    def _restart_probing(self) -> None:
        self._epoch += 1
        self._index = 0
        self.consecutive_failures = 0
        self.locked_endpoint = None
        self.dwell_until = None
        self.backoff_until = None
        if self.state != CyclerState.PROBING:
            self._transition(CyclerState.PROBING, "restart")

    def _transition(self, new: CyclerState, primary: str, meta: str | None = None) -> None:
        previous = self.state
        self.state = new
        tlog(CYCLER_EMOJI[new], "CYCLER", f"{previous} → {new}",
             primary=primary, meta=meta, logger=self.logger)
