# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import time
import threading
from enum import Enum, auto
from dataclasses import dataclass
from typing import Callable

# ─── Project imports ───
from .config import config
from .telemetry import tlog
from .logger import get_logger


class BreakerState(Enum):
    CLOSED = auto()
    OPEN = auto()
    HALF_OPEN = auto()

    def __str__(self) -> str:
        return self.name

BREAKER_EMOJI = {
    BreakerState.CLOSED:    "🟢",
    BreakerState.HALF_OPEN: "🟡",
    BreakerState.OPEN:      "🔴",
}


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time view of breaker internals, for status and logs."""
    state: BreakerState
    failure_count: int
    threshold: int
    cool_down: float
    opened_at: float | None
    open_count: int


class CircuitBreaker:
    """
    Failure-count/backoff gate on automatic engine restarts.

    Transitions:
    • CLOSED: counts consecutive failures; at threshold → OPEN
    • OPEN: rejects attempts until the cool-down elapses → HALF_OPEN
    • HALF_OPEN: admits a single trial
                  success → CLOSED (counter reset, cool-down reset)
                  failure → OPEN with the cool-down doubled, up to a cap

    Invariants:
    • failure_count never exceeds threshold while CLOSED
    • State is mutated only through this class, under its mutex
    """

    def __init__(
        self,
        threshold: int | None = None,
        cool_down: float | None = None,
        max_cool_down: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold or config.BREAKER_THRESHOLD
        self.base_cool_down = cool_down or config.BREAKER_COOL_DOWN_S
        self.max_cool_down = max_cool_down or config.BREAKER_MAX_COOL_DOWN_S
        self.clock = clock
        self.logger = get_logger("circuit_breaker")

        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._cool_down = self.base_cool_down
        self._trial_in_flight = False
        self._open_count = 0   # OPEN entries since last CLOSED

    # ─── Public API ───

    def allow_attempt(self) -> bool:
        """
        Return True if an automatic restart may be attempted now.

        In HALF_OPEN exactly one caller gets True until the trial outcome
        is recorded.
        """
        with self._lock:
            self._maybe_half_open()

            match self._state:
                case BreakerState.CLOSED:
                    return True
                case BreakerState.HALF_OPEN if not self._trial_in_flight:
                    self._trial_in_flight = True
                    return True
                case _:
                    return False

    def record_success(self) -> None:
        with self._lock:
            previous = self._state
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._cool_down = self.base_cool_down
            self._trial_in_flight = False
            self._open_count = 0

        if previous != BreakerState.CLOSED:
            self._emit(BreakerState.CLOSED, "trial succeeded")

    def record_failure(self) -> None:
        with self._lock:
            self._maybe_half_open()

            if self._state == BreakerState.HALF_OPEN:
                self._cool_down = min(self._cool_down * 2, self.max_cool_down)
                self._trip()
                reason = "trial failed"
            elif self._state == BreakerState.CLOSED:
                self._failure_count += 1
                if self._failure_count < self.threshold:
                    return
                self._trip()
                reason = "threshold reached"
            else:
                return  # already OPEN; nothing new to count

        self._emit(BreakerState.OPEN, reason)

    def reset(self) -> None:
        """Operator override: force CLOSED and clear every counter."""
        with self._lock:
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._cool_down = self.base_cool_down
            self._trial_in_flight = False
            self._open_count = 0
        self._emit(BreakerState.CLOSED, "manual reset")

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def open_count(self) -> int:
        with self._lock:
            return self._open_count

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            self._maybe_half_open()
            return CircuitBreakerState(
                state=self._state,
                failure_count=self._failure_count,
                threshold=self.threshold,
                cool_down=self._cool_down,
                opened_at=self._opened_at,
                open_count=self._open_count,
            )

    # ─── Internals (caller holds the lock) ───

    def _trip(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self.clock()
        self._failure_count = min(self._failure_count, self.threshold)
        self._trial_in_flight = False
        self._open_count += 1

    def _maybe_half_open(self) -> None:
        if (
            self._state == BreakerState.OPEN
            and self._opened_at is not None
            and self.clock() - self._opened_at >= self._cool_down
        ):
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False

    def _emit(self, state: BreakerState, reason: str) -> None:
        snap = self.snapshot()
        tlog(
            BREAKER_EMOJI[state],
            "BREAKER",
            state.name,
            primary=reason,
            meta=(
                f"failures={snap.failure_count}/{snap.threshold} | "
                f"cool_down={snap.cool_down:.0f}s"
            ),
            logger=self.logger,
        )
