# --- Standard library imports ---
import time
import logging

# --- Project imports ---
from .logger import get_logger


_default_logger = get_logger("telemetry")

def tlog(
    emoji: str,
    subsystem: str,
    state: str,
    primary: str = "—--",
    meta: str | None = None,
    logger: logging.Logger | None = None,
    level: int = logging.INFO,
) -> None:
    """
    Emit a standardized telemetry log "tlog" line.

    Format:
        SUBSYSTEM STATE PRIMARY | meta data
    """
    msg = f"{subsystem:<12} {state:<20} {primary:<16}"
    if meta:
        msg += f" | {meta}"

    (logger or _default_logger).log(level, f"{emoji} {msg}", stacklevel=2)


class PhaseTimer:
    """
    Per-iteration phase timing for a periodic loop, logged at the TIMING
    level (visible with LOG_TIMING=true).

    `lap()` outside a started iteration is a no-op, so loop bodies can be
    driven directly (tests, one-off ticks) without a timer running.
    """

    def __init__(self, logger: logging.Logger, loop: str):
        self.logger = logger
        self.loop = loop
        self._iteration_start: float | None = None
        self._lap_start: float | None = None

    def start(self) -> None:
        now = time.perf_counter()
        self._iteration_start = now
        self._lap_start = now

    def lap(self, phase: str) -> None:
        if self._lap_start is None:
            return
        now = time.perf_counter()
        self.logger.timing(f"{self.loop} | {phase:<16} [{(now - self._lap_start) * 1000:8.1f} ms]")
        self._lap_start = now

    def end(self) -> float:
        """Close the iteration; returns its duration in seconds (0 if not started)."""
        if self._iteration_start is None:
            return 0.0
        elapsed = time.perf_counter() - self._iteration_start
        self.logger.timing(f"{self.loop} | {'total':<16} [{elapsed * 1000:8.1f} ms]")
        self._iteration_start = None
        self._lap_start = None
        return elapsed
