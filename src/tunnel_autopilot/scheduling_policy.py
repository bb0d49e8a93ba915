# --- Standard library imports ---
import random

# --- Project imports ---
from .logger import get_logger
from .models import QualityClass


# --- Scheduling policy constants ---
CONTROLLER_JITTER = 1.0       # seconds (fixed, internal)
MAX_SUPPRESSED_WIDENING = 8   # cap on ×2 widening while restarts are rejected

BASE_INTERVALS = {
    QualityClass.EXCELLENT: 60.0,
    QualityClass.GOOD: 30.0,
    QualityClass.POOR: 10.0,
    QualityClass.CRITICAL: 5.0,
}

class SchedulingPolicy:
    """
    Adaptive controller tick interval.

    Faster when quality drops, halved under restricted conditions, and
    widened while the circuit breaker keeps rejecting restarts so a dead
    link is not hammered.
    """

    def __init__(self, intervals: dict | None = None, jitter: float = CONTROLLER_JITTER):
        self.intervals = dict(intervals or BASE_INTERVALS)
        self.jitter = jitter
        self.logger = get_logger("scheduling_policy")

    def effective_runtime_interval(
        self,
        quality: QualityClass | None,
        restricted: bool = False,
        suppressed_ticks: int = 0,
    ) -> float:
        interval = self.intervals[quality or QualityClass.CRITICAL]
        if restricted:
            interval /= 2
        if suppressed_ticks > 0:
            widening = min(2 ** suppressed_ticks, MAX_SUPPRESSED_WIDENING)
            interval *= widening
            self.logger.debug(
                f"Restarts suppressed for {suppressed_ticks} tick(s); interval ×{widening}"
            )
        return interval

    def next_sleep(
        self,
        elapsed: float,
        quality: QualityClass | None,
        restricted: bool = False,
        suppressed_ticks: int = 0,
    ) -> float:
        return max(
            0.0,
            self.effective_runtime_interval(quality, restricted, suppressed_ticks)
            + random.uniform(-self.jitter, self.jitter)
            - elapsed,
        )
