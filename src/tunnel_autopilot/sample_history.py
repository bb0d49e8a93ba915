# ─── Standard library imports ───
import threading
from collections import deque

# ─── Project imports ───
from .config import config
from .models import Endpoint, ProbeSample


class SampleHistory:
    """
    Bounded, fixed-size rolling sample history per endpoint.

    Inserting into a full history evicts the oldest sample. Safe to share
    between the controller and cycler threads.
    """

    def __init__(self, size: int | None = None):
        self.size = size or config.HISTORY_SIZE
        self._samples: dict[Endpoint, deque[ProbeSample]] = {}
        self._lock = threading.Lock()

    def add(self, sample: ProbeSample) -> None:
        with self._lock:
            history = self._samples.setdefault(
                sample.endpoint, deque(maxlen=self.size)
            )
            history.append(sample)

    def window(self, endpoint: Endpoint, n: int | None = None) -> list[ProbeSample]:
        """Most recent `n` samples (all if None), oldest first."""
        with self._lock:
            samples = list(self._samples.get(endpoint, ()))
        return samples if n is None else samples[-n:]

    def latest(self, endpoint: Endpoint) -> ProbeSample | None:
        with self._lock:
            history = self._samples.get(endpoint)
            return history[-1] if history else None

    def clear(self, endpoint: Endpoint) -> None:
        with self._lock:
            self._samples.pop(endpoint, None)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._samples.values())
