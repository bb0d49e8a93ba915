# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import time
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Sequence

# ─── Project imports ───
from .probe import measure
from .scorer import Scorer
from .policy import GeoPolicy
from .telemetry import tlog
from .logger import get_logger
from .errors import InvalidCandidateList
from .models import Endpoint, GeoCandidate, ProbeSample


ProbeFn = Callable[..., ProbeSample]


class GeoSelector:
    """
    Chooses among candidate peers by measured network proximity.

    Two speeds:
    • select(): fast, fail-open, hard wall-clock budget
    • refine(): slow, thorough; refreshes the GeoCandidate cache that
                  the periodic rebalancing cycle consumes

    The cache is owned here; everyone else reads it through
    `cached()` / `best_cached()` / `best_alternative()`.
    """

    def __init__(
        self,
        policy: GeoPolicy | None = None,
        scorer: Scorer | None = None,
        probe: ProbeFn = measure,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy or GeoPolicy()
        self.scorer = scorer or Scorer()
        self.probe = probe
        self.clock = clock
        self.logger = get_logger("geo_selector")

        self._executor = ThreadPoolExecutor(
            max_workers=self.policy.max_workers,
            thread_name_prefix="geo-probe",
        )
        self._cache: dict[Endpoint, GeoCandidate] = {}
        self._lock = threading.Lock()
        self._refine_thread: threading.Thread | None = None

    # ─── Fast selection ───

    def select(
        self,
        candidates: Sequence[Endpoint],
        time_budget: float | None = None,
        refine: bool = True,
    ) -> Endpoint:
        """
        Probe every candidate concurrently and return the lowest-latency
        reachable one.

        Always returns within `time_budget` (plus scheduling overhead):
        probes still running at the deadline are abandoned and their
        results ignored. With nothing reachable in time, the first
        configured candidate is returned.

        Raises:
            InvalidCandidateList if `candidates` is empty.
        """
        candidates = list(candidates)
        if not candidates:
            raise InvalidCandidateList("geo selection needs at least one candidate")

        budget = self.policy.select_budget_s if time_budget is None else time_budget
        per_probe = min(self.policy.per_probe_budget_s, budget)
        start = time.monotonic()

        futures: dict[Future, Endpoint] = {
            self._executor.submit(self.probe, c, per_probe, throughput=False): c
            for c in candidates
        }
        remaining = max(0.0, budget - (time.monotonic() - start))
        done, not_done = wait(futures, timeout=remaining)

        for future in not_done:
            future.cancel()   # queued ones never start; running ones are ignored

        reachable: list[ProbeSample] = []
        for future in done:
            if future.cancelled() or future.exception() is not None:
                continue
            sample = future.result()
            if sample.reachable and sample.latency_ms is not None:
                reachable.append(sample)

        elapsed_ms = (time.monotonic() - start) * 1000

        if reachable:
            order = {c: i for i, c in enumerate(candidates)}
            best = min(reachable, key=lambda s: (s.latency_ms, order[s.endpoint]))
            chosen = best.endpoint
            tlog("🌍", "GEO", "SELECTED", primary=str(chosen),
                 meta=(
                     f"rtt={best.latency_ms:.0f}ms | reachable={len(reachable)}/"
                     f"{len(candidates)} | took={elapsed_ms:.0f}ms"
                 ),
                 logger=self.logger)
        else:
            chosen = candidates[0]
            tlog("🟡", "GEO", "FALLBACK", primary=str(chosen),
                 meta=f"none reachable in {budget:.1f}s | took={elapsed_ms:.0f}ms",
                 logger=self.logger)

        if refine:
            self.refine_async(candidates)
        return chosen

    # ─── Background refinement ───

    def refine(self, candidates: Sequence[Endpoint]) -> list[GeoCandidate]:
        """
        Thorough pass: several attempts per candidate, longer budget and a
        throughput sample. Refreshes the cache and returns the new entries,
        best score first.
        """
        futures = {
            self._executor.submit(
                self.probe,
                c,
                self.policy.refine_budget_s,
                attempts=self.policy.refine_attempts,
                throughput=True,
            ): c
            for c in candidates
        }

        refreshed = []
        for future, endpoint in futures.items():
            try:
                sample = future.result()
            except Exception:
                self.logger.exception(f"Refinement probe failed for {endpoint}")
                sample = ProbeSample.unreachable(endpoint)

            entry = GeoCandidate(
                endpoint=endpoint,
                score=self.scorer.score([sample]),
                last_evaluated=self.clock(),
            )
            refreshed.append(entry)

        with self._lock:
            for entry in refreshed:
                self._cache[entry.endpoint] = entry

        refreshed.sort(key=lambda e: e.score.value, reverse=True)
        if refreshed:
            best = refreshed[0]
            tlog("🌍", "GEO", "REFINED", primary=str(best.endpoint),
                 meta=f"score={best.score} | candidates={len(refreshed)}",
                 logger=self.logger)
        return refreshed

    def refine_async(self, candidates: Sequence[Endpoint]) -> bool:
        """Start a refinement pass unless one is already running."""
        with self._lock:
            if self._refine_thread is not None and self._refine_thread.is_alive():
                return False
            self._refine_thread = threading.Thread(
                target=self._refine_safely,
                args=(list(candidates),),
                name="geo-refine",
                daemon=True,
            )
            self._refine_thread.start()
            return True

    def _refine_safely(self, candidates: list[Endpoint]) -> None:
        try:
            self.refine(candidates)
        except Exception:
            self.logger.exception("Background refinement failed")

    # ─── Cache readers ───

    def cached(self) -> list[GeoCandidate]:
        with self._lock:
            entries = list(self._cache.values())
        return sorted(entries, key=lambda e: e.score.value, reverse=True)

    def best_cached(self, exclude: Endpoint | None = None) -> Endpoint | None:
        for entry in self.cached():
            if entry.endpoint != exclude and entry.score.value > 0:
                return entry.endpoint
        return None

    def best_alternative(self, active: Endpoint, active_score: float) -> Endpoint | None:
        """
        Best cached candidate only if it beats the active score by the
        rebalance margin; small differences are treated as noise.
        """
        for entry in self.cached():
            if entry.endpoint == active:
                continue
            if entry.score.value - active_score >= self.policy.rebalance_margin:
                return entry.endpoint
            return None
        return None

    # ─── Periodic rebalancing ───

    def run(
        self,
        candidates: Callable[[], Sequence[Endpoint]],
        active: Callable[[], tuple[Endpoint | None, float | None]],
        on_rebalance: Callable[[Endpoint, int], None],
        restricted: Callable[[], bool],
        stop: threading.Event,
        generation: Callable[[], int] = lambda: 0,
    ) -> None:
        """
        Rebalancing loop: every interval (halved while restricted), refine
        and propose a switch when a materially better candidate exists.
        """
        while not stop.wait(self.policy.rebalance_every(restricted())):
            try:
                self.rebalance_once(candidates(), *active(), on_rebalance, generation())
            except Exception:
                self.logger.exception("Rebalance cycle failed")

    def rebalance_once(
        self,
        candidates: Sequence[Endpoint],
        active_endpoint: Endpoint | None,
        active_score: float | None,
        on_rebalance: Callable[[Endpoint, int], None],
        generation: int = 0,
    ) -> Endpoint | None:
        """
        One refinement pass plus margin check. `generation` is the controller
        generation observed before refining; the proposal carries it so a
        switch made in the meantime invalidates it.
        """
        self.refine(candidates)
        if active_endpoint is None or active_score is None:
            return None

        alternative = self.best_alternative(active_endpoint, active_score)
        if alternative is None:
            tlog("🟢", "GEO", "REBALANCE-HOLD", primary=str(active_endpoint),
                 meta=f"active_score={active_score:.0f}", logger=self.logger)
            return None

        tlog("🔀", "GEO", "REBALANCE", primary=f"{active_endpoint} → {alternative}",
             meta=f"active_score={active_score:.0f}", logger=self.logger)
        on_rebalance(alternative, generation)
        return alternative

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
