# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import time
import logging
import threading
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import Callable, Sequence

# ─── Project imports ───
from .config import config
from .probe import measure
from .scorer import Scorer
from .telemetry import PhaseTimer, tlog
from .logger import get_logger
from .notifier import Notifier
from .config_writer import EngineOptions
from .sample_history import SampleHistory
from .circuit_breaker import CircuitBreaker
from .emergency import EmergencyRecovery
from .geo_selector import GeoSelector
from .endpoint_cycler import EndpointCycler
from .scheduling_policy import SchedulingPolicy
from .session import SessionStore
from .engines import BackendEngineAdapter, EngineHandle
from .errors import (
    BinaryMissing,
    ConfigWriteError,
    ExhaustedCandidates,
    InvalidCandidateList,
    StartError,
)
from .models import (
    MODE_EMOJI,
    QUALITY_EMOJI,
    BackendKind,
    ControllerMode,
    Endpoint,
    NodeRole,
    ProbeSample,
    QualityClass,
    QualityScore,
)


# Breaker OPEN entries (without an intervening success) that escalate to emergency
EMERGENCY_AFTER_OPENS = 2

# Consecutive ticks a new quality class must hold before it is published
CONFIRM_TICKS = 2


def _remaining(deadline: float | None) -> float | None:
    return None if deadline is None else max(0.0, deadline - time.monotonic())


@dataclass(frozen=True)
class SwitchRequest:
    endpoint: Endpoint
    reason: str
    generation: int | None   # None = operator request, never stale
    force: bool = False


class FailoverController:
    """
    Drives the active engine from periodic health checks.

    Each tick:
    1. Apply queued requests (operator force-select, cycler lock, geo
       rebalance); requests from an older generation are discarded
    2. Probe + score the active endpoint (with hysteresis)
    3. ≥ GOOD   → NORMAL, nothing to do
       POOR     → DEGRADED, in-place optimization via the cycler
       CRITICAL → restart (breaker gated) on the best known endpoint
       a dead engine process or an unreachable latest probe is handled
       like CRITICAL
    4. Escalate to emergency recovery on cycler exhaustion or repeated
       breaker re-opens; ALERT when that search is exhausted

    The controller is the only SessionState writer. Every successful
    switch bumps `generation`.
    """

    def __init__(
        self,
        adapters: dict[BackendKind, BackendEngineAdapter],
        store: SessionStore,
        candidates: Sequence[Endpoint],
        preferred_backend: BackendKind,
        secret: str = "",
        options: dict[BackendKind, EngineOptions] | None = None,
        breaker: CircuitBreaker | None = None,
        scorer: Scorer | None = None,
        history: SampleHistory | None = None,
        probe: Callable[..., ProbeSample] = measure,
        notifier: Notifier | None = None,
        emergency_pairs: Sequence | None = None,
        emergency_timeout: float | None = None,
        scheduling: SchedulingPolicy | None = None,
        cycler: EndpointCycler | None = None,
        geo: GeoSelector | None = None,
        restricted: Callable[[], bool] = lambda: False,
        auto_switch: bool = True,
        failover_enabled: bool = True,
    ):
        if not candidates:
            raise InvalidCandidateList("controller needs at least one candidate endpoint")

        self.adapters = adapters
        self.store = store
        self.writer = store.claim_writer()
        self.candidates = list(candidates)
        self.preferred_backend = preferred_backend
        self.secret = secret
        self.options = options or {
            kind: EngineOptions(role=NodeRole.default_for(kind)) for kind in adapters
        }
        self.breaker = breaker or CircuitBreaker()
        self.scorer = scorer or Scorer()
        self.history = history or SampleHistory()
        self.probe = probe
        self.notifier = notifier or Notifier()
        self.emergency = EmergencyRecovery(
            self._try_endpoint, pairs=emergency_pairs, attempt_timeout=emergency_timeout
        )
        self.scheduling = scheduling or SchedulingPolicy()
        self.cycler = cycler
        self.geo = geo
        self.restricted = restricted
        self.auto_switch = auto_switch
        self.failover_enabled = failover_enabled
        self.logger = get_logger("controller")
        self.timer = PhaseTimer(self.logger, "tick")

        # ─── Engine ───
        self._handle: EngineHandle | None = None
        self._target: Endpoint = self.candidates[0]

        # ─── Cross-thread inputs ───
        self._lock = threading.Lock()
        self._generation = 0
        self._requests: deque[SwitchRequest] = deque()
        self._emergency_reason: str | None = None
        self._clear_alert = False
        self._wake = threading.Event()

        # ─── Scoring / publication ───
        self._previous_quality: QualityClass | None = None
        self._published_quality: QualityClass | None = None
        self._pending_quality: QualityClass | None = None
        self._pending_ticks = 0
        self.suppressed_ticks = 0

    # ─── Cross-thread API ───

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def peers(self) -> list[str]:
        return list(dict.fromkeys(c.host for c in self.candidates))

    def request_switch(self, endpoint: Endpoint, reason: str, generation: int | None) -> None:
        """Queue a switch proposal; applied on the next tick."""
        with self._lock:
            self._requests.append(SwitchRequest(endpoint, reason, generation))
        self._wake.set()

    def force_select(self, endpoint: Endpoint) -> None:
        """Operator override: switch on the next tick, bypassing the breaker."""
        with self._lock:
            self._requests.append(SwitchRequest(endpoint, "operator", None, force=True))
        tlog("🧭", "CONTROLLER", "FORCE-SELECT", primary=str(endpoint), logger=self.logger)
        self._wake.set()

    def reset_breaker(self) -> None:
        """Operator override: close the breaker, clear ALERT, re-arm alerts."""
        self.breaker.reset()
        self.notifier.rearm()
        with self._lock:
            self._clear_alert = True
        self._wake.set()

    def request_emergency(self, reason: str) -> None:
        with self._lock:
            if self._emergency_reason is None:
                self._emergency_reason = reason
        self._wake.set()

    def wake(self) -> None:
        self._wake.set()

    # ─── Lifecycle ───

    def initialize(self, endpoint: Endpoint | None = None) -> bool:
        """
        Bring up the first engine: explicit endpoint, else the geo
        selector's fast pick, else the first configured candidate.
        """
        if endpoint is None:
            endpoint = self.geo.select(self.candidates) if self.geo else self.candidates[0]
        self._target = endpoint

        if not self.failover_enabled:
            self.logger.warning("Failover disabled; starting engine without supervision")

        ok = self._switch_to(endpoint, "initial", ControllerMode.NORMAL)
        if not ok:
            self.breaker.record_failure()
            self._set_mode(ControllerMode.DEGRADED)
        return ok

    def shutdown(self) -> None:
        self._stop_engine()

    def run(self, stop: threading.Event) -> None:
        """
        Supervisor loop. Exceptions are logged and the loop continues;
        the interval adapts to quality, regional conditions and breaker
        suppression.
        """
        while not stop.is_set():
            self.timer.start()

            try:
                quality = self.tick()
            except Exception as e:
                self.logger.exception(f"Unhandled exception during controller tick: {e}")
                quality = QualityClass.CRITICAL

            remaining = self.scheduling.next_sleep(
                self.timer.end(),
                quality,
                restricted=self.restricted(),
                suppressed_ticks=self.suppressed_ticks,
            )
            self.logger.debug(f"💤 Sleeping ... {remaining:.2f} s")
            self._wake.wait(remaining)
            self._wake.clear()

        self.shutdown()

    # ─── Tick ───

    def tick(self) -> QualityClass:
        self._apply_operator_flags()
        self._apply_requests()
        self.timer.lap("requests")

        mode = self.store.snapshot().controller_mode
        if mode == ControllerMode.ALERT:
            with self._lock:
                self._emergency_reason = None
            # Announced once on entry (_set_mode); idle ticks widen like suppressed restarts
            self.suppressed_ticks += 1
            self.logger.debug(
                "ALERT: awaiting operator reset_breaker() or force_select()"
            )
            return QualityClass.CRITICAL

        with self._lock:
            emergency_reason, self._emergency_reason = self._emergency_reason, None
        if emergency_reason and self.failover_enabled:
            self._run_emergency(emergency_reason)
            return self._published_quality or QualityClass.CRITICAL

        active = self.store.snapshot().active_endpoint or self._target
        alive = self._engine_alive()

        sample = self.probe(active)
        self.history.add(sample)
        raw = self.scorer.score(self.history.window(active, config.SCORE_WINDOW))
        score = self.scorer.rescore(raw, self._previous_quality)
        self._previous_quality = score.quality
        self._publish_score(score)
        self.timer.lap("probe+score")

        tlog(QUALITY_EMOJI[score.quality], "CONTROLLER", "TICK", primary=str(active),
             meta=f"score={score} | engine={'up' if alive else 'down'}", logger=self.logger)

        if not self.failover_enabled:
            return score.quality

        if not alive:
            self._recover(active, "engine down")
        elif not sample.reachable or score.quality == QualityClass.CRITICAL:
            # An unreachable active endpoint is down now, whatever the window says
            self._recover(active, "critical quality")
        elif score.quality == QualityClass.POOR:
            self._optimize(active)
        else:
            self.suppressed_ticks = 0
            self._set_mode(ControllerMode.NORMAL)

        return score.quality

    # ─── Tick phases ───

    def _apply_operator_flags(self) -> None:
        with self._lock:
            clear_alert, self._clear_alert = self._clear_alert, False
        if clear_alert:
            self.suppressed_ticks = 0
            if self.store.snapshot().controller_mode == ControllerMode.ALERT:
                self._set_mode(ControllerMode.DEGRADED)

    def _apply_requests(self) -> None:
        with self._lock:
            requests = list(self._requests)
            self._requests.clear()

        for request in requests:
            if not request.force and self.store.snapshot().controller_mode == ControllerMode.ALERT:
                tlog("🗑️ ", "CONTROLLER", "DROPPED-IN-ALERT", primary=str(request.endpoint),
                     meta=f"reason={request.reason}", logger=self.logger)
                continue

            current = self.generation
            if request.generation is not None and request.generation != current:
                tlog("🗑️ ", "CONTROLLER", "STALE-REQUEST", primary=str(request.endpoint),
                     meta=(
                         f"reason={request.reason} | gen={request.generation} "
                         f"current={current}"
                     ),
                     logger=self.logger)
                continue

            snapshot = self.store.snapshot()
            if request.endpoint == snapshot.active_endpoint and self._engine_alive():
                self.logger.debug(f"Request for active endpoint ignored: {request.endpoint}")
                continue

            if request.force:
                self._switch_to(request.endpoint, request.reason, ControllerMode.NORMAL)
                continue

            if not self.failover_enabled:
                continue
            if not self.breaker.allow_attempt():
                self._suppressed(request.reason)
                continue

            mode = snapshot.controller_mode
            if mode == ControllerMode.EMERGENCY:
                mode = ControllerMode.NORMAL
            self._record(
                self._switch_to(request.endpoint, request.reason, mode, restore_previous=True)
            )

    def _optimize(self, active: Endpoint) -> None:
        """POOR: prefer a better endpoint without tearing down a working one."""
        self._set_mode(ControllerMode.DEGRADED)
        target = self.cycler.target if self.cycler else None

        if target is None or target == active:
            if self.cycler:
                self.cycler.wake()
            return

        if not self.breaker.allow_attempt():
            self._suppressed("optimize")
            return
        self._record(
            self._switch_to(target, "optimize", ControllerMode.DEGRADED, restore_previous=True)
        )

    def _recover(self, active: Endpoint, reason: str) -> None:
        """CRITICAL or dead engine: stop, then restart if the breaker allows."""
        self._set_mode(ControllerMode.DEGRADED)
        self._stop_engine()

        if not self.breaker.allow_attempt():
            self._suppressed(reason)
            return

        target = self._next_endpoint(active)
        ok = self._switch_to(target, reason, ControllerMode.NORMAL)
        self._record(ok)

        if not ok and self.breaker.open_count >= EMERGENCY_AFTER_OPENS:
            self.request_emergency(f"breaker opened {self.breaker.open_count}×")

    def _next_endpoint(self, active: Endpoint) -> Endpoint:
        if self.cycler and self.cycler.target is not None:
            return self.cycler.target
        if self.geo:
            cached = self.geo.best_cached(exclude=active)
            if cached is not None:
                return cached
        return active

    def _run_emergency(self, reason: str) -> None:
        self._set_mode(ControllerMode.EMERGENCY)
        tlog("🟠", "CONTROLLER", "EMERGENCY", primary=reason, logger=self.logger)
        self._stop_engine()

        try:
            endpoint = self.emergency.recover(self.peers)
        except ExhaustedCandidates as e:
            self._set_mode(ControllerMode.ALERT)
            self.notifier.notify("Tunnel unrecoverable", f"{e}; trigger={reason}")
            return

        self.breaker.record_success()
        self.suppressed_ticks = 0
        if self.cycler:
            self.cycler.notify_recovered()
        self.logger.info(f"Emergency recovery settled on {endpoint}")

    # ─── Engine plumbing ───

    def _try_endpoint(self, endpoint: Endpoint, timeout: float) -> bool:
        """Emergency attempt: start + verify within `timeout`, publishing on success."""
        return self._switch_to(endpoint, "emergency", ControllerMode.NORMAL, budget=timeout)

    def _switch_to(
        self,
        endpoint: Endpoint,
        reason: str,
        mode: ControllerMode,
        budget: float | None = None,
        restore_previous: bool = False,
    ) -> bool:
        """
        Stop the current engine, start `endpoint` and verify it with a probe.
        Publishes the switch only when verified.

        `budget` bounds engine start + verification together. With
        `restore_previous`, a failed switch brings back the engine that was
        running before, so an optimization never leaves the tunnel down.
        """
        deadline = None if budget is None else time.monotonic() + budget
        previous = self._handle if self._engine_alive() else None

        self._stop_engine()
        self._target = endpoint

        started = self._start(endpoint, timeout=_remaining(deadline))
        if started is None:
            if restore_previous:
                self._restore(previous)
            return False
        backend, handle = started

        probe_budget = None
        if deadline is not None:
            probe_budget = max(0.1, min(config.PROBE_BUDGET_S, _remaining(deadline)))

        sample = self.probe(endpoint, probe_budget)
        if not sample.reachable:
            tlog("🔴", "CONTROLLER", "VERIFY-FAILED", primary=str(endpoint),
                 meta=f"backend={backend} | reason={reason}", logger=self.logger,
                 level=logging.WARNING)
            self._stop_handle(handle)
            if restore_previous:
                self._restore(previous)
            return False

        self._handle = handle
        self.suppressed_ticks = 0
        self.history.clear(endpoint)
        self.history.add(sample)
        score = self.scorer.score([sample])
        self._previous_quality = score.quality

        with self._lock:
            self._generation += 1
            generation = self._generation

        self.writer.switch(endpoint, backend, reason, controller_mode=mode)
        self._published_quality = None
        self._publish_score(score)

        tlog("🔀", "CONTROLLER", "SWITCHED", primary=str(endpoint),
             meta=f"backend={backend} | reason={reason} | gen={generation}",
             logger=self.logger)

        if self.cycler:
            self.cycler.set_host(endpoint.host)
        return True

    def _restore(self, previous: EngineHandle | None) -> None:
        """Restart the engine a failed switch replaced; SessionState still describes it."""
        if previous is None:
            return

        started = self._start(previous.endpoint, first=previous.backend)
        if started is None:
            # Next tick sees a dead engine and goes through recovery
            tlog("🔴", "CONTROLLER", "RESTORE-FAILED", primary=str(previous.endpoint),
                 logger=self.logger, level=logging.ERROR)
            return

        backend, self._handle = started
        self._target = previous.endpoint
        tlog("↩️ ", "CONTROLLER", "RESTORED", primary=str(previous.endpoint),
             meta=f"backend={backend}", logger=self.logger)

    def _start(
        self,
        endpoint: Endpoint,
        first: BackendKind | None = None,
        timeout: float | None = None,
    ) -> tuple[BackendKind, EngineHandle] | None:
        """Start on the preferred backend; fall back when it is missing or unsupported."""
        order = [first or self.preferred_backend]
        if self.auto_switch:
            order += [kind for kind in self.adapters if kind != order[0]]

        for backend in order:
            adapter = self.adapters.get(backend)
            if adapter is None:
                continue
            if not adapter.supports(endpoint.protocol):
                self.logger.info(f"{backend} does not carry {endpoint.protocol}; trying next backend")
                continue
            try:
                handle = adapter.start(
                    endpoint, self.secret, self.options[backend], timeout=timeout
                )
                return backend, handle
            except BinaryMissing as e:
                self.logger.warning(f"{e}; trying next backend")
                continue
            except (StartError, ConfigWriteError) as e:
                tlog("🔴", "ENGINE", "START-FAILED", primary=str(endpoint),
                     meta=str(e), logger=self.logger,
                     level=logging.WARNING)
                return None

        self.logger.error(f"No backend could start {endpoint}")
        return None

    def _stop_engine(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self._stop_handle(handle)

    def _stop_handle(self, handle: EngineHandle) -> None:
        try:
            self.adapters[handle.backend].stop(handle)
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.warning(f"Engine stop failed ({e.__class__.__name__}: {e})")

    def _engine_alive(self) -> bool:
        handle = self._handle
        return handle is not None and self.adapters[handle.backend].is_alive(handle)

    # ─── Helpers ───

    def _record(self, success: bool) -> None:
        if success:
            self.breaker.record_success()
            self.suppressed_ticks = 0
        else:
            self.breaker.record_failure()

    def _suppressed(self, reason: str) -> None:
        self.suppressed_ticks += 1
        snap = self.breaker.snapshot()
        tlog("⏸️ ", "CONTROLLER", "RESTART-SUPPRESSED", primary=reason,
             meta=f"breaker={snap.state} | suppressed={self.suppressed_ticks}",
             logger=self.logger)

    def _set_mode(self, mode: ControllerMode) -> None:
        previous = self.store.snapshot().controller_mode
        if previous == mode:
            return
        self.writer.update(controller_mode=mode)
        tlog(MODE_EMOJI[mode], "CONTROLLER", f"{previous} → {mode}", logger=self.logger,
             level=logging.ERROR if mode == ControllerMode.ALERT else logging.INFO)

    def _publish_score(self, score: QualityScore) -> None:
        """Publish the score; a class change needs CONFIRM_TICKS consecutive ticks."""
        if self._published_quality is None or score.quality == self._published_quality:
            self._published_quality = score.quality
            self._pending_quality = None
            self._pending_ticks = 0
            self.writer.update(current_score=score)
            return

        if score.quality == self._pending_quality:
            self._pending_ticks += 1
        else:
            self._pending_quality = score.quality
            self._pending_ticks = 1

        if self._pending_ticks >= CONFIRM_TICKS:
            previous = self._published_quality
            self._published_quality = score.quality
            self._pending_quality = None
            self._pending_ticks = 0
            self.writer.update(current_score=score)
            tlog(QUALITY_EMOJI[score.quality], "CONTROLLER", "CLASS-CHANGE",
                 primary=f"{previous} → {score.quality}", meta=f"score={score}",
                 logger=self.logger)
