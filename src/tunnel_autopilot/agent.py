# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import threading
from pathlib import Path
from typing import Callable

# ─── Project imports ───
from .config import config
from .probe import measure
from .scorer import Scorer
from .logger import get_logger
from .notifier import Notifier
from .status import render_status
from .session import SessionStore
from .geo_selector import GeoSelector
from .sample_history import SampleHistory
from .circuit_breaker import CircuitBreaker
from .endpoint_cycler import EndpointCycler
from .controller import FailoverController
from .config_writer import EngineOptions
from .scheduling_policy import SchedulingPolicy
from .engines import BackendEngineAdapter, default_adapters
from .interference import InterferenceDetector, RegionalCondition
from .bootstrap import (
    configured_backend,
    configured_candidates,
    configured_pairs,
    configured_role,
)
from .models import (
    BackendKind,
    ControllerMode,
    Endpoint,
    NodeRole,
    ProbeSample,
)


# Roles each engine understands
ENGINE_ROLES = {
    BackendKind.EASYTIER: (NodeRole.STANDALONE, NodeRole.CONNECTED),
    BackendKind.RATHOLE: (NodeRole.LISTENER, NodeRole.CONNECTOR, NodeRole.BIDIRECTIONAL),
}

def role_for_backend(kind: BackendKind, role: NodeRole) -> NodeRole:
    """Translate the configured role for the other engine when falling back."""
    if role in ENGINE_ROLES[kind]:
        return role
    match kind:
        case BackendKind.EASYTIER:
            return NodeRole.CONNECTED if role.dials_out else NodeRole.STANDALONE
        case BackendKind.RATHOLE:
            return NodeRole.BIDIRECTIONAL if role.dials_out else NodeRole.LISTENER

def engine_options(kind: BackendKind, role: NodeRole) -> EngineOptions:
    return EngineOptions(
        role=role_for_backend(kind, role),
        local_ip=config.LOCAL_IP,
        local_addr=config.RATHOLE_LOCAL_ADDR,
    )


class TunnelAgent:
    """
    Wires the failover engine together from configuration and runs its
    periodic tasks as daemon threads sharing one stop event:

    • controller: health ticks, restarts, emergency escalation
    • cycler: (protocol, port) probing for the active peer
    • geo: refinement + periodic rebalancing across peers
    • interference: regional-condition detection

    With FAILOVER_ENABLED=false only the controller runs, in monitor mode.
    """

    def __init__(
        self,
        adapters: dict[BackendKind, BackendEngineAdapter] | None = None,
        store: SessionStore | None = None,
        probe: Callable[..., ProbeSample] = measure,
    ):
        self.logger = get_logger("agent")
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

        backend = configured_backend()
        role = configured_role(backend)
        self.pairs = configured_pairs(backend)
        self.candidates = configured_candidates(backend, role)
        self.adapters = adapters or default_adapters()

        self.store = store or SessionStore(Path(config.STATE_DIR) / "session.json")
        self.history = SampleHistory(config.HISTORY_SIZE)
        self.scorer = Scorer()
        self.breaker = CircuitBreaker()

        self.interference = InterferenceDetector(probe=probe)
        self.geo = GeoSelector(scorer=self.scorer, probe=probe)
        self.cycler = EndpointCycler(
            self.pairs,
            host=self.candidates[0].host,
            on_lock=lambda endpoint, gen: self.controller.request_switch(
                endpoint, "cycler lock", gen
            ),
            on_exhausted=lambda: self.controller.request_emergency("cycler exhausted"),
            scorer=self.scorer,
            history=self.history,
            probe=probe,
            generation=lambda: self.controller.generation,
            degraded=lambda: self.store.snapshot().controller_mode == ControllerMode.DEGRADED,
        )

        self.controller = FailoverController(
            adapters=self.adapters,
            store=self.store,
            candidates=self.candidates,
            preferred_backend=backend,
            secret=config.NETWORK_SECRET,
            options={kind: engine_options(kind, role) for kind in self.adapters},
            breaker=self.breaker,
            scorer=self.scorer,
            history=self.history,
            probe=probe,
            notifier=Notifier(),
            scheduling=SchedulingPolicy(),
            cycler=self.cycler,
            geo=self.geo,
            restricted=lambda: self.interference.restricted,
            auto_switch=config.AUTO_SWITCH,
            failover_enabled=config.FAILOVER_ENABLED,
        )

        self.interference.subscribe(self._on_condition)

    # ─── Lifecycle ───

    def start(self) -> None:
        self.logger.info(
            f"🚀 Agent starting | candidates={len(self.candidates)} | "
            f"failover={'on' if config.FAILOVER_ENABLED else 'off'}"
        )
        for name, policy in (
            ("scoring", self.scorer.policy),
            ("cycler", self.cycler.policy),
            ("geo", self.geo.policy),
        ):
            self.logger.info(f"Policy {name}: {policy.summary()}")

        self.controller.initialize()

        self._spawn("controller", self.controller.run, self.stop_event)
        if not config.FAILOVER_ENABLED:
            return

        self._spawn("cycler", self.cycler.run, self.stop_event)
        self._spawn("interference", self.interference.run, self.stop_event)
        self._spawn(
            "geo-rebalance",
            self.geo.run,
            lambda: self.candidates,
            self._active_for_rebalance,
            lambda endpoint, gen: self.controller.request_switch(
                endpoint, "geo rebalance", gen
            ),
            lambda: self.interference.restricted,
            self.stop_event,
            lambda: self.controller.generation,
        )

    def shutdown(self, timeout: float = 10.0) -> None:
        self.stop_event.set()
        self.cycler.wake()
        self.controller.wake()

        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                self.logger.warning(f"Thread {thread.name} did not stop within {timeout:.0f}s")

        self.geo.shutdown()
        self.controller.shutdown()
        self.logger.info("🛑 Agent stopped")

    def _spawn(self, name: str, target: Callable, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    # ─── Operator surface ───

    def status(self) -> str:
        return render_status(
            self.store.snapshot(),
            breaker=self.breaker.snapshot(),
            switches=self.store.switch_history(),
        )

    def force_select(self, endpoint: Endpoint | str) -> None:
        if isinstance(endpoint, str):
            endpoint = Endpoint.parse(endpoint)
        self.controller.force_select(endpoint)

    def reset_breaker(self) -> None:
        self.controller.reset_breaker()

    # ─── Internal wiring ───

    def _on_condition(self, condition: RegionalCondition) -> None:
        self.cycler.reprioritize(condition == RegionalCondition.RESTRICTED)
        self.controller.wake()

    def _active_for_rebalance(self) -> tuple[Endpoint | None, float | None]:
        snapshot = self.store.snapshot()
        score = snapshot.current_score
        return snapshot.active_endpoint, score.value if score else None
