# ─── Standard library imports ───
from pathlib import Path
from dataclasses import dataclass

# ─── Project imports ───
from .config import config
from .logger import get_logger
from .errors import InvalidCandidateList
from .engines import BackendEngineAdapter
from .session import load_previous_session
from .interference import parse_targets
from .models import BackendKind, Endpoint, NodeRole, Protocol
from .candidates import (
    SUPPORTED_PROTOCOLS,
    build_candidates,
    build_pairs,
    enabled_protocols,
    parse_pairs,
)


logger = get_logger("bootstrap")

@dataclass(frozen=True)
class EnvCapabilities:
    """
    Observed runtime capabilities derived at startup.

    These represent what the system is actually capable of doing,
    not what it is configured to do in theory.
    """
    installed_backends: tuple[BackendKind, ...]
    preferred_backend: BackendKind
    auto_switch: bool = False

    @property
    def can_fail_over_backend(self) -> bool:
        return len(self.installed_backends) > 1

    @property
    def can_start(self) -> bool:
        """Preferred engine present, or AUTO_SWITCH has another one to use."""
        if self.preferred_backend in self.installed_backends:
            return True
        return self.auto_switch and bool(self.installed_backends)

# ─── Configuration → domain values ───

def configured_backend() -> BackendKind:
    try:
        return BackendKind(config.TUNNEL_MODE)
    except ValueError:
        raise InvalidCandidateList(f"unknown TUNNEL_MODE {config.TUNNEL_MODE!r}") from None

def configured_role(backend: BackendKind) -> NodeRole:
    if not config.NODE_ROLE:
        return NodeRole.default_for(backend)
    try:
        return NodeRole(config.NODE_ROLE)
    except ValueError:
        raise InvalidCandidateList(f"unknown NODE_ROLE {config.NODE_ROLE!r}") from None

def configured_pairs(backend: BackendKind) -> list[tuple[Protocol, int]]:
    try:
        primary = (Protocol(config.PROTOCOL), config.PORT)
    except ValueError:
        raise InvalidCandidateList(f"unknown PROTOCOL {config.PROTOCOL!r}") from None
    if primary[0] not in SUPPORTED_PROTOCOLS[backend]:
        raise InvalidCandidateList(f"PROTOCOL {primary[0]} is not supported by {backend}")

    protocols = enabled_protocols(backend, config.ENABLED_PROTOCOLS)
    return build_pairs(primary, protocols, config.CANDIDATE_PORTS or [config.PORT])

def configured_candidates(backend: BackendKind, role: NodeRole) -> list[Endpoint]:
    """Peers × pairs; listening-only roles without peers supervise their own listener."""
    peers = config.REMOTE_SERVER
    if not peers and not role.dials_out:
        peers = ["127.0.0.1"]
    return build_candidates(peers, configured_pairs(backend))

# ─── Startup ───

def bootstrap(adapters: dict[BackendKind, BackendEngineAdapter]) -> EnvCapabilities:
    """
    Validate runtime configuration and derive startup capabilities.

    Hard invariant violations raise and abort startup.
    Soft checks (installed engines, previous session) are logged only.
    """

    _validate_invariants()
    _log_previous_session(Path(config.STATE_DIR) / "session.json")
    return discover_runtime_capabilities(adapters)

def _validate_invariants() -> None:
    """
    Validate the candidate configuration.

    Violations indicate a configuration that cannot behave correctly
    and fail fast with InvalidCandidateList.
    """
    backend = configured_backend()
    role = configured_role(backend)

    if role.dials_out and not config.REMOTE_SERVER:
        raise InvalidCandidateList(f"NODE_ROLE={role.value} needs REMOTE_SERVER")

    candidates = configured_candidates(backend, role)
    parse_pairs(config.EMERGENCY_PAIRS)
    parse_targets(config.INTERFERENCE_CONTROL_TARGETS)
    parse_targets(config.INTERFERENCE_SENSITIVE_TARGETS)

    if not config.NETWORK_SECRET:
        logger.warning("NETWORK_SECRET is empty; tunnel traffic is unauthenticated")

    logger.info(
        f"Configuration OK | backend={backend} | role={role.value} | "
        f"candidates={len(candidates)}"
    )

def _log_previous_session(path: Path) -> None:
    previous = load_previous_session(path)
    if previous is None:
        logger.info("No previous session on record")
        return
    # Observability only; state is rebuilt from a fresh health check
    logger.info(
        f"Previous session: backend={previous.get('active_backend')} | "
        f"endpoint={previous.get('active_endpoint')} | "
        f"mode={previous.get('controller_mode')}"
    )

def discover_runtime_capabilities(
    adapters: dict[BackendKind, BackendEngineAdapter],
) -> EnvCapabilities:
    """
    Check which engine binaries are present.

    A missing preferred engine is not fatal when AUTO_SWITCH can fall
    back to the other one.
    """
    installed = []
    for kind, adapter in adapters.items():
        if adapter.installed():
            logger.info(f"Engine available: {kind}")
            installed.append(kind)
        else:
            logger.warning(f"Engine NOT installed: {kind}")

    capabilities = EnvCapabilities(
        installed_backends=tuple(installed),
        preferred_backend=configured_backend(),
        auto_switch=config.AUTO_SWITCH,
    )
    if not capabilities.can_start:
        logger.error(
            f"Preferred engine {capabilities.preferred_backend} missing and no fallback available"
        )
    return capabilities
