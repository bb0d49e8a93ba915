# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import json
import time
import threading
from pathlib import Path
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable

# ─── Project imports ───
from .logger import get_logger
from .models import BackendKind, ControllerMode, Endpoint, QualityScore


logger = get_logger("session")

SWITCH_HISTORY_SIZE = 50


@dataclass(frozen=True)
class SwitchRecord:
    at: float
    from_endpoint: Endpoint | None
    to_endpoint: Endpoint
    backend: BackendKind
    reason: str

    def to_dict(self) -> dict:
        return {
            "at": self.at,
            "from": str(self.from_endpoint) if self.from_endpoint else None,
            "to": str(self.to_endpoint),
            "backend": self.backend.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class SessionState:
    """
    Single source of truth for the live tunnel configuration.

    Instances are immutable snapshots; consumers can hold on to one
    without locking.
    """
    active_backend: BackendKind | None = None
    active_endpoint: Endpoint | None = None
    controller_mode: ControllerMode = ControllerMode.NORMAL
    last_switch_at: float | None = None
    current_score: QualityScore | None = None

    def to_dict(self) -> dict:
        return {
            "active_backend": self.active_backend.value if self.active_backend else None,
            "active_endpoint": str(self.active_endpoint) if self.active_endpoint else None,
            "controller_mode": self.controller_mode.name,
            "last_switch_at": self.last_switch_at,
            "current_score": self.current_score.to_dict() if self.current_score else None,
        }


class SessionStore:
    """
    Owns the SessionState behind a mutex.

    • Reads: `snapshot()` from any thread
    • Writes: only through the single SessionWriter handed out by
      `claim_writer()`; a second claim raises
    • Change notification: subscribers are called with every new snapshot
    • Persistence: best-effort JSON for observability only
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._lock = threading.RLock()
        self._state = SessionState()
        self._switches: deque[SwitchRecord] = deque(maxlen=SWITCH_HISTORY_SIZE)
        self._writer: SessionWriter | None = None
        self._subscribers: list[Callable[[SessionState], None]] = []

    def snapshot(self) -> SessionState:
        with self._lock:
            return self._state

    def switch_history(self) -> list[SwitchRecord]:
        with self._lock:
            return list(self._switches)

    def claim_writer(self) -> SessionWriter:
        with self._lock:
            if self._writer is not None:
                raise RuntimeError("SessionState already has a writer")
            self._writer = SessionWriter(self)
            return self._writer

    def subscribe(self, callback: Callable[[SessionState], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    # ─── Writer-only internals ───

    def _apply(self, changes: dict, switch: SwitchRecord | None) -> SessionState:
        with self._lock:
            new_state = replace(self._state, **changes)
            if new_state == self._state and switch is None:
                return self._state
            self._state = new_state
            if switch is not None:
                self._switches.append(switch)
            subscribers = list(self._subscribers)

        self._persist(new_state)
        for callback in subscribers:
            try:
                callback(new_state)
            except Exception:
                logger.exception("Session subscriber failed")
        return new_state

    def _persist(self, state: SessionState) -> None:
        if self.path is None:
            return
        payload = {
            "saved_at": time.time(),
            "session": state.to_dict(),
            "switches": [s.to_dict() for s in self.switch_history()],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, indent=2))
            tmp.replace(self.path)
        except OSError as e:
            logger.warning(f"Session persist failed ({e.__class__.__name__}: {e})")


class SessionWriter:
    """The one capability allowed to mutate SessionState."""

    def __init__(self, store: SessionStore):
        self._store = store

    def update(self, **changes) -> SessionState:
        return self._store._apply(changes, None)

    def switch(
        self,
        endpoint: Endpoint,
        backend: BackendKind,
        reason: str,
        **changes,
    ) -> SessionState:
        """Publish a confirmed endpoint/backend switch and record it."""
        previous = self._store.snapshot().active_endpoint
        now = time.time()
        record = SwitchRecord(now, previous, endpoint, backend, reason)
        return self._store._apply(
            {
                "active_endpoint": endpoint,
                "active_backend": backend,
                "last_switch_at": now,
                **changes,
            },
            record,
        )


def load_previous_session(path: Path) -> dict | None:
    """
    Read a persisted session for logging only.

    State is never restored from it; the controller rebuilds from a fresh
    health check. Failure or corruption is treated as "no previous session".
    """
    try:
        return json.loads(path.read_text()).get("session")
    except (FileNotFoundError, json.JSONDecodeError, OSError, AttributeError):
        return None
