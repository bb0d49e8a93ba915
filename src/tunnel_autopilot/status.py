# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import sys
import threading
from datetime import datetime
from typing import TextIO

# ─── Project imports ───
from .config import config
from .session import SessionState, SessionStore, SwitchRecord
from .circuit_breaker import CircuitBreakerState
from .models import MODE_EMOJI, QUALITY_EMOJI


def _fmt_time(ts: float | None) -> str:
    if ts is None:
        return "never"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")

def render_status(
    snapshot: SessionState,
    breaker: CircuitBreakerState | None = None,
    switches: list[SwitchRecord] | None = None,
) -> str:
    """Human-readable status block for one session snapshot."""
    score = snapshot.current_score
    if score is not None:
        score_line = f"{QUALITY_EMOJI[score.quality]} {score.value:.0f}/100 ({score.quality})"
    else:
        score_line = "⚪ not scored yet"

    lines = [
        "── Tunnel Status ─────────────────────────",
        f"  Backend      : {snapshot.active_backend or '—'}",
        f"  Endpoint     : {snapshot.active_endpoint or '—'}",
        f"  Mode         : {MODE_EMOJI[snapshot.controller_mode]} {snapshot.controller_mode}",
        f"  Quality      : {score_line}",
        f"  Last switch  : {_fmt_time(snapshot.last_switch_at)}",
    ]

    if breaker is not None:
        lines.append(
            f"  Breaker      : {breaker.state} "
            f"({breaker.failure_count}/{breaker.threshold}, cool-down {breaker.cool_down:.0f}s)"
        )

    if switches:
        lines.append("  Recent switches:")
        for record in switches[-5:]:
            lines.append(
                f"    {_fmt_time(record.at)}  {record.from_endpoint or '—'} → "
                f"{record.to_endpoint} [{record.backend}] {record.reason}"
            )

    return "\n".join(lines)

def live_monitor(
    store: SessionStore,
    refresh_s: float | None = None,
    stop: threading.Event | None = None,
    iterations: int | None = None,
    out: TextIO = sys.stdout,
) -> None:
    """
    Re-render the status block every `refresh_s` seconds until `stop` is
    set (or `iterations` renders have been written).
    """
    refresh_s = refresh_s or config.MONITOR_REFRESH_S
    stop = stop or threading.Event()
    rendered = 0

    while not stop.is_set():
        out.write("\033[2J\033[H" if out.isatty() else "\n")
        out.write(render_status(store.snapshot(), switches=store.switch_history()) + "\n")
        out.flush()

        rendered += 1
        if iterations is not None and rendered >= iterations:
            return
        stop.wait(refresh_s)
