import io
import threading

from tunnel_autopilot.status import live_monitor, render_status
from tunnel_autopilot.session import SessionState, SessionStore
from tunnel_autopilot.circuit_breaker import CircuitBreaker
from tunnel_autopilot.models import (
    BackendKind,
    ControllerMode,
    Endpoint,
    Protocol,
    QualityClass,
    QualityScore,
)


EP = Endpoint(Protocol.WS, "203.0.113.10", 443)
ALT = Endpoint(Protocol.TCP, "203.0.113.10", 8080)


def test_render_empty_session():
    text = render_status(SessionState())

    assert "not scored yet" in text
    assert "never" in text
    assert "NORMAL" in text

def test_render_active_session_with_breaker_and_switches():
    store = SessionStore()
    writer = store.claim_writer()
    writer.switch(EP, BackendKind.RATHOLE, "initial")
    writer.switch(
        ALT,
        BackendKind.RATHOLE,
        "cycler lock",
        controller_mode=ControllerMode.DEGRADED,
        current_score=QualityScore(74.0, QualityClass.GOOD),
    )

    text = render_status(
        store.snapshot(),
        breaker=CircuitBreaker(threshold=5, cool_down=60).snapshot(),
        switches=store.switch_history(),
    )

    assert "rathole" in text
    assert str(ALT) in text
    assert "DEGRADED" in text
    assert "74/100 (Good)" in text
    assert "0/5" in text
    assert f"{EP} → {ALT}" in text
    assert "cycler lock" in text

def test_live_monitor_renders_requested_iterations():
    store = SessionStore()
    store.claim_writer().switch(EP, BackendKind.EASYTIER, "initial")
    out = io.StringIO()

    live_monitor(store, refresh_s=0.01, iterations=2, out=out)

    assert out.getvalue().count("Tunnel Status") == 2

def test_live_monitor_stops_on_event():
    stop = threading.Event()
    stop.set()
    out = io.StringIO()

    live_monitor(SessionStore(), refresh_s=0.01, stop=stop, out=out)

    assert out.getvalue() == ""
