"""
Error taxonomy for the failover engine.

Probe timeouts and unreachable endpoints are NOT errors: they are recorded
as ProbeSample data. Everything below is raised and handled explicitly.
"""


class TunnelAutopilotError(Exception):
    """Base class for every error raised by tunnel_autopilot."""


# ─── Engine start failures (recoverable, gated by the circuit breaker) ───

class StartError(TunnelAutopilotError):
    """A backend engine could not be started."""

    reason = "start-failed"

    def __init__(self, backend: str, detail: str = ""):
        self.backend = backend
        self.detail = detail
        message = f"{backend}: {self.reason}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)

class BinaryMissing(StartError):
    reason = "binary-missing"

class BindFailed(StartError):
    reason = "bind-failed"

class StartTimeout(StartError):
    reason = "timeout"


# ─── Everything else ───

class ConfigWriteError(TunnelAutopilotError):
    """Engine artifact could not be produced; aborts only that start attempt."""

class ExhaustedCandidates(TunnelAutopilotError):
    """Emergency recovery tried every curated candidate without success."""

    def __init__(self, attempted: int):
        self.attempted = attempted
        super().__init__(f"all {attempted} emergency candidates failed")

class InvalidCandidateList(TunnelAutopilotError):
    """Configuration error. Fails fast at startup; never retried at runtime."""
