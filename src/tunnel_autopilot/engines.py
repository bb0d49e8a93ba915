# ─── Future imports ───
from __future__ import annotations

# ─── Standard library imports ───
import time
import socket
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from dataclasses import dataclass, field
from typing import Callable

# ─── Project imports ───
from .config import config
from .telemetry import tlog
from .logger import get_logger
from .candidates import SUPPORTED_PROTOCOLS
from .errors import BinaryMissing, BindFailed, StartError, StartTimeout
from .models import BackendKind, Endpoint, Protocol
from .config_writer import (
    ConfigWriter,
    EasyTierConfigWriter,
    EngineOptions,
    RatholeConfigWriter,
)


# Grace between SIGTERM and SIGKILL when a start runs against a caller's budget
BUDGETED_KILL_GRACE_S = 1.0

BIND_ERROR_MARKERS = (
    "address already in use",
    "address in use",
    "failed to bind",
    "bind error",
    "permission denied",
)

@dataclass
class EngineHandle:
    """
    Capability reference for one running engine instance.

    Handles are only meaningful to the adapter that created them.
    """
    backend: BackendKind
    endpoint: Endpoint
    process: subprocess.Popen | None = field(default=None, repr=False)
    log_path: Path | None = None
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None


class BackendEngineAdapter(ABC):
    """
    Uniform start/stop/liveness surface over one pluggable engine.

    `start()` never swallows failure: it returns a live handle or raises a
    typed StartError (BinaryMissing, BindFailed, StartTimeout).
    ConfigWriteError from the config writer propagates unchanged.
    """

    kind: BackendKind

    @abstractmethod
    def start(
        self,
        endpoint: Endpoint,
        secret: str,
        options: EngineOptions,
        timeout: float | None = None,
    ) -> EngineHandle:
        """`timeout` caps the whole start (settle + readiness); None uses the adapter's limits."""

    @abstractmethod
    def stop(self, handle: EngineHandle) -> None:
        ...

    @abstractmethod
    def is_alive(self, handle: EngineHandle) -> bool:
        """Process liveness only; says nothing about tunnel health."""

    def installed(self) -> bool:
        return True

    def supports(self, protocol: Protocol) -> bool:
        return protocol in SUPPORTED_PROTOCOLS[self.kind]


class ProcessEngineAdapter(BackendEngineAdapter):
    """
    Runs an engine binary as a child process.

    Readiness:
    • The process must survive the settle window
    • If options.ready_port is set, 127.0.0.1:<ready_port> must accept a
      connection before start_timeout
    """

    binary_name: str = ""

    def __init__(
        self,
        writer: ConfigWriter,
        bin_dir: str | None = None,
        start_timeout: float | None = None,
        settle_s: float | None = None,
        stop_grace_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.writer = writer
        self.binary = Path(bin_dir or config.ENGINE_BIN_DIR) / self.binary_name
        self.start_timeout = start_timeout or config.ENGINE_START_TIMEOUT_S
        self.settle_s = config.ENGINE_SETTLE_S if settle_s is None else settle_s
        self.stop_grace_s = stop_grace_s or config.ENGINE_STOP_GRACE_S
        self.sleep = sleep
        self.log_path = Path(config.STATE_DIR) / "logs" / f"{self.kind.value}.log"
        self.logger = get_logger(f"engine.{self.kind.value}")

    def installed(self) -> bool:
        return self.binary.is_file()

    def start(self, endpoint, secret, options, timeout=None):
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self.installed():
            raise BinaryMissing(self.kind.value, str(self.binary))
        if not self.supports(endpoint.protocol):
            raise StartError(self.kind.value, f"protocol {endpoint.protocol} unsupported")

        cmd = self.writer.command(self.binary, endpoint, secret, options)

        # Engine output goes to a file: a pipe nobody drains would stall it
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("w") as log_file:
                process = subprocess.Popen(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
        except FileNotFoundError as e:
            raise BinaryMissing(self.kind.value, str(self.binary)) from e
        except OSError as e:
            raise StartError(self.kind.value, e.strerror or str(e)) from e

        handle = EngineHandle(self.kind, endpoint, process, self.log_path)
        self._await_ready(handle, options, deadline)

        tlog(
            "🟢",
            "ENGINE",
            "STARTED",
            primary=self.kind.value,
            meta=f"endpoint={endpoint} | pid={handle.pid} | role={options.role.value}",
            logger=self.logger,
        )
        return handle

    def stop(self, handle):
        self._terminate(handle, self.stop_grace_s)

    def _terminate(self, handle: EngineHandle, grace: float) -> None:
        process = handle.process
        if process is None or process.poll() is not None:
            return

        process.terminate()
        try:
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            self.logger.warning(
                f"{self.kind} (pid={process.pid}) ignored SIGTERM; killing"
            )
            process.kill()
            process.wait(timeout=grace)

        tlog("⚪", "ENGINE", "STOPPED", primary=self.kind.value,
             meta=f"endpoint={handle.endpoint}", logger=self.logger)

    def is_alive(self, handle):
        return handle.process is not None and handle.process.poll() is None

    # ─── Readiness ───

    def _await_ready(
        self,
        handle: EngineHandle,
        options: EngineOptions,
        deadline: float | None = None,
    ) -> None:
        settle = self.settle_s
        if deadline is not None:
            settle = max(0.0, min(settle, deadline - time.monotonic()))
        self.sleep(settle)

        if not self.is_alive(handle):
            raise self._classify_exit(handle)

        if options.ready_port is None:
            return

        ready_by = time.monotonic() + self.start_timeout
        if deadline is not None:
            ready_by = min(ready_by, deadline)
        waited_from = time.monotonic()
        while time.monotonic() < ready_by:
            if not self.is_alive(handle):
                raise self._classify_exit(handle)
            if _local_port_open(options.ready_port):
                return
            self.sleep(0.5)

        grace = self.stop_grace_s if deadline is None else BUDGETED_KILL_GRACE_S
        self._terminate(handle, grace)
        raise StartTimeout(
            self.kind.value,
            f"port {options.ready_port} not ready after {time.monotonic() - waited_from:.1f}s",
        )

    def _classify_exit(self, handle: EngineHandle) -> StartError:
        process = handle.process
        output = ""
        if handle.log_path is not None:
            try:
                output = handle.log_path.read_text(errors="replace")
            except OSError:
                self.logger.debug(f"Engine log unreadable: {handle.log_path}")
        tail = " | ".join(output.strip().splitlines()[-3:])

        if any(marker in output.lower() for marker in BIND_ERROR_MARKERS):
            return BindFailed(self.kind.value, tail)
        code = process.returncode if process is not None else None
        return StartError(self.kind.value, f"exited with code {code}: {tail}".rstrip(": "))


class EasyTierAdapter(ProcessEngineAdapter):
    """Mesh-VPN engine."""
    kind = BackendKind.EASYTIER
    binary_name = "easytier-core"

    def __init__(self, writer: ConfigWriter | None = None, **kwargs):
        super().__init__(writer or EasyTierConfigWriter(), **kwargs)


class RatholeAdapter(ProcessEngineAdapter):
    """TCP/UDP reverse-tunnel engine."""
    kind = BackendKind.RATHOLE
    binary_name = "rathole"

    def __init__(self, writer: ConfigWriter | None = None, **kwargs):
        super().__init__(writer or RatholeConfigWriter(), **kwargs)


def default_adapters() -> dict[BackendKind, BackendEngineAdapter]:
    return {
        BackendKind.EASYTIER: EasyTierAdapter(),
        BackendKind.RATHOLE: RatholeAdapter(),
    }

def _local_port_open(port: int) -> bool:
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=0.5):
            return True
    except OSError:
        return False
