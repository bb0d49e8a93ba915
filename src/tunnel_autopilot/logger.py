# --- Standard library imports ---
import sys
import logging
from pathlib import Path
from logging.handlers import RotatingFileHandler

# --- Project imports ---
from .config import config


# --- Custom log levels ---
TIMING = 25   # Between INFO (20) and WARNING (30)
logging.addLevelName(TIMING, "TIME")

def timing(self, message, *args, **kwargs):
    """Logger.timing(): durations of ticks, probes and engine starts."""
    if self.isEnabledFor(TIMING):
        self._log(TIMING, message, args, stacklevel=2, **kwargs)

logging.Logger.timing = timing

# --- Format configuration constants ---
LEVEL_EMOJIS = {
    logging.DEBUG: "🧱",
    logging.INFO: "🟢",
    TIMING: "⚡️",
    logging.WARNING: "⚠️ ",
    logging.ERROR: "❌",
    logging.CRITICAL: "🔥",
}

# Worker thread name → short subsystem tag
THREAD_TAGS = {
    "MainThread": "main",
    "controller": "ctrl",
    "cycler": "cycl",
    "interference": "intf",
}

LINE_FORMAT = "%(asctime)s %(levelemoji)s [%(threadtag)-4s] %(name)s:%(funcName)s → %(message)s"

# Chatty library loggers (connection pool lines on every probe/webhook)
QUIET_LOGGERS = ("urllib3",)

LOG_FILE_MAX_BYTES = 2 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# --- Filters ---
class TimingFilter(logging.Filter):
    """Drop TIMING records unless explicitly enabled."""
    def __init__(self, enabled: bool):
        super().__init__()
        self.enabled = enabled

    def filter(self, record: logging.LogRecord) -> bool:
        return self.enabled or record.levelno != TIMING

class ThreadTagFilter(logging.Filter):
    """Attach `threadtag` so every line shows which loop emitted it."""
    def filter(self, record: logging.LogRecord) -> bool:
        name = record.threadName or ""
        # geo-rebalance, geo-refine, geo-probe_N → geo
        record.threadtag = THREAD_TAGS.get(name) or name.replace("_", "-").split("-")[0][:4]
        return True

# --- Formatters ---
class EmojiFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.levelemoji = LEVEL_EMOJIS.get(record.levelno, "")
        return super().format(record)

def _build_handler(handler: logging.Handler, timing_enabled: bool) -> logging.Handler:
    handler.setFormatter(EmojiFormatter(fmt=LINE_FORMAT, datefmt="%H:%M:%S"))
    handler.addFilter(ThreadTagFilter())
    handler.addFilter(TimingFilter(enabled=timing_enabled))
    return handler

# --- Public logging setup API ---
def setup_logging(
    level=logging.INFO,
    timing_enabled: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure global logging: emoji-decorated lines on stdout, optionally
    mirrored to a size-rotated file (LOG_FILE).

    TIMING records are dropped unless `timing_enabled` (default
    config.LOG_TIMING). Safe to call repeatedly; existing root handlers
    are replaced.
    """
    if timing_enabled is None:
        timing_enabled = config.LOG_TIMING
    if log_file is None:
        log_file = config.LOG_FILE

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.addHandler(_build_handler(logging.StreamHandler(sys.stdout), timing_enabled))

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
            )
        except OSError as e:
            root.warning(f"Log file {log_file} unavailable ({e}); logging to stdout only")
        else:
            root.addHandler(_build_handler(file_handler, timing_enabled))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

def get_logger(name: str) -> logging.Logger:
    """Namespaced logger, e.g. get_logger("controller") → tunnel_autopilot.controller"""
    return logging.getLogger(f"tunnel_autopilot.{name}")
