# --- Standard library imports ---
import os

# --- Third-party imports ---
from dotenv import load_dotenv


# Load .env once
load_dotenv()

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default

def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() == "true"

def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    """Centralized config for tunnel topology, failover tuning and observability"""

    # --- Tunnel topology ---
    TUNNEL_MODE = os.getenv("TUNNEL_MODE", "easytier").lower()
    NODE_ROLE = os.getenv("NODE_ROLE", "").lower()
    REMOTE_SERVER = _env_list("REMOTE_SERVER", "")
    PROTOCOL = os.getenv("PROTOCOL", "udp").lower()
    PORT = _env_int("PORT", 1377)
    NETWORK_SECRET = os.getenv("NETWORK_SECRET", "")
    LOCAL_IP = os.getenv("LOCAL_IP", "10.10.10.1")

    # Empty means "every protocol the active engine supports"
    ENABLED_PROTOCOLS = _env_list("ENABLED_PROTOCOLS", "")
    CANDIDATE_PORTS = [
        int(p) for p in _env_list("CANDIDATE_PORTS", "") if p.isdigit()
    ]

    # --- Failover Policy ---
    FAILOVER_ENABLED = _env_bool("FAILOVER_ENABLED", True)
    AUTO_SWITCH = _env_bool("AUTO_SWITCH", True)

    # --- Probe Policy ---
    PROBE_BUDGET_S = _env_float("PROBE_BUDGET_S", 2.0)
    THROUGHPUT_MIN_BUDGET_S = _env_float("THROUGHPUT_MIN_BUDGET_S", 1.0)
    THROUGHPUT_SAMPLE_BYTES = 64 * 1024   # bounded read per throughput sample
    THROUGHPUT_MIN_SAMPLE_BYTES = 4 * 1024   # less than this is too small to time
    HISTORY_SIZE = _env_int("HISTORY_SIZE", 20)
    SCORE_WINDOW = _env_int("SCORE_WINDOW", 5)

    # --- Geo Selection ---
    GEO_SELECT_BUDGET_S = _env_float("GEO_SELECT_BUDGET_S", 4.0)
    GEO_MAX_WORKERS = _env_int("GEO_MAX_WORKERS", 8)
    GEO_REBALANCE_INTERVAL_S = _env_int("GEO_REBALANCE_INTERVAL_S", 3 * 3600)

    # --- Endpoint Cycling ---
    CYCLER_FAILURE_CEILING = _env_int("CYCLER_FAILURE_CEILING", 3)

    # --- Circuit Breaker ---
    BREAKER_THRESHOLD = _env_int("BREAKER_THRESHOLD", 5)
    BREAKER_COOL_DOWN_S = _env_float("BREAKER_COOL_DOWN_S", 60.0)
    BREAKER_MAX_COOL_DOWN_S = _env_float("BREAKER_MAX_COOL_DOWN_S", 600.0)

    # --- Emergency Recovery ---
    EMERGENCY_PAIRS = _env_list(
        "EMERGENCY_PAIRS", "tcp:443,ws:443,ws:80,udp:53,tcp:80,tcp:8080"
    )
    EMERGENCY_ATTEMPT_TIMEOUT_S = _env_float("EMERGENCY_ATTEMPT_TIMEOUT_S", 15.0)

    # --- Interference Detection ---
    INTERFERENCE_INTERVAL_S = _env_int("INTERFERENCE_INTERVAL_S", 600)
    INTERFERENCE_CONTROL_TARGETS = _env_list(
        "INTERFERENCE_CONTROL_TARGETS", "1.1.1.1:443,9.9.9.9:443"
    )
    INTERFERENCE_SENSITIVE_TARGETS = _env_list(
        "INTERFERENCE_SENSITIVE_TARGETS", "www.google.com:443,github.com:443"
    )

    # --- Engines ---
    ENGINE_BIN_DIR = os.getenv("ENGINE_BIN_DIR", "/usr/local/bin")
    ENGINE_START_TIMEOUT_S = _env_float("ENGINE_START_TIMEOUT_S", 10.0)
    ENGINE_SETTLE_S = _env_float("ENGINE_SETTLE_S", 3.0)
    ENGINE_STOP_GRACE_S = _env_float("ENGINE_STOP_GRACE_S", 5.0)
    RATHOLE_LOCAL_ADDR = os.getenv("RATHOLE_LOCAL_ADDR", "127.0.0.1:8080")

    # --- State & Notification ---
    STATE_DIR = os.getenv("STATE_DIR", "/var/lib/tunnel_autopilot")
    NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")

    # --- Network Policy (NOT user configurable) ---
    API_TIMEOUT = 8   # seconds (safe, balanced)

    # --- Observability Policy ---
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_TIMING = _env_bool("LOG_TIMING", False)
    LOG_FILE = os.getenv("LOG_FILE", "")   # optional rotating file next to stdout
    MONITOR_REFRESH_S = _env_float("MONITOR_REFRESH_S", 3.0)
    LIVE_MONITOR = _env_bool("LIVE_MONITOR", False)
    HEARTBEAT_INTERVAL_S = _env_float("HEARTBEAT_INTERVAL_S", 60.0)


# Global singleton instance
config = Config()
