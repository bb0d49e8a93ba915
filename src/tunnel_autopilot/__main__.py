# --- Standard library imports ---
import sys
import signal
import logging
import threading

# --- Project imports ---
from .config import config
from .agent import TunnelAgent
from .bootstrap import bootstrap
from .status import live_monitor
from .engines import default_adapters
from .errors import InvalidCandidateList
from .logger import get_logger, setup_logging
from .models import MODE_EMOJI


def main_loop(agent: TunnelAgent, stop: threading.Event):
    """
    Supervisor loop for the running agent.

    The agent's own threads do the work; this loop only reports. With
    LIVE_MONITOR enabled it renders the status view on stdout, otherwise
    it logs a heartbeat line per interval until `stop` is set.
    """

    logger = get_logger("main_loop")

    if config.LIVE_MONITOR:
        live_monitor(agent.store, config.MONITOR_REFRESH_S, stop=stop)
        return

    while not stop.wait(config.HEARTBEAT_INTERVAL_S):
        try:
            snapshot = agent.store.snapshot()
            score = snapshot.current_score
            logger.info(
                f"{MODE_EMOJI[snapshot.controller_mode]} Heartbeat | "
                f"endpoint={snapshot.active_endpoint or '—'} | "
                f"backend={snapshot.active_backend or '—'} | "
                f"score={score if score else '—'}"
            )
        except Exception as e:
            logger.exception(f"Unhandled exception during heartbeat: {e}")

def main():
    """
    Entry point for the tunnel failover daemon.

    Configures logging, validates configuration, starts the agent and
    blocks until SIGTERM/SIGINT. SIGHUP logs the current status block.
    """

    # Setup logging policy
    setup_logging(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
    logger = get_logger("main")
    logger.info("🚀 Starting Tunnel Autopilot")
    logger.debug(f"Python version: {sys.version}")

    adapters = default_adapters()
    try:
        capabilities = bootstrap(adapters)
    except InvalidCandidateList as e:
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(2)

    if not capabilities.can_start:
        logger.critical("No usable tunnel engine installed; check ENGINE_BIN_DIR")
        sys.exit(2)
    if not capabilities.can_fail_over_backend:
        logger.info(f"Single engine available ({capabilities.preferred_backend}); no backend failover")

    agent = TunnelAgent(adapters=adapters)
    stop = agent.stop_event

    def _request_stop(signum, _frame):
        logger.info(f"Received {signal.Signals(signum).name}; shutting down")
        stop.set()

    def _log_status(_signum, _frame):
        logger.info("\n" + agent.status())

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _log_status)

    agent.start()
    try:
        main_loop(agent, stop)
    finally:
        agent.shutdown()

if __name__ == "__main__":
    main()
