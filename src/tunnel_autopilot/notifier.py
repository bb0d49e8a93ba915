# ─── Standard library imports ───
import socket
import threading

# ─── Third-party imports ───
import requests

# ─── Project imports ───
from .config import config
from .telemetry import tlog
from .logger import get_logger


class Notifier:
    """
    One-shot side channel for terminal-failure alerts.

    The first `notify()` after construction (or after `rearm()`) emits a
    CRITICAL log line and, if configured, POSTs a JSON payload to a
    webhook. Later calls are no-ops until re-armed.
    """

    def __init__(self, webhook_url: str | None = None, timeout: float | None = None):
        self.webhook_url = config.NOTIFY_WEBHOOK_URL if webhook_url is None else webhook_url
        self.timeout = timeout or config.API_TIMEOUT
        self.logger = get_logger("notifier")
        self._lock = threading.Lock()
        self._fired = False

    @property
    def fired(self) -> bool:
        with self._lock:
            return self._fired

    def notify(self, subject: str, detail: str = "") -> bool:
        """
        Returns:
            True if this call fired the alert, False if already fired.
        """
        with self._lock:
            if self._fired:
                return False
            self._fired = True

        self.logger.critical(f"🚨 {subject}" + (f" | {detail}" if detail else ""))

        if self.webhook_url:
            self._post_webhook(subject, detail)
        return True

    def rearm(self) -> None:
        with self._lock:
            self._fired = False

    def _post_webhook(self, subject: str, detail: str) -> None:
        payload = {
            "host": socket.gethostname(),
            "subject": subject,
            "detail": detail,
        }
        try:
            resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            tlog("📣", "NOTIFY", "DELIVERED", primary="webhook",
                 meta=f"status={resp.status_code}", logger=self.logger)
        except requests.RequestException as e:
            self.logger.warning(f"Alert webhook failed ({e.__class__.__name__})")
