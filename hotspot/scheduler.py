"""
Fixed-cadence runner for the timeout sweeps.

Each sweep gets its own thread and its own timer, so a slow router
during the session sweep never delays payment expiry.
"""

import logging
import threading

from django.db import close_old_connections

logger = logging.getLogger(__name__)


class PeriodicSweep:
    def __init__(self, name, func, interval):
        self.name = name
        self.func = func
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread = None

    def run_once(self):
        close_old_connections()
        try:
            result = self.func()
        except Exception as e:
            logger.error(f"Error in {self.name} sweep: {e}")
            result = {"success": False, "error": str(e)}
        finally:
            close_old_connections()
        if not result.get("success"):
            logger.error(f"{self.name} sweep failed: {result.get('error')}")
        return result

    def start(self):
        if self._thread and self._thread.is_alive():
            logger.warning(f"{self.name} sweep is already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"🔍 {self.name} sweep started (every {self.interval}s)")

    def stop(self, timeout=None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        logger.info(f"{self.name} sweep stopped")

    def _loop(self):
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval)
