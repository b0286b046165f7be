import logging
import threading

from django.db import close_old_connections

logger = logging.getLogger(__name__)


class RepeatingTimer:
    """Runs ``function`` every ``interval`` seconds on a daemon thread.

    ``cancel`` only prevents future ticks; a tick already running finishes.
    """

    def __init__(self, interval, function, *, run_immediately=False, name=None):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self.function = function
        self.run_immediately = run_immediately
        self.name = name or "repeating-timer"
        self._cancelled = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None:
            raise RuntimeError(f"timer={self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def is_alive(self):
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)

    def _tick(self):
        close_old_connections()
        try:
            self.function()
        except Exception:
            logger.exception("event=timer_tick_failed timer=%s", self.name)
        finally:
            close_old_connections()

    def _run(self):
        if self.run_immediately and not self.cancelled:
            self._tick()
        while not self._cancelled.wait(self.interval):
            self._tick()
        logger.info("event=timer_stopped timer=%s", self.name)
