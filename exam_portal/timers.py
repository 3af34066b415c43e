# exam_portal/timers.py
import logging
import threading

log = logging.getLogger(__name__)


class IntervalTimer:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread until cancelled."""

    def __init__(self, interval, callback, name='interval-timer'):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.callback = callback
        self.name = name
        self._halt = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        if self._halt.is_set():
            raise RuntimeError(f"{self.name} was cancelled")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._halt.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                log.exception(f"{self.name} callback failed: {e}")

    def cancel(self, timeout=5.0):
        self._halt.set()
        thread = self._thread
        # The callback itself may cancel its own timer
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def cancelled(self):
        return self._halt.is_set()

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive() and not self._halt.is_set()
