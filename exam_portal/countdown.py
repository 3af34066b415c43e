# exam_portal/countdown.py
import enum
import logging
import math
import threading

from .models import as_utc, utcnow
from .timers import IntervalTimer

log = logging.getLogger(__name__)


class CountdownState(enum.Enum):
    INITIALIZING = 'initializing'  # Waiting for the deadline
    RUNNING = 'running'
    EXPIRED = 'expired'            # Reached zero, on_expire fired
    STOPPED = 'stopped'            # Student submitted before the deadline


def format_remaining(seconds):
    """Render a number of seconds as HH:MM:SS."""
    if seconds is None:
        return '--:--:--'
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class Countdown:
    """
    Ticks toward a fixed deadline and fires ``on_expire`` exactly once when
    the remaining time reaches zero.

    Ticks are serialised; ``tick()`` may be driven by the background timer
    started with ``start()`` or called directly. ``on_tick(remaining)`` is
    called on every running tick for display.
    """

    def __init__(self, on_expire, tick_seconds=1, clock=utcnow, on_tick=None):
        self.on_expire = on_expire
        self.on_tick = on_tick
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.deadline = None
        self.state = CountdownState.INITIALIZING
        self._lock = threading.RLock()
        self._timer = None

    def arm(self, deadline):
        with self._lock:
            if self.state is not CountdownState.INITIALIZING:
                raise RuntimeError(f"Cannot arm countdown in state {self.state.value}")
            self.deadline = as_utc(deadline)
            self.state = CountdownState.RUNNING
        log.debug(f"Countdown armed for {self.deadline.isoformat()}")

    def remaining(self, now=None):
        if self.deadline is None:
            return None
        left = (self.deadline - as_utc(now or self.clock())).total_seconds()
        return max(0, math.ceil(left))

    def tick(self, now=None):
        with self._lock:
            if self.state is not CountdownState.RUNNING:
                return self.remaining(now)
            remaining = self.remaining(now)
            if self.on_tick is not None:
                self.on_tick(remaining)
            if remaining > 0:
                return remaining
            self.state = CountdownState.EXPIRED

        log.info("Countdown reached zero; triggering auto-submit")
        self.cancel()
        self.on_expire()
        return 0

    def stop(self):
        """Stop before expiry. Returns True if this call stopped the countdown."""
        with self._lock:
            stopped = self.state in (CountdownState.INITIALIZING, CountdownState.RUNNING)
            if stopped:
                self.state = CountdownState.STOPPED
        self.cancel()
        return stopped

    def start(self):
        if self._timer is None:
            self._timer = IntervalTimer(self.tick_seconds, self.tick, name='countdown')
            self._timer.start()

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()

    @property
    def timer_running(self):
        return self._timer is not None and self._timer.running
