# exam_portal/autosave.py
import logging
import threading

from .errors import StoreError
from .timers import IntervalTimer

log = logging.getLogger(__name__)

_UNSAVED = object()


class AutosaveScheduler:
    """
    Periodically persists the answer to the question currently on screen.

    Only that one answer is sent per fire. A failed write is logged and left
    dirty so the next fire (timer or navigation) retries it; answers still
    dirty when the attempt closes are handed to submit via ``pending()``.
    """

    def __init__(self, tracker, attempt_id, current_answer, interval_seconds=30):
        self.tracker = tracker
        self.attempt_id = attempt_id
        self.current_answer = current_answer
        self.interval_seconds = interval_seconds
        self.saves = 0
        self.failures = 0
        self.last_error = None
        self._saved = {}
        self._lock = threading.Lock()
        self._timer = None

    def mark_saved(self, question_id, value):
        """Record a value already in the store (e.g. loaded on resume)."""
        with self._lock:
            self._saved[question_id] = value

    def is_dirty(self, question_id, value):
        saved = self._saved.get(question_id, _UNSAVED)
        if value is None:
            # A cleared answer only needs writing over a stored one
            return saved is not _UNSAVED and saved is not None
        return saved != value

    def pending(self, answers):
        """The subset of ``answers`` not yet persisted."""
        with self._lock:
            return {qid: value for qid, value in answers.items() if self.is_dirty(qid, value)}

    def flush(self):
        """Persist the current answer if it changed. Returns True if a write happened."""
        with self._lock:
            current = self.current_answer()
            if current is None:
                return False
            question_id, value = current
            if not self.is_dirty(question_id, value):
                return False
            try:
                written = self.tracker.record_answer(self.attempt_id, question_id, value)
            except StoreError as e:
                self.failures += 1
                self.last_error = e
                log.warning(f"Autosave failed for attempt {self.attempt_id}, question {question_id}; "
                            f"retrying on next tick: {e}")
                return False
            self.last_error = None
            if written:
                self._saved[question_id] = value
                self.saves += 1
            return written

    def on_navigate(self):
        return self.flush()

    def start(self):
        if self._timer is None:
            self._timer = IntervalTimer(self.interval_seconds, self.flush, name='autosave')
            self._timer.start()

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()

    @property
    def timer_running(self):
        return self._timer is not None and self._timer.running
