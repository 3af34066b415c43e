# exam_portal/session.py
"""
One student's visit to one exam page.

    with ExamSession(tracker, exam_id, student_id) as visit:
        visit.answer('Paris')
        visit.next()
        ...
        result = visit.submit()

Entering the session resumes or starts the attempt and starts both timers
(the one-second countdown and the autosave). Leaving it, normally or through
an exception, cancels both so no stray timer can submit a page that is gone.
"""
import logging
import threading

from .autosave import AutosaveScheduler
from .countdown import Countdown, CountdownState, format_remaining
from .errors import ExamPortalError, ExamUnavailable
from .models import utcnow

log = logging.getLogger(__name__)


class ExamSession:

    def __init__(self, tracker, exam_id, student_id, autosave_interval=30, tick_seconds=1,
                 clock=utcnow, on_tick=None):
        self.tracker = tracker
        self.exam_id = exam_id
        self.student_id = student_id
        self.clock = clock
        self.attempt = None
        self.exam = None
        self.questions = []
        self.answers = {}
        self.index = 0
        self.result = None
        self.submit_error = None
        self._submit_lock = threading.Lock()
        self._autosave_interval = autosave_interval
        self.countdown = Countdown(self._on_expire, tick_seconds=tick_seconds, clock=clock, on_tick=on_tick)
        self.autosave = None

    # --- Scoped lifetime ---

    def __enter__(self):
        try:
            self.open()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def open(self):
        self.attempt = self.tracker.resume_or_start(self.exam_id, self.student_id)
        self.exam = self.tracker.get_exam(self.attempt.exam_id)
        self.questions = self.tracker.questions_for(self.exam.id)
        if not self.questions:
            raise ExamUnavailable(f"Exam {self.exam.id} has no questions")

        self.autosave = AutosaveScheduler(self.tracker, self.attempt.id, self.current_answer,
                                          interval_seconds=self._autosave_interval)
        self.answers = dict(self.tracker.saved_answers(self.attempt.id))
        for question_id, value in self.answers.items():
            self.autosave.mark_saved(question_id, value)

        self.countdown.arm(self.tracker.compute_deadline(self.attempt, self.exam))
        self.countdown.start()
        self.autosave.start()
        log.info(f"Exam session open: attempt {self.attempt.id}, {len(self.questions)} questions, "
                 f"{format_remaining(self.remaining())} left")

    def close(self):
        self.countdown.cancel()
        if self.autosave is not None:
            self.autosave.cancel()

    # --- Navigation and answers ---

    @property
    def current_question(self):
        return self.questions[self.index]

    def current_answer(self):
        if not self.questions:
            return None
        question = self.current_question
        return question.id, self.answers.get(question.id)

    def answer(self, value, question_id=None):
        """Keep an answer locally; it is persisted by the next autosave."""
        question_id = self.current_question.id if question_id is None else question_id
        self.answers[question_id] = value

    def go_to(self, index):
        self.autosave.on_navigate()
        self.index = max(0, min(index, len(self.questions) - 1))
        return self.current_question

    def next(self):
        return self.go_to(self.index + 1)

    def previous(self):
        return self.go_to(self.index - 1)

    def remaining(self):
        return self.countdown.remaining()

    @property
    def state(self):
        return self.countdown.state

    # --- Submission ---

    def submit(self):
        """
        Explicit submit. Errors propagate so the caller can retry. After a
        failed auto-submit this retries it, still flagged as automatic.
        """
        self.countdown.stop()
        return self._finalize(auto=self.expired)

    def _finalize(self, auto):
        with self._submit_lock:
            if self.result is not None:
                return self.result
            self.result = self.tracker.submit(self.attempt.id, pending=self.autosave.pending(self.answers), auto=auto)
            self.submit_error = None
            self.autosave.cancel()
            return self.result

    def _on_expire(self):
        try:
            self._finalize(auto=True)
        except ExamPortalError as e:
            self.submit_error = e
            log.error(f"Auto-submit failed for attempt {self.attempt.id}; submit() may be retried: {e}", exc_info=True)

    @property
    def expired(self):
        return self.countdown.state is CountdownState.EXPIRED
