# exam_portal/attempts.py
"""
Lifecycle of one student's attempt at one exam: start or resume, answer
autosave, and the single authoritative submit.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime

from .errors import (
    AttemptNotFound, AttemptsExhausted, DuplicateRowError, ExamUnavailable,
    QuestionNotFound, StoreError,
)
from .models import (
    Answer, Exam, ExamAttempt, ExamStatusEnum, NotificationLog, NotificationType,
    Question, RoleEnum, User, as_utc, utcnow,
)
from .scoring import calculate_grade, percentage, score_answers

log = logging.getLogger(__name__)


@dataclass
class AttemptResult:
    attempt_id: int
    exam_id: int
    student_id: int
    submitted: bool
    auto_submitted: bool
    score: float
    max_score: float
    correct_count: int
    percentage: float
    grade: str
    passed: bool
    ended_at: datetime

    @classmethod
    def from_attempt(cls, attempt):
        return cls(
            attempt_id=attempt.id,
            exam_id=attempt.exam_id,
            student_id=attempt.student_id,
            submitted=attempt.submitted,
            auto_submitted=attempt.auto_submitted,
            score=attempt.score,
            max_score=attempt.max_score,
            correct_count=attempt.correct_count,
            percentage=attempt.percentage,
            grade=attempt.grade,
            passed=attempt.passed,
            ended_at=as_utc(attempt.ended_at),
        )

    def to_dict(self):
        return {
            'attemptId': self.attempt_id,
            'examId': self.exam_id,
            'studentId': self.student_id,
            'submitted': self.submitted,
            'autoSubmitted': self.auto_submitted,
            'score': self.score,
            'maxScore': self.max_score,
            'correctAnswers': self.correct_count,
            'percentage': self.percentage,
            'grade': self.grade,
            'passed': self.passed,
            'endedAt': self.ended_at.isoformat() if self.ended_at else None,
        }


class AttemptTracker:

    def __init__(self, gateway, clock=utcnow):
        self.gateway = gateway
        self.clock = clock

    # --- Lookups ---

    def get_exam(self, exam_id):
        exam = self.gateway.get(Exam, exam_id)
        if exam is None:
            raise ExamUnavailable(f"Exam {exam_id} not found")
        return exam

    def get_attempt(self, attempt_id):
        attempt = self.gateway.get(ExamAttempt, attempt_id)
        if attempt is None:
            raise AttemptNotFound(f"Attempt {attempt_id} not found")
        return attempt

    def questions_for(self, exam_id):
        return self.gateway.fetch(Question, order_by=(Question.position, Question.id), exam_id=exam_id)

    def saved_answers(self, attempt_id):
        return {a.question_id: a.value for a in self.gateway.fetch(Answer, attempt_id=attempt_id)}

    # --- Deadline ---

    @staticmethod
    def compute_deadline(attempt, exam):
        """Deadline derived from the stored start time only, never from now."""
        return attempt.deadline_for(exam.duration_minutes)

    def remaining_seconds(self, attempt, exam, now=None):
        now = now or self.clock()
        left = (self.compute_deadline(attempt, exam) - as_utc(now)).total_seconds()
        return max(0, math.ceil(left))

    # --- Operations ---

    def resume_or_start(self, exam_id, student_id):
        exam = self.get_exam(exam_id)
        student = self.gateway.get(User, student_id)
        if student is None or student.role != RoleEnum.STUDENT:
            raise ExamUnavailable(f"Student profile {student_id} not found")

        key = ExamAttempt.make_active_key(exam_id, student_id)
        existing = self.gateway.fetch_one(ExamAttempt, active_key=key)
        if existing is not None:
            log.info(f"Resuming attempt {existing.id} for student {student_id}, exam {exam_id}")
            return existing

        if exam.status != ExamStatusEnum.PUBLISHED:
            raise ExamUnavailable(f"Exam {exam_id} is not published (status: {exam.status.value})")
        if self.gateway.count(Question, exam_id=exam_id) == 0:
            raise ExamUnavailable(f"Exam {exam_id} has no questions")

        used = self.gateway.count(ExamAttempt, exam_id=exam_id, student_id=student_id, submitted=True)
        if used >= exam.allowed_attempts:
            log.warning(f"Student {student_id} has used all {exam.allowed_attempts} attempt(s) for exam {exam_id}")
            raise AttemptsExhausted(f"All {exam.allowed_attempts} attempt(s) already used for exam {exam_id}")

        try:
            attempt = self.gateway.insert(
                ExamAttempt,
                exam_id=exam_id,
                student_id=student_id,
                started_at=self.clock(),
                submitted=False,
                active_key=key,
            )
        except DuplicateRowError:
            # Another tab started the attempt between our lookup and insert
            attempt = self.gateway.fetch_one(ExamAttempt, active_key=key)
            if attempt is None:
                raise
            log.info(f"Concurrent start for student {student_id}, exam {exam_id}; resuming attempt {attempt.id}")
            return attempt

        log.info(f"Started attempt {attempt.id} for student {student_id}, exam {exam_id}")
        return attempt

    def record_answer(self, attempt_id, question_id, value):
        """
        Upsert one answer. Returns False without writing when the attempt is
        already submitted. Store errors propagate so autosave can retry.
        """
        attempt = self.get_attempt(attempt_id)
        if attempt.submitted:
            log.info(f"Ignoring answer for question {question_id}: attempt {attempt_id} already submitted")
            return False

        question = self.gateway.fetch_one(Question, id=question_id, exam_id=attempt.exam_id)
        if question is None:
            raise QuestionNotFound(f"Question {question_id} is not part of exam {attempt.exam_id}")

        row = self.gateway.upsert(
            Answer,
            key={'attempt_id': attempt_id, 'question_id': question_id},
            values={'value': None if value is None else str(value), 'updated_at': self.clock()},
            guard=(ExamAttempt, {'id': attempt_id, 'submitted': False}),
        )
        if row is None:
            log.info(f"Ignoring answer for question {question_id}: attempt {attempt_id} was submitted meanwhile")
            return False
        log.debug(f"Saved answer for attempt {attempt_id}, question {question_id}")
        return True

    def submit(self, attempt_id, pending=None, auto=False):
        """
        Finalize an attempt exactly once. A repeated call returns the stored
        result without rescoring. Store errors propagate to the caller.
        """
        attempt = self.get_attempt(attempt_id)
        if attempt.submitted:
            log.info(f"Attempt {attempt_id} already submitted; returning stored result")
            return AttemptResult.from_attempt(attempt)

        for question_id, value in (pending or {}).items():
            try:
                self.record_answer(attempt_id, int(question_id), value)
            except (QuestionNotFound, ValueError, TypeError):
                log.warning(f"Skipping pending answer for unknown question '{question_id}' on attempt {attempt_id}")

        exam = self.get_exam(attempt.exam_id)
        breakdown = score_answers(self.questions_for(exam.id), self.saved_answers(attempt_id))
        max_score = exam.total_marks or breakdown.max_total
        pct = percentage(breakdown.total, max_score)

        matched = self.gateway.update(
            ExamAttempt,
            {
                'submitted': True,
                'auto_submitted': auto,
                'ended_at': self.clock(),
                'active_key': None,
                'score': breakdown.total,
                'max_score': max_score,
                'correct_count': breakdown.correct,
                'percentage': pct,
                'grade': calculate_grade(pct),
                'passed': pct >= exam.passing_mark,
            },
            id=attempt_id,
            submitted=False,
        )
        attempt = self.get_attempt(attempt_id)
        if matched == 0:
            log.warning(f"Attempt {attempt_id} was submitted concurrently; returning the winning result")
            return AttemptResult.from_attempt(attempt)

        log.info(f"Attempt {attempt_id} submitted{' automatically' if auto else ''}: "
                 f"{breakdown.total}/{max_score} ({pct}%), {breakdown.ungraded} ungraded")
        self._notify(attempt, exam, auto)
        return AttemptResult.from_attempt(attempt)

    def close_overdue(self, now=None):
        """Auto-submit every open attempt whose deadline has passed."""
        now = as_utc(now or self.clock())
        closed = []
        for attempt in self.gateway.fetch(ExamAttempt, submitted=False):
            exam = self.get_exam(attempt.exam_id)
            if now < self.compute_deadline(attempt, exam):
                continue
            try:
                closed.append(self.submit(attempt.id, auto=True))
            except StoreError as e:
                log.error(f"Could not close overdue attempt {attempt.id}: {e}", exc_info=True)
        log.info(f"Closed {len(closed)} overdue attempt(s)")
        return closed

    def _notify(self, attempt, exam, auto):
        kind = NotificationType.EXAM_AUTO_SUBMITTED if auto else NotificationType.EXAM_SUBMITTED
        verb = "was auto-submitted on" if auto else "submitted"
        try:
            self.gateway.insert(
                NotificationLog,
                type=kind,
                message=f"Student {attempt.student_id} {verb} '{exam.title}' scoring {attempt.percentage:.2f}%.",
                user_id=attempt.student_id,
                exam_id=exam.id,
                details={'attemptId': attempt.id, 'score': attempt.score, 'percentage': attempt.percentage},
            )
        except StoreError as e:
            log.error(f"Failed to create notification log for attempt {attempt.id}: {e}", exc_info=True)
