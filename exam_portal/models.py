# exam_portal/models.py
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
import enum
import json # To handle JSON storage for options
from datetime import datetime, timezone, timedelta # Use timezone-aware datetimes
import logging

log = logging.getLogger(__name__)

# Objects handed out by the gateway outlive the app context that loaded them
db = SQLAlchemy(session_options={"expire_on_commit": False})


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RoleEnum(enum.Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'
    STUDENT = 'student'


class User(db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.Enum(RoleEnum), nullable=False, default=RoleEnum.STUDENT)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    attempts = db.relationship('ExamAttempt', back_populates='student', lazy='dynamic', cascade="all, delete-orphan")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def __repr__(self):
        return f'<User {self.username}>'

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'role': self.role.value,
            'created_at': as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class NotificationType(enum.Enum):
    EXAM_SUBMITTED = "exam_submitted"
    EXAM_AUTO_SUBMITTED = "exam_auto_submitted"


class NotificationLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    type = db.Column(db.Enum(NotificationType), nullable=False)
    message = db.Column(db.String(500), nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    user = db.relationship('User', backref=db.backref('notifications', lazy=True))

    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id'), nullable=True)
    exam = db.relationship('Exam', backref=db.backref('notifications', lazy=True))

    # score, percentage, attemptId
    details = db.Column(db.JSON, nullable=True)

    def __repr__(self):
        return f'<NotificationLog {self.id} - {self.type.value} - {self.timestamp}>'

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': as_utc(self.timestamp).isoformat(),
            'type': self.type.value,
            'message': self.message,
            'userId': self.user_id,
            'username': self.user.username if self.user else None,
            'examId': self.exam_id,
            'examTitle': self.exam.title if self.exam else None,
            'details': self.details
        }


# --- Exam Related Models ---

class ExamStatusEnum(enum.Enum):
    DRAFT = 'Draft'         # Being authored, not visible to students
    PUBLISHED = 'Published' # Open for attempts
    ARCHIVED = 'Archived'   # Closed, results kept


class QuestionTypeEnum(enum.Enum):
    MULTIPLE_CHOICE = 'multiple_choice'
    SHORT_ANSWER = 'short_answer'   # Not auto-scored


class Question(db.Model):
    __tablename__ = 'question'
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id', ondelete='CASCADE'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    text = db.Column(db.Text, nullable=False)
    question_type = db.Column(db.Enum(QuestionTypeEnum), nullable=False, default=QuestionTypeEnum.MULTIPLE_CHOICE)
    # JSON list; empty for short answer questions
    options_json = db.Column(db.Text, nullable=False, default='[]')
    correct_answer = db.Column(db.Text, nullable=True)
    marks = db.Column(db.Float, nullable=False, default=1)

    exam = db.relationship('Exam', back_populates='questions')

    @property
    def options(self):
        """Get options as a Python list."""
        if self.options_json is None:
            return []
        try:
            return json.loads(self.options_json)
        except (json.JSONDecodeError, TypeError) as e:
            log.warning(f"Could not decode options_json for Question ID {self.id}. Value: '{self.options_json}'. Error: {e}")
            return []

    @options.setter
    def options(self, value):
        if not isinstance(value, list):
            raise ValueError("Options must be a list")
        self.options_json = json.dumps([str(opt).strip() for opt in value if str(opt).strip()])

    def __repr__(self):
        return f'<Question {self.id} for Exam {self.exam_id}>'

    def to_dict(self, include_answer=True):
        data = {
            'id': self.id,
            'exam_id': self.exam_id,
            'position': self.position,
            'text': self.text,
            'question_type': self.question_type.value,
            'options': self.options,
            'marks': self.marks,
        }
        if include_answer:
            data['correct_answer'] = self.correct_answer
        return data


class Exam(db.Model):
    __tablename__ = 'exam'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(150), nullable=False)
    subject = db.Column(db.String(100), nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False)
    total_marks = db.Column(db.Float, nullable=True) # Falls back to the sum of question marks
    passing_mark = db.Column(db.Float, nullable=False, default=40) # Percentage
    status = db.Column(db.Enum(ExamStatusEnum), nullable=False, default=ExamStatusEnum.DRAFT)
    allowed_attempts = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    questions = db.relationship('Question', back_populates='exam', lazy='dynamic',
                                order_by='Question.position', cascade="all, delete-orphan")
    attempts = db.relationship('ExamAttempt', back_populates='exam', lazy='dynamic', cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Exam {self.title} (ID: {self.id})>'

    def to_dict(self, include_questions=False, include_answers=True):
        data = {
            'id': self.id,
            'title': self.title,
            'subject': self.subject,
            'duration_minutes': self.duration_minutes,
            'total_marks': self.total_marks,
            'passing_mark': self.passing_mark,
            'status': self.status.value if self.status else None,
            'allowed_attempts': self.allowed_attempts,
            'created_at': as_utc(self.created_at).isoformat() if self.created_at else None,
            'question_count': self.questions.count(),
        }
        if include_questions:
            data['questions'] = [q.to_dict(include_answer=include_answers) for q in self.questions.all()]
        return data


class ExamAttempt(db.Model):
    __tablename__ = 'exam_attempt'
    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exam.id', ondelete='CASCADE'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted = db.Column(db.Boolean, nullable=False, default=False)
    auto_submitted = db.Column(db.Boolean, nullable=False, default=False)
    # "<exam_id>:<student_id>" while open, NULL once submitted. Unique, so the
    # store itself refuses a second open attempt for the same pair.
    active_key = db.Column(db.String(64), unique=True, nullable=True)

    score = db.Column(db.Float, nullable=True)
    max_score = db.Column(db.Float, nullable=True)
    correct_count = db.Column(db.Integer, nullable=True)
    percentage = db.Column(db.Float, nullable=True)
    grade = db.Column(db.String(2), nullable=True)
    passed = db.Column(db.Boolean, nullable=True)

    student = db.relationship('User', back_populates='attempts')
    exam = db.relationship('Exam', back_populates='attempts')

    @staticmethod
    def make_active_key(exam_id, student_id):
        return f"{exam_id}:{student_id}"

    def deadline_for(self, duration_minutes):
        return as_utc(self.started_at) + timedelta(minutes=duration_minutes)

    def __repr__(self):
        return f'<ExamAttempt {self.id} exam={self.exam_id} student={self.student_id} submitted={self.submitted}>'

    def to_dict(self):
        return {
            'id': self.id,
            'exam_id': self.exam_id,
            'student_id': self.student_id,
            'started_at': as_utc(self.started_at).isoformat() if self.started_at else None,
            'ended_at': as_utc(self.ended_at).isoformat() if self.ended_at else None,
            'submitted': self.submitted,
            'auto_submitted': self.auto_submitted,
            # Provisional until submitted
            'score': self.score if self.submitted else None,
            'percentage': self.percentage if self.submitted else None,
            'grade': self.grade if self.submitted else None,
            'passed': self.passed if self.submitted else None,
        }


class Answer(db.Model):
    __tablename__ = 'answer'
    __table_args__ = (
        db.UniqueConstraint('attempt_id', 'question_id', name='uq_answer_attempt_question'),
    )
    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('exam_attempt.id', ondelete='CASCADE'), nullable=False, index=True)
    question_id = db.Column(db.Integer, db.ForeignKey('question.id', ondelete='CASCADE'), nullable=False)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<Answer attempt={self.attempt_id} question={self.question_id}>'

    def to_dict(self):
        return {
            'attempt_id': self.attempt_id,
            'question_id': self.question_id,
            'value': self.value,
            'updated_at': as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }
