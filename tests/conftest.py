from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from exam_portal.app import create_app
from exam_portal.attempts import AttemptTracker
from exam_portal.config import Config
from exam_portal.gateway import SQLAlchemyGateway
from exam_portal.models import db, User, RoleEnum, Exam, ExamStatusEnum, Question


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def app(tmp_path):
    class TestConfig(Config):
        TESTING = True
        SECRET_KEY = "x" * 40
        DATABASE_URL = f"sqlite:///{tmp_path / 'exam_portal_test.sqlite'}"
        INSTANCE_CONNECTION_NAME = None
        LOG_LEVEL = "DEBUG"

    application = create_app(TestConfig)
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(app):
    return SQLAlchemyGateway(app)


@pytest.fixture
def tracker(gateway, clock):
    return AttemptTracker(gateway, clock=clock)


def add_exam(title="Basic Science", duration_minutes=1, status=ExamStatusEnum.PUBLISHED,
             allowed_attempts=1, questions=()):
    exam = Exam(title=title, subject="Science", duration_minutes=duration_minutes,
                status=status, allowed_attempts=allowed_attempts)
    db.session.add(exam)
    db.session.flush()
    ids = []
    for position, (text, options, correct, marks) in enumerate(questions):
        question = Question(exam_id=exam.id, position=position, text=text, correct_answer=correct, marks=marks)
        question.options = options
        db.session.add(question)
        db.session.flush()
        ids.append(question.id)
    db.session.commit()
    return exam.id, ids


@pytest.fixture
def seed(app):
    """Two students, a teacher, an admin and a published one-minute exam with two 5-mark questions."""
    with app.app_context():
        users = {}
        for username, role in [("ada", RoleEnum.STUDENT), ("bola", RoleEnum.STUDENT),
                               ("mrs_okafor", RoleEnum.TEACHER), ("admin", RoleEnum.ADMIN)]:
            user = User(username=username, role=role)
            user.set_password("password123")
            db.session.add(user)
            users[username] = user
        db.session.commit()

        exam_id, (q1, q2) = add_exam(questions=[
            ("What is 2 + 2?", ["3", "4", "5"], "4", 5),
            ("What is the capital of France?", ["Paris", "Rome", "Madrid"], "Paris", 5),
        ])
        return SimpleNamespace(
            student_id=users["ada"].id,
            other_student_id=users["bola"].id,
            teacher_id=users["mrs_okafor"].id,
            admin_id=users["admin"].id,
            exam_id=exam_id,
            q1=q1,
            q2=q2,
        )


def login(client, username, password="password123"):
    response = client.post("/api/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.get_json()
    return {"Authorization": f"Bearer {response.get_json()['token']}"}
