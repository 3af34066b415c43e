import pytest
from sqlalchemy.exc import OperationalError

from exam_portal.errors import DuplicateRowError, TransientStoreError
from exam_portal.gateway import SQLAlchemyGateway
from exam_portal.models import User, RoleEnum, Answer, ExamAttempt


class BrokenSession:
    def __init__(self):
        self.rolled_back = False

    def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))

    def rollback(self):
        self.rolled_back = True


class BrokenDatabase:
    def __init__(self):
        self.session = BrokenSession()


def test_connection_failures_are_transient(app):
    database = BrokenDatabase()
    gateway = SQLAlchemyGateway(app, database=database)
    with pytest.raises(TransientStoreError):
        gateway.fetch(User, username="ada")
    assert database.session.rolled_back


def test_unique_violation_is_a_duplicate_row(gateway, seed):
    with pytest.raises(DuplicateRowError) as excinfo:
        gateway.insert(User, username="ada", password_hash="x", role=RoleEnum.STUDENT)
    assert not excinfo.value.retryable


def test_upsert_inserts_then_overwrites(gateway, seed):
    attempt = gateway.insert(ExamAttempt, exam_id=seed.exam_id, student_id=seed.student_id, submitted=False)
    key = {"attempt_id": attempt.id, "question_id": seed.q1}
    gateway.upsert(Answer, key=key, values={"value": "3"})
    gateway.upsert(Answer, key=key, values={"value": "4"})
    rows = gateway.fetch(Answer, attempt_id=attempt.id)
    assert [row.value for row in rows] == ["4"]


def test_update_reports_matched_rows(gateway, seed):
    attempt = gateway.insert(ExamAttempt, exam_id=seed.exam_id, student_id=seed.student_id, submitted=False)
    assert gateway.update(ExamAttempt, {"submitted": True}, id=attempt.id, submitted=False) == 1
    assert gateway.update(ExamAttempt, {"submitted": True}, id=attempt.id, submitted=False) == 0
    assert gateway.get(ExamAttempt, attempt.id).submitted is True


def test_count_and_fetch_one(gateway, seed):
    assert gateway.count(User, role=RoleEnum.STUDENT) == 2
    assert gateway.fetch_one(User, username="bola").id == seed.other_student_id
    assert gateway.fetch_one(User, username="nobody") is None


def test_guarded_upsert_writes_nothing_once_guard_fails(gateway, seed):
    attempt = gateway.insert(ExamAttempt, exam_id=seed.exam_id, student_id=seed.student_id, submitted=False)
    key = {"attempt_id": attempt.id, "question_id": seed.q1}
    guard = (ExamAttempt, {"id": attempt.id, "submitted": False})
    assert gateway.upsert(Answer, key=key, values={"value": "4"}, guard=guard) is not None

    gateway.update(ExamAttempt, {"submitted": True}, id=attempt.id)
    assert gateway.upsert(Answer, key=key, values={"value": "3"}, guard=guard) is None
    assert [row.value for row in gateway.fetch(Answer, attempt_id=attempt.id)] == ["4"]
