import pytest

from exam_portal.countdown import CountdownState
from exam_portal.errors import ExamUnavailable, TransientStoreError
from exam_portal.models import ExamAttempt, NotificationLog, NotificationType
from exam_portal.session import ExamSession
from tests.conftest import add_exam


@pytest.fixture
def open_session(tracker, seed, clock):
    """An exam page whose timers never fire on their own; tests tick by hand."""
    def factory(student_id=None):
        return ExamSession(tracker, seed.exam_id, student_id or seed.student_id,
                           autosave_interval=3600, tick_seconds=3600, clock=clock)
    return factory


@pytest.fixture
def update_calls(tracker, monkeypatch):
    calls = []
    real_update = tracker.gateway.update

    def counting_update(model, values, **filters):
        calls.append(filters)
        return real_update(model, values, **filters)

    monkeypatch.setattr(tracker.gateway, "update", counting_update)
    return calls


def test_deadline_reached_auto_submits_once(open_session, tracker, seed, clock, update_calls):
    with open_session() as visit:
        visit.answer("4")
        clock.advance(minutes=1)
        assert visit.countdown.tick() == 0
        visit.countdown.tick()

        assert visit.state is CountdownState.EXPIRED
        assert visit.expired
        assert visit.result.score == 5
        assert visit.result.auto_submitted is True
        assert visit.submit() is visit.result

    stored = tracker.get_attempt(visit.attempt.id)
    assert stored.submitted is True
    assert stored.score == 5
    assert len(update_calls) == 1
    logs = tracker.gateway.fetch(NotificationLog, exam_id=seed.exam_id)
    assert [log.type for log in logs] == [NotificationType.EXAM_AUTO_SUBMITTED]


def test_manual_submit_stops_countdown(open_session, tracker, seed, clock):
    with open_session() as visit:
        visit.answer("4")
        visit.next()
        assert tracker.saved_answers(visit.attempt.id) == {seed.q1: "4"}

        visit.answer("Paris")
        result = visit.submit()
        assert result.score == 10
        assert result.auto_submitted is False
        assert visit.state is CountdownState.STOPPED
        assert not visit.autosave.timer_running

        clock.advance(minutes=5)
        visit.countdown.tick()
        assert visit.state is CountdownState.STOPPED

    assert tracker.get_attempt(visit.attempt.id).score == 10
    assert len(tracker.gateway.fetch(NotificationLog, exam_id=seed.exam_id)) == 1


def test_navigation_is_clamped_to_the_question_list(open_session, seed):
    with open_session() as visit:
        assert visit.previous().id == seed.q1
        assert visit.next().id == seed.q2
        assert visit.next().id == seed.q2
        assert visit.go_to(0).id == seed.q1


def test_leaving_the_page_cancels_both_timers(open_session):
    with pytest.raises(RuntimeError):
        with open_session() as visit:
            assert visit.countdown.timer_running
            assert visit.autosave.timer_running
            raise RuntimeError("page closed")
    assert not visit.countdown.timer_running
    assert not visit.autosave.timer_running


def test_reopening_resumes_the_same_attempt(open_session, tracker, seed, clock):
    with open_session() as first:
        first.answer("4")
        first.next()
    clock.advance(seconds=20)

    with open_session() as second:
        assert second.attempt.id == first.attempt.id
        assert second.answers == {seed.q1: "4"}
        assert second.autosave.pending(second.answers) == {}
        assert second.remaining() == 40
    assert tracker.gateway.count(ExamAttempt, exam_id=seed.exam_id) == 1


def test_exam_without_questions_is_blocked(app, tracker, seed, clock):
    with app.app_context():
        exam_id, _ = add_exam(title="Empty")
    with pytest.raises(ExamUnavailable):
        with ExamSession(tracker, exam_id, seed.student_id, clock=clock):
            pass


def test_failed_auto_submit_can_be_retried(open_session, tracker, clock, monkeypatch):
    real_update = tracker.gateway.update

    def offline(*args, **kwargs):
        raise TransientStoreError("database unavailable")

    with open_session() as visit:
        visit.answer("4")
        monkeypatch.setattr(tracker.gateway, "update", offline)
        clock.advance(minutes=1)
        visit.countdown.tick()

        assert visit.expired
        assert visit.result is None
        assert isinstance(visit.submit_error, TransientStoreError)

        monkeypatch.setattr(tracker.gateway, "update", real_update)
        result = visit.submit()
        assert result.submitted is True
        assert result.auto_submitted is True
        assert result.score == 5
        assert visit.submit_error is None


def test_cleared_answer_does_not_score(open_session, tracker, seed):
    with open_session() as visit:
        visit.answer("4")
        visit.next()
        visit.previous()
        visit.answer(None)
        result = visit.submit()
    assert result.score == 0
    assert tracker.saved_answers(visit.attempt.id) == {seed.q1: None}
