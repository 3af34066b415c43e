import threading
from datetime import timedelta

import pytest

from exam_portal.countdown import Countdown, CountdownState, format_remaining
from exam_portal.timers import IntervalTimer
from tests.conftest import FakeClock


@pytest.fixture
def fired():
    return []


@pytest.fixture
def countdown(clock, fired):
    return Countdown(lambda: fired.append(clock()), clock=clock)


def test_tick_counts_down_to_expiry(countdown, clock, fired):
    countdown.arm(clock() + timedelta(seconds=3))
    assert countdown.state is CountdownState.RUNNING

    seen = []
    for _ in range(3):
        clock.advance(seconds=1)
        seen.append(countdown.tick())
    assert seen == [2, 1, 0]
    assert countdown.state is CountdownState.EXPIRED
    assert len(fired) == 1


def test_expire_fires_exactly_once(countdown, clock, fired):
    countdown.arm(clock() + timedelta(seconds=1))
    clock.advance(seconds=5)
    for _ in range(4):
        assert countdown.tick() == 0
    assert len(fired) == 1


def test_deadline_already_passed_expires_on_first_tick(countdown, clock, fired):
    countdown.arm(clock() - timedelta(minutes=2))
    assert countdown.remaining() == 0
    countdown.tick()
    assert countdown.state is CountdownState.EXPIRED
    assert len(fired) == 1


def test_stop_prevents_expiry(countdown, clock, fired):
    countdown.arm(clock() + timedelta(seconds=2))
    assert countdown.stop() is True
    clock.advance(seconds=10)
    countdown.tick()
    assert countdown.state is CountdownState.STOPPED
    assert fired == []
    assert countdown.stop() is False


def test_stop_after_expiry_keeps_expired_state(countdown, clock):
    countdown.arm(clock())
    countdown.tick()
    assert countdown.stop() is False
    assert countdown.state is CountdownState.EXPIRED


def test_arm_twice_is_rejected(countdown, clock):
    countdown.arm(clock() + timedelta(seconds=30))
    with pytest.raises(RuntimeError):
        countdown.arm(clock() + timedelta(seconds=60))


def test_remaining_rounds_partial_seconds_up(countdown, clock):
    assert countdown.remaining() is None
    countdown.arm(clock() + timedelta(seconds=10))
    clock.advance(milliseconds=200)
    assert countdown.remaining() == 10


def test_on_tick_receives_remaining_seconds(clock):
    shown = []
    countdown = Countdown(lambda: None, clock=clock, on_tick=shown.append)
    countdown.arm(clock() + timedelta(seconds=2))
    clock.advance(seconds=1)
    countdown.tick()
    clock.advance(seconds=1)
    countdown.tick()
    countdown.tick()
    assert shown == [1, 0]


@pytest.mark.parametrize("seconds, text", [
    (None, "--:--:--"),
    (0, "00:00:00"),
    (59, "00:00:59"),
    (3600, "01:00:00"),
    (5025, "01:23:45"),
    (-4, "00:00:00"),
])
def test_format_remaining(seconds, text):
    assert format_remaining(seconds) == text


def test_background_timer_auto_submits_once():
    done = threading.Event()
    calls = []

    def on_expire():
        calls.append(1)
        done.set()

    clock = FakeClock()
    countdown = Countdown(on_expire, tick_seconds=0.01, clock=clock)
    countdown.arm(clock() - timedelta(seconds=1))
    countdown.start()
    assert done.wait(2)
    countdown.cancel()
    assert calls == [1]
    assert not countdown.timer_running


def test_cancel_halts_background_ticks(clock):
    ticks = []
    countdown = Countdown(lambda: None, tick_seconds=0.01, clock=clock, on_tick=ticks.append)
    countdown.arm(clock() + timedelta(hours=1))
    countdown.start()
    countdown.cancel()
    count = len(ticks)
    threading.Event().wait(0.05)
    assert len(ticks) == count
    assert not countdown.timer_running


def test_interval_timer_keeps_running_after_callback_error():
    calls = []
    done = threading.Event()

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        done.set()

    timer = IntervalTimer(0.01, flaky, name="flaky")
    timer.start()
    assert done.wait(2)
    timer.cancel()
    assert len(calls) >= 2
    with pytest.raises(RuntimeError):
        timer.start()


def test_interval_timer_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        IntervalTimer(0, lambda: None)
