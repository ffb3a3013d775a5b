import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from timer import ExamTimer


START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _timer(calls, minutes=10):
    return ExamTimer(START, minutes, lambda: calls.append(1), clock=lambda: START)


def test_remaining_counts_down_from_absolute_end():
    t = _timer([])
    assert t.end_time == START + timedelta(minutes=10)
    assert t.remaining(START) == 600
    assert t.remaining(START + timedelta(seconds=0.5)) == 599
    assert t.remaining(START + timedelta(minutes=9, seconds=59)) == 1


def test_remaining_never_negative():
    t = _timer([])
    assert t.remaining(START + timedelta(hours=3)) == 0


def test_fires_once_at_zero():
    calls = []
    t = _timer(calls)
    t.tick(START + timedelta(minutes=5))
    assert calls == []
    t.tick(START + timedelta(minutes=10))
    t.tick(START + timedelta(minutes=11))
    t.tick(START + timedelta(minutes=12))
    assert calls == [1]
    assert t.fired


def test_late_sample_fires_without_intermediate_ticks():
    # a suspended process resumes well past the deadline
    calls = []
    t = _timer(calls)
    t.tick(START + timedelta(minutes=45))
    assert calls == [1]


def test_naive_started_at_is_treated_as_utc():
    t = ExamTimer(datetime(2024, 5, 1, 9, 0), 1, lambda: None)
    assert t.end_time == START + timedelta(minutes=1)


def test_cancelled_timer_never_fires():
    calls = []
    t = _timer(calls)
    t.cancel()
    t.tick(START + timedelta(minutes=20))
    assert calls == []
    assert not t.fired


def test_background_thread_fires_once():
    done = threading.Event()
    calls = []

    def on_time_up():
        calls.append(1)
        done.set()

    t = ExamTimer(START, 1, on_time_up, clock=lambda: START + timedelta(minutes=2))
    t.start(interval=0.01)
    assert done.wait(2.0)
    t.cancel()
    assert calls == [1]


def test_urgency_and_clock_format():
    t = _timer([])
    assert t.urgency(START) == "normal"
    assert t.urgency(START + timedelta(minutes=6)) == "warning"
    assert t.urgency(START + timedelta(minutes=9, seconds=30)) == "critical"
    assert t.format_clock(START) == "10:00"
    assert t.format_clock(START + timedelta(minutes=8, seconds=55)) == "01:05"
