import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Flask


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempts import create_attempts_blueprint
from client import AttemptClient
from errors import InvalidAttemptError, NotFoundError, TransportError
from taking import (
    IN_PROGRESS, NOT_STARTED, REVIEWING, SUBMITTED, TRIGGER_CANDIDATE, TRIGGER_TIMER,
    ExamTakingSession, InvalidTransition,
)


START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
QUESTIONS = [
    {"id": "q2", "question_text": "B?", "question_type": "short_answer", "options": [], "order_index": 1},
    {"id": "q1", "question_text": "A?", "question_type": "true_false", "options": ["True", "False"], "order_index": 0},
]


class FakeClient:
    def __init__(self, submit_errors=(), start_error=None):
        self.submit_errors = list(submit_errors)
        self.start_error = start_error
        self.submits = []
        self.reviews = 0

    def fetch_exam(self, exam_id):
        return {"ok": True, "exam": {"id": exam_id, "time_limit_minutes": 10}, "questions": QUESTIONS}

    def start_exam_attempt(self, exam_id, session_id, student_name=None, student_email=None):
        if self.start_error:
            raise self.start_error
        return {"attempt_id": "att-1", "started_at": START}

    def submit_exam_attempt(self, attempt_id, session_id, answers):
        self.submits.append(dict(answers))
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return {"score": 50, "correct_count": 1, "total_count": 2}

    def fetch_review(self, attempt_id, session_id):
        self.reviews += 1
        return {"ok": True, "questions": []}


def _session(client=None, limit=10, **kwargs):
    return ExamTakingSession(client or FakeClient(), "exam-1", QUESTIONS, "tok-a",
                             time_limit_minutes=limit, clock=lambda: START, **kwargs)


def test_start_moves_to_in_progress_and_uses_server_start_time():
    s = _session()
    assert s.state == NOT_STARTED
    assert s.question_ids == ["q1", "q2"]
    assert s.start(run_timer=False)
    assert s.state == IN_PROGRESS
    assert s.attempt_id == "att-1"
    assert s.timer.end_time == START + timedelta(minutes=10)


def test_start_failure_stays_not_started_with_notice():
    s = _session(FakeClient(start_error=NotFoundError()))
    assert s.start(run_timer=False) is False
    assert s.state == NOT_STARTED
    assert s.pop_notices()[0]["message"].startswith("Failed to start exam")
    assert s.pop_notices() == []


def test_untimed_exam_has_no_timer():
    s = _session(limit=None)
    s.start()
    assert s.timer is None
    assert s.tick() is None


def test_answers_only_editable_in_progress():
    s = _session()
    with pytest.raises(InvalidTransition):
        s.set_answer("q1", "True")
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    with pytest.raises(KeyError):
        s.set_answer("zzz", "x")
    assert s.review_answers() == 1
    assert s.state == REVIEWING
    with pytest.raises(InvalidTransition):
        s.set_answer("q2", "x")
    s.back_to_questions("q2")
    assert s.state == IN_PROGRESS
    assert s.focus_question_id == "q2"


def test_submit_with_unanswered_opens_confirmation():
    client = FakeClient()
    s = _session(client)
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "   ")
    assert s.request_submit() is False
    assert s.confirming
    assert s.unanswered_count == 1
    assert client.submits == []

    s.cancel_submit()
    assert not s.confirming
    assert s.state == IN_PROGRESS

    s.request_submit()
    assert s.confirm_submit() is True
    assert s.state == SUBMITTED
    assert s.submit_trigger == TRIGGER_CANDIDATE
    assert s.result == {"score": 50, "correct_count": 1, "total_count": 2}
    assert client.submits == [{"q1": "True", "q2": "   "}]


def test_fully_answered_submit_skips_confirmation():
    s = _session()
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "x")
    assert s.request_submit() is True
    assert s.state == SUBMITTED


def test_candidate_submit_failure_keeps_state_and_answers():
    client = FakeClient(submit_errors=[TransportError("down")])
    s = _session(client)
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "x")
    assert s.request_submit() is False
    assert s.state == IN_PROGRESS
    assert s.answers == {"q1": "True", "q2": "x"}
    assert not s.submitting
    assert any("Failed to submit" in n["message"] for n in s.pop_notices())
    assert s.request_submit() is True


def test_time_up_submits_without_confirmation():
    client = FakeClient()
    s = _session(client)
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.review_answers()
    s.tick(START + timedelta(minutes=10))
    assert s.state == SUBMITTED
    assert s.submit_trigger == TRIGGER_TIMER
    assert client.submits == [{"q1": "True"}]
    assert s.pop_notices()[0]["message"] == "Time is up! Submitting your exam..."


def test_time_up_retries_then_succeeds():
    client = FakeClient(submit_errors=[TransportError(), TransportError()])
    s = _session(client, auto_submit_retries=2)
    s.start(run_timer=False)
    s.tick(START + timedelta(minutes=11))
    assert len(client.submits) == 3
    assert s.state == SUBMITTED
    assert not s.submit_failed


def test_time_up_gives_up_after_retries():
    client = FakeClient(submit_errors=[TransportError()] * 5)
    s = _session(client, auto_submit_retries=1)
    s.start(run_timer=False)
    s.tick(START + timedelta(minutes=11))
    assert len(client.submits) == 2
    assert s.state == SUBMITTED
    assert s.submit_failed
    assert s.result is None
    with pytest.raises(InvalidTransition):
        s.load_review()


def test_time_up_does_not_retry_invalid_attempt():
    client = FakeClient(submit_errors=[InvalidAttemptError()] * 3)
    s = _session(client, auto_submit_retries=2)
    s.start(run_timer=False)
    s.tick(START + timedelta(minutes=11))
    assert len(client.submits) == 1
    assert s.submit_failed


def test_time_up_during_successful_candidate_submit_adds_nothing():
    gate = threading.Event()
    release = threading.Event()

    class SlowClient(FakeClient):
        def submit_exam_attempt(self, attempt_id, session_id, answers):
            gate.set()
            release.wait(2.0)
            return super().submit_exam_attempt(attempt_id, session_id, answers)

    client = SlowClient()
    s = _session(client)
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "x")
    worker = threading.Thread(target=s.request_submit)
    worker.start()
    assert gate.wait(2.0)
    assert s.submitting
    s.on_time_up()
    assert s.request_submit() is False
    release.set()
    worker.join(2.0)
    assert len(client.submits) == 1
    assert s.state == SUBMITTED
    assert s.submit_trigger == TRIGGER_CANDIDATE


def test_submitted_is_terminal():
    client = FakeClient()
    s = _session(client)
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "x")
    s.request_submit()
    s.on_time_up()
    assert s.request_submit() is False
    with pytest.raises(InvalidTransition):
        s.set_answer("q1", "False")
    with pytest.raises(InvalidTransition):
        s.start()
    assert len(client.submits) == 1


def test_review_loads_after_confirmed_submit():
    client = FakeClient()
    s = _session(client)
    with pytest.raises(InvalidTransition):
        s.load_review()
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "x")
    s.request_submit()
    assert s.load_review() == {"ok": True, "questions": []}
    assert client.reviews == 1


def test_load_builds_session_from_redacted_exam():
    s = ExamTakingSession.load(FakeClient(), "exam-1", "tok-a")
    assert s.time_limit_minutes == 10
    assert s.question_ids == ["q1", "q2"]


# ------------------------------- end to end ---------------------------------
class FlaskResponse:
    def __init__(self, resp):
        self.status_code = resp.status_code
        self._data = resp.get_json(silent=True)

    def json(self):
        if self._data is None:
            raise ValueError("no JSON body")
        return self._data


class FlaskHTTP:
    """requests.Session look-alike that routes calls into a Flask test client."""

    def __init__(self, app):
        self.client = app.test_client()

    def request(self, method, url, timeout=None, json=None, params=None):
        path = url.split("://", 1)[-1]
        path = path[path.index("/"):]
        return FlaskResponse(self.client.open(path, method=method, json=json, query_string=params))


def test_session_runs_against_attempt_routes():
    sys.path.insert(0, str(Path(__file__).resolve().parent))
    from test_attempt_protocol import EXAM_ID, FakeDB, Q_FRANCE, Q_ITALY

    db = FakeDB()
    app = Flask(__name__)
    app.testing = True
    app.register_blueprint(create_attempts_blueprint("", {
        "fetch_one": db.fetch_one, "fetch_all": db.fetch_all, "transaction": db.transaction,
    }))
    client = AttemptClient("http://exam.test", http=FlaskHTTP(app))

    s = ExamTakingSession.load(client, EXAM_ID, "tok-e2e", clock=lambda: START)
    assert s.start(run_timer=False)
    assert s.started_at == START
    s.set_answer(Q_FRANCE, "Paris")
    s.set_answer(Q_ITALY, "Milan")
    assert s.request_submit() is True
    assert s.result == {"score": 50, "correct_count": 1, "total_count": 2}

    review = s.load_review()
    assert [q["is_correct"] for q in review["questions"]] == [True, False]

    # the server refuses a second submission for the same attempt
    with pytest.raises(InvalidAttemptError):
        client.submit_exam_attempt(s.attempt_id, "tok-e2e", {})


def _blocking_client(errors):
    gate = threading.Event()
    release = threading.Event()

    class BlockingClient(FakeClient):
        def submit_exam_attempt(self, attempt_id, session_id, answers):
            if not gate.is_set():
                gate.set()
                release.wait(2.0)
            return super().submit_exam_attempt(attempt_id, session_id, answers)

    return BlockingClient(submit_errors=errors), gate, release


def test_time_up_during_failing_candidate_submit_hands_over_to_timer():
    client, gate, release = _blocking_client([TransportError("down")])
    s = _session(client, auto_submit_retries=2)
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "x")
    worker = threading.Thread(target=s.request_submit)
    worker.start()
    assert gate.wait(2.0)
    s.tick(START + timedelta(minutes=10, seconds=1))
    assert s.timer.fired
    release.set()
    worker.join(2.0)

    for extra in range(5):
        s.tick(START + timedelta(minutes=11, seconds=extra))
    assert s.state == SUBMITTED
    assert s.submit_trigger == TRIGGER_TIMER
    assert s.result == {"score": 50, "correct_count": 1, "total_count": 2}
    assert len(client.submits) == 2
    with pytest.raises(InvalidTransition):
        s.set_answer("q2", "edited after deadline")


def test_time_up_during_failing_candidate_submit_ends_session_when_timer_path_fails():
    client, gate, release = _blocking_client([TransportError("down")] * 5)
    s = _session(client, auto_submit_retries=1)
    s.start(run_timer=False)
    s.set_answer("q1", "True")
    s.set_answer("q2", "x")
    worker = threading.Thread(target=s.request_submit)
    worker.start()
    assert gate.wait(2.0)
    s.tick(START + timedelta(minutes=10, seconds=1))
    release.set()
    worker.join(2.0)

    assert s.state == SUBMITTED
    assert s.submit_failed
    assert s.result is None
    assert len(client.submits) == 3
    with pytest.raises(InvalidTransition):
        s.set_answer("q2", "edited after deadline")
