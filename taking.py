# taking.py
# -----------------------------------------------------------------------------
# Candidate-side exam-taking state machine.
#   not_started -> in_progress <-> reviewing -> submitted (terminal)
# - start captures the SERVER started_at as the timer origin
# - explicit submit with unanswered questions opens a confirmation gate;
#   the timer path skips the gate
# - one in-flight submit at a time; repeated triggers are no-ops
# - failures leave the state untouched and queue a transient notice, except a
#   time-up submit, which retries and then ends the session regardless
# -----------------------------------------------------------------------------
import os
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from errors import ExamError, InvalidAttemptError
from timer import ExamTimer, utcnow

NOT_STARTED = "not_started"
IN_PROGRESS = "in_progress"
REVIEWING = "reviewing"
SUBMITTED = "submitted"

TRIGGER_CANDIDATE = "candidate"
TRIGGER_TIMER = "timer"

AUTO_SUBMIT_RETRIES = int(os.getenv("AUTO_SUBMIT_RETRIES") or 2)


class InvalidTransition(RuntimeError):
    pass


class ExamTakingSession:
    def __init__(self, client: Any, exam_id: str, questions: List[Mapping[str, Any]], session_token: str,
                 time_limit_minutes: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow,
                 auto_submit_retries: int = AUTO_SUBMIT_RETRIES):
        if not session_token:
            raise ValueError("session_token is required")
        self.client = client
        self.exam_id = exam_id
        self.session_token = session_token
        self.questions = sorted(questions, key=lambda q: (q.get("order_index") or 0))
        self.question_ids = [str(q["id"]) for q in self.questions]
        self.time_limit_minutes = time_limit_minutes
        self.auto_submit_retries = max(0, int(auto_submit_retries))
        self._clock = clock
        self._lock = threading.RLock()

        self.state = NOT_STARTED
        self.answers: Dict[str, str] = {}
        self.attempt_id: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.timer: Optional[ExamTimer] = None

        self.starting = False
        self.submitting = False
        self.confirming = False
        self.unanswered_count = 0
        self.focus_question_id: Optional[str] = None
        self.submit_trigger: Optional[str] = None
        self.submit_failed = False
        self.time_up_pending = False
        self.result: Optional[Dict[str, int]] = None
        self.review: Optional[Dict[str, Any]] = None
        self.notices: List[Dict[str, str]] = []

    @classmethod
    def load(cls, client: Any, exam_id: str, session_token: str, **kwargs) -> "ExamTakingSession":
        """Fetch the redacted exam and build a session for it."""
        data = client.fetch_exam(exam_id)
        exam = data.get("exam") or {}
        return cls(client, exam_id, data.get("questions") or [], session_token,
                   time_limit_minutes=exam.get("time_limit_minutes"), **kwargs)

    # ------------------------------- notices ---------------------------------
    def _notice(self, level: str, message: str) -> None:
        print(f"[taking] {level}: {message}", flush=True)
        self.notices.append({"level": level, "message": message})

    def pop_notices(self) -> List[Dict[str, str]]:
        with self._lock:
            out, self.notices = self.notices, []
            return out

    # ------------------------------- start -----------------------------------
    def start(self, student_name: Optional[str] = None, student_email: Optional[str] = None,
              run_timer: bool = True) -> bool:
        with self._lock:
            if self.state != NOT_STARTED:
                raise InvalidTransition(f"cannot start from {self.state}")
            if self.starting:
                return False
            self.starting = True
        try:
            started = self.client.start_exam_attempt(self.exam_id, self.session_token, student_name, student_email)
        except ExamError as e:
            with self._lock:
                self._notice("error", f"Failed to start exam: {e.message}")
            return False
        finally:
            with self._lock:
                self.starting = False

        with self._lock:
            self.attempt_id = started["attempt_id"]
            self.started_at = started["started_at"]
            self.state = IN_PROGRESS
            if self.time_limit_minutes:
                self.timer = ExamTimer(self.started_at, self.time_limit_minutes, self.on_time_up, clock=self._clock)
        if self.timer is not None and run_timer:
            self.timer.start()
        return True

    # ------------------------------- answering -------------------------------
    def set_answer(self, question_id: str, value: str) -> None:
        with self._lock:
            if self.state != IN_PROGRESS or self.submitting:
                raise InvalidTransition(f"answers are read-only while {self.state}")
            qid = str(question_id)
            if qid not in self.question_ids:
                raise KeyError(qid)
            self.answers[qid] = value

    def unanswered_ids(self) -> List[str]:
        with self._lock:
            return [qid for qid in self.question_ids if not (self.answers.get(qid) or "").strip()]

    # ------------------------------- review ----------------------------------
    def review_answers(self) -> int:
        """in_progress -> reviewing. Returns the number of unanswered questions."""
        with self._lock:
            if self.state != IN_PROGRESS or self.submitting:
                raise InvalidTransition(f"cannot review from {self.state}")
            self.unanswered_count = len(self.unanswered_ids())
            self.state = REVIEWING
            return self.unanswered_count

    def back_to_questions(self, question_id: Optional[str] = None) -> None:
        with self._lock:
            if self.state != REVIEWING or self.submitting:
                raise InvalidTransition(f"cannot go back from {self.state}")
            self.confirming = False
            self.focus_question_id = str(question_id) if question_id is not None else None
            self.state = IN_PROGRESS

    # ------------------------------- submit ----------------------------------
    def request_submit(self) -> bool:
        """Candidate pressed submit. Opens the confirmation gate when questions are unanswered."""
        with self._lock:
            if self.state not in (IN_PROGRESS, REVIEWING) or self.submitting:
                return False
            self.unanswered_count = len(self.unanswered_ids())
            if self.unanswered_count > 0:
                self.confirming = True
                return False
        return self._submit(TRIGGER_CANDIDATE)

    def confirm_submit(self) -> bool:
        with self._lock:
            if not self.confirming or self.submitting:
                return False
            self.confirming = False
        return self._submit(TRIGGER_CANDIDATE)

    def cancel_submit(self) -> None:
        with self._lock:
            self.confirming = False

    def on_time_up(self) -> None:
        with self._lock:
            if self.state not in (IN_PROGRESS, REVIEWING):
                return
            if self.submitting:
                # the in-flight submit hands over to the timer path if it fails
                self.time_up_pending = True
                return
            self.confirming = False
            self._notice("warning", "Time is up! Submitting your exam...")
        self._submit(TRIGGER_TIMER)

    def tick(self, now: Optional[datetime] = None) -> Optional[int]:
        """Sample the timer from a cooperative UI loop. None for untimed exams."""
        timer = self.timer
        if timer is None:
            return None
        return timer.tick(now)

    def _submit(self, trigger: str) -> bool:
        with self._lock:
            if self.submitting or self.state not in (IN_PROGRESS, REVIEWING):
                return False
            self.submitting = True
            self.submit_trigger = trigger
            answers = dict(self.answers)

        tries = 1 + (self.auto_submit_retries if trigger == TRIGGER_TIMER else 0)
        last_error: Optional[ExamError] = None
        handoff = False
        try:
            for _ in range(tries):
                try:
                    result = self.client.submit_exam_attempt(self.attempt_id, self.session_token, answers)
                except InvalidAttemptError as e:
                    last_error = e
                    break
                except ExamError as e:
                    last_error = e
                    continue
                with self._lock:
                    self.result = result
                    self.state = SUBMITTED
                self._stop_timer()
                return True

            with self._lock:
                if trigger == TRIGGER_TIMER:
                    self.submit_failed = True
                    self.state = SUBMITTED
                    self._notice("error", "Time is up, but your answers could not be submitted"
                                          f" ({last_error.message if last_error else 'unknown error'})")
                else:
                    self._notice("error", f"Failed to submit exam: {last_error.message if last_error else 'unknown error'}")
                    handoff = self.time_up_pending or (self.timer is not None and self.timer.fired)
            if trigger == TRIGGER_TIMER:
                self._stop_timer()
        finally:
            with self._lock:
                self.submitting = False

        if trigger == TRIGGER_CANDIDATE and handoff:
            with self._lock:
                self.time_up_pending = False
            self.on_time_up()
        return False

    # ------------------------------- after submit ----------------------------
    def load_review(self) -> Optional[Dict[str, Any]]:
        """Unredacted questions for explanation review; only once the server confirmed submission."""
        with self._lock:
            if self.state != SUBMITTED or self.result is None:
                raise InvalidTransition("review is only available after a confirmed submission")
        try:
            review = self.client.fetch_review(self.attempt_id, self.session_token)
        except ExamError as e:
            with self._lock:
                self._notice("error", f"Failed to load explanations: {e.message}")
            return None
        with self._lock:
            self.review = review
        return review

    def _stop_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()

    def close(self) -> None:
        """Tear down on navigation away. The server-side attempt stays open."""
        self._stop_timer()
