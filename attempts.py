# attempts.py
# -----------------------------------------------------------------------------
# Attempt protocol (start / submit) + candidate-facing JSON routes.
# - start and submit are the ONLY write paths for public.exam_attempts
# - score / submitted_at are written in one transaction: row lock on the open
#   attempt, score against the server-side key, conditional UPDATE
# - everything served before submission comes from the redacted projection
# -----------------------------------------------------------------------------
import os
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from flask import Blueprint, g, jsonify, request
from psycopg.types.json import Jsonb

from errors import (
    ExamError, ForbiddenError, InvalidAttemptError, NotFoundError, ValidationError, error_response,
)
from redaction import fetch_review, fetch_student_questions
from scoring import coerce_answer_map, score_answers

ATTEMPT_POLICIES = ("unlimited", "resume", "single")
ATTEMPT_POLICY = (os.getenv("ATTEMPT_POLICY") or "unlimited").strip().lower()
if ATTEMPT_POLICY not in ATTEMPT_POLICIES:
    print(f"[attempt] unknown ATTEMPT_POLICY={ATTEMPT_POLICY!r}; using 'unlimited'", flush=True)
    ATTEMPT_POLICY = "unlimited"

SESSION_TOKEN_MAX = 200
NAME_MAX = 200


# ------------------------------- helpers -------------------------------------
def parse_uuid(value: Any) -> Optional[str]:
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError, AttributeError):
        return None


def _clean_token(token: Any) -> str:
    if not isinstance(token, str) or not token.strip():
        raise ValidationError("session_id is required")
    if len(token) > SESSION_TOKEN_MAX:
        raise ValidationError("session_id is too long")
    return token


def _clean_optional(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > NAME_MAX:
        raise ValidationError(f"{field} is too long")
    return value or None


def can_attempt(exam: Mapping[str, Any], viewer_id: Any) -> bool:
    """Solo-mode exams are for their owner only; otherwise the exam must be published."""
    is_owner = viewer_id is not None and exam.get("created_by") is not None \
        and str(exam.get("created_by")) == str(viewer_id)
    if exam.get("solo_mode"):
        return is_owner
    return bool(exam.get("is_published"))


def _iso(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


# ------------------------------- protocol ------------------------------------
def start_exam_attempt(transaction: Callable, exam_id: Any, session_token: Any,
                       viewer_id: Any = None,
                       student_name: Optional[str] = None,
                       student_email: Optional[str] = None,
                       policy: str = ATTEMPT_POLICY) -> Dict[str, Any]:
    """Create an attempt. Returns {"attempt_id", "started_at"} (started_at from the DB clock)."""
    token = _clean_token(session_token)
    name = _clean_optional(student_name, "student_name")
    email = _clean_optional(student_email, "student_email")
    exam_uuid = parse_uuid(exam_id)
    if exam_uuid is None:
        raise NotFoundError()

    # per-exam row lock serialises starts when the policy has to look at prior attempts
    lock = " FOR UPDATE" if policy != "unlimited" else ""
    with transaction() as cur:
        cur.execute(f"""
            SELECT id, is_published, solo_mode, created_by
              FROM public.exams
             WHERE id = %s{lock};
        """, (exam_uuid,))
        exam = cur.fetchone()
        if not exam:
            raise NotFoundError()
        if not can_attempt(exam, viewer_id):
            raise ForbiddenError()

        if policy != "unlimited":
            cur.execute("""
                SELECT id, started_at, submitted_at
                  FROM public.exam_attempts
                 WHERE exam_id = %s AND session_id = %s
                 ORDER BY started_at DESC
                 LIMIT 1;
            """, (exam_uuid, token))
            prior = cur.fetchone()
            if prior and policy == "resume" and prior.get("submitted_at") is None:
                print(f"[attempt] resumed {prior['id']} exam={exam_uuid}", flush=True)
                return {"attempt_id": str(prior["id"]), "started_at": prior["started_at"]}
            if prior and policy == "single":
                raise ForbiddenError("An attempt for this exam already exists")

        cur.execute("""
            INSERT INTO public.exam_attempts (exam_id, session_id, student_name, student_email, answers)
            VALUES (%s, %s, %s, %s, '{}'::jsonb)
            RETURNING id, started_at;
        """, (exam_uuid, token, name, email))
        row = cur.fetchone()

    print(f"[attempt] started {row['id']} exam={exam_uuid}", flush=True)
    return {"attempt_id": str(row["id"]), "started_at": row["started_at"]}


def submit_exam_attempt(transaction: Callable, attempt_id: Any, session_token: Any,
                        answers: Any) -> Dict[str, int]:
    """Score and finalize an open attempt. Returns {"score", "correct_count", "total_count"}.

    Unknown attempt, token mismatch and already-submitted all raise the same
    InvalidAttemptError. Answers are stored exactly as supplied.
    """
    if not isinstance(session_token, str) or not session_token:
        raise InvalidAttemptError()
    attempt_uuid = parse_uuid(attempt_id)
    if attempt_uuid is None:
        raise InvalidAttemptError()
    answer_map = coerce_answer_map(answers)

    with transaction() as cur:
        cur.execute("""
            SELECT id, exam_id
              FROM public.exam_attempts
             WHERE id = %s AND session_id = %s AND submitted_at IS NULL
             FOR UPDATE;
        """, (attempt_uuid, session_token))
        attempt = cur.fetchone()
        if not attempt:
            raise InvalidAttemptError()

        cur.execute("""
            SELECT id, correct_answer
              FROM public.questions
             WHERE exam_id = %s
             ORDER BY order_index ASC;
        """, (attempt["exam_id"],))
        questions = cur.fetchall() or []
        result = score_answers(questions, answer_map)

        cur.execute("""
            UPDATE public.exam_attempts
               SET answers = %s, score = %s, submitted_at = now()
             WHERE id = %s AND session_id = %s AND submitted_at IS NULL
            RETURNING submitted_at;
        """, (Jsonb(dict(answer_map)), result["score"], attempt_uuid, session_token))
        if not cur.fetchone():
            raise InvalidAttemptError()

    print(f"[attempt] submitted {attempt_uuid} score={result['score']} "
          f"({result['correct_count']}/{result['total_count']})", flush=True)
    return result


# ------------------------------- blueprint -----------------------------------
def create_attempts_blueprint(base_path: str, deps: Dict[str, Any], name: str = "attempts") -> Blueprint:
    """
    Candidate-facing routes mounted at base_path.
    Required deps: fetch_one, fetch_all, transaction
    Optional deps: attempt_policy
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    transaction: Callable = deps["transaction"]
    policy: str = deps.get("attempt_policy") or ATTEMPT_POLICY

    @bp.errorhandler(ExamError)
    def _exam_error(err: ExamError):
        return error_response(err)

    def _visible_exam(exam_id: str) -> Dict[str, Any]:
        exam_uuid = parse_uuid(exam_id)
        if exam_uuid is None:
            raise NotFoundError()
        exam = fetch_one("""
            SELECT id, title, description, time_limit_minutes, is_published, solo_mode, created_by
              FROM public.exams
             WHERE id = %s;
        """, (exam_uuid,))
        if not exam:
            raise NotFoundError()
        if not can_attempt(exam, getattr(g, "user_id", None)):
            raise ForbiddenError()
        return exam

    @bp.get("/exams/<exam_id>/take")
    def exam_for_candidate(exam_id: str):
        exam = _visible_exam(exam_id)
        questions = fetch_student_questions(fetch_all, str(exam["id"]))
        return jsonify({
            "ok": True,
            "exam": {
                "id": str(exam["id"]),
                "title": exam.get("title"),
                "description": exam.get("description"),
                "time_limit_minutes": exam.get("time_limit_minutes"),
                "question_count": len(questions),
            },
            "questions": questions,
        })

    @bp.post("/exams/<exam_id>/attempts")
    def exam_attempt_start(exam_id: str):
        data = request.get_json(silent=True) or {}
        started = start_exam_attempt(
            transaction, exam_id, data.get("session_id"),
            viewer_id=getattr(g, "user_id", None),
            student_name=data.get("student_name"),
            student_email=data.get("student_email"),
            policy=policy,
        )
        return jsonify({"ok": True, "attempt_id": started["attempt_id"],
                        "started_at": _iso(started["started_at"])}), 201

    @bp.post("/attempts/<attempt_id>/submit")
    def exam_attempt_submit(attempt_id: str):
        data = request.get_json(silent=True) or {}
        result = submit_exam_attempt(transaction, attempt_id, data.get("session_id"), data.get("answers"))
        return jsonify({"ok": True, **result})

    @bp.get("/attempts/<attempt_id>/review")
    def exam_attempt_review(attempt_id: str):
        token = request.args.get("session_id") or request.headers.get("X-Session-Id") or ""
        attempt_uuid = parse_uuid(attempt_id)
        if attempt_uuid is None or not token:
            raise InvalidAttemptError()
        review = fetch_review(fetch_one, fetch_all, attempt_uuid, token)
        return jsonify({"ok": True, **review})

    return bp
