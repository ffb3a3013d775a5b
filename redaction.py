# redaction.py
# -----------------------------------------------------------------------------
# Candidate-facing question projection.
# - Before submission, questions are read from the student_exam_questions view
#   (no answer-key columns exist there) and passed through a field allowlist.
# - Full rows (correct_answer / solution / explanation) are only served for an
#   attempt whose session token matches and whose submitted_at is set.
# -----------------------------------------------------------------------------
import os
import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional

import bleach
import markdown

from errors import InvalidAttemptError
from scoring import question_results

SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}

STUDENT_QUESTION_FIELDS = (
    "id", "exam_id", "question_text", "question_type", "options", "image_url", "order_index",
)
ANSWER_KEY_FIELDS = ("correct_answer", "solution", "explanation")

BLEACH_ALLOWED_TAGS = [
    "a", "abbr", "b", "blockquote", "code", "em", "i", "li", "ol", "strong", "ul",
    "p", "pre", "hr", "br", "span", "div", "img", "table", "thead", "tbody", "tr", "th", "td", "sub", "sup",
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class", "title"],
    "a": ["href", "name", "target", "rel"],
    "img": ["src", "alt", "width", "height", "loading"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http", "https", "mailto", "data"]


def _options_list(raw: Any) -> List[str]:
    if isinstance(raw, list):
        return [str(o) for o in raw]
    return []


def redact_question(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Allowlist projection. Anything not listed (answer key included) is dropped."""
    out = {k: row.get(k) for k in STUDENT_QUESTION_FIELDS}
    out["id"] = str(out["id"]) if out.get("id") is not None else None
    out["exam_id"] = str(out["exam_id"]) if out.get("exam_id") is not None else None
    out["options"] = _options_list(row.get("options"))
    return out


def fetch_student_questions(fetch_all: Callable, exam_id: str) -> List[Dict[str, Any]]:
    rows = fetch_all("""
        SELECT id, exam_id, question_text, question_type, options, image_url, order_index
          FROM public.student_exam_questions
         WHERE exam_id = %s
         ORDER BY order_index ASC, created_at ASC;
    """, (exam_id,))
    return [redact_question(r) for r in rows or []]


# ------------------------------- review (post-submit) ------------------------
@lru_cache(maxsize=512)
def render_rich(text: str) -> str:
    """Markdown -> HTML for solution/explanation text shown after submission."""
    if not text:
        return ""
    html = markdown.markdown(text, extensions=["fenced_code", "tables", "sane_lists"], output_format="html5")
    if SANITIZE_HTML:
        html = bleach.clean(
            html,
            tags=BLEACH_ALLOWED_TAGS,
            attributes=BLEACH_ALLOWED_ATTRS,
            protocols=BLEACH_ALLOWED_PROTOCOLS,
            strip=True,
        )
    return html


_BLANK = re.compile(r"^\s*$")


def _review_row(q: Mapping[str, Any], answers: Mapping[str, str], results: Mapping[str, bool]) -> Dict[str, Any]:
    qid = str(q["id"])
    solution = q.get("solution") or ""
    explanation = q.get("explanation") or ""
    given = answers.get(qid)
    return {
        **redact_question(q),
        "correct_answer": q.get("correct_answer"),
        "solution": solution or None,
        "explanation": explanation or None,
        "solution_html": render_rich(solution) if solution else None,
        "explanation_html": render_rich(explanation) if explanation else None,
        "your_answer": given,
        "answered": given is not None and not _BLANK.match(given),
        "is_correct": bool(results.get(qid)),
    }


def fetch_review(fetch_one: Callable, fetch_all: Callable, attempt_id: str, session_token: str) -> Dict[str, Any]:
    """Unredacted questions joined with the candidate's submitted answers.

    Raises InvalidAttemptError unless the attempt exists, the token matches
    and the attempt has been submitted.
    """
    attempt = fetch_one("""
        SELECT id, exam_id, answers, score, started_at, submitted_at
          FROM public.exam_attempts
         WHERE id = %s AND session_id = %s AND submitted_at IS NOT NULL;
    """, (attempt_id, session_token))
    if not attempt:
        raise InvalidAttemptError()

    questions = fetch_all("""
        SELECT id, exam_id, question_text, question_type, options, image_url, order_index,
               correct_answer, solution, explanation
          FROM public.questions
         WHERE exam_id = %s
         ORDER BY order_index ASC, created_at ASC;
    """, (attempt["exam_id"],)) or []

    answers = {str(k): v for k, v in (attempt.get("answers") or {}).items() if isinstance(v, str)}
    results = question_results(questions, answers)
    return {
        "attempt_id": str(attempt["id"]),
        "exam_id": str(attempt["exam_id"]),
        "score": attempt.get("score"),
        "started_at": _iso(attempt.get("started_at")),
        "submitted_at": _iso(attempt.get("submitted_at")),
        "questions": [_review_row(q, answers, results) for q in questions],
    }


def _iso(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)
