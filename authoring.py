# authoring.py
# -----------------------------------------------------------------------------
# Author-side JSON routes: exam CRUD, publish toggle, AI drafts, dashboard and
# analytics. Owner-only: every query is scoped by created_by = g.user_id, so a
# foreign exam id reads as "not found".
# Questions are replaced wholesale on every save.
# -----------------------------------------------------------------------------
from typing import Any, Callable, Dict, List, Mapping, Optional

from flask import Blueprint, g, jsonify, request
from psycopg.types.json import Jsonb

import analytics
import generation
from attempts import parse_uuid
from errors import ExamError, NotFoundError, UnauthorizedError, ValidationError, error_response

QUESTION_TYPES = generation.QUESTION_TYPES
TITLE_MAX = 300
MAX_TIME_LIMIT_MIN = 24 * 60


# ------------------------------- validation ----------------------------------
def _opt_text(raw: Mapping[str, Any], key: str) -> Optional[str]:
    v = raw.get(key)
    if v is None:
        return None
    v = str(v).strip()
    return v or None


def validate_question(raw: Any, order_index: int) -> Dict[str, Any]:
    n = order_index + 1
    if not isinstance(raw, dict):
        raise ValidationError(f"Question {n}: must be an object")
    text = str(raw.get("question_text") or "").strip()
    if not text:
        raise ValidationError(f"Question {n}: question text is required")
    qtype = str(raw.get("question_type") or "multiple_choice").strip()
    if qtype not in QUESTION_TYPES:
        raise ValidationError(f"Question {n}: unknown question type '{qtype}'")
    answer = raw.get("correct_answer")
    answer = "" if answer is None else str(answer)
    options: List[str] = []

    if qtype == "multiple_choice":
        raw_opts = raw.get("options") if isinstance(raw.get("options"), list) else []
        options = [str(o) for o in raw_opts if str(o).strip()]
        if len(options) < 2:
            raise ValidationError(f"Question {n}: multiple choice needs at least two options")
        if answer not in options:
            raise ValidationError(f"Question {n}: correct answer must be one of the options")
    elif qtype == "true_false":
        key = answer.strip().lower()
        if key not in ("true", "false"):
            raise ValidationError(f"Question {n}: correct answer must be True or False")
        answer = "True" if key == "true" else "False"
        options = ["True", "False"]
    elif not answer.strip():
        raise ValidationError(f"Question {n}: correct answer is required")

    return {
        "question_text": text,
        "question_type": qtype,
        "options": options,
        "correct_answer": answer,
        "solution": _opt_text(raw, "solution"),
        "explanation": _opt_text(raw, "explanation"),
        "image_url": _opt_text(raw, "image_url"),
        "order_index": order_index,
    }


def validate_exam_payload(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("Please enter an exam title")
    if len(title) > TITLE_MAX:
        raise ValidationError("Exam title is too long")

    limit = data.get("time_limit_minutes")
    if limit in (None, "", 0):
        limit = None
    else:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("time_limit_minutes must be a whole number of minutes")
        if not 1 <= limit <= MAX_TIME_LIMIT_MIN:
            raise ValidationError(f"time_limit_minutes must be between 1 and {MAX_TIME_LIMIT_MIN}")

    raw_questions = data.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValidationError("Please add at least one question")

    return {
        "title": title,
        "description": _opt_text(data, "description"),
        "time_limit_minutes": limit,
        "is_published": bool(data.get("is_published", False)),
        "solo_mode": bool(data.get("solo_mode", False)),
        "questions": [validate_question(q, i) for i, q in enumerate(raw_questions)],
    }


def _insert_questions(cur, exam_id: str, questions: List[Dict[str, Any]]) -> None:
    for q in questions:
        cur.execute("""
            INSERT INTO public.questions
                (exam_id, question_text, question_type, options, correct_answer,
                 solution, explanation, image_url, order_index)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s);
        """, (exam_id, q["question_text"], q["question_type"], Jsonb(q["options"]), q["correct_answer"],
              q["solution"], q["explanation"], q["image_url"], q["order_index"]))


def _exam_json(row: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out["id"] = str(row["id"])
    for k in ("created_at", "updated_at"):
        if hasattr(out.get(k), "isoformat"):
            out[k] = out[k].isoformat()
    return out


# ------------------------------- blueprint -----------------------------------
def create_authoring_blueprint(base_path: str, deps: Dict[str, Any], name: str = "authoring") -> Blueprint:
    """
    Author routes mounted at f"{base_path}/author".
    Required deps: fetch_one, fetch_all, execute_returning, transaction
    Optional deps: chat_json (generation gateway override)
    """
    bp = Blueprint(name, __name__, url_prefix=f"{base_path or ''}/author")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    transaction: Callable = deps["transaction"]

    @bp.errorhandler(ExamError)
    def _exam_error(err: ExamError):
        return error_response(err)

    @bp.before_request
    def _require_author():
        if not getattr(g, "user_id", None):
            raise UnauthorizedError()

    def _owned_exam(exam_id: str) -> Dict[str, Any]:
        exam_uuid = parse_uuid(exam_id)
        if exam_uuid is None:
            raise NotFoundError()
        row = fetch_one("""
            SELECT id, title, description, time_limit_minutes, is_published, solo_mode,
                   created_by, created_at, updated_at
              FROM public.exams
             WHERE id = %s AND created_by = %s;
        """, (exam_uuid, g.user_id))
        if not row:
            raise NotFoundError()
        return row

    # ---- exams ----------------------------------------------------------------
    @bp.get("/exams")
    def author_exams_list():
        rows = fetch_all("""
            SELECT e.id, e.title, e.description, e.time_limit_minutes, e.is_published, e.solo_mode,
                   e.created_at, e.updated_at,
                   (SELECT COUNT(*) FROM public.questions q WHERE q.exam_id = e.id) AS question_count
              FROM public.exams e
             WHERE e.created_by = %s
             ORDER BY e.created_at DESC;
        """, (g.user_id,))
        return jsonify({"ok": True, "exams": [_exam_json(r) for r in rows or []]})

    @bp.post("/exams")
    def author_exam_create():
        exam = validate_exam_payload(request.get_json(silent=True))
        with transaction() as cur:
            cur.execute("""
                INSERT INTO public.exams (title, description, time_limit_minutes, is_published, solo_mode, created_by)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id;
            """, (exam["title"], exam["description"], exam["time_limit_minutes"],
                  exam["is_published"], exam["solo_mode"], g.user_id))
            exam_id = str(cur.fetchone()["id"])
            _insert_questions(cur, exam_id, exam["questions"])
        print(f"[author] exam {exam_id} created with {len(exam['questions'])} questions", flush=True)
        return jsonify({"ok": True, "id": exam_id}), 201

    @bp.get("/exams/<exam_id>")
    def author_exam_get(exam_id: str):
        exam = _owned_exam(exam_id)
        questions = fetch_all("""
            SELECT id, question_text, question_type, options, correct_answer,
                   solution, explanation, image_url, order_index
              FROM public.questions
             WHERE exam_id = %s
             ORDER BY order_index ASC;
        """, (exam["id"],)) or []
        for q in questions:
            q["id"] = str(q["id"])
        return jsonify({"ok": True, "exam": _exam_json(exam), "questions": questions})

    @bp.put("/exams/<exam_id>")
    def author_exam_update(exam_id: str):
        exam_row = _owned_exam(exam_id)
        exam = validate_exam_payload(request.get_json(silent=True))
        with transaction() as cur:
            cur.execute("""
                UPDATE public.exams
                   SET title = %s, description = %s, time_limit_minutes = %s,
                       is_published = %s, solo_mode = %s, updated_at = now()
                 WHERE id = %s AND created_by = %s
                RETURNING id;
            """, (exam["title"], exam["description"], exam["time_limit_minutes"],
                  exam["is_published"], exam["solo_mode"], exam_row["id"], g.user_id))
            if not cur.fetchone():
                raise NotFoundError()
            cur.execute("DELETE FROM public.questions WHERE exam_id = %s;", (exam_row["id"],))
            _insert_questions(cur, str(exam_row["id"]), exam["questions"])
        print(f"[author] exam {exam_row['id']} updated ({len(exam['questions'])} questions)", flush=True)
        return jsonify({"ok": True, "id": str(exam_row["id"])})

    @bp.post("/exams/<exam_id>/publish")
    def author_exam_publish(exam_id: str):
        exam = _owned_exam(exam_id)
        data = request.get_json(silent=True) or {}
        target = bool(data["is_published"]) if "is_published" in data else not bool(exam.get("is_published"))
        with transaction() as cur:
            cur.execute("""
                UPDATE public.exams SET is_published = %s, updated_at = now()
                 WHERE id = %s AND created_by = %s;
            """, (target, exam["id"], g.user_id))
        return jsonify({"ok": True, "id": str(exam["id"]), "is_published": target})

    @bp.delete("/exams/<exam_id>")
    def author_exam_delete(exam_id: str):
        exam = _owned_exam(exam_id)
        with transaction() as cur:
            cur.execute("DELETE FROM public.exams WHERE id = %s AND created_by = %s;", (exam["id"], g.user_id))
        print(f"[author] exam {exam['id']} deleted", flush=True)
        return jsonify({"ok": True})

    # ---- drafts ---------------------------------------------------------------
    @bp.post("/generate")
    def author_generate():
        data = request.get_json(silent=True) or {}
        questions = generation.generate_questions(
            deps, g.user_id, data.get("topic"), data.get("num_questions"), data.get("context"),
        )
        remaining = generation.quota_remaining(fetch_one, deps["execute_returning"], g.user_id)
        return jsonify({"ok": True, "questions": questions, "ai_remaining": remaining})

    @bp.post("/import")
    def author_import():
        data = request.get_json(silent=True) or {}
        questions = generation.questions_from_document(
            deps, g.user_id, data.get("document_text"), data.get("max_questions"),
        )
        if not questions:
            raise ValidationError("No questions could be extracted from the document")
        return jsonify({"ok": True, "questions": questions})

    # ---- dashboard & analytics ------------------------------------------------
    @bp.get("/dashboard")
    def author_dashboard():
        row = fetch_one("""
            SELECT COUNT(DISTINCT e.id) AS exams,
                   (SELECT COUNT(*) FROM public.questions q
                      JOIN public.exams e2 ON e2.id = q.exam_id
                     WHERE e2.created_by = %s) AS questions,
                   (SELECT COUNT(*) FROM public.exam_attempts a
                      JOIN public.exams e3 ON e3.id = a.exam_id
                     WHERE e3.created_by = %s) AS attempts
              FROM public.exams e
             WHERE e.created_by = %s;
        """, (g.user_id, g.user_id, g.user_id)) or {}
        remaining = generation.quota_remaining(fetch_one, deps["execute_returning"], g.user_id)
        return jsonify({
            "ok": True,
            "exams": int(row.get("exams") or 0),
            "questions": int(row.get("questions") or 0),
            "attempts": int(row.get("attempts") or 0),
            "ai_remaining": remaining,
        })

    @bp.get("/analytics")
    def author_analytics():
        exams = fetch_all("SELECT id, title FROM public.exams WHERE created_by = %s ORDER BY created_at DESC;",
                          (g.user_id,)) or []
        selected = (request.args.get("exam_id") or "all").strip()
        if selected != "all":
            selected = parse_uuid(selected) or ""
            if selected not in {str(e["id"]) for e in exams}:
                raise NotFoundError()
            exam_ids = [selected]
        else:
            exam_ids = [str(e["id"]) for e in exams]

        attempts = []
        if exam_ids:
            attempts = fetch_all("""
                SELECT id, exam_id, student_name, student_email, answers, score, started_at, submitted_at
                  FROM public.exam_attempts
                 WHERE exam_id = ANY(%s::uuid[]) AND submitted_at IS NOT NULL;
            """, (exam_ids,)) or []

        payload = {"ok": True, "exam_id": selected,
                   **analytics.summarize_attempts(attempts, [e for e in exams if str(e["id"]) in exam_ids])}
        if selected != "all":
            questions = fetch_all("""
                SELECT id, correct_answer, order_index
                  FROM public.questions
                 WHERE exam_id = %s
                 ORDER BY order_index ASC;
            """, (selected,)) or []
            payload["questions"] = analytics.question_correct_rates(questions, attempts)
        return jsonify(payload)

    return bp
