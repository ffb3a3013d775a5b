# generation.py
# -----------------------------------------------------------------------------
# Question generation boundary.
# - topic (+ optional context) -> draft questions with answer keys
# - document text (already extracted from a PDF upstream) -> draft questions
# - per-account quota in public.user_profiles, consumed atomically
# Drafts are normalised to the Question shape; nothing here is persisted as an
# exam, the author saves drafts through the authoring routes.
# -----------------------------------------------------------------------------
import json
import os
import re
from typing import Any, Callable, Dict, List, Optional

import requests

from errors import QuotaExceededError, TransportError, ValidationError

AI_GATEWAY_URL = (os.getenv("AI_GATEWAY_URL") or "https://api.openai.com/v1/chat/completions").strip()
AI_API_KEY = (os.getenv("AI_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip()
AI_QGEN_MODEL = (os.getenv("AI_QGEN_MODEL") or "gpt-4o-mini").strip()
AI_MAX_QUESTIONS_PER_REQUEST = int(os.getenv("AI_MAX_QUESTIONS_PER_REQUEST") or 20)
AI_DEFAULT_QUESTIONS = int(os.getenv("AI_DEFAULT_QUESTIONS") or 5)
AI_DEFAULT_QUESTIONS_LIMIT = int(os.getenv("AI_DEFAULT_QUESTIONS_LIMIT") or 50)
DOCUMENT_TEXT_CAP = 24000

QUESTION_TYPES = ("multiple_choice", "true_false", "short_answer")

_SYSTEM_PROMPT = (
    "You are an expert educator who creates clear, educational exam questions. "
    "Always respond with valid JSON only."
)


# ------------------------------- gateway -------------------------------------
def chat_json(messages: List[Dict[str, str]], model: str = AI_QGEN_MODEL,
              temperature: float = 0.7, max_tokens: int = 3000) -> Any:
    if not AI_API_KEY:
        raise TransportError("AI_API_KEY is not set.")
    try:
        r = requests.post(
            AI_GATEWAY_URL,
            headers={"Authorization": f"Bearer {AI_API_KEY}", "Content-Type": "application/json"},
            json={
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
            },
            timeout=90,
        )
        r.raise_for_status()
        data = r.json()
        content = (data["choices"][0]["message"]["content"] or "").strip()
        return parse_json_content(content)
    except requests.RequestException as e:
        print(f"[qgen] gateway error: {e}", flush=True)
        raise TransportError("Question generation service unavailable") from e
    except (KeyError, IndexError, TypeError, ValueError) as e:
        print(f"[qgen] unreadable gateway response: {e}", flush=True)
        raise TransportError("Question generation returned an unreadable response") from e


def parse_json_content(content: str) -> Any:
    try:
        return json.loads(content)
    except ValueError:
        m = re.search(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", content, re.DOTALL)
        if m:
            return json.loads(m.group(1))
        m = re.search(r"(\{.*\}|\[.*\])", content, re.DOTALL)
        if m:
            return json.loads(m.group(1))
        raise


# ------------------------------- normalisation -------------------------------
def _bool_key(value: str) -> Optional[str]:
    v = value.strip().lower()
    if v in ("true", "t", "yes"):
        return "True"
    if v in ("false", "f", "no"):
        return "False"
    return None


def normalize_question(raw: Any, order_index: int) -> Optional[Dict[str, Any]]:
    """Coerce one draft into the Question shape, or None if it is unusable."""
    if not isinstance(raw, dict):
        return None
    text = str(raw.get("question_text") or "").strip()
    answer = str(raw.get("correct_answer") or "").strip()
    if not text or not answer:
        return None
    options = [str(o).strip() for o in (raw.get("options") or []) if str(o).strip()] \
        if isinstance(raw.get("options"), list) else []
    qtype = str(raw.get("question_type") or "").strip().lower()
    if qtype not in QUESTION_TYPES:
        qtype = "multiple_choice" if options else ("true_false" if _bool_key(answer) else "short_answer")

    if qtype == "true_false":
        answer = _bool_key(answer) or answer
        options = ["True", "False"]
    elif qtype == "multiple_choice":
        if len(options) < 2:
            return None
        if answer not in options:
            # models sometimes answer with the letter
            letter = answer.rstrip(").").upper()
            if len(letter) == 1 and "A" <= letter <= chr(ord("A") + len(options) - 1):
                answer = options[ord(letter) - ord("A")]
            else:
                return None
    else:
        options = []

    return {
        "question_text": text,
        "question_type": qtype,
        "options": options,
        "correct_answer": answer,
        "solution": (str(raw.get("solution")).strip() or None) if raw.get("solution") else None,
        "explanation": None,
        "image_url": None,
        "order_index": order_index,
    }


def normalize_drafts(data: Any, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    raw = data.get("questions") if isinstance(data, dict) else data
    out: List[Dict[str, Any]] = []
    for item in raw or []:
        q = normalize_question(item, len(out))
        if q:
            out.append(q)
        if limit is not None and len(out) >= limit:
            break
    return out


# ------------------------------- prompts -------------------------------------
def _topic_prompt(topic: str, count: int, context: str) -> str:
    extra = f"Additional context: {context}\n" if context else ""
    return f"""Generate {count} exam questions about "{topic}".
{extra}
Return a JSON object {{"questions": [...]}}. Each question has:
- question_text: the question
- question_type: one of "multiple_choice", "true_false", "short_answer"
- options: array of 4 options (only for multiple_choice)
- correct_answer: the correct answer text (for multiple_choice, exactly one of the options; for true_false, "True" or "False")
- solution: brief explanation of why this is correct

Mix different question types.
"""


def _document_prompt(text: str, count: int) -> str:
    return f"""The following text was extracted from an exam document (questions, possibly with solutions).

---
{text[:DOCUMENT_TEXT_CAP]}
---

Extract at most {count} questions. Return a JSON object {{"questions": [...]}}. For each question:
- question_text: the full question text
- question_type: "multiple_choice" if it has options A/B/C/D, "true_false" if it is true/false, otherwise "short_answer"
- options: the options without A/B/C/D prefixes (multiple_choice only)
- correct_answer: the correct answer text, if present in the document
- solution: the worked solution, if present
"""


# ------------------------------- quota ---------------------------------------
def quota_remaining(fetch_one: Callable, execute_returning: Callable, user_id: Any) -> int:
    row = fetch_one("""
        SELECT ai_questions_generated, ai_questions_limit
          FROM public.user_profiles
         WHERE user_id = %s;
    """, (user_id,))
    if not row:
        rows = execute_returning("""
            INSERT INTO public.user_profiles (user_id, plan, ai_questions_generated, ai_questions_limit)
            VALUES (%s, 'free', 0, %s)
            ON CONFLICT (user_id) DO UPDATE SET user_id = EXCLUDED.user_id
            RETURNING ai_questions_generated, ai_questions_limit;
        """, (user_id, AI_DEFAULT_QUESTIONS_LIMIT))
        row = rows[0]
    return max(0, int(row["ai_questions_limit"]) - int(row["ai_questions_generated"]))


def consume_quota(execute_returning: Callable, user_id: Any, n: int) -> None:
    if n <= 0:
        return
    rows = execute_returning("""
        UPDATE public.user_profiles
           SET ai_questions_generated = ai_questions_generated + %s
         WHERE user_id = %s
           AND ai_questions_generated + %s <= ai_questions_limit
        RETURNING ai_questions_generated;
    """, (n, user_id, n))
    if not rows:
        raise QuotaExceededError()


def _requested_count(raw: Any, remaining: int) -> int:
    try:
        wanted = int(raw) if raw is not None else AI_DEFAULT_QUESTIONS
    except (TypeError, ValueError):
        raise ValidationError("num_questions must be an integer")
    n = min(max(wanted, 0), remaining, AI_MAX_QUESTIONS_PER_REQUEST)
    if n <= 0:
        raise QuotaExceededError()
    return n


# ------------------------------- entry points --------------------------------
def generate_questions(deps: Dict[str, Any], user_id: Any, topic: Any,
                       num_questions: Any = None, context: Any = None) -> List[Dict[str, Any]]:
    topic = str(topic or "").strip()
    if not topic:
        raise ValidationError("Topic is required")
    n = _requested_count(num_questions, quota_remaining(deps["fetch_one"], deps["execute_returning"], user_id))
    print(f"[qgen] generating {n} questions for topic: {topic}", flush=True)
    chat = deps.get("chat_json") or chat_json
    data = chat([{"role": "system", "content": _SYSTEM_PROMPT},
                 {"role": "user", "content": _topic_prompt(topic, n, str(context or "").strip())}])
    questions = normalize_drafts(data, limit=n)
    consume_quota(deps["execute_returning"], user_id, len(questions))
    print(f"[qgen] generated {len(questions)} questions", flush=True)
    return questions


def questions_from_document(deps: Dict[str, Any], user_id: Any, document_text: Any,
                            max_questions: Any = None) -> List[Dict[str, Any]]:
    text = str(document_text or "").strip()
    if not text:
        raise ValidationError("Document text is required")
    try:
        cap = int(max_questions) if max_questions is not None else AI_MAX_QUESTIONS_PER_REQUEST
    except (TypeError, ValueError):
        raise ValidationError("max_questions must be an integer")
    cap = max(1, min(cap, AI_MAX_QUESTIONS_PER_REQUEST))
    print(f"[qgen] parsing document ({len(text)} chars)", flush=True)
    chat = deps.get("chat_json") or chat_json
    data = chat([{"role": "system", "content": _SYSTEM_PROMPT},
                 {"role": "user", "content": _document_prompt(text, cap)}], temperature=0.0)
    questions = normalize_drafts(data, limit=cap)
    print(f"[qgen] parsed {len(questions)} questions from document", flush=True)
    return questions
