# analytics.py
"""Owner-side statistics over submitted attempts. Pure functions over rows."""
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from scoring import percent

PASS_SCORE = int(os.getenv("EXAM_PASS_SCORE") or 60)

SCORE_RANGES = [("0-20", 0, 20), ("21-40", 21, 40), ("41-60", 41, 60), ("61-80", 61, 80), ("81-100", 81, 100)]


def _submitted(attempts: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    return [a for a in attempts if a.get("submitted_at") is not None and a.get("score") is not None]


def _day(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    return None


def _display_name(a: Mapping[str, Any]) -> str:
    if a.get("student_name"):
        return a["student_name"]
    email = a.get("student_email") or ""
    return email.split("@", 1)[0] if email else "Anonymous"


def summarize_attempts(attempts: Iterable[Mapping[str, Any]], exams: Iterable[Mapping[str, Any]],
                       today: Optional[date] = None, pass_score: int = PASS_SCORE) -> Dict[str, Any]:
    done = _submitted(attempts)
    scores = [int(a["score"]) for a in done]
    total = len(done)
    passed = sum(1 for s in scores if s >= pass_score)
    titles = {str(e["id"]): e.get("title") or "" for e in exams}

    today = today or datetime.now(timezone.utc).date()
    days = [today - timedelta(days=29 - i) for i in range(30)]
    per_day = {d: 0 for d in days}
    for a in done:
        d = _day(a.get("submitted_at"))
        if d in per_day:
            per_day[d] += 1

    top = sorted(done, key=lambda a: int(a["score"]), reverse=True)[:5]

    comparison = []
    for exam_id, title in titles.items():
        ex_scores = [int(a["score"]) for a in done if str(a.get("exam_id")) == exam_id]
        if ex_scores:
            comparison.append({
                "exam_id": exam_id,
                "title": title,
                "average": percent(sum(ex_scores), len(ex_scores) * 100),
                "attempts": len(ex_scores),
            })

    return {
        "total_attempts": total,
        "average_score": percent(sum(scores), total * 100) if total else 0,
        "pass_rate": percent(passed, total),
        "passed": passed,
        "failed": total - passed,
        "highest_score": max(scores) if scores else 0,
        "score_distribution": [
            {"range": label, "count": sum(1 for s in scores if lo <= s <= hi)}
            for label, lo, hi in SCORE_RANGES
        ],
        "attempts_over_time": [{"date": d.isoformat(), "attempts": per_day[d]} for d in days],
        "top_performers": [
            {"name": _display_name(a), "score": int(a["score"]), "exam": titles.get(str(a.get("exam_id")), "Unknown Exam")}
            for a in top
        ],
        "exam_comparison": comparison,
    }


def question_correct_rates(questions: Iterable[Mapping[str, Any]],
                           attempts: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Share of submitted attempts that matched each question's key exactly."""
    done = _submitted(attempts)
    out = []
    for q in questions:
        qid = str(q["id"])
        key = q.get("correct_answer")
        hits = sum(1 for a in done if key is not None and (a.get("answers") or {}).get(qid) == key)
        out.append({
            "question_id": qid,
            "order_index": q.get("order_index"),
            "correct": hits,
            "attempts": len(done),
            "correct_rate": percent(hits, len(done)),
        })
    return out
