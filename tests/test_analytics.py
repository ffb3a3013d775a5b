import sys
from datetime import date, datetime, timezone
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from analytics import question_correct_rates, summarize_attempts


TODAY = date(2024, 5, 10)
EXAMS = [{"id": "e1", "title": "Geography"}, {"id": "e2", "title": "History"}]


def _attempt(exam_id, score, day, name=None, email=None, answers=None):
    return {"exam_id": exam_id, "score": score, "student_name": name, "student_email": email,
            "answers": answers or {}, "submitted_at": datetime(2024, 5, day, 12, tzinfo=timezone.utc)}


def test_summary_counts_pass_fail_and_distribution():
    attempts = [
        _attempt("e1", 100, 10, name="Ada"),
        _attempt("e1", 50, 9, email="bob@example.com"),
        _attempt("e2", 60, 9),
        {"exam_id": "e2", "score": None, "submitted_at": None},
    ]
    out = summarize_attempts(attempts, EXAMS, today=TODAY, pass_score=60)
    assert out["total_attempts"] == 3
    assert out["passed"] == 2
    assert out["failed"] == 1
    assert out["pass_rate"] == 67
    assert out["average_score"] == 70
    assert out["highest_score"] == 100
    assert {r["range"]: r["count"] for r in out["score_distribution"]} == {
        "0-20": 0, "21-40": 0, "41-60": 2, "61-80": 0, "81-100": 1,
    }
    assert len(out["attempts_over_time"]) == 30
    assert out["attempts_over_time"][-1] == {"date": "2024-05-10", "attempts": 1}
    assert out["attempts_over_time"][-2]["attempts"] == 2
    assert [p["name"] for p in out["top_performers"]] == ["Ada", "Anonymous", "bob"]
    assert {c["title"]: c["average"] for c in out["exam_comparison"]} == {"Geography": 75, "History": 60}


def test_summary_of_nothing_is_zeroed():
    out = summarize_attempts([], EXAMS, today=TODAY)
    assert out["total_attempts"] == 0
    assert out["average_score"] == 0
    assert out["pass_rate"] == 0
    assert out["exam_comparison"] == []


def test_question_correct_rates():
    questions = [{"id": "q1", "correct_answer": "A", "order_index": 0},
                 {"id": "q2", "correct_answer": "B", "order_index": 1}]
    attempts = [_attempt("e1", 100, 1, answers={"q1": "A", "q2": "B"}),
                _attempt("e1", 50, 1, answers={"q1": "A", "q2": "b"})]
    rates = question_correct_rates(questions, attempts)
    assert [r["correct_rate"] for r in rates] == [100, 50]
    assert rates[1]["correct"] == 1
