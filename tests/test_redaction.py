import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from redaction import ANSWER_KEY_FIELDS, fetch_student_questions, redact_question, render_rich


FULL_ROW = {
    "id": 7,
    "exam_id": "e1",
    "question_text": "2 + 2?",
    "question_type": "multiple_choice",
    "options": ["3", "4"],
    "correct_answer": "4",
    "solution": "Add them.",
    "explanation": "Arithmetic.",
    "image_url": None,
    "order_index": 0,
    "internal_note": "x",
}


def test_redact_question_drops_answer_key_and_unknown_fields():
    out = redact_question(FULL_ROW)
    for field in ANSWER_KEY_FIELDS:
        assert field not in out
    assert "internal_note" not in out
    assert out["id"] == "7"
    assert out["options"] == ["3", "4"]


def test_redact_question_normalizes_missing_options():
    out = redact_question({**FULL_ROW, "question_type": "short_answer", "options": None})
    assert out["options"] == []


def test_fetch_student_questions_reads_the_view():
    seen = []

    def fake_fetch_all(sql, params=()):
        seen.append((sql, params))
        return [FULL_ROW]

    rows = fetch_student_questions(fake_fetch_all, "e1")
    assert "public.student_exam_questions" in seen[0][0]
    assert "correct_answer" not in seen[0][0]
    assert seen[0][1] == ("e1",)
    assert "correct_answer" not in rows[0]


def test_render_rich_formats_markdown():
    html = render_rich("**bold** and `code`")
    assert "<strong>bold</strong>" in html
    assert "<code>code</code>" in html


def test_render_rich_strips_scripts():
    html = render_rich("hello <script>alert(1)</script>")
    assert "<script" not in html
    assert "hello" in html


def test_render_rich_empty():
    assert render_rich("") == ""
