# scoring.py
# Pure scoring engine. No database, no Flask: the submit transaction feeds it
# the server-side answer key and writes whatever it returns.
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Mapping, NewType

from errors import ValidationError

QuestionId = NewType("QuestionId", str)
AnswerMap = Dict[QuestionId, str]

MAX_ANSWER_CHARS = 10000


def coerce_answer_map(raw: Any) -> AnswerMap:
    """Validate an untrusted answer payload into ``{QuestionId: str}``.

    Keys are stringified (JSON object keys already are); values must be
    strings. Values are kept byte-for-byte: grading is exact-match, so no
    trimming or case folding happens here either.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValidationError("answers must be an object of question id -> answer")
    out: AnswerMap = {}
    for k, v in raw.items():
        if not isinstance(v, str):
            raise ValidationError(f"answer for {k} must be a string")
        if len(v) > MAX_ANSWER_CHARS:
            raise ValidationError(f"answer for {k} is too long")
        out[QuestionId(str(k))] = v
    return out


def percent(correct: int, total: int) -> int:
    if total <= 0:
        return 0
    # half-up like Postgres ROUND(numeric); Python's round() is banker's rounding
    pct = Decimal(correct) * 100 / Decimal(total)
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def score_answers(questions: Iterable[Mapping[str, Any]], answers: Mapping[str, str]) -> Dict[str, int]:
    """Score ``answers`` against ``questions`` (each needs ``id`` and ``correct_answer``).

    total_count is always the number of questions; unanswered questions and
    answers for unknown ids never add to correct_count.
    """
    total = 0
    correct = 0
    for q in questions:
        total += 1
        given = answers.get(str(q["id"]))
        expected = q.get("correct_answer")
        if given is not None and expected is not None and given == expected:
            correct += 1
    return {"score": percent(correct, total), "correct_count": correct, "total_count": total}


def question_results(questions: Iterable[Mapping[str, Any]], answers: Mapping[str, str]) -> Dict[str, bool]:
    """Per-question correctness, same comparison as ``score_answers``. Used for review display."""
    out: Dict[str, bool] = {}
    for q in questions:
        qid = str(q["id"])
        expected = q.get("correct_answer")
        out[qid] = expected is not None and answers.get(qid) == expected
    return out
