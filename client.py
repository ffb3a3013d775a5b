# client.py
# Candidate-side HTTP client for the attempt protocol. Network failures become
# TransportError and server error bodies are rebuilt into the same ExamError
# subclasses the server raised, so callers handle one family of exceptions.
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import requests

from errors import ExamError, TransportError, error_from_payload


def new_session_token() -> str:
    """Opaque per-session identifier. Generate once, then pass it explicitly."""
    return secrets.token_urlsafe(24)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class AttemptClient:
    def __init__(self, base_url: str, http: Optional[requests.Session] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            r = self.http.request(method, self.base_url + path, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e
        try:
            data = r.json()
        except ValueError:
            data = None
        if r.status_code >= 400 or not isinstance(data, dict) or not data.get("ok"):
            raise error_from_payload(r.status_code, data if isinstance(data, dict) else None)
        return data

    def fetch_exam(self, exam_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/exams/{exam_id}/take")

    def start_exam_attempt(self, exam_id: str, session_id: str,
                           student_name: Optional[str] = None,
                           student_email: Optional[str] = None) -> Dict[str, Any]:
        data = self._call("POST", f"/exams/{exam_id}/attempts", json={
            "session_id": session_id,
            "student_name": student_name,
            "student_email": student_email,
        })
        try:
            started_at = parse_timestamp(data["started_at"])
        except (KeyError, ValueError) as e:
            raise ExamError(f"malformed start response: {e}") from e
        return {"attempt_id": data["attempt_id"], "started_at": started_at}

    def submit_exam_attempt(self, attempt_id: str, session_id: str, answers: Mapping[str, str]) -> Dict[str, int]:
        data = self._call("POST", f"/attempts/{attempt_id}/submit", json={
            "session_id": session_id,
            "answers": dict(answers),
        })
        return {
            "score": int(data["score"]),
            "correct_count": int(data["correct_count"]),
            "total_count": int(data["total_count"]),
        }

    def fetch_review(self, attempt_id: str, session_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/attempts/{attempt_id}/review", params={"session_id": session_id})
