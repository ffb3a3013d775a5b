# errors.py
# Error taxonomy shared by the attempt protocol, authoring and the candidate client.
from typing import Any, Dict, Optional, Tuple

from flask import jsonify


class ExamError(Exception):
    status_code = 500
    code = "error"
    public_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_payload(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message, "code": self.code}


class NotFoundError(ExamError):
    status_code = 404
    code = "not_found"
    public_message = "Exam not found"


class ForbiddenError(ExamError):
    status_code = 403
    code = "forbidden"
    public_message = "Exam is not available"


class InvalidAttemptError(ExamError):
    """Wrong token, already submitted or unknown attempt. Deliberately one message for all three."""
    status_code = 409
    code = "invalid_attempt"
    public_message = "Invalid attempt, session mismatch, or already submitted"

    def __init__(self, message: Optional[str] = None):
        # never let callers specialise the message
        super().__init__(None)


class ValidationError(ExamError):
    status_code = 400
    code = "validation"
    public_message = "Invalid input"


class UnauthorizedError(ExamError):
    status_code = 401
    code = "unauthorized"
    public_message = "unauthorized"


class QuotaExceededError(ExamError):
    status_code = 429
    code = "quota_exceeded"
    public_message = "AI generation limit reached"


class TransportError(ExamError):
    status_code = 503
    code = "transport"
    public_message = "Service unreachable"


_BY_CODE = {cls.code: cls for cls in (
    NotFoundError, ForbiddenError, InvalidAttemptError, ValidationError,
    UnauthorizedError, QuotaExceededError, TransportError,
)}


def error_from_payload(status: int, payload: Optional[Dict[str, Any]]) -> ExamError:
    """Rebuild the server-side error on the client from a JSON error body."""
    payload = payload or {}
    cls = _BY_CODE.get(str(payload.get("code") or ""))
    if cls is None:
        cls = next((c for c in _BY_CODE.values() if c.status_code == status), ExamError)
    return cls(payload.get("error"))


def error_response(err: ExamError) -> Tuple[Any, int]:
    return jsonify(err.to_payload()), err.status_code
