"""
Domain error taxonomy for the dispatch engine.
Routes never translate these by hand; handlers in main.py map them to responses.
"""
from typing import Dict, List, Optional


class DispatchError(Exception):
    status_code = 500
    detail = "Internal error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail

    def to_dict(self) -> Dict:
        return {"detail": self.detail}


class ValidationError(DispatchError):
    """Malformed input. Never retried."""
    status_code = 422
    detail = "Validation failed"

    def __init__(self, detail: Optional[str] = None, field: Optional[str] = None, errors: Optional[List[Dict]] = None):
        super().__init__(detail)
        self.errors = list(errors or [])
        if field:
            self.errors.append({"field": field, "message": self.detail})

    def to_dict(self) -> Dict:
        return {"detail": self.detail, "errors": self.errors}


class AuthorizationError(DispatchError):
    # The reason for a deny is never exposed
    status_code = 403
    detail = "Access denied"

    def to_dict(self) -> Dict:
        return {"detail": "Access denied"}


class NotFoundError(DispatchError):
    """Absent, or outside the caller's organization. Both look the same."""
    status_code = 404
    detail = "Not found"

    def __init__(self, entity: str = "Resource"):
        super().__init__(f"{entity} not found")
        self.entity = entity


class InvalidTransitionError(DispatchError):
    status_code = 409
    detail = "Invalid status transition"

    def __init__(self, current_status: str, attempted_status: str, detail: Optional[str] = None):
        super().__init__(detail or f"Cannot move mission from '{current_status}' to '{attempted_status}'")
        self.current_status = current_status
        self.attempted_status = attempted_status

    def to_dict(self) -> Dict:
        return {
            "detail": self.detail,
            "currentStatus": self.current_status,
            "attemptedStatus": self.attempted_status,
        }


class ConcurrencyConflictError(DispatchError):
    """A conditional write lost a race. The engine retries on the next candidate."""
    status_code = 409
    detail = "Concurrent update conflict"


class ProofVerificationError(DispatchError):
    status_code = 400
    TAMPER = "tamper"
    EXPIRED = "expired"

    def __init__(self, code: str, detail: Optional[str] = None):
        if detail is None:
            detail = "QR code has expired" if code == self.EXPIRED else "Invalid QR code signature"
        super().__init__(detail)
        self.code = code

    def to_dict(self) -> Dict:
        return {"detail": self.detail, "code": self.code}
