"""
Error Taxonomy Module

Every error carries a stable machine-readable code so HTTP handlers and other
callers can branch without parsing messages.
"""

from typing import Any, Dict, Iterable, List, Optional


class LoanBackofficeError(Exception):
    """Base class for all loan back office errors"""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the error half of the response envelope"""
        result = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LoanBackofficeError):
    """Malformed or missing input. Never retried automatically."""

    code = "VALIDATION_ERROR"


class InvalidFrequencyError(ValidationError):
    """Unknown repayment frequency"""

    code = "INVALID_FREQUENCY"

    def __init__(self, frequency: Any):
        from .models import RepaymentFrequency

        allowed = [f.value for f in RepaymentFrequency]
        super().__init__(
            f"Invalid repayment frequency '{frequency}'. Use: {', '.join(allowed)}",
            {"frequency": str(frequency), "allowed": allowed},
        )
        self.frequency = frequency


class IllegalTransitionError(LoanBackofficeError):
    """Attempted status edge is not part of the legal graph"""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: Any, target: Any, legal_next: Iterable[Any]):
        self.current = _status_value(current)
        self.target = _status_value(target)
        self.legal_next: List[str] = [_status_value(s) for s in legal_next]
        allowed = ", ".join(self.legal_next) if self.legal_next else "none"
        super().__init__(
            f"Invalid status transition from '{self.current}' to '{self.target}'. "
            f"Allowed transitions: {allowed}",
            {"current": self.current, "target": self.target, "legal_next": self.legal_next},
        )


# Name used by the verify procedure
InvalidTransitionError = IllegalTransitionError


class NotFoundError(LoanBackofficeError):
    """Referenced application, loan, installment or receipt does not exist"""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(LoanBackofficeError):
    """Optimistic precondition failed; caller may re-fetch and retry"""

    code = "CONFLICT"


class UpstreamStoreError(LoanBackofficeError):
    """Record store call failed or timed out"""

    code = "UPSTREAM_STORE_ERROR"

    def __init__(self, message: str, step: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if step:
            details.setdefault("step", step)
        super().__init__(message, details)
        self.step = step


class ConsistencyIncidentError(UpstreamStoreError):
    """
    Multi-step procedure failed after partially applying mutations and the
    partial state could not be compensated. Needs manual reconciliation.
    """

    code = "CONSISTENCY_INCIDENT"

    def __init__(self, message: str, step: Optional[str] = None,
                 before: Optional[Dict[str, Any]] = None,
                 after: Optional[Dict[str, Any]] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details["before"] = before or {}
        details["after"] = after or {}
        super().__init__(message, step=step, details=details)
        self.before = before or {}
        self.after = after or {}


def _status_value(status: Any) -> str:
    return getattr(status, "value", status) if status is not None else "none"
