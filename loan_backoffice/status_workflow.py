"""
Status Workflow Module

Finite state machine for loan application statuses. This is the only place
that decides whether a status change is legal; everything else asks it.

    created -> pending -> verification -> approved
                  |             |
                  +-> declined <+

approved and declined are terminal. rejected is an administrative override
reachable from any status that has not been decided yet.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .errors import IllegalTransitionError
from .models import ApplicationStatus, parse_enum


@dataclass(frozen=True)
class StatusInfo:
    """Display metadata for a status"""
    status: ApplicationStatus
    label: str
    description: str
    next_statuses: tuple


STATUS_WORKFLOW: Dict[ApplicationStatus, StatusInfo] = {
    ApplicationStatus.CREATED: StatusInfo(
        ApplicationStatus.CREATED, "Created",
        "Loan application has been created but not yet submitted",
        (ApplicationStatus.PENDING,),
    ),
    ApplicationStatus.PENDING: StatusInfo(
        ApplicationStatus.PENDING, "Pending",
        "Loan application submitted and awaiting initial review",
        (ApplicationStatus.VERIFICATION, ApplicationStatus.DECLINED),
    ),
    ApplicationStatus.VERIFICATION: StatusInfo(
        ApplicationStatus.VERIFICATION, "Under Verification",
        "Application is being verified and documents are being reviewed",
        (ApplicationStatus.APPROVED, ApplicationStatus.DECLINED),
    ),
    ApplicationStatus.APPROVED: StatusInfo(
        ApplicationStatus.APPROVED, "Approved",
        "Loan application has been approved and loan is active",
        (),
    ),
    ApplicationStatus.DECLINED: StatusInfo(
        ApplicationStatus.DECLINED, "Declined",
        "Loan application has been declined",
        (),
    ),
    ApplicationStatus.REJECTED: StatusInfo(
        ApplicationStatus.REJECTED, "Rejected",
        "Loan application was rejected by an administrator",
        (),
    ),
}

# Statuses from which the administrative rejection override may be applied
REJECTABLE_STATUSES = (
    ApplicationStatus.CREATED,
    ApplicationStatus.PENDING,
    ApplicationStatus.VERIFICATION,
)

WORKFLOW_PATH = (
    ApplicationStatus.CREATED,
    ApplicationStatus.PENDING,
    ApplicationStatus.VERIFICATION,
    ApplicationStatus.APPROVED,
)

StatusLike = Union[ApplicationStatus, str]


@dataclass
class TransitionRecord:
    """A legal status change, ready to be applied and audited"""
    from_status: ApplicationStatus
    to_status: ApplicationStatus
    timestamp: datetime
    actor: Optional[str] = None
    reason: Optional[str] = None
    loan_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "from": self.from_status.value,
            "to": self.to_status.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "reason": self.reason,
            "metadata": self.metadata,
        }


def _status(value: StatusLike) -> ApplicationStatus:
    return parse_enum(ApplicationStatus, value, "status")


def next_statuses(status: StatusLike) -> List[ApplicationStatus]:
    """Get all possible next statuses for a current status"""
    return list(STATUS_WORKFLOW[_status(status)].next_statuses)


def is_valid_transition(current: StatusLike, target: StatusLike) -> bool:
    """Check if a status transition is an edge of the workflow graph"""
    return _status(target) in STATUS_WORKFLOW[_status(current)].next_statuses


def is_terminal(status: StatusLike) -> bool:
    """Terminal statuses have no outgoing edges"""
    return not STATUS_WORKFLOW[_status(status)].next_statuses


def status_info(status: StatusLike) -> StatusInfo:
    """Get status display information"""
    return STATUS_WORKFLOW[_status(status)]


def evaluate_transition(current: StatusLike, target: StatusLike) -> Dict[str, Any]:
    """Answer whether current -> target is allowed, with the legal alternatives"""
    return {
        "allowed": is_valid_transition(current, target),
        "legal_next": [s.value for s in next_statuses(current)],
    }


def transition(
    current: StatusLike,
    target: StatusLike,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    loan_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> TransitionRecord:
    """
    Validate a status change without applying it.

    Persisting the new status and auditing the returned record are the
    caller's job.

    Raises:
        IllegalTransitionError: target is not an outgoing edge of current
    """
    current_status, target_status = _status(current), _status(target)
    if target_status not in STATUS_WORKFLOW[current_status].next_statuses:
        raise IllegalTransitionError(current_status, target_status, next_statuses(current_status))

    return TransitionRecord(
        from_status=current_status,
        to_status=target_status,
        timestamp=now or datetime.now(timezone.utc),
        actor=actor,
        reason=reason,
        loan_id=loan_id,
        metadata=dict(metadata or {}),
    )


def reject_override(
    current: StatusLike,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    loan_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> TransitionRecord:
    """Administrative rejection; only undecided applications can be rejected"""
    current_status = _status(current)
    if current_status not in REJECTABLE_STATUSES:
        raise IllegalTransitionError(current_status, ApplicationStatus.REJECTED, [])

    return TransitionRecord(
        from_status=current_status,
        to_status=ApplicationStatus.REJECTED,
        timestamp=now or datetime.now(timezone.utc),
        actor=actor,
        reason=reason,
        loan_id=loan_id,
        metadata={"override": True},
    )


def workflow_step(status: StatusLike) -> int:
    """Index of the status along the happy path, -1 when off the path"""
    status = _status(status)
    return WORKFLOW_PATH.index(status) if status in WORKFLOW_PATH else -1


def workflow_progress(status: StatusLike) -> int:
    """Progress percentage along the happy path"""
    status = _status(status)
    step = workflow_step(status)
    if step == -1:
        return 0
    if status == ApplicationStatus.APPROVED:
        return 100
    return round(step / (len(WORKFLOW_PATH) - 1) * 100)
