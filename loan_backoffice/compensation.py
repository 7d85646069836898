"""
Compensating Rollback Module

The record store has no multi-resource transactions, so multi-step lifecycle
procedures register a named compensating action after every step that
succeeds. On failure the actions run newest first. Actions that themselves
fail are collected rather than aborting the unwind, so every step that can
still be undone is undone.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List
import logging

from .errors import LoanBackofficeError
from .logging_config import log_action

logger = logging.getLogger("loan_backoffice.compensation")


@dataclass
class CompensatingAction:
    """A named undo for one applied step"""
    name: str
    undo: Callable[[], Awaitable[Any]]


@dataclass
class UnwindReport:
    """Outcome of running the compensating actions"""
    undone: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {"undone": list(self.undone), "failed": dict(self.failed)}


class CompensationStack:
    """Ordered record of applied steps and how to undo each"""

    def __init__(self, procedure: str, entity_id: Any):
        self.procedure = procedure
        self.entity_id = entity_id
        self._actions: List[CompensatingAction] = []
        self.applied: List[str] = []

    def push(self, name: str, undo: Callable[[], Awaitable[Any]]) -> None:
        """Record that a step was applied and how to undo it"""
        self.applied.append(name)
        self._actions.append(CompensatingAction(name, undo))

    def mark(self, name: str) -> None:
        """Record an applied step that needs no undo"""
        self.applied.append(name)

    def __len__(self) -> int:
        return len(self._actions)

    async def unwind(self) -> UnwindReport:
        """Run compensating actions newest first"""
        report = UnwindReport()
        while self._actions:
            action = self._actions.pop()
            try:
                await action.undo()
            except LoanBackofficeError as e:
                log_action(
                    logger, "error",
                    f"{self.procedure} rollback step '{action.name}' failed for {self.entity_id}: {e.message}",
                    procedure=self.procedure, step=action.name, entity=str(self.entity_id),
                )
                report.failed[action.name] = e.message
            else:
                log_action(
                    logger, "info", f"{self.procedure} rollback step '{action.name}' applied for {self.entity_id}",
                    procedure=self.procedure, step=action.name, entity=str(self.entity_id),
                )
                report.undone.append(action.name)
        return report
