"""
Audit Trail Module

Hash-chained audit log with SHA-256 for tamper detection. Every status
transition and lifecycle procedure outcome is recorded here. Writes are
best-effort: a failed audit write is logged and never undoes the change it
describes.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .errors import LoanBackofficeError
from .models import parse_datetime, serialize_value
from .status_workflow import TransitionRecord
from .storage import RecordStore

logger = logging.getLogger("loan_backoffice.audit")


class AuditEventType(Enum):
    """Types of audit events"""
    # Application events
    APPLICATION_STATUS_CHANGED = "application_status_changed"
    DOCUMENT_VERIFIED = "document_verified"

    # Loan events
    LOAN_CREATED = "loan_created"
    INSTALLMENTS_GENERATED = "installments_generated"
    LOAN_SETTLED = "loan_settled"
    LOAN_TERMINATED = "loan_terminated"

    # Payment events
    PAYMENT_RECONCILED = "payment_reconciled"
    RECEIPT_REJECTED = "receipt_rejected"

    # Failure events
    ROLLBACK_APPLIED = "rollback_applied"
    CONSISTENCY_INCIDENT = "consistency_incident"


@dataclass
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=str(data['id']),
            created_at=parse_datetime(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=str(data['entity_id']),
            previous_hash=data.get('previous_hash') or "",
            current_hash=data.get('current_hash') or "",
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


class AuditTrail:
    """
    Hash-chained audit trail kept in the record store
    """

    def __init__(self, store: RecordStore, table_name: str = "status_change_logs",
                 enabled: bool = True):
        self.store = store
        self.table_name = table_name
        self.enabled = enabled
        self._last_created_at: Optional[datetime] = None
        self._lock = asyncio.Lock()  # Serializes chaining across concurrent procedures

    async def _last_hash(self) -> str:
        rows = await self.store.select(self.table_name, order="created_at.desc", limit=1)
        return rows[0].get('current_hash', "") if rows else ""

    async def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        async with self._lock:
            created_at = datetime.now(timezone.utc)
            # Chain order follows created_at, so it must strictly increase
            if self._last_created_at is not None and created_at <= self._last_created_at:
                created_at = self._last_created_at + timedelta(microseconds=1)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=created_at,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
                previous_hash=await self._last_hash(),
                current_hash="",
                metadata=serialize_value(metadata or {}),
                user_id=user_id,
            )
            event.current_hash = event.calculate_hash()
            await self.store.insert(self.table_name, event.to_dict(), returning=False)
            self._last_created_at = created_at
            return event

    async def record(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """Best-effort log_event: failures are logged, never raised"""
        if not self.enabled:
            return None
        try:
            return await self.log_event(event_type, entity_type, entity_id, metadata, user_id)
        except LoanBackofficeError as e:
            logger.warning(
                f"Audit write failed for {entity_type} {entity_id} ({event_type.value}): {e.message}"
            )
            return None

    async def record_transition(self, transition: TransitionRecord,
                                entity_id: str) -> Optional[AuditEvent]:
        """Audit an application status transition"""
        return await self.record(
            AuditEventType.APPLICATION_STATUS_CHANGED,
            "loan_application",
            entity_id,
            metadata=transition.to_dict(),
            user_id=transition.actor,
        )

    async def get_events(self, entity_id: Optional[str] = None) -> List[AuditEvent]:
        """Get audit events in chain order, optionally for one entity"""
        filters = {"entity_id": str(entity_id)} if entity_id is not None else None
        rows = await self.store.select(self.table_name, filters, order="created_at.asc")
        return [AuditEvent.from_dict(row) for row in rows]

    async def verify_integrity(self) -> bool:
        """Verify every event hash and the links between consecutive events"""
        previous = ""
        for event in await self.get_events():
            if not event.verify_hash() or event.previous_hash != previous:
                logger.error(f"Audit chain broken at event {event.id}")
                return False
            previous = event.current_hash
        return True
