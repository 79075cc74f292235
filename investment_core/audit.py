"""
Audit Trail Module

Append-only log of plan, rate and investment state changes. Each event
stores the SHA-256 digest of its own canonical JSON form together with the
digest of the event before it, so editing or removing a stored event breaks
the chain at that point.

Events are written inside the caller's storage transaction: when a money
movement rolls back, the events describing it roll back with it.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .clock import Clock, SystemClock
from .storage import StorageInterface, StorageRecord, parse_datetime, serialize_value


GENESIS_HASH = ""


class AuditEventType(Enum):
    PLAN_CREATED = "plan_created"
    PLAN_UPDATED = "plan_updated"
    PLAN_DEACTIVATED = "plan_deactivated"

    RATE_OVERRIDE_SET = "rate_override_set"
    RATE_OVERRIDE_CLOSED = "rate_override_closed"
    EFFECTIVE_RATE_CHANGED = "effective_rate_changed"

    INVESTMENT_CREATED = "investment_created"
    INVESTMENT_APPROVED = "investment_approved"
    INVESTMENT_REJECTED = "investment_rejected"
    INVESTMENT_WITHDRAWN = "investment_withdrawn"
    INVESTMENT_PARTIAL_WITHDRAWAL = "investment_partial_withdrawal"
    INVESTMENT_MATURED = "investment_matured"
    INVESTMENT_RENEWED = "investment_renewed"

    PAYOUT_PROCESSED = "payout_processed"
    MANUAL_PAYOUT = "manual_payout"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_BATCH_COMPLETED = "payout_batch_completed"

    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"


def digest(payload: Dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical (sorted, compact) JSON of ``payload``"""
    canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str  # plan, rate_override, investment, payout_batch, system
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        self.metadata = serialize_value(self.metadata or {})

    def hashed_content(self) -> Dict[str, Any]:
        """Every field except ``current_hash`` and ``updated_at``"""
        return {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata,
        }

    def calculate_hash(self) -> str:
        return digest(self.hashed_content())

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """Hash-chained audit log kept in one storage collection"""

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = table_name

    def _events(self, documents: Optional[Iterable[Dict[str, Any]]] = None) -> List[AuditEvent]:
        if documents is None:
            documents = self.storage.load_all(self.table_name)
        return sorted((AuditEvent.from_dict(doc) for doc in documents), key=lambda e: e.sequence)

    def _tail(self) -> Tuple[int, str]:
        tail = max(self.storage.load_all(self.table_name),
                   key=lambda doc: doc.get('sequence', 0), default=None)
        if tail is None:
            return 0, GENESIS_HASH
        return tail['sequence'], tail['current_hash']

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain.

        The tail is read and the new event written in one transaction, so two
        writers can never link to the same predecessor.

        Args:
            event_type: What happened
            entity_type: Kind of record affected
            entity_id: ID of the record affected
            metadata: Event details; Decimals and datetimes are stored as strings
            user_id: Actor, when the change was made on someone's behalf

        Returns:
            The stored AuditEvent
        """
        with self.storage.atomic():
            last_sequence, last_hash = self._tail()
            timestamp = self.clock.now()
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=timestamp,
                updated_at=timestamp,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=last_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                sequence=last_sequence + 1,
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
        return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events for one record, oldest first; ``limit`` keeps the most recent"""
        events = self._events(self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        ))
        return events[-limit:] if limit else events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> List[AuditEvent]:
        events = self._events(self.storage.find(self.table_name, {'event_type': event_type.value}))
        return [
            event for event in events
            if (start_time is None or event.created_at >= start_time)
            and (end_time is None or event.created_at <= end_time)
        ]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event.

        Returns:
            ``valid`` plus the events whose digest no longer matches their
            content (``hash_errors``) and the events that do not link to
            their predecessor (``chain_breaks``)
        """
        events = self._events()
        hash_errors: List[Dict[str, Any]] = []
        chain_breaks: List[Dict[str, Any]] = []

        expected_previous = GENESIS_HASH
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
                    'actual_hash': event.current_hash,
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash,
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
