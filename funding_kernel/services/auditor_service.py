"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every state change in
    the kernel.  Provides chain validation for tamper detection and trace
    queries for review.

Architecture position:
    Kernel > Services -- called by every engine inside the engine's own
    transaction.

Invariants enforced:
    - Sequence monotonicity via SequenceService.
    - Chain integrity: every event's hash covers its predecessor's hash.
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).
    - Audit and action are atomic: a failure to record the audit event
      propagates and fails the surrounding transaction.

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from funding_kernel.domain.actor import Actor
from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.exceptions import AuditChainBrokenError
from funding_kernel.logging_config import get_logger
from funding_kernel.models.audit_event import AuditAction, AuditEvent
from funding_kernel.services.sequence_service import SequenceService
from funding_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in chronological order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Guarantees:
        - Every audit event's ``hash`` is a deterministic function of
          ``(entity_type, entity_id, action, payload_hash, prev_hash)``.
        - Sequence numbers come from a locked counter row.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event with hash chain linkage.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with a monotonically
              increasing ``seq`` and a valid link to its predecessor.
        """
        # The counter lock also serializes chain appends.
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = to_json_safe(payload or {})
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    def record(
        self,
        actor: Actor,
        action: AuditAction,
        target_type: str,
        target_id: UUID,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        **context: Any,
    ) -> AuditEvent:
        """Record one action with before/after snapshots of its target.

        ``context`` holds extra fields (reasons, amounts) stored beside the
        snapshots.
        """
        payload: dict[str, Any] = {
            "before": before,
            "after": after,
            "system_triggered": actor.is_system,
        }
        payload.update(context)
        return self._create_audit_event(
            entity_type=target_type,
            entity_id=target_id,
            action=action,
            actor_id=actor.actor_id,
            payload=payload,
        )

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            logger.critical("audit_chain_broken", extra={"seq": events[0].seq})
            raise AuditChainBrokenError(str(events[0].id), "None", events[0].prev_hash)

        for i, event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash or hash_payload(event.payload or {}) != event.payload_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            if i > 0 and event.prev_hash != events[i - 1].hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(
                    str(event.id), events[i - 1].hash, event.prev_hash or "None",
                )

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    # Trace and query methods

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        """All audit events for an entity in chronological order."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=AuditAction(event.action),
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )

        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent audit events, newest first."""
        result = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(limit)
        )
        return list(result.scalars().all())
