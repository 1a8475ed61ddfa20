"""
Notification events (``funding_kernel.domain.events``).

Responsibility
--------------
Describes what engines tell the outside world after a state change, and
the outbox that holds those messages until the surrounding transaction
commits.

Architecture position
---------------------
**Kernel domain layer** -- value objects and a plain in-memory buffer.
Dispatcher implementations live in ``funding_services.notifications``.

Invariants enforced
-------------------
* Engines only *queue* events.  Dispatch happens after commit, so a
  rolled-back transaction never notifies anyone.
* Dispatch failures never affect the committed state change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID


class NotificationKind(str, Enum):
    """Kinds of outbound notifications."""

    CASE_STATUS_CHANGED = "case_status_changed"
    CONTRIBUTION_SUBMITTED = "contribution_submitted"
    CONTRIBUTION_APPROVED = "contribution_approved"
    CONTRIBUTION_REJECTED = "contribution_rejected"
    CONTRIBUTION_RESUBMITTED = "contribution_resubmitted"
    CONTRIBUTION_REVISED = "contribution_revised"
    PROJECT_CYCLE_ADVANCED = "project_cycle_advanced"
    PROJECT_COMPLETED = "project_completed"


@dataclass(frozen=True)
class NotificationEvent:
    """One message for the notification transport.

    Exactly one of ``case_id`` / ``project_id`` identifies the subject;
    ``contribution_id`` is set for contribution events.
    """

    kind: NotificationKind
    recipients: tuple[UUID, ...]
    title: str
    message: str
    case_id: UUID | None = None
    project_id: UUID | None = None
    contribution_id: UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Transport for outbound notifications (push, e-mail, in-app)."""

    def notify(self, event: NotificationEvent) -> None: ...


class NotificationOutbox:
    """Events queued inside a transaction, released after it commits."""

    def __init__(self) -> None:
        self._events: list[NotificationEvent] = []

    def queue(self, event: NotificationEvent) -> None:
        if not event.recipients:
            return
        self._events.append(event)

    def drain(self) -> tuple[NotificationEvent, ...]:
        """Return queued events in order and empty the outbox."""
        events = tuple(self._events)
        self._events.clear()
        return events

    def discard(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(tuple(self._events))
