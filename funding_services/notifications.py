"""
funding_services.notifications -- notification dispatchers and delivery.

Responsibility:
    Implementations of the kernel's ``NotificationDispatcher`` protocol and
    the best-effort delivery loop the workflow facade runs after commit.

Architecture position:
    Services layer.  The kernel only queues ``NotificationEvent`` values on
    an outbox; this module delivers them.

Invariants:
    - Delivery happens only after the state change has committed.
    - A failing dispatcher never propagates; each failure is logged and the
      remaining events are still delivered.
"""

from __future__ import annotations

from typing import Iterable

from funding_kernel.domain.events import NotificationDispatcher, NotificationEvent
from funding_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class LoggingNotificationDispatcher:
    """Writes each notification to the structured log.

    Default transport when no push or e-mail gateway is configured.
    """

    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_dispatched",
            extra={
                "kind": event.kind.value,
                "recipient_count": len(event.recipients),
                "case_id": str(event.case_id) if event.case_id else None,
                "project_id": str(event.project_id) if event.project_id else None,
                "contribution_id": (
                    str(event.contribution_id) if event.contribution_id else None
                ),
                "title": event.title,
            },
        )


class RecordingNotificationDispatcher:
    """Keeps delivered notifications in memory."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [event.kind.value for event in self.events]

    def clear(self) -> None:
        self.events.clear()


def dispatch_notifications(
    events: Iterable[NotificationEvent],
    dispatcher: NotificationDispatcher,
) -> int:
    """Deliver events in order.  Returns the number delivered."""
    delivered = 0
    for event in events:
        try:
            dispatcher.notify(event)
            delivered += 1
        except Exception:
            logger.exception(
                "notification_dispatch_failed",
                extra={
                    "kind": event.kind.value,
                    "case_id": str(event.case_id) if event.case_id else None,
                    "project_id": str(event.project_id) if event.project_id else None,
                },
            )
    return delivered
