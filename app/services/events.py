"""
Domain events emitted by the appointment engine.

Events are buffered in an outbox while a unit of work is open and handed to
the notification port only after the transaction commits. A rollback drops
them. Dispatch failures never reach the caller.
"""

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from flask import current_app

APPOINTMENT_CREATED = "appointment.created"
APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
APPOINTMENT_STATUS_CHANGED = "appointment.status_changed"
APPOINTMENT_CANCELLED = "appointment.cancelled"
APPOINTMENT_COMPLETED = "appointment.completed"
APPOINTMENT_GROOMER_ASSIGNED = "appointment.groomer_assigned"
APPOINTMENT_SERVICES_CHANGED = "appointment.services_changed"
PAYMENT_RECEIVED = "payment.received"
PAYMENT_REFUNDED = "payment.refunded"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    appointment_id: int
    recipient_id: Optional[int]
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime.datetime = field(default_factory=datetime.datetime.now)


class NotificationPort(Protocol):
    def publish(self, event: DomainEvent) -> None: ...


class EventOutbox:
    def __init__(self):
        self._pending: List[DomainEvent] = []

    def record(self, name, appointment_id, recipient_id=None, **payload):
        event = DomainEvent(name, appointment_id, recipient_id, payload)
        self._pending.append(event)
        return event

    def discard(self):
        self._pending.clear()

    def pending(self):
        return list(self._pending)

    def flush(self, port):
        """Dispatch buffered events; returns the events handed to the port."""
        events, self._pending = self._pending, []
        if port is None:
            return events

        for event in events:
            try:
                port.publish(event)
            except Exception as e:
                current_app.logger.exception(
                    f"Notification dispatch failed for {event.name} "
                    f"(appointment {event.appointment_id}): {e}"
                )
        return events


class RecordingNotificationPort:
    """Keeps published events in memory. Used when notifications are disabled."""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def publish(self, event):
        self.events.append(event)

    def names(self):
        return [event.name for event in self.events]

    def clear(self):
        self.events.clear()
