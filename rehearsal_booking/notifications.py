from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any
import logging

from .booking import ReservationRecord
from .store import ReservationStore

logger = logging.getLogger(__name__)

EVENT_RESERVATION_CREATED = "reservation_created"
EVENT_RESERVATION_RESCHEDULED = "reservation_rescheduled"
EVENT_RESERVATION_CANCELLED = "reservation_cancelled"
EVENT_RESERVATION_APPROVED = "reservation_approved"


@dataclass(frozen=True)
class NotificationEvent:
    kind: str
    reservation: ReservationRecord

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "reservation": self.reservation.to_dict()}


class NotificationSink(ABC):
    """Best-effort staff notification. Callers never wait on or retry it."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    def notify(self, event: NotificationEvent) -> None:
        record = event.reservation
        logger.info(
            "Staff notification %s: %s on %s at %s for %sh",
            event.kind,
            record.band_name,
            record.date.isoformat(),
            record.start_time.strftime("%H:%M"),
            record.duration_hours,
        )


class EventLogNotificationSink(NotificationSink):
    """Writes staff notifications into the store's audit trail."""

    def __init__(self, store: ReservationStore) -> None:
        self.store = store

    def notify(self, event: NotificationEvent) -> None:
        self.store.record_event("STAFF_NOTIFIED", event.to_dict())
