from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date

from .booking import ClosureRecord, ReservationRecord, find_conflicts
from .errors import SlotUnavailable


class ReservationStore(ABC):
    """Persistence boundary of the scheduler.

    `insert` and `update` must refuse to store a blocking reservation that
    overlaps another blocking one on the same date (raising SlotUnavailable).
    """

    @abstractmethod
    def list_blocking(self, target_date: date) -> list[ReservationRecord]:
        """Return the pending and approved reservations of `target_date`."""
        raise NotImplementedError

    @abstractmethod
    def insert(self, record: ReservationRecord) -> str:
        raise NotImplementedError

    @abstractmethod
    def get(self, reservation_id: str) -> ReservationRecord | None:
        raise NotImplementedError

    @abstractmethod
    def update(self, record: ReservationRecord) -> ReservationRecord:
        raise NotImplementedError

    @abstractmethod
    def delete(self, reservation_id: str) -> ReservationRecord:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> list[ReservationRecord]:
        raise NotImplementedError

    def list_recent(self) -> list[ReservationRecord]:
        """All reservations, newest date first and by start time within a date."""
        return sorted(self.list_all(), key=lambda row: (-row.date.toordinal(), row.start_time))

    def list_for_date(self, target_date: date) -> list[ReservationRecord]:
        rows = [row for row in self.list_all() if row.date == target_date]
        return sorted(rows, key=lambda row: (row.start_time, row.created_at))

    def list_by_email(self, email: str) -> list[ReservationRecord]:
        normalized = email.strip().lower()
        return [row for row in self.list_recent() if row.contact_email.lower() == normalized]

    def list_closures(self, target_date: date | None = None) -> list[ClosureRecord]:
        return []

    def get_closure(self, closure_id: str) -> ClosureRecord | None:
        return next((closure for closure in self.list_closures() if closure.closure_id == closure_id), None)

    def add_closure(self, closure: ClosureRecord) -> ClosureRecord:
        raise NotImplementedError("This store does not support closures.")

    def update_closure(self, closure: ClosureRecord) -> ClosureRecord:
        raise NotImplementedError("This store does not support closures.")

    def delete_closure(self, closure_id: str) -> ClosureRecord:
        raise NotImplementedError("This store does not support closures.")

    def record_event(self, event_type: str, payload: dict) -> None:
        """Append to the store's audit trail, when it keeps one."""


def check_exclusion(record: ReservationRecord, rows: list[ReservationRecord]) -> None:
    """Raise SlotUnavailable when a blocking `record` overlaps another blocking row of its date."""
    if not record.blocking:
        return
    same_day = [row for row in rows if row.date == record.date]
    conflicts = find_conflicts(record.interval, same_day, exclude_id=record.reservation_id)
    if conflicts:
        raise SlotUnavailable(conflicts=conflicts)
