from __future__ import annotations

from datetime import date
from typing import Any
import threading

from .booking import ClosureRecord, ReservationRecord
from .errors import ReservationNotFound
from .store import ReservationStore, check_exclusion


class InMemoryReservationStore(ReservationStore):
    """Process-local store, used to run the scheduler without any files."""

    def __init__(self, enforce_exclusion: bool = True) -> None:
        self.enforce_exclusion = enforce_exclusion
        self.events: list[dict[str, Any]] = []
        self._rows: dict[str, ReservationRecord] = {}
        self._closures: dict[str, ClosureRecord] = {}
        self._lock = threading.RLock()

    def list_blocking(self, target_date: date) -> list[ReservationRecord]:
        with self._lock:
            return [row for row in self._rows.values() if row.date == target_date and row.blocking]

    def insert(self, record: ReservationRecord) -> str:
        with self._lock:
            if record.reservation_id in self._rows:
                raise ValueError(f"Duplicate reservation_id: {record.reservation_id}")
            if self.enforce_exclusion:
                check_exclusion(record, list(self._rows.values()))
            self._rows[record.reservation_id] = record
            return record.reservation_id

    def get(self, reservation_id: str) -> ReservationRecord | None:
        with self._lock:
            return self._rows.get(reservation_id)

    def update(self, record: ReservationRecord) -> ReservationRecord:
        with self._lock:
            if record.reservation_id not in self._rows:
                raise ReservationNotFound(record.reservation_id)
            if self.enforce_exclusion:
                check_exclusion(record, list(self._rows.values()))
            self._rows[record.reservation_id] = record
            return record

    def delete(self, reservation_id: str) -> ReservationRecord:
        with self._lock:
            removed = self._rows.pop(reservation_id, None)
        if removed is None:
            raise ReservationNotFound(reservation_id)
        return removed

    def list_all(self) -> list[ReservationRecord]:
        with self._lock:
            return list(self._rows.values())

    def list_closures(self, target_date: date | None = None) -> list[ClosureRecord]:
        with self._lock:
            closures = list(self._closures.values())
        if target_date is not None:
            closures = [closure for closure in closures if closure.covers(target_date)]
        return sorted(closures, key=lambda closure: (closure.start_date, closure.created_at))

    def add_closure(self, closure: ClosureRecord) -> ClosureRecord:
        with self._lock:
            self._closures[closure.closure_id] = closure
        return closure

    def update_closure(self, closure: ClosureRecord) -> ClosureRecord:
        with self._lock:
            if closure.closure_id not in self._closures:
                raise ReservationNotFound(closure.closure_id)
            self._closures[closure.closure_id] = closure
        return closure

    def delete_closure(self, closure_id: str) -> ClosureRecord:
        with self._lock:
            closure = self._closures.pop(closure_id, None)
        if closure is None:
            raise ReservationNotFound(closure_id)
        return closure

    def record_event(self, event_type: str, payload: dict) -> None:
        with self._lock:
            self.events.append({"event_type": event_type, "payload": payload})
