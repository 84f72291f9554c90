from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time
from typing import Any, Iterable

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_CANCELLED = "cancelled"

RESERVATION_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED)
BLOCKING_STATUSES = frozenset({STATUS_PENDING, STATUS_APPROVED})

MINUTES_PER_DAY = 24 * 60
# Late bookings may run past midnight (23:30 + 1h), so a whole-day block spans two days.
WHOLE_DAY_END_MINUTE = 2 * MINUTES_PER_DAY


@dataclass(frozen=True)
class TimeInterval:
    """Half-open minute range [start, end) measured from facility-local midnight."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("Interval start must be earlier than end.")


def to_minutes(time_of_day: time) -> int:
    return time_of_day.hour * 60 + time_of_day.minute


def interval(start: time, duration_hours: int) -> TimeInterval:
    start_minute = to_minutes(start)
    return TimeInterval(start_minute, start_minute + duration_hours * 60)


def overlaps(a: TimeInterval, b: TimeInterval) -> bool:
    """Return True when two intervals share at least one minute.

    Touching boundaries (a reservation ending at 14:00 and one starting at
    14:00) do not overlap.
    """
    return a.start < b.end and a.end > b.start


def is_blocking(status: str) -> bool:
    return status in BLOCKING_STATUSES


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: str
    date: date
    start_time: time
    duration_hours: int
    status: str
    band_name: str
    contact_email: str
    created_at: datetime
    updated_at: datetime
    phone: str | None = None
    members_count: int = 1
    notes: str | None = None

    @property
    def interval(self) -> TimeInterval:
        return interval(self.start_time, self.duration_hours)

    @property
    def blocking(self) -> bool:
        return is_blocking(self.status)

    def with_changes(self, **changes: Any) -> "ReservationRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "reservation_id": self.reservation_id,
            "date": self.date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "duration_hours": self.duration_hours,
            "status": self.status,
            "band_name": self.band_name,
            "contact_email": self.contact_email,
            "members_count": self.members_count,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.phone is not None:
            payload["phone"] = self.phone
        if self.notes is not None:
            payload["notes"] = self.notes
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        return ReservationRecord(
            reservation_id=str(data["reservation_id"]),
            date=date.fromisoformat(str(data["date"])),
            start_time=time.fromisoformat(str(data["start_time"])),
            duration_hours=int(data["duration_hours"]),
            status=str(data["status"]),
            band_name=str(data["band_name"]),
            contact_email=str(data["contact_email"]),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
            phone=(str(data["phone"]) if data.get("phone") is not None else None),
            members_count=int(data.get("members_count", 1)),
            notes=(str(data["notes"]) if data.get("notes") is not None else None),
        )


@dataclass(frozen=True)
class ClosureRecord:
    """A period the room cannot be booked (maintenance, holidays, private events)."""

    closure_id: str
    start_date: date
    end_date: date
    reason: str
    created_at: datetime
    start_time: time | None = None
    end_time: time | None = None

    def covers(self, target_date: date) -> bool:
        return self.start_date <= target_date <= self.end_date

    @property
    def interval(self) -> TimeInterval:
        start_minute = to_minutes(self.start_time) if self.start_time is not None else 0
        if self.end_time is None:
            end_minute = WHOLE_DAY_END_MINUTE
        else:
            end_minute = to_minutes(self.end_time)
            if end_minute == 0:
                end_minute = MINUTES_PER_DAY
        return TimeInterval(start_minute, end_minute)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "closure_id": self.closure_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "reason": self.reason,
            "created_at": self.created_at.isoformat(timespec="seconds"),
        }
        if self.start_time is not None:
            payload["start_time"] = self.start_time.strftime("%H:%M")
        if self.end_time is not None:
            payload["end_time"] = self.end_time.strftime("%H:%M")
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ClosureRecord":
        return ClosureRecord(
            closure_id=str(data["closure_id"]),
            start_date=date.fromisoformat(str(data["start_date"])),
            end_date=date.fromisoformat(str(data["end_date"])),
            reason=str(data["reason"]),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            start_time=(time.fromisoformat(str(data["start_time"])) if data.get("start_time") else None),
            end_time=(time.fromisoformat(str(data["end_time"])) if data.get("end_time") else None),
        )


def find_conflicts(
    candidate: TimeInterval,
    existing_reservations: Iterable[ReservationRecord],
    exclude_id: str | None = None,
) -> list[ReservationRecord]:
    """Return the blocking reservations that share at least one minute with `candidate`.

    Non-blocking statuses are filtered here even if the caller already asked
    the store for blocking rows only.
    """
    return [
        reservation
        for reservation in existing_reservations
        if reservation.blocking
        and reservation.reservation_id != exclude_id
        and overlaps(candidate, reservation.interval)
    ]


def has_conflict(
    candidate: TimeInterval,
    existing_reservations: Iterable[ReservationRecord],
    blocked_intervals: Iterable[TimeInterval] = (),
    exclude_id: str | None = None,
) -> bool:
    if any(overlaps(candidate, blocked) for blocked in blocked_intervals):
        return True
    return bool(find_conflicts(candidate, existing_reservations, exclude_id=exclude_id))
