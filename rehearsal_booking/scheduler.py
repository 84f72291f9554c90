from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Callable, Mapping
from uuid import uuid4
import logging

import holidays as pyholidays

from .booking import (
    RESERVATION_STATUSES,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    WHOLE_DAY_END_MINUTE,
    ClosureRecord,
    ReservationRecord,
    TimeInterval,
    find_conflicts,
    interval,
    is_blocking,
    overlaps,
)
from .config import DEFAULT_CONFIG, SchedulingConfig, facility_today
from .errors import (
    InvalidTransition,
    NotificationFailure,
    ReservationNotFound,
    SlotUnavailable,
    TransientStoreError,
    ValidationError,
    Violation,
)
from .guard import DateGuard
from .notifications import (
    EVENT_RESERVATION_APPROVED,
    EVENT_RESERVATION_CANCELLED,
    EVENT_RESERVATION_CREATED,
    EVENT_RESERVATION_RESCHEDULED,
    NotificationEvent,
    NotificationSink,
)
from .slots import TimeSlot, generate_slot_grid
from .store import ReservationStore
from .validation import check_booking_date, parse_time, validate_reservation_request

logger = logging.getLogger(__name__)

MAX_CLOSURE_DAYS = 366
_HOLIDAY_CACHE: dict[tuple[str, int], set[date]] = {}


class CreationState(Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    CHECKED = "checked"
    COMMITTED = "committed"
    INVALID = "invalid"
    UNAVAILABLE = "unavailable"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class CreationResult:
    state: CreationState
    reservation: ReservationRecord | None = None
    violations: tuple[Violation, ...] = ()
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is CreationState.COMMITTED

    @property
    def retryable(self) -> bool:
        return self.state is CreationState.STORE_ERROR

    @property
    def reservation_id(self) -> str | None:
        return self.reservation.reservation_id if self.reservation is not None else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok, "state": self.state.value}
        if self.reservation is not None:
            payload["reservation_id"] = self.reservation.reservation_id
            payload["reservation"] = self.reservation.to_dict()
        if self.violations:
            payload["violations"] = [violation.to_dict() for violation in self.violations]
        if self.message:
            payload["message"] = self.message
        if self.retryable:
            payload["retryable"] = True
        return payload


@dataclass(frozen=True)
class DayAvailability:
    """Slot grid of one date together with the reservations it was computed from."""

    date: date
    reservations: tuple[ReservationRecord, ...]
    slots: tuple[TimeSlot, ...]

    @property
    def available_slots(self) -> int:
        return sum(1 for slot in self.slots if slot.available)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "time_slots": [slot.to_dict() for slot in self.slots],
            "total_bookings": len(self.reservations),
            "available_slots": self.available_slots,
            "total_slots": len(self.slots),
        }


class ReservationScheduler:
    """Availability queries and guarded writes for the rehearsal room.

    Reads compute the slot grid from a snapshot and take no lock. Every write
    that can make a reservation blocking runs its conflict check and its store
    write inside the per-date guard, so two overlapping requests can never
    both be committed.
    """

    def __init__(
        self,
        store: ReservationStore,
        config: SchedulingConfig = DEFAULT_CONFIG,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.notifier = notifier
        self.clock: Callable[[], datetime] = clock or config.now
        self.id_factory: Callable[[], str] = id_factory or (lambda: str(uuid4()))
        self.guard = DateGuard(config.lock_timeout_seconds)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="staff-notify")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def today(self) -> date:
        return facility_today(self.config, self.clock())

    def blocked_intervals(self, target_date: date) -> list[TimeInterval]:
        blocked = [closure.interval for closure in self.store.list_closures(target_date)]
        if self.config.holiday_country and _is_public_holiday(target_date, self.config.holiday_country):
            blocked.append(TimeInterval(0, WHOLE_DAY_END_MINUTE))
        return blocked

    def query_day(self, target: date | str) -> DayAvailability:
        target_date, violations = check_booking_date(target, self.config, self.clock())
        if violations:
            raise ValidationError(violations)

        reservations = self.store.list_blocking(target_date)
        slots = generate_slot_grid(target_date, reservations, self.config, self.blocked_intervals(target_date))
        return DayAvailability(date=target_date, reservations=tuple(reservations), slots=tuple(slots))

    def query_availability(self, target: date | str) -> list[TimeSlot]:
        return list(self.query_day(target).slots)

    def list_reservations(self) -> list[ReservationRecord]:
        return self.store.list_recent()

    def create_reservation(self, payload: Mapping[str, Any]) -> CreationResult:
        logger.debug("Reservation request %s", CreationState.RECEIVED.value)
        try:
            request = validate_reservation_request(payload, self.config, self.clock())
        except ValidationError as error:
            logger.info("Reservation request invalid: %s", error)
            return CreationResult(
                CreationState.INVALID,
                violations=tuple(error.violations),
                message="Reservation request is invalid.",
            )

        logger.debug("Reservation request %s for %s %s", CreationState.VALIDATED.value, request.date, request.start_time)
        candidate = interval(request.start_time, request.duration_hours)
        try:
            with self.guard.hold(request.date):
                self._ensure_free(request.date, candidate)
                logger.debug("Reservation request %s", CreationState.CHECKED.value)

                now = self.clock()
                record = ReservationRecord(
                    reservation_id=self.id_factory(),
                    date=request.date,
                    start_time=request.start_time,
                    duration_hours=request.duration_hours,
                    status=STATUS_PENDING,
                    band_name=request.band_name,
                    contact_email=request.contact_email,
                    created_at=now,
                    updated_at=now,
                    phone=request.phone,
                    members_count=request.members_count,
                    notes=request.notes,
                )
                self.store.insert(record)
        except SlotUnavailable as error:
            logger.warning("Slot unavailable on %s at %s: %s", request.date, request.start_time, error)
            return CreationResult(CreationState.UNAVAILABLE, message=str(error))
        except TransientStoreError as error:
            logger.warning("Transient failure while booking %s: %s", request.date, error)
            return CreationResult(CreationState.STORE_ERROR, message=str(error))
        except Exception as error:
            logger.exception("Unexpected store failure while booking %s", request.date)
            return CreationResult(CreationState.STORE_ERROR, message=f"Store failure: {error}")

        logger.info(
            "Reservation %s committed: %s on %s at %s for %sh",
            record.reservation_id,
            record.band_name,
            record.date.isoformat(),
            record.start_time.strftime("%H:%M"),
            record.duration_hours,
        )
        self._notify(EVENT_RESERVATION_CREATED, record)
        return CreationResult(CreationState.COMMITTED, reservation=record)

    def reschedule_reservation(self, reservation_id: str, payload: Mapping[str, Any]) -> CreationResult:
        """Move or edit a reservation; omitted fields keep their current value."""
        current = self._require(reservation_id)

        merged: dict[str, Any] = {
            "date": current.date.isoformat(),
            "start_time": current.start_time.strftime("%H:%M"),
            "duration_hours": current.duration_hours,
            "band_name": current.band_name,
            "contact_email": current.contact_email,
            "phone": current.phone,
            "members_count": current.members_count,
            "notes": current.notes,
        }
        merged.update({key: value for key, value in payload.items() if key in merged})

        try:
            request = validate_reservation_request(merged, self.config, self.clock())
        except ValidationError as error:
            return CreationResult(
                CreationState.INVALID,
                violations=tuple(error.violations),
                message="Reservation request is invalid.",
            )

        candidate = interval(request.start_time, request.duration_hours)
        try:
            with self.guard.hold(current.date, request.date):
                current = self._require(reservation_id)
                if current.blocking:
                    self._ensure_free(request.date, candidate, exclude_id=reservation_id)
                updated = current.with_changes(
                    date=request.date,
                    start_time=request.start_time,
                    duration_hours=request.duration_hours,
                    band_name=request.band_name,
                    contact_email=request.contact_email,
                    phone=request.phone,
                    members_count=request.members_count,
                    notes=request.notes,
                    updated_at=self.clock(),
                )
                self.store.update(updated)
        except SlotUnavailable as error:
            logger.warning("Reschedule of %s unavailable: %s", reservation_id, error)
            return CreationResult(CreationState.UNAVAILABLE, message=str(error))
        except TransientStoreError as error:
            logger.warning("Transient failure while rescheduling %s: %s", reservation_id, error)
            return CreationResult(CreationState.STORE_ERROR, message=str(error))

        logger.info("Reservation %s rescheduled to %s %s", reservation_id, updated.date, updated.start_time)
        self._notify(EVENT_RESERVATION_RESCHEDULED, updated)
        return CreationResult(CreationState.COMMITTED, reservation=updated)

    def update_status(self, reservation_id: str, status: str) -> ReservationRecord:
        if status not in RESERVATION_STATUSES:
            raise ValidationError([Violation("status", f"Status must be one of {', '.join(RESERVATION_STATUSES)}.")])

        current = self._require(reservation_id)
        with self.guard.hold(current.date):
            current = self._require(reservation_id)
            if is_blocking(status) and not current.blocking:
                # Reactivation: the slot may have been taken since.
                self._ensure_free(current.date, current.interval, exclude_id=reservation_id)
            updated = self.store.update(current.with_changes(status=status, updated_at=self.clock()))

        logger.info("Reservation %s status %s -> %s", reservation_id, current.status, status)
        if status == STATUS_APPROVED and current.status != STATUS_APPROVED:
            self._notify(EVENT_RESERVATION_APPROVED, updated)
        return updated

    def cancel_reservation(self, reservation_id: str, reason: str | None = None) -> ReservationRecord:
        current = self._require(reservation_id)
        with self.guard.hold(current.date):
            current = self._require(reservation_id)
            if current.status == STATUS_CANCELLED:
                raise InvalidTransition("Reservation is already cancelled.")

            cancellation = f"Cancellation: {(reason or '').strip() or 'No reason given'}"
            notes = f"{current.notes}\n\n{cancellation}" if current.notes else cancellation
            updated = self.store.update(
                current.with_changes(status=STATUS_CANCELLED, notes=notes, updated_at=self.clock())
            )

        logger.info("Reservation %s cancelled", reservation_id)
        self._notify(EVENT_RESERVATION_CANCELLED, updated)
        return updated

    def delete_reservation(self, reservation_id: str) -> ReservationRecord:
        current = self._require(reservation_id)
        with self.guard.hold(current.date):
            removed = self.store.delete(reservation_id)

        logger.info("Reservation %s deleted", reservation_id)
        return removed

    def add_closure(self, payload: Mapping[str, Any]) -> ClosureRecord:
        now = self.clock()
        closure = self._closure_from_payload(payload, closure_id=self.id_factory(), created_at=now)
        self._commit_closure(closure, self.store.add_closure)

        logger.info("Closure %s created for %s..%s", closure.closure_id, closure.start_date, closure.end_date)
        return closure

    def update_closure(self, closure_id: str, payload: Mapping[str, Any]) -> ClosureRecord:
        current = self.store.get_closure(closure_id)
        if current is None:
            raise ReservationNotFound(closure_id)

        closure = self._closure_from_payload(payload, closure_id=closure_id, created_at=current.created_at)
        self._commit_closure(closure, self.store.update_closure)

        logger.info("Closure %s moved to %s..%s", closure_id, closure.start_date, closure.end_date)
        return closure

    def delete_closure(self, closure_id: str) -> ClosureRecord:
        return self.store.delete_closure(closure_id)

    def _closure_from_payload(self, payload: Mapping[str, Any], closure_id: str, created_at: datetime) -> ClosureRecord:
        now = self.clock()
        violations: list[Violation] = []

        start_date, start_violations = check_booking_date(payload.get("start_date"), self.config, now, "start_date")
        violations.extend(start_violations)
        end_date, end_violations = check_booking_date(payload.get("end_date"), self.config, now, "end_date")
        violations.extend(end_violations)
        if start_date is not None and end_date is not None:
            if end_date < start_date:
                violations.append(Violation("end_date", "End date cannot be before start date."))
            elif (end_date - start_date).days >= MAX_CLOSURE_DAYS:
                violations.append(Violation("end_date", f"A closure may span at most {MAX_CLOSURE_DAYS} days."))

        start_time = _optional_time(payload.get("start_time"), "start_time", violations)
        end_time = _optional_time(payload.get("end_time"), "end_time", violations)
        if start_time is not None and end_time is not None and end_time != time(0, 0) and end_time <= start_time:
            violations.append(Violation("end_time", "End time must be after start time."))

        reason = str(payload.get("reason") or "").strip()
        if not reason:
            violations.append(Violation("reason", "Reason is required."))

        if violations:
            raise ValidationError(violations)

        return ClosureRecord(
            closure_id=closure_id,
            start_date=start_date,
            end_date=end_date,
            reason=reason,
            created_at=created_at,
            start_time=start_time,
            end_time=end_time,
        )

    def _commit_closure(self, closure: ClosureRecord, write: Callable[[ClosureRecord], ClosureRecord]) -> None:
        covered = [closure.start_date + timedelta(days=offset) for offset in range((closure.end_date - closure.start_date).days + 1)]
        with self.guard.hold(*covered):
            conflicts: list[ReservationRecord] = []
            for target_date in covered:
                conflicts.extend(find_conflicts(closure.interval, self.store.list_blocking(target_date)))
            if conflicts:
                raise SlotUnavailable(
                    "Closure overlaps existing pending or approved reservations.",
                    conflicts=conflicts,
                )
            write(closure)

    def stats_overview(self) -> dict[str, Any]:
        records = self.store.list_all()
        today = self.today()
        counts = {status: 0 for status in RESERVATION_STATUSES}
        for record in records:
            counts[record.status] = counts.get(record.status, 0) + 1

        return {
            "total_reservations": len(records),
            **{f"{status}_reservations": count for status, count in counts.items()},
            "upcoming_reservations": sum(1 for record in records if record.date >= today),
            "past_reservations": sum(1 for record in records if record.date < today),
            "average_duration_hours": (
                round(sum(record.duration_hours for record in records) / len(records), 2) if records else 0.0
            ),
            "total_hours_approved": sum(record.duration_hours for record in records if record.status == STATUS_APPROVED),
        }

    def _require(self, reservation_id: str) -> ReservationRecord:
        record = self.store.get(reservation_id)
        if record is None:
            raise ReservationNotFound(reservation_id)
        return record

    def _ensure_free(self, target_date: date, candidate: TimeInterval, exclude_id: str | None = None) -> None:
        if any(overlaps(candidate, blocked) for blocked in self.blocked_intervals(target_date)):
            raise SlotUnavailable("Requested time falls within a closure of the room.")

        conflicts = find_conflicts(candidate, self.store.list_blocking(target_date), exclude_id=exclude_id)
        if conflicts:
            raise SlotUnavailable(conflicts=conflicts)

    def _notify(self, kind: str, record: ReservationRecord) -> None:
        if self.notifier is None:
            return

        event = NotificationEvent(kind=kind, reservation=record)
        try:
            future = self._executor.submit(self._deliver, event)
        except RuntimeError as error:
            logger.warning("Notification %s for %s not dispatched: %s", kind, record.reservation_id, error)
            return
        future.add_done_callback(_log_notification_outcome)

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            self.notifier.notify(event)
        except Exception as error:
            raise NotificationFailure(
                f"Staff notification {event.kind} for {event.reservation.reservation_id} failed"
            ) from error


def _log_notification_outcome(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.warning("%s: %s", error, error.__cause__)


def _optional_time(value: Any, field: str, violations: list[Violation]) -> time | None:
    if value in (None, ""):
        return None
    parsed = parse_time(value)
    if parsed is None:
        violations.append(Violation(field, "Invalid time format. Use HH:MM."))
    return parsed


def _is_public_holiday(target_date: date, country: str) -> bool:
    key = (country, target_date.year)
    if key not in _HOLIDAY_CACHE:
        holiday_map = pyholidays.country_holidays(country, years=[target_date.year])
        _HOLIDAY_CACHE[key] = set(holiday_map.keys())
    return target_date in _HOLIDAY_CACHE[key]
