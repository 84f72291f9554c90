from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Mapping
import re

from .booking import to_minutes
from .config import DEFAULT_CONFIG, SchedulingConfig, facility_today
from .errors import ValidationError, Violation

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_PATTERN = re.compile(r"^\d{2}:\d{2}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_BAND_NAME_LENGTH = 100
MAX_PHONE_LENGTH = 32
MAX_NOTES_LENGTH = 1000


@dataclass(frozen=True)
class ReservationRequest:
    date: date
    start_time: time
    duration_hours: int
    band_name: str
    contact_email: str
    members_count: int
    phone: str | None = None
    notes: str | None = None


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return None
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not DATE_PATTERN.match(text):
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def parse_time(value: Any) -> time | None:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    text = str(value or "").strip()
    if not TIME_PATTERN.match(text):
        return None
    hour, minute = (int(part) for part in text.split(":"))
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def check_booking_date(
    value: Any,
    config: SchedulingConfig,
    now: datetime | None,
    field: str = "date",
) -> tuple[date | None, list[Violation]]:
    parsed = parse_date(value)
    if parsed is None:
        return None, [Violation(field, "Invalid date format. Use YYYY-MM-DD.")]
    if parsed < facility_today(config, now):
        return parsed, [Violation(field, "Date cannot be in the past.")]
    return parsed, []


def validate_reservation_request(
    payload: Mapping[str, Any],
    config: SchedulingConfig = DEFAULT_CONFIG,
    now: datetime | None = None,
) -> ReservationRequest:
    """Validate and normalize a raw booking request.

    Every check runs even after an earlier one fails, so the raised
    ValidationError lists all problems at once.
    """
    violations: list[Violation] = []

    booking_date, date_violations = check_booking_date(payload.get("date"), config, now)
    violations.extend(date_violations)

    start_time = parse_time(payload.get("start_time"))
    if start_time is None:
        violations.append(Violation("start_time", "Invalid time format. Use HH:MM."))
    else:
        start_minute = to_minutes(start_time)
        if start_minute < config.start_hour * 60 or start_minute > config.last_start_minute:
            last_start = time(config.last_start_minute // 60, config.last_start_minute % 60)
            violations.append(
                Violation(
                    "start_time",
                    f"Start time must be between {config.start_hour:02d}:00 and {last_start.strftime('%H:%M')}.",
                )
            )
        elif start_minute % config.slot_granularity_minutes != 0:
            violations.append(
                Violation("start_time", f"Start time must align to {config.slot_granularity_minutes}-minute slots.")
            )

    duration = _coerce_int(payload.get("duration_hours"))
    if duration is None or duration not in config.durations:
        allowed = ", ".join(str(value) for value in config.durations)
        violations.append(Violation("duration_hours", f"Duration must be one of {allowed} hours."))
        duration = None
    elif start_time is not None and start_time.hour + duration > config.end_hour:
        violations.append(Violation("duration_hours", "Reservation must not run past closing time."))

    raw_members = payload.get("members_count")
    members_count = config.min_members if raw_members in (None, "") else _coerce_int(raw_members)
    if members_count is None or not config.min_members <= members_count <= config.max_members:
        violations.append(
            Violation("members_count", f"Members count must be between {config.min_members} and {config.max_members}.")
        )

    band_name = _optional_text(payload.get("band_name"))
    if band_name is None:
        violations.append(Violation("band_name", "Band name is required."))
    elif len(band_name) > MAX_BAND_NAME_LENGTH:
        violations.append(Violation("band_name", f"Band name must be at most {MAX_BAND_NAME_LENGTH} characters."))

    contact_email = _optional_text(payload.get("contact_email"))
    if contact_email is None:
        violations.append(Violation("contact_email", "Contact email is required."))
    elif not EMAIL_PATTERN.match(contact_email):
        violations.append(Violation("contact_email", "Contact email is not a valid address."))

    phone = _optional_text(payload.get("phone"))
    if phone is not None and len(phone) > MAX_PHONE_LENGTH:
        violations.append(Violation("phone", f"Phone must be at most {MAX_PHONE_LENGTH} characters."))

    notes = _optional_text(payload.get("notes"))
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        violations.append(Violation("notes", f"Notes must be at most {MAX_NOTES_LENGTH} characters."))

    if violations:
        raise ValidationError(violations)

    return ReservationRequest(
        date=booking_date,
        start_time=start_time,
        duration_hours=duration,
        band_name=band_name,
        contact_email=contact_email.lower(),
        members_count=members_count,
        phone=phone,
        notes=notes,
    )
