from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any
import os

import holidays as pyholidays
import pytz
import yaml

CONFIG_ENV_VAR = "REHEARSAL_BOOKING_CONFIG"


@dataclass(frozen=True)
class SchedulingConfig:
    """Booking policy of the rehearsal room.

    The facility lives in a single timezone; every "today" decision is made
    against `timezone`, never against the host's local zone.
    """

    start_hour: int = 9
    end_hour: int = 24
    allowed_durations: tuple[int, ...] = (1, 2, 3, 4)
    slot_granularity_minutes: int = 30
    min_members: int = 1
    max_members: int = 6
    timezone: str = "Europe/Rome"
    lock_timeout_seconds: float = 5.0
    holiday_country: str | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour < self.end_hour <= 24:
            raise ValueError("start_hour and end_hour must satisfy 0 <= start_hour < end_hour <= 24")
        if self.slot_granularity_minutes <= 0 or 60 % self.slot_granularity_minutes != 0:
            raise ValueError("slot_granularity_minutes must be a positive divisor of 60")
        if not self.allowed_durations or any(value <= 0 for value in self.allowed_durations):
            raise ValueError("allowed_durations must be a non-empty set of positive hours")
        if self.min_members < 1 or self.min_members > self.max_members:
            raise ValueError("min_members must be at least 1 and not greater than max_members")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be greater than zero")
        try:
            pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError as error:
            raise ValueError(f"Unknown timezone: {self.timezone}") from error
        if self.holiday_country is not None and self.holiday_country not in pyholidays.list_supported_countries():
            raise ValueError(f"Unsupported holiday_country: {self.holiday_country}")

    @property
    def tzinfo(self) -> Any:
        return pytz.timezone(self.timezone)

    @property
    def durations(self) -> tuple[int, ...]:
        return tuple(sorted(set(self.allowed_durations)))

    @property
    def last_start_minute(self) -> int:
        return self.end_hour * 60 - self.slot_granularity_minutes

    def now(self) -> datetime:
        return datetime.now(self.tzinfo)


DEFAULT_CONFIG = SchedulingConfig()


def facility_today(config: SchedulingConfig, now: datetime | None = None) -> date:
    """Return the calendar date at the facility for `now`.

    Naive datetimes are taken as already facility-local.
    """
    current = now or config.now()
    if current.tzinfo is None or current.tzinfo.utcoffset(current) is None:
        return current.date()
    return current.astimezone(config.tzinfo).date()


def load_config(path: str | Path | None = None) -> SchedulingConfig:
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None
    if path is None:
        return DEFAULT_CONFIG

    config_path = Path(path)
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise ValueError(f"Failed to read config file: {config_path}") from error

    if payload is None:
        return DEFAULT_CONFIG
    if not isinstance(payload, dict):
        raise ValueError("top-level config YAML must be a mapping")

    known = {field.name for field in fields(SchedulingConfig)}
    unknown = sorted(str(key) for key in payload if key not in known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

    overrides: dict[str, Any] = dict(payload)
    if "allowed_durations" in overrides:
        durations = overrides["allowed_durations"]
        if not isinstance(durations, (list, tuple)):
            raise ValueError("allowed_durations must be a list of hours")
        overrides["allowed_durations"] = tuple(int(value) for value in durations)

    return replace(DEFAULT_CONFIG, **overrides)
