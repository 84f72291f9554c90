from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time
from typing import Any, Iterable

from .booking import ReservationRecord, TimeInterval, has_conflict, interval
from .config import DEFAULT_CONFIG, SchedulingConfig


@dataclass(frozen=True)
class TimeSlot:
    time: time
    available: bool
    available_durations: tuple[int, ...]
    max_duration: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.time.strftime("%H:%M"),
            "available": self.available,
            "available_durations": list(self.available_durations),
            "max_duration": self.max_duration,
        }


def slot_start_times(config: SchedulingConfig = DEFAULT_CONFIG) -> list[time]:
    step = config.slot_granularity_minutes
    return [
        time(minute // 60, minute % 60)
        for minute in range(config.start_hour * 60, config.last_start_minute + 1, step)
    ]


def generate_slot_grid(
    target_date: date,
    reservations: Iterable[ReservationRecord],
    config: SchedulingConfig = DEFAULT_CONFIG,
    blocked_intervals: Iterable[TimeInterval] = (),
) -> list[TimeSlot]:
    """Build the ordered availability grid for one day.

    The result depends only on the arguments, so repeated reads need no locking.
    Reservations dated on another day are ignored; `blocked_intervals` must
    already be the closures of `target_date`.
    """
    same_day = [row for row in reservations if row.date == target_date]
    blocked = list(blocked_intervals)

    slots: list[TimeSlot] = []
    for start in slot_start_times(config):
        durations = tuple(
            duration
            for duration in config.durations
            if start.hour + duration <= config.end_hour
            and not has_conflict(interval(start, duration), same_day, blocked)
        )
        slots.append(
            TimeSlot(
                time=start,
                available=bool(durations),
                available_durations=durations,
                max_duration=max(durations, default=0),
            )
        )
    return slots
