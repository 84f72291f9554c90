from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterator
import threading

from .errors import GuardTimeout


@dataclass
class _DateLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class DateGuard:
    """One lock per calendar date around the check-then-insert sequence.

    Dates proceed independently; acquisition never waits longer than
    `timeout_seconds`. A date's entry lives only while some thread holds or
    waits for it. The guard serializes threads of one process; stores shared
    between processes lock their own writes.
    """

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        self._locks: dict[date, _DateLock] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, target_date: date) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.get(target_date)
            if entry is None:
                entry = _DateLock()
                self._locks[target_date] = entry
            entry.users += 1
            return entry.lock

    def _checkin(self, target_date: date) -> None:
        with self._registry_lock:
            entry = self._locks[target_date]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[target_date]

    @contextmanager
    def hold(self, *dates: date) -> Iterator[None]:
        # Ascending order keeps two multi-date holders from deadlocking.
        acquired: list[tuple[date, threading.Lock]] = []
        try:
            for target_date in sorted(set(dates)):
                lock = self._checkout(target_date)
                if not lock.acquire(timeout=self.timeout_seconds):
                    self._checkin(target_date)
                    raise GuardTimeout(
                        f"Timed out after {self.timeout_seconds}s waiting for the booking lock of {target_date.isoformat()}"
                    )
                acquired.append((target_date, lock))
            yield
        finally:
            for target_date, lock in reversed(acquired):
                lock.release()
                self._checkin(target_date)
