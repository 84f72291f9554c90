from __future__ import annotations

from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime
from itertools import combinations
from pathlib import Path
from typing import Any
import multiprocessing

from .booking import ReservationRecord, overlaps
from .config import DEFAULT_CONFIG, SchedulingConfig
from .scheduler import CreationState, ReservationScheduler
from .yaml_store import ReservationYamlRepository

CHILD_RESULT_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class StressReport:
    attempts: int
    outcomes: dict[str, int]
    overlapping_pairs: int
    stored_blocking: int

    @property
    def committed(self) -> int:
        return self.outcomes.get(CreationState.COMMITTED.value, 0)

    @property
    def passed(self) -> bool:
        # A committed row that is missing from the store was lost to a concurrent writer.
        return self.committed == 1 and self.stored_blocking == 1 and self.overlapping_pairs == 0


def _stress_payload(target_date: date, start_time: str, duration_hours: int) -> dict[str, Any]:
    return {
        "date": target_date.isoformat(),
        "start_time": start_time,
        "duration_hours": duration_hours,
        "band_name": "Stress Test",
        "contact_email": "stress@example.com",
    }


def _report(attempts: int, states: list[str], blocking: list[ReservationRecord]) -> StressReport:
    overlapping_pairs = sum(1 for a, b in combinations(blocking, 2) if overlaps(a.interval, b.interval))
    return StressReport(
        attempts=attempts,
        outcomes=dict(Counter(states)),
        overlapping_pairs=overlapping_pairs,
        stored_blocking=len(blocking),
    )


def run_stress(
    scheduler: ReservationScheduler,
    target_date: date,
    start_time: str = "18:00",
    duration_hours: int = 2,
    attempts: int = 16,
) -> StressReport:
    """Fire `attempts` identical bookings at once and audit the store afterwards."""
    payload = _stress_payload(target_date, start_time, duration_hours)

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        results = list(pool.map(lambda _: scheduler.create_reservation(payload), range(attempts)))

    states = [result.state.value for result in results]
    return _report(attempts, states, scheduler.store.list_blocking(target_date))


def _book_in_child(
    data_dir: str,
    payload: dict[str, Any],
    attempts: int,
    config: SchedulingConfig,
    now: datetime | None,
    barrier: Any,
    results: Any,
) -> None:
    repository = ReservationYamlRepository(data_dir, lock_timeout_seconds=config.lock_timeout_seconds)
    scheduler = ReservationScheduler(repository, config=config, clock=(lambda: now) if now is not None else None)
    try:
        barrier.wait()
        results.put([scheduler.create_reservation(payload).state.value for _ in range(attempts)])
    finally:
        scheduler.shutdown()


def run_process_stress(
    data_dir: str | Path,
    target_date: date,
    start_time: str = "18:00",
    duration_hours: int = 2,
    processes: int = 4,
    attempts_per_process: int = 3,
    config: SchedulingConfig = DEFAULT_CONFIG,
    now: datetime | None = None,
) -> StressReport:
    """Like `run_stress`, but every attempt comes from a separate process with its own scheduler.

    All processes share `data_dir`, so only the store's file lock stands
    between them.
    """
    payload = _stress_payload(target_date, start_time, duration_hours)
    context = multiprocessing.get_context("spawn")
    barrier = context.Barrier(processes)
    results = context.Queue()
    workers = [
        context.Process(
            target=_book_in_child,
            args=(str(data_dir), payload, attempts_per_process, config, now, barrier, results),
        )
        for _ in range(processes)
    ]
    for worker in workers:
        worker.start()

    states: list[str] = []
    try:
        for _ in workers:
            states.extend(results.get(timeout=CHILD_RESULT_TIMEOUT_SECONDS))
    finally:
        for worker in workers:
            worker.join(CHILD_RESULT_TIMEOUT_SECONDS)

    repository = ReservationYamlRepository(data_dir, lock_timeout_seconds=config.lock_timeout_seconds)
    return _report(processes * attempts_per_process, states, repository.list_blocking(target_date))
