from __future__ import annotations

from datetime import timedelta
from pathlib import Path
import argparse
import logging
import tempfile

from rehearsal_booking import ReservationScheduler, ReservationYamlRepository, load_config
from rehearsal_booking.stress import run_process_stress, run_stress


def main() -> int:
    parser = argparse.ArgumentParser(description="Hammer one slot with parallel bookings and audit the result.")
    parser.add_argument("--attempts", type=int, default=16)
    parser.add_argument("--rounds", type=int, default=5)
    parser.add_argument(
        "--processes",
        type=int,
        default=0,
        help="book from this many separate processes sharing one data dir instead of threads",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    print("[INFO] Rehearsal booking concurrency quick check")

    failures = 0
    config = load_config()
    for round_index in range(args.rounds):
        with tempfile.TemporaryDirectory() as temp_dir:
            data_dir = Path(temp_dir) / "data"
            repository = ReservationYamlRepository(data_dir, lock_timeout_seconds=config.lock_timeout_seconds)
            scheduler = ReservationScheduler(repository, config=config)
            target_date = scheduler.today() + timedelta(days=1)
            if args.processes > 0:
                scheduler.shutdown()
                attempts_per_process = max(1, args.attempts // args.processes)
                report = run_process_stress(
                    data_dir,
                    target_date,
                    processes=args.processes,
                    attempts_per_process=attempts_per_process,
                    config=config,
                )
            else:
                report = run_stress(scheduler, target_date, attempts=args.attempts)
                scheduler.shutdown()

        status = "OK" if report.passed else "FAIL"
        print(
            f"[{status}] round {round_index + 1}: outcomes={report.outcomes} "
            f"stored_blocking={report.stored_blocking} overlapping_pairs={report.overlapping_pairs}"
        )
        if not report.passed:
            failures += 1

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
