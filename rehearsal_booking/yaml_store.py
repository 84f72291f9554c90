from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator
import logging
import shutil
import threading

from filelock import FileLock, Timeout
import yaml

from .booking import ClosureRecord, ReservationRecord
from .errors import GuardTimeout, ReservationNotFound, ReservationStorageError
from .store import ReservationStore, check_exclusion

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


class ReservationYamlRepository(ReservationStore):
    """Reservations, closures and an audit trail kept as YAML lists under `base_dir`.

    Every read-modify-write holds the data directory's lock file, so several
    processes sharing `base_dir` see each other's rows before deciding. Each
    file is replaced atomically through a temporary sibling.
    """

    def __init__(self, base_dir: str | Path = "data", lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self.base_dir = Path(base_dir)
        self.reservations_file = self.base_dir / "reservations.yaml"
        self.closures_file = self.base_dir / "closures.yaml"
        self.log_file = self.base_dir / "reservation_events.yaml"
        self.lock_file = self.base_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self._lock = threading.RLock()
        self._ensure_files()
        self._file_lock = FileLock(str(self.lock_file), timeout=lock_timeout_seconds)

    def _ensure_files(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            for path in (self.reservations_file, self.closures_file, self.log_file):
                if not path.exists():
                    path.write_text("[]\n", encoding="utf-8")
        except OSError as error:
            raise ReservationStorageError(f"Failed to prepare data directory: {self.base_dir}") from error

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock:
            try:
                self._file_lock.acquire()
            except Timeout as error:
                raise GuardTimeout(
                    f"Timed out after {self.lock_timeout_seconds}s waiting for the data lock of {self.base_dir}"
                ) from error
            try:
                yield
            finally:
                self._file_lock.release()

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            else:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            logger.error("Failed to write %s: %s", path, error)
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            logger.warning("Could not back up corrupted file %s", path)

        logger.warning("Recovered corrupted YAML file %s (%s)", path.name, error)
        path.write_text("[]\n", encoding="utf-8")
        if path != self.log_file:
            self._log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or datetime.now()).isoformat(timespec="seconds")
        events = self._read_yaml_list(self.log_file)
        events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
        self._write_yaml_list(self.log_file, events)

    def _audit(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        # The data file is already replaced; a lost audit entry must not turn the change into a failure.
        try:
            self._log_event(event_type, payload, event_time)
        except ReservationStorageError as error:
            logger.error("Audit entry %s dropped: %s", event_type, error)

    def _load_reservations(self) -> list[ReservationRecord]:
        records: list[ReservationRecord] = []
        for index, row in enumerate(self._read_yaml_list(self.reservations_file)):
            try:
                records.append(ReservationRecord.from_dict(row))
            except (KeyError, TypeError, ValueError) as error:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(self.reservations_file.name),
                        "index": index,
                        "reason": f"invalid reservation row: {error}",
                    },
                )
        return records

    def _store_reservations(self, records: list[ReservationRecord]) -> None:
        self._write_yaml_list(self.reservations_file, [record.to_dict() for record in records])

    def _load_closures(self) -> list[ClosureRecord]:
        return [ClosureRecord.from_dict(row) for row in self._read_yaml_list(self.closures_file)]

    def get_events(self) -> list[dict[str, Any]]:
        with self._exclusive():
            return self._read_yaml_list(self.log_file)

    def record_event(self, event_type: str, payload: dict) -> None:
        with self._exclusive():
            self._log_event(event_type, payload)

    def list_all(self) -> list[ReservationRecord]:
        with self._exclusive():
            return self._load_reservations()

    def list_blocking(self, target_date: date) -> list[ReservationRecord]:
        with self._exclusive():
            return [row for row in self._load_reservations() if row.date == target_date and row.blocking]

    def get(self, reservation_id: str) -> ReservationRecord | None:
        with self._exclusive():
            for record in self._load_reservations():
                if record.reservation_id == reservation_id:
                    return record
        return None

    def insert(self, record: ReservationRecord) -> str:
        with self._exclusive():
            records = self._load_reservations()
            if any(row.reservation_id == record.reservation_id for row in records):
                raise ValueError(f"Duplicate reservation_id: {record.reservation_id}")
            check_exclusion(record, records)

            records.append(record)
            self._store_reservations(records)
            self._audit(
                "RESERVATION_CREATED",
                {
                    "reservation_id": record.reservation_id,
                    "date": record.date.isoformat(),
                    "start_time": record.start_time.strftime("%H:%M"),
                    "duration_hours": record.duration_hours,
                    "band_name": record.band_name,
                },
                record.created_at,
            )
        return record.reservation_id

    def update(self, record: ReservationRecord) -> ReservationRecord:
        with self._exclusive():
            records = self._load_reservations()
            found_index = -1
            for index, row in enumerate(records):
                if row.reservation_id == record.reservation_id:
                    found_index = index
                    break

            if found_index < 0:
                raise ReservationNotFound(record.reservation_id)

            previous = records[found_index]
            check_exclusion(record, records)
            records[found_index] = record
            self._store_reservations(records)

            if previous.status != record.status:
                self._audit(
                    "RESERVATION_STATUS_CHANGED",
                    {
                        "reservation_id": record.reservation_id,
                        "from": previous.status,
                        "to": record.status,
                    },
                    record.updated_at,
                )
            else:
                self._audit(
                    "RESERVATION_UPDATED",
                    {
                        "reservation_id": record.reservation_id,
                        "date": record.date.isoformat(),
                        "start_time": record.start_time.strftime("%H:%M"),
                        "duration_hours": record.duration_hours,
                    },
                    record.updated_at,
                )
        return record

    def delete(self, reservation_id: str) -> ReservationRecord:
        with self._exclusive():
            records = self._load_reservations()
            removed = next((row for row in records if row.reservation_id == reservation_id), None)
            if removed is None:
                raise ReservationNotFound(reservation_id)

            self._store_reservations([row for row in records if row.reservation_id != reservation_id])
            self._audit(
                "RESERVATION_DELETED",
                {
                    "reservation_id": reservation_id,
                    "date": removed.date.isoformat(),
                    "status": removed.status,
                },
            )
        return removed

    def list_closures(self, target_date: date | None = None) -> list[ClosureRecord]:
        with self._exclusive():
            closures = self._load_closures()
        if target_date is not None:
            closures = [closure for closure in closures if closure.covers(target_date)]
        return sorted(closures, key=lambda closure: (closure.start_date, closure.created_at))

    def get_closure(self, closure_id: str) -> ClosureRecord | None:
        with self._exclusive():
            return next((closure for closure in self._load_closures() if closure.closure_id == closure_id), None)

    def add_closure(self, closure: ClosureRecord) -> ClosureRecord:
        with self._exclusive():
            rows = self._read_yaml_list(self.closures_file)
            rows.append(closure.to_dict())
            self._write_yaml_list(self.closures_file, rows)
            self._audit("CLOSURE_CREATED", closure.to_dict(), closure.created_at)
        return closure

    def update_closure(self, closure: ClosureRecord) -> ClosureRecord:
        with self._exclusive():
            closures = self._load_closures()
            if not any(item.closure_id == closure.closure_id for item in closures):
                raise ReservationNotFound(closure.closure_id)

            replaced = [closure if item.closure_id == closure.closure_id else item for item in closures]
            self._write_yaml_list(self.closures_file, [item.to_dict() for item in replaced])
            self._audit("CLOSURE_UPDATED", closure.to_dict())
        return closure

    def delete_closure(self, closure_id: str) -> ClosureRecord:
        with self._exclusive():
            rows = self._read_yaml_list(self.closures_file)
            remaining = [row for row in rows if str(row.get("closure_id")) != closure_id]
            if len(remaining) == len(rows):
                raise ReservationNotFound(closure_id)

            removed = next(ClosureRecord.from_dict(row) for row in rows if str(row.get("closure_id")) == closure_id)
            self._write_yaml_list(self.closures_file, remaining)
            self._audit("CLOSURE_DELETED", {"closure_id": closure_id, "reason": removed.reason})
        return removed
