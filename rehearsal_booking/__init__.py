from .booking import (
	BLOCKING_STATUSES,
	ClosureRecord,
	ReservationRecord,
	TimeInterval,
	find_conflicts,
	has_conflict,
	interval,
	overlaps,
	to_minutes,
)
from .config import SchedulingConfig, load_config
from .errors import (
	GuardTimeout,
	NotificationFailure,
	ReservationStorageError,
	SlotUnavailable,
	TransientStoreError,
	ValidationError,
	Violation,
)
from .memory_store import InMemoryReservationStore
from .scheduler import CreationResult, CreationState, DayAvailability, ReservationScheduler
from .slots import TimeSlot, generate_slot_grid
from .validation import ReservationRequest, validate_reservation_request
from .yaml_store import ReservationYamlRepository

__all__ = [
	"BLOCKING_STATUSES",
	"ClosureRecord",
	"ReservationRecord",
	"TimeInterval",
	"find_conflicts",
	"has_conflict",
	"interval",
	"overlaps",
	"to_minutes",
	"SchedulingConfig",
	"load_config",
	"GuardTimeout",
	"NotificationFailure",
	"ReservationStorageError",
	"SlotUnavailable",
	"TransientStoreError",
	"ValidationError",
	"Violation",
	"InMemoryReservationStore",
	"CreationResult",
	"CreationState",
	"DayAvailability",
	"ReservationScheduler",
	"TimeSlot",
	"generate_slot_grid",
	"ReservationRequest",
	"validate_reservation_request",
	"ReservationYamlRepository",
]
