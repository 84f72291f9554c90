from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Violation:
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class ValidationError(ValueError):
    """Request input is malformed or out of policy. Carries every violation found."""

    def __init__(self, violations: list[Violation]) -> None:
        self.violations = list(violations)
        super().__init__("; ".join(f"{item.field}: {item.message}" for item in self.violations))


class SlotUnavailable(ValueError):
    """Requested interval collides with a blocking reservation or a closure."""

    def __init__(self, message: str = "Requested time overlaps an existing reservation.", conflicts: list[Any] | None = None) -> None:
        self.conflicts = list(conflicts or [])
        super().__init__(message)


class TransientStoreError(RuntimeError):
    retryable = True


class ReservationStorageError(TransientStoreError):
    pass


class GuardTimeout(TransientStoreError):
    pass


class NotificationFailure(RuntimeError):
    pass


class ReservationNotFound(LookupError):
    pass


class InvalidTransition(ValueError):
    pass
