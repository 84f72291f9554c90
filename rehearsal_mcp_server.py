from __future__ import annotations

from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from rehearsal_booking import ReservationScheduler, ReservationYamlRepository, ValidationError, load_config
from rehearsal_booking.notifications import EventLogNotificationSink
from rehearsal_booking.validation import parse_date

mcp = FastMCP(
    "Rehearsal Room MCP Server",
    instructions="Check rehearsal room availability and request bookings.",
    json_response=True,
)

DATA_DIR = Path(__file__).parent / "data"
CONFIG = load_config()
REPOSITORY = ReservationYamlRepository(DATA_DIR, lock_timeout_seconds=CONFIG.lock_timeout_seconds)
SCHEDULER = ReservationScheduler(
    REPOSITORY,
    config=CONFIG,
    notifier=EventLogNotificationSink(REPOSITORY),
)


@mcp.resource("rehearsal://policy")
async def booking_policy() -> dict[str, Any]:
    """Opening hours, bookable durations and band size limits of the room."""
    config = SCHEDULER.config
    return {
        "opening_hour": config.start_hour,
        "closing_hour": config.end_hour,
        "slot_granularity_minutes": config.slot_granularity_minutes,
        "allowed_durations": list(config.durations),
        "min_members": config.min_members,
        "max_members": config.max_members,
        "timezone": config.timezone,
    }


@mcp.tool()
def query_availability(date: str) -> dict[str, Any]:
    """Return the bookable start times of a day (YYYY-MM-DD) with the durations that fit."""
    try:
        slots = SCHEDULER.query_availability(date)
    except ValidationError as error:
        return {"ok": False, "violations": [item.to_dict() for item in error.violations]}
    return {"ok": True, "date": date, "time_slots": [slot.to_dict() for slot in slots]}


@mcp.tool()
def list_bookings_for_date(date: str) -> dict[str, Any]:
    """Return every reservation of a day, cancelled and rejected ones included."""
    target_date = parse_date(date)
    if target_date is None:
        return {"ok": False, "message": "Invalid date format. Use YYYY-MM-DD."}
    return {"ok": True, "date": date, "bookings": [row.to_dict() for row in REPOSITORY.list_for_date(target_date)]}


@mcp.tool()
def request_reservation(
    date: str,
    start_time: str,
    duration_hours: int,
    band_name: str,
    contact_email: str,
    members_count: int = 1,
    phone: str | None = None,
    notes: str | None = None,
) -> dict[str, Any]:
    """Request a pending reservation. Staff approve or reject it later."""
    result = SCHEDULER.create_reservation(
        {
            "date": date,
            "start_time": start_time,
            "duration_hours": duration_hours,
            "band_name": band_name,
            "contact_email": contact_email,
            "members_count": members_count,
            "phone": phone,
            "notes": notes,
        }
    )
    return result.to_dict()


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
