from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable
import logging

from flask import Flask, jsonify, request

from .config import SchedulingConfig, load_config
from .errors import (
    InvalidTransition,
    ReservationNotFound,
    SlotUnavailable,
    TransientStoreError,
    ValidationError,
)
from .notifications import EventLogNotificationSink, NotificationSink
from .scheduler import CreationResult, CreationState, ReservationScheduler
from .validation import parse_date
from .yaml_store import ReservationYamlRepository

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 1


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    config: SchedulingConfig | None = None,
    notifier: NotificationSink | None = None,
) -> Flask:
    app = Flask(__name__)
    effective_config = config or load_config()
    repository = ReservationYamlRepository(data_dir, lock_timeout_seconds=effective_config.lock_timeout_seconds)
    scheduler = ReservationScheduler(
        repository,
        config=effective_config,
        notifier=notifier or EventLogNotificationSink(repository),
        clock=now_provider,
    )
    app.extensions["rehearsal_scheduler"] = scheduler

    def _error(message: str, status: int, **extra: Any) -> Any:
        return jsonify({"ok": False, "message": message, **extra}), status

    def _creation_response(result: CreationResult, success_status: int) -> Any:
        if result.state is CreationState.COMMITTED:
            return jsonify(result.to_dict()), success_status
        if result.state is CreationState.INVALID:
            return jsonify(result.to_dict()), 400
        if result.state is CreationState.UNAVAILABLE:
            return jsonify(result.to_dict()), 409
        response = jsonify(result.to_dict())
        response.headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
        return response, 503

    def _transient(error: TransientStoreError) -> Any:
        response = jsonify({"ok": False, "message": str(error), "retryable": True})
        response.headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
        return response, 503

    @app.errorhandler(TransientStoreError)
    def handle_transient(error: TransientStoreError) -> Any:
        return _transient(error)

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.get("/api/bookings/available/<date_text>")
    def get_availability(date_text: str) -> Any:
        try:
            day = scheduler.query_day(date_text)
        except ValidationError as error:
            return _error(str(error), 400, violations=[item.to_dict() for item in error.violations])
        return jsonify({"ok": True, **day.to_dict()})

    @app.get("/api/bookings")
    def list_bookings() -> Any:
        rows = scheduler.list_reservations()
        return jsonify({"ok": True, "total_bookings": len(rows), "bookings": [row.to_dict() for row in rows]})

    @app.post("/api/bookings")
    def create_booking() -> Any:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return _error("Request body must be a JSON object.", 400)
        return _creation_response(scheduler.create_reservation(payload), 201)

    @app.put("/api/bookings/<reservation_id>")
    def reschedule_booking(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return _error("Request body must be a JSON object.", 400)
        try:
            result = scheduler.reschedule_reservation(reservation_id, payload)
        except ReservationNotFound:
            return _error("Reservation not found.", 404)
        return _creation_response(result, 200)

    @app.delete("/api/bookings/<reservation_id>")
    def delete_booking(reservation_id: str) -> Any:
        try:
            removed = scheduler.delete_reservation(reservation_id)
        except ReservationNotFound:
            return _error("Reservation not found.", 404)
        return jsonify({"ok": True, "message": "Reservation deleted.", "reservation": removed.to_dict()})

    @app.put("/api/bookings/<reservation_id>/status")
    def update_booking_status(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return _error("Request body must be a JSON object.", 400)
        status = str(payload.get("status", "")).strip()
        try:
            updated = scheduler.update_status(reservation_id, status)
        except ReservationNotFound:
            return _error("Reservation not found.", 404)
        except ValidationError as error:
            return _error(str(error), 400, violations=[item.to_dict() for item in error.violations])
        except SlotUnavailable as error:
            return _error(str(error), 409)
        except TransientStoreError as error:
            return _transient(error)
        return jsonify({"ok": True, "reservation": updated.to_dict()})

    @app.post("/api/bookings/<reservation_id>/cancel")
    def cancel_booking(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return _error("Request body must be a JSON object.", 400)
        reason = payload.get("reason")
        try:
            cancelled = scheduler.cancel_reservation(reservation_id, str(reason) if reason is not None else None)
        except ReservationNotFound:
            return _error("Reservation not found.", 404)
        except InvalidTransition as error:
            return _error(str(error), 400)
        except TransientStoreError as error:
            return _transient(error)
        return jsonify({"ok": True, "reservation": cancelled.to_dict()})

    @app.get("/api/bookings/date/<date_text>")
    def get_bookings_for_date(date_text: str) -> Any:
        target_date = parse_date(date_text)
        if target_date is None:
            return _error("Invalid date format. Use YYYY-MM-DD.", 400)
        rows = scheduler.store.list_for_date(target_date)
        return jsonify(
            {
                "ok": True,
                "date": date_text,
                "total_bookings": len(rows),
                "bookings": [row.to_dict() for row in rows],
            }
        )

    @app.get("/api/bookings/client/<email>")
    def get_bookings_for_client(email: str) -> Any:
        rows = scheduler.store.list_by_email(email)
        return jsonify(
            {
                "ok": True,
                "email": email,
                "total_bookings": len(rows),
                "bookings": [row.to_dict() for row in rows],
            }
        )

    @app.get("/api/bookings/stats/overview")
    def get_stats() -> Any:
        return jsonify({"ok": True, **scheduler.stats_overview()})

    @app.get("/api/availability-blocks")
    def list_closures() -> Any:
        closures = scheduler.store.list_closures()
        return jsonify({"ok": True, "blocks": [closure.to_dict() for closure in closures]})

    @app.post("/api/availability-blocks")
    def create_closure() -> Any:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return _error("Request body must be a JSON object.", 400)
        try:
            closure = scheduler.add_closure(payload)
        except ValidationError as error:
            return _error(str(error), 400, violations=[item.to_dict() for item in error.violations])
        except SlotUnavailable as error:
            return _error(
                str(error),
                409,
                conflicts=[row.reservation_id for row in error.conflicts],
            )
        return jsonify({"ok": True, "block": closure.to_dict()}), 201

    @app.put("/api/availability-blocks/<closure_id>")
    def update_closure(closure_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            return _error("Request body must be a JSON object.", 400)
        try:
            closure = scheduler.update_closure(closure_id, payload)
        except ReservationNotFound:
            return _error("Availability block not found.", 404)
        except ValidationError as error:
            return _error(str(error), 400, violations=[item.to_dict() for item in error.violations])
        except SlotUnavailable as error:
            return _error(
                str(error),
                409,
                conflicts=[row.reservation_id for row in error.conflicts],
            )
        return jsonify({"ok": True, "block": closure.to_dict()})

    @app.delete("/api/availability-blocks/<closure_id>")
    def delete_closure(closure_id: str) -> Any:
        try:
            removed = scheduler.delete_closure(closure_id)
        except ReservationNotFound:
            return _error("Availability block not found.", 404)
        return jsonify({"ok": True, "block": removed.to_dict()})

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)
