import threading
import time as time_module
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time
from itertools import combinations

import pytz

from rehearsal_booking import (
    CreationState,
    InMemoryReservationStore,
    ReservationScheduler,
    ReservationStorageError,
    SchedulingConfig,
    SlotUnavailable,
    ValidationError,
    overlaps,
)
from rehearsal_booking.errors import InvalidTransition, ReservationNotFound
from rehearsal_booking.notifications import EVENT_RESERVATION_APPROVED, EVENT_RESERVATION_CREATED, NotificationSink

ROME = pytz.timezone("Europe/Rome")
NOW = ROME.localize(datetime(2026, 3, 2, 10, 0))
DAY = date(2026, 3, 10)


def booking(start_time: str = "18:00", duration_hours: int = 2, **overrides):
    payload = {
        "date": DAY.isoformat(),
        "start_time": start_time,
        "duration_hours": duration_hours,
        "band_name": "The Testers",
        "contact_email": "band@example.com",
    }
    payload.update(overrides)
    return payload


class RecordingSink(NotificationSink):
    def __init__(self) -> None:
        self.events = []

    def notify(self, event) -> None:
        self.events.append(event)


class FailingSink(NotificationSink):
    def notify(self, event) -> None:
        raise ConnectionError("mail relay down")


class SlowUnguardedStore(InMemoryReservationStore):
    """Widens the check-then-insert window and disables the store's own exclusion check."""

    def __init__(self) -> None:
        super().__init__(enforce_exclusion=False)

    def list_blocking(self, target_date):
        rows = super().list_blocking(target_date)
        time_module.sleep(0.02)
        return rows


class BrokenInsertStore(InMemoryReservationStore):
    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    def insert(self, record):
        raise self.error


class SchedulerTestCase(unittest.TestCase):
    def make_scheduler(self, store=None, config=None, notifier=None) -> ReservationScheduler:
        scheduler = ReservationScheduler(
            store or InMemoryReservationStore(),
            config=config or SchedulingConfig(),
            notifier=notifier,
            clock=lambda: NOW,
        )
        self.addCleanup(scheduler.shutdown)
        return scheduler


class TestCreateReservation(SchedulerTestCase):
    def test_commits_pending_reservation(self) -> None:
        scheduler = self.make_scheduler()
        result = scheduler.create_reservation(booking(phone="+39 055 000", notes="Bring drums"))

        self.assertTrue(result.ok)
        self.assertEqual(result.state, CreationState.COMMITTED)
        stored = scheduler.store.get(result.reservation_id)
        self.assertEqual(stored.status, "pending")
        self.assertEqual(stored.start_time, time(18, 0))
        self.assertEqual(stored.members_count, 1)
        self.assertEqual(stored.notes, "Bring drums")

    def test_invalid_request_lists_all_violations(self) -> None:
        scheduler = self.make_scheduler()
        result = scheduler.create_reservation(booking(date="2026/03/10", duration_hours=7, members_count=0))

        self.assertEqual(result.state, CreationState.INVALID)
        self.assertFalse(result.retryable)
        self.assertEqual([item.field for item in result.violations], ["date", "duration_hours", "members_count"])
        self.assertEqual(scheduler.store.list_all(), [])

    def test_overlapping_request_is_unavailable(self) -> None:
        scheduler = self.make_scheduler()
        self.assertTrue(scheduler.create_reservation(booking("14:00", 2)).ok)

        result = scheduler.create_reservation(booking("15:30", 1))
        self.assertEqual(result.state, CreationState.UNAVAILABLE)
        self.assertFalse(result.retryable)

    def test_back_to_back_requests_both_commit(self) -> None:
        scheduler = self.make_scheduler()
        self.assertTrue(scheduler.create_reservation(booking("10:00", 2)).ok)
        self.assertTrue(scheduler.create_reservation(booking("12:00", 1)).ok)
        self.assertTrue(scheduler.create_reservation(booking("08:30", 1)).state is CreationState.INVALID)
        self.assertTrue(scheduler.create_reservation(booking("09:00", 1)).ok)

    def test_store_failures_are_retryable_and_never_commit(self) -> None:
        for error in (ReservationStorageError("disk full"), RuntimeError("connection reset")):
            scheduler = self.make_scheduler(store=BrokenInsertStore(error))
            result = scheduler.create_reservation(booking())

            self.assertEqual(result.state, CreationState.STORE_ERROR)
            self.assertTrue(result.retryable)
            self.assertEqual(scheduler.store.list_all(), [])

    def test_store_refuses_overlapping_insert_on_its_own(self) -> None:
        store = InMemoryReservationStore()
        scheduler = self.make_scheduler(store=store)
        first = scheduler.create_reservation(booking("18:00", 2))

        sneaky = first.reservation.with_changes(reservation_id="other", start_time=time(19, 0))
        with self.assertRaises(SlotUnavailable):
            store.insert(sneaky)

    def test_guard_timeout_is_a_transient_error(self) -> None:
        scheduler = self.make_scheduler(config=SchedulingConfig(lock_timeout_seconds=0.05))

        with scheduler.guard.hold(DAY):
            result = scheduler.create_reservation(booking())

        self.assertEqual(result.state, CreationState.STORE_ERROR)
        self.assertTrue(result.retryable)
        self.assertEqual(scheduler.store.list_all(), [])

    def test_other_dates_are_not_blocked_by_the_guard(self) -> None:
        scheduler = self.make_scheduler(config=SchedulingConfig(lock_timeout_seconds=0.05))

        with scheduler.guard.hold(date(2026, 3, 11)):
            result = scheduler.create_reservation(booking())

        self.assertTrue(result.ok)


class TestConcurrentCreation(SchedulerTestCase):
    def test_identical_parallel_requests_commit_once(self) -> None:
        for _ in range(3):
            scheduler = self.make_scheduler(store=SlowUnguardedStore())
            attempts = 8
            barrier = threading.Barrier(attempts)

            def attempt(_):
                barrier.wait()
                return scheduler.create_reservation(booking("18:00", 2))

            with ThreadPoolExecutor(max_workers=attempts) as pool:
                results = list(pool.map(attempt, range(attempts)))

            states = [result.state for result in results]
            self.assertEqual(states.count(CreationState.COMMITTED), 1)
            self.assertEqual(states.count(CreationState.UNAVAILABLE), attempts - 1)

            blocking = scheduler.store.list_blocking(DAY)
            self.assertEqual(len(blocking), 1)

    def test_mutually_overlapping_requests_never_double_book(self) -> None:
        scheduler = self.make_scheduler(store=SlowUnguardedStore())
        requests = [booking("17:00", 2), booking("17:30", 1), booking("18:00", 3), booking("16:00", 4)]
        barrier = threading.Barrier(len(requests))

        def attempt(payload):
            barrier.wait()
            return scheduler.create_reservation(payload)

        with ThreadPoolExecutor(max_workers=len(requests)) as pool:
            results = list(pool.map(attempt, requests))

        self.assertEqual(sum(1 for result in results if result.ok), 1)
        blocking = scheduler.store.list_blocking(DAY)
        self.assertFalse(any(overlaps(a.interval, b.interval) for a, b in combinations(blocking, 2)))


class TestNotifications(SchedulerTestCase):
    def test_staff_is_notified_after_commit(self) -> None:
        sink = RecordingSink()
        scheduler = self.make_scheduler(notifier=sink)
        result = scheduler.create_reservation(booking())
        scheduler.shutdown()

        self.assertEqual(len(sink.events), 1)
        self.assertEqual(sink.events[0].kind, EVENT_RESERVATION_CREATED)
        self.assertEqual(sink.events[0].reservation.reservation_id, result.reservation_id)

    def test_notification_failure_does_not_undo_commit(self) -> None:
        scheduler = self.make_scheduler(notifier=FailingSink())

        with self.assertLogs("rehearsal_booking.scheduler", level="WARNING") as captured:
            result = scheduler.create_reservation(booking())
            scheduler.shutdown()

        self.assertTrue(result.ok)
        self.assertIsNotNone(scheduler.store.get(result.reservation_id))
        self.assertTrue(any("mail relay down" in line for line in captured.output))

    def test_rejected_requests_do_not_notify(self) -> None:
        sink = RecordingSink()
        scheduler = self.make_scheduler(notifier=sink)
        scheduler.create_reservation(booking(duration_hours=9))
        scheduler.shutdown()
        self.assertEqual(sink.events, [])


class TestAvailability(SchedulerTestCase):
    def test_query_reflects_committed_reservations(self) -> None:
        scheduler = self.make_scheduler()
        scheduler.create_reservation(booking("14:00", 2))

        slots = {slot.time.strftime("%H:%M"): slot for slot in scheduler.query_availability("2026-03-10")}
        self.assertEqual(slots["12:00"].available_durations, (1, 2))
        self.assertEqual(slots["13:30"].max_duration, 0)
        self.assertEqual(slots["16:00"].max_duration, 4)

    def test_query_rejects_past_and_malformed_dates(self) -> None:
        scheduler = self.make_scheduler()
        with self.assertRaises(ValidationError):
            scheduler.query_availability("2026-03-01")
        with self.assertRaises(ValidationError):
            scheduler.query_availability("tomorrow")

    def test_public_holidays_close_the_room(self) -> None:
        scheduler = self.make_scheduler(config=SchedulingConfig(holiday_country="IT"))

        slots = scheduler.query_availability("2026-12-25")
        self.assertFalse(any(slot.available for slot in slots))
        result = scheduler.create_reservation(booking(date="2026-12-25"))
        self.assertEqual(result.state, CreationState.UNAVAILABLE)


class TestRescheduleAndStatus(SchedulerTestCase):
    def test_reschedule_ignores_own_interval(self) -> None:
        scheduler = self.make_scheduler()
        first = scheduler.create_reservation(booking("10:00", 2))

        moved = scheduler.reschedule_reservation(first.reservation_id, {"start_time": "11:00"})
        self.assertTrue(moved.ok)
        self.assertEqual(moved.reservation.start_time, time(11, 0))
        self.assertEqual(moved.reservation.duration_hours, 2)

    def test_reschedule_into_other_booking_is_unavailable(self) -> None:
        scheduler = self.make_scheduler()
        scheduler.create_reservation(booking("10:00", 2))
        second = scheduler.create_reservation(booking("14:00", 2))

        result = scheduler.reschedule_reservation(second.reservation_id, {"start_time": "11:00"})
        self.assertEqual(result.state, CreationState.UNAVAILABLE)
        self.assertEqual(scheduler.store.get(second.reservation_id).start_time, time(14, 0))

    def test_reschedule_to_another_date(self) -> None:
        scheduler = self.make_scheduler()
        first = scheduler.create_reservation(booking("10:00", 2))

        result = scheduler.reschedule_reservation(first.reservation_id, {"date": "2026-03-12"})
        self.assertTrue(result.ok)
        self.assertEqual(scheduler.store.list_blocking(DAY), [])
        self.assertEqual(len(scheduler.store.list_blocking(date(2026, 3, 12))), 1)

    def test_reschedule_validates_merged_request(self) -> None:
        scheduler = self.make_scheduler()
        first = scheduler.create_reservation(booking("10:00", 2))

        result = scheduler.reschedule_reservation(first.reservation_id, {"duration_hours": 6})
        self.assertEqual(result.state, CreationState.INVALID)

    def test_unknown_reservation_raises(self) -> None:
        scheduler = self.make_scheduler()
        with self.assertRaises(ReservationNotFound):
            scheduler.reschedule_reservation("missing", {})
        with self.assertRaises(ReservationNotFound):
            scheduler.cancel_reservation("missing")

    def test_cancel_appends_reason_to_notes(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking(notes="Bring drums"))

        cancelled = scheduler.cancel_reservation(created.reservation_id, "Broken amp")
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(cancelled.notes, "Bring drums\n\nCancellation: Broken amp")

        with self.assertRaises(InvalidTransition):
            scheduler.cancel_reservation(created.reservation_id)

    def test_cancel_without_reason(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking())
        cancelled = scheduler.cancel_reservation(created.reservation_id)
        self.assertEqual(cancelled.notes, "Cancellation: No reason given")

    def test_cancelled_slot_can_be_booked_again(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking("10:00", 2))
        scheduler.cancel_reservation(created.reservation_id)

        self.assertTrue(scheduler.create_reservation(booking("10:00", 4)).ok)

    def test_reactivation_must_pass_conflict_check(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking("10:00", 2))
        scheduler.update_status(created.reservation_id, "rejected")
        scheduler.create_reservation(booking("11:00", 1))

        with self.assertRaises(SlotUnavailable):
            scheduler.update_status(created.reservation_id, "approved")
        self.assertEqual(scheduler.store.get(created.reservation_id).status, "rejected")

    def test_approval_keeps_reservation_blocking(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking())
        approved = scheduler.update_status(created.reservation_id, "approved")
        self.assertEqual(approved.status, "approved")
        self.assertEqual(len(scheduler.store.list_blocking(DAY)), 1)

    def test_unknown_status_is_invalid(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking())
        with self.assertRaises(ValidationError):
            scheduler.update_status(created.reservation_id, "confirmed")


class TestClosuresAndStats(SchedulerTestCase):
    def test_closure_blocks_availability_and_creation(self) -> None:
        scheduler = self.make_scheduler()
        scheduler.add_closure(
            {"start_date": "2026-03-10", "end_date": "2026-03-10", "start_time": "20:00", "end_time": "00:00", "reason": "Concert"}
        )

        slots = {slot.time.strftime("%H:%M"): slot for slot in scheduler.query_availability(DAY)}
        self.assertEqual(slots["18:00"].available_durations, (1, 2))
        self.assertFalse(slots["21:00"].available)
        self.assertEqual(scheduler.create_reservation(booking("19:00", 2)).state, CreationState.UNAVAILABLE)

    def test_whole_day_closure_spanning_dates(self) -> None:
        scheduler = self.make_scheduler()
        scheduler.add_closure({"start_date": "2026-03-10", "end_date": "2026-03-11", "reason": "Renovation"})

        self.assertFalse(any(slot.available for slot in scheduler.query_availability("2026-03-11")))
        self.assertTrue(any(slot.available for slot in scheduler.query_availability("2026-03-12")))

    def test_closure_conflicting_with_booking_is_rejected(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking("18:00", 2))

        with self.assertRaises(SlotUnavailable) as context:
            scheduler.add_closure({"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "Cleaning"})
        self.assertEqual([row.reservation_id for row in context.exception.conflicts], [created.reservation_id])

    def test_closure_validation(self) -> None:
        scheduler = self.make_scheduler()
        with self.assertRaises(ValidationError) as context:
            scheduler.add_closure({"start_date": "2026-03-01", "end_date": "2026-02-28", "start_time": "25:00"})
        fields = [item.field for item in context.exception.violations]
        self.assertEqual(fields, ["start_date", "end_date", "end_date", "start_time", "reason"])

    def test_deleted_closure_frees_the_room(self) -> None:
        scheduler = self.make_scheduler()
        closure = scheduler.add_closure({"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "Cleaning"})
        scheduler.delete_closure(closure.closure_id)
        self.assertTrue(scheduler.create_reservation(booking()).ok)

    def test_stats_overview(self) -> None:
        scheduler = self.make_scheduler()
        first = scheduler.create_reservation(booking("10:00", 2))
        second = scheduler.create_reservation(booking("14:00", 3))
        scheduler.create_reservation(booking("19:00", 1))
        scheduler.update_status(first.reservation_id, "approved")
        scheduler.cancel_reservation(second.reservation_id)

        stats = scheduler.stats_overview()
        self.assertEqual(stats["total_reservations"], 3)
        self.assertEqual(stats["pending_reservations"], 1)
        self.assertEqual(stats["approved_reservations"], 1)
        self.assertEqual(stats["cancelled_reservations"], 1)
        self.assertEqual(stats["upcoming_reservations"], 3)
        self.assertEqual(stats["past_reservations"], 0)
        self.assertEqual(stats["average_duration_hours"], 2.0)
        self.assertEqual(stats["total_hours_approved"], 2)

class TestApprovalNotice(SchedulerTestCase):
    def test_band_is_notified_once_on_approval(self) -> None:
        sink = RecordingSink()
        scheduler = self.make_scheduler(notifier=sink)
        created = scheduler.create_reservation(booking())
        scheduler.update_status(created.reservation_id, "approved")
        scheduler.update_status(created.reservation_id, "approved")
        scheduler.shutdown()

        self.assertEqual([event.kind for event in sink.events], [EVENT_RESERVATION_CREATED, EVENT_RESERVATION_APPROVED])
        self.assertEqual(sink.events[1].reservation.status, "approved")

    def test_other_status_changes_send_no_approval(self) -> None:
        sink = RecordingSink()
        scheduler = self.make_scheduler(notifier=sink)
        created = scheduler.create_reservation(booking())
        scheduler.update_status(created.reservation_id, "rejected")
        scheduler.shutdown()

        self.assertNotIn(EVENT_RESERVATION_APPROVED, [event.kind for event in sink.events])


class TestListingAndDeletion(SchedulerTestCase):
    def test_list_reservations_newest_date_first(self) -> None:
        scheduler = self.make_scheduler()
        scheduler.create_reservation(booking("18:00", 1))
        scheduler.create_reservation(booking("10:00", 1))
        scheduler.create_reservation(booking("12:00", 1, date="2026-03-12"))

        listed = [(row.date.isoformat(), row.start_time.strftime("%H:%M")) for row in scheduler.list_reservations()]
        self.assertEqual(listed, [("2026-03-12", "12:00"), ("2026-03-10", "10:00"), ("2026-03-10", "18:00")])

    def test_deleted_reservation_frees_its_slot(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking("18:00", 2))

        removed = scheduler.delete_reservation(created.reservation_id)
        self.assertEqual(removed.reservation_id, created.reservation_id)
        self.assertIsNone(scheduler.store.get(created.reservation_id))
        self.assertTrue(scheduler.create_reservation(booking("18:00", 2)).ok)
        with self.assertRaises(ReservationNotFound):
            scheduler.delete_reservation(created.reservation_id)

    def test_query_day_counts_match_the_grid(self) -> None:
        scheduler = self.make_scheduler()
        scheduler.create_reservation(booking("10:00", 2))
        scheduler.create_reservation(booking("18:00", 2))

        day = scheduler.query_day(DAY)
        payload = day.to_dict()
        self.assertEqual(payload["total_bookings"], 2)
        self.assertEqual(payload["total_slots"], len(payload["time_slots"]))
        self.assertEqual(payload["available_slots"], sum(1 for slot in day.slots if slot.available))
        self.assertEqual(day.available_slots, payload["available_slots"])


class TestClosureUpdates(SchedulerTestCase):
    def test_moving_a_closure_frees_the_old_dates(self) -> None:
        scheduler = self.make_scheduler()
        closure = scheduler.add_closure({"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "Cleaning"})

        moved = scheduler.update_closure(
            closure.closure_id, {"start_date": "2026-03-11", "end_date": "2026-03-11", "reason": "Cleaning"}
        )
        self.assertEqual(moved.closure_id, closure.closure_id)
        self.assertEqual(moved.created_at, closure.created_at)
        self.assertTrue(scheduler.create_reservation(booking()).ok)
        self.assertFalse(any(slot.available for slot in scheduler.query_availability("2026-03-11")))

    def test_closure_may_be_edited_in_place(self) -> None:
        scheduler = self.make_scheduler()
        closure = scheduler.add_closure({"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "Cleaning"})

        edited = scheduler.update_closure(
            closure.closure_id, {"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "Deep cleaning"}
        )
        self.assertEqual(edited.reason, "Deep cleaning")
        self.assertEqual(len(scheduler.store.list_closures(DAY)), 1)

    def test_update_onto_a_booking_is_refused(self) -> None:
        scheduler = self.make_scheduler()
        created = scheduler.create_reservation(booking("18:00", 2, date="2026-03-11"))
        closure = scheduler.add_closure({"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "Cleaning"})

        with self.assertRaises(SlotUnavailable) as context:
            scheduler.update_closure(
                closure.closure_id, {"start_date": "2026-03-10", "end_date": "2026-03-11", "reason": "Cleaning"}
            )
        self.assertEqual([row.reservation_id for row in context.exception.conflicts], [created.reservation_id])
        self.assertEqual(scheduler.store.get_closure(closure.closure_id).end_date, DAY)

    def test_update_validates_and_requires_existing_closure(self) -> None:
        scheduler = self.make_scheduler()
        closure = scheduler.add_closure({"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "Cleaning"})

        with self.assertRaises(ValidationError):
            scheduler.update_closure(closure.closure_id, {"start_date": "2026-03-10", "end_date": "2026-03-09"})
        with self.assertRaises(ReservationNotFound):
            scheduler.update_closure("missing", {"start_date": "2026-03-10", "end_date": "2026-03-10", "reason": "x"})



if __name__ == "__main__":
    unittest.main()
