import json
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.availability_service import (
    check_availability_schedule,
    check_instance_availability,
    find_available_instances,
    find_booking_overlaps,
    normalize_availability,
    resolve_availability,
    select_instances,
    slot_minutes,
)
from services.booking_service import (
    BOOKING_STATUSES,
    STATUS_TRANSITIONS,
    BookingConflictError,
    BookingValidationError,
    InvalidStatusTransitionError,
    add_booking_message,
    apply_status_transition,
    calculate_booking_price,
    can_cancel_without_penalty,
    can_transition_status,
    create_booking_with_instances,
    format_booking_status,
    group_bookings_by_template,
    validate_booking_request,
)


# 2030-01-07 is a Monday.
MONDAY = datetime(2030, 1, 7, tzinfo=timezone.utc)
NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


def _at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute)


def _instance(instance_id: int, code: str, status: str = "active", availability=None):
    return SimpleNamespace(
        InstanceID=instance_id,
        TemplateID=1,
        InstanceCode=code,
        Status=status,
        AvailabilityJson=json.dumps(availability) if availability is not None else None,
    )


def _booking(booking_id: int, instance_id: int, start: datetime, end: datetime, status: str = "approved_by_renter"):
    return SimpleNamespace(
        BookingID=booking_id,
        MachineInstanceID=instance_id,
        TemplateID=1,
        StartTime=start,
        EndTime=end,
        Status=status,
        MessagesJson=None,
        UpdatedDate=None,
    )


def _template(price_per_hour: int = 7500, availability=None):
    return SimpleNamespace(
        TemplateID=1,
        Name="Excavator",
        Code="EXC",
        PricePerHour=price_per_hour,
        AvailabilityJson=json.dumps(availability) if availability is not None else None,
    )


class ScheduleTests(unittest.TestCase):
    def test_slot_minutes_accepts_clock_and_iso_values(self):
        self.assertEqual(slot_minutes("09:30"), 570)
        self.assertEqual(slot_minutes("24:00"), 1440)
        self.assertEqual(slot_minutes("2030-01-07T10:15:00Z"), 615)
        self.assertEqual(slot_minutes(_at(MONDAY, 8, 45)), 525)
        self.assertIsNone(slot_minutes("25:00"))
        self.assertIsNone(slot_minutes("nonsense"))
        self.assertIsNone(slot_minutes(None))

    def test_empty_schedule_is_always_available(self):
        self.assertTrue(check_availability_schedule(None, _at(MONDAY, 1), _at(MONDAY, 2)))
        self.assertTrue(check_availability_schedule("{}", _at(MONDAY, 1), _at(MONDAY, 2)))
        self.assertTrue(check_availability_schedule("not json", _at(MONDAY, 1), _at(MONDAY, 2)))

    def test_base_schedule_requires_containing_slot(self):
        schedule = {"base": {"mon": [{"start": "08:00", "end": "18:00"}]}}
        self.assertTrue(check_availability_schedule(schedule, _at(MONDAY, 9), _at(MONDAY, 17)))
        self.assertFalse(check_availability_schedule(schedule, _at(MONDAY, 7), _at(MONDAY, 9)))
        self.assertFalse(check_availability_schedule(schedule, _at(MONDAY, 17), _at(MONDAY, 19)))
        # Tuesday has no slots in the base schedule.
        tuesday = MONDAY + timedelta(days=1)
        self.assertFalse(check_availability_schedule(schedule, _at(tuesday, 9), _at(tuesday, 10)))

    def test_empty_override_closes_the_day(self):
        schedule = {
            "base": {"mon": [{"start": "08:00", "end": "18:00"}]},
            "overrides": {"2030-01-07": []},
        }
        self.assertFalse(check_availability_schedule(schedule, _at(MONDAY, 9), _at(MONDAY, 10)))

    def test_override_slots_replace_base_for_that_date(self):
        schedule = {
            "base": {"mon": [{"start": "08:00", "end": "18:00"}]},
            "overrides": {"2030-01-07": [{"start": "12:00", "end": "14:00"}]},
        }
        self.assertFalse(check_availability_schedule(schedule, _at(MONDAY, 9), _at(MONDAY, 10)))
        self.assertTrue(check_availability_schedule(schedule, _at(MONDAY, 12), _at(MONDAY, 13)))

    def test_overrides_without_base_leave_other_days_open(self):
        schedule = {"overrides": {"2030-01-08": []}}
        self.assertTrue(check_availability_schedule(schedule, _at(MONDAY, 3), _at(MONDAY, 4)))

    def test_instance_schedule_replaces_template_schedule(self):
        template = _template(availability={"base": {"mon": [{"start": "08:00", "end": "10:00"}]}})
        own = _instance(1, "EXC-1", availability={"base": {"mon": [{"start": "12:00", "end": "16:00"}]}})
        inherited = _instance(2, "EXC-2")
        self.assertEqual(resolve_availability(template, own)["base"]["mon"][0]["start"], "12:00")
        self.assertEqual(resolve_availability(template, inherited)["base"]["mon"][0]["start"], "08:00")

    def test_normalize_drops_invalid_slots_but_keeps_closed_overrides(self):
        normalized = normalize_availability(
            {
                "base": {
                    "Monday": [{"start": "08:00", "end": "12:00"}, {"start": "13:00", "end": "11:00"}],
                    "tue": [{"start": "bad", "end": "10:00"}],
                    "holiday": [{"start": "08:00", "end": "12:00"}],
                },
                "overrides": {"2030-01-07": [], "not-a-date": []},
            }
        )
        self.assertEqual(normalized["base"], {"mon": [{"start": "08:00", "end": "12:00"}]})
        self.assertEqual(normalized["overrides"], {"2030-01-07": []})


class AllocationTests(unittest.TestCase):
    def setUp(self):
        self.template = _template()
        self.instances = [_instance(1, "EXC-1"), _instance(2, "EXC-2")]
        self.existing = [_booking(10, 1, _at(MONDAY, 9), _at(MONDAY, 17))]

    def test_overlap_uses_half_open_intervals(self):
        self.assertEqual(find_booking_overlaps(self.existing, _at(MONDAY, 17), _at(MONDAY, 18)), [])
        self.assertEqual(find_booking_overlaps(self.existing, _at(MONDAY, 8), _at(MONDAY, 9)), [])
        self.assertEqual(len(find_booking_overlaps(self.existing, _at(MONDAY, 16), _at(MONDAY, 18))), 1)

    def test_inactive_bookings_never_conflict(self):
        bookings = [
            _booking(11, 1, _at(MONDAY, 9), _at(MONDAY, 17), status="canceled_by_client"),
            _booking(12, 1, _at(MONDAY, 9), _at(MONDAY, 17), status="rejected_by_renter"),
        ]
        result = check_instance_availability(self.instances[0], bookings, _at(MONDAY, 10), _at(MONDAY, 12))
        self.assertTrue(result["available"])

    def test_booked_instance_is_skipped_for_the_free_one(self):
        availability = find_available_instances(
            self.instances, self.existing, _at(MONDAY, 10), _at(MONDAY, 12), 1, template=self.template
        )
        self.assertEqual(availability["availableCount"], 1)
        self.assertEqual([check["instanceCode"] for check in select_instances(availability, 1)], ["EXC-2"])
        conflicts = availability["availableInstances"][0]["conflicts"]
        self.assertEqual([booking.BookingID for booking in conflicts], [10])

    def test_inactive_instances_are_not_counted(self):
        instances = self.instances + [_instance(3, "EXC-3", status="maintenance")]
        availability = find_available_instances(instances, [], _at(MONDAY, 10), _at(MONDAY, 12), 3)
        self.assertEqual(availability["availableCount"], 2)
        self.assertLessEqual(availability["availableCount"], len(self.instances))

    def test_create_booking_assigns_free_instance(self):
        result = create_booking_with_instances(
            {
                "startTime": _at(MONDAY, 10),
                "endTime": _at(MONDAY, 12),
                "requestedCount": 1,
                "clientAccountID": 5,
                "clientUserID": 6,
            },
            self.template,
            self.instances,
            self.existing,
            now=NOW,
        )
        self.assertEqual(result["assignedInstances"], ["EXC-2"])
        self.assertEqual(len(result["bookings"]), 1)
        booking = result["bookings"][0]
        self.assertEqual(booking.MachineInstanceID, 2)
        self.assertEqual(booking.Status, "pending_renter_approval")
        self.assertEqual(json.loads(booking.MessagesJson), [])
        self.assertEqual(booking.Label, "Booking for Excavator")
        self.assertEqual(result["totalPrice"], 2 * 7500)

    def test_create_booking_shortfall_is_a_conflict(self):
        with self.assertRaises(BookingConflictError) as ctx:
            create_booking_with_instances(
                {
                    "startTime": _at(MONDAY, 10),
                    "endTime": _at(MONDAY, 12),
                    "requestedCount": 2,
                    "clientAccountID": 5,
                    "clientUserID": 6,
                },
                self.template,
                self.instances,
                self.existing,
                now=NOW,
            )
        self.assertEqual(ctx.exception.code, "CONFLICT")
        self.assertEqual(ctx.exception.available_count, 1)
        self.assertEqual(ctx.exception.requested_count, 2)

    def test_create_booking_rejects_invalid_request_before_allocation(self):
        with self.assertRaises(BookingValidationError) as ctx:
            create_booking_with_instances(
                {
                    "startTime": _at(MONDAY, 12),
                    "endTime": _at(MONDAY, 10),
                    "requestedCount": 101,
                    "clientAccountID": 5,
                    "clientUserID": 6,
                },
                self.template,
                self.instances,
                [],
                now=NOW,
            )
        self.assertEqual(ctx.exception.code, "BAD_REQUEST")
        self.assertEqual(len(ctx.exception.errors), 2)


class PricingAndValidationTests(unittest.TestCase):
    def test_price_rounds_partial_hours_up(self):
        start = _at(MONDAY, 8)
        end = start + timedelta(hours=25, minutes=30)
        self.assertEqual(calculate_booking_price(_template(7500), start, end), 195000)

    def test_price_is_zero_without_hourly_rate(self):
        self.assertEqual(calculate_booking_price(_template(0), _at(MONDAY, 8), _at(MONDAY, 9)), 0)

    def test_validation_messages(self):
        self.assertEqual(validate_booking_request(_at(MONDAY, 8), _at(MONDAY, 9), 1, now=NOW), [])
        errors = validate_booking_request(_at(MONDAY, 8), _at(MONDAY, 9), 0, now=MONDAY + timedelta(days=1))
        self.assertIn("Cannot book in the past", errors)
        self.assertIn("Must request at least 1 unit", errors)
        self.assertIn(
            "End time must be after start time",
            validate_booking_request(_at(MONDAY, 9), _at(MONDAY, 9), 1, now=NOW),
        )

    def test_free_cancellation_window(self):
        booking = _booking(1, 1, _at(MONDAY, 12), _at(MONDAY, 14))
        self.assertTrue(can_cancel_without_penalty(booking, 24, now=_at(MONDAY - timedelta(days=1), 12)))
        self.assertFalse(can_cancel_without_penalty(booking, 24, now=_at(MONDAY, 0)))


class StatusTransitionTests(unittest.TestCase):
    def test_only_listed_transitions_are_allowed(self):
        for role in ("renter", "client", "admin"):
            for current in BOOKING_STATUSES:
                for target in BOOKING_STATUSES:
                    expected = target in STATUS_TRANSITIONS.get(role, {}).get(current, set())
                    self.assertEqual(can_transition_status(current, target, role), expected, (role, current, target))

    def test_terminal_statuses_and_self_transitions(self):
        self.assertFalse(can_transition_status("rejected_by_renter", "approved_by_renter", "renter"))
        self.assertFalse(can_transition_status("canceled_by_client", "pending_renter_approval", "client"))
        self.assertFalse(can_transition_status("pending_renter_approval", "pending_renter_approval", "client"))
        self.assertFalse(can_transition_status("pending_renter_approval", "approved_by_renter", "client"))
        self.assertTrue(can_transition_status("sent_back_to_client", "pending_renter_approval", "client"))

    def test_rejected_transition_names_status_pair_and_role(self):
        booking = _booking(1, 1, _at(MONDAY, 9), _at(MONDAY, 10), status="pending_renter_approval")
        with self.assertRaises(InvalidStatusTransitionError) as ctx:
            apply_status_transition(booking, "approved_by_renter", "client")
        message = str(ctx.exception)
        self.assertIn("pending_renter_approval", message)
        self.assertIn("approved_by_renter", message)
        self.assertIn("client", message)
        self.assertEqual(booking.Status, "pending_renter_approval")

    def test_transition_with_note_appends_message(self):
        booking = _booking(1, 1, _at(MONDAY, 9), _at(MONDAY, 10), status="pending_renter_approval")
        apply_status_transition(booking, "sent_back_to_client", "renter", actor_user_id=3, note="Need site address")
        self.assertEqual(booking.Status, "sent_back_to_client")
        messages = json.loads(booking.MessagesJson)
        self.assertEqual(messages[0]["senderID"], 3)
        self.assertEqual(messages[0]["content"], "Status changed to sent_back_to_client: Need site address")

    def test_messages_and_helpers(self):
        booking = _booking(1, 1, _at(MONDAY, 9), _at(MONDAY, 10))
        add_booking_message(booking, 4, "hello", now=NOW)
        add_booking_message(booking, 5, "hi", now=NOW)
        self.assertEqual([m["content"] for m in json.loads(booking.MessagesJson)], ["hello", "hi"])
        self.assertEqual(format_booking_status("sent_back_to_client"), "Changes Requested")
        self.assertEqual(format_booking_status("unknown"), "unknown")
        grouped = group_bookings_by_template([booking, _booking(2, 1, _at(MONDAY, 11), _at(MONDAY, 12))])
        self.assertEqual(len(grouped[1]), 2)


if __name__ == "__main__":
    unittest.main()
