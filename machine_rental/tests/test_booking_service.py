import json
import sys
import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from models.rental_models import AuditLog, MachineBooking, MachineInstance, MachineTemplate
from scripts.booking_audit import run_existence_checks, run_integrity_checks
from services.account_service import (
    account_ids_by_type,
    create_user,
    get_or_create_account,
    require_client_account,
    resolve_booking_role,
    verify_password,
)
from services.booking_service import (
    BookingAccessError,
    BookingConflictError,
    BookingNotFoundError,
    BookingValidationError,
    apply_status_transition,
    place_booking,
    serialize_booking,
)
from services.machine_service import generate_instance_codes, generate_next_instance_number
from services.payment_service import (
    PaymentStateError,
    create_payment_intent,
    transition_payment,
)


# 2030-01-07 is a Monday.
WINDOW_START = datetime(2030, 1, 7, 10, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2030, 1, 7, 12, 0, tzinfo=timezone.utc)


class CatalogSeedMixin:
    def _seed(self):
        self.owner = create_user(self.db, "owner@example.com", "owner-password", "Olga Owner")
        self.renter_account = get_or_create_account(self.db, self.owner, "renter")
        self.client_user = create_user(self.db, "client@example.com", "client-password", "Carl Client")
        self.client_account = get_or_create_account(self.db, self.client_user, "client")

        self.template = MachineTemplate(
            AccountID=self.renter_account.AccountID,
            Name="Excavator",
            Code="EXC",
            TotalCount=2,
            PricePerHour=7500,
        )
        self.db.add(self.template)
        self.db.flush()
        self.instances = []
        for code in generate_instance_codes("EXC", 2):
            instance = MachineInstance(TemplateID=self.template.TemplateID, InstanceCode=code, Status="active")
            self.db.add(instance)
            self.instances.append(instance)
        self.db.flush()
        self.db.add(
            MachineBooking(
                MachineInstanceID=self.instances[0].InstanceID,
                TemplateID=self.template.TemplateID,
                ClientAccountID=self.client_account.AccountID,
                ClientUserID=self.client_user.UserID,
                StartTime=datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc),
                EndTime=datetime(2030, 1, 7, 17, 0, tzinfo=timezone.utc),
                Status="approved_by_renter",
                MessagesJson="[]",
            )
        )
        self.db.commit()

    def _booking_count(self) -> int:
        return self.db.execute(select(func.count(MachineBooking.BookingID))).scalar()


class BookingServiceTests(CatalogSeedMixin, unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False, future=True)
        self.db = self.SessionLocal()
        self._seed()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _place(self, count: int = 1, template_id: int | None = None):
        return place_booking(
            self.db,
            template_id=template_id or self.template.TemplateID,
            client_account_id=self.client_account.AccountID,
            client_user_id=self.client_user.UserID,
            start_time=WINDOW_START,
            end_time=WINDOW_END,
            requested_count=count,
            label="Trench work",
        )

    def test_place_booking_assigns_free_instance_and_persists(self):
        result = self._place()
        self.assertEqual(result["assignedInstances"], ["EXC-2"])
        self.assertEqual(result["totalPrice"], 15000)
        self.assertEqual(self._booking_count(), 2)

        booking = result["bookings"][0]
        self.assertIsNotNone(booking.BookingID)
        self.assertEqual(booking.Status, "pending_renter_approval")
        payload = serialize_booking(booking)
        self.assertEqual(payload["instanceCode"], "EXC-2")
        self.assertEqual(payload["templateCode"], "EXC")
        self.assertEqual(payload["statusLabel"], "Awaiting Approval")

        actions = self.db.execute(select(AuditLog.Action).where(AuditLog.EntityType == "Booking")).scalars().all()
        self.assertEqual(actions, ["CreateBooking"])

    def test_second_booking_for_same_window_conflicts(self):
        self._place()
        with self.assertRaises(BookingConflictError):
            self._place()
        self.assertEqual(self._booking_count(), 2)

    def test_shortfall_creates_nothing(self):
        with self.assertRaises(BookingConflictError) as ctx:
            self._place(count=2)
        self.assertEqual(ctx.exception.available_count, 1)
        self.assertEqual(self._booking_count(), 1)

    def test_cancelled_booking_frees_the_instance(self):
        existing = self.db.execute(select(MachineBooking)).scalars().first()
        existing.Status = "canceled_by_client"
        self.db.commit()
        result = self._place(count=2)
        self.assertEqual(result["assignedInstances"], ["EXC-1", "EXC-2"])

    def test_retired_instances_are_not_allocated(self):
        self.instances[1].Status = "retired"
        self.db.commit()
        with self.assertRaises(BookingConflictError):
            self._place()

    def test_unknown_template_and_empty_template_are_not_found(self):
        with self.assertRaises(BookingNotFoundError):
            self._place(template_id=999)

        empty = MachineTemplate(AccountID=self.renter_account.AccountID, Name="Crane", Code="CRN", TotalCount=1)
        self.db.add(empty)
        self.db.commit()
        with self.assertRaises(BookingNotFoundError) as ctx:
            self._place(template_id=empty.TemplateID)
        self.assertEqual(ctx.exception.code, "NOT_FOUND")

    def test_past_booking_is_rejected(self):
        with self.assertRaises(BookingValidationError):
            place_booking(
                self.db,
                template_id=self.template.TemplateID,
                client_account_id=self.client_account.AccountID,
                client_user_id=self.client_user.UserID,
                start_time=datetime(2020, 1, 1, 10, tzinfo=timezone.utc),
                end_time=datetime(2020, 1, 1, 12, tzinfo=timezone.utc),
                requested_count=1,
            )
        self.assertEqual(self._booking_count(), 1)

    def test_instance_schedule_blocks_allocation(self):
        self.instances[1].AvailabilityJson = json.dumps({"overrides": {"2030-01-07": []}})
        self.db.commit()
        with self.assertRaises(BookingConflictError):
            self._place()

    def test_booking_roles(self):
        booking = self.db.execute(select(MachineBooking)).scalars().first()
        self.assertEqual(resolve_booking_role(self.db, self.client_user.UserID, booking), "client")
        self.assertEqual(resolve_booking_role(self.db, self.owner.UserID, booking), "renter")
        stranger = create_user(self.db, "stranger@example.com", "stranger-password", "Sam")
        self.assertIsNone(resolve_booking_role(self.db, stranger.UserID, booking))

    def test_booking_needs_a_client_account(self):
        self.assertEqual(require_client_account(self.db, self.client_user.UserID), self.client_account.AccountID)
        with self.assertRaises(BookingAccessError):
            require_client_account(self.db, self.owner.UserID)

    def test_accounts_and_passwords(self):
        with self.assertRaises(ValueError):
            create_user(self.db, "OWNER@example.com", "another-password", "Dup")
        with self.assertRaises(ValueError):
            create_user(self.db, "short@example.com", "short", "Short")
        self.assertIsNotNone(verify_password(self.db, "Owner@Example.com", "owner-password"))
        self.assertIsNone(verify_password(self.db, "owner@example.com", "wrong-password"))
        self.assertEqual(get_or_create_account(self.db, self.owner, "renter").AccountID, self.renter_account.AccountID)
        self.assertEqual(account_ids_by_type(self.db, self.owner.UserID)["renter"], [self.renter_account.AccountID])

    def test_next_instance_number_follows_highest_sequence(self):
        self.assertEqual(generate_next_instance_number(self.db, self.template), 3)

    def test_payment_lifecycle(self):
        booking = self._place()["bookings"][0]
        with self.assertRaises(PaymentStateError):
            create_payment_intent(self.db, booking, self.template)

        apply_status_transition(booking, "approved_by_renter", "renter")
        payment = create_payment_intent(self.db, booking, self.template)
        self.db.commit()
        self.assertEqual(payment.AmountCents, 15000)
        self.assertEqual(payment.Status, "pending")
        self.assertTrue(payment.ExternalID.startswith("pi_"))
        self.assertEqual(booking.PaymentID, payment.PaymentID)
        self.assertEqual(create_payment_intent(self.db, booking, self.template).PaymentID, payment.PaymentID)

        with self.assertRaises(PaymentStateError):
            transition_payment(payment, "refunded")
        transition_payment(payment, "completed")
        with self.assertRaises(PaymentStateError):
            create_payment_intent(self.db, booking, self.template)
        transition_payment(payment, "refunded")
        self.assertEqual(payment.Status, "refunded")

    def test_audit_script_reports_clean_and_overlapping_data(self):
        self.assertTrue(all(check.ok for check in run_existence_checks(self.engine)))
        self.assertTrue(all(check.ok for check in run_integrity_checks(self.engine)))

        self.db.add(
            MachineBooking(
                MachineInstanceID=self.instances[0].InstanceID,
                TemplateID=self.template.TemplateID,
                ClientAccountID=self.client_account.AccountID,
                ClientUserID=self.client_user.UserID,
                StartTime=datetime(2030, 1, 7, 16, 0, tzinfo=timezone.utc),
                EndTime=datetime(2030, 1, 7, 18, 0, tzinfo=timezone.utc),
                Status="pending_renter_approval",
            )
        )
        self.db.commit()
        failed = [check.name for check in run_integrity_checks(self.engine) if not check.ok]
        self.assertEqual(failed, ["bookings:overlapping_active_bookings"])


class ConcurrentPlacementTests(CatalogSeedMixin, unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(self.tmpdir.name) / "machine_rental.db"
        self.engine = create_engine(
            f"sqlite+pysqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            future=True,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False, future=True)
        self.db = self.SessionLocal()
        self._seed()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()
        self.tmpdir.cleanup()

    def test_parallel_requests_for_last_instance_allocate_once(self):
        barrier = threading.Barrier(2)
        outcomes = []

        def _attempt(label: str):
            with self.SessionLocal() as db:
                barrier.wait(timeout=10)
                try:
                    result = place_booking(
                        db,
                        template_id=self.template.TemplateID,
                        client_account_id=self.client_account.AccountID,
                        client_user_id=self.client_user.UserID,
                        start_time=WINDOW_START,
                        end_time=WINDOW_END,
                        requested_count=1,
                        label=label,
                    )
                    outcomes.append(("booked", result["assignedInstances"]))
                except BookingConflictError as exc:
                    outcomes.append(("conflict", exc.available_count))

        threads = [threading.Thread(target=_attempt, args=(f"Crew {n}",)) for n in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(outcomes), [("booked", ["EXC-2"]), ("conflict", 0)])
        self.assertEqual(self._booking_count(), 2)
        self.assertTrue(all(check.ok for check in run_integrity_checks(self.engine)))


if __name__ == "__main__":
    unittest.main()
