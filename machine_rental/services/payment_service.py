from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import MachineBooking, MachineTemplate, Payment
from services.booking_service import APPROVED_BY_RENTER, BookingError, calculate_booking_price

LOGGER = logging.getLogger("machine_rental.payments")

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_TRANSITIONS = {
    PAYMENT_PENDING: {PAYMENT_COMPLETED, PAYMENT_FAILED},
    PAYMENT_COMPLETED: {PAYMENT_REFUNDED},
    PAYMENT_FAILED: set(),
    PAYMENT_REFUNDED: set(),
}
DEFAULT_CURRENCY = "USD"
DEFAULT_PROVIDER = "stripe"


class PaymentStateError(BookingError):
    code = "BAD_REQUEST"


def create_payment_intent(db: Session, booking: MachineBooking, template: MachineTemplate) -> Payment:
    if booking.Status != APPROVED_BY_RENTER:
        raise PaymentStateError("Booking must be approved before payment")

    existing = db.execute(
        select(Payment)
        .where(Payment.BookingID == booking.BookingID)
        .where(Payment.Status.in_([PAYMENT_PENDING, PAYMENT_COMPLETED]))
        .order_by(Payment.PaymentID.desc())
    ).scalars().first()
    if existing and existing.Status == PAYMENT_COMPLETED:
        raise PaymentStateError("Booking is already paid")
    if existing:
        return existing

    now = datetime.now(timezone.utc)
    payment = Payment(
        BookingID=booking.BookingID,
        Provider=DEFAULT_PROVIDER,
        ExternalID=f"pi_{uuid.uuid4().hex[:24]}",
        AmountCents=calculate_booking_price(template, booking.StartTime, booking.EndTime),
        Currency=DEFAULT_CURRENCY,
        Status=PAYMENT_PENDING,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(payment)
    db.flush()
    booking.PaymentID = payment.PaymentID
    booking.UpdatedDate = now
    LOGGER.info("Payment intent %s created booking=%s amount=%s", payment.ExternalID, booking.BookingID, payment.AmountCents)
    return payment


def transition_payment(payment: Payment, target_status: str) -> Payment:
    current = payment.Status
    if target_status not in PAYMENT_TRANSITIONS.get(current, set()):
        LOGGER.warning("Rejected payment transition payment=%s %s -> %s", payment.PaymentID, current, target_status)
        raise PaymentStateError(f"Cannot move payment from {current} to {target_status}")
    payment.Status = target_status
    payment.UpdatedDate = datetime.now(timezone.utc)
    LOGGER.info("Payment %s moved %s -> %s", payment.PaymentID, current, target_status)
    return payment


def build_client_secret(payment: Payment) -> str:
    return f"{payment.ExternalID}_secret_{uuid.uuid4().hex[:16]}"


def serialize_payment(payment: Payment) -> dict:
    return {
        "paymentID": payment.PaymentID,
        "bookingID": payment.BookingID,
        "provider": payment.Provider,
        "externalID": payment.ExternalID,
        "amountCents": payment.AmountCents,
        "currency": payment.Currency,
        "status": payment.Status,
        "createdDate": payment.CreatedDate,
        "updatedDate": payment.UpdatedDate,
    }
