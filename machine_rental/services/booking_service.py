from __future__ import annotations

import json
import logging
import math
import threading
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import AuditLog, MachineBooking, MachineInstance, MachineTemplate
from services.availability_service import (
    ACTIVE_INSTANCE_STATUS,
    INACTIVE_BOOKING_STATUSES,
    as_utc,
    find_available_instances,
    select_instances,
)

LOGGER = logging.getLogger("machine_rental.bookings")

PENDING_RENTER_APPROVAL = "pending_renter_approval"
APPROVED_BY_RENTER = "approved_by_renter"
REJECTED_BY_RENTER = "rejected_by_renter"
SENT_BACK_TO_CLIENT = "sent_back_to_client"
CANCELED_BY_CLIENT = "canceled_by_client"

BOOKING_STATUSES = {
    PENDING_RENTER_APPROVAL,
    APPROVED_BY_RENTER,
    REJECTED_BY_RENTER,
    SENT_BACK_TO_CLIENT,
    CANCELED_BY_CLIENT,
}
TERMINAL_STATUSES = {REJECTED_BY_RENTER, CANCELED_BY_CLIENT}
STATUS_TRANSITIONS = {
    "renter": {
        PENDING_RENTER_APPROVAL: {APPROVED_BY_RENTER, REJECTED_BY_RENTER, SENT_BACK_TO_CLIENT},
        SENT_BACK_TO_CLIENT: {APPROVED_BY_RENTER, REJECTED_BY_RENTER},
    },
    "client": {
        PENDING_RENTER_APPROVAL: {CANCELED_BY_CLIENT},
        SENT_BACK_TO_CLIENT: {CANCELED_BY_CLIENT, PENDING_RENTER_APPROVAL},
        APPROVED_BY_RENTER: {CANCELED_BY_CLIENT},
    },
}
STATUS_LABELS = {
    PENDING_RENTER_APPROVAL: "Awaiting Approval",
    APPROVED_BY_RENTER: "Approved",
    REJECTED_BY_RENTER: "Rejected",
    SENT_BACK_TO_CLIENT: "Changes Requested",
    CANCELED_BY_CLIENT: "Cancelled",
}

MIN_REQUESTED_COUNT = 1
MAX_REQUESTED_COUNT = 100

_TEMPLATE_LOCKS_GUARD = threading.Lock()
_TEMPLATE_LOCKS: dict[int, threading.Lock] = {}


class BookingError(RuntimeError):
    code = "BAD_REQUEST"


class BookingValidationError(BookingError):
    code = "BAD_REQUEST"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(", ".join(self.errors) or "Invalid booking request")


class BookingConflictError(BookingError):
    code = "CONFLICT"

    def __init__(self, available_count: int, requested_count: int):
        self.available_count = available_count
        self.requested_count = requested_count
        super().__init__(f"Only {available_count} units available, but {requested_count} requested")


class BookingNotFoundError(BookingError):
    code = "NOT_FOUND"


class BookingAccessError(BookingError):
    code = "FORBIDDEN"


class InvalidStatusTransitionError(BookingError):
    code = "BAD_REQUEST"

    def __init__(self, current_status: str, new_status: str, role: str):
        self.current_status = current_status
        self.new_status = new_status
        self.role = role
        super().__init__(f"Cannot transition from {current_status} to {new_status} as {role}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_booking_request(
    start_time: datetime,
    end_time: datetime,
    requested_count: int,
    now: datetime | None = None,
) -> list[str]:
    errors: list[str] = []
    start_utc = as_utc(start_time)
    end_utc = as_utc(end_time)
    current = as_utc(now) if now else _utcnow()

    if start_utc >= end_utc:
        errors.append("End time must be after start time")
    if start_utc < current:
        errors.append("Cannot book in the past")
    if requested_count < MIN_REQUESTED_COUNT:
        errors.append("Must request at least 1 unit")
    if requested_count > MAX_REQUESTED_COUNT:
        errors.append(f"Cannot request more than {MAX_REQUESTED_COUNT} units at once")
    return errors


def calculate_booking_price(template: Any, start_time: datetime, end_time: datetime) -> int:
    price_per_hour = int(getattr(template, "PricePerHour", None) or 0)
    if price_per_hour <= 0:
        return 0
    duration_seconds = (as_utc(end_time) - as_utc(start_time)).total_seconds()
    duration_hours = math.ceil(duration_seconds / 3600)
    return duration_hours * price_per_hour


def load_messages(raw: Any) -> list[dict]:
    if not raw:
        return []
    if isinstance(raw, list):
        return list(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError, json.JSONDecodeError):
        return []
    return parsed if isinstance(parsed, list) else []


def add_booking_message(booking: Any, sender_id: int | str, content: str, now: datetime | None = None) -> list[dict]:
    messages = load_messages(booking.MessagesJson)
    messages.append(
        {
            "senderID": sender_id,
            "content": content,
            "ts": (now or _utcnow()).isoformat(),
        }
    )
    booking.MessagesJson = json.dumps(messages, ensure_ascii=True)
    return messages


def create_booking_with_instances(
    request: dict,
    template: MachineTemplate,
    instances: Iterable[MachineInstance],
    existing_bookings: Iterable[MachineBooking],
    now: datetime | None = None,
) -> dict:
    """Assign instances to a booking request and build the booking rows.

    ``request`` carries ``startTime``, ``endTime``, ``requestedCount``,
    ``clientAccountID``, ``clientUserID`` and an optional ``label``. Rows are
    returned unsaved; either every requested unit gets a row or a
    ``BookingError`` is raised.
    """
    start_time = request["startTime"]
    end_time = request["endTime"]
    requested_count = int(request["requestedCount"])

    errors = validate_booking_request(start_time, end_time, requested_count, now=now)
    if errors:
        raise BookingValidationError(errors)

    availability = find_available_instances(
        instances,
        existing_bookings,
        start_time,
        end_time,
        requested_count,
        template=template,
    )
    if availability["availableCount"] < requested_count:
        raise BookingConflictError(availability["availableCount"], requested_count)

    selected = select_instances(availability, requested_count)
    price_per_unit = calculate_booking_price(template, start_time, end_time)
    created_at = now or _utcnow()

    bookings = [
        MachineBooking(
            MachineInstanceID=check["instanceID"],
            TemplateID=template.TemplateID,
            ClientAccountID=request["clientAccountID"],
            ClientUserID=request["clientUserID"],
            Label=request.get("label") or f"Booking for {template.Name}",
            StartTime=as_utc(start_time),
            EndTime=as_utc(end_time),
            Status=PENDING_RENTER_APPROVAL,
            MessagesJson=json.dumps([]),
            CreatedDate=created_at,
            UpdatedDate=created_at,
        )
        for check in selected
    ]

    return {
        "bookings": bookings,
        "assignedInstances": [check["instanceCode"] for check in selected],
        "totalPrice": price_per_unit * requested_count,
    }


def _template_lock(template_id: int) -> threading.Lock:
    with _TEMPLATE_LOCKS_GUARD:
        lock = _TEMPLATE_LOCKS.get(template_id)
        if lock is None:
            lock = threading.Lock()
            _TEMPLATE_LOCKS[template_id] = lock
        return lock


def load_overlapping_bookings(
    db: Session,
    template_id: int,
    start_time: datetime,
    end_time: datetime,
) -> list[MachineBooking]:
    return db.execute(
        select(MachineBooking)
        .where(MachineBooking.TemplateID == template_id)
        .where(MachineBooking.Status.notin_(sorted(INACTIVE_BOOKING_STATUSES)))
        .where(MachineBooking.StartTime < as_utc(end_time))
        .where(MachineBooking.EndTime > as_utc(start_time))
    ).scalars().all()


def place_booking(
    db: Session,
    template_id: int,
    client_account_id: int,
    client_user_id: int,
    start_time: datetime,
    end_time: datetime,
    requested_count: int,
    label: str | None = None,
) -> dict:
    with _template_lock(int(template_id)):
        try:
            template = db.execute(
                select(MachineTemplate)
                .where(MachineTemplate.TemplateID == template_id)
                .with_for_update()
            ).scalars().first()
            if not template:
                raise BookingNotFoundError("Machine template not found")

            instances = db.execute(
                select(MachineInstance)
                .where(MachineInstance.TemplateID == template_id)
                .where(MachineInstance.Status == ACTIVE_INSTANCE_STATUS)
                .order_by(MachineInstance.InstanceID)
            ).scalars().all()
            if not instances:
                raise BookingNotFoundError("No available instances for this template")

            existing = load_overlapping_bookings(db, template_id, start_time, end_time)

            result = create_booking_with_instances(
                {
                    "startTime": start_time,
                    "endTime": end_time,
                    "requestedCount": requested_count,
                    "clientAccountID": client_account_id,
                    "clientUserID": client_user_id,
                    "label": label,
                },
                template,
                instances,
                existing,
            )
            for booking in result["bookings"]:
                db.add(booking)
            db.flush()
            for booking in result["bookings"]:
                log_audit(
                    db,
                    "Booking",
                    booking.BookingID,
                    "CreateBooking",
                    f"Instance {booking.MachineInstanceID} {booking.StartTime.isoformat()} -> {booking.EndTime.isoformat()}",
                    user_id=client_user_id,
                )
            db.commit()
        except BookingConflictError as exc:
            db.rollback()
            LOGGER.warning(
                "Booking conflict template=%s requested=%s available=%s",
                template_id,
                exc.requested_count,
                exc.available_count,
            )
            raise
        except Exception:
            db.rollback()
            raise

    LOGGER.info(
        "Booking created template=%s instances=%s total=%s",
        template_id,
        ",".join(result["assignedInstances"]),
        result["totalPrice"],
    )
    return result


def can_transition_status(current_status: str, new_status: str, role: str) -> bool:
    allowed = STATUS_TRANSITIONS.get(role, {}).get(current_status, set())
    return new_status in allowed


def apply_status_transition(
    booking: MachineBooking,
    new_status: str,
    role: str,
    actor_user_id: int | None = None,
    note: str | None = None,
) -> MachineBooking:
    current = booking.Status
    if not can_transition_status(current, new_status, role):
        LOGGER.warning(
            "Rejected status transition booking=%s %s -> %s role=%s",
            booking.BookingID,
            current,
            new_status,
            role,
        )
        raise InvalidStatusTransitionError(current, new_status, role)

    booking.Status = new_status
    booking.UpdatedDate = _utcnow()
    if note:
        add_booking_message(booking, actor_user_id or 0, f"Status changed to {new_status}: {note}")
    LOGGER.info("Booking %s moved %s -> %s by %s", booking.BookingID, current, new_status, role)
    return booking


def group_bookings_by_template(bookings: Iterable[Any]) -> dict[Any, list]:
    grouped: dict[Any, list] = {}
    for booking in bookings:
        grouped.setdefault(booking.TemplateID, []).append(booking)
    return grouped


def can_cancel_without_penalty(booking: Any, cancellation_hours: int = 24, now: datetime | None = None) -> bool:
    current = as_utc(now) if now else _utcnow()
    hours_until_start = (as_utc(booking.StartTime) - current).total_seconds() / 3600
    return hours_until_start >= cancellation_hours


def format_booking_status(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=_utcnow(),
        )
    )


def serialize_booking(booking: MachineBooking, cancellation_hours: int = 24) -> dict:
    payload = {
        "bookingID": booking.BookingID,
        "machineInstanceID": booking.MachineInstanceID,
        "templateID": booking.TemplateID,
        "clientAccountID": booking.ClientAccountID,
        "clientUserID": booking.ClientUserID,
        "label": booking.Label,
        "startTime": as_utc(booking.StartTime),
        "endTime": as_utc(booking.EndTime),
        "status": booking.Status,
        "statusLabel": format_booking_status(booking.Status),
        "messages": load_messages(booking.MessagesJson),
        "paymentID": booking.PaymentID,
        "createdDate": booking.CreatedDate,
        "updatedDate": booking.UpdatedDate,
    }
    if booking.Status not in TERMINAL_STATUSES:
        payload["freeCancellation"] = can_cancel_without_penalty(booking, cancellation_hours)
    if booking.Instance:
        payload["instanceCode"] = booking.Instance.InstanceCode
    if booking.Template:
        payload["templateName"] = booking.Template.Name
        payload["templateCode"] = booking.Template.Code
        payload["pricePerHour"] = booking.Template.PricePerHour
    return payload
