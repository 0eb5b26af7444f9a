from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Iterable

ACTIVE_INSTANCE_STATUS = "active"
INSTANCE_STATUSES = {"active", "maintenance", "retired"}
INACTIVE_BOOKING_STATUSES = {"canceled_by_client", "rejected_by_renter"}
WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def load_availability(raw: Any) -> dict:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def dump_availability(schedule: dict | None) -> str | None:
    if not schedule:
        return None
    return json.dumps(schedule, ensure_ascii=True, sort_keys=True)


def normalize_availability(schedule: dict | None) -> dict:
    """Drop malformed or empty weekday entries from a submitted schedule.

    Base weekdays with no valid slot are removed. Override dates keep an
    empty list, since an empty override is how a day is closed.
    """
    if not schedule:
        return {}

    result: dict[str, dict[str, list[dict[str, str]]]] = {}
    base = schedule.get("base") or {}
    normalized_base: dict[str, list[dict[str, str]]] = {}
    for key, slots in base.items():
        day_key = str(key).strip().lower()[:3]
        if day_key not in WEEKDAY_KEYS:
            continue
        valid = _valid_slots(slots)
        if valid:
            normalized_base[day_key] = valid
    if normalized_base:
        result["base"] = normalized_base

    overrides = schedule.get("overrides") or {}
    normalized_overrides: dict[str, list[dict[str, str]]] = {}
    for key, slots in overrides.items():
        try:
            date_key = date.fromisoformat(str(key).strip()).isoformat()
        except ValueError:
            continue
        normalized_overrides[date_key] = _valid_slots(slots)
    if normalized_overrides:
        result["overrides"] = normalized_overrides
    return result


def _valid_slots(slots: Iterable[dict] | None) -> list[dict[str, str]]:
    valid: list[dict[str, str]] = []
    for slot in slots or []:
        if not isinstance(slot, dict):
            continue
        start_minutes = slot_minutes(slot.get("start"))
        end_minutes = slot_minutes(slot.get("end"))
        if start_minutes is None or end_minutes is None or start_minutes >= end_minutes:
            continue
        valid.append({"start": str(slot["start"]), "end": str(slot["end"])})
    return valid


def slot_minutes(value: Any) -> int | None:
    """Return the UTC time-of-day in minutes for a slot boundary.

    Accepts ``HH:MM`` strings (``24:00`` closes a day), ISO-8601 datetimes
    and ``datetime`` objects. Anything else yields ``None``.
    """
    if isinstance(value, datetime):
        moment = as_utc(value)
        return moment.hour * 60 + moment.minute
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if "T" in raw or len(raw) > 8:
        try:
            moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        moment = as_utc(moment)
        return moment.hour * 60 + moment.minute

    parts = raw.split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
    except ValueError:
        return None
    if not 0 <= minutes < 60:
        return None
    if hours == 24 and minutes == 0:
        return 24 * 60
    if not 0 <= hours < 24:
        return None
    return hours * 60 + minutes


def _slots_contain(slots: list, start_time: datetime, end_time: datetime) -> bool:
    request_start = slot_minutes(start_time)
    request_end = slot_minutes(end_time)
    for slot in slots:
        if not isinstance(slot, dict):
            continue
        slot_start = slot_minutes(slot.get("start"))
        slot_end = slot_minutes(slot.get("end"))
        if slot_start is None or slot_end is None:
            continue
        if request_start >= slot_start and request_end <= slot_end:
            return True
    return False


def check_availability_schedule(availability: Any, start_time: datetime, end_time: datetime) -> bool:
    schedule = load_availability(availability)
    start_utc = as_utc(start_time)
    end_utc = as_utc(end_time)

    overrides = schedule.get("overrides")
    if isinstance(overrides, dict):
        date_key = start_utc.date().isoformat()
        if date_key in overrides:
            slots = overrides.get(date_key) or []
            if not slots:
                return False
            return _slots_contain(slots, start_utc, end_utc)

    base = schedule.get("base")
    if base and isinstance(base, dict):
        day_key = WEEKDAY_KEYS[start_utc.weekday()]
        slots = base.get(day_key) or []
        if not slots:
            return False
        return _slots_contain(slots, start_utc, end_utc)

    return True


def resolve_availability(template: Any, instance: Any) -> dict:
    instance_schedule = load_availability(getattr(instance, "AvailabilityJson", None))
    if instance_schedule:
        return instance_schedule
    if template is None:
        return {}
    return load_availability(getattr(template, "AvailabilityJson", None))


def find_booking_overlaps(bookings: Iterable[Any], start_time: datetime, end_time: datetime) -> list:
    start_utc = as_utc(start_time)
    end_utc = as_utc(end_time)
    overlaps = []
    for booking in bookings:
        if booking.Status in INACTIVE_BOOKING_STATUSES:
            continue
        if as_utc(booking.StartTime) < end_utc and as_utc(booking.EndTime) > start_utc:
            overlaps.append(booking)
    return overlaps


def check_instance_availability(
    instance: Any,
    bookings: Iterable[Any],
    start_time: datetime,
    end_time: datetime,
    template: Any = None,
) -> dict:
    conflicts = find_booking_overlaps(bookings, start_time, end_time)
    if conflicts:
        return {"available": False, "conflicts": conflicts}

    schedule = resolve_availability(template, instance)
    if not check_availability_schedule(schedule, start_time, end_time):
        return {"available": False, "conflicts": []}
    return {"available": True, "conflicts": []}


def find_available_instances(
    instances: Iterable[Any],
    bookings: Iterable[Any],
    start_time: datetime,
    end_time: datetime,
    requested_count: int,
    template: Any = None,
) -> dict:
    instance_list = list(instances)
    bookings_by_instance: dict[Any, list] = {}
    for booking in bookings:
        bookings_by_instance.setdefault(booking.MachineInstanceID, []).append(booking)

    checks: list[dict] = []
    for instance in instance_list:
        if instance.Status != ACTIVE_INSTANCE_STATUS:
            continue
        result = check_instance_availability(
            instance,
            bookings_by_instance.get(instance.InstanceID, []),
            start_time,
            end_time,
            template=template,
        )
        checks.append(
            {
                "instanceID": instance.InstanceID,
                "instanceCode": instance.InstanceCode,
                "isAvailable": result["available"],
                "conflicts": result["conflicts"],
            }
        )

    template_id = getattr(template, "TemplateID", None)
    if template_id is None and instance_list:
        template_id = instance_list[0].TemplateID

    return {
        "templateID": template_id,
        "requestedCount": requested_count,
        "availableCount": sum(1 for check in checks if check["isAvailable"]),
        "availableInstances": checks,
        "startTime": start_time,
        "endTime": end_time,
    }


def select_instances(availability: dict, requested_count: int) -> list[dict]:
    available = [check for check in availability["availableInstances"] if check["isAvailable"]]
    return available[: max(0, int(requested_count))]
