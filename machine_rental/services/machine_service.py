from __future__ import annotations

import json
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from models.rental_models import MachineInstance, MachineTemplate
from services.availability_service import load_availability


def generate_instance_codes(template_code: str, count: int, start: int = 1) -> list[str]:
    return [f"{template_code}-{number}" for number in range(start, start + max(0, int(count)))]


def _parse_seq(template_code: str, instance_code: str) -> Optional[int]:
    prefix = f"{template_code}-"
    if not instance_code or not instance_code.startswith(prefix):
        return None
    try:
        return int(instance_code[len(prefix):])
    except ValueError:
        return None


def generate_next_instance_number(db: Session, template: MachineTemplate) -> int:
    stmt = select(MachineInstance.InstanceCode).where(MachineInstance.TemplateID == template.TemplateID)
    existing = db.execute(stmt).scalars().all()
    max_seq = 0
    for code in existing:
        seq = _parse_seq(template.Code, code or "")
        if seq and seq > max_seq:
            max_seq = seq
    return max_seq + 1


def parse_tags(raw: str | None) -> list[int]:
    if not raw:
        return []
    tags: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit():
            tags.append(int(part))
    return tags


def dump_tags(tags: list[int] | None) -> str | None:
    if not tags:
        return None
    return ",".join(str(int(tag)) for tag in tags)


def tags_overlap_clause(tags: list[int]):
    """SQL clause matching templates carrying any of ``tags`` in their comma-separated Tags column."""
    wrapped = "," + MachineTemplate.Tags + ","
    return or_(*(wrapped.like(f"%,{int(tag)},%") for tag in tags))


def _from_json_dict(value: str | None) -> dict:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def serialize_template(template: MachineTemplate, stats: dict | None = None) -> dict:
    payload = {
        "templateID": template.TemplateID,
        "accountID": template.AccountID,
        "name": template.Name,
        "code": template.Code,
        "description": template.Description,
        "totalCount": template.TotalCount,
        "pricePerHour": template.PricePerHour,
        "availability": load_availability(template.AvailabilityJson),
        "specs": _from_json_dict(template.SpecsJson),
        "tags": parse_tags(template.Tags),
        "createdDate": template.CreatedDate,
        "updatedDate": template.UpdatedDate,
    }
    if stats is not None:
        payload["stats"] = stats
    return payload


def serialize_instance(instance: MachineInstance) -> dict:
    return {
        "instanceID": instance.InstanceID,
        "templateID": instance.TemplateID,
        "instanceCode": instance.InstanceCode,
        "status": instance.Status,
        "availability": load_availability(instance.AvailabilityJson) or None,
        "metadata": _from_json_dict(instance.MetadataJson),
        "createdDate": instance.CreatedDate,
        "updatedDate": instance.UpdatedDate,
    }
