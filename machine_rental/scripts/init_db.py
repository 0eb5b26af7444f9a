#!/usr/bin/env python3
"""Create the MachineRental tables and optionally seed a demo catalog."""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from models.rental_models import MachineInstance, MachineTemplate
from services.account_service import create_user, get_or_create_account, get_user_by_email
from services.availability_service import dump_availability, normalize_availability
from services.machine_service import generate_instance_codes


DEMO_EMAIL = "demo-renter@example.com"
DEMO_CLIENT_EMAIL = "demo-client@example.com"
DEMO_MACHINES = [
    {
        "name": "Excavator 20t",
        "code": "EXC20",
        "description": "Crawler excavator with 1.1 m3 bucket",
        "totalCount": 3,
        "pricePerHour": 7500,
        "specs": {"weightKg": 20000, "enginePowerKw": 110},
        "availability": {
            "base": {day: [{"start": "07:00", "end": "19:00"}] for day in ("mon", "tue", "wed", "thu", "fri")},
        },
    },
    {
        "name": "Scissor Lift 12m",
        "code": "LIFT12",
        "description": "Electric scissor lift, indoor use",
        "totalCount": 2,
        "pricePerHour": 2500,
        "specs": {"platformHeightM": 12},
        "availability": None,
    },
]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create MachineRental tables.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("MACHINE_RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to MACHINE_RENTAL_DB_URL env var.",
    )
    parser.add_argument("--seed-demo", action="store_true", help="Insert a demo renter with two machines and a demo client.")
    parser.add_argument("--demo-password", default="demo-password", help="Password for the demo users.")
    return parser


def _seed_demo(session: Session, password: str) -> int:
    user = get_user_by_email(session, DEMO_EMAIL)
    if not user:
        user = create_user(session, DEMO_EMAIL, password, "Demo Renter")
    account = get_or_create_account(session, user, "renter", "Demo Rentals")

    created = 0
    now = datetime.now(timezone.utc)
    for machine in DEMO_MACHINES:
        exists = session.execute(select(MachineTemplate.TemplateID).where(MachineTemplate.Code == machine["code"])).first()
        if exists:
            continue
        template = MachineTemplate(
            AccountID=account.AccountID,
            Name=machine["name"],
            Code=machine["code"],
            Description=machine["description"],
            TotalCount=machine["totalCount"],
            PricePerHour=machine["pricePerHour"],
            AvailabilityJson=dump_availability(normalize_availability(machine["availability"])),
            SpecsJson=json.dumps(machine["specs"], ensure_ascii=True),
            CreatedDate=now,
            UpdatedDate=now,
        )
        session.add(template)
        session.flush()
        for instance_code in generate_instance_codes(template.Code, template.TotalCount):
            session.add(
                MachineInstance(
                    TemplateID=template.TemplateID,
                    InstanceCode=instance_code,
                    Status="active",
                    CreatedDate=now,
                    UpdatedDate=now,
                )
            )
        created += 1
    client = get_user_by_email(session, DEMO_CLIENT_EMAIL)
    if not client:
        client = create_user(session, DEMO_CLIENT_EMAIL, password, "Demo Client")
    get_or_create_account(session, client, "client", "Demo Construction")
    return created


def main() -> int:
    args = _build_parser().parse_args()
    db_url = (args.db_url or "").strip()
    if not db_url:
        print("MACHINE_RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = create_engine(db_url, pool_pre_ping=True, future=True)
        Base.metadata.create_all(engine)
    except Exception as exc:
        print(f"Could not create tables: {exc}")
        return 3
    print(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")

    if args.seed_demo:
        with Session(engine) as session:
            try:
                created = _seed_demo(session, args.demo_password)
                session.commit()
            except ValueError as exc:
                session.rollback()
                print(f"Demo seed failed: {exc}")
                return 1
        print(f"Demo seed complete: {created} machine template(s) created for {DEMO_EMAIL}; client login {DEMO_CLIENT_EMAIL}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
