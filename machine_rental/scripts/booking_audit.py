#!/usr/bin/env python3
"""Booking integrity checks for MachineRental."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "BusinessAccounts",
    "AppUsers",
    "UserAccounts",
    "MachineTemplates",
    "MachineInstances",
    "MachineBookings",
    "Payments",
    "AuditLogs",
]

INACTIVE_STATUS_SQL = "('canceled_by_client', 'rejected_by_renter')"
BOOKING_STATUS_SQL = (
    "('pending_renter_approval', 'approved_by_renter', 'rejected_by_renter', "
    "'sent_back_to_client', 'canceled_by_client')"
)

INTEGRITY_QUERIES = {
    "bookings:overlapping_active_bookings": f"""
        SELECT COUNT(*)
        FROM MachineBookings a
        JOIN MachineBookings b
          ON b.MachineInstanceID = a.MachineInstanceID
         AND b.BookingID > a.BookingID
         AND a.StartTime < b.EndTime
         AND a.EndTime > b.StartTime
        WHERE a.Status NOT IN {INACTIVE_STATUS_SQL}
          AND b.Status NOT IN {INACTIVE_STATUS_SQL}
    """,
    "bookings:non_positive_duration": """
        SELECT COUNT(*) FROM MachineBookings WHERE StartTime >= EndTime
    """,
    "bookings:unknown_status": f"""
        SELECT COUNT(*) FROM MachineBookings WHERE Status NOT IN {BOOKING_STATUS_SQL}
    """,
    "bookings:template_mismatch": """
        SELECT COUNT(*)
        FROM MachineBookings mb
        JOIN MachineInstances mi ON mi.InstanceID = mb.MachineInstanceID
        WHERE mi.TemplateID <> mb.TemplateID
    """,
    "bookings:orphan_instance": """
        SELECT COUNT(*)
        FROM MachineBookings mb
        LEFT JOIN MachineInstances mi ON mi.InstanceID = mb.MachineInstanceID
        WHERE mi.InstanceID IS NULL
    """,
    "instances:orphan_template": """
        SELECT COUNT(*)
        FROM MachineInstances mi
        LEFT JOIN MachineTemplates mt ON mt.TemplateID = mi.TemplateID
        WHERE mt.TemplateID IS NULL
    """,
    "payments:orphan_booking": """
        SELECT COUNT(*)
        FROM Payments p
        LEFT JOIN MachineBookings mb ON mb.BookingID = p.BookingID
        WHERE mb.BookingID IS NULL
    """,
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    checks: list[CheckResult] = []
    for name, sql in INTEGRITY_QUERIES.items():
        if not {"MachineBookings", "MachineInstances", "MachineTemplates", "Payments"} <= present:
            checks.append(CheckResult(name, False, "tables missing"))
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="MachineRental booking audit")
    parser.add_argument("--db-url", default=os.environ.get("MACHINE_RENTAL_DB_URL", ""))
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("MACHINE_RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = run_existence_checks(engine)
    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", existence)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    return 0 if all(check.ok for check in existence + integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
