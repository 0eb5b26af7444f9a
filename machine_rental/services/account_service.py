from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import AppUser, BusinessAccount, MachineBooking, MachineTemplate, UserAccount
from services.booking_service import BookingAccessError


ACCOUNT_TYPES = {"renter", "client"}
ACCOUNT_ROLES = {"account_admin", "account_member"}
MIN_PASSWORD_LENGTH = 8


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def get_user_by_email(db: Session, email: str) -> AppUser | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.execute(select(AppUser).where(func.lower(AppUser.Email) == normalized)).scalars().first()


def create_user(db: Session, email: str, password: str, full_name: str) -> AppUser:
    normalized = normalize_email(email)
    if not normalized or "@" not in normalized:
        raise ValueError("A valid email address is required.")
    trimmed = (password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if get_user_by_email(db, normalized):
        raise ValueError("Email is already registered.")

    salt = secrets.token_hex(16)
    user = AppUser(
        Email=normalized,
        FullName=(full_name or "").strip() or normalized,
        PasswordSalt=salt,
        PasswordHash=_password_hash(trimmed, salt),
        PasswordUpdatedAt=int(time.time()),
        IsActive=True,
        CreatedDate=datetime.now(timezone.utc),
    )
    db.add(user)
    db.flush()
    return user


def verify_password(db: Session, email: str, password: str) -> AppUser | None:
    candidate = (password or "").strip()
    if not candidate:
        return None
    user = get_user_by_email(db, email)
    if not user or not user.IsActive:
        return None
    if not user.PasswordHash or not user.PasswordSalt:
        return None
    if not hmac.compare_digest(_password_hash(candidate, user.PasswordSalt), user.PasswordHash):
        return None
    return user


def get_or_create_account(
    db: Session,
    user: AppUser,
    account_type: str,
    name: str | None = None,
) -> BusinessAccount:
    if account_type not in ACCOUNT_TYPES:
        raise ValueError("accountType must be renter or client.")
    existing = db.execute(
        select(BusinessAccount)
        .join(UserAccount, UserAccount.AccountID == BusinessAccount.AccountID)
        .where(UserAccount.UserID == user.UserID)
        .where(BusinessAccount.Type == account_type)
        .order_by(BusinessAccount.AccountID)
    ).scalars().first()
    if existing:
        return existing

    default_name = f"{user.FullName}'s Rental Business" if account_type == "renter" else f"Client {user.FullName}"
    now = datetime.now(timezone.utc)
    account = BusinessAccount(
        Name=(name or "").strip() or default_name,
        Type=account_type,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(account)
    db.flush()
    db.add(
        UserAccount(
            UserID=user.UserID,
            AccountID=account.AccountID,
            Role="account_admin" if account_type == "renter" else "account_member",
            CreatedDate=now,
        )
    )
    db.flush()
    return account


def list_user_accounts(db: Session, user_id: int) -> list[dict[str, Any]]:
    rows = db.execute(
        select(BusinessAccount.AccountID, BusinessAccount.Name, BusinessAccount.Type, UserAccount.Role)
        .join(UserAccount, UserAccount.AccountID == BusinessAccount.AccountID)
        .where(UserAccount.UserID == user_id)
        .order_by(BusinessAccount.AccountID)
    ).all()
    return [
        {"accountID": account_id, "name": name, "type": account_type, "role": role}
        for account_id, name, account_type, role in rows
    ]


def account_ids_by_type(db: Session, user_id: int) -> dict[str, list[int]]:
    grouped: dict[str, list[int]] = {account_type: [] for account_type in ACCOUNT_TYPES}
    for account in list_user_accounts(db, user_id):
        grouped.setdefault(account["type"], []).append(account["accountID"])
    return grouped


def require_client_account(db: Session, user_id: int) -> int:
    """Return the user's first client account ID; bookings are never placed on a renter account."""
    client_ids = account_ids_by_type(db, user_id).get("client") or []
    if not client_ids:
        raise BookingAccessError("Must have a client account to create bookings")
    return client_ids[0]


def resolve_booking_role(db: Session, user_id: int, booking: MachineBooking) -> str | None:
    accounts = account_ids_by_type(db, user_id)
    all_ids = set(accounts.get("client", [])) | set(accounts.get("renter", []))
    if booking.ClientAccountID in all_ids:
        return "client"
    template = db.get(MachineTemplate, booking.TemplateID)
    if template and template.AccountID in all_ids:
        return "renter"
    return None


def serialize_user(user: AppUser, accounts: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    return {
        "userID": user.UserID,
        "email": user.Email,
        "fullName": user.FullName,
        "isActive": bool(user.IsActive),
        "accounts": accounts or [],
    }


def require_booking_role(db: Session, user_id: int, booking: MachineBooking, action: str = "access") -> str:
    role = resolve_booking_role(db, user_id, booking)
    if not role:
        raise BookingAccessError(f"Not authorized to {action} this booking")
    return role
