import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Literal

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy import func, or_, select, text
from sqlalchemy.orm import Session, selectinload
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from db.deps import get_db
from models.rental_models import AppUser, BusinessAccount, MachineBooking, MachineInstance, MachineTemplate, Payment
from schemas.auth import AuthLoginRequest, AuthRegisterRequest
from schemas.bookings import (
    BookingDecisionDto,
    BookingStatusLiteral,
    CancelBookingDto,
    ConfirmPaymentDto,
    CreateBookingDto,
    CreatePaymentIntentDto,
    SendMessageDto,
    UpdateBookingStatusDto,
)
from schemas.machines import CreateInstanceDto, CreateMachineDto, UpdateInstanceDto, UpdateMachineDto
from services.account_service import (
    account_ids_by_type,
    create_user,
    get_or_create_account,
    list_user_accounts,
    require_booking_role,
    require_client_account,
    resolve_booking_role,
    serialize_user,
    verify_password,
)
from services.availability_service import (
    ACTIVE_INSTANCE_STATUS,
    INACTIVE_BOOKING_STATUSES,
    as_utc,
    dump_availability,
    find_available_instances,
    load_availability,
    normalize_availability,
)
from services.booking_service import (
    APPROVED_BY_RENTER,
    CANCELED_BY_CLIENT,
    PENDING_RENTER_APPROVAL,
    REJECTED_BY_RENTER,
    SENT_BACK_TO_CLIENT,
    BookingError,
    add_booking_message,
    apply_status_transition,
    calculate_booking_price,
    load_overlapping_bookings,
    log_audit,
    place_booking,
    serialize_booking,
)
from services.machine_service import (
    dump_tags,
    generate_instance_codes,
    generate_next_instance_number,
    serialize_instance,
    serialize_template,
    tags_overlap_clause,
)
from services.payment_service import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    build_client_secret,
    create_payment_intent,
    serialize_payment,
    transition_payment,
)
from services.session_service import create_session, get_session, remove_session

app = FastAPI(title="Machine Rental")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="machine_rental_session",
    same_site="lax",
    https_only=False,
)

AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_IP = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_IP") or "50")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")
FREE_CANCELLATION_HOURS = int(os.environ.get("FREE_CANCELLATION_HOURS") or "24")
AUTH_LOGGER = logging.getLogger("machine_rental.auth")
BOOKING_LOGGER = logging.getLogger("machine_rental.bookings")
_AUTH_GUARD_LOCK = threading.Lock()
_AUTH_ATTEMPTS_BY_IP: dict[str, list[float]] = {}
_AUTH_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_AUTH_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}

ERROR_STATUS_CODES = {
    "BAD_REQUEST": 400,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
}
OWNER_DECISIONS = {
    "approve": APPROVED_BY_RENTER,
    "reject": REJECTED_BY_RENTER,
    "send-back": SENT_BACK_TO_CLIENT,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _booking_http_error(exc: BookingError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS_CODES.get(exc.code, 400), detail=str(exc))


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _check_login_guard(client_ip: str, account_key: str) -> int | None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        lockout_until = _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until and lockout_until <= now_ts:
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)

        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts

        if len(ip_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_IP, 1):
            return max(1, int((ip_attempts[0] + AUTH_ATTEMPT_WINDOW_SECONDS) - now_ts))
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)
            return max(AUTH_LOCKOUT_SECONDS, 1)
    return None


def _record_login_failure(client_ip: str, account_key: str) -> None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        ip_attempts.append(now_ts)
        account_attempts.append(now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def _record_login_success(account_key: str) -> None:
    with _AUTH_GUARD_LOCK:
        _AUTH_ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict):
        expires_at = float(session_from_cookie.get("expiresAt") or 0.0)
        if expires_at > time.time():
            return dict(session_from_cookie)
        request.session.pop("user", None)
    return None


def _require_user(db: Session, request: Request, session_token: str | None) -> AppUser:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    user = db.get(AppUser, int(session.get("userID") or 0))
    if not user or not user.IsActive:
        request.session.pop("user", None)
        raise HTTPException(status_code=401, detail="Not logged in.")
    return user


def _start_session(request: Request, db: Session, user: AppUser) -> dict:
    token = create_session({"userID": user.UserID, "email": user.Email})
    session_payload = get_session(token) or {}
    request.session["user"] = session_payload
    return {
        "sessionToken": token,
        "user": serialize_user(user, list_user_accounts(db, user.UserID)),
    }


def _get_template_or_404(db: Session, template_id: int) -> MachineTemplate:
    template = db.get(MachineTemplate, template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Machine template not found")
    return template


def _get_owned_template(db: Session, user: AppUser, template_id: int) -> MachineTemplate:
    template = _get_template_or_404(db, template_id)
    renter_ids = account_ids_by_type(db, user.UserID).get("renter", [])
    if template.AccountID not in renter_ids:
        raise HTTPException(status_code=403, detail="Not authorized to manage this machine")
    return template


def _load_booking_or_404(db: Session, booking_id: int) -> MachineBooking:
    stmt = (
        select(MachineBooking)
        .options(selectinload(MachineBooking.Instance))
        .options(selectinload(MachineBooking.Template))
        .where(MachineBooking.BookingID == booking_id)
    )
    booking = db.execute(stmt).scalars().first()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def _require_booking_role(db: Session, user: AppUser, booking: MachineBooking, action: str) -> str:
    try:
        return require_booking_role(db, user.UserID, booking, action)
    except BookingError as exc:
        raise _booking_http_error(exc) from exc


def _validate_window(start_time: datetime, end_time: datetime) -> None:
    if as_utc(end_time) <= as_utc(start_time):
        raise HTTPException(status_code=400, detail="endTime must be after startTime.")


def _active_instances(db: Session, template_id: int) -> list[MachineInstance]:
    return db.execute(
        select(MachineInstance)
        .where(MachineInstance.TemplateID == template_id)
        .where(MachineInstance.Status == ACTIVE_INSTANCE_STATUS)
        .order_by(MachineInstance.InstanceID)
    ).scalars().all()


def _serialize_conflict(booking: MachineBooking) -> dict:
    return {
        "bookingID": booking.BookingID,
        "startTime": as_utc(booking.StartTime),
        "endTime": as_utc(booking.EndTime),
        "status": booking.Status,
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/register")
def auth_register(payload: AuthRegisterRequest, request: Request, db: Session = Depends(get_db)):
    try:
        user = create_user(db, payload.email, payload.password, payload.fullName)
        account = get_or_create_account(db, user, payload.accountType, payload.accountName)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "User", user.UserID, "Register", f"accountType={account.Type} accountID={account.AccountID}", user_id=user.UserID)
    db.commit()
    AUTH_LOGGER.info("Registered user_id=%s account_type=%s", user.UserID, account.Type)
    return _start_session(request, db, user)


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        AUTH_LOGGER.warning("Login rejected ip=%s reason=invalid_payload", client_ip)
        raise HTTPException(status_code=400, detail="Invalid login request.")

    account_key = f"email:{parsed.email.strip().lower()}"
    retry_after = _check_login_guard(client_ip, account_key)
    if retry_after:
        AUTH_LOGGER.warning("Login throttled ip=%s key=%s retry_after=%s", client_ip, account_key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts. Try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    user = verify_password(db, parsed.email, parsed.password)
    if not user:
        _record_login_failure(client_ip, account_key)
        AUTH_LOGGER.warning("Login failed ip=%s key=%s reason=invalid_credentials", client_ip, account_key)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    _record_login_success(account_key)
    user.LastLogin = _utcnow()
    log_audit(db, "User", user.UserID, "Login", f"ip={client_ip}", user_id=user.UserID)
    db.commit()
    AUTH_LOGGER.info("Login success ip=%s key=%s user_id=%s", client_ip, account_key, user.UserID)
    return _start_session(request, db, user)


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    remove_session(x_session_token)
    request.session.pop("user", None)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    return {"user": serialize_user(user, list_user_accounts(db, user.UserID))}


def _active_counts_subquery():
    return (
        select(
            MachineInstance.TemplateID.label("TemplateID"),
            func.count(MachineInstance.InstanceID).label("ActiveCount"),
        )
        .where(MachineInstance.Status == ACTIVE_INSTANCE_STATUS)
        .group_by(MachineInstance.TemplateID)
        .subquery()
    )


@app.get("/api/machines")
def list_machines(
    q: str = Query("", alias="q"),
    min_price: int | None = Query(None, alias="minPrice", ge=0),
    max_price: int | None = Query(None, alias="maxPrice", ge=0),
    tags: list[int] | None = Query(None),
    sort_by: Literal["name", "price", "availability"] = Query("name", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("asc", alias="sortOrder"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    active_counts = _active_counts_subquery()
    stmt = (
        select(MachineTemplate, active_counts.c.ActiveCount, BusinessAccount.Name)
        .join(active_counts, active_counts.c.TemplateID == MachineTemplate.TemplateID)
        .join(BusinessAccount, BusinessAccount.AccountID == MachineTemplate.AccountID)
    )
    query = (q or "").strip()
    if query:
        pattern = f"%{query}%"
        stmt = stmt.where(
            or_(
                MachineTemplate.Name.ilike(pattern),
                MachineTemplate.Code.ilike(pattern),
                MachineTemplate.Description.ilike(pattern),
            )
        )
    if min_price is not None:
        stmt = stmt.where(MachineTemplate.PricePerHour >= min_price)
    if max_price is not None:
        stmt = stmt.where(MachineTemplate.PricePerHour <= max_price)
    if tags:
        stmt = stmt.where(tags_overlap_clause(tags))

    if sort_by == "availability":
        # Most available first regardless of sortOrder.
        ordering = [active_counts.c.ActiveCount.desc(), MachineTemplate.Name]
    else:
        column = MachineTemplate.PricePerHour if sort_by == "price" else MachineTemplate.Name
        ordering = [column.desc() if sort_order == "desc" else column.asc()]
    rows = db.execute(stmt.order_by(*ordering, MachineTemplate.TemplateID).limit(limit).offset(offset)).all()

    payloads = []
    for template, active_count, owner_name in rows:
        payload = serialize_template(template)
        payload["activeInstanceCount"] = active_count
        payload["ownerName"] = owner_name
        payloads.append(payload)
    return payloads


@app.get("/api/machines/featured")
def list_featured_machines(limit: int = Query(6, ge=1, le=20), db: Session = Depends(get_db)):
    active_counts = _active_counts_subquery()
    booking_counts = (
        select(
            MachineBooking.TemplateID.label("TemplateID"),
            func.count(MachineBooking.BookingID).label("BookingCount"),
        )
        .group_by(MachineBooking.TemplateID)
        .subquery()
    )
    popularity = func.coalesce(booking_counts.c.BookingCount, 0)
    rows = db.execute(
        select(MachineTemplate, active_counts.c.ActiveCount, popularity)
        .join(active_counts, active_counts.c.TemplateID == MachineTemplate.TemplateID)
        .outerjoin(booking_counts, booking_counts.c.TemplateID == MachineTemplate.TemplateID)
        .order_by(popularity.desc(), MachineTemplate.Name, MachineTemplate.TemplateID)
        .limit(limit)
    ).all()
    payloads = []
    for template, active_count, booking_count in rows:
        payload = serialize_template(template)
        payload["activeInstanceCount"] = active_count
        payload["popularity"] = int(booking_count or 0)
        payloads.append(payload)
    return payloads


@app.get("/api/machines/{template_id}")
def get_machine(template_id: int, db: Session = Depends(get_db)):
    template = _get_template_or_404(db, template_id)
    instances = db.execute(
        select(MachineInstance)
        .where(MachineInstance.TemplateID == template_id)
        .order_by(MachineInstance.InstanceID)
    ).scalars().all()
    payload = serialize_template(template)
    payload["activeInstanceCount"] = sum(1 for instance in instances if instance.Status == ACTIVE_INSTANCE_STATUS)
    payload["instances"] = [
        {"instanceID": instance.InstanceID, "instanceCode": instance.InstanceCode, "status": instance.Status}
        for instance in instances
    ]
    return payload


@app.get("/api/availability/check")
def check_availability(
    template_id: int = Query(..., alias="templateID"),
    start_time: datetime = Query(..., alias="startTime"),
    end_time: datetime = Query(..., alias="endTime"),
    requested_count: int = Query(1, ge=1, alias="requestedCount"),
    db: Session = Depends(get_db),
):
    _validate_window(start_time, end_time)
    template = _get_template_or_404(db, template_id)
    instances = _active_instances(db, template_id)
    if not instances:
        return {
            "templateID": template_id,
            "templateName": template.Name,
            "requestedCount": requested_count,
            "availableCount": 0,
            "isAvailable": False,
            "availableInstances": [],
            "message": "No active instances available",
        }

    existing = load_overlapping_bookings(db, template_id, start_time, end_time)
    availability = find_available_instances(instances, existing, start_time, end_time, requested_count, template=template)
    is_available = availability["availableCount"] >= requested_count
    return {
        "templateID": template_id,
        "templateName": template.Name,
        "requestedCount": requested_count,
        "availableCount": availability["availableCount"],
        "isAvailable": is_available,
        "availableInstances": [
            {"instanceID": check["instanceID"], "instanceCode": check["instanceCode"]}
            for check in availability["availableInstances"]
            if check["isAvailable"]
        ],
        "estimatedPrice": calculate_booking_price(template, start_time, end_time) * requested_count,
        "message": (
            f"{availability['availableCount']} units available"
            if is_available
            else f"Only {availability['availableCount']} of {requested_count} units available"
        ),
    }


@app.get("/api/availability/schedule/{template_id}")
def get_template_schedule(template_id: int, db: Session = Depends(get_db)):
    template = _get_template_or_404(db, template_id)
    schedule = load_availability(template.AvailabilityJson)
    return {
        "templateID": template.TemplateID,
        "templateName": template.Name,
        "availability": {
            "base": schedule.get("base") or {},
            "overrides": schedule.get("overrides") or {},
        },
    }


@app.get("/api/availability/instances")
def get_available_instances(
    template_id: int = Query(..., alias="templateID"),
    start_time: datetime = Query(..., alias="startTime"),
    end_time: datetime = Query(..., alias="endTime"),
    db: Session = Depends(get_db),
):
    _validate_window(start_time, end_time)
    template = _get_template_or_404(db, template_id)
    instances = _active_instances(db, template_id)
    if not instances:
        return {
            "templateID": template_id,
            "templateName": template.Name,
            "totalInstances": 0,
            "availableCount": 0,
            "instances": [],
        }

    existing = load_overlapping_bookings(db, template_id, start_time, end_time)
    availability = find_available_instances(instances, existing, start_time, end_time, len(instances), template=template)
    checks = {check["instanceID"]: check for check in availability["availableInstances"]}
    details = []
    for instance in instances:
        check = checks.get(instance.InstanceID) or {}
        details.append(
            {
                "instanceID": instance.InstanceID,
                "instanceCode": instance.InstanceCode,
                "status": instance.Status,
                "isAvailable": bool(check.get("isAvailable")),
                "availability": load_availability(instance.AvailabilityJson) or None,
                "conflicts": [_serialize_conflict(conflict) for conflict in check.get("conflicts") or []],
            }
        )
    return {
        "templateID": template_id,
        "templateName": template.Name,
        "totalInstances": len(instances),
        "availableCount": availability["availableCount"],
        "instances": details,
    }


@app.get("/api/availability/calendar")
def get_calendar_view(
    template_id: int = Query(..., alias="templateID"),
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    db: Session = Depends(get_db),
):
    _validate_window(start_date, end_date)
    template = _get_template_or_404(db, template_id)
    rows = db.execute(
        select(MachineBooking, MachineInstance.InstanceCode)
        .join(MachineInstance, MachineInstance.InstanceID == MachineBooking.MachineInstanceID)
        .where(MachineBooking.TemplateID == template_id)
        .where(MachineBooking.Status.notin_(sorted(INACTIVE_BOOKING_STATUSES)))
        .where(MachineBooking.StartTime < as_utc(end_date))
        .where(MachineBooking.EndTime > as_utc(start_date))
        .order_by(MachineBooking.StartTime)
    ).all()

    bookings_by_date: dict[str, list[dict]] = {}
    for booking, instance_code in rows:
        date_key = as_utc(booking.StartTime).date().isoformat()
        bookings_by_date.setdefault(date_key, []).append(
            {
                "instanceCode": instance_code,
                "startTime": as_utc(booking.StartTime),
                "endTime": as_utc(booking.EndTime),
                "status": booking.Status,
            }
        )
    return {
        "templateID": template.TemplateID,
        "templateName": template.Name,
        "totalUnits": template.TotalCount,
        "dateRange": {"start": start_date, "end": end_date},
        "bookingsByDate": bookings_by_date,
        "totalBookings": len(rows),
    }


@app.post("/api/bookings")
def create_booking(
    request: Request,
    payload: CreateBookingDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    try:
        client_account_id = require_client_account(db, user.UserID)
        result = place_booking(
            db,
            template_id=payload.templateID,
            client_account_id=client_account_id,
            client_user_id=user.UserID,
            start_time=payload.startTime,
            end_time=payload.endTime,
            requested_count=payload.requestedCount,
            label=payload.label,
        )
    except BookingError as exc:
        raise _booking_http_error(exc) from exc

    return {
        "bookings": [serialize_booking(booking, FREE_CANCELLATION_HOURS) for booking in result["bookings"]],
        "assignedInstances": result["assignedInstances"],
        "totalPrice": result["totalPrice"],
    }


@app.get("/api/bookings")
def list_bookings(
    request: Request,
    status: BookingStatusLiteral | None = Query(None),
    template_id: int | None = Query(None, alias="templateID"),
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    accounts = account_ids_by_type(db, user.UserID)
    client_ids = accounts.get("client", [])
    renter_ids = accounts.get("renter", [])

    visibility = []
    if client_ids:
        visibility.append(MachineBooking.ClientAccountID.in_(client_ids))
    if renter_ids:
        owned_templates = select(MachineTemplate.TemplateID).where(MachineTemplate.AccountID.in_(renter_ids))
        visibility.append(MachineBooking.TemplateID.in_(owned_templates))
    if not visibility:
        return []

    stmt = (
        select(MachineBooking)
        .options(selectinload(MachineBooking.Instance))
        .options(selectinload(MachineBooking.Template))
        .where(or_(*visibility))
    )
    if status:
        stmt = stmt.where(MachineBooking.Status == status)
    if template_id:
        stmt = stmt.where(MachineBooking.TemplateID == template_id)
    if start_date:
        stmt = stmt.where(MachineBooking.StartTime >= as_utc(start_date))
    if end_date:
        stmt = stmt.where(MachineBooking.EndTime <= as_utc(end_date))

    bookings = db.execute(
        stmt.order_by(MachineBooking.CreatedDate.desc(), MachineBooking.BookingID.desc()).limit(limit).offset(offset)
    ).scalars().all()
    return [serialize_booking(booking, FREE_CANCELLATION_HOURS) for booking in bookings]


@app.get("/api/bookings/{booking_id}")
def get_booking(
    request: Request,
    booking_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    booking = _load_booking_or_404(db, booking_id)
    role = _require_booking_role(db, user, booking, "view")
    payload = serialize_booking(booking, FREE_CANCELLATION_HOURS)
    payload["viewerRole"] = role
    return payload


@app.post("/api/bookings/{booking_id}/status")
def update_booking_status(
    request: Request,
    booking_id: int,
    payload: UpdateBookingStatusDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    booking = _load_booking_or_404(db, booking_id)
    role = _require_booking_role(db, user, booking, "update")
    previous = booking.Status
    try:
        apply_status_transition(booking, payload.newStatus, role, actor_user_id=user.UserID, note=payload.message)
    except BookingError as exc:
        raise _booking_http_error(exc) from exc
    log_audit(db, "Booking", booking.BookingID, "StatusChange", f"{previous} -> {booking.Status} as {role}", user_id=user.UserID)
    db.commit()
    return serialize_booking(booking, FREE_CANCELLATION_HOURS)


@app.post("/api/bookings/{booking_id}/messages")
def send_booking_message(
    request: Request,
    booking_id: int,
    payload: SendMessageDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    booking = _load_booking_or_404(db, booking_id)
    _require_booking_role(db, user, booking, "send messages in")
    messages = add_booking_message(booking, user.UserID, payload.content)
    booking.UpdatedDate = _utcnow()
    log_audit(db, "Booking", booking.BookingID, "Message", f"{len(payload.content)} chars", user_id=user.UserID)
    db.commit()
    return {"bookingID": booking.BookingID, "messages": messages}


@app.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(
    request: Request,
    booking_id: int,
    payload: CancelBookingDto | None = None,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    booking = _load_booking_or_404(db, booking_id)
    role = resolve_booking_role(db, user.UserID, booking)
    if role != "client":
        raise HTTPException(status_code=403, detail="Only the client can cancel their booking")

    previous = booking.Status
    try:
        apply_status_transition(booking, CANCELED_BY_CLIENT, role, actor_user_id=user.UserID)
    except BookingError as exc:
        raise HTTPException(status_code=400, detail="This booking cannot be cancelled in its current status") from exc
    reason = (payload.reason if payload else None) or ""
    if reason.strip():
        add_booking_message(booking, user.UserID, f"Booking cancelled: {reason.strip()}")
    log_audit(db, "Booking", booking.BookingID, "Cancel", f"{previous} -> {CANCELED_BY_CLIENT}", user_id=user.UserID)
    db.commit()
    return serialize_booking(booking, FREE_CANCELLATION_HOURS)


@app.get("/api/owner/machines")
def list_owner_machines(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    renter_ids = account_ids_by_type(db, user.UserID).get("renter", [])
    if not renter_ids:
        return []

    templates = db.execute(
        select(MachineTemplate)
        .options(selectinload(MachineTemplate.Instances))
        .where(MachineTemplate.AccountID.in_(renter_ids))
        .order_by(MachineTemplate.CreatedDate.desc(), MachineTemplate.TemplateID.desc())
    ).scalars().all()
    template_ids = [template.TemplateID for template in templates]
    bookings_by_template: dict[int, list[MachineBooking]] = {}
    if template_ids:
        for booking in db.execute(
            select(MachineBooking).where(MachineBooking.TemplateID.in_(template_ids))
        ).scalars().all():
            bookings_by_template.setdefault(booking.TemplateID, []).append(booking)

    now = _utcnow()
    payloads = []
    for template in templates:
        bookings = bookings_by_template.get(template.TemplateID, [])
        stats = {
            "instanceCount": len(template.Instances),
            "activeInstanceCount": sum(1 for i in template.Instances if i.Status == ACTIVE_INSTANCE_STATUS),
            "bookingCount": len(bookings),
            "activeBookingCount": sum(
                1 for b in bookings if b.Status == APPROVED_BY_RENTER and as_utc(b.EndTime) > now
            ),
        }
        payloads.append(serialize_template(template, stats))
    return payloads


@app.post("/api/owner/machines")
def create_owner_machine(
    request: Request,
    payload: CreateMachineDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    code = payload.code.strip().upper()
    existing = db.execute(select(MachineTemplate.TemplateID).where(MachineTemplate.Code == code)).first()
    if existing:
        raise HTTPException(status_code=400, detail=f"Machine code {code} is already in use.")
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Machine name is required.")
    instance_codes = generate_instance_codes(code, payload.totalCount)
    taken = db.execute(
        select(MachineInstance.InstanceCode).where(MachineInstance.InstanceCode.in_(instance_codes))
    ).scalars().all()
    if taken:
        raise HTTPException(status_code=400, detail=f"Instance code {sorted(taken)[0]} is already in use.")

    account = get_or_create_account(db, user, "renter")
    now = _utcnow()
    schedule = normalize_availability(payload.availability.model_dump() if payload.availability else None)
    template = MachineTemplate(
        AccountID=account.AccountID,
        Name=name,
        Code=code,
        Description=payload.description,
        TotalCount=payload.totalCount,
        PricePerHour=payload.pricePerHour,
        AvailabilityJson=dump_availability(schedule),
        SpecsJson=json.dumps(payload.specs, ensure_ascii=True) if payload.specs else None,
        Tags=dump_tags(payload.tags),
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(template)
    db.flush()
    for instance_code in instance_codes:
        db.add(
            MachineInstance(
                TemplateID=template.TemplateID,
                InstanceCode=instance_code,
                Status=ACTIVE_INSTANCE_STATUS,
                CreatedDate=now,
                UpdatedDate=now,
            )
        )
    log_audit(db, "MachineTemplate", template.TemplateID, "CreateMachine", f"code={code} instances={payload.totalCount}", user_id=user.UserID)
    db.commit()
    db.refresh(template)
    result = serialize_template(template)
    result["instancesCreated"] = payload.totalCount
    return result


def _map_template_field(field: str) -> str:
    mapping = {
        "description": "Description",
        "totalCount": "TotalCount",
        "pricePerHour": "PricePerHour",
    }
    return mapping.get(field, field)


@app.put("/api/owner/machines/{template_id}")
def update_owner_machine(
    request: Request,
    template_id: int,
    payload: UpdateMachineDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    template = _get_owned_template(db, user, template_id)

    for field, value in payload.model_dump(exclude_unset=True).items():
        if field == "availability":
            template.AvailabilityJson = dump_availability(normalize_availability(value))
        elif field == "specs":
            template.SpecsJson = json.dumps(value, ensure_ascii=True) if value else None
        elif field == "tags":
            template.Tags = dump_tags(value)
        elif field == "name" and value is not None:
            name = value.strip()
            if not name:
                raise HTTPException(status_code=400, detail="Machine name is required.")
            template.Name = name
        elif value is not None:
            setattr(template, _map_template_field(field), value)

    template.UpdatedDate = _utcnow()
    log_audit(db, "MachineTemplate", template.TemplateID, "UpdateMachine", None, user_id=user.UserID)
    db.commit()
    db.refresh(template)
    return serialize_template(template)


@app.post("/api/owner/machines/{template_id}/archive")
def archive_owner_machine(
    request: Request,
    template_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    template = _get_owned_template(db, user, template_id)
    now = _utcnow()
    retired = 0
    for instance in template.Instances:
        if instance.Status != "retired":
            instance.Status = "retired"
            instance.UpdatedDate = now
            retired += 1
    log_audit(db, "MachineTemplate", template.TemplateID, "ArchiveMachine", f"retired={retired}", user_id=user.UserID)
    db.commit()
    return {"success": True, "message": "Machine archived", "retiredInstances": retired}


@app.get("/api/owner/machines/{template_id}/instances")
def list_owner_instances(
    request: Request,
    template_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    _get_owned_template(db, user, template_id)
    instances = db.execute(
        select(MachineInstance).where(MachineInstance.TemplateID == template_id).order_by(MachineInstance.InstanceID)
    ).scalars().all()
    return [serialize_instance(instance) for instance in instances]


@app.post("/api/owner/machines/{template_id}/instances")
def create_owner_instance(
    request: Request,
    template_id: int,
    payload: CreateInstanceDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    template = _get_owned_template(db, user, template_id)

    instance_code = (payload.instanceCode or "").strip()
    if not instance_code:
        instance_code = generate_instance_codes(template.Code, 1, start=generate_next_instance_number(db, template))[0]
    taken = db.execute(select(MachineInstance.InstanceID).where(MachineInstance.InstanceCode == instance_code)).first()
    if taken:
        raise HTTPException(status_code=400, detail=f"Instance code {instance_code} is already in use.")

    now = _utcnow()
    instance = MachineInstance(
        TemplateID=template.TemplateID,
        InstanceCode=instance_code,
        Status=payload.status,
        AvailabilityJson=dump_availability(
            normalize_availability(payload.availability.model_dump() if payload.availability else None)
        ),
        MetadataJson=json.dumps(payload.metadata, ensure_ascii=True) if payload.metadata else None,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(instance)
    db.flush()
    log_audit(db, "MachineInstance", instance.InstanceID, "CreateInstance", f"code={instance_code}", user_id=user.UserID)
    db.commit()
    db.refresh(instance)
    return serialize_instance(instance)


@app.put("/api/owner/instances/{instance_id}")
def update_owner_instance(
    request: Request,
    instance_id: int,
    payload: UpdateInstanceDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    instance = db.get(MachineInstance, instance_id)
    if not instance:
        raise HTTPException(status_code=404, detail="Machine instance not found")
    _get_owned_template(db, user, instance.TemplateID)

    previous_status = instance.Status
    if payload.status:
        instance.Status = payload.status
    if payload.clearAvailability:
        instance.AvailabilityJson = None
    elif payload.availability is not None:
        instance.AvailabilityJson = dump_availability(normalize_availability(payload.availability.model_dump()))
    if payload.metadata is not None:
        instance.MetadataJson = json.dumps(payload.metadata, ensure_ascii=True) if payload.metadata else None
    instance.UpdatedDate = _utcnow()
    log_audit(
        db,
        "MachineInstance",
        instance.InstanceID,
        "UpdateInstance",
        f"status {previous_status} -> {instance.Status}",
        user_id=user.UserID,
    )
    db.commit()
    db.refresh(instance)
    return serialize_instance(instance)


@app.get("/api/owner/bookings")
def list_owner_bookings(
    request: Request,
    template_id: int | None = Query(None, alias="templateID"),
    status: BookingStatusLiteral | None = Query(None),
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    renter_ids = account_ids_by_type(db, user.UserID).get("renter", [])
    if not renter_ids:
        return []

    stmt = (
        select(MachineBooking, BusinessAccount.Name)
        .join(MachineTemplate, MachineTemplate.TemplateID == MachineBooking.TemplateID)
        .join(BusinessAccount, BusinessAccount.AccountID == MachineBooking.ClientAccountID)
        .options(selectinload(MachineBooking.Instance))
        .options(selectinload(MachineBooking.Template))
        .where(MachineTemplate.AccountID.in_(renter_ids))
    )
    if template_id:
        stmt = stmt.where(MachineBooking.TemplateID == template_id)
    if status:
        stmt = stmt.where(MachineBooking.Status == status)
    if start_date:
        stmt = stmt.where(MachineBooking.StartTime >= as_utc(start_date))
    if end_date:
        stmt = stmt.where(MachineBooking.EndTime <= as_utc(end_date))

    rows = db.execute(
        stmt.order_by(MachineBooking.StartTime.desc(), MachineBooking.BookingID.desc()).limit(limit).offset(offset)
    ).all()
    payloads = []
    for booking, client_name in rows:
        payload = serialize_booking(booking, FREE_CANCELLATION_HOURS)
        payload["clientName"] = client_name
        payloads.append(payload)
    return payloads


@app.post("/api/owner/bookings/{booking_id}/{decision}")
def decide_owner_booking(
    request: Request,
    booking_id: int,
    decision: str,
    payload: BookingDecisionDto | None = None,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    target_status = OWNER_DECISIONS.get(decision)
    if not target_status:
        raise HTTPException(status_code=404, detail="Unknown booking decision")

    user = _require_user(db, request, x_session_token)
    booking = _load_booking_or_404(db, booking_id)
    _get_owned_template(db, user, booking.TemplateID)

    previous = booking.Status
    note = payload.message if payload else None
    try:
        apply_status_transition(booking, target_status, "renter", actor_user_id=user.UserID, note=note)
    except BookingError as exc:
        raise _booking_http_error(exc) from exc
    log_audit(db, "Booking", booking.BookingID, "OwnerDecision", f"{previous} -> {target_status}", user_id=user.UserID)
    db.commit()
    return serialize_booking(booking, FREE_CANCELLATION_HOURS)


@app.get("/api/owner/dashboard")
def get_owner_dashboard(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    renter_ids = account_ids_by_type(db, user.UserID).get("renter", [])
    empty = {
        "totalMachines": 0,
        "totalBookings": 0,
        "pendingBookings": 0,
        "activeBookings": 0,
        "totalRevenue": 0,
    }
    if not renter_ids:
        return empty

    templates = db.execute(
        select(MachineTemplate).where(MachineTemplate.AccountID.in_(renter_ids))
    ).scalars().all()
    if not templates:
        return empty
    templates_by_id = {template.TemplateID: template for template in templates}
    bookings = db.execute(
        select(MachineBooking).where(MachineBooking.TemplateID.in_(list(templates_by_id)))
    ).scalars().all()

    now = _utcnow()
    approved = [booking for booking in bookings if booking.Status == APPROVED_BY_RENTER]
    return {
        "totalMachines": len(templates),
        "totalBookings": len(bookings),
        "pendingBookings": sum(1 for booking in bookings if booking.Status == PENDING_RENTER_APPROVAL),
        "activeBookings": sum(1 for booking in approved if as_utc(booking.EndTime) > now),
        "totalRevenue": sum(
            calculate_booking_price(templates_by_id[booking.TemplateID], booking.StartTime, booking.EndTime)
            for booking in approved
        ),
    }


@app.post("/api/payments/intent")
def create_payment(
    request: Request,
    payload: CreatePaymentIntentDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    booking = _load_booking_or_404(db, payload.bookingID)
    if booking.ClientUserID != user.UserID:
        raise HTTPException(status_code=403, detail="Not authorized to pay for this booking")

    try:
        payment = create_payment_intent(db, booking, booking.Template)
    except BookingError as exc:
        db.rollback()
        raise _booking_http_error(exc) from exc
    log_audit(db, "Payment", payment.PaymentID, "CreateIntent", f"booking={booking.BookingID} amount={payment.AmountCents}", user_id=user.UserID)
    db.commit()
    return {
        "paymentID": payment.PaymentID,
        "paymentIntentID": payment.ExternalID,
        "clientSecret": build_client_secret(payment),
        "amount": payment.AmountCents,
        "currency": payment.Currency,
    }


@app.post("/api/payments/confirm")
def confirm_payment(
    request: Request,
    payload: ConfirmPaymentDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    payment = db.execute(select(Payment).where(Payment.ExternalID == payload.paymentIntentID)).scalars().first()
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    booking = _load_booking_or_404(db, payment.BookingID)
    if booking.ClientUserID != user.UserID:
        raise HTTPException(status_code=403, detail="Not authorized to confirm this payment")

    try:
        transition_payment(payment, PAYMENT_COMPLETED if payload.succeeded else PAYMENT_FAILED)
    except BookingError as exc:
        raise _booking_http_error(exc) from exc
    log_audit(db, "Payment", payment.PaymentID, "Confirm", f"status={payment.Status}", user_id=user.UserID)
    db.commit()
    return {"success": payment.Status == PAYMENT_COMPLETED, "payment": serialize_payment(payment)}


@app.post("/api/payments/{payment_id}/refund")
def refund_payment(
    request: Request,
    payment_id: int,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user(db, request, x_session_token)
    payment = db.get(Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    booking = _load_booking_or_404(db, payment.BookingID)
    _get_owned_template(db, user, booking.TemplateID)

    try:
        transition_payment(payment, PAYMENT_REFUNDED)
    except BookingError as exc:
        raise _booking_http_error(exc) from exc
    log_audit(db, "Payment", payment.PaymentID, "Refund", f"amount={payment.AmountCents}", user_id=user.UserID)
    db.commit()
    BOOKING_LOGGER.info("Payment %s refunded for booking %s", payment.PaymentID, booking.BookingID)
    return {"success": True, "payment": serialize_payment(payment)}
