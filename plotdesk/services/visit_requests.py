"""
Visit-request lifecycle.

PENDING -> ASSIGNED -> APPROVED | REJECTED. Every transition is a single
UPDATE predicated on the status it expects to leave, so two racing callers
cannot both win; the loser gets Conflict and writes nothing. Validation and
precondition failures are raised before any write.
"""
import re
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import pytz
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from ..config import settings
from ..errors import (
    Conflict,
    DuplicateBooking,
    Forbidden,
    InvalidDate,
    InvalidFormat,
    InvalidStateTransition,
    MissingField,
    NotFound,
    PastDate,
    PlotUnavailable,
)
from ..logging import get_logger
from ..models.models import (
    OPEN_VISIT_STATUSES,
    BuyRequest,
    Plot,
    PlotStatus,
    Role,
    User,
    VisitRequest,
    VisitStatus,
    utcnow,
)
from .identity import ensure_guest_user, find_user_by_identity, normalize_email
from .notifications import send_visit_notification
from .qr import make_qr_data_url, visit_pass_payload
from .retry import with_db_retry


logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")
PHONE_MIN_DIGITS = 7
TIME_RE = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")

REQUIRED_FIELDS = (
    ("visitor_name", "Name"),
    ("email", "Email"),
    ("phone", "Phone number"),
    ("visit_date", "Visit date"),
    ("visit_time", "Visit time"),
    ("plot_id", "Plot ID"),
)


def today_local() -> date:
    return datetime.now(pytz.timezone(settings.tz_default)).date()


def validity_window() -> timedelta:
    return timedelta(minutes=settings.visit_qr_validity_minutes)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_uuid(raw: Any, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except (ValueError, TypeError) as exc:
        raise InvalidFormat(f"Invalid {label}") from exc


def parse_visit_date(raw: str) -> date:
    """Accept YYYY-MM-DD or a full ISO timestamp (truncated to its date)."""
    text = raw.strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError as exc:
        raise InvalidDate() from exc


def validate_submission(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check a booking submission and return its cleaned values.

    Order: required fields, email, phone, date (format then past), time.
    Nothing here touches the database.
    """
    cleaned = {key: _clean(fields.get(key)) for key, _ in REQUIRED_FIELDS}
    for key, label in REQUIRED_FIELDS:
        if not cleaned[key]:
            raise MissingField(key, f"{label} is required")

    email = cleaned["email"].lower()
    if not EMAIL_RE.match(email):
        raise InvalidFormat("Invalid email format", {"field": "email"})

    phone = cleaned["phone"]
    if not PHONE_RE.match(phone) or sum(c.isdigit() for c in phone) < PHONE_MIN_DIGITS:
        raise InvalidFormat("Invalid phone number", {"field": "phone"})

    visit_date = parse_visit_date(cleaned["visit_date"])
    if visit_date < today_local():
        raise PastDate("Visit date cannot be in the past")

    if not TIME_RE.match(cleaned["visit_time"]):
        raise InvalidFormat("Invalid time format (use HH:MM)", {"field": "visit_time"})

    return {
        "name": cleaned["visitor_name"],
        "email": email,
        "phone": phone,
        "date": visit_date,
        "time": cleaned["visit_time"],
        "plot_id": _parse_uuid(cleaned["plot_id"], "plot id"),
    }


def _load_request(db: Session, request_id: Any) -> VisitRequest:
    req_uuid = _parse_uuid(request_id, "request id")
    visit = (
        db.query(VisitRequest)
        .options(joinedload(VisitRequest.plot), joinedload(VisitRequest.user))
        .filter(VisitRequest.id == req_uuid)
        .first()
    )
    if not visit:
        raise NotFound("Visit request not found")
    return visit


def _find_open_duplicate(db: Session, plot_id: uuid.UUID, email: str, user: Optional[User]) -> Optional[VisitRequest]:
    identity = [VisitRequest.email == email]
    if user is not None:
        identity.append(VisitRequest.user_id == user.id)
    return (
        db.query(VisitRequest)
        .filter(
            VisitRequest.plot_id == plot_id,
            VisitRequest.status.in_(OPEN_VISIT_STATUSES),
            or_(*identity),
        )
        .first()
    )


def _transition(db: Session, visit: VisitRequest, expected: VisitStatus, values: Dict[str, Any]) -> None:
    rows = (
        db.query(VisitRequest)
        .filter(VisitRequest.id == visit.id, VisitRequest.status == expected)
        .update(values, synchronize_session=False)
    )
    if rows != 1:
        logger.warning("visit_request_transition_conflict", request_id=str(visit.id), expected=expected.value)
        raise Conflict("Visit request was modified by another operation")


def _ensure_assigned_manager(visit: VisitRequest, actor: User) -> None:
    if actor is None or actor.role != Role.MANAGER:
        raise Forbidden("Invalid manager")
    if visit.assigned_manager_id != actor.id:
        raise Forbidden("You are not assigned to this visit request")


@with_db_retry
def submit_visit_request(db: Session, fields: Dict[str, Any], external_id: Optional[str] = None) -> VisitRequest:
    """
    Create a PENDING visit request.

    Args:
        db: Database session
        fields: visitor_name, email, phone, visit_date, visit_time, plot_id
        external_id: Identity-provider subject of the submitter, if signed in

    Returns:
        The created VisitRequest
    """
    data = validate_submission(fields)

    plot = db.query(Plot).filter(Plot.id == data["plot_id"]).first()
    if not plot:
        raise NotFound("Plot not found")
    if plot.status != PlotStatus.AVAILABLE:
        raise PlotUnavailable(details={"plot_status": plot.status.value})

    existing_user = None
    if external_id:
        existing_user = db.query(User).filter(User.external_id == external_id).first()

    if settings.visit_duplicate_check:
        duplicate = _find_open_duplicate(db, plot.id, data["email"], existing_user)
        if duplicate:
            logger.info("visit_request_duplicate", plot_id=str(plot.id), existing_id=str(duplicate.id))
            raise DuplicateBooking(details={"existing_request_id": str(duplicate.id)})

    user = None
    if external_id:
        user = ensure_guest_user(db, external_id, data["name"], data["email"], data["phone"])

    now = utcnow()
    visit = VisitRequest(
        name=data["name"],
        email=data["email"],
        phone=data["phone"],
        date=data["date"],
        time=data["time"],
        plot_id=plot.id,
        user_id=user.id if user else None,
        status=VisitStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(visit)
    db.flush()

    send_visit_notification(db, visit.user_id, "submitted", plot_title=plot.title)

    db.commit()
    db.refresh(visit)
    logger.info("visit_request_created", request_id=str(visit.id), plot_id=str(plot.id), linked=bool(user))
    return visit


@with_db_retry
def assign_manager(db: Session, request_id: Any, manager_identity: Optional[str]) -> VisitRequest:
    """Move a PENDING request to ASSIGNED under the given manager."""
    if not _clean(manager_identity):
        raise MissingField("manager_id", "Manager is required")
    manager = find_user_by_identity(db, manager_identity)
    if not manager:
        raise NotFound("Manager not found")
    if manager.role != Role.MANAGER:
        raise Forbidden("User is not a manager")
    if not manager.is_active:
        raise Forbidden("Manager is not active")

    visit = _load_request(db, request_id)
    if visit.status != VisitStatus.PENDING:
        raise InvalidStateTransition(visit.status.value, "assign")

    plot_title = visit.plot.title if visit.plot else "the plot"
    visitor_user_id = visit.user_id

    _transition(db, visit, VisitStatus.PENDING, {
        "status": VisitStatus.ASSIGNED,
        "assigned_manager_id": manager.id,
        "updated_at": utcnow(),
    })

    send_visit_notification(db, manager.id, "assigned", plot_title=plot_title)
    send_visit_notification(db, visitor_user_id, "updated", manager_name=manager.name or manager.email or "a manager")

    db.commit()
    db.refresh(visit)
    logger.info("visit_request_assigned", request_id=str(visit.id), manager_id=str(manager.id))
    return visit


@with_db_retry
def accept_visit_request(db: Session, request_id: Any, actor: User) -> VisitRequest:
    """ASSIGNED -> APPROVED; issues the QR visit pass."""
    visit = _load_request(db, request_id)
    if visit.status != VisitStatus.ASSIGNED:
        raise InvalidStateTransition(visit.status.value, "accept")
    _ensure_assigned_manager(visit, actor)

    now = utcnow()
    expires_at = now + validity_window()
    payload = visit_pass_payload(visit.name, str(visit.plot_id), str(visit.id), expires_at.isoformat() + "Z")
    qr_code = make_qr_data_url(payload)

    plot_title = visit.plot.title if visit.plot else "the plot"
    visitor_user_id = visit.user_id

    _transition(db, visit, VisitStatus.ASSIGNED, {
        "status": VisitStatus.APPROVED,
        "qr_code": qr_code,
        "expires_at": expires_at,
        "rejection_reason": None,
        "updated_at": now,
    })

    send_visit_notification(db, visitor_user_id, "approved", plot_title=plot_title)

    db.commit()
    db.refresh(visit)
    logger.info("visit_request_approved", request_id=str(visit.id), expires_at=expires_at.isoformat())
    return visit


@with_db_retry
def reject_visit_request(db: Session, request_id: Any, actor: User, reason: Optional[str]) -> VisitRequest:
    """ASSIGNED -> REJECTED with a mandatory reason."""
    visit = _load_request(db, request_id)
    if visit.status != VisitStatus.ASSIGNED:
        raise InvalidStateTransition(visit.status.value, "reject")
    _ensure_assigned_manager(visit, actor)

    reason = _clean(reason)
    if not reason:
        raise MissingField("reason", "Rejection reason is required")

    plot_title = visit.plot.title if visit.plot else "the plot"
    visitor_user_id = visit.user_id

    _transition(db, visit, VisitStatus.ASSIGNED, {
        "status": VisitStatus.REJECTED,
        "rejection_reason": reason,
        "qr_code": None,
        "expires_at": None,
        "updated_at": utcnow(),
    })

    send_visit_notification(db, visitor_user_id, "rejected", plot_title=plot_title, reason=reason)

    db.commit()
    db.refresh(visit)
    logger.info("visit_request_rejected", request_id=str(visit.id))
    return visit


def _list_query(db: Session):
    return db.query(VisitRequest).options(
        joinedload(VisitRequest.plot).joinedload(Plot.project),
        joinedload(VisitRequest.user),
        joinedload(VisitRequest.assigned_manager),
    )


@with_db_retry
def list_visit_requests(
    db: Session,
    *,
    user: Optional[User] = None,
    manager: Optional[User] = None,
) -> List[VisitRequest]:
    """
    List requests newest first.

    Args:
        user: Only requests linked to this user or submitted with their email
        manager: Only requests assigned to this manager (must have role MANAGER)
    """
    query = _list_query(db)
    if manager is not None:
        if manager.role != Role.MANAGER:
            raise Forbidden("User is not a manager")
        query = query.filter(VisitRequest.assigned_manager_id == manager.id)
    if user is not None:
        owned = [VisitRequest.user_id == user.id]
        email = normalize_email(user.email)
        if email:
            owned.append(VisitRequest.email == email)
        query = query.filter(or_(*owned))
    return query.order_by(VisitRequest.created_at.desc()).all()


@with_db_retry
def get_visit_request(db: Session, request_id: Any) -> VisitRequest:
    req_uuid = _parse_uuid(request_id, "request id")
    visit = _list_query(db).filter(VisitRequest.id == req_uuid).first()
    if not visit:
        raise NotFound("Visit request not found")
    return visit


@with_db_retry
def list_managers_with_stats(db: Session) -> List[Dict[str, Any]]:
    counts = dict(
        db.query(VisitRequest.assigned_manager_id, func.count(VisitRequest.id))
        .filter(VisitRequest.assigned_manager_id.isnot(None))
        .group_by(VisitRequest.assigned_manager_id)
        .all()
    )
    open_counts = dict(
        db.query(VisitRequest.assigned_manager_id, func.count(VisitRequest.id))
        .filter(
            VisitRequest.assigned_manager_id.isnot(None),
            VisitRequest.status == VisitStatus.ASSIGNED,
        )
        .group_by(VisitRequest.assigned_manager_id)
        .all()
    )
    buy_counts = dict(
        db.query(BuyRequest.assigned_manager_id, func.count(BuyRequest.id))
        .filter(BuyRequest.assigned_manager_id.isnot(None))
        .group_by(BuyRequest.assigned_manager_id)
        .all()
    )
    managers = (
        db.query(User)
        .filter(User.role == Role.MANAGER, User.is_active.is_(True))
        .order_by(User.name.asc())
        .all()
    )
    return [
        {
            "id": str(m.id),
            "external_id": m.external_id,
            "name": m.name,
            "email": m.email,
            "phone": m.phone,
            "stats": {
                "total_assignments": counts.get(m.id, 0) + buy_counts.get(m.id, 0),
                "visit_requests": counts.get(m.id, 0),
                "buy_requests": buy_counts.get(m.id, 0),
                "awaiting_decision": open_counts.get(m.id, 0),
            },
        }
        for m in managers
    ]
