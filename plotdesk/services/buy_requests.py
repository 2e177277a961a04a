"""
Buy-request lifecycle.

PENDING -> ASSIGNED -> ACCEPTED -> COMPLETED, with ASSIGNED -> REJECTED as the
other exit. Transitions are single UPDATEs predicated on the expected status,
the same way visit requests move, so a racing caller gets Conflict.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, joinedload

from ..errors import Conflict, Forbidden, InvalidFormat, InvalidStateTransition, MissingField, NotFound
from ..logging import get_logger
from ..models.models import BuyRequest, BuyStatus, Land, Plot, PlotStatus, Role, User, utcnow
from .identity import find_user_by_identity
from .notifications import send_buy_notification
from .retry import with_db_retry
from .visit_requests import PHONE_MIN_DIGITS, PHONE_RE, _clean, _parse_uuid


logger = get_logger(__name__)

REQUIRED_FIELDS = (
    ("name", "Name"),
    ("phone", "Phone number"),
    ("land_id", "Land ID"),
)


def validate_buy_submission(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {key: _clean(fields.get(key)) for key, _ in REQUIRED_FIELDS}
    for key, label in REQUIRED_FIELDS:
        if not cleaned[key]:
            raise MissingField(key, f"{label} is required")

    phone = cleaned["phone"]
    if not PHONE_RE.match(phone) or sum(c.isdigit() for c in phone) < PHONE_MIN_DIGITS:
        raise InvalidFormat("Invalid phone number", {"field": "phone"})

    return {
        "name": cleaned["name"],
        "phone": phone,
        "message": _clean(fields.get("message")) or None,
        "land_id": _parse_uuid(cleaned["land_id"], "land id"),
    }


def _land_label(land: Optional[Land]) -> Dict[str, str]:
    if land is None:
        return {"plot_title": "the plot", "land_number": "?"}
    return {"plot_title": land.plot.title if land.plot else "the plot", "land_number": land.number}


def _load_request(db: Session, request_id: Any) -> BuyRequest:
    req_uuid = _parse_uuid(request_id, "request id")
    buy = (
        db.query(BuyRequest)
        .options(joinedload(BuyRequest.land).joinedload(Land.plot))
        .filter(BuyRequest.id == req_uuid)
        .first()
    )
    if not buy:
        raise NotFound("Buy request not found")
    return buy


def _transition(db: Session, buy: BuyRequest, expected: BuyStatus, values: Dict[str, Any]) -> None:
    rows = (
        db.query(BuyRequest)
        .filter(BuyRequest.id == buy.id, BuyRequest.status == expected)
        .update(values, synchronize_session=False)
    )
    if rows != 1:
        logger.warning("buy_request_transition_conflict", request_id=str(buy.id), expected=expected.value)
        raise Conflict("Buy request was modified by another operation")


def _ensure_assigned_manager(buy: BuyRequest, actor: User) -> None:
    if actor is None or actor.role != Role.MANAGER:
        raise Forbidden("Invalid manager")
    if buy.assigned_manager_id != actor.id:
        raise Forbidden("You are not assigned to this buy request")


@with_db_retry
def submit_buy_request(db: Session, fields: Dict[str, Any], external_id: Optional[str] = None) -> BuyRequest:
    """
    Create a PENDING buy request for a land parcel.

    A signed-in submitter already known locally is linked to the request;
    the land's current owner, if any, is notified.
    """
    data = validate_buy_submission(fields)

    land = db.query(Land).options(joinedload(Land.plot)).filter(Land.id == data["land_id"]).first()
    if not land:
        raise NotFound("Land not found")

    user = None
    if external_id:
        user = db.query(User).filter(User.external_id == external_id).first()

    now = utcnow()
    buy = BuyRequest(
        name=data["name"],
        phone=data["phone"],
        message=data["message"],
        land_id=land.id,
        user_id=user.id if user else None,
        status=BuyStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(buy)
    db.flush()

    send_buy_notification(db, land.owner_id, "received", **_land_label(land))

    db.commit()
    db.refresh(buy)
    logger.info("buy_request_created", request_id=str(buy.id), land_id=str(land.id), linked=bool(user))
    return buy


@with_db_retry
def assign_buy_manager(db: Session, request_id: Any, manager_identity: Optional[str]) -> BuyRequest:
    """Move a PENDING buy request to ASSIGNED under an active manager."""
    if not _clean(manager_identity):
        raise MissingField("manager_id", "Manager is required")
    manager = find_user_by_identity(db, manager_identity)
    if not manager:
        raise NotFound("Manager not found")
    if manager.role != Role.MANAGER:
        raise Forbidden("User is not a manager")
    if not manager.is_active:
        raise Forbidden("Manager is not active")

    buy = _load_request(db, request_id)
    if buy.status != BuyStatus.PENDING:
        raise InvalidStateTransition(buy.status.value, "assign")

    label = _land_label(buy.land)
    buyer_id = buy.user_id

    _transition(db, buy, BuyStatus.PENDING, {
        "status": BuyStatus.ASSIGNED,
        "assigned_manager_id": manager.id,
        "updated_at": utcnow(),
    })

    send_buy_notification(db, manager.id, "assigned", **label)
    send_buy_notification(db, buyer_id, "updated", manager_name=manager.name or manager.email or "a manager")

    db.commit()
    db.refresh(buy)
    logger.info("buy_request_assigned", request_id=str(buy.id), manager_id=str(manager.id))
    return buy


@with_db_retry
def accept_buy_request(db: Session, request_id: Any, actor: User) -> BuyRequest:
    buy = _load_request(db, request_id)
    if buy.status != BuyStatus.ASSIGNED:
        raise InvalidStateTransition(buy.status.value, "accept")
    _ensure_assigned_manager(buy, actor)

    label = _land_label(buy.land)
    buyer_id = buy.user_id

    _transition(db, buy, BuyStatus.ASSIGNED, {
        "status": BuyStatus.ACCEPTED,
        "rejection_reason": None,
        "updated_at": utcnow(),
    })

    send_buy_notification(db, buyer_id, "accepted", **label)

    db.commit()
    db.refresh(buy)
    logger.info("buy_request_accepted", request_id=str(buy.id))
    return buy


@with_db_retry
def reject_buy_request(db: Session, request_id: Any, actor: User, reason: Optional[str]) -> BuyRequest:
    buy = _load_request(db, request_id)
    if buy.status != BuyStatus.ASSIGNED:
        raise InvalidStateTransition(buy.status.value, "reject")
    _ensure_assigned_manager(buy, actor)

    reason = _clean(reason)
    if not reason:
        raise MissingField("reason", "Rejection reason is required")

    label = _land_label(buy.land)
    buyer_id = buy.user_id

    _transition(db, buy, BuyStatus.ASSIGNED, {
        "status": BuyStatus.REJECTED,
        "rejection_reason": reason,
        "updated_at": utcnow(),
    })

    send_buy_notification(db, buyer_id, "rejected", reason=reason, **label)

    db.commit()
    db.refresh(buy)
    logger.info("buy_request_rejected", request_id=str(buy.id))
    return buy


@with_db_retry
def complete_buy_request(db: Session, request_id: Any, actor: User) -> BuyRequest:
    """
    ACCEPTED -> COMPLETED by the assigned manager or an admin.

    The land is marked SOLD; when the buyer is a known user they become its owner.
    """
    buy = _load_request(db, request_id)
    if buy.status != BuyStatus.ACCEPTED:
        raise InvalidStateTransition(buy.status.value, "complete")
    if actor is None or actor.role != Role.ADMIN:
        _ensure_assigned_manager(buy, actor)

    label = _land_label(buy.land)
    buyer_id = buy.user_id
    now = utcnow()

    _transition(db, buy, BuyStatus.ACCEPTED, {"status": BuyStatus.COMPLETED, "updated_at": now})

    land_values: Dict[str, Any] = {"status": PlotStatus.SOLD, "updated_at": now}
    if buyer_id:
        land_values["owner_id"] = buyer_id
    db.query(Land).filter(Land.id == buy.land_id).update(land_values, synchronize_session=False)

    send_buy_notification(db, buyer_id, "completed", **label)

    db.commit()
    db.refresh(buy)
    logger.info("buy_request_completed", request_id=str(buy.id), land_id=str(buy.land_id), owner_id=str(buyer_id))
    return buy


def _list_query(db: Session):
    return db.query(BuyRequest).options(
        joinedload(BuyRequest.land).joinedload(Land.plot).joinedload(Plot.project),
        joinedload(BuyRequest.user),
        joinedload(BuyRequest.assigned_manager),
    )


@with_db_retry
def list_buy_requests(
    db: Session,
    *,
    buyer: Optional[User] = None,
    owner: Optional[User] = None,
    manager: Optional[User] = None,
) -> List[BuyRequest]:
    """
    List buy requests newest first.

    Args:
        buyer: Only requests this user submitted
        owner: Only requests on lands this user owns
        manager: Only requests assigned to this manager (must have role MANAGER)
    """
    query = _list_query(db)
    if manager is not None:
        if manager.role != Role.MANAGER:
            raise Forbidden("User is not a manager")
        query = query.filter(BuyRequest.assigned_manager_id == manager.id)
    if buyer is not None:
        query = query.filter(BuyRequest.user_id == buyer.id)
    if owner is not None:
        query = query.filter(BuyRequest.land.has(Land.owner_id == owner.id))
    return query.order_by(BuyRequest.created_at.desc()).all()


@with_db_retry
def get_buy_request(db: Session, request_id: Any) -> BuyRequest:
    req_uuid = _parse_uuid(request_id, "request id")
    buy = _list_query(db).filter(BuyRequest.id == req_uuid).first()
    if not buy:
        raise NotFound("Buy request not found")
    return buy
