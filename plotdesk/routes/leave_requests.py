from typing import Optional
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session, joinedload

from ..auth.security import require_roles
from ..db import get_db
from ..errors import Conflict, InvalidFormat, InvalidStateTransition, MissingField, NotFound
from ..logging import get_logger
from ..models.models import LeaveRequest, LeaveStatus, Role, User, utcnow
from ..schemas.leave_requests import LeaveDecision, LeaveRequestCreate
from ..services.notifications import send_leave_notification


router = APIRouter(prefix="/leave-requests", tags=["leave-requests"])
logger = get_logger(__name__)


def _serialize_leave(lr: LeaveRequest) -> dict:
    return {
        "id": str(lr.id),
        "user_id": str(lr.user_id),
        "user_name": lr.user.name if lr.user else None,
        "start_date": lr.start_date.isoformat(),
        "end_date": lr.end_date.isoformat(),
        "reason": lr.reason,
        "status": lr.status.value,
        "rejection_reason": lr.rejection_reason,
        "decided_by": str(lr.decided_by) if lr.decided_by else None,
        "created_at": lr.created_at.isoformat() if lr.created_at else None,
        "updated_at": lr.updated_at.isoformat() if lr.updated_at else None,
    }


@router.post("", status_code=201)
def submit_leave_request(
    payload: LeaveRequestCreate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(Role.MANAGER)),
):
    reason = payload.reason.strip()
    if not reason:
        raise MissingField("reason", "Reason is required")
    if payload.end_date < payload.start_date:
        raise InvalidFormat("End date cannot be before start date", {"field": "end_date"})
    now = utcnow()
    lr = LeaveRequest(
        user_id=me.id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=reason,
        status=LeaveStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(lr)
    db.commit()
    db.refresh(lr)
    logger.info("leave_request_created", leave_id=str(lr.id), user_id=str(me.id))
    return _serialize_leave(lr)


@router.get("/mine")
def list_my_leave_requests(db: Session = Depends(get_db), me: User = Depends(require_roles(Role.MANAGER))):
    rows = (
        db.query(LeaveRequest)
        .filter(LeaveRequest.user_id == me.id)
        .order_by(LeaveRequest.created_at.desc())
        .all()
    )
    return [_serialize_leave(lr) for lr in rows]


@router.get("")
def list_leave_requests(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    query = db.query(LeaveRequest).options(joinedload(LeaveRequest.user))
    if status:
        try:
            query = query.filter(LeaveRequest.status == LeaveStatus(status.strip().upper()))
        except ValueError:
            raise InvalidFormat(f"Unknown leave status '{status}'")
    return [_serialize_leave(lr) for lr in query.order_by(LeaveRequest.created_at.desc()).all()]


@router.patch("/{leave_id}")
def decide_leave_request(
    leave_id: str,
    payload: LeaveDecision,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles(Role.ADMIN)),
):
    """Approve or reject a PENDING leave request; the manager is notified either way."""
    try:
        lid = uuid.UUID(leave_id)
    except ValueError:
        raise InvalidFormat("Invalid leave request id")
    lr = db.query(LeaveRequest).filter(LeaveRequest.id == lid).first()
    if not lr:
        raise NotFound("Leave request not found")

    action = (payload.action or "").strip().upper()
    if action not in ("APPROVE", "REJECT"):
        raise InvalidFormat("Action must be APPROVE or REJECT", {"field": "action"})
    if lr.status != LeaveStatus.PENDING:
        raise InvalidStateTransition(lr.status.value, action.lower())

    approved = action == "APPROVE"
    rejection_reason = (payload.rejection_reason or "").strip() or None
    if not approved and not rejection_reason:
        raise MissingField("rejection_reason", "Rejection reason is required")

    rows = (
        db.query(LeaveRequest)
        .filter(LeaveRequest.id == lr.id, LeaveRequest.status == LeaveStatus.PENDING)
        .update({
            "status": LeaveStatus.APPROVED if approved else LeaveStatus.REJECTED,
            "rejection_reason": None if approved else rejection_reason,
            "decided_by": admin.id,
            "updated_at": utcnow(),
        }, synchronize_session=False)
    )
    if rows != 1:
        db.rollback()
        raise Conflict("Leave request was modified by another operation")

    send_leave_notification(
        db,
        lr.user_id,
        approved,
        lr.start_date.isoformat(),
        lr.end_date.isoformat(),
        reason=rejection_reason,
    )
    db.commit()
    db.refresh(lr)
    logger.info("leave_request_decided", leave_id=str(lr.id), status=lr.status.value, by=str(admin.id))
    return _serialize_leave(lr)
