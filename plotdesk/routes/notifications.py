from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional
import uuid

from ..db import get_db
from ..errors import InvalidFormat, NotFound
from ..models.models import Notification, Role, User
from ..auth.security import get_current_user, require_roles
from ..services.notifications import dispatch_pending

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _serialize_notification(n: Notification) -> dict:
    return {
        "id": str(n.id),
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "read": bool(n.read),
        "status": n.status,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


@router.get("")
def list_notifications(
    limit: Optional[int] = 50,
    unread_only: Optional[bool] = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user)
):
    """List notifications for the current user, newest first."""
    limit = min(max(1, limit or 50), 200)
    query = db.query(Notification).filter(Notification.user_id == user.id)
    if unread_only:
        query = query.filter(Notification.read.is_(False))
    notifications = query.order_by(Notification.created_at.desc()).limit(limit).all()
    return [_serialize_notification(n) for n in notifications]


@router.get("/unread-count")
def unread_count(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    count = db.query(Notification).filter(
        Notification.user_id == user.id,
        Notification.read.is_(False),
    ).count()
    return {"count": count}


@router.patch("/read-all")
def mark_all_read(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user.id, Notification.read.is_(False))
        .update({"read": True}, synchronize_session=False)
    )
    db.commit()
    return {"status": "ok", "updated": updated}


@router.patch("/{notification_id}/read")
def mark_read(notification_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    try:
        nid = uuid.UUID(notification_id)
    except ValueError:
        raise InvalidFormat("Invalid notification id")
    notif = db.query(Notification).filter(Notification.id == nid, Notification.user_id == user.id).first()
    if not notif:
        raise NotFound("Notification not found")
    notif.read = True
    db.commit()
    return _serialize_notification(notif)


@router.post("/dispatch")
def dispatch_now(
    batch: Optional[int] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    """Drain the outbox immediately instead of waiting for the background dispatcher."""
    return dispatch_pending(db, batch=batch)
