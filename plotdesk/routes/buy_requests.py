from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, get_optional_identity, require_roles
from ..db import get_db
from ..errors import Forbidden
from ..models.models import BuyRequest, BuyStatus, Role, User
from ..schemas.buy_requests import AssignBuyManagerRequest, BuyRequestCreate, RejectBuyRequest
from ..services import buy_requests as svc
from .visit_requests import _resolve_identity, _user_summary


router = APIRouter(prefix="/buy-requests", tags=["buy-requests"])


def _serialize_buy_request(b: BuyRequest) -> Dict[str, Any]:
    land = b.land
    plot = land.plot if land else None
    return {
        "id": str(b.id),
        "status": b.status.value,
        "name": b.name,
        "phone": b.phone,
        "message": b.message,
        "land_id": str(b.land_id),
        "user_id": str(b.user_id) if b.user_id else None,
        "assigned_manager_id": str(b.assigned_manager_id) if b.assigned_manager_id else None,
        "rejection_reason": b.rejection_reason if b.status == BuyStatus.REJECTED else None,
        "land": {
            "id": str(land.id),
            "number": land.number,
            "size": land.size,
            "price": land.price,
            "status": land.status.value,
            "owner_id": str(land.owner_id) if land.owner_id else None,
            "plot_id": str(land.plot_id),
            "plot_title": plot.title if plot else None,
            "project_name": plot.project.name if plot and plot.project else None,
        } if land else None,
        "user": _user_summary(b.user),
        "assigned_manager": _user_summary(b.assigned_manager),
        "created_at": b.created_at.isoformat(),
        "updated_at": b.updated_at.isoformat(),
    }


def _can_view(b: BuyRequest, me: User) -> bool:
    if me.role == Role.ADMIN:
        return True
    if b.assigned_manager_id == me.id or b.user_id == me.id:
        return True
    return bool(b.land and b.land.owner_id == me.id)


@router.post("", status_code=201)
def create_buy_request(
    payload: BuyRequestCreate,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_optional_identity),
):
    buy = svc.submit_buy_request(db, payload.model_dump(), external_id=identity)
    return _serialize_buy_request(svc.get_buy_request(db, buy.id))


@router.get("")
def list_all_buy_requests(
    owner: Optional[str] = None,
    manager: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    """
    Administrative listing, newest first.

    Args:
        owner: Restrict to lands owned by this user (user id or external id)
        manager: Restrict to one manager's queue (user id or external id)
    """
    land_owner = _resolve_identity(db, owner, "User")
    assignee = _resolve_identity(db, manager, "Manager")
    return [_serialize_buy_request(b) for b in svc.list_buy_requests(db, owner=land_owner, manager=assignee)]


@router.get("/mine")
def list_my_buy_requests(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return [_serialize_buy_request(b) for b in svc.list_buy_requests(db, buyer=me)]


@router.get("/received")
def list_buy_requests_on_my_lands(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return [_serialize_buy_request(b) for b in svc.list_buy_requests(db, owner=me)]


@router.get("/assigned")
def list_assigned_buy_requests(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return [_serialize_buy_request(b) for b in svc.list_buy_requests(db, manager=me)]


@router.get("/{request_id}")
def get_buy_request(request_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    buy = svc.get_buy_request(db, request_id)
    if not _can_view(buy, me):
        raise Forbidden("Not allowed to view this buy request")
    return _serialize_buy_request(buy)


@router.patch("/{request_id}/assign")
def assign_buy_request(
    request_id: str,
    payload: AssignBuyManagerRequest,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    buy = svc.assign_buy_manager(db, request_id, payload.manager_id)
    return _serialize_buy_request(svc.get_buy_request(db, buy.id))


@router.post("/{request_id}/accept")
def accept_buy_request(request_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    buy = svc.accept_buy_request(db, request_id, me)
    return _serialize_buy_request(svc.get_buy_request(db, buy.id))


@router.post("/{request_id}/reject")
def reject_buy_request(
    request_id: str,
    payload: RejectBuyRequest,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    buy = svc.reject_buy_request(db, request_id, me, payload.reason)
    return _serialize_buy_request(svc.get_buy_request(db, buy.id))


@router.post("/{request_id}/complete")
def complete_buy_request(request_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    buy = svc.complete_buy_request(db, request_id, me)
    return _serialize_buy_request(svc.get_buy_request(db, buy.id))
