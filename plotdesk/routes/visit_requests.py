from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, get_optional_identity, require_roles
from ..db import get_db
from ..errors import Forbidden, NotFound
from ..models.models import Role, User, VisitRequest, VisitStatus
from ..schemas.visit_requests import AssignManagerRequest, RejectVisitRequest, VisitRequestCreate
from ..services import visit_requests as svc
from ..services.identity import find_user_by_identity, normalize_email


router = APIRouter(prefix="/visit-requests", tags=["visit-requests"])


def _user_summary(u: Optional[User]) -> Optional[Dict[str, Any]]:
    if u is None:
        return None
    return {
        "id": str(u.id),
        "external_id": u.external_id,
        "name": u.name,
        "email": u.email,
        "phone": u.phone,
        "role": u.role.value,
    }


def _serialize_visit_request(v: VisitRequest) -> Dict[str, Any]:
    approved = v.status == VisitStatus.APPROVED
    plot = v.plot
    project = plot.project if plot else None
    return {
        "id": str(v.id),
        "status": v.status.value,
        "name": v.name,
        "email": v.email,
        "phone": v.phone,
        "date": v.date.isoformat(),
        "time": v.time,
        "plot_id": str(v.plot_id),
        "user_id": str(v.user_id) if v.user_id else None,
        "assigned_manager_id": str(v.assigned_manager_id) if v.assigned_manager_id else None,
        # Visit pass is only meaningful once approved, whatever is stored
        "qr_code": v.qr_code if approved and v.qr_code else None,
        "expires_at": v.expires_at.isoformat() if approved and v.expires_at else None,
        "rejection_reason": v.rejection_reason if v.status == VisitStatus.REJECTED else None,
        "plot": {
            "id": str(plot.id),
            "title": plot.title,
            "location": plot.location,
            "project_id": str(plot.project_id),
            "project_name": project.name if project else None,
        } if plot else None,
        "user": _user_summary(v.user),
        "assigned_manager": _user_summary(v.assigned_manager),
        "created_at": v.created_at.isoformat(),
        "updated_at": v.updated_at.isoformat(),
    }


def _resolve_identity(db: Session, identity: Optional[str], label: str) -> Optional[User]:
    if not identity:
        return None
    user = find_user_by_identity(db, identity)
    if not user:
        raise NotFound(f"{label} not found")
    return user


def _can_view(v: VisitRequest, me: User) -> bool:
    if me.role == Role.ADMIN:
        return True
    if v.assigned_manager_id == me.id or v.user_id == me.id:
        return True
    email = normalize_email(me.email)
    return bool(email and v.email == email)


@router.post("", status_code=201)
def create_visit_request(
    payload: VisitRequestCreate,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_optional_identity),
):
    visit = svc.submit_visit_request(db, payload.model_dump(), external_id=identity)
    return _serialize_visit_request(svc.get_visit_request(db, visit.id))


@router.get("")
def list_all_visit_requests(
    user: Optional[str] = None,
    manager: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    """
    Administrative listing, newest first.

    Args:
        user: Restrict to one visitor (user id or external id)
        manager: Restrict to one manager's queue (user id or external id)
    """
    owner = _resolve_identity(db, user, "User")
    assignee = _resolve_identity(db, manager, "Manager")
    visits = svc.list_visit_requests(db, user=owner, manager=assignee)
    return [_serialize_visit_request(v) for v in visits]


@router.get("/mine")
def list_my_visit_requests(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return [_serialize_visit_request(v) for v in svc.list_visit_requests(db, user=me)]


@router.get("/assigned")
def list_assigned_visit_requests(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return [_serialize_visit_request(v) for v in svc.list_visit_requests(db, manager=me)]


@router.get("/managers")
def list_managers(db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    return svc.list_managers_with_stats(db)


@router.get("/{request_id}")
def get_visit_request(request_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    visit = svc.get_visit_request(db, request_id)
    if not _can_view(visit, me):
        raise Forbidden("Not allowed to view this visit request")
    return _serialize_visit_request(visit)


@router.patch("/{request_id}/assign")
def assign_visit_request(
    request_id: str,
    payload: AssignManagerRequest,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    visit = svc.assign_manager(db, request_id, payload.manager_id)
    return _serialize_visit_request(svc.get_visit_request(db, visit.id))


@router.post("/{request_id}/accept")
def accept_visit_request(request_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    visit = svc.accept_visit_request(db, request_id, me)
    return _serialize_visit_request(svc.get_visit_request(db, visit.id))


@router.post("/{request_id}/reject")
def reject_visit_request(
    request_id: str,
    payload: RejectVisitRequest,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    visit = svc.reject_visit_request(db, request_id, me, payload.reason)
    return _serialize_visit_request(svc.get_visit_request(db, visit.id))
