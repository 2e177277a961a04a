from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session
from typing import Optional

from ..db import get_db
from ..errors import NotFound
from ..logging import get_logger
from ..models.models import User, Role, utcnow
from ..auth.security import get_current_user, require_roles
from ..services.identity import find_user_by_identity, parse_role


router = APIRouter(prefix="/users", tags=["users"])
logger = get_logger(__name__)


class RoleUpdate(BaseModel):
    role: str


def _user_to_dict(u: User) -> dict:
    return {
        "id": str(u.id),
        "external_id": u.external_id,
        "name": u.name,
        "email": u.email,
        "phone": u.phone,
        "role": u.role.value,
        "is_active": u.is_active,
        "office_ids": [str(o.id) for o in getattr(u, 'offices', [])],
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return _user_to_dict(user)


@router.get("")
def list_users(
    role: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN))
):
    """
    List users with pagination

    Args:
        role: Only users holding this role
        page: Page number (1-indexed)
        limit: Number of items per page (default 50, max 200)
    """
    limit = min(max(1, limit), 200)
    page = max(1, page)
    offset = (page - 1) * limit

    query = db.query(User)
    wanted = parse_role(role)
    if wanted is not None:
        query = query.filter(User.role == wanted)

    total_count = query.count()
    rows = query.order_by(User.created_at.desc()).offset(offset).limit(limit).all()

    return {
        "items": [_user_to_dict(u) for u in rows],
        "total": total_count,
        "page": page,
        "limit": limit,
        "total_pages": (total_count + limit - 1) // limit if limit > 0 else 0
    }


@router.patch("/{user_id}/role")
def update_role(
    user_id: str,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles(Role.ADMIN))
):
    user = find_user_by_identity(db, user_id)
    if not user:
        raise NotFound("User not found")
    user.role = parse_role(payload.role)
    user.updated_at = utcnow()
    db.commit()
    db.refresh(user)
    logger.info("user_role_changed", user_id=str(user.id), role=user.role.value, by=str(admin.id))
    return _user_to_dict(user)
