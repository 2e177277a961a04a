from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session, joinedload

from ..auth.security import require_roles
from ..db import get_db
from ..errors import Forbidden, InvalidDate, NotFound
from ..logging import get_logger
from ..models.models import Attendance, Office, Role, User, utcnow
from ..schemas.attendance import AttendanceMark, OfficeAssign, OfficeCreate
from ..services.geofence import match_office
from ..services.identity import find_user_by_identity
from ..config import settings


router = APIRouter(tags=["attendance"])
logger = get_logger(__name__)


def _serialize_office(o: Office) -> dict:
    return {
        "id": str(o.id),
        "name": o.name,
        "latitude": o.latitude,
        "longitude": o.longitude,
        "manager_ids": [str(m.id) for m in o.managers],
    }


def _serialize_attendance(a: Attendance) -> dict:
    return {
        "id": str(a.id),
        "manager_id": str(a.manager_id),
        "office_id": str(a.office_id),
        "office_name": a.office.name if a.office else None,
        "status": a.status,
        "distance_m": round(a.distance_m, 1) if a.distance_m is not None else None,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


def _utc_day_bounds(day: date):
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


@router.post("/offices", status_code=201)
def create_office(payload: OfficeCreate, db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    office = Office(name=payload.name.strip(), latitude=payload.latitude, longitude=payload.longitude)
    db.add(office)
    db.commit()
    db.refresh(office)
    logger.info("office_created", office_id=str(office.id))
    return _serialize_office(office)


@router.get("/offices")
def list_offices(db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN, Role.MANAGER))):
    return [_serialize_office(o) for o in db.query(Office).order_by(Office.name.asc()).all()]


@router.post("/offices/assign")
def assign_office(payload: OfficeAssign, db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    manager = find_user_by_identity(db, payload.manager_id)
    if not manager:
        raise NotFound("Manager not found")
    if manager.role != Role.MANAGER:
        raise Forbidden("User is not a manager")
    office = db.query(Office).filter(Office.id == payload.office_id).first()
    if not office:
        raise NotFound("Office not found")
    if office not in manager.offices:
        manager.offices.append(office)
        db.commit()
        logger.info("office_assigned", office_id=str(office.id), manager_id=str(manager.id))
    db.refresh(office)
    return _serialize_office(office)


@router.post("/attendance")
def mark_attendance(
    payload: AttendanceMark,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(Role.MANAGER)),
):
    """
    Check in at the first assigned office whose geofence contains the reported position.
    At most one PRESENT record per office per UTC day; a repeat returns the existing one.
    """
    offices = list(me.offices)
    if not offices:
        raise NotFound("No office assigned to this manager")

    office, nearest, distance = match_office(payload.latitude, payload.longitude, offices)
    if office is None:
        logger.info("attendance_out_of_range", manager_id=str(me.id), nearest=str(nearest.id), distance_m=distance)
        raise Forbidden(
            "You are not within range of any assigned office",
            {
                "nearest_office": nearest.name,
                "nearest_office_id": str(nearest.id),
                "distance_m": round(distance, 1),
                "radius_m": settings.attendance_radius_m,
            },
        )

    now = utcnow()
    start, end = _utc_day_bounds(now.date())
    existing = (
        db.query(Attendance)
        .options(joinedload(Attendance.office))
        .filter(
            Attendance.manager_id == me.id,
            Attendance.office_id == office.id,
            Attendance.created_at >= start,
            Attendance.created_at < end,
        )
        .first()
    )
    if existing:
        return {"created": False, "attendance": _serialize_attendance(existing)}

    record = Attendance(
        manager_id=me.id,
        office_id=office.id,
        status="PRESENT",
        distance_m=distance,
        latitude=payload.latitude,
        longitude=payload.longitude,
        created_at=now,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("attendance_marked", manager_id=str(me.id), office_id=str(office.id), distance_m=round(distance, 1))
    return {"created": True, "attendance": _serialize_attendance(record)}


@router.get("/attendance")
def list_attendance(
    date: Optional[str] = None,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(Role.MANAGER)),
):
    query = db.query(Attendance).options(joinedload(Attendance.office)).filter(Attendance.manager_id == me.id)
    if date:
        try:
            day = datetime.strptime(date, "%Y-%m-%d").date()
        except ValueError:
            raise InvalidDate()
        start, end = _utc_day_bounds(day)
        query = query.filter(Attendance.created_at >= start, Attendance.created_at < end)
    return [_serialize_attendance(a) for a in query.order_by(Attendance.created_at.desc()).all()]
