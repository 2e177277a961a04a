from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session, joinedload

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..errors import Conflict, Forbidden, MissingField, NotFound
from ..logging import get_logger
from ..models.models import Camera, Land, Plot, PlotStatus, Role, User, utcnow
from ..schemas.lands import CameraUpdate, CameraUpsert, LandAssign, LandCreate
from ..services.identity import find_active_client
from .plots import _get_plot, _uuid


router = APIRouter(tags=["lands"])
logger = get_logger(__name__)


def _serialize_camera(c: Optional[Camera]) -> Optional[dict]:
    if c is None:
        return None
    return {
        "id": str(c.id),
        "land_id": str(c.land_id),
        "ip_address": c.ip_address,
        "label": c.label,
        "created_at": c.created_at.isoformat() if c.created_at else None,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


def _serialize_land(land: Land, with_camera: bool = False) -> dict:
    plot = land.plot
    data = {
        "id": str(land.id),
        "plot_id": str(land.plot_id),
        "plot_title": plot.title if plot else None,
        "project_name": plot.project.name if plot and plot.project else None,
        "number": land.number,
        "size": land.size,
        "price": land.price,
        "status": land.status.value,
        "x": land.x,
        "y": land.y,
        "owner_id": str(land.owner_id) if land.owner_id else None,
        "owner_name": land.owner.name if land.owner else None,
        "created_at": land.created_at.isoformat() if land.created_at else None,
        "updated_at": land.updated_at.isoformat() if land.updated_at else None,
    }
    if with_camera:
        data["camera"] = _serialize_camera(land.camera)
    return data


def _land_query(db: Session):
    return db.query(Land).options(
        joinedload(Land.plot).joinedload(Plot.project),
        joinedload(Land.owner),
        joinedload(Land.camera),
    )


def _get_land(db: Session, land_id) -> Land:
    land = _land_query(db).filter(Land.id == _uuid(land_id, "land id")).first()
    if not land:
        raise NotFound("Land not found")
    return land


def _get_camera(db: Session, camera_id: str) -> Camera:
    camera = (
        db.query(Camera)
        .options(joinedload(Camera.land))
        .filter(Camera.id == _uuid(camera_id, "camera id"))
        .first()
    )
    if not camera:
        raise NotFound("Camera not found")
    return camera


@router.post("/lands", status_code=201)
def create_land(payload: LandCreate, db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    plot = _get_plot(db, str(payload.plot_id))
    exists = db.query(Land).filter(Land.plot_id == plot.id, Land.number == payload.number).first()
    if exists:
        raise Conflict(f"Land {payload.number} already exists in this plot", {"existing_land_id": str(exists.id)})
    land = Land(**payload.model_dump())
    db.add(land)
    db.commit()
    logger.info("land_created", land_id=str(land.id), plot_id=str(plot.id), number=land.number)
    return _serialize_land(_get_land(db, land.id))


@router.get("/lands")
def list_lands(plot_id: Optional[str] = None, db: Session = Depends(get_db)):
    """Lands of one plot layout, by number."""
    if not plot_id:
        raise MissingField("plot_id", "Plot ID is required")
    plot = _get_plot(db, plot_id)
    lands = _land_query(db).filter(Land.plot_id == plot.id).order_by(Land.number.asc()).all()
    return [_serialize_land(land) for land in lands]


@router.get("/lands/owned")
def list_owned_lands(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    lands = _land_query(db).filter(Land.owner_id == me.id).order_by(Land.created_at.asc()).all()
    return [_serialize_land(land, with_camera=True) for land in lands]


@router.get("/lands/assigned")
def list_assigned_lands(db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    """Every land that has an owner, with its camera."""
    lands = _land_query(db).filter(Land.owner_id.isnot(None)).order_by(Land.updated_at.desc()).all()
    return [_serialize_land(land, with_camera=True) for land in lands]


@router.get("/lands/{land_id}")
def get_land(land_id: str, db: Session = Depends(get_db)):
    return _serialize_land(_get_land(db, land_id))


@router.post("/lands/{land_id}/assign")
def assign_land(
    land_id: str,
    payload: LandAssign,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    """Hand a land to a client: it becomes SOLD and the client is linked to its plot."""
    land = _get_land(db, land_id)
    client = find_active_client(db, payload.client_id)
    if land.owner_id is not None and land.owner_id != client.id:
        raise Conflict("Land already has an owner", {"owner_id": str(land.owner_id)})
    land.owner_id = client.id
    land.status = PlotStatus.SOLD
    land.updated_at = utcnow()
    if land.plot not in client.assigned_plots:
        client.assigned_plots.append(land.plot)
    db.commit()
    logger.info("land_assigned", land_id=str(land.id), user_id=str(client.id))
    return _serialize_land(_get_land(db, land_id), with_camera=True)


@router.post("/cameras")
def upsert_camera(
    payload: CameraUpsert,
    response: Response,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    land = _get_land(db, str(payload.land_id))
    camera = db.query(Camera).filter(Camera.land_id == land.id).first()
    if camera is None:
        camera = Camera(land_id=land.id, ip_address=str(payload.ip_address), label=payload.label)
        db.add(camera)
        response.status_code = 201
        action = "created"
    else:
        camera.ip_address = str(payload.ip_address)
        camera.label = payload.label
        camera.updated_at = utcnow()
        action = "updated"
    db.commit()
    db.refresh(camera)
    logger.info("camera_saved", action=action, camera_id=str(camera.id), land_id=str(land.id))
    return _serialize_camera(camera)


@router.get("/cameras")
def list_cameras(land_id: Optional[str] = None, db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    query = db.query(Camera)
    if land_id:
        query = query.filter(Camera.land_id == _uuid(land_id, "land id"))
    return [_serialize_camera(c) for c in query.order_by(Camera.created_at.desc()).all()]


@router.get("/cameras/{camera_id}")
def get_camera(camera_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    camera = _get_camera(db, camera_id)
    if me.role != Role.ADMIN and camera.land.owner_id != me.id:
        raise Forbidden("Not allowed to view this camera")
    return _serialize_camera(camera)


@router.patch("/cameras/{camera_id}")
def update_camera(
    camera_id: str,
    payload: CameraUpdate,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    camera = _get_camera(db, camera_id)
    camera.ip_address = str(payload.ip_address)
    if payload.label is not None:
        camera.label = payload.label
    camera.updated_at = utcnow()
    db.commit()
    db.refresh(camera)
    logger.info("camera_updated", camera_id=str(camera.id))
    return _serialize_camera(camera)


@router.delete("/cameras/{camera_id}", status_code=204)
def delete_camera(camera_id: str, db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    camera = _get_camera(db, camera_id)
    db.delete(camera)
    db.commit()
    logger.info("camera_deleted", camera_id=camera_id)
    return Response(status_code=204)
