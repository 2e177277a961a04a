from typing import Optional
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..errors import InvalidFormat, NotFound
from ..logging import get_logger
from ..models.models import Plot, PlotStatus, Project, Role, User, utcnow
from ..schemas.plots import PlotClientAssign, PlotCreate, PlotStatusUpdate, ProjectCreate
from ..services.identity import find_active_client


router = APIRouter(tags=["plots"])
logger = get_logger(__name__)


def _serialize_project(p: Project) -> dict:
    return {
        "id": str(p.id),
        "name": p.name,
        "location": p.location,
        "description": p.description,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _serialize_plot(p: Plot) -> dict:
    return {
        "id": str(p.id),
        "project_id": str(p.project_id),
        "project_name": p.project.name if p.project else None,
        "title": p.title,
        "location": p.location,
        "dimension": p.dimension,
        "price": p.price,
        "price_label": p.price_label,
        "facing": p.facing,
        "description": p.description,
        "latitude": float(p.latitude) if p.latitude is not None else None,
        "longitude": float(p.longitude) if p.longitude is not None else None,
        "status": p.status.value,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }


def _uuid(raw: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise InvalidFormat(f"Invalid {label}")


def _get_plot(db: Session, plot_id: str) -> Plot:
    plot = db.query(Plot).filter(Plot.id == _uuid(plot_id, "plot id")).first()
    if not plot:
        raise NotFound("Plot not found")
    return plot


@router.post("/projects", status_code=201)
def create_project(payload: ProjectCreate, db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    project = Project(name=payload.name, location=payload.location, description=payload.description)
    db.add(project)
    db.commit()
    db.refresh(project)
    logger.info("project_created", project_id=str(project.id))
    return _serialize_project(project)


@router.get("/projects")
def list_projects(db: Session = Depends(get_db)):
    return [_serialize_project(p) for p in db.query(Project).order_by(Project.name.asc()).all()]


@router.post("/plots", status_code=201)
def create_plot(payload: PlotCreate, db: Session = Depends(get_db), _=Depends(require_roles(Role.ADMIN))):
    project = db.query(Project).filter(Project.id == payload.project_id).first()
    if not project:
        raise NotFound("Project not found")
    plot = Plot(**payload.model_dump())
    db.add(plot)
    db.commit()
    db.refresh(plot)
    logger.info("plot_created", plot_id=str(plot.id), project_id=str(project.id))
    return _serialize_plot(plot)


@router.get("/plots")
def list_plots(
    project_id: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = db.query(Plot)
    if project_id:
        query = query.filter(Plot.project_id == _uuid(project_id, "project id"))
    if status:
        try:
            wanted = PlotStatus(status.strip().upper())
        except ValueError:
            raise InvalidFormat(f"Unknown plot status '{status}'", {"allowed": [s.value for s in PlotStatus]})
        query = query.filter(Plot.status == wanted)
    return [_serialize_plot(p) for p in query.order_by(Plot.created_at.desc()).all()]


@router.get("/plots/assigned")
def list_my_assigned_plots(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    """Plots the caller has been linked to as a client."""
    plots = (
        db.query(Plot)
        .filter(Plot.clients.any(User.id == me.id))
        .order_by(Plot.title.asc())
        .all()
    )
    return [_serialize_plot(p) for p in plots]


@router.get("/plots/{plot_id}")
def get_plot(plot_id: str, db: Session = Depends(get_db)):
    return _serialize_plot(_get_plot(db, plot_id))


@router.patch("/plots/{plot_id}/status")
def update_plot_status(
    plot_id: str,
    payload: PlotStatusUpdate,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    plot = _get_plot(db, plot_id)
    plot.status = payload.status
    plot.updated_at = utcnow()
    db.commit()
    db.refresh(plot)
    logger.info("plot_status_changed", plot_id=str(plot.id), status=plot.status.value)
    return _serialize_plot(plot)


@router.post("/plots/{plot_id}/assign-client")
def assign_client_to_plot(
    plot_id: str,
    payload: PlotClientAssign,
    db: Session = Depends(get_db),
    _=Depends(require_roles(Role.ADMIN)),
):
    """Link a client to a plot layout; linking twice is a no-op."""
    plot = _get_plot(db, plot_id)
    client = find_active_client(db, payload.client_id)
    created = plot not in client.assigned_plots
    if created:
        client.assigned_plots.append(plot)
        db.commit()
        logger.info("plot_client_assigned", plot_id=str(plot.id), user_id=str(client.id))
    return {"plot_id": str(plot.id), "user_id": str(client.id), "created": created}
