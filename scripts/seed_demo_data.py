"""
Seed the local database with a demo admin, two managers, a project with plots,
lands with a site camera and an office, then print bearer tokens for each account.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (external id for users, name for projects,
plots and offices, plot and number for lands).
"""

import os
from typing import Optional

from plotdesk.auth.security import create_access_token
from plotdesk.config import settings
from plotdesk.db import SessionLocal, Base, engine
from plotdesk.models.models import Camera, Land, Office, Plot, PlotStatus, Project, Role, User


def ensure_user(session, external_id: str, name: str, email: str, role: Role) -> User:
    user = session.query(User).filter(User.external_id == external_id).first()
    if user:
        if user.role != role:
            user.role = role
        return user
    user = User(external_id=external_id, name=name, email=email, role=role, is_active=True)
    session.add(user)
    session.flush()
    return user


def ensure_project(session, name: str, location: Optional[str] = None) -> Project:
    project = session.query(Project).filter(Project.name == name).first()
    if project:
        return project
    project = Project(name=name, location=location)
    session.add(project)
    session.flush()
    return project


def ensure_plot(session, project: Project, title: str, **kwargs) -> Plot:
    plot = session.query(Plot).filter(Plot.project_id == project.id, Plot.title == title).first()
    if plot:
        return plot
    plot = Plot(project_id=project.id, title=title, **kwargs)
    session.add(plot)
    session.flush()
    return plot


def ensure_land(session, plot: Plot, number: str, **kwargs) -> Land:
    land = session.query(Land).filter(Land.plot_id == plot.id, Land.number == number).first()
    if land:
        return land
    land = Land(plot_id=plot.id, number=number, **kwargs)
    session.add(land)
    session.flush()
    return land


def ensure_office(session, name: str, latitude: float, longitude: float, managers: list[User]) -> Office:
    office = session.query(Office).filter(Office.name == name).first()
    if not office:
        office = Office(name=name, latitude=latitude, longitude=longitude)
        session.add(office)
        session.flush()
    for m in managers:
        if office not in m.offices:
            m.offices.append(office)
    return office


def main() -> None:
    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        admin = ensure_user(session, "demo_admin", "Demo Admin", "admin@plotdesk.example", Role.ADMIN)
        m1 = ensure_user(session, "demo_manager_1", "Ravi Kumar", "ravi@plotdesk.example", Role.MANAGER)
        m2 = ensure_user(session, "demo_manager_2", "Sana Iqbal", "sana@plotdesk.example", Role.MANAGER)

        meadows = ensure_project(session, "Green Meadows", location="Whitefield, Bengaluru")
        phase_a = ensure_plot(session, meadows, "Plot A-1", dimension="30x40", price=2400000, facing="East")
        ensure_plot(session, meadows, "Plot A-2", dimension="30x50", price=3000000, facing="North")
        ensure_plot(session, meadows, "Plot B-7", dimension="40x60", price=4800000, status=PlotStatus.SOLD)

        gate_land = ensure_land(session, phase_a, "1", size="30x40", price=2400000, x=40.0, y=60.0)
        ensure_land(session, phase_a, "2", size="30x40", price=2400000, x=80.0, y=60.0)
        if gate_land.camera is None:
            session.add(Camera(land_id=gate_land.id, ip_address="192.168.10.21", label="Gate"))

        ensure_office(session, "Whitefield Sales Office", 12.9698, 77.7500, [m1, m2])

        session.commit()
        print("Seed completed: users, project, plots, lands and office upserted.")
        for user in (admin, m1, m2):
            print(f"{user.role.value:8} {user.external_id}: {create_access_token(user.external_id)}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
