"""Shared pytest fixtures for testing."""

import os

# Configure before the application modules read settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["ENABLE_NOTIFICATION_DISPATCHER"] = "false"
os.environ["RATE_LIMIT"] = "100000/minute"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("IDENTITY_WEBHOOK_SECRET", None)

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from plotdesk.auth.security import create_access_token
from plotdesk.db import Base, build_engine, get_db
from plotdesk.main import app
from plotdesk.models.models import Land, Plot, PlotStatus, Project, Role, User
from plotdesk.services.visit_requests import today_local


@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(db_engine):
    """Session shared by the test body and the API under test."""
    session = sessionmaker(bind=db_engine, autoflush=False, autocommit=False, future=True)()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def client(db):
    """Test client with the database dependency overridden."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as tc:
        yield tc
    app.dependency_overrides.clear()


def _user(db, external_id, name, email, role, phone="+91 98765 43210"):
    user = User(external_id=external_id, name=name, email=email, phone=phone, role=role, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin(db):
    return _user(db, "user_admin", "Asha Admin", "admin@example.com", Role.ADMIN)


@pytest.fixture
def manager(db):
    return _user(db, "user_m1", "Manoj Manager", "m1@example.com", Role.MANAGER)


@pytest.fixture
def other_manager(db):
    return _user(db, "user_m2", "Meera Manager", "m2@example.com", Role.MANAGER)


@pytest.fixture
def visitor(db):
    return _user(db, "user_client", "Chitra Client", "client@example.com", Role.CLIENT)


@pytest.fixture
def project(db):
    p = Project(name="Green Meadows", location="Whitefield")
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def plot(db, project):
    p = Plot(project_id=project.id, title="Plot A-12", location="Block A", price=2500000, status=PlotStatus.AVAILABLE)
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def land(db, plot):
    parcel = Land(plot_id=plot.id, number="14", size="30x40", price=2400000, x=120.0, y=80.0)
    db.add(parcel)
    db.commit()
    db.refresh(parcel)
    return parcel


@pytest.fixture
def tomorrow():
    return (today_local() + timedelta(days=1)).isoformat()


@pytest.fixture
def auth():
    """Build bearer headers for a user."""

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.external_id)}"}

    return _headers


@pytest.fixture
def booking(plot, tomorrow):
    """Valid booking form for the plot."""
    return {
        "visitor_name": "Chitra Client",
        "email": "client@example.com",
        "phone": "+91 98765 43210",
        "visit_date": tomorrow,
        "visit_time": "10:30",
        "plot_id": str(plot.id),
    }
