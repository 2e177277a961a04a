import enum
import uuid
from datetime import date as date_type, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Float,
    Numeric,
    Text,
    Index,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns round-trip on every backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class Role(str, enum.Enum):
    GUEST = "GUEST"
    CLIENT = "CLIENT"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class PlotStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ADVANCE = "ADVANCE"
    SOLD = "SOLD"


class VisitStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


OPEN_VISIT_STATUSES = (VisitStatus.PENDING, VisitStatus.ASSIGNED, VisitStatus.APPROVED)


class LeaveStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BuyStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


def _enum_column(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True)


# Association table for many-to-many manager<->office
manager_offices = Table(
    "manager_offices",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("office_id", UUID(as_uuid=True), ForeignKey("offices.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "office_id", name="uq_manager_office"),
)


# Clients linked to the plots (layouts) they hold land in
client_plots = Table(
    "client_plots",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("plot_id", UUID(as_uuid=True), ForeignKey("plots.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", DateTime, default=utcnow),
)


class User(Base):
    """Local mirror of an identity-provider account"""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    external_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)  # Identity provider subject
    name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)  # Lowercased
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[Role] = mapped_column(_enum_column(Role), default=Role.GUEST, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    offices = relationship("Office", secondary=manager_offices, back_populates="managers")
    assigned_plots = relationship("Plot", secondary=client_plots, back_populates="clients")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(String(2000))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    plots = relationship("Plot", back_populates="project", cascade="all, delete-orphan")


class Plot(Base):
    __tablename__ = "plots"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(500))
    dimension: Mapped[Optional[str]] = mapped_column(String(100))
    price: Mapped[Optional[int]] = mapped_column(Integer)
    price_label: Mapped[Optional[str]] = mapped_column(String(100))
    facing: Mapped[Optional[str]] = mapped_column(String(50))
    description: Mapped[Optional[str]] = mapped_column(String(2000))
    latitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    longitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    status: Mapped[PlotStatus] = mapped_column(_enum_column(PlotStatus), default=PlotStatus.AVAILABLE, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    project = relationship("Project", back_populates="plots")
    lands = relationship("Land", back_populates="plot", cascade="all, delete-orphan", order_by="Land.number")
    clients = relationship("User", secondary=client_plots, back_populates="assigned_plots")


class VisitRequest(Base):
    """A visitor's booking to tour one plot at a given date/time slot"""
    __tablename__ = "visit_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    # Visitor contact, captured at submission time
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    time: Mapped[str] = mapped_column(String(20), nullable=False)  # Slot label HH:MM

    plot_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("plots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    status: Mapped[VisitStatus] = mapped_column(
        _enum_column(VisitStatus), default=VisitStatus.PENDING, nullable=False, index=True
    )
    assigned_manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )

    # Decision artifacts
    qr_code: Mapped[Optional[str]] = mapped_column(Text)  # data:image/png;base64,...
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    plot = relationship("Plot")
    user = relationship("User", foreign_keys=[user_id])
    assigned_manager = relationship("User", foreign_keys=[assigned_manager_id])

    __table_args__ = (
        Index("idx_visit_requests_plot_status", "plot_id", "status"),
        Index("idx_visit_requests_manager_created", "assigned_manager_id", "created_at"),
    )


class Notification(Base):
    """In-app notification; rows in status pending double as the dispatch outbox"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(100), nullable=False)  # VISIT_REQUEST_APPROVED, LEAVE_REQUEST_REJECTED, ...
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sending|sent|failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)  # Set when a dispatcher takes the row
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user = relationship("User")

    __table_args__ = (
        Index('idx_notifications_user_read', 'user_id', 'read'),
        Index('idx_notifications_status_created', 'status', 'created_at'),
    )


class Office(Base):
    __tablename__ = "offices"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    managers = relationship("User", secondary=manager_offices, back_populates="offices")


class Attendance(Base):
    """Manager check-in at an assigned office"""
    __tablename__ = "attendance"

    id: Mapped[uuid.UUID] = uuid_pk()
    manager_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    office_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("offices.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="PRESENT")
    distance_m: Mapped[Optional[float]] = mapped_column(Float)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    office = relationship("Office")

    __table_args__ = (
        Index('idx_attendance_manager_created', 'manager_id', 'created_at'),
    )


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    start_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    end_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[LeaveStatus] = mapped_column(_enum_column(LeaveStatus), default=LeaveStatus.PENDING, nullable=False, index=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user = relationship("User", foreign_keys=[user_id])


class Land(Base):
    """A numbered parcel inside a plot layout; x/y place it on the layout map"""
    __tablename__ = "lands"

    id: Mapped[uuid.UUID] = uuid_pk()
    plot_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("plots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    number: Mapped[str] = mapped_column(String(50), nullable=False)
    size: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PlotStatus] = mapped_column(_enum_column(PlotStatus), default=PlotStatus.AVAILABLE, nullable=False, index=True)
    x: Mapped[float] = mapped_column(Float, nullable=False)
    y: Mapped[float] = mapped_column(Float, nullable=False)
    owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    plot = relationship("Plot", back_populates="lands")
    owner = relationship("User")
    camera = relationship("Camera", back_populates="land", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("plot_id", "number", name="uq_land_plot_number"),
    )


class Camera(Base):
    """Site camera watching one land parcel"""
    __tablename__ = "cameras"

    id: Mapped[uuid.UUID] = uuid_pk()
    land_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("lands.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    ip_address: Mapped[str] = mapped_column(String(100), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    land = relationship("Land", back_populates="camera")


class BuyRequest(Base):
    """Purchase enquiry for a land parcel, worked by an assigned manager"""
    __tablename__ = "buy_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text)
    land_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("lands.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    status: Mapped[BuyStatus] = mapped_column(_enum_column(BuyStatus), default=BuyStatus.PENDING, nullable=False, index=True)
    assigned_manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    land = relationship("Land")
    user = relationship("User", foreign_keys=[user_id])
    assigned_manager = relationship("User", foreign_keys=[assigned_manager_id])
