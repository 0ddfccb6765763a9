from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from sqlalchemy.types import TypeDecorator

from . import validators
from .db import Base
from .errors import InvariantViolation
from .schemas import ActivityDetails, OpeningHours, RouteMetadata


def new_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# jsonb on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =========================
# Enums (extend by adding a member, never by renaming one)
# =========================
class AppointmentStatus(enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    NO_SHOW = "no_show"


class AppointmentPriority(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NoteType(enum.Enum):
    PRE_APPOINTMENT = "pre_appointment"
    DURING_APPOINTMENT = "during_appointment"
    POST_APPOINTMENT = "post_appointment"
    FOLLOW_UP = "follow_up"


class OrganisationType(enum.Enum):
    RETAIL = "retail"
    CORPORATE = "corporate"
    GOVERNMENT = "government"
    EDUCATION = "education"
    HEALTHCARE = "healthcare"
    OTHER = "other"


class EnumToken(TypeDecorator):
    """
    Persists the snake_case token, not the member name. An unknown token read
    back from storage raises EnumerationViolation.
    """

    impl = String
    cache_ok = True

    def __init__(self, enum_cls: type[enum.Enum]):
        super().__init__(length=max(len(m.value) for m in enum_cls))
        self.enum_cls = enum_cls

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return validators.coerce_enum(self.enum_cls, value).value

    def process_result_value(self, value, dialect):
        return validators.coerce_optional_enum(self.enum_cls, value)


def _token_check(column: str, enum_cls: type[enum.Enum], name: str) -> CheckConstraint:
    tokens = ", ".join(f"'{m.value}'" for m in enum_cls)
    return CheckConstraint(f"{column} IN ({tokens})", name=name)


# =========================
# Identity & catalog
# =========================
class User(Base):
    """
    Field agent account.
    - email unique, compared exactly as stored
    - password_hash with bcrypt (passlib), never plaintext
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    appointments: Mapped[list["Appointment"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    notes: Mapped[list["Note"]] = relationship(back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    routes: Mapped[list["Route"]] = relationship(back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    tags: Mapped[list["Tag"]] = relationship(back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    activity_logs: Mapped[list["ActivityLog"]] = relationship(back_populates="user", passive_deletes="all")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email

    def __repr__(self) -> str:
        return f"User({self.email})"


class Organisation(Base):
    """Visit destination imported from the places provider; shared, not tenant-owned."""
    __tablename__ = "organisations"
    __table_args__ = (
        Index("org_name_idx", "name"),
        Index("org_location_idx", "latitude", "longitude"),
        Index("org_type_idx", "type"),
        _token_check("type", OrganisationType, "organisation_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    # unique only when present: NULLs never collide
    place_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    latitude: Mapped[str] = mapped_column(String(50), nullable=False)
    longitude: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[OrganisationType | None] = mapped_column(
        EnumToken(OrganisationType), nullable=True
    )
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_person: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # provider metadata
    business_status: Mapped[str | None] = mapped_column(String(50), nullable=True)  # "OPERATIONAL", ...
    rating: Mapped[str | None] = mapped_column(String(10), nullable=True)  # "4.5"
    user_ratings_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    photo_reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    opening_hours: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    appointments: Mapped[list["Appointment"]] = relationship(
        back_populates="organisation", cascade="all, delete-orphan", passive_deletes=True
    )

    @validates("type")
    def _check_type(self, key: str, value: Any) -> OrganisationType | None:
        return validators.coerce_optional_enum(OrganisationType, value)

    @property
    def opening_hours_record(self) -> OpeningHours | None:
        if self.opening_hours is None:
            return None
        return OpeningHours.model_validate(self.opening_hours)

    def __repr__(self) -> str:
        return f"Organisation({self.name}, {self.latitude},{self.longitude})"


# =========================
# Scheduling
# =========================
class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("appointment_user_idx", "user_id"),
        Index("appointment_org_idx", "organisation_id"),
        Index("appointment_date_idx", "scheduled_date"),
        Index("appointment_status_idx", "status"),
        _token_check("status", AppointmentStatus, "appointment_status"),
        _token_check("priority", AppointmentPriority, "appointment_priority"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    organisation_id: Mapped[str] = mapped_column(ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # date and time-of-day are kept apart: clients submit and display them separately
    scheduled_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    scheduled_time: Mapped[str] = mapped_column(String(10), nullable=False)  # "14:30"
    duration: Mapped[int] = mapped_column(Integer, default=60, nullable=False)  # minutes

    status: Mapped[AppointmentStatus] = mapped_column(
        EnumToken(AppointmentStatus), default=AppointmentStatus.SCHEDULED, nullable=False
    )
    priority: Mapped[AppointmentPriority] = mapped_column(
        EnumToken(AppointmentPriority), default=AppointmentPriority.MEDIUM, nullable=False
    )
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    check_in_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    check_out_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # back reference to the appointment this one replaces
    rescheduled_from: Mapped[str | None] = mapped_column(
        ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="appointments")
    organisation: Mapped["Organisation"] = relationship(back_populates="appointments")
    notes: Mapped[list["Note"]] = relationship(
        back_populates="appointment", cascade="all, delete-orphan", passive_deletes=True
    )
    tag_links: Mapped[list["AppointmentTag"]] = relationship(
        back_populates="appointment", cascade="all, delete-orphan", passive_deletes=True
    )
    activity_logs: Mapped[list["ActivityLog"]] = relationship(back_populates="appointment", passive_deletes="all")
    rescheduled_from_appointment: Mapped["Appointment | None"] = relationship(remote_side="Appointment.id")

    @validates("status")
    def _check_status(self, key: str, value: Any) -> AppointmentStatus:
        return validators.coerce_enum(AppointmentStatus, value)

    @validates("priority")
    def _check_priority(self, key: str, value: Any) -> AppointmentPriority:
        return validators.coerce_enum(AppointmentPriority, value)

    @validates("scheduled_time")
    def _check_time(self, key: str, value: str) -> str:
        return validators.time_of_day(value)

    def __repr__(self) -> str:
        return f"Appointment({self.title}, {self.scheduled_date:%Y-%m-%d} {self.scheduled_time}, {self.status.value})"


# =========================
# Attached data
# =========================
class Note(Base):
    __tablename__ = "notes"
    __table_args__ = (
        Index("note_appointment_idx", "appointment_id"),
        Index("note_user_idx", "user_id"),
        _token_check("type", NoteType, "note_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    appointment_id: Mapped[str] = mapped_column(ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[NoteType] = mapped_column(
        EnumToken(NoteType), default=NoteType.DURING_APPOINTMENT, nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)  # URLs, not FK-checked
    is_important: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    appointment: Mapped["Appointment"] = relationship(back_populates="notes")
    user: Mapped["User"] = relationship(back_populates="notes")

    @validates("type")
    def _check_type(self, key: str, value: Any) -> NoteType:
        return validators.coerce_enum(NoteType, value)


class Route(Base):
    """
    A user's visit order for one day, as computed by the map provider.
    Several routes on the same day are allowed; the index only serves lookups.
    """
    __tablename__ = "routes"
    __table_args__ = (Index("route_user_date_idx", "user_id", "route_date"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    route_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    appointment_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)  # order matters
    route_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="routes")

    @property
    def route_metadata_record(self) -> RouteMetadata | None:
        if self.route_metadata is None:
            return None
        return RouteMetadata.model_validate(self.route_metadata)


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        # tenant-scoped uniqueness: the owner is part of the key
        UniqueConstraint("user_id", "name", name="tag_user_name_idx"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[str] = mapped_column(String(7), default="#3B82F6", nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="tags")
    appointment_links: Mapped[list["AppointmentTag"]] = relationship(
        back_populates="tag", cascade="all, delete-orphan", passive_deletes=True
    )


class AppointmentTag(Base):
    """Join row; the (appointment, tag) pair is the key, so a pair exists once."""
    __tablename__ = "appointment_tags"
    __table_args__ = (Index("appointment_tag_tag_idx", "tag_id"),)

    appointment_id: Mapped[str] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    appointment: Mapped["Appointment"] = relationship(back_populates="tag_links")
    tag: Mapped["Tag"] = relationship(back_populates="appointment_links")


class ActivityLog(Base):
    """Append-only audit row: written once, never updated."""
    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("activity_user_idx", "user_id"),
        Index("activity_appointment_idx", "appointment_id"),
        Index("activity_created_idx", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    # optional: some actions are not about an appointment
    appointment_id: Mapped[str | None] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)  # "created", "status_changed", ...
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship(back_populates="activity_logs")
    appointment: Mapped["Appointment | None"] = relationship(back_populates="activity_logs")

    @property
    def details_record(self) -> ActivityDetails | None:
        if self.details is None:
            return None
        return ActivityDetails.model_validate(self.details)


# =========================
# Write-time rules
# =========================
@event.listens_for(Appointment, "before_insert")
@event.listens_for(Appointment, "before_update")
def _appointment_invariants(mapper, connection, target: Appointment) -> None:
    validators.check_appointment(target, AppointmentStatus.CANCELLED)


@event.listens_for(ActivityLog, "before_update")
def _activity_log_is_append_only(mapper, connection, target: ActivityLog) -> None:
    raise InvariantViolation("activity logs are append-only")
