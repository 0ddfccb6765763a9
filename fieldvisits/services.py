from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from . import activity_service, validators
from .activity_service import RequestContext
from .db import Base, db_session, engine
from .errors import InvariantViolation, NotFound, ReferentialViolation
from .models import (
    Appointment,
    AppointmentPriority,
    AppointmentStatus,
    Note,
    NoteType,
    Organisation,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

# fields update_appointment() may touch; status has its own entry point
EDITABLE_FIELDS = (
    "title",
    "description",
    "scheduled_date",
    "scheduled_time",
    "duration",
    "priority",
    "organisation_id",
    "rescheduled_from",
)

NOTE_FIELDS = ("content", "type", "attachments", "is_important")


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Create the tables if they do not exist."""
    Base.metadata.create_all(bind=engine)


# =========================
# Helper / DTO
# =========================
@dataclass(frozen=True)
class RescheduleResult:
    previous_id: str
    appointment_id: str


def naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware values are converted."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def as_datetime(value: date | datetime) -> datetime:
    """Dates are stored as midnight timestamps."""
    if isinstance(value, datetime):
        return naive_utc(value)
    return datetime.combine(value, datetime.min.time())


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, datetime.min.time())
    return start, start + timedelta(days=1)


def _snapshot(a: Appointment, keys: Iterable[str] | None = None) -> dict[str, Any]:
    keys = keys or ("title", "scheduled_date", "scheduled_time", "duration", "status", "priority", "organisation_id")
    out: dict[str, Any] = {}
    for k in keys:
        v = getattr(a, k)
        if isinstance(v, (AppointmentStatus, AppointmentPriority)):
            v = v.value
        elif isinstance(v, datetime):
            v = v.isoformat()
        out[k] = v
    return out


def _get_appointment(s: Session, appointment_id: str) -> Appointment:
    a = s.get(Appointment, appointment_id)
    if a is None:
        raise NotFound("Appointment", appointment_id)
    return a


def _check_rescheduled_from(s: Session, user_id: str, previous_id: str, appointment_id: str | None = None) -> None:
    """
    The previous appointment must exist, belong to the same user and must not
    lead back to `appointment_id` (the storage layer does not forbid cycles).
    """
    prev = s.get(Appointment, previous_id)
    if prev is None:
        raise ReferentialViolation(f"rescheduled_from points to a missing appointment: {previous_id}")
    if prev.user_id != user_id:
        raise ReferentialViolation("rescheduled_from points to another user's appointment")
    if appointment_id is None:
        return

    seen: set[str] = set()
    current: Appointment | None = prev
    while current is not None and current.id not in seen:
        if current.id == appointment_id:
            raise InvariantViolation("rescheduled_from would create a cycle")
        seen.add(current.id)
        current = s.get(Appointment, current.rescheduled_from) if current.rescheduled_from else None


# =========================
# Appointments: CRUD
# =========================
def create_appointment(
    user_id: str,
    organisation_id: str,
    title: str,
    scheduled_date: date | datetime,
    scheduled_time: str,
    duration: int = 60,
    priority: AppointmentPriority | str = AppointmentPriority.MEDIUM,
    description: str | None = None,
    rescheduled_from: str | None = None,
    context: RequestContext | None = None,
) -> str:
    """New appointments always start as scheduled."""
    title = validators.non_empty(title, "title")

    with db_session() as s:
        if s.get(User, user_id) is None:
            raise NotFound("User", user_id)
        if s.get(Organisation, organisation_id) is None:
            raise NotFound("Organisation", organisation_id)
        if rescheduled_from is not None:
            _check_rescheduled_from(s, user_id, rescheduled_from)

        a = Appointment(
            user_id=user_id,
            organisation_id=organisation_id,
            title=title,
            description=description,
            scheduled_date=as_datetime(scheduled_date),
            scheduled_time=scheduled_time,
            duration=duration,
            status=AppointmentStatus.SCHEDULED,
            priority=priority,
            rescheduled_from=rescheduled_from,
        )
        s.add(a)
        s.flush()

        activity_service.record(s, user_id, "created", appointment_id=a.id, details={"after": _snapshot(a)}, context=context)
        logger.info("appointment %s created for user %s", a.id, user_id)
        return a.id


def get_appointment(appointment_id: str) -> Appointment | None:
    with db_session() as s:
        return s.get(Appointment, appointment_id)


def list_appointments(
    user_id: str,
    day: date | None = None,
    status: AppointmentStatus | str | None = None,
) -> list[Appointment]:
    with db_session() as s:
        q = select(Appointment).where(Appointment.user_id == user_id)
        if day is not None:
            start, end = day_bounds(day)
            q = q.where(and_(Appointment.scheduled_date >= start, Appointment.scheduled_date < end))
        if status is not None:
            q = q.where(Appointment.status == validators.coerce_enum(AppointmentStatus, status))
        q = q.order_by(Appointment.scheduled_date.asc(), Appointment.scheduled_time.asc())
        return list(s.scalars(q))


def list_for_organisation(organisation_id: str) -> list[Appointment]:
    with db_session() as s:
        q = (
            select(Appointment)
            .where(Appointment.organisation_id == organisation_id)
            .order_by(Appointment.scheduled_date.asc(), Appointment.scheduled_time.asc())
        )
        return list(s.scalars(q))


def daily_agenda(user_id: str, day: date) -> list[dict]:
    """
    Flat version of a day's visits (serialisable dicts, no lazy loads).
    Cancelled and rescheduled appointments are left out.
    """
    start, end = day_bounds(day)
    with db_session() as s:
        q = (
            select(
                Appointment.id,
                Appointment.title,
                Appointment.scheduled_time,
                Appointment.duration,
                Appointment.status,
                Appointment.priority,
                Organisation.name.label("organisation_name"),
                Organisation.address.label("address"),
                Organisation.latitude,
                Organisation.longitude,
            )
            .join(Organisation, Organisation.id == Appointment.organisation_id)
            .where(
                and_(
                    Appointment.user_id == user_id,
                    Appointment.scheduled_date >= start,
                    Appointment.scheduled_date < end,
                    Appointment.status.not_in([AppointmentStatus.CANCELLED, AppointmentStatus.RESCHEDULED]),
                )
            )
            .order_by(Appointment.scheduled_time.asc())
        )

        rows = s.execute(q).all()
        return [
            {
                "id": r.id,
                "title": r.title,
                "time": r.scheduled_time,
                "duration": r.duration,
                "status": r.status.value,
                "priority": r.priority.value,
                "organisation": r.organisation_name,
                "address": r.address,
                "latitude": r.latitude,
                "longitude": r.longitude,
            }
            for r in rows
        ]


def update_appointment(appointment_id: str, context: RequestContext | None = None, **fields: Any) -> Appointment:
    """Edit scheduling fields; the diff of what actually changed is logged."""
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvariantViolation(f"Not an editable field: {', '.join(sorted(unknown))}")
    if "scheduled_date" in fields:
        fields["scheduled_date"] = as_datetime(fields["scheduled_date"])
    if "title" in fields:
        fields["title"] = validators.non_empty(fields["title"], "title")

    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        if "organisation_id" in fields and s.get(Organisation, fields["organisation_id"]) is None:
            raise NotFound("Organisation", fields["organisation_id"])
        if fields.get("rescheduled_from") is not None:
            _check_rescheduled_from(s, a.user_id, fields["rescheduled_from"], appointment_id=a.id)

        before = _snapshot(a, fields)
        for k, v in fields.items():
            setattr(a, k, v)
        after = _snapshot(a, fields)
        changed = [k for k in fields if before[k] != after[k]]
        if changed:
            s.flush()
            activity_service.record(
                s,
                a.user_id,
                "updated",
                appointment_id=a.id,
                details={"before": {k: before[k] for k in changed}, "after": {k: after[k] for k in changed}},
                context=context,
            )
        return a


def delete_appointment(appointment_id: str) -> None:
    """Notes, tag links and the appointment's activity rows go with it."""
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        s.delete(a)
        logger.info("appointment %s deleted", appointment_id)


# =========================
# Appointments: lifecycle
# =========================
def _apply_status(
    s: Session,
    a: Appointment,
    status: AppointmentStatus | str,
    reason: str | None,
    context: RequestContext | None,
    actor_user_id: str | None = None,
) -> None:
    new_status = validators.coerce_enum(AppointmentStatus, status)
    old = {"status": a.status.value, "cancellation_reason": a.cancellation_reason}

    if new_status == AppointmentStatus.CANCELLED:
        a.cancellation_reason = validators.non_empty(reason, "cancellation_reason")
        a.cancelled_at = utcnow()
    else:
        if reason is not None:
            raise InvariantViolation("a reason is only accepted when cancelling")
        a.cancellation_reason = None
        a.cancelled_at = None
    a.status = new_status
    s.flush()

    new = {"status": a.status.value, "cancellation_reason": a.cancellation_reason}
    # last writer wins on the row; every attempt still gets its own audit entry
    activity_service.record(
        s,
        actor_user_id or a.user_id,
        "status_changed",
        appointment_id=a.id,
        details={"before": old, "after": new},
        context=context,
    )


def update_status(
    appointment_id: str,
    status: AppointmentStatus | str,
    reason: str | None = None,
    context: RequestContext | None = None,
    actor_user_id: str | None = None,
) -> Appointment:
    """
    Explicit status change requested by the application layer.
    No transition table: any status may follow any other.
    """
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        _apply_status(s, a, status, reason, context, actor_user_id)
        logger.info("appointment %s -> %s", a.id, a.status.value)
        return a


def cancel_appointment(appointment_id: str, reason: str, context: RequestContext | None = None) -> Appointment:
    return update_status(appointment_id, AppointmentStatus.CANCELLED, reason=reason, context=context)


def reschedule_appointment(
    appointment_id: str,
    new_date: date | datetime,
    new_time: str,
    duration: int | None = None,
    context: RequestContext | None = None,
) -> RescheduleResult:
    """
    Use case: move a visit.
    In one transaction:
    - insert the replacement (scheduled, rescheduled_from = old id)
    - mark the old appointment rescheduled
    - write the audit rows
    """
    with db_session() as s:
        old = _get_appointment(s, appointment_id)
        if old.status == AppointmentStatus.RESCHEDULED:
            raise InvariantViolation("appointment was already rescheduled")

        new = Appointment(
            user_id=old.user_id,
            organisation_id=old.organisation_id,
            title=old.title,
            description=old.description,
            scheduled_date=as_datetime(new_date),
            scheduled_time=new_time,
            duration=duration if duration is not None else old.duration,
            status=AppointmentStatus.SCHEDULED,
            priority=old.priority,
            rescheduled_from=old.id,
        )
        s.add(new)
        s.flush()

        activity_service.record(
            s, old.user_id, "created", appointment_id=new.id, details={"after": _snapshot(new)}, context=context
        )
        _apply_status(s, old, AppointmentStatus.RESCHEDULED, None, context)
        activity_service.record(
            s,
            old.user_id,
            "rescheduled",
            appointment_id=old.id,
            details={
                "before": _snapshot(old, ("scheduled_date", "scheduled_time")),
                "after": {**_snapshot(new, ("scheduled_date", "scheduled_time")), "appointment_id": new.id},
            },
            context=context,
        )
        logger.info("appointment %s rescheduled as %s", old.id, new.id)
        return RescheduleResult(previous_id=old.id, appointment_id=new.id)


def reschedule_history(appointment_id: str) -> list[Appointment]:
    """The appointment followed by the ones it replaced, newest first."""
    with db_session() as s:
        chain: list[Appointment] = []
        seen: set[str] = set()
        current = s.get(Appointment, appointment_id)
        while current is not None and current.id not in seen:
            chain.append(current)
            seen.add(current.id)
            current = s.get(Appointment, current.rescheduled_from) if current.rescheduled_from else None
        return chain


def check_in(appointment_id: str, at: datetime | None = None, context: RequestContext | None = None) -> Appointment:
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        a.check_in_time = naive_utc(at) if at else utcnow()
        s.flush()
        activity_service.record(
            s, a.user_id, "checked_in", appointment_id=a.id,
            details={"after": {"check_in_time": a.check_in_time.isoformat()}}, context=context,
        )
        return a


def check_out(appointment_id: str, at: datetime | None = None, context: RequestContext | None = None) -> Appointment:
    """Rejected (before commit) when it would precede the check-in."""
    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        a.check_out_time = naive_utc(at) if at else utcnow()
        s.flush()
        activity_service.record(
            s, a.user_id, "checked_out", appointment_id=a.id,
            details={"after": {"check_out_time": a.check_out_time.isoformat()}}, context=context,
        )
        return a


# =========================
# Reminders (read by an external notifier)
# =========================
def due_for_reminder(day: date, limit: int = 200) -> list[Appointment]:
    """Scheduled/confirmed appointments on `day` whose reminder has not gone out."""
    start, end = day_bounds(day)
    with db_session() as s:
        q = (
            select(Appointment)
            .where(
                and_(
                    Appointment.scheduled_date >= start,
                    Appointment.scheduled_date < end,
                    Appointment.reminder_sent.is_(False),
                    Appointment.status.in_([AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED]),
                )
            )
            .order_by(Appointment.scheduled_time.asc())
            .limit(limit)
        )
        return list(s.scalars(q))


def mark_reminder_sent(appointment_id: str) -> bool:
    with db_session() as s:
        a = s.get(Appointment, appointment_id)
        if not a or a.reminder_sent:
            return False
        a.reminder_sent = True
        return True


# =========================
# Notes
# =========================
def add_note(
    appointment_id: str,
    user_id: str,
    content: str,
    note_type: NoteType | str = NoteType.DURING_APPOINTMENT,
    attachments: list[str] | None = None,
    is_important: bool = False,
) -> str:
    """The author must be the agent who owns the appointment."""
    content = validators.non_empty(content, "content")
    attachments = validators.attachment_urls(attachments)

    with db_session() as s:
        a = _get_appointment(s, appointment_id)
        if a.user_id != user_id:
            raise ReferentialViolation("note author does not own the appointment")
        n = Note(
            appointment_id=appointment_id,
            user_id=user_id,
            type=note_type,
            content=content,
            attachments=attachments,
            is_important=is_important,
        )
        s.add(n)
        s.flush()
        return n.id


def get_note(note_id: str) -> Note | None:
    with db_session() as s:
        return s.get(Note, note_id)


def list_notes(appointment_id: str) -> list[Note]:
    with db_session() as s:
        q = select(Note).where(Note.appointment_id == appointment_id).order_by(Note.created_at.asc())
        return list(s.scalars(q))


def list_user_notes(user_id: str, important_only: bool = False) -> list[Note]:
    with db_session() as s:
        q = select(Note).where(Note.user_id == user_id)
        if important_only:
            q = q.where(Note.is_important.is_(True))
        return list(s.scalars(q.order_by(Note.created_at.desc())))


def update_note(note_id: str, **fields: Any) -> Note:
    unknown = set(fields) - set(NOTE_FIELDS)
    if unknown:
        raise InvariantViolation(f"Not a note field: {', '.join(sorted(unknown))}")
    if "content" in fields:
        fields["content"] = validators.non_empty(fields["content"], "content")
    if "attachments" in fields:
        fields["attachments"] = validators.attachment_urls(fields["attachments"])

    with db_session() as s:
        n = s.get(Note, note_id)
        if n is None:
            raise NotFound("Note", note_id)
        for k, v in fields.items():
            setattr(n, k, v)
        return n


def delete_note(note_id: str) -> None:
    with db_session() as s:
        n = s.get(Note, note_id)
        if n is None:
            raise NotFound("Note", note_id)
        s.delete(n)
