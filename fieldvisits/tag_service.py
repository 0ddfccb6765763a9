from __future__ import annotations

import logging

from sqlalchemy import select

from . import validators
from .db import db_session
from .errors import InvariantViolation, NotFound, ReferentialViolation, UniquenessViolation
from .models import Appointment, AppointmentTag, Tag

logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#3B82F6"
MAX_NAME_LENGTH = 50


def _tag_name(name: str) -> str:
    name = validators.non_empty(name, "tag name")
    if len(name) > MAX_NAME_LENGTH:
        raise InvariantViolation(f"tag name longer than {MAX_NAME_LENGTH} characters")
    return name


def create_tag(user_id: str, name: str, color: str = DEFAULT_COLOR) -> str:
    """Names are unique per user; another user may reuse the same name."""
    name = _tag_name(name)
    color = validators.hex_color(color)

    with db_session() as s:
        exists = s.execute(select(Tag.id).where(Tag.user_id == user_id, Tag.name == name)).scalar_one_or_none()
        if exists:
            logger.warning("rejected duplicate tag %r for user %s", name, user_id)
            raise UniquenessViolation(f"Tag already exists: {name}")
        t = Tag(user_id=user_id, name=name, color=color)
        s.add(t)
        s.flush()
        return t.id


def update_tag(tag_id: str, name: str | None = None, color: str | None = None) -> Tag:
    with db_session() as s:
        t = s.get(Tag, tag_id)
        if t is None:
            raise NotFound("Tag", tag_id)
        if name is not None:
            name = _tag_name(name)
            clash = s.execute(
                select(Tag.id).where(Tag.user_id == t.user_id, Tag.name == name, Tag.id != t.id)
            ).scalar_one_or_none()
            if clash:
                raise UniquenessViolation(f"Tag already exists: {name}")
            t.name = name
        if color is not None:
            t.color = validators.hex_color(color)
        return t


def list_tags(user_id: str) -> list[Tag]:
    with db_session() as s:
        return list(s.scalars(select(Tag).where(Tag.user_id == user_id).order_by(Tag.name)))


def delete_tag(tag_id: str) -> None:
    with db_session() as s:
        t = s.get(Tag, tag_id)
        if t is None:
            raise NotFound("Tag", tag_id)
        s.delete(t)


# =========================
# Appointment <-> Tag links
# =========================
def tag_appointment(appointment_id: str, tag_id: str) -> bool:
    """
    Idempotent: returns True when the link was added, False when it already
    existed. A concurrent duplicate loses on the primary key.
    """
    with db_session() as s:
        a = s.get(Appointment, appointment_id)
        if a is None:
            raise NotFound("Appointment", appointment_id)
        t = s.get(Tag, tag_id)
        if t is None:
            raise NotFound("Tag", tag_id)
        if a.user_id != t.user_id:
            raise ReferentialViolation("tag and appointment belong to different users")

        if s.get(AppointmentTag, (appointment_id, tag_id)) is not None:
            return False
        s.add(AppointmentTag(appointment_id=appointment_id, tag_id=tag_id))
        s.flush()
        return True


def untag_appointment(appointment_id: str, tag_id: str) -> bool:
    with db_session() as s:
        link = s.get(AppointmentTag, (appointment_id, tag_id))
        if link is None:
            return False
        s.delete(link)
        return True


def tags_for_appointment(appointment_id: str) -> list[Tag]:
    with db_session() as s:
        q = (
            select(Tag)
            .join(AppointmentTag, AppointmentTag.tag_id == Tag.id)
            .where(AppointmentTag.appointment_id == appointment_id)
            .order_by(Tag.name)
        )
        return list(s.scalars(q))


def appointments_with_tag(tag_id: str) -> list[Appointment]:
    with db_session() as s:
        q = (
            select(Appointment)
            .join(AppointmentTag, AppointmentTag.appointment_id == Appointment.id)
            .where(AppointmentTag.tag_id == tag_id)
            .order_by(Appointment.scheduled_date.asc(), Appointment.scheduled_time.asc())
        )
        return list(s.scalars(q))
