"""
Daily routes.

The visit order and the distance/duration summary come from the map
provider; this module only checks that every listed appointment exists and
belongs to the route's owner, then stores the list exactly as given.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .db import db_session
from .errors import InvariantViolation, NotFound, ReferentialViolation
from .models import Appointment, Route, User
from .schemas import RouteMetadata
from .services import as_datetime, day_bounds

logger = logging.getLogger(__name__)


def _check_appointment_ids(s: Session, user_id: str, appointment_ids: list[str]) -> list[str]:
    ids = list(appointment_ids)
    if len(set(ids)) != len(ids):
        raise InvariantViolation("an appointment may appear only once in a route")
    if not ids:
        return ids

    owners = dict(s.execute(select(Appointment.id, Appointment.user_id).where(Appointment.id.in_(ids))).all())
    missing = [i for i in ids if i not in owners]
    if missing:
        raise ReferentialViolation(f"route references missing appointments: {', '.join(missing)}")
    foreign = [i for i in ids if owners[i] != user_id]
    if foreign:
        raise ReferentialViolation(f"route references another user's appointments: {', '.join(foreign)}")
    return ids


def _metadata(route_metadata: RouteMetadata | dict[str, Any] | None) -> dict[str, Any] | None:
    if route_metadata is None:
        return None
    try:
        record = RouteMetadata.model_validate(route_metadata)
    except ValidationError as e:
        raise InvariantViolation(f"invalid route metadata: {e}") from None
    return record.model_dump(exclude_none=True)


def create_route(
    user_id: str,
    route_date: date | datetime,
    appointment_ids: list[str],
    route_metadata: RouteMetadata | dict[str, Any] | None = None,
) -> str:
    """Stores a new route; earlier routes for the same day are kept."""
    with db_session() as s:
        if s.get(User, user_id) is None:
            raise NotFound("User", user_id)
        r = Route(
            user_id=user_id,
            route_date=as_datetime(route_date),
            appointment_ids=_check_appointment_ids(s, user_id, appointment_ids),
            route_metadata=_metadata(route_metadata),
        )
        s.add(r)
        s.flush()
        logger.info("route %s stored for user %s (%d stops)", r.id, user_id, len(r.appointment_ids))
        return r.id


def update_route(
    route_id: str,
    appointment_ids: list[str] | None = None,
    route_metadata: RouteMetadata | dict[str, Any] | None = None,
) -> Route:
    """Replace the order and/or the summary after the provider re-optimised."""
    with db_session() as s:
        r = s.get(Route, route_id)
        if r is None:
            raise NotFound("Route", route_id)
        if appointment_ids is not None:
            r.appointment_ids = _check_appointment_ids(s, r.user_id, appointment_ids)
        if route_metadata is not None:
            r.route_metadata = _metadata(route_metadata)
        return r


def get_route(route_id: str) -> Route | None:
    with db_session() as s:
        return s.get(Route, route_id)


def routes_for_day(user_id: str, day: date) -> list[Route]:
    """Oldest first; the last one is the most recent plan."""
    start, end = day_bounds(day)
    with db_session() as s:
        q = (
            select(Route)
            .where(and_(Route.user_id == user_id, Route.route_date >= start, Route.route_date < end))
            .order_by(Route.created_at.asc())
        )
        return list(s.scalars(q))


def route_appointments(route_id: str) -> list[Appointment]:
    """
    The route's appointments in stored order. Ids whose appointment was
    deleted after the route was saved are skipped.
    """
    with db_session() as s:
        r = s.get(Route, route_id)
        if r is None:
            raise NotFound("Route", route_id)
        if not r.appointment_ids:
            return []
        found = {a.id: a for a in s.scalars(select(Appointment).where(Appointment.id.in_(r.appointment_ids)))}
        return [found[i] for i in r.appointment_ids if i in found]


def delete_route(route_id: str) -> None:
    with db_session() as s:
        r = s.get(Route, route_id)
        if r is None:
            raise NotFound("Route", route_id)
        s.delete(r)
