"""
Audit trail: who did what, optionally on which appointment.

Rows are append-only. A correction is a new row, never an edit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import db_session
from .errors import InvariantViolation, NotFound
from .models import ActivityLog, Appointment, User
from .schemas import ActivityDetails

logger = logging.getLogger(__name__)

MAX_ACTION_LENGTH = 100


@dataclass(frozen=True)
class RequestContext:
    """Request metadata the calling layer may attach to audit rows."""
    ip_address: str | None = None
    user_agent: str | None = None


def record(
    s: Session,
    user_id: str,
    action: str,
    appointment_id: str | None = None,
    details: dict[str, Any] | None = None,
    context: RequestContext | None = None,
) -> ActivityLog:
    """Add an audit row inside the caller's transaction."""
    action = (action or "").strip()
    if not action or len(action) > MAX_ACTION_LENGTH:
        raise InvariantViolation(f"action must be 1-{MAX_ACTION_LENGTH} characters")
    if details is not None:
        try:
            dumped = ActivityDetails.model_validate(details).model_dump(mode="json")
        except ValidationError as e:
            raise InvariantViolation(f"invalid activity details: {e}") from None
        # drop an absent before/after, keep None values inside the snapshots
        details = {k: v for k, v in dumped.items() if v is not None}

    context = context or RequestContext()
    log = ActivityLog(
        user_id=user_id,
        appointment_id=appointment_id,
        action=action,
        details=details,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    s.add(log)
    s.flush()
    return log


def record_activity(
    user_id: str,
    action: str,
    appointment_id: str | None = None,
    details: dict[str, Any] | None = None,
    context: RequestContext | None = None,
) -> str:
    """Standalone audit write (user-level actions such as logins or exports)."""
    with db_session() as s:
        if s.get(User, user_id) is None:
            raise NotFound("User", user_id)
        if appointment_id is not None and s.get(Appointment, appointment_id) is None:
            raise NotFound("Appointment", appointment_id)
        log = record(s, user_id, action, appointment_id=appointment_id, details=details, context=context)
        logger.info("activity %s recorded for user %s", log.action, user_id)
        return log.id


def list_for_user(user_id: str, limit: int = 100) -> list[ActivityLog]:
    """Newest first."""
    with db_session() as s:
        q = (
            select(ActivityLog)
            .where(ActivityLog.user_id == user_id)
            .order_by(ActivityLog.created_at.desc())
            .limit(limit)
        )
        return list(s.scalars(q))


def list_for_appointment(appointment_id: str) -> list[ActivityLog]:
    """Oldest first: reads as the appointment's history."""
    with db_session() as s:
        q = (
            select(ActivityLog)
            .where(ActivityLog.appointment_id == appointment_id)
            .order_by(ActivityLog.created_at.asc())
        )
        return list(s.scalars(q))
