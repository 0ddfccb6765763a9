from __future__ import annotations

import logging

from sqlalchemy import delete, func, select

from . import activity_service
from .db import db_session
from .errors import InvariantViolation, NotFound, UniquenessViolation
from .models import ActivityLog, Appointment, Note, Route, Tag, User
from .security import hash_password, needs_rehash, verify_password

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "phone", "avatar")


def create_user(
    email: str,
    password: str,
    first_name: str | None = None,
    last_name: str | None = None,
    phone: str | None = None,
) -> str:
    # no case folding: uniqueness is on the stored value
    email = (email or "").strip()
    if not email or not password:
        raise InvariantViolation("Email and password are required.")

    with db_session() as s:
        exists = s.execute(select(User.id).where(User.email == email)).scalar_one_or_none()
        if exists:
            logger.warning("rejected duplicate email %s", email)
            raise UniquenessViolation(f"Email already registered: {email}")

        u = User(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            is_active=True,
        )
        s.add(u)
        s.flush()
        logger.info("user %s created", u.id)
        return u.id


def get_user(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def get_user_by_email(email: str) -> User | None:
    with db_session() as s:
        return s.execute(select(User).where(User.email == email.strip())).scalar_one_or_none()


def list_users(active_only: bool = True) -> list[User]:
    with db_session() as s:
        q = select(User).order_by(User.email)
        if active_only:
            q = q.where(User.is_active.is_(True))
        return list(s.scalars(q))


def update_profile(user_id: str, **fields: str | None) -> User:
    unknown = set(fields) - set(PROFILE_FIELDS)
    if unknown:
        raise InvariantViolation(f"Not a profile field: {', '.join(sorted(unknown))}")

    with db_session() as s:
        u = s.get(User, user_id)
        if u is None:
            raise NotFound("User", user_id)
        before = {k: getattr(u, k) for k in fields}
        for k, v in fields.items():
            setattr(u, k, v)
        activity_service.record(s, u.id, "profile_updated", details={"before": before, "after": fields})
        return u


def change_email(user_id: str, new_email: str) -> User:
    """The address must be verified again after a change."""
    new_email = (new_email or "").strip()
    if not new_email:
        raise InvariantViolation("Email is required.")

    with db_session() as s:
        u = s.get(User, user_id)
        if u is None:
            raise NotFound("User", user_id)
        taken = s.execute(
            select(User.id).where(User.email == new_email, User.id != user_id)
        ).scalar_one_or_none()
        if taken:
            raise UniquenessViolation(f"Email already registered: {new_email}")
        old = u.email
        u.email = new_email
        u.email_verified = False
        s.flush()
        activity_service.record(
            s, u.id, "email_changed", details={"before": {"email": old}, "after": {"email": new_email}}
        )
        return u


def change_password(user_id: str, new_password: str) -> None:
    if not new_password:
        raise InvariantViolation("Password is required.")
    with db_session() as s:
        u = s.get(User, user_id)
        if u is None:
            raise NotFound("User", user_id)
        u.password_hash = hash_password(new_password)
        activity_service.record(s, u.id, "password_changed")


def check_password(email: str, password: str) -> User | None:
    """
    Credential check for the calling auth layer.
    Returns the active user on match, None otherwise. Outdated hashes are upgraded.
    """
    with db_session() as s:
        u = s.execute(select(User).where(User.email == email.strip())).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        if needs_rehash(u.password_hash):
            u.password_hash = hash_password(password)
        return u


def mark_email_verified(user_id: str) -> None:
    with db_session() as s:
        u = s.get(User, user_id)
        if u is None:
            raise NotFound("User", user_id)
        u.email_verified = True


def set_active(user_id: str, active: bool) -> None:
    with db_session() as s:
        u = s.get(User, user_id)
        if u is None:
            raise NotFound("User", user_id)
        u.is_active = active
        activity_service.record(s, u.id, "activated" if active else "deactivated")


def delete_user(user_id: str) -> dict[str, int]:
    """
    Hard delete. The database cascades to appointments (and through them to
    notes, tag links and appointment logs), routes, tags and activity logs in
    the same transaction. Returns the counts that were removed.
    """
    with db_session() as s:
        if s.get(User, user_id) is None:
            raise NotFound("User", user_id)

        counts = {
            model.__tablename__: s.scalar(select(func.count()).select_from(model).where(model.user_id == user_id))
            for model in (Appointment, Note, Route, Tag, ActivityLog)
        }
        s.execute(delete(User).where(User.id == user_id))
        logger.info("user %s deleted with %s", user_id, counts)
        return counts
