"""
Application-level checks that the storage engine cannot express.

All functions raise classes from `fieldvisits.errors` and return the
normalised value when there is one to return.
"""
from __future__ import annotations

import enum
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, TypeVar

from pydantic import HttpUrl, TypeAdapter, ValidationError

from .errors import EnumerationViolation, InvariantViolation

E = TypeVar("E", bound=enum.Enum)

TIME_OF_DAY_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

_url_adapter = TypeAdapter(HttpUrl)


def coerce_enum(enum_cls: type[E], value: Any) -> E:
    """Accept a member or its exact token; anything else is rejected."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise EnumerationViolation(enum_cls.__name__, value) from None


def coerce_optional_enum(enum_cls: type[E], value: Any) -> E | None:
    if value is None:
        return None
    return coerce_enum(enum_cls, value)


def time_of_day(value: str) -> str:
    value = (value or "").strip()
    if not TIME_OF_DAY_RE.match(value):
        raise InvariantViolation(f"scheduled_time must be HH:MM, got {value!r}")
    return value


def hex_color(value: str) -> str:
    if not HEX_COLOR_RE.match(value or ""):
        raise InvariantViolation(f"color must be #RRGGBB, got {value!r}")
    return value.upper()


def _coordinate(value: Any, name: str, limit: int) -> str:
    if value is None or str(value).strip() == "":
        raise InvariantViolation(f"{name} is required")
    text = str(value).strip()
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise InvariantViolation(f"{name} is not a number: {text!r}") from None
    if not number.is_finite() or abs(number) > limit:
        raise InvariantViolation(f"{name} out of range: {text}")
    return text


def coordinates(latitude: Any, longitude: Any) -> tuple[str, str]:
    """Organisations without usable coordinates cannot be placed on the map."""
    return _coordinate(latitude, "latitude", 90), _coordinate(longitude, "longitude", 180)


def attachment_urls(urls: Iterable[str] | None) -> list[str] | None:
    if urls is None:
        return None
    checked: list[str] = []
    for url in urls:
        try:
            _url_adapter.validate_python(url)
        except ValidationError:
            raise InvariantViolation(f"attachment is not an http(s) URL: {url!r}") from None
        checked.append(url)
    return checked


def non_empty(value: str | None, name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvariantViolation(f"{name} must not be empty")
    return value


def check_appointment(appointment: Any, cancelled_status: enum.Enum) -> None:
    """
    Invariants checked on every insert/update of an appointment:
    - check-out requires a check-in and must not precede it
    - cancellation reason and timestamp travel together, only while cancelled
    - duration is positive
    - an appointment cannot replace itself
    """
    check_in, check_out = appointment.check_in_time, appointment.check_out_time
    if check_out is not None:
        if check_in is None:
            raise InvariantViolation("check_out_time set without check_in_time")
        if check_out < check_in:
            raise InvariantViolation("check_out_time precedes check_in_time")

    has_reason = appointment.cancellation_reason is not None
    has_stamp = appointment.cancelled_at is not None
    if has_reason != has_stamp:
        raise InvariantViolation("cancellation_reason and cancelled_at must be set together")
    if has_reason and appointment.status != cancelled_status:
        raise InvariantViolation("cancellation fields are only allowed on cancelled appointments")

    if appointment.duration is not None and appointment.duration <= 0:
        raise InvariantViolation("duration must be a positive number of minutes")

    if appointment.rescheduled_from is not None and appointment.rescheduled_from == appointment.id:
        raise InvariantViolation("an appointment cannot be rescheduled from itself")
