from types import SimpleNamespace

import pytest
from sqlalchemy.exc import IntegrityError

from fieldvisits import validators
from fieldvisits.errors import (
    EnumerationViolation,
    InvariantViolation,
    ReferentialViolation,
    UniquenessViolation,
    translate_integrity_error,
)
from fieldvisits.models import AppointmentStatus


class FakeDriverError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


def _integrity_error(message, pgcode=None) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, FakeDriverError(message, pgcode))


@pytest.mark.parametrize(
    "message,pgcode,expected",
    [
        ('duplicate key value violates unique constraint "users_email_key"', "23505", UniquenessViolation),
        ("insert violates foreign key constraint", "23503", ReferentialViolation),
        ('new row violates check constraint "appointmentstatus"', "23514", EnumerationViolation),
        ("null value in column", "23502", InvariantViolation),
        ("UNIQUE constraint failed: users.email", None, UniquenessViolation),
        ("FOREIGN KEY constraint failed", None, ReferentialViolation),
        ("CHECK constraint failed: appointmentstatus", None, EnumerationViolation),
    ],
)
def test_translate_integrity_error(message, pgcode, expected):
    assert type(translate_integrity_error(_integrity_error(message, pgcode))) is expected


def test_time_of_day():
    assert validators.time_of_day(" 07:30 ") == "07:30"
    assert validators.time_of_day("23:59") == "23:59"
    with pytest.raises(InvariantViolation):
        validators.time_of_day("7:30")


def test_hex_color_is_normalised():
    assert validators.hex_color("#a1b2c3") == "#A1B2C3"


def test_coordinates_keep_the_given_text():
    assert validators.coordinates("45.46420", " -9.19 ") == ("45.46420", "-9.19")
    with pytest.raises(InvariantViolation):
        validators.coordinates("NaN", "9")


def test_coerce_enum():
    assert validators.coerce_enum(AppointmentStatus, "no_show") is AppointmentStatus.NO_SHOW
    assert validators.coerce_optional_enum(AppointmentStatus, None) is None
    with pytest.raises(EnumerationViolation) as exc:
        validators.coerce_enum(AppointmentStatus, "NO_SHOW")
    assert exc.value.enum_name == "AppointmentStatus"


def test_check_appointment_rejects_self_reference():
    a = SimpleNamespace(
        id="a1",
        check_in_time=None,
        check_out_time=None,
        cancellation_reason=None,
        cancelled_at=None,
        status=AppointmentStatus.SCHEDULED,
        duration=30,
        rescheduled_from="a1",
    )
    with pytest.raises(InvariantViolation):
        validators.check_appointment(a, AppointmentStatus.CANCELLED)
