"""
Test configuration and fixtures.

Provides:
- in-memory SQLite database, schema recreated for every test
- factories for users, organisations and appointments
"""
import os
from datetime import date

# must be set before fieldvisits.db builds the engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"

import pytest

from fieldvisits import organisation_service, user_service
from fieldvisits.db import Base, engine
from fieldvisits.services import create_appointment

VISIT_DAY = date(2024, 6, 1)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_user():
    counter = iter(range(1, 10_000))

    def _make(email: str | None = None, password: str = "s3cret-pass") -> str:
        return user_service.create_user(email or f"agent{next(counter)}@example.com", password)

    return _make


@pytest.fixture
def make_org():
    counter = iter(range(1, 10_000))

    def _make(place_id: str | None = None, lat: str = "45.4642", lng: str = "9.1900", **extra) -> str:
        n = next(counter)
        record = {"place_id": place_id, "name": extra.pop("name", f"Client {n}"), "lat": lat, "lng": lng}
        record.update(extra)
        return organisation_service.import_place(record)

    return _make


@pytest.fixture
def make_appointment():
    def _make(user_id: str, organisation_id: str, time: str = "09:00", day: date = VISIT_DAY, **kwargs) -> str:
        return create_appointment(
            user_id=user_id,
            organisation_id=organisation_id,
            title=kwargs.pop("title", f"Visit at {time}"),
            scheduled_date=day,
            scheduled_time=time,
            **kwargs,
        )

    return _make


@pytest.fixture
def user(make_user) -> str:
    return make_user("a@x.com")


@pytest.fixture
def org(make_org) -> str:
    return make_org(place_id="place-1", lat="1.0", lng="2.0")


@pytest.fixture
def appointment(make_appointment, user, org) -> str:
    return make_appointment(user, org)
