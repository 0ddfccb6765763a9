"""
Organisation catalog.

Organisations are never typed in by hand: they come from a search against the
places provider and are imported as-is. `place_id` keeps a real-world place
from being imported twice.
"""
from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import Float, and_, cast, select

from . import validators
from .db import db_session
from .errors import InvariantViolation, NotFound, UniquenessViolation
from .models import Organisation, OrganisationType
from .schemas import PlaceRecord

logger = logging.getLogger(__name__)

# provider "types" -> our closed set; first match wins
PLACE_TYPE_MAP: dict[str, OrganisationType] = {
    "hospital": OrganisationType.HEALTHCARE,
    "doctor": OrganisationType.HEALTHCARE,
    "pharmacy": OrganisationType.HEALTHCARE,
    "dentist": OrganisationType.HEALTHCARE,
    "school": OrganisationType.EDUCATION,
    "university": OrganisationType.EDUCATION,
    "primary_school": OrganisationType.EDUCATION,
    "secondary_school": OrganisationType.EDUCATION,
    "city_hall": OrganisationType.GOVERNMENT,
    "local_government_office": OrganisationType.GOVERNMENT,
    "courthouse": OrganisationType.GOVERNMENT,
    "police": OrganisationType.GOVERNMENT,
    "store": OrganisationType.RETAIL,
    "shopping_mall": OrganisationType.RETAIL,
    "supermarket": OrganisationType.RETAIL,
    "clothing_store": OrganisationType.RETAIL,
    "accounting": OrganisationType.CORPORATE,
    "bank": OrganisationType.CORPORATE,
    "insurance_agency": OrganisationType.CORPORATE,
    "lawyer": OrganisationType.CORPORATE,
}

EDITABLE_FIELDS = ("email", "phone", "contact_person", "description", "website", "type")

# what import_place() accepts next to the provider record; never provider or coordinate fields
IMPORT_FIELDS = ("city", "state", "country", "postal_code", "email", "contact_person", "description", "type")


def organisation_type_for(types: list[str]) -> OrganisationType:
    for t in types:
        if t in PLACE_TYPE_MAP:
            return PLACE_TYPE_MAP[t]
    return OrganisationType.OTHER


def _parse_place(record: PlaceRecord | dict[str, Any]) -> PlaceRecord:
    if isinstance(record, PlaceRecord):
        return record
    try:
        return PlaceRecord.model_validate(record)
    except ValidationError as e:
        raise InvariantViolation(f"invalid place record: {e}") from None


def _provider_fields(place: PlaceRecord) -> dict[str, Any]:
    latitude, longitude = validators.coordinates(place.lat, place.lng)
    return {
        "name": place.name.strip(),
        "latitude": latitude,
        "longitude": longitude,
        "address": place.formatted_address,
        "phone": place.formatted_phone_number,
        "website": place.website,
        "business_status": place.business_status,
        "rating": None if place.rating is None else f"{place.rating:g}",
        "user_ratings_total": place.user_ratings_total,
        "photo_reference": place.photo_reference,
        "opening_hours": None
        if place.opening_hours is None
        else place.opening_hours.model_dump(exclude_none=True),
    }


# =========================
# Import from discovery
# =========================
def import_place(record: PlaceRecord | dict[str, Any], **extra: Any) -> str:
    """
    Store one discovered place. A second import of the same place_id is
    rejected; use refresh_place() to update provider metadata instead.
    `extra` may carry address components (city, state, country, postal_code)
    and contact fields the provider splits out.
    """
    unknown = set(extra) - set(IMPORT_FIELDS)
    if unknown:
        raise InvariantViolation(f"Not an import field: {', '.join(sorted(unknown))}")
    place = _parse_place(record)
    fields = _provider_fields(place)
    fields.update(extra)
    fields.setdefault("type", organisation_type_for(place.types))

    with db_session() as s:
        if place.place_id is not None:
            exists = s.execute(
                select(Organisation.id).where(Organisation.place_id == place.place_id)
            ).scalar_one_or_none()
            if exists:
                logger.warning("place %s already imported as %s", place.place_id, exists)
                raise UniquenessViolation(f"Place already imported: {place.place_id}")

        org = Organisation(place_id=place.place_id, **fields)
        s.add(org)
        s.flush()
        logger.info("organisation %s imported from place %s", org.id, place.place_id)
        return org.id


def refresh_place(record: PlaceRecord | dict[str, Any]) -> Organisation:
    """Overwrite provider metadata of an already imported place."""
    place = _parse_place(record)
    if place.place_id is None:
        raise InvariantViolation("refresh needs a place_id")
    fields = _provider_fields(place)

    with db_session() as s:
        org = s.execute(select(Organisation).where(Organisation.place_id == place.place_id)).scalar_one_or_none()
        if org is None:
            raise NotFound("Organisation", place.place_id)
        for k, v in fields.items():
            setattr(org, k, v)
        return org


def update_organisation(organisation_id: str, **fields: Any) -> Organisation:
    """Contact and descriptive fields only; provider data comes from refresh_place()."""
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvariantViolation(f"Not an editable field: {', '.join(sorted(unknown))}")
    with db_session() as s:
        org = s.get(Organisation, organisation_id)
        if org is None:
            raise NotFound("Organisation", organisation_id)
        for k, v in fields.items():
            setattr(org, k, v)
        return org


# =========================
# Lookups
# =========================
def get_organisation(organisation_id: str) -> Organisation | None:
    with db_session() as s:
        return s.get(Organisation, organisation_id)


def get_by_place_id(place_id: str) -> Organisation | None:
    with db_session() as s:
        return s.execute(select(Organisation).where(Organisation.place_id == place_id)).scalar_one_or_none()


def search_organisations(
    name: str | None = None,
    org_type: OrganisationType | str | None = None,
    active_only: bool = True,
    limit: int = 50,
) -> list[Organisation]:
    with db_session() as s:
        q = select(Organisation)
        if name:
            q = q.where(Organisation.name.ilike(f"%{name.strip()}%"))
        if org_type is not None:
            q = q.where(Organisation.type == validators.coerce_enum(OrganisationType, org_type))
        if active_only:
            q = q.where(Organisation.is_active.is_(True))
        return list(s.scalars(q.order_by(Organisation.name).limit(limit)))


def organisations_in_bounds(south: float, west: float, north: float, east: float) -> list[Organisation]:
    """Active organisations inside a map viewport (does not handle antimeridian wrap)."""
    if south > north or west > east:
        raise InvariantViolation("bounds must satisfy south <= north and west <= east")
    lat = cast(Organisation.latitude, Float)
    lng = cast(Organisation.longitude, Float)
    with db_session() as s:
        q = (
            select(Organisation)
            .where(and_(Organisation.is_active.is_(True), lat >= south, lat <= north, lng >= west, lng <= east))
            .order_by(Organisation.name)
        )
        return list(s.scalars(q))


def set_active(organisation_id: str, active: bool) -> None:
    with db_session() as s:
        org = s.get(Organisation, organisation_id)
        if org is None:
            raise NotFound("Organisation", organisation_id)
        org.is_active = active


def delete_organisation(organisation_id: str) -> None:
    """Removes the organisation and, by cascade, every appointment at it."""
    with db_session() as s:
        org = s.get(Organisation, organisation_id)
        if org is None:
            raise NotFound("Organisation", organisation_id)
        s.delete(org)
        logger.info("organisation %s deleted", organisation_id)
