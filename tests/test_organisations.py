import pytest

from fieldvisits import organisation_service
from fieldvisits.errors import EnumerationViolation, InvariantViolation, NotFound, UniquenessViolation
from fieldvisits.models import OrganisationType
from fieldvisits.schemas import PlaceRecord

PROVIDER_RESULT = {
    "place_id": "ChIJ-provider-123",
    "name": "Farmacia Centrale",
    "formatted_address": "Via Roma 1, Milano",
    "geometry": {"location": {"lat": 45.4642, "lng": 9.19}},
    "business_status": "OPERATIONAL",
    "rating": 4.5,
    "user_ratings_total": 120,
    "photos": [{"photo_reference": "photo-ref-1"}],
    "opening_hours": {"weekday_text": ["Monday: 9:00 AM - 7:00 PM"], "open_now": True},
    "types": ["pharmacy", "health", "store"],
}


def test_import_provider_result():
    oid = organisation_service.import_place(PROVIDER_RESULT, city="Milano", country="Italy")
    org = organisation_service.get_organisation(oid)

    assert org.place_id == "ChIJ-provider-123"
    assert org.latitude == "45.4642"
    assert org.longitude == "9.19"
    assert org.rating == "4.5"
    assert org.user_ratings_total == 120
    assert org.photo_reference == "photo-ref-1"
    assert org.city == "Milano"
    assert org.type == OrganisationType.HEALTHCARE
    assert org.opening_hours_record.open_now is True
    assert org.opening_hours_record.weekday_text == ["Monday: 9:00 AM - 7:00 PM"]


def test_duplicate_place_id_rejected(make_org):
    make_org(place_id="place-1")
    with pytest.raises(UniquenessViolation):
        make_org(place_id="place-1")


def test_places_without_place_id_coexist(make_org):
    first = make_org(place_id=None)
    second = make_org(place_id=None)
    assert first != second


@pytest.mark.parametrize(
    "lat,lng",
    [(None, "9.19"), ("45.0", None), ("north", "9.19"), ("95.0", "9.19"), ("45.0", "-181")],
)
def test_coordinates_are_mandatory_and_valid(make_org, lat, lng):
    with pytest.raises(InvariantViolation):
        make_org(lat=lat, lng=lng)


def test_unmapped_provider_types_fall_back_to_other(make_org):
    oid = make_org(types=["point_of_interest"])
    assert organisation_service.get_organisation(oid).type == OrganisationType.OTHER


def test_unknown_organisation_type_rejected(make_org):
    oid = make_org()
    with pytest.raises(EnumerationViolation):
        organisation_service.update_organisation(oid, type="restaurant")


def test_refresh_place_updates_provider_metadata():
    oid = organisation_service.import_place(PROVIDER_RESULT)
    organisation_service.refresh_place({**PROVIDER_RESULT, "rating": 3.9, "business_status": "CLOSED_TEMPORARILY"})

    org = organisation_service.get_organisation(oid)
    assert org.rating == "3.9"
    assert org.business_status == "CLOSED_TEMPORARILY"


def test_refresh_unknown_place():
    with pytest.raises(NotFound):
        organisation_service.refresh_place({**PROVIDER_RESULT, "place_id": "never-imported"})


def test_place_record_accepts_flat_coordinates():
    record = PlaceRecord.model_validate({"name": "Shop", "lat": "1.5", "lng": "2.5"})
    assert (record.lat, record.lng) == (1.5, 2.5)


def test_search_and_viewport(make_org):
    milan = make_org(name="Milan Office", lat="45.4642", lng="9.1900")
    rome = make_org(name="Rome Office", lat="41.9028", lng="12.4964")
    make_org(name="Warehouse", lat="45.5", lng="9.2")

    assert [o.id for o in organisation_service.search_organisations(name="office")] == [milan, rome]
    in_north = organisation_service.organisations_in_bounds(south=45.0, west=9.0, north=46.0, east=10.0)
    assert milan in [o.id for o in in_north]
    assert rome not in [o.id for o in in_north]


def test_viewport_bounds_validated():
    with pytest.raises(InvariantViolation):
        organisation_service.organisations_in_bounds(south=46.0, west=9.0, north=45.0, east=10.0)


def test_deactivated_organisations_hidden_from_search(make_org):
    oid = make_org(name="Closed Shop")
    organisation_service.set_active(oid, False)

    assert organisation_service.search_organisations(name="Closed") == []
    assert [o.id for o in organisation_service.search_organisations(name="Closed", active_only=False)] == [oid]


def test_get_by_place_id(make_org):
    oid = make_org(place_id="abc")
    assert organisation_service.get_by_place_id("abc").id == oid
    assert organisation_service.get_by_place_id("missing") is None


@pytest.mark.parametrize(
    "extra",
    [{"latitude": "not-a-number"}, {"longitude": "500"}, {"place_id": "p9"}, {"name": "Other"}, {"foo": "bar"}],
)
def test_import_extras_cannot_override_provider_fields(extra):
    with pytest.raises(InvariantViolation):
        organisation_service.import_place({"name": "X", "lat": 1.0, "lng": 2.0}, **extra)
    assert organisation_service.search_organisations(active_only=False) == []


def test_import_extras_address_and_contact():
    oid = organisation_service.import_place(
        {"name": "X", "lat": 1.0, "lng": 2.0},
        postal_code="20121",
        contact_person="M. Bianchi",
        type="corporate",
    )
    org = organisation_service.get_organisation(oid)
    assert (org.latitude, org.longitude) == ("1.0", "2.0")
    assert org.postal_code == "20121"
    assert org.contact_person == "M. Bianchi"
    assert org.type == OrganisationType.CORPORATE
