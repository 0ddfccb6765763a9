from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =========================
# JSON payloads stored in columns (validated on read)
# =========================
class OpeningHours(BaseModel):
    model_config = ConfigDict(extra="ignore")

    weekday_text: list[str] | None = None
    open_now: bool | None = None


class RouteMetadata(BaseModel):
    """Provider-computed route summary. Keys keep the provider's camelCase."""
    model_config = ConfigDict(extra="ignore")

    totalDistance: str | None = None   # e.g. "25.5 km"
    totalDuration: str | None = None   # e.g. "45 mins"
    startAddress: str | None = None
    endAddress: str | None = None


class ActivityDetails(BaseModel):
    """Before/after snapshot; anything else the caller adds is kept."""
    model_config = ConfigDict(extra="allow")

    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None


# =========================
# Discovery record from the map/places provider
# =========================
class PlaceRecord(BaseModel):
    """
    One search result from the places provider.

    Accepts both the nested `geometry.location` shape and flat `lat`/`lng`.
    """
    model_config = ConfigDict(extra="ignore")

    place_id: str | None = None
    name: str = Field(..., min_length=1)
    lat: float
    lng: float
    formatted_address: str | None = None
    formatted_phone_number: str | None = None
    website: str | None = None
    business_status: str | None = None
    rating: float | None = None
    user_ratings_total: int | None = None
    photo_reference: str | None = None
    opening_hours: OpeningHours | None = None
    types: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _flatten_geometry(cls, data: Any) -> Any:
        if isinstance(data, dict) and "geometry" in data and "lat" not in data:
            location = (data.get("geometry") or {}).get("location") or {}
            data = {**data, "lat": location.get("lat"), "lng": location.get("lng")}
        if isinstance(data, dict) and "photo_reference" not in data and data.get("photos"):
            data = {**data, "photo_reference": data["photos"][0].get("photo_reference")}
        return data
