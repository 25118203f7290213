from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Position(BaseModel):
    """A single device fix. Never persisted as-is."""

    model_config = ConfigDict(populate_by_name=True)

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy_m: float = Field(0.0, alias="accuracy")
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def describe(self) -> str:
        if not self.has_coordinates:
            return "GPS: n/a"
        return f"GPS: lat={self.latitude:.6f} lng={self.longitude:.6f} ±{round(self.accuracy_m)}m"


class LocationRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: Optional[str] = None
    lat: float
    lng: float
    radius_m: float = Field(0.0, alias="radiusMeters")


class LocationUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    radius_m: float = Field(0.0, alias="radiusMeters", ge=0)


class GeofenceReason(str, Enum):
    ok = "ok"
    too_far = "too-far"
    loc_missing = "loc-missing"
    gps_missing = "gps-missing"


class GeofenceDecision(BaseModel):
    ok: bool
    reason: GeofenceReason
    distance_m: Optional[float] = None
    allowed_radius_m: float = 0.0
    accuracy_buffer_m: float = 0.0
