from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from webar_gate.schemas.geo import GeofenceDecision, Position


class DeviceKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: bytes = Field(..., repr=False)
    public_hash_hex: str


class Registration(BaseModel):
    phone: str  # E.164
    device_key_hashes: set[str] = Field(default_factory=set)
    created_at: Optional[datetime] = None


class RegistrationOutcome(BaseModel):
    phone: str
    created: bool  # False: the phone was already registered
    device_bound: bool
    geofence: Optional[GeofenceDecision] = None


class RegistrationRequest(BaseModel):
    phone: str
    device_key_hash: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    position: Optional[Position] = None
    location_id: Optional[str] = None
    user_agent: Optional[str] = None
