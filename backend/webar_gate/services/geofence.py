import math
from typing import Optional

from webar_gate.core.config import settings
from webar_gate.core.constants import EARTH_RADIUS_M
from webar_gate.schemas.geo import (
    GeofenceDecision,
    GeofenceReason,
    LocationRecord,
    Position,
)


def haversine(lat1, lon1, lat2, lon2):
    """Return great‑circle distance in meters between two WGS84 points.

    Uses the standard haversine formula; plenty accurate at geofence scale
    (tens to hundreds of meters).
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def evaluate(
    position: Optional[Position],
    location: Optional[LocationRecord],
    fallback_radius_m: Optional[float] = None,
    accuracy_cap_m: Optional[float] = None,
) -> GeofenceDecision:
    """Decide whether ``position`` lies inside ``location``'s fence.

    The fence radius is widened by the fix's reported accuracy, capped so a
    very noisy fix cannot defeat the fence. The boundary is inclusive.
    A missing location wins over a missing position.
    """
    if fallback_radius_m is None:
        fallback_radius_m = settings.fallback_radius_m
    if accuracy_cap_m is None:
        accuracy_cap_m = settings.accuracy_buffer_cap_m

    if location is None:
        return GeofenceDecision(ok=False, reason=GeofenceReason.loc_missing)

    radius = location.radius_m if location.radius_m and location.radius_m > 0 else fallback_radius_m

    if position is None or not position.has_coordinates:
        return GeofenceDecision(
            ok=False, reason=GeofenceReason.gps_missing, allowed_radius_m=radius
        )

    buffer = min(max(position.accuracy_m or 0.0, 0.0), accuracy_cap_m)
    distance = haversine(position.latitude, position.longitude, location.lat, location.lng)
    ok = distance <= radius + buffer

    return GeofenceDecision(
        ok=ok,
        reason=GeofenceReason.ok if ok else GeofenceReason.too_far,
        distance_m=distance,
        allowed_radius_m=radius,
        accuracy_buffer_m=buffer,
    )
