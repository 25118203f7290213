import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from webar_gate.core.constants import COLLECTION_LOCATIONS, COLLECTION_SCAN_LOGS
from webar_gate.core.errors import StoreError
from webar_gate.schemas.geo import GeofenceDecision, LocationRecord, LocationUpsert, Position
from webar_gate.services import geofence
from webar_gate.services.ports import SERVER_TIMESTAMP
from webar_gate.store import SqlDocumentStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/locations", tags=["locations"])


async def _load_location(store: SqlDocumentStore, location_id: str) -> LocationRecord | None:
    try:
        doc = await store.get(COLLECTION_LOCATIONS, location_id)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Location lookup failed: {e}")
    if doc is None:
        return None
    try:
        return LocationRecord.model_validate(doc)
    except ValidationError as e:
        raise HTTPException(status_code=500, detail=f"Location {location_id} is malformed: {e}")


@router.put("/{location_id}", response_model=LocationRecord)
async def upsert_location(
    location_id: str,
    payload: LocationUpsert,
    store: SqlDocumentStore = Depends(get_store),
):
    fields = {
        "name": payload.name,
        "lat": payload.lat,
        "lng": payload.lng,
        "radiusMeters": payload.radius_m,
    }
    try:
        await store.set(COLLECTION_LOCATIONS, location_id, fields)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Location write failed: {e}")
    return LocationRecord(id=location_id, **fields)


@router.get("/{location_id}", response_model=LocationRecord)
async def get_location(location_id: str, store: SqlDocumentStore = Depends(get_store)):
    location = await _load_location(store, location_id)
    if location is None:
        raise HTTPException(status_code=404, detail="Location not found")
    return location


@router.post("/{location_id}/geofence", response_model=GeofenceDecision)
async def check_geofence(
    location_id: str,
    position: Position,
    store: SqlDocumentStore = Depends(get_store),
):
    """
    Evaluate a device fix against the location's fence.

    A missing location is reported as reason 'loc-missing' rather than 404,
    so clients handle every refusal the same way.
    """
    location = await _load_location(store, location_id)
    decision = geofence.evaluate(position, location)

    # Audit trail; a failed write never changes the decision
    try:
        await store.add(
            COLLECTION_SCAN_LOGS,
            {
                "purpose": "api",
                "locationId": location_id,
                "ok": decision.ok,
                "reason": decision.reason.value,
                "distanceMeters": decision.distance_m,
                "lat": position.latitude,
                "lng": position.longitude,
                "accuracy": position.accuracy_m,
                "createdAt": SERVER_TIMESTAMP,
            },
        )
    except StoreError as e:
        logger.warning("scan log write failed: %s", e)
    return decision
