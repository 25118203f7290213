import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import ValidationError

from webar_gate.core.config import settings
from webar_gate.core.constants import COLLECTION_LOCATIONS
from webar_gate.core.errors import InvalidPhoneNumber, StoreError
from webar_gate.core.phone import normalize_phone
from webar_gate.schemas.geo import LocationRecord
from webar_gate.schemas.identity import Registration, RegistrationOutcome, RegistrationRequest
from webar_gate.services import geofence
from webar_gate.services.identity import RegistrationDirectory
from webar_gate.store import SqlDocumentStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/registrations", tags=["registrations"])


@router.post("/", response_model=RegistrationOutcome)
async def register_phone(
    payload: RegistrationRequest,
    response: Response,
    store: SqlDocumentStore = Depends(get_store),
):
    """
    Register a phone number and bind the caller's device key hash to it.

    201 when the registration was created, 200 when the phone was already
    registered (the device is bound either way).
    """
    try:
        phone = normalize_phone(payload.phone)
    except InvalidPhoneNumber as e:
        raise HTTPException(status_code=422, detail=e.user_message)

    # Geofence is recorded with the registration, it never blocks it
    decision = None
    if payload.location_id and payload.position is not None:
        try:
            doc = await store.get(COLLECTION_LOCATIONS, payload.location_id)
            location = LocationRecord.model_validate(doc) if doc else None
        except (StoreError, ValidationError) as e:
            logger.warning("location %s unusable for registration audit: %s", payload.location_id, e)
            location = None
        decision = geofence.evaluate(payload.position, location)

    directory = RegistrationDirectory(store)
    try:
        created = await directory.create(phone, payload.position, decision, payload.user_agent)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Registration failed: {e}")
    bound = await directory.bind(phone, payload.device_key_hash)

    if not created and not settings.allow_duplicate_to_enter:
        raise HTTPException(status_code=409, detail="Phone already registered")

    response.status_code = 201 if created else 200
    return RegistrationOutcome(phone=phone, created=created, device_bound=bound, geofence=decision)


@router.get("/devices/{key_hash}", response_model=Registration)
async def get_device_registration(key_hash: str, store: SqlDocumentStore = Depends(get_store)):
    try:
        registration = await RegistrationDirectory(store).lookup(key_hash)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Lookup failed: {e}")
    if registration is None:
        raise HTTPException(status_code=404, detail="Device not registered")
    return registration
