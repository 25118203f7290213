"""Device identity and phone registration.

A device is identified by ``sha256(secret)`` where ``secret`` is 32 random
bytes kept in local storage. The secret never leaves the device; the
remote store only ever sees the hash:

    device_keys/<hash>   -> {phone, boundAt}
    phone_regs/<phone>   -> {phone, createdAt, deviceKeyHashes: [...], ...}
"""

import hashlib
import logging
import secrets
from datetime import datetime
from typing import Optional

from webar_gate.core.constants import (
    COLLECTION_DEVICE_KEYS,
    COLLECTION_PHONE_REGS,
    DEVICE_SECRET_BYTES,
    DEVICE_SECRET_KEY,
)
from webar_gate.core.errors import DocumentExists, StoreError
from webar_gate.schemas.geo import GeofenceDecision, Position
from webar_gate.schemas.identity import DeviceKey, Registration
from webar_gate.services.ports import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentStore,
    SecretStore,
)

logger = logging.getLogger(__name__)


def hash_secret(secret: bytes) -> str:
    return hashlib.sha256(secret).hexdigest()


def _parse_ts(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def registration_from_doc(doc: dict) -> Registration:
    return Registration(
        phone=doc.get("phone") or doc["id"],
        device_key_hashes=set(doc.get("deviceKeyHashes") or []),
        created_at=_parse_ts(doc.get("createdAt")),
    )


class RegistrationDirectory:
    """Remote side of the identity scheme; works on hashes only."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def lookup(self, key_hash: str) -> Optional[Registration]:
        """Registration bound to ``key_hash``, or None. Store errors propagate."""
        binding = await self.store.get(COLLECTION_DEVICE_KEYS, key_hash)
        if not binding or not binding.get("phone"):
            return None
        phone = binding["phone"]
        doc = await self.store.get(COLLECTION_PHONE_REGS, phone)
        if doc is None:
            # Bound but the registration itself is gone; the binding still names the phone.
            return Registration(phone=phone, device_key_hashes={key_hash})
        return registration_from_doc(doc)

    async def create(
        self,
        phone: str,
        position: Optional[Position] = None,
        decision: Optional[GeofenceDecision] = None,
        user_agent: Optional[str] = None,
        source: str = "webar",
    ) -> bool:
        """Create the phone's registration. False if it already exists."""
        fields = {
            "phone": phone,
            "source": source,
            "createdAt": SERVER_TIMESTAMP,
            "ua": (user_agent or "")[:1000],
            "deviceKeyHashes": [],
        }
        if position is not None and position.has_coordinates:
            fields.update(
                lat=float(position.latitude),
                lng=float(position.longitude),
                accuracy=float(position.accuracy_m or 0),
            )
        if decision is not None:
            fields["geofence"] = decision.model_dump(mode="json")
        try:
            await self.store.set(COLLECTION_PHONE_REGS, phone, fields, merge=False)
        except DocumentExists:
            logger.info("phone %s already registered", phone)
            return False
        return True

    async def bind(self, phone: str, key_hash: str) -> bool:
        """Bind ``key_hash`` to ``phone``. Failures are logged, never raised."""
        try:
            await self.store.set(
                COLLECTION_DEVICE_KEYS,
                key_hash,
                {"phone": phone, "boundAt": SERVER_TIMESTAMP},
                merge=True,
            )
            await self.store.set(
                COLLECTION_PHONE_REGS,
                phone,
                {"deviceKeyHashes": ArrayUnion(key_hash)},
                merge=True,
            )
        except StoreError as e:
            logger.warning("device bind %s -> %s failed: %s", key_hash[:12], phone, e)
            return False
        return True


class DeviceIdentity:
    def __init__(self, secrets_store: SecretStore, directory: RegistrationDirectory):
        self.secrets_store = secrets_store
        self.directory = directory

    def ensure_local_key(self) -> DeviceKey:
        secret = self.secrets_store.get(DEVICE_SECRET_KEY)
        if not secret or len(secret) != DEVICE_SECRET_BYTES:
            secret = secrets.token_bytes(DEVICE_SECRET_BYTES)
            self.secrets_store.set(DEVICE_SECRET_KEY, secret)
            logger.info("generated new device key")
        return DeviceKey(secret=secret, public_hash_hex=hash_secret(secret))

    async def resolve_registration(self) -> Optional[Registration]:
        key = self.ensure_local_key()
        try:
            return await self.directory.lookup(key.public_hash_hex)
        except StoreError as e:
            # Unknown is the safe answer: the user is offered registration again.
            logger.warning("registration lookup failed, treating as unregistered: %s", e)
            return None

    async def register(
        self,
        phone: str,
        position: Optional[Position] = None,
        decision: Optional[GeofenceDecision] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        return await self.directory.create(phone, position, decision, user_agent)

    async def bind_to_phone(self, phone: str) -> bool:
        key = self.ensure_local_key()
        return await self.directory.bind(phone, key.public_hash_hex)
