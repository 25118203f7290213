"""The gate state machine.

    BOOT -> RESOLVING_IDENTITY -> CHECKING_GEOFENCE -> AWAITING_REGISTRATION
                                                    or READY_FOR_INTRO
    AWAITING_REGISTRATION -> READY_FOR_INTRO -> PLAYING_INTRO -> MENU_SHOWN
    MENU_SHOWN <-> PLAYING_EXERCISE

Everything that used to be page-global (current video, in-flight flags,
the camera start promise, per-sink busy flags) is a field of the
orchestrator instance.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from webar_gate.core.config import settings
from webar_gate.core.constants import (
    COLLECTION_LOCATIONS,
    COLLECTION_SCAN_LOGS,
    COLLECTION_VIDEOS,
)
from webar_gate.core.errors import (
    AutoplayBlocked,
    CameraUnavailable,
    ContentNotFound,
    GateError,
    GeolocationUnavailable,
    PhoneAlreadyRegistered,
    StoreError,
)
from webar_gate.core.phone import normalize_phone
from webar_gate.schemas.geo import GeofenceDecision, LocationRecord, Position
from webar_gate.schemas.identity import Registration, RegistrationOutcome
from webar_gate.schemas.media import ContentRecord, MediaCandidate, MediaKind
from webar_gate.services import geofence
from webar_gate.services.alpha import AlphaModeCorrector, composite_mode
from webar_gate.services.identity import DeviceIdentity
from webar_gate.services.loader import RobustMediaLoader
from webar_gate.services.media import Platform, parse_content_record, rank_or_raise
from webar_gate.services.ports import (
    SERVER_TIMESTAMP,
    CameraEngine,
    DocumentStore,
    LocationProvider,
)
from webar_gate.services.sink import MediaSink, PlaybackBlocked, SinkEvent

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    boot = "boot"
    resolving_identity = "resolving-identity"
    checking_geofence = "checking-geofence"
    awaiting_registration = "awaiting-registration"
    ready_for_intro = "ready-for-intro"
    playing_intro = "playing-intro"
    menu_shown = "menu-shown"
    playing_exercise = "playing-exercise"


async def fetch_intro_record(store: DocumentStore) -> ContentRecord:
    try:
        docs = await store.query(
            COLLECTION_VIDEOS, [("active", "==", True), ("isGlobal", "==", True)], limit=1
        )
    except StoreError as e:
        raise GateError(f"intro content lookup failed: {e}") from e
    if not docs:
        raise ContentNotFound("no active global intro video")
    return parse_content_record(docs[0])


async def fetch_exercise_record(store: DocumentStore, location_id: str) -> ContentRecord:
    try:
        docs = await store.query(
            COLLECTION_VIDEOS,
            [("active", "==", True), ("locationIds", "array-contains", location_id)],
            limit=1,
        )
    except StoreError as e:
        raise GateError(f"exercise content lookup failed: {e}") from e
    if not docs:
        raise ContentNotFound(f"no active exercise video for location {location_id!r}")
    return parse_content_record(docs[0])


class GateOrchestrator:
    def __init__(
        self,
        *,
        identity: DeviceIdentity,
        store: DocumentStore,
        locator: LocationProvider,
        engine: CameraEngine,
        intro_sink: MediaSink,
        exercise_sink: MediaSink,
        platform: Platform,
        location_id: Optional[str] = None,
        loader: Optional[RobustMediaLoader] = None,
        user_agent: str = "",
        allow_duplicate_to_enter: Optional[bool] = None,
    ):
        self.identity = identity
        self.store = store
        self.locator = locator
        self.engine = engine
        self.intro_sink = intro_sink
        self.exercise_sink = exercise_sink
        self.platform = platform
        self.location_id = location_id
        self.loader = loader or RobustMediaLoader(corrector=AlphaModeCorrector())
        self.user_agent = user_agent
        if allow_duplicate_to_enter is None:
            allow_duplicate_to_enter = settings.allow_duplicate_to_enter
        self.allow_duplicate_to_enter = allow_duplicate_to_enter

        self.state = GateState.boot
        self.registration: Optional[Registration] = None
        self.current_sink: Optional[MediaSink] = None
        self.current_kind: Optional[MediaKind] = None
        self.needs_unmute = False

        self._location: Optional[LocationRecord] = None
        self._register_in_flight = False
        self._intro_in_flight = False
        self._exercise_in_flight = False
        self._busy: set[str] = set()
        self._camera_task: Optional[asyncio.Task] = None
        self._camera_ready = False
        self._prefetch_task: Optional[asyncio.Task] = None
        self._prefetched: Optional[list[MediaCandidate]] = None
        self._watch = None

        intro_sink.subscribe(self._on_intro_event)

    # ---- state ----

    def _set_state(self, state: GateState) -> None:
        if state != self.state:
            logger.info("gate: %s -> %s", self.state.value, state.value)
            self.state = state

    async def boot(self) -> GateState:
        try:
            await self.engine.init()
        except GateError:
            raise
        except Exception as e:
            raise CameraUnavailable(f"AR engine init failed: {e}") from e

        self._set_state(GateState.resolving_identity)
        self.registration = await self.identity.resolve_registration()

        self._set_state(GateState.checking_geofence)
        if self.location_id:
            # Audit only; entry is decided later at each gate.
            await self.check_geofence("launch")

        if self.registration is not None:
            self._set_state(GateState.ready_for_intro)
        else:
            self._set_state(GateState.awaiting_registration)
        return self.state

    # ---- geofence ----

    async def _fresh_position(self) -> Position:
        timeout = settings.geolocation_timeout_s
        try:
            position = await asyncio.wait_for(
                self.locator.get_position_once(high_accuracy=True, timeout_s=timeout, max_age_s=0),
                timeout + 1,
            )
        except asyncio.TimeoutError as e:
            raise GeolocationUnavailable("geolocation timed out") from e
        if position is None or not position.has_coordinates:
            raise GeolocationUnavailable("position has no coordinates")
        return position

    async def _get_location(self) -> Optional[LocationRecord]:
        if self._location is not None or not self.location_id:
            return self._location
        try:
            doc = await self.store.get(COLLECTION_LOCATIONS, self.location_id)
        except StoreError as e:
            logger.warning("location %s lookup failed: %s", self.location_id, e)
            return None
        if doc is None:
            logger.info("location %s not found", self.location_id)
            return None
        try:
            self._location = LocationRecord.model_validate(doc)
        except ValidationError as e:
            logger.warning("location %s is malformed: %s", self.location_id, e)
            return None
        return self._location

    async def _log_scan(self, purpose: str, position: Optional[Position], decision: GeofenceDecision) -> None:
        fields = {
            "purpose": purpose,
            "locationId": self.location_id,
            "ok": decision.ok,
            "reason": decision.reason.value,
            "distanceMeters": decision.distance_m,
            "allowedRadiusMeters": decision.allowed_radius_m,
            "accuracyBufferMeters": decision.accuracy_buffer_m,
            "phone": self.registration.phone if self.registration else None,
            "createdAt": SERVER_TIMESTAMP,
        }
        if position is not None and position.has_coordinates:
            fields.update(lat=position.latitude, lng=position.longitude, accuracy=position.accuracy_m)
        try:
            await self.store.add(COLLECTION_SCAN_LOGS, fields)
        except StoreError as e:
            logger.warning("scan log write failed: %s", e)

    async def check_geofence(self, purpose: str) -> GeofenceDecision:
        """Fresh position + evaluation, audited. Never raises for GPS problems."""
        location = await self._get_location()
        position: Optional[Position] = None
        if location is not None:
            try:
                position = await self._fresh_position()
            except GateError as e:
                logger.info("geofence(%s): no position: %s", purpose, e)
        decision = geofence.evaluate(position, location)
        logger.info(
            "geofence(%s): %s distance=%s allowed=%.0f+%.0f",
            purpose,
            decision.reason.value,
            "n/a" if decision.distance_m is None else f"{decision.distance_m:.0f}",
            decision.allowed_radius_m,
            decision.accuracy_buffer_m,
        )
        await self._log_scan(purpose, position, decision)
        return decision

    # ---- registration ----

    async def submit_phone(self, raw_phone: str) -> Optional[RegistrationOutcome]:
        if self._register_in_flight:
            logger.info("registration already in flight; ignoring")
            return None
        if self.state != GateState.awaiting_registration:
            logger.info("registration not expected in state %s", self.state.value)
            return None

        phone = normalize_phone(raw_phone)  # no I/O before validation
        self._register_in_flight = True
        try:
            position = await self._fresh_position()
            decision = None
            if self.location_id:
                decision = geofence.evaluate(position, await self._get_location())
                await self._log_scan("register", position, decision)

            try:
                created = await self.identity.register(phone, position, decision, self.user_agent)
            except StoreError as e:
                raise GateError(f"registration write failed: {e}") from e

            # Bound even on collision so the next visit takes the fast path.
            bound = await self.identity.bind_to_phone(phone)
            key = self.identity.ensure_local_key()
            self.registration = Registration(
                phone=phone, device_key_hashes={key.public_hash_hex} if bound else set()
            )

            if not created and not self.allow_duplicate_to_enter:
                raise PhoneAlreadyRegistered(f"{phone} already registered")

            self._set_state(GateState.ready_for_intro)
            return RegistrationOutcome(phone=phone, created=created, device_bound=bound, geofence=decision)
        finally:
            self._register_in_flight = False

    # ---- camera / media ----

    async def _ensure_camera(self) -> None:
        if self._camera_ready:
            return
        if self._camera_task is None:
            self._camera_task = asyncio.get_running_loop().create_task(self.engine.start_camera())
        try:
            await self._camera_task
        except GateError:
            self._camera_task = None
            raise
        except Exception as e:
            self._camera_task = None
            raise CameraUnavailable(f"camera start failed: {e}") from e
        self._camera_ready = True

    async def _load_into(self, sink: MediaSink, candidates: list[MediaCandidate]) -> Optional[MediaKind]:
        if sink.name in self._busy:
            logger.info("%s busy; dropping load request", sink.name)
            return None
        self._busy.add(sink.name)
        try:
            kind = await self.loader.load(sink, candidates)
        finally:
            self._busy.discard(sink.name)
        if kind is not None:
            self.engine.attach(sink, composite_mode(kind))
            self.current_kind = kind
        return kind

    async def _start_playback(self, sink: MediaSink) -> None:
        # Autoplay policies may refuse sound; fall back to muted playback.
        try:
            await sink.play(muted=False)
            self.needs_unmute = False
        except PlaybackBlocked:
            try:
                await sink.play(muted=True)
                self.needs_unmute = True
            except PlaybackBlocked as e:
                raise AutoplayBlocked(f"{sink.name}: playback refused") from e
        self.current_sink = sink

    async def unmute(self) -> bool:
        if self.current_sink is None:
            return False
        try:
            await self.current_sink.play(muted=False)
        except PlaybackBlocked:
            logger.info("unmute refused")
            return False
        self.needs_unmute = False
        return True

    # ---- intro ----

    async def start_intro(self) -> bool:
        if self._intro_in_flight:
            logger.info("intro start already in flight; ignoring")
            return False
        if self.state != GateState.ready_for_intro:
            logger.info("intro not startable in state %s", self.state.value)
            return False

        self._intro_in_flight = True
        try:
            self._start_prefetch()
            await self._ensure_camera()
            record = await fetch_intro_record(self.store)
            candidates = rank_or_raise(record, self.platform)
            kind = await self._load_into(self.intro_sink, candidates)
            if kind is None:
                return False
            await self._start_playback(self.intro_sink)
            self._set_state(GateState.playing_intro)
            self._start_watch()
            return True
        finally:
            self._intro_in_flight = False

    def _on_intro_event(self, token, event, detail) -> None:
        if event == SinkEvent.ended and token == self.intro_sink.token:
            self.handle_intro_ended()

    def handle_intro_ended(self) -> bool:
        if self.state != GateState.playing_intro:
            return False
        self._set_state(GateState.menu_shown)
        return True

    def _start_prefetch(self) -> None:
        if not self.location_id:
            return
        if self._prefetch_task is not None and not self._prefetch_task.done():
            return
        if self._prefetched is not None:
            return
        self._prefetch_task = asyncio.get_running_loop().create_task(self._prefetch_exercise())

    async def _prefetch_exercise(self) -> None:
        try:
            decision = await self.check_geofence("prefetch")
            if not decision.ok:
                logger.info("exercise prefetch skipped: outside geofence (%s)", decision.reason.value)
                return
            record = await fetch_exercise_record(self.store, self.location_id)
            self._prefetched = rank_or_raise(record, self.platform)
            logger.info("exercise prefetched: %d candidate(s)", len(self._prefetched))
        except GateError as e:
            logger.info("exercise prefetch skipped: %s", e)
        except Exception:
            logger.exception("exercise prefetch failed")

    # ---- GPS watch while the intro plays ----

    def _on_watch_fix(self, position: Optional[Position], error: Optional[Exception]) -> None:
        if error is not None:
            logger.info("GPS watch error: %s", error)
        elif position is not None:
            logger.debug(position.describe())

    def _start_watch(self) -> None:
        self._stop_watch()
        try:
            self._watch = self.locator.watch_position(
                self._on_watch_fix,
                high_accuracy=True,
                timeout_s=settings.geolocation_watch_timeout_s,
                max_age_s=5.0,
            )
        except Exception as e:
            logger.info("GPS watch unavailable: %s", e)
            self._watch = None

    def _stop_watch(self) -> None:
        if self._watch is not None:
            try:
                self.locator.clear_watch(self._watch)
            finally:
                self._watch = None

    # ---- exercise ----

    async def start_exercise(self) -> bool:
        if self._exercise_in_flight:
            logger.info("exercise start already in flight; ignoring")
            return False
        if self.state != GateState.menu_shown:
            logger.info("exercise not startable in state %s", self.state.value)
            return False

        self._exercise_in_flight = True
        try:
            decision = await self.check_geofence("exercise")
            if not decision.ok:
                # Refusal is silent for the user; they can move closer and retry.
                logger.info("exercise refused: %s", decision.reason.value)
                return False

            self._stop_watch()
            await self._ensure_camera()
            candidates = self._prefetched
            if not candidates:
                record = await fetch_exercise_record(self.store, self.location_id)
                candidates = rank_or_raise(record, self.platform)

            if self.current_sink is not None:
                self.current_sink.pause()
            kind = await self._load_into(self.exercise_sink, candidates)
            if kind is None:
                return False
            await self._start_playback(self.exercise_sink)
            self._set_state(GateState.playing_exercise)
            return True
        finally:
            self._exercise_in_flight = False

    def back(self) -> bool:
        if self.state != GateState.playing_exercise:
            return False
        self.exercise_sink.pause()
        self.current_sink = None
        self._set_state(GateState.menu_shown)
        return True

    async def close(self) -> None:
        self._stop_watch()
        if self._prefetch_task is not None and not self._prefetch_task.done():
            self._prefetch_task.cancel()
            try:
                await self._prefetch_task
            except asyncio.CancelledError:
                pass
