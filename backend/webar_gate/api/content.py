import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Query

from webar_gate.core.config import settings
from webar_gate.core.constants import COLLECTION_VIDEOS
from webar_gate.core.errors import (
    ContentNotFound,
    ContentParseError,
    GateError,
    MediaLoadFailed,
    StoreError,
    UnsupportedDevice,
)
from webar_gate.schemas.media import ContentRecord, MediaCandidate, PlatformHints, ProbeReport
from webar_gate.services.loader import RobustMediaLoader
from webar_gate.services.media import parse_content_record, platform_from_hints, rank_or_raise
from webar_gate.services.orchestrator import fetch_exercise_record, fetch_intro_record
from webar_gate.services.probe import HttpProbeSink
from webar_gate.store import SqlDocumentStore, get_store

router = APIRouter(prefix="/content", tags=["content"])

# Keys the decoded record owns; anything else in a payload is stored untouched
_RECORD_KEYS = {"id", "sources"} | set(ContentRecord.model_fields) | {
    f.alias for f in ContentRecord.model_fields.values() if f.alias
}


async def get_http_client():
    async with httpx.AsyncClient(timeout=settings.media_load_timeout_s) as client:
        yield client


async def _load_record(store: SqlDocumentStore, content_id: str) -> ContentRecord:
    try:
        doc = await store.get(COLLECTION_VIDEOS, content_id)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Content lookup failed: {e}")
    if doc is None:
        raise HTTPException(status_code=404, detail="Content not found")
    try:
        return parse_content_record(doc)
    except ContentParseError as e:
        raise HTTPException(status_code=500, detail=str(e))


def _ranked(record: ContentRecord, hints: PlatformHints) -> list[MediaCandidate]:
    try:
        return rank_or_raise(record, platform_from_hints(hints))
    except UnsupportedDevice as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.put("/{content_id}", response_model=ContentRecord)
async def upsert_content(
    content_id: str,
    payload: dict = Body(...),
    store: SqlDocumentStore = Depends(get_store),
):
    try:
        record = parse_content_record({**payload, "id": content_id})
    except ContentParseError as e:
        raise HTTPException(status_code=422, detail=str(e))

    # Persist the canonical camelCase form the intro/exercise queries filter on;
    # sources are derived again on every read
    fields = {k: v for k, v in payload.items() if k not in _RECORD_KEYS}
    fields.update(
        record.model_dump(mode="json", by_alias=True, exclude={"id", "sources"}, exclude_none=True)
    )
    try:
        await store.set(COLLECTION_VIDEOS, content_id, fields)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=f"Content write failed: {e}")
    return record


@router.get("/intro", response_model=ContentRecord)
async def get_intro(store: SqlDocumentStore = Depends(get_store)):
    try:
        return await fetch_intro_record(store)
    except ContentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ContentParseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except GateError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/exercise", response_model=ContentRecord)
async def get_exercise(
    location_id: str = Query(...),
    store: SqlDocumentStore = Depends(get_store),
):
    try:
        return await fetch_exercise_record(store, location_id)
    except ContentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ContentParseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except GateError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.post("/{content_id}/candidates", response_model=list[MediaCandidate])
async def rank_candidates(
    content_id: str,
    hints: PlatformHints,
    store: SqlDocumentStore = Depends(get_store),
):
    """
    Ranked playable sources of one video for the calling device.

    The client sends its user agent (and optionally what its decoder
    accepted); the response is best-first and never empty.
    """
    record = await _load_record(store, content_id)
    return _ranked(record, hints)


@router.post("/{content_id}/probe", response_model=ProbeReport)
async def probe_content(
    content_id: str,
    hints: PlatformHints,
    store: SqlDocumentStore = Depends(get_store),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Run the layered loader against the CDN for this device's candidates.

    Reports the first source that answers with the expected container, or
    502 with every attempt when none does.
    """
    candidates = _ranked(await _load_record(store, content_id), hints)
    sink = HttpProbeSink(f"probe:{content_id}", client=client)
    try:
        kind = await RobustMediaLoader(corrector=None).load(sink, candidates)
    except MediaLoadFailed as e:
        raise HTTPException(
            status_code=502,
            detail={
                "message": str(e),
                "attempts": [
                    {
                        "url": a.variant.url,
                        "mime_type": a.variant.mime_type,
                        "status": a.status,
                        "failure": a.failure.value if a.failure else None,
                    }
                    for a in e.attempts
                ],
            },
        )
    if kind is None:
        raise HTTPException(status_code=409, detail="Probe was superseded")
    return ProbeReport(kind=kind, url=sink.src, mime_type=sink.mime_type)
