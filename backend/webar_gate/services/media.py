import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import ValidationError

from webar_gate.core.constants import MIME_MP4, MIME_QUICKTIME, MIME_WEBM_ALPHA
from webar_gate.core.errors import ContentParseError, UnsupportedDevice
from webar_gate.schemas.media import (
    ContentRecord,
    MediaCandidate,
    MediaKind,
    PlatformHints,
)

logger = logging.getLogger(__name__)

# Preference order for platforms that decode alpha WebM
RANK_ORDER = [MediaKind.alpha, MediaKind.sbs, MediaKind.flat]

# Values seen in the `format` field of video documents
_FORMAT_KINDS = {
    "webm": MediaKind.alpha,
    "webm_alpha": MediaKind.alpha,
    "alpha": MediaKind.alpha,
    "mp4_sbs": MediaKind.sbs,
    "sbs": MediaKind.sbs,
    "mp4": MediaKind.flat,
    "mov": MediaKind.flat,
    "flat": MediaKind.flat,
}

_IOS_UA = re.compile(r"iPhone|iPad|iPod", re.IGNORECASE)


def detect_ios(user_agent: str = "", platform: str = "", max_touch_points: int = 0) -> bool:
    """iOS/iPadOS detection; iPadOS 13+ reports itself as a touch-capable Mac."""
    if _IOS_UA.search(user_agent or ""):
        return True
    return platform == "MacIntel" and (max_touch_points or 0) > 1


def _kind_from_format(fmt: Optional[str]) -> Optional[MediaKind]:
    if not fmt:
        return None
    return _FORMAT_KINDS.get(fmt.strip().lower().replace("-", "_"))


def infer_kind(url: str) -> MediaKind:
    """Guess the media kind from a URL's path, then its query parameters."""
    parts = urlsplit(url)
    path = parts.path.lower()
    name = path.rsplit("/", 1)[-1]

    if "sbs" in path:
        return MediaKind.sbs
    if name.endswith(".webm"):
        return MediaKind.alpha
    if name.endswith(".mp4") or name.endswith(".mov"):
        return MediaKind.flat

    # Extension fallback: CDN links often carry the type in the query string
    query = parse_qs(parts.query)
    for key in ("format", "type", "ext"):
        for value in query.get(key, []):
            kind = _kind_from_format(value.split("/")[-1])
            if kind is not None:
                return kind
    return MediaKind.flat


def mime_for(kind: MediaKind, url: str) -> str:
    if kind == MediaKind.alpha:
        return MIME_WEBM_ALPHA
    if urlsplit(url).path.lower().endswith(".mov"):
        return MIME_QUICKTIME
    return MIME_MP4


def parse_content_record(raw: dict) -> ContentRecord:
    """Decode a raw video document into a ``ContentRecord``.

    Sources are resolved once, here: explicit ``urls.*`` fields first, then
    the generic ``url`` classified by ``format``, then by ``infer_kind``.
    The generic url never overrides an explicit field of the same kind.
    """
    try:
        record = ContentRecord.model_validate(raw)
    except ValidationError as e:
        raise ContentParseError(f"invalid content record {raw.get('id')!r}: {e}") from e

    sources: dict[MediaKind, str] = {}
    if record.urls is not None:
        if record.urls.webm:
            sources[MediaKind.alpha] = record.urls.webm
        if record.urls.mp4_sbs:
            sources[MediaKind.sbs] = record.urls.mp4_sbs
        if record.urls.mp4:
            sources[MediaKind.flat] = record.urls.mp4

    if record.url:
        kind = _kind_from_format(record.format) or infer_kind(record.url)
        sources.setdefault(kind, record.url)

    if not sources:
        raise ContentParseError(f"content record {record.id!r} has no media url")

    record.sources = sources
    return record


@dataclass
class Platform:
    is_ios: bool
    can_decode: Callable[[str], bool]


def default_can_decode(is_ios: bool) -> Callable[[str], bool]:
    """Capability table used when the client did not probe its decoder."""

    def can_decode(mime: str) -> bool:
        base = mime.split(";")[0].strip().lower()
        if base == "video/webm":
            return not is_ios
        if base == "video/quicktime":
            return is_ios
        return base == "video/mp4"

    return can_decode


def platform_from_hints(hints: PlatformHints) -> Platform:
    is_ios = hints.is_ios
    if is_ios is None:
        is_ios = detect_ios(hints.user_agent, hints.platform, hints.max_touch_points)
    if hints.decodable_mime_types is None:
        return Platform(is_ios=is_ios, can_decode=default_can_decode(is_ios))

    accepted = {m.split(";")[0].strip().lower() for m in hints.decodable_mime_types}
    return Platform(
        is_ios=is_ios,
        can_decode=lambda mime: mime.split(";")[0].strip().lower() in accepted,
    )


def _is_webm(candidate: MediaCandidate) -> bool:
    mime = (candidate.mime_type or "").lower()
    return mime.startswith("video/webm") or urlsplit(candidate.url).path.lower().endswith(".webm")


def rank(record: ContentRecord, platform: Platform) -> list[MediaCandidate]:
    """Playable candidates for this platform, best first."""
    ranked = []
    for kind in RANK_ORDER:
        url = record.sources.get(kind)
        if not url:
            continue
        candidate = MediaCandidate(url=url, mime_type=mime_for(kind, url), kind=kind)
        # iOS cannot composite alpha WebM reliably, whatever canPlayType claims
        if platform.is_ios and _is_webm(candidate):
            continue
        try:
            decodable = platform.can_decode(candidate.mime_type)
        except Exception as e:  # a broken probe means "no"
            logger.warning("capability probe failed for %s: %s", candidate.mime_type, e)
            decodable = False
        if decodable:
            ranked.append(candidate)
    return ranked


def rank_or_raise(record: ContentRecord, platform: Platform) -> list[MediaCandidate]:
    candidates = rank(record, platform)
    if not candidates:
        raise UnsupportedDevice(
            f"no playable source in {record.id!r} (ios={platform.is_ios}, "
            f"sources={sorted(k.value for k in record.sources)})"
        )
    return candidates
