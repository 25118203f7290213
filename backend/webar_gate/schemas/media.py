from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MediaKind(str, Enum):
    alpha = "alpha"  # native alpha WebM
    sbs = "sbs"      # side-by-side colour | mask MP4
    flat = "flat"    # opaque MP4/MOV


class CompositeMode(str, Enum):
    alpha_map = "alpha-map"
    sbs_shader = "sbs-shader"
    plain = "plain"


class MediaCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    mime_type: Optional[str] = None
    kind: MediaKind


class ContentUrls(BaseModel):
    model_config = ConfigDict(extra="ignore")

    webm: Optional[str] = None
    mp4: Optional[str] = None
    mp4_sbs: Optional[str] = None


class ContentRecord(BaseModel):
    """A video document after decoding at the store boundary.

    ``sources`` is filled by ``parse_content_record``; the raw ``url``,
    ``format`` and ``urls`` fields are kept for display/debugging only.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    active: bool = True
    is_global: bool = Field(False, alias="isGlobal")
    location_ids: list[str] = Field(default_factory=list, alias="locationIds")
    url: Optional[str] = None
    format: Optional[str] = None
    urls: Optional[ContentUrls] = None
    sources: dict[MediaKind, str] = Field(default_factory=dict)


class PlatformHints(BaseModel):
    """What a client tells us about its decoder.

    ``decodable_mime_types`` is the list of MIME strings the client's
    ``canPlayType`` accepted; when omitted a default table is used.
    """

    user_agent: str = ""
    platform: str = ""
    max_touch_points: int = 0
    is_ios: Optional[bool] = None
    decodable_mime_types: Optional[list[str]] = None


class ProbeReport(BaseModel):
    """The source a server-side load settled on."""

    kind: MediaKind
    url: str
    mime_type: Optional[str] = None
