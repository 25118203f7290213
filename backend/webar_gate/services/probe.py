import asyncio
import logging
from typing import Optional

import httpx

from webar_gate.core.constants import PROBE_RANGE_BYTES
from webar_gate.services.sink import FailureClass, MediaSink, SinkEvent

logger = logging.getLogger(__name__)

# Leading bytes of the containers we serve
_EBML_MAGIC = b"\x1a\x45\xdf\xa3"


def _base_mime(mime: Optional[str]) -> str:
    return (mime or "").split(";")[0].strip().lower()


def sniff_container(head: bytes) -> Optional[str]:
    """'video/webm', 'video/mp4' (ISO BMFF / QuickTime) or None."""
    if head.startswith(_EBML_MAGIC):
        return "video/webm"
    if len(head) >= 8 and head[4:8] in (b"ftyp", b"moov", b"mdat", b"wide", b"free"):
        return "video/mp4"
    return None


def _compatible(declared: str, sniffed: str) -> bool:
    if declared == sniffed:
        return True
    # QuickTime and MP4 share the ISO BMFF layout
    return {declared, sniffed} <= {"video/mp4", "video/quicktime"}


class HttpProbeSink(MediaSink):
    """Server-side sink: a load is a ranged GET that must look like video.

    It reports readiness when the first bytes of the response match the
    declared (or, when untyped, any known) container, and maps failures to
    the same classes a browser media element would.
    """

    def __init__(self, name: str, client: Optional[httpx.AsyncClient] = None, timeout_s: float = 15.0):
        super().__init__(name)
        self._client = client
        self._timeout_s = timeout_s
        self._task: Optional[asyncio.Task] = None

    def _cancel_pending(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _begin_load(self, token, url, mime_type):
        if token != self.token:
            return
        self._task = asyncio.get_running_loop().create_task(self._probe(token, url, mime_type))

    async def _probe(self, token: int, url: str, mime_type: Optional[str]) -> None:
        request_url = url.split("#", 1)[0]  # fragments are client-side only
        headers = {"Range": f"bytes=0-{PROBE_RANGE_BYTES - 1}"}
        try:
            if self._client is not None:
                resp = await self._client.get(request_url, headers=headers, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    resp = await client.get(request_url, headers=headers, follow_redirects=True)
        except httpx.TimeoutException:
            self._report(token, FailureClass.timeout)
            return
        except httpx.HTTPError as e:
            logger.debug("%s: probe transport error for %s: %s", self.name, request_url, e)
            self._report(token, FailureClass.network)
            return

        if resp.status_code >= 400:
            self._report(token, FailureClass.network)
            return

        declared = _base_mime(mime_type)
        served = _base_mime(resp.headers.get("content-type"))
        if declared and served.startswith("video/") and not _compatible(declared, served):
            self._report(token, FailureClass.unsupported_type)
            return

        sniffed = sniff_container(resp.content[:16])
        if sniffed is None or (declared and not _compatible(declared, sniffed)):
            self._report(token, FailureClass.decode)
            return

        if token == self.token:
            self.emit(token, SinkEvent.ready)

    def _report(self, token: int, failure: FailureClass) -> None:
        if token == self.token:
            self.emit(token, SinkEvent.error, failure)
