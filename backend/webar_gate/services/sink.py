"""Playback sinks.

A sink is the thing a video is loaded into (a ``<video>`` element in the
browser). Every ``set_source`` call starts a new load identified by an
increasing token; all events carry the token of the load they belong to,
so listeners can ignore late events from a superseded load.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SinkEvent(str, Enum):
    ready = "canplay"
    error = "error"
    abort = "abort"
    ended = "ended"


class FailureClass(str, Enum):
    network = "network"
    decode = "decode"
    unsupported_type = "unsupported-type"
    timeout = "timeout"


class FrameUnavailable(Exception):
    """No decoded frame can be read (not primed yet, tainted canvas, ...)."""


class PlaybackBlocked(Exception):
    """play() was refused, typically by an autoplay policy."""


@dataclass
class Frame:
    width: int
    height: int
    rgba: bytes  # row-major, 4 bytes per pixel

    def pixel(self, x: int, y: int) -> tuple[int, int, int, int]:
        i = (y * self.width + x) * 4
        r, g, b, a = self.rgba[i:i + 4]
        return r, g, b, a


Listener = Callable[[int, SinkEvent, Optional[FailureClass]], None]


class MediaSink:
    """Base class for playback sinks.

    Subclasses implement ``_begin_load`` and report progress with
    ``emit(token, event, detail)``. ``_begin_load`` always runs on the
    next loop iteration, after ``set_source`` has returned its token.
    """

    def __init__(self, name: str):
        self.name = name
        self.src: Optional[str] = None
        self.mime_type: Optional[str] = None
        self.muted = True
        self.paused = True
        self._token = 0
        self._listeners: list[Listener] = []

    @property
    def token(self) -> int:
        return self._token

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, token: int, event: SinkEvent, detail: Optional[FailureClass] = None) -> None:
        for listener in list(self._listeners):
            listener(token, event, detail)

    def set_source(self, url: str, mime_type: Optional[str] = None) -> int:
        previous = self._token if self.src is not None else None
        self._token += 1
        token = self._token
        self.src = url
        self.mime_type = mime_type
        self.paused = True
        self._cancel_pending()
        if previous is not None:
            self.emit(previous, SinkEvent.abort)
        asyncio.get_running_loop().call_soon(self._begin_load, token, url, mime_type)
        return token

    def _begin_load(self, token: int, url: str, mime_type: Optional[str]) -> None:
        raise NotImplementedError

    def _cancel_pending(self) -> None:
        pass

    async def play(self, muted: bool = False) -> None:
        self.muted = muted
        self.paused = False

    def pause(self) -> None:
        self.paused = True

    def finish(self) -> None:
        """Report natural end of the current media."""
        self.paused = True
        self.emit(self._token, SinkEvent.ended)

    async def grab_frame(self, max_side: int) -> Frame:
        raise FrameUnavailable(f"{self.name}: frame sampling not supported")
