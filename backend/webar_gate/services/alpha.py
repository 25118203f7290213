"""Post-load check that the claimed compositing mode matches the pixels.

CDNs sometimes re-encode an alpha WebM into an opaque stream; compositing
that as alpha shows a black/opaque box, so a source that samples fully
opaque is downgraded to ``flat``. Sampling can fail (tainted canvas, no
decoded frame yet); that must never raise.
"""

import logging

from webar_gate.core.constants import (
    MASK_GREY_TOLERANCE,
    OPAQUE_ALPHA_MIN,
    SAMPLE_GRID,
    SAMPLE_MAX_SIDE,
)
from webar_gate.schemas.media import CompositeMode, MediaKind
from webar_gate.services.sink import Frame, FrameUnavailable, MediaSink

logger = logging.getLogger(__name__)


_MODES = {
    MediaKind.alpha: CompositeMode.alpha_map,
    MediaKind.sbs: CompositeMode.sbs_shader,
    MediaKind.flat: CompositeMode.plain,
}


def composite_mode(kind: MediaKind) -> CompositeMode:
    return _MODES[kind]


def sample_points(width: int, height: int, grid: int = SAMPLE_GRID, x0: int = 0):
    """Grid of pixel coordinates, cell centres, within columns [x0, width)."""
    span = width - x0
    for j in range(grid):
        y = min(height - 1, int((j + 0.5) * height / grid))
        for i in range(grid):
            x = min(width - 1, x0 + int((i + 0.5) * span / grid))
            yield x, y


def is_fully_opaque(frame: Frame) -> bool:
    return all(
        frame.pixel(x, y)[3] >= OPAQUE_ALPHA_MIN
        for x, y in sample_points(frame.width, frame.height)
    )


def mask_is_greyscale(frame: Frame) -> bool:
    """True when the right half of an SBS frame looks like a luma mask."""
    for x, y in sample_points(frame.width, frame.height, x0=frame.width // 2):
        r, g, b, _ = frame.pixel(x, y)
        if max(r, g, b) - min(r, g, b) > MASK_GREY_TOLERANCE:
            return False
    return True


class AlphaModeCorrector:
    def __init__(self, max_side: int = SAMPLE_MAX_SIDE):
        self.max_side = max_side

    async def correct(self, sink: MediaSink, claimed: MediaKind) -> MediaKind:
        if claimed == MediaKind.flat:
            return claimed

        try:
            frame = await sink.grab_frame(self.max_side)
            if frame.width <= 0 or frame.height <= 0 or len(frame.rgba) < frame.width * frame.height * 4:
                raise FrameUnavailable("empty or truncated frame")
            if claimed == MediaKind.alpha:
                downgrade = is_fully_opaque(frame)
            else:
                downgrade = not mask_is_greyscale(frame)
        except FrameUnavailable as e:
            if claimed == MediaKind.alpha:
                logger.info("%s: cannot sample frame (%s); assuming opaque", sink.name, e)
                return MediaKind.flat
            return claimed
        except Exception as e:
            logger.warning("%s: frame sampling error %r; assuming opaque", sink.name, e)
            return MediaKind.flat if claimed == MediaKind.alpha else claimed

        if downgrade:
            logger.info("%s: %s source does not carry a usable alpha; using flat", sink.name, claimed.value)
            return MediaKind.flat
        return claimed
