import asyncio

from fakes import FakeSink, make_frame

from webar_gate.schemas.media import CompositeMode, MediaKind
from webar_gate.services.alpha import AlphaModeCorrector, composite_mode
from webar_gate.services.sink import Frame


def _correct(frame, kind):
    return asyncio.run(AlphaModeCorrector().correct(FakeSink(frame=frame), kind))


def test_opaque_alpha_source_is_downgraded():
    opaque = make_frame(64, 36, lambda x, y: (30, 120, 200, 255))
    assert _correct(opaque, MediaKind.alpha) == MediaKind.flat


def test_transparent_alpha_source_is_kept():
    # transparent background, opaque subject in the middle
    def pixel(x, y):
        inside = 16 <= x < 48 and 9 <= y < 27
        return (200, 50, 50, 255 if inside else 0)

    assert _correct(make_frame(64, 36, pixel), MediaKind.alpha) == MediaKind.alpha


def test_sampling_failure_assumes_opaque():
    assert _correct(None, MediaKind.alpha) == MediaKind.flat
    assert _correct(None, MediaKind.sbs) == MediaKind.sbs
    truncated = Frame(width=64, height=64, rgba=b"\x00" * 10)
    assert _correct(truncated, MediaKind.alpha) == MediaKind.flat


def test_sbs_with_grey_mask_is_kept():
    def pixel(x, y):
        if x < 32:
            return (10, 200, 90, 255)
        v = 255 if 8 <= y < 24 else 0
        return (v, v, v, 255)

    assert _correct(make_frame(64, 32, pixel), MediaKind.sbs) == MediaKind.sbs


def test_sbs_with_colour_in_mask_half_is_flat():
    # an ordinary video wrongly tagged as side-by-side
    colourful = make_frame(64, 32, lambda x, y: ((x * 4) % 256, 30, 200, 255))
    assert _correct(colourful, MediaKind.sbs) == MediaKind.flat


def test_flat_is_never_sampled():
    class Exploding(FakeSink):
        async def grab_frame(self, max_side):
            raise AssertionError("flat sources must not be sampled")

    assert asyncio.run(AlphaModeCorrector().correct(Exploding(), MediaKind.flat)) == MediaKind.flat


def test_composite_modes():
    assert composite_mode(MediaKind.alpha) == CompositeMode.alpha_map
    assert composite_mode(MediaKind.sbs) == CompositeMode.sbs_shader
    assert composite_mode(MediaKind.flat) == CompositeMode.plain
