"""Layered media loading.

For each ranked candidate the loader tries up to four variants:

    typed MIME   + plain URL
    typed MIME   + URL with seek hint
    sniffed MIME + plain URL
    sniffed MIME + URL with seek hint

Each attempt is ``pending -> ready | failed | timed-out`` in one step and
is never retried with the same parameters. A load that is superseded by
another ``set_source`` on the same sink ends quietly with ``None``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from webar_gate.core.config import settings
from webar_gate.core.errors import MediaLoadFailed
from webar_gate.schemas.media import MediaCandidate, MediaKind
from webar_gate.services.alpha import AlphaModeCorrector
from webar_gate.services.sink import FailureClass, MediaSink, SinkEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadVariant:
    candidate: MediaCandidate
    url: str
    mime_type: Optional[str]

    def describe(self) -> str:
        typed = "typed" if self.mime_type else "sniffed"
        return f"{self.candidate.kind.value} {typed} {self.url}"


class AttemptError(Exception):
    def __init__(self, variant: LoadVariant, failure: FailureClass):
        self.variant = variant
        self.failure = failure
        super().__init__(f"{failure.value}: {variant.describe()}")


@dataclass
class AttemptResult:
    variant: LoadVariant
    token: int
    status: str  # 'ready', 'failed', 'timed-out', 'aborted'
    failure: Optional[FailureClass] = None

    @property
    def error(self) -> Optional[AttemptError]:
        if self.failure is None:
            return None
        return AttemptError(self.variant, self.failure)


def build_variants(candidate: MediaCandidate, seek_hint: str = "") -> list[LoadVariant]:
    mimes = [candidate.mime_type, None] if candidate.mime_type else [None]
    urls = [candidate.url]
    # Never stack a hint on a URL that already has a fragment
    if seek_hint and "#" not in candidate.url:
        urls.append(candidate.url + seek_hint)
    return [
        LoadVariant(candidate=candidate, url=url, mime_type=mime)
        for mime in mimes
        for url in urls
    ]


class RobustMediaLoader:
    def __init__(
        self,
        corrector: Optional[AlphaModeCorrector] = None,
        timeout_s: Optional[float] = None,
        seek_hint: Optional[str] = None,
    ):
        self.corrector = corrector
        self.timeout_s = timeout_s if timeout_s is not None else settings.media_load_timeout_s
        self.seek_hint = seek_hint if seek_hint is not None else settings.seek_hint

    async def load(self, sink: MediaSink, candidates: list[MediaCandidate]) -> Optional[MediaKind]:
        """Load the first candidate that becomes playable.

        Returns the effective kind (after alpha correction), or None when the
        load was superseded on this sink. Raises MediaLoadFailed once every
        variant of every candidate has failed.
        """
        results: list[AttemptResult] = []
        last_token: Optional[int] = None

        for candidate in candidates:
            for variant in build_variants(candidate, self.seek_hint):
                if last_token is not None and sink.token != last_token:
                    logger.info("%s: load superseded between attempts", sink.name)
                    return None

                result = await self._attempt(sink, variant)
                results.append(result)
                last_token = result.token

                if result.status == "ready":
                    logger.info("%s: ready with %s", sink.name, variant.describe())
                    if self.corrector is None:
                        return candidate.kind
                    return await self.corrector.correct(sink, candidate.kind)
                if result.status == "aborted":
                    logger.info("%s: load superseded during %s", sink.name, variant.describe())
                    return None

                logger.warning(
                    "%s: attempt %d failed (%s): %s",
                    sink.name,
                    len(results),
                    result.failure.value,
                    variant.describe(),
                )

        last = results[-1].error if results else None
        raise MediaLoadFailed(results, last)

    async def _attempt(self, sink: MediaSink, variant: LoadVariant) -> AttemptResult:
        loop = asyncio.get_running_loop()
        outcome = loop.create_future()
        token = None

        def on_event(evt_token, event, detail):
            # Events of other loads on this sink (earlier or later) are not ours.
            if outcome.done() or evt_token != token:
                return
            if event == SinkEvent.ready:
                outcome.set_result(("ready", None))
            elif event == SinkEvent.error:
                outcome.set_result(("failed", detail or FailureClass.decode))
            elif event == SinkEvent.abort:
                outcome.set_result(("aborted", None))

        unsubscribe = sink.subscribe(on_event)
        try:
            token = sink.set_source(variant.url, variant.mime_type)
            try:
                status, failure = await asyncio.wait_for(outcome, self.timeout_s)
            except asyncio.TimeoutError:
                status, failure = "timed-out", FailureClass.timeout
        finally:
            unsubscribe()
        return AttemptResult(variant=variant, token=token, status=status, failure=failure)
