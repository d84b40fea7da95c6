from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Callable, Iterable, Optional

from musichub.crosscutting.logging import log_error
from musichub.crosscutting.metrics import MetricsCollector
from musichub.domain.entities import PlaybackState, Track, TransportState
from musichub.domain.errors import PlaybackError
from musichub.domain.ports import AudioTransport

from .store import Observable


logger = logging.getLogger(__name__)

StreamResolver = Callable[[Track], str]

# transport callbacks only describe audio that is actually loaded
_AUDIBLE = (TransportState.PLAYING, TransportState.PAUSED)


def _finite_non_negative(value: Optional[float]) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or math.isinf(value) or value < 0:
        return 0.0
    return value


def _clamp_fraction(fraction: float) -> float:
    try:
        fraction = float(fraction)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(fraction):
        return 0.0
    return min(1.0, max(0.0, fraction))


class PlaybackEngine(Observable[PlaybackState]):
    """Owns the play queue, the current track and the audio transport handle.

    Each play() bumps a generation counter. Work that resumes after an await, and
    transport callbacks that pass a generation, are dropped when the counter has
    moved on, so only the latest play request ever becomes audible. Progress and
    ended callbacks are also ignored unless the transport is playing or paused.

    Shuffle and repeat are not implemented; advancement is strictly queue order.
    """

    def __init__(self, transport: AudioTransport, stream_resolver: StreamResolver,
                 metrics: Optional[MetricsCollector] = None) -> None:
        super().__init__()
        self._transport = transport
        self._resolve_stream = stream_resolver
        self._metrics = metrics or MetricsCollector()
        self._state = PlaybackState()
        self._generation = 0

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    async def play(self, track: Track, queue: Optional[Iterable[Track]] = None) -> PlaybackState:
        """Replace the queue and start track. Raises PlaybackError on transport failure."""
        queue = tuple(queue) if queue else (track,)
        index = next((i for i, t in enumerate(queue) if t.url == track.url), -1)
        if index == -1:
            logger.warning(f"Track {track.url} not in queue, starting from the first entry")
            index = 0
        return await self._start(queue, index)

    async def _start(self, queue: tuple, index: int) -> PlaybackState:
        self._generation += 1
        generation = self._generation
        current = queue[index]
        self._set_state(PlaybackState(queue=queue, current_index=index,
                                      transport=TransportState.LOADING))
        logger.info(f"Loading {current.url} (generation {generation})")

        try:
            await self._transport.load(self._resolve_stream(current))
            if self._is_stale(generation):
                return self._state
            await self._transport.play()
        except Exception as e:
            if self._is_stale(generation):
                return self._state
            raise self._fail(e, current) from e

        if self._is_stale(generation):
            return self._state
        self._set_state(replace(self._state, transport=TransportState.PLAYING))
        return self._state

    async def toggle_play(self) -> PlaybackState:
        state = self._state
        if state.current_index == -1:
            return state

        if state.transport is TransportState.ENDED or state.transport is TransportState.ERROR:
            return await self._start(state.queue, state.current_index)

        if state.transport is TransportState.PLAYING:
            request, target = self._transport.pause, TransportState.PAUSED
        elif state.transport is TransportState.PAUSED:
            request, target = self._transport.play, TransportState.PLAYING
        else:
            return state

        generation = self._generation
        try:
            await request()
        except Exception as e:
            if self._is_stale(generation):
                return self._state
            raise self._fail(e, state.current_track) from e

        if self._is_stale(generation):
            return self._state
        self._set_state(replace(self._state, transport=target))
        return self._state

    def seek(self, fraction: float) -> PlaybackState:
        """Jump to fraction of the duration; fraction is clamped to [0, 1]."""
        position = _clamp_fraction(fraction) * self._state.duration_seconds

        if self._state.current_index != -1:
            try:
                self._transport.seek(position)
            except Exception as e:
                raise self._fail(e, self._state.current_track) from e

        self._set_state(replace(self._state, position_seconds=position))
        return self._state

    def on_progress(self, position_seconds: float, duration_seconds: float,
                    generation: Optional[int] = None) -> None:
        if self._is_stale(generation) or self._state.transport not in _AUDIBLE:
            return
        duration = _finite_non_negative(duration_seconds)
        position = min(_finite_non_negative(position_seconds), duration)
        self._set_state(replace(self._state, position_seconds=position, duration_seconds=duration))

    async def on_ended(self, generation: Optional[int] = None) -> PlaybackState:
        """Advance to the successor of the current track, or stop at the end of the queue."""
        if self._is_stale(generation):
            return self._state
        state = self._state
        current = state.current_track
        if current is None or state.transport not in _AUDIBLE:
            logger.debug(f"Ignoring ended callback while {state.transport.value}")
            return state

        index = self._locate(state.queue, current, state.current_index)
        if index != -1 and index < len(state.queue) - 1:
            return await self._start(state.queue, index + 1)

        self._set_state(replace(state, transport=TransportState.ENDED,
                                position_seconds=state.duration_seconds))
        logger.info("Queue finished")
        return self._state

    def on_transport_error(self, error: BaseException,
                           generation: Optional[int] = None) -> Optional[PlaybackError]:
        """Host callback for asynchronous transport faults. Returns the surfaced error."""
        if self._is_stale(generation):
            return None
        return self._fail(error, self._state.current_track)

    def enqueue(self, track: Track) -> PlaybackState:
        self._set_state(replace(self._state, queue=self._state.queue + (track,)))
        return self._state

    def stop(self) -> PlaybackState:
        self._generation += 1
        try:
            self._transport.stop()
        except Exception as e:
            log_error(logger, "Transport stop failed", e)
        self._set_state(PlaybackState())
        return self._state

    @staticmethod
    def _locate(queue: tuple, track: Track, hint: int) -> int:
        # stored index first so repeated urls in one queue still advance
        if 0 <= hint < len(queue) and queue[hint].url == track.url:
            return hint
        return next((i for i, t in enumerate(queue) if t.url == track.url), -1)

    def _is_stale(self, generation: Optional[int]) -> bool:
        if generation is None or generation == self._generation:
            return False
        self._metrics.increment('playback.stale_callbacks')
        logger.debug(f"Ignoring stale playback callback (generation {generation}, current {self._generation})")
        return True

    def _fail(self, error: BaseException, track: Optional[Track]) -> PlaybackError:
        self._metrics.increment('playback.errors')
        log_error(logger, "Playback failed", error, url=track.url if track else None)
        self._set_state(replace(self._state, transport=TransportState.ERROR, error=str(error)))
        return PlaybackError(f"Playback failed: {error}")

    def _set_state(self, state: PlaybackState) -> None:
        self._state = state
        self._notify(state)
