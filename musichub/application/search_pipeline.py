from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from musichub.crosscutting.logging import log_with_fields
from musichub.crosscutting.metrics import MetricsCollector
from musichub.domain.entities import SearchPhase, SearchState
from musichub.domain.normalization import dedupe_tracks, normalize_query
from musichub.domain.ports import CatalogClient

from .scheduling import CancellableTimer, bounded
from .store import Observable


logger = logging.getLogger(__name__)


class SearchPipeline(Observable[SearchState]):
    """Turns keystrokes into settled catalog results.

    Every dispatch is tagged with an increasing sequence number and a response is
    applied only if its number is still the latest, so slow responses for older
    text never overwrite newer results. Failures settle with no results.
    """

    def __init__(self, catalog: CatalogClient, *, min_chars: int = 3,
                 debounce_ms: int = 300, timeout_sec: Optional[float] = 15.0,
                 metrics: Optional[MetricsCollector] = None) -> None:
        super().__init__()
        self._catalog = catalog
        self.min_chars = min_chars
        self.debounce_sec = max(0, debounce_ms) / 1000.0
        self.timeout_sec = timeout_sec
        self._metrics = metrics or MetricsCollector()
        self._state = SearchState()
        self._sequence = 0
        self._timer: Optional[CancellableTimer] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def sequence(self) -> int:
        return self._sequence

    def on_input(self, text: str) -> None:
        """Per-keystroke entry point. Must be called from inside the event loop."""
        query = normalize_query(text)
        self._cancel_timer()

        if len(query) < self.min_chars:
            self.clear(query)
            return

        if query == self._state.query and self._state.phase is not SearchPhase.IDLE:
            return

        if self.debounce_sec <= 0:
            self._spawn(query)
            return

        self._timer = CancellableTimer(self.debounce_sec, lambda: self._spawn(query)).start()

    def clear(self, query: str = "") -> None:
        """Drop results and invalidate anything still in flight."""
        self._cancel_timer()
        self._sequence += 1
        self._set_state(SearchState(SearchPhase.IDLE, query, (), self._sequence))

    async def search(self, query: str) -> SearchState:
        """Dispatch immediately and return the state once this request settles."""
        query = normalize_query(query)
        if len(query) < self.min_chars:
            self.clear(query)
            return self._state

        self._sequence += 1
        sequence = self._sequence
        self._metrics.increment('search.dispatched')
        self._set_state(SearchState(SearchPhase.SEARCHING, query, self._state.results, sequence))

        try:
            with self._metrics.timer('search.latency'):
                tracks = await bounded(self._catalog.search(query), self.timeout_sec)
            results = tuple(dedupe_tracks(tracks))
        except asyncio.TimeoutError:
            self._metrics.increment('search.failed')
            log_with_fields(logger, 'WARNING', 'Search timed out',
                            {'query': query, 'sequence': sequence, 'timeout_sec': self.timeout_sec})
            results = ()
        except Exception as e:
            self._metrics.increment('search.failed')
            log_with_fields(logger, 'WARNING', 'Search failed',
                            {'query': query, 'sequence': sequence,
                             'error_type': type(e).__name__, 'error_message': str(e)})
            results = ()

        if sequence != self._sequence:
            self._metrics.increment('search.stale_dropped')
            logger.debug(f"Dropping stale search response {sequence} (latest {self._sequence})")
            return self._state

        self._set_state(SearchState(SearchPhase.SETTLED, query, results, sequence))
        return self._state

    def close(self) -> None:
        """Cancel the pending timer and suppress in-flight responses."""
        self._cancel_timer()
        self._sequence += 1
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _spawn(self, query: str) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self.search(query))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_state(self, state: SearchState) -> None:
        self._state = state
        self._notify(state)
