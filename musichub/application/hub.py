from __future__ import annotations

import logging
from typing import Callable, List, Optional

from musichub.crosscutting.config import Settings
from musichub.crosscutting.metrics import MetricsCollector
from musichub.domain.entities import PlaybackState, Track
from musichub.domain.errors import NotFound, ValidationError
from musichub.domain.ports import AudioTransport, CatalogClient, IdentityProvider, LibraryRepository

from .auth import AuthService
from .library_store import LibraryStore
from .playback_engine import PlaybackEngine
from .search_pipeline import SearchPipeline
from .session_gate import SessionGate


logger = logging.getLogger(__name__)


class MusicHub:
    """Wires the client core together.

    Identity events drive the SessionGate, whose transitions drive LibraryStore
    sync and reset. Search results and library contents both feed the player.
    """

    def __init__(self, identity: IdentityProvider, catalog: CatalogClient,
                 repository: LibraryRepository, transport: AudioTransport,
                 settings: Optional[Settings] = None,
                 metrics: Optional[MetricsCollector] = None) -> None:
        settings = settings or Settings()
        self.settings = settings
        self.metrics = metrics or MetricsCollector()
        self._identity = identity

        self.gate = SessionGate()
        self.auth = AuthService(identity, signup_cooldown_sec=settings.signup_cooldown_sec)
        self.library = LibraryStore(self.gate, repository,
                                    default_cover_url=settings.default_cover_url,
                                    timeout_sec=settings.http_timeout_sec,
                                    metrics=self.metrics)
        self.search = SearchPipeline(catalog,
                                     min_chars=settings.search_min_chars,
                                     debounce_ms=settings.search_debounce_ms,
                                     timeout_sec=settings.http_timeout_sec,
                                     metrics=self.metrics)
        self.playback = PlaybackEngine(transport, catalog.stream_url, metrics=self.metrics)
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def started(self) -> bool:
        return bool(self._unsubscribers)

    async def start(self) -> None:
        """Subscribe to identity events and request the initial-load event."""
        if self.started:
            return
        self._unsubscribers.append(self.gate.subscribe(self.library.on_session_changed))
        self._unsubscribers.append(self._identity.subscribe(self.gate.handle_event))
        await self._identity.start()
        logger.info("Music hub started")

    async def close(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()
        self.search.close()
        self.playback.stop()
        await self.library.close()
        logger.info("Music hub closed")

    async def play_search_result(self, track: Track) -> PlaybackState:
        """Play track with the current search results as the queue."""
        results = self.search.state.results
        queue = results if any(t.url == track.url for t in results) else (track,)
        return await self.playback.play(track, queue)

    async def play_liked(self, track: Optional[Track] = None) -> PlaybackState:
        liked = self.library.snapshot().liked_tracks
        if not liked:
            raise ValidationError("No liked songs to play")
        return await self.playback.play(track or liked[0], liked)

    async def play_playlist(self, playlist_id: str, track: Optional[Track] = None) -> PlaybackState:
        playlist = self.library.playlist(playlist_id)
        if playlist is None:
            raise NotFound(f"Playlist {playlist_id} not found")
        if not playlist.tracks:
            raise ValidationError(f"Playlist {playlist.name} is empty")
        return await self.playback.play(track or playlist.tracks[0], playlist.tracks)
