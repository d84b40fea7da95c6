from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from musichub.crosscutting.config import DEFAULT_COVER_URL
from musichub.crosscutting.logging import CorrelationContext, log_error, log_with_fields
from musichub.crosscutting.metrics import MetricsCollector
from musichub.domain.entities import LibrarySnapshot, Playlist, Profile, Session, Track
from musichub.domain.errors import NotFound, PersistenceError, ValidationError
from musichub.domain.normalization import dedupe_tracks, username_from_email
from musichub.domain.ports import LibraryRepository

from .scheduling import bounded
from .session_gate import SessionGate
from .store import Observable


logger = logging.getLogger(__name__)

T = TypeVar("T")


class LibraryStore(Observable[LibrarySnapshot]):
    """Owns the verified user's liked songs and playlists.

    Readers only ever get immutable snapshots. Every mutation passes the session
    gate first. Likes are applied optimistically and rolled back when the remote
    write fails; playlist operations apply locally only after the remote write.
    """

    def __init__(self, gate: SessionGate, repository: LibraryRepository, *,
                 default_cover_url: str = DEFAULT_COVER_URL,
                 timeout_sec: Optional[float] = 15.0,
                 metrics: Optional[MetricsCollector] = None) -> None:
        super().__init__()
        self._gate = gate
        self._repository = repository
        self.default_cover_url = default_cover_url
        self.timeout_sec = timeout_sec
        self._metrics = metrics or MetricsCollector()

        self._snapshot = LibrarySnapshot()
        self._profile: Optional[Profile] = None
        self._owner: Optional[str] = None
        self._sync_generation = 0
        self._sync_task: Optional[asyncio.Task] = None
        self._like_locks: Dict[str, asyncio.Lock] = {}
        self._like_waiters: Dict[str, int] = {}
        # like outcomes confirmed while the latest sync is in flight
        self._likes_during_sync: Optional[List[Tuple[Track, bool]]] = None

    # Read views

    def snapshot(self) -> LibrarySnapshot:
        return self._snapshot

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def is_liked(self, track: Track) -> bool:
        return self._snapshot.contains(track)

    def playlist(self, playlist_id: str) -> Optional[Playlist]:
        return self._snapshot.playlist(playlist_id)

    # Session wiring

    def on_session_changed(self, session: Session) -> None:
        """SessionGate listener: verified sessions sync, anything else tears down."""
        if session.is_verified:
            self._schedule_sync(session.user_id)
        else:
            self.reset()

    def reset(self) -> None:
        self._sync_generation += 1
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        self._sync_task = None
        self._likes_during_sync = None
        had_data = self._owner is not None or self._snapshot != LibrarySnapshot()
        self._snapshot = LibrarySnapshot()
        self._profile = None
        self._owner = None
        if had_data:
            logger.info("Library cleared")
            self._notify(self._snapshot)

    def _schedule_sync(self, user_id: str) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        loop = asyncio.get_running_loop()
        self._sync_task = loop.create_task(self._run_sync(user_id))

    async def _run_sync(self, user_id: str) -> None:
        try:
            await self.sync(user_id)
        except PersistenceError:
            # already logged by sync(); next session event retries
            pass

    async def sync(self, user_id: str) -> LibrarySnapshot:
        """Fetch profile, liked tracks and playlists and swap them in at once.

        A result whose session was superseded while in flight is discarded. Like
        toggles confirmed during the fetch are replayed over the fetched list.
        """
        self._sync_generation += 1
        generation = self._sync_generation
        self._likes_during_sync = []

        with CorrelationContext(user_id=user_id, stage='sync'):
            try:
                profile = await self._call(self._repository.get_profile(user_id))
                if profile is None:
                    profile = await self._create_profile(user_id)
                liked = await self._call(self._repository.get_liked_tracks(user_id))
                playlists = await self._call(self._repository.get_playlists(user_id))
            except PersistenceError as e:
                self._stop_recording_likes(generation)
                self._metrics.increment('library.sync_failed')
                log_error(logger, "Library sync failed", e)
                raise
            except asyncio.CancelledError:
                self._stop_recording_likes(generation)
                raise

            if generation != self._sync_generation or not self._session_allows(user_id):
                logger.info("Discarding superseded library sync")
                return self._snapshot

            settled, self._likes_during_sync = self._likes_during_sync or [], None
            self._profile = profile
            self._owner = user_id
            self._snapshot = LibrarySnapshot(
                liked_tracks=self._replay_likes(tuple(dedupe_tracks(liked)), settled),
                playlists=tuple(self._with_default_cover(p) for p in playlists),
            )
            self._metrics.increment('library.sync')
            log_with_fields(logger, 'INFO', 'Library synced', {
                'liked_count': len(self._snapshot.liked_tracks),
                'playlist_count': len(self._snapshot.playlists),
            })
            self._notify(self._snapshot)
            return self._snapshot

    def _stop_recording_likes(self, generation: int) -> None:
        if generation == self._sync_generation:
            self._likes_during_sync = None

    async def _create_profile(self, user_id: str) -> Profile:
        user = self._gate.session.user
        if user is not None and user.user_id != user_id:
            user = None
        profile = Profile(
            id=user_id,
            username=username_from_email(user.email if user else None),
            avatar_url=user.avatar_url if user else None,
        )
        try:
            await self._call(self._repository.upsert_profile(profile))
        except PersistenceError as e:
            logger.warning(f"Profile upsert failed, continuing with defaults: {e}")
        return profile

    # Likes

    async def toggle_like(self, track: Track) -> bool:
        """Flip liked membership of track and persist it. Returns the new membership.

        The flip is visible to readers before the remote write resolves. Toggles
        on the same url are queued behind each other; different urls do not wait.
        """
        self._gate.require_library_access()
        url = track.url
        lock = self._like_locks.setdefault(url, asyncio.Lock())
        self._like_waiters[url] = self._like_waiters.get(url, 0) + 1
        try:
            async with lock:
                user_id = self._gate.require_library_access()
                return await self._toggle_like_locked(user_id, track)
        finally:
            self._like_waiters[url] -= 1
            if self._like_waiters[url] == 0:
                del self._like_waiters[url]
                self._like_locks.pop(url, None)

    async def _toggle_like_locked(self, user_id: str, track: Track) -> bool:
        liked = self._snapshot.liked_tracks
        was_liked = self._snapshot.contains(track)
        removed_at = next((i for i, t in enumerate(liked) if t.url == track.url), -1)

        self._set_liked(track, not was_liked)

        try:
            remote = await self._call(self._repository.toggle_liked(user_id, track))
        except PersistenceError as e:
            self._roll_back_like(user_id, track, was_liked, removed_at)
            log_error(logger, "Like toggle failed, rolled back", e, url=track.url)
            raise
        except asyncio.CancelledError:
            self._roll_back_like(user_id, track, was_liked, removed_at)
            logger.info(f"Like toggle for {track.url} cancelled, rolled back")
            raise

        if not self._session_allows(user_id):
            return remote
        if self._likes_during_sync is not None:
            self._likes_during_sync.append((track, remote))
        if remote != (not was_liked):
            logger.warning(f"Remote like state for {track.url} disagrees, using remote value {remote}")
        # a sync that landed during the write may have replaced the optimistic flip
        self._set_liked(track, remote)
        return remote

    def _roll_back_like(self, user_id: str, track: Track, was_liked: bool, index: int) -> None:
        if self._session_allows(user_id):
            self._set_liked(track, was_liked, index=index)
        self._metrics.increment('library.rollbacks')

    @staticmethod
    def _with_like(liked: Tuple[Track, ...], track: Track, is_liked: bool,
                   index: int = 0) -> Tuple[Track, ...]:
        if any(t.url == track.url for t in liked) == is_liked:
            return liked
        without = tuple(t for t in liked if t.url != track.url)
        if not is_liked:
            return without
        index = max(0, min(index, len(without)))
        return without[:index] + (track,) + without[index:]

    def _replay_likes(self, liked: Tuple[Track, ...],
                      settled: List[Tuple[Track, bool]]) -> Tuple[Track, ...]:
        for track, is_liked in settled:
            liked = self._with_like(liked, track, is_liked)
        return liked

    def _set_liked(self, track: Track, liked: bool, index: int = 0) -> None:
        current = self._snapshot.liked_tracks
        updated = self._with_like(current, track, liked, index)
        if updated is current:
            return
        self._replace(liked_tracks=updated)

    # Playlists

    async def create_playlist(self, name: str, cover_url: Optional[str] = None) -> Playlist:
        user_id = self._gate.require_library_access()
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Playlist name must not be empty")

        created = await self._call(
            self._repository.create_playlist(user_id, clean_name, cover_url or self.default_cover_url))
        playlist = self._with_default_cover(Playlist(created.id, created.name, created.cover_url, ()))

        if self._session_allows(user_id):
            self._replace(playlists=self._snapshot.playlists + (playlist,))
        log_with_fields(logger, 'INFO', 'Playlist created', {'playlist_id': playlist.id})
        return playlist

    async def delete_playlist(self, playlist_id: str) -> None:
        user_id = self._gate.require_library_access()
        self._require_playlist(playlist_id)

        await self._call(self._repository.delete_playlist(playlist_id))

        if self._session_allows(user_id):
            self._replace(playlists=tuple(p for p in self._snapshot.playlists if p.id != playlist_id))
        log_with_fields(logger, 'INFO', 'Playlist deleted', {'playlist_id': playlist_id})

    async def add_song_to_playlist(self, playlist_id: str, track: Track) -> Optional[Playlist]:
        """Append track to the playlist. Duplicates are allowed.

        Returns None when the playlist or the session went away during the write.
        """
        user_id = self._gate.require_library_access()
        self._require_playlist(playlist_id)

        await self._call(self._repository.add_track_to_playlist(playlist_id, track))

        current = self._snapshot.playlist(playlist_id)
        if current is None or not self._session_allows(user_id):
            return current
        updated = Playlist(current.id, current.name, current.cover_url, current.tracks + (track,))
        self._replace(playlists=tuple(updated if p.id == playlist_id else p
                                      for p in self._snapshot.playlists))
        return updated

    def _require_playlist(self, playlist_id: str) -> Playlist:
        playlist = self._snapshot.playlist(playlist_id)
        if playlist is None:
            raise NotFound(f"Playlist {playlist_id} not found")
        return playlist

    # Helpers

    def _session_allows(self, user_id: str) -> bool:
        session = self._gate.session
        return session.is_verified and session.user_id == user_id

    def _with_default_cover(self, playlist: Playlist) -> Playlist:
        if playlist.cover_url:
            return playlist
        return Playlist(playlist.id, playlist.name, self.default_cover_url, playlist.tracks)

    def _replace(self, liked_tracks: Optional[Tuple[Track, ...]] = None,
                 playlists: Optional[Tuple[Playlist, ...]] = None) -> None:
        self._snapshot = LibrarySnapshot(
            liked_tracks=self._snapshot.liked_tracks if liked_tracks is None else liked_tracks,
            playlists=self._snapshot.playlists if playlists is None else playlists,
        )
        self._notify(self._snapshot)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await bounded(awaitable, self.timeout_sec)
        except PersistenceError:
            raise
        except asyncio.TimeoutError:
            raise PersistenceError(f"Library request timed out after {self.timeout_sec}s")
        except Exception as e:
            raise PersistenceError(f"Library request failed: {e}") from e

    async def close(self) -> None:
        task = self._sync_task
        self.reset()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
