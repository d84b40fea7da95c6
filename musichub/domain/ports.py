from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

from .entities import AuthUser, Playlist, Profile, SessionEvent, SignUpResult, Track


SessionListener = Callable[[SessionEvent], None]


class IdentityProvider(Protocol):
    """Port for the identity/session provider.

    Implementations must emit a SessionEvent on initial load and on every change,
    through the listeners registered with subscribe().
    """

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a session listener and return a callable that removes it."""

    async def start(self) -> None:
        """Emit the initial-load event (restored session or none)."""

    async def sign_up(self, email: str, password: str,
                      metadata: Optional[Dict[str, Any]] = None) -> SignUpResult:
        """Register a new account."""

    async def sign_in_with_password(self, email: str, password: str) -> AuthUser:
        """Open a session with email and password."""

    async def sign_in_with_oauth(self, provider: str) -> str:
        """Return the authorize URL for the given OAuth provider."""

    async def sign_out(self) -> None:
        """Close the current session."""


class CatalogClient(Protocol):
    """Port for the remote catalog: search and stream resolution."""

    async def search(self, query: str) -> List[Track]:
        """Return tracks matching the free-text query, in provider order."""

    def stream_url(self, track: Track) -> str:
        """Return the stream resource address for the track."""


class LibraryRepository(Protocol):
    """Port for the persistence tables backing a user's library."""

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        """Return the profile row or None when absent."""

    async def upsert_profile(self, profile: Profile) -> None:
        """Insert or update the profile row."""

    async def get_liked_tracks(self, user_id: str) -> List[Track]:
        """Return liked tracks, newest first."""

    async def toggle_liked(self, user_id: str, track: Track) -> bool:
        """Delete the liked row for track.url if present, else insert it. Return new membership."""

    async def get_playlists(self, user_id: str) -> List[Playlist]:
        """Return playlists with their tracks in insertion order."""

    async def create_playlist(self, user_id: str, name: str, cover_url: str) -> Playlist:
        """Insert a playlist and return it with its assigned id and no tracks."""

    async def delete_playlist(self, playlist_id: str) -> None:
        """Delete a playlist."""

    async def add_track_to_playlist(self, playlist_id: str, track: Track) -> None:
        """Append a track to a playlist."""


class AudioTransport(Protocol):
    """Port for the single audio output handle owned by the playback engine."""

    async def load(self, stream_url: str) -> None:
        """Prepare the stream; resolves once the resource is ready to start."""

    async def play(self) -> None:
        """Start or resume output; resolves on acknowledgment."""

    async def pause(self) -> None:
        """Pause output; resolves on acknowledgment."""

    def seek(self, position_seconds: float) -> None:
        """Move the playhead to an absolute position."""

    def stop(self) -> None:
        """Release the current stream."""
