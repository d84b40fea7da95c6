from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class Track:
    """Playable track. The url is the only identity key."""

    url: str
    title: str = ""
    artist: str = ""
    cover_url: Optional[str] = None

    def same_as(self, other: Optional["Track"]) -> bool:
        return other is not None and self.url == other.url


@dataclass(frozen=True)
class Playlist:
    """User playlist; id is assigned by persistence on creation."""

    id: str
    name: str
    cover_url: str
    tracks: Tuple[Track, ...] = ()

    def contains(self, track: Track) -> bool:
        return any(t.url == track.url for t in self.tracks)


@dataclass(frozen=True)
class Profile:
    """Relational profile row keyed by the auth subject id."""

    id: str
    username: str
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class AuthUser:
    """User as reported by the identity provider."""

    user_id: str
    email_verified: bool = False
    email: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class SessionEvent:
    """Session-change notification emitted by the identity provider."""

    event: str
    user: Optional[AuthUser] = None


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED_UNVERIFIED = "authenticated_unverified"
    AUTHENTICATED_VERIFIED = "authenticated_verified"


@dataclass(frozen=True)
class Session:
    state: SessionState = SessionState.ANONYMOUS
    user_id: Optional[str] = None
    user: Optional[AuthUser] = None

    @property
    def is_verified(self) -> bool:
        return self.state is SessionState.AUTHENTICATED_VERIFIED


@dataclass(frozen=True)
class SignUpResult:
    """Outcome of a sign-up call; session_active is False while verification is pending."""

    user: Optional[AuthUser]
    session_active: bool


@dataclass(frozen=True)
class LibrarySnapshot:
    """Read-only view of the user's library."""

    liked_tracks: Tuple[Track, ...] = ()
    playlists: Tuple[Playlist, ...] = ()

    def contains(self, track: Track) -> bool:
        return any(t.url == track.url for t in self.liked_tracks)

    def playlist(self, playlist_id: str) -> Optional[Playlist]:
        for p in self.playlists:
            if p.id == playlist_id:
                return p
        return None

    @property
    def playlists_by_id(self) -> Dict[str, Playlist]:
        return {p.id: p for p in self.playlists}


class SearchPhase(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    SETTLED = "settled"


@dataclass(frozen=True)
class SearchState:
    phase: SearchPhase = SearchPhase.IDLE
    query: str = ""
    results: Tuple[Track, ...] = ()
    sequence: int = 0


class TransportState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"
    ERROR = "error"


@dataclass(frozen=True)
class PlaybackState:
    """Queue plus transport snapshot. current_index is -1 or a valid queue index."""

    queue: Tuple[Track, ...] = ()
    current_index: int = -1
    transport: TransportState = TransportState.IDLE
    position_seconds: float = 0.0
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def current_track(self) -> Optional[Track]:
        if 0 <= self.current_index < len(self.queue):
            return self.queue[self.current_index]
        return None

    @property
    def progress(self) -> float:
        """Position as a fraction of duration, 0.0 when duration is unknown."""
        if self.duration_seconds <= 0:
            return 0.0
        return self.position_seconds / self.duration_seconds
