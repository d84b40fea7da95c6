import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from musichub.crosscutting.config import DEFAULT_COVER_URL
from musichub.domain.entities import Playlist, Profile, Track
from musichub.domain.errors import PersistenceError
from musichub.domain.normalization import track_from_song_data, track_to_song_data
from musichub.domain.ports import LibraryRepository

logger = logging.getLogger(__name__)


class SupabaseLibraryRepository(LibraryRepository):
    """Library persistence over the Supabase table REST API.

    Tables: profiles, liked_songs, user_playlists, playlist_songs. Tracks are
    stored as a song_data JSON payload keyed by url.
    """

    def __init__(self,
                 url: str,
                 anon_key: str,
                 token_provider: Callable[[], Optional[str]],
                 timeout_sec: float = 15.0,
                 session: Optional[requests.Session] = None,
                 default_cover_url: str = DEFAULT_COVER_URL):
        """Initialize repository.

        Args:
            url: Project URL
            anon_key: Public anon key sent as apikey
            token_provider: Returns the signed-in user's access token (row level security)
            timeout_sec: Per-request timeout
            session: Optional shared requests session
            default_cover_url: Cover for playlist rows stored without an image
        """
        self.url = url.rstrip('/')
        self.anon_key = anon_key
        self.timeout_sec = timeout_sec
        self.default_cover_url = default_cover_url
        self._token_provider = token_provider
        self._session = session or requests.Session()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        token = self._token_provider() or self.anon_key
        headers = {
            'apikey': self.anon_key,
            'Authorization': f"Bearer {token}",
            'Content-Type': 'application/json',
        }
        if prefer:
            headers['Prefer'] = prefer
        return headers

    def _request(self, method: str, table: str, params: Optional[Dict[str, str]] = None,
                 payload: Any = None, prefer: Optional[str] = None) -> Any:
        try:
            response = self._session.request(
                method,
                f"{self.url}/rest/v1/{table}",
                params=params,
                json=payload,
                headers=self._headers(prefer),
                timeout=self.timeout_sec,
            )
        except requests.Timeout as e:
            raise PersistenceError(f"{method} {table} timed out: {e}")
        except requests.RequestException as e:
            raise PersistenceError(f"{method} {table} failed: {e}")

        if response.status_code >= 400:
            raise PersistenceError(f"{method} {table} failed ({response.status_code}): {response.text[:200]}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise PersistenceError(f"{method} {table} returned invalid JSON: {e}")

    async def _call(self, method: str, table: str, **kwargs) -> Any:
        return await asyncio.to_thread(self._request, method, table, **kwargs)

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        rows = await self._call('GET', 'profiles', params={'select': '*', 'id': f"eq.{user_id}"})
        if not rows:
            return None
        row = rows[0]
        return Profile(
            id=str(row['id']),
            username=row.get('username') or '',
            avatar_url=row.get('avatar_url'),
        )

    async def upsert_profile(self, profile: Profile) -> None:
        await self._call('POST', 'profiles',
                         payload={'id': profile.id, 'username': profile.username,
                                  'avatar_url': profile.avatar_url},
                         prefer='resolution=merge-duplicates')

    async def get_liked_tracks(self, user_id: str) -> List[Track]:
        rows = await self._call('GET', 'liked_songs', params={
            'select': 'song_data',
            'user_id': f"eq.{user_id}",
            'order': 'id.desc',
        })
        tracks = [track_from_song_data(row.get('song_data')) for row in rows or []]
        return [t for t in tracks if t is not None]

    async def toggle_liked(self, user_id: str, track: Track) -> bool:
        rows = await self._call('GET', 'liked_songs', params={
            'select': 'id',
            'user_id': f"eq.{user_id}",
            'song_data': f"cs.{json.dumps({'url': track.url})}",
            'limit': '1',
        })
        if rows:
            await self._call('DELETE', 'liked_songs', params={'id': f"eq.{rows[0]['id']}"})
            logger.debug(f"Removed liked row for {track.url}")
            return False

        await self._call('POST', 'liked_songs',
                         payload={'user_id': user_id, 'song_data': track_to_song_data(track)})
        logger.debug(f"Inserted liked row for {track.url}")
        return True

    async def get_playlists(self, user_id: str) -> List[Playlist]:
        rows = await self._call('GET', 'user_playlists', params={
            'select': 'id,name,image,playlist_songs(id,song_data)',
            'user_id': f"eq.{user_id}",
            'order': 'id.asc',
            'playlist_songs.order': 'id.asc',
        })
        playlists = []
        for row in rows or []:
            songs = [track_from_song_data(s.get('song_data')) for s in row.get('playlist_songs') or []]
            playlists.append(Playlist(
                id=str(row['id']),
                name=row.get('name') or '',
                cover_url=row.get('image') or self.default_cover_url,
                tracks=tuple(t for t in songs if t is not None),
            ))
        return playlists

    async def create_playlist(self, user_id: str, name: str, cover_url: str) -> Playlist:
        rows = await self._call('POST', 'user_playlists',
                                payload={'user_id': user_id, 'name': name, 'image': cover_url},
                                prefer='return=representation')
        if not rows:
            raise PersistenceError("Playlist insert returned no row")
        row = rows[0] if isinstance(rows, list) else rows
        return Playlist(
            id=str(row['id']),
            name=row.get('name') or name,
            cover_url=row.get('image') or self.default_cover_url,
        )

    async def delete_playlist(self, playlist_id: str) -> None:
        await self._call('DELETE', 'user_playlists', params={'id': f"eq.{playlist_id}"})

    async def add_track_to_playlist(self, playlist_id: str, track: Track) -> None:
        await self._call('POST', 'playlist_songs',
                         payload={'playlist_id': playlist_id, 'song_data': track_to_song_data(track)})
