import asyncio
import logging
from typing import List, Optional

import requests

from musichub.crosscutting.config import DEFAULT_CATALOG_URL
from musichub.domain.entities import Track
from musichub.domain.errors import NetworkError
from musichub.domain.normalization import dedupe_tracks, track_from_catalog
from musichub.domain.ports import CatalogClient

logger = logging.getLogger(__name__)


class HttpCatalogClient(CatalogClient):
    """Catalog endpoint adapter: free-text search and stream resolution."""

    def __init__(self,
                 base_url: str = DEFAULT_CATALOG_URL,
                 timeout_sec: float = 15.0,
                 session: Optional[requests.Session] = None):
        """Initialize catalog client.

        Args:
            base_url: Catalog endpoint; search and stream share it and differ by mode
            timeout_sec: Per-request timeout
            session: Optional shared requests session
        """
        self.base_url = base_url
        self.timeout_sec = timeout_sec
        self._session = session or requests.Session()

    async def search(self, query: str) -> List[Track]:
        """Search the catalog without blocking the event loop."""
        return await asyncio.to_thread(self._search_blocking, query)

    def _search_blocking(self, query: str) -> List[Track]:
        try:
            response = self._session.get(
                self.base_url,
                params={'url': query, 'mode': 'search'},
                timeout=self.timeout_sec,
            )
        except requests.Timeout as e:
            raise NetworkError(f"Catalog search timed out: {e}")
        except requests.RequestException as e:
            raise NetworkError(f"Catalog search failed: {e}")

        if response.status_code != 200:
            raise NetworkError(f"Catalog search failed ({response.status_code})")

        try:
            payload = response.json()
        except ValueError as e:
            raise NetworkError(f"Catalog returned invalid JSON: {e}")

        songs = payload.get('songs') if isinstance(payload, dict) else None
        if not isinstance(songs, list):
            logger.debug(f"Catalog response for {query!r} has no song list")
            return []

        tracks = dedupe_tracks(track_from_catalog(item) for item in songs)
        logger.debug(f"Catalog returned {len(tracks)} tracks for {query!r}")
        return tracks

    def stream_url(self, track: Track) -> str:
        """Return {base}?url={track url}&mode=stream, percent-encoded."""
        request = requests.Request('GET', self.base_url,
                                   params={'url': track.url, 'mode': 'stream'})
        return request.prepare().url
