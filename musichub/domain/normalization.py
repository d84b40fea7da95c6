from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

from .entities import Track


_MULTISPACE_PATTERN = re.compile(r"\s+")
_DEFAULT_USERNAME = "User"


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    value = str(value)
    return _MULTISPACE_PATTERN.sub(" ", value).strip()


def normalize_query(text: Optional[str]) -> str:
    """Trim and collapse whitespace so retyped spacing does not count as a new query."""
    return clean_text(text)


def _optional_url(value: Any) -> Optional[str]:
    value = clean_text(value)
    return value or None


def track_from_catalog(item: Dict[str, Any]) -> Optional[Track]:
    """Map a catalog search item to a Track. The provider's thumbnail becomes cover_url.

    Items without a url cannot be identified and are dropped (None).
    """
    if not isinstance(item, dict):
        return None
    url = clean_text(item.get("url"))
    if not url:
        return None
    return Track(
        url=url,
        title=clean_text(item.get("title")),
        artist=clean_text(item.get("artist")),
        cover_url=_optional_url(item.get("thumbnail")),
    )


def track_from_song_data(data: Dict[str, Any]) -> Optional[Track]:
    """Deserialize a persisted song_data payload.

    Rows written by older clients may carry the raw catalog key (thumbnail)
    instead of cover.
    """
    if not isinstance(data, dict):
        return None
    url = clean_text(data.get("url"))
    if not url:
        return None
    cover = data.get("cover") or data.get("thumbnail")
    return Track(
        url=url,
        title=clean_text(data.get("title")),
        artist=clean_text(data.get("artist")),
        cover_url=_optional_url(cover),
    )


def track_to_song_data(track: Track) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "url": track.url,
        "title": track.title,
        "artist": track.artist,
    }
    if track.cover_url:
        data["cover"] = track.cover_url
    return data


def dedupe_tracks(tracks: Iterable[Optional[Track]]) -> List[Track]:
    """Drop repeated urls, keeping the first occurrence and the original order."""
    seen = set()
    unique: List[Track] = []
    for track in tracks:
        if track is None or track.url in seen:
            continue
        seen.add(track.url)
        unique.append(track)
    return unique


def username_from_email(email: Optional[str]) -> str:
    local_part = clean_text(email).split("@", 1)[0]
    return local_part or _DEFAULT_USERNAME
