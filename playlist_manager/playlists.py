"""
Imports YouTube playlists and channels into the local datastore.
"""

import re
import asyncio
import hashlib
import logging
from typing import Any, Dict, Optional

from .datastore import Database
from .exceptions import URLExtractionError
from .url_extractor import URLInfoExtractor

PLAYLIST_URL_PATTERNS = [
    re.compile(r'^https?://(www\.)?youtube\.com/playlist\?list=[\w-]+'),
    re.compile(r'^https?://(www\.)?youtube\.com/watch\?v=[\w-]+&list=[\w-]+'),
    re.compile(r'^https?://youtu\.be/[\w-]+\?list=[\w-]+'),
    re.compile(r'^https?://(www\.)?youtube\.com/channel/[\w-]+'),
    re.compile(r'^https?://(www\.)?youtube\.com/user/[\w-]+'),
    re.compile(r'^https?://(www\.)?youtube\.com/@[\w-]+'),
]


def is_playlist_url(url: str) -> bool:
    """Returns True for playlist, watch-with-list, channel, user and handle URLs."""
    url = url.strip()
    return any(pattern.match(url) for pattern in PLAYLIST_URL_PATTERNS)


def extract_source_id(url: str) -> str:
    """
    Derives a stable identifier for a playlist URL.

    The `list=` parameter wins; channel, user and handle URLs are prefixed with
    their type. Anything else gets a hash of the URL so that importing it twice
    refreshes the same playlist.
    """
    if match := re.search(r'[?&]list=([\w-]+)', url):
        return match.group(1)
    for prefix, pattern in (('channel', r'/channel/([\w-]+)'), ('user', r'/user/([\w-]+)'), ('handle', r'/@([\w-]+)')):
        if match := re.search(pattern, url):
            return f"{prefix}_{match.group(1)}"
    return f"url_{hashlib.sha1(url.strip().encode('utf-8')).hexdigest()[:16]}"


def _entry_url(entry: Dict[str, Any]) -> Optional[str]:
    url = entry.get('webpage_url') or entry.get('url')
    if url and url.startswith('http'):
        return url
    if entry.get('id'):
        return f"https://www.youtube.com/watch?v={entry['id']}"
    return None


class PlaylistImporter:
    """Fetches playlist metadata with yt-dlp and stores it."""
    def __init__(self, extractor: URLInfoExtractor, database: Database):
        self.extractor = extractor
        self.database = database
        self.logger = logging.getLogger(__name__)

    async def import_playlist(self, url: str) -> Dict[str, Any]:
        """
        Imports (or re-imports) a playlist.

        Returns:
            The stored playlist row, including `video_count`.

        Raises:
            URLExtractionError: If the URL is not a playlist URL or yt-dlp fails.
        """
        url = url.strip()
        if not is_playlist_url(url):
            raise URLExtractionError("Invalid YouTube playlist URL. Supported formats: playlist, channel, user, or handle URLs.")

        self.logger.info(f"Importing playlist from {url}")
        info = await self.extractor.get_playlist_info(url)
        source_id = info.get('id') or extract_source_id(url)
        title = info.get('title') or info.get('uploader') or 'Unknown Playlist'

        playlist_id = await asyncio.to_thread(
            self.database.add_playlist,
            title,
            source_id=source_id,
            description=info.get('description'),
            thumbnail=_best_thumbnail(info),
            source_url=url,
            uploader=info.get('uploader'),
        )

        stored = 0
        for position, entry in enumerate(info['entries']):
            video_url = _entry_url(entry)
            if not video_url:
                self.logger.debug(f"Skipping playlist entry without a URL: {entry.get('id')}")
                continue
            await asyncio.to_thread(
                self.database.add_video,
                entry.get('title') or video_url,
                video_url,
                playlist_id=playlist_id,
                video_id=entry.get('id'),
                duration=entry.get('duration'),
                uploader=entry.get('uploader') or entry.get('channel'),
                thumbnail=_best_thumbnail(entry),
                position=position,
            )
            stored += 1

        self.logger.info(f"Imported '{title}' with {stored} videos (playlist id {playlist_id}).")
        return await asyncio.to_thread(self.database.get_playlist, playlist_id)


def _best_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    if info.get('thumbnail'):
        return info['thumbnail']
    thumbnails = info.get('thumbnails') or []
    return thumbnails[-1].get('url') if thumbnails and isinstance(thumbnails[-1], dict) else None
