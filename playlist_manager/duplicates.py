"""
Finds videos that are stored more than once across playlists.

Detection runs as a batch over the datastore: exact video ids, identical URLs,
similar titles, and identical file hashes of downloaded files.
"""

import re
import asyncio
import hashlib
import logging
from collections import defaultdict
from itertools import combinations
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles

from .datastore import Database

METHOD_VIDEO_ID = 'video_id'
METHOD_URL = 'url_match'
METHOD_TITLE = 'title_similarity'
METHOD_FILE_HASH = 'file_hash'

HASH_CHUNK_SIZE = 1024 * 1024
PRE_DOWNLOAD_TITLE_THRESHOLD = 0.9

_VIDEO_ID_PATTERNS = [
    re.compile(r'(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([^&\n?#]+)'),
    re.compile(r'youtube\.com/watch\?.*v=([^&\n?#]+)'),
]


def normalize_title(title: str) -> str:
    """Lower-cases, strips punctuation and collapses whitespace."""
    title = re.sub(r'[^\w\s]', '', title.lower())
    return re.sub(r'\s+', ' ', title).strip()


def title_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the word sets of two normalized titles."""
    norm_first, norm_second = normalize_title(first), normalize_title(second)
    if norm_first == norm_second:
        return 1.0
    words_first, words_second = set(norm_first.split()), set(norm_second.split())
    union = words_first | words_second
    if not union:
        return 0.0
    return len(words_first & words_second) / len(union)


def extract_video_id(url: str) -> Optional[str]:
    for pattern in _VIDEO_ID_PATTERNS:
        if match := pattern.search(url):
            return match.group(1)
    return None


async def hash_file(path: Union[Path, str]) -> str:
    """Computes the SHA-256 of a file without blocking the event loop."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, 'rb') as f:
        while chunk := await f.read(HASH_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


class DuplicateDetector:
    """Batch duplicate analysis over a `Database`."""
    def __init__(self, database: Database, title_threshold: float = 0.85, check_file_hashes: bool = True):
        self.database = database
        self.title_threshold = title_threshold
        self.check_file_hashes = check_file_hashes
        self.logger = logging.getLogger(__name__)

    async def scan(self, title_threshold: Optional[float] = None,
                   check_file_hashes: Optional[bool] = None) -> Dict[str, int]:
        """
        Rebuilds the duplicate relationships.

        Relationships the user confirmed or ignored are kept; all others are
        cleared and detected again.

        Returns:
            Number of new relationships per detection method, plus 'total'.
        """
        threshold = self.title_threshold if title_threshold is None else title_threshold
        use_hashes = self.check_file_hashes if check_file_hashes is None else check_file_hashes

        cleared = await asyncio.to_thread(self.database.clear_unconfirmed_duplicates)
        self.logger.debug(f"Cleared {cleared} unconfirmed duplicate relationships before scanning.")
        videos = await asyncio.to_thread(self.database.get_all_videos)

        found = {
            METHOD_VIDEO_ID: await self._record_groups(videos, 'video_id', METHOD_VIDEO_ID),
            METHOD_URL: await self._record_groups(videos, 'url', METHOD_URL),
            METHOD_TITLE: await self._detect_similar_titles(videos, threshold) if threshold > 0 else 0,
            METHOD_FILE_HASH: await self._detect_file_hashes(videos) if use_hashes else 0,
        }
        found['total'] = sum(found.values())
        self.logger.info(f"Duplicate scan finished over {len(videos)} videos: {found}")
        return found

    async def _record_pair(self, original_id: int, duplicate_id: int, score: float, method: str) -> bool:
        return await asyncio.to_thread(self.database.record_duplicate, original_id, duplicate_id, score, method)

    async def _record_groups(self, videos: List[Dict[str, Any]], column: str, method: str) -> int:
        groups = defaultdict(list)
        for video in videos:
            if video.get(column):
                groups[video[column]].append(video['id'])
        count = 0
        for ids in groups.values():
            for original_id, duplicate_id in combinations(sorted(ids), 2):
                if await self._record_pair(original_id, duplicate_id, 1.0, method):
                    count += 1
        return count

    async def _detect_similar_titles(self, videos: List[Dict[str, Any]], threshold: float) -> int:
        titled = [video for video in videos if video.get('title')]
        count = 0
        for first, second in combinations(titled, 2):
            score = title_similarity(first['title'], second['title'])
            if score >= threshold and await self._record_pair(first['id'], second['id'], score, METHOD_TITLE):
                count += 1
        return count

    async def _detect_file_hashes(self, videos: List[Dict[str, Any]]) -> int:
        known = {row['video_id'] for row in await asyncio.to_thread(self.database.get_file_hashes)}
        for video in videos:
            if video['id'] in known or not video.get('downloaded') or not video.get('file_path'):
                continue
            path = Path(video['file_path'])
            if not await asyncio.to_thread(path.is_file):
                continue
            try:
                file_hash = await hash_file(path)
                file_size = (await asyncio.to_thread(path.stat)).st_size
            except OSError as e:
                self.logger.warning(f"Could not hash {path}: {e}")
                continue
            await asyncio.to_thread(self.database.store_file_hash, video['id'], file_hash, file_size)

        groups = defaultdict(list)
        for row in await asyncio.to_thread(self.database.get_file_hashes):
            groups[row['file_hash']].append(row['video_id'])
        count = 0
        for ids in groups.values():
            for original_id, duplicate_id in combinations(sorted(ids), 2):
                if await self._record_pair(original_id, duplicate_id, 1.0, METHOD_FILE_HASH):
                    count += 1
        return count

    async def record_file_hash(self, video_id: int, file_hash: str) -> int:
        """
        Records duplicates of a freshly hashed file against existing ones.

        Returns:
            The number of new relationships.
        """
        matches = await asyncio.to_thread(self.database.find_videos_by_hash, file_hash)
        count = 0
        for match in matches:
            if match['id'] != int(video_id) and await self._record_pair(match['id'], video_id, 1.0, METHOD_FILE_HASH):
                count += 1
        return count

    async def check_before_download(self, url: str, title: Optional[str] = None) -> Dict[str, Any]:
        """Lists stored videos that the given URL or title would duplicate."""
        videos = await asyncio.to_thread(self.database.get_all_videos)
        video_id = extract_video_id(url)
        suggestions: Dict[int, Dict[str, Any]] = {}
        for video in videos:
            is_match = (
                (video_id and video.get('video_id') == video_id) or
                video.get('url') == url or
                (title and video.get('title') and
                 title_similarity(title, video['title']) >= PRE_DOWNLOAD_TITLE_THRESHOLD)
            )
            if is_match:
                suggestions[video['id']] = video
        return {'has_duplicates': bool(suggestions), 'suggestions': list(suggestions.values())}
