"""
Exports stored playlists to files and restores them from backups.

JSON exports and full backups share one document layout, so any JSON export
can be restored with `import_backup`. CSV, TXT and M3U exports are one-way.
"""

import asyncio
import csv
import io
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

import aiofiles
from pydantic import BaseModel, ValidationError

from ._version import __version__
from .datastore import Database
from .exceptions import ExportError

BACKUP_FORMAT = 'playlist-manager-backup'
BACKUP_VERSION = 1
EXPORT_FORMATS = ('json', 'csv', 'txt', 'm3u')
CSV_HEADER = ['Playlist Title', 'Position', 'Video Title', 'URL', 'Video ID', 'Duration', 'Uploader',
              'Downloaded', 'File Path']

PathLike = Union[Path, str]
Entry = Dict[str, Any]


class BackupVideo(BaseModel):
    title: str
    url: str
    video_id: Optional[str] = None
    duration: Optional[float] = None
    uploader: Optional[str] = None
    thumbnail: Optional[str] = None
    position: Optional[int] = None
    downloaded: bool = False
    file_path: Optional[str] = None
    file_size: Optional[int] = None


class BackupPlaylist(BaseModel):
    title: str
    source_id: Optional[str] = None
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    source: str = 'youtube'
    source_url: Optional[str] = None
    uploader: Optional[str] = None


class BackupEntry(BaseModel):
    playlist: BackupPlaylist
    videos: List[BackupVideo] = []


class BackupDocument(BaseModel):
    """The on-disk layout of a JSON export or backup. Unknown keys are ignored."""
    format: Literal['playlist-manager-backup']
    version: int
    app_version: Optional[str] = None
    created_at: Optional[str] = None
    playlists: List[BackupEntry]


def format_duration(seconds: Optional[float]) -> str:
    """Formats seconds as 'M:SS' or 'H:MM:SS'. Unknown durations are empty."""
    if seconds is None or seconds < 0:
        return ''
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def render_json(entries: List[Entry]) -> str:
    document = {
        'format': BACKUP_FORMAT,
        'version': BACKUP_VERSION,
        'app_version': __version__,
        'created_at': datetime.now().isoformat(timespec='seconds'),
        'playlist_count': len(entries),
        'video_count': sum(len(entry['videos']) for entry in entries),
        'playlists': entries,
    }
    return json.dumps(document, indent=2, ensure_ascii=False) + '\n'


def render_csv(entries: List[Entry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for entry in entries:
        for index, video in enumerate(entry['videos']):
            position = video.get('position')
            writer.writerow([
                entry['playlist']['title'],
                index + 1 if position is None else position + 1,
                video['title'],
                video['url'],
                video.get('video_id') or '',
                format_duration(video.get('duration')),
                video.get('uploader') or '',
                'yes' if video.get('downloaded') else 'no',
                video.get('file_path') or '',
            ])
    return buffer.getvalue()


def render_txt(entries: List[Entry]) -> str:
    lines = []
    for entry in entries:
        heading = f"Playlist: {entry['playlist']['title']}"
        lines.extend([heading, '=' * len(heading), ''])
        lines.extend(video['url'] for video in entry['videos'])
        lines.append('')
    return '\n'.join(lines)


def render_m3u(entries: List[Entry]) -> str:
    lines = ['#EXTM3U']
    for entry in entries:
        lines.append(f"#PLAYLIST:{entry['playlist']['title']}")
        for video in entry['videos']:
            duration = video.get('duration')
            lines.append(f"#EXTINF:{round(duration) if duration else -1},{video['title']}")
            lines.append(video['url'])
    return '\n'.join(lines) + '\n'


RENDERERS = {'json': render_json, 'csv': render_csv, 'txt': render_txt, 'm3u': render_m3u}


class PlaylistExporter:
    """
    Writes playlists from the datastore to export files and restores backups.

    All datastore access goes through `asyncio.to_thread` and files are read
    and written with aiofiles, so none of it blocks the event loop.
    """
    def __init__(self, database: Database):
        self.database = database
        self.logger = logging.getLogger(__name__)

    def _collect(self, playlist_ids: Optional[Iterable[int]]) -> List[Entry]:
        if playlist_ids is None:
            playlists = sorted(self.database.list_playlists(), key=lambda playlist: playlist['id'])
        else:
            playlists = [self.database.get_playlist(int(playlist_id)) for playlist_id in playlist_ids]
        return [{'playlist': playlist, 'videos': self.database.get_playlist_videos(playlist['id'])}
                for playlist in playlists if playlist is not None]

    async def _write(self, path: Path, content: str) -> int:
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(path, 'w', encoding='utf-8', newline='') as f:
                await f.write(content)
            return (await asyncio.to_thread(path.stat)).st_size
        except OSError as e:
            self.logger.error(f"Could not write export file {path}: {e}")
            raise ExportError(f"Could not write '{path}': {e.strerror or e}")

    @staticmethod
    async def _resolve_target(destination: PathLike, default_name: str) -> Path:
        path = Path(destination).expanduser()
        if await asyncio.to_thread(path.is_dir):
            return path / default_name
        return path

    async def export_playlists(self, playlist_ids: Iterable[int], destination: PathLike,
                               fmt: str = 'json') -> Dict[str, Any]:
        """
        Writes one or more playlists with their videos to a single file.

        Args:
            playlist_ids: Row ids of the playlists to export. Unknown ids are skipped.
            destination: The target file, or a directory to create a default-named file in.
            fmt: One of 'json', 'csv', 'txt' or 'm3u'.

        Raises:
            ExportError: If the format is unknown, no requested playlist exists,
                or the file cannot be written.
        """
        fmt = (fmt or 'json').lower()
        if fmt not in RENDERERS:
            raise ExportError(f"Unsupported export format '{fmt}'. Use one of: {', '.join(EXPORT_FORMATS)}.")
        entries = await asyncio.to_thread(self._collect, list(playlist_ids))
        if not entries:
            raise ExportError("None of the requested playlists exist.")

        default_name = f"playlists_export_{len(entries)}.{fmt}"
        path = await self._resolve_target(destination, default_name)
        file_size = await self._write(path, RENDERERS[fmt](entries))
        video_count = sum(len(entry['videos']) for entry in entries)
        self.logger.info(f"Exported {len(entries)} playlist(s) with {video_count} video(s) to {path}.")
        return {'format': fmt, 'file_path': str(path), 'file_size': file_size,
                'playlist_count': len(entries), 'video_count': video_count}

    async def export_backup(self, destination: PathLike) -> Dict[str, Any]:
        """Writes every stored playlist to a JSON backup. An empty library gives an empty backup."""
        entries = await asyncio.to_thread(self._collect, None)
        timestamp = datetime.now().strftime('%Y-%m-%d_%H-%M-%S')
        path = await self._resolve_target(destination, f"playlist_manager_backup_{timestamp}.json")
        file_size = await self._write(path, render_json(entries))
        video_count = sum(len(entry['videos']) for entry in entries)
        self.logger.info(f"Backup of {len(entries)} playlist(s) written to {path}.")
        return {'format': 'json', 'file_path': str(path), 'file_size': file_size,
                'playlist_count': len(entries), 'video_count': video_count}

    async def _read_backup(self, source: PathLike) -> BackupDocument:
        path = Path(source).expanduser()
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except OSError as e:
            raise ExportError(f"Could not read '{path}': {e.strerror or e}")
        try:
            document = BackupDocument.model_validate(json.loads(content))
        except json.JSONDecodeError as e:
            raise ExportError(f"'{path.name}' is not valid JSON: {e.msg}")
        except ValidationError as e:
            details = e.errors()[0]
            location = '.'.join(str(part) for part in details['loc']) or 'document'
            raise ExportError(f"'{path.name}' is not a playlist backup ({location}: {details['msg']}).")
        if document.version > BACKUP_VERSION:
            raise ExportError(f"Backup version {document.version} is newer than this application supports.")
        return document

    def _existing_source_ids(self) -> set:
        return {playlist['source_id'] for playlist in self.database.list_playlists() if playlist['source_id']}

    async def preview_backup(self, source: PathLike) -> Dict[str, Any]:
        """
        Reads a backup without changing the datastore.

        Playlists whose `source_id` is already stored count as existing; a
        restore refreshes them instead of adding a copy.
        """
        document = await self._read_backup(source)
        existing_ids = await asyncio.to_thread(self._existing_source_ids)
        existing = [entry for entry in document.playlists if entry.playlist.source_id in existing_ids]
        return {
            'version': document.version,
            'app_version': document.app_version,
            'created_at': document.created_at,
            'playlist_count': len(document.playlists),
            'video_count': sum(len(entry.videos) for entry in document.playlists),
            'new_playlists': len(document.playlists) - len(existing),
            'existing_playlists': len(existing),
            'titles': [entry.playlist.title for entry in document.playlists],
        }

    def _restore(self, document: BackupDocument) -> Dict[str, int]:
        existing_ids = self._existing_source_ids()
        counts = {'playlists_added': 0, 'playlists_updated': 0, 'videos': 0, 'downloaded': 0}
        for entry in document.playlists:
            info = entry.playlist
            if info.source_id in existing_ids:
                counts['playlists_updated'] += 1
            else:
                counts['playlists_added'] += 1
            playlist_id = self.database.add_playlist(
                info.title, source_id=info.source_id, description=info.description, thumbnail=info.thumbnail,
                source=info.source, source_url=info.source_url, uploader=info.uploader)
            for video in entry.videos:
                row_id = self.database.add_video(
                    video.title, video.url, playlist_id=playlist_id, video_id=video.video_id,
                    duration=video.duration, uploader=video.uploader, thumbnail=video.thumbnail,
                    position=video.position)
                counts['videos'] += 1
                if video.downloaded and video.file_path:
                    self.database.mark_downloaded(row_id, video.file_path, file_size=video.file_size)
                    counts['downloaded'] += 1
        return counts

    async def import_backup(self, source: PathLike) -> Dict[str, int]:
        """
        Restores the playlists and videos of a backup or JSON export.

        Raises:
            ExportError: If the file cannot be read or is not a backup. Nothing is written.
        """
        document = await self._read_backup(source)
        counts = await asyncio.to_thread(self._restore, document)
        self.logger.info(f"Restored backup: {counts['playlists_added']} new playlist(s), "
                         f"{counts['playlists_updated']} updated, {counts['videos']} video(s).")
        return counts
