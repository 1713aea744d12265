"""
Defines the AppController class, which wires the backend together and reacts
to queue events.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .app_updater import AppUpdater
from .config import ConfigManager, Settings
from .datastore import Database
from .dependencies import DependencyManager
from .duplicates import DuplicateDetector, hash_file
from .exceptions import DatastoreError
from .exporter import PlaylistExporter
from .jobs import JobKind
from .playlists import PlaylistImporter
from .presets import PRESETS
from .queue_manager import EVENT_COMPLETE, JobQueueManager, QueueEvent
from .tools import ToolAdapter
from .url_extractor import URLInfoExtractor


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_manager: ConfigManager, config: Settings, database: Database,
                 dep_manager: Optional[DependencyManager] = None, adapter: Optional[ToolAdapter] = None):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded application settings.
            database: The open datastore.
            dep_manager: Locates the external tools. Built from `config` when omitted.
            adapter: Spawns the external tools. Built from `config` when omitted.
        """
        self.config_manager = config_manager
        self.config = config
        self.database = database
        self.logger = logging.getLogger(__name__)

        self.dep_manager = dep_manager or DependencyManager(config.yt_dlp_path, config.ffmpeg_path)
        self.adapter = adapter or ToolAdapter(config.yt_dlp_path, config.ffmpeg_path)
        self.queue = JobQueueManager(
            self.adapter,
            max_concurrent=config.max_concurrent_jobs,
            termination_grace=config.termination_grace_seconds,
        )
        self.extractor = URLInfoExtractor(config.yt_dlp_path)
        self.importer = PlaylistImporter(self.extractor, database)
        self.detector = DuplicateDetector(database, config.title_similarity_threshold, config.check_file_hashes)
        self.exporter = PlaylistExporter(database)
        self.app_updater = AppUpdater(config.skipped_update_version)
        self.update_info: Optional[Dict[str, str]] = None

        self.queue.add_listener(self.on_queue_event)

    async def run_startup_checks(self):
        """Locates the tools and optionally checks for an application update."""
        await self.dep_manager.initialize()
        self._apply_tool_paths()
        await self.queue.cleanup_temporary_files()
        if self.config.check_for_updates_on_startup:
            self.update_info = await asyncio.to_thread(self.app_updater.check_for_updates)

    def _apply_tool_paths(self):
        self.adapter.set_tool_path(JobKind.DOWNLOAD, self.dep_manager.yt_dlp_path)
        self.adapter.set_tool_path(JobKind.CONVERSION, self.dep_manager.ffmpeg_path)
        self.extractor.yt_dlp_path = self.dep_manager.yt_dlp_path

    async def install_dependency(self, tool: str) -> Dict[str, Any]:
        """Downloads a tool and lets queued jobs of its kind run again."""
        if tool == 'yt-dlp':
            result = await self.dep_manager.install_yt_dlp()
            kind = JobKind.DOWNLOAD
        elif tool == 'ffmpeg':
            result = await self.dep_manager.install_ffmpeg()
            kind = JobKind.CONVERSION
        else:
            raise ValueError(f"Unknown tool '{tool}'.")
        if result.get('success'):
            self._apply_tool_paths()
            await self.queue.mark_tool_available(kind)
        return result

    async def on_queue_event(self, event: QueueEvent):
        """Records finished downloads in the datastore."""
        if event.type != EVENT_COMPLETE or event.job is None or event.job.kind is not JobKind.DOWNLOAD:
            return
        video_ref = event.job.spec.video_id
        if not video_ref or not str(video_ref).isdigit() or not event.job.output_file:
            return
        await self.record_download(int(video_ref), Path(event.job.output_file))

    async def record_download(self, video_id: int, file_path: Path):
        """Marks a video as downloaded and links it to identical files already on disk."""
        file_hash, file_size = None, None
        if self.config.check_file_hashes and await asyncio.to_thread(file_path.is_file):
            try:
                file_hash = await hash_file(file_path)
                file_size = (await asyncio.to_thread(file_path.stat)).st_size
            except OSError as e:
                self.logger.warning(f"Could not hash downloaded file {file_path}: {e}")
        try:
            await asyncio.to_thread(self.database.mark_downloaded, video_id, file_path, file_hash, file_size)
        except DatastoreError as e:
            self.logger.warning(f"Download finished for an unknown video: {e}")
            return
        if file_hash:
            found = await self.detector.record_file_hash(video_id, file_hash)
            if found:
                self.logger.info(f"Video {video_id} has {found} identical file(s) already downloaded.")

    def build_download_spec(self, url: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Fills a download request with the configured defaults."""
        spec = {
            'kind': JobKind.DOWNLOAD.value,
            'source': url,
            'destination': str(self.config.download_path),
            'quality': self.config.default_quality,
            'format': self.config.default_format,
            'filename_template': self.config.filename_template,
            'embed_metadata': self.config.embed_metadata,
            'embed_thumbnail': self.config.embed_thumbnail,
        }
        spec.update(options or {})
        return spec

    async def enqueue(self, spec: Dict[str, Any]) -> str:
        if not isinstance(spec, dict):
            return await self.queue.enqueue(spec)
        if spec.get('kind', JobKind.DOWNLOAD.value) == JobKind.DOWNLOAD.value and 'source' in spec:
            spec = self.build_download_spec(spec['source'], spec)
        elif spec.get('kind') == JobKind.CONVERSION.value:
            spec = {'preset': self.config.default_preset, **spec}
        return await self.queue.enqueue(spec)

    async def download_playlist(self, playlist_id: int, options: Optional[Dict[str, Any]] = None,
                                include_downloaded: bool = False) -> List[str]:
        """
        Queues every video of a stored playlist.

        Raises:
            DatastoreError: If the playlist does not exist.
        """
        playlist = await asyncio.to_thread(self.database.get_playlist, playlist_id)
        if playlist is None:
            raise DatastoreError(f"No playlist with id {playlist_id}.")
        videos = await asyncio.to_thread(self.database.get_playlist_videos, playlist_id)
        options = dict(options or {})
        options.setdefault('destination', str(Path(self.config.download_path) / _safe_folder_name(playlist['title'])))

        job_ids = []
        for video in videos:
            if video['downloaded'] and not include_downloaded:
                continue
            spec = self.build_download_spec(video['url'], {**options, 'title': video['title'], 'video_id': str(video['id'])})
            job_ids.append(await self.queue.enqueue(spec))
        self.logger.info(f"Queued {len(job_ids)} video(s) from playlist '{playlist['title']}'.")
        return job_ids

    async def import_playlist(self, url: str) -> Dict[str, Any]:
        return await self.importer.import_playlist(url)

    async def list_playlists(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.database.list_playlists)

    async def get_playlist_videos(self, playlist_id: int) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.database.get_playlist_videos, playlist_id)

    async def delete_playlist(self, playlist_id: int) -> bool:
        return await asyncio.to_thread(self.database.delete_playlist, playlist_id)

    async def get_video_info(self, url: str) -> Dict[str, Any]:
        return await self.extractor.get_video_info(url)

    async def get_formats(self, url: str) -> Dict[str, Any]:
        return await self.extractor.get_formats(url)

    async def scan_duplicates(self, **options) -> Dict[str, int]:
        return await self.detector.scan(**options)

    async def get_duplicates(self, include_ignored: bool = False) -> Dict[str, Any]:
        duplicates = await asyncio.to_thread(self.database.get_duplicates, include_ignored)
        stats = await asyncio.to_thread(self.database.get_duplicate_stats)
        return {'duplicates': duplicates, 'stats': stats}

    async def resolve_duplicate(self, video_a: int, video_b: int, action: str) -> bool:
        """Marks a duplicate relationship as confirmed or ignored by the user."""
        if action == 'confirm':
            return await asyncio.to_thread(self.database.confirm_duplicate, video_a, video_b)
        if action == 'ignore':
            return await asyncio.to_thread(self.database.ignore_duplicate, video_a, video_b)
        raise ValueError(f"Unknown duplicate action '{action}'. Use 'confirm' or 'ignore'.")

    async def export_playlists(self, playlist_ids: List[int], destination: str, fmt: str = 'json') -> Dict[str, Any]:
        return await self.exporter.export_playlists(playlist_ids, destination, fmt)

    async def export_backup(self, destination: str) -> Dict[str, Any]:
        return await self.exporter.export_backup(destination)

    async def import_backup(self, source: str, preview: bool = False) -> Dict[str, Any]:
        """Restores a backup, or only describes it when `preview` is set."""
        if preview:
            return await self.exporter.preview_backup(source)
        return await self.exporter.import_backup(source)

    def list_presets(self) -> List[Dict[str, object]]:
        return [preset.to_dict() for preset in PRESETS.values()]

    async def get_versions(self) -> Dict[str, Any]:
        return await self.dep_manager.get_versions()

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Settings:
        """
        Validates and saves new settings.

        Raises:
            pydantic.ValidationError: If a value is invalid. Nothing is saved.
        """
        new_settings = Settings.model_validate({**self.config.model_dump(), **new_settings_data})
        self.config_manager.save(new_settings)
        self.config = new_settings
        self.detector.title_threshold = new_settings.title_similarity_threshold
        self.detector.check_file_hashes = new_settings.check_file_hashes
        self.queue.termination_grace = new_settings.termination_grace_seconds
        return new_settings

    async def apply_settings(self, new_settings_data: Dict[str, Any]) -> Settings:
        """Saves new settings and applies them to the running queue and tools."""
        old_paths = {JobKind.DOWNLOAD: self.config.yt_dlp_path, JobKind.CONVERSION: self.config.ffmpeg_path}
        settings = self.save_settings(new_settings_data)
        await self.queue.set_max_concurrent(settings.max_concurrent_jobs)

        new_paths = {JobKind.DOWNLOAD: settings.yt_dlp_path, JobKind.CONVERSION: settings.ffmpeg_path}
        changed = [kind for kind in new_paths if new_paths[kind] != old_paths[kind]]
        if changed:
            self.dep_manager.overrides = {'yt-dlp': settings.yt_dlp_path, 'ffmpeg': settings.ffmpeg_path}
            await self.dep_manager.initialize()
            self._apply_tool_paths()
            for kind in changed:
                self.logger.info(f"Tool path for {kind.value} changed; retrying held jobs.")
                await self.queue.mark_tool_available(kind)
        return settings

    def skip_update_version(self, version: str):
        """Stores a skipped version in config and saves it."""
        self.config.skipped_update_version = version
        self.app_updater.skipped_version = version
        self.config_manager.save(self.config)

    async def shutdown(self):
        self.logger.info("Application closing.")
        await self.queue.shutdown()
        await asyncio.to_thread(self.database.close)


def _safe_folder_name(title: str) -> str:
    cleaned = ''.join('_' if c in '<>:"/\\|?*' else c for c in title).strip().strip('.')
    return cleaned[:100] or 'Playlist'
