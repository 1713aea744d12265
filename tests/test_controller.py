"""
Tests for the AppController: playlist downloads, completion bookkeeping and settings.
"""

import asyncio
import hashlib

import pytest
from pydantic import ValidationError

from conftest import FakeAdapter, finish_all, settle
from playlist_manager.config import ConfigManager, Settings
from playlist_manager.controller import AppController, _safe_folder_name
from playlist_manager.dependencies import DependencyManager
from playlist_manager.exceptions import DatastoreError
from playlist_manager.jobs import JobKind


def make_controller(database, tmp_path, **settings):
    config = Settings(download_path=tmp_path / 'media', check_for_updates_on_startup=False, **settings)
    adapter = FakeAdapter(temp_dir=tmp_path / 'temp')
    controller = AppController(
        ConfigManager(tmp_path / 'config.json'),
        config,
        database,
        dep_manager=DependencyManager(bin_dir=tmp_path / 'bin'),
        adapter=adapter,
    )
    return controller, adapter


class TestPlaylistDownloads:
    """Tests for queueing stored playlists."""

    def test_skips_downloaded_videos(self, populated_database, tmp_path):
        populated_database.mark_downloaded(2, tmp_path / 'other.mp4')

        async def scenario():
            controller, adapter = make_controller(populated_database, tmp_path)
            job_ids = await controller.download_playlist(1)
            jobs = [controller.queue.get_job(job_id) for job_id in job_ids]
            await finish_all(controller.queue, adapter)
            return jobs

        jobs = asyncio.run(scenario())

        assert len(jobs) == 1
        assert jobs[0].spec.video_id == '1'
        assert jobs[0].title == "Never Gonna Give You Up"
        assert jobs[0].spec.destination == str(tmp_path / 'media' / 'Favourites')

    def test_include_downloaded(self, populated_database, tmp_path):
        populated_database.mark_downloaded(2, tmp_path / 'other.mp4')

        async def scenario():
            controller, adapter = make_controller(populated_database, tmp_path)
            job_ids = await controller.download_playlist(1, options={'quality': '720p'}, include_downloaded=True)
            specs = [controller.queue.get_job(job_id).spec for job_id in job_ids]
            await finish_all(controller.queue, adapter)
            return specs

        specs = asyncio.run(scenario())

        assert [spec.video_id for spec in specs] == ['1', '2']
        assert all(spec.quality == '720p' for spec in specs)

    def test_unknown_playlist(self, database, tmp_path):
        controller, _ = make_controller(database, tmp_path)

        with pytest.raises(DatastoreError):
            asyncio.run(controller.download_playlist(42))


class TestCompletion:
    """Tests for what happens when a playlist video finishes downloading."""

    def test_completed_download_is_recorded_and_hashed(self, populated_database, tmp_path):
        content = b"video bytes"
        output = tmp_path / 'media' / 'never.mp4'
        output.parent.mkdir(parents=True)
        output.write_bytes(content)
        populated_database.store_file_hash(3, hashlib.sha256(content).hexdigest(), len(content))

        async def scenario():
            controller, adapter = make_controller(populated_database, tmp_path)
            await controller.enqueue({'kind': 'download', 'source': 'https://youtu.be/dQw4w9WgXcQ', 'video_id': '1'})
            await settle()
            handle = adapter.handles[0]
            handle.emit_stdout(f"[download] Destination: {output}", "[download] 100.0% of 11B")
            handle.exit(0)
            await controller.queue.join()

        asyncio.run(scenario())
        video = populated_database.get_video(1)
        duplicates = populated_database.get_duplicates()

        assert video['downloaded'] == 1
        assert video['file_path'] == str(output)
        assert video['file_size'] == len(content)
        assert [(d['original_video_id'], d['duplicate_video_id'], d['detection_method']) for d in duplicates] == [
            (1, 3, 'file_hash')]

    def test_downloads_outside_the_datastore_are_ignored(self, populated_database, tmp_path):
        async def scenario():
            controller, adapter = make_controller(populated_database, tmp_path)
            await controller.enqueue({'kind': 'download', 'source': 'https://youtu.be/xyz'})
            await settle()
            adapter.handles[0].emit_stdout(f"[download] Destination: {tmp_path / 'x.mp4'}")
            await finish_all(controller.queue, adapter)

        asyncio.run(scenario())

        assert not any(video['downloaded'] for video in populated_database.get_all_videos())


class TestEnqueueDefaults:
    """Tests for filling requests from the settings."""

    def test_download_uses_configured_defaults(self, database, tmp_path):
        async def scenario():
            controller, adapter = make_controller(database, tmp_path, default_quality='1080p', default_format='mkv')
            job_id = await controller.enqueue({'source': 'https://youtu.be/xyz'})
            spec = controller.queue.get_job(job_id).spec
            await finish_all(controller.queue, adapter)
            return spec

        spec = asyncio.run(scenario())

        assert spec.kind.value == 'download'
        assert spec.quality == '1080p'
        assert spec.format == 'mkv'
        assert spec.destination == str(tmp_path / 'media')

    def test_conversion_gets_default_preset(self, database, tmp_path):
        async def scenario():
            controller, adapter = make_controller(database, tmp_path, default_preset='web_optimized')
            job_id = await controller.enqueue({'kind': 'conversion', 'source': '/a.mkv', 'destination': '/a.mp4'})
            spec = controller.queue.get_job(job_id).spec
            await finish_all(controller.queue, adapter)
            return spec

        assert asyncio.run(scenario()).preset == 'web_optimized'


class TestSettings:
    """Tests for live settings changes."""

    def test_apply_settings_saves_and_resizes_queue(self, database, tmp_path):
        async def scenario():
            controller, _ = make_controller(database, tmp_path)
            await controller.apply_settings({'max_concurrent_jobs': 5, 'title_similarity_threshold': 0.7})
            return controller

        controller = asyncio.run(scenario())

        assert controller.queue.max_concurrent == 5
        assert controller.detector.title_threshold == 0.7
        assert ConfigManager(tmp_path / 'config.json').load().max_concurrent_jobs == 5

    def test_new_tool_path_applies_without_restart(self, database, tmp_path):
        tool = tmp_path / 'custom' / 'yt-dlp'
        tool.parent.mkdir()
        tool.write_text("#!/bin/sh\n", encoding='utf-8')

        async def scenario():
            controller, adapter = make_controller(database, tmp_path)
            await controller.apply_settings({'yt_dlp_path': str(tool)})
            return controller, adapter

        controller, adapter = asyncio.run(scenario())

        assert controller.dep_manager.yt_dlp_path == tool
        assert adapter.tool_path(JobKind.DOWNLOAD) == tool
        assert controller.extractor.yt_dlp_path == tool

    def test_invalid_settings_change_nothing(self, database, tmp_path):
        controller, _ = make_controller(database, tmp_path)

        with pytest.raises(ValidationError):
            controller.save_settings({'max_concurrent_jobs': 0})
        assert controller.config.max_concurrent_jobs == 2
        assert not (tmp_path / 'config.json').exists()


def test_safe_folder_name():
    assert _safe_folder_name('AC/DC: Live?') == 'AC_DC_ Live_'
    assert _safe_folder_name('...') == 'Playlist'


class StubDependencyManager(DependencyManager):
    """Pretends to install FFmpeg into the managed bin directory."""

    async def install_ffmpeg(self):
        self.ffmpeg_path = self.bin_dir / 'ffmpeg'
        return {'type': 'ffmpeg', 'success': True, 'path': str(self.ffmpeg_path)}


def test_installing_a_tool_releases_waiting_jobs(database, tmp_path):
    async def scenario():
        adapter = FakeAdapter(temp_dir=tmp_path / 'temp', unavailable=['conversion'])
        controller = AppController(
            ConfigManager(tmp_path / 'config.json'),
            Settings(download_path=tmp_path / 'media', check_for_updates_on_startup=False),
            database,
            dep_manager=StubDependencyManager(bin_dir=tmp_path / 'bin'),
            adapter=adapter,
        )
        job_id = await controller.enqueue({'kind': 'conversion', 'source': '/a.mkv', 'destination': '/a.mp4'})
        await settle()
        waiting = controller.queue.get_job(job_id).status
        adapter.unavailable.clear()
        result = await controller.install_dependency('ffmpeg')
        await settle()
        running = controller.queue.get_job(job_id).status
        await finish_all(controller.queue, adapter)
        return waiting, result, running, adapter

    waiting, result, running, adapter = asyncio.run(scenario())

    assert waiting.value == 'queued'
    assert result['success']
    assert running.value == 'active'
    assert adapter.tool_path(JobKind.CONVERSION) == tmp_path / 'bin' / 'ffmpeg'


def test_unknown_tool(database, tmp_path):
    controller, _ = make_controller(database, tmp_path)

    with pytest.raises(ValueError):
        asyncio.run(controller.install_dependency('vlc'))
