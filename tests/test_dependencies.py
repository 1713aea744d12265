"""
Tests for locating, versioning and installing the external tools.
"""

import asyncio
import sys
import tarfile
import zipfile

import pytest

from playlist_manager.dependencies import DependencyManager, _executable_name


def make_executable(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n", encoding='utf-8')
    path.chmod(0o755)
    return path


class TestFindExecutable:
    """Tests for the lookup order."""

    def test_override_wins(self, tmp_path):
        override = make_executable(tmp_path / 'custom' / 'yt-dlp')
        make_executable(tmp_path / 'bin' / _executable_name('yt-dlp'))
        manager = DependencyManager(yt_dlp_override=override, bin_dir=tmp_path / 'bin')

        assert manager.find_executable('yt-dlp') == override

    def test_missing_override_falls_back_to_bin_dir(self, tmp_path):
        managed = make_executable(tmp_path / 'bin' / _executable_name('ffmpeg'))
        manager = DependencyManager(ffmpeg_override=tmp_path / 'gone' / 'ffmpeg', bin_dir=tmp_path / 'bin')

        assert manager.find_executable('ffmpeg') == managed

    def test_not_found(self, tmp_path):
        manager = DependencyManager(bin_dir=tmp_path / 'bin')

        assert manager.find_executable('definitely-not-a-real-tool') is None


class TestVersions:
    """Tests for version reporting."""

    def test_missing_tools(self, tmp_path):
        manager = DependencyManager(bin_dir=tmp_path / 'bin')

        versions = asyncio.run(manager.get_versions())

        assert versions == {
            'yt-dlp': {'path': None, 'version': 'Not found'},
            'ffmpeg': {'path': None, 'version': 'Not found'},
        }

    @pytest.mark.skipif(sys.platform == 'win32', reason="uses a shell script as the tool")
    def test_first_line_of_version_output(self, tmp_path):
        tool = tmp_path / 'yt-dlp'
        tool.write_text("#!/bin/sh\necho 2024.08.06\necho extra\n", encoding='utf-8')
        tool.chmod(0o755)
        manager = DependencyManager(bin_dir=tmp_path / 'bin')

        assert asyncio.run(manager.get_version(tool)) == '2024.08.06'


class TestArchives:
    """Tests for unpacking downloaded FFmpeg builds."""

    def test_zip(self, tmp_path):
        archive = tmp_path / 'ffmpeg.zip'
        with zipfile.ZipFile(archive, 'w') as zf:
            zf.writestr('ffmpeg-build/bin/ffmpeg', b'binary')

        DependencyManager._extract_archive(archive, tmp_path / 'out')

        assert (tmp_path / 'out' / 'ffmpeg-build' / 'bin' / 'ffmpeg').read_bytes() == b'binary'

    def test_tar_xz(self, tmp_path):
        source = tmp_path / 'ffmpeg'
        source.write_bytes(b'binary')
        archive = tmp_path / 'ffmpeg.tar.xz'
        with tarfile.open(archive, 'w:xz') as tf:
            tf.add(source, arcname='build/bin/ffmpeg')

        DependencyManager._extract_archive(archive, tmp_path / 'out')

        assert (tmp_path / 'out' / 'build' / 'bin' / 'ffmpeg').read_bytes() == b'binary'

    def test_unsupported(self, tmp_path):
        archive = tmp_path / 'ffmpeg.rar'
        archive.write_bytes(b'')

        with pytest.raises(tarfile.ReadError):
            DependencyManager._extract_archive(archive, tmp_path / 'out')


class TestInstall:
    """Tests for installing yt-dlp without touching the network."""

    def test_install_yt_dlp(self, tmp_path, monkeypatch):
        manager = DependencyManager(bin_dir=tmp_path / 'bin')
        downloaded = []

        async def fake_download(session, url, save_path, tool):
            downloaded.append(url)
            save_path.write_bytes(b'yt-dlp binary')
        monkeypatch.setattr(manager, '_download', fake_download)

        result = asyncio.run(manager.install_yt_dlp())

        assert result['success']
        assert manager.yt_dlp_path == tmp_path / 'bin' / _executable_name('yt-dlp')
        assert manager.yt_dlp_path.read_bytes() == b'yt-dlp binary'
        assert downloaded and 'yt-dlp' in downloaded[0]

    def test_unsupported_platform(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, 'platform', 'plan9')
        manager = DependencyManager(bin_dir=tmp_path / 'bin')

        result = asyncio.run(manager.install_ffmpeg())

        assert result == {'type': 'ffmpeg', 'success': False, 'error': "Unsupported OS: plan9"}
