"""
Tests for playlist exports and backup restores.
"""

import asyncio
import csv
import json

import pytest

from playlist_manager.datastore import Database
from playlist_manager.exceptions import ExportError
from playlist_manager.exporter import CSV_HEADER, PlaylistExporter, format_duration


def test_format_duration():
    assert format_duration(61) == '1:01'
    assert format_duration(3725.9) == '1:02:05'
    assert format_duration(None) == ''


class TestExportPlaylists:
    """Tests for writing playlists in the export formats."""

    def test_json_export(self, populated_database, tmp_path):
        target = tmp_path / 'out' / 'favourites.json'

        result = asyncio.run(PlaylistExporter(populated_database).export_playlists([1], target))
        document = json.loads(target.read_text(encoding='utf-8'))

        assert result['file_path'] == str(target)
        assert result['file_size'] == target.stat().st_size
        assert (result['playlist_count'], result['video_count']) == (1, 2)
        assert document['format'] == 'playlist-manager-backup'
        assert document['playlists'][0]['playlist']['title'] == 'Favourites'
        assert [video['title'] for video in document['playlists'][0]['videos']] == [
            'Never Gonna Give You Up', 'Some Other Song']

    def test_csv_export(self, populated_database, tmp_path):
        target = tmp_path / 'all.csv'

        asyncio.run(PlaylistExporter(populated_database).export_playlists([1, 2], target, 'CSV'))
        with open(target, newline='', encoding='utf-8') as f:
            rows = list(csv.reader(f))

        assert rows[0] == CSV_HEADER
        assert len(rows) == 5
        assert rows[1] == ['Favourites', '1', 'Never Gonna Give You Up', 'https://www.youtube.com/watch?v=dQw4w9WgXcQ',
                           'dQw4w9WgXcQ', '', '', 'no', '']
        assert rows[4][:3] == ['Music', '2', 'Never Gonna Give You Up!!']

    def test_txt_and_m3u_exports(self, populated_database, tmp_path):
        exporter = PlaylistExporter(populated_database)

        asyncio.run(exporter.export_playlists([2], tmp_path / 'music.txt', 'txt'))
        asyncio.run(exporter.export_playlists([2], tmp_path / 'music.m3u', 'm3u'))
        text = (tmp_path / 'music.txt').read_text(encoding='utf-8').splitlines()
        m3u = (tmp_path / 'music.m3u').read_text(encoding='utf-8').splitlines()

        assert text[:3] == ['Playlist: Music', '=' * len('Playlist: Music'), '']
        assert 'https://www.youtube.com/watch?v=bbbbbbbbbbb' in text
        assert m3u[0] == '#EXTM3U'
        assert m3u[2:4] == ['#EXTINF:-1,Never Gonna Give You Up', 'https://www.youtube.com/watch?v=dQw4w9WgXcQ']

    def test_directory_destination_gets_default_name(self, populated_database, tmp_path):
        result = asyncio.run(PlaylistExporter(populated_database).export_playlists([1, 2, 99], tmp_path, 'txt'))

        assert result['file_path'] == str(tmp_path / 'playlists_export_2.txt')
        assert result['playlist_count'] == 2

    def test_unknown_format_and_playlists(self, populated_database, tmp_path):
        exporter = PlaylistExporter(populated_database)

        with pytest.raises(ExportError):
            asyncio.run(exporter.export_playlists([1], tmp_path / 'x.xml', 'xml'))
        with pytest.raises(ExportError):
            asyncio.run(exporter.export_playlists([42], tmp_path / 'x.json'))
        assert list(tmp_path.iterdir()) == []


class TestBackup:
    """Tests for full backups and restoring them."""

    def test_restore_into_empty_library(self, populated_database, tmp_path):
        populated_database.mark_downloaded(1, tmp_path / 'never.mp4', file_size=11)
        backup = asyncio.run(PlaylistExporter(populated_database).export_backup(tmp_path))
        restored = Database(':memory:')

        try:
            preview = asyncio.run(PlaylistExporter(restored).preview_backup(backup['file_path']))
            counts = asyncio.run(PlaylistExporter(restored).import_backup(backup['file_path']))
            playlists = {playlist['source_id']: playlist for playlist in restored.list_playlists()}
            first_videos = restored.get_playlist_videos(playlists['PL1']['id'])
        finally:
            restored.close()

        assert backup['file_path'].endswith('.json')
        assert (backup['playlist_count'], backup['video_count']) == (2, 4)
        assert (preview['new_playlists'], preview['existing_playlists'], preview['video_count']) == (2, 0, 4)
        assert counts == {'playlists_added': 2, 'playlists_updated': 0, 'videos': 4, 'downloaded': 1}
        assert playlists['PL1']['title'] == 'Favourites'
        assert [video['video_id'] for video in first_videos] == ['dQw4w9WgXcQ', 'aaaaaaaaaaa']
        assert first_videos[0]['downloaded'] == 1
        assert first_videos[0]['file_path'] == str(tmp_path / 'never.mp4')
        assert first_videos[0]['file_size'] == 11

    def test_restore_over_existing_playlists_does_not_duplicate(self, populated_database, tmp_path):
        exporter = PlaylistExporter(populated_database)
        backup = asyncio.run(exporter.export_backup(tmp_path / 'backup.json'))
        populated_database.delete_playlist(2)

        preview = asyncio.run(exporter.preview_backup(backup['file_path']))
        counts = asyncio.run(exporter.import_backup(backup['file_path']))

        assert (preview['new_playlists'], preview['existing_playlists']) == (1, 1)
        assert (counts['playlists_added'], counts['playlists_updated']) == (1, 1)
        assert len(populated_database.list_playlists()) == 2
        assert len(populated_database.get_all_videos()) == 4

    @pytest.mark.parametrize("content", [
        "not json at all",
        json.dumps({'format': 'something-else', 'version': 1, 'playlists': []}),
        json.dumps({'format': 'playlist-manager-backup', 'version': 1, 'playlists': [{'videos': []}]}),
        json.dumps({'format': 'playlist-manager-backup', 'version': 99, 'playlists': []}),
    ])
    def test_unreadable_backups_change_nothing(self, populated_database, tmp_path, content):
        source = tmp_path / 'broken.json'
        source.write_text(content, encoding='utf-8')

        with pytest.raises(ExportError):
            asyncio.run(PlaylistExporter(populated_database).import_backup(source))
        assert len(populated_database.list_playlists()) == 2

    def test_missing_backup_file(self, database, tmp_path):
        with pytest.raises(ExportError):
            asyncio.run(PlaylistExporter(database).preview_backup(tmp_path / 'nope.json'))
