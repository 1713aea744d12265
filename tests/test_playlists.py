"""
Tests for playlist URL handling, metadata extraction and import.
"""

import asyncio
import json

import pytest

from playlist_manager.exceptions import URLExtractionError
from playlist_manager.playlists import PlaylistImporter, extract_source_id, is_playlist_url
from playlist_manager.url_extractor import URLInfoExtractor

PLAYLIST_JSON = {
    'id': 'PLabc',
    'title': 'Road Trip',
    'uploader': 'Someone',
    'entries': [
        {'id': 'vid1', 'title': 'First', 'url': 'https://www.youtube.com/watch?v=vid1', 'duration': 61.0},
        None,
        {'id': 'vid2', 'title': 'Second', 'url': 'vid2'},
    ],
}


class StubExtractor(URLInfoExtractor):
    """Answers yt-dlp commands from canned output instead of running yt-dlp."""

    def __init__(self, stdout='', error=None):
        super().__init__()
        self.stdout = stdout
        self.error = error
        self.commands = []

    async def _run_command(self, command, timeout):
        self.commands.append(command)
        if self.error:
            raise self.error
        return self.stdout, ''


class TestPlaylistUrls:
    """Tests for recognizing playlist URLs and deriving their ids."""

    @pytest.mark.parametrize("url", [
        "https://www.youtube.com/playlist?list=PLabc-123",
        "https://youtube.com/watch?v=dQw4w9WgXcQ&list=PLabc",
        "https://youtu.be/dQw4w9WgXcQ?list=PLabc",
        "https://www.youtube.com/channel/UC123",
        "https://www.youtube.com/user/someone",
        "https://www.youtube.com/@handle",
    ])
    def test_supported(self, url):
        assert is_playlist_url(url)

    @pytest.mark.parametrize("url", [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://vimeo.com/channels/staffpicks",
        "not a url",
    ])
    def test_unsupported(self, url):
        assert not is_playlist_url(url)

    def test_source_ids(self):
        assert extract_source_id("https://www.youtube.com/playlist?list=PLabc") == "PLabc"
        assert extract_source_id("https://www.youtube.com/channel/UC123") == "channel_UC123"
        assert extract_source_id("https://www.youtube.com/@handle") == "handle_handle"
        other = extract_source_id("https://example.com/feed")
        assert other.startswith("url_")
        assert other == extract_source_id("https://example.com/feed")


class TestURLInfoExtractor:
    """Tests for yt-dlp metadata commands."""

    def test_playlist_info_drops_missing_entries(self):
        extractor = StubExtractor(json.dumps(PLAYLIST_JSON))

        info = asyncio.run(extractor.get_playlist_info("https://www.youtube.com/playlist?list=PLabc"))

        assert [entry['id'] for entry in info['entries']] == ['vid1', 'vid2']
        assert extractor.commands[0][:4] == ['yt-dlp', '--flat-playlist', '-J', '--no-warnings']
        assert extractor.commands[0][-2:] == ['--', "https://www.youtube.com/playlist?list=PLabc"]

    def test_invalid_json(self):
        extractor = StubExtractor("this is not json")

        with pytest.raises(URLExtractionError):
            asyncio.run(extractor.get_playlist_info("https://www.youtube.com/playlist?list=PLabc"))

    def test_video_info(self):
        extractor = StubExtractor(json.dumps({'id': 'vid1', 'title': 'First', 'duration': 61}))

        info = asyncio.run(extractor.get_video_info('https://youtu.be/vid1'))

        assert info['title'] == 'First'
        assert '--no-playlist' in extractor.commands[0]

    def test_formats_are_grouped_best_first(self):
        formats = [
            {'format_id': 'sb0', 'ext': 'mhtml', 'vcodec': 'none', 'acodec': 'none'},
            {'format_id': '140', 'ext': 'm4a', 'vcodec': 'none', 'acodec': 'mp4a.40.2', 'abr': 129.5},
            {'format_id': '251', 'ext': 'webm', 'vcodec': 'none', 'acodec': 'opus', 'abr': 135},
            {'format_id': '137', 'ext': 'mp4', 'vcodec': 'avc1.640028', 'acodec': 'none', 'height': 1080,
             'fps': 30, 'tbr': 4000, 'filesize': 50 * 1024 * 1024},
            {'format_id': '248', 'ext': 'webm', 'vcodec': 'vp9', 'acodec': 'none', 'height': 1080, 'fps': 60,
             'vbr': 5000},
            {'format_id': '18', 'ext': 'mp4', 'vcodec': 'avc1.42001E', 'acodec': 'mp4a.40.2', 'height': 360,
             'tbr': 500},
        ]
        extractor = StubExtractor(json.dumps({'id': 'vid1', 'title': 'First', 'formats': formats}))

        result = asyncio.run(extractor.get_formats('https://youtu.be/vid1'))

        assert [fmt['format_id'] for fmt in result['video_only']] == ['248', '137']
        assert [fmt['format_id'] for fmt in result['audio_only']] == ['251', '140']
        assert [fmt['format_id'] for fmt in result['combined']] == ['18']
        assert (result['best_video'], result['best_audio'], result['best_combined']) == ('248', '251', '18')
        names = {fmt['format_id']: fmt['display_name'] for fmt in result['video_only'] + result['audio_only']}
        assert names['137'] == '1080p | MP4 | avc1 | video only | 50MB'
        assert names['248'] == '1080p | 60fps | WEBM | vp9 | video only'
        assert names['251'] == 'WEBM | audio only | 135k'
        assert '--no-playlist' in extractor.commands[0]

    def test_no_usable_formats(self):
        extractor = StubExtractor(json.dumps({'id': 'vid1', 'formats': [{'format_id': 'sb0', 'vcodec': 'none'}]}))

        with pytest.raises(URLExtractionError):
            asyncio.run(extractor.get_formats('https://youtu.be/vid1'))

    def test_error_parsing(self):
        extractor = URLInfoExtractor()
        stderr = "WARNING: slow\nERROR: [youtube:tab] PLx: This playlist does not exist\n"

        assert extractor._parse_yt_dlp_error(stderr) == "[youtube:tab] PLx: This playlist does not exist"
        assert extractor._parse_yt_dlp_error("") == "yt-dlp returned an error with no output."
        assert extractor._parse_yt_dlp_error("just noise\nlast line") == "last line"


class TestPlaylistImporter:
    """Tests for storing imported playlists."""

    def test_import_stores_playlist_and_videos(self, database):
        importer = PlaylistImporter(StubExtractor(json.dumps(PLAYLIST_JSON)), database)

        playlist = asyncio.run(importer.import_playlist("https://www.youtube.com/playlist?list=PLabc"))
        videos = database.get_playlist_videos(playlist['id'])

        assert playlist['title'] == 'Road Trip'
        assert playlist['source_id'] == 'PLabc'
        assert playlist['video_count'] == 2
        assert [video['url'] for video in videos] == [
            'https://www.youtube.com/watch?v=vid1', 'https://www.youtube.com/watch?v=vid2']
        assert videos[0]['duration'] == 61.0

    def test_reimport_does_not_duplicate(self, database):
        importer = PlaylistImporter(StubExtractor(json.dumps(PLAYLIST_JSON)), database)
        url = "https://www.youtube.com/playlist?list=PLabc"

        asyncio.run(importer.import_playlist(url))
        playlist = asyncio.run(importer.import_playlist(url))

        assert len(database.list_playlists()) == 1
        assert playlist['video_count'] == 2

    def test_rejects_non_playlist_url(self, database):
        extractor = StubExtractor(json.dumps(PLAYLIST_JSON))
        importer = PlaylistImporter(extractor, database)

        with pytest.raises(URLExtractionError):
            asyncio.run(importer.import_playlist("https://www.youtube.com/watch?v=dQw4w9WgXcQ"))
        assert extractor.commands == []

    def test_extraction_errors_propagate(self, database):
        importer = PlaylistImporter(StubExtractor(error=URLExtractionError("This playlist does not exist")), database)

        with pytest.raises(URLExtractionError, match="does not exist"):
            asyncio.run(importer.import_playlist("https://www.youtube.com/playlist?list=PLgone"))
        assert database.list_playlists() == []
