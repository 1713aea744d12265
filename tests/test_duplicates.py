"""
Tests for duplicate detection across playlists.
"""

import asyncio
import hashlib

import pytest

from playlist_manager.duplicates import (
    DuplicateDetector, extract_video_id, hash_file, normalize_title, title_similarity
)


class TestTitleSimilarity:
    """Tests for title normalization and Jaccard scoring."""

    def test_normalize(self):
        assert normalize_title("  Hello,   World!! (Live) ") == "hello world live"

    def test_identical_after_normalization(self):
        assert title_similarity("Never Gonna Give You Up", "never gonna give you up!!") == 1.0

    def test_partial_overlap(self):
        assert title_similarity("red green blue", "red green yellow") == pytest.approx(2 / 4)

    def test_empty_titles(self):
        assert title_similarity("!!!", "???") == 1.0
        assert title_similarity("", "something") == 0.0


@pytest.mark.parametrize("url,expected", [
    ("https://www.youtube.com/watch?v=dQw4w9WgXcQ&list=PL1", "dQw4w9WgXcQ"),
    ("https://youtu.be/dQw4w9WgXcQ?t=10", "dQw4w9WgXcQ"),
    ("https://www.youtube.com/watch?feature=share&v=abc123", "abc123"),
    ("https://vimeo.com/12345", None),
])
def test_extract_video_id(url, expected):
    assert extract_video_id(url) == expected


def test_hash_file(tmp_path):
    path = tmp_path / "video.mp4"
    path.write_bytes(b"\x00\x01" * 100_000)

    assert asyncio.run(hash_file(path)) == hashlib.sha256(b"\x00\x01" * 100_000).hexdigest()


class TestScan:
    """Tests for the batch scan over the datastore."""

    def test_scan_finds_id_and_title_duplicates(self, populated_database):
        detector = DuplicateDetector(populated_database)

        found = asyncio.run(detector.scan())

        # the shared video matches on id, url and title but is stored once
        assert found == {'video_id': 1, 'url_match': 0, 'title_similarity': 2, 'file_hash': 0, 'total': 3}
        pairs = {(d['original_video_id'], d['duplicate_video_id'], d['detection_method'])
                 for d in populated_database.get_duplicates()}
        assert pairs == {(1, 3, 'video_id'), (1, 4, 'title_similarity'), (3, 4, 'title_similarity')}

    def test_rescan_keeps_user_decisions(self, populated_database):
        detector = DuplicateDetector(populated_database)
        asyncio.run(detector.scan())
        populated_database.ignore_duplicate(1, 4)

        found = asyncio.run(detector.scan())

        assert found['title_similarity'] == 1
        assert len(populated_database.get_duplicates(include_ignored=True)) == 3

    def test_scan_hashes_downloaded_files(self, populated_database, tmp_path):
        for video_id in (2, 4):
            path = tmp_path / f"{video_id}.mp4"
            path.write_bytes(b"same content")
            populated_database.mark_downloaded(video_id, path)
        detector = DuplicateDetector(populated_database)

        found = asyncio.run(detector.scan(title_threshold=0))

        assert found['file_hash'] == 1
        assert found['title_similarity'] == 0
        assert len(populated_database.get_file_hashes()) == 2

    def test_file_checks_run_off_the_event_loop(self, populated_database, tmp_path, monkeypatch):
        path = tmp_path / "2.mp4"
        path.write_bytes(b"content")
        populated_database.mark_downloaded(2, path)
        offloaded = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(getattr(func, '__name__', repr(func)))
            return await real_to_thread(func, *args, **kwargs)
        monkeypatch.setattr(asyncio, 'to_thread', recording_to_thread)

        asyncio.run(DuplicateDetector(populated_database).scan(title_threshold=0))

        assert 'is_file' in offloaded
        assert 'stat' in offloaded
        assert populated_database.get_file_hashes()[0]['file_size'] == len(b"content")

    def test_record_file_hash_links_to_existing_files(self, populated_database):
        populated_database.store_file_hash(1, "deadbeef", 100)
        detector = DuplicateDetector(populated_database)

        found = asyncio.run(detector.record_file_hash(3, "deadbeef"))

        assert found == 1
        assert populated_database.get_duplicates()[0]['detection_method'] == 'file_hash'


class TestCheckBeforeDownload:
    """Tests for the pre-download duplicate check."""

    def test_matches_by_video_id(self, populated_database):
        detector = DuplicateDetector(populated_database)

        result = asyncio.run(detector.check_before_download("https://youtu.be/dQw4w9WgXcQ"))

        assert result['has_duplicates']
        assert sorted(video['id'] for video in result['suggestions']) == [1, 3]

    def test_no_match(self, populated_database):
        detector = DuplicateDetector(populated_database)

        result = asyncio.run(detector.check_before_download("https://example.com/new", "Completely different"))

        assert result == {'has_duplicates': False, 'suggestions': []}
