"""
SQLite storage for playlists, videos, file hashes, and duplicate relationships.

The connection is shared across threads and guarded by a lock; code on the
event loop calls these methods through `asyncio.to_thread`.
"""

import sqlite3
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .exceptions import DatastoreError

SCHEMA = """
CREATE TABLE IF NOT EXISTS playlists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    thumbnail TEXT,
    source TEXT NOT NULL DEFAULT 'youtube',
    source_id TEXT UNIQUE,
    source_url TEXT,
    uploader TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS videos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    playlist_id INTEGER REFERENCES playlists(id) ON DELETE CASCADE,
    video_id TEXT,
    title TEXT NOT NULL,
    url TEXT NOT NULL,
    duration REAL,
    uploader TEXT,
    thumbnail TEXT,
    position INTEGER,
    downloaded INTEGER NOT NULL DEFAULT 0,
    file_path TEXT,
    file_size INTEGER,
    downloaded_at DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS video_duplicates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    original_video_id INTEGER NOT NULL,
    duplicate_video_id INTEGER NOT NULL,
    detection_method TEXT NOT NULL,
    similarity_score REAL,
    confirmed_by_user INTEGER NOT NULL DEFAULT 0,
    ignored_by_user INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(original_video_id, duplicate_video_id)
);

CREATE TABLE IF NOT EXISTS video_file_hashes (
    video_id INTEGER PRIMARY KEY,
    file_hash TEXT NOT NULL,
    file_size INTEGER,
    hash_algorithm TEXT DEFAULT 'sha256',
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_videos_playlist ON videos(playlist_id);
CREATE INDEX IF NOT EXISTS idx_videos_video_id ON videos(video_id);
CREATE INDEX IF NOT EXISTS idx_duplicates_original ON video_duplicates(original_video_id);
CREATE INDEX IF NOT EXISTS idx_duplicates_duplicate ON video_duplicates(duplicate_video_id);
CREATE INDEX IF NOT EXISTS idx_duplicates_method ON video_duplicates(detection_method);
CREATE INDEX IF NOT EXISTS idx_file_hashes_hash ON video_file_hashes(file_hash);
"""

VideoId = Union[int, str]


class Database:
    """Thin CRUD layer over the application's SQLite file."""
    def __init__(self, db_path: Union[Path, str]):
        """
        Opens (and if needed creates) the database.

        Args:
            db_path: Path to the SQLite file, or ':memory:'.
        """
        self.logger = logging.getLogger(__name__)
        self.db_path = db_path
        if str(db_path) != ':memory:':
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        with self._conn:
            self._conn.executescript(SCHEMA)
        self.logger.info(f"Opened database at {db_path}")

    def close(self):
        with self._lock:
            self._conn.close()

    def _fetchone(self, query: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(query, tuple(params)).fetchone()
        return dict(row) if row else None

    def _fetchall(self, query: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(query, tuple(params)).fetchall()
        return [dict(row) for row in rows]

    # --- Playlists ---

    def add_playlist(self, title: str, source_id: Optional[str] = None, description: Optional[str] = None,
                     thumbnail: Optional[str] = None, source: str = 'youtube', source_url: Optional[str] = None,
                     uploader: Optional[str] = None) -> int:
        """
        Inserts a playlist, or refreshes the one with the same `source_id`.

        Returns:
            The playlist's row id.
        """
        with self._lock, self._conn:
            if source_id:
                existing = self._conn.execute("SELECT id FROM playlists WHERE source_id = ?", (source_id,)).fetchone()
                if existing:
                    self._conn.execute(
                        "UPDATE playlists SET title = ?, description = ?, thumbnail = ?, source_url = ?, uploader = ?, "
                        "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                        (title, description, thumbnail, source_url, uploader, existing['id']))
                    return existing['id']
            cursor = self._conn.execute(
                "INSERT INTO playlists (title, description, thumbnail, source, source_id, source_url, uploader) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (title, description, thumbnail, source, source_id, source_url, uploader))
            return cursor.lastrowid

    def get_playlist(self, playlist_id: int) -> Optional[Dict[str, Any]]:
        return self._fetchone(
            "SELECT p.*, (SELECT COUNT(*) FROM videos v WHERE v.playlist_id = p.id) AS video_count "
            "FROM playlists p WHERE p.id = ?", (playlist_id,))

    def list_playlists(self) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT p.*, (SELECT COUNT(*) FROM videos v WHERE v.playlist_id = p.id) AS video_count "
            "FROM playlists p ORDER BY p.updated_at DESC, p.id DESC")

    def delete_playlist(self, playlist_id: int) -> bool:
        with self._lock, self._conn:
            video_ids = [row['id'] for row in self._conn.execute(
                "SELECT id FROM videos WHERE playlist_id = ?", (playlist_id,)).fetchall()]
            for video_id in video_ids:
                self._conn.execute(
                    "DELETE FROM video_duplicates WHERE original_video_id = ? OR duplicate_video_id = ?",
                    (video_id, video_id))
                self._conn.execute("DELETE FROM video_file_hashes WHERE video_id = ?", (video_id,))
            cursor = self._conn.execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
            return cursor.rowcount > 0

    # --- Videos ---

    def add_video(self, title: str, url: str, playlist_id: Optional[int] = None, video_id: Optional[str] = None,
                  duration: Optional[float] = None, uploader: Optional[str] = None,
                  thumbnail: Optional[str] = None, position: Optional[int] = None) -> int:
        """
        Inserts a video. Re-importing a playlist keeps one row per (playlist, video id).

        Returns:
            The video's row id.
        """
        with self._lock, self._conn:
            if playlist_id is not None and video_id:
                existing = self._conn.execute(
                    "SELECT id FROM videos WHERE playlist_id = ? AND video_id = ?", (playlist_id, video_id)).fetchone()
                if existing:
                    self._conn.execute(
                        "UPDATE videos SET title = ?, url = ?, duration = ?, uploader = ?, thumbnail = ?, position = ? "
                        "WHERE id = ?", (title, url, duration, uploader, thumbnail, position, existing['id']))
                    return existing['id']
            cursor = self._conn.execute(
                "INSERT INTO videos (playlist_id, video_id, title, url, duration, uploader, thumbnail, position) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (playlist_id, video_id, title, url, duration, uploader, thumbnail, position))
            return cursor.lastrowid

    def get_video(self, video_id: VideoId) -> Optional[Dict[str, Any]]:
        """Returns the video row with the given row id, or None."""
        return self._fetchone("SELECT * FROM videos WHERE id = ?", (int(video_id),))

    def get_playlist_videos(self, playlist_id: int) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM videos WHERE playlist_id = ? ORDER BY position IS NULL, position, id", (playlist_id,))

    def get_all_videos(self) -> List[Dict[str, Any]]:
        return self._fetchall("SELECT * FROM videos ORDER BY id")

    def mark_downloaded(self, video_id: VideoId, file_path: Union[Path, str], file_hash: Optional[str] = None,
                        file_size: Optional[int] = None):
        """
        Records that a video's file now exists locally.

        Raises:
            DatastoreError: If no video has that id.
        """
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE videos SET downloaded = 1, file_path = ?, file_size = COALESCE(?, file_size), downloaded_at = ? "
                "WHERE id = ?",
                (str(file_path), file_size, datetime.now().isoformat(timespec='seconds'), int(video_id)))
            if cursor.rowcount == 0:
                raise DatastoreError(f"No video with id {video_id}.")
            if file_hash:
                self._conn.execute(
                    "INSERT OR REPLACE INTO video_file_hashes (video_id, file_hash, file_size) VALUES (?, ?, ?)",
                    (int(video_id), file_hash, file_size))
        self.logger.info(f"Marked video {video_id} as downloaded: {file_path}")

    # --- Hashes and duplicates ---

    def store_file_hash(self, video_id: VideoId, file_hash: str, file_size: Optional[int] = None):
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO video_file_hashes (video_id, file_hash, file_size) VALUES (?, ?, ?)",
                (int(video_id), file_hash, file_size))

    def find_videos_by_hash(self, file_hash: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT v.* FROM videos v JOIN video_file_hashes h ON h.video_id = v.id WHERE h.file_hash = ? ORDER BY v.id",
            (file_hash,))

    def get_file_hashes(self) -> List[Dict[str, Any]]:
        return self._fetchall("SELECT * FROM video_file_hashes ORDER BY video_id")

    def record_duplicate(self, original_id: VideoId, duplicate_id: VideoId, score: Optional[float], method: str) -> bool:
        """
        Stores a duplicate relationship. The pair is kept in (lower id, higher id) order.

        Returns:
            True if a new relationship was stored.
        """
        original, duplicate = sorted((int(original_id), int(duplicate_id)))
        if original == duplicate:
            return False
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO video_duplicates "
                "(original_video_id, duplicate_video_id, detection_method, similarity_score) VALUES (?, ?, ?, ?)",
                (original, duplicate, method, score))
            return cursor.rowcount > 0

    def clear_unconfirmed_duplicates(self) -> int:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM video_duplicates WHERE confirmed_by_user = 0 AND ignored_by_user = 0")
            return cursor.rowcount

    def get_duplicates(self, include_ignored: bool = False) -> List[Dict[str, Any]]:
        query = (
            "SELECT d.*, vo.title AS original_title, vo.url AS original_url, "
            "vd.title AS duplicate_title, vd.url AS duplicate_url, "
            "po.title AS original_playlist, pd.title AS duplicate_playlist "
            "FROM video_duplicates d "
            "JOIN videos vo ON d.original_video_id = vo.id "
            "JOIN videos vd ON d.duplicate_video_id = vd.id "
            "LEFT JOIN playlists po ON vo.playlist_id = po.id "
            "LEFT JOIN playlists pd ON vd.playlist_id = pd.id "
        )
        if not include_ignored:
            query += "WHERE d.ignored_by_user = 0 "
        query += "ORDER BY d.similarity_score DESC, vo.title"
        return self._fetchall(query)

    def _set_duplicate_flag(self, column: str, original_id: VideoId, duplicate_id: VideoId) -> bool:
        original, duplicate = sorted((int(original_id), int(duplicate_id)))
        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE video_duplicates SET {column} = 1 WHERE original_video_id = ? AND duplicate_video_id = ?",
                (original, duplicate))
            return cursor.rowcount > 0

    def ignore_duplicate(self, original_id: VideoId, duplicate_id: VideoId) -> bool:
        return self._set_duplicate_flag('ignored_by_user', original_id, duplicate_id)

    def confirm_duplicate(self, original_id: VideoId, duplicate_id: VideoId) -> bool:
        return self._set_duplicate_flag('confirmed_by_user', original_id, duplicate_id)

    def get_duplicate_stats(self) -> Dict[str, int]:
        total_videos = self._fetchone("SELECT COUNT(*) AS count FROM videos")['count']
        groups = self._fetchone(
            "SELECT COUNT(DISTINCT original_video_id) AS count FROM video_duplicates WHERE ignored_by_user = 0")['count']
        duplicates = self._fetchone(
            "SELECT COUNT(*) AS count FROM video_duplicates WHERE ignored_by_user = 0")['count']
        reclaimable = self._fetchone(
            "SELECT COALESCE(SUM(v.file_size), 0) AS size FROM videos v "
            "JOIN video_duplicates d ON v.id = d.duplicate_video_id "
            "WHERE d.ignored_by_user = 0 AND v.downloaded = 1")['size']
        return {
            'total_videos': total_videos,
            'duplicate_groups': groups,
            'total_duplicates': duplicates,
            'potential_savings': reclaimable,
        }
