"""
Provides methods to extract information from URLs using yt-dlp.
"""

import asyncio
import sys
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import URLExtractionError, DownloadCancelledError
from .constants import SUBPROCESS_CREATION_FLAGS


class URLInfoExtractor:
    """
    Provides methods to extract information from URLs using yt-dlp.

    Playlist and video metadata are read from yt-dlp's JSON dump.
    """
    def __init__(self, yt_dlp_path: Optional[Path] = None):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable. Defaults to 'yt-dlp' on PATH.
        """
        self.yt_dlp_path = yt_dlp_path
        self.logger = logging.getLogger(__name__)

    @property
    def executable(self) -> str:
        return str(self.yt_dlp_path) if self.yt_dlp_path else 'yt-dlp'

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr or not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str], timeout: int) -> Tuple[str, str]:
        """
        Runs a yt-dlp command to completion and captures its output.

        Args:
            command: The command and its arguments as a list of strings.
            timeout: The timeout in seconds for the command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            URLExtractionError: On any failure (e.g., timeout, non-zero exit code).
            DownloadCancelledError: If the task is cancelled.
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {command[0]}")
            raise URLExtractionError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise URLExtractionError("URL processing command timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise URLExtractionError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process: process.kill()
            raise DownloadCancelledError("URL processing cancelled.")

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp command failed for '{command[-1]}'. Stderr: {stderr.strip()}")
            raise URLExtractionError(error_msg)

        return stdout, stderr

    def _load_json(self, stdout: str, url: str) -> Dict[str, Any]:
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            self.logger.error(f"yt-dlp returned invalid JSON for '{url}': {e}")
            raise URLExtractionError("yt-dlp returned unreadable metadata.")
        if not isinstance(data, dict):
            raise URLExtractionError("yt-dlp returned unexpected metadata.")
        return data

    async def get_playlist_info(self, url: str) -> Dict[str, Any]:
        """
        Reads a playlist's metadata and its flat list of entries.

        Args:
            url: A playlist or channel URL.

        Returns:
            The yt-dlp JSON document. `entries` is always a list with `None`
            entries (deleted or private videos) removed.

        Raises:
            DownloadCancelledError: If the task is cancelled.
            URLExtractionError: If yt-dlp fails or returns unusable output.
        """
        command = [self.executable, '--flat-playlist', '-J', '--no-warnings', '--', url]
        stdout, _ = await self._run_command(command, timeout=120)
        data = self._load_json(stdout, url)
        data['entries'] = [entry for entry in (data.get('entries') or []) if isinstance(entry, dict)]
        self.logger.info(f"Fetched playlist '{data.get('title')}' with {len(data['entries'])} entries.")
        return data

    async def get_video_info(self, url: str) -> Dict[str, Any]:
        """Reads the metadata of a single video without downloading it."""
        command = [self.executable, '-J', '--no-playlist', '--no-warnings', '--', url]
        stdout, _ = await self._run_command(command, timeout=60)
        return self._load_json(stdout, url)

    async def get_formats(self, url: str) -> Dict[str, Any]:
        """
        Lists the formats a single video can be downloaded in.

        Returns:
            The video's id and title plus its formats grouped into `combined`
            (video with audio), `video_only` and `audio_only`, each sorted best
            first, and the ids of the best format in each group.

        Raises:
            URLExtractionError: If yt-dlp fails or reports no usable formats.
        """
        info = await self.get_video_info(url)
        grouped = categorize_formats(info.get('formats') or [])
        if not any(grouped[group] for group in FORMAT_GROUPS):
            raise URLExtractionError("No downloadable formats were found for this URL.")
        self.logger.info(
            f"Found {sum(len(grouped[group]) for group in FORMAT_GROUPS)} format(s) for '{info.get('title')}'.")
        return {'id': info.get('id'), 'title': info.get('title'), 'duration': info.get('duration'), **grouped}


FORMAT_GROUPS = ('combined', 'video_only', 'audio_only')


def _has_codec(codec: Optional[str]) -> bool:
    return bool(codec) and codec != 'none'


def format_display_name(fmt: Dict[str, Any]) -> str:
    """Builds a short label such as '1080p | 60fps | MP4 | avc1 | video only | 120MB'."""
    has_video, has_audio = _has_codec(fmt.get('vcodec')), _has_codec(fmt.get('acodec'))
    parts = []
    if fmt.get('height'):
        parts.append(f"{fmt['height']}p")
    elif fmt.get('resolution') and fmt['resolution'] != 'audio only':
        parts.append(fmt['resolution'])
    if fmt.get('fps') and fmt['fps'] > 30:
        parts.append(f"{fmt['fps']:g}fps")
    if fmt.get('ext'):
        parts.append(fmt['ext'].upper())
    if has_video:
        codec = fmt['vcodec'].split('.')[0]
        if codec and codec != 'unknown':
            parts.append(codec)
        if not has_audio:
            parts.append('video only')
        elif fmt.get('tbr'):
            parts.append(f"{round(fmt['tbr'])}k")
    elif has_audio:
        parts.append('audio only')
        if fmt.get('abr'):
            parts.append(f"{round(fmt['abr'])}k")
    size = fmt.get('filesize') or fmt.get('filesize_approx')
    if size and size >= 1024 * 1024:
        parts.append(f"{round(size / (1024 * 1024))}MB")
    note = fmt.get('format_note')
    if note and not any(note.lower() in part.lower() for part in parts):
        parts.append(note)
    return ' | '.join(parts) or str(fmt.get('format_id'))


def _summarize(fmt: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'format_id': str(fmt['format_id']),
        'ext': fmt.get('ext'),
        'width': fmt.get('width'),
        'height': fmt.get('height'),
        'fps': fmt.get('fps'),
        'vcodec': fmt.get('vcodec'),
        'acodec': fmt.get('acodec'),
        'filesize': fmt.get('filesize') or fmt.get('filesize_approx'),
        'tbr': fmt.get('tbr'),
        'abr': fmt.get('abr'),
        'format_note': fmt.get('format_note'),
        'display_name': format_display_name(fmt),
    }


def _video_rank(fmt: Dict[str, Any]):
    return (fmt.get('height') or 0, fmt.get('vbr') or fmt.get('tbr') or 0)


def _audio_rank(fmt: Dict[str, Any]):
    return fmt.get('abr') or fmt.get('tbr') or 0


def categorize_formats(formats: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Splits yt-dlp's `formats` list by what each format carries.

    Entries with neither a video nor an audio codec (storyboards, manifests
    without codec info) and entries without a `format_id` are left out.
    """
    combined, video_only, audio_only = [], [], []
    for fmt in formats:
        if not isinstance(fmt, dict) or fmt.get('format_id') in (None, ''):
            continue
        has_video, has_audio = _has_codec(fmt.get('vcodec')), _has_codec(fmt.get('acodec'))
        if has_video and has_audio:
            combined.append(fmt)
        elif has_video:
            video_only.append(fmt)
        elif has_audio:
            audio_only.append(fmt)

    combined.sort(key=_video_rank, reverse=True)
    video_only.sort(key=_video_rank, reverse=True)
    audio_only.sort(key=_audio_rank, reverse=True)
    return {
        'combined': [_summarize(fmt) for fmt in combined],
        'video_only': [_summarize(fmt) for fmt in video_only],
        'audio_only': [_summarize(fmt) for fmt in audio_only],
        'best_combined': str(combined[0]['format_id']) if combined else None,
        'best_video': str(video_only[0]['format_id']) if video_only else None,
        'best_audio': str(audio_only[0]['format_id']) if audio_only else None,
    }
