"""Builds command lines for yt-dlp and ffmpeg and manages their child processes."""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from pathlib import Path
from typing import Dict, Any, AsyncIterator, List, Optional

from .constants import SUBPROCESS_CREATION_FLAGS, TEMP_DOWNLOAD_DIR, TOOL_NAMES
from .exceptions import ToolUnavailable
from .jobs import Job, JobKind
from .presets import get_preset

PROGRESS_TEMPLATE = 'download:PROGRESS::%(progress._percent_str)s::%(progress.eta)s'


def format_selector(quality: str, container: str, format_id: Optional[str] = None) -> str:
    """
    Maps a quality choice ('best', 'audio', '720p', '1080') and a container
    extension to a yt-dlp format selector.

    A `format_id` picked from `URLInfoExtractor.get_formats` wins over the
    quality. Video-only formats are paired with the best audio; the bare id is
    the fallback for formats that already carry sound.
    """
    if format_id:
        if quality.lower() == 'audio':
            return format_id
        return f'{format_id}+bestaudio/{format_id}'
    quality = quality.lower()
    if quality == 'audio':
        return 'bestaudio/best'
    audio_ext = 'm4a' if container == 'mp4' else container
    if quality == 'best':
        return f'bestvideo[ext={container}]+bestaudio[ext={audio_ext}]/best[ext={container}]/best'
    height = quality.rstrip('p')
    return (f'bestvideo[height<={height}][ext={container}]+bestaudio[ext={audio_ext}]'
            f'/best[height<={height}][ext={container}]/best[height<={height}]/best')


class ProcessHandle:
    """
    Wraps a running child process.

    Exposes stdout and stderr as async iterators of decoded lines, the exit code
    through `wait()`, and the underlying process for signalling.
    """
    def __init__(self, process: asyncio.subprocess.Process, argv: List[str]):
        self.process = process
        self.argv = argv

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def _lines(self, stream: Optional[asyncio.StreamReader]) -> AsyncIterator[str]:
        if stream is None:
            return
        while True:
            line_bytes = await stream.readline()
            if not line_bytes:
                break
            # ffmpeg ends its stats lines with '\r'
            for part in line_bytes.decode('utf-8', 'replace').replace('\r', '\n').splitlines():
                if part.strip():
                    yield part.rstrip()

    def stdout_lines(self) -> AsyncIterator[str]:
        return self._lines(self.process.stdout)

    def stderr_lines(self) -> AsyncIterator[str]:
        return self._lines(self.process.stderr)

    async def wait(self) -> int:
        return await self.process.wait()

    def interrupt(self):
        """Asks the process (and its process group) to stop."""
        if sys.platform == 'win32':
            self.process.send_signal(signal.CTRL_C_EVENT)
        else:
            os.killpg(os.getpgid(self.process.pid), signal.SIGINT)

    def kill(self):
        self.process.kill()


class ToolAdapter:
    """Translates jobs into yt-dlp/ffmpeg invocations and owns process lifecycles."""
    def __init__(self, yt_dlp_path: Optional[Path] = None, ffmpeg_path: Optional[Path] = None,
                 temp_dir: Path = TEMP_DOWNLOAD_DIR):
        """
        Initializes the ToolAdapter.

        Args:
            yt_dlp_path: Path to the yt-dlp executable, if known.
            ffmpeg_path: Path to the ffmpeg executable, if known.
            temp_dir: Directory yt-dlp uses for partial downloads.
        """
        self.logger = logging.getLogger(__name__)
        self.temp_dir = temp_dir
        self._paths: Dict[JobKind, Optional[Path]] = {
            JobKind.DOWNLOAD: yt_dlp_path,
            JobKind.CONVERSION: ffmpeg_path,
        }

    def tool_path(self, kind: JobKind) -> Optional[Path]:
        return self._paths[JobKind(kind)]

    def set_tool_path(self, kind: JobKind, path: Optional[Path]):
        self._paths[JobKind(kind)] = path

    def build_arguments(self, job: Job) -> List[str]:
        """Builds the full argument vector for a job. Performs no I/O."""
        if job.kind is JobKind.DOWNLOAD:
            return self._build_yt_dlp_command(job)
        return self._build_ffmpeg_command(job)

    def _executable(self, kind: JobKind) -> str:
        path = self._paths[kind]
        return str(path) if path else TOOL_NAMES[kind.value]

    def _build_yt_dlp_command(self, job: Job) -> List[str]:
        spec = job.spec
        output_path_template = Path(spec.destination) / spec.filename_template
        command = [self._executable(JobKind.DOWNLOAD), '--newline', '--no-colors',
                   '--progress-template', PROGRESS_TEMPLATE, '--no-mtime',
                   '--paths', f'temp:{self.temp_dir}', '-o', str(output_path_template)]
        ffmpeg_path = self._paths[JobKind.CONVERSION]
        if ffmpeg_path: command.extend(['--ffmpeg-location', str(ffmpeg_path.parent)])

        command.extend(['-f', format_selector(spec.quality, spec.format, spec.format_id)])
        if spec.quality == 'audio':
            command.append('-x')
            if spec.format in ('mp3', 'm4a', 'opus', 'flac', 'wav', 'aac'):
                command.extend(['--audio-format', spec.format])
                if spec.format == 'mp3': command.extend(['--audio-quality', '192K'])
        else:
            command.extend(['--merge-output-format', spec.format])
        if spec.embed_thumbnail: command.append('--embed-thumbnail')
        if spec.embed_metadata: command.append('--embed-metadata')
        # '--' keeps a URL starting with '-' from being read as an option
        command.extend(['--', spec.source])
        return command

    def _build_ffmpeg_command(self, job: Job) -> List[str]:
        spec = job.spec
        preset = get_preset(spec.preset)
        command = [self._executable(JobKind.CONVERSION), '-hide_banner', '-nostdin', '-y', '-i', spec.source]
        command.extend(preset.to_arguments())
        command.extend(['-progress', 'pipe:1', '-nostats', spec.destination])
        return command

    async def spawn(self, kind: JobKind, argv: List[str]) -> ProcessHandle:
        """
        Starts a tool as a child process, without a shell.

        Raises:
            ToolUnavailable: If the executable is missing or cannot be executed.
        """
        tool_name = TOOL_NAMES[JobKind(kind).value]
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['start_new_session'] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except FileNotFoundError:
            self.logger.error(f"{tool_name} executable not found at: {argv[0]}")
            raise ToolUnavailable(JobKind(kind).value, f"{tool_name} executable not found: {argv[0]}")
        except PermissionError:
            self.logger.error(f"{tool_name} at {argv[0]} is not executable.")
            raise ToolUnavailable(JobKind(kind).value, f"{tool_name} is not executable: {argv[0]}")
        except OSError as e:
            self.logger.error(f"OS error starting {tool_name}: {e}")
            raise ToolUnavailable(JobKind(kind).value, f"Could not start {tool_name}: {e}")

        self.logger.debug(f"Started {tool_name} (PID: {process.pid}): {argv}")
        return ProcessHandle(process, argv)

    async def terminate(self, handle: ProcessHandle, grace: float):
        """Asks the process to stop and kills it if it is still alive after `grace` seconds."""
        if handle.returncode is not None:
            return
        self.logger.info(f"Terminating process (PID: {handle.pid})...")
        try:
            handle.interrupt()
            await asyncio.wait_for(handle.wait(), timeout=grace)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown of PID {handle.pid} failed: {e!r}. Forcing termination...")
            try: handle.kill()
            except (ProcessLookupError, OSError): pass # Already gone
