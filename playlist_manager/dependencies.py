"""Locates, versions, and installs the yt-dlp and FFmpeg binaries."""
import sys
import shutil
import asyncio
import urllib.parse
import zipfile
import tarfile
import tempfile
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import aiofiles

from .constants import (
    YT_DLP_URLS, FFMPEG_URLS, REQUEST_HEADERS, APP_PATH, BIN_DIR, SUBPROCESS_CREATION_FLAGS
)
from .exceptions import DownloadCancelledError

ProgressCallback = Callable[[Dict[str, Any]], Awaitable[None]]


def _executable_name(name: str) -> str:
    return f'{name}.exe' if sys.platform == 'win32' else name


class DependencyManager:
    """
    Finds the external tools and keeps a managed copy of them in the user's
    data directory.

    Lookup order is: configured override, managed `bin/` directory, the
    application directory, then `PATH`.
    """
    DOWNLOAD_RETRY_ATTEMPTS = 3
    READ_CHUNK_SIZE = 64 * 1024

    def __init__(self, yt_dlp_override: Optional[Path] = None, ffmpeg_override: Optional[Path] = None,
                 bin_dir: Path = BIN_DIR, progress_callback: Optional[ProgressCallback] = None):
        """
        Initializes the DependencyManager.

        Args:
            yt_dlp_override: Path configured by the user for yt-dlp.
            ffmpeg_override: Path configured by the user for ffmpeg.
            bin_dir: Directory that holds downloaded binaries.
            progress_callback: Async function receiving install progress dicts.
        """
        self.logger = logging.getLogger(__name__)
        self.overrides = {'yt-dlp': yt_dlp_override, 'ffmpeg': ffmpeg_override}
        self.bin_dir = bin_dir
        self.progress_callback = progress_callback
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Finds both tools without blocking the event loop."""
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_executable, 'yt-dlp'),
            asyncio.to_thread(self.find_executable, 'ffmpeg')
        )
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def find_executable(self, name: str) -> Optional[Path]:
        override = self.overrides.get(name)
        if override:
            if Path(override).is_file():
                return Path(override)
            self.logger.warning(f"Configured path for {name} does not exist: {override}")

        for directory in (self.bin_dir, APP_PATH):
            candidate = directory / _executable_name(name)
            if candidate.is_file():
                return candidate
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def _report(self, tool: str, text: str, value: Optional[float] = None):
        if self.progress_callback is None:
            return
        await self.progress_callback({'type': tool, 'text': text, 'value': value})

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Returns the first line of the tool's version output, or a short status text."""
        if not executable_path or not Path(executable_path).exists():
            return "Not found"
        command: List[str] = [str(executable_path)]
        command.append('-version' if 'ffmpeg' in Path(executable_path).name.lower() else '--version')

        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS
        try:
            process = await asyncio.create_subprocess_exec(
                *command, stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, **kwargs)
            try:
                stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)
            except asyncio.TimeoutError:
                process.kill()
                return "Version check timed out"
        except FileNotFoundError:
            return "Not found or no permission"
        except OSError:
            return "Cannot execute"

        if process.returncode != 0:
            return "Cannot execute"
        lines = stdout_bytes.decode('utf-8', 'replace').strip().splitlines()
        return lines[0] if lines else "Unknown version"

    async def get_versions(self) -> Dict[str, Dict[str, Optional[str]]]:
        yt_dlp_version, ffmpeg_version = await asyncio.gather(
            self.get_version(self.yt_dlp_path), self.get_version(self.ffmpeg_path))
        return {
            'yt-dlp': {'path': str(self.yt_dlp_path) if self.yt_dlp_path else None, 'version': yt_dlp_version},
            'ffmpeg': {'path': str(self.ffmpeg_path) if self.ffmpeg_path else None, 'version': ffmpeg_version},
        }

    async def _download(self, session: aiohttp.ClientSession, url: str, save_path: Path, tool: str):
        """Streams `url` into `save_path`, retrying with exponential backoff."""
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                async with session.get(url, headers=REQUEST_HEADERS,
                                       timeout=aiohttp.ClientTimeout(total=None, sock_read=60)) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('Content-Length', 0))
                    received = 0
                    await self._report(tool, f'Downloading {tool}...', 0.0 if total_size else None)
                    async with aiofiles.open(save_path, 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(self.READ_CHUNK_SIZE):
                            await f_out.write(chunk)
                            received += len(chunk)
                            if total_size:
                                text = f'Downloading... {received/1024/1024:.1f}/{total_size/1024/1024:.1f} MB'
                                await self._report(tool, text, received / total_size * 100)
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"Download of {tool} failed on attempt {attempt + 1}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1: await asyncio.sleep(2 ** attempt)
                else: raise

    async def install_yt_dlp(self) -> Dict[str, Any]:
        """Downloads the latest yt-dlp release into the managed bin directory."""
        platform = sys.platform
        if platform not in YT_DLP_URLS:
            return {'type': 'yt-dlp', 'success': False, 'error': f"Unsupported OS: {platform}"}
        save_path = self.bin_dir / _executable_name('yt-dlp')
        try:
            await asyncio.to_thread(self.bin_dir.mkdir, parents=True, exist_ok=True)
            async with aiohttp.ClientSession() as session:
                await self._download(session, YT_DLP_URLS[platform], save_path, 'yt-dlp')
            if platform != 'win32':
                await asyncio.to_thread(save_path.chmod, 0o755)
        except asyncio.CancelledError:
            self.logger.info("yt-dlp download cancelled.")
            raise DownloadCancelledError("Download cancelled by user.")
        except aiohttp.ClientError as e:
            return {'type': 'yt-dlp', 'success': False, 'error': f"Network error: {e}"}
        except OSError as e:
            return {'type': 'yt-dlp', 'success': False, 'error': f"File error: {e}"}

        self.yt_dlp_path = save_path
        self.logger.info(f"Installed yt-dlp at {save_path}")
        return {'type': 'yt-dlp', 'success': True, 'path': str(save_path)}

    async def install_ffmpeg(self) -> Dict[str, Any]:
        """Downloads an FFmpeg build archive and extracts the ffmpeg binary from it."""
        platform = sys.platform
        if platform not in FFMPEG_URLS:
            return {'type': 'ffmpeg', 'success': False, 'error': f"Unsupported OS: {platform}"}
        url = FFMPEG_URLS[platform]
        final_path = self.bin_dir / _executable_name('ffmpeg')

        with tempfile.TemporaryDirectory(prefix="ffmpeg-dl-") as temp_dir_str:
            temp_dir = Path(temp_dir_str)
            archive_path = temp_dir / Path(urllib.parse.unquote(url)).name
            extract_dir = temp_dir / "extracted"
            try:
                await asyncio.to_thread(self.bin_dir.mkdir, parents=True, exist_ok=True)
                async with aiohttp.ClientSession() as session:
                    await self._download(session, url, archive_path, 'ffmpeg')

                await self._report('ffmpeg', 'Extracting FFmpeg...')
                await asyncio.to_thread(self._extract_archive, archive_path, extract_dir)
                found = list(extract_dir.rglob(final_path.name))
                if not found:
                    raise FileNotFoundError(f"Could not find '{final_path.name}' in archive.")
                await asyncio.to_thread(shutil.move, str(found[0]), str(final_path))
                if platform != 'win32':
                    await asyncio.to_thread(final_path.chmod, 0o755)
            except asyncio.CancelledError:
                self.logger.info("FFmpeg download cancelled.")
                raise DownloadCancelledError("Download cancelled by user.")
            except aiohttp.ClientError as e:
                return {'type': 'ffmpeg', 'success': False, 'error': f"Network error: {e}"}
            except (zipfile.BadZipFile, tarfile.ReadError) as e:
                return {'type': 'ffmpeg', 'success': False, 'error': f"Archive error: {e}"}
            except FileNotFoundError as e:
                return {'type': 'ffmpeg', 'success': False, 'error': str(e)}
            except OSError as e:
                return {'type': 'ffmpeg', 'success': False, 'error': f"File error: {e}"}

        self.ffmpeg_path = final_path
        self.logger.info(f"Installed FFmpeg at {final_path}")
        return {'type': 'ffmpeg', 'success': True, 'path': str(final_path)}

    @staticmethod
    def _extract_archive(archive_path: Path, extract_dir: Path):
        extract_dir.mkdir(exist_ok=True)
        if archive_path.suffix == '.zip':
            with zipfile.ZipFile(archive_path, 'r') as archive:
                archive.extractall(extract_dir)
        elif archive_path.name.endswith('.tar.xz'):
            with tarfile.open(archive_path, 'r:xz') as archive:
                archive.extractall(path=extract_dir)
        else:
            raise tarfile.ReadError(f"Unsupported archive format: {archive_path.name}")
