"""
Shared pytest fixtures for the playlist manager test suite.

The external tools are replaced by `FakeProcessHandle`, which the tests drive
by pushing output lines and choosing the exit code, so no yt-dlp or ffmpeg
binary is needed.
"""

import asyncio
import itertools
from pathlib import Path
from typing import List, Optional

import pytest

from playlist_manager.datastore import Database
from playlist_manager.exceptions import ToolUnavailable
from playlist_manager.jobs import JobKind
from playlist_manager.tools import ToolAdapter

_pids = itertools.count(1000)


class FakeProcessHandle:
    """Stands in for a running child process."""

    def __init__(self, kind: JobKind, argv: List[str], exit_on_interrupt: bool = True):
        self.kind = kind
        self.argv = argv
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.exit_on_interrupt = exit_on_interrupt
        self.interrupted = False
        self.killed = False
        self._stdout: asyncio.Queue = asyncio.Queue()
        self._stderr: asyncio.Queue = asyncio.Queue()
        self._exited = asyncio.Event()

    def emit_stdout(self, *lines: str):
        for line in lines:
            self._stdout.put_nowait(line)

    def emit_stderr(self, *lines: str):
        for line in lines:
            self._stderr.put_nowait(line)

    def exit(self, code: int = 0):
        if self.returncode is not None:
            return
        self.returncode = code
        self._stdout.put_nowait(None)
        self._stderr.put_nowait(None)
        self._exited.set()

    async def _lines(self, stream: asyncio.Queue):
        while True:
            line = await stream.get()
            if line is None:
                return
            yield line

    def stdout_lines(self):
        return self._lines(self._stdout)

    def stderr_lines(self):
        return self._lines(self._stderr)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def interrupt(self):
        self.interrupted = True
        if self.exit_on_interrupt:
            self.exit(130)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakeAdapter(ToolAdapter):
    """A ToolAdapter that hands out FakeProcessHandles instead of spawning."""

    def __init__(self, temp_dir: Path = Path('/nonexistent-temp'), unavailable=(), exit_on_interrupt: bool = True):
        super().__init__(Path('/opt/tools/yt-dlp'), Path('/opt/tools/ffmpeg'), temp_dir=temp_dir)
        self.unavailable = {JobKind(kind) for kind in unavailable}
        self.exit_on_interrupt = exit_on_interrupt
        self.handles: List[FakeProcessHandle] = []
        self.spawn_attempts = 0

    async def spawn(self, kind, argv):
        self.spawn_attempts += 1
        kind = JobKind(kind)
        if kind in self.unavailable:
            raise ToolUnavailable(kind.value, f"{argv[0]} executable not found")
        handle = FakeProcessHandle(kind, argv, self.exit_on_interrupt)
        self.handles.append(handle)
        return handle


async def settle(rounds: int = 50):
    """Lets monitor and background tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def finish_all(manager, adapter, code: int = 0):
    """Exits every fake process, including ones promoted along the way, and waits for the queue."""
    while any(not job.is_terminal for job in manager.list_jobs()):
        for handle in list(adapter.handles):
            handle.exit(code)
        await settle()
    await manager.join()


def download_spec(url: str = "https://www.youtube.com/watch?v=dQw4w9WgXcQ", destination: str = "/tmp/videos", **extra):
    return {'kind': 'download', 'source': url, 'destination': destination, 'quality': 'best', **extra}


def conversion_spec(source: str = "/tmp/in.mkv", destination: str = "/tmp/out.mp4", preset: str = 'balanced', **extra):
    return {'kind': 'conversion', 'source': source, 'destination': destination, 'preset': preset, **extra}


@pytest.fixture
def database():
    db = Database(':memory:')
    yield db
    db.close()


@pytest.fixture
def populated_database(database):
    """Two playlists sharing one video, plus a near-identical title."""
    first = database.add_playlist("Favourites", source_id="PL1", source_url="https://www.youtube.com/playlist?list=PL1")
    second = database.add_playlist("Music", source_id="PL2", source_url="https://www.youtube.com/playlist?list=PL2")
    database.add_video("Never Gonna Give You Up", "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
                       playlist_id=first, video_id="dQw4w9WgXcQ", position=0)
    database.add_video("Some Other Song", "https://www.youtube.com/watch?v=aaaaaaaaaaa",
                       playlist_id=first, video_id="aaaaaaaaaaa", position=1)
    database.add_video("Never Gonna Give You Up", "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
                       playlist_id=second, video_id="dQw4w9WgXcQ", position=0)
    database.add_video("Never Gonna Give You Up!!", "https://www.youtube.com/watch?v=bbbbbbbbbbb",
                       playlist_id=second, video_id="bbbbbbbbbbb", position=1)
    return database
