"""
Turns the human-readable output of yt-dlp and ffmpeg into progress updates.

Neither tool offers a structured progress API, so this module keeps a table of
known line shapes and returns `None` for everything else. Percent values are
monotonic within a phase; a new phase is only ever started by a marker line
(e.g. a new `[download] Destination:`), never by a smaller number.
"""

import re
import math
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_CLOCK_RE = re.compile(r'^(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)$')
_BARE_PERCENT_RE = re.compile(r'^(\d+(?:\.\d+)?)%$')

# --- yt-dlp ---
_TEMPLATE_PREFIX = 'PROGRESS::'
_DOWNLOAD_PERCENT_RE = re.compile(r'^\[download\]\s+(\d+(?:\.\d+)?)%')
_ETA_RE = re.compile(r'\bETA\s+(\S+)')
_SPEED_RE = re.compile(r'\bat\s+(\S+/s)\b')
_DESTINATION_RE = re.compile(r'^\[download\] Destination:\s*(.+)$')
_ALREADY_DOWNLOADED_RE = re.compile(r'^\[download\]\s+(.+?) has already been downloaded')
_MERGER_RE = re.compile(r'^\[Merger\] Merging formats into "(.+)"$')
_EXTRACT_AUDIO_RE = re.compile(r'^\[ExtractAudio\] Destination:\s*(.+)$')
_MOVE_FILES_RE = re.compile(r'^\[MoveFiles\] Moving file "(.+)" to "(.+)"$')
_POSTPROCESSOR_RE = re.compile(r'^\[(\w+)\]')
POSTPROCESSOR_PHASES = {
    'embedthumbnail': 'embedding_thumbnail',
    'metadata': 'writing_metadata',
    'fixupm4a': 'fixing_m4a',
    'videoconvertor': 'converting',
}

# --- ffmpeg ---
_DURATION_RE = re.compile(r'^\s*Duration:\s*(\d+:\d{2}:\d{2}(?:\.\d+)?)')
_KEY_VALUE_RE = re.compile(r'^(out_time|out_time_us|out_time_ms|speed|progress)=(.*)$')
_STATS_TIME_RE = re.compile(r'\btime=\s*(\S+)')
_STATS_SPEED_RE = re.compile(r'\bspeed=\s*(\S+?)x')


def parse_time_string(value: Optional[str]) -> Optional[float]:
    """
    Converts `H:MM:SS`, `MM:SS`, or plain (fractional) seconds into seconds.

    Returns None for anything else, including negative and non-finite values and
    clock fields of 60 or more below the leading one.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if match := _CLOCK_RE.match(text):
        hours, minutes, seconds = match.group(1), int(match.group(2)), float(match.group(3))
        if seconds >= 60 or (hours is not None and minutes >= 60):
            return None
        return int(hours or 0) * 3600 + minutes * 60 + seconds
    try:
        seconds = float(text)
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


def parse_percent(value: Optional[str]) -> Optional[float]:
    """Parses '45.3%' or '45.3' into a float clamped to [0, 100]."""
    if value is None:
        return None
    try:
        percent = float(str(value).strip().rstrip('%').strip())
    except ValueError:
        return None
    if math.isnan(percent):
        return None
    return min(100.0, max(0.0, percent))


def _parse_speed_factor(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        factor = float(value.strip().rstrip('x'))
    except ValueError:
        return None
    return factor if math.isfinite(factor) and factor > 0 else None


@dataclass
class ProgressState:
    """
    Per-job parser memory. One instance follows one child process.

    Attributes:
        phase: Name of the current phase.
        last_percent: Highest percent seen in the current phase.
        total_duration: Media duration reported by ffmpeg, in seconds.
        position: Last ffmpeg output position, in seconds.
        speed_factor: Last ffmpeg encoding speed (1.0 == realtime).
        output_file: Latest destination file reported by the tool.
    """
    phase: str = 'download'
    last_percent: float = 0.0
    total_duration: Optional[float] = None
    position: Optional[float] = None
    speed_factor: Optional[float] = None
    output_file: Optional[str] = None


@dataclass(frozen=True)
class ProgressUpdate:
    """A normalized progress record. Unknown fields are None."""
    phase: str
    percent: Optional[float] = None
    eta_seconds: Optional[float] = None
    speed: Optional[str] = None
    phase_started: bool = False


class ProgressParser:
    """Parses one line at a time against the known yt-dlp and ffmpeg formats."""

    def parse_line(self, line: str, state: ProgressState) -> Optional[ProgressUpdate]:
        """
        Parses a single output line.

        Args:
            line: A raw line of tool output (trailing whitespace is ignored).
            state: The parser state of the job the line belongs to. Updated in place.

        Returns:
            A ProgressUpdate, or None when the line carries no progress information.
        """
        clean_line = line.strip()
        if not clean_line:
            return None

        if match := _BARE_PERCENT_RE.match(clean_line):
            return self._update(state, parse_percent(match.group(1)))
        if clean_line.startswith(_TEMPLATE_PREFIX):
            return self._parse_template(clean_line, state)
        if clean_line.startswith('['):
            return self._parse_yt_dlp(clean_line, state)

        if match := _KEY_VALUE_RE.match(clean_line):
            return self._parse_ffmpeg_key(match.group(1), match.group(2).strip(), state)
        if match := _DURATION_RE.match(clean_line):
            state.total_duration = parse_time_string(match.group(1)) or state.total_duration
            return None
        if 'time=' in clean_line and ('frame=' in clean_line or 'size=' in clean_line):
            return self._parse_ffmpeg_stats(clean_line, state)
        return None

    def start_phase(self, state: ProgressState, phase: str, reset: bool = True) -> ProgressUpdate:
        """
        Begins a new phase. With `reset`, the phase starts at 0%; otherwise the
        phase reports no percent of its own.
        """
        state.phase = phase
        state.last_percent = 0.0
        logger.debug(f"Progress phase started: {phase}")
        return ProgressUpdate(phase=phase, percent=0.0 if reset else None, phase_started=True)

    def _update(self, state: ProgressState, percent: Optional[float], eta: Optional[float] = None,
                speed: Optional[str] = None) -> Optional[ProgressUpdate]:
        if percent is not None:
            percent = min(100.0, max(0.0, percent))
            if percent < state.last_percent:
                logger.debug(f"Discarding regressing percent {percent} < {state.last_percent} in phase {state.phase}")
                percent = None
            else:
                state.last_percent = percent
        if percent is None and eta is None and speed is None:
            return None
        return ProgressUpdate(phase=state.phase, percent=percent, eta_seconds=eta, speed=speed)

    def _parse_template(self, line: str, state: ProgressState) -> Optional[ProgressUpdate]:
        # PROGRESS::<percent>::<eta seconds>
        parts = line.split('::')
        percent = parse_percent(parts[1]) if len(parts) > 1 else None
        eta = parse_time_string(parts[2]) if len(parts) > 2 else None
        return self._update(state, percent, eta)

    def _parse_yt_dlp(self, line: str, state: ProgressState) -> Optional[ProgressUpdate]:
        if match := _DOWNLOAD_PERCENT_RE.match(line):
            eta_match = _ETA_RE.search(line)
            speed_match = _SPEED_RE.search(line)
            return self._update(
                state,
                parse_percent(match.group(1)),
                parse_time_string(eta_match.group(1)) if eta_match else None,
                speed_match.group(1) if speed_match else None,
            )
        if match := _DESTINATION_RE.match(line):
            state.output_file = match.group(1).strip()
            return self.start_phase(state, 'download')
        if match := _ALREADY_DOWNLOADED_RE.match(line):
            state.output_file = match.group(1).strip()
            return self._update(state, 100.0, 0.0)
        if match := _MERGER_RE.match(line):
            state.output_file = match.group(1)
            return self.start_phase(state, 'merging', reset=False)
        if match := _EXTRACT_AUDIO_RE.match(line):
            state.output_file = match.group(1).strip()
            return self.start_phase(state, 'extracting_audio', reset=False)
        if match := _MOVE_FILES_RE.match(line):
            state.output_file = match.group(2)
            return self.start_phase(state, 'finalizing', reset=False)
        if match := _POSTPROCESSOR_RE.match(line):
            phase = POSTPROCESSOR_PHASES.get(match.group(1).lower())
            if phase and phase != state.phase:
                return self.start_phase(state, phase, reset=False)
        return None

    def _estimate(self, state: ProgressState) -> tuple:
        """Returns (percent, eta) from the ffmpeg position, duration, and speed."""
        if state.position is None or not state.total_duration:
            return None, None
        percent = state.position / state.total_duration * 100
        eta = None
        if state.speed_factor:
            eta = max(0.0, state.total_duration - state.position) / state.speed_factor
        return percent, eta

    def _parse_ffmpeg_key(self, key: str, value: str, state: ProgressState) -> Optional[ProgressUpdate]:
        if key == 'out_time':
            state.position = parse_time_string(value)
        elif key in ('out_time_us', 'out_time_ms'):
            # ffmpeg reports both keys in microseconds
            try:
                micros = int(value)
            except ValueError:
                micros = -1
            if micros >= 0:
                state.position = micros / 1_000_000
        elif key == 'speed':
            state.speed_factor = _parse_speed_factor(value)
        elif key == 'progress':
            if value == 'end':
                return self._update(state, 100.0, 0.0)
            percent, eta = self._estimate(state)
            speed = f"{state.speed_factor:g}x" if state.speed_factor else None
            return self._update(state, percent, eta, speed)
        return None

    def _parse_ffmpeg_stats(self, line: str, state: ProgressState) -> Optional[ProgressUpdate]:
        time_match = _STATS_TIME_RE.search(line)
        speed_match = _STATS_SPEED_RE.search(line)
        if time_match:
            state.position = parse_time_string(time_match.group(1))
        if speed_match:
            state.speed_factor = _parse_speed_factor(speed_match.group(1))
        percent, eta = self._estimate(state)
        speed = f"{state.speed_factor:g}x" if state.speed_factor else None
        return self._update(state, percent, eta, speed)
