"""
Built-in ffmpeg conversion presets.

Presets are immutable and defined once at import time; conversion jobs refer to
them by name.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Preset:
    """
    A named bundle of encoding parameters.

    A preset without `video_codec` strips the video stream (`-vn`); one without
    `audio_codec` strips audio (`-an`).
    """
    name: str
    label: str
    description: str
    container: str
    video_codec: Optional[str] = None
    crf: Optional[int] = None
    speed: Optional[str] = None
    profile: Optional[str] = None
    level: Optional[str] = None
    max_bitrate: Optional[str] = None
    buffer_size: Optional[str] = None
    scale: Optional[str] = None
    audio_codec: Optional[str] = None
    audio_bitrate: Optional[str] = None
    sample_rate: Optional[int] = None

    def to_arguments(self) -> List[str]:
        """Returns the ffmpeg codec flags for this preset, in a stable order."""
        args: List[str] = []
        if self.video_codec:
            args.extend(['-c:v', self.video_codec])
            if self.crf is not None: args.extend(['-crf', str(self.crf)])
            if self.speed: args.extend(['-preset', self.speed])
            if self.profile: args.extend(['-profile:v', self.profile])
            if self.level: args.extend(['-level', self.level])
            if self.max_bitrate: args.extend(['-maxrate', self.max_bitrate])
            if self.buffer_size: args.extend(['-bufsize', self.buffer_size])
            if self.scale: args.extend(['-vf', f'scale={self.scale}'])
        else:
            args.append('-vn')

        if self.audio_codec:
            args.extend(['-c:a', self.audio_codec])
            if self.audio_bitrate: args.extend(['-b:a', self.audio_bitrate])
            if self.sample_rate: args.extend(['-ar', str(self.sample_rate)])
        else:
            args.append('-an')
        return args

    def to_dict(self) -> Dict[str, object]:
        return {'name': self.name, 'label': self.label, 'description': self.description, 'container': self.container}


PRESETS: Dict[str, Preset] = {
    'high_quality': Preset(
        name='high_quality', label='High Quality', description='Best quality with larger file size',
        container='mp4', video_codec='libx264', crf=18, speed='slow', profile='high', level='4.1',
        audio_codec='aac', audio_bitrate='192k', sample_rate=48000,
    ),
    'balanced': Preset(
        name='balanced', label='Balanced', description='Good quality with reasonable file size',
        container='mp4', video_codec='libx264', crf=23, speed='medium', profile='high', level='4.0',
        audio_codec='aac', audio_bitrate='128k', sample_rate=44100,
    ),
    'web_optimized': Preset(
        name='web_optimized', label='Web Optimized', description='Optimized for web streaming',
        container='mp4', video_codec='libx264', crf=28, speed='fast', profile='baseline', level='3.1',
        max_bitrate='2000k', buffer_size='4000k',
        audio_codec='aac', audio_bitrate='96k', sample_rate=44100,
    ),
    'mobile_friendly': Preset(
        name='mobile_friendly', label='Mobile Friendly', description='Small file size for mobile devices',
        container='mp4', video_codec='libx264', crf=32, speed='fast', profile='baseline', level='3.0',
        scale='720:-2',
        audio_codec='aac', audio_bitrate='64k', sample_rate=22050,
    ),
    'audio_only': Preset(
        name='audio_only', label='Audio Only', description='Extract audio from video',
        container='mp3', audio_codec='libmp3lame', audio_bitrate='192k', sample_rate=44100,
    ),
}


def get_preset(name: str) -> Preset:
    """
    Looks up a preset by name.

    Raises:
        KeyError: If no preset has that name.
    """
    return PRESETS[name]
