"""
Defines the job data model: the validated enqueue request and the queued job.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .presets import PRESETS


class JobKind(str, Enum):
    DOWNLOAD = "download"
    CONVERSION = "conversion"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.ACTIVE, JobStatus.PAUSED, JobStatus.CANCELLED}),
    JobStatus.PAUSED: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

QUALITY_PATTERN = re.compile(r'^(best|audio|\d{3,4}p?)$', re.IGNORECASE)
FORMAT_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,40}$')


class JobSpec(BaseModel):
    """
    A request to queue one download or one conversion.

    For downloads `source` is a URL and `destination` the output directory; for
    conversions `source` is the input file and `destination` the output file.
    """
    model_config = ConfigDict(frozen=True)

    kind: JobKind
    source: str
    destination: str
    quality: str = 'best'
    format: str = 'mp4'
    format_id: Optional[str] = None
    preset: Optional[str] = None
    filename_template: str = '%(title).100s [%(id)s].%(ext)s'
    embed_metadata: bool = True
    embed_thumbnail: bool = False
    title: Optional[str] = None
    video_id: Optional[str] = None

    @field_validator('source', 'destination')
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator('quality')
    @classmethod
    def validate_quality(cls, value: str) -> str:
        if not QUALITY_PATTERN.match(value.strip()):
            raise ValueError("must be 'best', 'audio', or a height such as '720p'")
        return value.strip().lower()

    @field_validator('format')
    @classmethod
    def validate_format(cls, value: str) -> str:
        if not re.fullmatch(r'[A-Za-z0-9]{2,5}', value.strip()):
            raise ValueError("must be a container extension such as 'mp4'")
        return value.strip().lower()

    @field_validator('format_id')
    @classmethod
    def validate_format_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        if not FORMAT_ID_PATTERN.match(value.strip()):
            raise ValueError("must be a yt-dlp format id such as '137' or 'hls-720p'")
        return value.strip()

    @model_validator(mode='after')
    def validate_preset(self) -> 'JobSpec':
        if self.kind is JobKind.CONVERSION:
            if not self.preset:
                raise ValueError("a conversion requires a preset")
            if self.preset not in PRESETS:
                raise ValueError(f"unknown preset '{self.preset}'. Known presets: {', '.join(PRESETS)}")
        return self


@dataclass
class Job:
    """
    Represents a single unit of queued work.

    Attributes:
        job_id: A unique identifier for the job.
        spec: The validated request the job was created from.
        status: The current lifecycle status.
        progress: Percent complete of the current phase, in [0, 100].
        phase: The phase of the underlying process (e.g. "download", "merging").
        eta_seconds: Estimated seconds remaining, when the tool reports one.
        title: Display title; refined from the tool output once known.
        output_file: The file the tool reported writing.
        error_message: Human-readable reason for a failure.
    """
    job_id: str
    spec: JobSpec
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    phase: str = "queued"
    eta_seconds: Optional[float] = None
    title: str = "Waiting for title..."
    output_file: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def kind(self) -> JobKind:
        return self.spec.kind

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: JobStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def snapshot(self) -> 'Job':
        """Returns a detached copy safe to hand to listeners."""
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'kind': self.kind.value,
            'source': self.spec.source,
            'destination': self.spec.destination,
            'status': self.status.value,
            'progress': round(self.progress, 1),
            'phase': self.phase,
            'eta_seconds': self.eta_seconds,
            'title': self.title,
            'video_id': self.spec.video_id,
            'output_file': self.output_file,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
