"""
Defines custom exceptions used throughout the application.

Every error raised by the core derives from `PlaylistManagerError` so that the
message bridge can turn it into a structured error response.
"""

class PlaylistManagerError(Exception):
    """Base class for all application errors."""
    pass

class InvalidJobSpec(PlaylistManagerError):
    """Raised when an enqueue request is malformed. No job is created."""
    pass

class ToolUnavailable(PlaylistManagerError):
    """Raised when an external tool binary cannot be spawned."""
    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind

class JobFailed(PlaylistManagerError):
    """Describes a child process that exited with a non-zero status."""
    def __init__(self, job_id: str, exit_code: int, message: str):
        super().__init__(message)
        self.job_id = job_id
        self.exit_code = exit_code

class UnsupportedOperation(PlaylistManagerError):
    """Raised when an operation is requested in a status that does not allow it."""
    pass

class JobNotFound(PlaylistManagerError):
    """Raised when a job id is not known to the queue manager."""
    pass

class DownloadCancelledError(PlaylistManagerError):
    """Custom exception for cancelled downloads."""
    pass

class URLExtractionError(PlaylistManagerError):
    """Custom exception for URL processing failures."""
    pass

class DatastoreError(PlaylistManagerError):
    """Raised when a datastore write refers to a missing row."""
    pass

class ExportError(PlaylistManagerError):
    """Raised when an export cannot be written or a backup file cannot be read."""
    pass
