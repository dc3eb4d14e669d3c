"""
Error types for the transcode service.

All errors inherit from TranscodeServiceError so callers at a seam (the HTTP
layer, the worker entrypoint) can catch the whole family at once.
"""

from typing import Iterable, Optional


class TranscodeServiceError(Exception):
    """Base exception for all transcode service failures."""
    pass


# --- Validation -------------------------------------------------------------


class ValidationError(TranscodeServiceError):
    """Raised when a request or configuration value is missing or invalid."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidPreset(ValidationError):
    """Raised when a quality preset name is unknown."""

    def __init__(self, preset_name: str, available: Iterable[str]):
        self.preset_name = preset_name
        self.available = sorted(available)
        super().__init__(
            f"Invalid resolution preset: {preset_name!r}. "
            f"Available presets: {', '.join(self.available)}",
            field="preset",
        )


class InvalidCodec(ValidationError):
    """Raised when a codec name is unknown."""

    def __init__(self, codec_name: str, available: Iterable[str]):
        self.codec_name = codec_name
        self.available = sorted(available)
        super().__init__(
            f"Unsupported video codec: {codec_name!r}. "
            f"Available codecs: {', '.join(self.available)}",
            field="codec",
        )


class InvalidParameter(ValidationError):
    """Raised when a resolved parameter is out of range or malformed."""

    def __init__(self, field: str, reason: str):
        self.reason = reason
        super().__init__(f"Invalid parameter {field!r}: {reason}", field=field)


# --- Orchestration ----------------------------------------------------------


class JobNotFoundError(TranscodeServiceError):
    """Raised when a job id does not exist in the job store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job ID {job_id} does not exist")


class DispatchError(TranscodeServiceError):
    """Raised when a worker process could not be launched."""

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Failed to dispatch worker for job {job_id}: {reason}")


class PersistenceError(TranscodeServiceError):
    """Raised when the job store cannot complete a read or write."""
    pass


# --- Worker pipeline --------------------------------------------------------


class WorkerError(TranscodeServiceError):
    """Base for failures inside the worker pipeline.

    The orchestrator does not distinguish between subclasses; all of them
    end in the same failed terminal state.
    """
    pass


class StagingError(WorkerError):
    """Raised when the input object cannot be copied to local storage."""
    pass


class EngineError(WorkerError):
    """Raised when the transcoding engine exits unsuccessfully."""
    pass


class UploadError(WorkerError):
    """Raised when the transcoded output cannot be stored."""
    pass


# --- Blob store -------------------------------------------------------------


class BlobStoreError(TranscodeServiceError):
    """Raised when the blob store rejects an operation."""
    pass


class BlobNotFoundError(BlobStoreError):
    """Raised when a blob key does not exist."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Object not found in blob store: {key}")
