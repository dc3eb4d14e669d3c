"""Pydantic models for transcode job records and worker callbacks.

Wire-facing models serialize with camelCase aliases (``jobId``,
``outputLocator``...) and accept either spelling on input.
"""

import posixpath
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobState(str, Enum):
    """Job processing states.

    State transitions:
        waiting     → progressing   (worker dispatched)
        waiting     → failed        (worker could not be dispatched)
        progressing → completed     (worker success callback)
        progressing → failed        (worker failure callback)
        terminal    → terminal      (repeated callback, last write wins)

    Nothing ever returns to waiting, and a terminal job never goes back
    to progressing.
    """

    WAITING = "waiting"
    PROGRESSING = "progressing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobDetail(_WireModel):
    """Outcome details reported by a worker (or by a failed dispatch)."""

    input_locator: str = ""
    output_locator: str = ""
    preset: str = ""
    job_id: str = ""
    elapsed_ms: float = Field(default=0.0, ge=0.0)
    engine_invocation: str = ""
    error_stack: str = ""


class CallbackPayload(_WireModel):
    """Body of the worker → orchestrator completion callback."""

    success: bool
    detail: JobDetail = Field(default_factory=JobDetail)

    @property
    def terminal_state(self) -> JobState:
        return JobState.COMPLETED if self.success else JobState.FAILED


class Job(_WireModel):
    """One persisted transcode job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str
    state: JobState
    input_locator: str
    output_locator: str
    target_preset: str
    submitted_at: int = Field(..., description="Submission time, epoch milliseconds")
    callback: Optional[CallbackPayload] = None


class JobStatusView(_WireModel):
    """Status answer for a job; ``callback`` only once the job is terminal."""

    job_id: str
    state: JobState
    callback: Optional[CallbackPayload] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        callback = job.callback if job.state.is_terminal else None
        return cls(job_id=job.job_id, state=job.state, callback=callback)


class WorkerRequest(_WireModel):
    """Parameters handed to an isolated worker, passed by value as argv."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str
    input_locator: str
    output_locator: str
    preset_name: str

    def to_argv(self) -> List[str]:
        return [self.job_id, self.input_locator, self.output_locator, self.preset_name]

    @classmethod
    def from_job(cls, job: Job) -> "WorkerRequest":
        return cls(
            job_id=job.job_id,
            input_locator=job.input_locator,
            output_locator=job.output_locator,
            preset_name=job.target_preset,
        )


def new_job_id(now_ms: Optional[int] = None) -> str:
    """Generate a job id from a millisecond timestamp and a random suffix."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"transcode_{now_ms}_{uuid.uuid4().hex[:12]}"


def output_locator_for(input_locator: str, preset_name: str) -> str:
    """Deterministic output location: ``<dir>/<stem>_<preset><ext>``.

    >>> output_locator_for("uploads/video.mp4", "720p30av1")
    'uploads/video_720p30av1.mp4'
    """
    directory, filename = posixpath.split(input_locator)
    stem, ext = posixpath.splitext(filename)
    new_name = f"{stem}_{preset_name}{ext}"
    return posixpath.join(directory, new_name) if directory else new_name
