"""Transcode job records, persistence, dispatch and orchestration."""

from .dispatch import ProcessDispatcher, WorkerDispatcher
from .models import (
    CallbackPayload,
    Job,
    JobDetail,
    JobState,
    JobStatusView,
    WorkerRequest,
    new_job_id,
    output_locator_for,
)
from .orchestrator import JobOrchestrator
from .store import JobStore, init_schema

__all__ = [
    "CallbackPayload",
    "Job",
    "JobDetail",
    "JobOrchestrator",
    "JobState",
    "JobStatusView",
    "JobStore",
    "ProcessDispatcher",
    "WorkerDispatcher",
    "WorkerRequest",
    "init_schema",
    "new_job_id",
    "output_locator_for",
]
