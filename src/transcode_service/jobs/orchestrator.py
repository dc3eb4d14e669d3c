"""Job orchestration: submission, status queries and worker callbacks.

The orchestrator holds no per-job in-memory state. Everything it knows
about a job lives in the job store, so concurrent requests for different
jobs never interact, and requests for the same job resolve as
last-write-wins.
"""

import logging
import time
import traceback
from typing import Callable, Optional

from ..errors import DispatchError, JobNotFoundError, ValidationError
from ..presets import get_preset
from .dispatch import WorkerDispatcher
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
from .store import JobStore

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobOrchestrator:
    """Accepts transcode submissions and tracks them to a terminal state.

    Example:
        >>> orchestrator = JobOrchestrator(store, ProcessDispatcher())
        >>> job = await orchestrator.create("uploads/video.mp4", "720p30av1")
        >>> status = await orchestrator.get_status(job.job_id)
        >>> status.state
        <JobState.PROGRESSING: 'progressing'>
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: WorkerDispatcher,
        clock: Callable[[], int] = _now_ms,
        id_factory: Callable[[int], str] = new_job_id,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.id_factory = id_factory

    @staticmethod
    def validate_request(input_locator: Optional[str], preset_name: Optional[str]) -> None:
        """Check a submission before anything is persisted.

        Raises:
            ValidationError: Missing/blank fields or an unknown preset
        """
        if input_locator is None or not isinstance(input_locator, str):
            raise ValidationError("Missing inputLocator: please provide the input object key", "inputLocator")
        if not input_locator.strip():
            raise ValidationError("Invalid inputLocator: must be a non-empty string", "inputLocator")
        if preset_name is None or not isinstance(preset_name, str) or not preset_name.strip():
            raise ValidationError(
                "Missing qualityPresetName: please provide the target quality preset",
                "qualityPresetName",
            )
        get_preset(preset_name)

    async def create(self, input_locator: str, preset_name: str) -> Job:
        """Submit a transcode job and dispatch its worker.

        Returns as soon as the worker has been launched. The returned job is
        progressing, or failed if the worker could not be dispatched.

        Raises:
            ValidationError: Nothing is persisted in this case
            PersistenceError: If the job record cannot be written
        """
        self.validate_request(input_locator, preset_name)

        submitted_at = self.clock()
        job = Job(
            job_id=self.id_factory(submitted_at),
            state=JobState.WAITING,
            input_locator=input_locator,
            output_locator=output_locator_for(input_locator, preset_name),
            target_preset=preset_name,
            submitted_at=submitted_at,
        )

        async with self.store.session() as conn:
            await self.store.insert(conn, job)

        logger.info(
            "Starting transcode job %s input=%s preset=%s output=%s",
            job.job_id, input_locator, preset_name, job.output_locator,
        )

        try:
            self.dispatcher.dispatch(WorkerRequest.from_job(job))
        except DispatchError as e:
            logger.error("Job %s spawn failed: %s", job.job_id, e)
            payload = CallbackPayload(
                success=False,
                detail=JobDetail(
                    input_locator=job.input_locator,
                    output_locator=job.output_locator,
                    preset=job.target_preset,
                    job_id=job.job_id,
                    error_stack="".join(traceback.format_exception(e)),
                ),
            )
            async with self.store.session() as conn:
                await self.store.mark_terminal(conn, job.job_id, payload)
            return job.model_copy(update={"state": JobState.FAILED, "callback": payload})

        async with self.store.session() as conn:
            updated = await self.store.mark_progressing(conn, job.job_id)
            if updated:
                return job.model_copy(update={"state": JobState.PROGRESSING})
            # A callback already landed; report what the store holds
            current = await self.store.get(conn, job.job_id)
        return current or job

    async def get_status(self, job_id: str) -> JobStatusView:
        """Current state of a job, with its callback payload once terminal.

        Raises:
            JobNotFoundError: If the job id is unknown
        """
        async with self.store.session() as conn:
            job = await self.store.get(conn, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobStatusView.from_job(job)

    async def handle_callback(self, job_id: str, payload: CallbackPayload) -> Job:
        """Record a worker's outcome as the job's terminal state.

        A repeated callback simply overwrites the previous one.

        Raises:
            JobNotFoundError: If the job id is unknown
        """
        async with self.store.session() as conn:
            job = await self.store.get(conn, job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            if job.state.is_terminal:
                logger.warning(
                    "Job %s already %s; overwriting with callback success=%s",
                    job_id, job.state.value, payload.success,
                )
            await self.store.mark_terminal(conn, job_id, payload)

        if payload.success:
            logger.info("Job %s completed via callback, output=%s", job_id, payload.detail.output_locator)
        else:
            logger.error("Job %s failed via callback: %s", job_id, payload.detail.error_stack.strip()[-500:])

        return job.model_copy(update={"state": payload.terminal_state, "callback": payload})
