"""Job store backed by an async database connection.

The store owns a ``databases.Database`` with an explicit connect/disconnect
lifecycle. Every operation takes the connection it runs on; callers get one
from ``session()``, which releases it on every exit path:

    async with store.session() as conn:
        job = await store.get(conn, job_id)

Driver failures are re-raised as PersistenceError and the attempted
read/write is treated as not having happened.
"""

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from databases import Database
from databases.core import Connection
from sqlalchemy import create_engine, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceError
from .db_models import Base, TranscodingJob
from .models import CallbackPayload, Job, JobState

logger = logging.getLogger(__name__)

_DRIVER_ERRORS = (sqlite3.Error, SQLAlchemyError, OSError)


def init_schema(database_url: str) -> None:
    """Create the job table if it does not exist (synchronous engine)."""
    engine = create_engine(database_url)
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()


def _row_to_job(row) -> Job:
    callback = None
    if row.callback_data:
        callback = CallbackPayload.model_validate_json(row.callback_data)
    return Job(
        job_id=row.job_id,
        state=JobState(row.job_state),
        input_locator=row.input_locator,
        output_locator=row.output_locator,
        target_preset=row.target_quality,
        submitted_at=row.submit_timestamp,
        callback=callback,
    )


class JobStore:
    """Persistence for transcode job records, keyed by job id."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.database = Database(database_url)

    @property
    def is_connected(self) -> bool:
        return self.database.is_connected

    async def connect(self) -> None:
        try:
            await self.database.connect()
        except _DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to connect to job store: {e}") from e
        logger.info("Job store connected: %s", self.database_url)

    async def disconnect(self) -> None:
        await self.database.disconnect()
        logger.info("Job store disconnected")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Connection]:
        """Acquire a connection for a unit of work; always released."""
        if not self.database.is_connected:
            raise PersistenceError("Job store is not connected")
        async with self.database.connection() as conn:
            yield conn

    async def insert(self, conn: Connection, job: Job) -> None:
        """Persist a new job record.

        Raises:
            PersistenceError: If the write fails (including duplicate ids)
        """
        query = insert(TranscodingJob).values(
            job_id=job.job_id,
            job_state=job.state.value,
            input_locator=job.input_locator,
            output_locator=job.output_locator,
            target_quality=job.target_preset,
            submit_timestamp=job.submitted_at,
            callback_data=job.callback.model_dump_json(by_alias=True) if job.callback else None,
        )
        try:
            await conn.execute(query)
        except _DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to create job record {job.job_id}: {e}") from e

    async def get(self, conn: Connection, job_id: str) -> Optional[Job]:
        """Fetch a job by id, or None if it does not exist."""
        query = select(TranscodingJob).where(TranscodingJob.job_id == job_id)
        try:
            row = await conn.fetch_one(query)
        except _DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to read job {job_id}: {e}") from e
        return _row_to_job(row) if row else None

    async def mark_progressing(self, conn: Connection, job_id: str) -> bool:
        """Move a waiting job to progressing.

        The write is conditional on the job still being waiting, so a
        callback that already made the job terminal is never regressed.

        Returns:
            True if the row was updated
        """
        query = (
            update(TranscodingJob)
            .where(TranscodingJob.job_id == job_id)
            .where(TranscodingJob.job_state == JobState.WAITING.value)
            .values(job_state=JobState.PROGRESSING.value)
        )
        try:
            await conn.execute(query)
            row = await conn.fetch_one(
                select(TranscodingJob.job_state).where(TranscodingJob.job_id == job_id)
            )
        except _DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to update job {job_id}: {e}") from e
        return row is not None and row.job_state == JobState.PROGRESSING.value

    async def mark_terminal(
        self, conn: Connection, job_id: str, payload: CallbackPayload
    ) -> None:
        """Persist a terminal state and its payload (last write wins)."""
        query = (
            update(TranscodingJob)
            .where(TranscodingJob.job_id == job_id)
            .values(
                job_state=payload.terminal_state.value,
                callback_data=payload.model_dump_json(by_alias=True),
            )
        )
        try:
            await conn.execute(query)
        except _DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to update job {job_id}: {e}") from e

    async def count(self, conn: Connection, state: Optional[JobState] = None) -> int:
        """Number of jobs, optionally restricted to one state."""
        query = select(TranscodingJob.job_id)
        if state is not None:
            query = query.where(TranscodingJob.job_state == state.value)
        try:
            rows = await conn.fetch_all(query)
        except _DRIVER_ERRORS as e:
            raise PersistenceError(f"Failed to count jobs: {e}") from e
        return len(rows)
