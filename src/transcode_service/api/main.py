from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import AliasChoices, BaseModel, Field

from transcode_service.config import configure_logging, resolve_config
from transcode_service.errors import (
    InvalidPreset,
    JobNotFoundError,
    PersistenceError,
    ValidationError,
)
from transcode_service.jobs import (
    CallbackPayload,
    JobOrchestrator,
    JobState,
    JobStore,
    ProcessDispatcher,
    init_schema,
)
from transcode_service.presets import PRESETS, available_presets

logger = logging.getLogger(__name__)

# --- CONFIG ---
config = resolve_config()

job_store = JobStore(config.database.url)
orchestrator = JobOrchestrator(
    job_store,
    ProcessDispatcher(python_executable=config.worker.python_executable),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config)
    init_schema(config.database.url)
    await job_store.connect()
    yield
    await job_store.disconnect()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Pydantic Models for Requests/Responses ---
class TranscodeRequest(BaseModel):
    # Optional so missing fields surface as our 400, not FastAPI's 422
    inputLocator: Optional[str] = Field(  # noqa: N815
        default=None, validation_alias=AliasChoices("inputLocator", "s3Key")
    )
    qualityPresetName: Optional[str] = Field(  # noqa: N815
        default=None, validation_alias=AliasChoices("qualityPresetName", "resolutionPreset")
    )


class TranscodeResponse(BaseModel):
    jobId: str  # noqa: N815
    status: str
    input: str
    targetPreset: str  # noqa: N815
    message: str


# --- Error helpers ---
def _validation_error(e: ValidationError) -> HTTPException:
    detail = {
        "code": "VALIDATION_ERROR",
        "message": str(e),
        "field": e.field,
    }
    if isinstance(e, InvalidPreset):
        detail["code"] = "INVALID_PRESET"
        detail["field"] = "qualityPresetName"
        detail["availablePresets"] = e.available
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _not_found(e: JobNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "JOB_NOT_FOUND", "message": str(e), "jobId": e.job_id},
    )


def _internal_error(e: PersistenceError) -> HTTPException:
    logger.error("Job store failure: %s", e)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "INTERNAL_ERROR", "message": "Failed to access job store"},
    )


# --- API ENDPOINTS ---


@app.get("/")
async def root():
    return {"message": "Transcode Service API", "docs": "/docs", "health": "/health"}


@app.get("/health")
async def health_check():
    return {"status": "ok", "database": "connected" if job_store.is_connected else "disconnected"}


@app.get("/presets")
async def list_presets():
    """List the quality presets accepted by the transcode endpoint."""
    return [
        {"name": name, **PRESETS[name].model_dump(mode="json", by_alias=True)}
        for name in available_presets()
    ]


# --- VIDEO ENDPOINTS ---


@app.post("/api/video/transcode", response_model=TranscodeResponse)
async def create_transcode_job(data: TranscodeRequest):
    """Submit a transcode job. Returns once the worker has been dispatched."""
    try:
        job = await orchestrator.create(data.inputLocator, data.qualityPresetName)
    except ValidationError as e:
        raise _validation_error(e)
    except PersistenceError as e:
        raise _internal_error(e)

    # A dispatch failure surfaces on the status endpoint, not here
    return TranscodeResponse(
        jobId=job.job_id,
        status=JobState.PROGRESSING.value,
        input=job.input_locator,
        targetPreset=job.target_preset,
        message="Transcode job started",
    )


@app.get("/api/video/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Job state, plus the worker's callback payload once terminal."""
    try:
        view = await orchestrator.get_status(job_id)
    except JobNotFoundError as e:
        raise _not_found(e)
    except PersistenceError as e:
        raise _internal_error(e)
    return view.model_dump(mode="json", by_alias=True, exclude_none=True)


@app.post("/api/video/jobs/{job_id}/callback")
async def job_callback(job_id: str, payload: CallbackPayload):
    """Worker completion callback. Acknowledged whatever the reported outcome."""
    try:
        job = await orchestrator.handle_callback(job_id, payload)
    except JobNotFoundError as e:
        raise _not_found(e)
    except PersistenceError as e:
        raise _internal_error(e)
    return {"success": True, "message": f"Job {job_id} marked {job.state.value}"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.server.host, port=config.server.port)
