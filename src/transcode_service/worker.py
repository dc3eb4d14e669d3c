"""Worker execution pipeline for a single transcode job.

Launched by the orchestrator as an isolated process:

    python -m transcode_service.worker <jobId> <inputLocator> <outputLocator> <preset>

Pipeline (single pass, no retry):
1. Validate arguments without touching the blob store
2. Stage the input object into the temp directory
3. Resolve the preset into a TranscodingSpec for the staged file
4. Probe the input (diagnostics only)
5. Run the engine, logging its progress events
6. Upload the output with provenance metadata
7. Remove temp files (best effort)
8. Report the outcome to the orchestrator callback endpoint

Exit status: 0 on success, 3 on a reported failure, 2 on bad arguments.
Anything else is an unreported crash.
"""

import argparse
import logging
import os
import sys
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import httpx

from . import presets
from .blob_store import BlobStore, build_blob_store
from .config import configure_logging, resolve_config
from .errors import (
    BlobNotFoundError,
    BlobStoreError,
    EngineError,
    StagingError,
    UploadError,
    ValidationError,
)
from .ffmpeg_runner import FfmpegRunner, ProbeError, ProgressEventType
from .jobs.dispatch import EXIT_REPORTED_FAILURE, EXIT_SUCCESS
from .jobs.models import CallbackPayload, JobDetail, WorkerRequest
from .models import ServiceConfig

logger = logging.getLogger(__name__)

WORKER_NAME = "transcode-worker"


class HttpCallbackReporter:
    """POSTs the job outcome to ``{base_url}/jobs/{jobId}/callback``.

    A delivery failure is logged and swallowed: the worker has nothing
    left to do with it, and the job stays progressing on the orchestrator.
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def callback_url(self, job_id: str) -> str:
        return f"{self.base_url}/jobs/{job_id}/callback"

    def __call__(self, job_id: str, payload: CallbackPayload) -> bool:
        url = self.callback_url(job_id)
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload.model_dump(mode="json", by_alias=True))
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Callback to %s failed for job %s: %s", url, job_id, e)
            return False
        logger.info("Callback delivered for job %s (success=%s)", job_id, payload.success)
        return True


Reporter = Callable[[str, CallbackPayload], bool]


class TranscodeWorker:
    """Runs the transcode pipeline for one job and reports the outcome.

    Example:
        >>> worker = TranscodeWorker(LocalBlobStore("./blobs"), FfmpegRunner(), reporter, "./temp")
        >>> worker.run(WorkerRequest(job_id="transcode_1_ab", input_locator="uploads/a.mp4",
        ...                          output_locator="uploads/a_720p30av1.mp4",
        ...                          preset_name="720p30av1"))
        0
    """

    def __init__(
        self,
        blob_store: BlobStore,
        runner: FfmpegRunner,
        reporter: Reporter,
        temp_dir: str,
        codec_name: Optional[str] = None,
        audio_codec_name: str = presets.DEFAULT_AUDIO_CODEC,
        clock: Callable[[], float] = time.time,
    ):
        self.blob_store = blob_store
        self.runner = runner
        self.reporter = reporter
        self.temp_dir = Path(temp_dir)
        self.codec_name = codec_name
        self.audio_codec_name = audio_codec_name
        self.clock = clock

    def run(self, request: WorkerRequest) -> int:
        """Execute the pipeline and report; returns the process exit status."""
        start = time.perf_counter()
        staged: list = []
        detail = JobDetail(
            input_locator=request.input_locator,
            output_locator=request.output_locator,
            preset=request.preset_name,
            job_id=request.job_id,
        )

        logger.info(
            "Worker started for job %s: %s -> %s (%s)",
            request.job_id, request.input_locator, request.output_locator, request.preset_name,
        )

        try:
            command = self._execute(request, staged)
        except Exception:
            self._cleanup(staged)
            error_stack = traceback.format_exc()
            logger.error("Job %s failed:\n%s", request.job_id, error_stack)
            payload = CallbackPayload(
                success=False,
                detail=detail.model_copy(update={
                    "elapsed_ms": _elapsed_ms(start),
                    "error_stack": error_stack,
                }),
            )
            self.reporter(request.job_id, payload)
            return EXIT_REPORTED_FAILURE

        self._cleanup(staged)
        payload = CallbackPayload(
            success=True,
            detail=detail.model_copy(update={
                "elapsed_ms": _elapsed_ms(start),
                "engine_invocation": command,
            }),
        )
        logger.info("Job %s completed in %.2f ms", request.job_id, payload.detail.elapsed_ms)
        self.reporter(request.job_id, payload)
        return EXIT_SUCCESS

    def _execute(self, request: WorkerRequest, staged: list) -> str:
        # 1. Validate before any blob store access
        if not request.input_locator or not request.input_locator.strip():
            raise ValidationError("Input locator must be a non-empty string", "inputLocator")
        presets.get_preset(request.preset_name)

        # 2. Stage
        stamp = int(self.clock() * 1000)
        basename = os.path.basename(request.input_locator)
        input_path = self.temp_dir / f"input_{stamp}_{request.job_id}_{basename}"
        staged.append(input_path)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

        try:
            size = self.blob_store.download(request.input_locator, input_path)
        except BlobNotFoundError as e:
            raise StagingError(f"Input object does not exist: {request.input_locator}") from e
        except BlobStoreError as e:
            raise StagingError(f"Failed to stage {request.input_locator}: {e}") from e
        logger.info("Staged %s (%d bytes) at %s", request.input_locator, size, input_path)

        # 3. Resolve
        spec = presets.resolve(
            str(input_path),
            request.preset_name,
            codec_name=self.codec_name,
            audio_codec_name=self.audio_codec_name,
        )
        # Local output follows the container, whatever the input extension
        stem = os.path.splitext(basename)[0]
        output_path = self.temp_dir / f"output_{stamp}_{request.job_id}_{stem}.{spec.container}"
        staged.append(output_path)

        # 4. Probe (diagnostics only)
        try:
            info = self.runner.probe(str(input_path))
        except ProbeError as e:
            logger.warning("Probe failed for %s: %s", input_path, e)
        else:
            logger.info(
                "Input: duration=%ss resolution=%s codec=%s",
                info.duration_s, info.resolution, info.video_codec,
            )
            if info.duration_s:
                logger.info(
                    "Estimated transcode time: ~%ds",
                    presets.estimate_transcode_seconds(info.duration_s, spec),
                )

        # 5. Engine
        run = self.runner.transcode(spec, str(output_path))
        result = None
        for event in run:
            if event.type is ProgressEventType.STARTED:
                logger.info("Engine started: %s", event.command)
            elif event.type is ProgressEventType.PROGRESS:
                progress = event.progress
                logger.info(
                    "Transcoding progress: %.1fs | FPS: %s | frame %d",
                    progress.current_time_s, progress.fps or "N/A", progress.frame,
                )
            else:
                result = event.result

        if result is None or not result.success:
            returncode = result.returncode if result else None
            tail = result.stderr_tail if result else ""
            raise EngineError(f"Transcoding failed (exit {returncode}): {tail or 'no output'}")

        # 6. Upload
        metadata = {
            "original-input-locator": request.input_locator,
            "resolution-preset": request.preset_name,
            "processed-timestamp": datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat(),
            "worker": WORKER_NAME,
        }
        try:
            location = self.blob_store.upload(output_path, request.output_locator, metadata)
        except BlobStoreError as e:
            raise UploadError(f"Failed to upload {request.output_locator}: {e}") from e
        logger.info("Upload completed: %s", location)

        return run.command

    @staticmethod
    def _cleanup(paths) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to clean up %s: %s", path, e)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=WORKER_NAME,
        description="Transcode one job and report the outcome to the orchestrator",
    )
    parser.add_argument("job_id", help="Job identifier")
    parser.add_argument("input_locator", help="Blob store key of the input")
    parser.add_argument("output_locator", help="Blob store key for the output")
    parser.add_argument("preset", help="Quality preset name")
    return parser


def _report_setup_failure(request: WorkerRequest, config: Optional[ServiceConfig]) -> None:
    """Report a failure raised before the pipeline could start."""
    error_stack = traceback.format_exc()
    if config is None:
        config = ServiceConfig()
        configure_logging(config)
    logger.error("Worker setup failed for job %s:\n%s", request.job_id, error_stack)

    base_url = os.environ.get("TRANSCODE_CALLBACK_URL") or config.callback_base_url
    payload = CallbackPayload(
        success=False,
        detail=JobDetail(
            input_locator=request.input_locator,
            output_locator=request.output_locator,
            preset=request.preset_name,
            job_id=request.job_id,
            error_stack=error_stack,
        ),
    )
    HttpCallbackReporter(base_url)(request.job_id, payload)


def main(argv=None):
    # argparse exits with EXIT_BAD_ARGUMENTS (2) on usage errors
    args = build_parser().parse_args(argv)
    request = WorkerRequest(
        job_id=args.job_id,
        input_locator=args.input_locator,
        output_locator=args.output_locator,
        preset_name=args.preset,
    )

    config = None
    try:
        config = resolve_config()
        configure_logging(config)
        worker = TranscodeWorker(
            blob_store=build_blob_store(config.blob_store),
            runner=FfmpegRunner(
                ffmpeg_path=config.engine.ffmpeg_path,
                ffprobe_path=config.engine.ffprobe_path,
                loglevel=config.engine.loglevel,
            ),
            reporter=HttpCallbackReporter(config.callback_base_url),
            temp_dir=config.worker.temp_dir,
            codec_name=config.engine.default_codec,
            audio_codec_name=config.engine.audio_codec,
        )
    except Exception:
        _report_setup_failure(request, config)
        sys.exit(EXIT_REPORTED_FAILURE)

    sys.exit(worker.run(request))


if __name__ == "__main__":
    main()
