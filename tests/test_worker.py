"""Tests for the worker execution pipeline."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from transcode_service.blob_store import LocalBlobStore
from transcode_service.errors import BlobStoreError
from transcode_service.ffmpeg_runner import (
    FfmpegProgress,
    FfmpegResult,
    MediaInfo,
    ProbeError,
    ProgressEvent,
    ProgressEventType,
)
from transcode_service.jobs.dispatch import EXIT_BAD_ARGUMENTS, EXIT_REPORTED_FAILURE
from transcode_service.jobs.models import CallbackPayload, WorkerRequest
from transcode_service.worker import HttpCallbackReporter, TranscodeWorker, main


class FakeRun:
    """Stand-in for TranscodeRun that writes the output file on success."""

    def __init__(self, output_path, succeed=True):
        self.output_path = Path(output_path)
        self.succeed = succeed
        self.command = f"ffmpeg -i input.mp4 {output_path}"
        self.result = None

    def __iter__(self):
        yield ProgressEvent(type=ProgressEventType.STARTED, command=self.command)
        yield ProgressEvent(
            type=ProgressEventType.PROGRESS,
            command=self.command,
            progress=FfmpegProgress(current_time_s=1.0, fps=30.0, frame=30),
        )
        if self.succeed:
            self.output_path.write_bytes(b"transcoded")
        self.result = FfmpegResult(
            success=self.succeed,
            returncode=0 if self.succeed else 1,
            command=self.command,
            duration_s=0.1,
            stderr_tail="" if self.succeed else "Invalid data found when processing input",
        )
        event_type = ProgressEventType.COMPLETED if self.succeed else ProgressEventType.FAILED
        yield ProgressEvent(type=event_type, command=self.command, result=self.result)


class FakeRunner:
    def __init__(self, succeed=True, probe_info=None):
        self.succeed = succeed
        self.probe_info = probe_info
        self.specs = []
        self.outputs = []

    def probe(self, path):
        if self.probe_info is None:
            raise ProbeError("ffprobe not available")
        return self.probe_info

    def transcode(self, spec, output_path):
        self.specs.append(spec)
        self.outputs.append(output_path)
        return FakeRun(output_path, self.succeed)


class RecordingReporter:
    def __init__(self):
        self.calls = []

    def __call__(self, job_id, payload):
        self.calls.append((job_id, payload))
        return True


REQUEST = WorkerRequest(
    job_id="transcode_1700000000000_abc123def456",
    input_locator="uploads/video.mp4",
    output_locator="uploads/video_720p30av1.mp4",
    preset_name="720p30av1",
)


@pytest.fixture
def blob_store(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"))
    source = tmp_path / "source.mp4"
    source.write_bytes(b"not really a video")
    store.upload(source, "uploads/video.mp4")
    return store


@pytest.fixture
def temp_dir(tmp_path):
    return tmp_path / "temp"


def test_successful_pipeline(blob_store, temp_dir):
    runner = FakeRunner(probe_info=MediaInfo(duration_s=12.0, width=1920, height=1080))
    reporter = RecordingReporter()
    worker = TranscodeWorker(blob_store, runner, reporter, str(temp_dir), clock=lambda: 1700000000.0)

    assert worker.run(REQUEST) == 0

    # Output published with provenance metadata
    assert blob_store.exists("uploads/video_720p30av1.mp4")
    metadata = blob_store.read_metadata("uploads/video_720p30av1.mp4")
    assert metadata["original-input-locator"] == "uploads/video.mp4"
    assert metadata["resolution-preset"] == "720p30av1"
    assert metadata["worker"] == "transcode-worker"
    assert metadata["processed-timestamp"].startswith("2023-11-14T22:13:20")

    # Spec resolved against the staged file
    spec = runner.specs[0]
    assert spec.input_path == str(temp_dir / f"input_1700000000000_{REQUEST.job_id}_video.mp4")
    assert (spec.width, spec.height) == (1280, 720)
    assert runner.outputs[0] == str(temp_dir / f"output_1700000000000_{REQUEST.job_id}_video.mp4")

    # Temp files removed
    assert list(temp_dir.iterdir()) == []

    job_id, payload = reporter.calls[0]
    assert job_id == REQUEST.job_id
    assert payload.success is True
    assert payload.detail.output_locator == "uploads/video_720p30av1.mp4"
    assert payload.detail.preset == "720p30av1"
    assert payload.detail.engine_invocation.startswith("ffmpeg")
    assert payload.detail.error_stack == ""
    assert payload.detail.elapsed_ms >= 0


def test_missing_input_never_invokes_engine(blob_store, temp_dir):
    runner = FakeRunner()
    reporter = RecordingReporter()
    worker = TranscodeWorker(blob_store, runner, reporter, str(temp_dir))
    request = REQUEST.model_copy(update={"input_locator": "uploads/missing.mp4"})

    assert worker.run(request) == EXIT_REPORTED_FAILURE

    assert runner.specs == []
    assert len(reporter.calls) == 1
    payload = reporter.calls[0][1]
    assert payload.success is False
    assert payload.detail.error_stack
    assert "StagingError" in payload.detail.error_stack
    assert not blob_store.exists("uploads/video_720p30av1.mp4")


def test_unknown_preset_fails_before_staging(temp_dir):
    blob_store = MagicMock()
    runner = FakeRunner()
    reporter = RecordingReporter()
    worker = TranscodeWorker(blob_store, runner, reporter, str(temp_dir))

    assert worker.run(REQUEST.model_copy(update={"preset_name": "4k-mystery"})) == EXIT_REPORTED_FAILURE
    blob_store.download.assert_not_called()
    assert reporter.calls[0][1].success is False


def test_engine_failure_reports_and_cleans_up(blob_store, temp_dir):
    runner = FakeRunner(succeed=False)
    reporter = RecordingReporter()
    worker = TranscodeWorker(blob_store, runner, reporter, str(temp_dir))

    assert worker.run(REQUEST) == EXIT_REPORTED_FAILURE

    payload = reporter.calls[0][1]
    assert payload.success is False
    assert "EngineError" in payload.detail.error_stack
    assert "Invalid data found" in payload.detail.error_stack
    assert not blob_store.exists("uploads/video_720p30av1.mp4")
    assert list(temp_dir.iterdir()) == []


def test_upload_failure_reports(blob_store, temp_dir, monkeypatch):
    def failing_upload(src, key, metadata=None):
        raise BlobStoreError("bucket is read-only")

    monkeypatch.setattr(blob_store, "upload", failing_upload)
    reporter = RecordingReporter()
    worker = TranscodeWorker(blob_store, FakeRunner(), reporter, str(temp_dir))

    assert worker.run(REQUEST) == EXIT_REPORTED_FAILURE
    assert "UploadError" in reporter.calls[0][1].detail.error_stack
    assert list(temp_dir.iterdir()) == []


def test_probe_failure_is_not_fatal(blob_store, temp_dir):
    reporter = RecordingReporter()
    worker = TranscodeWorker(blob_store, FakeRunner(probe_info=None), reporter, str(temp_dir))
    assert worker.run(REQUEST) == 0
    assert reporter.calls[0][1].success is True


def test_concurrent_jobs_stage_separately(blob_store, temp_dir):
    """Two jobs on the same input in the same millisecond must not share temp files."""
    runner = FakeRunner()
    worker = TranscodeWorker(
        blob_store, runner, RecordingReporter(), str(temp_dir), clock=lambda: 1700000000.0
    )
    other = REQUEST.model_copy(update={
        "job_id": "transcode_1700000000000_fedcba654321",
        "output_locator": "uploads/video_1080p30av1.mp4",
        "preset_name": "1080p30av1",
    })

    assert worker.run(REQUEST) == 0
    assert worker.run(other) == 0

    assert runner.specs[0].input_path != runner.specs[1].input_path
    assert runner.outputs[0] != runner.outputs[1]
    assert other.job_id in runner.outputs[1]


def test_local_output_uses_container_extension(tmp_path, temp_dir):
    store = LocalBlobStore(str(tmp_path / "blobs"))
    source = tmp_path / "clip.webm"
    source.write_bytes(b"webm bytes")
    store.upload(source, "uploads/clip.webm")

    runner = FakeRunner()
    worker = TranscodeWorker(store, runner, RecordingReporter(), str(temp_dir))
    request = REQUEST.model_copy(update={
        "input_locator": "uploads/clip.webm",
        "output_locator": "uploads/clip_720p30av1.webm",
    })

    assert worker.run(request) == 0
    assert runner.outputs[0].endswith("_clip.mp4")
    assert runner.specs[0].container == "mp4"
    assert store.exists("uploads/clip_720p30av1.webm")


def test_configured_audio_codec_is_applied(blob_store, temp_dir):
    runner = FakeRunner()
    reporter = RecordingReporter()
    worker = TranscodeWorker(blob_store, runner, reporter, str(temp_dir), audio_codec_name="opus")

    assert worker.run(REQUEST) == EXIT_REPORTED_FAILURE

    assert runner.specs == []
    assert "InvalidCodec" in reporter.calls[0][1].detail.error_stack
    assert list(temp_dir.iterdir()) == []


class TestHttpCallbackReporter:
    def test_posts_camel_case_payload(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["url"] = str(request.url)
            captured["body"] = request.read()
            return httpx.Response(200, json={"success": True})

        transport = httpx.MockTransport(handler)
        real_client = httpx.Client

        with patch("transcode_service.worker.httpx.Client",
                   lambda **kw: real_client(transport=transport, **kw)):
            reporter = HttpCallbackReporter("http://api.local/api/video/")
            ok = reporter("job-1", CallbackPayload(success=True))

        assert ok is True
        assert captured["url"] == "http://api.local/api/video/jobs/job-1/callback"
        assert b'"errorStack"' in captured["body"]

    def test_delivery_failure_returns_false(self):
        def handler(request):
            return httpx.Response(500)

        transport = httpx.MockTransport(handler)
        real_client = httpx.Client

        with patch("transcode_service.worker.httpx.Client",
                   lambda **kw: real_client(transport=transport, **kw)):
            reporter = HttpCallbackReporter("http://api.local/api/video")
            assert reporter("job-1", CallbackPayload(success=False)) is False


def test_main_requires_four_arguments():
    with pytest.raises(SystemExit) as exc_info:
        main(["transcode_1_a", "uploads/video.mp4"])
    assert exc_info.value.code == EXIT_BAD_ARGUMENTS


def test_main_exits_with_pipeline_status(tmp_path, monkeypatch):
    monkeypatch.setenv("TRANSCODE_BLOB_ROOT", str(tmp_path / "blobs"))
    monkeypatch.setenv("TRANSCODE_TEMP_DIR", str(tmp_path / "temp"))

    reporter = RecordingReporter()
    with patch("transcode_service.worker.HttpCallbackReporter", return_value=reporter):
        with pytest.raises(SystemExit) as exc_info:
            main(REQUEST.to_argv())

    # Input was never uploaded to the blob store
    assert exc_info.value.code == EXIT_REPORTED_FAILURE
    payload = reporter.calls[0][1]
    assert payload.success is False


def test_main_reports_setup_failure(monkeypatch):
    monkeypatch.setenv("TRANSCODE_BLOB_BACKEND", "bogus")
    monkeypatch.setenv("TRANSCODE_CALLBACK_URL", "http://api.local/api/video")

    reporter = RecordingReporter()
    with patch("transcode_service.worker.HttpCallbackReporter", return_value=reporter) as cls:
        with pytest.raises(SystemExit) as exc_info:
            main(REQUEST.to_argv())

    assert exc_info.value.code == EXIT_REPORTED_FAILURE
    cls.assert_called_once_with("http://api.local/api/video")
    job_id, payload = reporter.calls[0]
    assert job_id == REQUEST.job_id
    assert payload.success is False
    assert payload.detail.input_locator == "uploads/video.mp4"
    assert "validation error" in payload.detail.error_stack
