"""FFmpeg runner with process isolation and a typed progress-event stream.

This module drives the external transcoding engine for one job:

Key Features:
- Command construction from a resolved TranscodingSpec
- Process isolation with subprocess.Popen
- Progress parsing from ffmpeg's ``-progress`` key/value output
- A finite, single-use event sequence (started, progress..., completed/failed)
- ffprobe metadata extraction for diagnostics

No timeout is enforced: a hung engine keeps its worker alive.
"""

import json
import logging
import re
import shlex
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterator, List, Optional

from .models import TranscodingSpec

logger = logging.getLogger(__name__)

# Lines of non-progress stderr kept for error reporting
STDERR_TAIL_LINES = 40


class ProgressEventType(Enum):
    """Kinds of events emitted while the engine runs."""
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Media time written so far
    fps: float = 0.0                 # Current encode FPS
    bitrate_kbps: float = 0.0        # Current output bitrate
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number


@dataclass
class FfmpegResult:
    """Result of one FFmpeg execution."""
    success: bool
    returncode: int
    command: str
    duration_s: float
    stderr_tail: str = ""
    final_progress: FfmpegProgress = field(default_factory=FfmpegProgress)


@dataclass(frozen=True)
class ProgressEvent:
    """One element of a TranscodeRun's event sequence.

    ``progress`` is set for PROGRESS events, ``result`` for the terminal
    COMPLETED and FAILED events.
    """
    type: ProgressEventType
    command: str = ""
    progress: Optional[FfmpegProgress] = None
    result: Optional[FfmpegResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (ProgressEventType.COMPLETED, ProgressEventType.FAILED)


@dataclass
class MediaInfo:
    """Diagnostic metadata reported by ffprobe."""
    duration_s: Optional[float] = None
    size_bytes: Optional[int] = None
    bitrate: Optional[int] = None
    video_codec: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    framerate: Optional[float] = None
    pixel_format: Optional[str] = None
    audio_codec: Optional[str] = None
    audio_sample_rate: Optional[int] = None
    audio_channels: Optional[int] = None

    @property
    def resolution(self) -> str:
        if self.width and self.height:
            return f"{self.width}x{self.height}"
        return "unknown"


class ProbeError(Exception):
    """Raised when ffprobe cannot read the input."""
    pass


def parse_framerate(value: Optional[str]) -> Optional[float]:
    """Parse an ffprobe rate such as "30000/1001" into frames per second."""
    if not value:
        return None
    num, sep, den = value.partition("/")
    try:
        if sep:
            return float(num) / float(den) if float(den) else None
        return float(num)
    except ValueError:
        return None


def parse_out_time(value: str) -> Optional[float]:
    """Parse "HH:MM:SS.micro" into seconds."""
    match = re.match(r"(-?\d+):(\d+):(\d+(?:\.\d+)?)", value.strip())
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


def apply_progress_line(progress: FfmpegProgress, key: str, value: str) -> None:
    """Update progress metrics from one ``key=value`` line of -progress output.

    FFmpeg progress format:
        frame=123
        fps=25.00
        bitrate=1234.5kbits/s
        out_time=00:00:05.123456
        speed=2.5x
        progress=continue
    """
    value = value.strip()
    if value in ("", "N/A"):
        return

    if key == "frame":
        if value.isdigit():
            progress.frame = int(value)
    elif key == "fps":
        try:
            progress.fps = float(value)
        except ValueError:
            pass
    elif key == "bitrate":
        match = re.match(r"([\d.]+)kbits/s", value)
        if match:
            progress.bitrate_kbps = float(match.group(1))
    elif key == "out_time":
        seconds = parse_out_time(value)
        if seconds is not None:
            progress.current_time_s = seconds
    elif key == "speed":
        match = re.match(r"([\d.]+)x", value)
        if match:
            progress.speed = float(match.group(1))


_PROGRESS_KEYS = {
    "frame", "fps", "bitrate", "total_size", "out_time", "out_time_us", "out_time_ms",
    "dup_frames", "drop_frames", "speed", "progress",
}


class TranscodeRun:
    """A single engine invocation exposed as a finite event sequence.

    Iterate once to start the process and receive ``STARTED``, any number
    of ``PROGRESS`` events, then exactly one ``COMPLETED`` or ``FAILED``.
    Iterating a second time raises RuntimeError. Breaking out of the loop
    early kills the engine process.

    Example:
        >>> run = runner.transcode(spec, "/tmp/out.mp4")
        >>> for event in run:
        ...     if event.type is ProgressEventType.PROGRESS:
        ...         print(event.progress.current_time_s)
        >>> run.result.success
    """

    def __init__(self, cmd: List[str]):
        self.cmd = cmd
        self.command = shlex.join(cmd)
        self.result: Optional[FfmpegResult] = None
        self._consumed = False

    def __iter__(self) -> Iterator[ProgressEvent]:
        if self._consumed:
            raise RuntimeError("Transcode progress stream can only be consumed once")
        self._consumed = True
        return self._events()

    def wait(self) -> FfmpegResult:
        """Drain the event sequence and return the final result."""
        for _ in self:
            pass
        return self.result

    def _finish(self, success: bool, returncode: int, start: float, tail, progress) -> ProgressEvent:
        self.result = FfmpegResult(
            success=success,
            returncode=returncode,
            command=self.command,
            duration_s=time.monotonic() - start,
            stderr_tail="\n".join(tail),
            final_progress=progress,
        )
        event_type = ProgressEventType.COMPLETED if success else ProgressEventType.FAILED
        return ProgressEvent(type=event_type, command=self.command, result=self.result)

    def _events(self) -> Iterator[ProgressEvent]:
        start = time.monotonic()
        progress = FfmpegProgress()
        tail = deque(maxlen=STDERR_TAIL_LINES)

        try:
            process = subprocess.Popen(
                self.cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,  # Line buffered for real-time progress
            )
        except OSError as e:
            tail.append(f"Failed to start engine: {e}")
            yield self._finish(False, -1, start, tail, progress)
            return

        try:
            yield ProgressEvent(type=ProgressEventType.STARTED, command=self.command)
            for line in process.stderr:
                line = line.strip()
                if not line:
                    continue
                key, sep, value = line.partition("=")
                if sep and key in _PROGRESS_KEYS:
                    apply_progress_line(progress, key, value)
                    if key == "progress":
                        yield ProgressEvent(
                            type=ProgressEventType.PROGRESS,
                            command=self.command,
                            progress=replace(progress),
                        )
                    continue
                tail.append(line)
            returncode = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        yield self._finish(returncode == 0, returncode, start, tail, progress)


class FfmpegRunner:
    """Builds and launches ffmpeg/ffprobe invocations for one worker.

    Example:
        >>> runner = FfmpegRunner(ffprobe_path="ffprobe")
        >>> info = runner.probe("input.mp4")
        >>> run = runner.transcode(spec, "output.mp4")
        >>> result = run.wait()
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: str = "ffprobe",
        loglevel: str = "error",
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: ffmpeg executable (None = bundled imageio-ffmpeg binary)
            ffprobe_path: ffprobe executable
            loglevel: ffmpeg log level (error, warning, info, verbose)
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.loglevel = loglevel

    def build_command(self, spec: TranscodingSpec, output_path: str) -> List[str]:
        """Build the ffmpeg argument list for a resolved spec."""
        cmd = [
            self._get_ffmpeg_exe(),
            "-hide_banner",
            "-y",  # Overwrite output
            "-i", spec.input_path,
            "-c:v", spec.video_codec,
            "-s", f"{spec.width}x{spec.height}",
        ]

        if spec.filters:
            cmd.extend(["-vf", spec.filter_chain])

        cmd.extend([
            "-crf", str(spec.quality),
            "-preset", spec.speed,
        ])
        cmd.extend(spec.extra_args)
        cmd.extend([
            "-c:a", spec.audio_codec,
            "-b:a", spec.audio_bitrate,
            "-progress", "pipe:2",  # Progress to stderr
            "-nostats",
            "-loglevel", self.loglevel,
            "-f", spec.container,
            output_path,
        ])
        return cmd

    def transcode(self, spec: TranscodingSpec, output_path: str) -> TranscodeRun:
        """Prepare a transcode; the process starts when the run is iterated."""
        return TranscodeRun(self.build_command(spec, output_path))

    def probe(self, input_path: str) -> MediaInfo:
        """Read container and stream metadata with ffprobe.

        Raises:
            ProbeError: If ffprobe cannot be started or cannot read the file
        """
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ProbeError(f"ffprobe failed to start: {e}") from e

        if completed.returncode != 0:
            raise ProbeError(f"ffprobe failed: {completed.stderr.strip()}")

        try:
            data = json.loads(completed.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ProbeError(f"Failed to parse ffprobe output: {e}") from e

        return self._media_info(data)

    @staticmethod
    def _media_info(data: dict) -> MediaInfo:
        fmt = data.get("format", {})
        streams = data.get("streams", [])
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

        def _num(value, cast):
            try:
                return cast(value) if value is not None else None
            except (TypeError, ValueError):
                return None

        info = MediaInfo(
            duration_s=_num(fmt.get("duration"), float),
            size_bytes=_num(fmt.get("size"), int),
            bitrate=_num(fmt.get("bit_rate"), int),
        )
        if video:
            info.video_codec = video.get("codec_name")
            info.width = video.get("width")
            info.height = video.get("height")
            info.framerate = parse_framerate(video.get("r_frame_rate"))
            info.pixel_format = video.get("pix_fmt")
        if audio:
            info.audio_codec = audio.get("codec_name")
            info.audio_sample_rate = _num(audio.get("sample_rate"), int)
            info.audio_channels = audio.get("channels")
        return info

    def check(self) -> Dict[str, bool]:
        """Verify that ffmpeg and ffprobe can be executed."""
        try:
            ffmpeg_ok = _runs([self._get_ffmpeg_exe(), "-version"])
        except RuntimeError:  # imageio-ffmpeg has no bundled binary
            ffmpeg_ok = False
        return {"ffmpeg": ffmpeg_ok, "ffprobe": _runs([self.ffprobe_path, "-version"])}

    def _get_ffmpeg_exe(self) -> str:
        """Get FFmpeg executable path."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        import imageio_ffmpeg
        return imageio_ffmpeg.get_ffmpeg_exe()


def _runs(cmd: List[str]) -> bool:
    try:
        subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True)
        return True
    except (subprocess.CalledProcessError, OSError):
        return False
