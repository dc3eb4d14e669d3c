"""Pydantic models for configuration and transcoding data validation."""

from typing import Literal, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# --- Service configuration --------------------------------------------------


class ServerConfig(BaseModel):
    """HTTP server binding."""

    host: str = Field(default="127.0.0.1", description="Interface the API binds to")
    port: int = Field(default=8000, gt=0, lt=65536, description="TCP port the API listens on")


class DatabaseConfig(BaseModel):
    """Job store connection settings."""

    url: str = Field(
        default="sqlite:///./transcode_jobs.db",
        description="SQLAlchemy-style database URL for the job store",
    )


class BlobStoreConfig(BaseModel):
    """Object storage settings."""

    backend: Literal["s3", "local"] = Field(
        default="local", description="Blob store implementation to use"
    )
    local_root: str = Field(
        default="./blobs", description="Root directory for the local blob store"
    )
    bucket: str = Field(default="test-bucket", description="S3 bucket name")
    region: str = Field(default="us-east-1", description="S3 region")
    endpoint_url: Optional[str] = Field(
        default="http://127.0.0.1:4568", description="S3 endpoint (None = AWS default)"
    )
    access_key_id: Optional[str] = Field(default="S3RVER", description="S3 access key")
    secret_access_key: Optional[str] = Field(default="S3RVER", description="S3 secret key")


class WorkerConfig(BaseModel):
    """Worker process settings."""

    temp_dir: str = Field(
        default="./temp", description="Working directory for staged input and output files"
    )
    callback_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the video API for callbacks (None = derive from server)",
    )
    python_executable: Optional[str] = Field(
        default=None, description="Interpreter used to launch workers (None = current)"
    )


class EngineConfig(BaseModel):
    """Transcoding engine (ffmpeg) settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = bundled imageio-ffmpeg binary)"
    )
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe executable")
    loglevel: str = Field(
        default="error", description="ffmpeg log level: error, warning, info, verbose"
    )
    default_codec: str = Field(default="av1", description="Codec used when none is requested")
    audio_codec: str = Field(default="aac", description="Audio codec for all outputs")


class LoggingConfig(BaseModel):
    """Process-wide logging settings."""

    level: str = Field(default="INFO", description="Root log level")
    format: str = Field(
        default="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        description="logging.Formatter format string",
    )


class ServiceConfig(BaseModel):
    """Complete service configuration with validation."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    blob_store: BlobStoreConfig = Field(default_factory=BlobStoreConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    @property
    def callback_base_url(self) -> str:
        """Base URL workers use to reach the video API."""
        if self.worker.callback_base_url:
            return self.worker.callback_base_url.rstrip("/")
        return f"http://{self.server.host}:{self.server.port}/api/video"


# --- Transcoding filters ----------------------------------------------------


class _FilterModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class ScaleOptions(_FilterModel):
    maintain_aspect_ratio: bool = Field(
        default=True, validation_alias=AliasChoices("maintain_aspect_ratio", "maintainAspectRatio")
    )
    force: bool = False
    algorithm: str = "bicubic"


class ScaleFilter(_FilterModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    options: ScaleOptions = Field(default_factory=ScaleOptions)


class DenoiseFilter(_FilterModel):
    strength: Optional[str] = Field(default=None, description="hqdn3d parameters, e.g. '4:3:6:4.5'")


class CropFilter(_FilterModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    x: int = Field(default=0, ge=0)
    y: int = Field(default=0, ge=0)


class PadFilter(_FilterModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    x: int = Field(default=0, ge=0)
    y: int = Field(default=0, ge=0)
    color: str = "black"


class FilterSettings(_FilterModel):
    """Video filter configuration.

    Field order here has no effect on the produced chain; the resolver
    always emits scale, framerate, deinterlace, denoise, crop, pad, custom.
    """

    scale: Optional[ScaleFilter] = None
    framerate: Optional[float] = Field(
        default=None, gt=0, validation_alias=AliasChoices("framerate", "fps")
    )
    deinterlace: bool = False
    denoise: Optional[DenoiseFilter] = None
    crop: Optional[CropFilter] = None
    pad: Optional[PadFilter] = None
    custom: Tuple[str, ...] = ()


class AdvancedSettings(_FilterModel):
    """Extra engine arguments appended verbatim to the output options."""

    extra_args: Tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("extra_args", "extraArgs", "additionalArgs")
    )


# --- Preset and codec tables ------------------------------------------------


class PresetDefinition(BaseModel):
    """Named bundle of resolution, quality and filter parameters."""

    model_config = ConfigDict(frozen=True)

    width: Optional[int] = None
    height: Optional[int] = None
    quality: Optional[int] = None
    speed: Optional[str] = None
    filters: FilterSettings = Field(default_factory=FilterSettings)
    advanced: AdvancedSettings = Field(default_factory=AdvancedSettings)


class CodecDefaults(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int
    height: int
    quality: int
    speed: str


class CodecDefinition(BaseModel):
    """Engine codec with its quality bounds, accepted speeds and defaults."""

    model_config = ConfigDict(frozen=True)

    engine_codec_id: str
    quality_bounds: Tuple[int, int]
    speeds: Tuple[str, ...]
    extension: str = "mp4"
    defaults: CodecDefaults


class AudioCodecDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    engine_codec_id: str
    bitrates: Tuple[str, ...]
    default_bitrate: str


# --- Resolved spec ----------------------------------------------------------


class TranscodingSpec(BaseModel):
    """Fully resolved, immutable description of one transcode operation."""

    model_config = ConfigDict(frozen=True)

    input_path: str = Field(..., description="Local path of the staged input")
    preset_name: str
    video_codec: str = Field(..., description="Engine codec id, e.g. libsvtav1")
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    quality: int = Field(..., description="CRF value within the codec bounds")
    speed: str = Field(..., description="Encoder speed preset")
    filters: Tuple[str, ...] = Field(default=(), description="Ordered ffmpeg filter chain")
    extra_args: Tuple[str, ...] = ()
    audio_codec: str = "aac"
    audio_bitrate: str = "96k"
    container: str = "mp4"

    @property
    def filter_chain(self) -> str:
        """Filter chain as a single -vf argument."""
        return ",".join(self.filters)
