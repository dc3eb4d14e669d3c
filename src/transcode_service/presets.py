"""
Quality preset resolution.

This module turns a named quality preset plus an optional codec and
overrides into a concrete, immutable TranscodingSpec:
- Preset values take priority over codec defaults
- Non-empty filter/advanced overrides replace the preset's value wholesale
- Every resolved value is validated; invalid input is never defaulted
- The filter chain is always emitted in a fixed order
"""

import math
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidCodec, InvalidParameter, InvalidPreset
from .models import (
    AdvancedSettings,
    AudioCodecDefinition,
    CodecDefaults,
    CodecDefinition,
    FilterSettings,
    PresetDefinition,
    ScaleFilter,
    TranscodingSpec,
)

DEFAULT_CODEC = "av1"
DEFAULT_AUDIO_CODEC = "aac"

_AV1_GOP_30 = "hierarchical-levels=2:keyint=90:lookahead=11:lp=10:scm=0:enable-tf=0"
_AV1_GOP_60 = "hierarchical-levels=3:keyint=180:lookahead=11:lp=14:scm=0"

PRESETS: Dict[str, PresetDefinition] = {
    "1080p60av1": PresetDefinition(
        width=1920,
        height=1080,
        quality=49,
        speed="10",
        filters=FilterSettings(framerate=60),
        advanced=AdvancedSettings(extra_args=("-svtav1-params", _AV1_GOP_60)),
    ),
    "1080p30av1": PresetDefinition(
        width=1920,
        height=1080,
        quality=49,
        speed="10",
        filters=FilterSettings(framerate=30),
        advanced=AdvancedSettings(extra_args=("-svtav1-params", _AV1_GOP_30)),
    ),
    "720p30av1": PresetDefinition(
        width=1280,
        height=720,
        quality=49,
        speed="12",
        filters=FilterSettings(framerate=30),
        advanced=AdvancedSettings(extra_args=("-svtav1-params", _AV1_GOP_30)),
    ),
}

VIDEO_CODECS: Dict[str, CodecDefinition] = {
    "av1": CodecDefinition(
        engine_codec_id="libsvtav1",
        quality_bounds=(0, 63),
        speeds=tuple(str(n) for n in range(14)),
        defaults=CodecDefaults(width=896, height=504, quality=60, speed="12"),
    ),
    "h264": CodecDefinition(
        engine_codec_id="libx264",
        quality_bounds=(0, 51),
        speeds=(
            "ultrafast",
            "superfast",
            "veryfast",
            "faster",
            "fast",
            "medium",
            "slow",
            "slower",
            "veryslow",
        ),
        defaults=CodecDefaults(width=1280, height=720, quality=23, speed="medium"),
    ),
}

AUDIO_CODECS: Dict[str, AudioCodecDefinition] = {
    "aac": AudioCodecDefinition(
        engine_codec_id="aac",
        bitrates=("96k", "128k", "320k"),
        default_bitrate="96k",
    ),
}

# Seconds of wall clock per second of media, by encoder speed
_SPEED_MULTIPLIERS = {
    "ultrafast": 0.1,
    "superfast": 0.15,
    "veryfast": 0.2,
    "faster": 0.25,
    "fast": 0.3,
    "medium": 0.5,
    "slow": 1.0,
    "slower": 1.5,
    "veryslow": 2.0,
}


def available_presets() -> List[str]:
    """Sorted names of all known quality presets."""
    return sorted(PRESETS)


def get_preset(preset_name: Optional[str]) -> PresetDefinition:
    """Look up a preset by name.

    Raises:
        InvalidPreset: If the name is empty or unknown
    """
    if not preset_name or preset_name not in PRESETS:
        raise InvalidPreset(preset_name or "", PRESETS)
    return PRESETS[preset_name]


def get_codec(codec_name: Optional[str]) -> CodecDefinition:
    """Look up a video codec by name.

    Raises:
        InvalidCodec: If the name is empty or unknown
    """
    if not codec_name or codec_name not in VIDEO_CODECS:
        raise InvalidCodec(codec_name or "", VIDEO_CODECS)
    return VIDEO_CODECS[codec_name]


def generate_scale_filter(scale: ScaleFilter) -> str:
    """Build the ffmpeg scale filter for a target frame size."""
    opts = scale.options
    if opts.maintain_aspect_ratio and not opts.force:
        return (
            f"scale={scale.width}:{scale.height}"
            f":force_original_aspect_ratio=decrease:flags={opts.algorithm}"
        )
    return f"scale={scale.width}:{scale.height}:flags={opts.algorithm}"


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def build_filter_chain(filters: FilterSettings) -> tuple:
    """Build the ordered filter chain.

    Order: scale, framerate, deinterlace, denoise, crop, pad, custom. Each
    filter operates on the output of the previous one, so a crop after a
    scale crops the scaled frame.
    """
    chain = []

    if filters.scale:
        chain.append(generate_scale_filter(filters.scale))

    if filters.framerate:
        chain.append(f"fps={_format_number(filters.framerate)}")

    if filters.deinterlace:
        chain.append("yadif")

    if filters.denoise:
        strength = filters.denoise.strength
        chain.append(f"hqdn3d={strength}" if strength else "hqdn3d")

    if filters.crop:
        c = filters.crop
        chain.append(f"crop={c.width}:{c.height}:{c.x}:{c.y}")

    if filters.pad:
        p = filters.pad
        chain.append(f"pad={p.width}:{p.height}:{p.x}:{p.y}:{p.color}")

    chain.extend(filters.custom)
    return tuple(chain)


def _first_error_field(exc: PydanticValidationError, prefix: str) -> InvalidParameter:
    error = exc.errors()[0]
    loc = ".".join(str(part) for part in error.get("loc", ()))
    field = f"{prefix}.{loc}" if loc else prefix
    return InvalidParameter(field, error.get("msg", "invalid value"))


def parse_filter_overrides(overrides: Mapping[str, Any]) -> FilterSettings:
    """Validate a caller-supplied filter mapping.

    Raises:
        InvalidParameter: Naming the first offending field
    """
    try:
        return FilterSettings.model_validate(dict(overrides))
    except PydanticValidationError as e:
        raise _first_error_field(e, "filters") from e


def parse_advanced_overrides(overrides: Mapping[str, Any]) -> AdvancedSettings:
    """Validate a caller-supplied advanced-argument mapping."""
    try:
        return AdvancedSettings.model_validate(dict(overrides))
    except PydanticValidationError as e:
        raise _first_error_field(e, "advanced") from e


def _require_positive(field: str, value: Optional[float]) -> None:
    if value is None or value <= 0:
        raise InvalidParameter(field, f"must be a positive number, got {value!r}")


def resolve(
    input_locator: str,
    preset_name: str,
    codec_name: Optional[str] = None,
    filter_overrides: Optional[Mapping[str, Any]] = None,
    advanced_overrides: Optional[Mapping[str, Any]] = None,
    audio_codec_name: str = DEFAULT_AUDIO_CODEC,
) -> TranscodingSpec:
    """
    Resolve a preset into a concrete transcoding specification.

    Args:
        input_locator: Path (or key) of the input media
        preset_name: Quality preset name, e.g. "720p30av1"
        codec_name: Video codec name (default: av1)
        filter_overrides: Filter mapping replacing the preset's filters
        advanced_overrides: Advanced mapping replacing the preset's extra args
        audio_codec_name: Audio codec name (default: aac)

    Returns:
        Immutable TranscodingSpec; identical inputs yield identical specs

    Raises:
        InvalidPreset, InvalidCodec, InvalidParameter
    """
    if not input_locator or not str(input_locator).strip():
        raise InvalidParameter("input", "input locator must be a non-empty string")

    preset = get_preset(preset_name)
    codec = get_codec(codec_name or DEFAULT_CODEC)

    audio = AUDIO_CODECS.get(audio_codec_name)
    if audio is None:
        raise InvalidCodec(audio_codec_name, AUDIO_CODECS)

    # Empty overrides fall back to the preset; non-empty ones replace it
    filters = parse_filter_overrides(filter_overrides) if filter_overrides else preset.filters
    advanced = (
        parse_advanced_overrides(advanced_overrides) if advanced_overrides else preset.advanced
    )

    width = preset.width if preset.width is not None else codec.defaults.width
    height = preset.height if preset.height is not None else codec.defaults.height
    quality = preset.quality if preset.quality is not None else codec.defaults.quality
    speed = preset.speed if preset.speed is not None else codec.defaults.speed

    _require_positive("width", width)
    _require_positive("height", height)
    if filters.framerate is not None:
        _require_positive("filters.framerate", filters.framerate)

    low, high = codec.quality_bounds
    if not low <= quality <= high:
        raise InvalidParameter("quality", f"{quality} is outside the codec range {low}-{high}")

    if speed not in codec.speeds:
        raise InvalidParameter(
            "speed", f"{speed!r} is not accepted by {codec.engine_codec_id}"
        )

    return TranscodingSpec(
        input_path=str(input_locator),
        preset_name=preset_name,
        video_codec=codec.engine_codec_id,
        width=width,
        height=height,
        quality=quality,
        speed=speed,
        filters=build_filter_chain(filters),
        extra_args=tuple(advanced.extra_args),
        audio_codec=audio.engine_codec_id,
        audio_bitrate=audio.default_bitrate,
        container=codec.extension,
    )


def estimate_transcode_seconds(duration_s: float, spec: TranscodingSpec) -> int:
    """Rough wall-clock estimate for logging; not used for scheduling."""
    multiplier = _SPEED_MULTIPLIERS.get(spec.speed, 0.5)
    resolution_multiplier = 1.2 if spec.width and spec.height else 1.0
    return math.ceil(duration_s * multiplier * resolution_multiplier)
