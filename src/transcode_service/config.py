import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .models import ServiceConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> (section, key)
ENV_OVERRIDES: Dict[str, Tuple[str, str]] = {
    "TRANSCODE_HOST": ("server", "host"),
    "TRANSCODE_PORT": ("server", "port"),
    "TRANSCODE_DATABASE_URL": ("database", "url"),
    "TRANSCODE_BLOB_BACKEND": ("blob_store", "backend"),
    "TRANSCODE_BLOB_ROOT": ("blob_store", "local_root"),
    "AWS_S3_BUCKET_NAME": ("blob_store", "bucket"),
    "AWS_REGION": ("blob_store", "region"),
    "AWS_ENDPOINT": ("blob_store", "endpoint_url"),
    "AWS_ACCESS_KEY_ID": ("blob_store", "access_key_id"),
    "AWS_SECRET_ACCESS_KEY": ("blob_store", "secret_access_key"),
    "TRANSCODE_TEMP_DIR": ("worker", "temp_dir"),
    "TRANSCODE_CALLBACK_URL": ("worker", "callback_base_url"),
    "TRANSCODE_FFMPEG_PATH": ("engine", "ffmpeg_path"),
    "TRANSCODE_FFPROBE_PATH": ("engine", "ffprobe_path"),
    "TRANSCODE_LOG_LEVEL": ("logging", "level"),
}


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect known environment variables into a nested config dict."""
    overrides: Dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(name)
        if value is not None and value != "":
            overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceConfig:
    """
    Resolve config: Default < Local < Environment < explicit overrides.
    Returns validated Pydantic ServiceConfig model.
    """
    environ = os.environ if environ is None else environ

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))
    if overrides:
        config_data = merge_dicts(config_data, overrides)

    return ServiceConfig.from_dict(config_data)


def configure_logging(config: ServiceConfig) -> None:
    """Configure the root logger once per process (API server or worker)."""
    logging.basicConfig(
        level=config.logging.level.upper(),
        format=config.logging.format,
    )
