"""Basic settings and directory management."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir, user_data_dir

from ..models import TranscodeProfile


def get_config_dir() -> Path:
    """Get the configuration directory."""
    return Path(os.environ.get("RTMP_SCHEDULER_CONFIG_DIR", user_config_dir("rtmp-scheduler")))


def get_data_dir() -> Path:
    """Get the data directory for storing records."""
    return Path(os.environ.get("RTMP_SCHEDULER_DATA_DIR", user_data_dir("rtmp-scheduler")))


def get_media_dir() -> Path:
    """Get the default directory holding media files."""
    default = Path.home() / "Videos" / "rtmp-scheduler"
    return Path(os.environ.get("RTMP_SCHEDULER_MEDIA_DIR", str(default)))


def get_records_dir() -> Path:
    """Get the directory holding persisted video/playlist/job records."""
    return get_data_dir() / "records"


def get_config_file() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from file."""
    config: dict[str, Any] = {}
    config_file = get_config_file()
    if config_file.exists():
        with open(config_file) as f:
            config = json.load(f)
    return config


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(config, f, indent=2)


def ensure_dirs() -> None:
    """Ensure all required directories exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_data_dir().mkdir(parents=True, exist_ok=True)
    get_media_dir().mkdir(parents=True, exist_ok=True)
    get_records_dir().mkdir(parents=True, exist_ok=True)


# Scheduling loop configuration
DEFAULT_SCHEDULER_CONFIG = {
    "enabled": True,
    "schedule": "* * * * *",  # Every minute
}

DEFAULT_STREAMING_CONFIG = {
    "ffmpeg_path": "ffmpeg",
    "min_stream_key_length": 8,
    "progress_write_interval": 1.0,  # seconds
    "stop_kill_timeout": 10.0,  # seconds, 0 disables SIGKILL escalation
    "shutdown_drain_timeout": 15.0,
    "resolve_timeout": 20,
}

DEFAULT_TRANSCODE_CONFIG: dict[str, Any] = TranscodeProfile().model_dump()


def _merged(section: str, defaults: dict[str, Any]) -> dict[str, Any]:
    config = load_config()
    return {**defaults, **config.get(section, {})}


def get_scheduler_config() -> dict[str, Any]:
    """Get scheduling loop configuration with defaults."""
    return _merged("scheduler", DEFAULT_SCHEDULER_CONFIG)


def get_streaming_config() -> dict[str, Any]:
    """Get streaming engine configuration with defaults.

    ``FFMPEG_PATH`` in the environment takes precedence over the file.
    """
    streaming = _merged("streaming", DEFAULT_STREAMING_CONFIG)
    if os.environ.get("FFMPEG_PATH"):
        streaming["ffmpeg_path"] = os.environ["FFMPEG_PATH"]
    return streaming


def get_transcode_profile() -> TranscodeProfile:
    """Get the encoder profile used for outgoing streams."""
    return TranscodeProfile(**_merged("transcode", DEFAULT_TRANSCODE_CONFIG))


def get_mirror_config() -> dict[str, Any]:
    """Get secondary datastore (Supabase) mirror configuration."""
    defaults = {
        "url": os.environ.get("SUPABASE_URL", ""),
        "service_key": os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
        "timeout": 5.0,
    }
    return _merged("mirror", defaults)
