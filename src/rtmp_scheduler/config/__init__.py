"""Configuration module for rtmp-scheduler."""

from .settings import (
    ensure_dirs,
    get_config_dir,
    get_config_file,
    get_data_dir,
    get_media_dir,
    get_mirror_config,
    get_records_dir,
    get_scheduler_config,
    get_streaming_config,
    get_transcode_profile,
    load_config,
    save_config,
)
from .resolvers import ResolvedSource, ResolverChain, match_resolver

__all__ = [
    "ensure_dirs",
    "get_config_dir",
    "get_config_file",
    "get_data_dir",
    "get_media_dir",
    "get_mirror_config",
    "get_records_dir",
    "get_scheduler_config",
    "get_streaming_config",
    "get_transcode_profile",
    "load_config",
    "save_config",
    "ResolvedSource",
    "ResolverChain",
    "match_resolver",
]
