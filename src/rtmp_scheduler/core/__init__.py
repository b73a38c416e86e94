"""Core functionality for rtmp-scheduler."""

from .engine import StreamEngine, StreamOutcome
from .mirror import RecordMirror
from .probe import probe_duration
from .registry import ActiveJobRegistry, RecordRef, StreamJob, StreamKind
from .scheduler import StreamScheduler
from .store import StreamStore, new_record_id
from .supervisor import SupervisorCallbacks, TranscodeSupervisor, build_ffmpeg_command
from .targets import build_output_url, mask_output_url, parse_target, probe_target

__all__ = [
    "StreamEngine",
    "StreamOutcome",
    "StreamScheduler",
    # Registry
    "ActiveJobRegistry",
    "RecordRef",
    "StreamJob",
    "StreamKind",
    # Supervision
    "SupervisorCallbacks",
    "TranscodeSupervisor",
    "build_ffmpeg_command",
    # Targets
    "build_output_url",
    "mask_output_url",
    "parse_target",
    "probe_target",
    # Storage
    "StreamStore",
    "new_record_id",
    "RecordMirror",
    "probe_duration",
]
