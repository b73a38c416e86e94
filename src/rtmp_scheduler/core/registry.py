"""In-memory registry of active streaming jobs."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..errors import AlreadyActive
from ..models import RecordKind
from .targets import mask_output_url


class StreamKind(str, Enum):
    """What feeds a stream."""

    FILE = "file"
    URL = "url"


@dataclass
class RecordRef:
    """Points a job at the persisted record mirroring its lifecycle."""

    kind: RecordKind
    id: str


@dataclass
class StreamJob:
    """One currently executing (or just finished, not yet reaped) stream."""

    id: str
    kind: StreamKind
    output_target: str
    source: str
    record: RecordRef | None = None
    duration: float | None = None
    supervisor: Any = None
    started_at: datetime | None = None
    progress: float = 0.0
    stop_requested: bool = False
    last_progress_write: float = field(default_factory=time.monotonic)

    def snapshot(self) -> dict[str, Any]:
        return {
            "active": True,
            "id": self.id,
            "kind": self.kind.value,
            "source": self.source,
            "output_target": mask_output_url(self.output_target),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "progress": self.progress,
            "stop_requested": self.stop_requested,
        }


class ActiveJobRegistry:
    """
    Thread-safe map of stream id -> StreamJob.

    ``try_admit`` is the only way a job enters the registry, so at most one
    job exists per id no matter how many callers race to start it.
    """

    def __init__(self):
        self._jobs: dict[str, StreamJob] = {}
        self._lock = threading.Lock()

    def try_admit(
        self,
        stream_id: str,
        kind: StreamKind,
        output_target: str,
        source: str,
        record: RecordRef | None = None,
        duration: float | None = None,
    ) -> StreamJob:
        """Atomically insert a new job, raising AlreadyActive if the id is taken."""
        with self._lock:
            if stream_id in self._jobs:
                raise AlreadyActive(stream_id)
            job = StreamJob(
                id=stream_id,
                kind=kind,
                output_target=output_target,
                source=source,
                record=record,
                duration=duration,
            )
            self._jobs[stream_id] = job
            return job

    def get(self, stream_id: str) -> StreamJob | None:
        with self._lock:
            return self._jobs.get(stream_id)

    def remove(self, stream_id: str, expected: StreamJob | None = None) -> bool:
        """
        Remove a job.

        When ``expected`` is given the entry is only removed if it is that
        exact job, so a late callback cannot evict a newer job with the same id.
        """
        with self._lock:
            current = self._jobs.get(stream_id)
            if current is None:
                return False
            if expected is not None and current is not expected:
                return False
            del self._jobs[stream_id]
            return True

    def list_ids(self) -> set[str]:
        with self._lock:
            return set(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, stream_id: object) -> bool:
        with self._lock:
            return stream_id in self._jobs
