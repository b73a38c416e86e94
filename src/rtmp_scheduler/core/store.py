"""JSON document store for videos, playlists and external jobs."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from ..config import get_records_dir
from ..errors import RecordNotFound
from ..models import (
    ExternalJob,
    Playlist,
    PlaylistCursorState,
    PlaylistStatus,
    RecordKind,
    RecordStatus,
    Video,
)

logger = logging.getLogger(__name__)

Record = Union[Video, Playlist, ExternalJob]

_COLLECTIONS: dict[RecordKind, tuple[str, type[BaseModel]]] = {
    RecordKind.VIDEO: ("videos", Video),
    RecordKind.PLAYLIST: ("playlists", Playlist),
    RecordKind.EXTERNAL_JOB: ("external_jobs", ExternalJob),
}


def new_record_id() -> str:
    """Generate an opaque 24-character record id."""
    return uuid.uuid4().hex[:24]


def _schedule_key(record: Any) -> tuple:
    return (record.schedule_time, record.seq)


class StreamStore:
    """
    Persists one JSON document per record.

    Structure: $DATA_DIR/records/{videos,playlists,external_jobs}/{id}.json

    All read-modify-write sequences hold one re-entrant lock, writes replace
    files atomically. Concurrent writers get last-write-wins semantics.
    """

    def __init__(self, root: Path | None = None):
        self.root = Path(root) if root is not None else get_records_dir()
        self._lock = threading.RLock()

    # -- low level ---------------------------------------------------------

    def _collection_dir(self, kind: RecordKind) -> Path:
        name, _ = _COLLECTIONS[kind]
        path = self.root / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _record_file(self, kind: RecordKind, record_id: str) -> Path:
        # ids are used as file names
        if not record_id or "/" in record_id or "\\" in record_id or record_id.startswith("."):
            raise RecordNotFound(f"Invalid {kind.value} id: {record_id!r}")
        return self._collection_dir(kind) / f"{record_id}.json"

    def _read(self, kind: RecordKind, path: Path) -> Record | None:
        _, model = _COLLECTIONS[kind]
        try:
            with open(path) as f:
                return model(**json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to read record file {path}: {e}")
            return None

    def _write(self, kind: RecordKind, record: Record) -> None:
        path = self._record_file(kind, record.id)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{record.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record.model_dump(mode="json"), f, indent=2, default=str)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _all(self, kind: RecordKind) -> list[Record]:
        records = []
        for path in self._collection_dir(kind).glob("*.json"):
            record = self._read(kind, path)
            if record is not None:
                records.append(record)
        return records

    # -- CRUD --------------------------------------------------------------

    def create(self, kind: RecordKind, record: Record) -> Record:
        """Insert a new record, assigning its arrival sequence number."""
        with self._lock:
            if self._record_file(kind, record.id).exists():
                raise ValueError(f"{kind.value} {record.id} already exists")
            seq = max((r.seq for r in self._all(kind)), default=0) + 1
            record = record.model_copy(update={"seq": seq})
            self._write(kind, record)
            return record

    def get(self, kind: RecordKind, record_id: str) -> Record | None:
        with self._lock:
            try:
                return self._read(kind, self._record_file(kind, record_id))
            except RecordNotFound:
                return None

    def save(self, kind: RecordKind, record: Record) -> Record:
        """Write back a full record, stamping ``updated_at``."""
        _, model = _COLLECTIONS[kind]
        with self._lock:
            data = record.model_dump()
            data["updated_at"] = datetime.now()
            record = model(**data)
            self._write(kind, record)
            return record

    def delete(self, kind: RecordKind, record_id: str) -> bool:
        with self._lock:
            try:
                path = self._record_file(kind, record_id)
            except RecordNotFound:
                return False
            if not path.exists():
                return False
            path.unlink()
            return True

    def list_records(self, kind: RecordKind, status: str | None = None) -> list[Record]:
        """List records sorted by schedule time then arrival order."""
        with self._lock:
            records = self._all(kind)
        if status:
            records = [r for r in records if r.status.value == status]
        return sorted(records, key=lambda r: (r.schedule_time or datetime.max, r.seq))

    # -- storage collaborator contract ---------------------------------------

    def find_streamable_by_id(self, kind: RecordKind, record_id: str) -> Record:
        """Get a record or raise RecordNotFound."""
        record = self.get(kind, record_id)
        if record is None:
            raise RecordNotFound(f"{kind.value.replace('_', ' ').capitalize()} not found: {record_id}")
        return record

    def exists(self, kind: RecordKind, record_id: str) -> bool:
        with self._lock:
            try:
                return self._record_file(kind, record_id).exists()
            except RecordNotFound:
                return False

    def update_fields(self, kind: RecordKind, record_id: str, **fields: Any) -> Record:
        """
        Set fields on an existing record (validated on write).

        Raises:
            RecordNotFound: If the record does not exist (e.g. deleted concurrently)
        """
        _, model = _COLLECTIONS[kind]
        with self._lock:
            record = self.find_streamable_by_id(kind, record_id)
            data = record.model_dump()
            data.update(fields)
            data["updated_at"] = datetime.now()
            record = model(**data)
            self._write(kind, record)
            return record

    def update_status(self, kind: RecordKind, record_id: str, status: RecordStatus | PlaylistStatus, **fields: Any) -> Record:
        """Transition a record's status along with timestamps/progress/error fields."""
        return self.update_fields(kind, record_id, status=status, **fields)

    def find_due_scheduled(self, kind: RecordKind, now: datetime, standalone_only: bool = False) -> list[Record]:
        """
        Scheduled records whose schedule time has passed, earliest first.

        Args:
            kind: VIDEO, PLAYLIST or EXTERNAL_JOB
            now: Reference time
            standalone_only: For videos, skip those attached to a playlist
        """
        with self._lock:
            records = self._all(kind)
        due = [
            r for r in records
            if r.status.value == "scheduled" and r.schedule_time is not None and r.schedule_time <= now
        ]
        if standalone_only:
            due = [r for r in due if not getattr(r, "playlist_id", None)]
        return sorted(due, key=_schedule_key)

    def find_streaming_past_stop(self, kind: RecordKind, now: datetime) -> list[Record]:
        """Streaming records whose planned stop time has elapsed."""
        with self._lock:
            records = self._all(kind)
        return [
            r for r in records
            if r.status == RecordStatus.STREAMING and r.stop_time is not None and r.stop_time <= now
        ]

    def find_playlist_cursor_state(self, now: datetime) -> PlaylistCursorState:
        """Running playlists (longest idle first) and due scheduled playlists (earliest first)."""
        with self._lock:
            playlists = self._all(RecordKind.PLAYLIST)
        running = sorted(
            (p for p in playlists if p.status == PlaylistStatus.RUNNING),
            key=lambda p: (p.updated_at, p.seq),
        )
        due = sorted(
            (p for p in playlists if p.status == PlaylistStatus.SCHEDULED and p.schedule_time <= now),
            key=_schedule_key,
        )
        return PlaylistCursorState(running=running, due=due)

    def find_external_job_by_stream_id(self, stream_id: str) -> ExternalJob | None:
        with self._lock:
            jobs = self._all(RecordKind.EXTERNAL_JOB)
        for job in jobs:
            if job.stream_id == stream_id:
                return job
        return None

    def find_videos_in_playlist(self, playlist_id: str) -> list[Video]:
        with self._lock:
            videos = self._all(RecordKind.VIDEO)
        return [v for v in videos if v.playlist_id == playlist_id]
