"""Data models for rtmp-scheduler."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class RecordStatus(str, Enum):
    """Lifecycle status of a streamable record (video or external job)."""

    LIBRARY = "library"
    SCHEDULED = "scheduled"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RecordStatus.COMPLETED, RecordStatus.FAILED, RecordStatus.CANCELLED})


def to_local_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class RecordModel(BaseModel):
    """Base for persisted records. Datetimes are stored as naive local time."""

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value):
        if isinstance(value, datetime):
            return to_local_naive(value)
        return value


class PlaylistStatus(str, Enum):
    """Playlist status."""

    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RecordKind(str, Enum):
    """Collections held by the record store."""

    VIDEO = "video"
    PLAYLIST = "playlist"
    EXTERNAL_JOB = "external_job"


class StreamTarget(BaseModel):
    """RTMP destination as entered by an operator (URL and key kept apart)."""

    rtmp_url: str | None = None
    stream_key: str | None = None

    def merged_over(self, fallback: StreamTarget) -> StreamTarget:
        """Fill missing fields from ``fallback``."""
        return StreamTarget(
            rtmp_url=self.rtmp_url or fallback.rtmp_url,
            stream_key=self.stream_key or fallback.stream_key,
        )


class Video(RecordModel):
    """A media file that can be streamed."""

    id: str
    title: str
    filename: str
    filepath: str
    filesize: int | None = Field(default=None, ge=0)
    duration: float | None = Field(default=None, ge=0)
    schedule_time: datetime | None = None
    stop_time: datetime | None = None
    playlist_id: str | None = None
    rtmp_url: str | None = None
    stream_key: str | None = None
    status: RecordStatus = RecordStatus.SCHEDULED
    progress: float = Field(default=0.0, ge=0, le=100)
    error_message: str | None = None
    uploaded_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    # Target actually used by the last stream (may come from an override)
    used_rtmp_url: str | None = None
    used_stream_key: str | None = None
    last_output_url: str | None = None
    loop: bool = False
    created_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    seq: int = 0

    @property
    def target(self) -> StreamTarget:
        return StreamTarget(rtmp_url=self.rtmp_url, stream_key=self.stream_key)


class Playlist(RecordModel):
    """An ordered sequence of videos streamed one after another."""

    id: str
    name: str
    description: str | None = None
    video_ids: list[str] = Field(default_factory=list)
    schedule_time: datetime
    rtmp_url: str | None = None
    stream_key: str | None = None
    status: PlaylistStatus = PlaylistStatus.SCHEDULED
    current_index: int = Field(default=0, ge=0)
    loop: bool = False
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    seq: int = 0

    @property
    def target(self) -> StreamTarget:
        return StreamTarget(rtmp_url=self.rtmp_url, stream_key=self.stream_key)

    @property
    def cycle_complete(self) -> bool:
        return self.current_index >= len(self.video_ids)


class ExternalJob(RecordModel):
    """A scheduled relay of a remote URL to an RTMP destination."""

    id: str
    source_url: str
    title: str | None = None
    rtmp_url: str
    stream_key: str
    schedule_time: datetime
    stop_time: datetime | None = None
    status: RecordStatus = RecordStatus.SCHEDULED
    progress: float = Field(default=0.0, ge=0, le=100)
    stream_id: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    last_output_url: str | None = None
    error_message: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    seq: int = 0

    @property
    def target(self) -> StreamTarget:
        return StreamTarget(rtmp_url=self.rtmp_url, stream_key=self.stream_key)


class PlaylistCursorState(BaseModel):
    """Snapshot the scheduler needs to sequence playlists."""

    running: list[Playlist] = Field(default_factory=list)
    due: list[Playlist] = Field(default_factory=list)


class TranscodeProfile(BaseModel):
    """Encoder settings applied to every outgoing stream."""

    video_codec: str = "libx264"
    preset: str = "veryfast"
    maxrate: str = "3000k"
    bufsize: str = "6000k"
    gop: int = 60
    pix_fmt: str = "yuv420p"
    max_width: int = 1920
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    output_format: str = "flv"
