"""Stream orchestration: the only place that admits jobs and drives supervisors."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable

from ..config import ResolverChain
from ..config.resolvers import default_resolvers
from ..config.settings import DEFAULT_STREAMING_CONFIG
from ..errors import (
    AlreadyActive,
    LaunchFailure,
    NotStartable,
    RecordNotFound,
    RuntimeFailure,
    SourceMissing,
    StreamError,
)
from ..models import RecordKind, RecordStatus, StreamTarget, TranscodeProfile
from .mirror import RecordMirror
from .registry import ActiveJobRegistry, RecordRef, StreamJob, StreamKind
from .store import StreamStore
from .supervisor import SupervisorCallbacks, TranscodeSupervisor, looks_like_error
from .targets import build_output_url, mask_output_url

logger = logging.getLogger(__name__)


class StreamOutcome(str, Enum):
    """How a supervised process ended."""

    ENDED = "ended"
    FAILED = "failed"


SupervisorFactory = Callable[[SupervisorCallbacks], Any]


class StreamEngine:
    """
    Starts, stops and reports on streams.

    Every job enters through ``ActiveJobRegistry.try_admit`` and every job,
    file or URL backed, leaves through ``_on_terminal``. Persisted records
    are the durable mirror of a job's lifecycle; supervisors never write
    them.

    Args:
        store: Record store
        registry: Active job registry shared with the scheduler
        mirror: Secondary datastore mirror (disabled by default)
        resolvers: Resolution chain for URL sources
        profile: Encoder settings for every outgoing stream
        config: Streaming settings, merged over the defaults
        supervisor_factory: Builds a supervisor from its callbacks
    """

    def __init__(
        self,
        store: StreamStore,
        registry: ActiveJobRegistry,
        mirror: RecordMirror | None = None,
        resolvers: ResolverChain | None = None,
        profile: TranscodeProfile | None = None,
        config: dict[str, Any] | None = None,
        supervisor_factory: SupervisorFactory | None = None,
    ):
        self.store = store
        self.registry = registry
        self.mirror = mirror or RecordMirror()
        self.profile = profile or TranscodeProfile()
        self.config = {**DEFAULT_STREAMING_CONFIG, **(config or {})}
        self.resolvers = resolvers or ResolverChain(default_resolvers(self.config["resolve_timeout"]))
        self.supervisor_factory = supervisor_factory or self._default_supervisor
        # Supervisors whose process has not reported its end yet,
        # including stopped ones already removed from the registry
        self._live_supervisors: set[Any] = set()

    @property
    def min_key_length(self) -> int:
        return int(self.config["min_stream_key_length"])

    @property
    def progress_write_interval(self) -> float:
        return float(self.config["progress_write_interval"])

    def _default_supervisor(self, callbacks: SupervisorCallbacks) -> TranscodeSupervisor:
        return TranscodeSupervisor(
            callbacks,
            ffmpeg_path=self.config["ffmpeg_path"],
            kill_timeout=float(self.config["stop_kill_timeout"]),
        )

    # -- starting ------------------------------------------------------------

    async def start_file_stream(self, video_id: str, override: StreamTarget | None = None) -> StreamJob:
        """
        Start streaming a video record's file.

        Returns once ffmpeg is running, never after the stream finished.

        Args:
            video_id: Video record id (also the stream id)
            override: Playlist-level or instant-live target; missing fields
                fall back to the video's own target

        Raises:
            RecordNotFound: No such video
            SourceMissing: The file is not on disk
            InvalidTarget: Bad RTMP URL or stream key
            AlreadyActive: The video is already streaming
            LaunchFailure: ffmpeg could not be spawned (record marked failed)
        """
        video = self.store.find_streamable_by_id(RecordKind.VIDEO, video_id)
        if not Path(video.filepath).is_file():
            raise SourceMissing(f"Video file not found: {video.filepath}")

        target = override.merged_over(video.target) if override else video.target
        output_target = build_output_url(target.rtmp_url, target.stream_key, self.min_key_length)

        job = self.registry.try_admit(
            video.id,
            StreamKind.FILE,
            output_target,
            video.filepath,
            record=RecordRef(RecordKind.VIDEO, video.id),
            duration=video.duration,
        )
        launch_fields = {"used_rtmp_url": target.rtmp_url, "used_stream_key": target.stream_key}
        await self._launch(job, video.filepath, launch_fields, loop_input=video.loop)
        return job

    async def start_video(
        self,
        video_id: str,
        override: StreamTarget | None = None,
        force: bool = False,
    ) -> StreamJob:
        """
        Handle an operator's start request for a video.

        Scheduled videos refuse to start before their schedule time unless
        ``force`` is set. Library videos go live immediately (instant live):
        the target and file are checked first, then the record is stamped
        ``scheduled`` with a schedule time, and restored if the start is
        rejected. Any other state is refused.

        Raises:
            NotStartable: Wrong state, too early, or no target for instant live
            plus everything ``start_file_stream`` raises
        """
        video = self.store.find_streamable_by_id(RecordKind.VIDEO, video_id)

        if video.status == RecordStatus.SCHEDULED:
            if not force and video.schedule_time and video.schedule_time > datetime.now():
                raise NotStartable("Not scheduled yet. Use force to start early.")
            return await self.start_file_stream(video_id, override=override)

        if video.status != RecordStatus.LIBRARY:
            raise NotStartable("Video is not in a startable state")

        target = (override or StreamTarget()).merged_over(video.target)
        if not target.rtmp_url or not target.stream_key:
            raise NotStartable("RTMP URL and Stream Key are required for Instant Live")
        build_output_url(target.rtmp_url, target.stream_key, self.min_key_length)
        if not Path(video.filepath).is_file():
            raise SourceMissing(f"Video file not found: {video.filepath}")
        if video.id in self.registry:
            raise AlreadyActive(video.id)

        self.store.update_status(
            RecordKind.VIDEO, video_id, RecordStatus.SCHEDULED, schedule_time=video.schedule_time or datetime.now()
        )
        try:
            return await self.start_file_stream(video_id, override=target)
        except LaunchFailure:
            # Already recorded as failed
            raise
        except StreamError:
            self.store.update_status(
                RecordKind.VIDEO, video_id, RecordStatus.LIBRARY, schedule_time=video.schedule_time
            )
            raise

    async def start_url_stream(
        self,
        source_url: str,
        target: StreamTarget,
        external_job_id: str | None = None,
    ) -> StreamJob:
        """
        Relay a remote URL to an RTMP target under a fresh stream token.

        Hosted video pages are resolved to a direct media URL first; if every
        resolver fails the original URL is handed to ffmpeg.

        Args:
            source_url: Page or media URL
            target: Destination
            external_job_id: External job record whose lifecycle this
                stream drives, if any
        """
        output_target = build_output_url(target.rtmp_url, target.stream_key, self.min_key_length)

        record = None
        if external_job_id is not None:
            self.store.find_streamable_by_id(RecordKind.EXTERNAL_JOB, external_job_id)
            record = RecordRef(RecordKind.EXTERNAL_JOB, external_job_id)

        resolved = await self.resolvers.resolve(source_url)

        job = self.registry.try_admit(
            f"url-{uuid.uuid4().hex[:16]}",
            StreamKind.URL,
            output_target,
            source_url,
            record=record,
            duration=resolved.duration,
        )
        await self._launch(job, resolved.url, {}, http_headers=resolved.http_headers)
        return job

    async def _launch(
        self,
        job: StreamJob,
        input_descriptor: str,
        launch_fields: dict[str, Any],
        loop_input: bool = False,
        http_headers: dict[str, str] | None = None,
    ) -> None:
        callbacks = SupervisorCallbacks(
            on_launch=partial(self._on_launch, job, launch_fields),
            on_progress=partial(self._on_progress, job),
            on_diagnostic_line=partial(self._on_diagnostic_line, job),
            on_end=partial(self._on_terminal, job, StreamOutcome.ENDED),
            on_error=partial(self._on_terminal, job, StreamOutcome.FAILED),
        )
        supervisor = self.supervisor_factory(callbacks)
        job.supervisor = supervisor
        self._live_supervisors.add(supervisor)

        logger.info(f"Starting {job.kind.value} stream {job.id} -> {mask_output_url(job.output_target)}")
        try:
            await supervisor.launch(
                input_descriptor,
                job.output_target,
                self.profile,
                loop_input=loop_input,
                http_headers=http_headers,
            )
        except LaunchFailure as e:
            self._live_supervisors.discard(supervisor)
            self.registry.remove(job.id, expected=job)
            logger.error(f"Launch failed for stream {job.id}: {e}")
            await self._record_failure(job, str(e))
            raise

    # -- supervisor callbacks -------------------------------------------------

    async def _on_launch(self, job: StreamJob, launch_fields: dict[str, Any], command_line: str) -> None:
        job.started_at = datetime.now()
        logger.debug(f"Stream {job.id} command: {command_line}")
        if job.record is None or job.stop_requested:
            return

        fields = {
            "started_at": job.started_at,
            "ended_at": None,
            "progress": 0,
            "error_message": None,
            "last_output_url": job.output_target,
            **launch_fields,
        }
        if job.record.kind == RecordKind.EXTERNAL_JOB:
            fields["stream_id"] = job.id

        try:
            record = self.store.update_status(job.record.kind, job.record.id, RecordStatus.STREAMING, **fields)
        except RecordNotFound:
            logger.warning(f"Record {job.record.id} disappeared before stream {job.id} went live")
            return
        except Exception as e:
            # ffmpeg is already running, its exit still goes through _on_terminal
            logger.error(f"Failed to mark {job.record.id} streaming: {e}", exc_info=True)
            return

        await self._mirror(job.record.kind, record)
        await self.mirror.insert_stream_event(
            job.record.id, "started", output_url=mask_output_url(job.output_target)
        )

    async def _on_progress(self, job: StreamJob, seconds: float) -> None:
        if not job.duration or job.duration <= 0:
            # Unknown length, keep elapsed seconds in memory only
            job.progress = seconds
            return

        percent = min(100, round(seconds / job.duration * 100))
        now = time.monotonic()
        changed = percent != job.progress
        job.progress = percent
        if not changed and now - job.last_progress_write < self.progress_write_interval:
            return
        job.last_progress_write = now

        if job.record is None or job.stop_requested:
            return
        try:
            self.store.update_fields(job.record.kind, job.record.id, progress=percent)
        except Exception as e:
            logger.debug(f"Progress write for {job.id} skipped: {e}")
            return
        if job.record.kind == RecordKind.VIDEO:
            await self.mirror.update_video_progress(job.record.id, percent)

    def _on_diagnostic_line(self, job: StreamJob, line: str) -> None:
        if looks_like_error(line):
            logger.warning(f"[{job.id}] {line}")
        else:
            logger.debug(f"[{job.id}] {line}")

    async def _on_terminal(self, job: StreamJob, outcome: StreamOutcome, reason: str | None = None) -> None:
        """Single exit path for every job kind."""
        self.registry.remove(job.id, expected=job)
        self._live_supervisors.discard(job.supervisor)

        if job.stop_requested:
            # Already recorded as cancelled by stop()
            logger.info(f"Stream {job.id} exited after stop")
            return

        if outcome == StreamOutcome.ENDED:
            logger.info(f"Stream {job.id} completed")
        else:
            logger.error(f"Stream {job.id} failed: {reason}")

        if job.record is None:
            return
        kind, record_id = job.record.kind, job.record.id

        # The record may have been deleted while streaming
        if not self.store.exists(kind, record_id):
            logger.info(f"Record {record_id} no longer exists, skipping terminal update")
            return

        ended_at = datetime.now()
        try:
            if outcome == StreamOutcome.ENDED:
                record = self.store.update_status(kind, record_id, RecordStatus.COMPLETED, progress=100, ended_at=ended_at)
            else:
                failure = RuntimeFailure(reason or "Streaming failed")
                record = self.store.update_status(
                    kind, record_id, RecordStatus.FAILED, error_message=str(failure), ended_at=ended_at
                )
        except RecordNotFound:
            logger.info(f"Record {record_id} deleted during terminal update")
            return
        except Exception as e:
            logger.error(f"Failed to record end of stream {job.id}: {e}", exc_info=True)
            return

        await self._mirror(kind, record)
        await self.mirror.insert_stream_event(
            record_id,
            "completed" if outcome == StreamOutcome.ENDED else "failed",
            progress=record.progress,
            message=reason,
        )

    async def _record_failure(self, job: StreamJob, reason: str) -> None:
        if job.record is None:
            return
        try:
            record = self.store.update_status(
                job.record.kind, job.record.id, RecordStatus.FAILED, error_message=reason, ended_at=datetime.now()
            )
        except RecordNotFound:
            return
        await self._mirror(job.record.kind, record)

    async def _mirror(self, kind: RecordKind, record: Any) -> None:
        if kind == RecordKind.VIDEO:
            await self.mirror.sync_video(record)
        elif kind == RecordKind.PLAYLIST:
            await self.mirror.sync_playlist(record)
        else:
            await self.mirror.sync_external_job(record)

    # -- stopping and status ------------------------------------------------------

    async def stop(self, stream_id: str) -> bool:
        """
        Stop an active stream.

        The linked record is marked cancelled right away; the process may
        take a moment longer to exit.

        Returns:
            False if nothing is streaming under ``stream_id``
        """
        job = self.registry.get(stream_id)
        if job is None:
            return False

        job.stop_requested = True
        if job.supervisor is not None:
            job.supervisor.request_stop()
        self.registry.remove(stream_id, expected=job)
        logger.info(f"Stop requested for stream {stream_id}")

        if job.record is None:
            return True
        try:
            record = self.store.update_status(
                job.record.kind, job.record.id, RecordStatus.CANCELLED, ended_at=datetime.now()
            )
        except RecordNotFound:
            logger.info(f"Record {job.record.id} no longer exists, nothing to cancel")
            return True
        except OSError as e:
            logger.error(f"Failed to mark {job.record.id} cancelled: {e}")
            return True

        await self._mirror(job.record.kind, record)
        await self.mirror.insert_stream_event(job.record.id, "stopped", progress=record.progress)
        return True

    def status(self, stream_id: str) -> dict[str, Any]:
        job = self.registry.get(stream_id)
        if job is None:
            return {"active": False, "id": stream_id}
        return job.snapshot()

    def list_active(self) -> list[str]:
        return sorted(self.registry.list_ids())

    def active_snapshots(self) -> list[dict[str, Any]]:
        snapshots = []
        for stream_id in self.list_active():
            job = self.registry.get(stream_id)
            if job is not None:
                snapshots.append(job.snapshot())
        return snapshots

    async def drain(self, timeout: float | None = None) -> list[str]:
        """
        Stop every active stream and wait for the processes to exit.

        Args:
            timeout: Seconds to wait for exits (defaults to shutdown_drain_timeout)

        Returns:
            Ids that were active when draining began
        """
        if timeout is None:
            timeout = float(self.config["shutdown_drain_timeout"])

        stream_ids = self.list_active()
        for stream_id in stream_ids:
            await self.stop(stream_id)

        pending = list(self._live_supervisors)
        if pending:
            logger.info(f"Waiting for {len(pending)} stream(s) to exit")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(s.wait() for s in pending), return_exceptions=True),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Streams still running after {timeout}s drain timeout")
        return stream_ids
