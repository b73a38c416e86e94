"""Periodic scheduling loop for videos, playlists and external jobs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import get_scheduler_config
from ..errors import AlreadyActive, RecordNotFound, StreamError
from ..models import Playlist, PlaylistStatus, RecordKind, RecordStatus
from .engine import StreamEngine
from .store import StreamStore

logger = logging.getLogger(__name__)


class StreamScheduler:
    """
    Drives autonomous streaming using APScheduler.

    Lifecycle:
    - start(): Register the tick job with the configured cron schedule
    - stop(): Gracefully shutdown scheduler

    Each tick runs, in order: the stop sweep, the playlist completion sweep
    and at most one admission. Admission only happens while nothing is
    streaming, so streaming is serialized system-wide.
    """

    def __init__(self, engine: StreamEngine, store: StreamStore):
        """Initialize the scheduler."""
        self.engine = engine
        self.store = store
        self.scheduler = AsyncIOScheduler()
        self._job_id = "stream_tick"

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    async def start(self):
        """Start the scheduler with current config."""
        config = get_scheduler_config()

        if not config["enabled"]:
            logger.info("Stream scheduler disabled in config")
            return

        schedule = config["schedule"]
        try:
            trigger = CronTrigger.from_crontab(schedule)
        except ValueError as e:
            logger.error(f"Invalid cron expression '{schedule}': {e}")
            return

        self.scheduler.add_job(
            self._run_tick,
            trigger=trigger,
            id=self._job_id,
            replace_existing=True,
            max_instances=1,  # Overlapping ticks are skipped
            coalesce=True,
        )

        self.scheduler.start()

        job = self.scheduler.get_job(self._job_id)
        if job:
            logger.info(f"Stream scheduler started, next tick: {job.next_run_time}")
        else:
            logger.warning("Stream scheduler started but job not found")

    async def stop(self):
        """Stop the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Stream scheduler stopped")

    async def _run_tick(self):
        """Execute one tick (internal wrapper with logging)."""
        try:
            result = await self.tick()
        except Exception as e:
            logger.error(f"Scheduler tick failed with exception: {e}", exc_info=True)
            return

        if result["stopped"] or result["started"] or result["failed"]:
            logger.info(
                f"Tick: stopped {result['stopped']}, started {result['started']}, failed {result['failed']}"
            )

    async def tick(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Run one scheduling pass.

        Returns:
            Summary dict with stopped ids, completed/looped playlist ids,
            and the started or failed candidate (if any)
        """
        now = now or datetime.now()
        result: dict[str, Any] = {
            "stopped": [],
            "playlists_completed": [],
            "playlists_looped": [],
            "started": None,
            "failed": None,
        }

        result["stopped"] = await self._stop_sweep(now)

        if len(self.engine.registry) > 0:
            return result

        completed, looped = await self._playlist_sweep(now)
        result["playlists_completed"] = completed
        result["playlists_looped"] = looped

        if len(self.engine.registry) > 0:
            return result

        await self._admit_one(now, result)
        return result

    # -- sweeps ----------------------------------------------------------------

    async def _stop_sweep(self, now: datetime) -> list[str]:
        stopped = []
        for video in self.store.find_streaming_past_stop(RecordKind.VIDEO, now):
            if await self.engine.stop(video.id):
                logger.info(f"Stopped video {video.id} at its stop time")
                stopped.append(video.id)

        for job in self.store.find_streaming_past_stop(RecordKind.EXTERNAL_JOB, now):
            if job.stream_id and await self.engine.stop(job.stream_id):
                logger.info(f"Stopped external job {job.id} at its stop time")
                stopped.append(job.stream_id)
        return stopped

    async def _playlist_sweep(self, now: datetime) -> tuple[list[str], list[str]]:
        completed, looped = [], []
        for playlist in self.store.find_playlist_cursor_state(now).running:
            if not playlist.cycle_complete:
                continue
            if playlist.loop:
                playlist = self.store.update_fields(RecordKind.PLAYLIST, playlist.id, current_index=0)
                logger.info(f"Playlist {playlist.id} looped back to its first item")
                looped.append(playlist.id)
            else:
                playlist = self.store.update_status(
                    RecordKind.PLAYLIST, playlist.id, PlaylistStatus.COMPLETED, ended_at=now
                )
                logger.info(f"Playlist {playlist.id} completed")
                completed.append(playlist.id)
            await self.engine.mirror.sync_playlist(playlist)
        return completed, looped

    # -- admission ---------------------------------------------------------------

    async def _admit_one(self, now: datetime, result: dict[str, Any]) -> None:
        """Attempt the first candidate in priority order; one attempt per tick."""
        cursor_state = self.store.find_playlist_cursor_state(now)

        for playlist in cursor_state.running:
            if not playlist.cycle_complete:
                await self._start_playlist_item(playlist, result)
                return

        if cursor_state.due:
            playlist = cursor_state.due[0]
            if playlist.video_ids:
                playlist = self.store.update_status(
                    RecordKind.PLAYLIST, playlist.id, PlaylistStatus.RUNNING, started_at=now, current_index=0
                )
                logger.info(f"Playlist {playlist.id} started")
                await self._start_playlist_item(playlist, result)
                return
            # Nothing to play
            playlist = self.store.update_status(RecordKind.PLAYLIST, playlist.id, PlaylistStatus.COMPLETED, ended_at=now)
            await self.engine.mirror.sync_playlist(playlist)

        videos = self.store.find_due_scheduled(RecordKind.VIDEO, now, standalone_only=True)
        if videos:
            await self._attempt(RecordKind.VIDEO, videos[0].id, self.engine.start_file_stream(videos[0].id), result)
            return

        jobs = self.store.find_due_scheduled(RecordKind.EXTERNAL_JOB, now)
        if jobs:
            job = jobs[0]
            await self._attempt(
                RecordKind.EXTERNAL_JOB,
                job.id,
                self.engine.start_url_stream(job.source_url, job.target, external_job_id=job.id),
                result,
            )

    async def _start_playlist_item(self, playlist: Playlist, result: dict[str, Any]) -> None:
        video_id = playlist.video_ids[playlist.current_index]
        if self.store.exists(RecordKind.VIDEO, video_id):
            attempted = await self._attempt(
                RecordKind.VIDEO,
                video_id,
                self.engine.start_file_stream(video_id, override=playlist.target),
                result,
            )
            if not attempted:
                return
        else:
            logger.warning(f"Playlist {playlist.id} item {video_id} no longer exists, skipping")
            result["failed"] = video_id

        # The cursor moves on even when the item failed
        playlist = self.store.update_fields(
            RecordKind.PLAYLIST, playlist.id, current_index=playlist.current_index + 1
        )
        await self.engine.mirror.sync_playlist(playlist)

    async def _attempt(self, kind: RecordKind, record_id: str, start: Awaitable[Any], result: dict[str, Any]) -> bool:
        """
        Await one start call and record its outcome.

        Returns:
            False if the candidate was busy (already streaming) and left untouched
        """
        try:
            job = await start
        except AlreadyActive as e:
            logger.warning(f"Skipping {kind.value} {record_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to start {kind.value} {record_id}: {e}", exc_info=not isinstance(e, StreamError))
            await self._mark_failed(kind, record_id, str(e))
            result["failed"] = record_id
            return True

        logger.info(f"Started {kind.value} {record_id} as stream {job.id}")
        result["started"] = record_id
        return True

    async def _mark_failed(self, kind: RecordKind, record_id: str, reason: str) -> None:
        try:
            record = self.store.update_status(
                kind, record_id, RecordStatus.FAILED, error_message=reason, ended_at=datetime.now()
            )
        except RecordNotFound:
            logger.info(f"{kind.value} {record_id} no longer exists, not marking failed")
            return
        if kind == RecordKind.VIDEO:
            await self.engine.mirror.sync_video(record)
        else:
            await self.engine.mirror.sync_external_job(record)
