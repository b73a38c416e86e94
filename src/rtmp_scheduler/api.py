"""REST API routes for rtmp-scheduler."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from . import __version__
from .config import get_media_dir
from .core import build_output_url, new_record_id, probe_duration, probe_target
from .errors import InvalidTarget, StreamError
from .models import (
    ExternalJob,
    Playlist,
    PlaylistStatus,
    RecordKind,
    RecordStatus,
    StreamTarget,
    Video,
)
from .runtime import Runtime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter()

RuntimeDep = Annotated[Runtime, Depends(get_runtime)]


def get_operator(x_operator: Annotated[str | None, Header()] = None) -> str | None:
    """Auth stub: the caller's name is taken from X-Operator without checks."""
    return x_operator


OperatorDep = Annotated[str | None, Depends(get_operator)]


def _http_error(e: StreamError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


def _validate_target(runtime: Runtime, rtmp_url: str | None, stream_key: str | None) -> None:
    """Reject a partially or wrongly specified target."""
    if not rtmp_url and not stream_key:
        return
    try:
        build_output_url(rtmp_url, stream_key, runtime.engine.min_key_length)
    except InvalidTarget as e:
        raise _http_error(e) from e


# Pydantic models for request bodies
class VideoCreateRequest(BaseModel):
    """Request body for registering a media file."""
    filepath: str
    title: str | None = None
    schedule_time: datetime | None = None
    stop_time: datetime | None = None
    rtmp_url: str | None = None
    stream_key: str | None = None
    loop: bool = False


class VideoUpdateRequest(BaseModel):
    """Request body for editing a video. Omitted fields are left unchanged."""
    title: str | None = Field(default=None, min_length=1)
    schedule_time: datetime | None = None
    stop_time: datetime | None = None
    rtmp_url: str | None = None
    stream_key: str | None = None
    status: RecordStatus | None = None
    loop: bool | None = None


class StartStreamRequest(BaseModel):
    """Request body for starting a video stream."""
    force: bool = False
    # RTMP details for instant live of library items
    rtmp_url: str | None = None
    stream_key: str | None = None


class PlaylistCreateRequest(BaseModel):
    """Request body for creating a playlist."""
    name: str = Field(min_length=1)
    description: str | None = None
    video_ids: list[str] = Field(min_length=1)
    schedule_time: datetime
    rtmp_url: str | None = None
    stream_key: str | None = None
    loop: bool = False


class PlaylistUpdateRequest(BaseModel):
    """Request body for editing a playlist. Omitted fields are left unchanged."""
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    video_ids: list[str] | None = Field(default=None, min_length=1)
    schedule_time: datetime | None = None
    rtmp_url: str | None = None
    stream_key: str | None = None
    loop: bool | None = None


class ExternalJobCreateRequest(BaseModel):
    """Request body for scheduling a URL relay."""
    source_url: str
    title: str | None = None
    rtmp_url: str
    stream_key: str
    schedule_time: datetime
    stop_time: datetime | None = None


class UrlStreamRequest(BaseModel):
    """Request body for an ad-hoc URL stream."""
    source_url: str
    rtmp_url: str
    stream_key: str


class RtmpTestRequest(BaseModel):
    """Request body for testing an RTMP destination."""
    rtmp_url: str
    stream_key: str


@router.get("/health")
async def health(runtime: RuntimeDep):
    """Health check and service info."""
    return {
        "name": "rtmp-scheduler",
        "version": __version__,
        "status": "healthy",
        "active_streams": len(runtime.registry),
        "scheduler_running": runtime.scheduler.running,
        "endpoints": {
            "api": "/api",
            "mcp": "/mcp",
            "docs": "/docs",
        },
    }


@router.get("/mirror/health")
async def mirror_health(runtime: RuntimeDep):
    """Secondary datastore configuration and connectivity."""
    return await runtime.mirror.get_status()


# =============================================================================
# Videos
# =============================================================================


@router.post("/videos", status_code=201)
async def api_create_video(request: VideoCreateRequest, runtime: RuntimeDep, operator: OperatorDep) -> Video:
    """
    Register a media file that already exists on disk.

    Relative paths are resolved against the media directory. Without a
    schedule time the video is a library item that can be started with
    instant live.
    """
    path = Path(request.filepath).expanduser()
    if not path.is_absolute():
        path = get_media_dir() / path
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"Video file not found: {path}")
    _validate_target(runtime, request.rtmp_url, request.stream_key)

    duration = await asyncio.to_thread(probe_duration, path)
    video = Video(
        id=new_record_id(),
        title=request.title or path.stem,
        filename=path.name,
        filepath=str(path),
        filesize=path.stat().st_size,
        duration=duration,
        schedule_time=request.schedule_time,
        stop_time=request.stop_time,
        rtmp_url=request.rtmp_url,
        stream_key=request.stream_key,
        status=RecordStatus.SCHEDULED if request.schedule_time else RecordStatus.LIBRARY,
        loop=request.loop,
        created_by=operator,
    )
    video = runtime.store.create(RecordKind.VIDEO, video)
    await runtime.mirror.sync_video(video)
    return video


@router.get("/videos")
async def api_list_videos(
    runtime: RuntimeDep,
    status: Annotated[
        RecordStatus | None,
        Query(description="Filter by status (library, scheduled, streaming, completed, failed, cancelled)"),
    ] = None,
) -> list[Video]:
    """List videos ordered by schedule time."""
    return runtime.store.list_records(RecordKind.VIDEO, status.value if status else None)


@router.get("/videos/{video_id}")
async def api_get_video(video_id: str, runtime: RuntimeDep) -> Video:
    """Get one video."""
    try:
        return runtime.store.find_streamable_by_id(RecordKind.VIDEO, video_id)
    except StreamError as e:
        raise _http_error(e) from e


@router.put("/videos/{video_id}")
async def api_update_video(video_id: str, request: VideoUpdateRequest, runtime: RuntimeDep) -> Video:
    """
    Edit a video that is not streaming.

    Setting ``status`` back to ``scheduled`` (optionally with a new
    schedule time) is how a finished video is queued again. ``streaming``
    can not be set by hand.
    """
    try:
        video = runtime.store.find_streamable_by_id(RecordKind.VIDEO, video_id)
    except StreamError as e:
        raise _http_error(e) from e
    if video.status == RecordStatus.STREAMING or video_id in runtime.registry:
        raise HTTPException(status_code=400, detail="Cannot update a streaming video")
    if request.status == RecordStatus.STREAMING:
        raise HTTPException(status_code=400, detail="Status streaming is only set by a running stream")

    changes = request.model_dump(exclude_none=True)
    if request.rtmp_url or request.stream_key:
        target = StreamTarget(rtmp_url=request.rtmp_url, stream_key=request.stream_key).merged_over(video.target)
        _validate_target(runtime, target.rtmp_url, target.stream_key)
    if changes.get("status", video.status) == RecordStatus.SCHEDULED and not changes.get(
        "schedule_time", video.schedule_time
    ):
        raise HTTPException(status_code=400, detail="A scheduled video needs a schedule time")

    try:
        video = runtime.store.update_fields(RecordKind.VIDEO, video_id, **changes)
    except StreamError as e:
        raise _http_error(e) from e
    await runtime.mirror.sync_video(video)
    return video


@router.delete("/videos/{video_id}")
async def api_delete_video(
    video_id: str,
    runtime: RuntimeDep,
    delete_file: Annotated[bool, Query(description="Also remove the media file from disk")] = False,
):
    """Delete a video, stopping its stream first if it is active."""
    try:
        video = runtime.store.find_streamable_by_id(RecordKind.VIDEO, video_id)
    except StreamError as e:
        raise _http_error(e) from e

    if video_id in runtime.registry:
        await runtime.engine.stop(video_id)

    if delete_file:
        try:
            Path(video.filepath).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete file {video.filepath}: {e}")

    runtime.store.delete(RecordKind.VIDEO, video_id)
    return {"success": True}


@router.post("/videos/{video_id}/stream/start")
async def api_start_video_stream(video_id: str, runtime: RuntimeDep, request: StartStreamRequest | None = None):
    """
    Start streaming a video.

    Scheduled videos refuse to start before their schedule time unless
    ``force`` is set. Library videos go live immediately with the RTMP
    details from the request (or their own).
    """
    request = request or StartStreamRequest()
    override = None
    if request.rtmp_url or request.stream_key:
        override = StreamTarget(rtmp_url=request.rtmp_url, stream_key=request.stream_key)
    try:
        video = runtime.store.find_streamable_by_id(RecordKind.VIDEO, video_id)
        job = await runtime.engine.start_video(video_id, override=override, force=request.force)
    except StreamError as e:
        raise _http_error(e) from e

    message = "Instant Live started" if video.status == RecordStatus.LIBRARY else "Stream started"
    return {"success": True, "message": message, "stream_id": job.id}


@router.post("/videos/{video_id}/stream/stop")
async def api_stop_video_stream(video_id: str, runtime: RuntimeDep):
    """Stop a streaming video."""
    try:
        video = runtime.store.find_streamable_by_id(RecordKind.VIDEO, video_id)
    except StreamError as e:
        raise _http_error(e) from e
    if video.status != RecordStatus.STREAMING:
        raise HTTPException(status_code=400, detail="Video is not streaming")
    if not await runtime.engine.stop(video_id):
        raise HTTPException(status_code=400, detail="No active stream process to stop")
    return {"success": True, "message": "Stream stop requested"}


@router.get("/videos/{video_id}/stream/status")
async def api_video_stream_status(video_id: str, runtime: RuntimeDep):
    """Persisted state combined with the live stream snapshot."""
    try:
        video = runtime.store.find_streamable_by_id(RecordKind.VIDEO, video_id)
    except StreamError as e:
        raise _http_error(e) from e

    status = runtime.engine.status(video_id)
    payload: dict[str, Any] = {
        "active": status["active"],
        "progress": video.progress,
        "state": video.status.value,
    }
    if status["active"]:
        payload["output_target"] = status["output_target"]
        payload["started_at"] = status["started_at"]
    return payload


# =============================================================================
# Playlists
# =============================================================================


@router.post("/playlists", status_code=201)
async def api_create_playlist(request: PlaylistCreateRequest, runtime: RuntimeDep, operator: OperatorDep) -> Playlist:
    """Create a playlist and link its videos to it."""
    store = runtime.store
    videos = [store.get(RecordKind.VIDEO, video_id) for video_id in request.video_ids]
    if any(video is None for video in videos):
        raise HTTPException(status_code=404, detail="One or more videos not found")
    if any(video.status == RecordStatus.STREAMING for video in videos):
        raise HTTPException(status_code=400, detail="Some videos are currently streaming and cannot be added")
    if any(video.status == RecordStatus.LIBRARY for video in videos) and not (request.rtmp_url and request.stream_key):
        raise HTTPException(
            status_code=400,
            detail="RTMP URL and Stream Key are required to stream library videos in a playlist",
        )
    _validate_target(runtime, request.rtmp_url, request.stream_key)

    playlist = Playlist(
        id=new_record_id(),
        name=request.name,
        description=request.description,
        video_ids=request.video_ids,
        schedule_time=request.schedule_time,
        rtmp_url=request.rtmp_url,
        stream_key=request.stream_key,
        loop=request.loop,
        created_by=operator,
    )
    playlist = store.create(RecordKind.PLAYLIST, playlist)
    for video_id in request.video_ids:
        store.update_fields(RecordKind.VIDEO, video_id, playlist_id=playlist.id)
    await runtime.mirror.sync_playlist(playlist)
    return playlist


@router.get("/playlists")
async def api_list_playlists(
    runtime: RuntimeDep,
    status: Annotated[PlaylistStatus | None, Query(description="Filter by status")] = None,
) -> list[Playlist]:
    """List playlists ordered by schedule time."""
    return runtime.store.list_records(RecordKind.PLAYLIST, status.value if status else None)


@router.get("/playlists/{playlist_id}")
async def api_get_playlist(playlist_id: str, runtime: RuntimeDep):
    """Get a playlist with its videos."""
    try:
        playlist = runtime.store.find_streamable_by_id(RecordKind.PLAYLIST, playlist_id)
    except StreamError as e:
        raise _http_error(e) from e
    videos = [runtime.store.get(RecordKind.VIDEO, video_id) for video_id in playlist.video_ids]
    return {**playlist.model_dump(mode="json"), "videos": [v.model_dump(mode="json") for v in videos if v]}


@router.put("/playlists/{playlist_id}")
async def api_update_playlist(playlist_id: str, request: PlaylistUpdateRequest, runtime: RuntimeDep) -> Playlist:
    """
    Edit a playlist that is not running.

    A new video list restarts the playlist from its first item and moves
    the playlist links: added videos are linked, dropped ones unlinked.
    """
    store = runtime.store
    try:
        playlist = store.find_streamable_by_id(RecordKind.PLAYLIST, playlist_id)
    except StreamError as e:
        raise _http_error(e) from e
    if playlist.status == PlaylistStatus.RUNNING:
        raise HTTPException(status_code=400, detail="Cannot modify a running playlist")

    changes = request.model_dump(exclude_none=True)
    target = StreamTarget(rtmp_url=request.rtmp_url, stream_key=request.stream_key).merged_over(playlist.target)
    if request.rtmp_url or request.stream_key:
        _validate_target(runtime, target.rtmp_url, target.stream_key)

    if request.video_ids is not None:
        videos = [store.get(RecordKind.VIDEO, video_id) for video_id in request.video_ids]
        if any(video is None for video in videos):
            raise HTTPException(status_code=404, detail="One or more videos not found")
        if any(video.status == RecordStatus.LIBRARY for video in videos) and not (target.rtmp_url and target.stream_key):
            raise HTTPException(
                status_code=400,
                detail="RTMP URL and Stream Key are required to stream library videos in a playlist",
            )
        changes["current_index"] = 0

    playlist = store.update_fields(RecordKind.PLAYLIST, playlist_id, **changes)

    if request.video_ids is not None:
        for video in store.find_videos_in_playlist(playlist_id):
            if video.id not in request.video_ids:
                store.update_fields(RecordKind.VIDEO, video.id, playlist_id=None)
        for video_id in request.video_ids:
            store.update_fields(RecordKind.VIDEO, video_id, playlist_id=playlist_id)

    await runtime.mirror.sync_playlist(playlist)
    return playlist


@router.post("/playlists/{playlist_id}/cancel")
async def api_cancel_playlist(playlist_id: str, runtime: RuntimeDep):
    """Cancel a playlist and unlink its videos."""
    try:
        playlist = runtime.store.update_status(RecordKind.PLAYLIST, playlist_id, PlaylistStatus.CANCELLED)
    except StreamError as e:
        raise _http_error(e) from e
    await runtime.mirror.sync_playlist(playlist)
    for video in runtime.store.find_videos_in_playlist(playlist_id):
        runtime.store.update_fields(RecordKind.VIDEO, video.id, playlist_id=None)
    return {"success": True}


# =============================================================================
# External URL jobs and ad-hoc streams
# =============================================================================


@router.post("/external-jobs", status_code=201)
async def api_create_external_job(
    request: ExternalJobCreateRequest, runtime: RuntimeDep, operator: OperatorDep
) -> ExternalJob:
    """Schedule a relay of a remote URL."""
    _validate_target(runtime, request.rtmp_url, request.stream_key)
    job = ExternalJob(id=new_record_id(), created_by=operator, **request.model_dump())
    job = runtime.store.create(RecordKind.EXTERNAL_JOB, job)
    await runtime.mirror.sync_external_job(job)
    return job


@router.get("/external-jobs")
async def api_list_external_jobs(
    runtime: RuntimeDep,
    status: Annotated[RecordStatus | None, Query(description="Filter by status")] = None,
) -> list[ExternalJob]:
    """List external jobs ordered by schedule time."""
    return runtime.store.list_records(RecordKind.EXTERNAL_JOB, status.value if status else None)


@router.post("/streams/url")
async def api_start_url_stream(request: UrlStreamRequest, runtime: RuntimeDep):
    """Relay a URL right away, without a persisted job."""
    target = StreamTarget(rtmp_url=request.rtmp_url, stream_key=request.stream_key)
    try:
        job = await runtime.engine.start_url_stream(request.source_url, target)
    except StreamError as e:
        raise _http_error(e) from e
    return {"success": True, "stream_id": job.id}


@router.get("/streams/active")
async def api_active_streams(runtime: RuntimeDep):
    """Active streams with the title and status of their records."""
    streams = []
    for snapshot in runtime.engine.active_snapshots():
        job = runtime.registry.get(snapshot["id"])
        if job is not None and job.record is not None:
            record = runtime.store.get(job.record.kind, job.record.id)
            if record is not None:
                snapshot["record"] = {
                    "kind": job.record.kind.value,
                    "id": record.id,
                    "title": record.title,
                    "status": record.status.value,
                }
        streams.append(snapshot)
    return {"count": len(streams), "streams": streams}


@router.get("/streams/{stream_id}/status")
async def api_stream_status(stream_id: str, runtime: RuntimeDep):
    """Live snapshot of any stream."""
    return runtime.engine.status(stream_id)


@router.post("/streams/{stream_id}/stop")
async def api_stop_stream(stream_id: str, runtime: RuntimeDep):
    """Stop any stream by id. Stopping an inactive stream is not an error."""
    stopped = await runtime.engine.stop(stream_id)
    return {"success": stopped, "stream_id": stream_id}


@router.post("/test-rtmp")
async def api_test_rtmp(request: RtmpTestRequest, runtime: RuntimeDep):
    """Check an RTMP destination is well-formed and reachable."""
    try:
        return await probe_target(request.rtmp_url, request.stream_key, min_key_length=runtime.engine.min_key_length)
    except InvalidTarget as e:
        raise _http_error(e) from e
