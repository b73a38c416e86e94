"""Tests for the MCP tools."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from rtmp_scheduler import server
from rtmp_scheduler.core.scheduler import StreamScheduler
from rtmp_scheduler.models import RecordKind, RecordStatus
from rtmp_scheduler.runtime import Runtime, set_runtime


@pytest.fixture(autouse=True)
def runtime(engine, store, registry):
    runtime = Runtime(
        store=store,
        registry=registry,
        mirror=engine.mirror,
        engine=engine,
        scheduler=StreamScheduler(engine, store),
    )
    set_runtime(runtime)
    yield runtime
    set_runtime(None)


@pytest.mark.asyncio
async def test_start_stop_video(make_video):
    video = make_video()

    result = await server.tool_start_video(video.id)
    assert result["success"] is True
    assert result["status"]["active"] is True

    status = await server.tool_stream_status(video.id)
    assert status["state"] == "streaming"

    listed = await server.tool_list_active()
    assert listed["count"] == 1

    assert (await server.tool_stop_stream(video.id))["success"] is True
    assert (await server.tool_stop_stream(video.id))["success"] is False
    assert (await server.tool_stream_status(video.id))["state"] == "cancelled"


@pytest.mark.asyncio
async def test_start_video_errors_are_returned(make_video):
    video = make_video()
    await server.tool_start_video(video.id)

    # The record is now streaming, so a second start is refused
    result = await server.tool_start_video(video.id)
    assert result == {"success": False, "error": "Video is not in a startable state", "code": "not_startable"}

    result = await server.tool_start_video("missing")
    assert result["success"] is False
    assert result["code"] == "not_found"


@pytest.mark.asyncio
async def test_start_video_override(make_video, fake_supervisors):
    video = make_video()

    await server.tool_start_video(video.id, stream_key="override-key-1")

    assert fake_supervisors.last.launch_args["output"] == "rtmp://live.example.com/app/override-key-1"


@pytest.mark.asyncio
async def test_start_url():
    result = await server.tool_start_url(
        "https://cdn.example.com/live/index.m3u8", "rtmp://live.example.com/app", "abcd-1234-efgh"
    )
    assert result["success"] is True
    assert result["stream_id"].startswith("url-")

    result = await server.tool_start_url("https://cdn.example.com/x.mp4", "udp://x", "abcd-1234-efgh")
    assert result == {"success": False, "error": "Invalid RTMP URL", "code": "invalid_target"}


@pytest.mark.asyncio
async def test_start_completed_video_refused(store, make_video, fake_supervisors):
    video = make_video(status=RecordStatus.COMPLETED)

    result = await server.tool_start_video(video.id)

    assert result["success"] is False
    assert result["code"] == "not_startable"
    assert fake_supervisors.created == []
    assert store.get(RecordKind.VIDEO, video.id).status == RecordStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_early_video_needs_force(make_video):
    video = make_video(schedule_time=datetime.now() + timedelta(hours=1))

    result = await server.tool_start_video(video.id)
    assert result["code"] == "not_startable"

    result = await server.tool_start_video(video.id, force=True)
    assert result["success"] is True


@pytest.mark.asyncio
async def test_library_video_goes_live(store, make_video):
    video = make_video(status=RecordStatus.LIBRARY)
    store.update_fields(RecordKind.VIDEO, video.id, schedule_time=None)

    result = await server.tool_start_video(video.id)

    assert result["success"] is True
    saved = store.get(RecordKind.VIDEO, video.id)
    assert saved.status == RecordStatus.STREAMING
    assert saved.schedule_time is not None
