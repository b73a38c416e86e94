"""MCP server for rtmp-scheduler using FastMCP."""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings

from .errors import StreamError
from .models import RecordKind, StreamTarget
from .runtime import get_runtime

# Create FastMCP server instance
# Disable DNS rebinding protection to allow any Host header (for Docker/reverse proxy)
mcp = FastMCP(
    "rtmp-scheduler",
    transport_security=TransportSecuritySettings(enable_dns_rebinding_protection=False),
)

# =============================================================================
# TOOL USAGE GUIDANCE FOR AI ASSISTANTS:
#
# To go live with a registered video:
#   1. start_video     → Streams the video to its own (or the given) RTMP target
#   2. stream_status   → Check progress
#   3. stop_stream     → End early
#
# To relay a web video or live channel:
#   1. start_url       → Returns a stream_id
#   2. stop_stream     → Stop it with that stream_id
#
# Only one stream per video can run at a time.
# =============================================================================


@mcp.tool(name="rtmp_scheduler_start_video")
async def tool_start_video(
    video_id: str,
    rtmp_url: str | None = None,
    stream_key: str | None = None,
    force: bool = False,
) -> dict:
    """
    Start streaming a registered video now.

    The video's own RTMP URL and stream key are used unless given here.
    Scheduled videos start early only with force; library videos go live
    right away. Finished videos must be rescheduled through the REST API
    first. Returns once ffmpeg is running; the stream continues in the
    background.

    Args:
        video_id: Video record id
        rtmp_url: Override RTMP server URL (rtmp:// or rtmps://)
        stream_key: Override stream key
        force: Start a scheduled video before its schedule time
    """
    runtime = get_runtime()
    override = None
    if rtmp_url or stream_key:
        override = StreamTarget(rtmp_url=rtmp_url, stream_key=stream_key)
    try:
        job = await runtime.engine.start_video(video_id, override=override, force=force)
    except StreamError as e:
        return {"success": False, "error": str(e), "code": e.code}
    return {"success": True, "stream_id": job.id, "status": runtime.engine.status(job.id)}


@mcp.tool(name="rtmp_scheduler_start_url")
async def tool_start_url(source_url: str, rtmp_url: str, stream_key: str) -> dict:
    """
    Relay a remote video or live channel to an RTMP destination.

    Video pages (YouTube, Twitch, Vimeo, ...) are resolved to a direct
    media URL first; other URLs are passed to ffmpeg unchanged.

    Args:
        source_url: Page or media URL
        rtmp_url: RTMP server URL (rtmp:// or rtmps://)
        stream_key: Stream key
    """
    runtime = get_runtime()
    target = StreamTarget(rtmp_url=rtmp_url, stream_key=stream_key)
    try:
        job = await runtime.engine.start_url_stream(source_url, target)
    except StreamError as e:
        return {"success": False, "error": str(e), "code": e.code}
    return {"success": True, "stream_id": job.id}


@mcp.tool(name="rtmp_scheduler_stop_stream")
async def tool_stop_stream(stream_id: str) -> dict:
    """
    Stop an active stream.

    Args:
        stream_id: Video id or the stream_id returned by start_url
    """
    stopped = await get_runtime().engine.stop(stream_id)
    if not stopped:
        return {"success": False, "error": f"No active stream: {stream_id}"}
    return {"success": True, "stream_id": stream_id}


@mcp.tool(name="rtmp_scheduler_stream_status")
async def tool_stream_status(stream_id: str) -> dict:
    """
    Get the live status of a stream, plus the video record state if any.

    Args:
        stream_id: Video id or stream_id
    """
    runtime = get_runtime()
    status = runtime.engine.status(stream_id)
    video = runtime.store.get(RecordKind.VIDEO, stream_id)
    if video is not None:
        status["state"] = video.status.value
        status["persisted_progress"] = video.progress
    return status


@mcp.tool(name="rtmp_scheduler_list_active")
async def tool_list_active() -> dict:
    """List every active stream."""
    streams = get_runtime().engine.active_snapshots()
    return {"count": len(streams), "streams": streams}
