"""FastAPI application for rtmp-scheduler."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api import router as api_router
from .config import ensure_dirs
from .runtime import get_runtime
from .server import mcp

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    ensure_dirs()
    runtime = get_runtime()

    # Start the scheduling tick
    await runtime.scheduler.start()

    # Initialize MCP session manager (required for streamable HTTP)
    # This triggers mcp.streamable_http_app() to create session_manager
    mcp.streamable_http_app()
    try:
        async with mcp.session_manager.run():
            yield
    finally:
        await runtime.scheduler.stop()
        drained = await runtime.engine.drain()
        if drained:
            logger.info(f"Stopped {len(drained)} stream(s) on shutdown")
        await runtime.mirror.aclose()


# Create FastAPI app with lifespan
app = FastAPI(
    title="RTMP Scheduler",
    description="Scheduled RTMP live streaming of videos, playlists and URLs",
    version=__version__,
    lifespan=lifespan,
)

# Include REST API routes
app.include_router(api_router, prefix="/api", tags=["API"])

# Mount MCP server routes (streamable HTTP only, provides /mcp endpoint)
app.mount("/", mcp.streamable_http_app())


def main():
    """Run the server."""
    import uvicorn

    uvicorn.run(
        "rtmp_scheduler.app:app",
        host=os.environ.get("RTMP_SCHEDULER_HOST", "0.0.0.0"),
        port=int(os.environ.get("RTMP_SCHEDULER_PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    main()
