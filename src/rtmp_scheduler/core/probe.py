"""Media duration probing using PyAV."""

from __future__ import annotations

import logging
from pathlib import Path

import av

logger = logging.getLogger(__name__)


def probe_duration(video_path: str | Path) -> int | None:
    """
    Get the duration of a media file in whole seconds.

    Uses the container duration when present, otherwise the first video
    stream's duration.

    Args:
        video_path: Path to the media file

    Returns:
        Rounded duration in seconds, or None if it cannot be determined
    """
    video_path = Path(video_path)
    if not video_path.exists():
        return None

    try:
        with av.open(str(video_path)) as container:
            if container.duration is not None and container.duration > 0:
                return round(container.duration / av.time_base)

            for stream in container.streams.video:
                if stream.duration is not None and stream.time_base is not None:
                    return round(float(stream.duration * stream.time_base))
    except Exception as e:
        logger.warning(f"Failed to probe duration of {video_path}: {e}")

    return None
