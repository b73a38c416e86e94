"""
Source resolver configuration - URL matching and resolution strategies.

This is "code as configuration" - modify this file to customize how
external URLs are turned into something ffmpeg can pull directly.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Hosts whose page URLs need resolving to a media URL before ffmpeg can read them
HOSTED_VIDEO_DOMAINS = (
    "youtube.com",
    "youtu.be",
    "twitch.tv",
    "vimeo.com",
    "twitter.com",
    "x.com",
    "bilibili.com",
    "b23.tv",
    "dailymotion.com",
    "facebook.com",
)


def match_resolver(url: str) -> str:
    """
    Match URL to a resolver family.

    Args:
        url: Source URL

    Returns:
        "yt-dlp" for known video-hosting pages, "direct" for everything else
    """
    host = urlparse(url).netloc.lower().split(":")[0]

    for domain in HOSTED_VIDEO_DOMAINS:
        if host == domain or host.endswith("." + domain):
            return "yt-dlp"

    return "direct"


@dataclass
class ResolvedSource:
    """A directly fetchable media reference."""

    url: str
    strategy: str
    http_headers: dict[str, str] = field(default_factory=dict)
    is_live: bool | None = None
    duration: float | None = None


class SourceResolver:
    """One resolution strategy. ``resolve`` is blocking and runs in a worker thread."""

    name = "resolver"

    def resolve(self, url: str) -> ResolvedSource | None:
        raise NotImplementedError


class YtDlpResolver(SourceResolver):
    """Resolve with the yt-dlp python API using a format selector."""

    def __init__(self, format_spec: str, name: str, socket_timeout: float = 20):
        self.format_spec = format_spec
        self.name = name
        self.socket_timeout = socket_timeout

    def resolve(self, url: str) -> ResolvedSource | None:
        import yt_dlp

        ydl_opts: dict[str, Any] = {
            "format": self.format_spec,
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": self.socket_timeout,
        }

        try:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except yt_dlp.utils.DownloadError as e:
            logger.info(f"{self.name} could not resolve {url}: {e}")
            return None

        if not info:
            return None

        # Merged formats (separate audio/video) have no single url
        direct_url = info.get("url")
        if not direct_url:
            return None

        return ResolvedSource(
            url=direct_url,
            strategy=self.name,
            http_headers=dict(info.get("http_headers") or {}),
            is_live=info.get("is_live"),
            duration=info.get("duration"),
        )


class StreamlinkResolver(SourceResolver):
    """Resolve with the streamlink CLI, when installed."""

    name = "streamlink"

    def __init__(self, quality: str = "best", timeout: float = 15):
        self.quality = quality
        self.timeout = timeout

    def resolve(self, url: str) -> ResolvedSource | None:
        if shutil.which("streamlink") is None:
            logger.debug("streamlink not installed, skipping")
            return None

        try:
            result = subprocess.run(
                ["streamlink", "--stream-url", url, self.quality],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"streamlink timed out for {url}")
            return None

        if result.returncode != 0:
            logger.info(f"streamlink failed (rc={result.returncode}) for {url}: {result.stderr.strip()[:200]}")
            return None

        resolved = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        if not resolved.startswith("http"):
            return None
        return ResolvedSource(url=resolved, strategy=self.name)


class PassthroughResolver(SourceResolver):
    """Hand the original URL to ffmpeg unchanged."""

    name = "passthrough"

    def resolve(self, url: str) -> ResolvedSource:
        return ResolvedSource(url=url, strategy=self.name)


def default_resolvers(timeout: float = 20) -> list[SourceResolver]:
    """Ordered strategies tried for hosted video URLs."""
    return [
        # Single-file HTTP formats carry audio and video in one URL
        YtDlpResolver("best[acodec!=none][vcodec!=none][protocol^=http]", name="yt-dlp-progressive", socket_timeout=timeout),
        YtDlpResolver("best", name="yt-dlp-best", socket_timeout=timeout),
        StreamlinkResolver(timeout=timeout),
    ]


class ResolverChain:
    """Try resolvers in order; the original URL is passed through if all fail."""

    def __init__(self, resolvers: list[SourceResolver] | None = None):
        self.resolvers = resolvers if resolvers is not None else default_resolvers()
        self.fallback = PassthroughResolver()

    async def resolve(self, url: str) -> ResolvedSource:
        if match_resolver(url) == "direct":
            return self.fallback.resolve(url)

        for resolver in self.resolvers:
            try:
                resolved = await asyncio.to_thread(resolver.resolve, url)
            except Exception as e:
                logger.warning(f"Resolver {resolver.name} raised for {url}: {e}")
                continue
            if resolved is not None:
                logger.info(f"Resolved ({resolved.strategy}) {url} -> {resolved.url[:120]}")
                return resolved

        logger.warning(f"All resolvers failed for {url}; passing it to ffmpeg as-is")
        return self.fallback.resolve(url)
