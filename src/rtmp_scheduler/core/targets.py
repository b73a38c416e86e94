"""RTMP output target building and validation."""

from __future__ import annotations

import asyncio
import logging
import re
import ssl
from typing import Any
from urllib.parse import urlparse

from ..errors import InvalidTarget

logger = logging.getLogger(__name__)

_RTMP_SCHEME_RE = re.compile(r"^rtmps?://", re.IGNORECASE)

DEFAULT_PORTS = {"rtmp": 1935, "rtmps": 443}


def build_output_url(rtmp_url: str | None, stream_key: str | None, min_key_length: int = 8) -> str:
    """
    Join an RTMP server URL and a stream key into the full output target.

    Args:
        rtmp_url: Server URL, must use the rtmp:// or rtmps:// scheme
        stream_key: Stream key, at least ``min_key_length`` characters once stripped
        min_key_length: Minimum accepted key length

    Returns:
        The output URL with exactly one slash between server path and key

    Raises:
        InvalidTarget: If the URL scheme or key is unacceptable
    """
    if not isinstance(rtmp_url, str) or not _RTMP_SCHEME_RE.match(rtmp_url.strip()):
        raise InvalidTarget("Invalid RTMP URL")
    if not isinstance(stream_key, str) or len(stream_key.strip()) < min_key_length:
        raise InvalidTarget("Invalid stream key")

    rtmp_url = rtmp_url.strip()
    stream_key = stream_key.strip()
    if rtmp_url.endswith("/"):
        return f"{rtmp_url}{stream_key}"
    return f"{rtmp_url}/{stream_key}"


def parse_target(rtmp_url: str) -> dict[str, Any]:
    """Split an RTMP URL into protocol, host and port (scheme defaults applied)."""
    if not isinstance(rtmp_url, str) or not _RTMP_SCHEME_RE.match(rtmp_url.strip()):
        raise InvalidTarget("Invalid RTMP URL")

    parsed = urlparse(rtmp_url.strip())
    protocol = parsed.scheme.lower()
    if not parsed.hostname:
        raise InvalidTarget("RTMP URL has no host")
    try:
        port = parsed.port or DEFAULT_PORTS[protocol]
    except ValueError as e:
        raise InvalidTarget(f"Invalid RTMP port: {e}") from e
    return {"protocol": protocol, "host": parsed.hostname, "port": port}


def mask_output_url(output_url: str) -> str:
    """Hide the stream key (last path segment) for logging."""
    head, sep, key = output_url.rpartition("/")
    if not sep or not key:
        return output_url
    visible = key[:4] if len(key) > 8 else ""
    return f"{head}/{visible}****"


async def probe_target(rtmp_url: str, stream_key: str, timeout: float = 3.0, min_key_length: int = 8) -> dict[str, Any]:
    """
    Check that an RTMP endpoint accepts TCP (or TLS for rtmps) connections.

    Only reachability is tested; no RTMP handshake is attempted.

    Returns:
        dict with reachable, protocol, host, port and the output URL
    """
    output_url = build_output_url(rtmp_url, stream_key, min_key_length)
    target = parse_target(rtmp_url)

    ssl_context = ssl.create_default_context() if target["protocol"] == "rtmps" else None
    reachable = False
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(
                target["host"],
                target["port"],
                ssl=ssl_context,
                server_hostname=target["host"] if ssl_context else None,
            ),
            timeout=timeout,
        )
        reachable = True
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError):
            pass
    except (OSError, asyncio.TimeoutError, ssl.SSLError) as e:
        logger.info(f"RTMP target {target['host']}:{target['port']} unreachable: {e}")

    return {**target, "reachable": reachable, "output_url": output_url}
