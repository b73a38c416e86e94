"""Tests for RTMP output target handling."""

from __future__ import annotations

import asyncio

import pytest

from rtmp_scheduler.core.targets import build_output_url, mask_output_url, parse_target, probe_target
from rtmp_scheduler.errors import InvalidTarget


@pytest.mark.parametrize(
    "rtmp_url,expected",
    [
        ("rtmp://live.example.com/app", "rtmp://live.example.com/app/abcdefgh12"),
        ("rtmp://live.example.com/app/", "rtmp://live.example.com/app/abcdefgh12"),
        ("RTMPS://live.example.com:443/app", "RTMPS://live.example.com:443/app/abcdefgh12"),
    ],
)
def test_build_output_url(rtmp_url, expected):
    assert build_output_url(rtmp_url, "abcdefgh12") == expected


@pytest.mark.parametrize("rtmp_url", ["http://live.example.com/app", "live.example.com/app", "", None])
def test_build_output_url_rejects_scheme(rtmp_url):
    with pytest.raises(InvalidTarget, match="Invalid RTMP URL"):
        build_output_url(rtmp_url, "abcdefgh12")


@pytest.mark.parametrize("stream_key", ["short", "   abc   ", "", None])
def test_build_output_url_rejects_short_key(stream_key):
    with pytest.raises(InvalidTarget, match="Invalid stream key"):
        build_output_url("rtmp://live.example.com/app", stream_key)


def test_build_output_url_custom_key_length():
    assert build_output_url("rtmp://h/app", "abcd", min_key_length=4) == "rtmp://h/app/abcd"


def test_parse_target_defaults():
    assert parse_target("rtmp://live.example.com/app") == {"protocol": "rtmp", "host": "live.example.com", "port": 1935}
    assert parse_target("rtmps://live.example.com/app")["port"] == 443
    assert parse_target("rtmp://live.example.com:1936/app")["port"] == 1936


def test_mask_output_url():
    assert mask_output_url("rtmp://h/app/abcdefgh1234") == "rtmp://h/app/abcd****"
    assert mask_output_url("rtmp://h/app/abcd1234") == "rtmp://h/app/****"


@pytest.mark.asyncio
async def test_probe_target_reachable():
    """A listening TCP server counts as reachable."""
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        result = await probe_target(f"rtmp://127.0.0.1:{port}/app", "abcdefgh12", timeout=2)
    finally:
        server.close()
        await server.wait_closed()

    assert result["reachable"] is True
    assert result["port"] == port
    assert result["output_url"] == f"rtmp://127.0.0.1:{port}/app/abcdefgh12"


@pytest.mark.asyncio
async def test_probe_target_unreachable():
    """A closed port is reported, not raised."""
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    result = await probe_target(f"rtmp://127.0.0.1:{port}/app", "abcdefgh12", timeout=2)
    assert result["reachable"] is False


@pytest.mark.asyncio
async def test_probe_target_invalid():
    with pytest.raises(InvalidTarget):
        await probe_target("http://127.0.0.1/app", "abcdefgh12")
