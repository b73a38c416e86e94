"""Tests for ffmpeg supervision.

Process tests use small shell scripts standing in for ffmpeg.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

from rtmp_scheduler.core.supervisor import (
    SupervisorCallbacks,
    TranscodeSupervisor,
    build_ffmpeg_command,
    describe_command,
    parse_progress_line,
)
from rtmp_scheduler.errors import LaunchFailure
from rtmp_scheduler.models import TranscodeProfile

OUTPUT = "rtmp://live.example.com/app/abcdefgh1234"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


class Recorder:
    """Collects supervisor events."""

    def __init__(self):
        self.events: list[tuple] = []
        self.progress: list[float] = []
        self.diagnostics: list[str] = []

    async def on_launch(self, command_line):
        self.events.append(("launch", command_line))

    async def on_progress(self, seconds):
        self.progress.append(seconds)

    def on_diagnostic_line(self, line):
        self.diagnostics.append(line)

    async def on_end(self):
        self.events.append(("end",))

    async def on_error(self, reason):
        self.events.append(("error", reason))

    def callbacks(self) -> SupervisorCallbacks:
        return SupervisorCallbacks(
            on_launch=self.on_launch,
            on_progress=self.on_progress,
            on_diagnostic_line=self.on_diagnostic_line,
            on_end=self.on_end,
            on_error=self.on_error,
        )


def _script(tmp_path, body: str):
    path = tmp_path / "fake-ffmpeg"
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return str(path)


def test_build_ffmpeg_command_file_input():
    cmd = build_ffmpeg_command("ffmpeg", "/media/a.mp4", OUTPUT, TranscodeProfile())

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-progress") + 1] == "pipe:1"
    assert "-nostats" in cmd
    assert cmd[cmd.index("-i") - 1] == "-re"
    assert cmd[cmd.index("-i") + 1] == "/media/a.mp4"
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-maxrate") + 1] == "3000k"
    assert cmd[cmd.index("-f") + 1] == "flv"
    assert cmd[-1] == OUTPUT
    assert "-stream_loop" not in cmd
    assert "-reconnect" not in cmd


def test_build_ffmpeg_command_loop_and_network_input():
    cmd = build_ffmpeg_command(
        "ffmpeg",
        "https://cdn.example.com/v.mp4",
        OUTPUT,
        TranscodeProfile(),
        loop_input=True,
        http_headers={"User-Agent": "Mozilla/5.0", "Referer": "https://example.com/"},
    )

    assert cmd[cmd.index("-stream_loop") + 1] == "-1"
    assert cmd.index("-stream_loop") < cmd.index("-i")
    assert "-reconnect" in cmd
    assert cmd[cmd.index("-user_agent") + 1] == "Mozilla/5.0"
    assert cmd[cmd.index("-headers") + 1] == "Referer: https://example.com/\r\n"


def test_describe_command_masks_key():
    cmd = build_ffmpeg_command("ffmpeg", "/media/a.mp4", OUTPUT, TranscodeProfile())
    described = describe_command(cmd, OUTPUT)

    assert "abcdefgh1234" not in described
    assert "rtmp://live.example.com/app/abcd****" in described


@pytest.mark.parametrize(
    "line,expected",
    [
        ("out_time_us=2500000", 2.5),
        ("out_time_ms=1000000\n", 1.0),
        ("out_time=00:00:02.500000", None),
        ("progress=continue", None),
        ("out_time_us=N/A", None),
        ("garbage", None),
    ],
)
def test_parse_progress_line(line, expected):
    assert parse_progress_line(line) == expected


@posix_only
@pytest.mark.asyncio
async def test_natural_end(tmp_path):
    """Exit code 0 reports progress then on_end."""
    ffmpeg = _script(
        tmp_path,
        'echo "out_time_us=1000000"\necho "progress=continue"\necho "out_time_us=2000000"\necho "progress=end"\nexit 0\n',
    )
    recorder = Recorder()
    supervisor = TranscodeSupervisor(recorder.callbacks(), ffmpeg_path=ffmpeg)

    await supervisor.launch("/media/a.mp4", OUTPUT, TranscodeProfile())
    await asyncio.wait_for(supervisor.wait(), timeout=10)

    assert recorder.events[0][0] == "launch"
    assert "abcdefgh1234" not in recorder.events[0][1]
    assert recorder.events[-1] == ("end",)
    assert recorder.progress == [1.0, 2.0]
    assert supervisor.returncode == 0


@posix_only
@pytest.mark.asyncio
async def test_error_exit_reports_diagnostics(tmp_path):
    """A non-zero exit reports on_error with the stderr tail."""
    ffmpeg = _script(
        tmp_path,
        'echo "Opening output" >&2\necho "rtmp://x: Connection refused error" >&2\nexit 1\n',
    )
    recorder = Recorder()
    supervisor = TranscodeSupervisor(recorder.callbacks(), ffmpeg_path=ffmpeg)

    await supervisor.launch("/media/a.mp4", OUTPUT, TranscodeProfile())
    await asyncio.wait_for(supervisor.wait(), timeout=10)

    kind, reason = recorder.events[-1]
    assert kind == "error"
    assert "code 1" in reason
    assert "Connection refused" in reason
    assert recorder.diagnostics == ["Opening output", "rtmp://x: Connection refused error"]


@posix_only
@pytest.mark.asyncio
async def test_request_stop_interrupts(tmp_path):
    """SIGINT ends the process; a stopped process reports on_end even with a non-zero code."""
    ffmpeg = _script(
        tmp_path,
        "trap 'exit 255' INT\necho \"out_time_us=500000\"\nwhile true; do sleep 0.1; done\n",
    )
    recorder = Recorder()
    supervisor = TranscodeSupervisor(recorder.callbacks(), ffmpeg_path=ffmpeg, kill_timeout=10)

    await supervisor.launch("/media/a.mp4", OUTPUT, TranscodeProfile())
    await asyncio.sleep(0.3)
    assert supervisor.running

    supervisor.request_stop()
    supervisor.request_stop()  # idempotent
    await asyncio.wait_for(supervisor.wait(), timeout=10)

    assert supervisor.stop_requested
    assert supervisor.returncode == 255
    assert recorder.events[-1] == ("end",)


@posix_only
@pytest.mark.asyncio
async def test_stop_escalates_to_kill(tmp_path):
    """A process ignoring SIGINT is killed after the timeout."""
    ffmpeg = _script(tmp_path, "trap '' INT\nwhile true; do sleep 0.1; done\n")
    recorder = Recorder()
    supervisor = TranscodeSupervisor(recorder.callbacks(), ffmpeg_path=ffmpeg, kill_timeout=0.3)

    await supervisor.launch("/media/a.mp4", OUTPUT, TranscodeProfile())
    await asyncio.sleep(0.2)
    supervisor.request_stop()
    await asyncio.wait_for(supervisor.wait(), timeout=10)

    assert supervisor.returncode == -9
    assert recorder.events[-1] == ("end",)


@pytest.mark.asyncio
async def test_launch_failure_when_binary_missing(tmp_path):
    recorder = Recorder()
    supervisor = TranscodeSupervisor(recorder.callbacks(), ffmpeg_path=str(tmp_path / "no-such-ffmpeg"))

    with pytest.raises(LaunchFailure, match="Could not start ffmpeg"):
        await supervisor.launch("/media/a.mp4", OUTPUT, TranscodeProfile())

    assert recorder.events == []
    assert supervisor.pid is None
