"""Supervision of a single ffmpeg transcode process."""

from __future__ import annotations

import asyncio
import collections
import logging
import re
import shlex
import signal
from dataclasses import dataclass
from typing import Awaitable, Callable

from ..errors import LaunchFailure
from ..models import TranscodeProfile
from .targets import mask_output_url

logger = logging.getLogger(__name__)

_ERROR_LINE_RE = re.compile(r"error|invalid|failed", re.IGNORECASE)

# Number of stderr lines kept to explain an abnormal exit
_DIAGNOSTIC_TAIL = 20


@dataclass
class SupervisorCallbacks:
    """Events a supervisor reports. Every callback is optional."""

    on_launch: Callable[[str], Awaitable[None]] | None = None
    on_progress: Callable[[float], Awaitable[None]] | None = None
    on_diagnostic_line: Callable[[str], None] | None = None
    on_end: Callable[[], Awaitable[None]] | None = None
    on_error: Callable[[str], Awaitable[None]] | None = None


def build_ffmpeg_command(
    ffmpeg_path: str,
    input_descriptor: str,
    output_target: str,
    profile: TranscodeProfile,
    loop_input: bool = False,
    http_headers: dict[str, str] | None = None,
) -> list[str]:
    """
    Build the ffmpeg argv relaying ``input_descriptor`` to an RTMP target.

    Progress is written as key=value lines to stdout (``-progress pipe:1``);
    stdin stays open so ``q`` can request a graceful stop.
    """
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "warning", "-nostats", "-progress", "pipe:1"]

    is_network_input = "://" in input_descriptor
    if is_network_input:
        cmd.extend(["-reconnect", "1", "-reconnect_streamed", "1", "-reconnect_delay_max", "5"])
        headers = dict(http_headers or {})
        user_agent = headers.pop("User-Agent", None)
        if user_agent:
            cmd.extend(["-user_agent", user_agent])
        if headers:
            cmd.extend(["-headers", "".join(f"{k}: {v}\r\n" for k, v in headers.items())])

    if loop_input:
        cmd.extend(["-stream_loop", "-1"])

    # Read input at native frame rate, this is a live relay
    cmd.extend(["-re", "-i", input_descriptor])

    cmd.extend([
        "-c:v", profile.video_codec,
        "-preset", profile.preset,
        "-maxrate", profile.maxrate,
        "-bufsize", profile.bufsize,
        "-g", str(profile.gop),
        "-pix_fmt", profile.pix_fmt,
        "-vf", f"scale='min({profile.max_width},iw)':-2",
        "-c:a", profile.audio_codec,
        "-b:a", profile.audio_bitrate,
        "-f", profile.output_format,
        output_target,
    ])
    return cmd


def describe_command(cmd: list[str], output_target: str) -> str:
    """Shell-quoted command line with the stream key masked."""
    masked = mask_output_url(output_target)
    return shlex.join(masked if part == output_target else part for part in cmd)


def looks_like_error(line: str) -> bool:
    return bool(_ERROR_LINE_RE.search(line))


def parse_progress_line(line: str) -> float | None:
    """Elapsed media seconds from an ffmpeg ``-progress`` line, if it carries one."""
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    # out_time_ms is in microseconds too (long-standing ffmpeg quirk)
    if key in ("out_time_us", "out_time_ms"):
        try:
            return max(0.0, int(value) / 1_000_000)
        except ValueError:
            return None
    return None


class TranscodeSupervisor:
    """
    Owns exactly one ffmpeg process for its lifetime.

    Lifecycle:
    - launch(): spawn ffmpeg, report on_launch, start monitoring
    - request_stop(): write ``q``, send SIGINT, escalate to SIGKILL after
      ``kill_timeout`` seconds if the process is still alive
    - wait(): block until the process exited and the terminal callback ran

    The supervisor never touches persisted state; it only reports events.
    """

    def __init__(self, callbacks: SupervisorCallbacks, ffmpeg_path: str = "ffmpeg", kill_timeout: float = 10.0):
        self.callbacks = callbacks
        self.ffmpeg_path = ffmpeg_path
        self.kill_timeout = kill_timeout
        self.command_line: str | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._monitor_task: asyncio.Task | None = None
        self._kill_task: asyncio.Task | None = None
        self._stop_requested = False
        self._diagnostics: collections.deque[str] = collections.deque(maxlen=_DIAGNOSTIC_TAIL)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def launch(
        self,
        input_descriptor: str,
        output_target: str,
        profile: TranscodeProfile,
        loop_input: bool = False,
        http_headers: dict[str, str] | None = None,
    ) -> None:
        """
        Spawn ffmpeg and return once it is running.

        Raises:
            LaunchFailure: If the process cannot be spawned at all
        """
        if self._process is not None:
            raise RuntimeError("Supervisor already launched")

        cmd = build_ffmpeg_command(self.ffmpeg_path, input_descriptor, output_target, profile, loop_input, http_headers)
        self.command_line = describe_command(cmd, output_target)

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise LaunchFailure(f"Could not start ffmpeg: {e}") from e

        logger.info(f"ffmpeg started (pid {self._process.pid}): {self.command_line}")
        self._monitor_task = asyncio.create_task(self._monitor())

        # A stop may have arrived while the process was being spawned
        if self._stop_requested:
            self._deliver_stop()

        if self.callbacks.on_launch:
            await self.callbacks.on_launch(self.command_line)

    def request_stop(self) -> None:
        """Ask ffmpeg to quit. Idempotent; completion is reported via on_end."""
        if self._stop_requested:
            return
        self._stop_requested = True
        self._deliver_stop()

    def _deliver_stop(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return

        if process.stdin is not None:
            try:
                process.stdin.write(b"q")
            except (BrokenPipeError, ConnectionResetError, RuntimeError):
                pass

        try:
            process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return

        if self.kill_timeout and self.kill_timeout > 0:
            self._kill_task = asyncio.create_task(self._escalate(process))

    async def wait(self) -> None:
        """Wait for process exit and delivery of the terminal callback."""
        if self._monitor_task is not None:
            await asyncio.shield(self._monitor_task)

    async def _escalate(self, process: asyncio.subprocess.Process) -> None:
        await asyncio.sleep(self.kill_timeout)
        if process.returncode is None:
            logger.warning(f"ffmpeg (pid {process.pid}) still running {self.kill_timeout}s after stop, killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _read_progress(self, stream: asyncio.StreamReader) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            seconds = parse_progress_line(raw.decode(errors="replace"))
            if seconds is None or not self.callbacks.on_progress:
                continue
            try:
                await self.callbacks.on_progress(seconds)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    async def _read_diagnostics(self, stream: asyncio.StreamReader) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            text = raw.decode(errors="replace").rstrip()
            if not text:
                continue
            self._diagnostics.append(text)
            if self.callbacks.on_diagnostic_line:
                try:
                    self.callbacks.on_diagnostic_line(text)
                except Exception as e:
                    logger.warning(f"Diagnostic callback failed: {e}")

    def _failure_reason(self, returncode: int) -> str:
        lines = list(self._diagnostics)
        errors = [line for line in lines if looks_like_error(line)]
        detail = (errors or lines)[-3:]
        if detail:
            return f"ffmpeg exited with code {returncode}: " + " | ".join(detail)
        return f"ffmpeg exited with code {returncode}"

    async def _monitor(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None and process.stderr is not None

        await asyncio.gather(self._read_progress(process.stdout), self._read_diagnostics(process.stderr))
        returncode = await process.wait()

        if self._kill_task is not None and not self._kill_task.done():
            self._kill_task.cancel()

        try:
            if self._stop_requested or returncode == 0:
                logger.info(f"ffmpeg (pid {process.pid}) ended with code {returncode}")
                if self.callbacks.on_end:
                    await self.callbacks.on_end()
            else:
                reason = self._failure_reason(returncode)
                logger.error(f"ffmpeg (pid {process.pid}) failed: {reason}")
                if self.callbacks.on_error:
                    await self.callbacks.on_error(reason)
        except Exception as e:
            logger.error(f"Terminal callback failed for pid {process.pid}: {e}", exc_info=True)
