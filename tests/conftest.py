"""Pytest configuration with isolated directories and a fake supervisor."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from rtmp_scheduler.config.resolvers import ResolverChain
from rtmp_scheduler.core.engine import StreamEngine
from rtmp_scheduler.core.registry import ActiveJobRegistry
from rtmp_scheduler.core.store import StreamStore, new_record_id
from rtmp_scheduler.errors import LaunchFailure
from rtmp_scheduler.models import ExternalJob, Playlist, RecordKind, RecordStatus, Video

RTMP_URL = "rtmp://live.example.com/app"
STREAM_KEY = "abcd-1234-efgh"


@pytest.fixture(scope="session")
def event_loop_policy():
    """Use default event loop policy."""
    return asyncio.DefaultEventLoopPolicy()


def pytest_configure(config):
    """Configure pytest-asyncio and custom markers."""
    config.addinivalue_line("markers", "asyncio: mark test as async")
    config.addinivalue_line("markers", "posix: marks tests that need a POSIX shell")


class FakeSupervisor:
    """Stands in for TranscodeSupervisor; the test drives its events."""

    def __init__(self, callbacks, fail_launch: bool = False, exit_on_stop: bool = False):
        self.callbacks = callbacks
        self.fail_launch = fail_launch
        self.exit_on_stop = exit_on_stop
        self.launch_args: dict | None = None
        self.stop_calls = 0
        self._exited = asyncio.Event()

    async def launch(self, input_descriptor, output_target, profile, loop_input=False, http_headers=None):
        if self.fail_launch:
            raise LaunchFailure("Could not start ffmpeg: [Errno 2] No such file or directory")
        self.launch_args = {
            "input": input_descriptor,
            "output": output_target,
            "profile": profile,
            "loop_input": loop_input,
            "http_headers": http_headers,
        }
        await self.callbacks.on_launch(f"ffmpeg -re -i {input_descriptor}")

    def request_stop(self):
        self.stop_calls += 1
        if self.exit_on_stop and self.stop_calls == 1:
            asyncio.get_running_loop().create_task(self.finish())

    async def progress(self, seconds: float):
        await self.callbacks.on_progress(seconds)

    async def finish(self):
        await self.callbacks.on_end()
        self._exited.set()

    async def fail(self, reason: str):
        await self.callbacks.on_error(reason)
        self._exited.set()

    async def wait(self):
        await self._exited.wait()


class FakeSupervisorFactory:
    """Builds FakeSupervisors and remembers them."""

    def __init__(self):
        self.created: list[FakeSupervisor] = []
        self.fail_launch = False
        self.exit_on_stop = False

    def __call__(self, callbacks):
        supervisor = FakeSupervisor(callbacks, fail_launch=self.fail_launch, exit_on_stop=self.exit_on_stop)
        self.created.append(supervisor)
        return supervisor

    @property
    def last(self) -> FakeSupervisor:
        return self.created[-1]


@pytest.fixture
def isolated_dirs(tmp_path, monkeypatch):
    """Point every directory at a temp location and clear external settings."""
    dirs = {
        "config_dir": tmp_path / "config",
        "data_dir": tmp_path / "data",
        "media_dir": tmp_path / "media",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("RTMP_SCHEDULER_CONFIG_DIR", str(dirs["config_dir"]))
    monkeypatch.setenv("RTMP_SCHEDULER_DATA_DIR", str(dirs["data_dir"]))
    monkeypatch.setenv("RTMP_SCHEDULER_MEDIA_DIR", str(dirs["media_dir"]))
    for name in ("FFMPEG_PATH", "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"):
        monkeypatch.delenv(name, raising=False)
    return dirs


@pytest.fixture
def store(isolated_dirs):
    return StreamStore(isolated_dirs["data_dir"] / "records")


@pytest.fixture
def registry():
    return ActiveJobRegistry()


@pytest.fixture
def fake_supervisors():
    return FakeSupervisorFactory()


@pytest.fixture
def engine(store, registry, fake_supervisors):
    return StreamEngine(
        store,
        registry,
        resolvers=ResolverChain([]),
        config={"progress_write_interval": 1.0},
        supervisor_factory=fake_supervisors,
    )


@pytest.fixture
def make_video(store, isolated_dirs):
    """Create a media file plus a due, scheduled video record."""
    counter = {"n": 0}

    def _make(
        title: str | None = None,
        schedule_time: datetime | None = None,
        status: RecordStatus = RecordStatus.SCHEDULED,
        duration: float | None = 100.0,
        create_file: bool = True,
        **fields,
    ) -> Video:
        counter["n"] += 1
        title = title or f"clip-{counter['n']}"
        path = Path(isolated_dirs["media_dir"]) / f"{title}.mp4"
        if create_file:
            path.write_bytes(b"\x00" * 32)
        fields.setdefault("rtmp_url", RTMP_URL)
        fields.setdefault("stream_key", STREAM_KEY)
        video = Video(
            id=new_record_id(),
            title=title,
            filename=path.name,
            filepath=str(path),
            duration=duration,
            schedule_time=schedule_time or datetime.now() - timedelta(minutes=1),
            status=status,
            **fields,
        )
        return store.create(RecordKind.VIDEO, video)

    return _make


@pytest.fixture
def make_playlist(store):
    """Create a playlist over existing videos and link them."""

    def _make(videos: list[Video], loop: bool = False, schedule_time: datetime | None = None, **fields) -> Playlist:
        playlist = Playlist(
            id=new_record_id(),
            name=fields.pop("name", "evening"),
            video_ids=[v.id for v in videos],
            schedule_time=schedule_time or datetime.now() - timedelta(minutes=1),
            loop=loop,
            **fields,
        )
        playlist = store.create(RecordKind.PLAYLIST, playlist)
        for video in videos:
            store.update_fields(RecordKind.VIDEO, video.id, playlist_id=playlist.id)
        return playlist

    return _make


@pytest.fixture
def make_external_job(store):
    """Create a due external URL job."""

    def _make(source_url: str = "https://cdn.example.com/live/stream.m3u8", **fields) -> ExternalJob:
        job = ExternalJob(
            id=new_record_id(),
            source_url=source_url,
            rtmp_url=fields.pop("rtmp_url", RTMP_URL),
            stream_key=fields.pop("stream_key", STREAM_KEY),
            schedule_time=fields.pop("schedule_time", datetime.now() - timedelta(minutes=1)),
            **fields,
        )
        return store.create(RecordKind.EXTERNAL_JOB, job)

    return _make
