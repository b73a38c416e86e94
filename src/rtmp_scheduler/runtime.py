"""Process-wide wiring of the streaming components."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .config import get_mirror_config, get_streaming_config, get_transcode_profile
from .config.resolvers import ResolverChain, default_resolvers
from .core.engine import StreamEngine, SupervisorFactory
from .core.mirror import RecordMirror
from .core.registry import ActiveJobRegistry
from .core.scheduler import StreamScheduler
from .core.store import StreamStore


@dataclass
class Runtime:
    """One instance of every component, shared by REST, MCP and the tick."""

    store: StreamStore
    registry: ActiveJobRegistry
    mirror: RecordMirror
    engine: StreamEngine
    scheduler: StreamScheduler


def build_runtime(records_dir: Path | None = None, supervisor_factory: SupervisorFactory | None = None) -> Runtime:
    """Construct the components from the current configuration."""
    streaming = get_streaming_config()
    mirror_config = get_mirror_config()

    store = StreamStore(records_dir)
    registry = ActiveJobRegistry()
    mirror = RecordMirror(
        url=mirror_config["url"],
        service_key=mirror_config["service_key"],
        timeout=float(mirror_config["timeout"]),
    )
    engine = StreamEngine(
        store,
        registry,
        mirror=mirror,
        resolvers=ResolverChain(default_resolvers(streaming["resolve_timeout"])),
        profile=get_transcode_profile(),
        config=streaming,
        supervisor_factory=supervisor_factory,
    )
    scheduler = StreamScheduler(engine, store)
    return Runtime(store=store, registry=registry, mirror=mirror, engine=engine, scheduler=scheduler)


_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    """Get the process runtime, building it on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    """Replace the process runtime (None resets it)."""
    global _runtime
    _runtime = runtime
