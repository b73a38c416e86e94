"""Best-effort mirroring of records to a Supabase (PostgREST) datastore."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from ..models import ExternalJob, Playlist, Video

logger = logging.getLogger(__name__)


def _row(record: Video | Playlist | ExternalJob) -> dict[str, Any]:
    row = record.model_dump(mode="json")
    row.pop("seq", None)
    return row


class RecordMirror:
    """
    Mirrors record state to Supabase tables.

    Mirroring never affects the primary state: every method logs and
    swallows failures and returns whether the write went through. When no
    URL/service key is configured every call is a no-op returning False.
    """

    def __init__(
        self,
        url: str | None = None,
        service_key: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = (url or "").rstrip("/")
        self.service_key = service_key or ""
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.service_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _upsert(self, table: str, row: dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            response = await self._get_client().post(
                f"/{table}",
                params={"on_conflict": "id"},
                json=row,
                headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Mirror upsert into {table} failed: {e}")
            return False

    async def sync_video(self, video: Video) -> bool:
        return await self._upsert("videos", _row(video))

    async def sync_playlist(self, playlist: Playlist) -> bool:
        return await self._upsert("playlists", _row(playlist))

    async def sync_external_job(self, job: ExternalJob) -> bool:
        return await self._upsert("external_jobs", _row(job))

    async def update_video_progress(self, video_id: str, progress: float) -> bool:
        """Patch only the progress column. Failures are silent, this runs often."""
        if not self.enabled:
            return False
        try:
            response = await self._get_client().patch(
                "/videos",
                params={"id": f"eq.{video_id}"},
                json={"progress": progress, "updated_at": datetime.now().isoformat()},
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError:
            return False

    async def insert_stream_event(self, stream_id: str, event_type: str, **payload: Any) -> bool:
        """Append a row to the stream_events log table."""
        if not self.enabled:
            return False
        row = {
            "video_id": stream_id,
            "type": event_type,
            "created_at": datetime.now().isoformat(),
            "progress": payload.get("progress"),
            "output_url": payload.get("output_url"),
            "message": payload.get("message"),
        }
        try:
            response = await self._get_client().post("/stream_events", json=row)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Mirror stream event insert failed: {e}")
            return False

    async def get_status(self) -> dict[str, Any]:
        """Report configuration and whether the REST endpoint answers."""
        status = {"url": bool(self.url), "admin": bool(self.service_key), "connected": False}
        if not self.enabled:
            return status
        try:
            response = await self._get_client().get("/videos", params={"select": "id", "limit": "1"})
            status["connected"] = response.status_code < 400
        except httpx.HTTPError as e:
            logger.info(f"Mirror health check failed: {e}")
        return status
