"""
Gateway metadata client and polling sync.

Responsibilities:
- Health probe (GET /health)
- Talk metadata snapshots (GET /api/talks, GET /api/talks/{id})
- Periodic sync: re-import every locally mapped gateway talk

Still NOT responsible for:
- Chat streaming (adapters.llm)
- Merge policy (context.merge); imports go through TalkStore

Merge is idempotent, so sync_once() may run on any cadence.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp

from context.merge import GatewayTalkSnapshot, SnapshotError
from context.talks import TalkStore
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, await_or_cancel
from orchestrator.errors import (
    GatewayHTTPError,
    StreamCancelled,
    StreamConnectionError,
    StreamError,
    StreamTimeout,
)
from spec import (
    GATEWAY_POLL_INTERVAL_S,
    HEALTH_CHECK_TIMEOUT_S,
    HEALTH_PATH,
    TALK_FETCH_TIMEOUT_S,
    TALK_PATH_TEMPLATE,
    TALKS_PATH,
)


class GatewayStatus(str, Enum):
    CONNECTING = "connecting"
    ONLINE = "online"
    OFFLINE = "offline"


class GatewayClient:
    """Thin aiohttp client for gateway metadata endpoints."""

    def __init__(
        self,
        *,
        gateway_url: str,
        token: str | None,
        http: aiohttp.ClientSession | None = None,
    ) -> None:
        self._gateway_url = gateway_url.rstrip("/")
        self._token = token
        self._http = http
        self._owns_http = http is None

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self._http

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    async def check_health(self, cancel: CancelToken | None = None) -> bool:
        """
        True if the gateway answers /health with 2xx.

        Raises:
            StreamCancelled if the token fires; no other error escapes.
        """
        try:
            return await await_or_cancel(self._probe_health(), cancel, timeout_s=None)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def _probe_health(self) -> bool:
        async with self._session().get(
            self._gateway_url + HEALTH_PATH,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=HEALTH_CHECK_TIMEOUT_S),
        ) as resp:
            return resp.status < 400

    async def list_talks(self, cancel: CancelToken | None = None) -> list[GatewayTalkSnapshot]:
        """
        All gateway talks. Invalid entries are skipped (logged).

        Raises:
            GatewayHTTPError on non-2xx.
            StreamError subclasses on network failure or cancellation.
        """
        data = await self._get_json(TALKS_PATH, cancel)
        items = data.get("talks", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            return []

        snapshots: list[GatewayTalkSnapshot] = []
        for item in items:
            try:
                snapshots.append(GatewayTalkSnapshot.from_wire(item))
            except SnapshotError as e:
                log_event({"event_type": "gateway_talk_invalid", "error": str(e)})
        return snapshots

    async def fetch_talk(
        self,
        gateway_talk_id: str,
        cancel: CancelToken | None = None,
    ) -> GatewayTalkSnapshot | None:
        """
        One gateway talk; None when the gateway does not know it (404).

        Raises:
            SnapshotError on an invalid payload.
            GatewayHTTPError / StreamError as list_talks().
        """
        try:
            data = await self._get_json(TALK_PATH_TEMPLATE.format(talk_id=gateway_talk_id), cancel)
        except GatewayHTTPError as e:
            if e.status == 404:
                return None
            raise
        if isinstance(data, dict) and isinstance(data.get("talk"), dict):
            data = data["talk"]
        return GatewayTalkSnapshot.from_wire(data)

    async def _get_json(self, path: str, cancel: CancelToken | None = None) -> Any:
        try:
            return await await_or_cancel(self._request_json(path), cancel, timeout_s=None)
        except asyncio.TimeoutError as e:
            raise StreamTimeout(f"Timeout fetching {path}") from e
        except aiohttp.ClientError as e:
            raise StreamConnectionError(f"Cannot connect to gateway: {e}") from e
        except ValueError as e:
            raise GatewayHTTPError(f"Invalid JSON from {path}: {e}", status=502) from e

    async def _request_json(self, path: str) -> Any:
        async with self._session().get(
            self._gateway_url + path,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=TALK_FETCH_TIMEOUT_S),
        ) as resp:
            if resp.status >= 400:
                raise GatewayHTTPError(
                    f"Gateway returned {resp.status} for {path}",
                    status=resp.status,
                )
            return await resp.json(content_type=None)


# ------------------------------------------------------------------
# Polling sync
# ------------------------------------------------------------------

@dataclass(frozen=True)
class SyncReport:
    status: GatewayStatus
    imported: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()


class GatewaySync:
    """
    Keeps gateway-backed talks converged with the gateway.

    Only talks that already carry a gateway_talk_id are refreshed;
    new gateway talks enter the store through an explicit import.
    """

    def __init__(
        self,
        *,
        client: GatewayClient,
        store: TalkStore,
        interval_s: float = GATEWAY_POLL_INTERVAL_S,
    ) -> None:
        self._client = client
        self._store = store
        self._interval_s = interval_s
        self.status = GatewayStatus.CONNECTING

    async def sync_once(self, cancel: CancelToken | None = None) -> SyncReport:
        """
        Raises:
            StreamCancelled if the token fires mid-sync.
        """
        healthy = await self._client.check_health(cancel)
        status = GatewayStatus.ONLINE if healthy else GatewayStatus.OFFLINE
        if status is not self.status:
            log_event({"event_type": "gateway_status_changed", "from": self.status.value, "to": status.value})
            self.status = status
        if not healthy:
            return SyncReport(status=status)

        imported: list[str] = []
        failed: list[str] = []
        for talk in self._store.list_talks():
            gateway_id = talk.gateway_talk_id
            if not gateway_id:
                continue
            try:
                snapshot = await self._client.fetch_talk(gateway_id, cancel)
            except StreamCancelled:
                raise
            except (StreamError, SnapshotError) as e:
                log_event({
                    "event_type": "gateway_sync_failed",
                    "talk_id": talk.id,
                    "gateway_talk_id": gateway_id,
                    "error": f"{type(e).__name__}: {e}",
                })
                failed.append(gateway_id)
                continue
            if snapshot is None:
                continue
            self._store.import_gateway_talk(snapshot)
            imported.append(gateway_id)

        return SyncReport(status=status, imported=tuple(imported), failed=tuple(failed))

    async def run(self, cancel: CancelToken) -> None:
        """Poll until cancelled; an in-flight request is abandoned on cancel."""
        while not cancel.cancelled:
            try:
                await self.sync_once(cancel)
                await await_or_cancel(asyncio.sleep(self._interval_s), cancel, timeout_s=None)
            except StreamCancelled:
                return
