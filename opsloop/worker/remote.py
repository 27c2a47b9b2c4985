"""Remote step source — lets a worker on another machine use the HTTP API.

Speaks the two worker routes of `opsloop.api.app` and mirrors the
scheduler's claim/report interface, so `MissionWorker` runs unchanged:

    source = RemoteStepSource("http://ops.internal:8430")
    worker = MissionWorker(source, handlers, worker_id="vps-1")
    await worker.run_forever()
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from opsloop.exceptions import StepNotFoundError, TransientStoreError
from opsloop.types import Step

_logger = logging.getLogger(__name__)


class RemoteStepSource:
    """HTTP client for the claim and outcome endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport,
        )

    async def claim_next_step(self, worker_id: str) -> Step | None:
        async with self._client() as client:
            resp = await client.post("/ops/steps/claim", json={"worker_id": worker_id})
        if resp.status_code == 204:
            return None
        _raise_for_status(resp)
        return Step.model_validate(resp.json())

    async def record_outcome(
        self,
        step_id: str,
        success: bool,
        result: dict[str, Any] | None = None,
        error: str = "",
    ) -> bool:
        async with self._client() as client:
            resp = await client.post(
                f"/ops/steps/{step_id}/outcome",
                json={"success": success, "result": result or {}, "error": error},
            )
        if resp.status_code == 409:
            return False
        if resp.status_code == 404:
            raise StepNotFoundError(f"No step with id {step_id}")
        _raise_for_status(resp)
        return True


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code >= 500:
        # server-side store trouble; the worker loop counts it and retries
        raise TransientStoreError(f"{resp.status_code} from {resp.request.url}: {resp.text}")
    resp.raise_for_status()
