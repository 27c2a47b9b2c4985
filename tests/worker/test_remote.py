"""Tests for the HTTP step source, served in-process."""

from __future__ import annotations

import httpx
import pytest

from opsloop.api.app import configure, ops_app
from opsloop.exceptions import StepNotFoundError, TransientStoreError
from opsloop.types import MissionStatus
from opsloop.worker.pool import MissionWorker
from opsloop.worker.remote import RemoteStepSource


@pytest.fixture
def remote(ctx):
    configure(ctx, heartbeat_secret="unused")
    yield RemoteStepSource("http://ops.test", transport=httpx.ASGITransport(app=ops_app))
    configure(None)


async def test_nothing_to_claim(remote):
    assert await remote.claim_next_step("vps-1") is None


async def test_remote_worker_completes_a_mission(ctx, remote):
    result = await ctx.admission.submit("api", "quill", "draft_tweet")
    worker = MissionWorker(remote, ctx.handlers, worker_id="vps-1")

    outcomes = await worker.drain()

    assert len(outcomes) == 1 and outcomes[0].success
    assert (await ctx.store.get_mission(result.mission.id)).status == MissionStatus.SUCCEEDED
    [step] = await ctx.store.steps_for_mission(result.mission.id)
    assert step.reserved_by == "vps-1"
    assert step.result["tweet"]


async def test_late_outcome_is_false(ctx, remote):
    await ctx.admission.submit("api", "quill", "draft_tweet")
    step = await remote.claim_next_step("vps-1")
    assert await remote.record_outcome(step.id, True, {"tweet": "x"})
    assert not await remote.record_outcome(step.id, False, error="again")


async def test_unknown_step(remote):
    with pytest.raises(StepNotFoundError):
        await remote.record_outcome("missing", True)


async def test_server_errors_are_transient():
    def failing(request):
        return httpx.Response(503, json={"error": "database is locked"})

    source = RemoteStepSource("http://ops.test", transport=httpx.MockTransport(failing))
    with pytest.raises(TransientStoreError):
        await source.claim_next_step("vps-1")
