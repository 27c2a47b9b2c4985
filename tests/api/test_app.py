"""Tests for the HTTP surface."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from opsloop.api.app import configure, ops_app
from opsloop.context import OpsContext
from opsloop.types import StepStatus

SECRET = "s3cret"


@pytest.fixture
def api_ctx(db_path, clock, rng):
    ctx = OpsContext(db_path=db_path, clock=clock, rng=rng)
    asyncio.run(ctx.ensure_ready())
    return ctx


@pytest.fixture
def client(api_ctx):
    configure(api_ctx, heartbeat_secret=SECRET)
    with TestClient(ops_app) as c:
        yield c
    configure(None)


def _pending_id(client):
    resp = client.post("/ops/proposal", json={"agent": "xalt", "action": "post_tweet"})
    assert resp.status_code == 201
    return resp.json()["proposal"]["id"]


class TestProposals:
    def test_auto_approved(self, client):
        resp = client.post("/ops/proposal", json={
            "agent": "quill", "action": "draft_tweet", "params": {"topic": "agents"},
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["auto_approved"] is True
        assert body["mission_id"]
        assert body["proposal"]["status"] == "accepted"

    def test_pending(self, client):
        resp = client.post("/ops/proposal", json={"agent": "xalt", "action": "post_tweet"})
        body = resp.json()
        assert body["proposal"]["status"] == "pending"
        assert body["mission_id"] is None

    def test_rejected_is_429(self, client, api_ctx):
        asyncio.run(api_ctx.policy.set("deploy_policy", {"enabled": False}))
        resp = client.post("/ops/proposal", json={"agent": "minion", "action": "deploy"})
        assert resp.status_code == 429
        body = resp.json()
        assert body["error"] == "Deploys disabled by policy"
        assert body["code"] == "action_disabled"

    def test_invalid_payload(self, client):
        resp = client.post("/ops/proposal", json={"agent": "quill"})
        assert resp.status_code == 422

    def test_approve(self, client):
        proposal_id = _pending_id(client)
        resp = client.patch(f"/ops/proposal/{proposal_id}", json={"status": "accepted"})
        assert resp.status_code == 200
        assert resp.json()["mission_id"]

    def test_reject_then_approve_conflicts(self, client):
        proposal_id = _pending_id(client)
        resp = client.patch(
            f"/ops/proposal/{proposal_id}", json={"status": "rejected", "reason": "off-brand"},
        )
        assert resp.json()["proposal"]["rejection_reason"] == "off-brand"

        resp = client.patch(f"/ops/proposal/{proposal_id}", json={"status": "accepted"})
        assert resp.status_code == 409

    def test_unknown_proposal(self, client):
        resp = client.patch("/ops/proposal/nope", json={"status": "accepted"})
        assert resp.status_code == 404


class TestHeartbeat:
    def test_requires_secret(self, client):
        assert client.post("/ops/heartbeat").status_code == 401
        resp = client.post("/ops/heartbeat", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 401

    def test_runs_a_tick(self, client):
        resp = client.post("/ops/heartbeat", headers={"Authorization": f"Bearer {SECRET}"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        names = [s["name"] for s in body["results"]["subsystems"]]
        assert names == ["triggers", "reactions", "stale_recovery", "orphan_recovery", "health"]

    def test_empty_secret_refuses_everyone(self, api_ctx):
        configure(api_ctx, heartbeat_secret="")
        with TestClient(ops_app) as c:
            resp = c.post("/ops/heartbeat", headers={"Authorization": "Bearer "})
            assert resp.status_code == 401
        configure(None)


class TestStatusAndReactions:
    def test_status(self, client):
        _pending_id(client)
        resp = client.get("/ops/status")
        body = resp.json()
        assert body["health"]["pending_proposals"] == 1
        assert body["recent_events"][0]["kind"] == "proposal_created"

    def test_reaction_matrix_roundtrip(self, client):
        resp = client.get("/ops/reactions")
        assert len(resp.json()["patterns"]) == 5

        resp = client.put("/ops/reactions", json={"patterns": [
            {"id": "only", "tags": ["deploy"], "target": "observer",
             "type": "review_content", "probability": 0.5},
        ]})
        assert resp.status_code == 200
        patterns = client.get("/ops/reactions").json()["patterns"]
        assert [p["id"] for p in patterns] == ["only"]

    def test_bad_matrix_is_422(self, client):
        resp = client.put("/ops/reactions", json={"patterns": [
            {"id": "x", "target": "sage", "type": "analyze", "probability": 2},
        ]})
        assert resp.status_code == 422

    def test_unconfigured_is_503(self):
        configure(None)
        with TestClient(ops_app) as c:
            assert c.get("/ops/status").status_code == 503


class TestWorkerRoutes:
    def test_claim_and_report(self, client, api_ctx):
        client.post("/ops/proposal", json={"agent": "quill", "action": "draft_tweet"})

        resp = client.post("/ops/steps/claim", json={"worker_id": "vps-1"})
        assert resp.status_code == 200
        step = resp.json()
        assert step["kind"] == "draft_tweet"
        assert step["reserved_by"] == "vps-1"

        assert client.post("/ops/steps/claim", json={"worker_id": "vps-2"}).status_code == 204

        resp = client.post(f"/ops/steps/{step['id']}/outcome", json={
            "success": True, "result": {"tweet": "hi"},
        })
        assert resp.json() == {"recorded": True}
        stored = asyncio.run(api_ctx.store.get_step(step["id"]))
        assert stored.status == StepStatus.SUCCEEDED

        resp = client.post(f"/ops/steps/{step['id']}/outcome", json={"success": False})
        assert resp.status_code == 409

    def test_outcome_for_unknown_step(self, client):
        resp = client.post("/ops/steps/nope/outcome", json={"success": True})
        assert resp.status_code == 404
