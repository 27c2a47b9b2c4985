"""HTTP surface — proposals, heartbeat, status, reactions, and worker endpoints.

`opsloop serve` launches this app with uvicorn. Call `configure(ctx)` first;
until then every route answers 503.
"""

from __future__ import annotations

import hmac
from typing import Any

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from opsloop import __version__
from opsloop.config import settings
from opsloop.context import OpsContext
from opsloop.exceptions import (
    InvalidTransitionError,
    OpsError,
    ProposalNotFoundError,
    StepNotFoundError,
)
from opsloop.policy.schema import ReactionMatrix
from opsloop.types import Priority, ProposalStatus

ops_app = FastAPI(title="opsloop", version=__version__)

_ctx: OpsContext | None = None
_heartbeat_secret = ""


def configure(ctx: OpsContext | None = None, heartbeat_secret: str | None = None) -> None:
    global _ctx, _heartbeat_secret
    _ctx = ctx
    _heartbeat_secret = settings.heartbeat_secret if heartbeat_secret is None else heartbeat_secret


async def _context() -> OpsContext:
    if _ctx is None:
        raise OpsError("opsloop API is not configured")
    return await _ctx.ensure_ready()


@ops_app.exception_handler(OpsError)
async def _ops_error(request, exc: OpsError) -> JSONResponse:
    if isinstance(exc, (ProposalNotFoundError, StepNotFoundError)):
        return JSONResponse({"error": str(exc)}, status_code=404)
    if isinstance(exc, InvalidTransitionError):
        return JSONResponse({"error": str(exc)}, status_code=409)
    return JSONResponse({"error": str(exc)}, status_code=503)


# ── Proposals ────────────────────────────────────────────────────

class ProposalPayload(BaseModel):
    agent: str
    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    source: str = "api"


class ProposalDecision(BaseModel):
    status: ProposalStatus
    reason: str = ""


@ops_app.post("/ops/proposal")
async def create_proposal(payload: ProposalPayload) -> JSONResponse:
    ctx = await _context()
    result = await ctx.admission.submit(
        payload.source, payload.agent, payload.action, payload.params, payload.priority,
    )
    body = {
        "proposal": result.proposal.model_dump(mode="json"),
        "auto_approved": result.auto_approved,
        "mission_id": result.mission.id if result.mission else None,
    }
    if result.rejected:
        body.update(error=result.reason, code=result.code)
        return JSONResponse(body, status_code=429)
    return JSONResponse(body, status_code=201)


@ops_app.patch("/ops/proposal/{proposal_id}")
async def decide_proposal(proposal_id: str, payload: ProposalDecision) -> dict:
    ctx = await _context()
    result = await ctx.admission.update_proposal_status(
        proposal_id, payload.status, payload.reason,
    )
    return {
        "proposal": result.proposal.model_dump(mode="json"),
        "mission_id": result.mission.id if result.mission else None,
    }


# ── Control loop ─────────────────────────────────────────────────

@ops_app.post("/ops/heartbeat")
async def heartbeat(authorization: str = Header(default="")) -> JSONResponse:
    expected = f"Bearer {_heartbeat_secret}"
    if not _heartbeat_secret or not hmac.compare_digest(authorization, expected):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    ctx = await _context()
    result = await ctx.loop.tick()
    return JSONResponse(
        {"success": result.ok, "results": result.model_dump(mode="json")},
        status_code=200,
    )


@ops_app.get("/ops/status")
async def status(limit: int = 20) -> dict:
    ctx = await _context()
    health = await ctx.sweeper.get_system_health()
    events = await ctx.events.query(limit=limit)
    return {
        "version": __version__,
        "health": health.model_dump(mode="json"),
        "recent_events": [e.model_dump(mode="json") for e in events],
    }


# ── Reactions ────────────────────────────────────────────────────

@ops_app.get("/ops/reactions")
async def get_reactions() -> dict:
    ctx = await _context()
    matrix = await ctx.reactions.get_reaction_matrix()
    return matrix.model_dump(mode="json")


@ops_app.put("/ops/reactions")
async def put_reactions(matrix: ReactionMatrix) -> dict:
    ctx = await _context()
    saved = await ctx.reactions.update_reaction_matrix(matrix)
    return saved.model_dump(mode="json")


# ── Workers ──────────────────────────────────────────────────────

class ClaimPayload(BaseModel):
    worker_id: str


class OutcomePayload(BaseModel):
    success: bool
    result: dict[str, Any] = Field(default_factory=dict)
    error: str = ""


@ops_app.post("/ops/steps/claim", response_model=None)
async def claim_step(payload: ClaimPayload) -> dict | Response:
    ctx = await _context()
    step = await ctx.scheduler.claim_next_step(payload.worker_id)
    if step is None:
        return Response(status_code=204)
    return step.model_dump(mode="json")


@ops_app.post("/ops/steps/{step_id}/outcome")
async def report_outcome(step_id: str, payload: OutcomePayload) -> JSONResponse:
    ctx = await _context()
    recorded = await ctx.scheduler.record_outcome(
        step_id, payload.success, result=payload.result, error=payload.error,
    )
    if not recorded:
        return JSONResponse({"error": "Step is not running", "recorded": False}, status_code=409)
    return JSONResponse({"recorded": True}, status_code=200)
