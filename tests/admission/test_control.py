"""Tests for admission control — caps, gates, auto-approve, manual decisions."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from opsloop.admission.control import ADMISSION_OVERSHOOT_BOUND, DAILY_LIMIT_EXCEEDED
from opsloop.admission.gates import ACTION_DISABLED, QUOTA_EXCEEDED
from opsloop.exceptions import (
    InvalidTransitionError,
    ProposalNotFoundError,
    TransientStoreError,
)
from opsloop.types import ActionRun, ProposalStatus, StepStatus


async def _record_runs(ctx, action, n, succeeded=True):
    for _ in range(n):
        await ctx.store.insert_action_run(ActionRun(
            step_id="s", action=action, succeeded=succeeded, completed_at=ctx.clock(),
        ))


async def test_auto_approved_draft_creates_single_step_mission(ctx):
    result = await ctx.admission.submit("api", "quill", "draft_tweet", {"topic": "agents"})

    assert not result.rejected
    assert result.auto_approved
    assert result.accepted
    assert result.mission is not None
    steps = await ctx.store.steps_for_mission(result.mission.id)
    assert [(s.kind, s.status) for s in steps] == [("draft_tweet", StepStatus.QUEUED)]

    [created] = await ctx.events.query("proposal_created")
    assert created.data["auto_approved"] is True
    assert created.agent_id == "quill"


async def test_non_whitelisted_action_stays_pending(ctx):
    result = await ctx.admission.submit("api", "xalt", "post_tweet")
    assert not result.rejected
    assert not result.auto_approved
    assert result.proposal.status == ProposalStatus.PENDING
    assert result.mission is None
    assert await ctx.store.get_mission_for_proposal(result.proposal.id) is None


async def test_unknown_agent_is_not_auto_approved(ctx):
    result = await ctx.admission.submit("api", "stranger", "crawl")
    assert result.proposal.status == ProposalStatus.PENDING


async def test_hourly_crawl_quota(ctx):
    await _record_runs(ctx, "crawl", 20)

    result = await ctx.admission.submit("api", "scout", "crawl")

    assert result.rejected
    assert result.code == QUOTA_EXCEEDED
    assert "quota reached" in result.reason
    assert "(20/20)" in result.reason
    assert result.mission is None
    stored = await ctx.store.get_proposal(result.proposal.id)
    assert stored.status == ProposalStatus.REJECTED
    assert stored.rejection_reason == result.reason
    [event] = await ctx.events.query("proposal_rejected")
    assert event.data["code"] == QUOTA_EXCEEDED


async def test_crawl_window_rolls(ctx):
    await _record_runs(ctx, "crawl", 20)
    ctx.clock.advance(minutes=61)
    result = await ctx.admission.submit("api", "scout", "crawl")
    assert not result.rejected


async def test_failed_runs_do_not_use_quota(ctx):
    await _record_runs(ctx, "crawl", 25, succeeded=False)
    result = await ctx.admission.submit("api", "scout", "crawl")
    assert not result.rejected


async def test_tweet_quota_and_autopost_flag(ctx):
    await ctx.policy.set("x_autopost", {"enabled": False})
    result = await ctx.admission.submit("api", "xalt", "post_tweet")
    assert result.code == ACTION_DISABLED
    assert result.reason == "x_autopost disabled"

    await ctx.policy.set("x_autopost", {"enabled": True})
    await ctx.policy.set("x_daily_quota", {"limit": 2})
    await _record_runs(ctx, "post_tweet", 2)
    result = await ctx.admission.submit("api", "xalt", "post_tweet")
    assert result.reason == "Daily tweet quota reached (2/2)"


async def test_deploy_disabled(ctx):
    await ctx.policy.set("deploy_policy", {"enabled": False})
    result = await ctx.admission.submit("api", "minion", "deploy")
    assert result.rejected
    assert result.reason == "Deploys disabled by policy"


async def test_daily_content_quota_resets_at_midnight(ctx):
    await ctx.policy.set("content_quota", {"daily_limit": 1})
    await _record_runs(ctx, "write_content", 1)
    assert (await ctx.admission.submit("api", "quill", "write_content")).rejected

    ctx.clock.set(ctx.clock().replace(hour=0, minute=1) + timedelta(days=1))
    assert not (await ctx.admission.submit("api", "quill", "write_content")).rejected


async def test_daily_cap_rejects_at_limit(ctx):
    await ctx.policy.set("agent_daily_limits", {"default": 50, "sage": 3})

    for _ in range(3):
        assert not (await ctx.admission.submit("api", "sage", "make_decision")).rejected

    result = await ctx.admission.submit("api", "sage", "make_decision")
    assert result.rejected
    assert result.code == DAILY_LIMIT_EXCEEDED
    assert result.reason == "Daily proposal limit reached for sage (3/3)"
    [event] = await ctx.events.query("proposal_rejected")
    assert event.data["code"] == DAILY_LIMIT_EXCEEDED

    # other agents are unaffected
    assert not (await ctx.admission.submit("api", "scout", "make_decision")).rejected


async def test_rejections_count_toward_daily_cap(ctx):
    await ctx.policy.set("agent_daily_limits", {"scout": 2})
    await ctx.policy.set("deploy_policy", {"enabled": False})
    await ctx.admission.submit("api", "scout", "deploy")
    await ctx.admission.submit("api", "scout", "deploy")
    result = await ctx.admission.submit("api", "scout", "crawl")
    assert result.code == DAILY_LIMIT_EXCEEDED


async def test_concurrent_submissions_never_exceed_cap(ctx):
    await ctx.policy.set("agent_daily_limits", {"scout": 5})

    results = await asyncio.gather(*(
        ctx.admission.submit("api", "scout", "make_decision") for _ in range(12)
    ))
    admitted = [r for r in results if not r.rejected]
    assert len(admitted) <= 5 + ADMISSION_OVERSHOOT_BOUND
    assert len(admitted) == 5
    assert all(r.code == DAILY_LIMIT_EXCEEDED for r in results if r.rejected)


async def test_agent_locks_are_released_when_idle(ctx):
    await asyncio.gather(*(
        ctx.admission.submit("api", agent, "make_decision")
        for agent in ("scout", "sage", "scout", "minion", "sage")
    ))
    assert ctx.admission._agent_locks == {}

    for i in range(20):
        await ctx.admission.submit("api", f"agent-{i}", "analyze")
    assert ctx.admission._agent_locks == {}


async def test_policy_change_applies_to_next_submit(ctx):
    await ctx.policy.set("auto_approve", {"enabled": False})
    assert not (await ctx.admission.submit("api", "quill", "draft_tweet")).auto_approved
    await ctx.policy.set("auto_approve", {"enabled": True})
    assert (await ctx.admission.submit("api", "quill", "draft_tweet")).auto_approved


# ── Manual decisions ────────────────────────────────────────────

async def test_manual_accept_creates_mission(ctx):
    pending = await ctx.admission.submit("api", "xalt", "post_tweet")

    result = await ctx.admission.update_proposal_status(pending.proposal.id, "accepted")

    assert result.mission is not None
    steps = await ctx.store.steps_for_mission(result.mission.id)
    assert [s.kind for s in steps] == ["write_content", "post_tweet"]
    assert await ctx.events.count("proposal_accepted") == 1


async def test_manual_reject_stores_reason(ctx):
    pending = await ctx.admission.submit("api", "xalt", "post_tweet")

    result = await ctx.admission.update_proposal_status(
        pending.proposal.id, ProposalStatus.REJECTED, "off-brand",
    )

    assert result.rejected
    stored = await ctx.store.get_proposal(pending.proposal.id)
    assert stored.status == ProposalStatus.REJECTED
    assert stored.rejection_reason == "off-brand"
    [event] = await ctx.events.query("proposal_rejected")
    assert event.data["reason"] == "off-brand"


async def test_rejected_proposal_cannot_be_accepted(ctx):
    pending = await ctx.admission.submit("api", "xalt", "post_tweet")
    await ctx.admission.update_proposal_status(pending.proposal.id, "rejected")

    with pytest.raises(InvalidTransitionError):
        await ctx.admission.update_proposal_status(pending.proposal.id, "accepted")
    assert await ctx.store.get_mission_for_proposal(pending.proposal.id) is None


async def test_accepting_twice_is_refused(ctx):
    pending = await ctx.admission.submit("api", "xalt", "post_tweet")
    await ctx.admission.update_proposal_status(pending.proposal.id, "accepted")
    with pytest.raises(InvalidTransitionError):
        await ctx.admission.update_proposal_status(pending.proposal.id, "accepted")


async def test_concurrent_accepts_create_one_mission(ctx):
    pending = await ctx.admission.submit("api", "xalt", "post_tweet")

    results = await asyncio.gather(
        ctx.admission.update_proposal_status(pending.proposal.id, "accepted"),
        ctx.admission.update_proposal_status(pending.proposal.id, "accepted"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
    assert await ctx.events.count("proposal_accepted") == 1
    assert await ctx.events.count("mission_created") == 1


async def test_unknown_proposal(ctx):
    with pytest.raises(ProposalNotFoundError):
        await ctx.admission.update_proposal_status("missing", "accepted")


# ── Mission creation failures ───────────────────────────────────

def _break_mission_creation(ctx, monkeypatch):
    async def unavailable(mission, steps, at):
        raise TransientStoreError("database is locked")

    monkeypatch.setattr(ctx.store, "create_mission", unavailable)


async def test_auto_approval_without_mission_stays_pending(ctx, monkeypatch):
    _break_mission_creation(ctx, monkeypatch)
    with pytest.raises(TransientStoreError):
        await ctx.admission.submit("api", "quill", "draft_tweet")

    [proposal] = await ctx.store.list_proposals()
    assert proposal.status == ProposalStatus.PENDING
    assert await ctx.store.get_mission_for_proposal(proposal.id) is None


async def test_manual_accept_without_mission_stays_pending(ctx, monkeypatch):
    pending = await ctx.admission.submit("api", "xalt", "post_tweet")

    _break_mission_creation(ctx, monkeypatch)
    with pytest.raises(TransientStoreError):
        await ctx.admission.update_proposal_status(pending.proposal.id, "accepted")

    stored = await ctx.store.get_proposal(pending.proposal.id)
    assert stored.status == ProposalStatus.PENDING
    assert await ctx.store.get_mission_for_proposal(pending.proposal.id) is None
    assert await ctx.events.count("proposal_accepted") == 0

    monkeypatch.undo()
    result = await ctx.admission.update_proposal_status(pending.proposal.id, "accepted")
    assert result.mission is not None
    stored = await ctx.store.get_proposal(pending.proposal.id)
    assert stored.status == ProposalStatus.ACCEPTED
