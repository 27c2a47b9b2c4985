"""Tests for the control loop tick."""

from __future__ import annotations

import asyncio

from opsloop.heartbeat import ControlLoop
from opsloop.reactions.engine import ReactionReport
from opsloop.triggers.evaluator import TriggerReport


class BrokenTriggers:
    async def evaluate(self, timeout: float = 4.0) -> TriggerReport:
        raise RuntimeError("trigger store unavailable")


class ExhaustedTriggers:
    async def evaluate(self, timeout: float = 4.0) -> TriggerReport:
        return TriggerReport(evaluated=2, timed_out=True)


class HangingReactions:
    async def process(self, timeout: float = 3.0) -> ReactionReport:
        await asyncio.sleep(10)
        return ReactionReport()


class SlowStaleSweeper:
    """Real sweeper, except stale recovery never finishes."""

    def __init__(self, inner):
        self._inner = inner

    async def recover_stale_steps(self):
        await asyncio.sleep(10)

    async def recover_orphaned_missions(self):
        return await self._inner.recover_orphaned_missions()

    async def get_system_health(self):
        return await self._inner.get_system_health()


async def test_quiet_tick_is_idle_and_ok(ctx):
    result = await ctx.loop.tick()

    assert result.ok
    assert [s.name for s in result.subsystems] == [
        "triggers", "reactions", "stale_recovery", "orphan_recovery", "health",
    ]
    assert result.get("triggers").status == "idle"
    assert result.get("reactions").status == "idle"
    assert result.get("health").status == "ok"
    assert result.health.status == "healthy"
    assert ctx.loop.last_result is result


async def test_tick_reports_work_done(ctx):
    await ctx.admission.submit("api", "quill", "draft_tweet")
    await ctx.scheduler.claim_next_step("w1")
    ctx.clock.advance(minutes=31)

    result = await ctx.loop.tick()

    stale = result.get("stale_recovery")
    assert stale.status == "ok"
    assert stale.detail["recovered"] == 1
    # the recovery's own events are picked up on the next pass
    assert (await ctx.loop.tick()).get("reactions").status == "ok"


async def test_failing_subsystem_does_not_stop_the_rest(ctx):
    loop = ControlLoop(BrokenTriggers(), ctx.reactions, ctx.sweeper, clock=ctx.clock)

    result = await loop.tick()

    assert not result.ok
    triggers = result.get("triggers")
    assert triggers.status == "failed"
    assert "trigger store unavailable" in triggers.error
    assert result.get("reactions").status == "idle"
    assert result.get("health").status == "ok"


async def test_budget_exhaustion_reports_timeout(ctx):
    loop = ControlLoop(ExhaustedTriggers(), ctx.reactions, ctx.sweeper, clock=ctx.clock)
    result = await loop.tick()
    assert result.get("triggers").status == "timeout"
    assert not result.ok


async def test_hung_subsystem_is_cut_off(ctx):
    loop = ControlLoop(
        ctx.triggers,
        HangingReactions(),
        SlowStaleSweeper(ctx.sweeper),
        reaction_timeout=0.0,
        recovery_timeout=0.5,
        clock=ctx.clock,
    )

    result = await loop.tick()

    assert result.get("reactions").status == "timeout"
    assert result.get("stale_recovery").status == "timeout"
    assert result.get("orphan_recovery").status == "idle"
    assert result.health is not None


async def test_start_and_stop(ctx):
    loop = ControlLoop(ctx.triggers, ctx.reactions, ctx.sweeper, interval_seconds=60, clock=ctx.clock)
    await loop.start()
    assert loop.is_running
    for _ in range(100):
        if loop.last_result is not None:
            break
        await asyncio.sleep(0.05)
    await loop.stop()
    assert not loop.is_running
    assert loop.last_result is not None
