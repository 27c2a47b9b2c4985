"""Cap gates — per-action quota and enable checks run at proposal time.

Each gate reads its policy fresh, counts successful executions of the action
inside its window, and raises AdmissionRejected on exhaustion or disablement.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable

from opsloop.exceptions import AdmissionRejected
from opsloop.missions.actions import Action
from opsloop.policy.schema import (
    ContentQuota,
    CrawlQuota,
    DraftQuota,
    EnabledFlag,
    TweetQuota,
)
from opsloop.policy.store import PolicyStore
from opsloop.store.repository import OpsStore
from opsloop.types import start_of_day

QUOTA_EXCEEDED = "quota_exceeded"
ACTION_DISABLED = "action_disabled"


class GateContext:
    """What a gate may look at: policy, execution counts, and the current time."""

    def __init__(self, policy: PolicyStore, store: OpsStore, now: datetime) -> None:
        self.policy = policy
        self.store = store
        self.now = now

    async def runs_today(self, action: Action) -> int:
        return await self.store.count_action_runs(action.value, start_of_day(self.now))

    async def runs_last_hour(self, action: Action) -> int:
        return await self.store.count_action_runs(
            action.value, self.now - timedelta(hours=1)
        )


Gate = Callable[[GateContext], Awaitable[None]]


def _quota_reached(label: str, count: int, limit: int) -> AdmissionRejected:
    return AdmissionRejected(QUOTA_EXCEEDED, f"{label} quota reached ({count}/{limit})")


async def check_post_tweet(ctx: GateContext) -> None:
    autopost = await ctx.policy.get("x_autopost", EnabledFlag)
    if not autopost.enabled:
        raise AdmissionRejected(ACTION_DISABLED, "x_autopost disabled")

    quota = await ctx.policy.get("x_daily_quota", TweetQuota)
    count = await ctx.runs_today(Action.POST_TWEET)
    if count >= quota.limit:
        raise _quota_reached("Daily tweet", count, quota.limit)


async def check_write_content(ctx: GateContext) -> None:
    quota = await ctx.policy.get("content_quota", ContentQuota)
    count = await ctx.runs_today(Action.WRITE_CONTENT)
    if count >= quota.daily_limit:
        raise _quota_reached("Daily content", count, quota.daily_limit)


async def check_deploy(ctx: GateContext) -> None:
    policy = await ctx.policy.get("deploy_policy", EnabledFlag)
    if not policy.enabled:
        raise AdmissionRejected(ACTION_DISABLED, "Deploys disabled by policy")


async def check_analyze(ctx: GateContext) -> None:
    return None


async def check_crawl(ctx: GateContext) -> None:
    quota = await ctx.policy.get("crawl_quota", CrawlQuota)
    count = await ctx.runs_last_hour(Action.CRAWL)
    if count >= quota.hourly_limit:
        raise _quota_reached("Hourly crawl", count, quota.hourly_limit)


async def check_draft_tweet(ctx: GateContext) -> None:
    quota = await ctx.policy.get("draft_quota", DraftQuota)
    count = await ctx.runs_today(Action.DRAFT_TWEET)
    if count >= quota.daily_limit:
        raise _quota_reached("Daily draft", count, quota.daily_limit)


ACTION_GATES: dict[Action, Gate] = {
    Action.POST_TWEET: check_post_tweet,
    Action.WRITE_CONTENT: check_write_content,
    Action.DEPLOY: check_deploy,
    Action.ANALYZE: check_analyze,
    Action.CRAWL: check_crawl,
    Action.DRAFT_TWEET: check_draft_tweet,
}


async def run_gate(action: str, ctx: GateContext) -> None:
    """Run the gate registered for `action`, if any. Raises AdmissionRejected."""
    parsed = Action.parse(action)
    if parsed is None:
        return
    gate = ACTION_GATES.get(parsed)
    if gate is not None:
        await gate(ctx)
