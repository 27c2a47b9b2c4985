"""Trigger rules — how the factory notices that work is due.

A rule looks at recent events and missions (or the clock) and, when its
condition holds, returns the params for a new proposal. Rules never submit
anything themselves; the evaluator owns cooldowns and submission.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from opsloop.events.log import Event, EventLog
from opsloop.store.repository import OpsStore
from opsloop.types import REACTION_DEPTH_KEY, Priority, depth_of, start_of_day

TRIGGER_SCOPE = "trigger"


class RuleContext:
    """Everything a condition may consult during one evaluation pass."""

    def __init__(
        self,
        store: OpsStore,
        events: EventLog,
        now: datetime,
        rng: random.Random,
        max_depth: int,
    ) -> None:
        self.store = store
        self.events = events
        self.now = now
        self.rng = rng
        self.max_depth = max_depth


class TriggerRule(ABC):
    """A condition plus the (agent, action) it proposes when the condition holds."""

    id: str = ""
    name: str = ""
    agent: str = ""
    action: str = ""
    cooldown: timedelta = timedelta(hours=1)
    priority: Priority = Priority.NORMAL

    @abstractmethod
    async def evaluate(self, ctx: RuleContext) -> dict[str, Any] | None:
        """Return proposal params if the rule should fire now, else None."""
        ...

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "agent": self.agent,
            "action": self.action,
            "cooldown_seconds": int(self.cooldown.total_seconds()),
            "priority": self.priority.value,
        }


class EventFollowUpRule(TriggerRule):
    """Fires for a recent event of `event_kind` that no `action` proposal references yet."""

    event_kind: str = ""
    lookback: timedelta = timedelta(hours=2)
    scan_limit: int = 10

    def matches(self, event: Event) -> bool:
        return True

    async def evaluate(self, ctx: RuleContext) -> dict[str, Any] | None:
        since = ctx.now - self.lookback
        events = await ctx.events.query(self.event_kind, since=since, limit=self.scan_limit)
        for event in events:
            depth = depth_of(event.data)
            if depth >= ctx.max_depth or not self.matches(event):
                continue
            if await ctx.store.proposal_exists(self.action, "event_id", event.id, since):
                continue
            return {"event_id": event.id, REACTION_DEPTH_KEY: depth + 1}
        return None


class ViralTweetRule(EventFollowUpRule):
    id = "viral_tweet_analysis"
    name = "Viral Tweet Analysis"
    agent = "scout"
    action = "analyze_viral_content"
    cooldown = timedelta(hours=2)
    priority = Priority.HIGH
    event_kind = "tweet_posted"
    engagement_threshold = 0.05

    def matches(self, event: Event) -> bool:
        try:
            return float(event.data.get("engagement", 0)) > self.engagement_threshold
        except (TypeError, ValueError):
            return False


class ContentReviewRule(EventFollowUpRule):
    id = "content_quality_review"
    name = "Content Quality Review"
    agent = "observer"
    action = "review_content"
    cooldown = timedelta(hours=2)
    event_kind = "content_published"
    scan_limit = 5


class InsightPromotionRule(EventFollowUpRule):
    id = "insight_promotion"
    name = "Insight Promotion"
    agent = "sage"
    action = "promote_insight"
    cooldown = timedelta(hours=4)
    priority = Priority.LOW
    event_kind = "insight_upvoted"
    lookback = timedelta(hours=4)
    min_upvotes = 3

    def matches(self, event: Event) -> bool:
        try:
            return int(event.data.get("upvotes", 0)) >= self.min_upvotes
        except (TypeError, ValueError):
            return False


class FailedMissionRule(TriggerRule):
    """A mission failed in the last hour and nobody has been asked to diagnose it."""

    id = "mission_failure_diagnosis"
    name = "Mission Failure Diagnosis"
    agent = "sage"
    action = "diagnose_failure"
    cooldown = timedelta(hours=1)
    priority = Priority.HIGH
    lookback = timedelta(hours=1)

    async def evaluate(self, ctx: RuleContext) -> dict[str, Any] | None:
        since = ctx.now - self.lookback
        for mission in await ctx.store.failed_missions_since(since, limit=5):
            proposal = await ctx.store.proposal_for_mission(mission.id)
            depth = depth_of(proposal.params) if proposal else 0
            if depth >= ctx.max_depth:
                continue
            if await ctx.store.proposal_exists(self.action, "mission_id", mission.id, since):
                continue
            return {"mission_id": mission.id, REACTION_DEPTH_KEY: depth + 1}
        return None


class ScheduledRule(TriggerRule):
    """Fires near a wall-clock time (UTC), once per day or per week.

    `skip_probability` occasionally lets a slot pass so the cadence is not
    perfectly periodic; the next tick inside the window gets another draw.
    """

    hour: int = 0
    minute: int = 0
    weekday: int | None = None  # Monday == 0; None means every day
    window_minutes: int = 5
    skip_probability: float = 0.0

    def period_start(self, now: datetime) -> datetime:
        day = start_of_day(now)
        if self.weekday is None:
            return day
        return day - timedelta(days=day.weekday())

    async def evaluate(self, ctx: RuleContext) -> dict[str, Any] | None:
        now = ctx.now
        if self.weekday is not None and now.weekday() != self.weekday:
            return None
        if now.hour != self.hour or abs(now.minute - self.minute) > self.window_minutes:
            return None

        last = await ctx.store.last_fired(TRIGGER_SCOPE, self.id)
        if last is not None and last >= self.period_start(now):
            return None
        if self.skip_probability and ctx.rng.random() < self.skip_probability:
            return None
        return {"scheduled_for": f"{self.hour:02d}:{self.minute:02d}"}


class DailyIntelScanRule(ScheduledRule):
    id = "daily_intel_scan"
    name = "Daily Intel Scan"
    agent = "scout"
    action = "gather_intel"
    cooldown = timedelta(hours=20)
    hour = 4
    skip_probability = 0.1


class WeeklyStrategyReviewRule(ScheduledRule):
    id = "weekly_strategy_review"
    name = "Weekly Strategy Review"
    agent = "sage"
    action = "strategic_analysis"
    cooldown = timedelta(days=6)
    hour = 9
    weekday = 0


def default_rules() -> list[TriggerRule]:
    return [
        ViralTweetRule(),
        FailedMissionRule(),
        ContentReviewRule(),
        InsightPromotionRule(),
        DailyIntelScanRule(),
        WeeklyStrategyReviewRule(),
    ]
