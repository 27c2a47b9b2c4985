"""Reaction Engine — agents responding to each other's work.

Recent events are matched against the reaction matrix. A match that is not
cooling down fires with the pattern's probability and becomes a proposal
from the pattern's target agent. Events are read past a stored cursor, so
each one is looked at once.

Reaction chains are bounded: every proposal made here carries its depth, the
events its mission produces inherit it, and events at the configured maximum
depth are not reacted to.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel, Field

from opsloop.admission.control import AdmissionControl
from opsloop.events.log import Event, EventLog
from opsloop.policy.schema import ReactionMatrix, ReactionPattern
from opsloop.policy.store import PolicyStore
from opsloop.store.repository import OpsStore
from opsloop.types import REACTION_DEPTH_KEY, depth_of, utcnow

_logger = logging.getLogger(__name__)

REACTION_SCOPE = "reaction"
CURSOR_NAME = "reactions"


class ReactionFiring(BaseModel):
    pattern_id: str
    event_id: str
    agent: str
    action: str
    proposal_id: str
    rejected: bool = False
    reason: str = ""


class ReactionReport(BaseModel):
    processed: int = 0
    matched: int = 0
    skipped_cooldown: int = 0
    skipped_chance: int = 0
    suppressed: int = 0
    fired: list[ReactionFiring] = Field(default_factory=list)
    timed_out: bool = False


def matches_pattern(event: Event, pattern: ReactionPattern) -> bool:
    """Source is the agent behind the event (or "*"); every tag must appear
    in the event's tags or inside its kind."""
    if pattern.source != "*" and pattern.source != event.agent_id:
        return False
    return all(tag in event.tags or tag in event.kind for tag in pattern.tags)


class ReactionEngine:
    """Turns matching events into follow-up proposals."""

    def __init__(
        self,
        store: OpsStore,
        events: EventLog,
        policy: PolicyStore,
        admission: AdmissionControl,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
        lookback_minutes: int = 5,
        event_limit: int = 50,
        max_depth: int = 3,
    ) -> None:
        self._store = store
        self._events = events
        self._policy = policy
        self._admission = admission
        self._clock = clock
        self._rng = rng or random.Random()
        self._lookback = timedelta(minutes=lookback_minutes)
        self._event_limit = event_limit
        self._max_depth = max_depth

    async def get_reaction_matrix(self) -> ReactionMatrix:
        return await self._policy.get("reaction_matrix", ReactionMatrix)

    async def update_reaction_matrix(self, matrix: ReactionMatrix | dict) -> ReactionMatrix:
        if not isinstance(matrix, ReactionMatrix):
            matrix = ReactionMatrix.model_validate(matrix)
        await self._policy.set("reaction_matrix", matrix)
        return matrix

    async def process(self, timeout: float = 3.0) -> ReactionReport:
        """Examine events since the cursor. Store errors propagate."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        report = ReactionReport()

        matrix = await self.get_reaction_matrix()
        cursor = await self._store.get_cursor(CURSOR_NAME)
        events = await self._events.query(
            since=self._clock() - self._lookback,
            after_seq=cursor,
            limit=self._event_limit,
            oldest_first=True,
        )

        for event in events:
            if loop.time() >= deadline:
                report.timed_out = True
                break
            await self._react_to(event, matrix.patterns, report)
            report.processed += 1
            await self._store.set_cursor(CURSOR_NAME, event.seq)

        return report

    async def _react_to(
        self, event: Event, patterns: list[ReactionPattern], report: ReactionReport
    ) -> None:
        matching = [p for p in patterns if matches_pattern(event, p)]
        if not matching:
            return
        report.matched += len(matching)

        depth = depth_of(event.data)
        if depth >= self._max_depth:
            report.suppressed += len(matching)
            _logger.info("Reaction chain stopped at %s (depth %d)", event.kind, depth)
            return

        for pattern in matching:
            now = self._clock()
            last = await self._store.last_fired(REACTION_SCOPE, pattern.id)
            if last is not None and now - last < timedelta(minutes=pattern.cooldown):
                report.skipped_cooldown += 1
                continue
            if self._rng.random() >= pattern.probability:
                report.skipped_chance += 1
                continue

            result = await self._admission.submit(
                source="reaction",
                agent=pattern.target,
                action=pattern.action,
                params={
                    "source_event_id": event.id,
                    "source_event_kind": event.kind,
                    "pattern_id": pattern.id,
                    "triggered_by": event.agent_id,
                    REACTION_DEPTH_KEY: depth + 1,
                },
            )
            if not result.rejected:
                await self._store.record_fire(REACTION_SCOPE, pattern.id, now)
            report.fired.append(ReactionFiring(
                pattern_id=pattern.id,
                event_id=event.id,
                agent=pattern.target,
                action=pattern.action,
                proposal_id=result.proposal.id,
                rejected=result.rejected,
                reason=result.reason,
            ))
            _logger.info(
                "Reaction %s: %s -> %s/%s", pattern.id, event.kind, pattern.target, pattern.action,
            )
