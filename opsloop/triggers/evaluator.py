"""Trigger Evaluator — one pass over every rule, inside a time budget.

For each rule not cooling down, the condition is evaluated; a hit records
the cooldown first and then submits through Admission Control. Rejections
are reported, not raised. When the budget runs out the pass stops and is
marked timed out; the next tick picks up where this one left off.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from typing import Callable

from pydantic import BaseModel, Field

from opsloop.admission.control import AdmissionControl
from opsloop.events.log import EventLog
from opsloop.store.repository import OpsStore
from opsloop.triggers.rules import TRIGGER_SCOPE, RuleContext, TriggerRule, default_rules
from opsloop.types import utcnow

_logger = logging.getLogger(__name__)


class TriggerFiring(BaseModel):
    """A rule whose condition held during the pass."""

    trigger_id: str
    agent: str
    action: str
    proposal_id: str
    rejected: bool = False
    reason: str = ""


class TriggerReport(BaseModel):
    evaluated: int = 0
    cooling_down: int = 0
    fired: list[TriggerFiring] = Field(default_factory=list)
    timed_out: bool = False

    @property
    def rejected(self) -> list[TriggerFiring]:
        return [f for f in self.fired if f.rejected]


class TriggerEvaluator:
    """Evaluates trigger rules and turns hits into proposals."""

    def __init__(
        self,
        store: OpsStore,
        events: EventLog,
        admission: AdmissionControl,
        rules: list[TriggerRule] | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
        max_depth: int = 3,
    ) -> None:
        self._store = store
        self._events = events
        self._admission = admission
        self._rules = rules if rules is not None else default_rules()
        self._clock = clock
        self._rng = rng or random.Random()
        self._max_depth = max_depth

    @property
    def rules(self) -> list[TriggerRule]:
        return list(self._rules)

    async def evaluate(self, timeout: float = 4.0) -> TriggerReport:
        """Run every rule once. Store errors propagate."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        report = TriggerReport()

        for rule in self._rules:
            remaining = deadline - loop.time()
            if remaining <= 0:
                report.timed_out = True
                break

            now = self._clock()
            last = await self._store.last_fired(TRIGGER_SCOPE, rule.id)
            if last is not None and now - last < rule.cooldown:
                report.cooling_down += 1
                continue

            ctx = RuleContext(self._store, self._events, now, self._rng, self._max_depth)
            report.evaluated += 1
            try:
                params = await asyncio.wait_for(rule.evaluate(ctx), timeout=remaining)
            except asyncio.TimeoutError:
                _logger.warning("Trigger %s ran out of budget", rule.id)
                report.timed_out = True
                break
            if params is None:
                continue

            await self._store.record_fire(TRIGGER_SCOPE, rule.id, now)
            result = await self._admission.submit(
                source="trigger",
                agent=rule.agent,
                action=rule.action,
                params={"trigger_id": rule.id, "trigger_name": rule.name, **params},
                priority=rule.priority,
            )
            report.fired.append(TriggerFiring(
                trigger_id=rule.id,
                agent=rule.agent,
                action=rule.action,
                proposal_id=result.proposal.id,
                rejected=result.rejected,
                reason=result.reason,
            ))
            _logger.info(
                "Trigger %s fired -> %s/%s%s",
                rule.id, rule.agent, rule.action,
                f" (rejected: {result.reason})" if result.rejected else "",
            )

        return report
