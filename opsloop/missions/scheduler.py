"""Mission/Step Scheduler — decomposes approved proposals and hands steps to workers.

Workers call claim_next_step() and record_outcome(). The claim is the only
mutual exclusion in the system: a conditional UPDATE that succeeds for
exactly one caller. Everything else is idempotent by status predicate, so a
mission is finalized once no matter how outcomes interleave.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from opsloop.events.log import EventLog
from opsloop.exceptions import ClaimConflict, InvalidTransitionError, StepNotFoundError
from opsloop.missions.actions import expand
from opsloop.missions.state_machine import (
    can_transition_mission,
    can_transition_step,
    mission_outcome,
)
from opsloop.store.repository import OpsStore
from opsloop.types import (
    REACTION_DEPTH_KEY,
    ActionRun,
    Mission,
    MissionStatus,
    Proposal,
    ProposalStatus,
    Step,
    StepStatus,
    depth_of,
    utcnow,
)

_logger = logging.getLogger(__name__)

# Keeps creation timestamps strictly increasing within a mission.
STEP_SPACING = timedelta(milliseconds=100)

# Facts announced when a step of this kind succeeds: kind -> (event kind, tags)
STEP_COMPLETION_EVENTS: dict[str, tuple[str, list[str]]] = {
    "post_tweet": ("tweet_posted", ["tweet", "posted"]),
    "write_content": ("content_published", ["content", "published"]),
    "crawl": ("intel_gathered", ["intel", "gathered"]),
}


class MissionScheduler:
    """Creates missions, leases steps to workers, and finalizes missions."""

    def __init__(
        self,
        store: OpsStore,
        events: EventLog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._events = events
        self._clock = clock

    async def create_from_proposal(self, proposal: Proposal) -> Mission:
        """Create the mission and its ordered steps for an accepted proposal."""
        if proposal.status == ProposalStatus.REJECTED:
            raise InvalidTransitionError(
                f"Proposal {proposal.id} was rejected; no mission can be created"
            )
        existing = await self._store.get_mission_for_proposal(proposal.id)
        if existing is not None:
            return existing

        now = self._clock()
        mission = Mission(proposal_id=proposal.id, created_at=now, updated_at=now)
        steps = [
            Step(
                mission_id=mission.id,
                seq=i,
                kind=spec.kind.value,
                params=spec.params,
                created_at=now + i * STEP_SPACING,
                updated_at=now + i * STEP_SPACING,
            )
            for i, spec in enumerate(expand(proposal.action, proposal.params))
        ]
        if not await self._store.create_mission(mission, steps, at=now):
            existing = await self._store.get_mission_for_proposal(proposal.id)
            if existing is not None:
                return existing
            raise InvalidTransitionError(f"Proposal {proposal.id} is no longer pending")

        await self._events.append(
            "mission_created",
            {
                "mission_id": mission.id,
                "proposal_id": proposal.id,
                "agent": proposal.agent,
                "action": proposal.action,
                "steps_count": len(steps),
                REACTION_DEPTH_KEY: depth_of(proposal.params),
            },
            agent_id=proposal.agent,
            tags=["mission", "created"],
        )
        _logger.info(
            "Mission %s created for %s/%s with %d steps",
            mission.id, proposal.agent, proposal.action, len(steps),
        )
        return mission

    async def claim_next_step(self, worker_id: str) -> Step | None:
        """Lease the next runnable step to `worker_id`, or None if none / lost the race."""
        candidate = await self._store.next_claimable_step()
        if candidate is None:
            return None
        try:
            step = await self._store.claim_step(candidate.id, worker_id, at=self._clock())
        except ClaimConflict:
            _logger.debug("Worker %s lost the claim on step %s", worker_id, candidate.id)
            return None
        _logger.info("Worker %s claimed step %s (%s)", worker_id, step.id, step.kind)
        return step

    async def record_outcome(
        self,
        step_id: str,
        success: bool,
        result: dict[str, Any] | None = None,
        error: str = "",
    ) -> bool:
        """Finish a running step. Returns False (and changes nothing) if it was not running."""
        step = await self._store.get_step(step_id)
        if step is None:
            raise StepNotFoundError(f"No step with id {step_id}")
        status = StepStatus.SUCCEEDED if success else StepStatus.FAILED
        if step.status != StepStatus.RUNNING or not can_transition_step(step.status, status):
            _logger.warning(
                "Outcome for step %s ignored: status is %s", step_id, step.status.value
            )
            return False

        now = self._clock()
        run = ActionRun(
            step_id=step.id,
            action=step.kind,
            succeeded=success,
            output=(result or {}) if success else {},
            error="" if success else error,
            started_at=step.reserved_at,
            completed_at=now,
        )
        updated = await self._store.complete_step(
            step.id,
            status,
            at=now,
            result=result if success else None,
            error="" if success else error,
            run=run,
        )
        if updated is None:
            _logger.warning("Outcome for step %s lost to a concurrent update", step_id)
            return False

        proposal = await self._store.proposal_for_mission(step.mission_id)
        agent = proposal.agent if proposal else ""
        depth = depth_of(proposal.params) if proposal else 0

        data = {
            "step_id": step.id,
            "mission_id": step.mission_id,
            "kind": step.kind,
            "worker": step.reserved_by,
            REACTION_DEPTH_KEY: depth,
        }
        if success:
            await self._events.append(
                "step_succeeded", data, agent_id=agent, tags=["step", "success", step.kind],
            )
            completion = STEP_COMPLETION_EVENTS.get(step.kind)
            if completion is not None:
                kind, tags = completion
                await self._events.append(
                    kind, {**(result or {}), **data}, agent_id=agent, tags=tags,
                )
        else:
            await self._events.append(
                "step_failed",
                {**data, "error": error},
                agent_id=agent,
                tags=["step", "failure", step.kind],
            )

        await self.maybe_finalize(step.mission_id)
        return True

    async def maybe_finalize(self, mission_id: str) -> MissionStatus | None:
        """Close the mission if every step is terminal. Safe to call any number of times."""
        steps = await self._store.steps_for_mission(mission_id)
        outcome = mission_outcome([s.status for s in steps])
        if outcome is None:
            return None
        mission = await self._store.get_mission(mission_id)
        if mission is None or not can_transition_mission(mission.status, outcome):
            return None

        if not await self._store.finalize_mission(mission_id, outcome, at=self._clock()):
            return None  # already terminal

        proposal = await self._store.proposal_for_mission(mission_id)
        agent = proposal.agent if proposal else ""
        failed = outcome == MissionStatus.FAILED
        await self._events.append(
            "mission_failed" if failed else "mission_succeeded",
            {
                "mission_id": mission_id,
                "agent": agent,
                "action": proposal.action if proposal else "",
                "failed_steps": sum(1 for s in steps if s.status == StepStatus.FAILED),
                REACTION_DEPTH_KEY: depth_of(proposal.params) if proposal else 0,
            },
            agent_id=agent,
            tags=["mission", outcome.value],
        )
        _logger.info("Mission %s %s", mission_id, outcome.value)
        return outcome
