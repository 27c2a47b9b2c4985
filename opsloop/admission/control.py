"""Admission Control — the single entry point for turning intent into a proposal.

Checks, in order, stopping at the first failure:
  1. per-agent daily cap
  2. the action's cap gate (quota window or enable flag)
  3. auto-approve policy

Rejections are persisted and announced, never dropped. Auto-approved
proposals are handed straight to the scheduler.

Usage:
    admission = AdmissionControl(store, events, policy, scheduler)
    result = await admission.submit("api", "quill", "draft_tweet", {"topic": "agents"})
    if result.rejected:
        print(result.reason)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable

from pydantic import BaseModel

from opsloop.admission.gates import GateContext, run_gate
from opsloop.events.log import EventLog
from opsloop.exceptions import AdmissionRejected, ProposalNotFoundError
from opsloop.missions.scheduler import MissionScheduler
from opsloop.missions.state_machine import check_proposal_transition
from opsloop.policy.schema import AgentDailyLimits, AutoApprovePolicy
from opsloop.policy.store import PolicyStore
from opsloop.store.repository import OpsStore
from opsloop.types import (
    REACTION_DEPTH_KEY,
    Mission,
    Priority,
    Proposal,
    ProposalStatus,
    depth_of,
    start_of_day,
    utcnow,
)

_logger = logging.getLogger(__name__)

DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"

# Submissions for one agent are serialized in-process, so concurrent callers
# cannot push that agent past its daily cap.
# Locks live only while some call holds or awaits them.
ADMISSION_OVERSHOOT_BOUND = 0


class SubmitResult(BaseModel):
    """Outcome of one submission."""

    proposal: Proposal
    rejected: bool = False
    auto_approved: bool = False
    reason: str = ""
    code: str = ""
    mission: Mission | None = None

    @property
    def accepted(self) -> bool:
        return self.proposal.status == ProposalStatus.ACCEPTED


class AdmissionControl:
    """Gatekeeper for every proposal, whatever its source (api, trigger, reaction)."""

    def __init__(
        self,
        store: OpsStore,
        events: EventLog,
        policy: PolicyStore,
        scheduler: MissionScheduler,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._events = events
        self._policy = policy
        self._scheduler = scheduler
        self._clock = clock
        self._agent_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _agent_lock(self, agent: str) -> AsyncIterator[None]:
        lock = self._agent_locks.setdefault(agent, asyncio.Lock())
        self._lock_users[agent] = self._lock_users.get(agent, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[agent] -= 1
            if not self._lock_users[agent]:
                del self._lock_users[agent]
                del self._agent_locks[agent]

    async def submit(
        self,
        source: str,
        agent: str,
        action: str,
        params: dict[str, Any] | None = None,
        priority: Priority | str = Priority.NORMAL,
    ) -> SubmitResult:
        """Admit or reject a proposal. Store failures propagate."""
        async with self._agent_lock(agent):
            now = self._clock()
            proposal = Proposal(
                source=source,
                agent=agent,
                action=action,
                params=params or {},
                priority=Priority(priority),
                created_at=now,
                updated_at=now,
            )

            try:
                await self._check_daily_cap(agent, now)
                await run_gate(action, GateContext(self._policy, self._store, now))
            except AdmissionRejected as rejection:
                return await self._reject(proposal, rejection)

            auto_approve = await self._policy.get("auto_approve", AutoApprovePolicy)
            auto_approved = auto_approve.allows(agent, action)
            # stays pending until the mission exists; create_mission flips it
            await self._store.insert_proposal(proposal)

        await self._events.append(
            "proposal_created",
            {
                "proposal_id": proposal.id,
                "agent": agent,
                "action": action,
                "auto_approved": auto_approved,
                "source_type": source,
                REACTION_DEPTH_KEY: depth_of(proposal.params),
            },
            agent_id=agent,
            tags=["proposal", "created", "auto_approved" if auto_approved else "pending"],
        )

        mission = None
        if auto_approved:
            mission = await self._scheduler.create_from_proposal(proposal)
            proposal.status = ProposalStatus.ACCEPTED

        _logger.info(
            "Proposal %s from %s/%s %s",
            proposal.id, agent, action, "auto-approved" if auto_approved else "pending",
        )
        return SubmitResult(proposal=proposal, auto_approved=auto_approved, mission=mission)

    async def update_proposal_status(
        self,
        proposal_id: str,
        status: ProposalStatus | str,
        reason: str = "",
    ) -> SubmitResult:
        """Manual accept/reject. Acceptance creates the mission like auto-approval does."""
        target = ProposalStatus(status)
        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(f"No proposal with id {proposal_id}")
        check_proposal_transition(proposal.status, target)

        if target == ProposalStatus.ACCEPTED:
            return await self._accept(proposal)

        now = self._clock()
        moved = await self._store.transition_proposal(
            proposal_id, ProposalStatus.PENDING, target, at=now, reason=reason,
        )
        if not moved:
            # someone else decided first; report against what they decided
            current = await self._store.get_proposal(proposal_id)
            check_proposal_transition(current.status, target)

        proposal.status = target
        proposal.rejection_reason = reason
        proposal.updated_at = now

        await self._events.append(
            "proposal_rejected",
            {
                "proposal_id": proposal.id,
                "agent": proposal.agent,
                "action": proposal.action,
                "reason": reason or "rejected by operator",
                "manual": True,
            },
            agent_id=proposal.agent,
            tags=["proposal", "rejected"],
        )
        return SubmitResult(proposal=proposal, rejected=True, reason=reason)

    async def _accept(self, proposal: Proposal) -> SubmitResult:
        # the status flip commits with the mission, or not at all
        async with self._agent_lock(proposal.agent):
            current = await self._store.get_proposal(proposal.id)
            check_proposal_transition(current.status, ProposalStatus.ACCEPTED)
            mission = await self._scheduler.create_from_proposal(proposal)
        proposal.status = ProposalStatus.ACCEPTED
        proposal.updated_at = mission.created_at

        await self._events.append(
            "proposal_accepted",
            {"proposal_id": proposal.id, "agent": proposal.agent, "action": proposal.action},
            agent_id=proposal.agent,
            tags=["proposal", "accepted"],
        )
        return SubmitResult(proposal=proposal, mission=mission)

    async def _check_daily_cap(self, agent: str, now: datetime) -> None:
        limits = await self._policy.get("agent_daily_limits", AgentDailyLimits)
        limit = limits.limit_for(agent)
        count = await self._store.count_proposals_by_agent(agent, start_of_day(now))
        if count >= limit:
            raise AdmissionRejected(
                DAILY_LIMIT_EXCEEDED,
                f"Daily proposal limit reached for {agent} ({count}/{limit})",
            )

    async def _reject(self, proposal: Proposal, rejection: AdmissionRejected) -> SubmitResult:
        proposal.status = ProposalStatus.REJECTED
        proposal.rejection_reason = rejection.reason
        await self._store.insert_proposal(proposal)

        await self._events.append(
            "proposal_rejected",
            {
                "proposal_id": proposal.id,
                "agent": proposal.agent,
                "action": proposal.action,
                "code": rejection.code,
                "reason": rejection.reason,
                REACTION_DEPTH_KEY: depth_of(proposal.params),
            },
            agent_id=proposal.agent,
            tags=["proposal", "rejected", rejection.code],
        )
        _logger.info(
            "Proposal from %s/%s rejected: %s", proposal.agent, proposal.action, rejection.reason
        )
        return SubmitResult(
            proposal=proposal, rejected=True, reason=rejection.reason, code=rejection.code,
        )
