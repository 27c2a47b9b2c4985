"""Self-Healing Sweeper — finds work that stopped moving and closes it out.

Two recoveries, both safe to repeat:
  - stale steps: running longer than the threshold, failed with a `Stale:` error
  - orphaned missions: old running missions nobody ever claimed a step of

Plus a read-only health summary.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Literal

from pydantic import BaseModel, Field

from opsloop.events.log import EventLog
from opsloop.exceptions import StalenessFailure
from opsloop.missions.scheduler import MissionScheduler
from opsloop.store.repository import OpsStore
from opsloop.types import (
    ActionRun,
    MissionStatus,
    ProposalStatus,
    StepStatus,
    utcnow,
)

_logger = logging.getLogger(__name__)

ORPHAN_ERROR = "Mission orphaned: no worker claimed steps"

HealthStatus = Literal["healthy", "degraded", "critical"]


class RecoveredStep(BaseModel):
    step_id: str
    mission_id: str
    worker: str
    stale_minutes: int


class OrphanedMission(BaseModel):
    mission_id: str
    reason: Literal["no_steps", "all_steps_queued"]
    steps_failed: int = 0


class SystemHealth(BaseModel):
    status: HealthStatus = "healthy"
    pending_proposals: int = 0
    running_missions: int = 0
    queued_steps: int = 0
    running_steps: int = 0
    failed_steps: int = 0
    stale_steps: int = 0
    queue_depth: int = 0
    checked_at: datetime = Field(default_factory=utcnow)


def classify_health(stale: int, failed: int) -> HealthStatus:
    if stale > 10:
        return "critical"
    if failed > 10 or stale > 5:
        return "degraded"
    return "healthy"


class SelfHealingSweeper:
    """Recovers stale steps and orphaned missions; reports health."""

    def __init__(
        self,
        store: OpsStore,
        events: EventLog,
        scheduler: MissionScheduler,
        clock: Callable[[], datetime] = utcnow,
        stale_threshold_minutes: int = 30,
        orphan_threshold_minutes: int = 60,
    ) -> None:
        self._store = store
        self._events = events
        self._scheduler = scheduler
        self._clock = clock
        self._stale_threshold = timedelta(minutes=stale_threshold_minutes)
        self._orphan_threshold = timedelta(minutes=orphan_threshold_minutes)

    async def recover_stale_steps(self) -> list[RecoveredStep]:
        now = self._clock()
        recovered: list[RecoveredStep] = []

        for step in await self._store.running_steps_reserved_before(now - self._stale_threshold):
            elapsed = int((now - step.reserved_at).total_seconds() // 60)
            failure = StalenessFailure(step.reserved_by, elapsed)
            run = ActionRun(
                step_id=step.id,
                action=step.kind,
                succeeded=False,
                error=f"Stale recovery: {failure}",
                started_at=step.reserved_at,
                completed_at=now,
            )
            updated = await self._store.complete_step(
                step.id, StepStatus.FAILED, at=now, error=str(failure), run=run,
            )
            if updated is None:
                continue  # the worker reported in first

            await self._events.append(
                "step_stale_recovered",
                {
                    "step_id": step.id,
                    "mission_id": step.mission_id,
                    "kind": step.kind,
                    "worker": step.reserved_by,
                    "stale_minutes": elapsed,
                },
                tags=["step", "stale", "recovered"],
                source="sweeper",
            )
            await self._scheduler.maybe_finalize(step.mission_id)
            recovered.append(RecoveredStep(
                step_id=step.id,
                mission_id=step.mission_id,
                worker=step.reserved_by,
                stale_minutes=elapsed,
            ))
            _logger.warning("Recovered stale step %s (%s)", step.id, failure)

        return recovered

    async def recover_orphaned_missions(self) -> list[OrphanedMission]:
        now = self._clock()
        orphaned: list[OrphanedMission] = []

        for mission, step_count in await self._store.orphan_candidates(
            now - self._orphan_threshold
        ):
            failed = await self._store.fail_orphaned_mission(mission.id, ORPHAN_ERROR, at=now)
            if failed is None:
                continue  # claimed or finished meanwhile

            reason = "no_steps" if step_count == 0 else "all_steps_queued"
            await self._events.append(
                "mission_orphaned",
                {"mission_id": mission.id, "reason": reason, "steps_failed": failed},
                tags=["mission", "orphaned"],
                source="sweeper",
            )
            orphaned.append(
                OrphanedMission(mission_id=mission.id, reason=reason, steps_failed=failed)
            )
            _logger.warning("Failed orphaned mission %s (%s)", mission.id, reason)

        return orphaned

    async def get_system_health(self) -> SystemHealth:
        now = self._clock()
        pending = await self._store.count_proposals(ProposalStatus.PENDING)
        queued = await self._store.count_steps(StepStatus.QUEUED)
        failed = await self._store.count_steps(StepStatus.FAILED)
        stale = await self._store.count_steps(
            StepStatus.RUNNING, reserved_before=now - self._stale_threshold
        )
        return SystemHealth(
            status=classify_health(stale, failed),
            pending_proposals=pending,
            running_missions=await self._store.count_missions(MissionStatus.RUNNING),
            queued_steps=queued,
            running_steps=await self._store.count_steps(StepStatus.RUNNING),
            failed_steps=failed,
            stale_steps=stale,
            queue_depth=queued + pending,
            checked_at=now,
        )
