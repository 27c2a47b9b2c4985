"""Control loop — one heartbeat runs triggers, reactions, recovery, and health.

Each subsystem runs under its own soft timeout and is isolated: a failure or
timeout in one is reported and the next still runs. The result always tells
"nothing to do" (idle) apart from "could not run" (failed / timeout).

`ControlLoop.start()` runs ticks on a fixed interval in the background; the
HTTP heartbeat route and `opsloop tick` call `tick()` directly.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

import structlog
from pydantic import BaseModel, Field

from opsloop.healing.sweeper import SelfHealingSweeper, SystemHealth
from opsloop.reactions.engine import ReactionEngine
from opsloop.triggers.evaluator import TriggerEvaluator
from opsloop.types import utcnow

logger = structlog.get_logger()

SubsystemStatus = Literal["ok", "idle", "failed", "timeout"]

# Extra time a subsystem with its own internal budget gets before being cut off.
TIMEOUT_GRACE_SECONDS = 1.0


class SubsystemReport(BaseModel):
    name: str
    status: SubsystemStatus = "idle"
    error: str = ""
    detail: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0


class TickResult(BaseModel):
    started_at: datetime
    duration_ms: int = 0
    subsystems: list[SubsystemReport] = Field(default_factory=list)
    health: SystemHealth | None = None

    @property
    def ok(self) -> bool:
        return all(s.status in ("ok", "idle") for s in self.subsystems)

    def get(self, name: str) -> SubsystemReport | None:
        for report in self.subsystems:
            if report.name == name:
                return report
        return None


class ControlLoop:
    """Runs the periodic maintenance pass, on demand or on a schedule."""

    def __init__(
        self,
        triggers: TriggerEvaluator,
        reactions: ReactionEngine,
        sweeper: SelfHealingSweeper,
        interval_seconds: float = 300,
        trigger_timeout: float = 4.0,
        reaction_timeout: float = 3.0,
        recovery_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._triggers = triggers
        self._reactions = reactions
        self._sweeper = sweeper
        self._interval = interval_seconds
        self._trigger_timeout = trigger_timeout
        self._reaction_timeout = reaction_timeout
        self._recovery_timeout = recovery_timeout
        self._clock = clock
        self._running = False
        self._task: asyncio.Task | None = None
        self._last: TickResult | None = None

    async def tick(self) -> TickResult:
        started = time.monotonic()
        result = TickResult(started_at=self._clock())

        result.subsystems.append(await self._run(
            "triggers", self._run_triggers, self._trigger_timeout + TIMEOUT_GRACE_SECONDS,
        ))
        result.subsystems.append(await self._run(
            "reactions", self._run_reactions, self._reaction_timeout + TIMEOUT_GRACE_SECONDS,
        ))
        result.subsystems.append(await self._run(
            "stale_recovery", self._run_stale_recovery, self._recovery_timeout,
        ))
        result.subsystems.append(await self._run(
            "orphan_recovery", self._run_orphan_recovery, self._recovery_timeout,
        ))

        health_report = await self._run("health", self._run_health, self._recovery_timeout)
        result.subsystems.append(health_report)
        if health_report.status == "ok":
            result.health = SystemHealth.model_validate(health_report.detail)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._last = result
        return result

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("control_loop_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("control_loop_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_result(self) -> TickResult | None:
        return self._last

    async def _run_loop(self) -> None:
        while self._running:
            try:
                result = await self.tick()
                if not result.ok:
                    failed = [s.name for s in result.subsystems if s.status in ("failed", "timeout")]
                    logger.warning("control_loop_tick_degraded", subsystems=failed)
            except Exception as e:
                logger.error("control_loop_tick_failed", error=str(e))

            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

    async def _run(
        self,
        name: str,
        work: Callable[[], Awaitable[tuple[SubsystemStatus, dict[str, Any]]]],
        timeout: float,
    ) -> SubsystemReport:
        started = time.monotonic()
        report = SubsystemReport(name=name)
        try:
            report.status, report.detail = await asyncio.wait_for(work(), timeout=timeout)
        except asyncio.TimeoutError:
            report.status = "timeout"
            report.error = f"{name} exceeded {timeout:.1f}s"
            logger.warning("control_loop_subsystem_timeout", subsystem=name, timeout=timeout)
        except Exception as e:
            report.status = "failed"
            report.error = str(e) or type(e).__name__
            logger.error("control_loop_subsystem_failed", subsystem=name, error=report.error)
        report.duration_ms = int((time.monotonic() - started) * 1000)
        return report

    # ── Subsystems ────────────────────────────────────────────────

    async def _run_triggers(self) -> tuple[SubsystemStatus, dict[str, Any]]:
        report = await self._triggers.evaluate(timeout=self._trigger_timeout)
        detail = report.model_dump()
        if report.timed_out:
            return "timeout", detail
        return ("ok" if report.fired else "idle"), detail

    async def _run_reactions(self) -> tuple[SubsystemStatus, dict[str, Any]]:
        report = await self._reactions.process(timeout=self._reaction_timeout)
        detail = report.model_dump()
        if report.timed_out:
            return "timeout", detail
        return ("ok" if report.processed else "idle"), detail

    async def _run_stale_recovery(self) -> tuple[SubsystemStatus, dict[str, Any]]:
        recovered = await self._sweeper.recover_stale_steps()
        detail = {"recovered": len(recovered), "items": [r.model_dump() for r in recovered]}
        return ("ok" if recovered else "idle"), detail

    async def _run_orphan_recovery(self) -> tuple[SubsystemStatus, dict[str, Any]]:
        orphaned = await self._sweeper.recover_orphaned_missions()
        detail = {"recovered": len(orphaned), "items": [o.model_dump() for o in orphaned]}
        return ("ok" if orphaned else "idle"), detail

    async def _run_health(self) -> tuple[SubsystemStatus, dict[str, Any]]:
        health = await self._sweeper.get_system_health()
        return "ok", health.model_dump()
