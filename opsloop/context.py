"""Runtime context — builds every subsystem once and wires them together.

The CLI and the HTTP app share this. Tests construct their own with a temp
database, a fixed clock, and a seeded random generator.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Coroutine

from opsloop.admission.control import AdmissionControl
from opsloop.config import OpsSettings, settings as default_settings
from opsloop.events.log import EventLog
from opsloop.healing.sweeper import SelfHealingSweeper
from opsloop.heartbeat import ControlLoop
from opsloop.missions.scheduler import MissionScheduler
from opsloop.policy.store import PolicyStore
from opsloop.reactions.engine import ReactionEngine
from opsloop.store.repository import OpsStore
from opsloop.triggers.evaluator import TriggerEvaluator
from opsloop.types import utcnow
from opsloop.worker.handlers import StepHandlerRegistry, register_simulated_handlers
from opsloop.worker.pool import MissionWorker


class OpsContext:
    """Holds all subsystem instances for one database."""

    _instance: OpsContext | None = None

    def __init__(
        self,
        db_path: str | Path | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
        config: OpsSettings | None = None,
    ) -> None:
        self.settings = config or default_settings
        self.db_path = str(db_path or self.settings.db_path)
        self.clock = clock
        self.rng = rng or random.Random()
        s = self.settings

        self.store = OpsStore(self.db_path)
        self.events = EventLog(self.db_path, clock=clock)
        self.policy = PolicyStore(self.db_path, clock=clock)
        self.scheduler = MissionScheduler(self.store, self.events, clock=clock)
        self.admission = AdmissionControl(
            self.store, self.events, self.policy, self.scheduler, clock=clock,
        )
        self.triggers = TriggerEvaluator(
            self.store,
            self.events,
            self.admission,
            clock=clock,
            rng=self.rng,
            max_depth=s.max_reaction_depth,
        )
        self.reactions = ReactionEngine(
            self.store,
            self.events,
            self.policy,
            self.admission,
            clock=clock,
            rng=self.rng,
            lookback_minutes=s.reaction_lookback_minutes,
            event_limit=s.reaction_event_limit,
            max_depth=s.max_reaction_depth,
        )
        self.sweeper = SelfHealingSweeper(
            self.store,
            self.events,
            self.scheduler,
            clock=clock,
            stale_threshold_minutes=s.stale_threshold_minutes,
            orphan_threshold_minutes=s.orphan_threshold_minutes,
        )
        self.loop = ControlLoop(
            self.triggers,
            self.reactions,
            self.sweeper,
            interval_seconds=s.heartbeat_interval_seconds,
            trigger_timeout=s.trigger_timeout_seconds,
            reaction_timeout=s.reaction_timeout_seconds,
            recovery_timeout=s.recovery_timeout_seconds,
            clock=clock,
        )
        self.handlers = register_simulated_handlers(StepHandlerRegistry(), rng=self.rng)
        self._initialized = False

    async def ensure_ready(self) -> OpsContext:
        """Create the workspace and bring the schema up to date, once."""
        if not self._initialized:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            await self.store.initialize()
            self._initialized = True
        return self

    def worker(self, worker_id: str | None = None) -> MissionWorker:
        s = self.settings
        return MissionWorker(
            self.scheduler,
            self.handlers,
            worker_id=worker_id or s.worker_id,
            poll_seconds=s.worker_poll_seconds,
            max_consecutive_errors=s.worker_max_consecutive_errors,
            backoff_seconds=s.worker_backoff_seconds,
        )

    @classmethod
    def get(cls) -> OpsContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def set(cls, ctx: OpsContext | None) -> None:
        cls._instance = ctx


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
