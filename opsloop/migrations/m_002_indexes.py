"""Migration 002: indexes for the hot queries (claims, quotas, sweeps)."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_proposals_agent_time "
        "ON proposals(agent, created_at)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_proposals_action_time "
        "ON proposals(action, created_at)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_steps_status_time "
        "ON steps(status, created_at)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_steps_mission "
        "ON steps(mission_id, seq)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_runs_action_time "
        "ON action_runs(action, completed_at)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_kind_time "
        "ON events(kind, created_at)"
    )
