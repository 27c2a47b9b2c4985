"""Ops store — proposals, missions, steps, action runs, cooldowns, cursors.

Every write that guards an invariant is a conditional UPDATE whose WHERE
clause names the expected current status. The row count tells the caller
whether it won; nothing else is locked.
"""

from __future__ import annotations

from datetime import datetime

import aiosqlite

from opsloop.exceptions import ClaimConflict
from opsloop.migrations.runner import apply_migrations
from opsloop.store.base import connect, dumps, loads
from opsloop.types import (
    ActionRun,
    Mission,
    MissionStatus,
    Proposal,
    ProposalStatus,
    Step,
    StepStatus,
    from_iso,
    to_iso,
)


class OpsStore:
    """Data access for the mission pipeline. SQLite-backed, one connection per call."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> list[int]:
        """Bring the schema up to date."""
        return await apply_migrations(self._db_path)

    # ── Proposals ─────────────────────────────────────────────────

    async def insert_proposal(self, proposal: Proposal) -> Proposal:
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO proposals "
                "(id, source, agent, action, params, priority, status, "
                "rejection_reason, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    proposal.id,
                    proposal.source,
                    proposal.agent,
                    proposal.action,
                    dumps(proposal.params),
                    proposal.priority.value,
                    proposal.status.value,
                    proposal.rejection_reason,
                    to_iso(proposal.created_at),
                    to_iso(proposal.updated_at),
                ),
            )
            await db.commit()
        return proposal

    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,))
            row = await cursor.fetchone()
        return _row_to_proposal(row) if row else None

    async def transition_proposal(
        self,
        proposal_id: str,
        expected: ProposalStatus,
        target: ProposalStatus,
        at: datetime,
        reason: str = "",
    ) -> bool:
        """Move a proposal from `expected` to `target`. False if it was not `expected`."""
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE proposals SET status = ?, rejection_reason = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (target.value, reason, to_iso(at), proposal_id, expected.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def count_proposals_by_agent(self, agent: str, since: datetime) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM proposals WHERE agent = ? AND created_at >= ?",
            (agent, to_iso(since)),
        )

    async def count_proposals(self, status: ProposalStatus) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM proposals WHERE status = ?", (status.value,)
        )

    async def proposal_exists(
        self, action: str, param: str, value: str, since: datetime
    ) -> bool:
        """Has a proposal for `action` with params[param] == value been made since `since`?"""
        count = await self._count(
            "SELECT COUNT(*) FROM proposals WHERE action = ? "
            "AND json_extract(params, ?) = ? AND created_at >= ?",
            (action, f"$.{param}", value, to_iso(since)),
        )
        return count > 0

    async def list_proposals(
        self, status: ProposalStatus | None = None, limit: int = 50
    ) -> list[Proposal]:
        sql = "SELECT * FROM proposals"
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        async with connect(self._db_path) as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [_row_to_proposal(r) for r in rows]

    # ── Missions ──────────────────────────────────────────────────

    async def create_mission(
        self, mission: Mission, steps: list[Step], at: datetime
    ) -> bool:
        """Accept the pending proposal and insert its mission and steps, atomically.

        False (nothing written) if the proposal was no longer pending.
        """
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE proposals SET status = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    ProposalStatus.ACCEPTED.value,
                    to_iso(at),
                    mission.proposal_id,
                    ProposalStatus.PENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                return False
            await db.execute(
                "INSERT INTO missions (id, proposal_id, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    mission.id,
                    mission.proposal_id,
                    mission.status.value,
                    to_iso(mission.created_at),
                    to_iso(mission.updated_at),
                ),
            )
            await db.executemany(
                "INSERT INTO steps "
                "(id, mission_id, seq, kind, params, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        s.id,
                        s.mission_id,
                        s.seq,
                        s.kind,
                        dumps(s.params),
                        s.status.value,
                        to_iso(s.created_at),
                        to_iso(s.updated_at),
                    )
                    for s in steps
                ],
            )
            await db.commit()
        return True

    async def proposal_for_mission(self, mission_id: str) -> Proposal | None:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT p.* FROM proposals p JOIN missions m ON m.proposal_id = p.id "
                "WHERE m.id = ?",
                (mission_id,),
            )
            row = await cursor.fetchone()
        return _row_to_proposal(row) if row else None

    async def get_mission(self, mission_id: str) -> Mission | None:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM missions WHERE id = ?", (mission_id,))
            row = await cursor.fetchone()
        return _row_to_mission(row) if row else None

    async def get_mission_for_proposal(self, proposal_id: str) -> Mission | None:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM missions WHERE proposal_id = ?", (proposal_id,)
            )
            row = await cursor.fetchone()
        return _row_to_mission(row) if row else None

    async def finalize_mission(
        self, mission_id: str, status: MissionStatus, at: datetime
    ) -> bool:
        """Move a running mission to a terminal status. False if it was not running."""
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE missions SET status = ?, updated_at = ?, completed_at = ? "
                "WHERE id = ? AND status = ?",
                (status.value, to_iso(at), to_iso(at), mission_id, MissionStatus.RUNNING.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def failed_missions_since(self, since: datetime, limit: int = 5) -> list[Mission]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM missions WHERE status = ? AND updated_at >= ? "
                "ORDER BY updated_at DESC LIMIT ?",
                (MissionStatus.FAILED.value, to_iso(since), limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_mission(r) for r in rows]

    async def count_missions(self, status: MissionStatus) -> int:
        return await self._count(
            "SELECT COUNT(*) FROM missions WHERE status = ?", (status.value,)
        )

    async def orphan_candidates(self, created_before: datetime) -> list[tuple[Mission, int]]:
        """Running missions older than the cutoff whose steps were never claimed.

        Returns (mission, step_count) pairs; a zero count means no steps at all.
        """
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT m.*, "
                "(SELECT COUNT(*) FROM steps s WHERE s.mission_id = m.id) AS step_count "
                "FROM missions m WHERE m.status = ? AND m.created_at < ? "
                "AND NOT EXISTS (SELECT 1 FROM steps s "
                "WHERE s.mission_id = m.id AND s.status != ?) "
                "ORDER BY m.created_at",
                (MissionStatus.RUNNING.value, to_iso(created_before), StepStatus.QUEUED.value),
            )
            rows = await cursor.fetchall()
        return [(_row_to_mission(r), r["step_count"]) for r in rows]

    async def fail_orphaned_mission(
        self, mission_id: str, error: str, at: datetime
    ) -> int | None:
        """Fail an unclaimed mission and its queued steps in one transaction.

        Returns the number of steps failed, or None if the mission was no longer
        running or a worker claimed one of its steps first.
        """
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE missions SET status = ?, updated_at = ?, completed_at = ? "
                "WHERE id = ? AND status = ? AND NOT EXISTS "
                "(SELECT 1 FROM steps WHERE mission_id = ? AND status != ?)",
                (
                    MissionStatus.FAILED.value,
                    to_iso(at),
                    to_iso(at),
                    mission_id,
                    MissionStatus.RUNNING.value,
                    mission_id,
                    StepStatus.QUEUED.value,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                return None
            cursor = await db.execute(
                "UPDATE steps SET status = ?, last_error = ?, updated_at = ? "
                "WHERE mission_id = ? AND status = ?",
                (
                    StepStatus.FAILED.value,
                    error,
                    to_iso(at),
                    mission_id,
                    StepStatus.QUEUED.value,
                ),
            )
            failed = cursor.rowcount
            await db.commit()
        return failed

    # ── Steps ─────────────────────────────────────────────────────

    async def get_step(self, step_id: str) -> Step | None:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT * FROM steps WHERE id = ?", (step_id,))
            row = await cursor.fetchone()
        return _row_to_step(row) if row else None

    async def steps_for_mission(self, mission_id: str) -> list[Step]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM steps WHERE mission_id = ? ORDER BY seq", (mission_id,)
            )
            rows = await cursor.fetchall()
        return [_row_to_step(r) for r in rows]

    async def next_claimable_step(self) -> Step | None:
        """Oldest queued step of a running mission whose earlier steps are all done."""
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT s.* FROM steps s JOIN missions m ON m.id = s.mission_id "
                "WHERE s.status = ? AND m.status = ? "
                "AND NOT EXISTS (SELECT 1 FROM steps p WHERE p.mission_id = s.mission_id "
                "AND p.seq < s.seq AND p.status IN (?, ?)) "
                "ORDER BY s.created_at, s.seq LIMIT 1",
                (
                    StepStatus.QUEUED.value,
                    MissionStatus.RUNNING.value,
                    StepStatus.QUEUED.value,
                    StepStatus.RUNNING.value,
                ),
            )
            row = await cursor.fetchone()
        return _row_to_step(row) if row else None

    async def claim_step(self, step_id: str, worker_id: str, at: datetime) -> Step:
        """queued -> running, only if still queued. Raises ClaimConflict otherwise."""
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE steps SET status = ?, reserved_by = ?, reserved_at = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    StepStatus.RUNNING.value,
                    worker_id,
                    to_iso(at),
                    to_iso(at),
                    step_id,
                    StepStatus.QUEUED.value,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                raise ClaimConflict(f"Step {step_id} is no longer queued")
            cursor = await db.execute("SELECT * FROM steps WHERE id = ?", (step_id,))
            row = await cursor.fetchone()
            await db.commit()
        return _row_to_step(row)

    async def complete_step(
        self,
        step_id: str,
        status: StepStatus,
        at: datetime,
        result: dict | None = None,
        error: str = "",
        run: ActionRun | None = None,
    ) -> Step | None:
        """running -> terminal, plus the action run, in one transaction.

        Returns the updated step, or None if the step was not running.
        """
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "UPDATE steps SET status = ?, result = ?, last_error = ?, updated_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    status.value,
                    dumps(result or {}),
                    error,
                    to_iso(at),
                    step_id,
                    StepStatus.RUNNING.value,
                ),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                return None
            if run is not None:
                await _insert_run(db, run)
            cursor = await db.execute("SELECT * FROM steps WHERE id = ?", (step_id,))
            row = await cursor.fetchone()
            await db.commit()
        return _row_to_step(row)

    async def running_steps_reserved_before(self, cutoff: datetime) -> list[Step]:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT * FROM steps WHERE status = ? AND reserved_at < ? ORDER BY reserved_at",
                (StepStatus.RUNNING.value, to_iso(cutoff)),
            )
            rows = await cursor.fetchall()
        return [_row_to_step(r) for r in rows]

    async def count_steps(
        self, status: StepStatus, reserved_before: datetime | None = None
    ) -> int:
        if reserved_before is None:
            return await self._count(
                "SELECT COUNT(*) FROM steps WHERE status = ?", (status.value,)
            )
        return await self._count(
            "SELECT COUNT(*) FROM steps WHERE status = ? AND reserved_at < ?",
            (status.value, to_iso(reserved_before)),
        )

    # ── Action runs ───────────────────────────────────────────────

    async def insert_action_run(self, run: ActionRun) -> None:
        async with connect(self._db_path) as db:
            await _insert_run(db, run)
            await db.commit()

    async def count_action_runs(self, action: str, since: datetime) -> int:
        """Successful executions of `action` completed since `since`."""
        return await self._count(
            "SELECT COUNT(*) FROM action_runs WHERE action = ? AND succeeded = 1 "
            "AND completed_at >= ?",
            (action, to_iso(since)),
        )

    # ── Cooldowns & cursors ───────────────────────────────────────

    async def last_fired(self, scope: str, rule_id: str) -> datetime | None:
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT last_fired_at FROM cooldowns WHERE scope = ? AND rule_id = ?",
                (scope, rule_id),
            )
            row = await cursor.fetchone()
        return from_iso(row["last_fired_at"]) if row else None

    async def record_fire(self, scope: str, rule_id: str, at: datetime) -> None:
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO cooldowns (scope, rule_id, last_fired_at) VALUES (?, ?, ?) "
                "ON CONFLICT(scope, rule_id) DO UPDATE SET last_fired_at = excluded.last_fired_at",
                (scope, rule_id, to_iso(at)),
            )
            await db.commit()

    async def get_cursor(self, name: str) -> int:
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT position FROM cursors WHERE name = ?", (name,))
            row = await cursor.fetchone()
        return row["position"] if row else 0

    async def set_cursor(self, name: str, position: int) -> None:
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO cursors (name, position) VALUES (?, ?) "
                "ON CONFLICT(name) DO UPDATE SET position = excluded.position",
                (name, position),
            )
            await db.commit()

    async def _count(self, sql: str, params: tuple) -> int:
        async with connect(self._db_path) as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0

    def __repr__(self) -> str:
        return f"OpsStore(db_path={self._db_path!r})"


async def _insert_run(db: aiosqlite.Connection, run: ActionRun) -> None:
    await db.execute(
        "INSERT INTO action_runs "
        "(id, step_id, action, succeeded, output, error, started_at, completed_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            run.id,
            run.step_id,
            run.action,
            int(run.succeeded),
            dumps(run.output),
            run.error,
            to_iso(run.started_at) if run.started_at else None,
            to_iso(run.completed_at),
        ),
    )


def _row_to_proposal(row: aiosqlite.Row) -> Proposal:
    return Proposal(
        id=row["id"],
        source=row["source"],
        agent=row["agent"],
        action=row["action"],
        params=loads(row["params"]),
        priority=row["priority"],
        status=row["status"],
        rejection_reason=row["rejection_reason"] or "",
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


def _row_to_mission(row: aiosqlite.Row) -> Mission:
    return Mission(
        id=row["id"],
        proposal_id=row["proposal_id"],
        status=row["status"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        completed_at=from_iso(row["completed_at"]),
    )


def _row_to_step(row: aiosqlite.Row) -> Step:
    return Step(
        id=row["id"],
        mission_id=row["mission_id"],
        seq=row["seq"],
        kind=row["kind"],
        params=loads(row["params"]),
        status=row["status"],
        reserved_by=row["reserved_by"] or "",
        reserved_at=from_iso(row["reserved_at"]),
        result=loads(row["result"]),
        last_error=row["last_error"] or "",
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )
