"""Tests for the database migration runner."""

import pytest
import aiosqlite

from opsloop.migrations.runner import (
    apply_migrations,
    discover_migrations,
    get_schema_version,
)


# ── get_schema_version tests ────────────────────────────────────

@pytest.mark.asyncio
async def test_get_schema_version_empty_db(db_path):
    """Fresh database starts at version 0."""
    version = await get_schema_version(db_path)
    assert version == 0


@pytest.mark.asyncio
async def test_get_schema_version_after_insert(db_path):
    await get_schema_version(db_path)

    async with aiosqlite.connect(db_path) as db:
        await db.execute("INSERT INTO schema_version (version) VALUES (5)")
        await db.commit()

    assert await get_schema_version(db_path) == 5


# ── discover / apply ────────────────────────────────────────────

def test_discover_migrations_in_order():
    found = discover_migrations()
    versions = [v for v, _ in found]
    assert versions == sorted(versions)
    assert found[0] == (1, "m_001_initial")
    assert (2, "m_002_indexes") in found


@pytest.mark.asyncio
async def test_apply_migrations_baseline(db_path):
    applied = await apply_migrations(db_path)
    assert applied == [1, 2]

    # Running again applies nothing
    assert await apply_migrations(db_path) == []
    assert await get_schema_version(db_path) == 2


@pytest.mark.asyncio
async def test_apply_migrations_creates_tables(db_path):
    await apply_migrations(db_path)

    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {r[0] for r in await cursor.fetchall()}

    for table in (
        "proposals", "missions", "steps", "action_runs",
        "events", "policy", "cooldowns", "cursors",
    ):
        assert table in tables


@pytest.mark.asyncio
async def test_apply_migrations_skips_already_applied(db_path):
    """Migrations at or below the current version are skipped."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(version INTEGER PRIMARY KEY, applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
        )
        await db.execute("INSERT INTO schema_version (version) VALUES (999)")
        await db.commit()

    assert await apply_migrations(db_path) == []


@pytest.mark.asyncio
async def test_mission_per_proposal_is_unique(db_path):
    await apply_migrations(db_path)

    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "INSERT INTO proposals (id, source, agent, action, status, created_at, updated_at) "
            "VALUES ('p1', 'api', 'sage', 'analyze', 'accepted', 't', 't')"
        )
        await db.execute(
            "INSERT INTO missions (id, proposal_id, status, created_at, updated_at) "
            "VALUES ('m1', 'p1', 'running', 't', 't')"
        )
        with pytest.raises(aiosqlite.IntegrityError):
            await db.execute(
                "INSERT INTO missions (id, proposal_id, status, created_at, updated_at) "
                "VALUES ('m2', 'p1', 'running', 't', 't')"
            )
