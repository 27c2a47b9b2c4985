"""Migration 001: proposals, missions, steps, action runs, events, policy, cooldowns."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS proposals (
            id TEXT PRIMARY KEY,
            source TEXT NOT NULL,
            agent TEXT NOT NULL,
            action TEXT NOT NULL,
            params TEXT DEFAULT '{}',
            priority TEXT DEFAULT 'normal',
            status TEXT NOT NULL,
            rejection_reason TEXT DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS missions (
            id TEXT PRIMARY KEY,
            proposal_id TEXT NOT NULL UNIQUE REFERENCES proposals(id),
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS steps (
            id TEXT PRIMARY KEY,
            mission_id TEXT NOT NULL REFERENCES missions(id),
            seq INTEGER NOT NULL,
            kind TEXT NOT NULL,
            params TEXT DEFAULT '{}',
            status TEXT NOT NULL,
            reserved_by TEXT DEFAULT '',
            reserved_at TEXT,
            result TEXT DEFAULT '{}',
            last_error TEXT DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS action_runs (
            id TEXT PRIMARY KEY,
            step_id TEXT NOT NULL,
            action TEXT DEFAULT '',
            succeeded INTEGER DEFAULT 1,
            output TEXT DEFAULT '{}',
            error TEXT DEFAULT '',
            started_at TEXT,
            completed_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            source TEXT DEFAULT 'system',
            agent_id TEXT DEFAULT '',
            kind TEXT NOT NULL,
            tags TEXT DEFAULT '[]',
            data TEXT DEFAULT '{}',
            created_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS policy (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS cooldowns (
            scope TEXT NOT NULL,
            rule_id TEXT NOT NULL,
            last_fired_at TEXT NOT NULL,
            PRIMARY KEY (scope, rule_id)
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS cursors (
            name TEXT PRIMARY KEY,
            position INTEGER NOT NULL
        )
    """)
