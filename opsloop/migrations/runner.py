"""Migration runner — applies pending migrations on startup.

Migrations are Python modules in the `opsloop/migrations/` directory,
named `m_NNN_description.py` where NNN is a zero-padded version number.
Each must define an `async def upgrade(db: aiosqlite.Connection)` function.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path

import aiosqlite


MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_PREFIX = "m_"

_logger = logging.getLogger(__name__)


async def get_schema_version(db_path: str) -> int:
    """Get the current schema version from the database."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "CREATE TABLE IF NOT EXISTS schema_version "
            "(version INTEGER PRIMARY KEY, applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
        )
        await db.commit()

        cursor = await db.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        return row[0] if row[0] is not None else 0


def discover_migrations() -> list[tuple[int, str]]:
    """List (version, module name) pairs in version order."""
    found: list[tuple[int, str]] = []
    for mf in MIGRATIONS_DIR.glob(f"{MIGRATION_PREFIX}*.py"):
        # m_001_description.py -> 1
        parts = mf.stem.split("_")
        if len(parts) < 2:
            continue
        try:
            version = int(parts[1])
        except ValueError:
            continue
        found.append((version, mf.stem))
    return sorted(found)


async def apply_migrations(db_path: str) -> list[int]:
    """Apply all pending migrations. Returns list of applied version numbers."""
    current = await get_schema_version(db_path)
    applied: list[int] = []

    for version, stem in discover_migrations():
        if version <= current:
            continue

        module = importlib.import_module(f"opsloop.migrations.{stem}")
        async with aiosqlite.connect(db_path) as db:
            await module.upgrade(db)
            await db.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (version,),
            )
            await db.commit()

        _logger.info("Applied migration %s", stem)
        applied.append(version)

    return applied
