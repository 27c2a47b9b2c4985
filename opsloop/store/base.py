"""Connection helper shared by every SQLite-backed component."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiosqlite

from opsloop.exceptions import TransientStoreError

BUSY_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def connect(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with Row access; store failures become TransientStoreError."""
    try:
        async with aiosqlite.connect(db_path, timeout=BUSY_TIMEOUT_SECONDS) as db:
            db.row_factory = aiosqlite.Row
            yield db
    except aiosqlite.Error as e:
        raise TransientStoreError(f"{type(e).__name__}: {e}") from e


def dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def loads(value: str | None, fallback: Any = None) -> Any:
    if not value:
        return {} if fallback is None else fallback
    return json.loads(value)
