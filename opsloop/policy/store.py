"""Policy Store — mutable key -> value configuration read by every gate.

Reads always go to the database so an administrative change is visible to
the very next admission check. Known keys are validated into their schema
model; absent keys yield the documented default.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from opsloop.policy.schema import POLICY_MODELS, default_for
from opsloop.store.base import connect, dumps, loads
from opsloop.types import to_iso, utcnow

M = TypeVar("M", bound=BaseModel)

_logger = logging.getLogger(__name__)


class PolicyStore:
    """Read-through policy access. No caching across calls."""

    def __init__(self, db_path: str, clock: Callable[[], datetime] = utcnow) -> None:
        self._db_path = db_path
        self._clock = clock

    async def get_raw(self, key: str) -> Any | None:
        """The stored JSON value, or None if the key was never set."""
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT value FROM policy WHERE key = ?", (key,))
            row = await cursor.fetchone()
        return loads(row["value"]) if row else None

    async def get(self, key: str, model: type[M]) -> M:
        """The value for `key` as `model`; missing keys and fields use defaults."""
        raw = await self.get_raw(key)
        if raw is None:
            if key in POLICY_MODELS:
                return default_for(key)  # type: ignore[return-value]
            return model()
        return model.model_validate(raw)

    async def set(self, key: str, value: Any) -> None:
        """Last write wins. Known keys are validated before they are stored."""
        if isinstance(value, BaseModel):
            value = value.model_dump(by_alias=True)
        model = POLICY_MODELS.get(key)
        if model is not None:
            model.model_validate(value)
        async with connect(self._db_path) as db:
            await db.execute(
                "INSERT INTO policy (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, dumps(value), to_iso(self._clock())),
            )
            await db.commit()
        _logger.info("Policy '%s' updated", key)

    async def delete(self, key: str) -> bool:
        async with connect(self._db_path) as db:
            cursor = await db.execute("DELETE FROM policy WHERE key = ?", (key,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_policies(self) -> dict[str, Any]:
        """Every known key with its effective value, plus any extra stored keys."""
        async with connect(self._db_path) as db:
            cursor = await db.execute("SELECT key, value FROM policy ORDER BY key")
            rows = await cursor.fetchall()
        stored = {r["key"]: loads(r["value"]) for r in rows}

        result: dict[str, Any] = {}
        for key, model in POLICY_MODELS.items():
            if key in stored:
                result[key] = model.model_validate(stored[key]).model_dump(by_alias=True)
            else:
                result[key] = default_for(key).model_dump(by_alias=True)
        for key, value in stored.items():
            result.setdefault(key, value)
        return result
