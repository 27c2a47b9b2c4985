"""Event Log — append-only record of everything that happened.

Every subsystem appends here; the trigger evaluator and reaction engine read
from here. Live subscribers (dashboards, tests) can also listen by kind
pattern: "mission_*" matches "mission_failed", "mission_succeeded".
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from opsloop.store.base import connect, dumps, loads
from opsloop.types import from_iso, new_id, to_iso, utcnow

EventHandler = Callable[["Event"], Awaitable[None]]
Clock = Callable[[], datetime]

_logger = logging.getLogger(__name__)


class Event(BaseModel):
    """An immutable fact."""

    id: str = Field(default_factory=new_id)
    seq: int = 0
    source: str = "system"
    agent_id: str = ""
    kind: str
    tags: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class EventLog:
    """SQLite-backed append-only event log with pattern subscriptions."""

    def __init__(self, db_path: str, clock: Clock = utcnow) -> None:
        self._db_path = db_path
        self._clock = clock
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Subscribe to events whose kind matches a pattern."""
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    async def append(
        self,
        kind: str,
        data: dict | None = None,
        *,
        agent_id: str = "",
        tags: list[str] | None = None,
        source: str = "system",
    ) -> Event:
        """Persist an event, then notify matching subscribers."""
        event = Event(
            kind=kind,
            data=data or {},
            agent_id=agent_id,
            tags=tags or [],
            source=source,
            created_at=self._clock(),
        )
        async with connect(self._db_path) as db:
            cursor = await db.execute(
                "INSERT INTO events (id, source, agent_id, kind, tags, data, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.source,
                    event.agent_id,
                    event.kind,
                    dumps(event.tags),
                    dumps(event.data),
                    to_iso(event.created_at),
                ),
            )
            event.seq = cursor.lastrowid
            await db.commit()

        tasks = []
        for pattern, handlers in self._subscribers.items():
            if fnmatch.fnmatch(kind, pattern):
                tasks.extend(handler(event) for handler in handlers)
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for r in results:
                if isinstance(r, Exception):
                    _logger.warning("Event subscriber failed on %s: %s", kind, r)

        return event

    async def query(
        self,
        kind: str = "",
        *,
        agent_id: str = "",
        since: datetime | None = None,
        after_seq: int = 0,
        limit: int = 50,
        oldest_first: bool = False,
    ) -> list[Event]:
        """Query the log. Newest first unless `oldest_first`."""
        conditions = []
        params: list = []

        if kind:
            conditions.append("kind = ?")
            params.append(kind)
        if agent_id:
            conditions.append("agent_id = ?")
            params.append(agent_id)
        if since:
            conditions.append("created_at >= ?")
            params.append(to_iso(since))
        if after_seq:
            conditions.append("seq > ?")
            params.append(after_seq)

        where = " AND ".join(conditions) if conditions else "1=1"
        order = "ASC" if oldest_first else "DESC"
        sql = f"SELECT * FROM events WHERE {where} ORDER BY seq {order} LIMIT ?"
        params.append(limit)

        events = []
        async with connect(self._db_path) as db:
            async with db.execute(sql, params) as cursor:
                async for row in cursor:
                    events.append(Event(
                        id=row["id"],
                        seq=row["seq"],
                        source=row["source"],
                        agent_id=row["agent_id"],
                        kind=row["kind"],
                        tags=loads(row["tags"], []),
                        data=loads(row["data"]),
                        created_at=from_iso(row["created_at"]),
                    ))
        return events

    async def count(self, kind: str = "") -> int:
        sql = "SELECT COUNT(*) FROM events"
        params: tuple = ()
        if kind:
            sql += " WHERE kind = ?"
            params = (kind,)
        async with connect(self._db_path) as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
        return row[0]

    @property
    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._subscribers.values())
