"""Core types shared across all opsloop subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, Field

# ── ID Types ──────────────────────────────────────────────────────────────────

ProposalId: TypeAlias = str
MissionId: TypeAlias = str
StepId: TypeAlias = str
AgentName: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Time ──────────────────────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize to a fixed-width UTC string so lexical order is time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def start_of_day(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


# ── Provenance ────────────────────────────────────────────────────────────────

# Number of trigger/reaction hops between a proposal and an outside stimulus.
REACTION_DEPTH_KEY = "reaction_depth"


def depth_of(payload: dict[str, Any]) -> int:
    try:
        return int(payload.get(REACTION_DEPTH_KEY, 0))
    except (TypeError, ValueError):
        return 0


# ── Statuses ──────────────────────────────────────────────────────────────────


class ProposalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class MissionStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED)


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# ── Records ───────────────────────────────────────────────────────────────────


class Proposal(BaseModel):
    """An agent's request to perform one action."""

    id: ProposalId = Field(default_factory=new_id)
    source: str = "api"
    agent: AgentName
    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    status: ProposalStatus = ProposalStatus.PENDING
    rejection_reason: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Mission(BaseModel):
    """Approved work derived from exactly one proposal."""

    id: MissionId = Field(default_factory=new_id)
    proposal_id: ProposalId
    status: MissionStatus = MissionStatus.RUNNING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class Step(BaseModel):
    """One ordered, independently executable unit of a mission."""

    id: StepId = Field(default_factory=new_id)
    mission_id: MissionId
    seq: int = 0
    kind: str
    params: dict[str, Any] = Field(default_factory=dict)
    status: StepStatus = StepStatus.QUEUED
    reserved_by: str = ""
    reserved_at: datetime | None = None
    result: dict[str, Any] = Field(default_factory=dict)
    last_error: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ActionRun(BaseModel):
    """Execution outcome of one finished step."""

    id: str = Field(default_factory=new_id)
    step_id: StepId
    action: str = ""
    succeeded: bool = True
    output: dict[str, Any] = Field(default_factory=dict)
    error: str = ""
    started_at: datetime | None = None
    completed_at: datetime = Field(default_factory=utcnow)
