"""Policy schema — the typed shape and default of every policy key.

A stored value only needs the fields it overrides; missing fields fall back
to the defaults declared here.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class AgentDailyLimits(BaseModel):
    """Per-agent proposal caps. Unknown agents use `default`."""

    model_config = {"extra": "allow"}
    __pydantic_extra__: dict[str, int]

    default: int = 50

    def limit_for(self, agent: str) -> int:
        return (self.model_extra or {}).get(agent, self.default)


class EnabledFlag(BaseModel):
    enabled: bool = True


class TweetQuota(BaseModel):
    limit: int = 8


class ContentQuota(BaseModel):
    daily_limit: int = 5


class CrawlQuota(BaseModel):
    hourly_limit: int = 20


class DraftQuota(BaseModel):
    daily_limit: int = 20


class AutoApprovePolicy(BaseModel):
    """Which (agent, action) pairs skip manual review."""

    enabled: bool = True
    allowed_step_kinds: list[str] = Field(
        default_factory=lambda: ["draft_tweet", "crawl", "analyze", "write_content"],
    )
    allowed_agents: list[str] = Field(
        default_factory=lambda: ["minion", "sage", "scout", "quill", "xalt", "observer"],
    )

    def allows(self, agent: str, action: str) -> bool:
        return (
            self.enabled
            and action in self.allowed_step_kinds
            and agent in self.allowed_agents
        )


class ReactionPattern(BaseModel):
    """One row of the reaction matrix."""

    id: str
    source: str = "*"  # agent that caused the event, or "*" for any
    tags: list[str] = Field(default_factory=list)
    target: str
    action: str = Field(alias="type")
    probability: float = Field(default=1.0, ge=0.0, le=1.0)
    cooldown: int = 60  # minutes
    description: str = ""

    model_config = {"populate_by_name": True}


class ReactionMatrix(BaseModel):
    patterns: list[ReactionPattern] = Field(default_factory=list)


DEFAULT_REACTION_MATRIX = ReactionMatrix(patterns=[
    ReactionPattern(
        id="tweet_analyze",
        source="xalt",
        tags=["tweet", "posted"],
        target="scout",
        action="analyze_viral_content",
        probability=0.3,
        cooldown=120,
        description="Xalt posts tweet -> 30% chance Scout analyzes performance",
    ),
    ReactionPattern(
        id="failure_diagnose",
        source="*",
        tags=["mission", "failed"],
        target="sage",
        action="diagnose_failure",
        probability=1.0,
        cooldown=60,
        description="Any mission fails -> Sage diagnoses",
    ),
    ReactionPattern(
        id="content_review",
        source="quill",
        tags=["content", "published"],
        target="observer",
        action="review_content",
        probability=0.5,
        cooldown=30,
        description="Quill publishes content -> 50% chance Observer reviews",
    ),
    ReactionPattern(
        id="intel_report",
        source="scout",
        tags=["intel", "gathered"],
        target="sage",
        action="strategic_analysis",
        probability=0.4,
        cooldown=60,
        description="Scout gathers intel -> 40% chance Sage strategizes",
    ),
    ReactionPattern(
        id="decision_support",
        source="minion",
        tags=["decision", "pending"],
        target="sage",
        action="strategic_analysis",
        probability=0.6,
        cooldown=30,
        description="Minion has pending decision -> 60% chance Sage advises",
    ),
])


# key -> model describing its value; the model's defaults are the key's default
POLICY_MODELS: dict[str, type[BaseModel]] = {
    "agent_daily_limits": AgentDailyLimits,
    "x_autopost": EnabledFlag,
    "x_daily_quota": TweetQuota,
    "content_quota": ContentQuota,
    "deploy_policy": EnabledFlag,
    "crawl_quota": CrawlQuota,
    "draft_quota": DraftQuota,
    "auto_approve": AutoApprovePolicy,
    "reaction_matrix": ReactionMatrix,
}


def default_for(key: str) -> BaseModel:
    if key == "reaction_matrix":
        return DEFAULT_REACTION_MATRIX.model_copy(deep=True)
    return POLICY_MODELS[key]()
