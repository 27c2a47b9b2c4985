"""Actions and the steps they expand into.

Every action the factory knows is a member of `Action`, and every member
carries its fixed step template. Names outside the enumeration go through
`FALLBACK_TEMPLATE` explicitly.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

_logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    """Execution types a worker knows how to run."""

    CRAWL = "crawl"
    ANALYZE = "analyze"
    WRITE_CONTENT = "write_content"
    DRAFT_TWEET = "draft_tweet"
    POST_TWEET = "post_tweet"
    DEPLOY = "deploy"


class StepSpec(BaseModel):
    """One entry of a step template."""

    kind: StepKind
    params: dict[str, Any] = Field(default_factory=dict)


def _spec(kind: StepKind, **params: Any) -> StepSpec:
    return StepSpec(kind=kind, params=params)


class Action(str, Enum):
    ANALYZE_VIRAL_CONTENT = "analyze_viral_content"
    DIAGNOSE_FAILURE = "diagnose_failure"
    REVIEW_CONTENT = "review_content"
    DRAFT_TWEET = "draft_tweet"
    POST_TWEET = "post_tweet"
    GATHER_INTEL = "gather_intel"
    STRATEGIC_ANALYSIS = "strategic_analysis"
    PROMOTE_INSIGHT = "promote_insight"
    QUALITY_CHECK = "quality_check"
    MAKE_DECISION = "make_decision"
    CRAWL = "crawl"
    ANALYZE = "analyze"
    WRITE_CONTENT = "write_content"
    DEPLOY = "deploy"

    @classmethod
    def parse(cls, name: str) -> Action | None:
        try:
            return cls(name)
        except ValueError:
            return None

    @property
    def template(self) -> list[StepSpec]:
        return STEP_TEMPLATES[self]


STEP_TEMPLATES: dict[Action, list[StepSpec]] = {
    Action.ANALYZE_VIRAL_CONTENT: [
        _spec(StepKind.CRAWL, target="engagement_data"),
        _spec(StepKind.ANALYZE, analysis_type="viral_patterns"),
        _spec(StepKind.WRITE_CONTENT, output_format="report"),
    ],
    Action.DIAGNOSE_FAILURE: [
        _spec(StepKind.ANALYZE, analysis_type="root_cause"),
        _spec(StepKind.WRITE_CONTENT, output_format="diagnosis"),
    ],
    Action.REVIEW_CONTENT: [
        _spec(StepKind.ANALYZE, analysis_type="quality_review"),
        _spec(StepKind.WRITE_CONTENT, output_format="review"),
    ],
    Action.DRAFT_TWEET: [
        _spec(StepKind.DRAFT_TWEET),
    ],
    Action.POST_TWEET: [
        _spec(StepKind.WRITE_CONTENT, output_format="tweet"),
        _spec(StepKind.POST_TWEET),
    ],
    Action.GATHER_INTEL: [
        _spec(StepKind.CRAWL, target="news_sources"),
        _spec(StepKind.CRAWL, target="social_mentions"),
        _spec(StepKind.ANALYZE, analysis_type="synthesize"),
    ],
    Action.STRATEGIC_ANALYSIS: [
        _spec(StepKind.ANALYZE, analysis_type="strategy"),
        _spec(StepKind.WRITE_CONTENT, output_format="strategy_doc"),
    ],
    Action.PROMOTE_INSIGHT: [
        _spec(StepKind.ANALYZE, analysis_type="insight_promotion"),
        _spec(StepKind.WRITE_CONTENT, output_format="insight"),
    ],
    Action.QUALITY_CHECK: [
        _spec(StepKind.ANALYZE, analysis_type="quality"),
    ],
    Action.MAKE_DECISION: [
        _spec(StepKind.ANALYZE, analysis_type="decision"),
    ],
    Action.CRAWL: [_spec(StepKind.CRAWL)],
    Action.ANALYZE: [_spec(StepKind.ANALYZE)],
    Action.WRITE_CONTENT: [_spec(StepKind.WRITE_CONTENT)],
    Action.DEPLOY: [_spec(StepKind.DEPLOY)],
}

FALLBACK_TEMPLATE: list[StepSpec] = [_spec(StepKind.ANALYZE)]


def expand(action: str, params: dict[str, Any] | None = None) -> list[StepSpec]:
    """Map (action, params) to its ordered steps. Proposal params override template params."""
    params = params or {}
    parsed = Action.parse(action)
    if parsed is None:
        _logger.warning("Unknown action '%s', using fallback template", action)
        template = FALLBACK_TEMPLATE
    else:
        template = parsed.template
    return [
        StepSpec(kind=spec.kind, params={**spec.params, **params})
        for spec in template
    ]
