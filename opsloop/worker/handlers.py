"""Step handlers — what a worker actually does for each step kind.

The built-in handlers are simulations: they return plausible output without
calling any outside service. Deployments register real handlers over them.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from opsloop.exceptions import ExecutionFailure
from opsloop.types import Step, to_iso, utcnow

StepHandler = Callable[[Step], Awaitable[dict[str, Any]]]


class StepExecutionResult(BaseModel):
    step_id: str
    kind: str
    success: bool
    result: dict[str, Any] = {}
    error: str = ""
    execution_time_ms: float = 0.0


class StepHandlerRegistry:
    """Maps step kinds to async handlers and runs them."""

    def __init__(self) -> None:
        self._handlers: dict[str, StepHandler] = {}

    def register(self, kind: str, handler: StepHandler) -> None:
        self._handlers[kind] = handler

    def unregister(self, kind: str) -> None:
        self._handlers.pop(kind, None)

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(self, step: Step) -> StepExecutionResult:
        """Run the handler for `step.kind`. Failures are returned, not raised."""
        start = time.monotonic()
        handler = self._handlers.get(step.kind)
        try:
            if handler is None:
                raise ExecutionFailure(f"Unknown step kind: {step.kind}")
            result = await handler(step)
            return StepExecutionResult(
                step_id=step.id,
                kind=step.kind,
                success=True,
                result=result or {},
                execution_time_ms=(time.monotonic() - start) * 1000,
            )
        except Exception as e:
            error = str(e) if isinstance(e, ExecutionFailure) else f"{type(e).__name__}: {e}"
            return StepExecutionResult(
                step_id=step.id,
                kind=step.kind,
                success=False,
                error=error,
                execution_time_ms=(time.monotonic() - start) * 1000,
            )


# ── Simulated handlers ────────────────────────────────────────────────────────

SAMPLE_TWEETS = [
    "AI agents working together achieve more than any single agent alone.",
    "The future of work is collaborative intelligence. #AI #Agents",
    "Just watched my agents have a standup meeting. Surreal.",
    "Multi-agent systems: where emergent behavior meets intentional design.",
]


def register_simulated_handlers(
    registry: StepHandlerRegistry,
    latency: float = 0.0,
    rng: random.Random | None = None,
) -> StepHandlerRegistry:
    """Install stand-in handlers for every built-in step kind."""
    rng = rng or random.Random()

    async def pause() -> None:
        if latency:
            await asyncio.sleep(latency)

    async def crawl(step: Step) -> dict[str, Any]:
        await pause()
        return {
            "target": step.params.get("target", "general"),
            "findings": ["trend_1", "trend_2", "trend_3"],
            "crawled_at": to_iso(utcnow()),
        }

    async def analyze(step: Step) -> dict[str, Any]:
        await pause()
        return {
            "type": step.params.get("analysis_type", "general"),
            "insights": ["insight_1", "insight_2"],
            "confidence": 0.75,
        }

    async def write_content(step: Step) -> dict[str, Any]:
        await pause()
        fmt = step.params.get("output_format", "content")
        content = f"Generated {fmt} content at {to_iso(utcnow())}"
        return {"format": fmt, "content": content, "word_count": len(content.split())}

    async def draft_tweet(step: Step) -> dict[str, Any]:
        await pause()
        tweet = rng.choice(SAMPLE_TWEETS)
        return {"tweet": tweet, "character_count": len(tweet), "drafted_at": to_iso(utcnow())}

    async def post_tweet(step: Step) -> dict[str, Any]:
        await pause()
        return {
            "tweet_id": f"sim_{int(time.time() * 1000)}",
            "posted_at": to_iso(utcnow()),
            "engagement": round(rng.uniform(0.0, 0.1), 3),
            "simulated": True,
        }

    async def deploy(step: Step) -> dict[str, Any]:
        await pause()
        target = step.params.get("target", "staging")
        return {"target": target, "deployed_at": to_iso(utcnow()), "simulated": True}

    for kind, handler in {
        "crawl": crawl,
        "analyze": analyze,
        "write_content": write_content,
        "draft_tweet": draft_tweet,
        "post_tweet": post_tweet,
        "deploy": deploy,
    }.items():
        registry.register(kind, handler)
    return registry
