"""Tests for action templates and lifecycle tables."""

import pytest

from opsloop.exceptions import InvalidTransitionError
from opsloop.missions.actions import Action, StepKind, expand
from opsloop.missions.state_machine import (
    can_transition_mission,
    can_transition_step,
    check_proposal_transition,
    mission_outcome,
)
from opsloop.types import MissionStatus, ProposalStatus, StepStatus


def test_every_action_has_a_template():
    for action in Action:
        assert action.template, action


def test_draft_tweet_is_a_single_step():
    steps = expand("draft_tweet", {"topic": "agents"})
    assert [s.kind for s in steps] == [StepKind.DRAFT_TWEET]
    assert steps[0].params == {"topic": "agents"}


def test_gather_intel_expands_in_order():
    steps = expand("gather_intel")
    assert [s.kind for s in steps] == [StepKind.CRAWL, StepKind.CRAWL, StepKind.ANALYZE]
    assert [s.params.get("target") for s in steps[:2]] == ["news_sources", "social_mentions"]


def test_proposal_params_override_template():
    steps = expand("diagnose_failure", {"analysis_type": "custom", "mission_id": "m1"})
    assert steps[0].params == {"analysis_type": "custom", "mission_id": "m1"}
    assert steps[1].params["output_format"] == "diagnosis"


def test_unknown_action_uses_fallback(caplog):
    steps = expand("summon_dragon")
    assert [s.kind for s in steps] == [StepKind.ANALYZE]
    assert "summon_dragon" in caplog.text


def test_expand_does_not_share_template_params():
    first = expand("quality_check", {"x": 1})
    second = expand("quality_check")
    assert "x" in first[0].params
    assert "x" not in second[0].params


def test_parse():
    assert Action.parse("crawl") is Action.CRAWL
    assert Action.parse("nope") is None


# ── State machine ───────────────────────────────────────────────

def test_proposal_transitions():
    check_proposal_transition(ProposalStatus.PENDING, ProposalStatus.ACCEPTED)
    check_proposal_transition(ProposalStatus.PENDING, ProposalStatus.REJECTED)
    with pytest.raises(InvalidTransitionError):
        check_proposal_transition(ProposalStatus.REJECTED, ProposalStatus.ACCEPTED)
    with pytest.raises(InvalidTransitionError):
        check_proposal_transition(ProposalStatus.ACCEPTED, ProposalStatus.REJECTED)


def test_step_transitions():
    assert can_transition_step(StepStatus.QUEUED, StepStatus.RUNNING)
    assert can_transition_step(StepStatus.RUNNING, StepStatus.SUCCEEDED)
    assert not can_transition_step(StepStatus.SUCCEEDED, StepStatus.FAILED)
    assert not can_transition_step(StepStatus.QUEUED, StepStatus.SUCCEEDED)


def test_mission_transitions():
    assert can_transition_mission(MissionStatus.RUNNING, MissionStatus.FAILED)
    assert not can_transition_mission(MissionStatus.FAILED, MissionStatus.SUCCEEDED)


@pytest.mark.parametrize("statuses,expected", [
    ([], None),
    ([StepStatus.SUCCEEDED, StepStatus.QUEUED], None),
    ([StepStatus.SUCCEEDED, StepStatus.RUNNING], None),
    ([StepStatus.SUCCEEDED, StepStatus.SUCCEEDED], MissionStatus.SUCCEEDED),
    ([StepStatus.SUCCEEDED, StepStatus.FAILED], MissionStatus.FAILED),
])
def test_mission_outcome(statuses, expected):
    assert mission_outcome(statuses) == expected
