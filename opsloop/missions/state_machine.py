"""Mission and step lifecycles — the only transitions the store may perform."""

from __future__ import annotations

from opsloop.exceptions import InvalidTransitionError
from opsloop.types import MissionStatus, ProposalStatus, StepStatus

VALID_PROPOSAL_TRANSITIONS: dict[ProposalStatus, set[ProposalStatus]] = {
    ProposalStatus.PENDING: {ProposalStatus.ACCEPTED, ProposalStatus.REJECTED},
    ProposalStatus.ACCEPTED: set(),  # terminal
    ProposalStatus.REJECTED: set(),  # terminal
}

VALID_MISSION_TRANSITIONS: dict[MissionStatus, set[MissionStatus]] = {
    MissionStatus.RUNNING: {MissionStatus.SUCCEEDED, MissionStatus.FAILED},
    MissionStatus.SUCCEEDED: set(),  # terminal
    MissionStatus.FAILED: set(),  # terminal
}

VALID_STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    # queued -> failed only when a mission is orphaned
    StepStatus.QUEUED: {StepStatus.RUNNING, StepStatus.FAILED},
    StepStatus.RUNNING: {StepStatus.SUCCEEDED, StepStatus.FAILED},
    StepStatus.SUCCEEDED: set(),  # terminal
    StepStatus.FAILED: set(),  # terminal
}


def check_proposal_transition(current: ProposalStatus, target: ProposalStatus) -> None:
    if target not in VALID_PROPOSAL_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot transition proposal from {current.value} to {target.value}"
        )


def can_transition_step(current: StepStatus, target: StepStatus) -> bool:
    return target in VALID_STEP_TRANSITIONS[current]


def can_transition_mission(current: MissionStatus, target: MissionStatus) -> bool:
    return target in VALID_MISSION_TRANSITIONS[current]


def mission_outcome(step_statuses: list[StepStatus]) -> MissionStatus | None:
    """The terminal mission status implied by its steps, or None if not done yet."""
    if not step_statuses:
        return None
    if not all(s.is_terminal for s in step_statuses):
        return None
    if any(s == StepStatus.FAILED for s in step_statuses):
        return MissionStatus.FAILED
    return MissionStatus.SUCCEEDED
