"""Custom exception hierarchy for opsloop."""


class OpsError(Exception):
    """Base for all opsloop errors."""


class AdmissionRejected(OpsError):
    """A proposal failed a cap, gate, or policy check."""

    def __init__(self, code: str, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


class ClaimConflict(OpsError):
    """Another worker advanced the step before this claim landed."""


class ExecutionFailure(OpsError):
    """A step's work failed."""


class StalenessFailure(ExecutionFailure):
    """Synthetic failure for a step left running past the staleness threshold."""

    PREFIX = "Stale:"

    def __init__(self, worker: str, elapsed_minutes: int) -> None:
        super().__init__(
            f"{self.PREFIX} no progress for {elapsed_minutes} minutes. "
            f"Worker: {worker or 'unknown'}"
        )
        self.worker = worker
        self.elapsed_minutes = elapsed_minutes


class TransientStoreError(OpsError):
    """The durable store failed to read or write."""


class ProposalNotFoundError(OpsError):
    """No proposal with the given ID exists."""


class StepNotFoundError(OpsError):
    """No step with the given ID exists."""


class InvalidTransitionError(OpsError):
    """Invalid proposal, mission, or step status transition."""
