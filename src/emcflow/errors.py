"""Exception types raised by the EMC engine."""

from __future__ import annotations


class EMCError(Exception):
    """Base class for all engine errors."""


class DuplicateStepError(EMCError):
    """A step with the same id is already registered."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Migration step already exists: {step_id}")
        self.step_id = step_id


class StepNotFoundError(EMCError):
    """No step with the given id exists in the ledger."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Unknown migration step: {step_id}")
        self.step_id = step_id


class InvalidTransitionError(EMCError):
    """A status change that the step lifecycle does not allow."""


class StatementError(EMCError):
    """The datastore rejected a SQL statement."""


class BackfillAbortedError(EMCError):
    """A chunked backfill ran out of retries."""


class UnmetDependencyError(EMCError):
    """A step was selected while one of its dependencies is not completed."""


class DependencyGraphError(EMCError):
    """Declared dependencies reference unknown steps or form a cycle."""


class StepFailedError(EMCError):
    """A step failed and was recorded as such; the run is aborted."""

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(f"Step {step_id} failed: {message}")
        self.step_id = step_id
        self.message = message
        self.report = None  # RunReport of the aborted run, set by the pipeline
