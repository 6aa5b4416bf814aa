"""Phase executor: runs the pending steps of one EMC phase.

Steps run sequentially in ledger load order, never concurrently. The first
failure is recorded on the step and re-raised, aborting the rest of the
phase (fail-fast, not best-effort).
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

from emcflow.backfill import BackfillCursor, RunContext, SleepFn, parse_update_statement, run_backfill
from emcflow.errors import StepFailedError, UnmetDependencyError
from emcflow.logging import get_logger
from emcflow.models import (
    MigrationStep,
    Phase,
    PhaseResult,
    StepStatus,
    utcnow,
)

if TYPE_CHECKING:
    from emcflow.config import EMCConfig
    from emcflow.ledger import StepLedger
    from emcflow.statements import StatementExecutor

log = get_logger("phases")


class PhaseExecutor:
    """Selects and runs the runnable steps of a phase.

    Attributes:
        ledger: Step ledger, the only place status is written.
        executor: Statement executor for the target datastore.
        config: Engine settings.
        sleep: Awaitable sleep used by backfills, injectable for tests.
    """

    def __init__(
        self,
        ledger: "StepLedger",
        executor: "StatementExecutor",
        config: "EMCConfig",
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.executor = executor
        self.config = config
        self.sleep = sleep

    async def run_phase(self, phase: Phase) -> PhaseResult:
        """Run every runnable step of ``phase`` in load order.

        Args:
            phase: The phase to run.

        Returns:
            PhaseResult listing executed and deferred step ids.

        Raises:
            StepFailedError: On the first step failure. The step is already
                recorded as failed when this is raised.
        """
        result = PhaseResult(phase=phase)
        steps = [
            s for s in await self.ledger.load()
            if s.phase == phase and not s.is_finished
        ]

        if not steps:
            log.debug("phase_empty", phase=phase.value)
            return result

        log.info("phase_started", phase=phase.value, steps=len(steps))

        for step in steps:
            # Status is re-read per step; never trust the snapshot above
            steps_by_id = {s.id: s for s in await self.ledger.load()}
            step = steps_by_id.get(step.id, step)
            if step.is_finished:
                continue

            if any(dep in result.deferred for dep in step.depends_on):
                log.info("step_deferred", step_id=step.id, reason="dependency_deferred")
                result.deferred.append(step.id)
                continue

            if self._should_defer(step, steps_by_id):
                result.deferred.append(step.id)
                continue

            await self.run_step(step, steps_by_id)
            result.executed.append(step.id)

        log.info(
            "phase_completed",
            phase=phase.value,
            executed=len(result.executed),
            deferred=len(result.deferred),
        )
        return result

    async def run_step(
        self, step: MigrationStep, steps_by_id: dict[str, MigrationStep]
    ) -> None:
        """Run one step and record its outcome in the ledger.

        Raises:
            StepFailedError: If the step fails for any reason.
        """
        try:
            self._check_dependencies(step, steps_by_id)

            await self.ledger.set_status(step.id, StepStatus.IN_PROGRESS)
            log.info("step_started", step_id=step.id, phase=step.phase.value)

            plan = parse_update_statement(step.statement) if step.phase == Phase.MIGRATE else None
            if plan is not None:
                ctx = RunContext.for_step(
                    self.config,
                    step,
                    sleep=self.sleep,
                    on_progress=lambda cursor: self._save_progress(step.id, cursor),
                )
                await run_backfill(ctx, self.executor, plan)
            else:
                await self.executor.execute(step.statement)

        except Exception as e:
            message = str(e)
            log.error(
                "step_failed",
                step_id=step.id,
                phase=step.phase.value,
                error=message,
            )
            await self.ledger.set_status(step.id, StepStatus.FAILED, error=message)
            raise StepFailedError(step.id, message) from e

        await self.ledger.set_status(step.id, StepStatus.COMPLETED, completed_at=utcnow())
        log.info("step_completed", step_id=step.id, phase=step.phase.value)

    async def _save_progress(self, step_id: str, cursor: BackfillCursor) -> None:
        await self.ledger.save_progress(step_id, cursor.last_key, cursor.total_processed)

    def _check_dependencies(
        self, step: MigrationStep, steps_by_id: dict[str, MigrationStep]
    ) -> None:
        """Every declared dependency must exist and be completed.

        Raises:
            UnmetDependencyError: Naming the first unmet dependency.
        """
        for dep_id in step.depends_on:
            dep = steps_by_id.get(dep_id)
            if dep is None:
                raise UnmetDependencyError(
                    f"Unmet dependency for step {step.id}: {dep_id} is not registered"
                )
            if dep.status != StepStatus.COMPLETED:
                raise UnmetDependencyError(
                    f"Unmet dependency for step {step.id}: {dep_id} is {dep.status.value}"
                )

    def _should_defer(
        self, step: MigrationStep, steps_by_id: dict[str, MigrationStep]
    ) -> bool:
        """Hold contract steps until the verification window has elapsed.

        The window is measured from the latest completion among the step's
        dependencies, or among completed migrate steps if it declares none.
        """
        window_days = self.config.verification_window_days
        if step.phase != Phase.CONTRACT or window_days <= 0:
            return False

        if step.depends_on:
            anchors = [steps_by_id[d] for d in step.depends_on if d in steps_by_id]
        else:
            anchors = [s for s in steps_by_id.values() if s.phase == Phase.MIGRATE]

        completions = [
            s.completed_at for s in anchors
            if s.status == StepStatus.COMPLETED and s.completed_at is not None
        ]
        if not completions:
            # Nothing to verify against; dependency checks decide
            return False

        ready_at = max(completions) + timedelta(days=window_days)
        if utcnow() < ready_at:
            log.info(
                "step_deferred",
                step_id=step.id,
                ready_at=ready_at.isoformat(),
            )
            return True
        return False
