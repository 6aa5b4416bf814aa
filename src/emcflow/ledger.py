"""Step ledger: the persisted record of every migration step.

The ledger is the source of truth for what has run. It is the only place step
status is mutated; callers reload steps instead of caching status.

Key operations:
- register: create a pending step (the step registry)
- load: all steps in creation order
- set_status: atomic single-row status transition
- save_progress: persist backfill cursor for crash-safe resume
- reset: put a failed or interrupted step back in the queue
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, literal, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from emcflow.database import migration_steps
from emcflow.errors import DuplicateStepError, InvalidTransitionError, StepNotFoundError
from emcflow.logging import get_logger
from emcflow.models import MigrationStep, Phase, StepStatus, row_to_model, utcnow

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = get_logger("ledger")


class StepLedger:
    """Reads and writes migration steps in the ledger table.

    Methods are coroutines so the engine awaits ledger I/O the same way it
    awaits statement execution.
    """

    def __init__(self, engine: "Engine") -> None:
        self.engine = engine

    # =========================================================================
    # Registry
    # =========================================================================

    async def register(
        self,
        step_id: str,
        phase: Phase | str,
        description: str,
        statement: str,
        depends_on: list[str] | None = None,
    ) -> MigrationStep:
        """Register a new pending step.

        Args:
            step_id: Unique, stable identifier (e.g. a slug).
            phase: expand, migrate or contract.
            description: Free text for audit/reporting.
            statement: SQL to execute for this step.
            depends_on: Ids of steps that must complete first.

        Returns:
            The created MigrationStep.

        Raises:
            DuplicateStepError: If a step with this id already exists.
            ValueError: If the step definition is invalid.
        """
        step = MigrationStep(
            id=step_id,
            phase=phase,
            description=description,
            statement=statement,
            depends_on=depends_on or [],
            created_at=utcnow(),
        )
        if step.id in step.depends_on:
            raise ValueError(f"Step {step.id} cannot depend on itself")

        try:
            with self.engine.begin() as conn:
                exists = conn.execute(
                    select(migration_steps.c.id).where(migration_steps.c.id == step.id)
                ).first()
                if exists is not None:
                    raise DuplicateStepError(step.id)

                last_position = conn.execute(
                    select(func.max(migration_steps.c.position))
                ).scalar()
                step.position = (last_position or 0) + 1

                conn.execute(
                    migration_steps.insert().values(
                        id=step.id,
                        phase=step.phase.value,
                        status=step.status.value,
                        description=step.description,
                        statement=step.statement,
                        depends_on=step.depends_on,
                        position=step.position,
                        created_at=step.created_at,
                        rows_processed=0,
                    )
                )
        except IntegrityError as e:
            # Lost a race with a concurrent registration of the same id
            raise DuplicateStepError(step.id) from e

        log.info("step_registered", step_id=step.id, phase=step.phase.value)
        return step

    async def load(self) -> list[MigrationStep]:
        """Load all steps ordered by creation time."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(migration_steps).order_by(
                    migration_steps.c.created_at.asc(),
                    migration_steps.c.position.asc(),
                )
            ).fetchall()

        steps = [row_to_model(row, MigrationStep) for row in rows]
        log.debug("steps_loaded", count=len(steps))
        return steps

    async def get(self, step_id: str) -> MigrationStep:
        """Get a single step.

        Raises:
            StepNotFoundError: If no step has this id.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(migration_steps).where(migration_steps.c.id == step_id)
            ).first()

        if row is None:
            raise StepNotFoundError(step_id)
        return row_to_model(row, MigrationStep)

    # =========================================================================
    # Status Writes
    # =========================================================================

    async def set_status(
        self,
        step_id: str,
        status: StepStatus,
        completed_at: datetime | None = None,
        error: str | None = None,
    ) -> bool:
        """Atomically update the status of exactly one step.

        ``completed_at`` is stamped on the first transition to COMPLETED and
        never overwritten. A transition to IN_PROGRESS clears ``error``.

        Write failures are logged, not raised: a lost status write is an
        observability gap, not a failed migration.

        Returns:
            True if the row was updated.
        """
        values: dict[str, Any] = {"status": status.value}
        stmt = migration_steps.update().where(migration_steps.c.id == step_id)

        if status == StepStatus.IN_PROGRESS:
            values["started_at"] = utcnow()
            values["error"] = None
        elif status == StepStatus.COMPLETED:
            values["completed_at"] = func.coalesce(
                migration_steps.c.completed_at,
                literal(completed_at or utcnow(), migration_steps.c.completed_at.type),
            )
        elif status == StepStatus.FAILED:
            values["error"] = error

        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt.values(**values))
        except SQLAlchemyError as e:
            log.error(
                "step_status_write_failed",
                step_id=step_id,
                status=status.value,
                error=str(e),
            )
            return False

        if result.rowcount != 1:
            log.error("step_status_write_missed", step_id=step_id, status=status.value)
            return False
        return True

    async def save_progress(
        self, step_id: str, cursor: Any, rows_processed: int
    ) -> bool:
        """Persist backfill progress for a migrate step.

        Like ``set_status``, failures are logged and reported, not raised.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    migration_steps.update()
                    .where(migration_steps.c.id == step_id)
                    .values(last_processed_cursor=cursor, rows_processed=rows_processed)
                )
        except SQLAlchemyError as e:
            log.error("step_progress_write_failed", step_id=step_id, error=str(e))
            return False
        return result.rowcount == 1

    async def reset(self, step_id: str) -> MigrationStep:
        """Return a failed or interrupted step to PENDING for a new attempt.

        Clears the recorded error. Backfill progress is kept so the next run
        resumes after the last committed chunk.

        Raises:
            StepNotFoundError: If no step has this id.
            InvalidTransitionError: If the step already completed.
        """
        step = await self.get(step_id)
        if step.status == StepStatus.COMPLETED:
            raise InvalidTransitionError(f"Step {step_id} is completed and cannot be reset")

        with self.engine.begin() as conn:
            conn.execute(
                migration_steps.update()
                .where(migration_steps.c.id == step_id)
                .values(status=StepStatus.PENDING.value, error=None)
            )

        log.info("step_reset", step_id=step_id, previous_status=step.status.value)
        return await self.get(step_id)
