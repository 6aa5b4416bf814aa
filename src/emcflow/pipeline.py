"""Pipeline driver for Expand/Migrate/Contract runs.

Runs the phase executor for expand, then migrate, then contract, in that
fixed order, and stops at the first failure. ``check`` is the read-only
counterpart used to gate deploys on a clean ledger.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import TYPE_CHECKING

import structlog

from emcflow.backfill import SleepFn
from emcflow.errors import DependencyGraphError, StepFailedError
from emcflow.logging import get_logger
from emcflow.models import (
    PHASE_ORDER,
    RUNNABLE_STATUSES,
    CheckReport,
    FailedStep,
    MigrationStep,
    Phase,
    RunReport,
    StepStatus,
    utcnow,
)
from emcflow.phases import PhaseExecutor

if TYPE_CHECKING:
    from emcflow.config import EMCConfig
    from emcflow.ledger import StepLedger
    from emcflow.statements import StatementExecutor

log = get_logger("pipeline")


def validate_dependencies(steps: list[MigrationStep]) -> None:
    """Validate the dependency graph of the steps still to run.

    A runnable step may only depend on registered steps of the same or an
    earlier phase, and the dependencies reachable from it must not form a
    cycle.

    Raises:
        DependencyGraphError: Describing the first problem found.
    """
    by_id = {s.id: s for s in steps}
    phase_rank = {phase: i for i, phase in enumerate(PHASE_ORDER)}

    for step in steps:
        if step.status not in RUNNABLE_STATUSES:
            continue
        for dep_id in step.depends_on:
            dep = by_id.get(dep_id)
            if dep is None:
                raise DependencyGraphError(
                    f"Step {step.id} depends on unregistered step {dep_id}"
                )
            if phase_rank[dep.phase] > phase_rank[step.phase]:
                raise DependencyGraphError(
                    f"Step {step.id} ({step.phase.value}) depends on {dep_id} "
                    f"from later phase {dep.phase.value}"
                )

    # Iterative DFS with three colors; grey on the stack means a back edge
    white, grey, black = 0, 1, 2
    color = {s.id: white for s in steps}

    for root in steps:
        if root.status not in RUNNABLE_STATUSES or color[root.id] != white:
            continue
        stack: list[tuple[str, int]] = [(root.id, 0)]
        path = [root.id]
        color[root.id] = grey
        while stack:
            node, idx = stack[-1]
            deps = [d for d in by_id[node].depends_on if d in by_id]
            if idx < len(deps):
                stack[-1] = (node, idx + 1)
                nxt = deps[idx]
                if color[nxt] == grey:
                    cycle = path[path.index(nxt):] + [nxt]
                    raise DependencyGraphError(
                        f"Dependency cycle: {' -> '.join(cycle)}"
                    )
                if color[nxt] == white:
                    color[nxt] = grey
                    stack.append((nxt, 0))
                    path.append(nxt)
            else:
                color[node] = black
                stack.pop()
                path.pop()


class Pipeline:
    """Drives a full EMC run over the ledger.

    Attributes:
        ledger: Step ledger.
        executor: Statement executor for the target datastore.
        config: Engine settings.
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
        self.phases = PhaseExecutor(ledger, executor, config, sleep=sleep)

    async def register(
        self,
        step_id: str,
        phase: Phase | str,
        description: str,
        statement: str,
        depends_on: list[str] | None = None,
    ) -> MigrationStep:
        """Register a step before a run. See ``StepLedger.register``."""
        return await self.ledger.register(step_id, phase, description, statement, depends_on)

    async def execute(self) -> RunReport:
        """Run expand, migrate and contract phases in order.

        Returns:
            RunReport for the run.

        Raises:
            DependencyGraphError: If declared dependencies cannot be
                satisfied; raised before any step runs.
            StepFailedError: On the first failing step. Later steps and
                phases are not attempted. ``report`` carries the partial
                RunReport.
        """
        report = RunReport()
        structlog.contextvars.bind_contextvars(run_id=report.run_id)
        try:
            steps = await self.ledger.load()
            log.info("pipeline_started", steps=len(steps))
            validate_dependencies(steps)

            for phase in PHASE_ORDER:
                try:
                    result = await self.phases.run_phase(phase)
                except StepFailedError as e:
                    step = await self.ledger.get(e.step_id)
                    report.failed_step = FailedStep(id=step.id, phase=step.phase, error=e.message)
                    report.completed_at = utcnow()
                    e.report = report
                    log.error("pipeline_aborted", phase=phase.value, step_id=e.step_id)
                    raise
                report.phases.append(result)

            report.completed_at = utcnow()
            log.info("pipeline_completed", executed=len(report.executed))
            return report
        finally:
            structlog.contextvars.unbind_contextvars("run_id")

    async def check(self) -> CheckReport:
        """Summarize the ledger without executing anything."""
        steps = await self.ledger.load()

        status_counts = Counter(s.status for s in steps)
        phase_counts = Counter(s.phase for s in steps)
        report = CheckReport(
            total=len(steps),
            by_status={status: status_counts.get(status, 0) for status in StepStatus},
            by_phase={phase: phase_counts.get(phase, 0) for phase in PHASE_ORDER},
            failed=[
                FailedStep(id=s.id, phase=s.phase, error=s.error)
                for s in steps
                if s.status == StepStatus.FAILED
            ],
        )

        if report.failed:
            log.warning("check_found_failures", failed=len(report.failed))
        else:
            log.info("check_passed", total=report.total)
        return report

    async def summary(self) -> str:
        """Render the ledger state as a markdown summary."""
        return render_summary(await self.check())


def render_summary(report: CheckReport) -> str:
    """Format a CheckReport as markdown."""
    lines = [
        "## EMC Migration Summary",
        "",
        f"- **Total Steps:** {report.total}",
        f"- **Pending:** {report.by_status.get(StepStatus.PENDING, 0)}",
        f"- **In Progress:** {report.by_status.get(StepStatus.IN_PROGRESS, 0)}",
        f"- **Completed:** {report.by_status.get(StepStatus.COMPLETED, 0)}",
        f"- **Failed:** {report.by_status.get(StepStatus.FAILED, 0)}",
        "",
        "### Steps by Phase",
    ]
    for phase in PHASE_ORDER:
        lines.append(f"- **{phase.value}:** {report.by_phase.get(phase, 0)}")

    if report.failed:
        lines += ["", "### Failed Steps"]
        lines += [f"- {f.id}: {f.error}" for f in report.failed]

    return "\n".join(lines)
