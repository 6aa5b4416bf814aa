"""Tests for the step ledger and registry."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, text

from emcflow.database import migration_steps
from emcflow.errors import DuplicateStepError, InvalidTransitionError, StepNotFoundError
from emcflow.ledger import StepLedger
from emcflow.models import MigrationStep, Phase, StepStatus


# =============================================================================
# Registration
# =============================================================================


@pytest.mark.asyncio
async def test_register_creates_pending_step(ledger: StepLedger) -> None:
    step = await ledger.register(
        "add_col", Phase.EXPAND, "Add nullable col", "ALTER TABLE t ADD COLUMN col INTEGER"
    )

    assert step.status == StepStatus.PENDING
    assert step.position == 1
    assert step.completed_at is None

    stored = await ledger.get("add_col")
    assert stored.phase == Phase.EXPAND
    assert stored.status == StepStatus.PENDING
    assert stored.statement == "ALTER TABLE t ADD COLUMN col INTEGER"
    assert stored.depends_on == []
    assert stored.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_register_accepts_phase_string(ledger: StepLedger) -> None:
    step = await ledger.register("drop_old", "contract", "Drop old", "ALTER TABLE t DROP COLUMN old")
    assert step.phase == Phase.CONTRACT


@pytest.mark.asyncio
async def test_register_duplicate_id_fails(ledger: StepLedger) -> None:
    await ledger.register("add_col", Phase.EXPAND, "Add col", "SELECT 1")

    with pytest.raises(DuplicateStepError, match="add_col"):
        await ledger.register("add_col", Phase.MIGRATE, "Again", "SELECT 2")

    steps = await ledger.load()
    assert len(steps) == 1
    assert steps[0].phase == Phase.EXPAND


@pytest.mark.asyncio
async def test_register_rejects_invalid_phase(ledger: StepLedger) -> None:
    with pytest.raises(ValueError):
        await ledger.register("x", "rollback", "Nope", "SELECT 1")


@pytest.mark.asyncio
async def test_register_rejects_empty_statement(ledger: StepLedger) -> None:
    with pytest.raises(ValueError):
        await ledger.register("x", Phase.EXPAND, "Empty", "   ")


@pytest.mark.asyncio
async def test_register_rejects_self_dependency(ledger: StepLedger) -> None:
    with pytest.raises(ValueError, match="cannot depend on itself"):
        await ledger.register("x", Phase.EXPAND, "Loop", "SELECT 1", depends_on=["x"])


@pytest.mark.asyncio
async def test_register_dedupes_dependencies(ledger: StepLedger) -> None:
    await ledger.register("c", Phase.CONTRACT, "C", "SELECT 1", depends_on=["a", "b", "a"])
    step = await ledger.get("c")
    assert step.depends_on == ["a", "b"]


# =============================================================================
# Loading
# =============================================================================


@pytest.mark.asyncio
async def test_load_returns_creation_order(ledger: StepLedger) -> None:
    for step_id, phase in [("c1", Phase.CONTRACT), ("e1", Phase.EXPAND), ("m1", Phase.MIGRATE), ("e2", Phase.EXPAND)]:
        await ledger.register(step_id, phase, step_id, "SELECT 1")

    steps = await ledger.load()
    assert [s.id for s in steps] == ["c1", "e1", "m1", "e2"]
    assert [s.position for s in steps] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_load_orders_by_created_at_first(ledger: StepLedger, engine) -> None:
    await ledger.register("late", Phase.EXPAND, "Late", "SELECT 1")
    await ledger.register("early", Phase.EXPAND, "Early", "SELECT 1")

    backdated = datetime.now(timezone.utc) - timedelta(days=1)
    with engine.begin() as conn:
        conn.execute(
            migration_steps.update()
            .where(migration_steps.c.id == "early")
            .values(created_at=backdated)
        )

    steps = await ledger.load()
    assert [s.id for s in steps] == ["early", "late"]


@pytest.mark.asyncio
async def test_load_empty_ledger(ledger: StepLedger) -> None:
    assert await ledger.load() == []


@pytest.mark.asyncio
async def test_get_unknown_step(ledger: StepLedger) -> None:
    with pytest.raises(StepNotFoundError, match="missing"):
        await ledger.get("missing")


# =============================================================================
# Status Writes
# =============================================================================


@pytest.mark.asyncio
async def test_set_status_in_progress_stamps_started_at(ledger: StepLedger) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")

    assert await ledger.set_status("a", StepStatus.IN_PROGRESS) is True

    step = await ledger.get("a")
    assert step.status == StepStatus.IN_PROGRESS
    assert step.started_at is not None


@pytest.mark.asyncio
async def test_set_status_completed_sets_completed_at_once(ledger: StepLedger) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")
    first = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    await ledger.set_status("a", StepStatus.COMPLETED, completed_at=first)
    await ledger.set_status("a", StepStatus.COMPLETED, completed_at=first + timedelta(hours=1))

    step = await ledger.get("a")
    assert step.status == StepStatus.COMPLETED
    assert step.completed_at == first


@pytest.mark.asyncio
async def test_set_status_failed_records_error(ledger: StepLedger) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")

    await ledger.set_status("a", StepStatus.FAILED, error="syntax error")

    step = await ledger.get("a")
    assert step.status == StepStatus.FAILED
    assert step.error == "syntax error"
    assert step.completed_at is None


@pytest.mark.asyncio
async def test_new_attempt_clears_error(ledger: StepLedger) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")
    await ledger.set_status("a", StepStatus.FAILED, error="boom")

    await ledger.set_status("a", StepStatus.IN_PROGRESS)

    assert (await ledger.get("a")).error is None


@pytest.mark.asyncio
async def test_set_status_touches_only_one_row(ledger: StepLedger) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")
    await ledger.register("b", Phase.EXPAND, "B", "SELECT 1")

    await ledger.set_status("a", StepStatus.FAILED, error="boom")

    b = await ledger.get("b")
    assert b.status == StepStatus.PENDING
    assert b.error is None


@pytest.mark.asyncio
async def test_set_status_unknown_step_returns_false(ledger: StepLedger) -> None:
    assert await ledger.set_status("ghost", StepStatus.COMPLETED) is False


@pytest.mark.asyncio
async def test_set_status_write_error_is_not_raised(ledger: StepLedger, engine) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE emc_migration_steps"))

    assert await ledger.set_status("a", StepStatus.COMPLETED) is False
    assert await ledger.save_progress("a", 10, 10) is False


# =============================================================================
# Progress and Reset
# =============================================================================


@pytest.mark.asyncio
async def test_save_progress_persists_cursor(ledger: StepLedger) -> None:
    await ledger.register("m", Phase.MIGRATE, "M", "UPDATE t SET a = 1")

    assert await ledger.save_progress("m", 200, 200) is True

    step = await ledger.get("m")
    assert step.last_processed_cursor == 200
    assert step.rows_processed == 200


@pytest.mark.asyncio
async def test_save_progress_string_cursor(ledger: StepLedger) -> None:
    await ledger.register("m", Phase.MIGRATE, "M", "UPDATE t SET a = 1")
    await ledger.save_progress("m", "acct-010", 11)

    assert (await ledger.get("m")).last_processed_cursor == "acct-010"


@pytest.mark.asyncio
async def test_reset_failed_step(ledger: StepLedger) -> None:
    await ledger.register("m", Phase.MIGRATE, "M", "UPDATE t SET a = 1")
    await ledger.save_progress("m", 100, 100)
    await ledger.set_status("m", StepStatus.FAILED, error="Max retries exceeded")

    step = await ledger.reset("m")

    assert step.status == StepStatus.PENDING
    assert step.error is None
    assert step.last_processed_cursor == 100


@pytest.mark.asyncio
async def test_reset_completed_step_is_rejected(ledger: StepLedger) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")
    await ledger.set_status("a", StepStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        await ledger.reset("a")


@pytest.mark.asyncio
async def test_reset_unknown_step(ledger: StepLedger) -> None:
    with pytest.raises(StepNotFoundError):
        await ledger.reset("ghost")


@pytest.mark.asyncio
async def test_steps_are_never_deleted(ledger: StepLedger, engine) -> None:
    await ledger.register("a", Phase.EXPAND, "A", "SELECT 1")
    await ledger.set_status("a", StepStatus.FAILED, error="x")
    await ledger.reset("a")
    await ledger.set_status("a", StepStatus.COMPLETED)

    with engine.connect() as conn:
        rows = conn.execute(select(migration_steps)).fetchall()
    assert len(rows) == 1
    assert isinstance(await ledger.get("a"), MigrationStep)
