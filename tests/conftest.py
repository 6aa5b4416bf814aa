"""Pytest configuration and shared fixtures."""

import logging
from pathlib import Path
from typing import Any

import pytest
import structlog
from click.testing import CliRunner
from sqlalchemy import text

from emcflow.config import Config, EMCConfig
from emcflow.database import create_tables, get_engine
from emcflow.errors import StatementError
from emcflow.ledger import StepLedger
from emcflow.statements import EngineStatementExecutor


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo logging configuration done by a test (CLI runs configure it)."""
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path):
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration with temp database and no delays."""
    return Config(
        data_dir=tmp_path,
        log_level="DEBUG",
        emc=EMCConfig(chunk_size=100, max_retries=3, retry_delay_ms=50, chunk_delay_ms=0),
    )


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine with the ledger table."""
    eng = get_engine(test_config)
    create_tables(eng)
    return eng


@pytest.fixture
def ledger(engine) -> StepLedger:
    """Create a StepLedger on the test database."""
    return StepLedger(engine)


@pytest.fixture
def sql_executor(engine) -> EngineStatementExecutor:
    """Statement executor on the same database as the ledger."""
    return EngineStatementExecutor(engine)


def create_sample_table(engine, rows: int, with_col: bool = False) -> None:
    """Create table ``t`` with ``rows`` rows: id, x, old [, col]."""
    col = ", col INTEGER" if with_col else ""
    with engine.begin() as conn:
        conn.execute(text(f"CREATE TABLE t (id INTEGER PRIMARY KEY, x INTEGER, old TEXT{col})"))
        for i in range(1, rows + 1):
            conn.execute(
                text("INSERT INTO t (id, x, old) VALUES (:id, :x, :old)"),
                {"id": i, "x": i, "old": f"v{i}"},
            )


@pytest.fixture
def sample_table(engine):
    """Table ``t`` with 250 rows and an empty ``col`` column."""
    create_sample_table(engine, 250, with_col=True)
    return engine


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


class RecordingExecutor:
    """Wraps a statement executor, recording statements and injecting failures.

    Args:
        inner: Executor that actually runs statements (may be None when
            every call is meant to fail).
        fail_when: Predicate on the SQL text; matching calls raise while
            ``failures`` remain.
        failures: How many matching calls should fail. -1 means always.
        error: Exception type raised on injected failures.
    """

    def __init__(self, inner=None, fail_when=None, failures: int = 0, error=StatementError) -> None:
        self.error = error
        self.inner = inner
        self.fail_when = fail_when or (lambda sql: True)
        self.failures = failures
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.succeeded: list[tuple[str, dict[str, Any] | None]] = []

    async def execute(self, sql: str, params: dict[str, Any] | None = None):
        self.calls.append((sql, params))
        if self.failures != 0 and self.fail_when(sql):
            if self.failures > 0:
                self.failures -= 1
            raise self.error("connection reset by peer")
        rows = [] if self.inner is None else await self.inner.execute(sql, params)
        self.succeeded.append((sql, params))
        return rows

    @property
    def chunk_updates(self) -> list[dict[str, Any]]:
        """Params of every key-restricted backfill update that succeeded."""
        return [p for sql, p in self.succeeded if sql.startswith("UPDATE") and " IN (" in sql]
