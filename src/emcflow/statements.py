"""Statement execution boundary between the engine and the datastore.

The engine treats the datastore as an opaque service: hand it SQL text, get
rows back or an error. Nothing here parses results beyond row mappings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from emcflow.errors import StatementError
from emcflow.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = get_logger("statements")


class StatementExecutor(Protocol):
    """Protocol for anything that can run one SQL statement."""

    async def execute(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute one statement.

        Args:
            sql: SQL text, with ``:name`` placeholders for params.
            params: Bound parameter values.

        Returns:
            Result rows as mappings; empty for statements without rows.

        Raises:
            StatementError: If the datastore rejects the statement.
        """
        ...


class EngineStatementExecutor:
    """Runs statements through a SQLAlchemy engine.

    Every statement runs in its own transaction. No transaction spans steps.
    """

    def __init__(self, engine: "Engine") -> None:
        self.engine = engine

    async def execute(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql), params or {})
                if not result.returns_rows:
                    return []
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            log.debug("statement_failed", error=str(e))
            raise StatementError(f"SQL execution failed: {e}") from e
