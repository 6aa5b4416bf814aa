"""Chunked backfill executor for migrate steps.

Applies a row-level ``UPDATE <table> SET ... [WHERE ...]`` to an unbounded
candidate set in bounded-size chunks, without locking the whole table and
while tolerating transient failures.

Chunks are paginated by key (``key > last_key ORDER BY key``) rather than
by numeric offset. A typical backfill filter such as ``WHERE col IS NULL``
stops matching rows once they are updated, so an offset would skip rows as
the candidate set shrinks; a key cursor does not.

The update statement must be idempotent: a retried chunk re-applies it to
the same keys.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from emcflow.config import EMCConfig
from emcflow.errors import BackfillAbortedError
from emcflow.logging import get_logger
from emcflow.models import MigrationStep
from emcflow.statements import StatementExecutor

log = get_logger("backfill")

# UPDATE <table> SET <assignments> [WHERE <predicate>] [;]
# Table names may be schema-qualified and quoted.
UPDATE_PATTERN = re.compile(
    r"""^UPDATE\s+
        (?P<table>(?:"[^"]+"|\w+)(?:\.(?:"[^"]+"|\w+))?)\s+
        SET\s+(?P<set>.+?)
        (?:\s+WHERE\s+(?P<where>.+?))?
        \s*;?\s*$""",
    re.IGNORECASE | re.DOTALL | re.VERBOSE,
)

LEADING_COMMENTS = re.compile(r"(?:\s*(?:--[^\n]*(?:\n|$)|/\*.*?\*/))*\s*", re.DOTALL)

# Shapes that the chunked rewrite cannot restrict by key. Matched against
# masked text, so only top-level keywords count.
UNCHUNKABLE_PATTERN = re.compile(
    r"\b(FROM|RETURNING|ORDER\s+BY|LIMIT)\b|\bWHERE\b.*\bWHERE\b",
    re.IGNORECASE | re.DOTALL,
)

SleepFn = Callable[[float], Awaitable[None]]
ProgressFn = Callable[["BackfillCursor"], Awaitable[Any]]


# =============================================================================
# Plan and State
# =============================================================================


@dataclass(frozen=True)
class BackfillPlan:
    """A migrate statement decomposed into its chunkable parts."""

    table: str
    set_clause: str
    where_clause: str | None
    statement: str


@dataclass
class BackfillCursor:
    """In-memory progress of one backfill invocation.

    Attributes:
        last_key: Highest key committed so far; None before the first chunk.
        total_processed: Rows updated successfully.
        retry_count: Consecutive failures at the current cursor.
        chunks: Chunks committed in this invocation.
    """

    last_key: Any = None
    total_processed: int = 0
    retry_count: int = 0
    chunks: int = 0


@dataclass
class RunContext:
    """Everything one backfill needs, passed explicitly.

    Attributes:
        config: Engine settings (chunk size, retries, delays, key column).
        step: The migrate step being executed.
        cursor: Progress state, seeded from the ledger when resuming.
        sleep: Awaitable sleep, injectable for tests.
        on_progress: Called after every committed chunk.
    """

    config: EMCConfig
    step: MigrationStep
    cursor: BackfillCursor = field(default_factory=BackfillCursor)
    sleep: SleepFn = asyncio.sleep
    on_progress: ProgressFn | None = None

    @classmethod
    def for_step(
        cls,
        config: EMCConfig,
        step: MigrationStep,
        sleep: SleepFn = asyncio.sleep,
        on_progress: ProgressFn | None = None,
    ) -> "RunContext":
        """Build a context that resumes from the step's persisted progress."""
        cursor = BackfillCursor(
            last_key=step.last_processed_cursor,
            total_processed=step.rows_processed if step.last_processed_cursor is not None else 0,
        )
        return cls(config=config, step=step, cursor=cursor, sleep=sleep, on_progress=on_progress)


# =============================================================================
# Statement Shaping
# =============================================================================


def mask_nested(sql: str) -> str:
    """Blank out quoted text and parenthesised groups.

    Quotes and the outermost parentheses are kept; everything inside them
    becomes ``#``. The result has the same length as ``sql`` so match
    offsets map back onto the original text.
    """
    out = list(sql)
    quote = None
    depth = 0
    for i, ch in enumerate(sql):
        if quote is not None:
            if ch == quote:
                quote = None
                if depth:
                    out[i] = "#"
            else:
                out[i] = "#"
        elif ch in ("'", '"'):
            quote = ch
            if depth:
                out[i] = "#"
        elif ch == "(":
            if depth:
                out[i] = "#"
            depth += 1
        elif ch == ")" and depth:
            depth -= 1
            if depth:
                out[i] = "#"
        elif depth:
            out[i] = "#"
    return "".join(out)


def parse_update_statement(sql: str) -> BackfillPlan | None:
    """Match the ``UPDATE <table> SET ... [WHERE ...]`` shape.

    Keywords inside string literals, quoted identifiers and subqueries do
    not affect the decision. Leading ``--`` and ``/* */`` comments are
    skipped.

    Args:
        sql: Statement text of a migrate step.

    Returns:
        The decomposed plan, or None if the statement is not chunkable.
    """
    body = sql[LEADING_COMMENTS.match(sql).end():]
    masked = mask_nested(body)
    match = UPDATE_PATTERN.match(masked)
    if match is None:
        return None
    if UNCHUNKABLE_PATTERN.search(match.group("set") + " " + (match.group("where") or "")):
        return None
    if ";" in masked.strip().rstrip(";"):
        return None  # multiple statements

    def original(group: str) -> str | None:
        start, end = match.span(group)
        return body[start:end] if start >= 0 else None

    where = original("where")
    return BackfillPlan(
        table=original("table"),
        set_clause=original("set").strip(),
        where_clause=where.strip() if where else None,
        statement=sql,
    )


def build_select(plan: BackfillPlan, key: str, chunk_size: int, after: Any) -> tuple[str, dict[str, Any]]:
    """Build the chunk selection query: next ``chunk_size`` keys after ``after``."""
    conditions = []
    params: dict[str, Any] = {"chunk_size": chunk_size}
    if plan.where_clause:
        conditions.append(f"({plan.where_clause})")
    if after is not None:
        conditions.append(f"{key} > :last_key")
        params["last_key"] = after

    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
    sql = f"SELECT {key} FROM {plan.table}{where} ORDER BY {key} ASC LIMIT :chunk_size"
    return sql, params


def build_update(plan: BackfillPlan, key: str, keys: list[Any]) -> tuple[str, dict[str, Any]]:
    """Build the update restricted to exactly ``keys``.

    The original predicate is re-applied so a row that stopped matching
    since selection is left alone.
    """
    params = {f"k{i}": value for i, value in enumerate(keys)}
    placeholders = ", ".join(f":{name}" for name in params)
    conditions = [f"{key} IN ({placeholders})"]
    if plan.where_clause:
        conditions.insert(0, f"({plan.where_clause})")

    sql = f"UPDATE {plan.table} SET {plan.set_clause} WHERE {' AND '.join(conditions)}"
    return sql, params


# =============================================================================
# Executor
# =============================================================================


async def run_backfill(
    ctx: RunContext,
    executor: StatementExecutor,
    plan: BackfillPlan,
) -> BackfillCursor:
    """Run a chunked backfill to completion.

    Args:
        ctx: Run context carrying config, step and cursor.
        executor: Statement executor for the target datastore.
        plan: Parsed update statement.

    Returns:
        The final cursor.

    Raises:
        BackfillAbortedError: If a chunk fails more than ``max_retries``
            times in a row.
    """
    config = ctx.config
    cursor = ctx.cursor
    key = config.key_column
    step_id = ctx.step.id

    if cursor.last_key is not None:
        log.info(
            "backfill_resumed",
            step_id=step_id,
            last_key=cursor.last_key,
            total_processed=cursor.total_processed,
        )

    while True:
        try:
            select_sql, select_params = build_select(
                plan, key, config.chunk_size, cursor.last_key
            )
            rows = await executor.execute(select_sql, select_params)

            if not rows:
                break

            keys = [row[key] for row in rows]
            update_sql, update_params = build_update(plan, key, keys)
            await executor.execute(update_sql, update_params)

        except Exception as e:
            cursor.retry_count += 1
            if cursor.retry_count > config.max_retries:
                log.error(
                    "backfill_retries_exhausted",
                    step_id=step_id,
                    retries=config.max_retries,
                    error=str(e),
                )
                raise BackfillAbortedError(
                    f"Max retries exceeded for step {step_id}: {e}"
                ) from e

            log.warning(
                "backfill_chunk_retry",
                step_id=step_id,
                attempt=cursor.retry_count,
                max_retries=config.max_retries,
                error=str(e),
            )
            await ctx.sleep(config.retry_delay_ms * cursor.retry_count / 1000)
            continue

        cursor.total_processed += len(keys)
        cursor.last_key = keys[-1]  # rows arrive in key order
        cursor.retry_count = 0
        cursor.chunks += 1

        log.info(
            "backfill_chunk_processed",
            step_id=step_id,
            chunk_rows=len(keys),
            total_processed=cursor.total_processed,
        )

        if ctx.on_progress is not None:
            await ctx.on_progress(cursor)

        await ctx.sleep(config.chunk_delay_ms / 1000)

    log.info(
        "backfill_completed",
        step_id=step_id,
        chunks=cursor.chunks,
        total_processed=cursor.total_processed,
    )
    return cursor
