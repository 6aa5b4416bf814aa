"""Ledger schema and connection management for emcflow.

Uses SQLAlchemy Core (not ORM) for explicit SQL control.
"""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

from emcflow.config import Config

# Shared metadata for all tables
metadata = MetaData()

LEDGER_TABLE = "emc_migration_steps"


# =============================================================================
# Step Ledger
# =============================================================================

migration_steps = Table(
    LEDGER_TABLE,
    metadata,
    Column("id", String, primary_key=True),  # Caller-assigned slug
    Column("phase", String, nullable=False),  # expand, migrate, contract
    Column("status", String, nullable=False, default="pending"),
    Column("description", Text, nullable=False),
    Column("statement", Text, nullable=False),
    Column("depends_on", JSON(none_as_null=True), nullable=True),  # JSON array of step ids
    Column("position", Integer, nullable=False),  # Registration sequence, tie-breaker
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("error", Text, nullable=True),
    # Backfill progress, for resuming an interrupted migrate step
    Column("last_processed_cursor", JSON(none_as_null=True), nullable=True),
    Column("rows_processed", Integer, nullable=False, default=0),
    CheckConstraint(
        "phase IN ('expand', 'migrate', 'contract')",
        name="ck_emc_migration_steps_phase",
    ),
    CheckConstraint(
        "status IN ('pending', 'in_progress', 'completed', 'failed')",
        name="ck_emc_migration_steps_status",
    ),
    Index("idx_emc_migration_steps_status", "status"),
    Index("idx_emc_migration_steps_phase", "phase"),
    Index("idx_emc_migration_steps_created", "created_at", "position"),
)


# =============================================================================
# Helper Functions
# =============================================================================


def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    SQLite databases get WAL mode and foreign keys on every connection.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    url = config.database_url
    is_sqlite = url.startswith("sqlite")

    if is_sqlite and config.database.url is None:
        config.database_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, echo=config.log_level == "DEBUG")

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_tables(engine: Engine) -> None:
    """Create the ledger table if it does not exist.

    Args:
        engine: SQLAlchemy Engine instance.
    """
    metadata.create_all(engine)
