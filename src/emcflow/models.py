"""Pydantic models for migration steps and run reports.

These models bridge between the ledger table (SQLAlchemy Core) and the
engine, providing validation and serialization.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ulid import ULID


# =============================================================================
# Enums
# =============================================================================


class Phase(str, Enum):
    """EMC phases, in execution order."""

    EXPAND = "expand"
    MIGRATE = "migrate"
    CONTRACT = "contract"


PHASE_ORDER: tuple[Phase, ...] = (Phase.EXPAND, Phase.MIGRATE, Phase.CONTRACT)


class StepStatus(str, Enum):
    """Migration step lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses the phase executor picks up. IN_PROGRESS covers steps left
# behind by an interrupted run.
RUNNABLE_STATUSES = frozenset({StepStatus.PENDING, StepStatus.IN_PROGRESS})


# =============================================================================
# Helper Functions
# =============================================================================


def generate_id() -> str:
    """Generate a new ULID for run identifiers."""
    return str(ULID())


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Ledger Models
# =============================================================================


class MigrationStep(BaseModel):
    """One unit of change recorded in the ledger."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    phase: Phase
    status: StepStatus = StepStatus.PENDING
    description: str
    statement: str
    depends_on: list[str] = Field(default_factory=list)
    position: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    last_processed_cursor: Any = None
    rows_processed: int = 0

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Step ids are non-empty and free of surrounding whitespace."""
        if not v or v != v.strip():
            raise ValueError(f"Invalid step id: {v!r}")
        return v

    @field_validator("statement")
    @classmethod
    def validate_statement(cls, v: str) -> str:
        """Statements must contain SQL."""
        if not v.strip():
            raise ValueError("Step statement must not be empty")
        return v

    @field_validator("depends_on", mode="before")
    @classmethod
    def dedupe_depends_on(cls, v: Any) -> list[str]:
        """Keep declaration order, drop repeats. NULL means no dependencies."""
        if v is None:
            return []
        return list(dict.fromkeys(v))

    @field_validator("created_at", "started_at", "completed_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @property
    def is_finished(self) -> bool:
        """Completed and failed steps are never re-selected."""
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)


# =============================================================================
# Run Reports
# =============================================================================


class PhaseResult(BaseModel):
    """Outcome of running one phase."""

    phase: Phase
    executed: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)


class FailedStep(BaseModel):
    """A step recorded as failed in the ledger."""

    id: str
    phase: Phase
    error: str | None = None


class RunReport(BaseModel):
    """Outcome of one pipeline execution."""

    run_id: str = Field(default_factory=generate_id)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    phases: list[PhaseResult] = Field(default_factory=list)
    failed_step: FailedStep | None = None

    @property
    def ok(self) -> bool:
        return self.failed_step is None

    @property
    def executed(self) -> list[str]:
        """Ids of every step executed in this run, in execution order."""
        return [step_id for result in self.phases for step_id in result.executed]


class CheckReport(BaseModel):
    """Read-only view of the ledger produced by ``Pipeline.check``."""

    total: int = 0
    by_status: dict[StepStatus, int] = Field(default_factory=dict)
    by_phase: dict[Phase, int] = Field(default_factory=dict)
    failed: list[FailedStep] = Field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """Process exit status: 0 when no step has failed."""
        return 1 if self.failed else 0


# =============================================================================
# Conversion Helpers
# =============================================================================


T = TypeVar("T", bound=BaseModel)


def row_to_model(row, model_class: type[T]) -> T:
    """Convert SQLAlchemy row to Pydantic model.

    Args:
        row: SQLAlchemy row result.
        model_class: Target Pydantic model class.

    Returns:
        Instance of the model class.
    """
    return model_class.model_validate(row._mapping)
