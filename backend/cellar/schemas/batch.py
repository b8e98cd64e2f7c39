"""Pydantic schemas for the batch-job protocol and job state."""

import os
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, model_validator

from cellar.schemas.base import CamelModel, CamelORMModel

MAX_BATCH_SIZE = 200
DEFAULT_BATCH_SIZE = 200
MAX_ITERATIONS = 500
DEFAULT_INTER_BATCH_DELAY_SECONDS = 0.5


def default_owner() -> str:
    """Owner used when none is given: $CELLAR_USER, else "default"."""
    return os.environ.get("CELLAR_USER", "default")


class JobKind(str, Enum):
    readiness_backfill = "readiness_backfill"
    cellar_analysis = "cellar_analysis"


class JobStatus(str, Enum):
    running = "running"
    completed = "completed"
    cancelled = "cancelled"
    failed = "failed"


KIND_MODES: dict[JobKind, frozenset[str]] = {
    JobKind.readiness_backfill: frozenset({"missing_only", "stale_or_missing", "force_all"}),
    JobKind.cellar_analysis: frozenset({"missing_only", "stale_only", "all"}),
}


def check_mode(kind: JobKind, mode: str) -> str:
    """Return *mode* if it is a valid scope for *kind*, else raise ValueError."""
    allowed = KIND_MODES[kind]
    if mode not in allowed:
        raise ValueError(f"mode {mode!r} is not valid for {kind.value}; expected one of {sorted(allowed)}")
    return mode


class JobConfig(BaseModel):
    """Everything the driver needs to start a job, passed explicitly."""

    kind: JobKind
    mode: str
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, le=MAX_BATCH_SIZE)
    owner: str = Field(default_factory=default_owner)
    max_iterations: int = Field(default=MAX_ITERATIONS, ge=1)
    inter_batch_delay: float = Field(default=DEFAULT_INTER_BATCH_DELAY_SECONDS, ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def mode_matches_kind(self) -> "JobConfig":
        check_mode(self.kind, self.mode)
        return self


class BatchRequest(CamelModel):
    job_id: uuid.UUID | None = None
    mode: str
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, le=MAX_BATCH_SIZE)
    max_batches: int = Field(default=1, ge=1, le=10)
    # Informational: the server resumes from its own persisted cursor.
    cursor: str | None = None


class FailureEntry(CamelModel):
    item_id: str
    reason: str


class BatchResponse(CamelModel):
    job_id: uuid.UUID
    status: JobStatus = JobStatus.running
    processed: int = Field(ge=0)
    succeeded: int = Field(ge=0, validation_alias=AliasChoices("succeeded", "updated"))
    skipped: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    failures: list[FailureEntry] = Field(default_factory=list)
    next_cursor: str | None = None
    is_complete: bool = False
    elapsed_ms: int | None = None

    @model_validator(mode="after")
    def counters_are_conserved(self) -> "BatchResponse":
        total = self.succeeded + self.skipped + self.failed
        if self.processed != total:
            raise ValueError(
                f"processed ({self.processed}) != succeeded + skipped + failed ({total})"
            )
        return self


class JobSnapshot(CamelORMModel):
    id: uuid.UUID
    kind: JobKind
    owner: str
    mode: str
    status: JobStatus
    batch_size: int
    cursor: str | None
    processed: int
    succeeded: int
    skipped: int
    failed: int
    failures: list[FailureEntry] = Field(default_factory=list)
    error_details: dict[str, Any] | None = None
    estimated_total: int | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ProgressState(BaseModel):
    """Immutable progress snapshot handed to observers."""

    job_id: uuid.UUID | None = None
    kind: JobKind
    mode: str
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    estimated_total: int | None = None
    cursor: str | None = None
    is_complete: bool = False
    batches: int = 0

    model_config = {"frozen": True}


class EligibleCountResponse(CamelModel):
    count: int


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None


class FailJobRequest(CamelModel):
    """Operator request to stop a running job for good."""

    reason: str = Field(min_length=1)
    details: dict[str, Any] | None = None
