"""Job stores for durable (SQL) and session-scoped (in-memory) job state."""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import update
from sqlalchemy.orm import Session

from cellar.models.batch_job import BatchJob
from cellar.schemas.batch import JobKind, JobSnapshot, JobStatus

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """Raised when a job id does not reference a stored job."""


class JobNotRunningError(Exception):
    """Raised when a batch operation targets a job that is already terminal."""


class NothingToProcessError(Exception):
    """Raised when a new job would have no items in scope; no job is created."""


@runtime_checkable
class JobStore(Protocol):
    """What the driver needs from job persistence."""

    def find_running(self, kind: JobKind, owner: str) -> JobSnapshot | None: ...

    def get(self, job_id: uuid.UUID) -> JobSnapshot | None: ...

    def mark_cancelled(self, job_id: uuid.UUID) -> bool: ...

    def mark_completed(self, job_id: uuid.UUID) -> bool: ...


# ── SQL queries (shared by SqlJobStore and the API router) ────────────────────


def find_running_job(db: Session, kind: JobKind, owner: str) -> BatchJob | None:
    return (
        db.query(BatchJob)
        .filter(
            BatchJob.status == JobStatus.running.value,
            BatchJob.kind == kind.value,
            BatchJob.owner == owner,
        )
        .order_by(BatchJob.created_at.desc())
        .first()
    )


def get_job(db: Session, job_id: uuid.UUID) -> BatchJob | None:
    return db.query(BatchJob).filter(BatchJob.id == job_id).first()


def finish_job(
    db: Session,
    job_id: uuid.UUID,
    status: JobStatus,
    error_details: dict[str, Any] | None = None,
) -> bool:
    """Move a running job to *status*. Returns False if it was not running."""
    values: dict[str, Any] = {
        "status": status.value,
        "finished_at": datetime.now(tz=UTC).replace(tzinfo=None),
    }
    if error_details is not None:
        values["error_details"] = error_details
    result = db.execute(
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.status == JobStatus.running.value)
        .values(**values)
    )
    db.commit()
    return bool(result.rowcount)


class SqlJobStore:
    """JobStore backed by the batch_jobs table; one short session per call."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        if session_factory is None:
            from cellar.db import session_factory as _default_factory

            session_factory = _default_factory()
        self._session_factory = session_factory

    def find_running(self, kind: JobKind, owner: str) -> JobSnapshot | None:
        db = self._session_factory()
        try:
            job = find_running_job(db, kind, owner)
            return JobSnapshot.model_validate(job) if job is not None else None
        finally:
            db.close()

    def get(self, job_id: uuid.UUID) -> JobSnapshot | None:
        db = self._session_factory()
        try:
            job = get_job(db, job_id)
            return JobSnapshot.model_validate(job) if job is not None else None
        finally:
            db.close()

    def mark_cancelled(self, job_id: uuid.UUID) -> bool:
        db = self._session_factory()
        try:
            return finish_job(db, job_id, JobStatus.cancelled)
        finally:
            db.close()

    def mark_completed(self, job_id: uuid.UUID) -> bool:
        db = self._session_factory()
        try:
            return finish_job(db, job_id, JobStatus.completed)
        finally:
            db.close()


class InMemoryJobStore:
    """Session-scoped store. Data is lost when the process exits."""

    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, JobSnapshot] = {}
        self._lock = Lock()

    def create(
        self,
        kind: JobKind,
        owner: str,
        mode: str,
        batch_size: int,
        estimated_total: int | None = None,
    ) -> JobSnapshot:
        now = datetime.now(UTC)
        job = JobSnapshot(
            id=uuid.uuid4(),
            kind=kind,
            owner=owner,
            mode=mode,
            status=JobStatus.running,
            batch_size=batch_size,
            cursor=None,
            processed=0,
            succeeded=0,
            skipped=0,
            failed=0,
            estimated_total=estimated_total,
            created_at=now,
            updated_at=now,
            started_at=now,
        )
        with self._lock:
            self._jobs[job.id] = job
        return job

    def update(self, job_id: uuid.UUID, **fields: Any) -> JobSnapshot:
        with self._lock:
            job = self._jobs[job_id].model_copy(update={**fields, "updated_at": datetime.now(UTC)})
            self._jobs[job_id] = job
            return job

    def find_running(self, kind: JobKind, owner: str) -> JobSnapshot | None:
        with self._lock:
            running = [
                j
                for j in self._jobs.values()
                if j.status == JobStatus.running and j.kind == kind and j.owner == owner
            ]
        return max(running, key=lambda j: j.created_at) if running else None

    def get(self, job_id: uuid.UUID) -> JobSnapshot | None:
        with self._lock:
            return self._jobs.get(job_id)

    def mark_cancelled(self, job_id: uuid.UUID) -> bool:
        return self._finish(job_id, JobStatus.cancelled)

    def mark_completed(self, job_id: uuid.UUID) -> bool:
        return self._finish(job_id, JobStatus.completed)

    def _finish(self, job_id: uuid.UUID, status: JobStatus) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.running:
                return False
            now = datetime.now(UTC)
            self._jobs[job_id] = job.model_copy(
                update={"status": status, "finished_at": now, "updated_at": now}
            )
            return True
