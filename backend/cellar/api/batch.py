"""Batch job API router."""

import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from cellar.db import get_session
from cellar.schemas.batch import (
    BatchRequest,
    BatchResponse,
    EligibleCountResponse,
    FailJobRequest,
    JobKind,
    JobSnapshot,
    JobStatus,
)
from cellar.services.batch_processor import CursorBatchProcessor
from cellar.services.job_store import JobNotFoundError, find_running_job, finish_job, get_job

logger = logging.getLogger(__name__)

router = APIRouter()

_processor = CursorBatchProcessor()


def current_owner(x_cellar_user: str | None = Header(default=None)) -> str:
    """Owner of the request, from the X-Cellar-User header."""
    return (x_cellar_user or "").strip() or "default"


def _owned_job(db: Session, job_id: uuid.UUID, owner: str) -> JobSnapshot:
    job = get_job(db, job_id)
    if job is None or job.owner != owner:
        raise JobNotFoundError(f"Job {job_id} not found")
    return JobSnapshot.model_validate(job)


@router.get("/{kind}/eligible-count")
def eligible_count(
    kind: JobKind,
    mode: str,
    owner: str = Depends(current_owner),
    db: Session = Depends(get_session),
) -> EligibleCountResponse:
    """Return the number of items a new job of *kind* would process."""
    try:
        n = _processor.count_in_scope(kind, mode, owner, db)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return EligibleCountResponse(count=n)


@router.post("/{kind}/run")
def run_batch(
    kind: JobKind,
    request: BatchRequest,
    owner: str = Depends(current_owner),
    db: Session = Depends(get_session),
) -> BatchResponse:
    """Process the next batch of a job, creating the job when no id is given."""
    try:
        return _processor.process_batch(kind, request, owner, db)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/{kind}/running")
def running_job(
    kind: JobKind,
    owner: str = Depends(current_owner),
    db: Session = Depends(get_session),
) -> dict[str, JobSnapshot | None]:
    """Return the newest running job of *kind* for the caller, if any."""
    job = find_running_job(db, kind, owner)
    return {"job": JobSnapshot.model_validate(job) if job is not None else None}


@router.get("/jobs/{job_id}")
def job_status(
    job_id: uuid.UUID,
    owner: str = Depends(current_owner),
    db: Session = Depends(get_session),
) -> dict[str, JobSnapshot]:
    return {"job": _owned_job(db, job_id, owner)}


@router.post("/jobs/{job_id}/cancel")
def cancel_job(
    job_id: uuid.UUID,
    owner: str = Depends(current_owner),
    db: Session = Depends(get_session),
) -> dict[str, JobSnapshot]:
    """Mark a running job cancelled. Terminal jobs are returned unchanged."""
    _owned_job(db, job_id, owner)
    if finish_job(db, job_id, JobStatus.cancelled):
        logger.info("job %s cancelled by %s", job_id, owner)
    return {"job": _owned_job(db, job_id, owner)}


@router.post("/jobs/{job_id}/complete")
def complete_job(
    job_id: uuid.UUID,
    owner: str = Depends(current_owner),
    db: Session = Depends(get_session),
) -> dict[str, JobSnapshot]:
    """Mark a running job completed. Terminal jobs are returned unchanged."""
    _owned_job(db, job_id, owner)
    if finish_job(db, job_id, JobStatus.completed):
        logger.info("job %s marked completed by %s", job_id, owner)
    return {"job": _owned_job(db, job_id, owner)}


@router.post("/jobs/{job_id}/fail")
def fail_job(
    job_id: uuid.UUID,
    body: FailJobRequest,
    owner: str = Depends(current_owner),
    db: Session = Depends(get_session),
) -> dict[str, JobSnapshot]:
    """Operator action: mark a running job failed and record why."""
    _owned_job(db, job_id, owner)
    error_details = {"reason": body.reason, **(body.details or {})}
    if finish_job(db, job_id, JobStatus.failed, error_details):
        logger.warning("job %s marked failed by %s: %s", job_id, owner, body.reason)
    return {"job": _owned_job(db, job_id, owner)}
