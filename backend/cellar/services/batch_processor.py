"""Server side of the batch protocol: process one batch of a cursor-based job.

Each call resumes from the cursor persisted on the job row, processes up to
``batch_size`` items through the handler registered for the job kind, and
commits counters and cursor together once the whole batch is done.

No job kind has a handler out of the box: the per-item work (readiness
scoring, cellar analysis) lives outside this package. A deployment registers
one handler per kind with ``@register_item_handler(kind)`` before serving
requests; until then the /batch endpoints answer 404 ``unknown_job_kind``.
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from cellar.models.batch_job import BatchJob
from cellar.models.bottle import Bottle
from cellar.schemas.batch import (
    BatchRequest,
    BatchResponse,
    FailureEntry,
    JobKind,
    JobStatus,
    check_mode,
)
from cellar.services.job_store import (
    JobNotFoundError,
    NothingToProcessError,
    find_running_job,
    finish_job,
    get_job,
)

logger = logging.getLogger(__name__)

FAILURES_KEPT = 50
FAILURES_RETURNED = 10


class JobConflictError(Exception):
    """Raised when a new job would be a second running job in the same scope."""


class UnknownJobKindError(Exception):
    """Raised when no item handler is registered for a job kind."""


class ItemResult(str, Enum):
    succeeded = "succeeded"
    skipped = "skipped"


class ItemHandler(Protocol):
    """Per-kind item selection and processing. Raising from process() fails the item."""

    def count(self, mode: str, owner: str, db: Session) -> int: ...

    def select_batch(
        self, mode: str, owner: str, after: str | None, limit: int, db: Session
    ) -> list[Any]: ...

    def item_id(self, item: Any) -> str: ...

    def process(self, item: Any, mode: str, db: Session) -> ItemResult: ...


_HANDLERS: dict[JobKind, ItemHandler] = {}


def register_item_handler(kind: JobKind) -> Callable[[type], type]:
    """Class decorator: instantiate the handler and register it for *kind*."""

    def decorator(cls: type) -> type:
        if kind in _HANDLERS:
            logger.warning("replacing item handler for %s with %s", kind.value, cls.__name__)
        _HANDLERS[kind] = cls()
        return cls

    return decorator


def get_item_handler(kind: JobKind) -> ItemHandler:
    try:
        return _HANDLERS[kind]
    except KeyError:
        raise UnknownJobKindError(f"No item handler registered for {kind.value}") from None


class BottleItemHandler(ABC):
    """Base handler that pages over the owner's bottles in id order.

    Subclasses narrow the scope per mode in ``scope()`` and implement
    ``process()``.
    """

    def scope(self, query: Query[Bottle], mode: str) -> Query[Bottle]:
        return query

    def count(self, mode: str, owner: str, db: Session) -> int:
        return self._query(mode, owner, db).count()

    def select_batch(
        self, mode: str, owner: str, after: str | None, limit: int, db: Session
    ) -> list[Bottle]:
        query = self._query(mode, owner, db)
        if after is not None:
            query = query.filter(Bottle.id > uuid.UUID(after))
        return query.order_by(Bottle.id).limit(limit).all()

    def item_id(self, item: Bottle) -> str:
        return str(item.id)

    @abstractmethod
    def process(self, item: Bottle, mode: str, db: Session) -> ItemResult: ...

    def _query(self, mode: str, owner: str, db: Session) -> Query[Bottle]:
        return self.scope(db.query(Bottle).filter(Bottle.owner == owner), mode)


class CursorBatchProcessor:
    def __init__(self, handlers: Mapping[JobKind, ItemHandler] | None = None) -> None:
        self._handlers = handlers

    def count_in_scope(self, kind: JobKind, mode: str, owner: str, db: Session) -> int:
        """Number of items a new job of *kind*/*mode* would process. Raises ValueError on a bad mode."""
        check_mode(kind, mode)
        return self._handler(kind).count(mode, owner, db)

    def process_batch(
        self, kind: JobKind, request: BatchRequest, owner: str, db: Session
    ) -> BatchResponse:
        """Process up to ``request.max_batches`` batches of *kind* for *owner*.

        Raises JobConflictError, NothingToProcessError, JobNotFoundError,
        UnknownJobKindError, or ValueError for a mode the kind does not accept.
        """
        started = time.monotonic()
        handler = self._handler(kind)

        if request.job_id is None:
            job = self._create_job(kind, request, owner, handler, db)
        else:
            job = get_job(db, request.job_id)
            if job is None or job.kind != kind.value or job.owner != owner:
                raise JobNotFoundError(f"Job {request.job_id} not found")
            if job.status != JobStatus.running.value:
                logger.info("%s job %s is %s, not processing", kind.value, job.id, job.status)
                return self._response(job, job.status == JobStatus.completed.value, started)
            if request.cursor is not None and request.cursor != job.cursor:
                logger.info(
                    "%s job %s: client cursor %s differs from stored %s, using stored",
                    kind.value,
                    job.id,
                    request.cursor,
                    job.cursor,
                )

        is_complete = False
        for _ in range(request.max_batches):
            items = handler.select_batch(job.mode, owner, job.cursor, request.batch_size, db)
            self._process_items(job, items, handler, db)
            db.commit()
            logger.info(
                "%s job %s: batch of %d done (processed=%d failed=%d)",
                kind.value,
                job.id,
                len(items),
                job.processed,
                job.failed,
            )
            if len(items) < request.batch_size:
                is_complete = True
                finish_job(db, job.id, JobStatus.completed)
                logger.info("%s job %s: no items left, completed", kind.value, job.id)
                break
            if job.status != JobStatus.running.value:
                break

        return self._response(job, is_complete, started)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _handler(self, kind: JobKind) -> ItemHandler:
        if self._handlers is None:
            return get_item_handler(kind)
        try:
            return self._handlers[kind]
        except KeyError:
            raise UnknownJobKindError(f"No item handler registered for {kind.value}") from None

    def _create_job(
        self,
        kind: JobKind,
        request: BatchRequest,
        owner: str,
        handler: ItemHandler,
        db: Session,
    ) -> BatchJob:
        check_mode(kind, request.mode)
        existing = find_running_job(db, kind, owner)
        if existing is not None:
            raise JobConflictError(f"A {kind.value} job is already running: {existing.id}")

        total = handler.count(request.mode, owner, db)
        if total == 0:
            raise NothingToProcessError(f"No items in scope for {kind.value} ({request.mode})")

        job = BatchJob(
            id=uuid.uuid4(),
            kind=kind.value,
            owner=owner,
            mode=request.mode,
            status=JobStatus.running.value,
            batch_size=request.batch_size,
            cursor=None,
            processed=0,
            succeeded=0,
            skipped=0,
            failed=0,
            failures=[],
            estimated_total=total,
            started_at=datetime.now(tz=UTC).replace(tzinfo=None),
        )
        db.add(job)
        try:
            db.flush()
        except IntegrityError as exc:
            # Lost the race against another session creating the same job.
            db.rollback()
            raise JobConflictError(f"A {kind.value} job is already running") from exc
        logger.info("%s job %s created for %s: %d items in scope", kind.value, job.id, owner, total)
        return job

    def _process_items(
        self, job: BatchJob, items: list[Any], handler: ItemHandler, db: Session
    ) -> None:
        new_failures: list[dict[str, str]] = []
        for item in items:
            item_id = handler.item_id(item)
            try:
                with db.begin_nested():
                    result = handler.process(item, job.mode, db)
            except Exception as exc:
                logger.warning("%s job %s: item %s failed: %s", job.kind, job.id, item_id, exc)
                job.failed += 1
                new_failures.append({"item_id": item_id, "reason": str(exc) or type(exc).__name__})
            else:
                if result == ItemResult.skipped:
                    job.skipped += 1
                else:
                    job.succeeded += 1
            job.processed += 1
            job.cursor = item_id
        if new_failures:
            job.failures = (list(job.failures or []) + new_failures)[-FAILURES_KEPT:]

    def _response(self, job: BatchJob, is_complete: bool, started: float) -> BatchResponse:
        return BatchResponse(
            job_id=job.id,
            status=JobStatus(job.status),
            processed=job.processed,
            succeeded=job.succeeded,
            skipped=job.skipped,
            failed=job.failed,
            failures=[FailureEntry(**f) for f in (job.failures or [])[-FAILURES_RETURNED:]],
            next_cursor=None if is_complete else job.cursor,
            is_complete=is_complete,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
