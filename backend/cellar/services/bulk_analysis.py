"""Bulk cellar analysis, driven page by page within a single session.

The analysis job is not persisted: it lives in an InMemoryJobStore for the
duration of one call and cannot be resumed from another session. Cancellation
goes through a CancellationToken that is checked before every page and handed
to the page analyzer so it can stop early.
"""

import logging
import math
from typing import Protocol

from pydantic import BaseModel, Field

from cellar.schemas.batch import BatchRequest, BatchResponse, JobConfig, JobKind, JobSnapshot, JobStatus
from cellar.services.cancellation import CancellationToken, JobCancelledError
from cellar.services.job_driver import DriveOutcome, DriveResult, JobDriver, ProgressObserver
from cellar.services.job_store import InMemoryJobStore, JobNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_ITEMS = 1000
# Short yield between pages; the analysis call itself dominates.
_PAGE_DELAY_SECONDS = 0.05


class PageResult(BaseModel):
    """Counters for one analyzed page (deltas, not running totals)."""

    items: int = Field(ge=0)
    succeeded: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)

    @property
    def processed(self) -> int:
        return self.succeeded + self.skipped + self.failed


class PageAnalyzer(Protocol):
    """Analyzes one page of the cellar; item failures are reported, not raised."""

    def count(self, mode: str) -> int | None: ...

    def analyze_page(
        self, mode: str, offset: int, limit: int, token: CancellationToken
    ) -> PageResult: ...


class SessionBatchProcessor:
    """Adapts a PageAnalyzer to the batch protocol over an in-memory job store.

    The cursor is the page offset. The job completes when a page comes back
    short or the item cap is reached.
    """

    def __init__(
        self,
        analyzer: PageAnalyzer,
        store: InMemoryJobStore,
        *,
        owner: str = "default",
        max_items: int = DEFAULT_MAX_ITEMS,
    ) -> None:
        self._analyzer = analyzer
        self._store = store
        self._owner = owner
        self._max_items = max_items
        self._estimate: int | None = None

    def estimate_total(self, mode: str) -> int | None:
        count = self._analyzer.count(mode)
        self._estimate = None if count is None else min(count, self._max_items)
        return self._estimate

    def process_batch(
        self, request: BatchRequest, token: CancellationToken | None = None
    ) -> BatchResponse:
        token = token or CancellationToken()
        token.raise_if_cancelled("Analysis cancelled")

        if request.job_id is None:
            job = self._store.create(
                JobKind.cellar_analysis,
                self._owner,
                request.mode,
                request.batch_size,
                self._estimate,
            )
        else:
            found = self._store.get(request.job_id)
            if found is None:
                raise JobNotFoundError(f"Job {request.job_id} not found")
            job = found
        if job.status != JobStatus.running:
            return self._response(job, job.status == JobStatus.completed)

        offset = int(job.cursor or 0)
        limit = min(request.batch_size, self._max_items - job.processed)
        page = self._analyzer.analyze_page(job.mode, offset, limit, token)

        job = self._store.update(
            job.id,
            cursor=str(offset + page.items),
            processed=job.processed + page.processed,
            succeeded=job.succeeded + page.succeeded,
            skipped=job.skipped + page.skipped,
            failed=job.failed + page.failed,
        )
        is_complete = page.items < limit or job.processed >= self._max_items
        if is_complete:
            self._store.mark_completed(job.id)
            job = self._store.get(job.id) or job
        return self._response(job, is_complete)

    def _response(self, job: JobSnapshot, is_complete: bool) -> BatchResponse:
        return BatchResponse(
            job_id=job.id,
            status=job.status,
            processed=job.processed,
            succeeded=job.succeeded,
            skipped=job.skipped,
            failed=job.failed,
            next_cursor=None if is_complete else job.cursor,
            is_complete=is_complete,
        )


def analyze_cellar_in_batches(
    processor: PageAnalyzer,
    mode: str,
    *,
    token: CancellationToken | None = None,
    batch_size: int = DEFAULT_PAGE_SIZE,
    max_items: int = DEFAULT_MAX_ITEMS,
    owner: str = "default",
    on_progress: ProgressObserver | None = None,
) -> DriveOutcome:
    """Analyze the cellar page by page and return the final outcome.

    Raises JobCancelledError when *token* is cancelled, re-raises the batch
    error when a page call fails, and NothingToProcessError when no bottle is
    in scope.
    """
    token = token or CancellationToken()
    store = InMemoryJobStore()
    session_processor = SessionBatchProcessor(processor, store, owner=owner, max_items=max_items)
    config = JobConfig(
        kind=JobKind.cellar_analysis,
        mode=mode,
        batch_size=batch_size,
        owner=owner,
        max_iterations=max(1, math.ceil(max_items / batch_size)),
        inter_batch_delay=_PAGE_DELAY_SECONDS,
    )
    logger.info("starting cellar analysis (mode=%s, page_size=%d, max=%d)", mode, batch_size, max_items)

    handle = JobDriver(session_processor, store).start(config, observer=on_progress, token=token)
    outcome = handle.wait()

    if outcome.result == DriveResult.cancelled:
        raise JobCancelledError("Analysis cancelled")
    if outcome.result == DriveResult.error:
        assert outcome.error is not None
        raise outcome.error
    logger.info(
        "cellar analysis %s: processed=%d skipped=%d failed=%d",
        outcome.result.value,
        outcome.progress.processed,
        outcome.progress.skipped,
        outcome.progress.failed,
    )
    return outcome

