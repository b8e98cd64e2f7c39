"""Shared pytest fixtures."""

from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from cellar.schemas.batch import BatchRequest, BatchResponse, JobConfig, JobKind, JobStatus
from cellar.services.batch_client import BatchCallError
from cellar.services.cancellation import CancellationToken
from cellar.services.job_store import InMemoryJobStore


class FakeProcessor:
    """Cursor-based processor over items 1..total, persisting to an InMemoryJobStore.

    The cursor is the last processed item number. Items in *fail* count as
    failed and items in *skip* as skipped.
    """

    def __init__(
        self,
        store: InMemoryJobStore,
        total: int,
        *,
        fail: set[int] | None = None,
        skip: set[int] | None = None,
        never_complete: bool = False,
        kind: JobKind = JobKind.readiness_backfill,
        owner: str = "default",
    ) -> None:
        self.store = store
        self.total = total
        self.fail = fail or set()
        self.skip = skip or set()
        self.never_complete = never_complete
        self.kind = kind
        self.owner = owner
        self.calls: list[BatchRequest] = []
        # Called with the 1-based call number after the batch is persisted.
        self.on_call: Callable[[int], None] | None = None
        # Raise before touching the store.
        self.raise_on_call: dict[int, Exception] = {}
        # Persist the batch, then raise as if the response was lost.
        self.lose_response_on: set[int] = set()

    def estimate_total(self, mode: str) -> int | None:
        return self.total

    def process_batch(
        self, request: BatchRequest, token: CancellationToken | None = None
    ) -> BatchResponse:
        self.calls.append(request)
        n = len(self.calls)
        if n in self.raise_on_call:
            raise self.raise_on_call[n]

        if request.job_id is None:
            job = self.store.create(self.kind, self.owner, request.mode, request.batch_size, self.total)
        else:
            found = self.store.get(request.job_id)
            assert found is not None
            job = found
        if job.status != JobStatus.running:
            return self._response(job, job.status == JobStatus.completed)

        start = int(job.cursor or 0)
        end = start + request.batch_size if self.never_complete else min(start + request.batch_size, self.total)
        items = list(range(start + 1, end + 1))
        failed = sum(1 for i in items if i in self.fail)
        skipped = sum(1 for i in items if i in self.skip and i not in self.fail)
        job = self.store.update(
            job.id,
            cursor=str(items[-1]) if items else job.cursor,
            processed=job.processed + len(items),
            succeeded=job.succeeded + len(items) - failed - skipped,
            skipped=job.skipped + skipped,
            failed=job.failed + failed,
        )
        is_complete = len(items) < request.batch_size
        if is_complete:
            self.store.mark_completed(job.id)
            job = self.store.get(job.id) or job
        if self.on_call is not None:
            self.on_call(n)
        if n in self.lose_response_on:
            raise BatchCallError("response lost")
        return self._response(job, is_complete)

    def _response(self, job, is_complete: bool) -> BatchResponse:
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

    def batch_sizes(self) -> list[int]:
        return [r.batch_size for r in self.calls]


@pytest.fixture()
def db_session() -> MagicMock:
    """Mock database session for unit tests."""
    return MagicMock()


@pytest.fixture()
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture()
def make_processor(job_store: InMemoryJobStore) -> Callable[..., FakeProcessor]:
    """Build a FakeProcessor over the shared in-memory store."""

    def _make(total: int, **kwargs: object) -> FakeProcessor:
        return FakeProcessor(job_store, total, **kwargs)  # type: ignore[arg-type]

    return _make


@pytest.fixture()
def make_config() -> Callable[..., JobConfig]:
    """JobConfig with no inter-batch delay, for fast tests."""

    def _make(**overrides: object) -> JobConfig:
        values: dict[str, object] = {
            "kind": JobKind.readiness_backfill,
            "mode": "missing_only",
            "batch_size": 50,
            "inter_batch_delay": 0,
        }
        values.update(overrides)
        return JobConfig(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture(autouse=True)
def _no_cellar_user(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests assume the "default" owner unless they set CELLAR_USER themselves."""
    monkeypatch.delenv("CELLAR_USER", raising=False)
