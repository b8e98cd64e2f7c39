"""Unit tests for job stores."""

import uuid
from datetime import datetime
from unittest.mock import MagicMock

from cellar.models.batch_job import BatchJob
from cellar.schemas.batch import JobKind, JobStatus
from cellar.services.job_store import InMemoryJobStore, JobStore, SqlJobStore, finish_job


def _job_row(**fields: object) -> BatchJob:
    values: dict[str, object] = {
        "id": uuid.uuid4(),
        "kind": "readiness_backfill",
        "owner": "default",
        "mode": "missing_only",
        "status": "running",
        "batch_size": 50,
        "cursor": "abc",
        "processed": 50,
        "succeeded": 48,
        "skipped": 1,
        "failed": 1,
        "failures": [{"item_id": "x1", "reason": "no vintage"}],
        "estimated_total": 120,
        "created_at": datetime(2026, 1, 1, 12, 0, 0),
        "updated_at": datetime(2026, 1, 1, 12, 5, 0),
    }
    values.update(fields)
    return BatchJob(**values)


class TestInMemoryJobStore:
    def test_satisfies_job_store_protocol(self) -> None:
        assert isinstance(InMemoryJobStore(), JobStore)

    def test_find_running_returns_newest_in_scope(self) -> None:
        store = InMemoryJobStore()
        store.create(JobKind.readiness_backfill, "default", "missing_only", 50)
        newer = store.create(JobKind.readiness_backfill, "default", "force_all", 50)
        store.create(JobKind.cellar_analysis, "default", "all", 50)
        store.create(JobKind.readiness_backfill, "other", "missing_only", 50)

        found = store.find_running(JobKind.readiness_backfill, "default")

        assert found is not None
        assert found.id == newer.id

    def test_mark_cancelled_only_moves_running_jobs(self) -> None:
        store = InMemoryJobStore()
        job = store.create(JobKind.readiness_backfill, "default", "missing_only", 50)

        assert store.mark_cancelled(job.id) is True
        assert store.mark_completed(job.id) is False
        assert store.get(job.id).status == JobStatus.cancelled
        assert store.get(job.id).finished_at is not None

    def test_mark_unknown_job_returns_false(self) -> None:
        assert InMemoryJobStore().mark_cancelled(uuid.uuid4()) is False

    def test_update_replaces_fields(self) -> None:
        store = InMemoryJobStore()
        job = store.create(JobKind.cellar_analysis, "default", "all", 50, 200)

        updated = store.update(job.id, cursor="50", processed=50, succeeded=50)

        assert updated.cursor == "50"
        assert store.get(job.id).processed == 50
        assert job.processed == 0


class TestSqlJobStore:
    def test_satisfies_job_store_protocol(self) -> None:
        assert isinstance(SqlJobStore(MagicMock()), JobStore)

    def test_get_returns_snapshot_and_closes_session(self) -> None:
        db = MagicMock()
        row = _job_row()
        db.query.return_value.filter.return_value.first.return_value = row

        snapshot = SqlJobStore(lambda: db).get(row.id)

        assert snapshot is not None
        assert snapshot.id == row.id
        assert snapshot.kind == JobKind.readiness_backfill
        assert snapshot.failures[0].item_id == "x1"
        db.close.assert_called_once()

    def test_get_missing_job_returns_none(self) -> None:
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = None

        assert SqlJobStore(lambda: db).get(uuid.uuid4()) is None

    def test_find_running_queries_newest_running_row(self) -> None:
        db = MagicMock()
        row = _job_row(owner="alice")
        db.query.return_value.filter.return_value.order_by.return_value.first.return_value = row

        snapshot = SqlJobStore(lambda: db).find_running(JobKind.readiness_backfill, "alice")

        assert snapshot is not None
        assert snapshot.owner == "alice"
        db.query.assert_called_once_with(BatchJob)

    def test_mark_cancelled_reports_whether_a_row_changed(self) -> None:
        db = MagicMock()
        db.execute.return_value.rowcount = 0

        assert SqlJobStore(lambda: db).mark_cancelled(uuid.uuid4()) is False
        db.commit.assert_called_once()
        db.close.assert_called_once()


class TestFinishJob:
    def test_commits_conditional_update(self) -> None:
        db = MagicMock()
        db.execute.return_value.rowcount = 1

        assert finish_job(db, uuid.uuid4(), JobStatus.completed) is True
        db.execute.assert_called_once()
        db.commit.assert_called_once()

    def test_not_running_job_is_left_alone(self) -> None:
        db = MagicMock()
        db.execute.return_value.rowcount = 0

        assert finish_job(db, uuid.uuid4(), JobStatus.failed, {"reason": "operator"}) is False
