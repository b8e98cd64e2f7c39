"""Unit tests for the progress reducer."""

import uuid

import pytest

from cellar.schemas.batch import BatchResponse, JobConfig, JobKind, ProgressState
from cellar.services.batch_client import BatchProtocolError
from cellar.services.progress import initial_progress, percent_complete, reduce_progress


def _state(**fields: object) -> ProgressState:
    values: dict[str, object] = {"kind": JobKind.readiness_backfill, "mode": "missing_only"}
    values.update(fields)
    return ProgressState(**values)  # type: ignore[arg-type]


class TestReduceProgress:
    def test_replaces_counters_instead_of_adding(self) -> None:
        job_id = uuid.uuid4()
        state = _state(job_id=job_id, processed=50, succeeded=50, batches=1)
        response = BatchResponse(job_id=job_id, processed=100, succeeded=98, failed=2, next_cursor="100")

        new = reduce_progress(state, response)

        assert new.processed == 100
        assert new.succeeded == 98
        assert new.failed == 2
        assert new.cursor == "100"
        assert new.batches == 2

    def test_adopts_job_id_from_first_response(self) -> None:
        job_id = uuid.uuid4()

        new = reduce_progress(_state(), BatchResponse(job_id=job_id, processed=1, succeeded=1))

        assert new.job_id == job_id

    def test_does_not_mutate_input_state(self) -> None:
        state = _state()

        reduce_progress(state, BatchResponse(job_id=uuid.uuid4(), processed=3, succeeded=3))

        assert state.processed == 0
        assert state.job_id is None

    def test_rejects_counter_going_backwards(self) -> None:
        job_id = uuid.uuid4()
        state = _state(job_id=job_id, processed=10, succeeded=10)

        with pytest.raises(BatchProtocolError, match="succeeded went backwards"):
            reduce_progress(state, BatchResponse(job_id=job_id, processed=10, succeeded=9, failed=1))

    def test_rejects_response_for_another_job(self) -> None:
        state = _state(job_id=uuid.uuid4())

        with pytest.raises(BatchProtocolError):
            reduce_progress(state, BatchResponse(job_id=uuid.uuid4(), processed=0, succeeded=0))

    def test_complete_response_clears_cursor(self) -> None:
        job_id = uuid.uuid4()
        state = _state(job_id=job_id, cursor="100")

        new = reduce_progress(
            state, BatchResponse(job_id=job_id, processed=120, succeeded=120, is_complete=True)
        )

        assert new.is_complete
        assert new.cursor is None


class TestPercentComplete:
    def test_uses_estimated_total(self) -> None:
        assert percent_complete(_state(processed=30, estimated_total=120)) == 25

    def test_caps_below_100_until_complete(self) -> None:
        assert percent_complete(_state(processed=120, estimated_total=120)) == 99
        assert percent_complete(_state(processed=500, estimated_total=120)) == 99

    def test_is_100_only_when_complete(self) -> None:
        assert percent_complete(_state(processed=7, estimated_total=120, is_complete=True)) == 100

    def test_unknown_total_falls_back_to_processed_heuristic(self) -> None:
        assert percent_complete(_state(processed=250)) == 25
        assert percent_complete(_state(processed=5000)) == 99

    def test_zero_total_uses_fallback(self) -> None:
        assert percent_complete(_state(processed=40, estimated_total=0)) == 4


class TestInitialProgress:
    def test_starts_empty_with_estimate(self) -> None:
        config = JobConfig(kind=JobKind.cellar_analysis, mode="all")

        state = initial_progress(config, 42)

        assert state.job_id is None
        assert state.processed == 0
        assert state.estimated_total == 42
        assert state.mode == "all"
