"""Progress aggregation: a pure reducer over batch responses."""

from cellar.schemas.batch import BatchResponse, JobConfig, JobSnapshot, ProgressState
from cellar.services.batch_client import BatchProtocolError

# Ceiling shown while the job is still running and the total is unknown or exceeded.
_RUNNING_CEILING = 99

_COUNTERS = ("processed", "succeeded", "skipped", "failed")


def initial_progress(config: JobConfig, estimated_total: int | None = None) -> ProgressState:
    return ProgressState(kind=config.kind, mode=config.mode, estimated_total=estimated_total)


def progress_from_snapshot(snapshot: JobSnapshot) -> ProgressState:
    """Seed progress from a persisted job so a resumed driver never starts at zero."""
    return ProgressState(
        job_id=snapshot.id,
        kind=snapshot.kind,
        mode=snapshot.mode,
        processed=snapshot.processed,
        succeeded=snapshot.succeeded,
        skipped=snapshot.skipped,
        failed=snapshot.failed,
        estimated_total=snapshot.estimated_total,
        cursor=snapshot.cursor,
    )


def reduce_progress(state: ProgressState, response: BatchResponse) -> ProgressState:
    """Return the state after *response*.

    Counters are replaced, not incremented: the processor reports cumulative
    totals for the whole job. Raises BatchProtocolError if the response would
    move any counter backwards or switch to a different job.
    """
    if state.job_id is not None and response.job_id != state.job_id:
        raise BatchProtocolError(
            f"batch response is for job {response.job_id}, expected {state.job_id}"
        )
    for name in _COUNTERS:
        before, after = getattr(state, name), getattr(response, name)
        if after < before:
            raise BatchProtocolError(f"{name} went backwards ({before} -> {after})")

    return state.model_copy(
        update={
            "job_id": response.job_id,
            "processed": response.processed,
            "succeeded": response.succeeded,
            "skipped": response.skipped,
            "failed": response.failed,
            "cursor": response.next_cursor,
            "is_complete": response.is_complete,
            "batches": state.batches + 1,
        }
    )


def percent_complete(state: ProgressState) -> int:
    """Display percentage; reaches 100 only once the job is complete."""
    if state.is_complete:
        return 100
    if state.estimated_total is not None and state.estimated_total > 0:
        pct = round(state.processed * 100 / state.estimated_total)
    else:
        pct = state.processed // 10
    return max(0, min(_RUNNING_CEILING, pct))
