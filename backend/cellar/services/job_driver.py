"""Job driver: runs a resumable batch job to completion, one batch at a time.

The driver owns the client-side loop: it discovers or creates the job, calls
the batch processor with the current cursor, folds each response into the
progress state, and stops on completion, cancellation, a batch failure or the
iteration safety bound. Only the processor writes counters; the driver writes
nothing but the cancelled/completed status markers.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from cellar.schemas.batch import BatchRequest, JobConfig, JobStatus, ProgressState
from cellar.services.batch_client import BatchCallError, BatchProcessor
from cellar.services.cancellation import CancellationToken, JobCancelledError
from cellar.services.job_store import (
    JobNotFoundError,
    JobNotRunningError,
    JobStore,
    NothingToProcessError,
)
from cellar.services.progress import initial_progress, progress_from_snapshot, reduce_progress

logger = logging.getLogger(__name__)

ProgressObserver = Callable[[ProgressState], None]


class DriveResult(str, Enum):
    completed = "completed"
    cancelled = "cancelled"
    # Safety bound reached; the job is still running and can be resumed.
    paused = "paused"
    # Batch-level failure; the job is still running and can be resumed.
    error = "error"


@dataclass(frozen=True)
class DriveOutcome:
    result: DriveResult
    progress: ProgressState
    # Batch calls issued, counting one that raised.
    iterations: int
    error: Exception | None = None

    @property
    def job_id(self) -> uuid.UUID | None:
        return self.progress.job_id

    @property
    def resumable(self) -> bool:
        return self.result in (DriveResult.paused, DriveResult.error) and self.job_id is not None


class JobHandle:
    """Observe and cancel one running drive loop."""

    def __init__(
        self,
        driver: "JobDriver",
        config: JobConfig,
        progress: ProgressState,
        token: CancellationToken | None = None,
        observer: ProgressObserver | None = None,
    ) -> None:
        self.config = config
        self.token = token or CancellationToken()
        self._driver = driver
        self._observers: list[ProgressObserver] = [observer] if observer is not None else []
        self._progress = progress
        self._outcome: DriveOutcome | None = None
        self._done = threading.Event()
        self._callbacks: list[Callable[[DriveOutcome], None]] = []
        self._lock = threading.Lock()

    @property
    def job_id(self) -> uuid.UUID | None:
        return self._progress.job_id

    @property
    def progress(self) -> ProgressState:
        return self._progress

    def cancel(self) -> None:
        """Request cooperative cancellation; an in-flight batch still finishes."""
        self._driver._request_cancel(self)

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> DriveOutcome:
        """Block until the loop stops. Raises TimeoutError if *timeout* elapses first."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"job {self.job_id} still running after {timeout}s")
        assert self._outcome is not None
        return self._outcome

    def add_done_callback(self, fn: Callable[[DriveOutcome], None]) -> None:
        with self._lock:
            if self._outcome is None:
                self._callbacks.append(fn)
                return
            outcome = self._outcome
        fn(outcome)

    def _finish(self, outcome: DriveOutcome) -> None:
        with self._lock:
            self._outcome = outcome
            self._progress = outcome.progress
            callbacks, self._callbacks = self._callbacks, []
        self._done.set()
        for fn in callbacks:
            try:
                fn(outcome)
            except Exception:
                logger.exception("done callback failed for job %s", outcome.job_id)


class JobDriver:
    def __init__(
        self,
        processor: BatchProcessor,
        store: JobStore,
        observers: list[ProgressObserver] | None = None,
    ) -> None:
        self._processor = processor
        self._store = store
        self._observers = list(observers or [])
        self._handles: dict[uuid.UUID, JobHandle] = {}
        self._lock = threading.Lock()

    def subscribe(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    # ── Public operations ─────────────────────────────────────────────────────

    def start(
        self,
        config: JobConfig,
        *,
        observer: ProgressObserver | None = None,
        token: CancellationToken | None = None,
    ) -> JobHandle:
        """Start a job for *config*, or resume the one already running in its scope.

        Raises NothingToProcessError if the processor reports zero items in scope.
        """
        existing = self._store.find_running(config.kind, config.owner)
        if existing is not None:
            logger.info(
                "%s job %s already running for %s, resuming it",
                config.kind.value,
                existing.id,
                config.owner,
            )
            return self.resume(existing.id, config, observer=observer, token=token)

        estimated_total = self._processor.estimate_total(config.mode)
        if estimated_total == 0:
            raise NothingToProcessError(
                f"no {config.kind.value} items in scope for mode {config.mode!r}"
            )
        handle = JobHandle(self, config, initial_progress(config, estimated_total), token, observer)
        self._launch(handle)
        return handle

    def resume(
        self,
        job_id: uuid.UUID,
        config: JobConfig | None = None,
        *,
        observer: ProgressObserver | None = None,
        token: CancellationToken | None = None,
    ) -> JobHandle:
        """Continue a running job from its persisted cursor and counters.

        If this driver is already driving the job, its live handle is returned:
        *observer* is attached to it and *token* is ignored, so cancel through
        the returned handle. Raises JobNotFoundError / JobNotRunningError after
        re-reading the store.
        """
        snapshot = self._store.get(job_id)
        if snapshot is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if snapshot.status != JobStatus.running:
            raise JobNotRunningError(f"Job {job_id} is {snapshot.status.value}")

        with self._lock:
            active = self._handles.get(job_id)
        if active is not None and not active.done():
            if observer is not None:
                active._observers.append(observer)
            return active

        if config is None:
            config = JobConfig(
                kind=snapshot.kind,
                mode=snapshot.mode,
                batch_size=snapshot.batch_size,
                owner=snapshot.owner,
            )
        elif config.mode != snapshot.mode:
            logger.warning(
                "job %s was started with mode %s; ignoring requested mode %s",
                job_id,
                snapshot.mode,
                config.mode,
            )
        config = config.model_copy(
            update={"kind": snapshot.kind, "mode": snapshot.mode, "owner": snapshot.owner}
        )
        handle = JobHandle(self, config, progress_from_snapshot(snapshot), token, observer)
        self._launch(handle)
        return handle

    def cancel(self, job_id: uuid.UUID) -> None:
        """Stop the local loop before its next batch and mark the job cancelled."""
        with self._lock:
            handle = self._handles.get(job_id)
        if handle is not None:
            handle.token.cancel()
        self._mark_cancelled(job_id)

    # ── Loop ──────────────────────────────────────────────────────────────────

    def _launch(self, handle: JobHandle) -> None:
        if handle.job_id is not None:
            with self._lock:
                self._handles[handle.job_id] = handle
        threading.Thread(
            target=self._run,
            args=(handle,),
            name=f"batch-{handle.config.kind.value}",
            daemon=True,
        ).start()

    def _run(self, handle: JobHandle) -> None:
        try:
            outcome = self._drive(handle)
        except Exception as exc:
            logger.exception("%s job %s: drive loop crashed", handle.config.kind.value, handle.job_id)
            outcome = DriveOutcome(DriveResult.error, handle.progress, 0, exc)
        self._release(handle)
        handle._finish(outcome)

    def _drive(self, handle: JobHandle) -> DriveOutcome:
        config = handle.config
        token = handle.token
        state = handle.progress
        cursor = state.cursor
        iterations = 0

        logger.info(
            "%s %s job %s (mode=%s, batch_size=%d)",
            "resuming" if state.job_id else "starting",
            config.kind.value,
            state.job_id or "(new)",
            config.mode,
            config.batch_size,
        )
        try:
            while iterations < config.max_iterations:
                if token.cancelled:
                    return self._cancelled(handle, iterations)

                request = BatchRequest(
                    job_id=state.job_id,
                    mode=config.mode,
                    batch_size=config.batch_size,
                    cursor=cursor,
                )
                iterations += 1
                response = self._processor.process_batch(request, token)

                state = reduce_progress(state, response)
                cursor = response.next_cursor
                self._adopt(handle, state)
                logger.info(
                    "%s job %s batch %d: processed=%d succeeded=%d skipped=%d failed=%d",
                    config.kind.value,
                    state.job_id,
                    iterations,
                    state.processed,
                    state.succeeded,
                    state.skipped,
                    state.failed,
                )
                self._notify(handle, state)

                if response.status == JobStatus.cancelled:
                    logger.info("%s job %s was cancelled elsewhere", config.kind.value, state.job_id)
                    return DriveOutcome(DriveResult.cancelled, state, iterations)
                if response.is_complete:
                    if response.status != JobStatus.completed:
                        self._best_effort(self._store.mark_completed, state.job_id, "mark completed")
                    logger.info(
                        "%s job %s complete: %d processed, %d failed",
                        config.kind.value,
                        state.job_id,
                        state.processed,
                        state.failed,
                    )
                    return DriveOutcome(DriveResult.completed, state, iterations)
                if response.status != JobStatus.running:
                    error = JobNotRunningError(f"Job {state.job_id} is {response.status.value}")
                    return DriveOutcome(DriveResult.error, state, iterations, error)

                if token.wait(config.inter_batch_delay):
                    return self._cancelled(handle, iterations)
        except JobCancelledError:
            return self._cancelled(handle, iterations)
        except BatchCallError as exc:
            logger.error(
                "%s job %s: batch failed, job left running for resume: %s",
                config.kind.value,
                handle.job_id,
                exc,
            )
            return DriveOutcome(DriveResult.error, handle.progress, iterations, exc)
        except Exception as exc:
            logger.exception(
                "%s job %s: batch %d raised, job left running for resume",
                config.kind.value,
                handle.job_id,
                iterations,
            )
            return DriveOutcome(DriveResult.error, handle.progress, iterations, exc)

        logger.warning(
            "%s job %s paused after %d batches; resume to continue",
            config.kind.value,
            state.job_id,
            iterations,
        )
        return DriveOutcome(DriveResult.paused, state, iterations)

    def _cancelled(self, handle: JobHandle, iterations: int) -> DriveOutcome:
        if handle.job_id is not None:
            self._mark_cancelled(handle.job_id)
        logger.info(
            "%s job %s cancelled after %d batches",
            handle.config.kind.value,
            handle.job_id,
            iterations,
        )
        return DriveOutcome(DriveResult.cancelled, handle.progress, iterations)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _adopt(self, handle: JobHandle, state: ProgressState) -> None:
        with self._lock:
            handle._progress = state
            if state.job_id is not None:
                self._handles.setdefault(state.job_id, handle)

    def _release(self, handle: JobHandle) -> None:
        if handle.job_id is None:
            return
        with self._lock:
            if self._handles.get(handle.job_id) is handle:
                del self._handles[handle.job_id]

    def _notify(self, handle: JobHandle, state: ProgressState) -> None:
        observers = list(self._observers) + list(handle._observers)
        for observer in observers:
            try:
                observer(state)
            except Exception:
                logger.exception("progress observer failed for job %s", state.job_id)

    def _request_cancel(self, handle: JobHandle) -> None:
        handle.token.cancel()
        if handle.job_id is not None:
            self._mark_cancelled(handle.job_id)

    def _mark_cancelled(self, job_id: uuid.UUID) -> None:
        self._best_effort(self._store.mark_cancelled, job_id, "mark cancelled")

    def _best_effort(
        self, write: Callable[[uuid.UUID], bool], job_id: uuid.UUID | None, what: str
    ) -> None:
        if job_id is None:
            return
        try:
            write(job_id)
        except Exception as exc:
            logger.warning("could not %s job %s: %s", what, job_id, exc)
