"""Drive a batch job against the Cellar API until it completes.

Usage:
    uv run python scripts/run_batch_job.py --kind readiness_backfill --mode missing_only
    uv run python scripts/run_batch_job.py --kind readiness_backfill --mode missing_only --resume JOB_ID

If a job of the same kind is already running for the user, it is resumed
instead of starting a second one.  Ctrl-C requests cancellation: the batch in
flight finishes, then the job is marked cancelled.

Exit codes: 0 completed, 2 paused at the iteration limit (resume later),
1 cancelled or failed.

Reads CELLAR_API_URL, CELLAR_USER and BATCH_CALL_TIMEOUT_SECONDS from the
environment (or .env in the project root).
"""

import argparse
import logging
import os
import sys
import uuid
from pathlib import Path

from dotenv import load_dotenv

# Allow running from backend/ directory without installing the package.
_BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_BACKEND_DIR))

# Load .env from project root (parent of backend/).
load_dotenv(_BACKEND_DIR.parent / ".env")

from cellar.schemas.batch import (  # noqa: E402
    DEFAULT_BATCH_SIZE,
    MAX_ITERATIONS,
    JobConfig,
    JobKind,
    ProgressState,
    default_owner,
)
from cellar.services.batch_client import HttpBatchProcessor, HttpJobStore  # noqa: E402
from cellar.services.job_driver import DriveResult, JobDriver  # noqa: E402
from cellar.services.job_store import NothingToProcessError  # noqa: E402
from cellar.services.progress import percent_complete  # noqa: E402

logger = logging.getLogger("run_batch_job")

_EXIT_CODES = {
    DriveResult.completed: 0,
    DriveResult.paused: 2,
    DriveResult.cancelled: 1,
    DriveResult.error: 1,
}


def _print_progress(state: ProgressState) -> None:
    total = state.estimated_total if state.estimated_total is not None else "?"
    print(
        f"  [{percent_complete(state):3d}%] {state.processed}/{total}"
        f"  ok={state.succeeded} skipped={state.skipped} failed={state.failed}"
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a Cellar batch job to completion")
    parser.add_argument("--kind", required=True, choices=[k.value for k in JobKind])
    parser.add_argument("--mode", required=True, help="Scope selector, e.g. missing_only")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--max-iterations", type=int, default=MAX_ITERATIONS)
    parser.add_argument("--resume", type=uuid.UUID, default=None, metavar="JOB_ID")
    parser.add_argument("--owner", default=default_owner())
    parser.add_argument("--api-url", default=None, help="Defaults to $CELLAR_API_URL")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

    kind = JobKind(args.kind)
    config = JobConfig(
        kind=kind,
        mode=args.mode,
        batch_size=args.batch_size,
        owner=args.owner,
        max_iterations=args.max_iterations,
        inter_batch_delay=float(os.environ.get("BATCH_INTER_DELAY_SECONDS", "0.5")),
    )

    processor = HttpBatchProcessor(kind, owner=args.owner, base_url=args.api_url)
    store = HttpJobStore(owner=args.owner, base_url=args.api_url)
    driver = JobDriver(processor, store, observers=[_print_progress])
    try:
        try:
            handle = driver.resume(args.resume, config) if args.resume else driver.start(config)
        except NothingToProcessError as exc:
            print(f"Nothing to do: {exc}")
            return 0

        print(f"Running {kind.value} ({config.mode}), batch size {config.batch_size} …")
        try:
            outcome = handle.wait()
        except KeyboardInterrupt:
            print("\nCancelling after the current batch …")
            handle.cancel()
            outcome = handle.wait()
    finally:
        processor.close()
        store.close()

    p = outcome.progress
    print(
        f"\n{outcome.result.value}: job {outcome.job_id}  processed={p.processed}"
        f"  succeeded={p.succeeded}  skipped={p.skipped}  failed={p.failed}"
    )
    if outcome.result == DriveResult.paused:
        print(f"Iteration limit reached. Resume with: --resume {outcome.job_id}")
    elif outcome.result == DriveResult.error:
        print(f"Batch failed: {outcome.error}")
        if outcome.resumable:
            print(f"The job is still running. Resume with: --resume {outcome.job_id}")
    return _EXIT_CODES[outcome.result]


if __name__ == "__main__":
    sys.exit(main())
