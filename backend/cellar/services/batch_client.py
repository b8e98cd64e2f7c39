"""HTTP client side of the batch protocol (processor and job store)."""

import logging
import os
import uuid
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from cellar.schemas.batch import (
    BatchRequest,
    BatchResponse,
    EligibleCountResponse,
    JobKind,
    JobSnapshot,
    default_owner,
)
from cellar.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

USER_HEADER = "X-Cellar-User"


class BatchCallError(Exception):
    """A batch call failed as a whole (network, timeout, remote error).

    The job is left running on the server and can be resumed.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BatchProtocolError(BatchCallError):
    """A batch call returned something that breaks the protocol contract."""


class BatchProcessor(Protocol):
    """The remote "process one batch" operation, as the driver sees it."""

    def process_batch(
        self, request: BatchRequest, token: CancellationToken | None = None
    ) -> BatchResponse: ...

    def estimate_total(self, mode: str) -> int | None: ...


def _default_base_url() -> str:
    return os.environ.get("CELLAR_API_URL", "http://localhost:8000").rstrip("/")


def _default_timeout() -> float:
    return float(os.environ.get("BATCH_CALL_TIMEOUT_SECONDS", "30"))


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


class _ApiClient:
    def __init__(
        self,
        *,
        owner: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._owner = owner or default_owner()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=base_url or _default_base_url(),
            timeout=timeout if timeout is not None else _default_timeout(),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body.

        Raises BatchCallError on timeout, transport failure or a non-2xx status,
        BatchProtocolError if the body is not JSON.
        """
        try:
            response = self._client.request(
                method, path, headers={USER_HEADER: self._owner}, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise BatchCallError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise BatchCallError(f"{method} {path} failed: {exc}") from exc

        if response.is_error:
            raise BatchCallError(
                f"{method} {path} returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise BatchProtocolError(f"{method} {path} returned a non-JSON body") from exc


class HttpBatchProcessor(_ApiClient):
    """Calls POST /batch/{kind}/run, one batch per call."""

    def __init__(self, kind: JobKind, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._kind = kind

    def process_batch(
        self, request: BatchRequest, token: CancellationToken | None = None
    ) -> BatchResponse:
        if token is not None:
            token.raise_if_cancelled("Batch cancelled before it was sent")
        data = self._send(
            "POST",
            f"/batch/{self._kind.value}/run",
            json=request.model_dump(mode="json", by_alias=True),
        )
        try:
            return BatchResponse.model_validate(data)
        except ValidationError as exc:
            raise BatchProtocolError(f"invalid batch response: {exc}") from exc

    def estimate_total(self, mode: str) -> int | None:
        """Best-effort count of items in scope; None when it cannot be fetched."""
        try:
            data = self._send(
                "GET", f"/batch/{self._kind.value}/eligible-count", params={"mode": mode}
            )
            return EligibleCountResponse.model_validate(data).count
        except (BatchCallError, ValidationError) as exc:
            logger.warning("could not estimate %s total: %s", self._kind.value, exc)
            return None


class HttpJobStore(_ApiClient):
    """JobStore over the /batch job endpoints."""

    def find_running(self, kind: JobKind, owner: str) -> JobSnapshot | None:
        if owner != self._owner:
            raise ValueError(f"HttpJobStore is bound to owner {self._owner!r}, not {owner!r}")
        return self._job_or_none("GET", f"/batch/{kind.value}/running")

    def get(self, job_id: uuid.UUID) -> JobSnapshot | None:
        try:
            return self._job_or_none("GET", f"/batch/jobs/{job_id}")
        except BatchCallError as exc:
            if exc.status_code == 404:
                return None
            raise

    def mark_cancelled(self, job_id: uuid.UUID) -> bool:
        job = self._job_or_none("POST", f"/batch/jobs/{job_id}/cancel")
        return job is not None and job.status.value == "cancelled"

    def mark_completed(self, job_id: uuid.UUID) -> bool:
        job = self._job_or_none("POST", f"/batch/jobs/{job_id}/complete")
        return job is not None and job.status.value == "completed"

    def _job_or_none(self, method: str, path: str) -> JobSnapshot | None:
        data = self._send(method, path)
        job = data.get("job") if isinstance(data, dict) else None
        if job is None:
            return None
        try:
            return JobSnapshot.model_validate(job)
        except ValidationError as exc:
            raise BatchProtocolError(f"invalid job payload: {exc}") from exc
