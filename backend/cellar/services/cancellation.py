"""Cooperative cancellation token shared by the batch loops."""

import threading


class JobCancelledError(Exception):
    """Raised when a job observes that cancellation was requested."""


class CancellationToken:
    """A one-way flag checked at every suspension point of a drive loop.

    Cancelling never interrupts work already in progress; loops observe the
    flag between batches, and ``wait`` doubles as a sleep that returns early
    once the token is cancelled.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds. Returns True if cancelled meanwhile."""
        if timeout <= 0:
            return self._event.is_set()
        return self._event.wait(timeout)

    def raise_if_cancelled(self, message: str = "Job cancelled") -> None:
        if self._event.is_set():
            raise JobCancelledError(message)
