"""Cancellation handle shared by page fetches and geocoding batches."""

import threading


class OperationCancelled(RuntimeError):
    """Raised when a fetch or resolution was superseded by a newer request."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation was cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True early once cancelled."""
        return self._event.wait(timeout)
