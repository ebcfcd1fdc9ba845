"""Cooperative cancellation for long-running discovery and batches."""

import threading


class CancelledError(Exception):
    """Raised by ``CancellationToken.raise_if_cancelled``."""


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("operation cancelled")
