"""Cooperative cancellation for long-running generation tasks."""

import threading


class CancellationToken:
    """
    A flag checked at every suspension point of a generation task.

    Safe to set from the event loop while a worker thread reads it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
