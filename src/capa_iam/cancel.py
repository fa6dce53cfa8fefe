from __future__ import annotations

import threading

import capa_iam.errors


class CancelToken:
    """Cancellation signal handed to a single reconcile by its caller."""

    def __init__(self, event: threading.Event | None = None):
        self._event = event or threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, operation: str = "", resource: str = "") -> None:
        if self._event.is_set():
            msg = "reconcile cancelled"
            raise capa_iam.errors.ReconcileCancelledError(msg, operation=operation, resource=resource)
