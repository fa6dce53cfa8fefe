"""
Error taxonomy for reconciles.

Every error carries the operation and resource that failed plus a `retryable`
classification. The harness calling `reconcile()` requeues retryable errors
with backoff; the rest are logged and dropped until the object changes.
"""

from __future__ import annotations


class ReconcileError(Exception):
    retryable: bool = True

    def __init__(self, message: str, *, operation: str = "", resource: str = ""):
        self.operation = operation
        self.resource = resource
        prefix = ": ".join(part for part in (operation, resource) if part)
        super().__init__(f"{prefix}: {message}" if prefix else message)


class ConfigurationError(ReconcileError):
    """Required input is missing. Requeue once the upstream object is fixed."""


class IssuerNotReadyError(ConfigurationError):
    pass


class RemoteTransientError(ReconcileError):
    """Throttling, timeouts and other failures expected to clear on their own."""


class RemoteError(ReconcileError):
    retryable = False


class SessionError(ReconcileError):
    pass


class ReconcileCancelledError(ReconcileError):
    pass


class ObjectNotFoundError(ReconcileError):
    retryable = False


class ConflictError(ReconcileError):
    pass


class FinalizerRetryExceededError(ReconcileError):
    pass
