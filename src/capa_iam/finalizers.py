from __future__ import annotations

import copy
import logging
import typing

import capa_iam.cancel
import capa_iam.k8s
from capa_iam.errors import ConflictError, FinalizerRetryExceededError, ObjectNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5


def add_finalizer(
    store: capa_iam.k8s.ObjectStore,
    kind: capa_iam.k8s.Kind,
    obj: dict[str, typing.Any],
    finalizer: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    cancel: capa_iam.cancel.CancelToken | None = None,
) -> dict[str, typing.Any] | None:
    return _transition(store, kind, obj, finalizer, add=True, max_retries=max_retries, cancel=cancel)


def remove_finalizer(
    store: capa_iam.k8s.ObjectStore,
    kind: capa_iam.k8s.Kind,
    obj: dict[str, typing.Any],
    finalizer: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    cancel: capa_iam.cancel.CancelToken | None = None,
) -> dict[str, typing.Any] | None:
    return _transition(store, kind, obj, finalizer, add=False, max_retries=max_retries, cancel=cancel)


def _transition(
    store: capa_iam.k8s.ObjectStore,
    kind: capa_iam.k8s.Kind,
    obj: dict[str, typing.Any],
    finalizer: str,
    *,
    add: bool,
    max_retries: int,
    cancel: capa_iam.cancel.CancelToken | None,
) -> dict[str, typing.Any] | None:
    """
    Add or remove `finalizer` with a read-modify-write, re-reading the object and
    trying again whenever the write loses an optimistic concurrency race.

    At most `max_retries` writes are attempted. Returns the stored object, or
    None when the object disappeared while its finalizer was being removed.
    """
    if max_retries < 1:
        msg = f"max_retries must be at least 1, got {max_retries}"
        raise ValueError(msg)

    cancel = cancel or capa_iam.cancel.CancelToken()
    name = capa_iam.k8s.name_of(obj)
    namespace = capa_iam.k8s.namespace_of(obj)
    resource = f"{kind.kind} {namespace}/{name}" if namespace else f"{kind.kind} {name}"
    operation = "add-finalizer" if add else "remove-finalizer"

    current = obj
    last_conflict: ConflictError | None = None

    for attempt in range(1, max_retries + 1):
        cancel.check(operation, resource)

        finalizers = capa_iam.k8s.finalizers_of(current)
        if (finalizer in finalizers) == add:
            return current

        updated = copy.deepcopy(current)
        if add:
            updated["metadata"]["finalizers"] = [*finalizers, finalizer]
        else:
            updated["metadata"]["finalizers"] = [f for f in finalizers if f != finalizer]

        try:
            stored = store.replace(kind, updated)
        except ConflictError as e:
            last_conflict = e
            logger.info(f"Updating finalizers of {resource} conflicted ({attempt}/{max_retries}): {e}")
        except ObjectNotFoundError:
            if add:
                raise
            return None
        else:
            logger.info(f"{'Added' if add else 'Removed'} finalizer {finalizer} on {resource}")
            return stored

        if attempt == max_retries:
            break

        try:
            current = store.get(kind, name, namespace)
        except ObjectNotFoundError:
            if add:
                raise
            return None

    msg = f"giving up after {max_retries} conflicting updates"
    raise FinalizerRetryExceededError(msg, operation=operation, resource=resource) from last_conflict
