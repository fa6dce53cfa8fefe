"""
Shared-role guard.

Two machine templates (or machine pools) can name the same instance profile, and
therefore the same role. Before a role is deleted on behalf of one of them, the
store is scanned for any other live object still referencing it.

The check and the delete are not atomic: a reference created after the scan but
before the IAM call is not seen. That window is accepted.
"""

from __future__ import annotations

import logging
import typing

import capa_iam.k8s

logger = logging.getLogger(__name__)

INSTANCE_PROFILE_PATHS: tuple[tuple[capa_iam.k8s.Kind, tuple[str, ...]], ...] = (
    (capa_iam.k8s.AWS_MACHINE_TEMPLATE, ("spec", "template", "spec", "iamInstanceProfile")),
    (capa_iam.k8s.AWS_MACHINE_POOL, ("spec", "awsLaunchTemplate", "iamInstanceProfile")),
)


def _lookup(obj: typing.Mapping[str, typing.Any], path: tuple[str, ...]) -> typing.Any:
    value: typing.Any = obj
    for part in path:
        if not isinstance(value, typing.Mapping):
            return None
        value = value.get(part)
    return value


def _same_object(kind: capa_iam.k8s.Kind, obj: typing.Mapping[str, typing.Any], requester: tuple) -> bool:
    return (kind.kind, capa_iam.k8s.namespace_of(obj), capa_iam.k8s.name_of(obj)) == requester


def is_role_used_elsewhere(
    store: capa_iam.k8s.ObjectStore,
    role_name: str,
    requester_kind: capa_iam.k8s.Kind,
    requester: typing.Mapping[str, typing.Any],
) -> bool:
    """
    True when an object other than `requester` still references `role_name`.

    Objects that are themselves being deleted no longer hold a claim, so when
    every referencing object is deleted together the role is still removed.
    """
    requester_key = (requester_kind.kind, capa_iam.k8s.namespace_of(requester), capa_iam.k8s.name_of(requester))

    for kind, path in INSTANCE_PROFILE_PATHS:
        for obj in store.list(kind):
            if _lookup(obj, path) != role_name:
                continue
            if _same_object(kind, obj, requester_key) or capa_iam.k8s.is_deleting(obj):
                continue

            logger.info(
                f"Role {role_name} is still referenced by {kind.kind} "
                f"{capa_iam.k8s.namespace_of(obj)}/{capa_iam.k8s.name_of(obj)}"
            )
            return True

    return False
