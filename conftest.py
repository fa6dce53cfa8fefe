"""Shared pytest fixtures for capa-iam-operator tests.

This module provides common fixtures used across test files:
- fake_iam: In-memory IAM client that behaves like boto3's for the calls we make
- store: In-memory object store with optimistic concurrency
- aws_access: Mock AWSAccess handing out fake_iam
- make_obj: Builder for Kubernetes-style object dicts
"""

import copy
import json
import pathlib
import sys
import typing
import urllib.parse
from unittest.mock import MagicMock

import botocore.exceptions
import pytest

HERE = pathlib.Path(__file__).parent

sys.path.insert(0, str(HERE / "src"))

import capa_iam  # noqa: E402
import capa_iam.k8s  # noqa: E402
from capa_iam.errors import ConflictError, ObjectNotFoundError  # noqa: E402

ACCOUNT_ID = "123456789012"
ROLE_IDENTITY_ARN = f"arn:aws:iam::{ACCOUNT_ID}:role/capa-controller"

MUTATING_OPERATIONS = {
    "add_role_to_instance_profile",
    "create_instance_profile",
    "create_open_id_connect_provider",
    "create_role",
    "delete_instance_profile",
    "delete_open_id_connect_provider",
    "delete_role",
    "delete_role_policy",
    "detach_role_policy",
    "put_role_policy",
    "remove_role_from_instance_profile",
    "tag_role",
    "update_assume_role_policy",
}


def client_error(code: str, operation: str) -> botocore.exceptions.ClientError:
    return botocore.exceptions.ClientError({"Error": {"Code": code, "Message": "unit test"}}, operation)


# ============================================================================
# Fake IAM
# ============================================================================


class FakeIAMClient:
    """Stateful stand-in for a boto3 IAM client.

    Documents are stored parsed and handed back as dicts, like boto3 does after
    decoding IAM's URL-encoded JSON. Every call is recorded in `calls` and every
    trust policy write in `trust_history`.
    """

    def __init__(self):
        self.roles: dict[str, dict[str, typing.Any]] = {}
        self.inline_policies: dict[str, dict[str, dict[str, typing.Any]]] = {}
        self.attached_policies: dict[str, list[str]] = {}
        self.instance_profiles: dict[str, dict[str, typing.Any]] = {}
        self.oidc_providers: dict[str, dict[str, typing.Any]] = {}
        self.calls: list[tuple[str, dict[str, typing.Any]]] = []
        self.trust_history: dict[str, list[dict[str, typing.Any]]] = {}
        self.failures: dict[str, list[Exception]] = {}

    # -- test helpers ---------------------------------------------------------

    def fail_next(self, operation: str, error: Exception) -> None:
        self.failures.setdefault(operation, []).append(error)

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    def mutating_calls(self) -> list[str]:
        return [name for name in self.operations() if name in MUTATING_OPERATIONS]

    def reset_calls(self) -> None:
        self.calls = []

    def add_role(self, name: str, trust: dict[str, typing.Any], tags: dict[str, str] | None = None) -> None:
        self.roles[name] = {
            "RoleName": name,
            "Arn": f"arn:aws:iam::{ACCOUNT_ID}:role/{name}",
            "AssumeRolePolicyDocument": copy.deepcopy(trust),
            "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
        }
        self.inline_policies.setdefault(name, {})
        self.trust_history.setdefault(name, []).append(copy.deepcopy(trust))

    def _record(self, operation: str, kwargs: dict[str, typing.Any]) -> None:
        self.calls.append((operation, copy.deepcopy(kwargs)))
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _role(self, name: str, operation: str) -> dict[str, typing.Any]:
        if name not in self.roles:
            raise client_error("NoSuchEntity", operation)
        return self.roles[name]

    @staticmethod
    def _parse(document: str) -> dict[str, typing.Any]:
        return json.loads(urllib.parse.unquote(document))

    # -- roles ----------------------------------------------------------------

    def get_role(self, RoleName):
        self._record("get_role", {"RoleName": RoleName})
        return {"Role": copy.deepcopy(self._role(RoleName, "GetRole"))}

    def create_role(self, RoleName, AssumeRolePolicyDocument, Tags=()):
        self._record("create_role", {"RoleName": RoleName, "AssumeRolePolicyDocument": AssumeRolePolicyDocument})
        if RoleName in self.roles:
            raise client_error("EntityAlreadyExists", "CreateRole")
        self.add_role(RoleName, self._parse(AssumeRolePolicyDocument), {t["Key"]: t["Value"] for t in Tags})
        return {"Role": copy.deepcopy(self.roles[RoleName])}

    def update_assume_role_policy(self, RoleName, PolicyDocument):
        self._record("update_assume_role_policy", {"RoleName": RoleName, "PolicyDocument": PolicyDocument})
        role = self._role(RoleName, "UpdateAssumeRolePolicy")
        role["AssumeRolePolicyDocument"] = self._parse(PolicyDocument)
        self.trust_history[RoleName].append(self._parse(PolicyDocument))
        return {}

    def tag_role(self, RoleName, Tags):
        self._record("tag_role", {"RoleName": RoleName, "Tags": Tags})
        role = self._role(RoleName, "TagRole")
        tags = {t["Key"]: t["Value"] for t in role["Tags"]}
        tags.update({t["Key"]: t["Value"] for t in Tags})
        role["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
        return {}

    def delete_role(self, RoleName):
        self._record("delete_role", {"RoleName": RoleName})
        self._role(RoleName, "DeleteRole")
        if self.inline_policies.get(RoleName) or self.attached_policies.get(RoleName):
            raise client_error("DeleteConflict", "DeleteRole")
        if any(RoleName in p["Roles"] for p in self.instance_profiles.values()):
            raise client_error("DeleteConflict", "DeleteRole")
        del self.roles[RoleName]
        self.inline_policies.pop(RoleName, None)
        return {}

    # -- inline and managed policies -------------------------------------------

    def list_role_policies(self, RoleName, Marker=None):
        self._record("list_role_policies", {"RoleName": RoleName})
        self._role(RoleName, "ListRolePolicies")
        return {"PolicyNames": sorted(self.inline_policies.get(RoleName, {})), "IsTruncated": False}

    def get_role_policy(self, RoleName, PolicyName):
        self._record("get_role_policy", {"RoleName": RoleName, "PolicyName": PolicyName})
        policies = self.inline_policies.get(RoleName, {})
        if PolicyName not in policies:
            raise client_error("NoSuchEntity", "GetRolePolicy")
        return {"RoleName": RoleName, "PolicyName": PolicyName, "PolicyDocument": copy.deepcopy(policies[PolicyName])}

    def put_role_policy(self, RoleName, PolicyName, PolicyDocument):
        self._record(
            "put_role_policy", {"RoleName": RoleName, "PolicyName": PolicyName, "PolicyDocument": PolicyDocument}
        )
        self._role(RoleName, "PutRolePolicy")
        self.inline_policies.setdefault(RoleName, {})[PolicyName] = self._parse(PolicyDocument)
        return {}

    def delete_role_policy(self, RoleName, PolicyName):
        self._record("delete_role_policy", {"RoleName": RoleName, "PolicyName": PolicyName})
        if PolicyName not in self.inline_policies.get(RoleName, {}):
            raise client_error("NoSuchEntity", "DeleteRolePolicy")
        del self.inline_policies[RoleName][PolicyName]
        return {}

    def list_attached_role_policies(self, RoleName, Marker=None):
        self._record("list_attached_role_policies", {"RoleName": RoleName})
        self._role(RoleName, "ListAttachedRolePolicies")
        return {
            "AttachedPolicies": [{"PolicyArn": arn} for arn in self.attached_policies.get(RoleName, [])],
            "IsTruncated": False,
        }

    def detach_role_policy(self, RoleName, PolicyArn):
        self._record("detach_role_policy", {"RoleName": RoleName, "PolicyArn": PolicyArn})
        if PolicyArn not in self.attached_policies.get(RoleName, []):
            raise client_error("NoSuchEntity", "DetachRolePolicy")
        self.attached_policies[RoleName].remove(PolicyArn)
        return {}

    # -- instance profiles ----------------------------------------------------

    def get_instance_profile(self, InstanceProfileName):
        self._record("get_instance_profile", {"InstanceProfileName": InstanceProfileName})
        if InstanceProfileName not in self.instance_profiles:
            raise client_error("NoSuchEntity", "GetInstanceProfile")
        return {"InstanceProfile": self._profile(InstanceProfileName)}

    def _profile(self, name: str) -> dict[str, typing.Any]:
        profile = self.instance_profiles[name]
        return {
            "InstanceProfileName": name,
            "Roles": [{"RoleName": role} for role in profile["Roles"]],
            "Tags": profile["Tags"],
        }

    def create_instance_profile(self, InstanceProfileName, Tags=()):
        self._record("create_instance_profile", {"InstanceProfileName": InstanceProfileName, "Tags": Tags})
        if InstanceProfileName in self.instance_profiles:
            raise client_error("EntityAlreadyExists", "CreateInstanceProfile")
        self.instance_profiles[InstanceProfileName] = {"Roles": [], "Tags": list(Tags)}
        return {"InstanceProfile": self._profile(InstanceProfileName)}

    def add_role_to_instance_profile(self, InstanceProfileName, RoleName):
        self._record(
            "add_role_to_instance_profile", {"InstanceProfileName": InstanceProfileName, "RoleName": RoleName}
        )
        if InstanceProfileName not in self.instance_profiles:
            raise client_error("NoSuchEntity", "AddRoleToInstanceProfile")
        profile = self.instance_profiles[InstanceProfileName]
        if profile["Roles"]:
            raise client_error("LimitExceeded", "AddRoleToInstanceProfile")
        profile["Roles"].append(RoleName)
        return {}

    def remove_role_from_instance_profile(self, InstanceProfileName, RoleName):
        self._record(
            "remove_role_from_instance_profile", {"InstanceProfileName": InstanceProfileName, "RoleName": RoleName}
        )
        profile = self.instance_profiles.get(InstanceProfileName)
        if profile is None or RoleName not in profile["Roles"]:
            raise client_error("NoSuchEntity", "RemoveRoleFromInstanceProfile")
        profile["Roles"].remove(RoleName)
        return {}

    def delete_instance_profile(self, InstanceProfileName):
        self._record("delete_instance_profile", {"InstanceProfileName": InstanceProfileName})
        if InstanceProfileName not in self.instance_profiles:
            raise client_error("NoSuchEntity", "DeleteInstanceProfile")
        if self.instance_profiles[InstanceProfileName]["Roles"]:
            raise client_error("DeleteConflict", "DeleteInstanceProfile")
        del self.instance_profiles[InstanceProfileName]
        return {}

    def list_instance_profiles_for_role(self, RoleName, Marker=None):
        self._record("list_instance_profiles_for_role", {"RoleName": RoleName})
        self._role(RoleName, "ListInstanceProfilesForRole")
        return {
            "InstanceProfiles": [
                self._profile(name) for name, p in self.instance_profiles.items() if RoleName in p["Roles"]
            ],
            "IsTruncated": False,
        }

    # -- OIDC providers -------------------------------------------------------

    def get_open_id_connect_provider(self, OpenIDConnectProviderArn):
        self._record("get_open_id_connect_provider", {"OpenIDConnectProviderArn": OpenIDConnectProviderArn})
        if OpenIDConnectProviderArn not in self.oidc_providers:
            raise client_error("NoSuchEntity", "GetOpenIDConnectProvider")
        return copy.deepcopy(self.oidc_providers[OpenIDConnectProviderArn])

    def create_open_id_connect_provider(self, Url, ClientIDList, Tags=()):
        self._record("create_open_id_connect_provider", {"Url": Url, "ClientIDList": ClientIDList})
        arn = f"arn:aws:iam::{ACCOUNT_ID}:oidc-provider/{Url.removeprefix('https://')}"
        if arn in self.oidc_providers:
            raise client_error("EntityAlreadyExists", "CreateOpenIDConnectProvider")
        self.oidc_providers[arn] = {"Url": Url, "ClientIDList": list(ClientIDList), "Tags": list(Tags)}
        return {"OpenIDConnectProviderArn": arn}

    def delete_open_id_connect_provider(self, OpenIDConnectProviderArn):
        self._record("delete_open_id_connect_provider", {"OpenIDConnectProviderArn": OpenIDConnectProviderArn})
        if OpenIDConnectProviderArn not in self.oidc_providers:
            raise client_error("NoSuchEntity", "DeleteOpenIDConnectProvider")
        del self.oidc_providers[OpenIDConnectProviderArn]
        return {}


@pytest.fixture
def fake_iam() -> FakeIAMClient:
    """Returns an empty FakeIAMClient.

    Usage:
        def test_something(fake_iam):
            svc = capa_iam.aws_iam.IAMService(fake_iam)
            svc.ensure_role(spec)
            assert "create_role" in fake_iam.mutating_calls()
    """
    return FakeIAMClient()


# ============================================================================
# Fake object store
# ============================================================================


class FakeObjectStore:
    """In-memory object store with resourceVersion preconditions.

    Like the API server, an object carrying a deletionTimestamp disappears once
    its last finalizer is removed. `conflicts` makes the next N replace calls
    for an object name fail with a conflict.
    """

    def __init__(self):
        self.objects: dict[tuple[str, str | None, str], dict[str, typing.Any]] = {}
        self.conflicts: dict[str, int] = {}
        self.replace_calls: list[str] = []
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, kind: capa_iam.k8s.Kind, obj: dict[str, typing.Any]) -> dict[str, typing.Any]:
        obj = copy.deepcopy(obj)
        obj["metadata"]["resourceVersion"] = self._next_version()
        self.objects[(kind.kind, obj["metadata"].get("namespace"), obj["metadata"]["name"])] = obj
        return copy.deepcopy(obj)

    def find(self, kind: capa_iam.k8s.Kind, name: str, namespace: str | None = None) -> dict[str, typing.Any] | None:
        obj = self.objects.get((kind.kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def get(self, kind: capa_iam.k8s.Kind, name: str, namespace: str | None = None) -> dict[str, typing.Any]:
        obj = self.find(kind, name, namespace)
        if obj is None:
            raise ObjectNotFoundError("not found", operation="get", resource=name)
        return obj

    def list(self, kind, namespace=None, labels=None) -> list[dict[str, typing.Any]]:
        items = []
        for (kind_name, ns, _), obj in self.objects.items():
            if kind_name != kind.kind or (namespace and ns != namespace):
                continue
            obj_labels = obj["metadata"].get("labels") or {}
            if any(obj_labels.get(k) != v for k, v in (labels or {}).items()):
                continue
            items.append(copy.deepcopy(obj))
        return items

    def replace(self, kind: capa_iam.k8s.Kind, obj: dict[str, typing.Any]) -> dict[str, typing.Any]:
        name = obj["metadata"]["name"]
        key = (kind.kind, obj["metadata"].get("namespace"), name)
        self.replace_calls.append(name)

        if self.conflicts.get(name, 0) > 0:
            self.conflicts[name] -= 1
            raise ConflictError("the object has been modified", operation="replace", resource=name)

        current = self.objects.get(key)
        if current is None:
            raise ObjectNotFoundError("not found", operation="replace", resource=name)
        if current["metadata"]["resourceVersion"] != obj["metadata"].get("resourceVersion"):
            raise ConflictError("the object has been modified", operation="replace", resource=name)

        stored = copy.deepcopy(obj)
        stored["metadata"]["resourceVersion"] = self._next_version()
        if stored["metadata"].get("deletionTimestamp") and not stored["metadata"].get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = stored
        return copy.deepcopy(stored)


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


def build_obj(
    name: str,
    namespace: str | None = "org-test",
    *,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    spec: dict[str, typing.Any] | None = None,
    data: dict[str, str] | None = None,
    finalizers: list[str] | None = None,
    deleting: bool = False,
) -> dict[str, typing.Any]:
    metadata: dict[str, typing.Any] = {"name": name, "labels": labels or {}, "finalizers": finalizers or []}
    if namespace is not None:
        metadata["namespace"] = namespace
    if annotations:
        metadata["annotations"] = annotations
    if deleting:
        metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"

    obj: dict[str, typing.Any] = {"metadata": metadata}
    if spec is not None:
        obj["spec"] = spec
    if data is not None:
        obj["data"] = data
    return obj


@pytest.fixture
def make_obj() -> typing.Callable[..., dict[str, typing.Any]]:
    """Returns the object builder.

    Usage:
        def test_something(store, make_obj):
            store.add(capa_iam.k8s.AWS_CLUSTER, make_obj("c1", labels={...}, spec={...}))
    """
    return build_obj


# ============================================================================
# AWS access
# ============================================================================


@pytest.fixture
def aws_access(fake_iam: FakeIAMClient) -> MagicMock:
    """Mock AWSAccess whose sessions hand out `fake_iam`."""
    access = MagicMock()
    access.session.return_value = MagicMock(name="session")
    access.iam_client.return_value = fake_iam
    access.caller_identity.return_value = {"Arn": ROLE_IDENTITY_ARN, "Account": ACCOUNT_ID}
    access.eks_issuer_domain.return_value = "oidc.eks.eu-west-1.amazonaws.com/id/ABCDEF0123456789"
    return access


@pytest.fixture
def role_spec() -> capa_iam.RoleSpec:
    return capa_iam.RoleSpec(
        role_name="cluster1-ControlPlane-Role",
        role_type=capa_iam.RoleType.CONTROL_PLANE,
        cluster_name="cluster1",
        region="eu-west-1",
        account_id=ACCOUNT_ID,
    )
