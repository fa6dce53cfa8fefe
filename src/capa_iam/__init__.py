from __future__ import annotations

import dataclasses
import enum
import typing

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
CLUSTER_ROLE_LABEL = "cluster.x-k8s.io/role"
WATCH_FILTER_LABEL = "cluster.x-k8s.io/watch-filter"
WATCH_FILTER_VALUE = "capi"

FINALIZER_PREFIX = "capa-iam-operator.finalizers.giantswarm.io"
PREVIOUS_IRSA_DOMAIN_ANNOTATION = "capa-iam-operator.giantswarm.io/irsa-previous-domain"

POLICY_VERSION = "2012-10-17"
STS_AUDIENCE = "sts.amazonaws.com"


class RoleType(enum.StrEnum):
    CONTROL_PLANE = "control-plane"
    BASTION = "bastion"
    IRSA = "irsa"

    @property
    def needs_instance_profile(self) -> bool:
        match self:
            case RoleType.CONTROL_PLANE | RoleType.BASTION:
                return True
            case RoleType.IRSA:
                return False
        msg = f"Unknown role type {self!r}"
        raise ValueError(msg)


class TagKeys(enum.StrEnum):
    OWNED = "capi-iam-controller/owned"
    CLUSTER_PREFIX = "sigs.k8s.io/cluster-api-provider-aws/cluster/"


def finalizer_name(role_type: RoleType) -> str:
    return f"{FINALIZER_PREFIX}/{role_type}"


def policy_name(role_type: RoleType, cluster_name: str) -> str:
    return f"{role_type}-{cluster_name}-policy"


@dataclasses.dataclass(frozen=True)
class RoleSpec:
    role_name: str
    role_type: RoleType
    cluster_name: str
    region: str
    account_id: str
    custom_tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class ManagedRole:
    """What IAM reports for a role at the moment it was read."""

    arn: str
    trust_policy: dict[str, typing.Any]
    inline_policies: dict[str, dict[str, typing.Any]]
    has_instance_profile: bool
    tags: dict[str, str]


@dataclasses.dataclass(frozen=True)
class IRSABinding:
    workload: str
    role_name: str
    policy_name: str
    policy_document: dict[str, typing.Any]
    trust_policy: dict[str, typing.Any]


@dataclasses.dataclass(frozen=True)
class IRSADomain:
    current: str
    previous: str | None = None

    @property
    def rotating(self) -> bool:
        return bool(self.previous) and self.previous != self.current

    @property
    def domains(self) -> list[str]:
        if self.rotating:
            return [self.current, typing.cast(str, self.previous)]
        return [self.current]


class AWSTag(typing.TypedDict):
    Key: str
    Value: str
