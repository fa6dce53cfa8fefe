from __future__ import annotations

import dataclasses
import json
import re
import typing
import urllib.parse

from capa_iam import POLICY_VERSION, STS_AUDIENCE, RoleSpec, RoleType
from capa_iam.errors import ConfigurationError

OIDC_ARN_URL_REGEX = re.compile("arn:[a-z-]+:iam::[0-9]+:oidc-provider/(.*)")

_LIST_KEYS = ("Action", "NotAction", "Resource", "NotResource")


@dataclasses.dataclass(frozen=True)
class PolicyStatement:
    actions: tuple[str, ...]
    resources: tuple[str, ...] = ("*",)
    sid: str | None = None

    def render(self, partition: str) -> dict[str, typing.Any]:
        statement: dict[str, typing.Any] = {
            "Action": list(self.actions),
            "Effect": "Allow",
            "Resource": [r.replace("{partition}", partition) for r in self.resources],
        }
        if self.sid:
            statement["Sid"] = self.sid
        return statement


CONTROL_PLANE_STATEMENTS = (
    PolicyStatement(
        actions=(
            "autoscaling:DescribeAutoScalingGroups",
            "autoscaling:DescribeLaunchConfigurations",
            "autoscaling:DescribeTags",
            "ec2:AttachVolume",
            "ec2:AuthorizeSecurityGroupIngress",
            "ec2:CreateRoute",
            "ec2:CreateSecurityGroup",
            "ec2:CreateTags",
            "ec2:CreateVolume",
            "ec2:DeleteRoute",
            "ec2:DeleteSecurityGroup",
            "ec2:DeleteVolume",
            "ec2:DescribeInstances",
            "ec2:DescribeRegions",
            "ec2:DescribeRouteTables",
            "ec2:DescribeSecurityGroups",
            "ec2:DescribeSubnets",
            "ec2:DescribeVolumes",
            "ec2:DescribeVpcs",
            "ec2:DetachVolume",
            "ec2:ModifyInstanceAttribute",
            "ec2:ModifyVolume",
            "ec2:RevokeSecurityGroupIngress",
            "elasticloadbalancing:AddTags",
            "elasticloadbalancing:ApplySecurityGroupsToLoadBalancer",
            "elasticloadbalancing:AttachLoadBalancerToSubnets",
            "elasticloadbalancing:ConfigureHealthCheck",
            "elasticloadbalancing:CreateListener",
            "elasticloadbalancing:CreateLoadBalancer",
            "elasticloadbalancing:CreateLoadBalancerListeners",
            "elasticloadbalancing:CreateLoadBalancerPolicy",
            "elasticloadbalancing:CreateTargetGroup",
            "elasticloadbalancing:DeleteListener",
            "elasticloadbalancing:DeleteLoadBalancer",
            "elasticloadbalancing:DeleteLoadBalancerListeners",
            "elasticloadbalancing:DeleteTargetGroup",
            "elasticloadbalancing:DeregisterInstancesFromLoadBalancer",
            "elasticloadbalancing:DeregisterTargets",
            "elasticloadbalancing:DescribeListeners",
            "elasticloadbalancing:DescribeLoadBalancerAttributes",
            "elasticloadbalancing:DescribeLoadBalancerPolicies",
            "elasticloadbalancing:DescribeLoadBalancers",
            "elasticloadbalancing:DescribeTargetGroups",
            "elasticloadbalancing:DescribeTargetHealth",
            "elasticloadbalancing:DetachLoadBalancerFromSubnets",
            "elasticloadbalancing:ModifyListener",
            "elasticloadbalancing:ModifyLoadBalancerAttributes",
            "elasticloadbalancing:ModifyTargetGroup",
            "elasticloadbalancing:RegisterInstancesWithLoadBalancer",
            "elasticloadbalancing:RegisterTargets",
            "elasticloadbalancing:SetLoadBalancerPoliciesForBackendServer",
            "elasticloadbalancing:SetLoadBalancerPoliciesOfListener",
            "iam:CreateServiceLinkedRole",
            "kms:DescribeKey",
        ),
        sid="ControlPlane",
    ),
    PolicyStatement(
        actions=(
            "ecr:BatchCheckLayerAvailability",
            "ecr:BatchGetImage",
            "ecr:GetAuthorizationToken",
            "ecr:GetDownloadUrlForLayer",
        ),
        sid="ImagePull",
    ),
)

BASTION_STATEMENTS = (
    PolicyStatement(
        actions=(
            "ec2:DescribeInstances",
            "ec2:DescribeTags",
        ),
        sid="Bastion",
    ),
)


def partition_for_region(region: str) -> str:
    if region.startswith("cn-"):
        return "aws-cn"
    if region.startswith("us-gov-"):
        return "aws-us-gov"
    return "aws"


def ec2_service_principal(region: str) -> str:
    if region.startswith("cn-"):
        return "ec2.amazonaws.com.cn"
    return "ec2.amazonaws.com"


def oidc_provider_arn(partition: str, account_id: str, domain: str) -> str:
    return f"arn:{partition}:iam::{account_id}:oidc-provider/{domain}"


def validate(spec: RoleSpec) -> None:
    missing = [
        field
        for field, value in (
            ("account_id", spec.account_id),
            ("region", spec.region),
            ("cluster_name", spec.cluster_name),
        )
        if not value
    ]
    if missing:
        msg = f"missing required fields: {', '.join(missing)}"
        raise ConfigurationError(msg, operation="build-policy", resource=spec.role_name)


def trust_policy(
    spec: RoleSpec,
    domains: typing.Sequence[str] = (),
    service_account: tuple[str, str] | None = None,
) -> dict[str, typing.Any]:
    """
    Build the assume-role policy for `spec`.

    IRSA roles get one web-identity statement per issuer domain in `domains`, in
    the given order, restricted to `service_account` (namespace, name; globs are
    allowed in the name).
    """
    validate(spec)

    match spec.role_type:
        case RoleType.CONTROL_PLANE | RoleType.BASTION:
            statements = [
                {
                    "Action": "sts:AssumeRole",
                    "Effect": "Allow",
                    "Principal": {"Service": ec2_service_principal(spec.region)},
                }
            ]
        case RoleType.IRSA:
            if not domains or not all(domains):
                msg = "IRSA trust policy requires an issuer domain"
                raise ConfigurationError(msg, operation="build-policy", resource=spec.role_name)
            if service_account is None:
                msg = "IRSA trust policy requires a service account"
                raise ConfigurationError(msg, operation="build-policy", resource=spec.role_name)

            namespace, account = service_account
            partition = partition_for_region(spec.region)
            statements = [
                {
                    "Action": "sts:AssumeRoleWithWebIdentity",
                    "Condition": {
                        "StringEquals": {f"{domain}:aud": STS_AUDIENCE},
                        "StringLike": {f"{domain}:sub": f"system:serviceaccount:{namespace}:{account}"},
                    },
                    "Effect": "Allow",
                    "Principal": {"Federated": oidc_provider_arn(partition, spec.account_id, domain)},
                }
                for domain in domains
            ]
        case _:
            msg = f"unknown role type {spec.role_type!r}"
            raise ConfigurationError(msg, operation="build-policy", resource=spec.role_name)

    return {"Statement": statements, "Version": POLICY_VERSION}


def permission_policy(
    spec: RoleSpec,
    statements: typing.Sequence[PolicyStatement] = (),
) -> dict[str, typing.Any]:
    validate(spec)

    match spec.role_type:
        case RoleType.CONTROL_PLANE:
            chosen = CONTROL_PLANE_STATEMENTS
        case RoleType.BASTION:
            chosen = BASTION_STATEMENTS
        case RoleType.IRSA:
            if not statements:
                msg = "IRSA permission policy requires statements"
                raise ConfigurationError(msg, operation="build-policy", resource=spec.role_name)
            chosen = tuple(statements)
        case _:
            msg = f"unknown role type {spec.role_type!r}"
            raise ConfigurationError(msg, operation="build-policy", resource=spec.role_name)

    partition = partition_for_region(spec.region)
    return {
        "Statement": [statement.render(partition) for statement in chosen],
        "Version": POLICY_VERSION,
    }


def render(document: dict[str, typing.Any]) -> str:
    return json.dumps(document, sort_keys=True)


def parse(document: str | dict[str, typing.Any]) -> dict[str, typing.Any]:
    """Parse a policy document as returned by IAM (dict, JSON, or URL-encoded JSON)."""
    if isinstance(document, dict):
        return document

    text = document.strip()
    if text.startswith("%"):
        text = urllib.parse.unquote(text)

    return json.loads(text)


def _as_sorted_list(value: typing.Any) -> typing.Any:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return sorted(value, key=lambda v: json.dumps(v, sort_keys=True))
    return value


def _normalize_statement(statement: dict[str, typing.Any]) -> dict[str, typing.Any]:
    out = dict(statement)

    for key in _LIST_KEYS:
        if key in out:
            out[key] = _as_sorted_list(out[key])

    if isinstance(out.get("Principal"), dict):
        out["Principal"] = {k: _as_sorted_list(v) for k, v in out["Principal"].items()}

    if isinstance(out.get("Condition"), dict):
        out["Condition"] = {
            operator: {k: _as_sorted_list(v) for k, v in conditions.items()}
            for operator, conditions in out["Condition"].items()
        }

    return out


def normalize(document: str | dict[str, typing.Any]) -> dict[str, typing.Any]:
    doc = parse(document)
    statements = doc.get("Statement", [])
    if isinstance(statements, dict):
        statements = [statements]

    normalized = sorted(
        (_normalize_statement(s) for s in statements),
        key=lambda s: json.dumps(s, sort_keys=True),
    )
    return {"Statement": normalized, "Version": doc.get("Version", POLICY_VERSION)}


def policies_equal(a: str | dict[str, typing.Any] | None, b: str | dict[str, typing.Any] | None) -> bool:
    if a is None or b is None:
        return a is b
    return render(normalize(a)) == render(normalize(b))


def trusted_domains(document: str | dict[str, typing.Any]) -> list[str]:
    """Issuer domains the trust policy federates to, in statement order."""
    doc = parse(document)
    statements = doc.get("Statement", [])
    if isinstance(statements, dict):
        statements = [statements]

    domains: list[str] = []
    for statement in statements:
        if statement.get("Effect", "Allow") != "Allow":
            continue

        principal = statement.get("Principal")
        if not isinstance(principal, dict):
            continue

        federated = principal.get("Federated", [])
        for arn in [federated] if isinstance(federated, str) else federated:
            match = OIDC_ARN_URL_REGEX.match(arn)
            if match is not None and match.group(1) not in domains:
                domains.append(match.group(1))

    return domains


def describe(role_type: RoleType) -> str:
    match role_type:
        case RoleType.CONTROL_PLANE:
            return "control plane nodes"
        case RoleType.BASTION:
            return "bastion hosts"
        case RoleType.IRSA:
            return "workload identities"
        case _:
            msg = f"unknown role type {role_type!r}"
            raise ConfigurationError(msg, operation="describe-role-type", resource=str(role_type))
