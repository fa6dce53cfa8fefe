from __future__ import annotations

import logging
import typing

import botocore.exceptions

import capa_iam.cancel
import capa_iam.policies
import capa_iam.tags
from capa_iam import STS_AUDIENCE, ManagedRole, RoleSpec
from capa_iam.errors import RemoteError, RemoteTransientError

logger = logging.getLogger(__name__)

NOT_FOUND = "NoSuchEntity"
ALREADY_EXISTS = "EntityAlreadyExists"
LIMIT_EXCEEDED = "LimitExceeded"

TRANSIENT_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "ServiceFailure",
        "ServiceUnavailable",
        "Throttling",
        "ThrottlingException",
        "RequestTimeout",
        "ConcurrentModification",
    }
)

TRANSIENT_BOTOCORE_ERRORS = (
    botocore.exceptions.ConnectTimeoutError,
    botocore.exceptions.ReadTimeoutError,
    botocore.exceptions.EndpointConnectionError,
    botocore.exceptions.ConnectionClosedError,
)


class _ExpectedCode(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


class IAMService:
    """
    Idempotent create/verify/update primitives for a single role against IAM.

    Every remote call goes through `_call`, which honours the cancellation
    token and maps botocore failures onto the reconcile error taxonomy. Error
    codes a caller lists in `expected` are raised as `_ExpectedCode` so that
    "not found" and "already exists" can drive convergence instead of failing.
    """

    def __init__(self, iam_client: typing.Any, cancel: capa_iam.cancel.CancelToken | None = None):
        self.iam = iam_client
        self.cancel = cancel or capa_iam.cancel.CancelToken()

    def _call(self, operation: str, resource: str, expected: tuple[str, ...] = (), **kwargs) -> dict[str, typing.Any]:
        self.cancel.check(operation, resource)

        try:
            return getattr(self.iam, operation)(**kwargs)
        except botocore.exceptions.ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in expected:
                raise _ExpectedCode(code) from e
            if code in TRANSIENT_CODES:
                raise RemoteTransientError(str(e), operation=operation, resource=resource) from e
            raise RemoteError(str(e), operation=operation, resource=resource) from e
        except TRANSIENT_BOTOCORE_ERRORS as e:
            raise RemoteTransientError(str(e), operation=operation, resource=resource) from e
        except botocore.exceptions.BotoCoreError as e:
            raise RemoteError(str(e), operation=operation, resource=resource) from e

    def _list_all(
        self, operation: str, key: str, resource: str, expected: tuple[str, ...] = (), **kwargs
    ) -> list[typing.Any]:
        items: list[typing.Any] = []
        marker = None
        while True:
            page_kwargs = dict(kwargs)
            if marker is not None:
                page_kwargs["Marker"] = marker

            response = self._call(operation, resource, expected=expected, **page_kwargs)
            items.extend(response.get(key, []))

            if not response.get("IsTruncated"):
                return items
            marker = response["Marker"]

    def get_role(self, role_name: str) -> dict[str, typing.Any] | None:
        try:
            return self._call("get_role", role_name, expected=(NOT_FOUND,), RoleName=role_name)["Role"]
        except _ExpectedCode:
            return None

    def role_arn(self, role_name: str) -> str:
        role = self.get_role(role_name)
        if role is None:
            msg = "role does not exist"
            raise RemoteError(msg, operation="get_role", resource=role_name)
        return role["Arn"]

    def describe_role(self, role_name: str) -> ManagedRole | None:
        role = self.get_role(role_name)
        if role is None:
            return None

        inline_policies = {}
        for name in self._list_all("list_role_policies", "PolicyNames", role_name, RoleName=role_name):
            response = self._call("get_role_policy", role_name, RoleName=role_name, PolicyName=name)
            inline_policies[name] = capa_iam.policies.parse(response["PolicyDocument"])

        profiles = self._list_all(
            "list_instance_profiles_for_role", "InstanceProfiles", role_name, RoleName=role_name
        )

        return ManagedRole(
            arn=role["Arn"],
            trust_policy=capa_iam.policies.parse(role["AssumeRolePolicyDocument"]),
            inline_policies=inline_policies,
            has_instance_profile=len(profiles) > 0,
            tags=capa_iam.tags.from_aws_tags(role.get("Tags")),
        )

    def ensure_role(self, spec: RoleSpec, trust_policy: dict[str, typing.Any] | None = None) -> str:
        """
        Make sure `spec.role_name` exists with the desired trust policy and tags
        and return its ARN. Only the fields that differ are updated.
        """
        if trust_policy is None:
            trust_policy = capa_iam.policies.trust_policy(spec)
        desired_tags = capa_iam.tags.desired_tags(spec.cluster_name, spec.custom_tags)

        role = self.get_role(spec.role_name)
        if role is None:
            try:
                response = self._call(
                    "create_role",
                    spec.role_name,
                    expected=(ALREADY_EXISTS,),
                    RoleName=spec.role_name,
                    AssumeRolePolicyDocument=capa_iam.policies.render(trust_policy),
                    Tags=capa_iam.tags.to_aws_tags(desired_tags),
                )
            except _ExpectedCode:
                logger.info(f"Role {spec.role_name} was created concurrently, converging")
                role = self.get_role(spec.role_name)
                if role is None:
                    msg = "role reported as existing but could not be read"
                    raise RemoteTransientError(msg, operation="create_role", resource=spec.role_name) from None
            else:
                logger.info(f"Created role {spec.role_name} for cluster {spec.cluster_name}")
                return response["Role"]["Arn"]

        if not capa_iam.policies.policies_equal(role.get("AssumeRolePolicyDocument"), trust_policy):
            self._call(
                "update_assume_role_policy",
                spec.role_name,
                RoleName=spec.role_name,
                PolicyDocument=capa_iam.policies.render(trust_policy),
            )
            logger.info(f"Updated trust policy of role {spec.role_name}")

        self.ensure_tags(spec.role_name, desired_tags, capa_iam.tags.from_aws_tags(role.get("Tags")))

        return role["Arn"]

    def ensure_tags(
        self,
        role_name: str,
        desired: typing.Mapping[str, str],
        observed: typing.Mapping[str, str] | None = None,
    ) -> bool:
        if observed is None:
            role = self.get_role(role_name)
            if role is None:
                msg = "role does not exist"
                raise RemoteError(msg, operation="tag_role", resource=role_name)
            observed = capa_iam.tags.from_aws_tags(role.get("Tags"))

        missing = capa_iam.tags.tags_to_apply(desired, observed)
        if not missing:
            return False

        self._call("tag_role", role_name, RoleName=role_name, Tags=capa_iam.tags.to_aws_tags(missing))
        logger.info(f"Tagged role {role_name} with {sorted(missing)}")
        return True

    def ensure_instance_profile(self, role_name: str, tags: typing.Mapping[str, str] | None = None) -> None:
        profile = self._get_instance_profile(role_name)
        if profile is None:
            try:
                profile = self._call(
                    "create_instance_profile",
                    role_name,
                    expected=(ALREADY_EXISTS,),
                    InstanceProfileName=role_name,
                    Tags=capa_iam.tags.to_aws_tags(tags or {}),
                )["InstanceProfile"]
                logger.info(f"Created instance profile {role_name}")
            except _ExpectedCode:
                profile = self._get_instance_profile(role_name)
                if profile is None:
                    msg = "instance profile reported as existing but could not be read"
                    raise RemoteTransientError(msg, operation="create_instance_profile", resource=role_name) from None

        if role_name in [role["RoleName"] for role in profile.get("Roles", [])]:
            return

        try:
            self._call(
                "add_role_to_instance_profile",
                role_name,
                expected=(LIMIT_EXCEEDED,),
                InstanceProfileName=role_name,
                RoleName=role_name,
            )
        except _ExpectedCode:
            # an instance profile holds a single role; it may have been attached concurrently
            profile = self._get_instance_profile(role_name) or {}
            if role_name not in [role["RoleName"] for role in profile.get("Roles", [])]:
                msg = "instance profile already holds a different role"
                raise RemoteError(msg, operation="add_role_to_instance_profile", resource=role_name) from None
            return

        logger.info(f"Attached role {role_name} to instance profile {role_name}")

    def _get_instance_profile(self, name: str) -> dict[str, typing.Any] | None:
        try:
            return self._call(
                "get_instance_profile", name, expected=(NOT_FOUND,), InstanceProfileName=name
            )["InstanceProfile"]
        except _ExpectedCode:
            return None

    def ensure_inline_policy(self, role_name: str, policy_name: str, document: dict[str, typing.Any]) -> bool:
        names = self._list_all("list_role_policies", "PolicyNames", role_name, RoleName=role_name)

        if policy_name in names:
            try:
                current = self._call(
                    "get_role_policy",
                    role_name,
                    expected=(NOT_FOUND,),
                    RoleName=role_name,
                    PolicyName=policy_name,
                )["PolicyDocument"]
            except _ExpectedCode:
                current = None

            if current is not None and capa_iam.policies.policies_equal(current, document):
                return False

        self._call(
            "put_role_policy",
            role_name,
            RoleName=role_name,
            PolicyName=policy_name,
            PolicyDocument=capa_iam.policies.render(document),
        )
        logger.info(f"Put inline policy {policy_name} on role {role_name}")
        return True

    def delete_role(self, role_name: str) -> None:
        """
        Remove a role and everything hanging off it. Every step treats "not
        found" as done so a deletion interrupted half way can be resumed.
        """
        try:
            policy_names = self._list_all(
                "list_role_policies", "PolicyNames", role_name, expected=(NOT_FOUND,), RoleName=role_name
            )
            attached = self._list_all(
                "list_attached_role_policies",
                "AttachedPolicies",
                role_name,
                expected=(NOT_FOUND,),
                RoleName=role_name,
            )
            profiles = self._list_all(
                "list_instance_profiles_for_role",
                "InstanceProfiles",
                role_name,
                expected=(NOT_FOUND,),
                RoleName=role_name,
            )
        except _ExpectedCode:
            policy_names, attached, profiles = [], [], []

        for name in policy_names:
            self._ignore_missing("delete_role_policy", role_name, RoleName=role_name, PolicyName=name)

        for policy in attached:
            self._ignore_missing(
                "detach_role_policy", role_name, RoleName=role_name, PolicyArn=policy["PolicyArn"]
            )

        profile_names = [profile["InstanceProfileName"] for profile in profiles]
        for name in profile_names:
            self._ignore_missing(
                "remove_role_from_instance_profile", name, InstanceProfileName=name, RoleName=role_name
            )
            self._ignore_missing("delete_instance_profile", name, InstanceProfileName=name)

        # profile left behind by an earlier, interrupted deletion
        if role_name not in profile_names:
            self._ignore_missing("delete_instance_profile", role_name, InstanceProfileName=role_name)

        if self._ignore_missing("delete_role", role_name, RoleName=role_name):
            logger.info(f"Deleted role {role_name}")
        else:
            logger.info(f"Role {role_name} already deleted")

    def _ignore_missing(self, operation: str, resource: str, **kwargs) -> bool:
        try:
            self._call(operation, resource, expected=(NOT_FOUND,), **kwargs)
        except _ExpectedCode:
            return False
        return True

    def ensure_oidc_provider(
        self,
        arn: str,
        domain: str,
        tags: typing.Mapping[str, str] | None = None,
        client_ids: typing.Sequence[str] = (STS_AUDIENCE,),
    ) -> None:
        try:
            self._call("get_open_id_connect_provider", arn, expected=(NOT_FOUND,), OpenIDConnectProviderArn=arn)
        except _ExpectedCode:
            pass
        else:
            return

        try:
            self._call(
                "create_open_id_connect_provider",
                arn,
                expected=(ALREADY_EXISTS,),
                Url=f"https://{domain}",
                ClientIDList=list(client_ids),
                Tags=capa_iam.tags.to_aws_tags(tags or {}),
            )
        except _ExpectedCode:
            return
        logger.info(f"Created OIDC provider for {domain}")

    def delete_oidc_provider(self, arn: str) -> None:
        if self._ignore_missing("delete_open_id_connect_provider", arn, OpenIDConnectProviderArn=arn):
            logger.info(f"Deleted OIDC provider {arn}")
