from __future__ import annotations

import dataclasses
import logging
import typing

import capa_iam.aws_iam
import capa_iam.policies
import capa_iam.tags
from capa_iam import IRSABinding, IRSADomain, RoleSpec, RoleType
from capa_iam.errors import IssuerNotReadyError, RemoteTransientError
from capa_iam.policies import PolicyStatement

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class IRSACatalogEntry:
    workload: str
    role_suffix: str
    namespace: str
    service_account: str
    statements: tuple[PolicyStatement, ...]

    def role_name(self, cluster_name: str) -> str:
        return f"{cluster_name}-{self.role_suffix}"

    def policy_name(self, cluster_name: str) -> str:
        return f"{self.workload}-{cluster_name}-policy"


DEFAULT_CATALOG: tuple[IRSACatalogEntry, ...] = (
    IRSACatalogEntry(
        workload="external-dns",
        role_suffix="Route53Manager-Role",
        namespace="*",
        service_account="*external-dns*",
        statements=(
            PolicyStatement(
                actions=("route53:ChangeResourceRecordSets",),
                resources=("arn:{partition}:route53:::hostedzone/*",),
            ),
            PolicyStatement(
                actions=(
                    "route53:ListHostedZones",
                    "route53:ListResourceRecordSets",
                    "route53:ListTagsForResource",
                ),
            ),
        ),
    ),
    IRSACatalogEntry(
        workload="cert-manager",
        role_suffix="CertManager-Role",
        namespace="*",
        service_account="*cert-manager*",
        statements=(
            PolicyStatement(
                actions=("route53:GetChange",),
                resources=("arn:{partition}:route53:::change/*",),
            ),
            PolicyStatement(
                actions=(
                    "route53:ChangeResourceRecordSets",
                    "route53:ListResourceRecordSets",
                ),
                resources=("arn:{partition}:route53:::hostedzone/*",),
            ),
            PolicyStatement(actions=("route53:ListHostedZonesByName",)),
        ),
    ),
)


class IRSAManager:
    """
    Keeps the IRSA role of every catalog entry trusting the cluster's current
    OIDC issuer.

    During an issuer rotation a role that still trusts the previous issuer is
    first widened to trust both issuers. The previous issuer's statement is only
    dropped after a fresh read shows the current issuer is trusted, so the
    workload identity is never trusted by neither.
    """

    def __init__(
        self,
        iam: capa_iam.aws_iam.IAMService,
        catalog: typing.Sequence[IRSACatalogEntry] = DEFAULT_CATALOG,
        *,
        manage_oidc_provider: bool = False,
    ):
        self.iam = iam
        self.catalog = tuple(catalog)
        self.manage_oidc_provider = manage_oidc_provider

    def _role_spec(self, spec: RoleSpec, entry: IRSACatalogEntry) -> RoleSpec:
        return dataclasses.replace(spec, role_name=entry.role_name(spec.cluster_name), role_type=RoleType.IRSA)

    def _provider_arn(self, spec: RoleSpec, domain: str) -> str:
        return capa_iam.policies.oidc_provider_arn(
            capa_iam.policies.partition_for_region(spec.region), spec.account_id, domain
        )

    def _trust(self, role_spec: RoleSpec, entry: IRSACatalogEntry, domains: list[str]) -> dict[str, typing.Any]:
        return capa_iam.policies.trust_policy(
            role_spec, domains=domains, service_account=(entry.namespace, entry.service_account)
        )

    def bindings(self, spec: RoleSpec, domain: IRSADomain) -> list[IRSABinding]:
        if not domain.current:
            msg = "OIDC issuer domain is not known yet"
            raise IssuerNotReadyError(msg, operation="irsa-bindings", resource=spec.cluster_name)

        bindings = []
        for entry in self.catalog:
            role_spec = self._role_spec(spec, entry)
            bindings.append(
                IRSABinding(
                    workload=entry.workload,
                    role_name=role_spec.role_name,
                    policy_name=entry.policy_name(spec.cluster_name),
                    policy_document=capa_iam.policies.permission_policy(role_spec, entry.statements),
                    trust_policy=self._trust(role_spec, entry, [domain.current]),
                )
            )
        return bindings

    def reconcile(self, spec: RoleSpec, domain: IRSADomain) -> dict[str, str]:
        """Reconcile every catalog role and return the role ARNs keyed by workload."""
        bindings = self.bindings(spec, domain)

        if self.manage_oidc_provider:
            self.iam.ensure_oidc_provider(
                self._provider_arn(spec, domain.current),
                domain.current,
                tags=capa_iam.tags.desired_tags(spec.cluster_name, spec.custom_tags),
            )

        arns = {}
        for entry, binding in zip(self.catalog, bindings, strict=True):
            arns[binding.workload] = self._reconcile_binding(spec, entry, binding, domain)

        if domain.rotating and self.manage_oidc_provider:
            self.iam.delete_oidc_provider(self._provider_arn(spec, typing.cast(str, domain.previous)))

        return arns

    def _reconcile_binding(
        self,
        spec: RoleSpec,
        entry: IRSACatalogEntry,
        binding: IRSABinding,
        domain: IRSADomain,
    ) -> str:
        role_spec = self._role_spec(spec, entry)

        if domain.rotating:
            observed = self.iam.get_role(binding.role_name)
            if observed is not None and domain.previous in capa_iam.policies.trusted_domains(
                observed["AssumeRolePolicyDocument"]
            ):
                logger.info(
                    f"Rotating issuer of role {binding.role_name} from {domain.previous} to {domain.current}"
                )
                self.iam.ensure_role(role_spec, self._trust(role_spec, entry, domain.domains))
                self._confirm_trusted(binding.role_name, domain.current)

        arn = self.iam.ensure_role(role_spec, binding.trust_policy)
        self.iam.ensure_inline_policy(binding.role_name, binding.policy_name, binding.policy_document)
        return arn

    def _confirm_trusted(self, role_name: str, domain: str) -> None:
        role = self.iam.get_role(role_name)
        if role is None or domain not in capa_iam.policies.trusted_domains(role["AssumeRolePolicyDocument"]):
            msg = f"trust for {domain} is not visible yet, keeping the previous issuer"
            raise RemoteTransientError(msg, operation="confirm-trust", resource=role_name)

    def delete(self, spec: RoleSpec, domain: IRSADomain | None = None) -> None:
        for entry in self.catalog:
            self.iam.delete_role(entry.role_name(spec.cluster_name))

        if domain is None or not domain.current:
            logger.info(f"No OIDC issuer known for cluster {spec.cluster_name}, skipping provider cleanup")
            return

        for name in domain.domains:
            self.iam.delete_oidc_provider(self._provider_arn(spec, name))
