from __future__ import annotations

import dataclasses
import logging
import typing

import capa_iam.aws_iam
import capa_iam.aws_session
import capa_iam.cancel
import capa_iam.config
import capa_iam.finalizers
import capa_iam.guard
import capa_iam.irsa
import capa_iam.k8s
import capa_iam.oidc
import capa_iam.policies
import capa_iam.tags
from capa_iam import IRSADomain, RoleSpec, RoleType
from capa_iam.errors import ConfigurationError, ObjectNotFoundError, ReconcileError

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class Result:
    requeue: bool = False
    requeue_after: float | None = None


@dataclasses.dataclass(frozen=True)
class _Context:
    namespace: str
    cluster_name: str
    spec: RoleSpec
    iam: capa_iam.aws_iam.IAMService
    cancel: capa_iam.cancel.CancelToken


class _Reconciler:
    kind: capa_iam.k8s.Kind

    def __init__(
        self,
        store: capa_iam.k8s.ObjectStore,
        cfg: capa_iam.config.ControllerConfig | None = None,
        aws: capa_iam.aws_session.AWSAccess | None = None,
    ):
        self.store = store
        self.cfg = cfg or capa_iam.config.ControllerConfig()
        self.aws = aws or capa_iam.aws_session.AWSAccess(self.cfg)

    def reconcile(self, namespace: str, name: str, cancel: capa_iam.cancel.CancelToken | None = None) -> Result:
        cancel = cancel or capa_iam.cancel.CancelToken()
        try:
            return self._reconcile(namespace, name, cancel)
        except ReconcileError as e:
            logger.error(f"Reconciling {self.kind.kind} {namespace}/{name} failed (retryable={e.retryable}): {e}")
            raise

    def _reconcile(self, namespace: str, name: str, cancel: capa_iam.cancel.CancelToken) -> Result:
        raise NotImplementedError

    def _cluster_context(
        self,
        aws_cluster: dict[str, typing.Any],
        namespace: str,
        cluster_name: str,
        role_name: str,
        role_type: RoleType,
        cancel: capa_iam.cancel.CancelToken,
    ) -> _Context:
        """Assume the cluster's role identity and describe the role to manage in its account."""
        identity = capa_iam.k8s.get_role_identity(self.store, aws_cluster)
        role_arn = identity["spec"]["roleARN"]
        region = aws_cluster.get("spec", {}).get("region", "")

        session = self.aws.session(role_arn, region, cancel)
        return _Context(
            namespace=namespace,
            cluster_name=cluster_name,
            spec=RoleSpec(
                role_name=role_name,
                role_type=role_type,
                cluster_name=cluster_name,
                region=region,
                account_id=capa_iam.aws_session.account_id_from_arn(role_arn),
                custom_tags=aws_cluster.get("spec", {}).get("additionalTags") or {},
            ),
            iam=capa_iam.aws_iam.IAMService(self.aws.iam_client(session), cancel),
            cancel=cancel,
        )

    def _irsa_manager(self, iam: capa_iam.aws_iam.IAMService) -> capa_iam.irsa.IRSAManager:
        return capa_iam.irsa.IRSAManager(
            iam, self.cfg.irsa_catalog, manage_oidc_provider=self.cfg.manage_oidc_provider
        )

    def _add_finalizer(
        self, kind: capa_iam.k8s.Kind, obj: dict, finalizer: str, cancel: capa_iam.cancel.CancelToken
    ) -> None:
        capa_iam.finalizers.add_finalizer(
            self.store, kind, obj, finalizer, max_retries=self.cfg.max_patch_retries, cancel=cancel
        )

    def _remove_finalizer(
        self, kind: capa_iam.k8s.Kind, obj: dict, finalizer: str, cancel: capa_iam.cancel.CancelToken
    ) -> None:
        capa_iam.finalizers.remove_finalizer(
            self.store, kind, obj, finalizer, max_retries=self.cfg.max_patch_retries, cancel=cancel
        )


class AWSMachineTemplateReconciler(_Reconciler):
    """
    Manages the control-plane or bastion role named by an AWSMachineTemplate's
    instance profile and, for control-plane templates, the cluster's IRSA roles.
    """

    kind = capa_iam.k8s.AWS_MACHINE_TEMPLATE

    def _reconcile(self, namespace: str, name: str, cancel: capa_iam.cancel.CancelToken) -> Result:
        try:
            template = self.store.get(self.kind, name, namespace)
        except ObjectNotFoundError:
            return Result()

        if not capa_iam.k8s.has_watch_filter(template, self.cfg.watch_filter):
            logger.info(f"AWSMachineTemplate {namespace}/{name} is not labelled for this controller, ignoring")
            return Result()

        role_type = capa_iam.k8s.role_type_from_labels(template)
        if role_type is None:
            logger.info(f"AWSMachineTemplate {namespace}/{name} is neither control-plane nor bastion, ignoring")
            return Result()

        cluster_name = capa_iam.k8s.cluster_name_from_labels(template)
        role_name = capa_iam.k8s.instance_profile(template)
        if not role_name:
            logger.info(f"AWSMachineTemplate {namespace}/{name} has no instance profile, not managing a role")
            return Result()

        aws_cluster = capa_iam.k8s.get_aws_cluster_by_name(self.store, cluster_name, namespace)
        ctx = self._cluster_context(aws_cluster, namespace, cluster_name, role_name, role_type, cancel)

        if capa_iam.k8s.is_deleting(template):
            return self._reconcile_delete(ctx, template, aws_cluster)
        return self._reconcile_normal(ctx, template, aws_cluster)

    def _uses_irsa(self, role_type: RoleType) -> bool:
        return role_type == RoleType.CONTROL_PLANE and self.cfg.enable_irsa_roles

    def _cluster_values(self, ctx: _Context) -> dict[str, typing.Any] | None:
        try:
            return self.store.get(
                capa_iam.k8s.CONFIG_MAP, capa_iam.k8s.cluster_values_name(ctx.cluster_name), ctx.namespace
            )
        except ObjectNotFoundError:
            return None

    def _irsa_domain(self, ctx: _Context, template: dict[str, typing.Any]) -> IRSADomain:
        previous = capa_iam.k8s.previous_irsa_domain(template)

        current = capa_iam.k8s.cloudfront_domain(self.store, ctx.cluster_name, ctx.namespace)
        if not current:
            base_domain = ""
            if not ctx.spec.region.startswith("cn-"):
                base_domain = capa_iam.k8s.base_domain(self.store, ctx.cluster_name, ctx.namespace)
            current = capa_iam.oidc.irsa_domain(
                base_domain, ctx.spec.region, ctx.spec.account_id, ctx.cluster_name
            )

        return IRSADomain(current=current, previous=previous)

    def _reconcile_normal(
        self, ctx: _Context, template: dict[str, typing.Any], aws_cluster: dict[str, typing.Any]
    ) -> Result:
        spec = ctx.spec
        finalizer = capa_iam.finalizer_name(spec.role_type)

        self._add_finalizer(self.kind, template, finalizer, ctx.cancel)
        if not capa_iam.k8s.is_deleting(aws_cluster):
            self._add_finalizer(capa_iam.k8s.AWS_CLUSTER, aws_cluster, finalizer, ctx.cancel)
        if self._uses_irsa(spec.role_type):
            cluster_values = self._cluster_values(ctx)
            if cluster_values is not None and not capa_iam.k8s.is_deleting(cluster_values):
                self._add_finalizer(capa_iam.k8s.CONFIG_MAP, cluster_values, finalizer, ctx.cancel)

        ctx.iam.ensure_role(spec)
        if spec.role_type.needs_instance_profile:
            ctx.iam.ensure_instance_profile(
                spec.role_name, capa_iam.tags.desired_tags(spec.cluster_name, spec.custom_tags)
            )
        ctx.iam.ensure_inline_policy(
            spec.role_name,
            capa_iam.policy_name(spec.role_type, spec.cluster_name),
            capa_iam.policies.permission_policy(spec),
        )

        if self._uses_irsa(spec.role_type):
            logger.info(f"Reconciling IRSA roles for cluster {ctx.cluster_name}")
            self._irsa_manager(ctx.iam).reconcile(spec, self._irsa_domain(ctx, template))

        return Result()

    def _reconcile_delete(
        self, ctx: _Context, template: dict[str, typing.Any], aws_cluster: dict[str, typing.Any]
    ) -> Result:
        spec = ctx.spec
        finalizer = capa_iam.finalizer_name(spec.role_type)

        if capa_iam.guard.is_role_used_elsewhere(self.store, spec.role_name, self.kind, template):
            # the cluster and its values stay held for the remaining owner
            logger.info(f"Role {spec.role_name} is shared with another object, keeping it")
            self._remove_finalizer(self.kind, template, finalizer, ctx.cancel)
            return Result()

        ctx.iam.delete_role(spec.role_name)

        if self._uses_irsa(spec.role_type):
            try:
                domain = self._irsa_domain(ctx, template)
            except ConfigurationError as e:
                logger.info(f"IRSA issuer of cluster {ctx.cluster_name} unknown, skipping provider cleanup: {e}")
                domain = None
            self._irsa_manager(ctx.iam).delete(spec, domain)

        self._remove_finalizer(capa_iam.k8s.AWS_CLUSTER, aws_cluster, finalizer, ctx.cancel)
        self._remove_finalizer(self.kind, template, finalizer, ctx.cancel)

        if spec.role_type == RoleType.CONTROL_PLANE:
            cluster_values = self._cluster_values(ctx)
            if cluster_values is not None:
                self._remove_finalizer(capa_iam.k8s.CONFIG_MAP, cluster_values, finalizer, ctx.cancel)

        return Result()


class AWSManagedControlPlaneReconciler(_Reconciler):
    """Manages the IRSA roles of an EKS cluster, trusting the cluster's own issuer."""

    kind = capa_iam.k8s.AWS_MANAGED_CONTROL_PLANE

    def _reconcile(self, namespace: str, name: str, cancel: capa_iam.cancel.CancelToken) -> Result:
        try:
            control_plane = self.store.get(self.kind, name, namespace)
        except ObjectNotFoundError:
            return Result()

        if not capa_iam.k8s.has_watch_filter(control_plane, self.cfg.watch_filter):
            logger.info(f"AWSManagedControlPlane {namespace}/{name} is not labelled for this controller, ignoring")
            return Result()

        cluster_name = capa_iam.k8s.cluster_name_from_labels(control_plane)
        cp_spec = control_plane.get("spec", {})
        if not cp_spec.get("roleName"):
            logger.info(f"AWSManagedControlPlane {namespace}/{name} has no spec.roleName yet, waiting")
            return Result(requeue=True, requeue_after=self.cfg.eks_requeue_after)

        identity = capa_iam.k8s.get_role_identity(self.store, control_plane)
        role_arn = identity["spec"]["roleARN"]
        region = cp_spec.get("region", "")

        session = self.aws.session(role_arn, region, cancel)
        caller = self.aws.caller_identity(session)
        logger.info(f"Assumed role {caller.get('Arn')} in region {region}")

        iam = capa_iam.aws_iam.IAMService(self.aws.iam_client(session), cancel)
        spec = RoleSpec(
            role_name=cp_spec["roleName"],
            role_type=RoleType.IRSA,
            cluster_name=cluster_name,
            region=region,
            account_id=capa_iam.aws_session.account_id_from_arn(role_arn),
            custom_tags=cp_spec.get("additionalTags") or {},
        )
        manager = self._irsa_manager(iam)
        finalizer = capa_iam.finalizer_name(RoleType.IRSA)
        eks_name = cp_spec.get("eksClusterName") or name

        issuer = self.aws.eks_issuer_domain(session, eks_name, cancel)
        domain = IRSADomain(current=issuer, previous=capa_iam.k8s.previous_irsa_domain(control_plane))

        if capa_iam.k8s.is_deleting(control_plane):
            manager.delete(spec, domain if issuer else None)
            self._remove_finalizer(self.kind, control_plane, finalizer, cancel)
            return Result()

        self._add_finalizer(self.kind, control_plane, finalizer, cancel)
        manager.reconcile(spec, domain)

        return Result(requeue=True, requeue_after=self.cfg.eks_requeue_after)


class SecretReconciler(_Reconciler):
    """
    Follows the `<cluster>-irsa-cloudfront` Secret.

    The CloudFront issuer is often published after the control-plane template
    was last reconciled. A change to the Secret re-runs the cluster's IRSA
    reconcile against the published domain, using the control-plane
    template for the watch filter and the previous-domain annotation.
    """

    kind = capa_iam.k8s.SECRET

    def _control_plane_templates(self, namespace: str, cluster_name: str) -> list[dict[str, typing.Any]]:
        templates = self.store.list(
            capa_iam.k8s.AWS_MACHINE_TEMPLATE,
            namespace=namespace,
            labels={
                capa_iam.CLUSTER_NAME_LABEL: cluster_name,
                capa_iam.CLUSTER_ROLE_LABEL: RoleType.CONTROL_PLANE.value,
            },
        )
        return [
            t
            for t in templates
            if capa_iam.k8s.has_watch_filter(t, self.cfg.watch_filter)
            and capa_iam.k8s.instance_profile(t)
            and not capa_iam.k8s.is_deleting(t)
        ]

    def _reconcile(self, namespace: str, name: str, cancel: capa_iam.cancel.CancelToken) -> Result:
        cluster_name = capa_iam.k8s.cluster_name_from_cloudfront_secret(name)
        if cluster_name is None:
            return Result()

        if not self.cfg.enable_irsa_roles:
            logger.info(f"IRSA roles are disabled, ignoring Secret {namespace}/{name}")
            return Result()

        try:
            secret = self.store.get(self.kind, name, namespace)
        except ObjectNotFoundError:
            return Result()

        finalizer = capa_iam.finalizer_name(RoleType.IRSA)
        templates = self._control_plane_templates(namespace, cluster_name)

        if capa_iam.k8s.is_deleting(secret):
            return self._reconcile_delete(secret, templates, cluster_name, finalizer, cancel)

        if not templates:
            logger.info(f"No control-plane AWSMachineTemplate for cluster {namespace}/{cluster_name}, ignoring")
            return Result()

        template = templates[0]
        aws_cluster = capa_iam.k8s.get_aws_cluster_by_name(self.store, cluster_name, namespace)
        ctx = self._cluster_context(
            aws_cluster, namespace, cluster_name, capa_iam.k8s.instance_profile(template), RoleType.IRSA, cancel
        )

        self._add_finalizer(self.kind, secret, finalizer, cancel)

        domain = IRSADomain(
            current=capa_iam.k8s.cloudfront_domain(self.store, cluster_name, namespace) or "",
            previous=capa_iam.k8s.previous_irsa_domain(template),
        )
        logger.info(f"Reconciling IRSA roles for cluster {cluster_name} with CloudFront issuer {domain.current}")
        self._irsa_manager(ctx.iam).reconcile(ctx.spec, domain)

        return Result()

    def _reconcile_delete(
        self,
        secret: dict[str, typing.Any],
        templates: list[dict[str, typing.Any]],
        cluster_name: str,
        finalizer: str,
        cancel: capa_iam.cancel.CancelToken,
    ) -> Result:
        if finalizer not in capa_iam.k8s.finalizers_of(secret):
            return Result()

        namespace = typing.cast(str, capa_iam.k8s.namespace_of(secret))
        if templates:
            logger.info(
                f"IRSA roles of cluster {cluster_name} still belong to AWSMachineTemplate "
                f"{namespace}/{capa_iam.k8s.name_of(templates[0])}, keeping them"
            )
            self._remove_finalizer(self.kind, secret, finalizer, cancel)
            return Result()

        try:
            aws_cluster = capa_iam.k8s.get_aws_cluster_by_name(self.store, cluster_name, namespace)
        except ConfigurationError as e:
            # roles went with the control-plane template that held the AWSCluster
            logger.info(f"AWSCluster of {cluster_name} is gone, nothing left to clean up: {e}")
            self._remove_finalizer(self.kind, secret, finalizer, cancel)
            return Result()

        ctx = self._cluster_context(aws_cluster, namespace, cluster_name, "", RoleType.IRSA, cancel)
        current = capa_iam.k8s.cloudfront_domain(self.store, cluster_name, namespace)
        self._irsa_manager(ctx.iam).delete(ctx.spec, IRSADomain(current=current) if current else None)

        self._remove_finalizer(self.kind, secret, finalizer, cancel)
        return Result()


RECONCILERS: dict[str, type[_Reconciler]] = {
    capa_iam.k8s.AWS_MACHINE_TEMPLATE.kind.lower(): AWSMachineTemplateReconciler,
    capa_iam.k8s.AWS_MANAGED_CONTROL_PLANE.kind.lower(): AWSManagedControlPlaneReconciler,
    capa_iam.k8s.SECRET.kind.lower(): SecretReconciler,
}
