from __future__ import annotations

import base64
import binascii
import dataclasses
import logging
import typing

import kubernetes.client
import kubernetes.config
import yaml
from kubernetes.client.rest import ApiException

import capa_iam
import capa_iam.oidc
from capa_iam.errors import (
    ConfigurationError,
    ConflictError,
    ObjectNotFoundError,
    RemoteError,
    RemoteTransientError,
)

logger = logging.getLogger(__name__)

CAPA_GROUP = "infrastructure.cluster.x-k8s.io"
CAPA_CONTROLPLANE_GROUP = "controlplane.cluster.x-k8s.io"
CAPA_VERSION = "v1beta2"


@dataclasses.dataclass(frozen=True)
class Kind:
    kind: str
    group: str
    version: str
    plural: str
    namespaced: bool = True

    @property
    def core(self) -> bool:
        return self.group == ""


AWS_CLUSTER = Kind("AWSCluster", CAPA_GROUP, CAPA_VERSION, "awsclusters")
AWS_CLUSTER_ROLE_IDENTITY = Kind(
    "AWSClusterRoleIdentity", CAPA_GROUP, CAPA_VERSION, "awsclusterroleidentities", namespaced=False
)
AWS_MACHINE_POOL = Kind("AWSMachinePool", CAPA_GROUP, CAPA_VERSION, "awsmachinepools")
AWS_MACHINE_TEMPLATE = Kind("AWSMachineTemplate", CAPA_GROUP, CAPA_VERSION, "awsmachinetemplates")
AWS_MANAGED_CONTROL_PLANE = Kind(
    "AWSManagedControlPlane", CAPA_CONTROLPLANE_GROUP, CAPA_VERSION, "awsmanagedcontrolplanes"
)
CONFIG_MAP = Kind("ConfigMap", "", "v1", "configmaps")
SECRET = Kind("Secret", "", "v1", "secrets")

CLOUDFRONT_SECRET_SUFFIX = "-irsa-cloudfront"


def load_kube_config() -> None:
    try:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


def _translate(e: ApiException, operation: str, resource: str) -> Exception:
    if e.status == 404:
        return ObjectNotFoundError(e.reason or "not found", operation=operation, resource=resource)
    # 422 shows up when another controller drops its finalizer while we patch ours
    if e.status in (409, 422):
        return ConflictError(e.reason or "conflict", operation=operation, resource=resource)
    if e.status == 429 or (e.status or 0) >= 500:
        return RemoteTransientError(e.reason or "server error", operation=operation, resource=resource)
    return RemoteError(e.reason or "request failed", operation=operation, resource=resource)


def _key(kind: Kind, name: str, namespace: str | None) -> str:
    if namespace:
        return f"{kind.kind} {namespace}/{name}"
    return f"{kind.kind} {name}"


class ObjectStore:
    """
    Thin wrapper over the Kubernetes API that hands out objects as plain dicts.

    `replace` sends the object back with the `metadata.resourceVersion` it was
    read with, so a concurrent write surfaces as `ConflictError`.
    """

    def __init__(self, api_client: kubernetes.client.ApiClient | None = None):
        self.api_client = api_client or kubernetes.client.ApiClient()
        self.custom = kubernetes.client.CustomObjectsApi(self.api_client)
        self.core = kubernetes.client.CoreV1Api(self.api_client)

    def _to_dict(self, obj: typing.Any) -> dict[str, typing.Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def get(self, kind: Kind, name: str, namespace: str | None = None) -> dict[str, typing.Any]:
        try:
            if kind == CONFIG_MAP:
                obj = self.core.read_namespaced_config_map(name, namespace)
            elif kind == SECRET:
                obj = self.core.read_namespaced_secret(name, namespace)
            elif kind.namespaced:
                obj = self.custom.get_namespaced_custom_object(kind.group, kind.version, namespace, kind.plural, name)
            else:
                obj = self.custom.get_cluster_custom_object(kind.group, kind.version, kind.plural, name)
        except ApiException as e:
            raise _translate(e, "get", _key(kind, name, namespace)) from e

        return self._to_dict(obj)

    def list(
        self,
        kind: Kind,
        namespace: str | None = None,
        labels: typing.Mapping[str, str] | None = None,
    ) -> list[dict[str, typing.Any]]:
        selector = ",".join(f"{k}={v}" for k, v in (labels or {}).items())

        try:
            if kind == CONFIG_MAP:
                if namespace:
                    response = self.core.list_namespaced_config_map(namespace, label_selector=selector)
                else:
                    response = self.core.list_config_map_for_all_namespaces(label_selector=selector)
            elif kind == SECRET:
                if namespace:
                    response = self.core.list_namespaced_secret(namespace, label_selector=selector)
                else:
                    response = self.core.list_secret_for_all_namespaces(label_selector=selector)
            elif namespace and kind.namespaced:
                response = self.custom.list_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, label_selector=selector
                )
            else:
                response = self.custom.list_cluster_custom_object(
                    kind.group, kind.version, kind.plural, label_selector=selector
                )
        except ApiException as e:
            raise _translate(e, "list", kind.kind) from e

        return self._to_dict(response).get("items", [])

    def replace(self, kind: Kind, obj: dict[str, typing.Any]) -> dict[str, typing.Any]:
        name = obj["metadata"]["name"]
        namespace = obj["metadata"].get("namespace")

        try:
            if kind == CONFIG_MAP:
                result = self.core.replace_namespaced_config_map(name, namespace, obj)
            elif kind == SECRET:
                result = self.core.replace_namespaced_secret(name, namespace, obj)
            elif kind.namespaced:
                result = self.custom.replace_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, name, obj
                )
            else:
                result = self.custom.replace_cluster_custom_object(kind.group, kind.version, kind.plural, name, obj)
        except ApiException as e:
            raise _translate(e, "replace", _key(kind, name, namespace)) from e

        return self._to_dict(result)


def name_of(obj: typing.Mapping[str, typing.Any]) -> str:
    return obj["metadata"]["name"]


def namespace_of(obj: typing.Mapping[str, typing.Any]) -> str | None:
    return obj["metadata"].get("namespace")


def labels_of(obj: typing.Mapping[str, typing.Any]) -> dict[str, str]:
    return obj["metadata"].get("labels") or {}


def annotations_of(obj: typing.Mapping[str, typing.Any]) -> dict[str, str]:
    return obj["metadata"].get("annotations") or {}


def finalizers_of(obj: typing.Mapping[str, typing.Any]) -> list[str]:
    return list(obj["metadata"].get("finalizers") or [])


def is_deleting(obj: typing.Mapping[str, typing.Any]) -> bool:
    return bool(obj["metadata"].get("deletionTimestamp"))


def has_watch_filter(obj: typing.Mapping[str, typing.Any], value: str = capa_iam.WATCH_FILTER_VALUE) -> bool:
    return labels_of(obj).get(capa_iam.WATCH_FILTER_LABEL) == value


def cluster_name_from_labels(obj: typing.Mapping[str, typing.Any]) -> str:
    cluster_name = labels_of(obj).get(capa_iam.CLUSTER_NAME_LABEL, "")
    if not cluster_name:
        msg = f"label {capa_iam.CLUSTER_NAME_LABEL} is not set"
        raise ConfigurationError(msg, operation="cluster-name", resource=name_of(obj))
    return cluster_name


def role_type_from_labels(obj: typing.Mapping[str, typing.Any]) -> capa_iam.RoleType | None:
    match labels_of(obj).get(capa_iam.CLUSTER_ROLE_LABEL):
        case capa_iam.RoleType.CONTROL_PLANE:
            return capa_iam.RoleType.CONTROL_PLANE
        case capa_iam.RoleType.BASTION:
            return capa_iam.RoleType.BASTION
    return None


def instance_profile(template: typing.Mapping[str, typing.Any]) -> str:
    return template.get("spec", {}).get("template", {}).get("spec", {}).get("iamInstanceProfile") or ""


def get_aws_cluster_by_name(store: ObjectStore, cluster_name: str, namespace: str) -> dict[str, typing.Any]:
    clusters = store.list(AWS_CLUSTER, namespace=namespace, labels={capa_iam.CLUSTER_NAME_LABEL: cluster_name})
    if len(clusters) != 1:
        msg = f"expected 1 AWSCluster but found {len(clusters)}"
        raise ConfigurationError(msg, operation="get-aws-cluster", resource=cluster_name)
    return clusters[0]


def get_role_identity(store: ObjectStore, owner: typing.Mapping[str, typing.Any]) -> dict[str, typing.Any]:
    identity_ref = owner.get("spec", {}).get("identityRef") or {}
    if not identity_ref.get("name"):
        msg = "spec.identityRef.name is not set"
        raise ConfigurationError(msg, operation="get-role-identity", resource=name_of(owner))

    identity = store.get(AWS_CLUSTER_ROLE_IDENTITY, identity_ref["name"])
    if not identity.get("spec", {}).get("roleARN"):
        msg = "spec.roleARN is not set"
        raise ConfigurationError(msg, operation="get-role-identity", resource=identity_ref["name"])
    return identity


def cluster_values_name(cluster_name: str) -> str:
    return f"{cluster_name}-cluster-values"


def base_domain(store: ObjectStore, cluster_name: str, namespace: str) -> str:
    try:
        cm = store.get(CONFIG_MAP, cluster_values_name(cluster_name), namespace)
    except ObjectNotFoundError as e:
        msg = "cluster values ConfigMap not found"
        raise ConfigurationError(msg, operation="base-domain", resource=cluster_name) from e

    try:
        values = yaml.safe_load((cm.get("data") or {}).get("values", "")) or {}
    except yaml.YAMLError as e:
        msg = f"cluster values are not valid YAML: {e}"
        raise ConfigurationError(msg, operation="base-domain", resource=cluster_name) from e

    if not isinstance(values, dict):
        msg = f"cluster values must be a mapping, got {type(values).__name__}"
        raise ConfigurationError(msg, operation="base-domain", resource=cluster_name)

    domain = values.get("baseDomain", "")
    if not domain:
        msg = "baseDomain missing from cluster values"
        raise ConfigurationError(msg, operation="base-domain", resource=cluster_name)
    return domain


def cloudfront_domain(store: ObjectStore, cluster_name: str, namespace: str) -> str | None:
    """Issuer domain published by the IRSA CloudFront distribution, if there is one."""
    try:
        secret = store.get(SECRET, cloudfront_secret_name(cluster_name), namespace)
    except ObjectNotFoundError:
        return None

    encoded = (secret.get("data") or {}).get("domain")
    if not encoded:
        return None

    try:
        decoded = base64.b64decode(encoded, validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        msg = f"domain of secret {cloudfront_secret_name(cluster_name)} is not valid base64 text"
        raise ConfigurationError(msg, operation="cloudfront-domain", resource=cluster_name) from e
    return capa_iam.oidc.clean_issuer(decoded.strip()) or None


def cloudfront_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}{CLOUDFRONT_SECRET_SUFFIX}"


def cluster_name_from_cloudfront_secret(secret_name: str) -> str | None:
    if not secret_name.endswith(CLOUDFRONT_SECRET_SUFFIX):
        return None
    return secret_name[: -len(CLOUDFRONT_SECRET_SUFFIX)] or None


def previous_irsa_domain(obj: typing.Mapping[str, typing.Any]) -> str | None:
    """Issuer being rotated away from, as a domain even when annotated as a URL."""
    value = annotations_of(obj).get(capa_iam.PREVIOUS_IRSA_DOMAIN_ANNOTATION) or ""
    return capa_iam.oidc.clean_issuer(value.strip()) or None
