from __future__ import annotations

import dataclasses
import os
import pathlib
import typing

import yaml

import capa_iam.finalizers
import capa_iam.irsa
from capa_iam import WATCH_FILTER_VALUE
from capa_iam.policies import PolicyStatement

CONFIG_ENV_VAR = "CAPA_IAM_CONFIG"

TRUTHY = {"1", "true", "yes", "on"}


@dataclasses.dataclass(frozen=True)
class ControllerConfig:
    enable_irsa_roles: bool = True
    manage_oidc_provider: bool = False
    max_patch_retries: int = capa_iam.finalizers.DEFAULT_MAX_RETRIES
    watch_filter: str = WATCH_FILTER_VALUE
    aws_connect_timeout: float = 10.0
    aws_read_timeout: float = 30.0
    aws_max_attempts: int = 1
    eks_requeue_after: float = 60.0
    irsa_catalog: tuple[capa_iam.irsa.IRSACatalogEntry, ...] = capa_iam.irsa.DEFAULT_CATALOG

    def __post_init__(self):
        if self.max_patch_retries < 1:
            msg = f"max_patch_retries must be at least 1, got {self.max_patch_retries}"
            raise ValueError(msg)
        if self.aws_max_attempts < 1:
            msg = f"aws_max_attempts must be at least 1, got {self.aws_max_attempts}"
            raise ValueError(msg)


def _catalog_from_dicts(entries: list[dict[str, typing.Any]]) -> tuple[capa_iam.irsa.IRSACatalogEntry, ...]:
    return tuple(
        capa_iam.irsa.IRSACatalogEntry(
            workload=entry["workload"],
            role_suffix=entry["role_suffix"],
            namespace=entry.get("namespace", "*"),
            service_account=entry["service_account"],
            statements=tuple(
                PolicyStatement(
                    actions=tuple(statement["actions"]),
                    resources=tuple(statement.get("resources", ["*"])),
                    sid=statement.get("sid"),
                )
                for statement in entry["statements"]
            ),
        )
        for entry in entries
    )


def load_config(
    path: pathlib.Path | str | None = None,
    environ: typing.Mapping[str, str] | None = None,
) -> ControllerConfig:
    """
    Build the controller configuration.

    Values come from the `spec` mapping of a YAML file (`path`, or the file named
    by CAPA_IAM_CONFIG) and are then overridden by CAPA_IAM_* environment
    variables.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(CONFIG_ENV_VAR)

    spec: dict[str, typing.Any] = {}
    if path:
        cfg_dict = yaml.safe_load(pathlib.Path(path).read_text()) or {}
        spec = dict(cfg_dict.get("spec") or {})

    known = {field.name for field in dataclasses.fields(ControllerConfig)}
    unknown = sorted(set(spec) - known)
    if unknown:
        msg = f"Unknown configuration keys: {', '.join(unknown)}"
        raise ValueError(msg)

    if "irsa_catalog" in spec:
        spec["irsa_catalog"] = _catalog_from_dicts(spec["irsa_catalog"])

    if "CAPA_IAM_ENABLE_IRSA_ROLES" in environ:
        spec["enable_irsa_roles"] = environ["CAPA_IAM_ENABLE_IRSA_ROLES"].lower() in TRUTHY
    if "CAPA_IAM_MANAGE_OIDC_PROVIDER" in environ:
        spec["manage_oidc_provider"] = environ["CAPA_IAM_MANAGE_OIDC_PROVIDER"].lower() in TRUTHY
    if "CAPA_IAM_MAX_PATCH_RETRIES" in environ:
        spec["max_patch_retries"] = int(environ["CAPA_IAM_MAX_PATCH_RETRIES"])

    return ControllerConfig(**spec)
