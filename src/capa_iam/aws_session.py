from __future__ import annotations

import getpass
import logging
import socket
import typing

import boto3
import botocore.config
import botocore.exceptions

import capa_iam.cancel
import capa_iam.oidc
from capa_iam.errors import ConfigurationError, SessionError

if typing.TYPE_CHECKING:
    import capa_iam.config

logger = logging.getLogger(__name__)


def client_config(cfg: capa_iam.config.ControllerConfig) -> botocore.config.Config:
    return botocore.config.Config(
        connect_timeout=cfg.aws_connect_timeout,
        read_timeout=cfg.aws_read_timeout,
        retries={"max_attempts": cfg.aws_max_attempts, "mode": "standard"},
    )


def account_id_from_arn(arn: str) -> str:
    parts = arn.split(":")
    if len(parts) < 6 or not parts[0] == "arn" or not parts[4].isdigit():
        msg = f"not an ARN with an account id: {arn!r}"
        raise ConfigurationError(msg, operation="account-id", resource=arn)
    return parts[4]


def assume_role_session(
    role_arn: str,
    region: str,
    cfg: capa_iam.config.ControllerConfig,
    cancel: capa_iam.cancel.CancelToken | None = None,
) -> boto3.Session:
    """Assume `role_arn` and return a session bound to `region` with its credentials."""
    cancel = cancel or capa_iam.cancel.CancelToken()
    cancel.check("assume-role", role_arn)

    sts_client = boto3.Session(region_name=region).client("sts", config=client_config(cfg))

    try:
        response = sts_client.assume_role(
            RoleArn=role_arn,
            RoleSessionName=f"capa-iam-{getpass.getuser()}@{socket.gethostname()}"[:64],
        )
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        raise SessionError(str(e), operation="assume-role", resource=role_arn) from e

    return boto3.Session(
        aws_access_key_id=response["Credentials"]["AccessKeyId"],
        aws_secret_access_key=response["Credentials"]["SecretAccessKey"],
        aws_session_token=response["Credentials"]["SessionToken"],
        region_name=region,
    )


def caller_identity(session: boto3.Session, cfg: capa_iam.config.ControllerConfig) -> dict[str, str]:
    try:
        return session.client("sts", config=client_config(cfg)).get_caller_identity()
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        raise SessionError(str(e), operation="get-caller-identity") from e


def iam_client(session: boto3.Session, cfg: capa_iam.config.ControllerConfig) -> typing.Any:
    return session.client("iam", config=client_config(cfg))


def eks_oidc_issuer_domain(
    session: boto3.Session,
    cluster_name: str,
    cfg: capa_iam.config.ControllerConfig,
    cancel: capa_iam.cancel.CancelToken | None = None,
) -> str:
    """Issuer domain of an EKS cluster, or an empty string while it is not published yet."""
    cancel = cancel or capa_iam.cancel.CancelToken()
    cancel.check("describe-cluster", cluster_name)

    eks_client = session.client("eks", config=client_config(cfg))
    try:
        response = eks_client.describe_cluster(name=cluster_name)
    except botocore.exceptions.ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
            return ""
        raise SessionError(str(e), operation="describe-cluster", resource=cluster_name) from e
    except botocore.exceptions.BotoCoreError as e:
        raise SessionError(str(e), operation="describe-cluster", resource=cluster_name) from e

    issuer_url = response.get("cluster", {}).get("identity", {}).get("oidc", {}).get("issuer", "")
    return capa_iam.oidc.clean_issuer(issuer_url.strip())


class AWSAccess:
    """Session resolution and the non-IAM AWS calls a reconcile needs."""

    def __init__(self, cfg: capa_iam.config.ControllerConfig):
        self.cfg = cfg

    def session(self, role_arn: str, region: str, cancel: capa_iam.cancel.CancelToken) -> boto3.Session:
        return assume_role_session(role_arn, region, self.cfg, cancel)

    def iam_client(self, session: boto3.Session) -> typing.Any:
        return iam_client(session, self.cfg)

    def caller_identity(self, session: boto3.Session) -> dict[str, str]:
        return caller_identity(session, self.cfg)

    def eks_issuer_domain(self, session: boto3.Session, cluster_name: str, cancel: capa_iam.cancel.CancelToken) -> str:
        return eks_oidc_issuer_domain(session, cluster_name, self.cfg, cancel)
