from __future__ import annotations

import dataclasses
import json
import logging
import signal
import sys

import click

import capa_iam
import capa_iam.aws_iam
import capa_iam.aws_session
import capa_iam.cancel
import capa_iam.config
import capa_iam.controllers
import capa_iam.k8s
import capa_iam.policies
from capa_iam.errors import ReconcileError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None)
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), default="INFO")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str) -> None:
    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    ctx.obj = capa_iam.config.load_config(config_path)


@cli.command()
@click.argument("kind", type=click.Choice(sorted(capa_iam.controllers.RECONCILERS)))
@click.argument("namespace")
@click.argument("name")
@click.pass_obj
def reconcile(cfg: capa_iam.config.ControllerConfig, kind: str, namespace: str, name: str) -> None:
    """Run a single reconcile of KIND NAMESPACE/NAME."""
    capa_iam.k8s.load_kube_config()
    reconciler = capa_iam.controllers.RECONCILERS[kind](capa_iam.k8s.ObjectStore(), cfg)

    cancel = capa_iam.cancel.CancelToken()
    signal.signal(signal.SIGTERM, lambda *_: cancel.cancel())

    try:
        result = reconciler.reconcile(namespace, name, cancel)
    except ReconcileError as e:
        click.secho(f"✗ {e}", fg="red", bold=True, err=True)
        sys.exit(75 if e.retryable else 1)

    if result.requeue:
        click.secho(f"∙ reconciled {namespace}/{name}, requeue after {result.requeue_after}s", fg="yellow")
    else:
        click.secho(f"∙ reconciled {namespace}/{name}", fg="green")


@cli.command("render-policy")
@click.argument("role_type", type=click.Choice([t.value for t in capa_iam.RoleType]))
@click.option("--cluster", "cluster_name", required=True)
@click.option("--region", required=True)
@click.option("--account-id", required=True)
@click.option("--issuer-domain", "domains", multiple=True, help="IRSA issuer domain, repeatable")
@click.option("--workload", default=None, help="IRSA catalog workload, eg: external-dns")
@click.pass_obj
def render_policy(
    cfg: capa_iam.config.ControllerConfig,
    role_type: str,
    cluster_name: str,
    region: str,
    account_id: str,
    domains: tuple[str, ...],
    workload: str | None,
) -> None:
    """Print the trust and permission documents for ROLE_TYPE."""
    spec = capa_iam.RoleSpec(
        role_name=f"{cluster_name}-{role_type}",
        role_type=capa_iam.RoleType(role_type),
        cluster_name=cluster_name,
        region=region,
        account_id=account_id,
    )

    try:
        if spec.role_type == capa_iam.RoleType.IRSA:
            entry = next((e for e in cfg.irsa_catalog if e.workload == workload), None)
            if entry is None:
                msg = f"--workload must be one of {', '.join(e.workload for e in cfg.irsa_catalog)}"
                raise click.BadParameter(msg)
            spec = dataclasses.replace(spec, role_name=entry.role_name(cluster_name))
            trust = capa_iam.policies.trust_policy(
                spec, domains=list(domains), service_account=(entry.namespace, entry.service_account)
            )
            permissions = capa_iam.policies.permission_policy(spec, entry.statements)
        else:
            trust = capa_iam.policies.trust_policy(spec)
            permissions = capa_iam.policies.permission_policy(spec)
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"# {spec.role_name} ({capa_iam.policies.describe(spec.role_type)})", bold=True)
    click.echo(json.dumps({"trust": trust, "permissions": permissions}, indent=2, sort_keys=True))


@cli.command()
@click.argument("role_name")
@click.option("--role-arn", required=True, help="role to assume for reading IAM")
@click.option("--region", required=True)
@click.pass_obj
def status(cfg: capa_iam.config.ControllerConfig, role_name: str, role_arn: str, region: str) -> None:
    """Show what IAM currently reports for ROLE_NAME."""
    access = capa_iam.aws_session.AWSAccess(cfg)
    cancel = capa_iam.cancel.CancelToken()

    try:
        session = access.session(role_arn, region, cancel)
        role = capa_iam.aws_iam.IAMService(access.iam_client(session), cancel).describe_role(role_name)
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e

    if role is None:
        click.secho(f"role {role_name} does not exist", fg="yellow")
        return

    click.echo(json.dumps(dataclasses.asdict(role), indent=2, sort_keys=True))


def main() -> None:
    cli()
