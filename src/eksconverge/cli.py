from __future__ import annotations

import dataclasses
import functools
import logging
import pathlib
import threading
import typing

import click

import eksconverge
import eksconverge.driver
import eksconverge.errors
import eksconverge.manifests
import eksconverge.model
import eksconverge.settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclasses.dataclass
class CliContext:
    settings: eksconverge.settings.Settings
    cancel: threading.Event = dataclasses.field(default_factory=threading.Event)
    backend: typing.Any = None

    def driver(self) -> eksconverge.driver.Driver:
        return eksconverge.driver.Driver(self.settings, backend=self.backend, cancel=self.cancel)


def converge_command(fn: typing.Callable) -> typing.Callable:
    """Map `ConvergeError` onto its exit code and turn Ctrl-C into a cooperative cancel."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return fn(*args, **kwargs)
        except eksconverge.errors.ConvergeError as e:
            resource = f" [{e.resource}]" if e.resource else ""
            click.secho(f"error{resource}: {e}", fg="red", err=True)
            ctx.exit(e.exit_code)
        except KeyboardInterrupt:
            ctx.find_object(CliContext).cancel.set()
            click.secho("cancelled; re-run the same command to resume", fg="yellow", err=True)
            ctx.exit(eksconverge.errors.CancelledError.exit_code)

    return wrapper


def spec_options(fn: typing.Callable) -> typing.Callable:
    fn = click.option("--region", help="AWS region; overrides the spec file.")(fn)
    fn = click.option("--cluster-name", help="EKS cluster name; overrides the spec file.")(fn)
    return click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path))(fn)


def _load(spec_file: pathlib.Path, cluster_name: str | None, region: str | None) -> eksconverge.model.SpecBundle:
    return eksconverge.model.load_bundle(spec_file, cluster_name=cluster_name, region=region)


def _print_report(report: eksconverge.driver.DriverReport) -> None:
    region, name = report.cluster
    for stage in report.stages:
        for action in stage.actions:
            click.echo(f"{region}/{name} {stage.name}: {action}")
        for warning in stage.warnings:
            click.secho(f"{region}/{name} {stage.name}: warning: {warning}", fg="yellow", err=True)

    for ingress, address in report.addresses.items():
        click.echo(f"{ingress}: http://{address}")


def _finish(report: eksconverge.driver.DriverReport) -> None:
    _print_report(report)
    if report.error is not None:
        raise report.error


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Defaults to EKSCONVERGE_LOG_LEVEL or INFO.",
)
@click.option("--max-attempts", type=int, default=None, help="Attempts per AWS, Kubernetes or Helm call.")
@click.option("--poll-interval", type=float, default=None, help="Seconds between readiness polls.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, max_attempts: int | None, poll_interval: float | None):
    """Provision EKS clusters and converge workloads, the load balancer controller and ALB ingresses."""
    try:
        settings = eksconverge.settings.Settings.from_env(
            log_level=log_level.upper() if log_level else None,
            max_attempts=max_attempts,
            poll_interval=poll_interval,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    logger.debug("%s", settings)
    if ctx.obj is None:
        ctx.obj = CliContext(settings=settings)
    else:
        ctx.obj.settings = settings


@cli.group()
def cluster():
    """EKS control plane, OIDC provider and node capacity."""


@cluster.command("create")
@spec_options
@click.pass_obj
@converge_command
def cluster_create(obj: CliContext, spec_file: pathlib.Path, cluster_name: str | None, region: str | None):
    """Create the cluster or converge an existing one."""
    bundle = _load(spec_file, cluster_name, region)
    _finish(obj.driver().run(bundle, only=["cluster"]))


@cluster.command("verify")
@spec_options
@click.pass_obj
@converge_command
def cluster_verify(obj: CliContext, spec_file: pathlib.Path, cluster_name: str | None, region: str | None):
    """Report what `cluster create` would change, without changing anything."""
    bundle = _load(spec_file, cluster_name, region)
    state = obj.driver().verify_cluster(bundle.cluster)

    for action in state.actions:
        click.echo(str(action))

    if not state.converged:
        msg = f"cluster {bundle.cluster.name!r} has {len(state.actions)} pending changes"
        raise eksconverge.errors.ConflictError(msg, resource=f"eks:cluster/{bundle.cluster.name}")

    click.secho(f"cluster {bundle.cluster.name} is converged", fg="green")


@cli.group()
def workload():
    """Deployments, Services and extra manifests."""


@workload.command("apply")
@spec_options
@click.pass_obj
@converge_command
def workload_apply(obj: CliContext, spec_file: pathlib.Path, cluster_name: str | None, region: str | None):
    bundle = _load(spec_file, cluster_name, region)
    _finish(obj.driver().run(bundle, only=["workload"]))


@workload.command("diff")
@spec_options
@click.pass_obj
@converge_command
def workload_diff(obj: CliContext, spec_file: pathlib.Path, cluster_name: str | None, region: str | None):
    """Show which manifests are missing, changed or drifted from their last apply."""
    bundle = _load(spec_file, cluster_name, region)
    kube = obj.driver().kube_for(bundle)

    manifests = eksconverge.manifests.workload_manifests(bundle) + eksconverge.manifests.ingress_manifests(bundle)
    for result in kube.diff(manifests):
        click.secho(str(result), fg="green" if result.status == "unchanged" else "yellow")


@cli.group()
def controller():
    """AWS Load Balancer Controller lifecycle."""


@controller.command("install")
@spec_options
@click.pass_obj
@converge_command
def controller_install(obj: CliContext, spec_file: pathlib.Path, cluster_name: str | None, region: str | None):
    """Install or upgrade the controller and wait for it to become Ready."""
    bundle = _load(spec_file, cluster_name, region)
    _finish(obj.driver().run(bundle, only=["controller"]))


@controller.command("status")
@spec_options
@click.pass_obj
@converge_command
def controller_status(obj: CliContext, spec_file: pathlib.Path, cluster_name: str | None, region: str | None):
    bundle = _load(spec_file, cluster_name, region)
    status = obj.driver().installer_for(bundle).observe()
    click.echo(str(status))


@controller.command("rollback")
@spec_options
@click.option("--revision", type=int, default=None, help="Helm revision; defaults to the previous one.")
@click.pass_obj
@converge_command
def controller_rollback(
    obj: CliContext,
    spec_file: pathlib.Path,
    cluster_name: str | None,
    region: str | None,
    revision: int | None,
):
    bundle = _load(spec_file, cluster_name, region)
    status = obj.driver().installer_for(bundle).rollback(revision)
    click.echo(str(status))


@controller.command("uninstall")
@spec_options
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_obj
@converge_command
def controller_uninstall(
    obj: CliContext,
    spec_file: pathlib.Path,
    cluster_name: str | None,
    region: str | None,
    yes: bool,
):
    """Remove the release, its service account, IRSA role and IAM policy."""
    bundle = _load(spec_file, cluster_name, region)
    if not yes:
        click.confirm(f"Uninstall {bundle.controller.release_name} from {bundle.cluster.name}?", abort=True)

    installer = obj.driver().installer_for(bundle)
    status = installer.uninstall()
    for action in installer.log.actions:
        click.echo(str(action))
    click.echo(str(status))


@cli.command("up")
@click.argument(
    "spec_files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path),
)
@click.option("--cluster-name", help="EKS cluster name; only valid with a single spec file.")
@click.option("--region", help="AWS region; overrides every spec file.")
@click.option("--start-at", type=click.Choice(eksconverge.driver.STAGES), default=None, help="Skip earlier stages.")
@click.option("--max-workers", type=int, default=4, show_default=True, help="Clusters reconciled in parallel.")
@click.pass_obj
@converge_command
def up(
    obj: CliContext,
    spec_files: tuple[pathlib.Path, ...],
    cluster_name: str | None,
    region: str | None,
    start_at: str | None,
    max_workers: int,
):
    """Run every stage: cluster, workload, controller, ingress."""
    if cluster_name is not None and len(spec_files) > 1:
        msg = "--cluster-name can only be used with a single spec file"
        raise click.UsageError(msg)

    bundles = [_load(path, cluster_name, region) for path in spec_files]
    driver = obj.driver()

    if len(bundles) == 1:
        _finish(driver.run(bundles[0], start_at=start_at))
        return

    reports = driver.run_many(bundles, max_workers=max_workers, start_at=start_at)
    for report in reports:
        _print_report(report)

    failed = [r for r in reports if r.error is not None]
    for report in failed:
        click.secho(f"{'/'.join(report.cluster)}: {report.error}", fg="red", err=True)
    if failed:
        raise failed[0].error
