from __future__ import annotations

import concurrent.futures
import contextlib
import dataclasses
import logging
import threading
import typing

import boto3

import eksconverge
import eksconverge.actions
import eksconverge.aws_iam
import eksconverge.aws_reconciler
import eksconverge.controller
import eksconverge.errors
import eksconverge.helm
import eksconverge.junkdrawer
import eksconverge.kube_reconciler
import eksconverge.manifests
import eksconverge.model
import eksconverge.retry
import eksconverge.settings

logger = logging.getLogger(__name__)

STAGES = ("cluster", "workload", "controller", "ingress")


class ClusterLocks:
    """Serializes runs that target the same (region, cluster name) within this process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}

    @contextlib.contextmanager
    def hold(self, key: tuple[str, str]) -> typing.Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())

        if not lock.acquire(blocking=False):
            logger.info("waiting for another run against %s/%s to finish", *key)
            lock.acquire()

        try:
            yield
        finally:
            lock.release()


LOCKS = ClusterLocks()


class AWSBackend:
    """Builds the boto3, Kubernetes and Helm clients for one cluster."""

    def __init__(
        self,
        settings: eksconverge.settings.Settings,
        *,
        cancel: threading.Event | None = None,
        exe_env: dict[str, str] | None = None,
    ):
        self.settings = settings
        self.cancel = cancel
        self.exe_env = exe_env

    def session(self, region: str) -> boto3.Session:
        return eksconverge.aws_session(region, self.exe_env)

    def whoami(self, region: str) -> tuple[eksconverge.AWSCallerIdentity, bool]:
        return eksconverge.aws_whoami(self.session(region))

    def aws_reconciler(self, region: str) -> eksconverge.aws_reconciler.AWSReconciler:
        return eksconverge.aws_reconciler.AWSReconciler.from_session(self.session(region), self.settings, cancel=self.cancel)

    def iam(self, region: str, log: eksconverge.actions.ActionLog) -> eksconverge.aws_iam.IAM:
        config = eksconverge.aws_client_config(self.settings.connect_timeout, self.settings.read_timeout)
        return eksconverge.aws_iam.IAM(self.session(region).client("iam", config=config), self.settings.retry_policy, log)

    def kube_reconciler(
        self, cluster: eksconverge.AWSCluster, region: str
    ) -> eksconverge.kube_reconciler.KubernetesReconciler:
        client = eksconverge.kube_reconciler.DynamicKubeClient.from_kubeconfig(eksconverge.eks_kubeconfig(cluster, region))
        return eksconverge.kube_reconciler.KubernetesReconciler(client, self.settings, cancel=self.cancel)

    def helm(self, cluster: eksconverge.AWSCluster, region: str) -> eksconverge.helm.Helm:
        path = self.settings.paths.kubeconfig(region, cluster["name"])
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(eksconverge.eks_kubeconfig_yaml(cluster, region))
        path.chmod(0o600)
        return eksconverge.helm.Helm(path, self.settings)


@dataclasses.dataclass
class StageResult:
    name: str
    status: str
    detail: str = ""
    actions: list[str] = dataclasses.field(default_factory=list)
    warnings: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class DriverReport:
    cluster: tuple[str, str]
    stages: list[StageResult] = dataclasses.field(default_factory=list)
    error: eksconverge.errors.ConvergeError | None = None
    addresses: dict[str, str] = dataclasses.field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else self.error.exit_code

    @property
    def warnings(self) -> list[str]:
        return [w for stage in self.stages for w in stage.warnings]

    def stage(self, name: str) -> StageResult | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


@dataclasses.dataclass
class _Run:
    bundle: eksconverge.model.SpecBundle
    report: DriverReport
    state: eksconverge.aws_reconciler.ClusterState | None = None
    kube: eksconverge.kube_reconciler.KubernetesReconciler | None = None


def _record_apply(apply: eksconverge.kube_reconciler.ApplyReport, result: StageResult) -> None:
    result.actions = [f"{r.status} {r.key}" for r in apply.results if r.status != eksconverge.ResourceStatus.UNCHANGED]
    result.warnings.extend(f"rollback of {e.resource} failed: {e}" for e in apply.rollback_errors)
    apply.raise_for_error()


class Driver:
    def __init__(
        self,
        settings: eksconverge.settings.Settings | None = None,
        *,
        backend: typing.Any = None,
        cancel: threading.Event | None = None,
        locks: ClusterLocks = LOCKS,
    ):
        self.settings = settings or eksconverge.settings.Settings()
        self.cancel = cancel or threading.Event()
        self.backend = backend or AWSBackend(self.settings, cancel=self.cancel)
        self.locks = locks

    def _steps(self) -> list[tuple[str, typing.Callable[[_Run, StageResult], str]]]:
        return [
            ("cluster", self._cluster_stage),
            ("workload", self._workload_stage),
            ("controller", self._controller_stage),
            ("ingress", self._ingress_stage),
        ]

    def run(
        self,
        bundle: eksconverge.model.SpecBundle,
        *,
        start_at: str | None = None,
        only: typing.Sequence[str] | None = None,
    ) -> DriverReport:
        """Run the stages in order; the first failure halts later stages without undoing earlier ones."""
        for name in [start_at, *(only or [])]:
            if name is not None and name not in STAGES:
                msg = f"unknown stage {name!r}; expected one of {', '.join(STAGES)}"
                raise eksconverge.errors.SpecValidationError(msg)

        steps = self._steps()
        if start_at is not None:
            steps = eksconverge.junkdrawer.filter_steps_after_start(start_at, steps)
        if only is not None:
            steps = [(name, step) for name, step in steps if name in only]

        report = DriverReport(cluster=bundle.cluster.key)
        run = _Run(bundle=bundle, report=report)
        eksconverge.junkdrawer.print_steps(steps)

        with self.locks.hold(bundle.cluster.key):
            for name, step in steps:
                result = StageResult(name=name, status="running")
                report.stages.append(result)

                if report.error is not None:
                    result.status = "skipped"
                    continue

                try:
                    eksconverge.retry.check_cancelled(self.cancel, f"starting stage {name}")
                    result.detail = step(run, result)
                except Exception as e:
                    err = eksconverge.errors.classify(e, resource=f"stage/{name}")
                    result.status = "failed"
                    result.detail = str(err)
                    report.error = err
                    if err is not e:
                        logger.debug("stage %s raised %r", name, e, exc_info=e)
                    logger.error("stage %s failed for %s/%s: %s", name, *bundle.cluster.key, err)
                    eksconverge.junkdrawer.print_stage(name, str(err), ok=False)
                    continue

                result.status = "ok"
                eksconverge.junkdrawer.print_stage(name, result.detail)

        for warning in report.warnings:
            logger.warning("%s/%s: %s", *bundle.cluster.key, warning)

        return report

    def run_many(
        self,
        bundles: typing.Sequence[eksconverge.model.SpecBundle],
        *,
        max_workers: int = 4,
        start_at: str | None = None,
    ) -> list[DriverReport]:
        """Reconcile independent clusters in parallel; reports come back in input order."""
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="eksconverge") as pool:
            try:
                return list(pool.map(lambda b: self.run(b, start_at=start_at), bundles))
            except BaseException:
                # workers check the event between stages and while polling
                self.cancel.set()
                raise

    def _preflight(self, spec: eksconverge.model.ClusterSpec) -> None:
        identity, ok = self.backend.whoami(spec.region)
        if not ok:
            msg = f"unable to resolve AWS caller identity in {spec.region}; check your AWS credentials"
            raise eksconverge.errors.AccessDeniedError(msg, resource="sts")
        logger.debug("acting as %s", identity.get("Arn"))

    def verify_cluster(self, spec: eksconverge.model.ClusterSpec) -> eksconverge.aws_reconciler.ClusterState:
        self._preflight(spec)
        return self.backend.aws_reconciler(spec.region).verify(spec)

    def _connect(self, run: _Run) -> eksconverge.kube_reconciler.KubernetesReconciler:
        """Resolve the cluster state, verifying it read-only when the cluster stage did not run."""
        if run.state is None:
            state = self.verify_cluster(run.bundle.cluster)
            if not state.converged:
                pending = "; ".join(str(a) for a in state.actions) or "cluster is not active"
                msg = f"cluster {run.bundle.cluster.name!r} is not converged ({pending}); run `cluster create` first"
                raise eksconverge.errors.ConflictError(msg, resource=f"eks:cluster/{run.bundle.cluster.name}")
            run.state = state

        if run.kube is None:
            run.kube = self.backend.kube_reconciler(run.state.cluster, run.bundle.cluster.region)

        return run.kube

    def _cluster_stage(self, run: _Run, result: StageResult) -> str:
        spec = run.bundle.cluster
        self._preflight(spec)
        run.state = self.backend.aws_reconciler(spec.region).reconcile(spec)
        result.actions = [str(a) for a in run.state.actions]
        result.warnings = list(run.state.log.warnings)

        kube = self._connect(run)
        if spec.node_mode == eksconverge.NodeMode.FARGATE:
            if kube.ensure_fargate_coredns() == eksconverge.ResourceStatus.UPDATED:
                result.actions.append("update Deployment/kube-system/coredns (schedule on Fargate)")

        return f"{run.state.cluster['arn']} ({len(result.actions)} changes)"

    def _workload_stage(self, run: _Run, result: StageResult) -> str:
        kube = self._connect(run)
        apply = kube.apply(eksconverge.manifests.workload_manifests(run.bundle))
        _record_apply(apply, result)

        for wl in run.bundle.workloads:
            kube.wait_for_rollout(wl.name, wl.namespace)

        endpoints = []
        for svc in run.bundle.services:
            cluster_ip = kube.service_cluster_ip(svc.name, svc.namespace)
            if cluster_ip is None and svc.type != "LoadBalancer":
                msg = f"service {svc.namespace}/{svc.name} has no cluster IP"
                raise eksconverge.errors.ConflictError(msg, resource=f"Service/{svc.namespace}/{svc.name}")
            endpoints.append(f"{svc.name}={cluster_ip}")

        return ", ".join(endpoints) or f"{len(apply.results)} resources"

    def controller_installer(
        self,
        run: _Run,
        log: eksconverge.actions.ActionLog,
    ) -> eksconverge.controller.ControllerInstaller:
        kube = self._connect(run)
        state = run.state
        spec = run.bundle.cluster
        return eksconverge.controller.ControllerInstaller(
            eksconverge.controller.ClusterContext(
                cluster_name=spec.name,
                region=spec.region,
                account_id=state.account_id,
                vpc_id=state.vpc_id,
                oidc=state.oidc,
            ),
            run.bundle.controller,
            iam=self.backend.iam(spec.region, log),
            kube=kube,
            helm=self.backend.helm(state.cluster, spec.region),
            settings=self.settings,
            cancel=self.cancel,
        )

    def installer_for(self, bundle: eksconverge.model.SpecBundle) -> eksconverge.controller.ControllerInstaller:
        """Installer bound to an already converged cluster, for the standalone controller commands."""
        run = _Run(bundle=bundle, report=DriverReport(cluster=bundle.cluster.key))
        return self.controller_installer(run, eksconverge.actions.ActionLog())

    def kube_for(self, bundle: eksconverge.model.SpecBundle) -> eksconverge.kube_reconciler.KubernetesReconciler:
        return self._connect(_Run(bundle=bundle, report=DriverReport(cluster=bundle.cluster.key)))

    def _controller_stage(self, run: _Run, result: StageResult) -> str:
        if not run.bundle.cluster.ingress:
            return "ingress disabled"

        log = eksconverge.actions.ActionLog()
        installer = self.controller_installer(run, log)
        try:
            status = installer.install()
        finally:
            result.actions = [str(a) for a in log.actions]
            result.warnings = list(log.warnings)

        return str(status)

    def _ingress_stage(self, run: _Run, result: StageResult) -> str:
        if not run.bundle.ingresses:
            return "no ingresses"

        kube = self._connect(run)
        apply = kube.apply(eksconverge.manifests.ingress_manifests(run.bundle))
        _record_apply(apply, result)

        for ing in run.bundle.ingresses:
            address = kube.wait_for_ingress_address(ing.name, ing.namespace)
            run.report.addresses[f"{ing.namespace}/{ing.name}"] = address

        return ", ".join(f"{k} -> {v}" for k, v in run.report.addresses.items())
