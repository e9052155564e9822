from __future__ import annotations

import copy
import dataclasses
import json
import logging
import threading
import time
import typing

import kubernetes.config
import kubernetes.dynamic
import kubernetes.dynamic.exceptions

import eksconverge
import eksconverge.errors
import eksconverge.manifests
import eksconverge.retry
import eksconverge.settings

logger = logging.getLogger(__name__)

Manifest = dict[str, typing.Any]

_MISSING = object()


class KubeClient(typing.Protocol):
    def get(self, api_version: str, kind: str, name: str, namespace: str | None) -> Manifest | None: ...

    def create(self, manifest: Manifest) -> Manifest: ...

    def patch(self, api_version: str, kind: str, name: str, namespace: str | None, patch: Manifest) -> Manifest: ...

    def delete(self, api_version: str, kind: str, name: str, namespace: str | None) -> None: ...


class DynamicKubeClient:
    """`KubeClient` over the kubernetes dynamic client; patches use JSON merge patch."""

    def __init__(self, dynamic: kubernetes.dynamic.DynamicClient):
        self.dynamic = dynamic

    @classmethod
    def from_kubeconfig(cls, kubeconfig: dict[str, typing.Any]) -> DynamicKubeClient:
        api_client = kubernetes.config.new_client_from_config_dict(kubeconfig)
        return cls(kubernetes.dynamic.DynamicClient(api_client))

    def _resource(self, api_version: str, kind: str, namespace: str | None) -> tuple[typing.Any, str | None]:
        resource = self.dynamic.resources.get(api_version=api_version, kind=kind)
        if not resource.namespaced:
            return resource, None
        return resource, namespace or eksconverge.DEFAULT_NAMESPACE

    def get(self, api_version: str, kind: str, name: str, namespace: str | None) -> Manifest | None:
        resource, namespace = self._resource(api_version, kind, namespace)
        try:
            return resource.get(name=name, namespace=namespace).to_dict()
        except kubernetes.dynamic.exceptions.NotFoundError:
            return None

    def create(self, manifest: Manifest) -> Manifest:
        resource, namespace = self._resource(
            manifest["apiVersion"], manifest["kind"], manifest["metadata"].get("namespace")
        )
        return resource.create(body=manifest, namespace=namespace).to_dict()

    def patch(self, api_version: str, kind: str, name: str, namespace: str | None, patch: Manifest) -> Manifest:
        resource, namespace = self._resource(api_version, kind, namespace)
        return resource.patch(
            body=patch,
            name=name,
            namespace=namespace,
            content_type="application/merge-patch+json",
        ).to_dict()

    def delete(self, api_version: str, kind: str, name: str, namespace: str | None) -> None:
        resource, namespace = self._resource(api_version, kind, namespace)
        try:
            resource.delete(name=name, namespace=namespace)
        except kubernetes.dynamic.exceptions.NotFoundError:
            logger.debug("%s %s/%s already gone", kind, namespace, name)


def _covers(desired: typing.Any, live: typing.Any) -> bool:
    """Whether `live` already holds everything in `desired`; extra server-populated keys are ignored."""
    if isinstance(desired, dict):
        return isinstance(live, dict) and all(k in live and _covers(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        return isinstance(live, list) and len(desired) == len(live) and all(map(_covers, desired, live))
    return desired == live


def three_way_merge_patch(last: typing.Any, live: dict[str, typing.Any], desired: dict[str, typing.Any]) -> Manifest:
    """Compute a JSON merge patch that moves `live` to `desired`.

    Keys set in `desired` that differ from `live` are written. Keys that were in the
    last applied configuration but are no longer desired are removed. Keys only in
    `live` are left for the server to own. Lists are replaced wholesale.
    """
    last = last if isinstance(last, dict) else {}
    patch: Manifest = {}

    for key in last:
        if key not in desired and key in live:
            patch[key] = None

    for key, value in desired.items():
        live_value = live.get(key, _MISSING)
        last_value = last.get(key, _MISSING)

        if isinstance(value, dict) and isinstance(live_value, dict):
            sub = three_way_merge_patch(last_value, live_value, value)
            if sub:
                patch[key] = sub
        elif isinstance(value, list):
            if not _covers(value, live_value) or (last_value is not _MISSING and last_value != value):
                patch[key] = value
        elif value != live_value:
            patch[key] = value

    return patch


def revert_patch(patch: Manifest, before: typing.Any) -> Manifest:
    """The merge patch that undoes `patch` when applied on top of its result."""
    before = before if isinstance(before, dict) else {}
    revert: Manifest = {}

    for key, value in patch.items():
        previous = before.get(key, _MISSING)
        if isinstance(value, dict) and isinstance(previous, dict):
            revert[key] = revert_patch(value, previous)
        else:
            revert[key] = None if previous is _MISSING else previous

    return revert


def last_applied(live: Manifest) -> Manifest | None:
    raw = live.get("metadata", {}).get("annotations", {}).get(eksconverge.LAST_APPLIED_ANNOTATION)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring unparseable %s on %s", eksconverge.LAST_APPLIED_ANNOTATION, live["metadata"]["name"])
        return None


def with_last_applied(manifest: Manifest) -> Manifest:
    annotated = copy.deepcopy(manifest)
    annotations = annotated.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[eksconverge.LAST_APPLIED_ANNOTATION] = json.dumps(manifest, sort_keys=True, separators=(",", ":"))
    return annotated


@dataclasses.dataclass
class ApplyResult:
    key: str
    status: eksconverge.ResourceStatus
    error: eksconverge.errors.ConvergeError | None = None
    rolled_back: bool = False


@dataclasses.dataclass
class ApplyReport:
    results: list[ApplyResult] = dataclasses.field(default_factory=list)
    error: eksconverge.errors.ConvergeError | None = None
    rollback_errors: list[eksconverge.errors.ConvergeError] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def changed(self) -> bool:
        return any(r.status != eksconverge.ResourceStatus.UNCHANGED for r in self.results)

    def status_of(self, key: str) -> eksconverge.ResourceStatus | None:
        for result in self.results:
            if result.key == key:
                return result.status
        return None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


@dataclasses.dataclass
class DiffResult:
    key: str
    status: str
    patch: Manifest = dataclasses.field(default_factory=dict)
    drifted: bool = False

    def __str__(self) -> str:
        drift = " (live state drifted from last apply)" if self.drifted else ""
        return f"{self.key}: {self.status}{drift}"


@dataclasses.dataclass
class _Change:
    manifest: Manifest
    created: bool
    revert: Manifest | None = None


def _ident(manifest: Manifest) -> tuple[str, str, str, str | None]:
    metadata = manifest["metadata"]
    return manifest["apiVersion"], manifest["kind"], metadata["name"], metadata.get("namespace")


class KubernetesReconciler:
    def __init__(
        self,
        client: KubeClient,
        settings: eksconverge.settings.Settings | None = None,
        *,
        cancel: threading.Event | None = None,
        clock: typing.Callable[[], float] = time.monotonic,
        sleep: typing.Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.settings = settings or eksconverge.settings.Settings()
        self.retry = dataclasses.replace(self.settings.retry_policy, sleep=sleep)
        self.cancel = cancel
        self.clock = clock
        self.sleep = sleep

    def _get(self, manifest: Manifest) -> Manifest | None:
        return self.retry.call(self.client.get, *_ident(manifest), resource=eksconverge.manifests.manifest_key(manifest))

    def apply(self, manifests: typing.Sequence[Manifest], *, rollback_on_error: bool = True) -> ApplyReport:
        """Converge each manifest in order; on the first failure, undo this call's earlier changes."""
        report = ApplyReport()
        changes: list[_Change] = []

        for manifest in manifests:
            key = eksconverge.manifests.manifest_key(manifest)
            try:
                eksconverge.retry.check_cancelled(self.cancel, f"applying {key}")
                status, change = self._apply_one(manifest)
            except Exception as e:
                err = eksconverge.errors.classify(e, resource=key)
                logger.error("failed to apply %s: %s", key, err)
                report.results.append(ApplyResult(key=key, status=eksconverge.ResourceStatus.ERROR, error=err))
                report.error = err
                break

            report.results.append(ApplyResult(key=key, status=status))
            if change is not None:
                changes.append(change)

        if report.error is not None and rollback_on_error:
            self._rollback(changes, report)

        return report

    def _apply_one(self, manifest: Manifest) -> tuple[eksconverge.ResourceStatus, _Change | None]:
        key = eksconverge.manifests.manifest_key(manifest)
        desired = with_last_applied(manifest)
        live = self._get(manifest)

        if live is None:
            self.retry.call(self.client.create, desired, resource=key)
            logger.info("created %s", key)
            return eksconverge.ResourceStatus.CREATED, _Change(manifest=manifest, created=True)

        patch = three_way_merge_patch(last_applied(live), live, desired)
        if not patch:
            logger.debug("%s unchanged", key)
            return eksconverge.ResourceStatus.UNCHANGED, None

        self.retry.call(self.client.patch, *_ident(manifest), patch, resource=key)
        logger.info("updated %s", key)
        return eksconverge.ResourceStatus.UPDATED, _Change(
            manifest=manifest,
            created=False,
            revert=revert_patch(patch, live),
        )

    def _rollback(self, changes: list[_Change], report: ApplyReport) -> None:
        for change in reversed(changes):
            key = eksconverge.manifests.manifest_key(change.manifest)
            try:
                if change.created:
                    self.retry.call(self.client.delete, *_ident(change.manifest), resource=key)
                else:
                    self.retry.call(self.client.patch, *_ident(change.manifest), change.revert, resource=key)
            except Exception as e:
                err = eksconverge.errors.classify(e, resource=key)
                logger.error("rollback of %s failed: %s", key, err)
                report.rollback_errors.append(err)
                continue

            logger.info("rolled back %s", key)
            for result in report.results:
                if result.key == key:
                    result.rolled_back = True

    def delete(self, manifests: typing.Sequence[Manifest]) -> ApplyReport:
        """Delete in reverse order; resources that are already gone count as unchanged."""
        report = ApplyReport()

        for manifest in reversed(manifests):
            key = eksconverge.manifests.manifest_key(manifest)
            if self._get(manifest) is None:
                report.results.append(ApplyResult(key=key, status=eksconverge.ResourceStatus.UNCHANGED))
                continue

            self.retry.call(self.client.delete, *_ident(manifest), resource=key)
            logger.info("deleted %s", key)
            report.results.append(ApplyResult(key=key, status=eksconverge.ResourceStatus.DELETED))

        return report

    def diff(self, manifests: typing.Sequence[Manifest]) -> list[DiffResult]:
        results = []

        for manifest in manifests:
            key = eksconverge.manifests.manifest_key(manifest)
            live = self._get(manifest)
            if live is None:
                results.append(DiffResult(key=key, status="missing", patch=manifest))
                continue

            previous = last_applied(live)
            patch = three_way_merge_patch(previous, live, with_last_applied(manifest))
            drifted = previous is not None and not _covers(previous, live)

            if not patch:
                status = "unchanged"
            elif previous is not None and previous != manifest:
                status = "changed"
            else:
                status = "drifted"
            results.append(DiffResult(key=key, status=status, patch=patch, drifted=drifted))

        return results

    def _wait(self, predicate: typing.Callable[[], bool], what: str, timeout: float, consecutive: int = 1) -> int:
        return eksconverge.retry.wait_until(
            predicate,
            what=what,
            timeout=timeout,
            interval=self.settings.poll_interval,
            consecutive=consecutive,
            cancel=self.cancel,
            clock=self.clock,
            sleep=self.sleep,
        )

    def deployment_ready(self, name: str, namespace: str) -> bool:
        live = self.retry.call(
            self.client.get, "apps/v1", "Deployment", name, namespace, resource=f"Deployment/{namespace}/{name}"
        )
        if live is None:
            return False

        desired = live.get("spec", {}).get("replicas", 1)
        status = live.get("status", {}) or {}
        generation = live.get("metadata", {}).get("generation", 0)

        return (
            status.get("observedGeneration", generation) >= generation
            and (status.get("updatedReplicas") or 0) >= desired
            and (status.get("availableReplicas") or 0) >= desired
        )

    def wait_for_rollout(
        self,
        name: str,
        namespace: str = eksconverge.DEFAULT_NAMESPACE,
        timeout: float | None = None,
        *,
        consecutive: int = 1,
    ) -> int:
        return self._wait(
            lambda: self.deployment_ready(name, namespace),
            f"deployment {namespace}/{name} to roll out",
            self.settings.rollout_timeout if timeout is None else timeout,
            consecutive,
        )

    def wait_for_ingress_address(
        self,
        name: str,
        namespace: str = eksconverge.DEFAULT_NAMESPACE,
        timeout: float | None = None,
    ) -> str:
        address: list[str] = []

        def has_address() -> bool:
            live = self.retry.call(
                self.client.get,
                "networking.k8s.io/v1",
                "Ingress",
                name,
                namespace,
                resource=f"Ingress/{namespace}/{name}",
            )
            for entry in ((live or {}).get("status", {}) or {}).get("loadBalancer", {}).get("ingress", []) or []:
                found = entry.get("hostname") or entry.get("ip")
                if found:
                    address.append(found)
                    return True
            return False

        self._wait(
            has_address,
            f"ingress {namespace}/{name} to get a load balancer address",
            self.settings.ingress_timeout if timeout is None else timeout,
        )
        return address[0]

    def service_cluster_ip(self, name: str, namespace: str = eksconverge.DEFAULT_NAMESPACE) -> str | None:
        live = self.retry.call(self.client.get, "v1", "Service", name, namespace, resource=f"Service/{namespace}/{name}")
        if live is None:
            return None
        cluster_ip = live.get("spec", {}).get("clusterIP")
        return cluster_ip if cluster_ip and cluster_ip != "None" else None

    def ensure_fargate_coredns(self) -> eksconverge.ResourceStatus:
        """Drop the pod template annotation that pins CoreDNS to EC2 nodes."""
        key = f"Deployment/{eksconverge.KUBE_SYSTEM_NAMESPACE}/coredns"
        live = self.retry.call(
            self.client.get, "apps/v1", "Deployment", "coredns", eksconverge.KUBE_SYSTEM_NAMESPACE, resource=key
        )
        if live is None:
            logger.warning("%s not found; skipping the Fargate scheduling patch", key)
            return eksconverge.ResourceStatus.UNCHANGED

        annotations = live.get("spec", {}).get("template", {}).get("metadata", {}).get("annotations") or {}
        if annotations.get(eksconverge.FARGATE_COMPUTE_TYPE_ANNOTATION) != "ec2":
            return eksconverge.ResourceStatus.UNCHANGED

        patch = {"spec": {"template": {"metadata": {"annotations": {eksconverge.FARGATE_COMPUTE_TYPE_ANNOTATION: None}}}}}
        self.retry.call(
            self.client.patch,
            "apps/v1",
            "Deployment",
            "coredns",
            eksconverge.KUBE_SYSTEM_NAMESPACE,
            patch,
            resource=key,
        )
        logger.info("removed %s from %s", eksconverge.FARGATE_COMPUTE_TYPE_ANNOTATION, key)
        return eksconverge.ResourceStatus.UPDATED
