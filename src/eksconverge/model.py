from __future__ import annotations

import copy
import dataclasses
import pathlib
import re
import typing

import deepmerge  # type: ignore
import yaml

import eksconverge
import eksconverge.junkdrawer
from eksconverge.errors import SpecValidationError

K8S_VERSION_REGEX = re.compile(r"^1\.[0-9]{2}$")
DNS_LABEL_REGEX = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
CLUSTER_NAME_REGEX = re.compile(r"^[0-9A-Za-z][A-Za-z0-9\-_]{0,99}$")

DEFAULT_FARGATE_NAMESPACES = (eksconverge.DEFAULT_NAMESPACE, eksconverge.KUBE_SYSTEM_NAMESPACE)


def _invalid(msg: str) -> typing.NoReturn:
    raise SpecValidationError(msg)


def _check_dns_label(kind: str, value: str) -> None:
    if not DNS_LABEL_REGEX.match(value) or len(value) > 63:
        _invalid(f"{kind} {value!r} is not a valid DNS-1123 label")


@dataclasses.dataclass(frozen=True)
class SubnetIDs:
    private: tuple[str, ...] = ()
    public: tuple[str, ...] = ()

    @property
    def all(self) -> tuple[str, ...]:
        return self.private + self.public


@dataclasses.dataclass(frozen=True)
class NodeGroupConfig:
    name: str = "default"
    instance_types: tuple[str, ...] = ("t3.medium",)
    min_size: int = 1
    desired_size: int = 2
    max_size: int = 3
    ami_type: str = "AL2023_x86_64_STANDARD"
    disk_size: int = 20
    labels: dict[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        if not self.instance_types:
            _invalid(f"node group {self.name!r}: instance_types must not be empty")
        if not 0 <= self.min_size <= self.desired_size <= self.max_size:
            _invalid(
                f"node group {self.name!r}: expected min_size <= desired_size <= max_size, "
                f"got {self.min_size} / {self.desired_size} / {self.max_size}"
            )
        if self.max_size < 1:
            _invalid(f"node group {self.name!r}: max_size must be at least 1")


@dataclasses.dataclass(frozen=True)
class FargateSelector:
    namespace: str
    labels: dict[str, str] = dataclasses.field(default_factory=dict)

    def as_aws(self) -> dict[str, typing.Any]:
        selector: dict[str, typing.Any] = {"namespace": self.namespace}
        if self.labels:
            selector["labels"] = dict(self.labels)
        return selector


@dataclasses.dataclass(frozen=True)
class FargateProfileConfig:
    name: str
    selectors: tuple[FargateSelector, ...]

    def __post_init__(self):
        if not self.selectors:
            _invalid(f"fargate profile {self.name!r}: at least one selector is required")
        if len(self.selectors) > 5:
            _invalid(f"fargate profile {self.name!r}: at most 5 selectors are allowed")


def default_fargate_profiles() -> tuple[FargateProfileConfig, ...]:
    return (
        FargateProfileConfig(
            name="fp-default",
            selectors=tuple(FargateSelector(namespace=ns) for ns in DEFAULT_FARGATE_NAMESPACES),
        ),
    )


@dataclasses.dataclass(frozen=True)
class ClusterSpec:
    name: str
    region: str
    version: str
    subnets: SubnetIDs
    node_mode: eksconverge.NodeMode = eksconverge.NodeMode.FARGATE
    ingress: bool = True
    vpc_id: str | None = None
    endpoint_public_access: bool = True
    endpoint_private_access: bool = True
    tags: dict[str, str] = dataclasses.field(default_factory=dict)
    node_group: NodeGroupConfig = dataclasses.field(default_factory=NodeGroupConfig)
    fargate_profiles: tuple[FargateProfileConfig, ...] = dataclasses.field(default_factory=default_fargate_profiles)
    cluster_role_name: str | None = None
    node_role_name: str | None = None
    pod_execution_role_name: str | None = None

    def __post_init__(self):
        if not CLUSTER_NAME_REGEX.match(self.name or ""):
            _invalid(f"cluster name {self.name!r} must start with an alphanumeric and be at most 100 characters")
        if not eksconverge.REGION_REGEX.match(self.region or ""):
            _invalid(f"region {self.region!r} is not a valid AWS region name")
        if not K8S_VERSION_REGEX.match(str(self.version)):
            _invalid(f"kubernetes version {self.version!r} must look like '1.29'")
        if len(self.subnets.private) < 1:
            _invalid(f"cluster {self.name!r}: at least one private subnet is required")
        if self.ingress and len(self.subnets.public) < 1:
            _invalid(f"cluster {self.name!r}: at least one public subnet is required when ingress is requested")
        if len(set(self.subnets.all)) != len(self.subnets.all):
            _invalid(f"cluster {self.name!r}: subnet ids must be unique")
        if not self.endpoint_public_access and not self.endpoint_private_access:
            _invalid(f"cluster {self.name!r}: at least one of public or private endpoint access must be enabled")
        if self.node_mode == eksconverge.NodeMode.FARGATE:
            names = [p.name for p in self.fargate_profiles]
            if not names:
                _invalid(f"cluster {self.name!r}: Fargate mode needs at least one fargate profile")
            if len(set(names)) != len(names):
                _invalid(f"cluster {self.name!r}: fargate profile names must be unique")

    @property
    def key(self) -> tuple[str, str]:
        return self.region, self.name

    @property
    def cluster_role(self) -> str:
        return self.cluster_role_name or eksconverge.junkdrawer.truncate_name(f"{self.name}-eks-cluster")

    @property
    def node_role(self) -> str:
        return self.node_role_name or eksconverge.junkdrawer.truncate_name(f"{self.name}-eks-node")

    @property
    def pod_execution_role(self) -> str:
        return self.pod_execution_role_name or eksconverge.junkdrawer.truncate_name(
            f"{self.name}-eks-fargate-pod-execution"
        )

    @property
    def fargate_namespaces(self) -> set[str]:
        return {s.namespace for p in self.fargate_profiles for s in p.selectors}


@dataclasses.dataclass(frozen=True)
class OIDCBinding:
    cluster_name: str
    issuer_url: str
    provider_arn: str

    @property
    def url_tail(self) -> str:
        return self.issuer_url.replace("https://", "", 1)


@dataclasses.dataclass(frozen=True)
class ServiceAccountRef:
    namespace: str
    name: str

    @property
    def subject(self) -> str:
        """The value used in the `sub` condition of an IRSA trust policy."""
        return f"system:serviceaccount:{self.namespace}:{self.name}"


@dataclasses.dataclass(frozen=True)
class IAMPolicyBinding:
    policy_name: str
    policy_document: dict[str, typing.Any]
    role_name: str
    service_account: ServiceAccountRef

    def policy_arn(self, account_id: str) -> str:
        return f"arn:aws:iam::{account_id}:policy/{self.policy_name}"

    def role_arn(self, account_id: str) -> str:
        return f"arn:aws:iam::{account_id}:role/{self.role_name}"


@dataclasses.dataclass(frozen=True)
class ContainerPort:
    container_port: int
    name: str | None = None
    protocol: str = "TCP"

    def __post_init__(self):
        if not 0 < self.container_port < 65536:
            _invalid(f"container port {self.container_port} is out of range")


@dataclasses.dataclass(frozen=True)
class WorkloadManifest:
    name: str
    image: str
    replicas: int = 1
    namespace: str = eksconverge.DEFAULT_NAMESPACE
    ports: tuple[ContainerPort, ...] = ()
    labels: dict[str, str] = dataclasses.field(default_factory=dict)
    # passed through verbatim into the pod spec; never interpreted
    affinity: dict[str, typing.Any] | None = None
    node_selector: dict[str, str] = dataclasses.field(default_factory=dict)
    container_name: str | None = None

    def __post_init__(self):
        _check_dns_label("deployment name", self.name)
        _check_dns_label("namespace", self.namespace)
        if self.replicas < 0:
            _invalid(f"deployment {self.name!r}: replicas must not be negative")
        if not self.image.strip():
            _invalid(f"deployment {self.name!r}: image must not be empty")

    @property
    def selector_labels(self) -> dict[str, str]:
        return self.labels or {"app": self.name}


@dataclasses.dataclass(frozen=True)
class ServicePort:
    port: int
    target_port: int | str | None = None
    name: str | None = None
    protocol: str = "TCP"


@dataclasses.dataclass(frozen=True)
class ServiceSpec:
    name: str
    selector: dict[str, str]
    ports: tuple[ServicePort, ...]
    namespace: str = eksconverge.DEFAULT_NAMESPACE
    type: str = "ClusterIP"

    def __post_init__(self):
        _check_dns_label("service name", self.name)
        if not self.ports:
            _invalid(f"service {self.name!r}: at least one port is required")
        if self.type not in ("ClusterIP", "NodePort", "LoadBalancer"):
            _invalid(f"service {self.name!r}: unsupported type {self.type!r}")


@dataclasses.dataclass(frozen=True)
class IngressSpec:
    name: str
    service: str
    service_port: int
    namespace: str = eksconverge.DEFAULT_NAMESPACE
    path: str = "/"
    path_type: str = "Prefix"
    ingress_class: str = "alb"
    scheme: str = "internet-facing"
    target_type: str = "ip"
    lb_tags: dict[str, str] = dataclasses.field(default_factory=dict)
    annotations: dict[str, str] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        _check_dns_label("ingress name", self.name)
        if self.scheme not in ("internet-facing", "internal"):
            _invalid(f"ingress {self.name!r}: scheme must be 'internet-facing' or 'internal'")
        if self.target_type not in ("ip", "instance"):
            _invalid(f"ingress {self.name!r}: target_type must be 'ip' or 'instance'")


@dataclasses.dataclass(frozen=True)
class ControllerRelease:
    release_name: str = eksconverge.AWS_LBC_NAME
    chart: str = eksconverge.AWS_LBC_NAME
    chart_version: str = eksconverge.AWS_LBC_CHART_VERSION
    repository: str = eksconverge.AWS_LBC_CHART_REPO
    namespace: str = eksconverge.KUBE_SYSTEM_NAMESPACE
    service_account_name: str = eksconverge.AWS_LBC_NAME
    replicas: int = 2
    extra_values: dict[str, typing.Any] = dataclasses.field(default_factory=dict)

    @property
    def deployment_name(self) -> str:
        return self.release_name

    @property
    def service_account(self) -> ServiceAccountRef:
        return ServiceAccountRef(namespace=self.namespace, name=self.service_account_name)

    def values(self, cluster_name: str, region: str, vpc_id: str) -> dict[str, typing.Any]:
        """Helm values for the chart. vpcId and region are set explicitly since Fargate pods have no IMDS."""
        return deepmerge.always_merger.merge(
            {
                "clusterName": cluster_name,
                "region": region,
                "vpcId": vpc_id,
                "replicaCount": self.replicas,
                "serviceAccount": {
                    "create": False,
                    "name": self.service_account_name,
                },
            },
            copy.deepcopy(self.extra_values),
        )


@dataclasses.dataclass(frozen=True)
class SpecBundle:
    cluster: ClusterSpec
    controller: ControllerRelease = dataclasses.field(default_factory=ControllerRelease)
    workloads: tuple[WorkloadManifest, ...] = ()
    services: tuple[ServiceSpec, ...] = ()
    ingresses: tuple[IngressSpec, ...] = ()
    extra_manifests: tuple[dict[str, typing.Any], ...] = ()

    def __post_init__(self):
        if self.ingresses and not self.cluster.ingress:
            _invalid(f"cluster {self.cluster.name!r} declares ingresses but has ingress disabled")

        services = {(s.namespace, s.name) for s in self.services}
        for ing in self.ingresses:
            if (ing.namespace, ing.service) not in services:
                _invalid(f"ingress {ing.name!r} references unknown service {ing.namespace}/{ing.service}")

        if self.cluster.node_mode == eksconverge.NodeMode.FARGATE:
            covered = self.cluster.fargate_namespaces
            if self.cluster.ingress and self.controller.namespace not in covered:
                _invalid(
                    f"controller namespace {self.controller.namespace!r} is not selected by any fargate profile"
                )
            for wl in self.workloads:
                if wl.namespace not in covered:
                    _invalid(
                        f"deployment {wl.name!r} runs in namespace {wl.namespace!r} which no fargate profile selects"
                    )


def _normalise_keys(d: typing.Any, kind: str = "spec") -> dict[str, typing.Any]:
    if not isinstance(d, dict):
        _invalid(f"{kind} must be a mapping, got {type(d).__name__}")
    return {k.replace("-", "_"): v for k, v in d.items()}


def _build(cls: type, kind: str, spec: typing.Any) -> typing.Any:
    try:
        return cls(**_normalise_keys(spec, kind))
    except TypeError as e:
        msg = f"invalid {kind}: {e}"
        raise SpecValidationError(msg) from e


def _load_subnets(subnets: typing.Any) -> SubnetIDs:
    # a bare list names the private subnets
    if isinstance(subnets, list):
        return SubnetIDs(private=tuple(subnets))
    subnets = _normalise_keys(subnets, "subnets")
    return SubnetIDs(
        private=tuple(subnets.get("private", []) or []),
        public=tuple(subnets.get("public", []) or []),
    )


def load_cluster_spec(spec: dict[str, typing.Any]) -> ClusterSpec:
    spec = _normalise_keys(copy.deepcopy(spec), "cluster")
    spec["subnets"] = _load_subnets(spec.pop("subnets", {}) or {})

    if "node_mode" in spec:
        raw_mode = str(spec["node_mode"]).lower()
        modes = {m.value.lower(): m for m in eksconverge.NodeMode}
        if raw_mode not in modes:
            _invalid(f"node_mode must be one of {sorted(m.value for m in eksconverge.NodeMode)}")
        spec["node_mode"] = modes[raw_mode]

    if "version" in spec:
        spec["version"] = str(spec["version"])

    if "node_group" in spec:
        ng = _normalise_keys(spec.pop("node_group") or {}, "node_group")
        if "instance_types" in ng:
            ng["instance_types"] = tuple(ng["instance_types"])
        spec["node_group"] = _build(NodeGroupConfig, "node_group", ng)

    if "fargate_profiles" in spec:
        profiles = []
        for p in spec.pop("fargate_profiles") or []:
            p = _normalise_keys(p, "fargate profile")
            selectors = tuple(_build(FargateSelector, "fargate selector", s) for s in p.pop("selectors", []) or [])
            profiles.append(_build(FargateProfileConfig, "fargate profile", p | {"selectors": selectors}))
        spec["fargate_profiles"] = tuple(profiles)

    return _build(ClusterSpec, "cluster", spec)


def load_workload(spec: dict[str, typing.Any]) -> WorkloadManifest:
    spec = _normalise_keys(copy.deepcopy(spec), "workload")
    spec["ports"] = tuple(_build(ContainerPort, "container port", p) for p in spec.get("ports", []) or [])
    return _build(WorkloadManifest, "workload", spec)


def load_service(spec: dict[str, typing.Any]) -> ServiceSpec:
    spec = _normalise_keys(copy.deepcopy(spec), "service")
    spec["ports"] = tuple(_build(ServicePort, "service port", p) for p in spec.get("ports", []) or [])
    return _build(ServiceSpec, "service", spec)


def load_bundle_dict(
    doc: dict[str, typing.Any],
    *,
    cluster_name: str | None = None,
    region: str | None = None,
    source: str = "<memory>",
) -> SpecBundle:
    if not isinstance(doc, dict):
        _invalid(f"{source}: expected a mapping at the top level")

    if doc.get("kind") != eksconverge.BUNDLE_KIND or doc.get("apiVersion") != eksconverge.API_VERSION:
        _invalid(f"mismatched bundle kind={doc.get('kind')!r} apiVersion={doc.get('apiVersion')!r} in {source!r}")

    spec = _normalise_keys(copy.deepcopy(doc.get("spec") or {}), "spec")
    overrides = {k: v for k, v in {"name": cluster_name, "region": region}.items() if v is not None}
    cluster_dict = deepmerge.always_merger.merge(_normalise_keys(spec.pop("cluster", {}) or {}, "cluster"), overrides)

    if "ingress" not in cluster_dict:
        cluster_dict["ingress"] = bool(spec.get("ingresses"))

    cluster = load_cluster_spec(cluster_dict)

    controller_dict = _normalise_keys(spec.pop("controller", {}) or {}, "controller")
    if "chart_version" in controller_dict:
        controller_dict["chart_version"] = str(controller_dict["chart_version"])

    extra = spec.pop("manifests", []) or []
    for i, manifest in enumerate(extra):
        if not isinstance(manifest, dict) or not {"apiVersion", "kind", "metadata"} <= manifest.keys():
            _invalid(f"{source}: manifests[{i}] needs apiVersion, kind and metadata")

    return SpecBundle(
        cluster=cluster,
        controller=_build(ControllerRelease, "controller", controller_dict),
        workloads=tuple(load_workload(w) for w in spec.pop("workloads", []) or []),
        services=tuple(load_service(s) for s in spec.pop("services", []) or []),
        ingresses=tuple(_build(IngressSpec, "ingress", i) for i in spec.pop("ingresses", []) or []),
        extra_manifests=tuple(extra),
    )


def load_bundle(
    path: pathlib.Path,
    *,
    cluster_name: str | None = None,
    region: str | None = None,
) -> SpecBundle:
    try:
        doc = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        msg = f"{str(path)!r} is not valid YAML: {e}"
        raise SpecValidationError(msg) from e

    return load_bundle_dict(doc, cluster_name=cluster_name, region=region, source=str(path))
