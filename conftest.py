"""Shared pytest fixtures for eksconverge tests.

The fakes below keep state in memory and answer the way the real APIs do, so a
reconciler run twice against them must converge and then go quiet:
- FakeIAM / FakeEKS / FakeEC2 / FakeSTS: boto3 client stand-ins raising botocore ClientError
- FakeKube: `KubeClient` with JSON merge patch and server-side defaulting
- FakeHelm: `Helm` stand-in that deploys the controller Deployment into FakeKube
- FakeBackend: wires all of them into `eksconverge.driver.Driver`
"""

from __future__ import annotations

import copy
import dataclasses
import hashlib
import json
import pathlib
import typing

import botocore.exceptions
import kubernetes.client.exceptions
import pytest

import eksconverge
import eksconverge.actions
import eksconverge.aws_iam
import eksconverge.aws_reconciler
import eksconverge.helm
import eksconverge.kube_reconciler
import eksconverge.model
import eksconverge.settings

ACCOUNT_ID = "123456789012"
REGION = "us-east-1"
VPC_ID = "vpc-0demo"


def client_error(code: str, operation: str = "Operation", status: int = 400) -> botocore.exceptions.ClientError:
    return botocore.exceptions.ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} from fake"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def merge_patch(target: typing.Any, patch: typing.Any) -> typing.Any:
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================================================
# AWS fakes
# ============================================================================


class _FakeAWSClient:
    MUTATING: typing.ClassVar[frozenset[str]] = frozenset()

    def __init__(self):
        self.calls: list[tuple[str, dict[str, typing.Any]]] = []
        self.failures: dict[str, list[Exception]] = {}

    def fail(self, method: str, *errors: Exception) -> None:
        """Raise `errors` in order on the next calls to `method`."""
        self.failures.setdefault(method, []).extend(errors)

    def _record(self, method: str, kwargs: dict[str, typing.Any]) -> None:
        self.calls.append((method, kwargs))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def mutating_calls(self) -> list[str]:
        return [name for name, _ in self.calls if name in self.MUTATING]

    def reset_calls(self) -> None:
        self.calls.clear()


class FakeIAM(_FakeAWSClient):
    MUTATING = frozenset(
        [
            "add_client_id_to_open_id_connect_provider",
            "attach_role_policy",
            "create_open_id_connect_provider",
            "create_policy",
            "create_role",
            "delete_policy",
            "delete_policy_version",
            "delete_role",
            "detach_role_policy",
        ]
    )

    def __init__(self, account_id: str = ACCOUNT_ID):
        super().__init__()
        self.account_id = account_id
        self.roles: dict[str, dict[str, typing.Any]] = {}
        self.policies: dict[str, dict[str, typing.Any]] = {}
        self.oidc_providers: dict[str, dict[str, typing.Any]] = {}

    def _role(self, name: str) -> dict[str, typing.Any]:
        if name not in self.roles:
            raise client_error("NoSuchEntity", "GetRole", 404)
        return self.roles[name]

    def get_role(self, RoleName):
        self._record("get_role", {"RoleName": RoleName})
        role = self._role(RoleName)
        return {"Role": {k: copy.deepcopy(v) for k, v in role.items() if k != "Attached"}}

    def create_role(self, RoleName, AssumeRolePolicyDocument, Description="", Tags=()):
        self._record("create_role", {"RoleName": RoleName, "Tags": list(Tags)})
        if RoleName in self.roles:
            raise client_error("EntityAlreadyExists", "CreateRole", 409)
        self.roles[RoleName] = {
            "RoleName": RoleName,
            "Arn": f"arn:aws:iam::{self.account_id}:role/{RoleName}",
            "AssumeRolePolicyDocument": json.loads(AssumeRolePolicyDocument),
            "Attached": set(),
        }
        return {"Role": {"RoleName": RoleName, "Arn": self.roles[RoleName]["Arn"]}}

    def list_attached_role_policies(self, RoleName, Marker=None):
        self._record("list_attached_role_policies", {"RoleName": RoleName})
        role = self._role(RoleName)
        return {
            "AttachedPolicies": [{"PolicyArn": arn, "PolicyName": arn.rsplit("/", 1)[-1]} for arn in sorted(role["Attached"])],
            "IsTruncated": False,
        }

    def attach_role_policy(self, RoleName, PolicyArn):
        self._record("attach_role_policy", {"RoleName": RoleName, "PolicyArn": PolicyArn})
        self._role(RoleName)["Attached"].add(PolicyArn)

    def detach_role_policy(self, RoleName, PolicyArn):
        self._record("detach_role_policy", {"RoleName": RoleName, "PolicyArn": PolicyArn})
        self._role(RoleName)["Attached"].discard(PolicyArn)

    def delete_role(self, RoleName):
        self._record("delete_role", {"RoleName": RoleName})
        self._role(RoleName)
        del self.roles[RoleName]

    def _policy(self, arn: str) -> dict[str, typing.Any]:
        if arn not in self.policies:
            raise client_error("NoSuchEntity", "GetPolicy", 404)
        return self.policies[arn]

    def get_policy(self, PolicyArn):
        self._record("get_policy", {"PolicyArn": PolicyArn})
        self._policy(PolicyArn)
        return {"Policy": {"Arn": PolicyArn, "DefaultVersionId": "v1"}}

    def get_policy_version(self, PolicyArn, VersionId):
        self._record("get_policy_version", {"PolicyArn": PolicyArn, "VersionId": VersionId})
        return {"PolicyVersion": {"VersionId": VersionId, "Document": copy.deepcopy(self._policy(PolicyArn)["Document"])}}

    def create_policy(self, PolicyName, PolicyDocument, Description="", Tags=()):
        self._record("create_policy", {"PolicyName": PolicyName})
        arn = f"arn:aws:iam::{self.account_id}:policy/{PolicyName}"
        if arn in self.policies:
            raise client_error("EntityAlreadyExists", "CreatePolicy", 409)
        self.policies[arn] = {"PolicyName": PolicyName, "Document": json.loads(PolicyDocument)}
        return {"Policy": {"Arn": arn, "DefaultVersionId": "v1"}}

    def list_policy_versions(self, PolicyArn):
        self._record("list_policy_versions", {"PolicyArn": PolicyArn})
        self._policy(PolicyArn)
        return {"Versions": [{"VersionId": "v1", "IsDefaultVersion": True}]}

    def delete_policy_version(self, PolicyArn, VersionId):
        self._record("delete_policy_version", {"PolicyArn": PolicyArn, "VersionId": VersionId})

    def delete_policy(self, PolicyArn):
        self._record("delete_policy", {"PolicyArn": PolicyArn})
        self._policy(PolicyArn)
        del self.policies[PolicyArn]

    def list_open_id_connect_providers(self):
        self._record("list_open_id_connect_providers", {})
        return {"OpenIDConnectProviderList": [{"Arn": arn} for arn in sorted(self.oidc_providers)]}

    def create_open_id_connect_provider(self, Url, ClientIDList, Tags=()):
        self._record("create_open_id_connect_provider", {"Url": Url, "ClientIDList": list(ClientIDList)})
        arn = f"arn:aws:iam::{self.account_id}:oidc-provider/{Url.removeprefix('https://')}"
        if arn in self.oidc_providers:
            raise client_error("EntityAlreadyExists", "CreateOpenIDConnectProvider", 409)
        self.oidc_providers[arn] = {"Url": Url, "ClientIDList": list(ClientIDList)}
        return {"OpenIDConnectProviderArn": arn}

    def get_open_id_connect_provider(self, OpenIDConnectProviderArn):
        self._record("get_open_id_connect_provider", {"OpenIDConnectProviderArn": OpenIDConnectProviderArn})
        if OpenIDConnectProviderArn not in self.oidc_providers:
            raise client_error("NoSuchEntity", "GetOpenIDConnectProvider", 404)
        return copy.deepcopy(self.oidc_providers[OpenIDConnectProviderArn])

    def add_client_id_to_open_id_connect_provider(self, OpenIDConnectProviderArn, ClientID):
        self._record("add_client_id_to_open_id_connect_provider", {"ClientID": ClientID})
        self.oidc_providers[OpenIDConnectProviderArn]["ClientIDList"].append(ClientID)


class FakeEKS(_FakeAWSClient):
    MUTATING = frozenset(
        [
            "create_cluster",
            "create_fargate_profile",
            "create_nodegroup",
            "tag_resource",
            "update_nodegroup_config",
        ]
    )

    def __init__(self, region: str = REGION, account_id: str = ACCOUNT_ID, polls_until_active: int = 1):
        super().__init__()
        self.region = region
        self.account_id = account_id
        self.polls_until_active = polls_until_active
        self.clusters: dict[str, dict[str, typing.Any]] = {}
        self.fargate_profiles: dict[tuple[str, str], dict[str, typing.Any]] = {}
        self.nodegroups: dict[tuple[str, str], dict[str, typing.Any]] = {}

    def _advance(self, obj: dict[str, typing.Any]) -> dict[str, typing.Any]:
        if obj["status"] in ("CREATING", "UPDATING"):
            obj["_polls"] -= 1
            if obj["_polls"] <= 0:
                obj["status"] = "ACTIVE"
        return {k: copy.deepcopy(v) for k, v in obj.items() if not k.startswith("_")}

    def add_cluster(self, name: str, *, subnets: list[str], version: str = "1.29", status: str = "ACTIVE", **extra):
        oidc_id = hashlib.md5(name.encode(), usedforsecurity=False).hexdigest().upper()
        self.clusters[name] = {
            "name": name,
            "arn": f"arn:aws:eks:{self.region}:{self.account_id}:cluster/{name}",
            "version": version,
            "endpoint": f"https://{oidc_id}.gr7.{self.region}.eks.amazonaws.com",
            "roleArn": f"arn:aws:iam::{self.account_id}:role/{name}-eks-cluster",
            "status": status,
            "resourcesVpcConfig": {
                "subnetIds": list(subnets),
                "vpcId": extra.pop("vpc_id", VPC_ID),
                "endpointPublicAccess": extra.pop("endpoint_public_access", True),
                "endpointPrivateAccess": extra.pop("endpoint_private_access", True),
            },
            "identity": {"oidc": {"issuer": f"https://oidc.eks.{self.region}.amazonaws.com/id/{oidc_id}"}},
            "certificateAuthority": {"data": "LS0tLS1CRUdJTi1DRVJUSUZJQ0FURS0tLS0t"},
            "tags": extra.pop("tags", {}),
            "_polls": self.polls_until_active,
        }
        return self.clusters[name]

    def describe_cluster(self, name):
        self._record("describe_cluster", {"name": name})
        if name not in self.clusters:
            raise client_error("ResourceNotFoundException", "DescribeCluster", 404)
        return {"cluster": self._advance(self.clusters[name])}

    def create_cluster(self, name, version, roleArn, resourcesVpcConfig, tags=None):
        self._record("create_cluster", {"name": name, "version": version, "roleArn": roleArn})
        if name in self.clusters:
            raise client_error("ResourceInUseException", "CreateCluster", 409)
        cluster = self.add_cluster(
            name,
            subnets=resourcesVpcConfig["subnetIds"],
            version=version,
            status="CREATING",
            endpoint_public_access=resourcesVpcConfig.get("endpointPublicAccess", True),
            endpoint_private_access=resourcesVpcConfig.get("endpointPrivateAccess", False),
            tags=dict(tags or {}),
        )
        cluster["roleArn"] = roleArn
        return {"cluster": {"name": name, "arn": cluster["arn"], "status": "CREATING"}}

    def tag_resource(self, resourceArn, tags):
        self._record("tag_resource", {"resourceArn": resourceArn, "tags": tags})
        for cluster in self.clusters.values():
            if cluster["arn"] == resourceArn:
                cluster["tags"].update(tags)

    def describe_fargate_profile(self, clusterName, fargateProfileName):
        self._record("describe_fargate_profile", {"clusterName": clusterName, "fargateProfileName": fargateProfileName})
        key = (clusterName, fargateProfileName)
        if key not in self.fargate_profiles:
            raise client_error("ResourceNotFoundException", "DescribeFargateProfile", 404)
        return {"fargateProfile": self._advance(self.fargate_profiles[key])}

    def create_fargate_profile(self, fargateProfileName, clusterName, podExecutionRoleArn, subnets, selectors, tags=None):
        self._record("create_fargate_profile", {"fargateProfileName": fargateProfileName, "clusterName": clusterName})
        creating = [p for (c, _), p in self.fargate_profiles.items() if c == clusterName and p["status"] == "CREATING"]
        if creating:
            raise client_error("ResourceInUseException", "CreateFargateProfile", 409)
        self.fargate_profiles[(clusterName, fargateProfileName)] = {
            "fargateProfileName": fargateProfileName,
            "clusterName": clusterName,
            "podExecutionRoleArn": podExecutionRoleArn,
            "subnets": list(subnets),
            "selectors": copy.deepcopy(selectors),
            "status": "CREATING",
            "_polls": self.polls_until_active,
        }
        return {"fargateProfile": {"fargateProfileName": fargateProfileName, "status": "CREATING"}}

    def describe_nodegroup(self, clusterName, nodegroupName):
        self._record("describe_nodegroup", {"clusterName": clusterName, "nodegroupName": nodegroupName})
        key = (clusterName, nodegroupName)
        if key not in self.nodegroups:
            raise client_error("ResourceNotFoundException", "DescribeNodegroup", 404)
        return {"nodegroup": self._advance(self.nodegroups[key])}

    def create_nodegroup(
        self,
        clusterName,
        nodegroupName,
        scalingConfig,
        subnets,
        instanceTypes,
        amiType,
        nodeRole,
        diskSize=20,
        labels=None,
        tags=None,
    ):
        self._record("create_nodegroup", {"clusterName": clusterName, "nodegroupName": nodegroupName})
        self.nodegroups[(clusterName, nodegroupName)] = {
            "nodegroupName": nodegroupName,
            "clusterName": clusterName,
            "scalingConfig": dict(scalingConfig),
            "subnets": list(subnets),
            "instanceTypes": list(instanceTypes),
            "amiType": amiType,
            "nodeRole": nodeRole,
            "status": "CREATING",
            "_polls": self.polls_until_active,
        }
        return {"nodegroup": {"nodegroupName": nodegroupName, "status": "CREATING"}}

    def update_nodegroup_config(self, clusterName, nodegroupName, scalingConfig):
        self._record("update_nodegroup_config", {"scalingConfig": scalingConfig})
        ng = self.nodegroups[(clusterName, nodegroupName)]
        ng["scalingConfig"] = dict(scalingConfig)
        ng["status"] = "UPDATING"
        ng["_polls"] = self.polls_until_active
        return {"update": {"status": "InProgress"}}


class FakeEC2(_FakeAWSClient):
    def __init__(self, subnets: dict[str, str] | None = None):
        super().__init__()
        self.subnets = subnets if subnets is not None else {
            "priv-a": VPC_ID,
            "priv-b": VPC_ID,
            "pub-a": VPC_ID,
            "pub-b": VPC_ID,
        }

    def describe_subnets(self, SubnetIds):
        self._record("describe_subnets", {"SubnetIds": list(SubnetIds)})
        missing = [s for s in SubnetIds if s not in self.subnets]
        if missing:
            raise client_error("InvalidSubnetID.NotFound", "DescribeSubnets")
        return {"Subnets": [{"SubnetId": s, "VpcId": self.subnets[s]} for s in SubnetIds]}


class FakeSTS(_FakeAWSClient):
    def __init__(self, account_id: str = ACCOUNT_ID):
        super().__init__()
        self.account_id = account_id

    def get_caller_identity(self):
        self._record("get_caller_identity", {})
        return {
            "UserId": "AIDAFAKE",
            "Account": self.account_id,
            "Arn": f"arn:aws:iam::{self.account_id}:user/ops",
        }


# ============================================================================
# Kubernetes and Helm fakes
# ============================================================================


def _kube_key(kind: str, namespace: str | None, name: str) -> tuple[str, str, str]:
    return kind, namespace or eksconverge.DEFAULT_NAMESPACE, name


class FakeKube:
    """In-memory `KubeClient` applying JSON merge patches with server-side defaults."""

    def __init__(self, *, auto_ready: bool = True, lb_hostname: str | None = None):
        self.objects: dict[tuple[str, str, str], dict[str, typing.Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.readiness: dict[tuple[str, str], list[bool]] = {}
        self.auto_ready = auto_ready
        self.lb_hostname = lb_hostname or "k8s-default-nginx-0a1b2c3d4e-123456789.us-east-1.elb.amazonaws.com"
        self._ips = 0

    def fail(self, verb: str, kind: str, *errors: Exception) -> None:
        self.failures.setdefault((verb, kind), []).extend(errors)

    def _record(self, verb: str, kind: str, name: str) -> None:
        self.calls.append((verb, kind, name))
        pending = self.failures.get((verb, kind))
        if pending:
            raise pending.pop(0)

    def mutations(self) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if c[0] in ("create", "patch", "delete")]

    def _set_deployment_status(self, obj: dict[str, typing.Any], ready: bool) -> None:
        replicas = obj["spec"].get("replicas", 1)
        count = replicas if ready else 0
        obj["status"] = {
            "observedGeneration": obj["metadata"]["generation"],
            "replicas": replicas,
            "updatedReplicas": count,
            "availableReplicas": count,
            "readyReplicas": count,
        }

    def _default(self, obj: dict[str, typing.Any]) -> None:
        kind = obj["kind"]
        if kind == "Deployment":
            spec = obj.setdefault("spec", {})
            spec.setdefault("revisionHistoryLimit", 10)
            spec.setdefault("strategy", {"type": "RollingUpdate"})
            pod = spec.setdefault("template", {}).setdefault("spec", {})
            pod.setdefault("restartPolicy", "Always")
            pod.setdefault("dnsPolicy", "ClusterFirst")
            for container in pod.get("containers", []):
                container.setdefault("imagePullPolicy", "IfNotPresent")
                container.setdefault("terminationMessagePolicy", "File")
        elif kind == "Service":
            spec = obj.setdefault("spec", {})
            if "clusterIP" not in spec:
                self._ips += 1
                spec["clusterIP"] = f"10.100.0.{self._ips}"
            for port in spec.get("ports", []):
                port.setdefault("targetPort", port["port"])
        elif kind == "Ingress" and self.lb_hostname:
            obj["status"] = {"loadBalancer": {"ingress": [{"hostname": self.lb_hostname}]}}

    def put(self, manifest: dict[str, typing.Any]) -> dict[str, typing.Any]:
        """Store an object the way a controller outside the test would, without recording a call."""
        obj = copy.deepcopy(manifest)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("namespace", eksconverge.DEFAULT_NAMESPACE)
        metadata.setdefault("uid", f"uid-{len(self.objects) + 1}")
        metadata["generation"] = metadata.get("generation", 0) + 1
        self._default(obj)
        if obj["kind"] == "Deployment":
            self._set_deployment_status(obj, self.auto_ready)
        self.objects[_kube_key(obj["kind"], metadata["namespace"], metadata["name"])] = obj
        return obj

    def get(self, api_version, kind, name, namespace):
        self._record("get", kind, name)
        obj = self.objects.get(_kube_key(kind, namespace, name))
        if obj is None:
            return None
        queue = self.readiness.get((namespace, name))
        if kind == "Deployment" and queue:
            self._set_deployment_status(obj, queue.pop(0))
        return copy.deepcopy(obj)

    def create(self, manifest):
        metadata = manifest["metadata"]
        self._record("create", manifest["kind"], metadata["name"])
        if _kube_key(manifest["kind"], metadata.get("namespace"), metadata["name"]) in self.objects:
            raise kubernetes.client.exceptions.ApiException(status=409, reason="AlreadyExists")
        return copy.deepcopy(self.put(manifest))

    def patch(self, api_version, kind, name, namespace, patch):
        self._record("patch", kind, name)
        key = _kube_key(kind, namespace, name)
        if key not in self.objects:
            raise kubernetes.client.exceptions.ApiException(status=404, reason="NotFound")

        current = self.objects[key]
        updated = merge_patch(current, patch)
        generation = current["metadata"]["generation"]
        updated["metadata"]["generation"] = generation + 1 if updated.get("spec") != current.get("spec") else generation
        self._default(updated)
        if kind == "Deployment":
            self._set_deployment_status(updated, self.auto_ready)
        self.objects[key] = updated
        return copy.deepcopy(updated)

    def delete(self, api_version, kind, name, namespace):
        self._record("delete", kind, name)
        self.objects.pop(_kube_key(kind, namespace, name), None)

    def find(self, kind: str, name: str, namespace: str = eksconverge.DEFAULT_NAMESPACE) -> dict[str, typing.Any] | None:
        return self.objects.get(_kube_key(kind, namespace, name))


class FakeHelm:
    """Release bookkeeping like `helm`, deploying the controller Deployment into a FakeKube."""

    def __init__(self, kube: FakeKube):
        self.kube = kube
        self.releases: dict[tuple[str, str], list[eksconverge.helm.HelmRelease]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = {}

    def _record(self, verb: str, release: str) -> None:
        self.calls.append((verb, release))
        pending = self.failures.get(verb)
        if pending:
            raise pending.pop(0)

    def mutations(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] not in ("status", "history")]

    def _deploy(self, release: eksconverge.helm.HelmRelease) -> None:
        self.kube.put(
            {
                "apiVersion": "apps/v1",
                "kind": "Deployment",
                "metadata": {"name": release.name, "namespace": release.namespace},
                "spec": {
                    "replicas": release.values.get("replicaCount", 1),
                    "selector": {"matchLabels": {"app.kubernetes.io/name": release.name}},
                    "template": {
                        "metadata": {"labels": {"app.kubernetes.io/name": release.name}},
                        "spec": {"containers": [{"name": "controller", "image": f"lbc:{release.chart_version}"}]},
                    },
                },
            }
        )

    def set_release(self, name: str, namespace: str, *, status: str = "deployed", chart_version: str, values: dict):
        history = self.releases.setdefault((namespace, name), [])
        release = eksconverge.helm.HelmRelease(
            name=name,
            namespace=namespace,
            revision=len(history) + 1,
            status=status,
            chart_version=chart_version,
            values=copy.deepcopy(values),
        )
        history.append(release)
        return release

    def status(self, release, namespace):
        self._record("status", release)
        history = self.releases.get((namespace, release))
        return history[-1] if history else None

    def history(self, release, namespace):
        self._record("history", release)
        return [dataclasses.asdict(r) for r in self.releases.get((namespace, release), [])]

    def upgrade_install(self, release, chart, *, namespace, version, repository, values):
        self._record("upgrade_install", release)
        self._deploy(self.set_release(release, namespace, chart_version=version, values=values))

    def rollback(self, release, namespace, revision=None):
        self._record("rollback", release)
        history = self.releases[(namespace, release)]
        target = history[-2] if revision is None else history[revision - 1]
        self._deploy(self.set_release(release, namespace, chart_version=target.chart_version, values=target.values))

    def uninstall(self, release, namespace):
        self._record("uninstall", release)
        self.releases.pop((namespace, release), None)
        self.kube.objects.pop(_kube_key("Deployment", namespace, release), None)


# ============================================================================
# Backend
# ============================================================================


class FakeBackend:
    """Stands in for `eksconverge.driver.AWSBackend`, handing out reconcilers wired to the fakes."""

    def __init__(self, settings: eksconverge.settings.Settings, clock: FakeClock, **fakes):
        self.settings = settings
        self.clock = clock
        self.cancel = None
        self.eks: FakeEKS = fakes.get("eks") or FakeEKS()
        self.iam_client: FakeIAM = fakes.get("iam") or FakeIAM()
        self.ec2: FakeEC2 = fakes.get("ec2") or FakeEC2()
        self.sts: FakeSTS = fakes.get("sts") or FakeSTS()
        self.kube: FakeKube = fakes.get("kube") or FakeKube()
        self.helm_fake: FakeHelm = fakes.get("helm") or FakeHelm(self.kube)
        self.authenticated = True

    def whoami(self, region):
        if not self.authenticated:
            return {}, False
        return self.sts.get_caller_identity(), True

    def aws_reconciler(self, region):
        return eksconverge.aws_reconciler.AWSReconciler(
            region,
            eks=self.eks,
            iam=self.iam_client,
            ec2=self.ec2,
            sts=self.sts,
            settings=self.settings,
            cancel=self.cancel,
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    def iam(self, region, log):
        retry = dataclasses.replace(self.settings.retry_policy, sleep=self.clock.sleep)
        return eksconverge.aws_iam.IAM(self.iam_client, retry, log)

    def kube_reconciler(self, cluster, region):
        return eksconverge.kube_reconciler.KubernetesReconciler(
            self.kube,
            self.settings,
            cancel=self.cancel,
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    def helm(self, cluster, region):
        return self.helm_fake

    def mutating_calls(self) -> list[typing.Any]:
        return (
            self.eks.mutating_calls()
            + self.iam_client.mutating_calls()
            + self.kube.mutations()
            + self.helm_fake.mutations()
        )

    def reset_calls(self) -> None:
        for client in (self.eks, self.iam_client, self.ec2, self.sts):
            client.reset_calls()
        self.kube.calls.clear()
        self.helm_fake.calls.clear()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cache_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    monkeypatch.setenv("EKSCONVERGE_CACHE", str(tmp_path / "cache"))
    return tmp_path / "cache"


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(cache_dir: pathlib.Path) -> eksconverge.settings.Settings:
    return eksconverge.settings.Settings(
        max_attempts=3,
        base_delay=1.0,
        max_delay=4.0,
        poll_interval=5.0,
        cluster_timeout=300.0,
        capacity_timeout=120.0,
        rollout_timeout=60.0,
        controller_timeout=60.0,
        controller_healthy_polls=3,
        ingress_timeout=60.0,
    )


@pytest.fixture
def fake_iam() -> FakeIAM:
    return FakeIAM()


@pytest.fixture
def fake_eks() -> FakeEKS:
    return FakeEKS()


@pytest.fixture
def fake_ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def fake_sts() -> FakeSTS:
    return FakeSTS()


@pytest.fixture
def fake_kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def fake_helm(fake_kube: FakeKube) -> FakeHelm:
    return FakeHelm(fake_kube)


@pytest.fixture
def backend(settings, fake_clock, fake_eks, fake_iam, fake_ec2, fake_sts, fake_kube, fake_helm) -> FakeBackend:
    return FakeBackend(
        settings,
        fake_clock,
        eks=fake_eks,
        iam=fake_iam,
        ec2=fake_ec2,
        sts=fake_sts,
        kube=fake_kube,
        helm=fake_helm,
    )


@pytest.fixture
def aws_reconciler(backend: FakeBackend) -> eksconverge.aws_reconciler.AWSReconciler:
    return backend.aws_reconciler(REGION)


@pytest.fixture
def kube_reconciler(backend: FakeBackend) -> eksconverge.kube_reconciler.KubernetesReconciler:
    return backend.kube_reconciler(None, REGION)


@pytest.fixture
def action_log() -> eksconverge.actions.ActionLog:
    return eksconverge.actions.ActionLog()


@pytest.fixture
def demo_spec() -> eksconverge.model.ClusterSpec:
    return eksconverge.model.ClusterSpec(
        name="demo-cluster",
        region=REGION,
        version="1.29",
        subnets=eksconverge.model.SubnetIDs(private=("priv-a", "priv-b"), public=("pub-a", "pub-b")),
        node_mode=eksconverge.NodeMode.FARGATE,
    )


@pytest.fixture
def demo_bundle_doc() -> dict[str, typing.Any]:
    return {
        "apiVersion": eksconverge.API_VERSION,
        "kind": eksconverge.BUNDLE_KIND,
        "spec": {
            "cluster": {
                "name": "demo-cluster",
                "region": REGION,
                "version": "1.29",
                "node-mode": "Fargate",
                "subnets": {"private": ["priv-a", "priv-b"], "public": ["pub-a", "pub-b"]},
            },
            "workloads": [
                {
                    "name": "nginx",
                    "image": "public.ecr.aws/nginx/nginx:1.23",
                    "replicas": 3,
                    "ports": [{"container-port": 80, "name": "http"}],
                }
            ],
            "services": [
                {
                    "name": "nginx",
                    "selector": {"app": "nginx"},
                    "ports": [{"port": 80, "target-port": 80}],
                }
            ],
            "ingresses": [
                {
                    "name": "nginx",
                    "service": "nginx",
                    "service-port": 80,
                }
            ],
        },
    }


@pytest.fixture
def demo_bundle(demo_bundle_doc) -> eksconverge.model.SpecBundle:
    return eksconverge.model.load_bundle_dict(demo_bundle_doc)
