from __future__ import annotations

import dataclasses
import logging
import threading
import time
import typing

import boto3

import eksconverge
import eksconverge.actions
import eksconverge.aws_iam
import eksconverge.errors
import eksconverge.model
import eksconverge.oidc
import eksconverge.retry
import eksconverge.settings

logger = logging.getLogger(__name__)

CLUSTER_BROKEN_STATUSES = ("DELETING", "FAILED")
CAPACITY_BROKEN_STATUSES = ("CREATE_FAILED", "DELETE_FAILED", "DELETING", "DEGRADED")


@dataclasses.dataclass
class ClusterState:
    spec: eksconverge.model.ClusterSpec
    account_id: str
    vpc_id: str
    cluster: eksconverge.AWSCluster | None = None
    oidc: eksconverge.model.OIDCBinding | None = None
    log: eksconverge.actions.ActionLog = dataclasses.field(default_factory=eksconverge.actions.ActionLog)

    @property
    def actions(self) -> list[eksconverge.actions.Action]:
        return self.log.actions

    @property
    def ready(self) -> bool:
        return self.cluster is not None and self.cluster.get("status") == "ACTIVE" and self.oidc is not None

    @property
    def converged(self) -> bool:
        return self.ready and not self.log.changed


def cluster_divergence(spec: eksconverge.model.ClusterSpec, cluster: eksconverge.AWSCluster, vpc_id: str) -> list[str]:
    """Names of the live cluster attributes that differ from `spec`."""
    vpc_config = cluster.get("resourcesVpcConfig", {})
    fields = []

    if cluster.get("version") != spec.version:
        fields.append("version")
    if set(vpc_config.get("subnetIds", [])) != set(spec.subnets.all):
        fields.append("subnets")
    if vpc_config.get("vpcId") != vpc_id:
        fields.append("vpc")
    if vpc_config.get("endpointPublicAccess", True) != spec.endpoint_public_access:
        fields.append("endpoint_public_access")
    if vpc_config.get("endpointPrivateAccess", False) != spec.endpoint_private_access:
        fields.append("endpoint_private_access")

    return fields


def _selector_key(selectors: typing.Iterable[dict[str, typing.Any]]) -> list[tuple[str, tuple[tuple[str, str], ...]]]:
    return sorted((s["namespace"], tuple(sorted((s.get("labels") or {}).items()))) for s in selectors)


class AWSReconciler:
    """Converges the EKS control plane, OIDC provider and node capacity for a `ClusterSpec`."""

    def __init__(
        self,
        region: str,
        eks: typing.Any,
        iam: typing.Any,
        ec2: typing.Any,
        sts: typing.Any,
        settings: eksconverge.settings.Settings | None = None,
        *,
        cancel: threading.Event | None = None,
        clock: typing.Callable[[], float] = time.monotonic,
        sleep: typing.Callable[[float], None] = time.sleep,
    ):
        self.region = region
        self.eks = eks
        self.iam = iam
        self.ec2 = ec2
        self.sts = sts
        self.settings = settings or eksconverge.settings.Settings()
        self.retry = dataclasses.replace(self.settings.retry_policy, sleep=sleep)
        self.cancel = cancel
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_session(
        cls,
        session: boto3.Session,
        settings: eksconverge.settings.Settings,
        *,
        cancel: threading.Event | None = None,
    ) -> AWSReconciler:
        config = eksconverge.aws_client_config(settings.connect_timeout, settings.read_timeout)
        return cls(
            session.region_name,
            eks=session.client("eks", config=config),
            iam=session.client("iam", config=config),
            ec2=session.client("ec2", config=config),
            sts=session.client("sts", config=config),
            settings=settings,
            cancel=cancel,
        )

    def reconcile(self, spec: eksconverge.model.ClusterSpec) -> ClusterState:
        return self._converge(spec, eksconverge.actions.ActionLog(apply=True))

    def verify(self, spec: eksconverge.model.ClusterSpec) -> ClusterState:
        """Read-only pass: anything that would be created or changed is reported as a pending action."""
        return self._converge(spec, eksconverge.actions.ActionLog(apply=False))

    def describe_cluster(self, name: str) -> eksconverge.AWSCluster | None:
        try:
            return self.retry.call(self.eks.describe_cluster, resource=f"eks:cluster/{name}", name=name)["cluster"]
        except eksconverge.errors.ConvergeError as e:
            if eksconverge.errors.is_aws_not_found(e.__cause__):
                return None
            raise

    def _converge(self, spec: eksconverge.model.ClusterSpec, log: eksconverge.actions.ActionLog) -> ClusterState:
        if spec.region != self.region:
            msg = f"cluster {spec.name!r} is declared in {spec.region} but the AWS session targets {self.region}"
            raise eksconverge.errors.ConfigurationMismatchError(msg, resource=f"eks:cluster/{spec.name}")

        iam = eksconverge.aws_iam.IAM(self.iam, self.retry, log)
        tags = eksconverge.managed_tags(spec.name, spec.tags)

        account_id = self.retry.call(self.sts.get_caller_identity, resource="sts")["Account"]
        vpc_id = self.check_network(spec)
        state = ClusterState(spec=spec, account_id=account_id, vpc_id=vpc_id, log=log)

        self._checkpoint("ensuring the cluster role")
        role_arn = iam.ensure_role(
            spec.cluster_role,
            eksconverge.aws_iam.service_trust_policy("eks.amazonaws.com"),
            tags,
            description=f"EKS control plane role for {spec.name}",
        )
        iam.ensure_role_policies(spec.cluster_role, [eksconverge.EKS_CLUSTER_POLICY_ARN], role_exists=role_arn is not None)

        self._checkpoint("ensuring the cluster")
        state.cluster = self._ensure_cluster(spec, vpc_id, role_arn, tags, log)
        if state.cluster is None or state.cluster.get("status") != "ACTIVE":
            log.record("create", f"iam:oidc-provider/{spec.name}", "after the cluster is active")
            log.record("create", f"eks:capacity/{spec.name}", str(spec.node_mode))
            return state

        if "arn" in state.cluster:
            arn_region, arn_account, _ = eksconverge.parse_cluster_arn(state.cluster["arn"])
            if (arn_region, arn_account) != (spec.region, account_id):
                msg = f"cluster {state.cluster['arn']} is not in {spec.region} of account {account_id}"
                raise eksconverge.errors.ConfigurationMismatchError(msg, resource=f"eks:cluster/{spec.name}")

        self._ensure_cluster_tags(state.cluster, tags, log)

        self._checkpoint("associating the OIDC provider")
        state.oidc = eksconverge.oidc.ensure_provider(
            iam,
            spec.name,
            eksconverge.get_oidc_issuer(state.cluster),
            account_id,
            tags,
        )

        self._checkpoint("ensuring node capacity")
        if spec.node_mode == eksconverge.NodeMode.FARGATE:
            self._ensure_fargate(spec, iam, tags, log)
        else:
            self._ensure_nodegroup(spec, iam, tags, log)

        return state

    def _checkpoint(self, what: str) -> None:
        eksconverge.retry.check_cancelled(self.cancel, what)

    def check_network(self, spec: eksconverge.model.ClusterSpec) -> str:
        """Ensure every subnet exists in the target region and all share one VPC; returns that VPC id."""
        response = self.retry.call(
            self.ec2.describe_subnets,
            resource=f"ec2:subnets/{spec.name}",
            SubnetIds=list(spec.subnets.all),
        )
        subnets = {s["SubnetId"]: s for s in response.get("Subnets", [])}

        missing = sorted(set(spec.subnets.all) - subnets.keys())
        if missing:
            msg = f"subnets {', '.join(missing)} were not found in {spec.region}"
            raise eksconverge.errors.ConfigurationMismatchError(msg, resource=f"ec2:subnets/{spec.name}")

        vpcs = {s["VpcId"] for s in subnets.values()}
        if len(vpcs) != 1:
            msg = f"subnets for cluster {spec.name!r} span several VPCs: {', '.join(sorted(vpcs))}"
            raise eksconverge.errors.ConfigurationMismatchError(msg, resource=f"ec2:subnets/{spec.name}", fields=["vpc"])

        vpc_id = vpcs.pop()
        if spec.vpc_id is not None and vpc_id != spec.vpc_id:
            msg = f"subnets for cluster {spec.name!r} belong to {vpc_id}, expected {spec.vpc_id}"
            raise eksconverge.errors.ConfigurationMismatchError(msg, resource=f"ec2:subnets/{spec.name}", fields=["vpc"])

        return vpc_id

    def _ensure_cluster(
        self,
        spec: eksconverge.model.ClusterSpec,
        vpc_id: str,
        role_arn: str | None,
        tags: dict[str, str],
        log: eksconverge.actions.ActionLog,
    ) -> eksconverge.AWSCluster | None:
        resource = f"eks:cluster/{spec.name}"
        cluster = self.describe_cluster(spec.name)

        if cluster is None:
            if not log.record("create", resource, f"kubernetes {spec.version}"):
                return None
            self.retry.call(
                self.eks.create_cluster,
                resource=resource,
                name=spec.name,
                version=spec.version,
                roleArn=role_arn,
                resourcesVpcConfig={
                    "subnetIds": list(spec.subnets.all),
                    "endpointPublicAccess": spec.endpoint_public_access,
                    "endpointPrivateAccess": spec.endpoint_private_access,
                },
                tags=tags,
            )
            return self._wait_for_cluster(spec.name) if log.apply else None

        status = cluster.get("status")
        if status in CLUSTER_BROKEN_STATUSES:
            msg = f"cluster {spec.name!r} is {status}; it must be repaired or removed by hand"
            raise eksconverge.errors.ConflictError(msg, resource=resource, fields=["status"])

        fields = cluster_divergence(spec, cluster, vpc_id)
        if fields:
            msg = f"cluster {spec.name!r} exists with a different {', '.join(fields)}; refusing to overwrite it"
            raise eksconverge.errors.ConflictError(msg, resource=resource, fields=fields)

        if status != "ACTIVE" and log.apply:
            logger.info("cluster %s is %s, waiting for ACTIVE", spec.name, status)
            return self._wait_for_cluster(spec.name)

        return cluster

    def _wait_for_cluster(self, name: str) -> eksconverge.AWSCluster:
        observed: dict[str, eksconverge.AWSCluster] = {}

        def active() -> bool:
            cluster = self.describe_cluster(name)
            if cluster is None:
                msg = f"cluster {name!r} disappeared while waiting for it to become active"
                raise eksconverge.errors.ConflictError(msg, resource=f"eks:cluster/{name}")
            if cluster.get("status") in CLUSTER_BROKEN_STATUSES:
                msg = f"cluster {name!r} went {cluster['status']} while waiting for it to become active"
                raise eksconverge.errors.ConflictError(msg, resource=f"eks:cluster/{name}", fields=["status"])
            observed["cluster"] = cluster
            return cluster.get("status") == "ACTIVE"

        self._wait(active, f"cluster {name} to become ACTIVE", self.settings.cluster_timeout)
        return observed["cluster"]

    def _wait(self, predicate: typing.Callable[[], bool], what: str, timeout: float) -> None:
        eksconverge.retry.wait_until(
            predicate,
            what=what,
            timeout=timeout,
            interval=self.settings.poll_interval,
            cancel=self.cancel,
            clock=self.clock,
            sleep=self.sleep,
        )

    def _ensure_cluster_tags(
        self,
        cluster: eksconverge.AWSCluster,
        tags: dict[str, str],
        log: eksconverge.actions.ActionLog,
    ) -> None:
        live = cluster.get("tags", {}) or {}
        missing = {k: v for k, v in tags.items() if live.get(k) != v}
        if not missing:
            return

        resource = f"eks:cluster/{cluster['name']}"
        if log.record("tag", resource, ", ".join(sorted(missing))):
            self.retry.call(self.eks.tag_resource, resource=resource, resourceArn=cluster["arn"], tags=missing)

    def _ensure_fargate(
        self,
        spec: eksconverge.model.ClusterSpec,
        iam: eksconverge.aws_iam.IAM,
        tags: dict[str, str],
        log: eksconverge.actions.ActionLog,
    ) -> None:
        role_arn = iam.ensure_role(
            spec.pod_execution_role,
            eksconverge.aws_iam.service_trust_policy("eks-fargate-pods.amazonaws.com"),
            tags,
            description=f"Fargate pod execution role for {spec.name}",
        )
        iam.ensure_role_policies(
            spec.pod_execution_role,
            [eksconverge.FARGATE_POD_EXECUTION_POLICY_ARN],
            role_exists=role_arn is not None,
        )

        # EKS rejects a second profile while another one in the cluster is still CREATING
        for profile in spec.fargate_profiles:
            self._checkpoint(f"ensuring fargate profile {profile.name}")
            self._ensure_fargate_profile(spec, profile, role_arn, tags, log)

    def _describe_fargate_profile(self, cluster_name: str, profile_name: str) -> dict[str, typing.Any] | None:
        try:
            return self.retry.call(
                self.eks.describe_fargate_profile,
                resource=f"eks:fargateprofile/{cluster_name}/{profile_name}",
                clusterName=cluster_name,
                fargateProfileName=profile_name,
            )["fargateProfile"]
        except eksconverge.errors.ConvergeError as e:
            if eksconverge.errors.is_aws_not_found(e.__cause__):
                return None
            raise

    def _ensure_fargate_profile(
        self,
        spec: eksconverge.model.ClusterSpec,
        profile: eksconverge.model.FargateProfileConfig,
        role_arn: str | None,
        tags: dict[str, str],
        log: eksconverge.actions.ActionLog,
    ) -> None:
        resource = f"eks:fargateprofile/{spec.name}/{profile.name}"
        selectors = [s.as_aws() for s in profile.selectors]
        live = self._describe_fargate_profile(spec.name, profile.name)

        if live is None:
            if not log.record("create", resource, ", ".join(s.namespace for s in profile.selectors)):
                return
            self.retry.call(
                self.eks.create_fargate_profile,
                resource=resource,
                fargateProfileName=profile.name,
                clusterName=spec.name,
                podExecutionRoleArn=role_arn,
                subnets=list(spec.subnets.private),
                selectors=selectors,
                tags=tags,
            )
        else:
            fields = []
            if _selector_key(live.get("selectors", [])) != _selector_key(selectors):
                fields.append("selectors")
            if set(live.get("subnets", [])) != set(spec.subnets.private):
                fields.append("subnets")
            if fields:
                msg = f"fargate profile {profile.name!r} differs in {', '.join(fields)}; profiles cannot be updated in place"
                raise eksconverge.errors.ConflictError(msg, resource=resource, fields=fields)
            if live.get("status") in CAPACITY_BROKEN_STATUSES:
                msg = f"fargate profile {profile.name!r} is {live['status']}"
                raise eksconverge.errors.ConflictError(msg, resource=resource, fields=["status"])
            if live.get("status") == "ACTIVE" or not log.apply:
                return

        def active() -> bool:
            current = self._describe_fargate_profile(spec.name, profile.name) or {}
            if current.get("status") in CAPACITY_BROKEN_STATUSES:
                msg = f"fargate profile {profile.name!r} went {current['status']}"
                raise eksconverge.errors.ConflictError(msg, resource=resource, fields=["status"])
            return current.get("status") == "ACTIVE"

        self._wait(active, f"fargate profile {profile.name} to become ACTIVE", self.settings.capacity_timeout)

    def _describe_nodegroup(self, cluster_name: str, nodegroup_name: str) -> dict[str, typing.Any] | None:
        try:
            return self.retry.call(
                self.eks.describe_nodegroup,
                resource=f"eks:nodegroup/{cluster_name}/{nodegroup_name}",
                clusterName=cluster_name,
                nodegroupName=nodegroup_name,
            )["nodegroup"]
        except eksconverge.errors.ConvergeError as e:
            if eksconverge.errors.is_aws_not_found(e.__cause__):
                return None
            raise

    def _ensure_nodegroup(
        self,
        spec: eksconverge.model.ClusterSpec,
        iam: eksconverge.aws_iam.IAM,
        tags: dict[str, str],
        log: eksconverge.actions.ActionLog,
    ) -> None:
        ng = spec.node_group
        resource = f"eks:nodegroup/{spec.name}/{ng.name}"
        role_arn = iam.ensure_role(
            spec.node_role,
            eksconverge.aws_iam.service_trust_policy("ec2.amazonaws.com"),
            tags,
            description=f"EKS worker node role for {spec.name}",
        )
        iam.ensure_role_policies(spec.node_role, eksconverge.NODE_POLICY_ARNS, role_exists=role_arn is not None)

        scaling = {"minSize": ng.min_size, "maxSize": ng.max_size, "desiredSize": ng.desired_size}
        live = self._describe_nodegroup(spec.name, ng.name)

        if live is None:
            if not log.record("create", resource, f"{ng.desired_size} x {','.join(ng.instance_types)}"):
                return
            self.retry.call(
                self.eks.create_nodegroup,
                resource=resource,
                clusterName=spec.name,
                nodegroupName=ng.name,
                scalingConfig=scaling,
                diskSize=ng.disk_size,
                subnets=list(spec.subnets.private),
                instanceTypes=list(ng.instance_types),
                amiType=ng.ami_type,
                nodeRole=role_arn,
                labels=dict(ng.labels),
                tags=tags,
            )
        else:
            fields = []
            if list(live.get("instanceTypes") or []) != list(ng.instance_types):
                fields.append("instance_types")
            if live.get("amiType") != ng.ami_type:
                fields.append("ami_type")
            if fields:
                msg = f"node group {ng.name!r} differs in {', '.join(fields)}; replace it by hand or rename it"
                raise eksconverge.errors.ConflictError(msg, resource=resource, fields=fields)
            if live.get("status") in CAPACITY_BROKEN_STATUSES:
                msg = f"node group {ng.name!r} is {live['status']}"
                raise eksconverge.errors.ConflictError(msg, resource=resource, fields=["status"])

            if live.get("scalingConfig") != scaling:
                if not log.record("update", resource, f"scaling {live.get('scalingConfig')} -> {scaling}"):
                    return
                self.retry.call(
                    self.eks.update_nodegroup_config,
                    resource=resource,
                    clusterName=spec.name,
                    nodegroupName=ng.name,
                    scalingConfig=scaling,
                )
            elif live.get("status") == "ACTIVE" or not log.apply:
                return

        def active() -> bool:
            current = self._describe_nodegroup(spec.name, ng.name) or {}
            if current.get("status") in CAPACITY_BROKEN_STATUSES:
                msg = f"node group {ng.name!r} went {current['status']}"
                raise eksconverge.errors.ConflictError(msg, resource=resource, fields=["status"])
            return current.get("status") == "ACTIVE"

        self._wait(active, f"node group {ng.name} to become ACTIVE", self.settings.capacity_timeout)
