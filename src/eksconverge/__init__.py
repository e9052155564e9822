from __future__ import annotations

import enum
import re
import typing

import boto3
import botocore.config
import yaml

API_VERSION = "eksconverge/v1"
BUNDLE_KIND = "ClusterBundle"

DEFAULT_NAMESPACE = "default"
KUBE_SYSTEM_NAMESPACE = "kube-system"
STS_AUDIENCE = "sts.amazonaws.com"

AWS_LBC_NAME = "aws-load-balancer-controller"
AWS_LBC_CHART_REPO = "https://aws.github.io/eks-charts"
AWS_LBC_CHART_VERSION = "1.7.1"

IRSA_ROLE_ARN_ANNOTATION = "eks.amazonaws.com/role-arn"
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"
FARGATE_COMPUTE_TYPE_ANNOTATION = "eks.amazonaws.com/compute-type"

EKS_CLUSTER_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"
FARGATE_POD_EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonEKSFargatePodExecutionRolePolicy"
NODE_POLICY_ARNS = (
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
)

EKS_CLUSTER_ARN_REGEX = re.compile(r"arn:aws[a-z-]*:eks:([a-z0-9-]+):([0-9]+):cluster/(.+)")
OIDC_ARN_URL_REGEX = re.compile("arn:aws:iam::[0-9]+:oidc-provider/(.*)")
REGION_REGEX = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-[0-9]$")


class NodeMode(enum.StrEnum):
    EC2 = "EC2"
    FARGATE = "Fargate"


class TagKeys(enum.StrEnum):
    MANAGED_BY = "eksconverge/managed-by"
    CLUSTER = "eksconverge/cluster"


class ResourceStatus(enum.StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    ERROR = "error"


class ControllerState(enum.IntEnum):
    """Load-balancer controller lifecycle; ordering follows install order."""

    ABSENT = 0
    POLICY_CREATED = 1
    SERVICE_ACCOUNT_BOUND = 2
    RELEASE_INSTALLED = 3
    READY = 4

    @property
    def label(self) -> str:
        return {
            ControllerState.ABSENT: "Absent",
            ControllerState.POLICY_CREATED: "PolicyCreated",
            ControllerState.SERVICE_ACCOUNT_BOUND: "ServiceAccountBound",
            ControllerState.RELEASE_INSTALLED: "ReleaseInstalled",
            ControllerState.READY: "Ready",
        }[self]


class AWSCallerIdentity(typing.TypedDict):
    UserId: str
    Account: str
    Arn: str


class AWSClusterVpcConfig(typing.TypedDict, total=False):
    subnetIds: list[str]
    securityGroupIds: list[str]
    clusterSecurityGroupId: str
    vpcId: str
    endpointPublicAccess: bool
    endpointPrivateAccess: bool


class AWSCluster(typing.TypedDict, total=False):
    name: str
    arn: str
    version: str
    endpoint: str
    roleArn: str
    status: str
    resourcesVpcConfig: AWSClusterVpcConfig
    identity: dict[str, typing.Any]
    certificateAuthority: dict[str, str]
    tags: dict[str, str]


def managed_tags(cluster_name: str, extra: typing.Mapping[str, str] | None = None) -> dict[str, str]:
    return dict(extra or {}) | {
        str(TagKeys.MANAGED_BY): "eksconverge",
        str(TagKeys.CLUSTER): cluster_name,
    }


def aws_client_config(connect_timeout: float = 10, read_timeout: float = 60) -> botocore.config.Config:
    # retries are owned by eksconverge.retry so each attempt is counted once
    return botocore.config.Config(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"mode": "standard", "total_max_attempts": 1},
    )


def aws_session(region: str, exe_env: dict[str, str] | None = None) -> boto3.Session:
    return boto3.Session(
        aws_access_key_id=exe_env.get("AWS_ACCESS_KEY_ID") if exe_env else None,
        aws_secret_access_key=exe_env.get("AWS_SECRET_ACCESS_KEY") if exe_env else None,
        aws_session_token=exe_env.get("AWS_SESSION_TOKEN") if exe_env else None,
        profile_name=exe_env.get("AWS_PROFILE") if exe_env else None,
        region_name=region,
    )


def aws_whoami(session: boto3.Session) -> tuple[AWSCallerIdentity, bool]:
    sts_client = session.client("sts", config=aws_client_config())

    try:
        response = sts_client.get_caller_identity()
    except Exception:
        return typing.cast(AWSCallerIdentity, {}), False
    else:
        return response, True


def parse_cluster_arn(arn: str) -> tuple[str, str, str]:
    """Split an EKS cluster ARN into (region, account_id, name)."""
    m = EKS_CLUSTER_ARN_REGEX.fullmatch(arn)
    if m is None:
        msg = f"not an EKS cluster ARN: {arn!r}"
        raise ValueError(msg)

    return m.group(1), m.group(2), m.group(3)


def get_oidc_issuer(cluster: AWSCluster) -> str:
    return cluster.get("identity", {}).get("oidc", {}).get("issuer", "")


def eks_kubeconfig(cluster: AWSCluster, region: str) -> dict[str, typing.Any]:
    """Build a kubeconfig for `cluster` that authenticates via `aws eks get-token`."""
    cluster_name = cluster["name"]

    return {
        "apiVersion": "v1",
        "clusters": [
            {
                "cluster": {
                    "certificate-authority-data": cluster["certificateAuthority"]["data"],
                    "server": cluster["endpoint"],
                },
                "name": cluster_name,
            }
        ],
        "contexts": [{"context": {"cluster": cluster_name, "user": cluster_name}, "name": cluster_name}],
        "current-context": cluster_name,
        "kind": "Config",
        "preferences": {},
        "users": [
            {
                "name": cluster_name,
                "user": {
                    "exec": {
                        "apiVersion": "client.authentication.k8s.io/v1beta1",
                        "args": ["--region", region, "eks", "get-token", "--cluster-name", cluster_name],
                        "command": "aws",
                        # NOTE: env is omitted so that the caller's AWS_* variables reach `aws eks get-token`
                        "env": None,
                        "provideClusterInfo": False,
                    }
                },
            }
        ],
    }


def eks_kubeconfig_yaml(cluster: AWSCluster, region: str) -> str:
    return yaml.dump(eks_kubeconfig(cluster, region), default_flow_style=False)
