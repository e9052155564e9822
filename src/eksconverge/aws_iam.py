from __future__ import annotations

import json
import typing

import eksconverge
import eksconverge.actions
import eksconverge.errors
import eksconverge.retry


class AwsRole(typing.TypedDict, total=False):
    RoleName: str
    Arn: str
    AssumeRolePolicyDocument: dict[str, typing.Any]


def service_trust_policy(service: str) -> dict[str, typing.Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def build_irsa_role_assume_role_policy(
    namespace: str,
    managed_account_id: str,
    oidc_url_tails: list[str],
    service_accounts: list[str],
) -> dict[str, typing.Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Effect": "Allow",
                "Principal": {
                    "Federated": f"arn:aws:iam::{managed_account_id}:oidc-provider/{oidc_url_tail}",
                },
                "Condition": {
                    "StringEquals": {
                        f"{oidc_url_tail}:aud": eksconverge.STS_AUDIENCE,
                    }
                    | {
                        f"{oidc_url_tail}:sub": [
                            f"system:serviceaccount:{namespace}:{account}" for account in service_accounts
                        ],
                    }
                },
            }
            for oidc_url_tail in oidc_url_tails
        ],
    }


def trust_policy_allows(document: dict[str, typing.Any], provider_arn: str, subject: str) -> bool:
    """Whether an assume-role policy lets `subject` federate through `provider_arn`."""
    statements = document.get("Statement", [])
    if isinstance(statements, dict):
        statements = [statements]

    for statement in statements:
        if statement.get("Effect") != "Allow":
            continue
        if statement.get("Principal", {}).get("Federated") != provider_arn:
            continue

        conditions = statement.get("Condition", {})
        for operator in ("StringEquals", "StringLike"):
            for key, value in conditions.get(operator, {}).items():
                if not key.endswith(":sub"):
                    continue
                values = value if isinstance(value, list) else [value]
                if subject in values:
                    return True

    return False


def _normalise_document(document: typing.Any) -> typing.Any:
    if isinstance(document, str):
        return json.loads(document)
    return document


def policy_documents_equal(left: typing.Any, right: typing.Any) -> bool:
    def canonical(doc: typing.Any) -> typing.Any:
        if isinstance(doc, dict):
            return {k: canonical(v) for k, v in doc.items()}
        if isinstance(doc, list):
            items = [canonical(v) for v in doc]
            return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
        return doc

    return canonical(_normalise_document(left)) == canonical(_normalise_document(right))


def aws_tags(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


class IAM:
    """Idempotent lookup-or-create helpers over a boto3 IAM client."""

    def __init__(
        self,
        client: typing.Any,
        retry: eksconverge.retry.RetryPolicy,
        log: eksconverge.actions.ActionLog,
    ):
        self.client = client
        self.retry = retry
        self.log = log

    def call(self, method: str, resource: str, **kwargs: typing.Any) -> typing.Any:
        return self.retry.call(getattr(self.client, method), resource=resource, **kwargs)

    def get_role(self, role_name: str) -> AwsRole | None:
        try:
            return self.call("get_role", f"iam:role/{role_name}", RoleName=role_name)["Role"]
        except eksconverge.errors.ConvergeError as e:
            if eksconverge.errors.is_aws_not_found(e.__cause__):
                return None
            raise

    def ensure_role(
        self,
        role_name: str,
        trust_policy: dict[str, typing.Any],
        tags: dict[str, str],
        description: str = "",
    ) -> str | None:
        """Return the ARN of `role_name`, creating it if needed.

        Returns None only in verify mode when the role does not exist. An existing
        role keeps its trust policy; callers that care compare it themselves.
        """
        role = self.get_role(role_name)
        if role is not None:
            return role["Arn"]

        if not self.log.record("create", f"iam:role/{role_name}"):
            return None

        response = self.call(
            "create_role",
            f"iam:role/{role_name}",
            RoleName=role_name,
            AssumeRolePolicyDocument=json.dumps(trust_policy),
            Description=description,
            Tags=aws_tags(tags),
        )
        return response["Role"]["Arn"]

    def attached_policy_arns(self, role_name: str) -> set[str]:
        arns: set[str] = set()
        kwargs: dict[str, typing.Any] = {"RoleName": role_name}

        while True:
            response = self.call("list_attached_role_policies", f"iam:role/{role_name}", **kwargs)
            arns.update(p["PolicyArn"] for p in response.get("AttachedPolicies", []))
            if not response.get("IsTruncated"):
                return arns
            kwargs["Marker"] = response["Marker"]

    def ensure_role_policies(self, role_name: str, policy_arns: typing.Iterable[str], *, role_exists: bool) -> None:
        attached = self.attached_policy_arns(role_name) if role_exists else set()

        for policy_arn in policy_arns:
            if policy_arn in attached:
                continue
            if self.log.record("attach", f"iam:role/{role_name}", policy_arn):
                self.call("attach_role_policy", f"iam:role/{role_name}", RoleName=role_name, PolicyArn=policy_arn)

    def get_policy_document(self, policy_arn: str) -> dict[str, typing.Any] | None:
        try:
            policy = self.call("get_policy", policy_arn, PolicyArn=policy_arn)["Policy"]
        except eksconverge.errors.ConvergeError as e:
            if eksconverge.errors.is_aws_not_found(e.__cause__):
                return None
            raise

        version = self.call(
            "get_policy_version",
            policy_arn,
            PolicyArn=policy_arn,
            VersionId=policy["DefaultVersionId"],
        )["PolicyVersion"]

        return _normalise_document(version["Document"])

    def ensure_policy(
        self,
        policy_name: str,
        policy_arn: str,
        document: dict[str, typing.Any],
        tags: dict[str, str],
        description: str = "",
    ) -> bool:
        """Create the managed policy unless it exists. Existing documents are never rewritten."""
        live = self.get_policy_document(policy_arn)
        if live is not None:
            if not policy_documents_equal(live, document):
                self.log.warn(f"IAM policy {policy_arn} differs from the expected document; leaving it unchanged")
            return True

        if not self.log.record("create", f"iam:policy/{policy_name}"):
            return False

        self.call(
            "create_policy",
            f"iam:policy/{policy_name}",
            PolicyName=policy_name,
            PolicyDocument=json.dumps(document),
            Description=description,
            Tags=aws_tags(tags),
        )
        return True

    def delete_role(self, role_name: str) -> None:
        if self.get_role(role_name) is None:
            return

        for policy_arn in sorted(self.attached_policy_arns(role_name)):
            if self.log.record("detach", f"iam:role/{role_name}", policy_arn):
                self.call("detach_role_policy", f"iam:role/{role_name}", RoleName=role_name, PolicyArn=policy_arn)

        if self.log.record("delete", f"iam:role/{role_name}"):
            self.call("delete_role", f"iam:role/{role_name}", RoleName=role_name)

    def delete_policy(self, policy_arn: str) -> None:
        if self.get_policy_document(policy_arn) is None:
            return

        versions = self.call("list_policy_versions", policy_arn, PolicyArn=policy_arn).get("Versions", [])
        for version in versions:
            if version.get("IsDefaultVersion"):
                continue
            if self.log.record("delete", policy_arn, f"version {version['VersionId']}"):
                self.call("delete_policy_version", policy_arn, PolicyArn=policy_arn, VersionId=version["VersionId"])

        if self.log.record("delete", policy_arn):
            self.call("delete_policy", policy_arn, PolicyArn=policy_arn)


def aws_lbc_policy_document() -> dict[str, typing.Any]:
    """IAM permissions for the AWS Load Balancer Controller.

    Ref: https://raw.githubusercontent.com/kubernetes-sigs/aws-load-balancer-controller/v2.7.1/docs/install/iam_policy.json
    """
    cluster_tag_null = {"Null": {"aws:ResourceTag/elbv2.k8s.aws/cluster": "false"}}

    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["iam:CreateServiceLinkedRole"],
                "Resource": "*",
                "Condition": {"StringEquals": {"iam:AWSServiceName": "elasticloadbalancing.amazonaws.com"}},
            },
            {
                "Effect": "Allow",
                "Action": [
                    "ec2:DescribeAccountAttributes",
                    "ec2:DescribeAddresses",
                    "ec2:DescribeAvailabilityZones",
                    "ec2:DescribeInternetGateways",
                    "ec2:DescribeVpcs",
                    "ec2:DescribeVpcPeeringConnections",
                    "ec2:DescribeSubnets",
                    "ec2:DescribeSecurityGroups",
                    "ec2:DescribeInstances",
                    "ec2:DescribeNetworkInterfaces",
                    "ec2:DescribeTags",
                    "ec2:GetCoipPoolUsage",
                    "ec2:DescribeCoipPools",
                    "elasticloadbalancing:DescribeLoadBalancers",
                    "elasticloadbalancing:DescribeLoadBalancerAttributes",
                    "elasticloadbalancing:DescribeListeners",
                    "elasticloadbalancing:DescribeListenerCertificates",
                    "elasticloadbalancing:DescribeSSLPolicies",
                    "elasticloadbalancing:DescribeRules",
                    "elasticloadbalancing:DescribeTargetGroups",
                    "elasticloadbalancing:DescribeTargetGroupAttributes",
                    "elasticloadbalancing:DescribeTargetHealth",
                    "elasticloadbalancing:DescribeTags",
                ],
                "Resource": "*",
            },
            {
                "Effect": "Allow",
                "Action": [
                    "cognito-idp:DescribeUserPoolClient",
                    "acm:ListCertificates",
                    "acm:DescribeCertificate",
                    "iam:ListServerCertificates",
                    "iam:GetServerCertificate",
                    "waf-regional:GetWebACL",
                    "waf-regional:GetWebACLForResource",
                    "waf-regional:AssociateWebACL",
                    "waf-regional:DisassociateWebACL",
                    "wafv2:GetWebACL",
                    "wafv2:GetWebACLForResource",
                    "wafv2:AssociateWebACL",
                    "wafv2:DisassociateWebACL",
                    "shield:GetSubscriptionState",
                    "shield:DescribeProtection",
                    "shield:CreateProtection",
                    "shield:DeleteProtection",
                ],
                "Resource": "*",
            },
            {
                "Effect": "Allow",
                "Action": ["ec2:AuthorizeSecurityGroupIngress", "ec2:RevokeSecurityGroupIngress"],
                "Resource": "*",
            },
            {"Effect": "Allow", "Action": ["ec2:CreateSecurityGroup"], "Resource": "*"},
            {
                "Effect": "Allow",
                "Action": ["ec2:CreateTags"],
                "Resource": "arn:aws:ec2:*:*:security-group/*",
                "Condition": {
                    "StringEquals": {"ec2:CreateAction": "CreateSecurityGroup"},
                    "Null": {"aws:RequestTag/elbv2.k8s.aws/cluster": "false"},
                },
            },
            {
                "Effect": "Allow",
                "Action": ["ec2:CreateTags", "ec2:DeleteTags"],
                "Resource": "arn:aws:ec2:*:*:security-group/*",
                "Condition": {
                    "Null": {
                        "aws:RequestTag/elbv2.k8s.aws/cluster": "true",
                        "aws:ResourceTag/elbv2.k8s.aws/cluster": "false",
                    }
                },
            },
            {
                "Effect": "Allow",
                "Action": [
                    "ec2:AuthorizeSecurityGroupIngress",
                    "ec2:RevokeSecurityGroupIngress",
                    "ec2:DeleteSecurityGroup",
                ],
                "Resource": "*",
                "Condition": cluster_tag_null,
            },
            {
                "Effect": "Allow",
                "Action": ["elasticloadbalancing:CreateLoadBalancer", "elasticloadbalancing:CreateTargetGroup"],
                "Resource": "*",
                "Condition": {"Null": {"aws:RequestTag/elbv2.k8s.aws/cluster": "false"}},
            },
            {
                "Effect": "Allow",
                "Action": [
                    "elasticloadbalancing:CreateListener",
                    "elasticloadbalancing:DeleteListener",
                    "elasticloadbalancing:CreateRule",
                    "elasticloadbalancing:DeleteRule",
                ],
                "Resource": "*",
            },
            {
                "Effect": "Allow",
                "Action": ["elasticloadbalancing:AddTags", "elasticloadbalancing:RemoveTags"],
                "Resource": [
                    "arn:aws:elasticloadbalancing:*:*:targetgroup/*/*",
                    "arn:aws:elasticloadbalancing:*:*:loadbalancer/net/*/*",
                    "arn:aws:elasticloadbalancing:*:*:loadbalancer/app/*/*",
                ],
                "Condition": {
                    "Null": {
                        "aws:RequestTag/elbv2.k8s.aws/cluster": "true",
                        "aws:ResourceTag/elbv2.k8s.aws/cluster": "false",
                    }
                },
            },
            {
                "Effect": "Allow",
                "Action": ["elasticloadbalancing:AddTags", "elasticloadbalancing:RemoveTags"],
                "Resource": [
                    "arn:aws:elasticloadbalancing:*:*:listener/net/*/*/*",
                    "arn:aws:elasticloadbalancing:*:*:listener/app/*/*/*",
                    "arn:aws:elasticloadbalancing:*:*:listener-rule/net/*/*/*",
                    "arn:aws:elasticloadbalancing:*:*:listener-rule/app/*/*/*",
                ],
            },
            {
                "Effect": "Allow",
                "Action": [
                    "elasticloadbalancing:ModifyLoadBalancerAttributes",
                    "elasticloadbalancing:SetIpAddressType",
                    "elasticloadbalancing:SetSecurityGroups",
                    "elasticloadbalancing:SetSubnets",
                    "elasticloadbalancing:DeleteLoadBalancer",
                    "elasticloadbalancing:ModifyTargetGroup",
                    "elasticloadbalancing:ModifyTargetGroupAttributes",
                    "elasticloadbalancing:DeleteTargetGroup",
                ],
                "Resource": "*",
                "Condition": cluster_tag_null,
            },
            {
                "Effect": "Allow",
                "Action": ["elasticloadbalancing:AddTags"],
                "Resource": [
                    "arn:aws:elasticloadbalancing:*:*:targetgroup/*/*",
                    "arn:aws:elasticloadbalancing:*:*:loadbalancer/net/*/*",
                    "arn:aws:elasticloadbalancing:*:*:loadbalancer/app/*/*",
                ],
                "Condition": {
                    "StringEquals": {
                        "elasticloadbalancing:CreateAction": ["CreateTargetGroup", "CreateLoadBalancer"],
                    },
                    "Null": {"aws:RequestTag/elbv2.k8s.aws/cluster": "false"},
                },
            },
            {
                "Effect": "Allow",
                "Action": ["elasticloadbalancing:RegisterTargets", "elasticloadbalancing:DeregisterTargets"],
                "Resource": "arn:aws:elasticloadbalancing:*:*:targetgroup/*/*",
            },
            {
                "Effect": "Allow",
                "Action": [
                    "elasticloadbalancing:SetWebAcl",
                    "elasticloadbalancing:ModifyListener",
                    "elasticloadbalancing:AddListenerCertificates",
                    "elasticloadbalancing:RemoveListenerCertificates",
                    "elasticloadbalancing:ModifyRule",
                ],
                "Resource": "*",
            },
        ],
    }
