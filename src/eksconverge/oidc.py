"""
IAM OIDC provider association for EKS clusters, the step `eksctl utils associate-iam-oidc-provider`
performs by hand.

No thumbprint is supplied: IAM obtains and maintains it for EKS issuer URLs.
"""

from __future__ import annotations

import eksconverge
import eksconverge.aws_iam
import eksconverge.errors
import eksconverge.model


def url_tail(issuer_url: str) -> str:
    return issuer_url.replace("https://", "", 1).rstrip("/")


def provider_arn(account_id: str, issuer_url: str) -> str:
    return f"arn:aws:iam::{account_id}:oidc-provider/{url_tail(issuer_url)}"


def find_provider(iam: eksconverge.aws_iam.IAM, issuer_url: str) -> str | None:
    tail = url_tail(issuer_url)
    response = iam.call("list_open_id_connect_providers", f"iam:oidc-provider/{tail}")

    for provider in response.get("OpenIDConnectProviderList", []):
        m = eksconverge.OIDC_ARN_URL_REGEX.fullmatch(provider["Arn"])
        if m is not None and m.group(1) == tail:
            return provider["Arn"]

    return None


def ensure_provider(
    iam: eksconverge.aws_iam.IAM,
    cluster_name: str,
    issuer_url: str,
    account_id: str,
    tags: dict[str, str],
) -> eksconverge.model.OIDCBinding:
    """Look up the OIDC provider for `issuer_url`, creating it on first use."""
    if not issuer_url:
        msg = f"cluster {cluster_name!r} reports no OIDC issuer"
        raise eksconverge.errors.ConflictError(msg, resource=f"eks:cluster/{cluster_name}")

    tail = url_tail(issuer_url)
    resource = f"iam:oidc-provider/{tail}"
    arn = find_provider(iam, issuer_url)

    if arn is None:
        arn = provider_arn(account_id, issuer_url)
        if iam.log.record("create", resource):
            arn = iam.call(
                "create_open_id_connect_provider",
                resource,
                Url=f"https://{tail}",
                ClientIDList=[eksconverge.STS_AUDIENCE],
                Tags=eksconverge.aws_iam.aws_tags(tags),
            )["OpenIDConnectProviderArn"]
    else:
        client_ids = iam.call("get_open_id_connect_provider", resource, OpenIDConnectProviderArn=arn).get(
            "ClientIDList", []
        )
        if eksconverge.STS_AUDIENCE not in client_ids and iam.log.record(
            "update", resource, f"add client id {eksconverge.STS_AUDIENCE}"
        ):
            iam.call(
                "add_client_id_to_open_id_connect_provider",
                resource,
                OpenIDConnectProviderArn=arn,
                ClientID=eksconverge.STS_AUDIENCE,
            )

    return eksconverge.model.OIDCBinding(cluster_name=cluster_name, issuer_url=issuer_url, provider_arn=arn)
