"""
AWS Load Balancer Controller lifecycle.

The installer walks `Absent -> PolicyCreated -> ServiceAccountBound -> ReleaseInstalled -> Ready`.
Every transition is an idempotent lookup-or-create, so an interrupted install is resumed by
running it again. A failed health check leaves IAM and the release in place.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import typing

import eksconverge
import eksconverge.actions
import eksconverge.aws_iam
import eksconverge.errors
import eksconverge.helm
import eksconverge.junkdrawer
import eksconverge.kube_reconciler
import eksconverge.manifests
import eksconverge.model
import eksconverge.retry
import eksconverge.settings
from eksconverge import ControllerState

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ClusterContext:
    """What the installer needs to know about an already converged cluster."""

    cluster_name: str
    region: str
    account_id: str
    vpc_id: str
    oidc: eksconverge.model.OIDCBinding


@dataclasses.dataclass
class ControllerStatus:
    state: ControllerState
    release: eksconverge.helm.HelmRelease | None = None
    detail: str = ""

    def __str__(self) -> str:
        revision = f" (revision {self.release.revision}, {self.release.status})" if self.release else ""
        detail = f": {self.detail}" if self.detail else ""
        return f"{self.state.label}{revision}{detail}"


def policy_binding(cluster_name: str, release: eksconverge.model.ControllerRelease) -> eksconverge.model.IAMPolicyBinding:
    return eksconverge.model.IAMPolicyBinding(
        policy_name=eksconverge.junkdrawer.truncate_name(f"{cluster_name}-AWSLoadBalancerControllerIAMPolicy", 128),
        policy_document=eksconverge.aws_iam.aws_lbc_policy_document(),
        role_name=eksconverge.junkdrawer.truncate_name(f"{cluster_name}-{release.service_account_name}"),
        service_account=release.service_account,
    )


class ControllerInstaller:
    def __init__(
        self,
        context: ClusterContext,
        release: eksconverge.model.ControllerRelease,
        *,
        iam: eksconverge.aws_iam.IAM,
        kube: eksconverge.kube_reconciler.KubernetesReconciler,
        helm: eksconverge.helm.Helm,
        settings: eksconverge.settings.Settings | None = None,
        cancel: threading.Event | None = None,
    ):
        self.context = context
        self.release = release
        self.iam = iam
        self.kube = kube
        self.helm = helm
        self.settings = settings or eksconverge.settings.Settings()
        self.cancel = cancel
        self.binding = policy_binding(context.cluster_name, release)

    @property
    def log(self) -> eksconverge.actions.ActionLog:
        return self.iam.log

    @property
    def policy_arn(self) -> str:
        return self.binding.policy_arn(self.context.account_id)

    @property
    def role_arn(self) -> str:
        return self.binding.role_arn(self.context.account_id)

    @property
    def tags(self) -> dict[str, str]:
        return eksconverge.managed_tags(self.context.cluster_name)

    def service_account_manifest(self) -> dict[str, typing.Any]:
        return eksconverge.manifests.service_account(self.binding.service_account, self.role_arn)

    def desired_values(self) -> dict[str, typing.Any]:
        return self.release.values(self.context.cluster_name, self.context.region, self.context.vpc_id)

    def _release_current(self, live: eksconverge.helm.HelmRelease) -> bool:
        return (
            live.status == "deployed"
            and live.chart_version == self.release.chart_version
            and live.values_signature == eksconverge.junkdrawer.json_signature(self.desired_values())
        )

    def _service_account_bound(self) -> bool:
        role = self.iam.get_role(self.binding.role_name)
        if role is None or not eksconverge.aws_iam.trust_policy_allows(
            role.get("AssumeRolePolicyDocument", {}),
            self.context.oidc.provider_arn,
            self.binding.service_account.subject,
        ):
            return False

        if self.policy_arn not in self.iam.attached_policy_arns(self.binding.role_name):
            return False

        sa = self.kube.retry.call(
            self.kube.client.get,
            "v1",
            "ServiceAccount",
            self.binding.service_account.name,
            self.binding.service_account.namespace,
            resource=f"ServiceAccount/{self.binding.service_account.namespace}/{self.binding.service_account.name}",
        )
        annotations = ((sa or {}).get("metadata", {}) or {}).get("annotations", {}) or {}
        return annotations.get(eksconverge.IRSA_ROLE_ARN_ANNOTATION) == self.role_arn

    def observe(self) -> ControllerStatus:
        """Read-only: the furthest state whose preconditions currently hold."""
        if self.iam.get_policy_document(self.policy_arn) is None:
            return ControllerStatus(ControllerState.ABSENT)

        if not self._service_account_bound():
            return ControllerStatus(ControllerState.POLICY_CREATED)

        live = self.helm.status(self.release.release_name, self.release.namespace)
        if live is None or not self._release_current(live):
            detail = "release missing" if live is None else f"release {live.status} at chart {live.chart_version}"
            return ControllerStatus(ControllerState.SERVICE_ACCOUNT_BOUND, release=live, detail=detail)

        if not self.kube.deployment_ready(self.release.deployment_name, self.release.namespace):
            return ControllerStatus(ControllerState.RELEASE_INSTALLED, release=live, detail="deployment not available")

        return ControllerStatus(ControllerState.READY, release=live)

    def _transition(self, state: ControllerState) -> ControllerState:
        logger.info("controller %s is %s", self.release.release_name, state.label)
        return state

    def install(self) -> ControllerStatus:
        """Drive the controller to Ready; also upgrades a release whose chart version or values changed."""
        eksconverge.retry.check_cancelled(self.cancel, "creating the controller IAM policy")
        self.iam.ensure_policy(
            self.binding.policy_name,
            self.policy_arn,
            self.binding.policy_document,
            self.tags,
            description="Permissions for the AWS Load Balancer Controller",
        )
        state = self._transition(ControllerState.POLICY_CREATED)

        eksconverge.retry.check_cancelled(self.cancel, "binding the controller service account")
        self._ensure_irsa_role()
        apply = self.kube.apply([self.service_account_manifest()])
        for err in apply.rollback_errors:
            self.log.warn(f"rollback of {err.resource} failed: {err}")
        apply.raise_for_error()
        state = self._transition(ControllerState.SERVICE_ACCOUNT_BOUND)

        eksconverge.retry.check_cancelled(self.cancel, "installing the controller release")
        self._ensure_release()
        state = self._transition(ControllerState.RELEASE_INSTALLED)

        try:
            polls = self.kube.wait_for_rollout(
                self.release.deployment_name,
                self.release.namespace,
                self.settings.controller_timeout,
                consecutive=self.settings.controller_healthy_polls,
            )
        except eksconverge.errors.ReconcileTimeoutError as e:
            msg = (
                f"controller {self.release.namespace}/{self.release.deployment_name} did not report "
                f"{self.settings.controller_healthy_polls} consecutive healthy polls: {e}"
            )
            raise eksconverge.errors.ControllerNotReadyError(
                msg, state=state, resource=f"Deployment/{self.release.namespace}/{self.release.deployment_name}"
            ) from e

        logger.debug("controller healthy after %d polls", polls)
        state = self._transition(ControllerState.READY)
        return ControllerStatus(state, release=self.helm.status(self.release.release_name, self.release.namespace))

    def _ensure_irsa_role(self) -> None:
        role = self.iam.get_role(self.binding.role_name)

        if role is None:
            self.iam.ensure_role(
                self.binding.role_name,
                eksconverge.aws_iam.build_irsa_role_assume_role_policy(
                    namespace=self.binding.service_account.namespace,
                    managed_account_id=self.context.account_id,
                    oidc_url_tails=[self.context.oidc.url_tail],
                    service_accounts=[self.binding.service_account.name],
                ),
                self.tags,
                description=f"IRSA role for {self.binding.service_account.subject}",
            )
        elif not eksconverge.aws_iam.trust_policy_allows(
            role.get("AssumeRolePolicyDocument", {}),
            self.context.oidc.provider_arn,
            self.binding.service_account.subject,
        ):
            msg = (
                f"IAM role {self.binding.role_name!r} exists but does not trust "
                f"{self.binding.service_account.subject} via {self.context.oidc.provider_arn}"
            )
            raise eksconverge.errors.ConflictError(
                msg, resource=f"iam:role/{self.binding.role_name}", fields=["assume_role_policy"]
            )

        self.iam.ensure_role_policies(self.binding.role_name, [self.policy_arn], role_exists=role is not None)

    def _ensure_release(self) -> None:
        name, namespace = self.release.release_name, self.release.namespace
        live = self.helm.status(name, namespace)

        if live is not None and live.pending:
            msg = f"helm release {namespace}/{name} is stuck in {live.status}; resolve it with `helm rollback`"
            raise eksconverge.errors.ConflictError(msg, resource=f"helm:{namespace}/{name}", fields=["status"])

        if live is not None and self._release_current(live):
            return

        if live is None:
            verb, detail = "install", f"chart {self.release.chart_version}"
        else:
            verb, detail = "upgrade", f"{live.status} chart {live.chart_version} -> {self.release.chart_version}"

        if self.log.record(verb, f"helm:{namespace}/{name}", detail):
            self.helm.upgrade_install(
                name,
                self.release.chart,
                namespace=namespace,
                version=self.release.chart_version,
                repository=self.release.repository,
                values=self.desired_values(),
            )

    def rollback(self, revision: int | None = None) -> ControllerStatus:
        name, namespace = self.release.release_name, self.release.namespace
        if self.helm.status(name, namespace) is None:
            msg = f"helm release {namespace}/{name} is not installed"
            raise eksconverge.errors.ConflictError(msg, resource=f"helm:{namespace}/{name}")

        revisions = [int(entry["revision"]) for entry in self.helm.history(name, namespace)]
        if revision is None and len(revisions) < 2:
            msg = f"helm release {namespace}/{name} has no previous revision to roll back to"
            raise eksconverge.errors.ConflictError(msg, resource=f"helm:{namespace}/{name}")
        if revision is not None and revision not in revisions:
            msg = f"helm release {namespace}/{name} has no revision {revision}; known revisions are {revisions}"
            raise eksconverge.errors.ConflictError(msg, resource=f"helm:{namespace}/{name}")

        target = "the previous revision" if revision is None else f"revision {revision}"
        if self.log.record("rollback", f"helm:{namespace}/{name}", target):
            self.helm.rollback(name, namespace, revision)

        self.kube.wait_for_rollout(
            self.release.deployment_name,
            namespace,
            self.settings.controller_timeout,
            consecutive=self.settings.controller_healthy_polls,
        )
        return self.observe()

    def uninstall(self) -> ControllerStatus:
        """Tear down in reverse install order. The only path that removes the IAM policy binding."""
        name, namespace = self.release.release_name, self.release.namespace

        if self.helm.status(name, namespace) is not None and self.log.record("uninstall", f"helm:{namespace}/{name}"):
            self.helm.uninstall(name, namespace)

        self.kube.delete([self.service_account_manifest()])
        self.iam.delete_role(self.binding.role_name)
        self.iam.delete_policy(self.policy_arn)

        return ControllerStatus(self._transition(ControllerState.ABSENT))
