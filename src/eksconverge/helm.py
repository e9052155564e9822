from __future__ import annotations

import dataclasses
import logging
import pathlib
import subprocess
import tempfile
import typing

import yaml

import eksconverge.junkdrawer
import eksconverge.retry
import eksconverge.settings
import eksconverge.shext

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("pending-install", "pending-upgrade", "pending-rollback")


@dataclasses.dataclass(frozen=True)
class HelmRelease:
    name: str
    namespace: str
    revision: int
    status: str
    chart_version: str
    values: dict[str, typing.Any]

    @classmethod
    def from_status(cls, doc: dict[str, typing.Any]) -> HelmRelease:
        chart = doc.get("chart", {}) or {}
        return cls(
            name=doc["name"],
            namespace=doc.get("namespace", ""),
            revision=int(doc.get("version", 0)),
            status=(doc.get("info", {}) or {}).get("status", "unknown"),
            chart_version=str((chart.get("metadata", {}) or {}).get("version", "")),
            values=doc.get("config", {}) or {},
        )

    @property
    def values_signature(self) -> str:
        return eksconverge.junkdrawer.json_signature(self.values)

    @property
    def pending(self) -> bool:
        return self.status in PENDING_STATUSES


def _release_missing(e: subprocess.CalledProcessError) -> bool:
    return "not found" in (e.stderr or "").lower()


class Helm:
    """Thin wrapper over the `helm` CLI bound to one kubeconfig file."""

    def __init__(
        self,
        kubeconfig: pathlib.Path,
        settings: eksconverge.settings.Settings | None = None,
        *,
        runner: typing.Callable[..., subprocess.CompletedProcess] = eksconverge.shext.sh,
        retry: eksconverge.retry.RetryPolicy | None = None,
    ):
        self.kubeconfig = kubeconfig
        self.settings = settings or eksconverge.settings.Settings()
        self.runner = runner
        self.retry = retry or self.settings.retry_policy

    def _args(self, *args: str) -> list[str]:
        return [self.settings.helm_binary, *args, "--kubeconfig", str(self.kubeconfig)]

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        cmd = self._args(*args)
        logger.debug("running %s", " ".join(cmd))
        return self.runner(cmd, timeout=self.settings.helm_timeout)

    def run(self, *args: str, resource: str | None = None) -> subprocess.CompletedProcess:
        return self.retry.call(self._run, *args, resource=resource)

    def status(self, release: str, namespace: str) -> HelmRelease | None:
        def fetch() -> subprocess.CompletedProcess | None:
            try:
                return self._run("status", release, "--namespace", namespace, "--output", "json")
            except subprocess.CalledProcessError as e:
                if _release_missing(e):
                    return None
                raise

        result = self.retry.call(fetch, resource=f"helm:{namespace}/{release}")
        if result is None:
            return None

        return HelmRelease.from_status(yaml.safe_load(result.stdout))

    def history(self, release: str, namespace: str) -> list[dict[str, typing.Any]]:
        result = self.run(
            "history", release, "--namespace", namespace, "--output", "json", resource=f"helm:{namespace}/{release}"
        )
        return yaml.safe_load(result.stdout) or []

    def upgrade_install(
        self,
        release: str,
        chart: str,
        *,
        namespace: str,
        version: str,
        repository: str,
        values: dict[str, typing.Any],
    ) -> None:
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", prefix=f"{release}-values-") as values_file:
            yaml.safe_dump(values, values_file, default_flow_style=False)
            values_file.flush()

            self.run(
                "upgrade",
                release,
                chart,
                "--install",
                "--repo",
                repository,
                "--version",
                version,
                "--namespace",
                namespace,
                "--values",
                values_file.name,
                resource=f"helm:{namespace}/{release}",
            )

    def rollback(self, release: str, namespace: str, revision: int | None = None) -> None:
        args = ["rollback", release]
        if revision is not None:
            args.append(str(revision))
        self.run(*args, "--namespace", namespace, resource=f"helm:{namespace}/{release}")

    def uninstall(self, release: str, namespace: str) -> None:
        self.run("uninstall", release, "--namespace", namespace, resource=f"helm:{namespace}/{release}")
