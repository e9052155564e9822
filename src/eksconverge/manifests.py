from __future__ import annotations

import typing

import eksconverge
import eksconverge.model
from eksconverge.errors import SpecValidationError

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"

_AWS_TAG_KEY_MAX_LENGTH = 128
_AWS_TAG_VALUE_MAX_LENGTH = 256

Manifest = dict[str, typing.Any]


def format_lb_tags(tags: dict[str, str]) -> str:
    """Format tags as comma-separated key=value pairs for the `alb.ingress.kubernetes.io/tags` annotation.

    Keys and values may not contain commas, equals signs or whitespace, all of which
    would make the annotation ambiguous.
    """
    if not tags:
        msg = "tags must not be empty"
        raise SpecValidationError(msg)

    for key, value in tags.items():
        if not key:
            msg = "LB tag key must not be empty"
            raise SpecValidationError(msg)
        if key.startswith("aws:"):
            msg = f"LB tag key uses reserved 'aws:' prefix: {key!r}"
            raise SpecValidationError(msg)
        if len(key) > _AWS_TAG_KEY_MAX_LENGTH:
            msg = f"LB tag key exceeds AWS 128-character limit ({len(key)} chars): {key!r}"
            raise SpecValidationError(msg)
        if len(value) > _AWS_TAG_VALUE_MAX_LENGTH:
            msg = f"LB tag value for {key!r} exceeds AWS 256-character limit ({len(value)} chars)"
            raise SpecValidationError(msg)
        for kind, text in (("key", key), ("value", value)):
            if "," in text or "=" in text:
                msg = f"LB tag {kind} contains invalid characters (comma or equals): {text}"
                raise SpecValidationError(msg)
            if any(c in text for c in (" ", "\t", "\n", "\r")):
                msg = f"LB tag {kind} contains whitespace: {text!r}"
                raise SpecValidationError(msg)

    return ",".join(f"{k}={v}" for k, v in tags.items())


def _metadata(name: str, namespace: str, labels: dict[str, str] | None = None) -> dict[str, typing.Any]:
    return {
        "name": name,
        "namespace": namespace,
        "labels": dict(labels or {}) | {MANAGED_BY_LABEL: "eksconverge"},
    }


def deployment(wl: eksconverge.model.WorkloadManifest) -> Manifest:
    container: dict[str, typing.Any] = {
        "name": wl.container_name or wl.name,
        "image": wl.image,
    }
    if wl.ports:
        container["ports"] = [
            {"containerPort": p.container_port, "protocol": p.protocol} | ({"name": p.name} if p.name else {})
            for p in wl.ports
        ]

    pod_spec: dict[str, typing.Any] = {"containers": [container]}
    if wl.affinity:
        pod_spec["affinity"] = wl.affinity
    if wl.node_selector:
        pod_spec["nodeSelector"] = dict(wl.node_selector)

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(wl.name, wl.namespace, wl.selector_labels),
        "spec": {
            "replicas": wl.replicas,
            "selector": {"matchLabels": dict(wl.selector_labels)},
            "template": {
                "metadata": {"labels": dict(wl.selector_labels)},
                "spec": pod_spec,
            },
        },
    }


def service(svc: eksconverge.model.ServiceSpec) -> Manifest:
    ports = []
    for p in svc.ports:
        port: dict[str, typing.Any] = {"port": p.port, "protocol": p.protocol}
        if p.target_port is not None:
            port["targetPort"] = p.target_port
        if p.name:
            port["name"] = p.name
        ports.append(port)

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(svc.name, svc.namespace),
        "spec": {
            "type": svc.type,
            "selector": dict(svc.selector),
            "ports": ports,
        },
    }


def ingress(ing: eksconverge.model.IngressSpec, cluster_name: str) -> Manifest:
    annotations = {
        "alb.ingress.kubernetes.io/scheme": ing.scheme,
        "alb.ingress.kubernetes.io/target-type": ing.target_type,
        "alb.ingress.kubernetes.io/tags": format_lb_tags(eksconverge.managed_tags(cluster_name, ing.lb_tags)),
    } | dict(ing.annotations)

    metadata = _metadata(ing.name, ing.namespace)
    metadata["annotations"] = annotations

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": metadata,
        "spec": {
            "ingressClassName": ing.ingress_class,
            "rules": [
                {
                    "http": {
                        "paths": [
                            {
                                "path": ing.path,
                                "pathType": ing.path_type,
                                "backend": {
                                    "service": {
                                        "name": ing.service,
                                        "port": {"number": ing.service_port},
                                    }
                                },
                            }
                        ]
                    }
                }
            ],
        },
    }


def service_account(ref: eksconverge.model.ServiceAccountRef, role_arn: str) -> Manifest:
    metadata = _metadata(ref.name, ref.namespace, {"app.kubernetes.io/name": ref.name})
    metadata["annotations"] = {eksconverge.IRSA_ROLE_ARN_ANNOTATION: role_arn}

    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": metadata,
    }


def workload_manifests(bundle: eksconverge.model.SpecBundle) -> list[Manifest]:
    """Deployments, Services and literal extra manifests, in apply order."""
    return (
        list(bundle.extra_manifests)
        + [deployment(wl) for wl in bundle.workloads]
        + [service(svc) for svc in bundle.services]
    )


def ingress_manifests(bundle: eksconverge.model.SpecBundle) -> list[Manifest]:
    return [ingress(ing, bundle.cluster.name) for ing in bundle.ingresses]


def manifest_key(manifest: Manifest) -> str:
    metadata = manifest.get("metadata", {})
    namespace = metadata.get("namespace") or eksconverge.DEFAULT_NAMESPACE
    return f"{manifest['kind']}/{namespace}/{metadata['name']}"
