"""Builds the Kubernetes manifests that make up a metrics-server installation.

Every builder returns a plain manifest dictionary with ``apiVersion``, ``kind``
and ``metadata``. Each call returns fresh dictionaries that share nothing
with the MetricsServer they were built from.
"""

from __future__ import annotations

import copy
from typing import Any

from .constants import (
    DEFAULT_API_SERVICE_NAME,
    DEFAULT_CLUSTER_ROLE_AGGREGATED_READER_NAME,
    DEFAULT_CLUSTER_ROLE_BINDING_NAME,
    DEFAULT_CLUSTER_ROLE_NAME,
    DEFAULT_DEPLOYMENT_NAME,
    DEFAULT_NAMESPACE,
    DEFAULT_ROLE_BINDING_AUTH_READER_NAME,
    DEFAULT_SERVICE_ACCOUNT_NAME,
    DEFAULT_SERVICE_NAME,
    LABEL_COMPONENT,
    LABEL_COMPONENT_VALUE,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_MANAGED_BY_VALUE,
    LABEL_NAME,
    LABEL_NAME_VALUE,
)
from .types import MetricsServer

RBAC_GROUP = "rbac.authorization.k8s.io"
RBAC_API_VERSION = f"{RBAC_GROUP}/v1"
AUTH_DELEGATOR_BINDING_NAME = f"{DEFAULT_SERVICE_ACCOUNT_NAME}:system:auth-delegator"

BASE_ARGS = (
    "--cert-dir=/tmp",
    "--secure-port=10250",
    "--kubelet-preferred-address-types=InternalIP,ExternalIP,Hostname",
    "--kubelet-use-node-status-port",
    "--metric-resolution=15s",
)

DEFAULT_RESOURCES: dict[str, dict[str, str]] = {
    "requests": {"cpu": "10m", "memory": "32Mi"},
    "limits": {"cpu": "100m", "memory": "128Mi"},
}


def _metadata(
    name: str,
    labels: dict[str, str],
    namespace: str | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    metadata["labels"] = labels
    if annotations:
        metadata["annotations"] = dict(annotations)
    return metadata


def _service_account_subject() -> dict[str, str]:
    return {
        "kind": "ServiceAccount",
        "name": DEFAULT_SERVICE_ACCOUNT_NAME,
        "namespace": DEFAULT_NAMESPACE,
    }


def _role_ref(kind: str, name: str) -> dict[str, str]:
    return {"apiGroup": RBAC_GROUP, "kind": kind, "name": name}


def build_labels(ms: MetricsServer) -> dict[str, str]:
    """Standard labels carried by every managed resource."""
    return {
        LABEL_MANAGED_BY: LABEL_MANAGED_BY_VALUE,
        LABEL_INSTANCE: ms.name,
        LABEL_COMPONENT: LABEL_COMPONENT_VALUE,
        LABEL_NAME: LABEL_NAME_VALUE,
    }


def build_selector_labels(ms: MetricsServer) -> dict[str, str]:
    """Labels that select the metrics-server pods."""
    return {
        LABEL_INSTANCE: ms.name,
        LABEL_COMPONENT: LABEL_COMPONENT_VALUE,
    }


def build_labels_with_aggregation(ms: MetricsServer) -> dict[str, str]:
    """Standard labels plus those aggregating a role into view, edit and admin."""
    labels = build_labels(ms)
    labels[f"{RBAC_GROUP}/aggregate-to-view"] = "true"
    labels[f"{RBAC_GROUP}/aggregate-to-edit"] = "true"
    labels[f"{RBAC_GROUP}/aggregate-to-admin"] = "true"
    return labels


def build_resources(ms: MetricsServer) -> dict[str, dict[str, str]]:
    """The container's resource requirements, or conservative defaults."""
    if ms.spec.resources is not None:
        return copy.deepcopy(ms.spec.resources)
    return copy.deepcopy(DEFAULT_RESOURCES)


def build_service_account(ms: MetricsServer) -> dict[str, Any]:
    """The ServiceAccount metrics-server runs as."""
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(
            DEFAULT_SERVICE_ACCOUNT_NAME,
            build_labels(ms),
            namespace=DEFAULT_NAMESPACE,
            annotations=ms.spec.service_account_annotations,
        ),
    }


def build_cluster_role(ms: MetricsServer) -> dict[str, Any]:
    """The ClusterRole granting metrics-server read access to nodes and pods."""
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRole",
        "metadata": _metadata(DEFAULT_CLUSTER_ROLE_NAME, build_labels(ms)),
        "rules": [
            {"apiGroups": [""], "resources": ["nodes/metrics"], "verbs": ["get"]},
            {
                "apiGroups": [""],
                "resources": ["pods", "nodes", "nodes/stats", "namespaces", "configmaps"],
                "verbs": ["get", "list"],
            },
        ],
    }


def build_cluster_role_aggregated_reader(ms: MetricsServer) -> dict[str, Any]:
    """The aggregated ClusterRole letting viewers read the metrics API."""
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRole",
        "metadata": _metadata(
            DEFAULT_CLUSTER_ROLE_AGGREGATED_READER_NAME, build_labels_with_aggregation(ms)
        ),
        "rules": [
            {
                "apiGroups": ["metrics.k8s.io"],
                "resources": ["pods", "nodes"],
                "verbs": ["get", "list"],
            },
        ],
    }


def build_cluster_role_binding(ms: MetricsServer) -> dict[str, Any]:
    """Binds the metrics-server ClusterRole to its ServiceAccount."""
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRoleBinding",
        "metadata": _metadata(DEFAULT_CLUSTER_ROLE_BINDING_NAME, build_labels(ms)),
        "roleRef": _role_ref("ClusterRole", DEFAULT_CLUSTER_ROLE_NAME),
        "subjects": [_service_account_subject()],
    }


def build_role_binding_auth_reader(ms: MetricsServer) -> dict[str, Any]:
    """Lets metrics-server read the extension API server authentication config."""
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "RoleBinding",
        "metadata": _metadata(
            DEFAULT_ROLE_BINDING_AUTH_READER_NAME, build_labels(ms), namespace=DEFAULT_NAMESPACE
        ),
        "roleRef": _role_ref("Role", "extension-apiserver-authentication-reader"),
        "subjects": [_service_account_subject()],
    }


def build_cluster_role_binding_auth_delegator(ms: MetricsServer) -> dict[str, Any]:
    """Lets metrics-server delegate authentication and authorization."""
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRoleBinding",
        "metadata": _metadata(AUTH_DELEGATOR_BINDING_NAME, build_labels(ms)),
        "roleRef": _role_ref("ClusterRole", "system:auth-delegator"),
        "subjects": [_service_account_subject()],
    }


def build_service(ms: MetricsServer) -> dict[str, Any]:
    """The Service exposing metrics-server on port 443."""
    labels = build_labels(ms)
    labels.update(ms.spec.service_labels)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(
            DEFAULT_SERVICE_NAME,
            labels,
            namespace=DEFAULT_NAMESPACE,
            annotations=ms.spec.service_annotations,
        ),
        "spec": {
            "selector": build_selector_labels(ms),
            "ports": [
                {"name": "https", "port": 443, "targetPort": "https", "protocol": "TCP"},
            ],
        },
    }


def _probe(path: str, **timing: int) -> dict[str, Any]:
    probe: dict[str, Any] = {"httpGet": {"path": path, "port": "https", "scheme": "HTTPS"}}
    probe.update(timing)
    return probe


def build_deployment(ms: MetricsServer) -> dict[str, Any]:
    """The Deployment running the metrics-server container."""
    selector_labels = build_selector_labels(ms)
    pod_labels = {**selector_labels, **ms.spec.pod_labels}

    args = list(BASE_ARGS)
    if ms.kubelet_insecure_tls:
        args.append("--kubelet-insecure-tls")
    args.extend(ms.spec.args)

    container = {
        "name": "metrics-server",
        "image": ms.image,
        "imagePullPolicy": "IfNotPresent",
        "args": args,
        "ports": [{"name": "https", "containerPort": 10250, "protocol": "TCP"}],
        "securityContext": {
            "readOnlyRootFilesystem": True,
            "runAsNonRoot": True,
            "runAsUser": 1000,
            "allowPrivilegeEscalation": False,
            "capabilities": {"drop": ["ALL"]},
            "seccompProfile": {"type": "RuntimeDefault"},
        },
        "volumeMounts": [{"name": "tmp", "mountPath": "/tmp"}],
        "livenessProbe": _probe("/livez", periodSeconds=10, failureThreshold=3),
        "readinessProbe": _probe(
            "/readyz", initialDelaySeconds=20, periodSeconds=10, failureThreshold=3
        ),
        "resources": build_resources(ms),
    }

    pod_spec: dict[str, Any] = {
        "serviceAccountName": DEFAULT_SERVICE_ACCOUNT_NAME,
        "priorityClassName": ms.priority_class_name,
    }
    if ms.host_network:
        pod_spec["hostNetwork"] = True
    if ms.spec.node_selector:
        pod_spec["nodeSelector"] = dict(ms.spec.node_selector)
    if ms.spec.tolerations:
        pod_spec["tolerations"] = copy.deepcopy(ms.spec.tolerations)
    if ms.spec.affinity is not None:
        pod_spec["affinity"] = copy.deepcopy(ms.spec.affinity)
    pod_spec["containers"] = [container]
    pod_spec["volumes"] = [{"name": "tmp", "emptyDir": {}}]

    template_metadata: dict[str, Any] = {"labels": pod_labels}
    if ms.spec.pod_annotations:
        template_metadata["annotations"] = dict(ms.spec.pod_annotations)

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(
            DEFAULT_DEPLOYMENT_NAME, build_labels(ms), namespace=DEFAULT_NAMESPACE
        ),
        "spec": {
            "replicas": ms.replicas,
            "selector": {"matchLabels": selector_labels},
            "template": {"metadata": template_metadata, "spec": pod_spec},
        },
    }


def build_api_service(ms: MetricsServer) -> dict[str, Any]:
    """The APIService registering metrics.k8s.io/v1beta1 with the aggregator."""
    return {
        "apiVersion": "apiregistration.k8s.io/v1",
        "kind": "APIService",
        "metadata": _metadata(DEFAULT_API_SERVICE_NAME, build_labels(ms)),
        "spec": {
            "group": "metrics.k8s.io",
            "version": "v1beta1",
            "groupPriorityMinimum": 100,
            "versionPriority": 100,
            "service": {"name": DEFAULT_SERVICE_NAME, "namespace": DEFAULT_NAMESPACE},
            "insecureSkipTLSVerify": True,
        },
    }


def build_pod_disruption_budget(ms: MetricsServer) -> dict[str, Any]:
    """A PodDisruptionBudget; a single replica may always be disrupted."""
    min_available = 0 if ms.replicas == 1 else 1
    return {
        "apiVersion": "policy/v1",
        "kind": "PodDisruptionBudget",
        "metadata": _metadata(
            DEFAULT_DEPLOYMENT_NAME, build_labels(ms), namespace=DEFAULT_NAMESPACE
        ),
        "spec": {
            "minAvailable": min_available,
            "selector": {"matchLabels": build_selector_labels(ms)},
        },
    }