"""Reconciles MetricsServer resources into a running metrics-server installation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from . import builder
from .builder import AUTH_DELEGATOR_BINDING_NAME
from .constants import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_TYPE_AVAILABLE,
    CONDITION_TYPE_DEGRADED,
    CONDITION_TYPE_PROGRESSING,
    CONDITION_TYPE_READY,
    DEFAULT_API_SERVICE_NAME,
    DEFAULT_CLUSTER_ROLE_AGGREGATED_READER_NAME,
    DEFAULT_CLUSTER_ROLE_BINDING_NAME,
    DEFAULT_CLUSTER_ROLE_NAME,
    DEFAULT_DEPLOYMENT_NAME,
    DEFAULT_NAMESPACE,
    FINALIZER_NAME,
    GROUP_VERSION,
    KIND_METRICS_SERVER,
    LABEL_INSTANCE,
    REASON_DEPLOYMENT_NOT_READY,
    REASON_DEPLOYMENT_READY,
    REASON_FAILED,
    REASON_READY,
    REASON_RECONCILING,
    REASON_SINGLETON_VIOLATION,
)
from .kube import ApiError, InMemoryClient, KubeObject, NotFoundError
from .types import Condition, MetricsServer, set_status_condition

log = logging.getLogger(__name__)

REQUEUE_AFTER_STATUS_CHECK = timedelta(seconds=30)
REQUEUE_AFTER_SINGLETON_VIOLATION = timedelta(minutes=5)

# Cluster-scoped objects the operator creates, as (kind, name).
_CLUSTER_RESOURCES = (
    ("ClusterRole", DEFAULT_CLUSTER_ROLE_NAME),
    ("ClusterRole", DEFAULT_CLUSTER_ROLE_AGGREGATED_READER_NAME),
    ("ClusterRoleBinding", DEFAULT_CLUSTER_ROLE_BINDING_NAME),
    ("ClusterRoleBinding", AUTH_DELEGATOR_BINDING_NAME),
    ("APIService", DEFAULT_API_SERVICE_NAME),
)


@dataclass(frozen=True)
class Result:
    """Outcome of one reconciliation: when, if ever, to look again."""

    requeue_after: timedelta | None = None


class SingletonViolationError(Exception):
    """Another live MetricsServer already exists in the cluster."""

    def __init__(self, existing: list[str]) -> None:
        self.existing = list(existing)
        self.requeue_after = REQUEUE_AFTER_SINGLETON_VIOLATION
        super().__init__(
            "only one MetricsServer instance is allowed per cluster due to APIService "
            f"constraints. Existing instances: [{' '.join(self.existing)}]. Please delete "
            "other instances before creating this one"
        )


class OwnershipError(ApiError):
    """An object is already owned by something other than this MetricsServer."""


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.setdefault("metadata", {})


def _normalize(value: Any) -> Any:
    """Treat missing, None, empty maps and empty lists alike, at any depth."""
    if isinstance(value, dict):
        cleaned = {key: _normalize(item) for key, item in value.items()}
        cleaned = {key: item for key, item in cleaned.items() if item is not None}
        return cleaned or None
    if isinstance(value, list):
        return [_normalize(item) for item in value] or None
    return value


def _semantic_equal(a: Any, b: Any) -> bool:
    return _normalize(a) == _normalize(b)


def _differs(current: dict[str, Any], desired: dict[str, Any], *paths: tuple[str, ...]) -> bool:
    def lookup(obj: dict[str, Any], path: tuple[str, ...]) -> Any:
        for key in path:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
        return obj

    return any(not _semantic_equal(lookup(current, p), lookup(desired, p)) for p in paths)


_LABELS = ("metadata", "labels")
_ANNOTATIONS = ("metadata", "annotations")

_COMPARED_FIELDS: dict[str, tuple[tuple[str, ...], ...]] = {
    "ServiceAccount": (_LABELS, _ANNOTATIONS),
    "ClusterRole": (_LABELS, ("rules",)),
    "ClusterRoleBinding": (_LABELS, ("roleRef",), ("subjects",)),
    "RoleBinding": (_LABELS, ("roleRef",), ("subjects",)),
    "Service": (_LABELS, _ANNOTATIONS, ("spec",)),
    "Deployment": (_LABELS, ("spec",)),
    "APIService": (_LABELS, ("spec",)),
    "PodDisruptionBudget": (_LABELS, ("spec",)),
}


def needs_update(current: dict[str, Any], desired: dict[str, Any]) -> bool:
    """Whether the stored object differs from the desired one in the fields we manage.

    For a Service the desired object takes over the stored cluster IP, which
    is never changed once assigned.
    """
    kind = current.get("kind")
    fields = _COMPARED_FIELDS.get(kind)
    if fields is None:
        return False
    if kind == "Service":
        cluster_ip = (current.get("spec") or {}).get("clusterIP")
        desired_spec = desired.setdefault("spec", {})
        if cluster_ip:
            desired_spec["clusterIP"] = cluster_ip
        else:
            desired_spec.pop("clusterIP", None)
    return _differs(current, desired, *fields)


def _group_of(api_version: str) -> str:
    return api_version.split("/", 1)[0] if "/" in api_version else ""


def set_controller_reference(owner: MetricsServer, obj: dict[str, Any]) -> None:
    """Make ``owner`` the controlling owner of ``obj``.

    Raises OwnershipError if another object already controls it.
    """
    api_version = GROUP_VERSION.api_version()
    reference = {
        "apiVersion": api_version,
        "kind": KIND_METRICS_SERVER,
        "name": owner.name,
        "uid": owner.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }
    identity = (_group_of(api_version), KIND_METRICS_SERVER, owner.name)

    metadata = _metadata(obj)
    references = list(metadata.get("ownerReferences") or [])

    def same_owner(ref: dict[str, Any]) -> bool:
        return (_group_of(ref.get("apiVersion", "")), ref.get("kind"), ref.get("name")) == identity

    for ref in references:
        if ref.get("controller") and not same_owner(ref):
            namespace = metadata.get("namespace") or ""
            raise OwnershipError(
                f"Object {namespace}/{metadata.get('name', '')} is already owned by another "
                f"{ref.get('kind')} controller {ref.get('name')}"
            )

    kept = [ref for ref in references if not same_owner(ref)]
    if len(kept) == len(references):
        references.append(reference)
    else:
        references = [reference if same_owner(ref) else ref for ref in references]
    metadata["ownerReferences"] = references


class MetricsServerReconciler:
    """Drives the cluster towards the state a MetricsServer describes."""

    def __init__(self, client: InMemoryClient) -> None:
        self.client = client

    @staticmethod
    def _set_condition(ms: MetricsServer, condition_type: str, status: str, reason: str, message: str) -> None:
        set_status_condition(
            ms.status.conditions,
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                observed_generation=ms.generation,
            ),
        )

    def _update_status_quietly(self, ms: MetricsServer) -> None:
        try:
            self.client.update_status(ms)
        except ApiError:
            log.exception("Failed to update MetricsServer status")

    def reconcile(self, name: str) -> Result:
        """Reconcile the named MetricsServer once."""
        try:
            ms = self.client.get_metrics_server(name)
        except NotFoundError:
            log.info("MetricsServer resource not found. Ignoring since object must be deleted")
            return Result()

        if ms.is_deleting:
            if FINALIZER_NAME in ms.finalizers:
                self.finalize_metrics_server(ms)
                ms.finalizers = [f for f in ms.finalizers if f != FINALIZER_NAME]
                self.client.update(ms)
            return Result()

        if FINALIZER_NAME not in ms.finalizers:
            ms.finalizers.append(FINALIZER_NAME)
            self.client.update(ms)

        try:
            self.validate_singleton_constraint(ms)
        except (SingletonViolationError, ApiError) as exc:
            self._set_condition(
                ms, CONDITION_TYPE_DEGRADED, CONDITION_TRUE, REASON_SINGLETON_VIOLATION, str(exc)
            )
            self._update_status_quietly(ms)
            raise

        self._set_condition(
            ms,
            CONDITION_TYPE_PROGRESSING,
            CONDITION_TRUE,
            REASON_RECONCILING,
            "Reconciling MetricsServer resources",
        )
        ms.status.observed_generation = ms.generation
        self.client.update_status(ms)

        try:
            self.reconcile_resources(ms)
        except ApiError as exc:
            self._set_condition(
                ms,
                CONDITION_TYPE_DEGRADED,
                CONDITION_TRUE,
                REASON_FAILED,
                f"Failed to reconcile resources: {exc}",
            )
            self._update_status_quietly(ms)
            raise

        deployment = self.client.get("Deployment", DEFAULT_DEPLOYMENT_NAME, DEFAULT_NAMESPACE)
        deployment_status = deployment.get("status") or {}
        ready = int(deployment_status.get("readyReplicas", 0))
        ms.status.ready_replicas = ready
        ms.status.available_replicas = int(deployment_status.get("availableReplicas", 0))

        if ready == ms.replicas:
            self._set_condition(
                ms, CONDITION_TYPE_READY, CONDITION_TRUE, REASON_DEPLOYMENT_READY,
                "MetricsServer deployment is ready",
            )
            self._set_condition(
                ms, CONDITION_TYPE_AVAILABLE, CONDITION_TRUE, REASON_READY,
                "MetricsServer is available",
            )
            self._set_condition(
                ms, CONDITION_TYPE_PROGRESSING, CONDITION_FALSE, REASON_READY,
                "MetricsServer resources reconciled successfully",
            )
            self._set_condition(
                ms, CONDITION_TYPE_DEGRADED, CONDITION_FALSE, REASON_READY,
                "MetricsServer is healthy",
            )
        else:
            self._set_condition(
                ms, CONDITION_TYPE_READY, CONDITION_FALSE, REASON_DEPLOYMENT_NOT_READY,
                f"Deployment has {ready}/{ms.replicas} replicas ready",
            )
            self._set_condition(
                ms, CONDITION_TYPE_AVAILABLE, CONDITION_FALSE, REASON_DEPLOYMENT_NOT_READY,
                "MetricsServer is not yet available",
            )

        self.client.update_status(ms)
        return Result(requeue_after=REQUEUE_AFTER_STATUS_CHECK)

    def reconcile_resources(self, ms: MetricsServer) -> None:
        """Create or update every object making up the installation."""
        namespaced = self.reconcile_resource
        cluster = self.reconcile_cluster_scoped_resource
        steps: list[tuple[str, Callable[[MetricsServer], dict[str, Any]], Callable[..., None]]] = [
            ("ServiceAccount", builder.build_service_account, namespaced),
            ("ClusterRole", builder.build_cluster_role, cluster),
            ("ClusterRole aggregated reader", builder.build_cluster_role_aggregated_reader, cluster),
            ("ClusterRoleBinding", builder.build_cluster_role_binding, cluster),
            ("RoleBinding auth reader", builder.build_role_binding_auth_reader, namespaced),
            ("ClusterRoleBinding auth delegator", builder.build_cluster_role_binding_auth_delegator, cluster),
            ("Service", builder.build_service, namespaced),
            ("Deployment", builder.build_deployment, namespaced),
            ("APIService", builder.build_api_service, cluster),
        ]
        if ms.pod_disruption_budget:
            steps.append(("PodDisruptionBudget", builder.build_pod_disruption_budget, namespaced))

        for what, build, apply in steps:
            try:
                apply(ms, build(ms))
            except ApiError as exc:
                raise ApiError(f"failed to reconcile {what}: {exc}") from exc

    def reconcile_resource(self, ms: MetricsServer, obj: dict[str, Any]) -> None:
        """Create or update a namespaced object owned by ``ms``."""
        set_controller_reference(ms, obj)
        metadata = _metadata(obj)
        kind, name = obj.get("kind"), metadata.get("name")
        try:
            found = self.client.get(kind, name, metadata.get("namespace") or "")
        except NotFoundError:
            log.info("Creating resource Kind=%s Name=%s", kind, name)
            self.client.create(obj)
            return

        if needs_update(found, obj):
            log.info("Updating resource Kind=%s Name=%s", kind, name)
            metadata["resourceVersion"] = found["metadata"].get("resourceVersion")
            self.client.update(obj)

    def reconcile_cluster_scoped_resource(self, ms: MetricsServer, obj: dict[str, Any]) -> None:
        """Create or update a cluster-scoped object labelled as belonging to ``ms``."""
        metadata = _metadata(obj)
        labels = dict(metadata.get("labels") or {})
        labels[LABEL_INSTANCE] = ms.name
        metadata["labels"] = labels

        kind, name = obj.get("kind"), metadata.get("name")
        try:
            found = self.client.get(kind, name)
        except NotFoundError:
            log.info("Creating cluster-scoped resource Kind=%s Name=%s", kind, name)
            self.client.create(obj)
            return

        found_labels = found["metadata"].get("labels") or {}
        if found_labels.get(LABEL_INSTANCE) != ms.name:
            raise OwnershipError(
                f"cluster-scoped resource {name} is owned by another MetricsServer instance"
            )

        if needs_update(found, obj):
            log.info("Updating cluster-scoped resource Kind=%s Name=%s", kind, name)
            metadata["resourceVersion"] = found["metadata"].get("resourceVersion")
            self.client.update(obj)

    def finalize_metrics_server(self, ms: MetricsServer) -> None:
        """Delete the cluster-scoped objects that carry this instance's label."""
        log.info("Running finalizer for MetricsServer Name=%s", ms.name)
        for kind, name in _CLUSTER_RESOURCES:
            try:
                found = self.client.get(kind, name)
            except NotFoundError:
                continue
            labels = found["metadata"].get("labels") or {}
            if labels.get(LABEL_INSTANCE) == ms.name:
                log.info("Deleting cluster-scoped resource Kind=%s Name=%s", kind, name)
                try:
                    self.client.delete(found)
                except NotFoundError:
                    pass

    def find_metrics_server_for_cluster_resource(self, obj: KubeObject) -> list[str]:
        """Names of MetricsServers to reconcile when a cluster-scoped object changes."""
        if isinstance(obj, MetricsServer):
            labels = obj.labels
        else:
            labels = (obj.get("metadata") or {}).get("labels")
        if not labels:
            return []
        instance = labels.get(LABEL_INSTANCE)
        if instance is None:
            return []
        try:
            servers = self.client.list_metrics_servers()
        except ApiError:
            return []
        return next(([ms.name] for ms in servers if ms.name == instance), [])

    def validate_singleton_constraint(self, current: MetricsServer) -> None:
        """Raise SingletonViolationError if any other live MetricsServer exists."""
        try:
            servers = self.client.list_metrics_servers()
        except ApiError as exc:
            raise ApiError(f"failed to list existing MetricsServer instances: {exc}") from exc

        existing = [
            ms.name for ms in servers if ms.name != current.name and not ms.is_deleting
        ]
        if existing:
            raise SingletonViolationError(existing)