"""The MetricsServer resource, its spec and status, and status condition helpers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from .constants import CONDITION_TRUE, GROUP_VERSION, KIND_METRICS_SERVER

DEFAULT_IMAGE = "registry.k8s.io/metrics-server/metrics-server:v0.7.2"
DEFAULT_REPLICAS = 1
DEFAULT_PRIORITY_CLASS_NAME = "system-cluster-critical"

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIME_FORMAT)


def _parse_time(text: str | None) -> datetime | None:
    if not text:
        return None
    return datetime.strptime(text, _TIME_FORMAT).replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and not value)


@dataclass
class Condition:
    """One observation of the resource's state."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
        }
        if self.observed_generation:
            data["observedGeneration"] = self.observed_generation
        if self.last_transition_time is not None:
            data["lastTransitionTime"] = _format_time(self.last_transition_time)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        missing = [key for key in ("type", "status") if not data.get(key)]
        if missing:
            raise ValueError(f"condition is missing required fields: {', '.join(missing)}")
        return cls(
            type=data["type"],
            status=data["status"],
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=int(data.get("observedGeneration", 0)),
            last_transition_time=_parse_time(data.get("lastTransitionTime")),
        )


# (attribute name, JSON key) for every spec field, in wire order.
_SPEC_FIELDS = (
    ("image", "image"),
    ("replicas", "replicas"),
    ("resources", "resources"),
    ("args", "args"),
    ("kubelet_insecure_tls", "kubeletInsecureTLS"),
    ("node_selector", "nodeSelector"),
    ("tolerations", "tolerations"),
    ("affinity", "affinity"),
    ("service_monitor", "serviceMonitor"),
    ("pod_disruption_budget", "podDisruptionBudget"),
    ("host_network", "hostNetwork"),
    ("priority_class_name", "priorityClassName"),
    ("service_labels", "serviceLabels"),
    ("service_annotations", "serviceAnnotations"),
    ("pod_labels", "podLabels"),
    ("pod_annotations", "podAnnotations"),
    ("service_account_annotations", "serviceAccountAnnotations"),
)


@dataclass
class MetricsServerSpec:
    """Desired state of a MetricsServer; ``None`` means "use the default"."""

    image: str = ""
    replicas: int | None = None
    resources: dict[str, dict[str, str]] | None = None
    args: list[str] = field(default_factory=list)
    kubelet_insecure_tls: bool | None = None
    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    affinity: dict[str, Any] | None = None
    service_monitor: bool | None = None
    pod_disruption_budget: bool | None = None
    host_network: bool | None = None
    priority_class_name: str | None = None
    service_labels: dict[str, str] = field(default_factory=dict)
    service_annotations: dict[str, str] = field(default_factory=dict)
    pod_labels: dict[str, str] = field(default_factory=dict)
    pod_annotations: dict[str, str] = field(default_factory=dict)
    service_account_annotations: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for attr, key in _SPEC_FIELDS:
            value = getattr(self, attr)
            if key == "image" or not _is_empty(value):
                if _is_empty(value):
                    continue
                data[key] = copy.deepcopy(value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MetricsServerSpec:
        data = data or {}
        spec = cls()
        for attr, key in _SPEC_FIELDS:
            if key in data and data[key] is not None:
                setattr(spec, attr, copy.deepcopy(data[key]))
        return spec


@dataclass
class MetricsServerStatus:
    """Observed state of a MetricsServer."""

    conditions: list[Condition] = field(default_factory=list)
    ready_replicas: int = 0
    available_replicas: int = 0
    observed_generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.conditions:
            data["conditions"] = [condition.to_dict() for condition in self.conditions]
        if self.ready_replicas:
            data["readyReplicas"] = self.ready_replicas
        if self.available_replicas:
            data["availableReplicas"] = self.available_replicas
        if self.observed_generation:
            data["observedGeneration"] = self.observed_generation
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MetricsServerStatus:
        data = data or {}
        return cls(
            conditions=[Condition.from_dict(item) for item in data.get("conditions") or []],
            ready_replicas=int(data.get("readyReplicas", 0)),
            available_replicas=int(data.get("availableReplicas", 0)),
            observed_generation=int(data.get("observedGeneration", 0)),
        )


@dataclass
class MetricsServer:
    """A cluster-scoped MetricsServer resource."""

    name: str = ""
    spec: MetricsServerSpec = field(default_factory=MetricsServerSpec)
    status: MetricsServerStatus = field(default_factory=MetricsServerStatus)
    generation: int = 0
    resource_version: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None

    @property
    def replicas(self) -> int:
        """Replica count, defaulting to one."""
        return DEFAULT_REPLICAS if self.spec.replicas is None else self.spec.replicas

    @property
    def image(self) -> str:
        """Container image, defaulting to the stock metrics-server release."""
        return self.spec.image or DEFAULT_IMAGE

    @property
    def kubelet_insecure_tls(self) -> bool:
        """Whether kubelet TLS verification is skipped; on by default."""
        return True if self.spec.kubelet_insecure_tls is None else self.spec.kubelet_insecure_tls

    @property
    def service_monitor(self) -> bool:
        """Whether a ServiceMonitor is wanted; off by default."""
        return bool(self.spec.service_monitor)

    @property
    def pod_disruption_budget(self) -> bool:
        """Whether a PodDisruptionBudget is wanted; off by default."""
        return bool(self.spec.pod_disruption_budget)

    @property
    def host_network(self) -> bool:
        """Whether pods use host networking; off by default."""
        return bool(self.spec.host_network)

    @property
    def priority_class_name(self) -> str:
        """Pod priority class, defaulting to system-cluster-critical."""
        if self.spec.priority_class_name is None:
            return DEFAULT_PRIORITY_CLASS_NAME
        return self.spec.priority_class_name

    @property
    def is_deleting(self) -> bool:
        """True once the resource has been marked for deletion."""
        return self.deletion_timestamp is not None

    def to_dict(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name}
        if self.generation:
            metadata["generation"] = self.generation
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.uid:
            metadata["uid"] = self.uid
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        if self.creation_timestamp is not None:
            metadata["creationTimestamp"] = _format_time(self.creation_timestamp)
        if self.deletion_timestamp is not None:
            metadata["deletionTimestamp"] = _format_time(self.deletion_timestamp)
        return {
            "apiVersion": GROUP_VERSION.api_version(),
            "kind": KIND_METRICS_SERVER,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricsServer:
        kind = data.get("kind")
        if kind is not None and kind != KIND_METRICS_SERVER:
            raise ValueError(f"expected kind {KIND_METRICS_SERVER!r}, got {kind!r}")
        metadata = data.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            spec=MetricsServerSpec.from_dict(data.get("spec")),
            status=MetricsServerStatus.from_dict(data.get("status")),
            generation=int(metadata.get("generation", 0)),
            resource_version=metadata.get("resourceVersion", ""),
            uid=metadata.get("uid", ""),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            creation_timestamp=_parse_time(metadata.get("creationTimestamp")),
            deletion_timestamp=_parse_time(metadata.get("deletionTimestamp")),
        )


def find_status_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Return the condition of the given type, or None."""
    return next((c for c in conditions if c.type == condition_type), None)


def set_status_condition(conditions: list[Condition], condition: Condition) -> bool:
    """Add or update a condition in place; return whether anything changed.

    The transition time only moves when the status itself changes.
    """
    existing = find_status_condition(conditions, condition.type)
    if existing is None:
        added = replace(condition)
        if added.last_transition_time is None:
            added.last_transition_time = _now()
        conditions.append(added)
        return True

    changed = False
    if existing.status != condition.status:
        existing.status = condition.status
        existing.last_transition_time = condition.last_transition_time or _now()
        changed = True
    if existing.reason != condition.reason:
        existing.reason = condition.reason
        changed = True
    if existing.message != condition.message:
        existing.message = condition.message
        changed = True
    if existing.observed_generation != condition.observed_generation:
        existing.observed_generation = condition.observed_generation
        changed = True
    return changed


def is_status_condition_true(conditions: list[Condition], condition_type: str) -> bool:
    """True when the condition of the given type exists with status True."""
    found = find_status_condition(conditions, condition_type)
    return found is not None and found.status == CONDITION_TRUE