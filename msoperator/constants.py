"""Names, labels, condition types and the API group of the MetricsServer resource."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_NAMESPACE = "kube-system"
DEFAULT_SERVICE_ACCOUNT_NAME = "metrics-server"
DEFAULT_SERVICE_NAME = "metrics-server"
DEFAULT_DEPLOYMENT_NAME = "metrics-server"
DEFAULT_API_SERVICE_NAME = "v1beta1.metrics.k8s.io"
DEFAULT_CLUSTER_ROLE_NAME = "system:metrics-server"
DEFAULT_CLUSTER_ROLE_BINDING_NAME = "system:metrics-server"
DEFAULT_CLUSTER_ROLE_AGGREGATED_READER_NAME = "system:metrics-server-aggregated-reader"
DEFAULT_ROLE_BINDING_AUTH_READER_NAME = "metrics-server-auth-reader"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_MANAGED_BY_VALUE = "metrics-server-operator"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_COMPONENT_VALUE = "metrics-server"
LABEL_NAME = "app.kubernetes.io/name"
LABEL_NAME_VALUE = "metrics-server"

CONDITION_TYPE_READY = "Ready"
CONDITION_TYPE_PROGRESSING = "Progressing"
CONDITION_TYPE_DEGRADED = "Degraded"
CONDITION_TYPE_AVAILABLE = "Available"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

REASON_RECONCILING = "Reconciling"
REASON_READY = "Ready"
REASON_FAILED = "Failed"
REASON_PROGRESSING = "Progressing"
REASON_DEPLOYMENT_NOT_READY = "DeploymentNotReady"
REASON_DEPLOYMENT_READY = "DeploymentReady"
REASON_API_SERVICE_NOT_READY = "APIServiceNotReady"
REASON_API_SERVICE_READY = "APIServiceReady"
REASON_SINGLETON_VIOLATION = "SingletonViolation"

FINALIZER_NAME = "metrics-server.core.vexxhost.com/finalizer"

KIND_METRICS_SERVER = "MetricsServer"
KIND_METRICS_SERVER_LIST = "MetricsServerList"


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with one of its versions."""

    group: str
    version: str

    def api_version(self) -> str:
        """The ``apiVersion`` string objects of this group version carry."""
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return self.api_version()


GROUP_VERSION = GroupVersion(group="observability.vexxhost.dev", version="v1alpha1")