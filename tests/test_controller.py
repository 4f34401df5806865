import copy
from datetime import datetime, timedelta, timezone

import pytest

from msoperator.builder import (
    build_cluster_role,
    build_service,
    build_service_account,
)
from msoperator.constants import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_TYPE_DEGRADED,
    CONDITION_TYPE_PROGRESSING,
    CONDITION_TYPE_READY,
    DEFAULT_API_SERVICE_NAME,
    DEFAULT_CLUSTER_ROLE_BINDING_NAME,
    DEFAULT_CLUSTER_ROLE_NAME,
    DEFAULT_DEPLOYMENT_NAME,
    DEFAULT_NAMESPACE,
    DEFAULT_SERVICE_ACCOUNT_NAME,
    DEFAULT_SERVICE_NAME,
    FINALIZER_NAME,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_MANAGED_BY_VALUE,
    REASON_FAILED,
    REASON_SINGLETON_VIOLATION,
)
from msoperator.controller import (
    MetricsServerReconciler,
    OwnershipError,
    Result,
    SingletonViolationError,
    needs_update,
    set_controller_reference,
)
from msoperator.kube import ApiError, InMemoryClient, NotFoundError
from msoperator.types import (
    MetricsServer,
    MetricsServerSpec,
    find_status_condition,
    is_status_condition_true,
)

NAME = "test-metrics-server"
IMAGE = "registry.k8s.io/metrics-server/metrics-server:v0.7.2"


def _server(name=NAME, **spec):
    return MetricsServer(name=name, spec=MetricsServerSpec(**spec))


def _deleting(name):
    return MetricsServer(
        name=name,
        deletion_timestamp=datetime.now(timezone.utc),
        finalizers=[FINALIZER_NAME],
    )


def _setup(*objects):
    client = InMemoryClient(list(objects))
    return client, MetricsServerReconciler(client)


# Singleton constraint cases


@pytest.mark.parametrize(
    "existing, current",
    [
        ([], "first"),
        ([_server("same")], "same"),
        ([_deleting("deleting")], "new"),
    ],
)
def test_singleton_allows_reconcile(existing, current):
    servers = list(existing)
    if current not in {ms.name for ms in servers}:
        servers.append(_server(current))
    client, reconciler = _setup(*servers)
    result = reconciler.reconcile(current)
    assert result.requeue_after == timedelta(seconds=30)
    assert FINALIZER_NAME in client.get_metrics_server(current).finalizers


@pytest.mark.parametrize(
    "existing, current, contains",
    [
        (["existing"], "new", "only one MetricsServer instance is allowed per cluster"),
        (["existing1", "existing2"], "new", "existing1"),
    ],
)
def test_singleton_rejects_other_instances(existing, current, contains):
    _, reconciler = _setup(*[_server(name) for name in existing])
    with pytest.raises(SingletonViolationError) as excinfo:
        reconciler.validate_singleton_constraint(_server(current))
    assert contains in str(excinfo.value)
    assert excinfo.value.existing == existing


def test_singleton_message_lists_instances():
    _, reconciler = _setup(_server("existing1"), _server("existing2"))
    with pytest.raises(SingletonViolationError, match=r"Existing instances: \[existing1 existing2\]"):
        reconciler.validate_singleton_constraint(_server("new"))


# Reconcile behaviour


def test_reconcile_creates_resources():
    client, reconciler = _setup(_server(replicas=1, image=IMAGE))
    result = reconciler.reconcile(NAME)
    assert result == Result(requeue_after=timedelta(seconds=30))

    ms = client.get_metrics_server(NAME)
    assert FINALIZER_NAME in ms.finalizers

    sa = client.get("ServiceAccount", DEFAULT_SERVICE_ACCOUNT_NAME, DEFAULT_NAMESPACE)
    assert client.get("ClusterRole", DEFAULT_CLUSTER_ROLE_NAME)["kind"] == "ClusterRole"
    assert client.get("ClusterRoleBinding", DEFAULT_CLUSTER_ROLE_BINDING_NAME)["kind"] == "ClusterRoleBinding"
    assert client.get("Service", DEFAULT_SERVICE_NAME, DEFAULT_NAMESPACE)["kind"] == "Service"
    deployment = client.get("Deployment", DEFAULT_DEPLOYMENT_NAME, DEFAULT_NAMESPACE)
    assert client.get("APIService", DEFAULT_API_SERVICE_NAME)["kind"] == "APIService"

    assert sa["metadata"]["labels"][LABEL_MANAGED_BY] == LABEL_MANAGED_BY_VALUE
    assert sa["metadata"]["labels"][LABEL_INSTANCE] == NAME

    assert deployment["spec"]["replicas"] == 1
    pod_spec = deployment["spec"]["template"]["spec"]
    assert pod_spec["containers"][0]["image"] == IMAGE
    assert pod_spec["serviceAccountName"] == DEFAULT_SERVICE_ACCOUNT_NAME

    assert is_status_condition_true(ms.status.conditions, CONDITION_TYPE_PROGRESSING)
    assert not is_status_condition_true(ms.status.conditions, CONDITION_TYPE_READY)


def test_reconcile_sets_owner_reference_on_namespaced_objects():
    client, reconciler = _setup(_server())
    reconciler.reconcile(NAME)
    ms = client.get_metrics_server(NAME)
    sa = client.get("ServiceAccount", DEFAULT_SERVICE_ACCOUNT_NAME, DEFAULT_NAMESPACE)
    refs = sa["metadata"]["ownerReferences"]
    assert [(ref["kind"], ref["name"], ref["uid"]) for ref in refs] == [("MetricsServer", NAME, ms.uid)]


def test_reconcile_handles_deletion():
    client, reconciler = _setup(_server(replicas=1, image=IMAGE))
    reconciler.reconcile(NAME)
    assert client.get("ServiceAccount", DEFAULT_SERVICE_ACCOUNT_NAME, DEFAULT_NAMESPACE)["kind"] == "ServiceAccount"

    client.delete(client.get_metrics_server(NAME))
    assert client.get_metrics_server(NAME).is_deleting

    assert reconciler.reconcile(NAME) == Result()
    with pytest.raises(NotFoundError):
        client.get_metrics_server(NAME)
    with pytest.raises(NotFoundError):
        client.get("ClusterRole", DEFAULT_CLUSTER_ROLE_NAME)
    with pytest.raises(NotFoundError):
        client.get("APIService", DEFAULT_API_SERVICE_NAME)


def test_reconcile_updates_resources_when_spec_changes():
    client, reconciler = _setup(_server(replicas=1, image=IMAGE))
    reconciler.reconcile(NAME)

    ms = client.get_metrics_server(NAME)
    ms.spec.replicas = 2
    ms.spec.image = "registry.k8s.io/metrics-server/metrics-server:v0.7.1"
    client.update(ms)

    reconciler.reconcile(NAME)
    deployment = client.get("Deployment", DEFAULT_DEPLOYMENT_NAME, DEFAULT_NAMESPACE)
    assert deployment["spec"]["replicas"] == 2
    assert (
        deployment["spec"]["template"]["spec"]["containers"][0]["image"]
        == "registry.k8s.io/metrics-server/metrics-server:v0.7.1"
    )


def test_reconcile_enforces_singleton():
    client, reconciler = _setup(_server("first-metrics-server", image=IMAGE, replicas=1))
    reconciler.reconcile("first-metrics-server")

    client.create(_server("second-metrics-server", image=IMAGE, replicas=1))
    with pytest.raises(SingletonViolationError) as excinfo:
        reconciler.reconcile("second-metrics-server")
    message = str(excinfo.value)
    assert "only one MetricsServer instance is allowed per cluster" in message
    assert "first-metrics-server" in message
    assert excinfo.value.requeue_after == timedelta(minutes=5)

    second = client.get_metrics_server("second-metrics-server")
    degraded = find_status_condition(second.status.conditions, CONDITION_TYPE_DEGRADED)
    assert degraded is not None
    assert (degraded.status, degraded.reason) == (CONDITION_TRUE, REASON_SINGLETON_VIOLATION)

    client.delete(client.get_metrics_server("first-metrics-server"))
    reconciler.reconcile("first-metrics-server")
    with pytest.raises(NotFoundError):
        client.get_metrics_server("first-metrics-server")

    assert reconciler.reconcile("second-metrics-server").requeue_after == timedelta(seconds=30)
    api_service = client.get("APIService", DEFAULT_API_SERVICE_NAME)
    assert api_service["metadata"]["labels"][LABEL_INSTANCE] == "second-metrics-server"


def test_reconcile_missing_server_is_ignored():
    _, reconciler = _setup()
    assert reconciler.reconcile("absent") == Result(requeue_after=None)


def test_reconcile_marks_ready_when_deployment_ready():
    client, reconciler = _setup(_server(replicas=1))
    reconciler.reconcile(NAME)

    deployment = client.get("Deployment", DEFAULT_DEPLOYMENT_NAME, DEFAULT_NAMESPACE)
    deployment["status"] = {"readyReplicas": 1, "availableReplicas": 1}
    client.update_status(deployment)

    reconciler.reconcile(NAME)
    ms = client.get_metrics_server(NAME)
    assert is_status_condition_true(ms.status.conditions, CONDITION_TYPE_READY)
    assert find_status_condition(ms.status.conditions, CONDITION_TYPE_PROGRESSING).status == CONDITION_FALSE
    assert find_status_condition(ms.status.conditions, CONDITION_TYPE_DEGRADED).status == CONDITION_FALSE
    assert (ms.status.ready_replicas, ms.status.available_replicas) == (1, 1)


def test_reconcile_not_ready_message():
    client, reconciler = _setup(_server(replicas=3))
    reconciler.reconcile(NAME)
    ms = client.get_metrics_server(NAME)
    ready = find_status_condition(ms.status.conditions, CONDITION_TYPE_READY)
    assert ready.message == "Deployment has 0/3 replicas ready"


def test_pod_disruption_budget_only_when_enabled():
    client, reconciler = _setup(_server(pod_disruption_budget=True))
    reconciler.reconcile(NAME)
    pdb = client.get("PodDisruptionBudget", DEFAULT_DEPLOYMENT_NAME, DEFAULT_NAMESPACE)
    assert pdb["spec"]["minAvailable"] == 0

    client, reconciler = _setup(_server())
    reconciler.reconcile(NAME)
    with pytest.raises(NotFoundError):
        client.get("PodDisruptionBudget", DEFAULT_DEPLOYMENT_NAME, DEFAULT_NAMESPACE)


def test_cluster_resource_owned_by_other_instance():
    foreign = build_cluster_role(_server("other"))
    client, reconciler = _setup(_server(), foreign)
    ms = client.get_metrics_server(NAME)
    with pytest.raises(OwnershipError, match="owned by another MetricsServer instance"):
        reconciler.reconcile_cluster_scoped_resource(ms, build_cluster_role(ms))


def test_reconcile_reports_resource_failure():
    foreign = build_cluster_role(_server("other"))
    client, reconciler = _setup(_server(), foreign)
    with pytest.raises(ApiError, match="failed to reconcile ClusterRole: cluster-scoped resource") as excinfo:
        reconciler.reconcile(NAME)
    assert isinstance(excinfo.value.__cause__, OwnershipError)

    ms = client.get_metrics_server(NAME)
    degraded = find_status_condition(ms.status.conditions, CONDITION_TYPE_DEGRADED)
    assert degraded.reason == REASON_FAILED
    assert degraded.message.startswith("Failed to reconcile resources: failed to reconcile ClusterRole")


def test_finalize_keeps_foreign_resources():
    foreign = build_cluster_role(_server("other"))
    client, reconciler = _setup(_server(), foreign)
    reconciler.finalize_metrics_server(client.get_metrics_server(NAME))
    kept = client.get("ClusterRole", DEFAULT_CLUSTER_ROLE_NAME)
    assert kept["metadata"]["labels"][LABEL_INSTANCE] == "other"


# Mapping cluster resources back to their MetricsServer


def test_find_metrics_server_for_cluster_resource():
    _, reconciler = _setup(_server())
    assert reconciler.find_metrics_server_for_cluster_resource(build_cluster_role(_server())) == [NAME]
    assert reconciler.find_metrics_server_for_cluster_resource(
        {"kind": "ClusterRole", "metadata": {"name": "x"}}
    ) == []
    assert reconciler.find_metrics_server_for_cluster_resource(build_cluster_role(_server("ghost"))) == []
    assert reconciler.find_metrics_server_for_cluster_resource(
        {"kind": "ClusterRole", "metadata": {"name": "x", "labels": {"a": "b"}}}
    ) == []


# needs_update


def test_needs_update_service_account():
    ms = _server()
    current = build_service_account(ms)
    desired = copy.deepcopy(current)
    current["metadata"]["annotations"] = {}
    assert needs_update(current, desired) is False
    desired["metadata"]["labels"]["extra"] = "x"
    assert needs_update(current, desired) is True


def test_needs_update_service_keeps_cluster_ip():
    ms = _server()
    current = build_service(ms)
    current["spec"]["clusterIP"] = "10.96.0.10"
    desired = build_service(ms)
    assert needs_update(current, desired) is False
    assert desired["spec"]["clusterIP"] == "10.96.0.10"


def test_needs_update_cluster_role_rules():
    ms = _server()
    current = build_cluster_role(ms)
    desired = build_cluster_role(ms)
    desired["rules"].pop()
    assert needs_update(current, desired) is True


def test_needs_update_unknown_kind():
    current = {"kind": "ConfigMap", "metadata": {"name": "a"}, "data": {"k": "1"}}
    desired = {"kind": "ConfigMap", "metadata": {"name": "a"}, "data": {"k": "2"}}
    assert needs_update(current, desired) is False


# set_controller_reference


def test_set_controller_reference_is_idempotent():
    owner = MetricsServer(name=NAME, uid="uid-1")
    obj = {"kind": "ServiceAccount", "metadata": {"name": "sa", "namespace": "ns"}}
    set_controller_reference(owner, obj)
    set_controller_reference(owner, obj)
    refs = obj["metadata"]["ownerReferences"]
    assert len(refs) == 1
    assert refs[0]["name"] == NAME
    assert refs[0]["uid"] == "uid-1"
    assert refs[0]["controller"] is True
    assert refs[0]["blockOwnerDeletion"] is True


def test_set_controller_reference_rejects_other_controller():
    obj = {"kind": "ServiceAccount", "metadata": {"name": "sa", "namespace": "ns"}}
    set_controller_reference(MetricsServer(name="one", uid="u1"), obj)
    with pytest.raises(OwnershipError, match="already owned"):
        set_controller_reference(MetricsServer(name="two", uid="u2"), obj)
    assert [ref["name"] for ref in obj["metadata"]["ownerReferences"]] == ["one"]