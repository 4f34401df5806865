# msoperator

`msoperator` describes a cluster-wide metrics-server installation with a single
`MetricsServer` resource and works out every Kubernetes object that
installation needs. Those objects are the service account, the RBAC roles and
bindings, the service, the deployment, the `v1beta1.metrics.k8s.io` APIService
and, when asked for, a PodDisruptionBudget. A reconciler keeps those objects in
line with the resource's spec and reports progress through status conditions.

The package has no dependencies outside the standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `msoperator.constants` holds the fixed names (`DEFAULT_NAMESPACE` is
  `kube-system`, `DEFAULT_DEPLOYMENT_NAME` is `metrics-server`, and so on). It
  also holds the label keys, condition types and reasons, `FINALIZER_NAME`, and
  `GROUP_VERSION`, a `GroupVersion` whose `api_version()` is
  `observability.vexxhost.dev/v1alpha1`.
- `msoperator.types` defines `MetricsServer`, `MetricsServerSpec`,
  `MetricsServerStatus` and `Condition`. Each has `to_dict()` and
  `from_dict()` for the JSON-style wire form. The properties of `MetricsServer`
  apply the defaults:
  - `replicas` is 1.
  - `image` is `registry.k8s.io/metrics-server/metrics-server:v0.7.2`.
  - `kubelet_insecure_tls` is `True`.
  - `service_monitor`, `pod_disruption_budget` and `host_network` are `False`.
  - `priority_class_name` is `system-cluster-critical`.

  `is_deleting` tells whether the resource has been marked for deletion. The
  functions `set_status_condition`, `find_status_condition` and
  `is_status_condition_true` manage a list of conditions. The transition time
  changes only when a condition's status changes.
- `msoperator.builder` turns a `MetricsServer` into plain manifest
  dictionaries. The builders are `build_service_account`,
  `build_cluster_role`, `build_cluster_role_aggregated_reader`,
  `build_cluster_role_binding`, `build_role_binding_auth_reader`,
  `build_cluster_role_binding_auth_delegator`, `build_service`,
  `build_deployment`, `build_api_service` and `build_pod_disruption_budget`.
  The helpers `build_labels`, `build_selector_labels`,
  `build_labels_with_aggregation` and `build_resources` supply the labels and
  the resource defaults (10m CPU and 32Mi memory requested, with limits of
  100m and 128Mi).
- `msoperator.kube.InMemoryClient` is an in-process object store keyed by kind,
  namespace and name. It provides `get`, `list`, `create`, `update`,
  `update_status` and `delete`, along with `get_metrics_server` and
  `list_metrics_servers`. It assigns resource versions and refuses stale
  updates. `update` leaves the stored status alone. An object that still has
  finalizers is only marked for deletion. Failures raise `ApiError` or its
  subclasses `NotFoundError` and `AlreadyExistsError`.
- `msoperator.controller.MetricsServerReconciler` performs one reconciliation
  pass per `reconcile(name)` call and returns a `Result` whose `requeue_after`
  is 30 seconds after a full pass. A pass:
  1. Adds the finalizer.
  2. Checks that no other live `MetricsServer` exists. If one does, it raises
     `SingletonViolationError` and sets a `Degraded` condition with reason
     `SingletonViolation`.
  3. Creates or updates each owned object.
  4. Sets the `Ready`, `Available`, `Progressing` and `Degraded` conditions
     from the deployment's ready replica count.

  Namespaced objects receive a controller owner reference through
  `set_controller_reference`. Cluster-scoped objects are labelled with the
  instance name. If such an object already belongs to another instance, the
  pass raises `OwnershipError`. `needs_update` decides whether a stored object
  must be rewritten. When a resource is being deleted,
  `finalize_metrics_server` removes the cluster-scoped objects carrying its
  label. `find_metrics_server_for_cluster_resource` maps a cluster-scoped
  object back to the instance that owns it.
- `msoperator.webhook.MetricsServerValidator` is the admission check.
  `validate_create` raises `ValidationError` when another live
  `MetricsServer` exists. The error's `warnings` attribute holds the warning
  to return with it. `validate_update` and `validate_delete` always allow the
  request.

## Example

```python
from msoperator.types import MetricsServer, MetricsServerSpec
from msoperator.kube import InMemoryClient
from msoperator.controller import MetricsServerReconciler
from msoperator.webhook import MetricsServerValidator, ValidationError

client = InMemoryClient()
ms = MetricsServer(name="cluster-metrics", spec=MetricsServerSpec(replicas=2))

MetricsServerValidator(client).validate_create(ms)
client.create(ms)

reconciler = MetricsServerReconciler(client)
result = reconciler.reconcile("cluster-metrics")
print(result.requeue_after)  # 0:00:30

deployment = client.get("Deployment", "metrics-server", "kube-system")
print(deployment["spec"]["replicas"])  # 2

try:
    MetricsServerValidator(client).validate_create(MetricsServer(name="second"))
except ValidationError as exc:
    print(exc, exc.warnings)
```

## What this package does not do

- It does not talk to a Kubernetes API server. The only store is
  `InMemoryClient`, and nothing is persisted outside the process.
- It has no command-line program, no long-running manager, no watch loop and
  no leader election. Each reconciliation runs only when `reconcile` is
  called, and `requeue_after` is left for the caller to act on.
- It serves no HTTP endpoints. There is no admission webhook server, no
  metrics endpoint and no health probes. `MetricsServerValidator` is called
  directly.
- The `service_monitor` setting is read, but no ServiceMonitor object is ever
  built.