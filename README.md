# apbruntime

`apbruntime` runs service bundles as pods inside short-lived sandbox
namespaces on a Kubernetes or OpenShift cluster. It also manages the state and
credentials that those bundles produce. Cluster objects are plain dicts, and
every cluster call goes through a `ClusterClient`.

## Modules

- `apbruntime.cluster`: the `ClusterClient` protocol, the errors it raises
  (`ApiError`, `NotFoundError`, `AlreadyExistsError`, `UnauthorizedError`,
  `ForbiddenError`, and `is_not_found`), and `InMemoryCluster`.
  `InMemoryCluster` is a thread-safe cluster kept in memory. It supports
  `create`, `get`, `list_objects`, `update`, `delete` and `watch`. It can send
  extra watch events with `emit`, serve configured raw paths with
  `set_raw`/`get_raw`, and answer exec calls with `register_exec`/`exec`.
- `apbruntime.provider`: `new_runtime` and `Provider`. `new_runtime` reads
  `/version/openshift` to detect the cluster. If the path answers, the cluster
  is `OpenshiftCluster`. If the path raises `NotFoundError`,
  `UnauthorizedError` or `ForbiddenError`, the cluster is `KubernetesCluster`.
  It then builds a `Provider` from a `Configuration`.
  - `Provider.create_sandbox` checks the target namespaces and creates the
    transient namespace when it is not one of the targets. It adds a network
    policy when the first target already has some. It then creates the
    service account and the role bindings.
  - `Provider.destroy_sandbox` removes all of these. It also removes the
    namespace unless `keep_namespace`, or `keep_namespace_on_error` with a
    failed, unknown or missing pod, says to keep it. It raises `RuntimeError`
    if asked to delete `config_namespace`.
  - `Provider` also has `validate_runtime`, `run_bundle`,
    `watch_running_bundle`, `copy_secrets_to_namespace`,
    `extract_credentials` and the `runtime` name.
- `apbruntime.hooks`: `SandboxHooks` keeps the pre/post create and destroy
  hooks. It runs them in order. A hook that raises is logged and collected, and
  the remaining hooks still run.
- `apbruntime.run_bundle`: the tools for building and starting the bundle
  pod.
  - `ExecutionContext` and `ProxyConfig` describe the run. `PullPolicy` and
    `check_pull_policy` resolve the image pull policy.
  - `build_volume_specs`, `create_pod_env` and `build_pod` build the pod
    spec. `run_bundle` creates the pod.
  - `copy_secrets_to_namespace` copies secrets into the sandbox.
- `apbruntime.watch`: `watch_running_bundle` follows the bundle pod. It passes
  the `apb_last_operation` and `apb_dashboard_url` annotations to a callback.
  When the pod fails, it raises `PodPullError`, `ActionNotFoundError` (exit
  code 8), `CustomMessageError` or `WatchError`.
- `apbruntime.credentials`: `extract_credentials` collects the credentials a
  bundle produces.
  - Runtime version 1 runs `broker-bind-creds` in the pod through `exec` and
    base64-decodes the output, retrying while the pod runs.
  - Version 2 and later read the `fields` key of a secret named after the pod.
  - `SecretCredentialStore` stores extracted credentials as JSON under a
    secret's `credentials` key.
- `apbruntime.state`: `StateManager` copies, checks and deletes the config
  maps that carry bundle state between actions.
- `apbruntime.coe`: `KubernetesCluster` and `OpenshiftCluster`. On OpenShift
  with the `redhat/openshift-ovs-multitenant` network plugin, the runtime adds
  hooks that join and isolate pod networks through an
  `OpenshiftNetworkClient`.

## Installation

```
pip install apbruntime
```

## Usage

```python
from apbruntime.cluster import InMemoryCluster
from apbruntime.provider import Configuration, new_runtime
from apbruntime.run_bundle import ExecutionContext

client = InMemoryCluster()
client.create("namespaces", "", {"metadata": {"name": "target-ns"}})

# No /version/openshift is configured, so this is a plain Kubernetes runtime.
provider = new_runtime(client, Configuration(), None)
assert provider.runtime == "kubernetes"

pod_name, namespace = provider.create_sandbox(
    "bundle-pod", "bundle-sandbox", ["target-ns"], "edit", {}
)

context = ExecutionContext(
    bundle_name=pod_name,
    location=namespace,
    account=pod_name,
    targets=["target-ns"],
    action="provision",
    image="example/bundle:latest",
    policy="IfNotPresent",
    extra_vars="{}",
)
provider.run_bundle(context)
pod = client.get("pods", namespace, pod_name)
```

`watch_running_bundle` blocks until the watched pod succeeds, fails or is
deleted. With `InMemoryCluster`, run it in a thread and send pod updates
through `update` or `emit`.

## What the package does not do

- The package has no client for a real cluster API. It does not implement
  `OpenshiftNetworkClient` either. Either supply your own objects that follow
  these protocols, or use `InMemoryCluster`.
- The package has no command-line entry point and no server.
- The package does not record metrics for sandboxes that are created or
  deleted.

## Running the tests

```
pip install -e ".[test]"
pytest
```