import pytest

from apbruntime.cluster import ApiError, ForbiddenError, InMemoryCluster, NotFoundError, UnauthorizedError
from apbruntime.coe import KubernetesCluster, OpenshiftCluster
from apbruntime.credentials import SecretCredentialStore
from apbruntime.provider import (
    Configuration,
    is_namespace_in_targets,
    new_runtime,
    should_delete_namespace,
    validate_targets,
)
from apbruntime.run_bundle import ExecutionContext
from apbruntime.state import DEFAULT_MOUNT_LOCATION, DEFAULT_NAMESPACE


def openshift_cluster():
    cluster = InMemoryCluster()
    cluster.set_raw("/version/openshift", b'{"major":"3", "minor": "2"}')
    return cluster


def add_namespaces(cluster, names):
    for name in names:
        cluster.create("namespaces", "", {"metadata": {"name": name, "generateName": name}})


def create_hook(pod, ns, targets, role):
    return None


def destroy_hook(pod, ns, targets):
    return None


class MultitenantClient:
    def get_cluster_network_plugin(self):
        return "Redhat/OpenShift-OVS-Multitenant"


class CustomStore:
    pass


def test_new_runtime_default_openshift():
    provider = new_runtime(openshift_cluster(), Configuration())
    assert isinstance(provider.cluster, OpenshiftCluster)
    assert provider.runtime == "openshift"
    assert isinstance(provider.credential_store, SecretCredentialStore)
    assert provider.state.master_namespace == DEFAULT_NAMESPACE
    assert provider.state.mount_location == DEFAULT_MOUNT_LOCATION
    assert provider.hooks.pre_create == []
    assert provider.hooks.post_destroy == []


@pytest.mark.parametrize(
    "error", [NotFoundError("missing"), UnauthorizedError("unauth"), ForbiddenError("forbidden")]
)
def test_new_runtime_kubernetes_on_missing_version(error):
    cluster = InMemoryCluster()
    cluster.set_raw("/version/openshift", error=error)
    provider = new_runtime(cluster, Configuration())
    assert provider.cluster == KubernetesCluster()
    assert provider.runtime == "kubernetes"


def test_new_runtime_kubernetes_when_path_unset():
    provider = new_runtime(InMemoryCluster())
    assert provider.runtime == "kubernetes"


def test_new_runtime_raises_on_server_error():
    cluster = InMemoryCluster()
    cluster.set_raw("/version/openshift", error=ApiError("internal server error"))
    with pytest.raises(ApiError, match="internal server error"):
        new_runtime(cluster, Configuration())


def test_new_runtime_raises_on_bad_version_body():
    cluster = InMemoryCluster()
    cluster.set_raw("/version/openshift", b"not json")
    with pytest.raises(ValueError):
        new_runtime(cluster, Configuration())


def test_new_runtime_empty_body_is_openshift():
    cluster = InMemoryCluster()
    cluster.set_raw("/version/openshift", b"")
    assert new_runtime(cluster).runtime == "openshift"


def test_new_runtime_custom_credentials():
    store = CustomStore()
    provider = new_runtime(openshift_cluster(), Configuration(extracted_credential=store))
    assert provider.credential_store is store


def test_new_runtime_pre_hooks():
    config = Configuration(
        pre_create_sandbox_hooks=[create_hook], pre_destroy_sandbox_hooks=[destroy_hook]
    )
    provider = new_runtime(openshift_cluster(), config)
    assert provider.hooks.pre_create == [create_hook]
    assert provider.hooks.pre_destroy == [destroy_hook]
    assert provider.hooks.post_create == []
    assert provider.hooks.post_destroy == []


def test_new_runtime_post_hooks():
    config = Configuration(
        post_create_sandbox_hooks=[create_hook], post_destroy_sandbox_hooks=[destroy_hook]
    )
    provider = new_runtime(openshift_cluster(), config)
    assert provider.hooks.post_create == [create_hook]
    assert provider.hooks.post_destroy == [destroy_hook]
    assert provider.hooks.pre_create == []


def test_new_runtime_multitenant_adds_network_hooks():
    provider = new_runtime(openshift_cluster(), Configuration(), MultitenantClient())
    assert len(provider.hooks.post_create) == 1
    assert len(provider.hooks.post_destroy) == 1


def test_new_runtime_custom_run_bundle():
    seen = []

    def runner(context):
        seen.append(context.bundle_name)
        return context

    provider = new_runtime(openshift_cluster(), Configuration(run_bundle=runner))
    context = ExecutionContext(bundle_name="bundle-test")
    assert provider.run_bundle(context) is context
    assert seen == ["bundle-test"]


def test_new_runtime_custom_watch_bundle():
    calls = []
    provider = new_runtime(
        openshift_cluster(),
        Configuration(watch_bundle=lambda pod, ns, update: calls.append((pod, ns))),
    )
    provider.watch_running_bundle("pod", "ns", lambda desc, url: None)
    assert calls == [("pod", "ns")]


def test_new_runtime_custom_copy_secrets():
    calls = []
    provider = new_runtime(
        openshift_cluster(),
        Configuration(copy_secrets_to_namespace=lambda ec, cn, s: calls.append((cn, list(s)))),
    )
    provider.copy_secrets_to_namespace(ExecutionContext(location="test"), "cluster-test", ["a"])
    assert calls == [("cluster-test", ["a"])]


def test_default_run_bundle_uses_configured_mount_location():
    cluster = openshift_cluster()
    provider = new_runtime(cluster, Configuration(state_mount_location="/tmp/foo"))
    context = ExecutionContext(
        bundle_name="bundle-test",
        location="test-bundle-test",
        account="svc-acct-bundle-test",
        action="provision",
        image="new-image",
        policy="Always",
        state_name="bundle-test",
        state_location="/tmp/foo",
    )
    assert provider.run_bundle(context) is context
    pod = cluster.get("pods", "test-bundle-test", "bundle-test")
    mounts = pod["spec"]["containers"][0]["volumeMounts"]
    assert mounts == [{"name": "bundle-test", "mountPath": "/tmp/foo", "readOnly": True}]


def test_default_copy_secrets_through_provider():
    cluster = openshift_cluster()
    cluster.create(
        "secrets",
        "cluster-test",
        {"metadata": {"name": "test-secret", "labels": {"label": "value"}}, "stringData": {"hello": "world"}},
    )
    provider = new_runtime(cluster)
    provider.copy_secrets_to_namespace(ExecutionContext(location="test"), "cluster-test", ["test-secret"])
    copied = cluster.get("secrets", "test", "test-secret")
    assert copied["metadata"]["namespace"] == "test"
    assert copied["metadata"]["labels"] == {"label": "value"}
    assert copied["stringData"] == {"hello": "world"}


def test_extract_credentials_through_provider():
    cluster = openshift_cluster()
    cluster.create("secrets", "bar", {"metadata": {"name": "foo"}, "data": {"fields": b'{"db": "name"}'}})
    provider = new_runtime(cluster)
    assert provider.extract_credentials("foo", "bar", 2) == b'{"db": "name"}'
    with pytest.raises(ValueError):
        provider.extract_credentials("foo", "bar", 0)


def test_validate_runtime_errors():
    cluster = openshift_cluster()
    provider = new_runtime(cluster)
    with pytest.raises(NotFoundError):
        provider.validate_runtime()
    cluster.set_raw("/version", error=ForbiddenError("forbidden"))
    with pytest.raises(ForbiddenError):
        provider.validate_runtime()
    cluster.set_raw("/version", b"{broken")
    with pytest.raises(ValueError):
        provider.validate_runtime()


@pytest.mark.parametrize(
    "namespace, targets, expected",
    [("a", ["a", "b"], True), ("c", ["a", "b"], False), ("a", [], False)],
)
def test_is_namespace_in_targets(namespace, targets, expected):
    assert is_namespace_in_targets(namespace, targets) is expected


@pytest.mark.parametrize(
    "keep, keep_on_error, pod, error, expected",
    [
        (True, False, {"status": {"phase": "Succeeded"}}, None, False),
        (False, False, {"status": {"phase": "Failed"}}, None, True),
        (False, True, {"status": {"phase": "Failed"}}, None, False),
        (False, True, {"status": {"phase": "Unknown"}}, None, False),
        (False, True, {"status": {"phase": "Succeeded"}}, None, True),
        (False, True, None, NotFoundError("gone"), False),
        (False, False, None, NotFoundError("gone"), True),
    ],
)
def test_should_delete_namespace(keep, keep_on_error, pod, error, expected):
    assert should_delete_namespace(keep, keep_on_error, pod, error) is expected


def test_validate_targets_errors():
    cluster = InMemoryCluster()
    with pytest.raises(ValueError, match="at least one target"):
        validate_targets(cluster, [])
    add_namespaces(cluster, ["present"])
    with pytest.raises(NotFoundError):
        validate_targets(cluster, ["present", "absent"])


@pytest.mark.parametrize(
    "namespace, targets, with_policy, expected_policies",
    [
        ("foo-ns", ["foo-ns"], False, []),
        ("bar-ns", ["satoshi-ns", "nakamoto-ns"], False, []),
        ("foo-ns", ["foo-ns"], True, ["existing"]),
        ("bar-ns", ["satoshi-ns", "nakamoto-ns"], True, ["existing", "pod-name"]),
    ],
)
def test_create_sandbox_network_policies(namespace, targets, with_policy, expected_policies):
    cluster = openshift_cluster()
    add_namespaces(cluster, targets)
    if with_policy:
        cluster.create("networkpolicies", targets[0], {"metadata": {"name": "existing"}, "spec": {}})
    provider = new_runtime(cluster)
    pod_name, sandbox_ns = provider.create_sandbox("pod-name", namespace, targets, "edit", None)
    assert (pod_name, sandbox_ns) == ("pod-name", namespace)
    names = [p["metadata"]["name"] for p in cluster.list_objects("networkpolicies", targets[0])]
    assert names == expected_policies


def test_create_sandbox_creates_account_and_bindings():
    cluster = openshift_cluster()
    targets = ["satoshi-ns", "nakamoto-ns"]
    add_namespaces(cluster, targets)
    provider = new_runtime(cluster)
    provider.create_sandbox("pod-name", "bar-ns", targets, "edit", {"apb": "label"})
    namespace = cluster.get("namespaces", "", "bar-ns")
    assert namespace["metadata"]["labels"] == {"apb": "label"}
    assert cluster.get("serviceaccounts", "bar-ns", "pod-name")["metadata"]["name"] == "pod-name"
    for target in ["bar-ns", *targets]:
        binding = cluster.get("rolebindings", target, "pod-name")
        assert binding["roleRef"] == {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": "edit",
        }
        assert binding["subjects"] == [
            {"kind": "ServiceAccount", "name": "pod-name", "namespace": "bar-ns"}
        ]


def test_create_sandbox_runs_hooks_and_survives_failures():
    calls = []

    def failing(pod, ns, targets, role):
        calls.append(("pre", pod, ns, list(targets), role))
        raise RuntimeError("hook failed")

    def recording(pod, ns, targets, role):
        calls.append(("post", pod, ns, list(targets), role))

    cluster = openshift_cluster()
    add_namespaces(cluster, ["foo-ns"])
    provider = new_runtime(
        cluster,
        Configuration(pre_create_sandbox_hooks=[failing], post_create_sandbox_hooks=[recording]),
    )
    result = provider.create_sandbox("pod-name", "foo-ns", ["foo-ns"], "admin", None)
    assert result == ("pod-name", "foo-ns")
    assert calls == [
        ("pre", "pod-name", "foo-ns", ["foo-ns"], "admin"),
        ("post", "pod-name", "foo-ns", ["foo-ns"], "admin"),
    ]


def test_create_sandbox_requires_targets():
    provider = new_runtime(openshift_cluster())
    with pytest.raises(ValueError, match="unable to get target namespaces"):
        provider.create_sandbox("pod-name", "foo-ns", [], "edit", None)


def test_create_sandbox_missing_target():
    provider = new_runtime(openshift_cluster())
    with pytest.raises(ValueError, match="unable to get target namespaces"):
        provider.create_sandbox("pod-name", "foo-ns", ["missing"], "edit", None)


def test_destroy_sandbox_cleans_up():
    destroyed = []
    cluster = openshift_cluster()
    targets = ["satoshi-ns", "nakamoto-ns"]
    add_namespaces(cluster, targets)
    cluster.create("networkpolicies", targets[0], {"metadata": {"name": "existing"}, "spec": {}})
    provider = new_runtime(
        cluster,
        Configuration(post_destroy_sandbox_hooks=[lambda p, n, t: destroyed.append((p, n))]),
    )
    provider.create_sandbox("pod-name", "bar-ns", targets, "edit", None)
    provider.destroy_sandbox("pod-name", "bar-ns", targets, DEFAULT_NAMESPACE, False, False)
    with pytest.raises(NotFoundError):
        cluster.get("namespaces", "", "bar-ns")
    for target in targets:
        assert cluster.list_objects("rolebindings", target) == []
    names = [p["metadata"]["name"] for p in cluster.list_objects("networkpolicies", targets[0])]
    assert names == ["existing"]
    assert destroyed == [("pod-name", "bar-ns")]


def test_destroy_sandbox_keeps_namespace():
    cluster = openshift_cluster()
    add_namespaces(cluster, ["target-ns"])
    provider = new_runtime(cluster)
    provider.create_sandbox("pod-name", "bar-ns", ["target-ns"], "edit", None)
    provider.destroy_sandbox("pod-name", "bar-ns", ["target-ns"], DEFAULT_NAMESPACE, True, False)
    assert cluster.get("namespaces", "", "bar-ns")["metadata"]["name"] == "bar-ns"
    assert cluster.list_objects("rolebindings", "target-ns") == []


def test_destroy_sandbox_keeps_namespace_on_failed_pod():
    cluster = openshift_cluster()
    add_namespaces(cluster, ["target-ns"])
    provider = new_runtime(cluster)
    provider.create_sandbox("pod-name", "bar-ns", ["target-ns"], "edit", None)
    cluster.create("pods", "bar-ns", {"metadata": {"name": "pod-name"}, "status": {"phase": "Failed"}})
    provider.destroy_sandbox("pod-name", "bar-ns", ["target-ns"], DEFAULT_NAMESPACE, False, True)
    assert cluster.get("namespaces", "", "bar-ns")["metadata"]["name"] == "bar-ns"


def test_destroy_sandbox_refuses_own_namespace():
    cluster = openshift_cluster()
    provider = new_runtime(cluster)
    with pytest.raises(RuntimeError, match="its own namespace"):
        provider.destroy_sandbox("pod-name", "broker-ns", ["target-ns"], "broker-ns", False, False)


def test_destroy_sandbox_empty_pod_name_only_runs_pre_hooks():
    calls = []
    provider = new_runtime(
        openshift_cluster(),
        Configuration(
            pre_destroy_sandbox_hooks=[lambda p, n, t: calls.append("pre")],
            post_destroy_sandbox_hooks=[lambda p, n, t: calls.append("post")],
        ),
    )
    provider.destroy_sandbox("", "bar-ns", ["target-ns"], DEFAULT_NAMESPACE, False, False)
    assert calls == ["pre"]