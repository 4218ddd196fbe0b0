"""The bundle runtime: sandboxes, bundle runs and the services around them."""

from __future__ import annotations

import functools
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from apbruntime.cluster import (
    ApiError,
    ClusterClient,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from apbruntime.coe import KubernetesCluster, OpenshiftCluster, OpenshiftNetworkClient
from apbruntime.credentials import SecretCredentialStore, extract_credentials
from apbruntime.hooks import CreateHook, DestroyHook, SandboxHooks
from apbruntime.run_bundle import ExecutionContext
from apbruntime.run_bundle import copy_secrets_to_namespace as _default_copy_secrets
from apbruntime.run_bundle import run_bundle as _default_run_bundle
from apbruntime.state import DEFAULT_MOUNT_LOCATION, DEFAULT_NAMESPACE, StateManager
from apbruntime.watch import UpdateDescriptionFn, watch_running_bundle

logger = logging.getLogger(__name__)

OPENSHIFT_VERSION_PATH = "/version/openshift"
VERSION_PATH = "/version"
NAMESPACES = "namespaces"
NETWORK_POLICIES = "networkpolicies"
ROLE_BINDINGS = "rolebindings"
SERVICE_ACCOUNTS = "serviceaccounts"
PODS = "pods"

WatchBundleFn = Callable[[str, str, UpdateDescriptionFn], None]
RunBundleFn = Callable[[ExecutionContext], ExecutionContext]
CopySecretsFn = Callable[[ExecutionContext, str, Sequence[str]], None]

_CLUSTER_MISSING_ERRORS = (NotFoundError, UnauthorizedError, ForbiddenError)


@dataclass
class Configuration:
    """Options for building a runtime; unset values fall back to defaults."""

    post_create_sandbox_hooks: list[CreateHook] = field(default_factory=list)
    post_destroy_sandbox_hooks: list[DestroyHook] = field(default_factory=list)
    pre_create_sandbox_hooks: list[CreateHook] = field(default_factory=list)
    pre_destroy_sandbox_hooks: list[DestroyHook] = field(default_factory=list)
    watch_bundle: WatchBundleFn | None = None
    run_bundle: RunBundleFn | None = None
    copy_secrets_to_namespace: CopySecretsFn | None = None
    extracted_credential: Any = None
    state_mount_location: str = ""
    state_master_namespace: str = ""


def _parse_version(body: bytes) -> dict[str, Any]:
    try:
        return json.loads(body)
    except ValueError:
        if body:
            raise
        return {}


def is_namespace_in_targets(namespace: str, targets: Sequence[str]) -> bool:
    """Whether the namespace is one of the target namespaces."""
    return namespace in targets


def should_delete_namespace(
    keep_namespace: bool,
    keep_namespace_on_error: bool,
    pod: dict[str, Any] | None,
    get_pod_error: BaseException | None,
) -> bool:
    """Whether a sandbox namespace should be removed after a run."""
    if keep_namespace:
        return False
    if keep_namespace_on_error:
        if get_pod_error is not None or pod is None:
            return False
        phase = (pod.get("status") or {}).get("phase", "")
        if phase in ("Failed", "Unknown"):
            return False
    return True


def validate_targets(client: ClusterClient, targets: Sequence[str]) -> None:
    """Check that there is at least one target and that every target exists."""
    if not targets:
        raise ValueError("Must supply at least one target namespace")
    for namespace in targets:
        client.get(NAMESPACES, "", namespace)


def _network_policy(pod_name: str) -> dict[str, Any]:
    return {
        "metadata": {"name": pod_name},
        "spec": {
            "podSelector": {},
            "ingress": [
                {"from": [{"namespaceSelector": {"matchLabels": {"apb-pod-name": pod_name}}}]}
            ],
        },
    }


@dataclass
class Provider:
    """Runs bundles on a cluster and manages the sandboxes they run in."""

    client: ClusterClient
    cluster: KubernetesCluster | OpenshiftCluster
    credential_store: Any
    state: StateManager
    hooks: SandboxHooks = field(default_factory=SandboxHooks)
    bundle_watcher: WatchBundleFn | None = None
    bundle_runner: RunBundleFn | None = None
    secret_copier: CopySecretsFn | None = None

    def __post_init__(self) -> None:
        if self.bundle_watcher is None:
            self.bundle_watcher = functools.partial(watch_running_bundle, self.client)
        if self.bundle_runner is None:
            self.bundle_runner = functools.partial(
                _default_run_bundle, self.client, mount_location=self.state.mount_location
            )
        if self.secret_copier is None:
            self.secret_copier = functools.partial(_default_copy_secrets, self.client)

    @property
    def runtime(self) -> str:
        """Name of the cluster flavour: kubernetes or openshift."""
        return self.cluster.name

    def validate_runtime(self) -> None:
        """Check that the cluster answers version requests."""
        try:
            body = self.client.get_raw(VERSION_PATH)
        except _CLUSTER_MISSING_ERRORS:
            logger.error("the server could not find the requested resource")
            raise
        info = _parse_version(body)
        logger.info("Kubernetes version: %s", info)

    def create_sandbox(
        self,
        pod_name: str,
        namespace: str,
        targets: Sequence[str],
        role: str,
        metadata: dict[str, str] | None = None,
    ) -> tuple[str, str]:
        """Create the namespace, account and bindings a bundle runs with.

        Returns the pod (service account) name and the sandbox namespace.
        """
        try:
            validate_targets(self.client, targets)
        except (ValueError, ApiError) as exc:
            raise ValueError(f"unable to get target namespaces: {exc}") from exc

        if not is_namespace_in_targets(namespace, targets):
            created = self.client.create(
                NAMESPACES,
                "",
                {"metadata": {"labels": dict(metadata or {}), "generateName": namespace}},
            )
            namespace = created["metadata"]["name"]

            if self.client.list_objects(NETWORK_POLICIES, targets[0]):
                logger.debug(
                    "Creating network policy for pod: %s to grant network access to ns: %s",
                    pod_name, targets[0],
                )
                try:
                    self.client.create(NETWORK_POLICIES, targets[0], _network_policy(pod_name))
                except ApiError as exc:
                    logger.error("unable to create network policy object - %s", exc)
                    raise
            else:
                logger.info(
                    "No network policies found. Assuming things are open, "
                    "skip network policy creation"
                )

        self.hooks.run_pre_create(pod_name, namespace, targets, role)

        self.client.create(SERVICE_ACCOUNTS, namespace, {"metadata": {"name": pod_name}})
        logger.debug(
            "Trying to create apb sandbox: [ %s ], with %s permissions in namespace %s",
            pod_name, role, namespace,
        )
        subjects = [{"kind": "ServiceAccount", "name": pod_name, "namespace": namespace}]
        role_ref = {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": role}
        for target in [namespace, *(t for t in targets if t != namespace)]:
            self.client.create(
                ROLE_BINDINGS,
                target,
                {"metadata": {"name": pod_name}, "subjects": subjects, "roleRef": role_ref},
            )

        logger.info(
            "Successfully created apb sandbox: [ %s ], with %s permissions in namespace [ %s ]",
            pod_name, role, namespace,
        )
        self.hooks.run_post_create(pod_name, namespace, targets, role)
        return pod_name, namespace

    def destroy_sandbox(
        self,
        pod_name: str,
        namespace: str,
        targets: Sequence[str],
        config_namespace: str,
        keep_namespace: bool = False,
        keep_namespace_on_error: bool = False,
    ) -> None:
        """Remove what create_sandbox made; failures are logged, not raised."""
        self.hooks.run_pre_destroy(pod_name, namespace, targets)

        logger.info("Destroying APB sandbox...")
        if not pod_name:
            logger.info("Requested destruction of APB sandbox with empty handle, skipping.")
            return

        pod: dict[str, Any] | None = None
        pod_error: ApiError | None = None
        try:
            pod = self.client.get(PODS, namespace, pod_name)
        except ApiError as exc:
            logger.error("Unable to retrieve pod - %s", exc)
            pod_error = exc

        if should_delete_namespace(keep_namespace, keep_namespace_on_error, pod, pod_error):
            if config_namespace == namespace:
                raise RuntimeError("Broker is attempting to delete its own namespace")
            logger.debug("Deleting namespace %s", namespace)
            try:
                self.client.delete(NAMESPACES, "", namespace)
            except ApiError as exc:
                logger.debug("unable to delete namespace %s - %s", namespace, exc)
        else:
            logger.debug("Keeping namespace alive due to configuration")

        for target in [namespace, *targets]:
            logger.debug("Deleting rolebinding %s, namespace %s", pod_name, target)
            try:
                self.client.delete(ROLE_BINDINGS, target, pod_name)
            except ApiError as exc:
                logger.error("Something went wrong trying to destroy the rolebinding! - %s", exc)
                return
            logger.info("Successfully deleted rolebinding %s, namespace %s", pod_name, target)

        if targets and not is_namespace_in_targets(namespace, targets):
            try:
                policies = self.client.list_objects(NETWORK_POLICIES, targets[0])
            except ApiError as exc:
                logger.error(
                    "Something went wrong trying to determine if we have network policies! - %s",
                    exc,
                )
                return
            if policies:
                logger.debug(
                    "Deleting network policy for pod: %s to grant network access to ns: %s",
                    pod_name, targets[0],
                )
                try:
                    self.client.delete(NETWORK_POLICIES, targets[0], pod_name)
                except ApiError as exc:
                    logger.error("unable to delete the network policy object - %s", exc)
                    return

        logger.debug("Running post sandbox destroy hooks")
        self.hooks.run_post_destroy(pod_name, namespace, targets)

    def extract_credentials(
        self, pod_name: str, namespace: str, runtime_version: int
    ) -> bytes | None:
        """Gather bind credentials from a bundle run."""
        return extract_credentials(self.client, pod_name, namespace, runtime_version)

    def watch_running_bundle(
        self, pod_name: str, namespace: str, update_description: UpdateDescriptionFn
    ) -> None:
        """Follow a bundle pod until it completes."""
        self.bundle_watcher(pod_name, namespace, update_description)

    def run_bundle(self, context: ExecutionContext) -> ExecutionContext:
        """Start a bundle action."""
        return self.bundle_runner(context)

    def copy_secrets_to_namespace(
        self, context: ExecutionContext, source_namespace: str, secrets: Sequence[str]
    ) -> None:
        """Copy secrets into the namespace the bundle runs in."""
        self.secret_copier(context, source_namespace, secrets)


def new_runtime(
    client: ClusterClient,
    config: Configuration | None = None,
    openshift_client: OpenshiftNetworkClient | None = None,
) -> Provider:
    """Detect the cluster flavour and build a provider from the configuration."""
    config = config or Configuration()
    try:
        body = client.get_raw(OPENSHIFT_VERSION_PATH)
    except _CLUSTER_MISSING_ERRORS:
        cluster: KubernetesCluster | OpenshiftCluster = KubernetesCluster()
    else:
        info = _parse_version(body)
        logger.info("OpenShift version: %s", info)
        cluster = OpenshiftCluster(openshift_client)

    state = StateManager(
        client,
        master_namespace=config.state_master_namespace or DEFAULT_NAMESPACE,
        mount_location=config.state_mount_location or DEFAULT_MOUNT_LOCATION,
    )
    hooks = SandboxHooks(
        pre_create=list(config.pre_create_sandbox_hooks),
        post_create=list(config.post_create_sandbox_hooks),
        pre_destroy=list(config.pre_destroy_sandbox_hooks),
        post_destroy=list(config.post_destroy_sandbox_hooks),
    )
    provider = Provider(
        client=client,
        cluster=cluster,
        credential_store=(
            config.extracted_credential
            if config.extracted_credential is not None
            else SecretCredentialStore(client)
        ),
        state=state,
        hooks=hooks,
        bundle_watcher=config.watch_bundle,
        bundle_runner=config.run_bundle,
        secret_copier=config.copy_secrets_to_namespace,
    )

    join, post_create, post_destroy = cluster.should_join_networks()
    if join:
        logger.debug("adding posthook to provider now.")
        if post_create is not None:
            provider.hooks.add_post_create(post_create)
        if post_destroy is not None:
            provider.hooks.add_post_destroy(post_destroy)
    return provider