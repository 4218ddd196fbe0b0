"""Cluster flavours: plain Kubernetes and OpenShift with network joining."""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol

from apbruntime.hooks import CreateHook, DestroyHook

logger = logging.getLogger(__name__)

CHANGE_POD_NETWORK_ANNOTATION = "pod.network.openshift.io/multitenant.change-network"
MULTITENANT_PLUGIN = "redhat/openshift-ovs-multitenant"

BACKOFF_STEPS = 15
BACKOFF_DURATION = 0.5
BACKOFF_FACTOR = 1.1

NetworkHooks = tuple[bool, "CreateHook | None", "DestroyHook | None"]


class OpenshiftNetworkClient(Protocol):
    """OpenShift SDN operations used to join and isolate pod networks."""

    def get_cluster_network_plugin(self) -> str:
        """Return the name of the cluster network plugin."""

    def get_net_namespace(self, name: str) -> dict[str, Any]:
        """Return the NetNamespace object for a namespace."""

    def join_namespaces_networks(self, netns: dict[str, Any], target: str) -> Any:
        """Join a NetNamespace to the target namespace's network."""

    def isolate_namespaces_networks(self, netns: dict[str, Any], target: str) -> Any:
        """Isolate a NetNamespace from the target namespace's network."""


@dataclass(frozen=True)
class KubernetesCluster:
    """A plain Kubernetes cluster; pod networks are never joined."""

    name: ClassVar[str] = "kubernetes"

    def should_join_networks(self) -> NetworkHooks:
        return False, None, None


@dataclass(frozen=True)
class OpenshiftCluster:
    """An OpenShift cluster; multitenant networks are joined around a run."""

    client: OpenshiftNetworkClient | None = None
    name: ClassVar[str] = "openshift"

    def should_join_networks(self) -> NetworkHooks:
        """Whether to join networks, with the post-create and post-destroy hooks that do it."""
        if self.client is None:
            logger.error("unable to get openshift client")
            return False, None, None
        try:
            plugin = self.client.get_cluster_network_plugin()
        except Exception as exc:
            # No plugin is defined on some clusters, such as pure Kubernetes ones.
            logger.debug(
                "unable to retrieve the network plugin, defaulting to not joining networks - %s", exc
            )
            return False, None, None
        logger.debug("plugin for the network - %s", plugin)
        if plugin.lower() == MULTITENANT_PLUGIN:
            logger.debug("stating that the pluginname is multitenant - %s", plugin)
            return (
                True,
                functools.partial(add_pod_networks, self.client),
                functools.partial(isolate_pod_networks, self.client),
            )
        return False, None, None


def _exponential_backoff(condition: Callable[[], bool]) -> None:
    duration = BACKOFF_DURATION
    for step in range(BACKOFF_STEPS):
        if condition():
            return
        if step < BACKOFF_STEPS - 1:
            time.sleep(duration)
            duration *= BACKOFF_FACTOR
    raise TimeoutError("timed out waiting for the condition")


def did_annotation_update(client: OpenshiftNetworkClient, action: str, name: str) -> bool:
    """Whether the pod network change annotation shows the change was applied."""
    netns = client.get_net_namespace(name)
    annotations = (netns.get("metadata") or {}).get("annotations") or {}
    # The annotation reads "<action>:<namespace>", action being join or isolate.
    current = annotations.get(CHANGE_POD_NETWORK_ANNOTATION, "").split(":")[0]
    if current == "":
        return True
    return action in ("isolate", "join") and current == action


def _change_networks(
    client: OpenshiftNetworkClient,
    namespace: str,
    targets: Sequence[str],
    change: Callable[[dict[str, Any], str], Any],
) -> None:
    logger.debug(
        "adding pod networks together namespace: %s, target namespaces: %s", namespace, list(targets)
    )
    if not targets:
        raise ValueError("Can not find target namespace to add to its network")
    netns = client.get_net_namespace(namespace)
    try:
        change(netns, targets[0])
    except Exception:
        logger.error(
            "Unable to join netns: %s to nsTarget: %s",
            (netns.get("metadata") or {}).get("name"), targets[0],
        )
        raise
    net_name = netns.get("netname", "")
    _exponential_backoff(lambda: did_annotation_update(client, "join", net_name))


def add_pod_networks(
    client: OpenshiftNetworkClient, pod: str, namespace: str, targets: Sequence[str], role: str
) -> None:
    """Join the sandbox namespace's network to the first target namespace."""
    _change_networks(client, namespace, targets, client.join_namespaces_networks)


def isolate_pod_networks(
    client: OpenshiftNetworkClient, pod: str, namespace: str, targets: Sequence[str]
) -> None:
    """Isolate the sandbox namespace's network from the first target namespace."""
    _change_networks(client, namespace, targets, client.isolate_namespaces_networks)