"""Building and starting the pod that runs a bundle action."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from apbruntime.cluster import ClusterClient
from apbruntime.state import DEFAULT_MOUNT_LOCATION

logger = logging.getLogger(__name__)

BUNDLE_CONTAINER_NAME = "apb"
HTTP_PROXY_ENV_VAR = "HTTP_PROXY"
HTTPS_PROXY_ENV_VAR = "HTTPS_PROXY"
NO_PROXY_ENV_VAR = "NO_PROXY"
SECRET_MOUNT_ROOT = "/etc/apb-secrets/"


@dataclass
class ProxyConfig:
    """Proxy settings passed to the bundle pod."""

    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""


@dataclass
class ExecutionContext:
    """What is needed to run, track and clean up a bundle action."""

    bundle_name: str = ""
    location: str = ""
    account: str = ""
    targets: list[str] = field(default_factory=list)
    secrets: list[str] = field(default_factory=list)
    extra_vars: str = ""
    image: str = ""
    action: str = ""
    policy: str = ""
    proxy_config: ProxyConfig | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    state_name: str = ""
    state_location: str = ""


class PullPolicy(str, Enum):
    """Image pull policies accepted for the bundle container."""

    ALWAYS = "Always"
    NEVER = "Never"
    IF_NOT_PRESENT = "IfNotPresent"


def check_pull_policy(policy: str) -> PullPolicy:
    """Resolve a pull policy name case-insensitively or raise ValueError."""
    for candidate in PullPolicy:
        if candidate.value.lower() == policy.lower():
            return candidate
    names = ", ".join(p.value for p in PullPolicy)
    raise ValueError(f"ImagePullPolicy: {policy} not found in [{names},]")


def build_volume_specs(
    secrets: Sequence[str], state_name: str, mount_location: str = DEFAULT_MOUNT_LOCATION
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Return the volumes and volume mounts for secrets and bundle state."""
    volumes: list[dict[str, Any]] = []
    mounts: list[dict[str, Any]] = []
    for secret in secrets:
        mount_name = f"apb-{secret}"
        source = dict(secretName=secret, optional=False)
        volumes.append({"name": mount_name, "secret": source})
        mounts.append(
            {"name": mount_name, "mountPath": SECRET_MOUNT_ROOT + mount_name, "readOnly": True}
        )
    if state_name:
        mounts.append({"name": state_name, "mountPath": mount_location, "readOnly": True})
        volumes.append({"name": state_name, "configMap": {"name": state_name}})
    return volumes, mounts


def _field_env(name: str, path: str) -> dict[str, Any]:
    return {"name": name, "valueFrom": {"fieldRef": {"fieldPath": path}}}


def create_pod_env(context: ExecutionContext) -> list[dict[str, Any]]:
    """Environment variables for the bundle container."""
    env = [
        _field_env("POD_NAME", "metadata.name"),
        _field_env("POD_NAMESPACE", "metadata.namespace"),
    ]
    if context.state_name:
        env.append({"name": "BUNDLE_STATE_LOCATION", "value": context.state_location})
    proxy = context.proxy_config
    if proxy is not None:
        settings = [
            (HTTP_PROXY_ENV_VAR, proxy.http_proxy),
            (HTTPS_PROXY_ENV_VAR, proxy.https_proxy),
            (NO_PROXY_ENV_VAR, proxy.no_proxy),
        ]
        logger.info("Proxy configuration present. Applying to APB before execution:")
        for name, value in settings:
            logger.info('%s="%s"', name, value)
        env.extend({"name": name, "value": value} for name, value in settings)
        env.extend({"name": name.lower(), "value": value} for name, value in settings)
    return env


def build_pod(context: ExecutionContext, mount_location: str = DEFAULT_MOUNT_LOCATION) -> dict[str, Any]:
    """The pod definition that runs the bundle action."""
    pull_policy = check_pull_policy(context.policy)
    volumes, mounts = build_volume_specs(context.secrets, context.state_name, mount_location)
    return {
        "metadata": {"name": context.bundle_name, "labels": dict(context.metadata)},
        "spec": {
            "containers": [
                {
                    "name": BUNDLE_CONTAINER_NAME,
                    "image": context.image,
                    "args": [context.action, "--extra-vars", context.extra_vars],
                    "env": create_pod_env(context),
                    "imagePullPolicy": pull_policy.value,
                    "volumeMounts": mounts,
                }
            ],
            "restartPolicy": "Never",
            "serviceAccountName": context.account,
            "volumes": volumes,
        },
    }


def run_bundle(
    client: ClusterClient, context: ExecutionContext, mount_location: str = DEFAULT_MOUNT_LOCATION
) -> ExecutionContext:
    """Create the bundle pod in the context's namespace and return the context."""
    pod = build_pod(context, mount_location)
    logger.info('Creating pod "%s" in the %s namespace', context.bundle_name, context.location)
    client.create("pods", context.location, pod)
    return context


def copy_secrets_to_namespace(
    client: ClusterClient, context: ExecutionContext, source_namespace: str, secrets: Sequence[str]
) -> None:
    """Copy named secrets from a namespace into the context's namespace."""
    for name in secrets:
        obj = client.get("secrets", source_namespace, name)
        old = obj.get("metadata", {})
        metadata: dict[str, Any] = {"name": old.get("name", name), "namespace": context.location}
        for key in ("labels", "annotations"):
            if key in old:
                metadata[key] = old[key]
        obj["metadata"] = metadata
        client.create("secrets", context.location, obj)