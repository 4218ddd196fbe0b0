"""Watching a running bundle pod until it completes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from apbruntime.cluster import DELETED, ApiError, ClusterClient

logger = logging.getLogger(__name__)

LAST_OPERATION_ANNOTATION = "apb_last_operation"
DASHBOARD_URL_ANNOTATION = "apb_dashboard_url"
ACTION_NOT_FOUND_EXIT_CODE = 8

# Called with (last operation description, dashboard url).
UpdateDescriptionFn = Callable[[str, str], None]


class WatchError(Exception):
    """The watched bundle pod did not complete successfully."""


class PodPullError(WatchError):
    """The bundle image could not be pulled."""

    def __init__(
        self,
        message: str = "Unable to pull APB image from it's registry. Please contact your cluster admin",
    ) -> None:
        super().__init__(message)


class ActionNotFoundError(WatchError):
    """The bundle does not provide the requested action."""

    def __init__(self, message: str = "action not found") -> None:
        super().__init__(message)


class CustomMessageError(WatchError):
    """A failure carrying the bundle's own termination message."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def is_custom_message_error(error: BaseException | None) -> bool:
    """Return True when the error carries a bundle termination message."""
    return isinstance(error, CustomMessageError)


def watch_running_bundle(
    client: ClusterClient,
    pod_name: str,
    namespace: str,
    update_description: UpdateDescriptionFn,
) -> None:
    """Follow a bundle pod until it succeeds; raise WatchError if it fails."""
    logger.debug("Watching pod [ %s ] in namespace [ %s ] for completion", pod_name, namespace)
    try:
        stream = client.watch("pods", namespace)
    except ApiError as exc:
        raise WatchError(
            f"failed to watch pod {pod_name} in namespace {namespace} error: {exc}"
        ) from exc

    for event_type, pod in stream:
        if not isinstance(pod, dict):
            logger.error("watch did not return a pod instead returned %s", type(pod).__name__)
            continue
        metadata = pod.get("metadata") or {}
        if metadata.get("name") != pod_name:
            logger.debug(
                "watching pods in namespace %s ignoring pod %s as it is not the pod we are looking for",
                namespace, metadata.get("name"),
            )
            continue

        annotations = metadata.get("annotations") or {}
        last_op = annotations.get(LAST_OPERATION_ANNOTATION, "")
        if last_op:
            update_description(last_op, "")

        status = pod.get("status") or {}
        phase = status.get("phase", "")
        logger.debug("pod [%s] in phase %s", pod_name, phase)
        if phase == "Failed":
            stream.stop()
            if error_pulling_image(status.get("containerStatuses") or []):
                raise PodPullError()
            translate_exit_status(pod_name, status)
            return
        if phase == "Succeeded":
            stream.stop()
            update_description("", annotations.get(DASHBOARD_URL_ANNOTATION, ""))
            logger.debug("Pod [ %s ] completed", pod_name)
            return
        logger.debug("Pod [ %s ] %s", pod_name, phase)

        if event_type == DELETED:
            stream.stop()
            raise WatchError(f"pod [ {pod_name} ] was unexpectedly deleted")

    logger.debug("finished watching pod %s in namespace %s ", pod_name, namespace)


def error_pulling_image(container_statuses: Sequence[dict[str, Any]]) -> bool:
    """Whether the bundle container is waiting because its image cannot be pulled."""
    if not container_statuses:
        logger.warning("unable to get container status for APB pod")
        return False
    # A bundle pod runs a single container.
    waiting = (container_statuses[0].get("state") or {}).get("waiting")
    if waiting is None:
        return False
    return waiting.get("reason") in ("ErrImagePull", "ImagePullBackOff")


def translate_exit_status(pod_name: str, pod_status: dict[str, Any]) -> None:
    """Raise the error matching a failed pod's exit status; exit code 0 is not an error."""
    message = pod_status.get("message", "")
    statuses = pod_status.get("containerStatuses") or []
    if not statuses:
        logger.warning("unable to get container status for APB pod")
        raise WatchError(f"Pod [ {pod_name} ] failed - Unable to determine exit code - {message}")

    terminated = (statuses[0].get("state") or {}).get("terminated")
    if terminated is None:
        raise WatchError(f"Pod [ {pod_name} ] failed. Unable to determine status - {message}")

    termination_message = terminated.get("message", "")
    if termination_message:
        raise CustomMessageError(termination_message)

    exit_code = terminated.get("exitCode", 0)
    if exit_code == ACTION_NOT_FOUND_EXIT_CODE:
        logger.error("Pod [ %s ] failed - action's playbook not found.", pod_name)
        raise ActionNotFoundError()
    if exit_code != 0:
        raise WatchError(f"Pod [ {pod_name} ] failed with exit code [{exit_code}]")

    logger.warning("Pod was marked as failed but exit code was 0 - %s", termination_message)