"""Getting bind credentials out of bundles and storing them as secrets."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from apbruntime.cluster import ApiError, ClusterClient, NotFoundError

logger = logging.getLogger(__name__)

GATHER_CREDENTIALS_COMMAND = "broker-bind-creds"
BUNDLE_WATCH_INTERVAL = 5.0
BUNDLE_WATCH_RETRIES = 7200
CREDENTIALS_KEY = "credentials"
SECRETS = "secrets"


class CredentialsNotFoundError(LookupError):
    """No extracted credentials are stored for the instance."""

    def __init__(self, message: str = "extracted credentials were not found") -> None:
        super().__init__(message)


class ExtractionError(Exception):
    """Credentials could not be gathered from a bundle."""


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def decode_output(output: bytes | str) -> bytes:
    """Decode the base64 credentials a bundle prints."""
    data = _as_bytes(output).replace(b"\r", b"").replace(b"\n", b"")
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error as exc:
        raise ExtractionError(f"illegal base64 data in credentials output: {exc}") from exc


def extract_credentials_as_file(
    client: ClusterClient,
    pod_name: str,
    namespace: str,
    retries: int = BUNDLE_WATCH_RETRIES,
    interval: float = BUNDLE_WATCH_INTERVAL,
) -> bytes | None:
    """Exec into a running bundle to read its credentials, retrying while it runs.

    Returns None when the pod completed without credentials being gathered.
    """
    for attempt in range(1, retries + 1):
        try:
            output = client.exec(namespace, pod_name, [GATHER_CREDENTIALS_COMMAND])
        except ApiError as exec_error:
            try:
                pod = client.get("pods", namespace, pod_name)
            except ApiError as exc:
                logger.error(
                    "unable to find pod: %s in namespace: %s - err: %s", pod_name, namespace, exc
                )
                raise
            phase = (pod.get("status") or {}).get("phase", "")
            if phase == "Failed":
                logger.error("pod: %s in namespace: %s failed", pod_name, namespace)
                raise ExtractionError(f"[{pod_name}] APB failed") from exec_error
            if phase == "Succeeded":
                logger.info("pod: %s in namespace: %s has been completed", pod_name, namespace)
                return None
            logger.info("command err: %s", exec_error)
            logger.info(
                "retry attempt: %d pod: %s in namespace: %s failed to exec into the container",
                attempt, pod_name, namespace,
            )
            time.sleep(interval)
            continue
        logger.info("[%s] bind credentials found", pod_name)
        return decode_output(output)

    raise ExtractionError(
        f"[{pod_name}] ExecTimeout: Failed to gather bind credentials after {retries} retries"
    )


def extract_credentials_as_secret(client: ClusterClient, pod_name: str, namespace: str) -> bytes | None:
    """Read the credentials a bundle saved in a secret named after its pod."""
    try:
        secret = client.get(SECRETS, namespace, pod_name)
    except ApiError as exc:
        raise ExtractionError(f"Unable to retrieve secret [ {pod_name} ] - {exc}") from exc
    fields = (secret.get("data") or {}).get("fields")
    return None if fields is None else _as_bytes(fields)


def extract_credentials(
    client: ClusterClient, pod_name: str, namespace: str, runtime_version: int
) -> bytes | None:
    """Extract credentials the way the bundle's runtime version provides them."""
    if runtime_version == 1:
        logger.info(
            "Runtime version 1 is being deprecated.\n"
            "You should move the Bundle to use the latest bundle base"
        )
        return extract_credentials_as_file(client, pod_name, namespace)
    if runtime_version >= 2:
        return extract_credentials_as_secret(client, pod_name, namespace)
    raise ValueError(
        f"Unexpected runtime version [{runtime_version}], support 1 <= runtimeVersion <= 2"
    )


@dataclass
class SecretCredentialStore:
    """Keeps extracted credentials as secrets, one per instance id."""

    client: ClusterClient

    @staticmethod
    def _secret(instance_id: str, namespace: str, credentials: dict[str, Any],
                labels: dict[str, str] | None) -> dict[str, Any]:
        encoded = json.dumps(credentials, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return {
            "metadata": {"name": instance_id, "namespace": namespace, "labels": dict(labels or {})},
            "data": {CREDENTIALS_KEY: encoded},
        }

    def create(self, instance_id: str, namespace: str, credentials: dict[str, Any],
               labels: dict[str, str] | None = None) -> None:
        """Save new credentials; fails if they already exist."""
        try:
            self.client.create(SECRETS, namespace, self._secret(instance_id, namespace, credentials, labels))
        except ApiError as exc:
            logger.error("unable to save extracted credentials - %s", exc)
            raise

    def update(self, instance_id: str, namespace: str, credentials: dict[str, Any],
               labels: dict[str, str] | None = None) -> None:
        """Replace stored credentials; fails if none exist."""
        try:
            self.client.update(SECRETS, namespace, self._secret(instance_id, namespace, credentials, labels))
        except ApiError as exc:
            logger.error("unable to update extracted credentials - %s", exc)
            raise

    def get(self, instance_id: str, namespace: str) -> dict[str, Any]:
        """Return stored credentials or raise CredentialsNotFoundError."""
        try:
            secret = self.client.get(SECRETS, namespace, instance_id)
        except NotFoundError:
            logger.debug("credentials not found id: %s, namespace: %s", instance_id, namespace)
            raise CredentialsNotFoundError() from None
        except ApiError as exc:
            logger.error("unable to get extracted credentials - %s", exc)
            raise
        raw = (secret.get("data") or {}).get(CREDENTIALS_KEY)
        if raw is None:
            raise CredentialsNotFoundError()
        return json.loads(_as_bytes(raw))

    def delete(self, instance_id: str, namespace: str) -> None:
        """Remove stored credentials."""
        try:
            self.client.delete(SECRETS, namespace, instance_id)
        except ApiError as exc:
            logger.error("unable to delete extracted credentials - %s", exc)
            raise