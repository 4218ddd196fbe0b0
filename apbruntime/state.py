"""State kept by service bundles in config maps between actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from apbruntime.cluster import ClusterClient, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "ansible-service-broker"
DEFAULT_MOUNT_LOCATION = "/etc/apb/state"

CONFIG_MAPS = "configmaps"


@dataclass
class StateManager:
    """Copies, checks and removes the config maps that hold bundle state."""

    client: ClusterClient
    master_namespace: str = DEFAULT_NAMESPACE
    mount_location: str = DEFAULT_MOUNT_LOCATION

    def copy_state(self, from_name: str, to_name: str, from_ns: str, to_ns: str) -> None:
        """Copy a state config map, merging into the target if it exists."""
        logger.debug(
            "state: copying state from namespace %s to ns %s from name %s to name %s",
            from_ns, to_ns, from_name, to_name,
        )
        try:
            source = self.client.get(CONFIG_MAPS, from_ns, from_name)
        except NotFoundError:
            logger.debug("no state configmap found to copy")
            return
        try:
            target = self.client.get(CONFIG_MAPS, to_ns, to_name)
        except NotFoundError:
            metadata = source.setdefault("metadata", {})
            metadata["namespace"] = to_ns
            metadata["name"] = to_name
            metadata.pop("resourceVersion", None)
            self.client.create(CONFIG_MAPS, to_ns, source)
            return
        target_data = target.get("data") or {}
        target_data.update(source.get("data") or {})
        target["data"] = target_data
        self.client.update(CONFIG_MAPS, to_ns, target)

    def master_name(self, instance_id: str) -> str:
        """Name of the state object for an instance in the master namespace."""
        return f"{instance_id}-state"

    def state_is_present(self, name: str) -> bool:
        """Whether a state object exists in the master namespace."""
        try:
            self.client.get(CONFIG_MAPS, self.master_namespace, name)
        except NotFoundError:
            return False
        return True

    def delete_state(self, name: str) -> None:
        """Remove a state object from the master namespace, if present."""
        logger.debug("state: deleting master state %s in ns %s", name, self.master_namespace)
        try:
            self.client.delete(CONFIG_MAPS, self.master_namespace, name)
        except NotFoundError:
            logger.debug("state: no state configmap found. Nothing to delete")