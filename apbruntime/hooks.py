"""Hooks run before and after a bundle sandbox is created or destroyed."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Arguments: pod (and service account) name, transient namespace,
# target namespaces, bundle role. A hook signals failure by raising.
CreateHook = Callable[[str, str, Sequence[str], str], None]
# Arguments: pod name, transient namespace, target namespaces.
DestroyHook = Callable[[str, str, Sequence[str]], None]


def _run(hooks: Sequence[Callable[..., None]], stage: str, *args: object) -> list[Exception]:
    failures: list[Exception] = []
    for index, hook in enumerate(hooks, start=1):
        logger.debug("Running %s sandbox function: %d", stage, index)
        try:
            hook(*args)
        except Exception as exc:  # hooks clean up after themselves; keep going
            logger.warning("%s sandbox function failed with err: %s", stage.capitalize(), exc)
            failures.append(exc)
    return failures


@dataclass
class SandboxHooks:
    """Ordered hook lists; running them collects failures instead of stopping."""

    pre_create: list[CreateHook] = field(default_factory=list)
    post_create: list[CreateHook] = field(default_factory=list)
    pre_destroy: list[DestroyHook] = field(default_factory=list)
    post_destroy: list[DestroyHook] = field(default_factory=list)

    def add_pre_create(self, hook: CreateHook) -> None:
        self.pre_create.append(hook)

    def add_post_create(self, hook: CreateHook) -> None:
        self.post_create.append(hook)

    def add_pre_destroy(self, hook: DestroyHook) -> None:
        self.pre_destroy.append(hook)

    def add_post_destroy(self, hook: DestroyHook) -> None:
        self.post_destroy.append(hook)

    def run_pre_create(self, pod_name, namespace, targets, role) -> list[Exception]:
        """Run pre-create hooks and return the errors they raised."""
        return _run(self.pre_create, "pre create", pod_name, namespace, targets, role)

    def run_post_create(self, pod_name, namespace, targets, role) -> list[Exception]:
        """Run post-create hooks and return the errors they raised."""
        return _run(self.post_create, "post create", pod_name, namespace, targets, role)

    def run_pre_destroy(self, pod_name, namespace, targets) -> list[Exception]:
        """Run pre-destroy hooks and return the errors they raised."""
        return _run(self.pre_destroy, "pre destroy", pod_name, namespace, targets)

    def run_post_destroy(self, pod_name, namespace, targets) -> list[Exception]:
        """Run post-destroy hooks and return the errors they raised."""
        return _run(self.post_destroy, "post destroy", pod_name, namespace, targets)