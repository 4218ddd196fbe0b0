"""Cluster API access: errors, the client protocol and an in-memory cluster."""

from __future__ import annotations

import copy
import logging
import queue
import threading
from collections.abc import Callable, Iterator, Sequence
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

WatchEvent = tuple[str, dict[str, Any]]
ExecHandler = Callable[[list[str]], bytes]


class ApiError(Exception):
    """An error reported by the cluster API."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with the same name already exists."""


class UnauthorizedError(ApiError):
    """The request was not authenticated."""


class ForbiddenError(ApiError):
    """The request was not permitted."""


def is_not_found(error: BaseException | None) -> bool:
    """Return True when the error means the object was not found."""
    return isinstance(error, NotFoundError)


class ClusterClient(Protocol):
    """Operations the runtime needs from a cluster."""

    def create(self, kind: str, namespace: str, obj: dict[str, Any]) -> dict[str, Any]:
        """Create an object and return the stored copy."""

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        """Return an object or raise NotFoundError."""

    def list_objects(self, kind: str, namespace: str) -> list[dict[str, Any]]:
        """Return all objects of a kind in a namespace."""

    def update(self, kind: str, namespace: str, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object and return the stored copy."""

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Delete an object or raise NotFoundError."""

    def watch(self, kind: str, namespace: str) -> Any:
        """Return an iterable of (event_type, object) pairs with a stop() method."""

    def get_raw(self, path: str) -> bytes:
        """Return the raw body served at an API path."""

    def exec(self, namespace: str, pod_name: str, command: Sequence[str]) -> bytes:
        """Run a command in a pod and return its standard output."""


_STOP = object()


class _Watch:
    """A stream of watch events that ends once stop() is called."""

    def __init__(self, kind: str, namespace: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self._events: queue.Queue[Any] = queue.Queue()
        self.stopped = False

    def matches(self, kind: str, namespace: str) -> bool:
        return not self.stopped and kind == self.kind and (
            not self.namespace or namespace == self.namespace
        )

    def push(self, event: WatchEvent) -> None:
        self._events.put(event)

    def stop(self) -> None:
        if not self.stopped:
            self.stopped = True
            self._events.put(_STOP)

    def __iter__(self) -> Iterator[WatchEvent]:
        while True:
            item = self._events.get()
            if item is _STOP:
                return
            yield item


class InMemoryCluster:
    """A thread-safe cluster kept in memory, holding objects as plain dicts."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._watches: list[_Watch] = []
        self._raw: dict[str, tuple[bytes, ApiError | None]] = {}
        self._exec_handlers: dict[tuple[str, str], ExecHandler] = {}

    def create(self, kind: str, namespace: str, obj: dict[str, Any]) -> dict[str, Any]:
        """Store a new object; a missing name is taken from generateName."""
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        if not metadata.get("name"):
            generated = metadata.get("generateName")
            if not generated:
                raise ApiError(f"{kind}: name or generateName is required")
            metadata["name"] = generated
        if namespace:
            metadata["namespace"] = namespace
        name = metadata["name"]
        key = (kind, namespace, name)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(f'{kind} "{name}" already exists')
            self._objects[key] = stored
            self._broadcast(kind, namespace, ADDED, stored)
        return copy.deepcopy(stored)

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        """Return a copy of an object or raise NotFoundError."""
        with self._lock:
            try:
                return copy.deepcopy(self._objects[(kind, namespace, name)])
            except KeyError:
                raise NotFoundError(f'{kind} "{name}" not found') from None

    def list_objects(self, kind: str, namespace: str) -> list[dict[str, Any]]:
        """Return copies of all objects of a kind in a namespace, by name."""
        with self._lock:
            found = [
                obj
                for (obj_kind, obj_ns, _), obj in self._objects.items()
                if obj_kind == kind and obj_ns == namespace
            ]
            found.sort(key=lambda obj: obj["metadata"]["name"])
            return copy.deepcopy(found)

    def update(self, kind: str, namespace: str, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object."""
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        name = metadata.get("name", "")
        if namespace:
            metadata["namespace"] = namespace
        key = (kind, namespace, name)
        with self._lock:
            if key not in self._objects:
                raise NotFoundError(f'{kind} "{name}" not found')
            self._objects[key] = stored
            self._broadcast(kind, namespace, MODIFIED, stored)
        return copy.deepcopy(stored)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        """Remove an object or raise NotFoundError."""
        with self._lock:
            try:
                removed = self._objects.pop((kind, namespace, name))
            except KeyError:
                raise NotFoundError(f'{kind} "{name}" not found') from None
            self._broadcast(kind, namespace, DELETED, removed)

    def watch(self, kind: str, namespace: str) -> _Watch:
        """Start watching a kind; an empty namespace watches every namespace."""
        stream = _Watch(kind, namespace)
        with self._lock:
            self._watches.append(stream)
        return stream

    def emit(self, kind: str, namespace: str, event_type: str, obj: dict[str, Any]) -> None:
        """Send an event to watchers without changing stored objects."""
        with self._lock:
            self._broadcast(kind, namespace, event_type, obj)

    def get_raw(self, path: str) -> bytes:
        """Return the body configured for a path, raising its error if set."""
        with self._lock:
            entry = self._raw.get(path)
        if entry is None:
            raise NotFoundError(f"the server could not find the requested resource {path}")
        body, error = entry
        if error is not None:
            raise error
        return body

    def set_raw(self, path: str, body: bytes = b"", error: ApiError | None = None) -> None:
        """Configure what get_raw returns or raises for a path."""
        with self._lock:
            self._raw[path] = (body, error)

    def exec(self, namespace: str, pod_name: str, command: Sequence[str]) -> bytes:
        """Run a command through the handler registered for the pod."""
        with self._lock:
            handler = self._exec_handlers.get((namespace, pod_name))
        if handler is None:
            raise ApiError(f'unable to exec into pod "{pod_name}" in namespace "{namespace}"')
        return handler(list(command))

    def register_exec(self, namespace: str, pod_name: str, handler: ExecHandler) -> None:
        """Register the function that answers exec calls for a pod."""
        with self._lock:
            self._exec_handlers[(namespace, pod_name)] = handler

    def _broadcast(self, kind: str, namespace: str, event_type: str, obj: dict[str, Any]) -> None:
        self._watches = [stream for stream in self._watches if not stream.stopped]
        for stream in self._watches:
            if stream.matches(kind, namespace):
                stream.push((event_type, copy.deepcopy(obj)))