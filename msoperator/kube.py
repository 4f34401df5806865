"""An in-memory object store with the API-server behaviour the operator relies on.

Objects are either :class:`~msoperator.types.MetricsServer` instances or plain
manifest dictionaries carrying ``kind`` and ``metadata``.
"""

from __future__ import annotations

import copy
import itertools
import uuid
from datetime import datetime, timezone
from typing import Any, Union

from .constants import KIND_METRICS_SERVER
from .types import MetricsServer

KubeObject = Union[MetricsServer, dict]

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_NON_BODY_KEYS = frozenset({"apiVersion", "kind", "metadata", "status"})


class ApiError(Exception):
    """A request to the object store failed."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with the same kind, namespace and name already exists."""


def object_key(obj: KubeObject) -> tuple[str, str, str]:
    """Return ``(kind, namespace, name)`` identifying an object."""
    if isinstance(obj, MetricsServer):
        if not obj.name:
            raise ValueError("MetricsServer must have a name")
        return (KIND_METRICS_SERVER, "", obj.name)
    kind = obj.get("kind")
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not kind or not name:
        raise ValueError("object must have a kind and metadata.name")
    return (kind, metadata.get("namespace") or "", name)


def _now() -> str:
    return datetime.now(timezone.utc).strftime(_TIME_FORMAT)


def _to_data(obj: KubeObject) -> dict[str, Any]:
    if isinstance(obj, MetricsServer):
        return obj.to_dict()
    return copy.deepcopy(obj)


def _from_data(data: dict[str, Any]) -> KubeObject:
    if data.get("kind") == KIND_METRICS_SERVER:
        return MetricsServer.from_dict(data)
    return copy.deepcopy(data)


def _body(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key not in _NON_BODY_KEYS}


def _describe(key: tuple[str, str, str]) -> str:
    kind, namespace, name = key
    return f'{kind} "{namespace}/{name}"' if namespace else f'{kind} "{name}"'


class InMemoryClient:
    """Stores objects by kind, namespace and name, as an API server would.

    Every write assigns a fresh resource version and copies it back into the
    object passed in. Updates carrying a stale resource version are refused,
    the main update leaves the status alone, and objects with finalizers are
    only marked for deletion until their finalizers are removed.
    """

    def __init__(self, objects: list[KubeObject] | tuple[KubeObject, ...] = ()) -> None:
        self._objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._versions = itertools.count(1)
        for obj in objects:
            self._seed(obj)

    def _seed(self, obj: KubeObject) -> None:
        data = _to_data(obj)
        key = object_key(obj)
        if key in self._objects:
            raise AlreadyExistsError(f"{_describe(key)} already exists")
        metadata = data.setdefault("metadata", {})
        metadata["resourceVersion"] = self._next_version()
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata.setdefault("creationTimestamp", _now())
        metadata.setdefault("generation", 1)
        self._objects[key] = data

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _current(self, key: tuple[str, str, str]) -> dict[str, Any]:
        try:
            return self._objects[key]
        except KeyError:
            raise NotFoundError(f"{_describe(key)} not found") from None

    @staticmethod
    def _check_version(key: tuple[str, str, str], data: dict[str, Any], current: dict[str, Any]) -> None:
        wanted = (data.get("metadata") or {}).get("resourceVersion")
        if wanted and wanted != current["metadata"].get("resourceVersion"):
            raise ApiError(
                f"Operation cannot be fulfilled on {_describe(key)}: the object has been "
                "modified; please apply your changes to the latest version and try again"
            )

    @staticmethod
    def _write_back(obj: KubeObject, data: dict[str, Any]) -> None:
        metadata = data["metadata"]
        if isinstance(obj, MetricsServer):
            fresh = MetricsServer.from_dict(data)
            obj.resource_version = fresh.resource_version
            obj.generation = fresh.generation
            obj.uid = fresh.uid
            obj.creation_timestamp = fresh.creation_timestamp
            obj.deletion_timestamp = fresh.deletion_timestamp
            return
        target = obj.setdefault("metadata", {})
        for field_name in ("resourceVersion", "uid", "creationTimestamp", "generation", "deletionTimestamp"):
            if field_name in metadata:
                target[field_name] = metadata[field_name]
            else:
                target.pop(field_name, None)

    def get(self, kind: str, name: str, namespace: str = "") -> KubeObject:
        """Return a copy of the named object; raise NotFoundError if absent."""
        return _from_data(self._current((kind, namespace or "", name)))

    def list(self, kind: str) -> list[KubeObject]:
        """Return copies of every object of a kind, ordered by namespace and name."""
        return [
            _from_data(data)
            for key, data in sorted(self._objects.items())
            if key[0] == kind
        ]

    def create(self, obj: KubeObject) -> None:
        """Store a new object; raise AlreadyExistsError if it exists."""
        key = object_key(obj)
        if key in self._objects:
            raise AlreadyExistsError(f"{_describe(key)} already exists")
        data = _to_data(obj)
        metadata = data.setdefault("metadata", {})
        metadata["resourceVersion"] = self._next_version()
        metadata["uid"] = str(uuid.uuid4())
        metadata["creationTimestamp"] = _now()
        metadata["generation"] = 1
        metadata.pop("deletionTimestamp", None)
        self._objects[key] = data
        self._write_back(obj, data)

    def update(self, obj: KubeObject) -> None:
        """Replace an object's metadata and spec, keeping its stored status."""
        key = object_key(obj)
        current = self._current(key)
        data = _to_data(obj)
        self._check_version(key, data, current)

        new = copy.deepcopy(data)
        if "status" in current:
            new["status"] = copy.deepcopy(current["status"])
        else:
            new.pop("status", None)
        metadata = new.setdefault("metadata", {})
        old_metadata = current["metadata"]
        for fixed in ("uid", "creationTimestamp", "deletionTimestamp"):
            if fixed in old_metadata:
                metadata[fixed] = old_metadata[fixed]
            else:
                metadata.pop(fixed, None)
        generation = int(old_metadata.get("generation", 1))
        if _body(new) != _body(current):
            generation += 1
        metadata["generation"] = generation
        metadata["resourceVersion"] = self._next_version()

        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            del self._objects[key]
        else:
            self._objects[key] = new
        self._write_back(obj, new)

    def update_status(self, obj: KubeObject) -> None:
        """Replace only an object's status."""
        key = object_key(obj)
        current = self._current(key)
        data = _to_data(obj)
        self._check_version(key, data, current)

        new = copy.deepcopy(current)
        new["status"] = copy.deepcopy(data.get("status") or {})
        new["metadata"]["resourceVersion"] = self._next_version()
        self._objects[key] = new
        self._write_back(obj, new)

    def delete(self, obj: KubeObject) -> None:
        """Delete an object, or mark it for deletion while finalizers remain."""
        key = object_key(obj)
        current = self._current(key)
        metadata = current["metadata"]
        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                metadata["deletionTimestamp"] = _now()
                metadata["resourceVersion"] = self._next_version()
            return
        del self._objects[key]

    def get_metrics_server(self, name: str) -> MetricsServer:
        """Return the named MetricsServer."""
        found = self.get(KIND_METRICS_SERVER, name)
        assert isinstance(found, MetricsServer)
        return found

    def list_metrics_servers(self) -> list[MetricsServer]:
        """Return every MetricsServer, ordered by name."""
        return [item for item in self.list(KIND_METRICS_SERVER) if isinstance(item, MetricsServer)]