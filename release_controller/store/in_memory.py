"""Module for in memory object store."""

import copy
import datetime
import uuid
from collections import defaultdict
from collections.abc import Callable
from typing import Any, TypeVar, DefaultDict

import logging

from release_controller.manifest import NamedResource, StoredObject
from release_controller.exceptions import ObjectNotFoundError, PersistenceConflict

from .status import ReleaseState, ReleaseStatus
from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=StoredObject)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores objects and status keyed by NamedResource. Every read returns a
    copy so that callers only observe their own changes until they write them.
    Supports event listeners for object and status changes.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, StoredObject] = {}
        self._status: dict[NamedResource, ReleaseStatus] = {}
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_object(self, obj: T) -> T:
        """Create a new object in the store, returning the stored copy."""
        resource_id = obj.resource_id
        if resource_id in self._objects:
            raise PersistenceConflict(f"Object {resource_id} already exists")
        _LOGGER.debug("Adding object %s to store", resource_id)
        stored = copy.deepcopy(obj)
        stored.uid = stored.uid or str(uuid.uuid4())
        stored.resource_version = 1
        stored.deletion_timestamp = None
        self._objects[resource_id] = stored
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, copy.deepcopy(stored))
        return copy.deepcopy(stored)

    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a copy of an object by resource identity and type."""
        obj = self._objects.get(resource_id)
        if obj is None:
            return None
        if not isinstance(obj, cls):
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return copy.deepcopy(obj)

    def update_object(self, obj: T) -> T | None:
        """Replace an object, returning the stored copy."""
        resource_id = obj.resource_id
        existing = self._check_version(resource_id, obj.resource_version)
        stored = copy.deepcopy(obj)
        stored.uid = existing.uid
        stored.resource_version = existing.resource_version + 1
        # The deletion marker can only be set through delete_object
        stored.deletion_timestamp = existing.deletion_timestamp
        if stored.deletion_timestamp is not None and not stored.finalizers:
            _LOGGER.debug("Last finalizer removed from %s", resource_id)
            self._remove(resource_id)
            return None
        _LOGGER.debug(
            "Updating object %s to version %d", resource_id, stored.resource_version
        )
        self._objects[resource_id] = stored
        self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, copy.deepcopy(stored))
        return copy.deepcopy(stored)

    def delete_object(self, resource_id: NamedResource) -> None:
        """Request deletion of an object."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        if not existing.finalizers:
            self._remove(resource_id)
            return
        if existing.deletion_timestamp is not None:
            _LOGGER.debug("Object %s is already being deleted", resource_id)
            return
        _LOGGER.debug(
            "Marking %s for deletion, waiting on finalizers %s",
            resource_id,
            existing.finalizers,
        )
        existing.deletion_timestamp = datetime.datetime.now(datetime.timezone.utc)
        existing.resource_version += 1
        self._fire_event(
            StoreEvent.OBJECT_UPDATED, resource_id, copy.deepcopy(existing)
        )

    def update_status(
        self,
        resource_id: NamedResource,
        status: ReleaseStatus,
        resource_version: int | None = None,
    ) -> int:
        """Write the status of an object, returning the new resource_version."""
        existing = self._check_version(resource_id, resource_version)
        if status.state == ReleaseState.FAILED:
            _LOGGER.error(
                "Resource %s status %s with error: %s",
                resource_id.namespaced_name,
                status.state,
                status.reason,
            )
        else:
            _LOGGER.debug(
                "Updating status for resource %s to %s (%s)",
                resource_id.namespaced_name,
                status.state,
                status.reason,
            )
        existing.resource_version += 1
        self._status[resource_id] = copy.deepcopy(status)
        self._fire_event(StoreEvent.STATUS_UPDATED, resource_id, copy.deepcopy(status))
        return existing.resource_version

    def get_status(self, resource_id: NamedResource) -> ReleaseStatus | None:
        """Retrieve the status for an object."""
        if (status := self._status.get(resource_id)) is not None:
            return copy.deepcopy(status)
        return None

    def list_objects(self, kind: str | None = None) -> list[StoredObject]:
        """List copies of all objects in the store, optionally filtered by kind."""
        return [
            copy.deepcopy(obj)
            for obj in self._objects.values()
            if kind is None or getattr(obj, "kind", None) == kind
        ]

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for rid, obj in list(self._objects.items()):
                if event in (StoreEvent.OBJECT_ADDED, StoreEvent.OBJECT_UPDATED):
                    callback(rid, copy.deepcopy(obj))
                elif event == StoreEvent.STATUS_UPDATED:
                    if (status := self._status.get(rid)) is not None:
                        callback(rid, copy.deepcopy(status))

        return remove

    def _check_version(
        self, resource_id: NamedResource, resource_version: int | None
    ) -> StoredObject:
        """Return the stored object, checking the optimistic precondition."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        if resource_version is not None and resource_version != existing.resource_version:
            raise PersistenceConflict(
                f"Object {resource_id} was modified: version {resource_version} "
                f"is stale, current version is {existing.resource_version}"
            )
        return existing

    def _remove(self, resource_id: NamedResource) -> None:
        """Physically remove an object and cascade to the objects it owns."""
        obj = self._objects.pop(resource_id)
        self._status.pop(resource_id, None)
        _LOGGER.debug("Removed object %s from store", resource_id)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, copy.deepcopy(obj))
        dependents = [
            rid
            for rid, dependent in self._objects.items()
            if rid.namespace == resource_id.namespace
            and any(ref.uid == obj.uid for ref in dependent.owner_references)
        ]
        for rid in dependents:
            if rid not in self._objects:
                continue
            _LOGGER.debug("Cascading deletion of %s to %s", resource_id, rid)
            self.delete_object(rid)

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
