"""Store module for holding release requests and the objects they own."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from release_controller.manifest import NamedResource, StoredObject

from .status import ReleaseStatus

T = TypeVar("T", bound=StoredObject)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    OBJECT_DELETED = "object_deleted"
    STATUS_UPDATED = "status_updated"


class Store(ABC):
    """Abstract base class for the record store with listener support."""

    @abstractmethod
    def add_object(self, obj: T) -> T:
        """Create a new object in the store, returning the stored copy.

        The store assigns the uid and the initial resource_version.
        """

    @abstractmethod
    def get_object(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve a copy of an object by resource identity and type."""

    @abstractmethod
    def update_object(self, obj: T) -> T | None:
        """Replace an object, returning the stored copy.

        Raises:
            ObjectNotFoundError: If the object no longer exists.
            PersistenceConflict: If the stored resource_version changed since
                the object was read.

        Returns None when the update removed the last finalizer of an object
        marked for deletion and the object was physically deleted.
        """

    @abstractmethod
    def delete_object(self, resource_id: NamedResource) -> None:
        """Request deletion of an object.

        An object with finalizers is marked with a deletion timestamp and kept
        until its finalizers are removed. Otherwise it is removed along with
        every object that references it as an owner.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    def update_status(
        self,
        resource_id: NamedResource,
        status: ReleaseStatus,
        resource_version: int | None = None,
    ) -> int:
        """Write the status of an object, returning the new resource_version.

        Raises:
            ObjectNotFoundError: If the object no longer exists.
            PersistenceConflict: If resource_version is set and does not match
                the stored version.
        """

    @abstractmethod
    def get_status(self, resource_id: NamedResource) -> ReleaseStatus | None:
        """Retrieve the status for an object."""

    @abstractmethod
    def list_objects(self, kind: str | None = None) -> list[StoredObject]:
        """List copies of all objects in the store, optionally filtered by kind."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, Any], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        When flush is set, the callback is invoked for existing objects as if
        they had just been added. Returns a callable that removes the listener.
        """
