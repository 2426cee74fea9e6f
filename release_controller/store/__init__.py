"""
The store module provides the record store that release requests are read from
and that status and owned artifacts are written back to.

- Uses NamedResource as the key for all objects.
- Stores values as dataclass instances from manifest.py for type safety.
- Writes are guarded by the object's resource_version (optimistic concurrency).
- Deleting an object with finalizers only marks it for deletion; deleting an
  object removes the objects that reference it as their owner.

This abstract interface allows for various implementations (in-memory, API server backed, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .status import ReleaseState, ReleaseStatus

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "ReleaseState",
    "ReleaseStatus",
]
