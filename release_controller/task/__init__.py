"""Task tracking for reconciliations dispatched from store events.

The current `TaskService` lives in a context variable so that controllers and
tests share one instance without passing it around. `KeyedLock` serializes
work on a single identity, such as one request or one git clone.
"""

from .context import task_service_context, get_task_service
from .lock import KeyedLock
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "KeyedLock", "TaskService"]
