"""The helm controller module.

This module converges Helm releases toward the release requests in the store,
using a narrow packaging engine interface that is implemented with the helm
CLI and, for tests, in memory.
"""

from .controller import HelmReleaseController, ReconcileResult, validate_request
from .engine import HelmEngine, Release, ReleaseEngine
from .in_memory import InMemoryEngine
from .manager import ReleaseManager
from .status import StatusRecorder

__all__ = [
    "HelmEngine",
    "HelmReleaseController",
    "InMemoryEngine",
    "ReconcileResult",
    "Release",
    "ReleaseEngine",
    "ReleaseManager",
    "StatusRecorder",
    "validate_request",
]
