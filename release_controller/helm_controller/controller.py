"""HelmRelease Controller implementation.

This controller converges the packaging engine toward the release requests
held in the store. Each reconciliation reads the request fresh and picks the
first matching transition:

    - Request not found: nothing to do
    - Request marked for deletion: uninstall the release, then drop the finalizer
    - Request statically invalid: record a failure, no fetch and no engine call
    - Otherwise: fetch the chart, then install, upgrade or report a conflict

Key Concepts:
    - ReleaseRequest: The desired state of a single release
    - Store: Holds requests, their status and the artifacts they own
    - ReleaseEngine: Narrow interface to the packaging engine
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

from release_controller.config import ControllerConfig
from release_controller.exceptions import (
    NameConflict,
    ObjectNotFoundError,
    PersistenceConflict,
    ReleaseControllerException,
    ValidationError,
)
from release_controller.manifest import (
    HELM_RELEASE,
    INSTALLED_RELEASE_ANNOTATION,
    ChartSource,
    GitSource,
    NamedResource,
    ReleaseRequest,
)
from release_controller.source_controller import SourceResolver
from release_controller.source_controller.cache import check_chart_name
from release_controller.store import ReleaseState, Store, StoreEvent
from release_controller.task import KeyedLock, get_task_service
from release_controller.values import parse_values

from .engine import Release, ReleaseEngine
from .manager import ReleaseManager, release_owner
from .status import StatusRecorder

__all__ = [
    "HelmReleaseController",
    "ReconcileResult",
    "validate_request",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of a single reconciliation, returned to the dispatcher."""

    requeue: bool = False
    """True when the request should be reconciled again later."""

    error: Exception | None = None
    """The failure that ended the reconciliation, if any."""


def validate_request(request: ReleaseRequest) -> ChartSource:
    """Check everything about a request that does not need the network.

    Returns the source to fetch the chart from.

    Raises:
        ValidationError: If the request can never succeed as written.
    """
    if not request.chart_name:
        raise ValidationError("chartName is required")
    check_chart_name(request.chart_name)
    if not isinstance(request.release_name, str):
        raise ValidationError("releaseName must be a string")
    if (source := request.source) is None:
        raise ValidationError("source is required")
    if not source.urls:
        raise ValidationError("source has no urls")
    if isinstance(source, GitSource) and not source.subpath.strip("/"):
        raise ValidationError("git source requires a chartPath")
    installed = request.installed_release_name
    if installed and installed != request.effective_release_name:
        raise ValidationError(
            f"releaseName is immutable: release was installed as '{installed}', "
            f"request now names '{request.effective_release_name}'"
        )
    parse_values(request.values)
    return source


def _is_retryable(err: Exception) -> bool:
    if isinstance(err, ReleaseControllerException):
        return err.retryable
    return True


class HelmReleaseController:
    """
    Controller for reconciling release requests.

    Reconciliations of one request are serialized, reconciliations of
    different requests run concurrently.
    """

    def __init__(
        self,
        store: Store,
        engine: ReleaseEngine,
        resolver: SourceResolver | None = None,
        config: ControllerConfig | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            store: The store holding release requests and their status
            engine: The packaging engine managing releases
            resolver: Fetches chart content into the chart cache, built from
                the config when not provided
            config: The configuration for the controller
        """
        self.store = store
        self.engine = engine
        self._config = config or ControllerConfig()
        self._owns_resolver = resolver is None
        self.resolver = resolver or SourceResolver.from_config(self._config)
        self._status = StatusRecorder(store)
        self._locks: KeyedLock[NamedResource] = KeyedLock()
        # Requests being written by this controller
        self._writing: set[NamedResource] = set()
        self._queued: set[NamedResource] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._requeues: dict[NamedResource, asyncio.TimerHandle] = {}
        self._task_service = get_task_service()
        self._remove_listeners: list[Callable[[], None]] = []

        if self._config.watch:
            self._remove_listeners.append(
                self.store.add_listener(
                    StoreEvent.OBJECT_ADDED, self._listener, flush=True
                )
            )
            self._remove_listeners.append(
                self.store.add_listener(StoreEvent.OBJECT_UPDATED, self._listener)
            )

    def _listener(self, resource_id: NamedResource, obj: Any) -> None:
        """Event listener for added or changed release requests."""
        if resource_id.kind != HELM_RELEASE:
            return
        if resource_id in self._writing:
            # Finalizer and annotation writes do not change the desired state
            _LOGGER.debug("Ignoring update of %s written by the controller", resource_id)
            return
        self.enqueue(resource_id)

    def enqueue(self, resource_id: NamedResource) -> None:
        """Schedule a reconciliation, coalescing with one already waiting."""
        if resource_id in self._queued:
            _LOGGER.debug("Reconciliation of %s already queued", resource_id)
            return
        self._queued.add(resource_id)
        task = self._task_service.create_task(
            self._dispatch(resource_id), name=f"reconcile-{resource_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, resource_id: NamedResource) -> None:
        async with self._locks.hold(resource_id):
            # Changes arriving from here on need a new pass
            self._queued.discard(resource_id)
            result = await self._reconcile(resource_id)
        if result.requeue:
            self._schedule_requeue(resource_id)

    def _schedule_requeue(self, resource_id: NamedResource) -> None:
        if (delay := self._config.requeue_delay) is None:
            return
        if (handle := self._requeues.pop(resource_id, None)) is not None:
            handle.cancel()
        _LOGGER.debug("Requeue of %s in %ss", resource_id, delay)
        self._requeues[resource_id] = asyncio.get_running_loop().call_later(
            delay, self._requeue, resource_id
        )

    def _requeue(self, resource_id: NamedResource) -> None:
        self._requeues.pop(resource_id, None)
        self.enqueue(resource_id)

    async def close(self) -> None:
        """Stop watching the store and cancel outstanding reconciliations."""
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()
        for handle in self._requeues.values():
            handle.cancel()
        self._requeues.clear()
        for task in list(self._tasks):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_resolver:
            await self.resolver.close()

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Converge the release of a single request toward its desired state.

        Per-request failures are recorded in the status of the request and
        returned, only failures to read the request itself are raised.
        """
        async with self._locks.hold(resource_id):
            return await self._reconcile(resource_id)

    async def _reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        try:
            async with asyncio.timeout(self._config.reconcile_timeout):
                return await self._reconcile_request(resource_id)
        except TimeoutError as err:
            _LOGGER.warning(
                "Reconciliation of %s did not finish within %ss",
                resource_id,
                self._config.reconcile_timeout,
            )
            return ReconcileResult(requeue=True, error=err)

    async def _reconcile_request(self, resource_id: NamedResource) -> ReconcileResult:
        request = self.store.get_object(resource_id, ReleaseRequest)
        if request is None:
            _LOGGER.debug("Request %s not found, nothing to do", resource_id)
            return ReconcileResult()

        if request.deletion_timestamp is not None:
            return await self._finalize(request)

        _LOGGER.info("Reconciling %s", resource_id)
        try:
            source = validate_request(request)
        except ValidationError as err:
            return self._record_failure(request, err)

        try:
            request = self._ensure_finalizer(request)
            chart_path = await self.resolver.resolve(source, request.chart_name)
            manager = ReleaseManager.build(request, chart_path, self.engine)
            if (exists := await manager.exists()) and not manager.owned:
                raise NameConflict(
                    manager.release_name,
                    release_owner(manager.deployed_release),  # type: ignore[arg-type]
                )
            # Recorded before the engine is called, later renames are rejected
            request = self._record_installed_name(request, manager.release_name)
            if exists:
                release = await manager.upgrade()
            else:
                release = await manager.install()
        except ReleaseControllerException as err:
            return self._record_failure(request, err)
        except Exception as err:
            _LOGGER.exception("Failed to reconcile %s: %s", resource_id, err)
            return self._record_failure(request, err)
        return self._record_success(request, release)

    async def _finalize(self, request: ReleaseRequest) -> ReconcileResult:
        """Uninstall the release of a request being deleted."""
        if self._config.finalizer not in request.finalizers:
            _LOGGER.debug("Request %s has no finalizer, nothing to do", request.resource_id)
            return ReconcileResult()

        _LOGGER.info("Finalizing %s", request.resource_id)
        try:
            await ReleaseManager.for_deletion(request, self.engine).uninstall()
        except Exception as err:
            if not isinstance(err, ReleaseControllerException):
                _LOGGER.exception("Failed to uninstall %s: %s", request.resource_id, err)
            # The finalizer stays until the uninstall succeeds
            result = self._record_failure(request, err)
            result.requeue = True
            return result

        request.finalizers.remove(self._config.finalizer)
        try:
            self._write(request)
        except (PersistenceConflict, ObjectNotFoundError) as err:
            _LOGGER.warning(
                "Failed to remove finalizer from %s: %s", request.resource_id, err
            )
            return ReconcileResult(requeue=True, error=err)
        _LOGGER.info("Finalized %s", request.resource_id)
        return ReconcileResult()

    def _write(self, request: ReleaseRequest) -> ReleaseRequest | None:
        resource_id = request.resource_id
        self._writing.add(resource_id)
        try:
            return self.store.update_object(request)
        finally:
            self._writing.discard(resource_id)

    def _update(self, request: ReleaseRequest) -> ReleaseRequest:
        if (stored := self._write(request)) is None:
            raise ObjectNotFoundError(f"Request {request.resource_id} was deleted")
        return stored

    def _ensure_finalizer(self, request: ReleaseRequest) -> ReleaseRequest:
        if self._config.finalizer in request.finalizers:
            return request
        _LOGGER.debug("Adding finalizer to %s", request.resource_id)
        request.finalizers.append(self._config.finalizer)
        return self._update(request)

    def _record_installed_name(
        self, request: ReleaseRequest, release_name: str
    ) -> ReleaseRequest:
        if request.installed_release_name == release_name:
            return request
        request.annotations[INSTALLED_RELEASE_ANNOTATION] = release_name
        return self._update(request)

    def _record_success(
        self, request: ReleaseRequest, release: Release
    ) -> ReconcileResult:
        try:
            self._status.record_artifact(request, release)
            self._status.record(
                request,
                ReleaseState.SUCCESS,
                f"Release {release.name} revision {release.revision} deployed",
            )
        except (PersistenceConflict, ObjectNotFoundError) as err:
            _LOGGER.warning(
                "Failed to record success of %s: %s", request.resource_id, err
            )
            return ReconcileResult(requeue=True, error=err)
        _LOGGER.info("Reconciled %s", request.resource_id)
        return ReconcileResult()

    def _record_failure(
        self, request: ReleaseRequest, err: Exception
    ) -> ReconcileResult:
        """Record a failed reconciliation, ignoring failures to write the status."""
        requeue = _is_retryable(err)
        _LOGGER.warning("Failed to reconcile %s: %s", request.resource_id, err)
        try:
            self._status.record(
                request, ReleaseState.FAILED, f"{type(err).__name__}: {err}"
            )
        except (PersistenceConflict, ObjectNotFoundError) as write_err:
            _LOGGER.warning(
                "Failed to record failure of %s: %s", request.resource_id, write_err
            )
            requeue = True
        return ReconcileResult(requeue=requeue, error=err)
