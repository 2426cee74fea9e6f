"""Writes the outcome of a reconciliation back to the record store."""

import logging

from release_controller.exceptions import ObjectNotFoundError
from release_controller.manifest import ReleaseRequest, ReleaseSecret
from release_controller.store import ReleaseState, ReleaseStatus, Store

from .engine import Release

_LOGGER = logging.getLogger(__name__)


class StatusRecorder:
    """Persists the status of a request and the artifacts it owns."""

    def __init__(self, store: Store) -> None:
        """Initialize the StatusRecorder."""
        self._store = store

    def record(
        self, request: ReleaseRequest, state: ReleaseState, reason: str = ""
    ) -> int:
        """Write the status of a request, returning the new resource_version.

        The write is conditional on the request still being at the version it
        was read at. The transition time only moves when the state changes.

        Raises:
            PersistenceConflict: If the request was modified since it was read.
            ObjectNotFoundError: If the request was deleted.
        """
        resource_id = request.resource_id
        status = ReleaseStatus(state=state, reason=reason)
        if (previous := self._store.get_status(resource_id)) is not None:
            if previous.state == state:
                status.last_transition_time = previous.last_transition_time
        version = self._store.update_status(
            resource_id, status, resource_version=request.resource_version
        )
        request.resource_version = version
        return version

    def record_artifact(self, request: ReleaseRequest, release: Release) -> ReleaseSecret:
        """Create or replace the artifact describing the release of a request."""
        artifact = ReleaseSecret(
            name=release.name,
            namespace=request.namespace,
            labels=dict(request.owner_labels),
            owner_references=[request.owner_reference()],
            string_data={
                "release": release.name,
                "revision": str(release.revision),
                "chart": release.chart,
                "chartVersion": release.chart_version,
            },
        )
        existing = self._store.get_object(artifact.resource_id, ReleaseSecret)
        if existing is None:
            _LOGGER.debug("Creating release artifact %s", artifact.resource_id)
            return self._store.add_object(artifact)
        _LOGGER.debug("Replacing release artifact %s", artifact.resource_id)
        artifact.resource_version = existing.resource_version
        if (stored := self._store.update_object(artifact)) is None:
            raise ObjectNotFoundError(f"Artifact {artifact.resource_id} was deleted")
        return stored
