"""Release manager for a single release request.

A ReleaseManager binds a request, its resolved chart directory and its parsed
values to the packaging engine. Releases are correlated with the request that
owns them through owner labels rather than by name, so that two requests
declaring the same release name can not silently share one release.
"""

import logging
from pathlib import Path
from typing import Any

from release_controller.exceptions import EngineError, NameConflict
from release_controller.manifest import (
    OWNER_NAME_LABEL,
    OWNER_NAMESPACE_LABEL,
    ReleaseRequest,
)
from release_controller.values import parse_values

from .engine import Release, ReleaseEngine

_LOGGER = logging.getLogger(__name__)


def release_owner(release: Release) -> str | None:
    """Return the namespaced name of the request owning a release, if labeled."""
    if (name := release.labels.get(OWNER_NAME_LABEL)) is None:
        return None
    if namespace := release.labels.get(OWNER_NAMESPACE_LABEL):
        return f"{namespace}/{name}"
    return name


class ReleaseManager:
    """Manages the release of one request in the packaging engine."""

    def __init__(
        self,
        request: ReleaseRequest,
        engine: ReleaseEngine,
        release_name: str,
        chart_path: Path | None = None,
        values: dict[str, Any] | None = None,
    ) -> None:
        """Initialize ReleaseManager, see `build` and `for_deletion`."""
        self._request = request
        self._engine = engine
        self._release_name = release_name
        self._namespace = request.namespace or ""
        self._chart_path = chart_path
        self._values = values or {}
        self._deployed: Release | None = None

    @classmethod
    def build(
        cls, request: ReleaseRequest, chart_path: Path, engine: ReleaseEngine
    ) -> "ReleaseManager":
        """Build a manager to install or upgrade the release of a request.

        Raises:
            ValidationError: If the values of the request can not be parsed.
        """
        values = parse_values(request.values)
        return cls(
            request,
            engine,
            request.effective_release_name,
            chart_path=chart_path,
            values=values,
        )

    @classmethod
    def for_deletion(
        cls, request: ReleaseRequest, engine: ReleaseEngine
    ) -> "ReleaseManager":
        """Build a manager to uninstall the release of a request.

        Neither chart content nor values are needed. The release installed for
        the request is targeted even if the request was renamed since.
        """
        release_name = request.installed_release_name or request.effective_release_name
        return cls(request, engine, release_name)

    @property
    def release_name(self) -> str:
        """The name of the managed release."""
        return self._release_name

    @property
    def deployed_release(self) -> Release | None:
        """The release found by the last call to `exists`."""
        return self._deployed

    @property
    def owned(self) -> bool:
        """True when the release found by `exists` belongs to this request."""
        if self._deployed is None:
            return False
        labels = self._deployed.labels
        return labels.get(OWNER_NAME_LABEL) == self._request.name and labels.get(
            OWNER_NAMESPACE_LABEL, ""
        ) == (self._request.namespace or "")

    async def exists(self) -> bool:
        """Query the engine for a release with this name."""
        self._deployed = await self._engine.find_release(
            self._release_name, self._namespace
        )
        return self._deployed is not None

    def _check_owned(self) -> None:
        if self._deployed is not None and not self.owned:
            raise NameConflict(self._release_name, release_owner(self._deployed))

    def _chart(self) -> Path:
        if self._chart_path is None:
            raise EngineError(
                f"No chart resolved for release {self._release_name}", permanent=True
            )
        return self._chart_path

    async def install(self) -> Release:
        """Create the release.

        Raises:
            NameConflict: If a release with this name is owned by another request.
        """
        if await self.exists():
            self._check_owned()
            _LOGGER.info(
                "Release %s already installed for %s, upgrading",
                self._release_name,
                self._request.namespaced_name,
            )
            return await self.upgrade()
        _LOGGER.info("Installing release %s", self._release_name)
        self._deployed = await self._engine.install(
            self._release_name,
            self._namespace,
            self._chart(),
            self._values,
            self._request.owner_labels,
        )
        return self._deployed

    async def upgrade(self) -> Release:
        """Re-apply the chart and values to the existing owned release.

        The engine is always called, even when nothing changed, and decides
        itself whether there is anything to apply.
        """
        if self._deployed is None and not await self.exists():
            raise EngineError(f"Release {self._release_name} not found for upgrade")
        self._check_owned()
        _LOGGER.info("Upgrading release %s", self._release_name)
        self._deployed = await self._engine.upgrade(
            self._release_name,
            self._namespace,
            self._chart(),
            self._values,
            self._request.owner_labels,
        )
        return self._deployed

    async def uninstall(self) -> None:
        """Remove the release if it exists and belongs to this request."""
        if not await self.exists():
            _LOGGER.info("Release %s does not exist, nothing to uninstall", self._release_name)
            return
        if not self.owned:
            _LOGGER.warning(
                "Release %s is owned by %s, not uninstalling it for %s",
                self._release_name,
                release_owner(self._deployed),  # type: ignore[arg-type]
                self._request.namespaced_name,
            )
            return
        _LOGGER.info("Uninstalling release %s", self._release_name)
        await self._engine.uninstall(self._release_name, self._namespace)
        self._deployed = None
