"""Module for an in memory packaging engine."""

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any

import yaml

from release_controller.exceptions import EngineError

from .engine import Release, ReleaseEngine

_LOGGER = logging.getLogger(__name__)


class InMemoryEngine(ReleaseEngine):
    """In-memory implementation of the ReleaseEngine interface.

    Releases are kept in a dict keyed by namespace and name. The chart at
    chart_path must contain a Chart.yaml, which supplies the chart name and
    version. Every call is appended to `calls` so the sequence of operations
    can be inspected, and failures can be injected with `fail_next`.
    """

    def __init__(self, delay: float = 0.0) -> None:
        """Initialize the InMemoryEngine.

        Args:
            delay: Seconds every operation waits before completing
        """
        self._releases: dict[tuple[str, str], Release] = {}
        self._failures: dict[str, Exception] = {}
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    @property
    def releases(self) -> list[Release]:
        """Copies of all installed releases."""
        return [copy.deepcopy(release) for release in self._releases.values()]

    def fail_next(self, operation: str, err: Exception) -> None:
        """Fail the next call of an operation with the given exception."""
        self._failures[operation] = err

    async def _enter(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if (err := self._failures.pop(operation, None)) is not None:
            _LOGGER.debug("Injected failure for %s of %s: %s", operation, name, err)
            raise err

    async def find_release(self, name: str, namespace: str) -> Release | None:
        """Return the release with the given name, or None if it does not exist."""
        await self._enter("find", name)
        if (release := self._releases.get((namespace, name))) is None:
            return None
        return copy.deepcopy(release)

    def _chart_metadata(self, chart_path: Path) -> dict[str, Any]:
        chart_file = chart_path / "Chart.yaml"
        try:
            metadata = yaml.safe_load(chart_file.read_text())
        except (OSError, yaml.YAMLError) as err:
            raise EngineError(
                f"Unable to load chart {chart_path}: {err}", permanent=True
            ) from err
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise EngineError(
                f"validation: chart.metadata.name is required in {chart_file}",
                permanent=True,
            )
        return metadata

    async def install(
        self,
        name: str,
        namespace: str,
        chart_path: Path,
        values: dict[str, Any],
        labels: dict[str, str],
    ) -> Release:
        """Install a new release of the chart at chart_path."""
        await self._enter("install", name)
        if (namespace, name) in self._releases:
            raise EngineError(f"cannot re-use a name that is still in use: {name}")
        metadata = self._chart_metadata(chart_path)
        release = Release(
            name=name,
            namespace=namespace,
            revision=1,
            chart=metadata["name"],
            chart_version=str(metadata.get("version", "")),
            values=copy.deepcopy(values),
            labels=dict(labels),
        )
        self._releases[(namespace, name)] = release
        _LOGGER.debug("Installed release %s/%s", namespace, name)
        return copy.deepcopy(release)

    async def upgrade(
        self,
        name: str,
        namespace: str,
        chart_path: Path,
        values: dict[str, Any],
        labels: dict[str, str],
    ) -> Release:
        """Apply the chart at chart_path and values to an existing release."""
        await self._enter("upgrade", name)
        if (existing := self._releases.get((namespace, name))) is None:
            raise EngineError(f"release: not found: {name}")
        metadata = self._chart_metadata(chart_path)
        release = Release(
            name=name,
            namespace=namespace,
            revision=existing.revision + 1,
            chart=metadata["name"],
            chart_version=str(metadata.get("version", "")),
            values=copy.deepcopy(values),
            labels=dict(labels),
        )
        self._releases[(namespace, name)] = release
        _LOGGER.debug(
            "Upgraded release %s/%s to revision %d", namespace, name, release.revision
        )
        return copy.deepcopy(release)

    async def uninstall(self, name: str, namespace: str) -> None:
        """Remove a release. Removing a missing release is not an error."""
        await self._enter("uninstall", name)
        if self._releases.pop((namespace, name), None) is not None:
            _LOGGER.debug("Uninstalled release %s/%s", namespace, name)
