"""Packaging engine capability used to manage releases.

The controller depends only on the narrow `ReleaseEngine` interface:
find, install, upgrade and uninstall a release by name. `HelmEngine`
implements it with the helm CLI:
```python
from pathlib import Path
from release_controller.helm_controller import HelmEngine

engine = HelmEngine(tmp_dir=Path("/tmp/release-controller"))
release = await engine.find_release("podinfo", "default")
```
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from typing import Any
import uuid

import aiofiles
import yaml

from release_controller import command
from release_controller.exceptions import EngineError, HelmException

__all__ = [
    "Release",
    "ReleaseEngine",
    "HelmEngine",
]

_LOGGER = logging.getLogger(__name__)


HELM_BIN = "helm"

# Helm errors that will not go away by trying again with the same chart
_PERMANENT_ERRORS = (
    "Chart.yaml file is missing",
    "validation: chart.metadata",
    "chart requires kubeVersion",
)


@dataclass
class Release:
    """An installed release as reported by the packaging engine."""

    name: str
    """The release name."""

    namespace: str
    """The namespace the release is installed in."""

    revision: int = 1
    """The revision, incremented by every upgrade."""

    chart: str = ""
    """The name of the installed chart."""

    chart_version: str = ""
    """The version of the installed chart."""

    status: str = "deployed"
    """The engine's status of the release."""

    values: dict[str, Any] = field(default_factory=dict)
    """User supplied values of the current revision."""

    labels: dict[str, str] = field(default_factory=dict)
    """Labels on the release, used to correlate it with its owner."""


class ReleaseEngine(ABC):
    """Capability to manage releases in a packaging engine."""

    @abstractmethod
    async def find_release(self, name: str, namespace: str) -> Release | None:
        """Return the release with the given name, or None if it does not exist.

        Raises:
            EngineError: If the engine could not be queried.
        """

    @abstractmethod
    async def install(
        self,
        name: str,
        namespace: str,
        chart_path: Path,
        values: dict[str, Any],
        labels: dict[str, str],
    ) -> Release:
        """Install a new release of the chart at chart_path."""

    @abstractmethod
    async def upgrade(
        self,
        name: str,
        namespace: str,
        chart_path: Path,
        values: dict[str, Any],
        labels: dict[str, str],
    ) -> Release:
        """Apply the chart at chart_path and values to an existing release."""

    @abstractmethod
    async def uninstall(self, name: str, namespace: str) -> None:
        """Remove a release. Removing a missing release is not an error."""


def _is_not_found(err: HelmException) -> bool:
    return "not found" in str(err)


def _engine_error(action: str, name: str, err: HelmException) -> EngineError:
    message = f"Failed to {action} release {name}: {err}"
    permanent = any(marker in str(err) for marker in _PERMANENT_ERRORS)
    return EngineError(message, permanent=permanent)


def _parse_release(doc: dict[str, Any], labels: dict[str, str] | None = None) -> Release:
    """Parse the JSON release document printed by helm."""
    chart_metadata = (doc.get("chart") or {}).get("metadata") or {}
    return Release(
        name=doc["name"],
        namespace=doc.get("namespace", ""),
        revision=int(doc.get("version", 1)),
        chart=chart_metadata.get("name", ""),
        chart_version=chart_metadata.get("version", ""),
        status=(doc.get("info") or {}).get("status", ""),
        values=doc.get("config") or {},
        labels=labels if labels is not None else dict(doc.get("labels") or {}),
    )


class HelmEngine(ReleaseEngine):
    """Manages releases with the helm CLI.

    Ownership labels are stored as helm release labels, which requires a helm
    version supporting `--labels` and reporting labels in `helm get metadata`.
    """

    def __init__(
        self,
        tmp_dir: Path,
        helm_bin: str = HELM_BIN,
        kube_context: str | None = None,
        timeout: float = 300.0,
    ) -> None:
        """Initialize HelmEngine.

        Args:
            tmp_dir: Directory for values files passed to helm
            helm_bin: The helm binary to run
            kube_context: Optional kubeconfig context to use
            timeout: Timeout in seconds for a single helm command
        """
        self._tmp_dir = tmp_dir
        self._helm_bin = helm_bin
        self._timeout = timeout
        self._flags: list[str] = []
        if kube_context:
            self._flags.extend(["--kube-context", kube_context])

    async def _run(self, args: list[str]) -> str:
        cmd = command.Command(
            [self._helm_bin, *args, *self._flags], exc=HelmException
        )
        return await command.run(cmd, timeout=self._timeout)

    async def find_release(self, name: str, namespace: str) -> Release | None:
        """Return the release with the given name, or None if it does not exist."""
        try:
            status = await self._run(
                ["status", name, "--namespace", namespace, "--output", "json"]
            )
            metadata = await self._run(
                ["get", "metadata", name, "--namespace", namespace, "--output", "json"]
            )
        except HelmException as err:
            if _is_not_found(err):
                _LOGGER.debug("Release %s/%s not found", namespace, name)
                return None
            raise _engine_error("find", name, err) from err
        try:
            labels = json.loads(metadata).get("labels") or {}
            return _parse_release(json.loads(status), labels=labels)
        except (ValueError, KeyError) as err:
            raise EngineError(f"Unable to parse release {name}: {err}") from err

    async def _write_values(self, name: str, values: dict[str, Any]) -> Path:
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        values_path = self._tmp_dir / f"{name}-{uuid.uuid4().hex}-values.yaml"
        async with aiofiles.open(values_path, mode="w") as values_file:
            await values_file.write(yaml.dump(values, sort_keys=False))
        return values_path

    async def _apply(
        self,
        action: str,
        name: str,
        namespace: str,
        chart_path: Path,
        values: dict[str, Any],
        labels: dict[str, str],
    ) -> Release:
        values_path = await self._write_values(name, values)
        args = [
            action,
            name,
            str(chart_path),
            "--namespace",
            namespace,
            "--values",
            str(values_path),
            "--output",
            "json",
        ]
        if labels:
            args.extend(
                ["--labels", ",".join(f"{k}={v}" for k, v in sorted(labels.items()))]
            )
        if action == "upgrade":
            args.append("--reset-values")
        try:
            out = await self._run(args)
        except HelmException as err:
            raise _engine_error(action, name, err) from err
        finally:
            values_path.unlink(missing_ok=True)
        try:
            return _parse_release(json.loads(out), labels=labels)
        except (ValueError, KeyError) as err:
            raise EngineError(f"Unable to parse release {name}: {err}") from err

    async def install(
        self,
        name: str,
        namespace: str,
        chart_path: Path,
        values: dict[str, Any],
        labels: dict[str, str],
    ) -> Release:
        """Install a new release of the chart at chart_path."""
        return await self._apply("install", name, namespace, chart_path, values, labels)

    async def upgrade(
        self,
        name: str,
        namespace: str,
        chart_path: Path,
        values: dict[str, Any],
        labels: dict[str, str],
    ) -> Release:
        """Apply the chart at chart_path and values to an existing release."""
        return await self._apply("upgrade", name, namespace, chart_path, values, labels)

    async def uninstall(self, name: str, namespace: str) -> None:
        """Remove a release. Removing a missing release is not an error."""
        try:
            await self._run(["uninstall", name, "--namespace", namespace])
        except HelmException as err:
            if _is_not_found(err):
                _LOGGER.debug("Release %s/%s already uninstalled", namespace, name)
                return
            raise _engine_error("uninstall", name, err) from err
