"""Configuration for the release controller.

The process environment is only consulted by `ControllerConfig.from_env`,
everything else receives the resulting config object at construction.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import tempfile

from .manifest import FINALIZER

__all__ = [
    "ControllerConfig",
    "CHARTS_DIR_ENV",
]

_LOGGER = logging.getLogger(__name__)

CHARTS_DIR_ENV = "CHARTS_DIR"
"""Environment variable holding the root directory of the chart cache."""

DEFAULT_CHARTS_DIR_NAME = "release-controller-charts"


def default_charts_dir() -> Path:
    """Return the process default chart cache root."""
    return Path(tempfile.gettempdir()) / DEFAULT_CHARTS_DIR_NAME


@dataclass
class ControllerConfig:
    """Configuration for the HelmReleaseController."""

    charts_dir: Path = field(default_factory=default_charts_dir)
    """Root of the chart cache, one subdirectory per chart name."""

    reconcile_timeout: float = 300.0
    """Deadline in seconds for a single reconciliation."""

    fetch_timeout: float = 60.0
    """Timeout in seconds for a single chart download or git network operation."""

    watch: bool = True
    """Reconcile requests automatically when they are added or updated."""

    requeue_delay: float | None = 30.0
    """Seconds before a transient failure is reconciled again, None to disable."""

    finalizer: str = FINALIZER
    """Finalizer used to block deletion of requests until uninstall completes."""

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **kwargs: object
    ) -> "ControllerConfig":
        """Build a config, taking the chart cache root from the environment.

        An unset or empty CHARTS_DIR uses the process default temporary location.
        """
        env = os.environ if environ is None else environ
        if charts_dir := env.get(CHARTS_DIR_ENV):
            _LOGGER.debug("Using chart cache root %s from %s", charts_dir, CHARTS_DIR_ENV)
            return cls(charts_dir=Path(charts_dir), **kwargs)  # type: ignore[arg-type]
        return cls(**kwargs)  # type: ignore[arg-type]
