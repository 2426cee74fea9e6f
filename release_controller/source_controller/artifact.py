"""Artifact representation."""

from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class ChartCacheEntry:
    """A chart materialized in the chart cache.

    This is recorded each time a chart is resolved. The path references the
    local directory holding the chart, including its Chart.yaml.
    """

    chart_name: str
    """Name of the chart, also the name of its cache directory."""

    path: str
    """Local filesystem path to the chart directory."""

    digest: str
    """Content hash of the last successful fetch."""

    url: str
    """URL the content was fetched from, for informational/logging purposes."""
