"""Source resolver module.

Materializes the chart content declared by a release request into the chart
cache. Both source types end up as `<cache root>/<chart name>`, a directory
holding `Chart.yaml`, which is the path handed to the packaging engine.

Supported Source Types:
    - GitSource: a subpath of a git repository, read with GitPython
    - RepoSource: a packaged chart archive, downloaded with httpx
"""

import logging
from pathlib import Path

import httpx

from release_controller.config import ControllerConfig
from release_controller.exceptions import SourceUnavailable
from release_controller.manifest import ChartSource, GitSource, RepoSource

from .archive import fetch_archive
from .artifact import ChartCacheEntry
from .cache import ChartCache
from .git import fetch_git

_LOGGER = logging.getLogger(__name__)


class SourceResolver:
    """Fetches chart content from its source into the chart cache.

    Resolution is idempotent. Re-resolving the same source overwrites the
    chart directory, so concurrent resolves of a chart name are safe and the
    last writer wins.
    """

    def __init__(
        self,
        cache: ChartCache,
        http_client: httpx.AsyncClient | None = None,
        fetch_timeout: float = 60.0,
    ) -> None:
        """Initialize the resolver.

        Args:
            cache: The chart cache to populate
            http_client: Client for archive downloads, created on demand when
                not provided
            fetch_timeout: Timeout in seconds for a single download or git
                network operation
        """
        self._cache = cache
        self._http_client = http_client
        self._owns_client = http_client is None
        self._fetch_timeout = fetch_timeout

    @classmethod
    def from_config(
        cls, config: ControllerConfig, http_client: httpx.AsyncClient | None = None
    ) -> "SourceResolver":
        """Create a resolver writing to the chart cache root of a config."""
        _LOGGER.debug("Using chart cache root %s", config.charts_dir)
        return cls(
            ChartCache(config.charts_dir),
            http_client=http_client,
            fetch_timeout=config.fetch_timeout,
        )

    @property
    def cache(self) -> ChartCache:
        """The chart cache written by this resolver."""
        return self._cache

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._fetch_timeout)
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if it was created by the resolver."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def resolve(self, source: ChartSource, chart_name: str) -> Path:
        """Fetch chart content and return the local chart directory.

        Raises:
            SourceUnavailable: For any failure to fetch or write the content,
                with the underlying cause chained.
        """
        entry = await self.resolve_entry(source, chart_name)
        return Path(entry.path)

    async def resolve_entry(
        self, source: ChartSource, chart_name: str
    ) -> ChartCacheEntry:
        """Fetch chart content and return its cache entry."""
        _LOGGER.info("Resolving chart %s from %s", chart_name, source)
        try:
            if isinstance(source, GitSource):
                entry = await fetch_git(
                    source, chart_name, self._cache, timeout=self._fetch_timeout
                )
            elif isinstance(source, RepoSource):
                entry = await fetch_archive(
                    source, chart_name, self._cache, self._client()
                )
            else:
                raise SourceUnavailable(
                    f"Unsupported source type: {type(source).__name__}"
                )
        except SourceUnavailable:
            raise
        except OSError as err:
            raise SourceUnavailable(
                f"Failed to write chart {chart_name} to cache: {err}"
            ) from err
        _LOGGER.info("Resolved chart %s to %s (%s)", chart_name, entry.path, entry.digest)
        return entry
