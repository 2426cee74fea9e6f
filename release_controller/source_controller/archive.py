"""Packaged chart archive fetching."""

import asyncio
import hashlib
import io
import logging
import tarfile
from pathlib import Path
from shutil import rmtree

import httpx

from release_controller.exceptions import SourceUnavailable
from release_controller.manifest import RepoSource

from .artifact import ChartCacheEntry
from .cache import ChartCache

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"


class ArchiveError(SourceUnavailable):
    """Raised when a downloaded chart archive can not be used."""


async def download_archive(
    client: httpx.AsyncClient, urls: list[str]
) -> tuple[str, bytes]:
    """Download from the first URL that responds, returning the URL and body.

    Transport failures and error responses move on to the next URL.
    """
    if not urls:
        raise SourceUnavailable("No archive URLs to fetch from")
    errors: list[str] = []
    for url in urls:
        _LOGGER.info("Downloading chart archive %s", url)
        try:
            response = await client.get(url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as err:
            _LOGGER.warning(
                "Chart archive %s responded %d", url, err.response.status_code
            )
            errors.append(f"{url}: HTTP {err.response.status_code}")
            continue
        except httpx.HTTPError as err:
            _LOGGER.warning("Failed to download chart archive %s: %s", url, err)
            errors.append(f"{url}: {type(err).__name__}: {err}")
            continue
        return url, response.content
    raise SourceUnavailable(
        f"Failed to download chart archive from any URL: {'; '.join(errors)}"
    )


def _find_chart_root(extract_dir: Path) -> Path:
    """Return the directory holding Chart.yaml inside an extracted archive."""
    if (extract_dir / CHART_FILE).is_file():
        return extract_dir
    children = [child for child in extract_dir.iterdir() if child.is_dir()]
    if len(children) == 1 and (children[0] / CHART_FILE).is_file():
        return children[0]
    raise ArchiveError(f"Chart archive does not contain a {CHART_FILE}")


def extract_archive(content: bytes, staging_dir: Path) -> Path:
    """Extract a gzipped chart archive, returning the chart directory."""
    extract_dir = staging_dir / "extract"
    extract_dir.mkdir()
    try:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:*") as tar:
            tar.extractall(path=extract_dir, filter="data")
    except (tarfile.TarError, EOFError, OSError) as err:
        raise ArchiveError(f"Malformed chart archive: {err}") from err
    return _find_chart_root(extract_dir)


async def fetch_archive(
    source: RepoSource,
    chart_name: str,
    cache: ChartCache,
    client: httpx.AsyncClient,
) -> ChartCacheEntry:
    """Fetch a packaged chart into the chart cache.

    Args:
        source: The RepoSource listing archive URLs
        chart_name: The chart cache directory to populate
        cache: The chart cache
        client: HTTP client used for the download

    Returns:
        ChartCacheEntry: The cached chart

    Raises:
        SourceUnavailable: If no URL responds or the archive is malformed
    """
    url, content = await download_archive(client, source.urls)
    digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
    if (entry := cache.entry(chart_name)) is not None and entry.digest == digest:
        _LOGGER.debug("Chart %s unchanged (%s), skipping extract", chart_name, digest)
        return entry

    staging_dir = cache.staging_dir(chart_name)
    try:
        chart_root = await asyncio.to_thread(extract_archive, content, staging_dir)
        return cache.replace(chart_name, chart_root, digest, url)
    finally:
        rmtree(staging_dir, ignore_errors=True)
