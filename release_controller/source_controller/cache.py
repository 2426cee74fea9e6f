"""Cache management for chart content and git clones."""

import hashlib
import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from shutil import rmtree
from urllib.parse import urlparse

from slugify import slugify

from release_controller.exceptions import SourceUnavailable, ValidationError

from .artifact import ChartCacheEntry

_LOGGER = logging.getLogger(__name__)

# Chart names become a single directory under the cache root. Names starting
# with a dot are reserved for the cache's own bookkeeping directories.
_CHART_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

REPOS_DIR = ".repos"
STAGING_PREFIX = ".staging-"
_REPLACE_ATTEMPTS = 3


def check_chart_name(chart_name: str) -> None:
    """Raise ValidationError unless the chart name is a safe directory name."""
    if not isinstance(chart_name, str) or not _CHART_NAME_RE.match(chart_name):
        raise ValidationError(
            f"Invalid chart name '{chart_name}': must start with a letter or digit "
            "and contain only letters, digits, '.', '_' or '-'"
        )


class ChartCache:
    """Cache of chart directories, one subtree per chart name.

    A chart directory is replaced as a whole each time its chart is resolved,
    so readers never observe a mix of two fetches. The cache persists for the
    lifetime of the process and is removed by the owner calling `cleanup`.
    """

    def __init__(self, root: Path) -> None:
        """Initialize the cache manager."""
        self._root = root
        self._entries: dict[str, ChartCacheEntry] = {}

    @property
    def root(self) -> Path:
        """Root directory of the cache."""
        return self._root

    def chart_dir(self, chart_name: str) -> Path:
        """Return the directory that holds the content of a chart."""
        check_chart_name(chart_name)
        return self._root / chart_name

    def entry(self, chart_name: str) -> ChartCacheEntry | None:
        """Return the last recorded fetch of a chart, if still on disk."""
        if (entry := self._entries.get(chart_name)) is None:
            return None
        if not (Path(entry.path) / "Chart.yaml").exists():
            return None
        return entry

    def _slugify_url(self, url: str) -> str:
        """Extract and slugify a repository name from a URL."""
        parsed = urlparse(url)
        path = parsed.path
        if path.endswith(".git"):
            path = path[:-4]
        slug = path.rstrip("/").split("/")[-1]
        # Handle SSH URLs (git@github.com:user/repo.git)
        if parsed.scheme == "" and "@" in url and ":" in url:
            slug = url.split(":")[-1].split("/")[-1].removesuffix(".git")
        return slugify(slug, max_length=50, lowercase=True, separator="-") or "repo"

    def repo_dir(self, url: str, ref: str | None = None) -> Path:
        """Return the local directory used to clone a git repository.

        Args:
            url: The URL of the repository
            ref: The git reference string (branch, tag, commit, etc.)
        """
        cache_key = hashlib.sha256()
        cache_key.update(url.encode("utf-8"))
        if ref:
            cache_key.update(ref.encode("utf-8"))
        # e.g. <root>/.repos/my-repo/ab1234567890abcdef
        repo_path = self._root / REPOS_DIR / self._slugify_url(url) / cache_key.hexdigest()[:16]
        try:
            repo_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SourceUnavailable(f"Failed to create cache directory: {e}") from e
        return repo_path

    def staging_dir(self, chart_name: str) -> Path:
        """Create an empty directory on the cache filesystem to build content in."""
        check_chart_name(chart_name)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            return Path(
                tempfile.mkdtemp(prefix=f"{STAGING_PREFIX}{chart_name}-", dir=self._root)
            )
        except OSError as e:
            raise SourceUnavailable(f"Failed to create staging directory: {e}") from e

    def replace(
        self, chart_name: str, content_dir: Path, digest: str, url: str
    ) -> ChartCacheEntry:
        """Move a fully prepared chart directory into place.

        Any previous content of the chart is discarded. The content directory
        must live on the cache filesystem, see `staging_dir`.
        """
        target = self.chart_dir(chart_name)
        for attempt in range(_REPLACE_ATTEMPTS):
            retired: Path | None = (
                self._root / f"{STAGING_PREFIX}{chart_name}-{uuid.uuid4().hex}"
            )
            try:
                os.rename(target, retired)  # type: ignore[arg-type]
            except FileNotFoundError:
                retired = None
            except OSError as e:
                raise SourceUnavailable(
                    f"Failed to replace chart {chart_name}: {e}"
                ) from e
            try:
                os.rename(content_dir, target)
                replaced = True
            except OSError as e:
                # Another resolve of the same chart moved its content in first
                _LOGGER.debug(
                    "Chart directory %s replaced concurrently (attempt %d): %s",
                    target,
                    attempt,
                    e,
                )
                replaced = False
            if retired is not None:
                rmtree(retired, ignore_errors=True)
            if replaced:
                break
        else:
            rmtree(content_dir, ignore_errors=True)
            raise SourceUnavailable(
                f"Failed to replace chart {chart_name}: directory kept changing"
            )
        entry = ChartCacheEntry(
            chart_name=chart_name, path=str(target), digest=digest, url=url
        )
        self._entries[chart_name] = entry
        _LOGGER.debug("Cached chart %s at %s (%s)", chart_name, target, digest)
        return entry

    def cleanup(self) -> None:
        """Remove all cached charts and clones."""
        if self._root.exists():
            _LOGGER.info("Cleaning up chart cache: %s", self._root)
            rmtree(self._root, ignore_errors=True)
        self._entries.clear()
