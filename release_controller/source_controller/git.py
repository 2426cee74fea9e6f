"""Git repository chart fetching.

Clones are kept under the chart cache and shared by every request using the
same URL and ref. Network operations run as `git` subprocesses so that they
are killed when the reconciliation is cancelled. The chart is then exported
with GitPython from the tree of the resolved commit, never from a working
tree, so a concurrent fetch can not change content while it is copied.
"""

import asyncio
import logging
from pathlib import Path, PurePosixPath
from shutil import rmtree

import git

from release_controller import command
from release_controller.exceptions import GitException, SourceUnavailable
from release_controller.manifest import GitSource
from release_controller.task import KeyedLock

from .artifact import ChartCacheEntry
from .cache import ChartCache

_LOGGER = logging.getLogger(__name__)

_REPO_LOCKS: KeyedLock[Path] = KeyedLock()

# Never wait on a credential prompt
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}

DEFAULT_TIMEOUT = 60.0


class GitError(SourceUnavailable):
    """Exception raised for git operations."""


async def _git(args: list[str], cwd: Path | None, timeout: float) -> str:
    return await command.run(
        command.Command(["git", *args], cwd=cwd, exc=GitException, env=_GIT_ENV),
        timeout=timeout,
    )


async def _update_clone(url: str, repo_path: Path, timeout: float) -> None:
    """Clone a repository, or fetch into the existing clone."""
    if (repo_path / ".git").exists():
        _LOGGER.info("Fetching %s into %s", url, repo_path)
        await _git(
            ["fetch", "--tags", "--force", "--prune", "origin"], repo_path, timeout
        )
        return
    _LOGGER.info("Cloning repository %s to %s", url, repo_path)
    try:
        await _git(["clone", "--no-checkout", "--", url, str(repo_path)], None, timeout)
    except BaseException:
        # A partial clone would be mistaken for a valid one later
        rmtree(repo_path, ignore_errors=True)
        raise


def _resolve_commit(repo: git.Repo, url: str, ref: str | None) -> git.Commit:
    """Return the commit to export for a ref.

    Branches are read from the remote tracking refs, so they follow new commits
    on every fetch. Tags and commit ids are looked up as given.
    """
    revs = [f"origin/{ref}", ref] if ref else ["origin/HEAD", "HEAD"]
    for rev in revs:
        try:
            return repo.commit(rev)
        except (git.exc.BadName, git.exc.BadObject, ValueError):
            continue
    raise GitError(f"Repository {url} has no commit for '{ref or 'HEAD'}'")


def _chart_subpath(subpath: str) -> str:
    """Return the normalized repository path of a chart subpath."""
    parts = [part for part in PurePosixPath(subpath.strip("/")).parts if part != "."]
    if not parts:
        raise GitError("Git source has no chart subpath")
    if ".." in parts:
        raise GitError(f"Chart subpath '{subpath}' is outside the repository")
    return "/".join(parts)


def _chart_tree(commit: git.Commit, subpath: str, source_subpath: str) -> git.Tree:
    try:
        tree = commit.tree / subpath
    except KeyError as err:
        raise GitError(
            f"Chart subpath '{source_subpath}' does not exist in the repository"
        ) from err
    if not isinstance(tree, git.Tree):
        raise GitError(
            f"Chart subpath '{source_subpath}' does not exist in the repository"
        )
    if not any(isinstance(item, git.Blob) for item in tree.traverse()):
        raise GitError(f"Chart subpath '{source_subpath}' is empty")
    return tree


def _export_tree(tree: git.Tree, dest: Path) -> None:
    """Write every file of a tree below a directory."""
    dest.mkdir()
    root = PurePosixPath(tree.path)
    for item in tree.traverse():
        if not isinstance(item, git.Blob):
            continue
        target = dest / PurePosixPath(item.path).relative_to(root)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Symlinks are written as regular files holding the link target
        target.write_bytes(item.data_stream.read())
        if item.mode & 0o111:
            target.chmod(0o755)


def _materialize(
    url: str,
    repo_path: Path,
    source: GitSource,
    chart_name: str,
    cache: ChartCache,
) -> ChartCacheEntry:
    try:
        repo = git.Repo(str(repo_path))
    except git.exc.GitError as err:
        raise GitError(f"Clone of {url} is not usable: {err}") from err
    with repo:
        subpath = _chart_subpath(source.subpath)
        commit = _resolve_commit(repo, url, source.ref)
        digest = f"git:{commit.hexsha}:{subpath}"
        if (entry := cache.entry(chart_name)) is not None and entry.digest == digest:
            _LOGGER.debug("Chart %s unchanged (%s), skipping copy", chart_name, digest)
            return entry

        tree = _chart_tree(commit, subpath, source.subpath)
        staging_dir = cache.staging_dir(chart_name)
        try:
            content_dir = staging_dir / "chart"
            _export_tree(tree, content_dir)
            return cache.replace(chart_name, content_dir, digest, url)
        except OSError as err:
            raise GitError(
                f"Failed to copy chart subpath '{source.subpath}': {err}"
            ) from err
        finally:
            rmtree(staging_dir, ignore_errors=True)


async def fetch_git(
    source: GitSource,
    chart_name: str,
    cache: ChartCache,
    timeout: float = DEFAULT_TIMEOUT,
) -> ChartCacheEntry:
    """Fetch the chart subpath of a git repository into the chart cache.

    URLs are tried in order until one can be cloned or fetched. The clone
    stays locked until the chart has been copied out of it.

    Args:
        source: The GitSource with clone URLs and the chart subpath
        chart_name: The chart cache directory to populate
        cache: The chart cache
        timeout: Timeout in seconds for each git network operation

    Returns:
        ChartCacheEntry: The cached chart

    Raises:
        GitError: If git operations fail or the subpath is unusable
    """
    if not source.urls:
        raise GitError("No git URLs to clone from")
    errors: list[str] = []
    for url in source.urls:
        repo_path = cache.repo_dir(url, source.ref)
        async with _REPO_LOCKS.hold(repo_path):
            try:
                await _update_clone(url, repo_path, timeout)
            except GitException as err:
                _LOGGER.warning("Failed to fetch git repository %s: %s", url, err)
                errors.append(f"{url}: {err}")
                # Start from a fresh clone next time
                rmtree(repo_path, ignore_errors=True)
                continue
            return await asyncio.to_thread(
                _materialize, url, repo_path, source, chart_name, cache
            )
    raise GitError(f"Git operation failed for all URLs: {'; '.join(errors)}")
