"""Shared fixtures for release controller tests."""

import asyncio
from collections.abc import AsyncGenerator, Callable, Generator
import io
from pathlib import Path
import tarfile
import tempfile

import git
import pytest

from release_controller.task import TaskService, task_service_context

CHART_YAML = """\
apiVersion: v2
name: {name}
description: A Helm chart for testing
version: {version}
"""

ChartArchiveFactory = Callable[..., bytes]


@pytest.fixture(name="task_service", autouse=True)
def task_service_fixture() -> Generator[TaskService, None, None]:
    """Create a task service for testing."""
    with task_service_context() as service:
        yield service


@pytest.fixture(name="tmp_dir")
def tmp_dir_fixture() -> Generator[Path, None, None]:
    """Create a temporary directory for test resources."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


def _add_file(tar: tarfile.TarFile, name: str, content: str) -> None:
    data = content.encode("utf-8")
    info = tarfile.TarInfo(name)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


@pytest.fixture(name="make_chart_archive")
def make_chart_archive_fixture() -> ChartArchiveFactory:
    """Return a factory for gzipped chart archives built in memory."""

    def make(
        name: str = "sample", version: str = "0.1.0", top_dir: bool = True
    ) -> bytes:
        prefix = f"{name}/" if top_dir else ""
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            _add_file(
                tar, f"{prefix}Chart.yaml", CHART_YAML.format(name=name, version=version)
            )
            _add_file(tar, f"{prefix}values.yaml", "replicaCount: 1\n")
            _add_file(
                tar,
                f"{prefix}templates/configmap.yaml",
                "apiVersion: v1\nkind: ConfigMap\n",
            )
        return buf.getvalue()

    return make


@pytest.fixture(name="git_repo_dir")
def git_repo_dir_fixture(tmp_dir: Path) -> Path:
    """Create a local git repository holding a chart under charts/sample."""
    repo_path = tmp_dir / "git-repo"
    repo_path.mkdir()

    repo = git.Repo.init(repo_path)
    repo.config_writer().set_value("user", "name", "myusername").release()
    repo.config_writer().set_value("user", "email", "myemail").release()

    chart_dir = repo_path / "charts" / "sample"
    (chart_dir / "templates").mkdir(parents=True)
    (chart_dir / "Chart.yaml").write_text(
        CHART_YAML.format(name="sample", version="1.0.0"), encoding="utf-8"
    )
    (chart_dir / "values.yaml").write_text("replicaCount: 1\n", encoding="utf-8")
    (chart_dir / "templates" / "configmap.yaml").write_text(
        "apiVersion: v1\nkind: ConfigMap\n", encoding="utf-8"
    )
    (repo_path / "README.md").write_text("Test repository\n", encoding="utf-8")

    repo.git.add(".")
    repo.git.commit(m="Add sample chart")
    repo.git.tag("v1.0.0", m="Initial release")
    return repo_path


SilentServer = tuple[str, asyncio.Event, asyncio.Event]


@pytest.fixture(name="silent_server")
async def silent_server_fixture(monkeypatch) -> AsyncGenerator[SilentServer, None]:
    """Serve a git URL whose clients wait forever for a response.

    Yields the URL and events set when a client connects and disconnects.
    """
    for var in ("http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(var, raising=False)
        monkeypatch.delenv(var.upper(), raising=False)
    writers: list[asyncio.StreamWriter] = []
    connected = asyncio.Event()
    disconnected = asyncio.Event()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writers.append(writer)
        connected.set()
        try:
            await reader.read()
        except ConnectionError:
            pass
        finally:
            disconnected.set()
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}/charts.git", connected, disconnected
    for writer in writers:
        writer.close()
    server.close()
    await server.wait_closed()
