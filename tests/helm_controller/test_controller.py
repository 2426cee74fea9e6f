"""Tests for the helm release controller."""

import asyncio
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import httpx
import pytest

from release_controller.config import ControllerConfig
from release_controller.exceptions import EngineError, PersistenceConflict
from release_controller.helm_controller import (
    HelmReleaseController,
    InMemoryEngine,
    ReconcileResult,
)
from release_controller.manifest import (
    FINALIZER,
    INSTALLED_RELEASE_ANNOTATION,
    GitSource,
    NamedResource,
    ReleaseRequest,
    ReleaseSecret,
    RepoSource,
)
from release_controller.source_controller import ChartCache, SourceResolver
from release_controller.store import InMemoryStore, ReleaseState, ReleaseStatus
from release_controller.task import TaskService

ARCHIVE_URL = "https://charts.example.com/sample-0.1.0.tgz"
RID = NamedResource("HelmRelease", "default", "example")


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture(name="engine")
def engine_fixture() -> InMemoryEngine:
    return InMemoryEngine()


@pytest.fixture(name="requested")
def requested_fixture() -> list[str]:
    """URLs downloaded by the resolver."""
    return []


@pytest.fixture(name="resolver")
async def resolver_fixture(
    tmp_dir: Path, make_chart_archive: Callable[..., bytes], requested: list[str]
) -> AsyncGenerator[SourceResolver, None]:
    """Source resolver serving a single chart archive."""
    content = make_chart_archive("sample", "0.1.0")

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if str(request.url) == ARCHIVE_URL:
            return httpx.Response(200, content=content)
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield SourceResolver(ChartCache(tmp_dir / "charts"), http_client=client)


@pytest.fixture(name="config")
def config_fixture(tmp_dir: Path) -> ControllerConfig:
    return ControllerConfig(charts_dir=tmp_dir / "charts", watch=False, requeue_delay=None)


@pytest.fixture(name="controller")
async def controller_fixture(
    store: InMemoryStore,
    engine: InMemoryEngine,
    resolver: SourceResolver,
    config: ControllerConfig,
) -> AsyncGenerator[HelmReleaseController, None]:
    controller = HelmReleaseController(store, engine, resolver, config)
    yield controller
    await controller.close()


def _request(name: str = "example", **kwargs) -> ReleaseRequest:
    kwargs.setdefault("source", RepoSource(urls=[ARCHIVE_URL]))
    kwargs.setdefault("chart_name", "sample")
    return ReleaseRequest(name=name, namespace="default", **kwargs)


def _status(store: InMemoryStore, rid: NamedResource = RID) -> ReleaseStatus:
    status = store.get_status(rid)
    assert status is not None
    return status


def _update(store: InMemoryStore, rid: NamedResource = RID, **changes) -> None:
    request = store.get_object(rid, ReleaseRequest)
    assert request
    for key, value in changes.items():
        setattr(request, key, value)
    store.update_object(request)


def _operations(engine: InMemoryEngine) -> list[str]:
    return [op for op, _ in engine.calls if op != "find"]


async def test_install_from_archive(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test a chart archive is installed and the owned artifact is written."""
    request = store.add_object(_request())

    result = await controller.reconcile(RID)
    assert result == ReconcileResult()

    status = _status(store)
    assert status.state == ReleaseState.SUCCESS
    assert [(r.name, r.chart) for r in engine.releases] == [("example", "sample")]

    artifact = store.get_object(NamedResource("Secret", "default", "example"), ReleaseSecret)
    assert artifact
    assert len(artifact.owner_references) == 1
    owner = artifact.owner_references[0]
    assert (owner.kind, owner.name, owner.uid) == ("HelmRelease", "example", request.uid)
    assert artifact.string_data["revision"] == "1"
    assert artifact.string_data["chartVersion"] == "0.1.0"

    stored = store.get_object(RID, ReleaseRequest)
    assert stored
    assert stored.finalizers == [FINALIZER]
    assert stored.annotations[INSTALLED_RELEASE_ANNOTATION] == "example"


async def test_idempotent(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test reconciling an unchanged request leaves the release as it is."""
    store.add_object(_request(values="replicaCount: 2\n"))
    await controller.reconcile(RID)
    first = engine.releases[0]
    transition = _status(store).last_transition_time

    for _ in range(3):
        assert await controller.reconcile(RID) == ReconcileResult()
        assert _status(store).state == ReleaseState.SUCCESS

    releases = engine.releases
    assert len(releases) == 1
    assert (releases[0].name, releases[0].values, releases[0].labels) == (
        first.name,
        first.values,
        first.labels,
    )
    assert _operations(engine) == ["install", "upgrade", "upgrade", "upgrade"]
    assert _status(store).last_transition_time == transition


async def test_name_conflict(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test a second request for the same release name fails without installing."""
    second_rid = NamedResource("HelmRelease", "default", "second")
    store.add_object(_request("first", release_name="shared"))
    store.add_object(_request("second", release_name="shared"))

    await controller.reconcile(NamedResource("HelmRelease", "default", "first"))
    result = await controller.reconcile(second_rid)
    assert not result.requeue
    status = _status(store, second_rid)
    assert status.state == ReleaseState.FAILED
    assert status.reason.startswith("NameConflict:")
    assert "owned by default/first" in status.reason

    result = await controller.reconcile(second_rid)
    assert _status(store, second_rid).state == ReleaseState.FAILED
    assert _operations(engine) == ["install"]
    assert engine.releases[0].labels["app.release-controller.dev/owner-name"] == "first"


async def test_name_conflict_resolved_by_deletion(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test the second request installs once the first one is gone."""
    first_rid = NamedResource("HelmRelease", "default", "first")
    second_rid = NamedResource("HelmRelease", "default", "second")
    store.add_object(_request("first", release_name="shared"))
    store.add_object(_request("second", release_name="shared"))
    await controller.reconcile(first_rid)
    await controller.reconcile(second_rid)

    # Deleting the failed request must not remove the release it never owned
    store.add_object(_request("third", release_name="shared"))
    third_rid = NamedResource("HelmRelease", "default", "third")
    await controller.reconcile(third_rid)
    store.delete_object(third_rid)
    await controller.reconcile(third_rid)
    assert store.get_object(third_rid, ReleaseRequest) is None
    assert [r.name for r in engine.releases] == ["shared"]

    store.delete_object(first_rid)
    await controller.reconcile(first_rid)
    assert engine.releases == []

    await controller.reconcile(second_rid)
    assert _status(store, second_rid).state == ReleaseState.SUCCESS
    release = engine.releases[0]
    assert release.labels["app.release-controller.dev/owner-name"] == "second"


async def test_rename_rejected(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test changing the release name of an installed request is rejected."""
    store.add_object(_request())
    await controller.reconcile(RID)
    calls = list(engine.calls)

    _update(store, release_name="renamed")
    result = await controller.reconcile(RID)
    assert not result.requeue
    status = _status(store)
    assert status.state == ReleaseState.FAILED
    assert status.reason.startswith("ValidationError: releaseName is immutable")
    assert engine.calls == calls
    assert [(r.name, r.revision) for r in engine.releases] == [("example", 1)]


async def test_delete_uninstalls(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test deleting a request uninstalls its release and removes its artifact."""
    store.add_object(_request())
    await controller.reconcile(RID)

    store.delete_object(RID)
    request = store.get_object(RID, ReleaseRequest)
    assert request
    assert request.deletion_timestamp is not None

    assert await controller.reconcile(RID) == ReconcileResult()
    assert engine.releases == []
    assert store.get_object(RID, ReleaseRequest) is None
    assert store.get_object(NamedResource("Secret", "default", "example"), ReleaseSecret) is None

    # The request is gone, reconciling again has nothing to do
    assert await controller.reconcile(RID) == ReconcileResult()


async def test_delete_twice(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test deleting a request whose release was already removed."""
    for _ in range(2):
        store.add_object(_request())
        await controller.reconcile(RID)
        await engine.uninstall("example", "default")

        store.delete_object(RID)
        result = await controller.reconcile(RID)
        assert result.error is None
        assert store.get_object(RID, ReleaseRequest) is None


async def test_delete_failure_keeps_finalizer(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test a failed uninstall keeps the request until it can be retried."""
    store.add_object(_request())
    await controller.reconcile(RID)
    store.delete_object(RID)

    engine.fail_next("uninstall", EngineError("cluster unreachable"))
    result = await controller.reconcile(RID)
    assert result.requeue
    request = store.get_object(RID, ReleaseRequest)
    assert request
    assert request.finalizers == [FINALIZER]
    assert _status(store).state == ReleaseState.FAILED

    assert await controller.reconcile(RID) == ReconcileResult()
    assert store.get_object(RID, ReleaseRequest) is None
    assert engine.releases == []


async def test_delete_without_finalizer(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test an invalid request never gets a finalizer and is deleted at once."""
    store.add_object(_request(chart_name=""))
    await controller.reconcile(RID)
    request = store.get_object(RID, ReleaseRequest)
    assert request
    assert request.finalizers == []
    store.delete_object(RID)
    assert store.get_object(RID, ReleaseRequest) is None
    assert engine.calls == []


@pytest.mark.parametrize("values", ["l1:\nl2", "- a\n- b\n"])
async def test_invalid_values(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: InMemoryEngine,
    requested: list[str],
    values: str,
) -> None:
    """Test unparseable values are never passed to the engine."""
    store.add_object(_request(values=values))
    result = await controller.reconcile(RID)
    assert not result.requeue
    status = _status(store)
    assert status.state == ReleaseState.FAILED
    assert status.reason.startswith("ValidationError:")
    assert engine.calls == []
    assert requested == []


@pytest.mark.parametrize(
    "changes,reason",
    [
        ({"chart_name": ""}, "chartName is required"),
        ({"chart_name": "../escape"}, "Invalid chart name"),
        ({"chart_name": 5}, "Invalid chart name"),
        ({"release_name": 5}, "releaseName must be a string"),
        ({"source": None}, "source is required"),
        ({"source": RepoSource(urls=[])}, "source has no urls"),
        (
            {"source": GitSource(urls=["https://example.com/charts.git"], subpath="")},
            "requires a chartPath",
        ),
    ],
)
async def test_invalid_request(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: InMemoryEngine,
    changes: dict,
    reason: str,
) -> None:
    """Test statically invalid requests fail without fetching or installing."""
    store.add_object(_request(**changes))
    result = await controller.reconcile(RID)
    assert not result.requeue
    status = _status(store)
    assert status.state == ReleaseState.FAILED
    assert reason in status.reason
    assert engine.calls == []


async def test_git_wrong_subpath(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: InMemoryEngine,
    git_repo_dir: Path,
) -> None:
    """Test a git source without the chart subpath fails without a release."""
    store.add_object(
        _request(
            source=GitSource(urls=[str(git_repo_dir)], subpath="charts/missing"),
        )
    )
    result = await controller.reconcile(RID)
    assert result.requeue
    status = _status(store)
    assert status.state == ReleaseState.FAILED
    assert "does not exist" in status.reason
    assert engine.releases == []
    assert engine.calls == []


async def test_git_source(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: InMemoryEngine,
    git_repo_dir: Path,
) -> None:
    """Test installing a chart from a git repository subpath."""
    store.add_object(
        _request(source=GitSource(urls=[str(git_repo_dir)], subpath="charts/sample"))
    )
    assert await controller.reconcile(RID) == ReconcileResult()
    assert [(r.name, r.chart_version) for r in engine.releases] == [("example", "1.0.0")]


async def test_values_update(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test changing the values of an installed request upgrades the release."""
    store.add_object(_request(values="replicaCount: 1\n"))
    await controller.reconcile(RID)

    _update(store, values="replicaCount: 3\n")
    assert await controller.reconcile(RID) == ReconcileResult()
    assert _operations(engine) == ["install", "upgrade"]
    release = engine.releases[0]
    assert release.revision == 2
    assert release.values == {"replicaCount": 3}
    artifact = store.get_object(NamedResource("Secret", "default", "example"), ReleaseSecret)
    assert artifact
    assert artifact.string_data["revision"] == "2"


async def test_source_unavailable(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test a failed download is reported and retried."""
    store.add_object(
        _request(source=RepoSource(urls=["https://charts.example.com/missing.tgz"]))
    )
    result = await controller.reconcile(RID)
    assert result.requeue
    status = _status(store)
    assert status.state == ReleaseState.FAILED
    assert status.reason.startswith("SourceUnavailable:")
    assert engine.calls == []


async def test_engine_failure_recovers(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test a transient engine failure is followed by a successful retry."""
    store.add_object(_request())
    engine.fail_next("install", EngineError("context deadline exceeded"))
    result = await controller.reconcile(RID)
    assert result.requeue
    assert isinstance(result.error, EngineError)
    failed = _status(store)
    assert failed.state == ReleaseState.FAILED

    # Failing again keeps the original transition time
    engine.fail_next("install", EngineError("context deadline exceeded"))
    await controller.reconcile(RID)
    assert _status(store).last_transition_time == failed.last_transition_time

    assert await controller.reconcile(RID) == ReconcileResult()
    status = _status(store)
    assert status.state == ReleaseState.SUCCESS
    assert status.last_transition_time > failed.last_transition_time


async def test_permanent_engine_failure(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test a permanent engine failure is not retried."""
    store.add_object(_request())
    engine.fail_next("install", EngineError("chart requires kubeVersion", permanent=True))
    result = await controller.reconcile(RID)
    assert not result.requeue
    assert _status(store).state == ReleaseState.FAILED


async def test_request_not_found(controller: HelmReleaseController) -> None:
    """Test reconciling a request that does not exist."""
    assert await controller.reconcile(RID) == ReconcileResult()


async def test_deadline(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: InMemoryEngine,
    config: ControllerConfig,
) -> None:
    """Test a reconciliation past its deadline is abandoned without status."""
    config.reconcile_timeout = 0.05
    engine.delay = 1.0
    store.add_object(_request())
    result = await controller.reconcile(RID)
    assert result.requeue
    assert isinstance(result.error, TimeoutError)
    assert store.get_status(RID) is None
    assert engine.releases == []


async def test_serialized_per_request(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test concurrent reconciliations of one request do not interleave."""
    engine.delay = 0.01
    store.add_object(_request())
    results = await asyncio.gather(controller.reconcile(RID), controller.reconcile(RID))
    assert results == [ReconcileResult(), ReconcileResult()]
    assert [op for op, _ in engine.calls] == ["find", "find", "install", "find", "upgrade"]
    assert len(controller._locks) == 0


async def test_concurrent_requests(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test different requests sharing a chart are reconciled concurrently."""
    names = [f"example-{i}" for i in range(5)]
    for name in names:
        store.add_object(_request(name))
    results = await asyncio.gather(
        *(controller.reconcile(NamedResource("HelmRelease", "default", n)) for n in names)
    )
    assert all(result == ReconcileResult() for result in results)
    assert sorted(r.name for r in engine.releases) == names
    assert len(controller._locks) == 0


async def test_watch(
    store: InMemoryStore,
    engine: InMemoryEngine,
    resolver: SourceResolver,
    config: ControllerConfig,
    task_service: TaskService,
) -> None:
    """Test requests are reconciled when they are added, changed and deleted."""
    config.watch = True
    store.add_object(_request("existing"))
    controller = HelmReleaseController(store, engine, resolver, config)

    store.add_object(_request(values="replicaCount: 1\n"))
    await task_service.block_till_done()
    assert _status(store).state == ReleaseState.SUCCESS
    assert sorted(r.name for r in engine.releases) == ["example", "existing"]

    _update(store, values="replicaCount: 2\n")
    await task_service.block_till_done()
    release = await engine.find_release("example", "default")
    assert release
    assert release.values == {"replicaCount": 2}

    store.delete_object(RID)
    await task_service.block_till_done()
    assert store.get_object(RID, ReleaseRequest) is None
    assert [r.name for r in engine.releases] == ["existing"]

    await controller.close()
    store.add_object(_request("after-close"))
    await task_service.block_till_done()
    assert [r.name for r in engine.releases] == ["existing"]


async def test_watch_requeue(
    store: InMemoryStore,
    engine: InMemoryEngine,
    resolver: SourceResolver,
    config: ControllerConfig,
    task_service: TaskService,
) -> None:
    """Test a transient failure is reconciled again after the requeue delay."""
    config.watch = True
    config.requeue_delay = 0.01
    controller = HelmReleaseController(store, engine, resolver, config)
    engine.fail_next("install", EngineError("context deadline exceeded"))

    store.add_object(_request())
    await task_service.block_till_done()
    assert _status(store).state == ReleaseState.FAILED

    await asyncio.sleep(0.05)
    await task_service.block_till_done()
    assert _status(store).state == ReleaseState.SUCCESS
    await controller.close()


async def test_watch_installs_once(
    store: InMemoryStore,
    engine: InMemoryEngine,
    resolver: SourceResolver,
    config: ControllerConfig,
    task_service: TaskService,
) -> None:
    """Test the controller's own writes to a request do not trigger another pass."""
    config.watch = True
    controller = HelmReleaseController(store, engine, resolver, config)
    store.add_object(_request())
    await task_service.block_till_done()
    assert _status(store).state == ReleaseState.SUCCESS
    assert _operations(engine) == ["install"]
    assert [r.revision for r in engine.releases] == [1]

    _update(store, values="replicaCount: 2\n")
    await task_service.block_till_done()
    assert _operations(engine) == ["install", "upgrade"]
    await controller.close()


async def test_values_not_text(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test values given as a mapping instead of YAML text are rejected."""
    store.add_object(_request(values={"replicaCount": 2}))
    result = await controller.reconcile(RID)
    assert not result.requeue
    status = _status(store)
    assert status.state == ReleaseState.FAILED
    assert status.reason.startswith("ValidationError: Values must be YAML text")
    assert engine.calls == []


async def test_rename_during_first_install(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: InMemoryEngine,
    resolver: SourceResolver,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test a rename while the first pass runs never leaves two releases."""
    resolve = resolver.resolve
    renamed: list[bool] = []

    async def resolve_and_rename(source, chart_name: str) -> Path:
        path = await resolve(source, chart_name)
        if not renamed:
            _update(store, release_name="renamed")
            renamed.append(True)
        return path

    monkeypatch.setattr(resolver, "resolve", resolve_and_rename)
    store.add_object(_request())
    result = await controller.reconcile(RID)
    assert result.requeue
    assert isinstance(result.error, PersistenceConflict)
    assert engine.releases == []

    assert await controller.reconcile(RID) == ReconcileResult()
    assert [r.name for r in engine.releases] == ["renamed"]
    request = store.get_object(RID, ReleaseRequest)
    assert request
    assert request.installed_release_name == "renamed"

    store.delete_object(RID)
    await controller.reconcile(RID)
    assert engine.releases == []


async def test_name_recorded_before_install(
    controller: HelmReleaseController, store: InMemoryStore, engine: InMemoryEngine
) -> None:
    """Test the release name is kept even when the install fails."""
    store.add_object(_request())
    engine.fail_next("install", EngineError("context deadline exceeded"))
    result = await controller.reconcile(RID)
    assert result.requeue
    request = store.get_object(RID, ReleaseRequest)
    assert request
    assert request.installed_release_name == "example"

    _update(store, release_name="renamed")
    result = await controller.reconcile(RID)
    assert not result.requeue
    assert _status(store).reason.startswith("ValidationError: releaseName is immutable")


async def test_deadline_stops_git(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: InMemoryEngine,
    config: ControllerConfig,
    silent_server: tuple[str, asyncio.Event, asyncio.Event],
) -> None:
    """Test a git fetch that never completes is stopped at the deadline."""
    url, connected, disconnected = silent_server
    config.reconcile_timeout = 1.0
    store.add_object(_request(source=GitSource(urls=[url], subpath="charts/sample")))
    result = await controller.reconcile(RID)
    assert result.requeue
    assert isinstance(result.error, TimeoutError)
    assert connected.is_set()
    await asyncio.wait_for(disconnected.wait(), 10)
    assert store.get_status(RID) is None
    assert engine.calls == []


async def test_resolver_from_config(
    store: InMemoryStore,
    engine: InMemoryEngine,
    config: ControllerConfig,
    git_repo_dir: Path,
) -> None:
    """Test charts are cached under the configured root by default."""
    controller = HelmReleaseController(store, engine, config=config)
    store.add_object(
        _request(source=GitSource(urls=[str(git_repo_dir)], subpath="charts/sample"))
    )
    assert await controller.reconcile(RID) == ReconcileResult()
    assert (config.charts_dir / "sample" / "Chart.yaml").exists()
    await controller.close()
