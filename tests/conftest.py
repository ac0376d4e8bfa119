import pytest

import batchstep.persistence as persistence
from batchstep.dispatch import WorkChunkDispatcher
from batchstep.models import JobDefinition
from batchstep.persistence import InMemoryWorkChunkRepository, SQLiteWorkChunkRepository
from batchstep.registry import REGISTRY, JobDefinitionRegistry
from batchstep.service import WorkChunkService
from batchstep.transports.inmemory import InMemoryTransport
from support import MutableClock


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep local config files, env overrides and cached singletons out of tests."""
    monkeypatch.setenv("BATCHSTEP_CONFIG", str(tmp_path / "missing.yaml"))
    for name in ("BATCHSTEP_DATABASE_URL", "DATABASE_URL", "BATCHSTEP_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None
    REGISTRY.clear()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def registry() -> JobDefinitionRegistry:
    return JobDefinitionRegistry()


@pytest.fixture
def gated_definition(registry) -> JobDefinition:
    definition = JobDefinition.from_step_ids("gated-job", ["1", "2", "3"], gated_execution=True)
    registry.register(definition)
    return definition


@pytest.fixture
def ungated_definition(registry) -> JobDefinition:
    definition = JobDefinition.from_step_ids("ungated-job", ["1", "2", "3"])
    registry.register(definition)
    return definition


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkChunkRepository()
    else:
        repo = SQLiteWorkChunkRepository(tmp_path / "chunks.db")
        yield repo
        repo.close()


@pytest.fixture
def service(repository, registry, clock) -> WorkChunkService:
    return WorkChunkService(repository, registry=registry, clock=clock)


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def dispatcher(repository, transport) -> WorkChunkDispatcher:
    return WorkChunkDispatcher(repository, transport)
