from pathlib import Path

import pytest
from click.testing import CliRunner

from imbue.flocker.daemon.testing import FakeDaemonClient
from imbue.flocker.data_types import ContainerRequest
from imbue.flocker.ledgers import LedgerManager
from imbue.flocker.orchestrator import LifecycleOrchestrator
from imbue.flocker.primitives import ImageReference
from imbue.flocker.primitives import RunMode
from imbue.flocker.state.store import PreferencesStore

STABLE_IMAGE = "fluree/server:stable"


def make_container_request(
    name: str = "fluree-test",
    host_port: str = "8090",
    data_dir: str | None = None,
    mode: RunMode = RunMode.BACKGROUND,
    image: str = STABLE_IMAGE,
) -> ContainerRequest:
    """Create a ContainerRequest with test defaults."""
    return ContainerRequest(
        image=ImageReference(image),
        name=name,
        host_port=host_port,
        data_dir=data_dir,
        mode=mode,
    )


@pytest.fixture
def fake_daemon() -> FakeDaemonClient:
    """An in-memory daemon that already has the stable Fluree image."""
    daemon = FakeDaemonClient()
    daemon.add_local_image(STABLE_IMAGE)
    return daemon


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "state.json"


@pytest.fixture
def preferences_store(state_path: Path) -> PreferencesStore:
    return PreferencesStore(path=state_path)


@pytest.fixture
def ledger_manager(fake_daemon: FakeDaemonClient) -> LedgerManager:
    return LedgerManager(daemon=fake_daemon)


@pytest.fixture
def orchestrator(
    fake_daemon: FakeDaemonClient,
    preferences_store: PreferencesStore,
    ledger_manager: LedgerManager,
) -> LifecycleOrchestrator:
    """An orchestrator over the fake daemon, with persisted state loaded (none yet)."""
    orchestrator = LifecycleOrchestrator(
        daemon=fake_daemon,
        store=preferences_store,
        ledgers=ledger_manager,
        stop_timeout_seconds=1,
    )
    orchestrator.load()
    return orchestrator


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Directory that relative data directory paths are resolved against."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()
