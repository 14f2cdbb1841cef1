from pathlib import Path

import pytest

from imbue.flocker.daemon.data_types import ExecResult
from imbue.flocker.daemon.testing import FakeDaemonClient
from imbue.flocker.data_types import ContainerRecord
from imbue.flocker.data_types import PersistedPreferences
from imbue.flocker.errors import ContainerNameConflictError
from imbue.flocker.errors import ContainerNotFoundError
from imbue.flocker.errors import DaemonError
from imbue.flocker.errors import DirectoryMissingError
from imbue.flocker.errors import ImageNotFoundError
from imbue.flocker.errors import InvalidTransitionError
from imbue.flocker.errors import PortConflictError
from imbue.flocker.errors import PortInUseError
from imbue.flocker.errors import UserInputError
from imbue.flocker.fixtures import STABLE_IMAGE
from imbue.flocker.fixtures import make_container_request
from imbue.flocker.ledgers import LedgerManager
from imbue.flocker.orchestrator import LifecycleOrchestrator
from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerName
from imbue.flocker.primitives import ContainerRunState
from imbue.flocker.primitives import ImageReference
from imbue.flocker.primitives import LedgerAlias
from imbue.flocker.primitives import LedgerDeleteOutcome
from imbue.flocker.primitives import RunMode
from imbue.flocker.primitives import SessionState
from imbue.flocker.state.store import PreferencesStore


def _record_for(container_id: ContainerId, name: str, host_port: int = 8090) -> ContainerRecord:
    return ContainerRecord(
        container_id=container_id,
        name=ContainerName(name),
        image=ImageReference(STABLE_IMAGE),
        host_port=host_port,
    )


def _fresh_orchestrator(fake_daemon: FakeDaemonClient, store: PreferencesStore) -> LifecycleOrchestrator:
    """Simulate a new flocker run against the same daemon and state file."""
    orchestrator = LifecycleOrchestrator(
        daemon=fake_daemon, store=store, ledgers=LedgerManager(daemon=fake_daemon), stop_timeout_seconds=1
    )
    orchestrator.load()
    return orchestrator


def _managing(orchestrator: LifecycleOrchestrator, work_dir: Path, **request_kwargs) -> ContainerRecord:
    orchestrator.reconcile()
    return orchestrator.create(make_container_request(**request_kwargs), work_dir)


# =============================================================================
# Reconciliation
# =============================================================================


def test_reconcile_without_record_awaits_selection(orchestrator: LifecycleOrchestrator) -> None:
    assert orchestrator.reconcile() == SessionState.AWAIT_SELECTION


def test_reconcile_with_running_container_goes_straight_to_managing(
    fake_daemon: FakeDaemonClient, preferences_store: PreferencesStore
) -> None:
    container_id = fake_daemon.add_container("fluree-running", 8090)
    preferences_store.save(PersistedPreferences().with_container(_record_for(container_id, "fluree-running")))

    orchestrator = _fresh_orchestrator(fake_daemon, preferences_store)

    assert orchestrator.reconcile() == SessionState.MANAGING
    assert orchestrator.current_record is not None
    assert orchestrator.current_record.container_id == container_id


def test_reconcile_with_missing_container_forgets_it_for_good(
    fake_daemon: FakeDaemonClient, preferences_store: PreferencesStore
) -> None:
    stale_id = ContainerId("f" * 64)
    preferences_store.save(PersistedPreferences().with_container(_record_for(stale_id, "fluree-gone")))

    orchestrator = _fresh_orchestrator(fake_daemon, preferences_store)

    assert orchestrator.reconcile() == SessionState.AWAIT_SELECTION
    assert orchestrator.current_record is None
    reloaded = preferences_store.load()
    assert reloaded.last_container_id is None
    assert reloaded.containers == {}


def test_operations_are_rejected_outside_their_states(orchestrator: LifecycleOrchestrator) -> None:
    with pytest.raises(InvalidTransitionError):
        orchestrator.stop()
    with pytest.raises(InvalidTransitionError):
        orchestrator.resume()

    orchestrator.reconcile()

    with pytest.raises(InvalidTransitionError) as exc_info:
        orchestrator.load()
    assert exc_info.value.state == SessionState.AWAIT_SELECTION
    with pytest.raises(InvalidTransitionError):
        orchestrator.reconcile()


def test_select_known_container_makes_it_current(
    fake_daemon: FakeDaemonClient, preferences_store: PreferencesStore
) -> None:
    first = fake_daemon.add_container("fluree-first", 8090, run_state=ContainerRunState.EXITED)
    second = fake_daemon.add_container("fluree-second", 8091)
    preferences = (
        PersistedPreferences()
        .with_container(_record_for(second, "fluree-second", 8091), is_last=False)
        .with_container(_record_for(first, "fluree-first"))
    )
    preferences_store.save(preferences)
    orchestrator = _fresh_orchestrator(fake_daemon, preferences_store)
    orchestrator.reconcile()
    orchestrator.discard()

    assert [record.name for record in orchestrator.other_known_containers()] == ["fluree-second"]
    assert orchestrator.select_known(second) == SessionState.MANAGING
    assert preferences_store.load().last_container_id == second


def test_select_unknown_container_is_rejected(orchestrator: LifecycleOrchestrator) -> None:
    orchestrator.reconcile()

    with pytest.raises(UserInputError):
        orchestrator.select_known(ContainerId("a" * 64))


# =============================================================================
# Creation
# =============================================================================


def test_create_starts_container_and_persists_preferences(
    fake_daemon: FakeDaemonClient,
    orchestrator: LifecycleOrchestrator,
    preferences_store: PreferencesStore,
    work_dir: Path,
) -> None:
    (work_dir / "data").mkdir()

    record = _managing(orchestrator, work_dir, host_port="8095", data_dir="data", mode=RunMode.FOREGROUND)

    assert orchestrator.state == SessionState.MANAGING
    assert fake_daemon.call_names()[-2:] == ["create_container", "start_container"]
    assert orchestrator.refresh_status().is_running
    saved = preferences_store.load()
    assert saved.last_container_id == record.container_id
    assert saved.preferred_port == 8095
    assert saved.preferred_mode == RunMode.FOREGROUND
    assert saved.preferred_data_dir is not None
    assert saved.preferred_data_dir.relative_path == Path("data")


def test_scenario_stable_image_in_foreground_yields_stats(
    orchestrator: LifecycleOrchestrator, work_dir: Path
) -> None:
    _managing(orchestrator, work_dir, host_port="8090", data_dir=None, mode=RunMode.FOREGROUND)

    status = orchestrator.refresh_status()
    with orchestrator.stream_stats() as stream:
        samples = list(stream)

    assert status.run_state == ContainerRunState.RUNNING
    assert status.host_port == 8090
    assert len(samples) >= 1


@pytest.fixture
def selection_with_running_neighbor(
    fake_daemon: FakeDaemonClient, preferences_store: PreferencesStore
) -> LifecycleOrchestrator:
    """An orchestrator awaiting selection while another known container runs on port 8090."""
    neighbor = fake_daemon.add_container("fluree-neighbor", 8090)
    preferences_store.save(
        PersistedPreferences().with_container(_record_for(neighbor, "fluree-neighbor"), is_last=False)
    )
    orchestrator = _fresh_orchestrator(fake_daemon, preferences_store)
    orchestrator.reconcile()
    return orchestrator


def test_port_held_by_running_known_container_is_in_use(
    selection_with_running_neighbor: LifecycleOrchestrator, work_dir: Path
) -> None:
    orchestrator = selection_with_running_neighbor

    with pytest.raises(PortInUseError) as exc_info:
        orchestrator.create(make_container_request(host_port="8090"), work_dir)

    assert exc_info.value.holder == "fluree-neighbor"
    assert orchestrator.state == SessionState.AWAIT_SELECTION


def test_next_port_is_accepted_next_to_running_container(
    selection_with_running_neighbor: LifecycleOrchestrator, work_dir: Path
) -> None:
    record = selection_with_running_neighbor.create(make_container_request(host_port="8091"), work_dir)

    assert record.host_port == 8091
    assert selection_with_running_neighbor.state == SessionState.MANAGING


def test_port_of_stopped_known_container_can_be_reused(
    fake_daemon: FakeDaemonClient, preferences_store: PreferencesStore, work_dir: Path
) -> None:
    stopped = fake_daemon.add_container("fluree-stopped", 8090, run_state=ContainerRunState.EXITED)
    preferences_store.save(
        PersistedPreferences().with_container(_record_for(stopped, "fluree-stopped"), is_last=False)
    )
    orchestrator = _fresh_orchestrator(fake_daemon, preferences_store)
    orchestrator.reconcile()

    record = orchestrator.create(make_container_request(host_port="8090"), work_dir)

    assert record.host_port == 8090


def test_name_of_known_container_is_rejected(
    selection_with_running_neighbor: LifecycleOrchestrator, work_dir: Path
) -> None:
    with pytest.raises(ContainerNameConflictError):
        selection_with_running_neighbor.create(make_container_request(name="fluree-neighbor", host_port="8092"), work_dir)


def test_missing_data_dir_requires_opt_in(
    fake_daemon: FakeDaemonClient, orchestrator: LifecycleOrchestrator, work_dir: Path
) -> None:
    orchestrator.reconcile()
    request = make_container_request(data_dir="new-data")

    with pytest.raises(DirectoryMissingError):
        orchestrator.create(request, work_dir)
    assert "create_container" not in fake_daemon.call_names()
    assert not (work_dir / "new-data").exists()

    record = orchestrator.create(request.model_copy(update={"create_missing_dir": True}), work_dir)

    assert (work_dir / "new-data").is_dir()
    assert record.data_dir is not None
    assert record.data_dir.absolute_path == (work_dir / "new-data").resolve()


def test_missing_image_fails_before_anything_is_created(
    fake_daemon: FakeDaemonClient, orchestrator: LifecycleOrchestrator, work_dir: Path
) -> None:
    orchestrator.reconcile()

    with pytest.raises(ImageNotFoundError):
        orchestrator.create(make_container_request(image="fluree/server:nope"), work_dir)

    assert fake_daemon.containers == {}
    assert orchestrator.state == SessionState.AWAIT_SELECTION


def test_container_that_fails_to_start_is_removed(
    fake_daemon: FakeDaemonClient,
    orchestrator: LifecycleOrchestrator,
    preferences_store: PreferencesStore,
    work_dir: Path,
) -> None:
    fake_daemon.unbindable_ports.add(8090)
    orchestrator.reconcile()

    with pytest.raises(PortConflictError):
        orchestrator.create(make_container_request(host_port="8090"), work_dir)

    assert fake_daemon.containers == {}
    assert "remove_container" in fake_daemon.call_names()
    assert orchestrator.state == SessionState.AWAIT_SELECTION
    assert preferences_store.load().containers == {}


def test_pull_image_makes_it_available_locally(
    fake_daemon: FakeDaemonClient, orchestrator: LifecycleOrchestrator
) -> None:
    fake_daemon.registry_images.add("fluree/server:v3.0.0")
    orchestrator.reconcile()

    events = list(orchestrator.pull_image(ImageReference("fluree/server:v3.0.0")))

    assert len(events) == 3
    assert "fluree/server:v3.0.0" in [image.reference for image in orchestrator.list_local_images("fluree/server")]


# =============================================================================
# Resume decisions
# =============================================================================


@pytest.fixture
def stopped_current(fake_daemon: FakeDaemonClient, preferences_store: PreferencesStore) -> LifecycleOrchestrator:
    container_id = fake_daemon.add_container("fluree-stopped", 8090, run_state=ContainerRunState.EXITED)
    preferences_store.save(PersistedPreferences().with_container(_record_for(container_id, "fluree-stopped")))
    orchestrator = _fresh_orchestrator(fake_daemon, preferences_store)
    assert orchestrator.reconcile() == SessionState.AWAIT_RESUME
    return orchestrator


def test_resume_starts_exited_container_once(
    fake_daemon: FakeDaemonClient, stopped_current: LifecycleOrchestrator, preferences_store: PreferencesStore
) -> None:
    record = stopped_current.resume()

    assert fake_daemon.call_names().count("start_container") == 1
    assert stopped_current.state == SessionState.MANAGING
    assert preferences_store.load().containers[str(record.container_id)].last_started_at is not None


def test_recreate_removes_container_and_forgets_it(
    fake_daemon: FakeDaemonClient, stopped_current: LifecycleOrchestrator, preferences_store: PreferencesStore
) -> None:
    record = stopped_current.recreate()

    assert str(record.container_id) not in fake_daemon.containers
    assert stopped_current.state == SessionState.AWAIT_SELECTION
    assert preferences_store.load().containers == {}


def test_discard_forgets_container_but_leaves_it_in_daemon(
    fake_daemon: FakeDaemonClient, stopped_current: LifecycleOrchestrator, preferences_store: PreferencesStore
) -> None:
    record = stopped_current.discard()

    assert str(record.container_id) in fake_daemon.containers
    assert "remove_container" not in fake_daemon.call_names()
    assert stopped_current.state == SessionState.AWAIT_SELECTION
    assert preferences_store.load().last_container_id is None


def test_resume_of_container_removed_externally_demotes_to_selection(
    fake_daemon: FakeDaemonClient, stopped_current: LifecycleOrchestrator, preferences_store: PreferencesStore
) -> None:
    fake_daemon.containers.clear()

    with pytest.raises(ContainerNotFoundError):
        stopped_current.resume()

    assert stopped_current.state == SessionState.AWAIT_SELECTION
    assert preferences_store.load().containers == {}


# =============================================================================
# Managing
# =============================================================================


def test_stop_leaves_container_awaiting_resume(
    fake_daemon: FakeDaemonClient, orchestrator: LifecycleOrchestrator, work_dir: Path
) -> None:
    record = _managing(orchestrator, work_dir)

    assert orchestrator.stop() == SessionState.AWAIT_RESUME
    assert fake_daemon.inspect_container(record.container_id).run_state == ContainerRunState.EXITED


def test_stopping_twice_is_harmless(fake_daemon: FakeDaemonClient, orchestrator: LifecycleOrchestrator, work_dir: Path) -> None:
    record = _managing(orchestrator, work_dir)

    fake_daemon.stop_container(record.container_id, 1)
    status_after_first = fake_daemon.inspect_container(record.container_id)
    fake_daemon.stop_container(record.container_id, 1)
    status_after_second = fake_daemon.inspect_container(record.container_id)

    assert status_after_first == status_after_second
    assert status_after_second.run_state == ContainerRunState.EXITED


def test_stop_and_destroy_removes_and_forgets(
    fake_daemon: FakeDaemonClient,
    orchestrator: LifecycleOrchestrator,
    preferences_store: PreferencesStore,
    work_dir: Path,
) -> None:
    record = _managing(orchestrator, work_dir)

    orchestrator.stop_and_destroy()

    assert fake_daemon.containers == {}
    assert orchestrator.state == SessionState.AWAIT_SELECTION
    assert str(record.container_id) not in preferences_store.load().containers


def test_failed_removal_after_stop_follows_the_daemon(
    fake_daemon: FakeDaemonClient,
    orchestrator: LifecycleOrchestrator,
    preferences_store: PreferencesStore,
    work_dir: Path,
) -> None:
    record = _managing(orchestrator, work_dir)
    fake_daemon.unremovable_container_ids.add(str(record.container_id))

    with pytest.raises(DaemonError):
        orchestrator.stop_and_destroy()

    assert fake_daemon.inspect_container(record.container_id).run_state == ContainerRunState.EXITED
    assert orchestrator.state == SessionState.AWAIT_RESUME
    assert preferences_store.load().last_container_id == record.container_id


def test_fetch_logs_returns_tail(orchestrator: LifecycleOrchestrator, work_dir: Path) -> None:
    _managing(orchestrator, work_dir)

    assert orchestrator.fetch_logs(1) == ["Listening on port 8090"]


def test_container_removed_while_managing_demotes_to_selection(
    fake_daemon: FakeDaemonClient,
    orchestrator: LifecycleOrchestrator,
    preferences_store: PreferencesStore,
    work_dir: Path,
) -> None:
    _managing(orchestrator, work_dir)
    fake_daemon.containers.clear()

    with pytest.raises(ContainerNotFoundError):
        orchestrator.refresh_status()

    assert orchestrator.state == SessionState.AWAIT_SELECTION
    assert preferences_store.load().containers == {}
    with pytest.raises(InvalidTransitionError):
        orchestrator.list_ledgers()


def test_ledger_operations_go_through_current_container(
    fake_daemon: FakeDaemonClient, orchestrator: LifecycleOrchestrator, work_dir: Path
) -> None:
    _managing(orchestrator, work_dir)
    fake_daemon.exec_responses.append(ExecResult(stdout="not a listing", stderr="", exit_code=0))

    listing = orchestrator.list_ledgers()
    outcome = orchestrator.delete_ledger(LedgerAlias("movies"))

    assert listing.ledgers == ()
    assert len(listing.warnings) == 1
    assert outcome == LedgerDeleteOutcome.CONFIRMATION_REQUIRED
    assert orchestrator.state == SessionState.MANAGING


# =============================================================================
# Shutdown
# =============================================================================


def test_shutdown_persists_and_is_idempotent(
    orchestrator: LifecycleOrchestrator, preferences_store: PreferencesStore, work_dir: Path
) -> None:
    record = _managing(orchestrator, work_dir)

    orchestrator.shutdown()
    orchestrator.shutdown()

    assert orchestrator.state == SessionState.EXIT
    assert preferences_store.load().last_container_id == record.container_id
    with pytest.raises(InvalidTransitionError):
        orchestrator.stop()
