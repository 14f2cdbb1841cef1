from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from datetime import timezone
from pathlib import Path

from loguru import logger
from pydantic import Field
from pydantic import PrivateAttr

from imbue.flocker.daemon.data_types import ContainerStatus
from imbue.flocker.daemon.data_types import LocalImage
from imbue.flocker.daemon.data_types import PullProgress
from imbue.flocker.daemon.data_types import StatsSample
from imbue.flocker.daemon.interface import DaemonClientInterface
from imbue.flocker.daemon.streams import CancellableStream
from imbue.flocker.data_types import ContainerRecord
from imbue.flocker.data_types import ContainerRequest
from imbue.flocker.data_types import LedgerDetail
from imbue.flocker.data_types import LedgerListing
from imbue.flocker.data_types import PersistedPreferences
from imbue.flocker.errors import ContainerNotFoundError
from imbue.flocker.errors import DaemonError
from imbue.flocker.errors import InvalidTransitionError
from imbue.flocker.errors import StateSaveError
from imbue.flocker.errors import UserInputError
from imbue.flocker.ledgers import LedgerManager
from imbue.flocker.negotiator import negotiate_container_config
from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerRunState
from imbue.flocker.primitives import ImageReference
from imbue.flocker.primitives import LedgerAlias
from imbue.flocker.primitives import LedgerDeleteOutcome
from imbue.flocker.primitives import SessionState
from imbue.flocker.state.store import PreferencesStore
from imbue.flocker.utils.models import MutableModel


class LifecycleOrchestrator(MutableModel):
    """Drives one Fluree container through its lifecycle for a session.

    Owns the session's copy of the persisted preferences and is the only thing
    that changes them. Each operation is only valid in certain states; calling
    it from any other state raises InvalidTransitionError. Every daemon mutation
    is followed by a save, so the only drift window between the file and the
    daemon is a crash in between, which the next reconcile heals.

    A container that turns out to no longer exist (ContainerNotFoundError) is
    forgotten and the session drops back to AWAIT_SELECTION; the error is still
    raised so the caller can tell the operator. All other errors leave the state
    unchanged unless noted.
    """

    daemon: DaemonClientInterface = Field(frozen=True, description="Docker daemon adapter")
    store: PreferencesStore = Field(frozen=True, description="Where preferences are persisted")
    ledgers: LedgerManager = Field(frozen=True, description="Ledger operations inside the container")
    stop_timeout_seconds: int = Field(default=10, ge=0, description="Grace period for stopping containers")

    _preferences: PersistedPreferences = PrivateAttr(default_factory=PersistedPreferences)
    _state: SessionState = PrivateAttr(default=SessionState.RECONCILE)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def preferences(self) -> PersistedPreferences:
        return self._preferences

    @property
    def current_record(self) -> ContainerRecord | None:
        return self._preferences.last_container

    def other_known_containers(self) -> list[ContainerRecord]:
        """Known containers other than the current one, most recently started first."""
        current_id = self._preferences.last_container_id
        others = [record for record in self._preferences.known_containers() if record.container_id != current_id]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(others, key=lambda record: record.last_started_at or record.created_at or epoch, reverse=True)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def load(self) -> PersistedPreferences:
        """Load the persisted preferences. Never fails; bad files load as defaults."""
        self._require("load", SessionState.RECONCILE)
        self._preferences = self.store.load()
        return self._preferences

    def reconcile(self) -> SessionState:
        """Compare the current record with what the daemon reports and pick the next state."""
        self._require("reconcile", SessionState.RECONCILE)
        record = self._preferences.last_container
        if record is None:
            logger.debug("No current container; awaiting selection")
            self._state = SessionState.AWAIT_SELECTION
            return self._state

        status = self.daemon.inspect_container(record.container_id)
        if status.run_state == ContainerRunState.MISSING:
            logger.warning("Container {} ({}) no longer exists; forgetting it", record.name, record.container_id.short())
            self._state = SessionState.AWAIT_SELECTION
            self._commit(self._preferences.without_container(record.container_id))
        elif status.run_state == ContainerRunState.RUNNING:
            logger.debug("Container {} is running", record.name)
            self._state = SessionState.MANAGING
        else:
            logger.debug("Container {} is stopped", record.name)
            self._state = SessionState.AWAIT_RESUME
        return self._state

    def select_known(self, container_id: ContainerId) -> SessionState:
        """Make another known container the current one and reconcile it."""
        self._require("select a known container", SessionState.AWAIT_SELECTION)
        record = self._preferences.containers.get(str(container_id))
        if record is None:
            raise UserInputError(f"Unknown container: {container_id.short()}")
        self._state = SessionState.RECONCILE
        self._commit(self._preferences.model_copy(update={"last_container_id": record.container_id}))
        return self.reconcile()

    # =========================================================================
    # Resume Decisions
    # =========================================================================

    def resume(self) -> ContainerRecord:
        """Start the stopped current container again."""
        self._require("resume", SessionState.AWAIT_RESUME)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            self.daemon.start_container(record.container_id)
        updated = record.model_copy(update={"last_started_at": _now()})
        self._state = SessionState.MANAGING
        self._commit(self._preferences.with_container(updated))
        return updated

    def recreate(self) -> ContainerRecord:
        """Remove the stopped current container so that a new one can be created in its place.

        Returns the removed record, whose settings can seed the new container.
        """
        self._require("recreate", SessionState.AWAIT_RESUME)
        record = self._require_current_record()
        self.daemon.remove_container(record.container_id, force=True)
        self._state = SessionState.AWAIT_SELECTION
        self._commit(self._preferences.without_container(record.container_id))
        return record

    def discard(self) -> ContainerRecord:
        """Forget the current container without touching it in the daemon."""
        self._require("discard", SessionState.AWAIT_RESUME)
        record = self._require_current_record()
        self._state = SessionState.AWAIT_SELECTION
        self._commit(self._preferences.without_container(record.container_id))
        return record

    # =========================================================================
    # Creation
    # =========================================================================

    def list_local_images(self, repository: str) -> list[LocalImage]:
        self._require("list images", SessionState.AWAIT_SELECTION)
        return self.daemon.list_local_images(repository)

    def pull_image(self, reference: ImageReference) -> Iterator[PullProgress]:
        self._require("pull an image", SessionState.AWAIT_SELECTION)
        return self.daemon.pull_image(reference)

    def create(self, request: ContainerRequest, base_dir: Path) -> ContainerRecord:
        """Negotiate, create and start a new container, and make it the current one.

        On any failure the session returns to AWAIT_SELECTION and nothing is
        persisted. A container that was created but could not be started is removed.
        """
        self._require("create a container", SessionState.AWAIT_SELECTION)
        self._state = SessionState.CREATING
        try:
            known_records = self._preferences.known_containers()
            config = negotiate_container_config(
                request,
                known_records=known_records,
                running_container_ids=self._running_container_ids(known_records),
                base_dir=base_dir,
            )
            container_id = self.daemon.create_container(config)
            try:
                self.daemon.start_container(container_id)
            except Exception:
                self._remove_half_created(container_id)
                raise
        except BaseException:
            self._state = SessionState.AWAIT_SELECTION
            raise

        now = _now()
        record = ContainerRecord(
            container_id=container_id,
            name=config.name,
            image=config.image,
            host_port=config.port_mapping.host_port,
            data_dir=config.data_dir,
            mode=config.mode,
            created_at=now,
            last_started_at=now,
        )
        logger.info("Created container {} ({}) on port {}", record.name, container_id.short(), record.host_port)
        updated = self._preferences.with_container(record).model_copy(
            update={
                "preferred_port": record.host_port,
                "preferred_data_dir": record.data_dir,
                "preferred_mode": record.mode,
            }
        )
        self._state = SessionState.MANAGING
        self._commit(updated)
        return record

    def _running_container_ids(self, records: list[ContainerRecord]) -> list[ContainerId]:
        running = []
        for record in records:
            if self.daemon.inspect_container(record.container_id).is_running:
                running.append(record.container_id)
        return running

    def _remove_half_created(self, container_id: ContainerId) -> None:
        logger.debug("Removing container {} that failed to start", container_id.short())
        try:
            self.daemon.remove_container(container_id, force=True)
        except DaemonError as e:
            logger.warning("Could not remove container {} after failed start: {}", container_id.short(), e)

    # =========================================================================
    # Managing
    # =========================================================================

    def refresh_status(self) -> ContainerStatus:
        self._require("view status", SessionState.MANAGING)
        record = self._require_current_record()
        status = self.daemon.inspect_container(record.container_id)
        if status.run_state == ContainerRunState.MISSING:
            with self._forget_if_missing(record.container_id):
                raise ContainerNotFoundError(record.container_id)
        return status

    def stream_stats(self) -> CancellableStream[StatsSample]:
        self._require("view stats", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            return self.daemon.stream_stats(record.container_id)

    def fetch_logs(self, tail_lines: int) -> list[str]:
        self._require("view logs", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            return list(self.daemon.fetch_logs(record.container_id, tail_lines))

    def follow_logs(self) -> CancellableStream[str]:
        self._require("attach to the container output", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            return self.daemon.follow_logs(record.container_id)

    def list_ledgers(self) -> LedgerListing:
        self._require("list ledgers", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            return self.ledgers.list_ledgers(record.container_id)

    def describe_ledger(self, alias: LedgerAlias) -> LedgerDetail:
        self._require("describe a ledger", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            return self.ledgers.describe_ledger(record.container_id, alias)

    def delete_ledger(self, alias: LedgerAlias, confirmed: bool = False) -> LedgerDeleteOutcome:
        self._require("delete a ledger", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            return self.ledgers.delete_ledger(record.container_id, alias, confirmed=confirmed)

    def stop(self) -> SessionState:
        """Stop the current container; the session then awaits a resume decision."""
        self._require("stop", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            self.daemon.stop_container(record.container_id, self.stop_timeout_seconds)
        self._state = SessionState.RECONCILE
        self._commit(self._preferences)
        return self.reconcile()

    def stop_and_destroy(self) -> ContainerRecord:
        """Stop and remove the current container and forget it."""
        self._require("stop and destroy", SessionState.MANAGING)
        record = self._require_current_record()
        with self._forget_if_missing(record.container_id):
            self.daemon.stop_container(record.container_id, self.stop_timeout_seconds)
        try:
            self.daemon.remove_container(record.container_id, force=True)
        except DaemonError:
            # Stopped but not removed: land where stop() would
            self._state = SessionState.RECONCILE
            self._commit(self._preferences)
            self.reconcile()
            raise
        logger.info("Destroyed container {}", record.name)
        self._state = SessionState.AWAIT_SELECTION
        self._commit(self._preferences.without_container(record.container_id))
        return record

    def shutdown(self) -> None:
        """Persist the preferences and end the session."""
        if self._state == SessionState.EXIT:
            return
        self._state = SessionState.EXIT
        self._commit(self._preferences)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require(self, operation: str, *allowed: SessionState) -> None:
        if self._state not in allowed:
            raise InvalidTransitionError(operation, self._state)

    def _require_current_record(self) -> ContainerRecord:
        record = self._preferences.last_container
        if record is None:
            raise InvalidTransitionError("operate on the current container", self._state)
        return record

    def _commit(self, preferences: PersistedPreferences) -> None:
        """Adopt new preferences and persist them. The in-memory copy stays even if saving fails."""
        self._preferences = preferences
        self.store.save(preferences)

    @contextmanager
    def _forget_if_missing(self, container_id: ContainerId) -> Iterator[None]:
        try:
            yield
        except ContainerNotFoundError:
            logger.warning("Container {} no longer exists; forgetting it", container_id.short())
            self._state = SessionState.AWAIT_SELECTION
            try:
                self._commit(self._preferences.without_container(container_id))
            except StateSaveError as save_error:
                logger.error("{}", save_error)
            raise


def _now() -> datetime:
    return datetime.now(timezone.utc)
