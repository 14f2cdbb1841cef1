from collections.abc import Iterator
from collections.abc import Sequence
from datetime import datetime
from datetime import timezone
from uuid import uuid4

from pydantic import Field

from imbue.flocker.daemon.data_types import ContainerStatus
from imbue.flocker.daemon.data_types import ExecResult
from imbue.flocker.daemon.data_types import LocalImage
from imbue.flocker.daemon.data_types import PullProgress
from imbue.flocker.daemon.data_types import StatsSample
from imbue.flocker.daemon.interface import DaemonClientInterface
from imbue.flocker.daemon.streams import CancellableStream
from imbue.flocker.data_types import NegotiatedConfig
from imbue.flocker.errors import ContainerNameConflictError
from imbue.flocker.errors import ContainerNotFoundError
from imbue.flocker.errors import ContainerNotRunningError
from imbue.flocker.errors import DaemonError
from imbue.flocker.errors import DaemonUnreachableError
from imbue.flocker.errors import ExecFailedError
from imbue.flocker.errors import ImageNotFoundError
from imbue.flocker.errors import PortConflictError
from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerName
from imbue.flocker.primitives import ContainerRunState
from imbue.flocker.primitives import ImageReference
from imbue.flocker.utils.models import MutableModel


class FakeContainer(MutableModel):
    """A container living inside FakeDaemonClient."""

    container_id: ContainerId
    name: ContainerName
    image: ImageReference
    host_port: int
    data_dir: str | None = None
    run_state: ContainerRunState = ContainerRunState.EXITED
    started_at: datetime | None = None
    exit_code: int | None = None
    log_lines: list[str] = Field(default_factory=list)


class FakeDaemonClient(DaemonClientInterface):
    """In-memory daemon for orchestrator, ledger and session tests.

    Records every call in `calls` as (method, container id or image) so tests can
    assert on what was (and was not) sent to the daemon, without using mocks.
    """

    containers: dict[str, FakeContainer] = Field(default_factory=dict)
    local_images: list[LocalImage] = Field(default_factory=list)
    registry_images: set[str] = Field(
        default_factory=set, description="References that pull_image can fetch"
    )
    exec_responses: list[ExecResult] = Field(
        default_factory=list, description="Scripted exec results, consumed in order"
    )
    executed_commands: list[tuple[str, ...]] = Field(default_factory=list)
    stats_samples: list[StatsSample] = Field(
        default_factory=lambda: [StatsSample(cpu_percent=1.5, memory_usage_bytes=256, memory_limit_bytes=1024)]
    )
    unbindable_ports: set[int] = Field(
        default_factory=set, description="Host ports that another process holds; starting on them fails"
    )
    unremovable_container_ids: set[str] = Field(
        default_factory=set, description="Containers whose removal the daemon refuses"
    )
    is_unreachable: bool = False
    calls: list[tuple[str, str]] = Field(default_factory=list)

    # =========================================================================
    # Test setup helpers
    # =========================================================================

    def add_local_image(self, reference: str) -> ImageReference:
        image = ImageReference(reference)
        self.local_images.append(
            LocalImage(reference=image, image_id=f"sha256:{uuid4().hex}", created_at=datetime.now(timezone.utc))
        )
        return image

    def add_container(
        self,
        name: str,
        host_port: int,
        run_state: ContainerRunState = ContainerRunState.RUNNING,
        image: str = "fluree/server:stable",
    ) -> ContainerId:
        """Seed a container as if it had been created earlier (possibly by someone else)."""
        container_id = _new_container_id()
        self.containers[str(container_id)] = FakeContainer(
            container_id=container_id,
            name=ContainerName(name),
            image=ImageReference(image),
            host_port=host_port,
            run_state=run_state,
            started_at=datetime.now(timezone.utc) if run_state == ContainerRunState.RUNNING else None,
        )
        return container_id

    def call_names(self) -> list[str]:
        return [method for method, _ in self.calls]

    def _record(self, method: str, target: str) -> None:
        if self.is_unreachable:
            raise DaemonUnreachableError("fake daemon is unreachable")
        self.calls.append((method, target))

    def _get(self, container_id: ContainerId) -> FakeContainer:
        container = self.containers.get(str(container_id))
        if container is None:
            raise ContainerNotFoundError(container_id)
        return container

    # =========================================================================
    # Container Lifecycle
    # =========================================================================

    def create_container(self, config: NegotiatedConfig) -> ContainerId:
        self._record("create_container", str(config.image))
        if not any(image.reference == config.image for image in self.local_images):
            raise ImageNotFoundError(config.image)
        if any(container.name == config.name for container in self.containers.values()):
            raise ContainerNameConflictError(str(config.name))
        container_id = _new_container_id()
        self.containers[str(container_id)] = FakeContainer(
            container_id=container_id,
            name=config.name,
            image=config.image,
            host_port=config.port_mapping.host_port,
            data_dir=str(config.data_dir.absolute_path) if config.data_dir is not None else None,
            log_lines=["Starting Fluree server", f"Listening on port {config.port_mapping.container_port}"],
        )
        return container_id

    def start_container(self, container_id: ContainerId) -> None:
        self._record("start_container", str(container_id))
        container = self._get(container_id)
        if container.run_state == ContainerRunState.RUNNING:
            return
        if container.host_port in self.unbindable_ports:
            raise PortConflictError(container.host_port, "port is already allocated")
        container.run_state = ContainerRunState.RUNNING
        container.started_at = datetime.now(timezone.utc)
        container.exit_code = None

    def stop_container(self, container_id: ContainerId, grace_timeout_seconds: int) -> None:
        self._record("stop_container", str(container_id))
        container = self._get(container_id)
        if container.run_state != ContainerRunState.RUNNING:
            return
        container.run_state = ContainerRunState.EXITED
        container.exit_code = 0

    def remove_container(self, container_id: ContainerId, force: bool = True) -> None:
        self._record("remove_container", str(container_id))
        if str(container_id) in self.unremovable_container_ids:
            raise DaemonError(f"Cannot remove container {container_id.short()}: device or resource busy")
        self.containers.pop(str(container_id), None)

    def inspect_container(self, container_id: ContainerId) -> ContainerStatus:
        self._record("inspect_container", str(container_id))
        container = self.containers.get(str(container_id))
        if container is None:
            return ContainerStatus(container_id=container_id, run_state=ContainerRunState.MISSING)
        return ContainerStatus(
            container_id=container_id,
            run_state=container.run_state,
            name=container.name,
            image=str(container.image),
            host_port=container.host_port,
            data_dir=container.data_dir,
            started_at=container.started_at,
            exit_code=container.exit_code,
        )

    # =========================================================================
    # Observation
    # =========================================================================

    def stream_stats(self, container_id: ContainerId) -> CancellableStream[StatsSample]:
        self._record("stream_stats", str(container_id))
        container = self._get(container_id)
        samples = list(self.stats_samples) if container.run_state == ContainerRunState.RUNNING else []
        return CancellableStream(iter(samples))

    def fetch_logs(self, container_id: ContainerId, tail_lines: int) -> Iterator[str]:
        self._record("fetch_logs", str(container_id))
        lines = self._get(container_id).log_lines
        return iter(lines[-tail_lines:] if tail_lines > 0 else [])

    def follow_logs(self, container_id: ContainerId) -> CancellableStream[str]:
        self._record("follow_logs", str(container_id))
        return CancellableStream(iter(list(self._get(container_id).log_lines)))

    def exec_in_container(self, container_id: ContainerId, command: Sequence[str]) -> ExecResult:
        self._record("exec_in_container", str(container_id))
        container = self._get(container_id)
        if container.run_state != ContainerRunState.RUNNING:
            raise ContainerNotRunningError(container_id)
        self.executed_commands.append(tuple(command))
        result = self.exec_responses.pop(0) if self.exec_responses else ExecResult(stdout="", stderr="", exit_code=0)
        if result.exit_code != 0:
            raise ExecFailedError(tuple(command), result.exit_code, result.stderr)
        return result

    # =========================================================================
    # Images
    # =========================================================================

    def list_local_images(self, repository: str) -> list[LocalImage]:
        self._record("list_local_images", repository)
        return [image for image in self.local_images if image.reference.repository == repository]

    def pull_image(self, reference: ImageReference) -> Iterator[PullProgress]:
        self._record("pull_image", str(reference))
        if str(reference) not in self.registry_images:
            raise ImageNotFoundError(reference)
        yield PullProgress(status="Pulling fs layer", layer_id="layer1")
        yield PullProgress(status="Download complete", layer_id="layer1")
        self.add_local_image(str(reference))
        yield PullProgress(status=f"Status: Downloaded newer image for {reference}")


def _new_container_id() -> ContainerId:
    return ContainerId(uuid4().hex + uuid4().hex)
