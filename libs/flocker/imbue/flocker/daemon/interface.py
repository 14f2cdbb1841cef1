from abc import ABC
from abc import abstractmethod
from collections.abc import Iterator
from collections.abc import Sequence

from imbue.flocker.daemon.data_types import ContainerStatus
from imbue.flocker.daemon.data_types import ExecResult
from imbue.flocker.daemon.data_types import LocalImage
from imbue.flocker.daemon.data_types import PullProgress
from imbue.flocker.daemon.data_types import StatsSample
from imbue.flocker.daemon.streams import CancellableStream
from imbue.flocker.data_types import NegotiatedConfig
from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ImageReference
from imbue.flocker.utils.models import MutableModel


class DaemonClientInterface(MutableModel, ABC):
    """The capabilities flocker needs from a container daemon.

    Implementations translate daemon and transport failures into the flocker error
    taxonomy (DaemonUnreachableError, ContainerNotFoundError, ...). They hold no
    durable state of their own.
    """

    # =========================================================================
    # Container Lifecycle
    # =========================================================================

    @abstractmethod
    def create_container(self, config: NegotiatedConfig) -> ContainerId:
        """Create (but do not start) a container from a negotiated configuration.

        Raises ImageNotFoundError if the image is not available locally,
        PortConflictError if the daemon rejects the port binding and
        ContainerNameConflictError if the name is taken.
        """
        ...

    @abstractmethod
    def start_container(self, container_id: ContainerId) -> None:
        """Start a container. Starting a running container is a no-op."""
        ...

    @abstractmethod
    def stop_container(self, container_id: ContainerId, grace_timeout_seconds: int) -> None:
        """Stop a container, killing it after the grace period. Stopping a stopped container is a no-op."""
        ...

    @abstractmethod
    def remove_container(self, container_id: ContainerId, force: bool = True) -> None:
        """Remove a container. Removing a container that no longer exists is a no-op."""
        ...

    @abstractmethod
    def inspect_container(self, container_id: ContainerId) -> ContainerStatus:
        """Return the current status; run_state is MISSING when the daemon does not know the id."""
        ...

    # =========================================================================
    # Observation
    # =========================================================================

    @abstractmethod
    def stream_stats(self, container_id: ContainerId) -> CancellableStream[StatsSample]:
        """Stream resource samples until the container stops or the stream is cancelled."""
        ...

    @abstractmethod
    def fetch_logs(self, container_id: ContainerId, tail_lines: int) -> Iterator[str]:
        """Return the last tail_lines lines of the container output."""
        ...

    @abstractmethod
    def follow_logs(self, container_id: ContainerId) -> CancellableStream[str]:
        """Stream the container output as it is produced."""
        ...

    @abstractmethod
    def exec_in_container(self, container_id: ContainerId, command: Sequence[str]) -> ExecResult:
        """Run a command inside a running container.

        Raises ExecFailedError when the command exits non-zero.
        """
        ...

    # =========================================================================
    # Images
    # =========================================================================

    @abstractmethod
    def list_local_images(self, repository: str) -> list[LocalImage]:
        """List the locally available tags of a repository."""
        ...

    @abstractmethod
    def pull_image(self, reference: ImageReference) -> Iterator[PullProgress]:
        """Pull an image, yielding progress events as they arrive."""
        ...

    def close(self) -> None:
        """Release the daemon connection, if any."""
