import re
from collections.abc import Iterable
from collections.abc import Iterator
from collections.abc import Mapping
from collections.abc import Sequence
from contextlib import contextmanager
from datetime import datetime
from datetime import timezone
from functools import cached_property
from typing import Any
from typing import Final

import docker
import docker.errors
import docker.models.containers
import requests.exceptions
from loguru import logger
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
from imbue.flocker.primitives import FLUREE_CONTAINER_PORT
from imbue.flocker.primitives import FLUREE_DATA_PATH
from imbue.flocker.primitives import ImageReference
from imbue.flocker.utils.logging import log_span

# Docker label prefix
LABEL_PREFIX: Final[str] = "com.imbue.flocker."
LABEL_MANAGED: Final[str] = f"{LABEL_PREFIX}managed"
LABEL_MODE: Final[str] = f"{LABEL_PREFIX}mode"

# Daemon states that count as "up" for the orchestrator. Paused containers are
# reported as exited so that resuming them goes through start_container (which unpauses).
_RUNNING_DOCKER_STATES: Final[frozenset[str]] = frozenset({"running", "restarting"})
_STOPPABLE_DOCKER_STATES: Final[frozenset[str]] = frozenset({"running", "restarting", "paused"})

_PORT_CONFLICT_MARKERS: Final[tuple[str, ...]] = (
    "port is already allocated",
    "address already in use",
    "ports are not available",
)
_NAME_CONFLICT_MARKER: Final[str] = "is already in use by container"
_NOT_RUNNING_MARKER: Final[str] = "is not running"
_MISSING_IMAGE_MARKERS: Final[tuple[str, ...]] = ("not found", "manifest unknown", "does not exist")

# Docker reports "never started" as the zero time
_ZERO_TIME_PREFIX: Final[str] = "0001-01-01"

_FRACTIONAL_SECONDS_PATTERN: Final[re.Pattern[str]] = re.compile(r"\.(\d+)")


def build_container_labels(config: NegotiatedConfig) -> dict[str, str]:
    """Build Docker container labels that mark a container as created by flocker."""
    return {
        LABEL_MANAGED: "true",
        LABEL_MODE: str(config.mode),
    }


def build_port_bindings(config: NegotiatedConfig) -> dict[str, tuple[str, int]]:
    """Build the docker SDK `ports` argument for a negotiated config."""
    mapping = config.port_mapping
    return {f"{mapping.container_port}/tcp": ("0.0.0.0", mapping.host_port)}


def parse_docker_timestamp(value: str | None) -> datetime | None:
    """Parse a Docker RFC 3339 timestamp (nanosecond precision) into an aware datetime.

    Returns None for missing values and for Docker's zero time.
    """
    if not value or value.startswith(_ZERO_TIME_PREFIX):
        return None
    # datetime only handles microseconds
    trimmed = _FRACTIONAL_SECONDS_PATTERN.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), value, count=1)
    trimmed = trimmed.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(trimmed)
    except ValueError:
        logger.debug("Unparseable Docker timestamp: {}", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_container_status(container_id: ContainerId, attrs: Mapping[str, Any]) -> ContainerStatus:
    """Turn a `docker inspect` document into a ContainerStatus."""
    state = attrs.get("State") or {}
    docker_state = state.get("Status", "")
    run_state = ContainerRunState.RUNNING if docker_state in _RUNNING_DOCKER_STATES else ContainerRunState.EXITED

    raw_name = (attrs.get("Name") or "").lstrip("/")
    config = attrs.get("Config") or {}

    data_dir = None
    for mount in attrs.get("Mounts") or []:
        if mount.get("Destination") == FLUREE_DATA_PATH:
            data_dir = mount.get("Source")
            break

    return ContainerStatus(
        container_id=container_id,
        run_state=run_state,
        name=ContainerName(raw_name) if raw_name else None,
        image=config.get("Image"),
        host_port=bound_host_port(attrs),
        data_dir=data_dir,
        started_at=parse_docker_timestamp(state.get("StartedAt")),
        exit_code=None if run_state == ContainerRunState.RUNNING else state.get("ExitCode"),
    )


def bound_host_port(attrs: Mapping[str, Any]) -> int | None:
    """Find the host port bound to the Fluree port in a `docker inspect` document."""
    host_config = attrs.get("HostConfig") or {}
    bindings = (host_config.get("PortBindings") or {}).get(f"{FLUREE_CONTAINER_PORT}/tcp") or []
    for binding in bindings:
        host_port = binding.get("HostPort")
        if host_port:
            try:
                return int(host_port)
            except ValueError:
                logger.debug("Ignored non-numeric host port binding: {}", host_port)
    return None


def parse_stats_sample(raw: Mapping[str, Any]) -> StatsSample:
    """Compute a StatsSample from one raw stats document, the same way `docker stats` does."""
    cpu_stats = raw.get("cpu_stats") or {}
    precpu_stats = raw.get("precpu_stats") or {}

    cpu_percent = 0.0
    system_usage = cpu_stats.get("system_cpu_usage")
    previous_system_usage = precpu_stats.get("system_cpu_usage")
    if system_usage is not None and previous_system_usage is not None:
        cpu_delta = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) - (
            precpu_stats.get("cpu_usage") or {}
        ).get("total_usage", 0)
        system_delta = system_usage - previous_system_usage
        if cpu_delta > 0 and system_delta > 0:
            online_cpus = cpu_stats.get("online_cpus") or 1
            cpu_percent = cpu_delta / system_delta * online_cpus * 100.0

    memory_stats = raw.get("memory_stats") or {}
    return StatsSample(
        cpu_percent=cpu_percent,
        memory_usage_bytes=memory_stats.get("usage") or 0,
        memory_limit_bytes=memory_stats.get("limit") or 0,
    )


def iter_text_lines(chunks: Iterable[bytes | str]) -> Iterator[str]:
    """Re-chunk a byte stream into text lines (without trailing newlines)."""
    pending = ""
    for chunk in chunks:
        pending += chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
        *complete, pending = pending.split("\n")
        for line in complete:
            yield line.rstrip("\r")
    if pending:
        yield pending.rstrip("\r")


def _explain(error: docker.errors.APIError) -> str:
    return str(error.explanation or error)


def _is_port_conflict(error: docker.errors.APIError) -> bool:
    explanation = _explain(error).lower()
    return any(marker in explanation for marker in _PORT_CONFLICT_MARKERS)


@contextmanager
def _translate_daemon_errors(action: str) -> Iterator[None]:
    """Translate transport and API failures that the caller did not handle itself."""
    try:
        yield
    except requests.exceptions.ConnectionError as e:
        raise DaemonUnreachableError(str(e)) from e
    except docker.errors.APIError as e:
        raise DaemonError(f"Docker failed to {action}: {_explain(e)}") from e
    except docker.errors.DockerException as e:
        raise DaemonError(f"Docker failed to {action}: {e}") from e


class DockerDaemonClient(DaemonClientInterface):
    """Daemon client backed by the docker SDK (Docker Engine API over a socket or URL)."""

    base_url: str | None = Field(
        default=None,
        frozen=True,
        description="Docker Engine endpoint; None means use the DOCKER_HOST environment / local socket",
    )

    @cached_property
    def _docker_client(self) -> docker.DockerClient:
        """Lazily connect to the daemon."""
        try:
            if self.base_url:
                return docker.DockerClient(base_url=self.base_url)
            return docker.from_env()
        except docker.errors.DockerException as e:
            raise DaemonUnreachableError(str(e)) from e

    def _get_container(self, container_id: ContainerId) -> docker.models.containers.Container:
        with _translate_daemon_errors("look up container"):
            try:
                return self._docker_client.containers.get(str(container_id))
            except docker.errors.NotFound as e:
                raise ContainerNotFoundError(container_id) from e

    # =========================================================================
    # Container Lifecycle
    # =========================================================================

    def create_container(self, config: NegotiatedConfig) -> ContainerId:
        volume_mount = config.volume_mount
        with log_span("Creating container {} from {}", config.name, config.image, host_port=config.port_mapping.host_port):
            with _translate_daemon_errors("create container"):
                try:
                    container = self._docker_client.containers.create(
                        image=str(config.image),
                        name=str(config.name),
                        ports=build_port_bindings(config),
                        volumes=[volume_mount.to_bind_string()] if volume_mount is not None else None,
                        labels=build_container_labels(config),
                    )
                except docker.errors.ImageNotFound as e:
                    raise ImageNotFoundError(config.image) from e
                except docker.errors.APIError as e:
                    if _NAME_CONFLICT_MARKER in _explain(e):
                        raise ContainerNameConflictError(str(config.name)) from e
                    if _is_port_conflict(e):
                        raise PortConflictError(config.port_mapping.host_port, _explain(e)) from e
                    raise
        logger.debug("Created container {}", container.short_id)
        return ContainerId(container.id)

    def start_container(self, container_id: ContainerId) -> None:
        container = self._get_container(container_id)
        if container.status in _RUNNING_DOCKER_STATES:
            logger.debug("Container {} is already running", container_id.short())
            return
        with log_span("Starting container {}", container_id.short()):
            with _translate_daemon_errors("start container"):
                try:
                    if container.status == "paused":
                        container.unpause()
                    else:
                        container.start()
                except docker.errors.NotFound as e:
                    raise ContainerNotFoundError(container_id) from e
                except docker.errors.APIError as e:
                    if _is_port_conflict(e):
                        raise PortConflictError(bound_host_port(container.attrs) or 0, _explain(e)) from e
                    raise

    def stop_container(self, container_id: ContainerId, grace_timeout_seconds: int) -> None:
        container = self._get_container(container_id)
        if container.status not in _STOPPABLE_DOCKER_STATES:
            logger.debug("Container {} is already stopped ({})", container_id.short(), container.status)
            return
        with log_span("Stopping container {}", container_id.short(), grace_timeout_seconds=grace_timeout_seconds):
            with _translate_daemon_errors("stop container"):
                try:
                    container.stop(timeout=grace_timeout_seconds)
                except docker.errors.NotFound as e:
                    raise ContainerNotFoundError(container_id) from e

    def remove_container(self, container_id: ContainerId, force: bool = True) -> None:
        try:
            container = self._get_container(container_id)
        except ContainerNotFoundError:
            logger.debug("Container {} is already gone", container_id.short())
            return
        with log_span("Removing container {}", container_id.short(), force=force):
            with _translate_daemon_errors("remove container"):
                try:
                    container.remove(force=force)
                except docker.errors.NotFound:
                    logger.debug("Container {} disappeared while being removed", container_id.short())

    def inspect_container(self, container_id: ContainerId) -> ContainerStatus:
        try:
            container = self._get_container(container_id)
        except ContainerNotFoundError:
            return ContainerStatus(container_id=container_id, run_state=ContainerRunState.MISSING)
        return parse_container_status(container_id, container.attrs)

    # =========================================================================
    # Observation
    # =========================================================================

    def stream_stats(self, container_id: ContainerId) -> CancellableStream[StatsSample]:
        container = self._get_container(container_id)
        with _translate_daemon_errors("stream stats"):
            raw_stream = container.stats(stream=True, decode=True)

        def _samples() -> Iterator[StatsSample]:
            with _translate_daemon_errors("stream stats"):
                for raw in raw_stream:
                    # The daemon sends a zero-time sample once the container is no longer running
                    if str(raw.get("read", "")).startswith(_ZERO_TIME_PREFIX):
                        return
                    yield parse_stats_sample(raw)

        return CancellableStream(_samples(), close=raw_stream.close)

    def fetch_logs(self, container_id: ContainerId, tail_lines: int) -> Iterator[str]:
        container = self._get_container(container_id)
        with log_span("Fetching last {} log lines of {}", tail_lines, container_id.short()):
            with _translate_daemon_errors("fetch logs"):
                output = container.logs(stdout=True, stderr=True, tail=tail_lines)
        return iter_text_lines([output])

    def follow_logs(self, container_id: ContainerId) -> CancellableStream[str]:
        container = self._get_container(container_id)
        with _translate_daemon_errors("follow logs"):
            raw_stream = container.logs(stdout=True, stderr=True, stream=True, follow=True)

        def _lines() -> Iterator[str]:
            with _translate_daemon_errors("follow logs"):
                yield from iter_text_lines(raw_stream)

        return CancellableStream(_lines(), close=raw_stream.close)

    def exec_in_container(self, container_id: ContainerId, command: Sequence[str]) -> ExecResult:
        container = self._get_container(container_id)
        if container.status not in _RUNNING_DOCKER_STATES:
            raise ContainerNotRunningError(container_id)
        with log_span("Running {} in container {}", command[0], container_id.short()):
            with _translate_daemon_errors("exec in container"):
                try:
                    exit_code, output = container.exec_run(list(command), demux=True)
                except docker.errors.NotFound as e:
                    raise ContainerNotFoundError(container_id) from e
                except docker.errors.APIError as e:
                    if _NOT_RUNNING_MARKER in _explain(e):
                        raise ContainerNotRunningError(container_id) from e
                    raise

        stdout_bytes, stderr_bytes = output if output is not None else (None, None)
        result = ExecResult(
            stdout=(stdout_bytes or b"").decode("utf-8", errors="replace"),
            stderr=(stderr_bytes or b"").decode("utf-8", errors="replace"),
            exit_code=exit_code or 0,
        )
        if result.exit_code != 0:
            raise ExecFailedError(tuple(command), result.exit_code, result.stderr)
        return result

    # =========================================================================
    # Images
    # =========================================================================

    def list_local_images(self, repository: str) -> list[LocalImage]:
        with log_span("Listing local images for {}", repository):
            with _translate_daemon_errors("list images"):
                images = self._docker_client.images.list(name=repository)

        local_images: list[LocalImage] = []
        for image in images:
            for tag in image.tags:
                if not tag.startswith(f"{repository}:"):
                    continue
                local_images.append(
                    LocalImage(
                        reference=ImageReference(tag),
                        image_id=image.id,
                        created_at=parse_docker_timestamp(image.attrs.get("Created")),
                        size_bytes=image.attrs.get("Size") or 0,
                    )
                )
        local_images.sort(key=lambda item: item.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return local_images

    def pull_image(self, reference: ImageReference) -> Iterator[PullProgress]:
        repository = reference.repository
        tag = reference.tag or "latest"
        with log_span("Pulling image {}", reference):
            with _translate_daemon_errors("pull image"):
                try:
                    events = self._docker_client.api.pull(repository, tag=tag, stream=True, decode=True)
                    for event in events:
                        error = event.get("error")
                        if error:
                            if any(marker in error.lower() for marker in _MISSING_IMAGE_MARKERS):
                                raise ImageNotFoundError(reference)
                            raise DaemonError(f"Failed to pull {reference}: {error}")
                        yield PullProgress(
                            status=event.get("status", ""),
                            layer_id=event.get("id"),
                            progress=event.get("progress"),
                        )
                except docker.errors.NotFound as e:
                    raise ImageNotFoundError(reference) from e

    def close(self) -> None:
        client = self.__dict__.get("_docker_client")
        if client is None:
            return
        try:
            client.close()
        except (OSError, docker.errors.DockerException) as e:
            logger.warning("Error closing Docker client: {}", e)
