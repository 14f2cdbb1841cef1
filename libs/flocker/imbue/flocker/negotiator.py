"""Validation of a proposed container configuration before the irreversible create call."""

from collections.abc import Collection
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from imbue.flocker.data_types import ContainerRecord
from imbue.flocker.data_types import ContainerRequest
from imbue.flocker.data_types import DataDirConfig
from imbue.flocker.data_types import NegotiatedConfig
from imbue.flocker.data_types import PortMapping
from imbue.flocker.errors import ContainerNameConflictError
from imbue.flocker.errors import DirectoryMissingError
from imbue.flocker.errors import InvalidContainerNameError
from imbue.flocker.errors import InvalidDirectoryError
from imbue.flocker.errors import InvalidPortError
from imbue.flocker.errors import PortInUseError
from imbue.flocker.primitives import CONTAINER_NAME_PATTERN
from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerName
from imbue.flocker.primitives import MAX_PORT
from imbue.flocker.primitives import MIN_PORT


def parse_host_port(raw: str) -> int:
    """Parse operator input as a host port in [1, 65535]."""
    text = raw.strip()
    try:
        port = int(text)
    except ValueError as e:
        raise InvalidPortError(raw, "not an integer") from e
    if not MIN_PORT <= port <= MAX_PORT:
        raise InvalidPortError(raw, f"must be between {MIN_PORT} and {MAX_PORT}")
    return port


def check_port_available(
    port: int,
    known_records: Sequence[ContainerRecord],
    running_container_ids: Collection[ContainerId],
) -> None:
    """Reject a port already bound by another known container that is currently running.

    Known containers that are stopped do not hold their port, and ports held by
    containers flocker does not know about are left for the daemon to reject.
    """
    running = {str(container_id) for container_id in running_container_ids}
    for record in known_records:
        if record.host_port == port and str(record.container_id) in running:
            raise PortInUseError(port, record.name)


def validate_container_name(raw: str, known_records: Sequence[ContainerRecord]) -> ContainerName:
    name = raw.strip()
    if not CONTAINER_NAME_PATTERN.match(name):
        raise InvalidContainerNameError(raw)
    if any(record.name == name for record in known_records):
        raise ContainerNameConflictError(name)
    return ContainerName(name)


def resolve_data_dir(raw: str | None, base_dir: Path, create_if_missing: bool = False) -> DataDirConfig | None:
    """Resolve operator input into a data directory to mount, or None for no mount.

    Relative paths are resolved against base_dir (the directory flocker runs in).
    A missing directory is only created when create_if_missing is set.
    """
    if raw is None or not raw.strip():
        return None

    path = Path(raw.strip()).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    path = path.resolve()

    if not path.exists():
        if not create_if_missing:
            raise DirectoryMissingError(path)
        logger.info("Creating data directory {}", path)
        path.mkdir(parents=True, exist_ok=True)
    elif not path.is_dir():
        raise InvalidDirectoryError(path)

    relative_path = None
    resolved_base = base_dir.resolve()
    if path.is_relative_to(resolved_base):
        relative_path = path.relative_to(resolved_base)
    return DataDirConfig(absolute_path=path, relative_path=relative_path)


def negotiate_container_config(
    request: ContainerRequest,
    known_records: Sequence[ContainerRecord],
    running_container_ids: Collection[ContainerId],
    base_dir: Path,
) -> NegotiatedConfig:
    """Validate a container request into a config that can be handed to the daemon.

    Checks run cheapest first, so the data directory is only touched (and, when
    opted in, created) once the name and port are known to be acceptable.
    """
    name = validate_container_name(request.name, known_records)
    port = parse_host_port(request.host_port)
    check_port_available(port, known_records, running_container_ids)
    data_dir = resolve_data_dir(request.data_dir, base_dir, request.create_missing_dir)
    return NegotiatedConfig(
        image=request.image,
        name=name,
        port_mapping=PortMapping(host_port=port),
        data_dir=data_dir,
        mode=request.mode,
    )
