from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import Field

from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerName
from imbue.flocker.primitives import FLUREE_CONTAINER_PORT
from imbue.flocker.primitives import FLUREE_DATA_PATH
from imbue.flocker.primitives import ImageReference
from imbue.flocker.primitives import LedgerAlias
from imbue.flocker.primitives import MAX_PORT
from imbue.flocker.primitives import MIN_PORT
from imbue.flocker.primitives import RunMode
from imbue.flocker.utils.models import FrozenModel

DEFAULT_HOST_PORT = FLUREE_CONTAINER_PORT


class DataDirConfig(FrozenModel):
    """A host directory mounted as the Fluree data directory."""

    absolute_path: Path = Field(description="Absolute host path of the data directory")
    relative_path: Path | None = Field(
        default=None,
        description="Path relative to the directory flocker was started from, when it lies beneath it",
    )

    def display(self) -> str:
        if self.relative_path is not None:
            return str(self.relative_path)
        return str(self.absolute_path)


class PortMapping(FrozenModel):
    """Host port bound to the fixed Fluree port inside the container."""

    host_port: int = Field(ge=MIN_PORT, le=MAX_PORT, description="Port on the host")
    container_port: int = Field(default=FLUREE_CONTAINER_PORT, description="Port inside the container")


class VolumeMount(FrozenModel):
    """Bind mount of a host directory into the container."""

    host_path: Path = Field(description="Absolute host path")
    container_path: str = Field(default=FLUREE_DATA_PATH, description="Mount point inside the container")

    def to_bind_string(self) -> str:
        # Docker wants forward slashes, even for Windows host paths
        host = str(self.host_path).replace("\\", "/").rstrip("/")
        return f"{host}:{self.container_path}:rw"


class ContainerRecord(FrozenModel):
    """What flocker remembers about a container it created."""

    container_id: ContainerId = Field(description="Daemon-assigned container id")
    name: ContainerName = Field(description="Container name")
    image: ImageReference = Field(description="Image the container was created from")
    host_port: int = Field(ge=MIN_PORT, le=MAX_PORT, description="Host port mapped to the Fluree port")
    data_dir: DataDirConfig | None = Field(default=None, description="Mounted data directory, if any")
    mode: RunMode = Field(default=RunMode.BACKGROUND, description="Foreground or background mode")
    created_at: datetime | None = Field(default=None, description="When flocker created the container")
    last_started_at: datetime | None = Field(default=None, description="When flocker last started it")


class PersistedPreferences(FrozenModel):
    """Everything flocker persists between sessions."""

    containers: dict[str, ContainerRecord] = Field(
        default_factory=dict, description="Known containers, keyed by container id"
    )
    last_container_id: ContainerId | None = Field(default=None, description="The container used last")
    preferred_port: int = Field(default=DEFAULT_HOST_PORT, ge=MIN_PORT, le=MAX_PORT)
    preferred_data_dir: DataDirConfig | None = Field(default=None)
    preferred_mode: RunMode = Field(default=RunMode.BACKGROUND)

    @property
    def last_container(self) -> ContainerRecord | None:
        if self.last_container_id is None:
            return None
        return self.containers.get(str(self.last_container_id))

    def known_containers(self) -> list[ContainerRecord]:
        return list(self.containers.values())

    def with_container(self, record: ContainerRecord, is_last: bool = True) -> "PersistedPreferences":
        containers = dict(self.containers)
        containers[str(record.container_id)] = record
        update: dict[str, Any] = {"containers": containers}
        if is_last:
            update["last_container_id"] = record.container_id
        return self.model_copy(update=update)

    def without_container(self, container_id: ContainerId) -> "PersistedPreferences":
        containers = {key: value for key, value in self.containers.items() if key != str(container_id)}
        last_container_id = None if self.last_container_id == container_id else self.last_container_id
        return self.model_copy(update={"containers": containers, "last_container_id": last_container_id})


class ContainerRequest(FrozenModel):
    """Raw operator input for a new container, before negotiation."""

    image: ImageReference = Field(description="Image to create the container from")
    name: str = Field(description="Requested container name")
    host_port: str = Field(description="Requested host port, as typed")
    data_dir: str | None = Field(default=None, description="Requested data directory, as typed (blank = none)")
    mode: RunMode = Field(default=RunMode.BACKGROUND)
    create_missing_dir: bool = Field(
        default=False, description="Create the data directory if it does not exist"
    )


class NegotiatedConfig(FrozenModel):
    """A validated container configuration, ready for the irreversible create call."""

    image: ImageReference
    name: ContainerName
    port_mapping: PortMapping
    data_dir: DataDirConfig | None = None
    mode: RunMode = RunMode.BACKGROUND

    @property
    def volume_mount(self) -> VolumeMount | None:
        if self.data_dir is None:
            return None
        return VolumeMount(host_path=self.data_dir.absolute_path)


# === Ledgers ===


class LedgerSummary(FrozenModel):
    """One ledger found inside a running Fluree container."""

    alias: LedgerAlias = Field(description="Ledger name")
    commit_count: int = Field(default=0, description="Number of commits (the ledger's t value)")
    size_bytes: int = Field(default=0, description="Ledger data size in bytes")
    last_commit_time: str | None = Field(default=None, description="Timestamp of the latest commit")
    path: str = Field(description="Path of the ledger descriptor file inside the container")


class LedgerListing(FrozenModel):
    """Result of listing ledgers. Parsing problems show up as warnings, not exceptions."""

    ledgers: tuple[LedgerSummary, ...] = ()
    warnings: tuple[str, ...] = ()


class LedgerDetail(FrozenModel):
    """A ledger summary together with its full descriptor document."""

    summary: LedgerSummary
    document: dict[str, Any]
