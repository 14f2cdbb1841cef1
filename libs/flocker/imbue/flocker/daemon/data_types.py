from datetime import datetime

from pydantic import Field

from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerName
from imbue.flocker.primitives import ContainerRunState
from imbue.flocker.primitives import ImageReference
from imbue.flocker.utils.models import FrozenModel


class ContainerStatus(FrozenModel):
    """Snapshot of a container as reported by the daemon. Never persisted."""

    container_id: ContainerId = Field(description="Container id that was inspected")
    run_state: ContainerRunState = Field(description="Running, exited, or missing")
    name: ContainerName | None = Field(default=None, description="Container name (None when missing)")
    image: str | None = Field(default=None, description="Image the container runs")
    host_port: int | None = Field(default=None, description="Host port bound to the Fluree port")
    data_dir: str | None = Field(default=None, description="Host path mounted as the data directory")
    started_at: datetime | None = Field(default=None, description="Last start time")
    exit_code: int | None = Field(default=None, description="Exit code, for exited containers")

    @property
    def is_running(self) -> bool:
        return self.run_state == ContainerRunState.RUNNING


class StatsSample(FrozenModel):
    """One resource usage sample for a running container."""

    cpu_percent: float = Field(ge=0, description="CPU usage, 100 = one full core")
    memory_usage_bytes: int = Field(ge=0)
    memory_limit_bytes: int = Field(ge=0)

    @property
    def memory_percent(self) -> float:
        if self.memory_limit_bytes <= 0:
            return 0.0
        return self.memory_usage_bytes / self.memory_limit_bytes * 100.0


class ExecResult(FrozenModel):
    """Output of a command run inside a container."""

    stdout: str
    stderr: str
    exit_code: int


class LocalImage(FrozenModel):
    """An image present in the local daemon's image store."""

    reference: ImageReference = Field(description="repository:tag")
    image_id: str = Field(description="Image id (sha256:...)")
    created_at: datetime | None = Field(default=None)
    size_bytes: int = Field(default=0, ge=0)


class PullProgress(FrozenModel):
    """One progress event from an image pull."""

    status: str
    layer_id: str | None = None
    progress: str | None = None
