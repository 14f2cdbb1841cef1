from pathlib import Path
from typing import Final

from pydantic import Field

from imbue.flocker.primitives import DEFAULT_IMAGE_REPOSITORY
from imbue.flocker.primitives import LogLevel
from imbue.flocker.utils.models import FrozenModel

DEFAULT_ROOT_DIR: Final[Path] = Path("~/.flocker")
SETTINGS_FILENAME: Final[str] = "settings.toml"
STATE_FILENAME: Final[str] = "state.json"
LOGS_DIRNAME: Final[str] = "logs"
DEFAULT_REGISTRY_URL: Final[str] = "https://hub.docker.com/v2"


class LoggingConfig(FrozenModel):
    """Logging configuration for flocker."""

    file_level: LogLevel = Field(
        default=LogLevel.DEBUG,
        description="Log level for file logging",
    )
    max_log_files: int = Field(
        default=100,
        ge=1,
        description="Maximum number of log files to keep",
    )
    max_log_size_mb: int = Field(
        default=10,
        ge=1,
        description="Maximum size of each log file in MB",
    )


class FlockerConfig(FrozenModel):
    """Resolved flocker configuration (defaults, settings file, environment and CLI)."""

    root_dir: Path = Field(
        default=DEFAULT_ROOT_DIR,
        description="Directory holding settings, persisted state and logs",
    )
    docker_host: str | None = Field(
        default=None,
        description="Docker Engine endpoint (e.g. unix:///var/run/docker.sock); None uses the SDK environment",
    )
    image_repository: str = Field(
        default=DEFAULT_IMAGE_REPOSITORY,
        description="Repository that Fluree server images are pulled from",
    )
    stop_timeout_seconds: int = Field(
        default=10,
        ge=0,
        description="Grace period before a stopping container is killed",
    )
    log_tail_lines: int = Field(
        default=100,
        ge=1,
        description="Number of container log lines shown by 'view logs'",
    )
    registry_url: str = Field(
        default=DEFAULT_REGISTRY_URL,
        description="Base URL of the Docker Hub API",
    )
    registry_page_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Number of tags fetched per registry page",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )

    @property
    def resolved_root_dir(self) -> Path:
        return self.root_dir.expanduser()

    @property
    def state_path(self) -> Path:
        return self.resolved_root_dir / STATE_FILENAME

    @property
    def log_dir(self) -> Path:
        return self.resolved_root_dir / LOGS_DIRNAME
