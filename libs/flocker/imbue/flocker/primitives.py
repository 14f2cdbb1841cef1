import re
from enum import StrEnum
from enum import auto
from typing import Any
from typing import Final
from typing import Self

from pydantic import GetCoreSchemaHandler
from pydantic_core import CoreSchema
from pydantic_core import core_schema

# Port the Fluree server listens on inside its container.
FLUREE_CONTAINER_PORT: Final[int] = 8090

# Where the Fluree server keeps its ledgers inside the container.
FLUREE_DATA_PATH: Final[str] = "/opt/fluree-server/data"

DEFAULT_IMAGE_REPOSITORY: Final[str] = "fluree/server"

MIN_PORT: Final[int] = 1
MAX_PORT: Final[int] = 65535

# Docker's own rule for container names.
CONTAINER_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")

SHORT_ID_LENGTH: Final[int] = 12


class UpperCaseStrEnum(StrEnum):
    """A StrEnum whose auto() values are the upper-cased member names."""

    @staticmethod
    def _generate_next_value_(
        name: str,
        start: int,
        count: int,
        last_values: list[str],
    ) -> str:
        return name.upper()


class _NonEmptyStr(str):
    """A string that cannot be empty or whitespace-only. Subclassed by the identifier types below."""

    def __new__(cls, value: str) -> Self:
        if not value or not value.strip():
            raise ValueError(f"{cls.__name__} cannot be empty")
        return super().__new__(cls, value.strip())

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: GetCoreSchemaHandler,
    ) -> CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.str_schema(min_length=1),
            serialization=core_schema.to_string_ser_schema(),
        )


class ContainerId(_NonEmptyStr):
    """Daemon-assigned container identifier."""

    def short(self) -> str:
        return self[:SHORT_ID_LENGTH]


class ContainerName(_NonEmptyStr):
    """Human-readable container name."""


class ImageReference(_NonEmptyStr):
    """An image reference such as 'fluree/server:stable' or 'fluree/server@sha256:...'."""

    @property
    def repository(self) -> str:
        if "@" in self:
            return self.split("@", 1)[0]
        last_slash = self.rfind("/")
        last_colon = self.rfind(":")
        if last_colon > last_slash:
            return self[:last_colon]
        return str(self)

    @property
    def tag(self) -> str | None:
        if "@" in self:
            return None
        last_slash = self.rfind("/")
        last_colon = self.rfind(":")
        if last_colon > last_slash:
            return self[last_colon + 1 :]
        return None


class LedgerAlias(_NonEmptyStr):
    """Name of a ledger inside a Fluree server."""


# === Enums ===


class ContainerRunState(UpperCaseStrEnum):
    """Daemon-reported state of a container, collapsed to what the orchestrator cares about."""

    RUNNING = auto()
    EXITED = auto()
    MISSING = auto()


class RunMode(UpperCaseStrEnum):
    """Whether the session attaches to the container output after creation."""

    FOREGROUND = auto()
    BACKGROUND = auto()


class SessionState(UpperCaseStrEnum):
    """States of the lifecycle orchestrator."""

    RECONCILE = auto()
    AWAIT_SELECTION = auto()
    AWAIT_RESUME = auto()
    CREATING = auto()
    MANAGING = auto()
    EXIT = auto()


class ResumeChoice(UpperCaseStrEnum):
    """Operator choices for a known container that is not running."""

    RESUME = auto()
    RECREATE = auto()
    DISCARD = auto()


class ManagingAction(UpperCaseStrEnum):
    """Actions available while a container is being managed."""

    VIEW_STATUS = auto()
    VIEW_STATS = auto()
    VIEW_LOGS = auto()
    MANAGE_LEDGERS = auto()
    STOP = auto()
    STOP_AND_DESTROY = auto()
    EXIT = auto()


class LedgerAction(UpperCaseStrEnum):
    """Actions available for a selected ledger."""

    VIEW_DETAILS = auto()
    DELETE = auto()
    BACK = auto()


class LedgerDeleteOutcome(UpperCaseStrEnum):
    """Result of a ledger delete request."""

    DELETED = auto()
    CONFIRMATION_REQUIRED = auto()


class LogLevel(UpperCaseStrEnum):
    """Log levels accepted in settings files."""

    TRACE = auto()
    DEBUG = auto()
    INFO = auto()
    WARN = auto()
    ERROR = auto()
