from pathlib import Path

from click import ClickException

from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerName
from imbue.flocker.primitives import ImageReference
from imbue.flocker.primitives import LedgerAlias
from imbue.flocker.primitives import SessionState

# Longest stderr excerpt included in error messages.
_STDERR_EXCERPT_LENGTH = 500


class BaseFlockerError(Exception):
    """Base exception for all flocker errors."""


class FlockerError(ClickException, BaseFlockerError):
    """Base exception for all user-facing flocker errors.

    Subclasses may set user_help_text to give the operator a hint about how to
    resolve the problem. The CLI appends it to the message.
    """

    user_help_text: str | None = None

    def format_message(self) -> str:
        if self.user_help_text:
            return str(self) + "  [" + self.user_help_text + "]"
        return str(self)


class UserInputError(FlockerError):
    """Raised when operator input is invalid."""


class ConfigParseError(FlockerError):
    """Raised when the settings file cannot be parsed or validated."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid settings file {path}: {reason}")


class StateSaveError(FlockerError):
    """Raised when the preferences file cannot be written."""

    user_help_text = "The in-memory state is kept; it will be written on the next successful save."

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to save state to {path}: {reason}")


class InvalidTransitionError(BaseFlockerError):
    """Raised when an orchestrator operation is invoked from a state that does not allow it."""

    def __init__(self, operation: str, state: SessionState) -> None:
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while in state {state}")


# === Daemon errors ===


class DaemonError(FlockerError):
    """Base class for errors reported by (or about) the Docker daemon."""


class DaemonUnreachableError(DaemonError):
    """The Docker daemon could not be reached."""

    user_help_text = "Is Docker running? Check DOCKER_HOST or the docker_host setting."

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Cannot connect to the Docker daemon: {reason}")


class ContainerNotFoundError(DaemonError):
    """The referenced container no longer exists."""

    def __init__(self, container_id: ContainerId) -> None:
        self.container_id = container_id
        super().__init__(f"Container not found: {container_id.short()}")


class ContainerNotRunningError(DaemonError):
    """The operation requires a running container."""

    def __init__(self, container_id: ContainerId) -> None:
        self.container_id = container_id
        super().__init__(f"Container {container_id.short()} is not running")


class ImageNotFoundError(DaemonError):
    """The image reference does not resolve locally or in the registry."""

    user_help_text = "Pull the image first, or pick another tag."

    def __init__(self, image: ImageReference) -> None:
        self.image = image
        super().__init__(f"Image not found: {image}")


class ExecFailedError(DaemonError):
    """A command run inside a container exited with a non-zero status."""

    def __init__(self, command: tuple[str, ...], exit_code: int, stderr: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        excerpt = stderr.strip()[:_STDERR_EXCERPT_LENGTH]
        super().__init__(f"Command {' '.join(command)!r} exited with code {exit_code}: {excerpt}")


# === Configuration errors (always recoverable by re-prompting) ===


class ConfigurationError(FlockerError):
    """Base class for rejected container configurations."""


class InvalidPortError(ConfigurationError, ValueError):
    """The requested host port is not an integer in the valid range."""

    def __init__(self, raw_value: str, reason: str) -> None:
        self.raw_value = raw_value
        super().__init__(f"Invalid port {raw_value!r}: {reason}")


class PortInUseError(ConfigurationError):
    """The requested host port is bound by another running, known container."""

    user_help_text = "Pick another port, or stop the other container first."

    def __init__(self, port: int, holder: ContainerName) -> None:
        self.port = port
        self.holder = holder
        super().__init__(f"Port {port} is already used by running container {holder}")


class PortConflictError(ConfigurationError):
    """The daemon refused to bind the requested host port."""

    user_help_text = "Another process on this machine is probably listening on that port."

    def __init__(self, port: int, reason: str) -> None:
        self.port = port
        self.reason = reason
        super().__init__(f"Docker could not bind port {port}: {reason}")


class DirectoryMissingError(ConfigurationError):
    """The requested data directory does not exist (creating it is an explicit opt-in)."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Data directory does not exist: {path}")


class InvalidDirectoryError(ConfigurationError):
    """The requested data directory path exists but is not a directory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Not a directory: {path}")


class InvalidContainerNameError(ConfigurationError, ValueError):
    """The requested container name is not acceptable to Docker."""

    user_help_text = "Use letters, digits, '_', '.' or '-', starting with a letter or digit."

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Invalid container name: {name!r}")


class ContainerNameConflictError(ConfigurationError):
    """A container with the requested name already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"A container named {name!r} already exists")


# === Ledger errors ===


class LedgerError(FlockerError):
    """Base class for ledger management errors."""


class LedgerNotFoundError(LedgerError):
    """No ledger with this alias exists in the container."""

    def __init__(self, alias: LedgerAlias) -> None:
        self.alias = alias
        super().__init__(f"Ledger not found: {alias}")


class LedgerDeleteFailedError(LedgerError):
    """The in-container delete command failed."""

    def __init__(self, alias: LedgerAlias, reason: str) -> None:
        self.alias = alias
        self.reason = reason
        super().__init__(f"Failed to delete ledger {alias}: {reason}")


class MalformedResponseError(LedgerError, ValueError):
    """A response from inside the container could not be parsed."""


# === Registry errors ===


class RegistryError(FlockerError):
    """The image registry could not be queried."""
