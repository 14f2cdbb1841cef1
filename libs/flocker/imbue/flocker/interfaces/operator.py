from abc import ABC
from abc import abstractmethod
from collections.abc import Iterable
from collections.abc import Sequence


class OperatorInterface(ABC):
    """The person at the terminal: the only way the session asks for input or shows output.

    Prompt methods raise click.Abort when the operator gives up (Ctrl-C or end of input).
    """

    @abstractmethod
    def select(self, prompt: str, options: Sequence[str], default_index: int = 0) -> int:
        """Ask the operator to pick one of the options and return its index."""

    @abstractmethod
    def prompt_text(self, prompt: str, default: str | None = None) -> str:
        """Ask for free-form text. Returns the default (or an empty string) when nothing is entered."""

    @abstractmethod
    def confirm(self, prompt: str, default: bool = False) -> bool:
        """Ask a yes/no question."""

    @abstractmethod
    def show_message(self, message: str) -> None: ...

    @abstractmethod
    def show_warning(self, message: str) -> None: ...

    @abstractmethod
    def show_error(self, message: str) -> None: ...

    @abstractmethod
    def show_lines(self, lines: Iterable[str]) -> None:
        """Show lines as they arrive (used for logs, stats and pull progress)."""
