from collections.abc import Iterable
from collections.abc import Sequence

import click

from imbue.flocker.interfaces.operator import OperatorInterface


class ScriptedOperator(OperatorInterface):
    """Operator that answers prompts from a script and records everything it is shown.

    Answers are consumed in order: an int for select(), a str for prompt_text()
    (None means "accept the default") and a bool for confirm(). When the script
    runs out, the operator aborts, the same way Ctrl-C at a prompt does.
    """

    def __init__(self, answers: Sequence[int | str | bool | None]) -> None:
        self.answers = list(answers)
        self.prompts: list[str] = []
        self.options_shown: list[list[str]] = []
        self.messages: list[str] = []
        self.warnings: list[str] = []
        self.errors: list[str] = []
        self.lines: list[str] = []

    def _next_answer(self, prompt: str) -> int | str | bool | None:
        self.prompts.append(prompt)
        if not self.answers:
            raise click.Abort()
        return self.answers.pop(0)

    def select(self, prompt: str, options: Sequence[str], default_index: int = 0) -> int:
        self.options_shown.append(list(options))
        answer = self._next_answer(prompt)
        if not isinstance(answer, int) or isinstance(answer, bool):
            raise AssertionError(f"Expected a selection index for {prompt!r}, got {answer!r}")
        if not 0 <= answer < len(options):
            raise AssertionError(f"Selection {answer} out of range for {prompt!r}: {options}")
        return answer

    def prompt_text(self, prompt: str, default: str | None = None) -> str:
        answer = self._next_answer(prompt)
        if answer is None:
            return default or ""
        if not isinstance(answer, str):
            raise AssertionError(f"Expected text for {prompt!r}, got {answer!r}")
        return answer

    def confirm(self, prompt: str, default: bool = False) -> bool:
        answer = self._next_answer(prompt)
        if not isinstance(answer, bool):
            raise AssertionError(f"Expected yes/no for {prompt!r}, got {answer!r}")
        return answer

    def show_message(self, message: str) -> None:
        self.messages.append(message)

    def show_warning(self, message: str) -> None:
        self.warnings.append(message)

    def show_error(self, message: str) -> None:
        self.errors.append(message)

    def show_lines(self, lines: Iterable[str]) -> None:
        self.lines.extend(lines)
