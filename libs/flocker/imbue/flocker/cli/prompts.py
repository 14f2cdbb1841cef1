from collections.abc import Iterable
from collections.abc import Sequence

import click

from imbue.flocker.interfaces.operator import OperatorInterface


class ClickOperator(OperatorInterface):
    """Operator interface on top of click prompts, writing to the terminal."""

    def select(self, prompt: str, options: Sequence[str], default_index: int = 0) -> int:
        if not options:
            raise ValueError("select() needs at least one option")
        click.echo(click.style(prompt, bold=True))
        for index, option in enumerate(options, start=1):
            click.echo(f"  {index}) {option}")
        choice = click.prompt(
            "Choice",
            type=click.IntRange(1, len(options)),
            default=default_index + 1,
            show_default=True,
        )
        return choice - 1

    def prompt_text(self, prompt: str, default: str | None = None) -> str:
        # An empty default lets the operator submit a blank line
        return click.prompt(prompt, default=default if default is not None else "", show_default=bool(default))

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return click.confirm(prompt, default=default)

    def show_message(self, message: str) -> None:
        click.echo(message)

    def show_warning(self, message: str) -> None:
        click.echo(click.style(f"WARNING: {message}", fg="yellow", bold=True), err=True)

    def show_error(self, message: str) -> None:
        click.echo(click.style(f"ERROR: {message}", fg="red", bold=True), err=True)

    def show_lines(self, lines: Iterable[str]) -> None:
        for line in lines:
            click.echo(line)
