import re
from collections.abc import Callable
from collections.abc import Collection
from collections.abc import Iterable
from collections.abc import Iterator
from pathlib import Path
from typing import TypeVar

import click
from loguru import logger
from pydantic import ConfigDict
from pydantic import Field

from imbue.flocker.cli.formatting import format_ledger_detail
from imbue.flocker.cli.formatting import format_ledger_summary
from imbue.flocker.cli.formatting import format_local_image
from imbue.flocker.cli.formatting import format_record_choice
from imbue.flocker.cli.formatting import format_stats
from imbue.flocker.cli.formatting import format_status
from imbue.flocker.cli.formatting import format_tag
from imbue.flocker.daemon.data_types import PullProgress
from imbue.flocker.daemon.streams import CancellableStream
from imbue.flocker.data_types import ContainerRecord
from imbue.flocker.data_types import ContainerRequest
from imbue.flocker.errors import ConfigurationError
from imbue.flocker.errors import DaemonUnreachableError
from imbue.flocker.errors import DirectoryMissingError
from imbue.flocker.errors import FlockerError
from imbue.flocker.interfaces.operator import OperatorInterface
from imbue.flocker.orchestrator import LifecycleOrchestrator
from imbue.flocker.primitives import ImageReference
from imbue.flocker.primitives import LedgerAction
from imbue.flocker.primitives import LedgerDeleteOutcome
from imbue.flocker.primitives import ManagingAction
from imbue.flocker.primitives import ResumeChoice
from imbue.flocker.primitives import RunMode
from imbue.flocker.primitives import SessionState
from imbue.flocker.registry import RegistryClient
from imbue.flocker.registry import RegistryTag
from imbue.flocker.utils.models import MutableModel

T = TypeVar("T")

DELETE_CONFIRMATION_WORD = "delete"

_MANAGING_LABELS: dict[ManagingAction, str] = {
    ManagingAction.VIEW_STATUS: "View status",
    ManagingAction.VIEW_STATS: "View resource usage",
    ManagingAction.VIEW_LOGS: "View logs",
    ManagingAction.MANAGE_LEDGERS: "Manage ledgers",
    ManagingAction.STOP: "Stop container",
    ManagingAction.STOP_AND_DESTROY: "Stop and destroy container",
    ManagingAction.EXIT: "Exit (leave the container running)",
}

_RESUME_LABELS: dict[ResumeChoice, str] = {
    ResumeChoice.RESUME: "Start it again",
    ResumeChoice.RECREATE: "Remove it and create a new container",
    ResumeChoice.DISCARD: "Forget it (leave the container in Docker)",
}

_LEDGER_LABELS: dict[LedgerAction, str] = {
    LedgerAction.VIEW_DETAILS: "View details",
    LedgerAction.DELETE: "Delete",
    LedgerAction.BACK: "Back",
}

_MODE_LABELS: dict[RunMode, str] = {
    RunMode.BACKGROUND: "Background",
    RunMode.FOREGROUND: "Foreground (follow the server output)",
}

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]+")


def suggest_container_name(image: ImageReference, taken: Collection[str]) -> str:
    """Suggest a free container name derived from the image tag, e.g. 'fluree-stable'."""
    base = "fluree-" + _INVALID_NAME_CHARS.sub("-", image.tag or "latest").strip("-.")
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def format_pull_progress(events: Iterable[PullProgress]) -> Iterator[str]:
    """Render pull events, skipping repeats of a layer's status (progress bars tick a lot)."""
    last_status_by_layer: dict[str | None, str] = {}
    for event in events:
        if last_status_by_layer.get(event.layer_id) == event.status:
            continue
        last_status_by_layer[event.layer_id] = event.status
        yield f"{event.layer_id}: {event.status}" if event.layer_id else event.status


class InteractiveSession(MutableModel):
    """The operator-facing loop around a LifecycleOrchestrator.

    Maps each orchestrator state to the questions the operator is asked. Errors
    from flocker are shown and the loop continues; the session only ends when
    the operator exits or aborts a prompt, and always persists state on the way out.
    """

    model_config = ConfigDict(frozen=False, extra="forbid", arbitrary_types_allowed=True)

    orchestrator: LifecycleOrchestrator
    registry: RegistryClient
    operator: OperatorInterface
    working_dir: Path = Field(description="Base directory for relative data directory paths")
    log_tail_lines: int = Field(default=100, ge=1)

    def run(self) -> None:
        self.orchestrator.load()
        try:
            while self.orchestrator.state != SessionState.EXIT:
                try:
                    self._step()
                except DaemonUnreachableError as e:
                    self.operator.show_error(e.format_message())
                    if not self.operator.confirm("Try connecting to Docker again?", default=True):
                        self.orchestrator.shutdown()
                except FlockerError as e:
                    logger.debug("Showing error to operator: {!r}", e)
                    self.operator.show_error(e.format_message())
        except click.Abort:
            logger.debug("Operator aborted the session")
        finally:
            self.orchestrator.shutdown()

    def _step(self) -> None:
        match self.orchestrator.state:
            case SessionState.RECONCILE:
                self.orchestrator.reconcile()
            case SessionState.AWAIT_SELECTION:
                self._await_selection()
            case SessionState.AWAIT_RESUME:
                self._await_resume()
            case SessionState.MANAGING:
                self._manage()
            case _:
                raise AssertionError(f"Session loop reached unexpected state {self.orchestrator.state}")

    # =========================================================================
    # Selection / resume
    # =========================================================================

    def _await_selection(self) -> None:
        others = self.orchestrator.other_known_containers()
        if others:
            options = [format_record_choice(record) for record in others] + ["Create a new container", "Exit"]
            index = self.operator.select("Which Fluree container do you want to use?", options)
            if index < len(others):
                self.orchestrator.select_known(others[index].container_id)
                return
            if index == len(others) + 1:
                self.orchestrator.shutdown()
                return
        self._create_container()

    def _await_resume(self) -> None:
        record = self._current_record()
        choices = list(ResumeChoice)
        index = self.operator.select(
            f"Container {record.name} is stopped. What do you want to do?",
            [_RESUME_LABELS[choice] for choice in choices],
        )
        match choices[index]:
            case ResumeChoice.RESUME:
                self.orchestrator.resume()
                self.operator.show_message(f"Started {record.name} at http://localhost:{record.host_port}")
            case ResumeChoice.RECREATE:
                self.orchestrator.recreate()
                self.operator.show_message(f"Removed {record.name}")
            case ResumeChoice.DISCARD:
                self.orchestrator.discard()
                self.operator.show_message(f"Forgot {record.name}")

    # =========================================================================
    # Creation
    # =========================================================================

    def _create_container(self) -> None:
        image = self._choose_image()
        if image is None:
            if not self.operator.confirm("Create a container later and exit now?", default=False):
                return
            self.orchestrator.shutdown()
            return

        request = self._prompt_request(image, previous=None)
        while True:
            try:
                record = self.orchestrator.create(request, self.working_dir)
            except DirectoryMissingError as e:
                if self.operator.confirm(f"{e.path} does not exist. Create it?", default=True):
                    request = request.model_copy(update={"create_missing_dir": True})
                    continue
                request = self._prompt_request(image, previous=request.model_copy(update={"data_dir": None}))
                continue
            except ConfigurationError as e:
                self.operator.show_error(e.format_message())
                request = self._prompt_request(image, previous=request)
                continue
            break

        self.operator.show_message(f"Fluree is running at http://localhost:{record.host_port}")
        if record.mode == RunMode.FOREGROUND:
            self._follow_output(record)

    def _prompt_request(self, image: ImageReference, previous: ContainerRequest | None) -> ContainerRequest:
        preferences = self.orchestrator.preferences
        if previous is not None:
            default_name = previous.name
            default_port = previous.host_port
            default_dir = previous.data_dir
            default_mode = previous.mode
        else:
            taken = {str(record.name) for record in preferences.known_containers()}
            default_name = suggest_container_name(image, taken)
            default_port = str(preferences.preferred_port)
            default_dir = preferences.preferred_data_dir.display() if preferences.preferred_data_dir else None
            default_mode = preferences.preferred_mode

        name = self.operator.prompt_text("Container name", default=default_name)
        port = self.operator.prompt_text("Host port", default=default_port)
        data_dir = self.operator.prompt_text("Data directory (leave blank to keep data inside the container)", default=default_dir)
        modes = list(RunMode)
        mode_index = self.operator.select("Run mode", [_MODE_LABELS[mode] for mode in modes], modes.index(default_mode))
        return ContainerRequest(
            image=image,
            name=name,
            host_port=port,
            data_dir=data_dir or None,
            mode=modes[mode_index],
        )

    def _choose_image(self) -> ImageReference | None:
        repository = self.registry.repository
        local_images = self.orchestrator.list_local_images(repository)
        options = [format_local_image(image) for image in local_images] + ["Browse tags on Docker Hub", "Back"]
        index = self.operator.select("Which Fluree image?", options)
        if index < len(local_images):
            return local_images[index].reference
        if index == len(local_images) + 1:
            return None

        tag = self._browse_registry()
        if tag is None:
            return None
        reference = self.registry.image_for(tag)
        if not any(image.reference == reference for image in local_images):
            self.operator.show_message(f"Pulling {reference}...")
            self.operator.show_lines(format_pull_progress(self.orchestrator.pull_image(reference)))
        return reference

    def _browse_registry(self) -> RegistryTag | None:
        page_url: str | None = None
        while True:
            page = self.registry.list_tags(page_url)
            width = max((len(tag.name) for tag in page.tags), default=0)
            options = [format_tag(self.registry.repository, tag, width) for tag in page.tags]
            if page.next_url:
                options.append("More tags...")
            options.append("Back")
            index = self.operator.select("Which tag?", options)
            if index < len(page.tags):
                return page.tags[index]
            if page.next_url and index == len(page.tags):
                page_url = page.next_url
                continue
            return None

    # =========================================================================
    # Managing
    # =========================================================================

    def _manage(self) -> None:
        record = self._current_record()
        actions = list(ManagingAction)
        index = self.operator.select(
            f"Managing {record.name} (http://localhost:{record.host_port})",
            [_MANAGING_LABELS[action] for action in actions],
        )
        match actions[index]:
            case ManagingAction.VIEW_STATUS:
                self.operator.show_lines(format_status(self.orchestrator.refresh_status(), record))
            case ManagingAction.VIEW_STATS:
                self.operator.show_message("Press Ctrl-C to stop")
                self._show_stream(self.orchestrator.stream_stats(), format_stats)
            case ManagingAction.VIEW_LOGS:
                self.operator.show_lines(self.orchestrator.fetch_logs(self.log_tail_lines))
            case ManagingAction.MANAGE_LEDGERS:
                self._manage_ledgers()
            case ManagingAction.STOP:
                self.orchestrator.stop()
                self.operator.show_message(f"Stopped {record.name}")
            case ManagingAction.STOP_AND_DESTROY:
                if self.operator.confirm(
                    f"Remove container {record.name}? Data in a mounted data directory is kept.", default=False
                ):
                    self.orchestrator.stop_and_destroy()
                    self.operator.show_message(f"Destroyed {record.name}")
            case ManagingAction.EXIT:
                self.orchestrator.shutdown()

    def _manage_ledgers(self) -> None:
        while True:
            listing = self.orchestrator.list_ledgers()
            for warning in listing.warnings:
                self.operator.show_warning(warning)
            if not listing.ledgers:
                self.operator.show_message("No ledgers found")
                return

            options = [format_ledger_summary(summary) for summary in listing.ledgers] + ["Back"]
            index = self.operator.select("Select a ledger", options)
            if index == len(listing.ledgers):
                return
            summary = listing.ledgers[index]

            actions = list(LedgerAction)
            action = actions[self.operator.select(f"Ledger {summary.alias}", [_LEDGER_LABELS[a] for a in actions])]
            if action == LedgerAction.VIEW_DETAILS:
                self.operator.show_lines(format_ledger_detail(self.orchestrator.describe_ledger(summary.alias)))
            elif action == LedgerAction.DELETE:
                self.operator.show_warning(f"This permanently deletes ledger {summary.alias} and all its data!")
                typed = self.operator.prompt_text(f"Type '{DELETE_CONFIRMATION_WORD}' to confirm")
                outcome = self.orchestrator.delete_ledger(
                    summary.alias, confirmed=typed.strip() == DELETE_CONFIRMATION_WORD
                )
                if outcome == LedgerDeleteOutcome.DELETED:
                    self.operator.show_message(f"Deleted ledger {summary.alias}")
                else:
                    self.operator.show_message("Not confirmed; nothing was deleted")

    def _follow_output(self, record: ContainerRecord) -> None:
        self.operator.show_message(f"Following the output of {record.name}; press Ctrl-C to return to the menu")
        self._show_stream(self.orchestrator.follow_logs(), lambda line: line)

    def _show_stream(self, stream: CancellableStream[T], render: Callable[[T], str]) -> None:
        with stream:
            try:
                self.operator.show_lines(render(item) for item in stream)
            except KeyboardInterrupt:
                logger.debug("Operator stopped the stream")

    def _current_record(self) -> ContainerRecord:
        record = self.orchestrator.current_record
        if record is None:
            raise AssertionError(f"No current container in state {self.orchestrator.state}")
        return record
