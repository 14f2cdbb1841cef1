from pathlib import Path

import click
from click_option_group import optgroup
from loguru import logger
from pydantic import Field

from imbue.flocker.cli.prompts import ClickOperator
from imbue.flocker.cli.session import InteractiveSession
from imbue.flocker.config.data_types import FlockerConfig
from imbue.flocker.config.loader import load_config
from imbue.flocker.daemon.docker_client import DockerDaemonClient
from imbue.flocker.ledgers import LedgerManager
from imbue.flocker.orchestrator import LifecycleOrchestrator
from imbue.flocker.registry import RegistryClient
from imbue.flocker.state.store import PreferencesStore
from imbue.flocker.utils.logging import setup_logging
from imbue.flocker.utils.models import FrozenModel


class FlockerCliOptions(FrozenModel):
    """Options passed to the flocker command."""

    verbose: bool = Field(default=False, description="Show debug output on the console")
    root_dir: Path | None = Field(default=None, description="Override the flocker root directory")
    docker_host: str | None = Field(default=None, description="Override the Docker endpoint")


def build_session(config: FlockerConfig, working_dir: Path) -> InteractiveSession:
    """Wire the real daemon, store, registry and terminal into a session."""
    daemon = DockerDaemonClient(base_url=config.docker_host)
    orchestrator = LifecycleOrchestrator(
        daemon=daemon,
        store=PreferencesStore(path=config.state_path),
        ledgers=LedgerManager(daemon=daemon),
        stop_timeout_seconds=config.stop_timeout_seconds,
    )
    registry = RegistryClient(
        base_url=config.registry_url,
        repository=config.image_repository,
        page_size=config.registry_page_size,
    )
    return InteractiveSession(
        orchestrator=orchestrator,
        registry=registry,
        operator=ClickOperator(),
        working_dir=working_dir,
        log_tail_lines=config.log_tail_lines,
    )


@click.command(name="flocker")
@optgroup.group("Output")
@optgroup.option("-v", "--verbose", is_flag=True, default=False, help="Show debug output on the console")
@optgroup.group("Locations")
@optgroup.option(
    "--root-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for settings, saved state and logs [default: ~/.flocker, or $FLOCKER_ROOT_DIR]",
)
@optgroup.option(
    "--docker-host",
    default=None,
    help="Docker endpoint, e.g. unix:///var/run/docker.sock [default: $FLOCKER_DOCKER_HOST or DOCKER_HOST]",
)
@click.version_option(package_name="flocker", prog_name="flocker")
def cli(**kwargs) -> None:
    """Run and manage Fluree servers in Docker containers, interactively."""
    opts = FlockerCliOptions(**kwargs)
    config = load_config(root_dir=opts.root_dir, docker_host=opts.docker_host)
    log_file = setup_logging(config, is_verbose=opts.verbose)
    logger.debug("Logging to {}", log_file)

    session = build_session(config, working_dir=Path.cwd())
    try:
        session.run()
    finally:
        session.orchestrator.daemon.close()


if __name__ == "__main__":
    cli()
