import sys
from collections.abc import Generator
from pathlib import Path

import pytest
from loguru import logger


@pytest.fixture(autouse=True)
def setup_test_flocker_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep every test away from the real ~/.flocker and from Docker endpoint overrides."""
    monkeypatch.setenv("FLOCKER_ROOT_DIR", str(tmp_path / ".flocker"))
    monkeypatch.delenv("FLOCKER_DOCKER_HOST", raising=False)
    monkeypatch.delenv("FLOCKER_STOP_TIMEOUT", raising=False)
    yield
    # setup_logging replaces the loguru handlers (and opens a log file under tmp_path)
    logger.remove()
    logger.add(sys.stderr)
