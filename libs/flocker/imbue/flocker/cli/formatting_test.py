from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path

import pytest

from imbue.flocker.cli.formatting import format_bytes
from imbue.flocker.cli.formatting import format_ledger_detail
from imbue.flocker.cli.formatting import format_ledger_summary
from imbue.flocker.cli.formatting import format_relative_time
from imbue.flocker.cli.formatting import format_stats
from imbue.flocker.cli.formatting import format_status
from imbue.flocker.cli.formatting import format_tag
from imbue.flocker.daemon.data_types import ContainerStatus
from imbue.flocker.daemon.data_types import StatsSample
from imbue.flocker.data_types import ContainerRecord
from imbue.flocker.data_types import DataDirConfig
from imbue.flocker.data_types import LedgerDetail
from imbue.flocker.data_types import LedgerSummary
from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import ContainerName
from imbue.flocker.primitives import ContainerRunState
from imbue.flocker.primitives import ImageReference
from imbue.flocker.primitives import LedgerAlias
from imbue.flocker.registry import RegistryTag

_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
_CONTAINER_ID = ContainerId("0123456789ab" + "c" * 52)


@pytest.mark.parametrize(
    ("size", "expected"),
    [(0, "0 B"), (1023, "1023 B"), (1024, "1.0 KiB"), (1536, "1.5 KiB"), (5 * 1024**3, "5.0 GiB"), (3 * 1024**5, "3072.0 TiB")],
)
def test_format_bytes(size: int, expected: str) -> None:
    assert format_bytes(size) == expected


@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (timedelta(hours=3), "today"),
        (timedelta(days=1), "1 day ago"),
        (timedelta(days=6), "6 days ago"),
        (timedelta(days=14), "2 weeks ago"),
        (timedelta(days=61), "2 months ago"),
        (timedelta(days=400), "1 year ago"),
        (timedelta(days=-2), "today"),
    ],
)
def test_format_relative_time(age: timedelta, expected: str) -> None:
    assert format_relative_time(_NOW - age, now=_NOW) == expected


def test_format_relative_time_handles_unknown_and_naive_times() -> None:
    assert format_relative_time(None, now=_NOW) == "unknown time ago"
    assert format_relative_time(datetime(2024, 5, 25, 12, 0), now=_NOW) == "1 week ago"


def test_format_status_for_running_container_with_data_dir() -> None:
    status = ContainerStatus(
        container_id=_CONTAINER_ID,
        run_state=ContainerRunState.RUNNING,
        name=ContainerName("fluree-stable"),
        image="fluree/server:stable",
        host_port=8090,
        data_dir="/home/me/project/data",
    )
    record = ContainerRecord(
        container_id=_CONTAINER_ID,
        name=ContainerName("fluree-stable"),
        image=ImageReference("fluree/server:stable"),
        host_port=8090,
        data_dir=DataDirConfig(absolute_path=Path("/home/me/project/data"), relative_path=Path("data")),
    )

    lines = format_status(status, record)

    assert "Status:     running" in lines
    assert "Endpoint:   http://localhost:8090" in lines
    assert "Data dir:   data" in lines
    assert "Mode:       background" in lines
    assert f"ID:         {_CONTAINER_ID.short()}" in lines


def test_format_status_for_exited_container_without_data_dir() -> None:
    status = ContainerStatus(container_id=_CONTAINER_ID, run_state=ContainerRunState.EXITED, exit_code=137)

    lines = format_status(status)

    assert "Status:     exited (code 137)" in lines
    assert lines[-1] == "Data dir:   (none, data lives inside the container)"


def test_format_status_for_missing_container() -> None:
    status = ContainerStatus(container_id=_CONTAINER_ID, run_state=ContainerRunState.MISSING)

    assert format_status(status) == [f"Container {_CONTAINER_ID.short()} no longer exists"]


def test_format_stats() -> None:
    sample = StatsSample(cpu_percent=12.5, memory_usage_bytes=512 * 1024**2, memory_limit_bytes=2 * 1024**3)

    assert format_stats(sample) == "CPU  12.50%   Memory 512.0 MiB / 2.0 GiB (25.0%)"


def test_format_ledger_summary_and_detail() -> None:
    summary = LedgerSummary(
        alias=LedgerAlias("movies"),
        commit_count=4,
        size_bytes=2048,
        last_commit_time="2024-05-01T12:00:00Z",
        path="/opt/fluree-server/data/movies/main.json",
    )

    assert format_ledger_summary(summary) == "movies  last commit 2024-05-01T12:00:00Z, 4 commits, 2.0 KiB"
    detail_lines = format_ledger_detail(LedgerDetail(summary=summary, document={"ledgerAlias": "movies"}))
    assert detail_lines[0] == format_ledger_summary(summary)
    assert detail_lines[1] == ""
    assert detail_lines[2:] == ["{", '  "ledgerAlias": "movies"', "}"]


def test_format_ledger_summary_without_commit_time() -> None:
    summary = LedgerSummary(alias=LedgerAlias("empty"), path="/opt/fluree-server/data/empty/main.json")

    assert format_ledger_summary(summary) == "empty  last commit unknown, 0 commits, 0 B"


def test_format_tag_pads_names_to_align_columns() -> None:
    tag = RegistryTag(name="stable", last_updated=_NOW - timedelta(days=3))

    assert format_tag("fluree/server", tag, width=8, now=_NOW) == "fluree/server:stable   (updated 3 days ago)"
