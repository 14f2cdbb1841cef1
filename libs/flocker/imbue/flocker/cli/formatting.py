"""Rendering of orchestrator data for the terminal."""

import json
from datetime import datetime
from datetime import timezone

from imbue.flocker.daemon.data_types import ContainerStatus
from imbue.flocker.daemon.data_types import LocalImage
from imbue.flocker.daemon.data_types import StatsSample
from imbue.flocker.data_types import ContainerRecord
from imbue.flocker.data_types import LedgerDetail
from imbue.flocker.data_types import LedgerSummary
from imbue.flocker.primitives import ContainerRunState
from imbue.flocker.registry import RegistryTag

_BYTE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB")


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    unit_index = 1
    while value >= 1024 and unit_index < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit_index += 1
    return f"{value:.1f} {_BYTE_UNITS[unit_index]}"


def format_relative_time(moment: datetime | None, now: datetime | None = None) -> str:
    """Describe how long ago something happened, in the coarsest unit that fits."""
    if moment is None:
        return "unknown time ago"
    current = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    days = max((current - moment).days, 0)
    if days >= 365:
        return _plural(days // 365, "year")
    if days >= 30:
        return _plural(days // 30, "month")
    if days >= 7:
        return _plural(days // 7, "week")
    if days >= 1:
        return _plural(days, "day")
    return "today"


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'} ago"


def format_record_choice(record: ContainerRecord) -> str:
    return f"{record.name} ({record.image}, port {record.host_port})"


def format_status(status: ContainerStatus, record: ContainerRecord | None = None) -> list[str]:
    if status.run_state == ContainerRunState.MISSING:
        return [f"Container {status.container_id.short()} no longer exists"]
    state_text = "running" if status.is_running else f"exited (code {status.exit_code})"
    lines = [
        f"Name:       {status.name}",
        f"ID:         {status.container_id.short()}",
        f"Image:      {status.image}",
        f"Status:     {state_text}",
    ]
    if status.host_port is not None:
        lines.append(f"Endpoint:   http://localhost:{status.host_port}")
    if status.started_at is not None:
        lines.append(f"Started:    {status.started_at.astimezone().strftime('%Y-%m-%d %H:%M:%S')}")
    data_dir = record.data_dir.display() if record is not None and record.data_dir is not None else status.data_dir
    lines.append(f"Data dir:   {data_dir or '(none, data lives inside the container)'}")
    if record is not None:
        lines.append(f"Mode:       {record.mode.lower()}")
    return lines


def format_stats(sample: StatsSample) -> str:
    return (
        f"CPU {sample.cpu_percent:6.2f}%   "
        f"Memory {format_bytes(sample.memory_usage_bytes)} / {format_bytes(sample.memory_limit_bytes)} "
        f"({sample.memory_percent:.1f}%)"
    )


def format_ledger_summary(summary: LedgerSummary) -> str:
    return (
        f"{summary.alias}  last commit {summary.last_commit_time or 'unknown'}, "
        f"{summary.commit_count} commits, {format_bytes(summary.size_bytes)}"
    )


def format_ledger_detail(detail: LedgerDetail) -> list[str]:
    return [format_ledger_summary(detail.summary), "", *json.dumps(detail.document, indent=2).splitlines()]


def format_local_image(image: LocalImage, now: datetime | None = None) -> str:
    return f"{image.reference} (created {format_relative_time(image.created_at, now)}, {format_bytes(image.size_bytes)})"


def format_tag(repository: str, tag: RegistryTag, width: int = 0, now: datetime | None = None) -> str:
    return f"{repository}:{tag.name.ljust(width)} (updated {format_relative_time(tag.last_updated, now)})"
