import json
import shlex
from pathlib import PurePosixPath
from typing import Any
from typing import Final

from loguru import logger
from pydantic import Field

from imbue.flocker.daemon.interface import DaemonClientInterface
from imbue.flocker.data_types import LedgerDetail
from imbue.flocker.data_types import LedgerListing
from imbue.flocker.data_types import LedgerSummary
from imbue.flocker.errors import ExecFailedError
from imbue.flocker.errors import LedgerDeleteFailedError
from imbue.flocker.errors import LedgerNotFoundError
from imbue.flocker.errors import MalformedResponseError
from imbue.flocker.primitives import ContainerId
from imbue.flocker.primitives import FLUREE_DATA_PATH
from imbue.flocker.primitives import LedgerAlias
from imbue.flocker.primitives import LedgerDeleteOutcome
from imbue.flocker.utils.models import MutableModel

# Fluree keeps one JSON descriptor per ledger next to a commit/ directory full of
# commit JSON files, which are not descriptors.
_DESCRIPTOR_SEPARATOR: Final[str] = "\t"


def build_list_command(data_path: str) -> list[str]:
    """Build a command that prints `<path>\\t<json on one line>` for every ledger descriptor."""
    print_descriptor = 'printf "%s\\t" "$1"; tr -d "\\n" < "$1"; echo'
    quoted_path = shlex.quote(data_path)
    # A fresh container may not have created its data directory yet
    script = (
        f"[ -d {quoted_path} ] || exit 0; "
        f"find {quoted_path} -type f -name '*.json' -not -path '*/commit/*' "
        f"-exec sh -c {shlex.quote(print_descriptor)} _ {{}} \\;"
    )
    return ["sh", "-c", script]


def parse_ledger_document(document: dict[str, Any], path: str) -> LedgerSummary | None:
    """Build a summary from a ledger descriptor, or None if the document is not a descriptor."""
    alias = document.get("ledgerAlias")
    if not isinstance(alias, str) or not alias.strip():
        return None

    branches = document.get("branches")
    first_branch = branches[0] if isinstance(branches, list) and branches else {}
    commit = first_branch.get("commit") if isinstance(first_branch, dict) else None
    commit = commit if isinstance(commit, dict) else {}
    data = commit.get("data") if isinstance(commit.get("data"), dict) else {}

    last_commit_time = commit.get("time")
    return LedgerSummary(
        alias=LedgerAlias(alias),
        commit_count=_non_negative_int(data.get("t")),
        size_bytes=_non_negative_int(data.get("size")),
        last_commit_time=last_commit_time if isinstance(last_commit_time, str) else None,
        path=path,
    )


def parse_ledger_listing(output: str) -> list[LedgerSummary]:
    """Parse the output of the list command.

    Files holding JSON that is not an object are skipped like any other
    non-descriptor. Raises MalformedResponseError if a line has no separator or
    its document is not valid JSON.
    """
    summaries: list[LedgerSummary] = []
    for line_number, line in enumerate(output.splitlines(), start=1):
        if not line.strip():
            continue
        path, separator, raw_document = line.partition(_DESCRIPTOR_SEPARATOR)
        if not separator:
            raise MalformedResponseError(f"Line {line_number} has no descriptor separator: {line[:80]!r}")
        try:
            document = json.loads(raw_document)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Descriptor {path} is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            logger.trace("Skipping non-object JSON file {}", path)
            continue
        summary = parse_ledger_document(document, path)
        if summary is not None:
            summaries.append(summary)
    return summaries


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


class LedgerManager(MutableModel):
    """Lists, describes and deletes Fluree ledgers inside a running container by exec."""

    daemon: DaemonClientInterface = Field(frozen=True, description="Daemon used to exec into the container")
    data_path: str = Field(default=FLUREE_DATA_PATH, frozen=True, description="Fluree data directory in the container")

    def list_ledgers(self, container_id: ContainerId) -> LedgerListing:
        """List the ledgers in a container.

        An unparseable response yields an empty listing with a warning rather than an error.
        """
        result = self.daemon.exec_in_container(container_id, build_list_command(self.data_path))
        try:
            summaries = parse_ledger_listing(result.stdout)
        except MalformedResponseError as e:
            warning = f"Could not read the ledger list: {e}"
            logger.warning(warning)
            return LedgerListing(warnings=(warning,))
        summaries.sort(key=lambda summary: summary.alias)
        return LedgerListing(ledgers=tuple(summaries))

    def describe_ledger(self, container_id: ContainerId, alias: LedgerAlias) -> LedgerDetail:
        summary = self._find_ledger(container_id, alias)
        result = self.daemon.exec_in_container(container_id, ["cat", summary.path])
        try:
            document = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Descriptor {summary.path} is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise MalformedResponseError(f"Descriptor {summary.path} is not a JSON object")
        return LedgerDetail(summary=summary, document=document)

    def delete_ledger(self, container_id: ContainerId, alias: LedgerAlias, confirmed: bool = False) -> LedgerDeleteOutcome:
        """Delete a ledger's directory. Nothing is sent to the container unless confirmed."""
        if not confirmed:
            logger.debug("Delete of ledger {} requires confirmation", alias)
            return LedgerDeleteOutcome.CONFIRMATION_REQUIRED

        summary = self._find_ledger(container_id, alias)
        ledger_dir = PurePosixPath(summary.path).parent
        data_root = PurePosixPath(self.data_path)
        if ledger_dir == data_root or not ledger_dir.is_relative_to(data_root) or ".." in ledger_dir.parts:
            raise LedgerDeleteFailedError(alias, f"refusing to delete {ledger_dir}, which is outside {data_root}")

        logger.info("Deleting ledger {} ({})", alias, ledger_dir)
        try:
            self.daemon.exec_in_container(container_id, ["rm", "-rf", str(ledger_dir)])
        except ExecFailedError as e:
            reason = e.stderr.strip() or f"exit code {e.exit_code}"
            raise LedgerDeleteFailedError(alias, reason) from e
        return LedgerDeleteOutcome.DELETED

    def _find_ledger(self, container_id: ContainerId, alias: LedgerAlias) -> LedgerSummary:
        listing = self.list_ledgers(container_id)
        for summary in listing.ledgers:
            if summary.alias == alias:
                return summary
        raise LedgerNotFoundError(alias)
