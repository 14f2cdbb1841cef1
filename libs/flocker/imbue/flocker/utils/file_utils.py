import os
import stat
from pathlib import Path
from uuid import uuid4

_NEW_FILE_MODE = 0o600


def _mode_to_keep(path: Path) -> int:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return _NEW_FILE_MODE


def _sync_directory(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write(path: Path, content: str) -> None:
    """Replace the file at path with content so a crash never leaves it half-written.

    The content is written as UTF-8 to a sibling ``.<name>.<random>.tmp`` file that is
    created exclusively with the mode the target ends up with: the current mode of an
    existing file, or 0600 for a new one. The temporary file is fsynced and renamed over
    the target, and the rename itself is fsynced through the parent directory.

    Raises OSError when any step fails, after removing the temporary file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = _mode_to_keep(path)
    tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        with os.fdopen(fd, "wb") as handle:
            # The umask applies to os.open, so set the mode again explicitly
            os.fchmod(handle.fileno(), mode)
            handle.write(content.encode("utf-8"))
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise

    _sync_directory(path.parent)
