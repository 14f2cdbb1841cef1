import threading
from pathlib import Path

from loguru import logger
from pydantic import Field
from pydantic import PrivateAttr
from pydantic import ValidationError

from imbue.flocker.data_types import PersistedPreferences
from imbue.flocker.errors import StateSaveError
from imbue.flocker.utils.file_utils import atomic_write
from imbue.flocker.utils.models import MutableModel


class PreferencesStore(MutableModel):
    """Reads and writes the persisted preferences file.

    Loading never fails: a missing, unreadable or invalid file yields default
    preferences (with a warning for anything other than a missing file). Saving
    replaces the file atomically and is serialized, so the last save wins.
    """

    path: Path = Field(frozen=True, description="Location of the JSON preferences file")

    _save_lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    def load(self) -> PersistedPreferences:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("No saved state at {}, starting fresh", self.path)
            return PersistedPreferences()
        except OSError as e:
            logger.warning("Could not read saved state from {} ({}); starting fresh", self.path, e)
            return PersistedPreferences()

        try:
            preferences = PersistedPreferences.model_validate_json(content)
        except ValidationError as e:
            logger.warning(
                "Saved state at {} is invalid and will be replaced on the next save: {}",
                self.path,
                e.errors()[0]["msg"],
            )
            return PersistedPreferences()

        logger.trace("Loaded {} known container(s) from {}", len(preferences.containers), self.path)
        return preferences

    def save(self, preferences: PersistedPreferences) -> None:
        content = preferences.model_dump_json(indent=2)
        with self._save_lock:
            try:
                atomic_write(self.path, content + "\n")
            except OSError as e:
                raise StateSaveError(self.path, str(e)) from e
        logger.trace("Saved state to {}", self.path)
