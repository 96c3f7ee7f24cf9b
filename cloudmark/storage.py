"""
Local persistence for the bookmark dataset and the backup settings.

The dataset lives in ``data.json`` and is always replaced with a single
atomic write. Settings live in ``settings.toml`` and are read fresh on
every call so edits made by other processes are picked up immediately.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from cloudmark.config import Settings, load_settings, save_settings
from cloudmark.constants import DEFAULT_LOCAL_TIMESTAMP_MS
from cloudmark.utils import atomic_write, deep_copy, now_ms

logger = logging.getLogger(__name__)

DATA_FILE = "data.json"
SETTINGS_FILE = "settings.toml"

DEFAULT_DATA: Dict[str, Any] = {
    "folders": [],
    "backgroundImage": "",
    "lastModified": DEFAULT_LOCAL_TIMESTAMP_MS,
}

Listener = Callable[[str, Any], None]


def is_data_empty(data: Any) -> bool:
    """
    Whether a dataset holds no bookmarks at any folder depth.

    Folders without bookmarks do not count as content.
    """
    if not isinstance(data, dict):
        return True
    folders = data.get("folders")
    if not isinstance(folders, list) or not folders:
        return True

    def has_content(folder: Any) -> bool:
        if not isinstance(folder, dict):
            return False
        bookmarks = folder.get("bookmarks")
        if isinstance(bookmarks, list) and bookmarks:
            return True
        for key in ("children", "subfolders"):
            nested = folder.get(key)
            if isinstance(nested, list) and any(has_content(child) for child in nested):
                return True
        return False

    return not any(has_content(folder) for folder in folders)


def local_timestamp(data: Any) -> int:
    """The dataset's lastModified, or 2020-01-01 when it has none."""
    if isinstance(data, dict) and data.get("lastModified"):
        return int(data["lastModified"])
    return DEFAULT_LOCAL_TIMESTAMP_MS


class LocalStore:
    """
    File-backed store for the dataset and settings.

    Listeners registered with ``add_listener`` are called with
    ``("data", new_data)`` or ``("settings", new_settings)`` after each
    successful write from this process.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.data_path = self.data_dir / DATA_FILE
        self.settings_path = self.data_dir / SETTINGS_FILE
        self._listeners: List[Listener] = []

    def ensure_init(self) -> Settings:
        """Create the data directory and first-run settings if missing."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if not self.settings_path.exists():
            settings = Settings.defaults()
            save_settings(settings, self.settings_path)
            logger.info(f"Created default settings at {self.settings_path}")
            return settings
        settings = self.read_settings()
        if not settings.client.identifier:
            settings.client.identifier = Settings.defaults().client.identifier
            save_settings(settings, self.settings_path)
        return settings

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, area: str, value: Any):
        for listener in list(self._listeners):
            try:
                listener(area, value)
            except Exception as e:
                logger.error(f"Store listener failed for {area}: {e}")

    def read_data(self) -> Dict[str, Any]:
        """Read the dataset; a missing file yields the default dataset."""
        if not self.data_path.exists():
            return deep_copy(DEFAULT_DATA)
        with open(self.data_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{self.data_path} does not hold a dataset object")
        return data

    def write_data(self, data: Dict[str, Any], touch: bool = False):
        """
        Replace the dataset with a single atomic write.

        Args:
            data: The complete new dataset
            touch: Bump ``lastModified`` to now (for genuine local mutations)
        """
        if touch:
            data["lastModified"] = now_ms()
        atomic_write(self.data_path, json.dumps(data, ensure_ascii=False, indent=2))
        self._emit("data", data)

    def read_settings(self) -> Settings:
        return load_settings(self.settings_path)

    def write_settings(self, settings: Settings):
        save_settings(settings, self.settings_path)
        self._emit("settings", settings)

    def read_all(self) -> Tuple[Dict[str, Any], Settings]:
        return self.read_data(), self.read_settings()

    def _mtimes(self) -> Tuple[Optional[int], Optional[int]]:
        def mtime(path: Path) -> Optional[int]:
            try:
                return path.stat().st_mtime_ns
            except FileNotFoundError:
                return None
        return mtime(self.data_path), mtime(self.settings_path)

    async def watch(self, interval: float = 2.0):
        """
        Poll both files and emit change events for writes made by other
        processes (e.g. the bookmark editor). Runs until cancelled.
        """
        data_mtime, settings_mtime = self._mtimes()
        while True:
            await asyncio.sleep(interval)
            new_data_mtime, new_settings_mtime = self._mtimes()
            if new_settings_mtime != settings_mtime:
                settings_mtime = new_settings_mtime
                try:
                    settings = self.read_settings()
                except (OSError, ValueError) as e:
                    logger.warning(f"Could not read changed settings: {e}")
                else:
                    self._emit("settings", settings)
            if new_data_mtime != data_mtime:
                data_mtime = new_data_mtime
                try:
                    data = self.read_data()
                except (OSError, ValueError) as e:
                    logger.warning(f"Could not read changed dataset: {e}")
                    continue
                self._emit("data", data)
