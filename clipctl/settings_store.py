"""Durable session settings and the failed-upload retry queue."""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from .models import FailedUploadsList, PersistedSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = "~/.config/clipctl"
SETTINGS_FILENAME = "settings.json"
FAILED_UPLOADS_FILENAME = "failed-uploads.json"


class SettingsStore:
    """Reads and writes the JSON files under the per-user config directory."""

    def __init__(self, config_dir: str = DEFAULT_CONFIG_DIR):
        self.config_dir = Path(config_dir).expanduser()
        self.settings_path = self.config_dir / SETTINGS_FILENAME
        self.failed_uploads_path = self.config_dir / FAILED_UPLOADS_FILENAME

    def load_settings(self) -> Optional[PersistedSettings]:
        """
        Load persisted settings.

        Returns:
            The settings, or None when nothing usable is persisted.
        """
        data = self._read_json(self.settings_path)
        if data is None:
            return None
        try:
            settings = PersistedSettings.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse settings file {self.settings_path}: {e}")
            return None
        logger.info(f"Loaded settings from {self.settings_path}")
        return settings

    def save_settings(self, settings: PersistedSettings) -> bool:
        if not self._write_json(self.settings_path, settings.to_dict()):
            return False
        logger.info(f"Saved settings to {self.settings_path}")
        return True

    def load_failed_uploads(self) -> FailedUploadsList:
        data = self._read_json(self.failed_uploads_path)
        if data is None:
            return FailedUploadsList()
        if isinstance(data, dict):
            data = data.get("uploads", [])
        try:
            uploads = FailedUploadsList.from_list(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse failed uploads file {self.failed_uploads_path}: {e}")
            return FailedUploadsList()
        logger.info(f"Loaded {len(uploads)} failed uploads from {self.failed_uploads_path}")
        return uploads

    def save_failed_uploads(self, uploads: FailedUploadsList) -> bool:
        if not self._write_json(self.failed_uploads_path, uploads.to_list()):
            return False
        logger.info(f"Saved {len(uploads)} failed uploads to {self.failed_uploads_path}")
        return True

    def _read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {path}: {e}")
            return None

    def _write_json(self, path: Path, data: Any) -> bool:
        """Write via temp file + rename so a crash never leaves half a file behind."""
        temp_file = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write {path}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False
