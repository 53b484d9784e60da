"""
Storage - JSON persistence for the client's durable local state.

Each record lives under its own key as a single JSON document. A key has
exactly one writer (the repository that owns it); repositories never read
each other's keys.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

# Secure file permissions (Unix only)
SECURE_FILE_MODE = 0o600  # Owner read/write only

logger = logging.getLogger(__name__)


def _set_secure_permissions(filepath: Path) -> None:
    """Set restrictive file permissions on Unix systems."""
    if os.name == 'posix':
        try:
            os.chmod(filepath, SECURE_FILE_MODE)
        except OSError:
            pass


class FileStorage:
    """Key-value store backed by one JSON file per key."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def get(self, key: str) -> Optional[dict]:
        """Return the stored record, or None if it is missing or unreadable."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load {key}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def set(self, key: str, value: dict) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, indent=2)
        _set_secure_permissions(tmp_path)
        os.replace(tmp_path, path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class MemoryStorage:
    """In-process stand-in for FileStorage (nothing survives a restart)."""

    def __init__(self):
        self._records: dict[str, str] = {}

    def get(self, key: str) -> Optional[dict]:
        raw = self._records.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: dict) -> None:
        self._records[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._records.pop(key, None)
