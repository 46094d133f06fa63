"""Local file storage for uploaded CSV documents."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Union

from core.config import get_settings
from core.exceptions import StorageError
from core.logging_config import get_logger

LOGGER = get_logger(__name__)


def sanitize_filename(filename: str) -> str:
    """
    Make a filename safe to use as a storage key.

    Quotes and brackets are dropped, whitespace becomes underscores, reserved
    path characters become hyphens and dots inside the stem become
    underscores. The extension is preserved.

    Example:
        >>> sanitize_filename('St. Louis (north) "2024".csv')
        'St_Louis_north_2024.csv'
    """
    last_dot = filename.rfind(".")
    if last_dot > 0:
        stem, ext = filename[:last_dot], filename[last_dot:]
    else:
        stem, ext = filename, ""

    stem = re.sub(r"[\"']", "", stem)
    stem = re.sub(r"[()\[\]{}]", "", stem)
    stem = re.sub(r"\s+", "_", stem)
    stem = re.sub(r"[<>:|?*/\\]", "-", stem)
    stem = stem.replace(".", "_")
    stem = re.sub(r"_{2,}", "_", stem)
    stem = re.sub(r"^[._-]+|[._-]+$", "", stem)
    return stem + ext


class UploadStorage:
    """
    Stores uploaded CSV text under a single base directory.

    Keys are relative paths such as ``uploads/chicago.csv`` or
    ``splits/Chicago_IL_split_1700000000000.csv``. Any key that resolves
    outside the base directory is refused.
    """

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir or get_settings().upload_dir).resolve()

    def _resolve(self, key: str) -> Path:
        resolved = (self.base_dir / key).resolve()
        if resolved != self.base_dir and self.base_dir not in resolved.parents:
            LOGGER.warning(f"Path traversal blocked: {key} resolved to {resolved}")
            raise StorageError(f"Storage key escapes upload directory: {key}")
        return resolved

    def save(self, key: str, text: str) -> str:
        """
        Write ``text`` under ``key``.

        Returns:
            The key, for storing on the job row.
        """
        path = self._resolve(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}") from e
        LOGGER.debug(f"Stored {len(text)} bytes at {key}")
        return key

    def read(self, key: str) -> str:
        path = self._resolve(key)
        if not path.is_file():
            raise StorageError(f"Stored file not found: {key}")
        try:
            return path.read_text(encoding="utf-8-sig")
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def exists(self, key: Optional[str]) -> bool:
        if not key:
            return False
        return self._resolve(key).is_file()

    def delete(self, key: str) -> None:
        path = self._resolve(key)
        if path.is_file():
            path.unlink()


_storage: Optional[UploadStorage] = None


def get_upload_storage() -> UploadStorage:
    """Get the process-wide storage rooted at UPLOAD_DIR."""
    global _storage
    if _storage is None:
        _storage = UploadStorage()
    return _storage


__all__ = [
    "sanitize_filename",
    "UploadStorage",
    "get_upload_storage",
]
