"""Upload storage: writes uploaded images to disk under uuid filenames."""

from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

Subfolder = Literal["training", "detections"]

DEFAULT_EXTENSION: str = ".jpg"
_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


def file_extension(filename: str | None) -> str:
    """Return a safe, lower-cased extension for an uploaded filename."""
    suffix = Path(filename or "").suffix
    if not _EXTENSION_RE.match(suffix):
        return DEFAULT_EXTENSION
    return suffix.lower()


class UploadStorage:
    """Stores uploaded files beneath a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def save(self, filename: str | None, data: bytes, subfolder: Subfolder) -> str:
        """Write the file and return its public URL path (``/uploads/<subfolder>/<name>``)."""
        name = f"{uuid.uuid4()}{file_extension(filename)}"
        directory = self._root / subfolder
        directory.mkdir(parents=True, exist_ok=True)
        (directory / name).write_bytes(data)
        logger.debug("Stored %d bytes at %s/%s", len(data), subfolder, name)
        return f"/uploads/{subfolder}/{name}"

    def resolve(self, url: str) -> Path:
        """Map a URL returned by :meth:`save` back to its file path."""
        relative = url.removeprefix("/uploads/")
        path = (self._root / relative).resolve()
        if not path.is_relative_to(self._root.resolve()):
            raise ValueError(f"Upload URL escapes storage root: {url}")
        return path
