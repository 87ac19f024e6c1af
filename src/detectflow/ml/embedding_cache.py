"""Label embedding cache.

Entries are written once and reused indefinitely. There is no expiry and no
coordination between writers: two runs racing on the same unseen label may
both fetch it and both write, and the last write wins. Upstream embeddings
for a label are stable, so the duplicate is harmless.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-z0-9_-]+")
_MAX_SLUG_LENGTH = 48


class EmbeddingCache(Protocol):
    """Protocol for label -> embedding storage."""

    def get(self, label: str) -> list[float] | None:
        """Return the cached embedding for a label, or None on a miss."""
        ...

    def put(self, label: str, embedding: list[float]) -> None:
        """Store an embedding for a label."""
        ...


def safe_key(value: str) -> str:
    """Turn an arbitrary string into a path-safe file stem.

    The readable slug keeps cache directories browsable; the digest keeps
    distinct labels distinct after sanitization.
    """
    slug = _UNSAFE_CHARS.sub("_", value.lower()).strip("_")[:_MAX_SLUG_LENGTH] or "label"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]
    return f"{slug}-{digest}"


class InMemoryEmbeddingCache:
    """Dict-backed cache, lost on restart."""

    def __init__(self) -> None:
        self._entries: dict[str, list[float]] = {}

    def get(self, label: str) -> list[float] | None:
        cached = self._entries.get(label)
        return list(cached) if cached is not None else None

    def put(self, label: str, embedding: list[float]) -> None:
        self._entries[label] = [float(v) for v in embedding]

    def __len__(self) -> int:
        return len(self._entries)


class FileEmbeddingCache:
    """One JSON file per label under a per-model directory."""

    def __init__(self, cache_dir: str | Path, model_id: str) -> None:
        self._model_id = model_id
        self._dir = Path(cache_dir) / safe_key(model_id)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def get(self, label: str) -> list[float] | None:
        path = self._path_for(label)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            entry = json.load(fh)
        if entry.get("label") != label:
            logger.warning("Cache file %s holds label %r, expected %r", path.name, entry.get("label"), label)
            return None
        return [float(v) for v in entry["embedding"]]

    def put(self, label: str, embedding: list[float]) -> None:
        entry = {
            "label": label,
            "model": self._model_id,
            "embedding": [float(v) for v in embedding],
        }
        path = self._path_for(label)
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-", suffix=".part")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(entry, fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Cached embedding for %r at %s", label, path.name)

    def __len__(self) -> int:
        return sum(1 for _ in self._dir.glob("*.json"))

    def _path_for(self, label: str) -> Path:
        return self._dir / f"{safe_key(label)}.json"
