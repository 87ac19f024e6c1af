"""SQLite persistence for detectors, training images, and detections.

Every operation opens its own connection, so the store can be shared between
the event loop and inference worker threads.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import closing
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS detectors (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS training_images (
    id TEXT PRIMARY KEY,
    detector_id TEXT NOT NULL REFERENCES detectors(id) ON DELETE CASCADE,
    image_url TEXT NOT NULL,
    labels TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS detections (
    id TEXT PRIMARY KEY,
    detector_id TEXT NOT NULL REFERENCES detectors(id) ON DELETE CASCADE,
    input_image_url TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'classify',
    status TEXT NOT NULL DEFAULT 'processing',
    results TEXT,
    provenance TEXT,
    error TEXT,
    processing_time_ms INTEGER,
    processed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_training_images_detector ON training_images(detector_id);
CREATE INDEX IF NOT EXISTS idx_detections_detector ON detections(detector_id);
"""


class NotFoundError(LookupError):
    """Raised when a referenced row does not exist."""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


class DetectFlowStore:
    """Detector, training image, and detection records."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_schema(self) -> None:
        with closing(self.connect()) as conn, conn:
            conn.executescript(_SCHEMA)
        logger.info("Database schema initialized at %s", self._db_path)

    # -- Detectors ----------------------------------------------------------

    def create_detector(self, name: str, user_id: str, description: str | None = None) -> dict[str, Any]:
        row = {
            "id": _new_id(),
            "name": name,
            "description": description,
            "user_id": user_id,
            "created_at": _now(),
        }
        with closing(self.connect()) as conn, conn:
            conn.execute(
                "INSERT INTO detectors (id, name, description, user_id, created_at) "
                "VALUES (:id, :name, :description, :user_id, :created_at)",
                row,
            )
        logger.info("Created detector %s (%s)", row["id"], name)
        return row

    def get_detector(self, detector_id: str) -> dict[str, Any] | None:
        with closing(self.connect()) as conn:
            found = conn.execute("SELECT * FROM detectors WHERE id = ?", (detector_id,)).fetchone()
        return dict(found) if found is not None else None

    def list_detectors(self) -> list[dict[str, Any]]:
        """Return all detectors, newest first, with image and detection counts."""
        with closing(self.connect()) as conn:
            rows = conn.execute(
                """
                SELECT d.*,
                    (SELECT COUNT(*) FROM training_images t WHERE t.detector_id = d.id) AS image_count,
                    (SELECT COUNT(*) FROM detections x WHERE x.detector_id = d.id) AS detection_count
                FROM detectors d
                ORDER BY d.created_at DESC, d.rowid DESC
                """
            ).fetchall()
        return [dict(r) for r in rows]

    # -- Training images ----------------------------------------------------

    def add_training_image(self, detector_id: str, image_url: str, labels: list[str]) -> dict[str, Any]:
        row = {
            "id": _new_id(),
            "detector_id": detector_id,
            "image_url": image_url,
            "labels": json.dumps(labels),
            "created_at": _now(),
        }
        try:
            with closing(self.connect()) as conn, conn:
                conn.execute(
                    "INSERT INTO training_images (id, detector_id, image_url, labels, created_at) "
                    "VALUES (:id, :detector_id, :image_url, :labels, :created_at)",
                    row,
                )
        except sqlite3.IntegrityError as exc:
            raise NotFoundError(f"Detector {detector_id} not found") from exc
        return {**row, "labels": labels}

    def list_training_images(self, detector_id: str) -> list[dict[str, Any]]:
        with closing(self.connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM training_images WHERE detector_id = ? ORDER BY created_at DESC, rowid DESC",
                (detector_id,),
            ).fetchall()
        return [{**dict(r), "labels": json.loads(r["labels"])} for r in rows]

    def labels_for(self, detector_id: str) -> list[str]:
        """Return every label attached to the detector's training images (raw, may repeat)."""
        with closing(self.connect()) as conn:
            rows = conn.execute(
                "SELECT labels FROM training_images WHERE detector_id = ? ORDER BY rowid",
                (detector_id,),
            ).fetchall()
        labels: list[str] = []
        for r in rows:
            labels.extend(str(label) for label in json.loads(r["labels"]))
        return labels

    # -- Detections ---------------------------------------------------------

    def create_detection(self, detector_id: str, input_image_url: str, mode: str) -> dict[str, Any]:
        row = {
            "id": _new_id(),
            "detector_id": detector_id,
            "input_image_url": input_image_url,
            "mode": mode,
            "status": "processing",
            "created_at": _now(),
        }
        with closing(self.connect()) as conn, conn:
            conn.execute(
                "INSERT INTO detections (id, detector_id, input_image_url, mode, status, created_at) "
                "VALUES (:id, :detector_id, :input_image_url, :mode, :status, :created_at)",
                row,
            )
        return self._require_detection(row["id"])

    def complete_detection(
        self,
        detection_id: str,
        results: list[dict[str, Any]],
        provenance: str,
        processing_time_ms: int,
        error: str | None = None,
    ) -> None:
        """Record results; ``error`` names the cause when they are synthetic."""
        self._update_detection(
            detection_id,
            status="complete",
            results=json.dumps(results),
            provenance=provenance,
            error=error,
            processing_time_ms=processing_time_ms,
            processed_at=_now(),
        )

    def fail_detection(self, detection_id: str, error: str | None = None) -> None:
        self._update_detection(detection_id, status="failed", error=error, processed_at=_now())

    def get_detection(self, detection_id: str) -> dict[str, Any] | None:
        with closing(self.connect()) as conn:
            found = conn.execute("SELECT * FROM detections WHERE id = ?", (detection_id,)).fetchone()
        return self._decode_detection(found) if found is not None else None

    def list_detections(self, detector_id: str) -> list[dict[str, Any]]:
        with closing(self.connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM detections WHERE detector_id = ? ORDER BY created_at DESC, rowid DESC",
                (detector_id,),
            ).fetchall()
        return [self._decode_detection(r) for r in rows]

    # -- Internal -----------------------------------------------------------

    def _update_detection(self, detection_id: str, **fields: Any) -> None:
        assignments = ", ".join(f"{name} = :{name}" for name in fields)
        with closing(self.connect()) as conn, conn:
            cursor = conn.execute(
                f"UPDATE detections SET {assignments} WHERE id = :id",  # noqa: S608
                {**fields, "id": detection_id},
            )
            updated = cursor.rowcount
        if updated == 0:
            raise NotFoundError(f"Detection {detection_id} not found")

    def _require_detection(self, detection_id: str) -> dict[str, Any]:
        found = self.get_detection(detection_id)
        if found is None:
            raise NotFoundError(f"Detection {detection_id} not found")
        return found

    @staticmethod
    def _decode_detection(row: sqlite3.Row) -> dict[str, Any]:
        decoded = dict(row)
        decoded["results"] = json.loads(row["results"]) if row["results"] is not None else None
        return decoded
