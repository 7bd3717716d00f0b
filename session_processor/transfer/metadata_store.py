"""Durable local store for background transfer state.

SQLite database holding:
  - transfer metadata keyed by transfer id, consumed exactly once via take()
  - the background facility's pending requests and their recorded outcomes
  - device capability flags (e.g. background transfer unsupported)

Thread-safe via check_same_thread=False + explicit locking.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from datetime import UTC, datetime

from session_processor.transfer.interface import (
    TransferMetadata,
    TransferNotification,
    TransferRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "transfers.db"
BACKGROUND_UNSUPPORTED = "background_transfer_unsupported"

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS transfer_metadata (
    transfer_id TEXT PRIMARY KEY,
    recording_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transfer_metadata_recording
    ON transfer_metadata(recording_id);

CREATE TABLE IF NOT EXISTS pending_transfers (
    transfer_id TEXT PRIMARY KEY,
    method TEXT NOT NULL,
    url TEXT NOT NULL,
    headers TEXT NOT NULL,
    file_path TEXT NOT NULL,
    total_bytes INTEGER NOT NULL,
    remove_file INTEGER NOT NULL DEFAULT 0,
    outcome TEXT,
    status INTEGER,
    status_text TEXT,
    response_text TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS capabilities (
    name TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(UTC).isoformat()


class TransferMetadataStore:
    """SQLite-backed store for transfer metadata and facility state.

    Reads configuration from environment variables:
        TRANSFER_DB_PATH
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or os.environ.get("TRANSFER_DB_PATH", DEFAULT_DB_PATH)
        parent = os.path.dirname(self.db_path)
        if parent and self.db_path != ":memory:":
            os.makedirs(parent, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(_CREATE_TABLES)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    # ── Transfer metadata ─────────────────────────────────────────────

    def put(self, metadata: TransferMetadata) -> None:
        if not metadata.created_at:
            metadata.created_at = _now()
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO transfer_metadata "
                "(transfer_id, recording_id, payload, created_at) VALUES (?, ?, ?, ?)",
                (
                    metadata.transfer_id,
                    metadata.recording_id,
                    json.dumps(metadata.to_dict()),
                    metadata.created_at,
                ),
            )
            self.conn.commit()

    def get(self, transfer_id: str) -> TransferMetadata | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT payload FROM transfer_metadata WHERE transfer_id = ?",
                (transfer_id,),
            ).fetchone()
        return TransferMetadata(**json.loads(row["payload"])) if row else None

    def take(self, transfer_id: str) -> TransferMetadata | None:
        """Read and delete metadata in one transaction.

        Only the first caller for a transfer id receives the metadata;
        every later caller gets None.
        """
        with self._lock:
            row = self.conn.execute(
                "SELECT payload FROM transfer_metadata WHERE transfer_id = ?",
                (transfer_id,),
            ).fetchone()
            if row is None:
                return None
            cur = self.conn.execute(
                "DELETE FROM transfer_metadata WHERE transfer_id = ?", (transfer_id,)
            )
            self.conn.commit()
            if cur.rowcount != 1:
                return None
        return TransferMetadata(**json.loads(row["payload"]))

    def delete(self, transfer_id: str) -> None:
        with self._lock:
            self.conn.execute(
                "DELETE FROM transfer_metadata WHERE transfer_id = ?", (transfer_id,)
            )
            self.conn.commit()

    def has_transfer_for(self, recording_id: str) -> bool:
        """True while a background transfer for the recording is unconsumed."""
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM transfer_metadata WHERE recording_id = ? LIMIT 1",
                (recording_id,),
            ).fetchone()
        return row is not None

    # ── Capability flags ──────────────────────────────────────────────

    def set_capability(self, name: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO capabilities (name, value, updated_at) "
                "VALUES (?, ?, ?)",
                (name, value, _now()),
            )
            self.conn.commit()

    def get_capability(self, name: str) -> str | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM capabilities WHERE name = ?", (name,)
            ).fetchone()
        return row["value"] if row else None

    def mark_background_unsupported(self) -> None:
        self.set_capability(BACKGROUND_UNSUPPORTED, "true")

    def background_unsupported(self) -> bool:
        return self.get_capability(BACKGROUND_UNSUPPORTED) == "true"

    # ── Facility queue ────────────────────────────────────────────────

    def enqueue_request(self, request: TransferRequest) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO pending_transfers "
                "(transfer_id, method, url, headers, file_path, total_bytes, "
                "remove_file, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    request.transfer_id,
                    request.method,
                    request.url,
                    json.dumps(request.headers),
                    request.file_path,
                    request.total_bytes,
                    int(request.remove_file),
                    _now(),
                ),
            )
            self.conn.commit()

    def pending_requests(
        self,
    ) -> list[tuple[TransferRequest, TransferNotification | None]]:
        """Return queued requests with their recorded outcome, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM pending_transfers ORDER BY created_at, transfer_id"
            ).fetchall()
        result: list[tuple[TransferRequest, TransferNotification | None]] = []
        for row in rows:
            request = TransferRequest(
                transfer_id=row["transfer_id"],
                method=row["method"],
                url=row["url"],
                file_path=row["file_path"],
                total_bytes=row["total_bytes"],
                headers=json.loads(row["headers"]),
                remove_file=bool(row["remove_file"]),
            )
            notification = None
            if row["outcome"]:
                notification = TransferNotification(
                    transfer_id=row["transfer_id"],
                    outcome=row["outcome"],
                    status=row["status"],
                    status_text=row["status_text"] or "",
                    response_text=row["response_text"] or "",
                )
            result.append((request, notification))
        return result

    def record_outcome(self, notification: TransferNotification) -> bool:
        """Store a request's outcome unless one was already recorded.

        Returns:
            True if this call recorded the outcome.
        """
        with self._lock:
            cur = self.conn.execute(
                "UPDATE pending_transfers SET outcome = ?, status = ?, "
                "status_text = ?, response_text = ? "
                "WHERE transfer_id = ? AND outcome IS NULL",
                (
                    notification.outcome,
                    notification.status,
                    notification.status_text,
                    notification.response_text,
                    notification.transfer_id,
                ),
            )
            self.conn.commit()
            return cur.rowcount == 1

    def remove_request(self, transfer_id: str) -> None:
        with self._lock:
            self.conn.execute(
                "DELETE FROM pending_transfers WHERE transfer_id = ?", (transfer_id,)
            )
            self.conn.commit()
