"""Append-only podcast versions on the recording document.

Versions live under ``podcasts.<version>`` and are written with per-field
dotted patches, so concurrent versions never overwrite each other. Once a
version is ``completed`` or ``failed`` its terminal fields are frozen.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from session_processor.storage.documents import DocumentStore, recording_path

logger = logging.getLogger(__name__)

PODCAST_STAGES = (
    "pending",
    "loading-context",
    "generating-script",
    "script-complete",
    "generating-audio",
    "uploading-audio",
    "completed",
    "failed",
)
TERMINAL_STATUSES = frozenset({"completed", "failed"})
TERMINAL_FIELDS = frozenset(
    {"status", "progress", "progress_message", "audio_url", "duration", "file_size", "error"}
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class PodcastVersion:
    version: int
    status: str = "pending"
    progress: int = 0
    progress_message: str = ""
    script: dict[str, Any] | None = None
    audio_url: str | None = None
    duration: int | None = None
    file_size: int | None = None
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PodcastVersion:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class PodcastVersionStore:
    """Reads and upserts PodcastVersion entries of a recording."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, recording_id: str, version: int) -> PodcastVersion | None:
        document = await self._store.get(recording_path(recording_id)) or {}
        data = (document.get("podcasts") or {}).get(str(version))
        return PodcastVersion.from_dict(data) if data else None

    async def all_versions(self, recording_id: str) -> list[PodcastVersion]:
        document = await self._store.get(recording_path(recording_id)) or {}
        entries = (document.get("podcasts") or {}).values()
        return sorted(
            (PodcastVersion.from_dict(e) for e in entries), key=lambda v: v.version
        )

    async def upsert(
        self, recording_id: str, version: int, **fields: Any
    ) -> PodcastVersion | None:
        """Create or update a version.

        Terminal fields of a version that already finished are dropped.

        Returns:
            The version as stored, or None if nothing was written.
        """
        existing = await self.get(recording_id, version)
        if existing is not None and existing.is_terminal:
            dropped = sorted(k for k in fields if k in TERMINAL_FIELDS)
            fields = {k: v for k, v in fields.items() if k not in TERMINAL_FIELDS}
            if dropped:
                logger.warning(
                    "Ignoring update of %s on finished podcast version %d",
                    ", ".join(dropped),
                    version,
                    extra={"recording_id": recording_id},
                )
            if not fields:
                return None

        now = _now()
        prefix = f"podcasts.{version}"
        if existing is None:
            entry = PodcastVersion(version=version, created_at=now, updated_at=now)
            for key, value in fields.items():
                setattr(entry, key, value)
            delta: dict[str, Any] = {prefix: entry.to_dict()}
        else:
            delta = {f"{prefix}.{key}": value for key, value in fields.items()}
            delta[f"{prefix}.updated_at"] = now

        document = await self._store.get(recording_path(recording_id)) or {}
        latest = document.get("latest_podcast_version") or 0
        if version > latest:
            delta["latest_podcast_version"] = version
        await self._store.patch(recording_path(recording_id), delta)
        return await self.get(recording_id, version)
