"""Resumable foreground upload over S3 multipart.

Progress is byte-accurate and reported as ``bytes_sent / total * 90``;
the remaining 10% belongs to server-side confirmation done by the caller.
A failed run keeps its upload id, and calling ``run()`` again continues
from the parts the server already holds. Nothing is retried
automatically: the first error surfaces as TransferError.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from collections.abc import Callable
from typing import Any

from botocore.exceptions import BotoCoreError

from session_processor.progress import report
from session_processor.storage.object_storage import ObjectStorage, UploadedPart
from session_processor.utils.errors import StorageError, TransferError

logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE = 8 * 1024 * 1024
UPLOAD_PROGRESS_CEILING = 90


class ResumableUpload:
    """One file's multipart upload, resumable after a failure.

    Args:
        storage: Object storage client.
        file_path: Local file to upload.
        key: Destination object key.
        content_type: MIME type stored with the object.
        part_size: Bytes per part (at least 5 MiB except the last part).
        upload_id: Existing multipart upload to continue.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        file_path: str,
        key: str,
        content_type: str = "",
        part_size: int = DEFAULT_PART_SIZE,
        upload_id: str | None = None,
    ) -> None:
        self.storage = storage
        self.file_path = file_path
        self.key = key
        self.content_type = content_type
        self.part_size = part_size
        self.upload_id = upload_id
        self.total_bytes = os.path.getsize(file_path)

    @property
    def part_count(self) -> int:
        return max(1, math.ceil(self.total_bytes / self.part_size))

    def _part_length(self, part_number: int) -> int:
        start = (part_number - 1) * self.part_size
        return max(0, min(self.part_size, self.total_bytes - start))

    async def run(self, on_progress: Callable[[int], Any] | None = None) -> int:
        """Upload every missing part and assemble the object.

        Args:
            on_progress: Sync or async callback receiving 0-90.

        Returns:
            The confirmed object size in bytes.

        Raises:
            TransferError: If any storage call fails or the stored size
                does not match the local file.
        """
        try:
            return await self._run(on_progress)
        except (StorageError, BotoCoreError, OSError) as exc:
            raise TransferError(
                f"Upload of '{self.key}' failed: {exc}",
                response_text=str(exc),
            ) from exc

    async def _run(self, on_progress: Callable[[int], Any] | None) -> int:
        done: dict[int, UploadedPart] = {}
        if self.upload_id is None:
            self.upload_id = await asyncio.to_thread(
                self.storage.create_multipart_upload, self.key, self.content_type
            )
            logger.info("Started multipart upload %s for %s", self.upload_id, self.key)
        else:
            existing = await asyncio.to_thread(
                self.storage.list_parts, self.key, self.upload_id
            )
            done = {
                p.part_number: p
                for p in existing
                if p.size == self._part_length(p.part_number)
            }
            logger.info(
                "Resuming upload %s for %s with %d/%d parts stored",
                self.upload_id,
                self.key,
                len(done),
                self.part_count,
            )

        sent = sum(p.size for p in done.values())
        await report(on_progress, self._percent(sent))

        with open(self.file_path, "rb") as source:
            for part_number in range(1, self.part_count + 1):
                if part_number in done:
                    continue
                source.seek((part_number - 1) * self.part_size)
                data = source.read(self.part_size)
                etag = await asyncio.to_thread(
                    self.storage.upload_part,
                    self.key,
                    self.upload_id,
                    part_number,
                    data,
                )
                done[part_number] = UploadedPart(part_number, etag, len(data))
                sent += len(data)
                await report(on_progress, self._percent(sent))

        parts = [done[n] for n in sorted(done)]
        await asyncio.to_thread(
            self.storage.complete_multipart_upload, self.key, self.upload_id, parts
        )
        stored = await asyncio.to_thread(self.storage.head_object, self.key)
        if stored != self.total_bytes:
            raise TransferError(
                f"Stored size {stored} does not match local size {self.total_bytes}"
            )
        return stored

    def _percent(self, sent: int) -> int:
        if self.total_bytes == 0:
            return UPLOAD_PROGRESS_CEILING
        return math.floor(sent / self.total_bytes * UPLOAD_PROGRESS_CEILING)

    async def abort(self) -> None:
        """Discard the parts stored so far; a later run starts over."""
        if self.upload_id is None:
            return
        upload_id, self.upload_id = self.upload_id, None
        try:
            await asyncio.to_thread(
                self.storage.abort_multipart_upload, self.key, upload_id
            )
        except StorageError:
            logger.warning(
                "Failed to abort multipart upload %s for %s",
                upload_id,
                self.key,
                exc_info=True,
            )
        else:
            logger.info("Aborted multipart upload %s for %s", upload_id, self.key)
