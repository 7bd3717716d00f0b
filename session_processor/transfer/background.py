"""Background transfer registration and completion handling.

BackgroundTransfer negotiates a signed destination, persists the follow-up
metadata under a fresh transfer id and hands the request to the host
facility. TransferNotificationHandler consumes the facility's notification
exactly once and moves the recording on, so "transfer finished" does not
depend on the process that started it still running.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time

from session_processor.progress import ProgressTracker
from session_processor.transfer.backend_client import BackendClient
from session_processor.transfer.interface import (
    BackgroundTransferFacility,
    TransferMetadata,
    TransferNotification,
    TransferRequest,
    UploadDestination,
)
from session_processor.transfer.metadata_store import TransferMetadataStore
from session_processor.utils.errors import (
    BackgroundTransferUnavailableError,
    PipelineError,
)

logger = logging.getLogger(__name__)


def new_transfer_id(recording_id: str) -> str:
    return f"upload-{recording_id}-{int(time.time() * 1000)}"


class BackgroundTransfer:
    """Starts durable background uploads."""

    def __init__(
        self,
        backend: BackendClient,
        facility: BackgroundTransferFacility,
        store: TransferMetadataStore,
    ) -> None:
        self._backend = backend
        self._facility = facility
        self._store = store

    async def start(
        self,
        file_path: str,
        destination: UploadDestination,
        remove_file: bool = False,
    ) -> str:
        """Register a background upload.

        Args:
            file_path: Local file to send.
            destination: Recording and follow-up information.
            remove_file: Hand the file over to the facility, which deletes
                it once the transfer finished.

        Returns:
            The transfer id.

        Raises:
            BackgroundTransferUnavailableError: If the facility is missing
                (``permanent=True``) or negotiation/registration failed.
        """
        if not self._facility.is_supported():
            raise BackgroundTransferUnavailableError(
                "Background transfer is not supported on this host",
                recording_id=destination.recording_id,
                permanent=True,
            )

        file_size = os.path.getsize(file_path)
        try:
            signed = await self._backend.negotiate_signed_transfer(
                destination.recording_id,
                destination.file_name,
                file_size,
                destination.content_type,
            )
        except PipelineError as exc:
            raise BackgroundTransferUnavailableError(
                f"Signed transfer negotiation failed: {exc}",
                recording_id=destination.recording_id,
            ) from exc

        transfer_id = new_transfer_id(destination.recording_id)
        metadata = TransferMetadata(
            transfer_id=transfer_id,
            recording_id=destination.recording_id,
            storage_path=signed.storage_path,
            final_destination=signed.final_destination,
            file_name=destination.file_name,
            file_size=file_size,
            transcription_mode=destination.transcription_mode,
            corrections=destination.corrections,
        )
        await asyncio.to_thread(self._store.put, metadata)

        request = TransferRequest(
            transfer_id=transfer_id,
            method="PUT",
            url=signed.signed_url,
            file_path=file_path,
            total_bytes=file_size,
            headers={"Content-Type": destination.content_type},
            remove_file=remove_file,
        )
        try:
            await self._facility.register(request)
        except BackgroundTransferUnavailableError:
            await asyncio.to_thread(self._store.delete, transfer_id)
            raise
        except Exception as exc:
            await asyncio.to_thread(self._store.delete, transfer_id)
            raise BackgroundTransferUnavailableError(
                f"Background registration failed: {exc}",
                recording_id=destination.recording_id,
            ) from exc

        logger.info(
            "Background transfer registered",
            extra={"recording_id": destination.recording_id, "transfer_id": transfer_id},
        )
        return transfer_id


class TransferNotificationHandler:
    """Consumes background transfer notifications exactly once."""

    def __init__(
        self,
        store: TransferMetadataStore,
        backend: BackendClient,
        tracker: ProgressTracker,
    ) -> None:
        self._store = store
        self._backend = backend
        self._tracker = tracker

    async def handle(self, notification: TransferNotification) -> bool:
        """Advance or fail the recording a notification belongs to.

        Returns:
            False if the notification was already consumed or is unknown.
        """
        metadata = await asyncio.to_thread(self._store.take, notification.transfer_id)
        if metadata is None:
            logger.info(
                "Ignoring notification for unknown or consumed transfer",
                extra={"transfer_id": notification.transfer_id},
            )
            return False

        recording_id = metadata.recording_id
        if notification.outcome != "complete":
            status = notification.status if notification.status is not None else "n/a"
            await self._tracker.mark_failed(
                recording_id,
                "uploading",
                f"Background upload {notification.outcome}: "
                f"HTTP {status} {notification.status_text}".strip(),
                details={
                    "transfer_id": notification.transfer_id,
                    "status": notification.status,
                    "status_text": notification.status_text,
                    "response_text": notification.response_text[:2000],
                },
            )
            return True

        # Written before finalisation: the job it submits moves the record on.
        try:
            await self._tracker.update(
                recording_id, "uploading", 100, "Upload complete"
            )
            await self._backend.finalize_upload(
                recording_id,
                metadata.storage_path,
                metadata.file_name,
                metadata.file_size,
                metadata.transcription_mode,
                metadata.corrections,
            )
        except PipelineError as exc:
            await self._tracker.mark_failed(
                recording_id,
                "uploading",
                exc,
                details={
                    "transfer_id": notification.transfer_id,
                    "status": getattr(exc, "status", None),
                    "response_text": getattr(exc, "response_text", None),
                },
            )
        return True
