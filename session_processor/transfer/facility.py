"""Spool-based durable background transfer facility.

Registered requests are written to the transfer database before anything
is sent, so a request survives a process restart and is picked up again
by ``run_pending()``. Each request's outcome is recorded in the database
before its notification is emitted; a restart re-emits recorded outcomes
instead of uploading again. Consumers deduplicate through
TransferMetadataStore.take().
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator

import httpx

from session_processor.transfer.interface import (
    BackgroundTransferFacility,
    NotificationListener,
    TransferNotification,
    TransferRequest,
)
from session_processor.transfer.metadata_store import TransferMetadataStore
from session_processor.utils.errors import BackgroundTransferUnavailableError

logger = logging.getLogger(__name__)

TRANSFER_TIMEOUT_SECONDS = 30 * 60
_READ_SIZE = 1024 * 1024


async def _file_chunks(path: str) -> AsyncIterator[bytes]:
    with open(path, "rb") as source:
        while True:
            data = await asyncio.to_thread(source.read, _READ_SIZE)
            if not data:
                return
            yield data


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove transferred file %s: %s", path, exc)


class SpoolTransferFacility(BackgroundTransferFacility):
    """Performs registered uploads from a durable spool.

    Args:
        store: Database holding the spool.
        listener: Async callable receiving each TransferNotification.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests).
    """

    def __init__(
        self,
        store: TransferMetadataStore,
        listener: NotificationListener | None = None,
        timeout: float = TRANSFER_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._listener = listener
        self._timeout = timeout
        self._transport = transport
        self._tasks: dict[str, asyncio.Task] = {}
        self._requests: dict[str, TransferRequest] = {}

    def set_listener(self, listener: NotificationListener) -> None:
        self._listener = listener

    def is_supported(self) -> bool:
        return self._listener is not None

    async def register(self, request: TransferRequest) -> None:
        if not self.is_supported():
            raise BackgroundTransferUnavailableError(
                "No notification listener installed", permanent=True
            )
        if not os.path.exists(request.file_path):
            raise BackgroundTransferUnavailableError(
                f"File to transfer does not exist: {request.file_path}"
            )
        try:
            await asyncio.to_thread(self._store.enqueue_request, request)
        except Exception as exc:
            raise BackgroundTransferUnavailableError(
                f"Could not persist transfer {request.transfer_id}: {exc}"
            ) from exc
        logger.info(
            "Registered background transfer of %d bytes",
            request.total_bytes,
            extra={"transfer_id": request.transfer_id},
        )
        self._schedule(request)

    async def run_pending(self) -> int:
        """Resume every spooled request not already in flight.

        Returns:
            Number of requests scheduled or re-notified.
        """
        count = 0
        for request, recorded in await asyncio.to_thread(self._store.pending_requests):
            if request.transfer_id in self._tasks:
                continue
            if recorded is not None:
                if request.remove_file:
                    _remove_quietly(request.file_path)
                await self._emit(recorded)
            else:
                self._schedule(request)
            count += 1
        return count

    async def wait_idle(self) -> None:
        """Wait until every in-flight transfer has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def abort(self, transfer_id: str) -> bool:
        """Cancel an in-flight transfer and emit an ``aborted`` notification."""
        task = self._tasks.pop(transfer_id, None)
        if task is None:
            return False
        request = self._requests.pop(transfer_id, None)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await self._finish(
            TransferNotification(
                transfer_id=transfer_id,
                outcome="aborted",
                status_text="Transfer aborted",
            ),
            request,
        )
        return True

    def _schedule(self, request: TransferRequest) -> None:
        task = asyncio.get_running_loop().create_task(self._perform(request))
        self._tasks[request.transfer_id] = task
        self._requests[request.transfer_id] = request
        task.add_done_callback(lambda _t, tid=request.transfer_id: self._forget(tid))

    def _forget(self, transfer_id: str) -> None:
        self._tasks.pop(transfer_id, None)
        self._requests.pop(transfer_id, None)

    async def _perform(self, request: TransferRequest) -> None:
        notification = await self._send(request)
        await self._finish(notification, request)

    async def _send(self, request: TransferRequest) -> TransferNotification:
        headers = dict(request.headers)
        headers["Content-Length"] = str(request.total_bytes)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    request.method,
                    request.url,
                    headers=headers,
                    content=_file_chunks(request.file_path),
                )
        except (httpx.RequestError, OSError) as exc:
            logger.warning(
                "Background transfer failed: %s",
                exc,
                extra={"transfer_id": request.transfer_id},
            )
            return TransferNotification(
                transfer_id=request.transfer_id,
                outcome="failed",
                status_text=type(exc).__name__,
                response_text=str(exc),
            )
        outcome = "complete" if response.is_success else "failed"
        return TransferNotification(
            transfer_id=request.transfer_id,
            outcome=outcome,
            status=response.status_code,
            status_text=response.reason_phrase,
            response_text=response.text,
        )

    async def _finish(
        self,
        notification: TransferNotification,
        request: TransferRequest | None = None,
    ) -> None:
        recorded = await asyncio.to_thread(self._store.record_outcome, notification)
        if not recorded:
            return
        if request is not None and request.remove_file:
            _remove_quietly(request.file_path)
        await self._emit(notification)

    async def _emit(self, notification: TransferNotification) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(notification)
        except Exception:
            # Outcome stays spooled and is re-emitted by run_pending().
            logger.error(
                "Transfer notification listener failed",
                exc_info=True,
                extra={"transfer_id": notification.transfer_id},
            )
            return
        await asyncio.to_thread(self._store.remove_request, notification.transfer_id)
