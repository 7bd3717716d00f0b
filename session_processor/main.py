"""Entry point for the session processor.

``session-processor`` (or ``session-processor serve``) starts the command
queue consumer and the batch poll loop alongside a lightweight HTTP
health check server (Cloud Run requires a listening port). Handles
SIGTERM for graceful shutdown.

``session-processor upload FILE --recording-id ID`` validates, compresses
and uploads a recording from this machine, resuming any background
transfers left over from an earlier run first.
"""

import argparse
import asyncio
import logging
import mimetypes
import os
import signal
import sys
from asyncio import StreamReader, StreamWriter
from collections.abc import Awaitable, Callable
from typing import Any

from session_processor.ai.registry import get_ai_client
from session_processor.audio.compress import AudioCompressor
from session_processor.ingest import IngestService
from session_processor.observability.logger import setup_logging
from session_processor.pipeline import RecordingPipeline
from session_processor.podcast import PodcastAssembler, PodcastGenerator, PodcastVersionStore
from session_processor.progress import ProgressTracker, ProgressWatcher, UnifiedProgress
from session_processor.queue.consumer import QueueConsumer
from session_processor.queue.dispatch import CommandDispatcher
from session_processor.runner import PipelineRunner
from session_processor.storage.document_client import HttpDocumentStore
from session_processor.storage.object_storage import ObjectStorage
from session_processor.transcription.batch import BatchPoller
from session_processor.transfer.background import (
    BackgroundTransfer,
    TransferNotificationHandler,
)
from session_processor.transfer.backend_client import BackendClient
from session_processor.transfer.facility import SpoolTransferFacility
from session_processor.transfer.interface import UploadDestination
from session_processor.transfer.metadata_store import TransferMetadataStore
from session_processor.transfer.uploader import Uploader
from session_processor.utils.errors import AudioValidationError, TransferInProgressError

logger = logging.getLogger(__name__)

# 5s buffer before Cloud Run sends SIGKILL at 30s
SHUTDOWN_TIMEOUT_SECONDS = 25


async def _health_handler(reader: StreamReader, writer: StreamWriter) -> None:
    """Minimal HTTP handler that returns 200 OK for Cloud Run probes."""
    await reader.read(4096)
    response = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/plain\r\n"
        "Content-Length: 2\r\n"
        "\r\n"
        "ok"
    )
    writer.write(response.encode())
    await writer.drain()
    writer.close()


async def _run(
    consumer: QueueConsumer,
    dispatch_fn: Callable[[Any], Awaitable[Any]],
    poller: BatchPoller | None = None,
    runner: PipelineRunner | None = None,
) -> None:
    """Run the health server, queue consumer and batch poller concurrently."""
    port = int(os.environ.get("PORT", "8080"))
    server = await asyncio.start_server(_health_handler, "0.0.0.0", port)
    logger.info("Health server listening on port %d", port)

    tasks = [asyncio.create_task(consumer.run(dispatch_fn))]
    if poller is not None:
        tasks.append(asyncio.create_task(poller.run()))

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        consumer.stop()
        if poller is not None:
            poller.stop()
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    await stop_event.wait()
    deadline = loop.time() + SHUTDOWN_TIMEOUT_SECONDS
    _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_TIMEOUT_SECONDS)
    if pending:
        logger.warning(
            "Shutdown timeout of %ss exceeded, cancelling %d task(s)",
            SHUTDOWN_TIMEOUT_SECONDS,
            len(pending),
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    if runner is not None:
        await runner.shutdown(max(0.0, deadline - loop.time()))
    server.close()
    await server.wait_closed()


async def _serve() -> None:
    store = HttpDocumentStore()
    tracker = ProgressTracker(store)
    storage = ObjectStorage()
    ai = get_ai_client()
    pipeline = RecordingPipeline(
        store, tracker, storage, ai, work_root=os.environ.get("WORK_DIR") or None
    )
    runner = PipelineRunner(pipeline, tracker, store)
    podcasts = PodcastGenerator(
        store, PodcastVersionStore(store), ai, PodcastAssembler(ai, storage)
    )

    backend = None
    transfers = None
    notifications = None
    if os.environ.get("BACKEND_API_URL"):
        backend = BackendClient()
        transfers = TransferMetadataStore()
        notifications = TransferNotificationHandler(transfers, backend, tracker)

    try:
        await _run(
            QueueConsumer(),
            CommandDispatcher(runner, podcasts, notifications),
            poller=BatchPoller(store, ai, tracker, runner),
            runner=runner,
        )
    finally:
        await ai.close()
        await store.close()
        if backend is not None:
            await backend.close()
        if transfers is not None:
            transfers.close()


def _log_progress(progress: UnifiedProgress) -> None:
    logger.info(
        "%s %d%%: %s",
        progress.stage,
        progress.progress,
        progress.current_step,
        extra={"stage": progress.stage, "progress": progress.progress},
    )


async def _upload(args: argparse.Namespace) -> int:
    content_type = args.content_type or mimetypes.guess_type(args.file)[0] or ""
    store = HttpDocumentStore()
    tracker = ProgressTracker(store)
    storage = ObjectStorage()
    backend = BackendClient()
    transfers = TransferMetadataStore()
    handler = TransferNotificationHandler(transfers, backend, tracker)
    facility = SpoolTransferFacility(transfers, listener=handler.handle)
    watcher = ProgressWatcher(store)
    ingest = IngestService(
        AudioCompressor(),
        Uploader(
            storage,
            backend,
            tracker,
            transfers,
            background=None if args.foreground else BackgroundTransfer(
                backend, facility, transfers
            ),
        ),
        tracker,
        store,
    )
    try:
        resumed = await facility.run_pending()
        if resumed:
            logger.info("Resumed %d background transfer(s)", resumed)
        watcher.watch(args.recording_id, _log_progress)
        try:
            outcome = await ingest.ingest(
                args.file,
                UploadDestination(
                    recording_id=args.recording_id,
                    file_name=os.path.basename(args.file),
                    content_type=content_type,
                    transcription_mode=args.mode,
                    corrections=args.corrections,
                ),
            )
        except (AudioValidationError, TransferInProgressError) as exc:
            logger.error("Rejected %s: %s", args.file, exc)
            return 2
        await facility.wait_idle()
        if outcome is None:
            return 1
        final = await tracker.get(args.recording_id)
        return 1 if final is not None and final.stage == "failed" else 0
    finally:
        watcher.cancel()
        await ingest.close()
        await store.close()
        await backend.close()
        transfers.close()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="session-processor")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="Run the queue consumer and batch poller")
    upload = commands.add_parser("upload", help="Compress and upload a recording")
    upload.add_argument("file")
    upload.add_argument("--recording-id", required=True)
    upload.add_argument("--content-type")
    upload.add_argument(
        "--mode",
        choices=("fast", "batch"),
        default=os.environ.get("TRANSCRIPTION_MODE", "fast"),
    )
    upload.add_argument("--corrections")
    upload.add_argument(
        "--foreground", action="store_true", help="Skip the background transfer path"
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Run the service, or upload one recording."""
    args = _parse_args(argv)
    setup_logging()
    if args.command == "upload":
        sys.exit(asyncio.run(_upload(args)))
    logger.info("Session processor starting")
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
