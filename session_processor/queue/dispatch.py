"""Routes validated queue commands to the component that schedules them."""

from __future__ import annotations

import logging

from session_processor.podcast.generator import PodcastGenerator
from session_processor.queue.consumer import PipelineCommand
from session_processor.runner import PipelineRunner
from session_processor.transfer.background import TransferNotificationHandler
from session_processor.transfer.interface import TransferNotification
from session_processor.utils.errors import PreconditionError

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """Async callable handing each command to its entry point.

    Every entry point only schedules work; the outcome is observed on the
    recording document.
    """

    def __init__(
        self,
        runner: PipelineRunner,
        podcasts: PodcastGenerator,
        notifications: TransferNotificationHandler | None = None,
    ) -> None:
        self._runner = runner
        self._podcasts = podcasts
        self._notifications = notifications

    async def __call__(self, command: PipelineCommand) -> None:
        payload = command.payload
        if command.type == "process-recording":
            await self._runner.submit(command.recording_id, payload)
        elif command.type == "retry":
            await self._runner.retry(command.recording_id)
        elif command.type == "regenerate-story":
            await self._runner.regenerate_story(
                command.recording_id, corrections=payload.get("corrections")
            )
        elif command.type == "generate-podcast":
            await self._podcasts.start(
                command.recording_id,
                payload["version"],
                story=payload.get("story"),
                script=payload.get("script"),
            )
        elif command.type == "transfer-event":
            if self._notifications is None:
                raise PreconditionError("Transfer notifications are not configured")
            await self._notifications.handle(
                TransferNotification(
                    transfer_id=payload["transfer_id"],
                    outcome=payload["outcome"],
                    status=payload.get("status"),
                    status_text=payload.get("status_text") or "",
                    response_text=payload.get("response_text") or "",
                )
            )
        else:
            raise ValueError(f"Unknown command type '{command.type}'")
        logger.info(
            "Accepted %s command",
            command.type,
            extra={"recording_id": command.recording_id or None},
        )
