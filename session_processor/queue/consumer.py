"""Queue consumer for pipeline commands.

Polls a Cloudflare Queue via the HTTP pull API. Messages are validated
into PipelineCommand, dispatched, then acked. Dispatch only schedules
work, so a message is acked once its command was handed over whatever
the eventual outcome; invalid messages are nacked.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)

COMMAND_TYPES = (
    "process-recording",
    "retry",
    "regenerate-story",
    "generate-podcast",
    "transfer-event",
)
TRANSFER_OUTCOMES = ("complete", "failed", "aborted")
VISIBILITY_TIMEOUT_MS = 120_000


@dataclass
class PipelineCommand:
    """Validated command deserialized from a queue message."""

    type: str
    recording_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    enqueued_at: str = ""

    @classmethod
    def from_message_body(cls, body: dict[str, Any]) -> PipelineCommand:
        """Deserialize and validate a queue message body.

        Args:
            body: Raw message body dict from queue.

        Returns:
            Validated PipelineCommand.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        if not isinstance(body, dict):
            raise ValueError("Message body must be an object")

        command_type = body.get("type")
        if command_type not in COMMAND_TYPES:
            raise ValueError(
                f"Invalid 'type': '{command_type}'. "
                f"Must be one of {', '.join(COMMAND_TYPES)}"
            )

        payload = body.get("payload", {})
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValueError("Invalid 'payload': must be an object")

        recording_id = body.get("recording_id", "")
        if command_type == "transfer-event":
            if not payload.get("transfer_id") or not isinstance(
                payload["transfer_id"], str
            ):
                raise ValueError("Missing or invalid 'payload.transfer_id'")
            if payload.get("outcome") not in TRANSFER_OUTCOMES:
                raise ValueError(
                    f"Invalid 'payload.outcome': '{payload.get('outcome')}'"
                )
        elif not recording_id or not isinstance(recording_id, str):
            raise ValueError("Missing or invalid 'recording_id' in message")

        if command_type == "generate-podcast":
            version = payload.get("version")
            if not isinstance(version, int) or isinstance(version, bool) or version < 1:
                raise ValueError(f"Invalid 'payload.version': {version!r}")

        if command_type == "regenerate-story":
            corrections = payload.get("corrections")
            if corrections is not None and not isinstance(corrections, str):
                raise ValueError("Invalid 'payload.corrections': must be a string")

        enqueued_at = body.get("enqueued_at", "")
        if enqueued_at:
            try:
                datetime.fromisoformat(enqueued_at)
            except ValueError as exc:
                raise ValueError(
                    f"Invalid 'enqueued_at' ISO 8601 format: '{enqueued_at}'"
                ) from exc

        return cls(
            type=command_type,
            recording_id=recording_id or "",
            payload=payload,
            enqueued_at=enqueued_at,
        )


@dataclass
class QueueMessage:
    """A message received from a Cloudflare Queue."""

    message_id: str
    lease_id: str
    body: dict[str, Any]


DispatchFn = Callable[[PipelineCommand], Awaitable[Any]]


class QueueConsumer:
    """Cloudflare Queues HTTP pull consumer.

    Configuration from environment variables:
        CF_QUEUE_API_URL, CF_QUEUE_ID, CF_API_TOKEN
    """

    def __init__(
        self,
        queue_api_url: str | None = None,
        queue_id: str | None = None,
        cf_api_token: str | None = None,
        poll_interval: float = 5.0,
        batch_size: int = 10,
    ) -> None:
        self.queue_api_url = (
            queue_api_url or os.environ.get("CF_QUEUE_API_URL", "")
        ).rstrip("/")
        self.queue_id = queue_id or os.environ.get("CF_QUEUE_ID", "")
        self.cf_api_token = cf_api_token or os.environ.get("CF_API_TOKEN", "")
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._running = False

    def _headers(self) -> dict[str, str]:
        """Build authentication headers for Cloudflare API."""
        return {
            "Authorization": f"Bearer {self.cf_api_token}",
            "Content-Type": "application/json",
        }

    def _url(self, action: str) -> str:
        return f"{self.queue_api_url}/queues/{self.queue_id}/messages/{action}"

    async def _pull_messages(self, client: httpx.AsyncClient) -> list[QueueMessage]:
        """Pull a batch of messages.

        Returns:
            List of QueueMessage objects. Empty list on error or no messages.
        """
        try:
            response = await client.post(
                self._url("pull"),
                headers=self._headers(),
                json={
                    "batch_size": self.batch_size,
                    "visibility_timeout_ms": VISIBILITY_TIMEOUT_MS,
                },
                timeout=30.0,
            )
            response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            logger.error("Queue pull failed for %s: %s", self.queue_id, exc)
            return []

        data = response.json()
        messages_data = data.get("result", {}).get("messages", [])

        messages: list[QueueMessage] = []
        for msg in messages_data:
            try:
                body = msg["body"]
                # The pull API delivers JSON message bodies as strings
                if isinstance(body, str):
                    body = json.loads(body)
                messages.append(
                    QueueMessage(
                        message_id=msg["id"],
                        lease_id=msg["lease_id"],
                        body=body,
                    )
                )
            except (KeyError, TypeError, json.JSONDecodeError) as exc:
                logger.warning("Malformed queue message structure: %s", exc)

        return messages

    async def _settle(
        self, action: str, lease_id: str, client: httpx.AsyncClient
    ) -> None:
        """Ack or nack a message by lease id."""
        key = f"{action}s"
        try:
            response = await client.post(
                self._url(action),
                headers=self._headers(),
                json={key: [{"lease_id": lease_id}]},
                timeout=30.0,
            )
            response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            logger.error("%s failed for lease %s: %s", action.capitalize(), lease_id, exc)

    async def _process_message(
        self,
        message: QueueMessage,
        dispatch_fn: DispatchFn,
        client: httpx.AsyncClient,
    ) -> None:
        """Validate, dispatch, and ack/nack a single message."""
        try:
            command = PipelineCommand.from_message_body(message.body)
        except ValueError as exc:
            logger.warning("Invalid message %s: %s", message.message_id, exc)
            await self._settle("nack", message.lease_id, client)
            return

        logger.info(
            "Dispatching %s command",
            command.type,
            extra={"recording_id": command.recording_id or None},
        )
        try:
            await dispatch_fn(command)
        except Exception:
            logger.error(
                "Dispatch of %s command failed",
                command.type,
                exc_info=True,
                extra={"recording_id": command.recording_id or None},
            )
        await self._settle("ack", message.lease_id, client)

    async def poll_once(self, dispatch_fn: DispatchFn) -> int:
        """Execute a single poll cycle.

        Returns:
            Number of messages handled.
        """
        async with httpx.AsyncClient() as client:
            messages = await self._pull_messages(client)
            for msg in messages:
                await self._process_message(msg, dispatch_fn, client)
        return len(messages)

    async def run(self, dispatch_fn: DispatchFn) -> None:
        """Start the polling loop. Runs until stopped."""
        self._running = True
        logger.info("Queue consumer starting poll loop")

        while self._running:
            try:
                count = await self.poll_once(dispatch_fn)
                if count > 0:
                    logger.info("Handled %d messages this cycle", count)
            except Exception:
                logger.error("Unexpected error in poll cycle", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        """Signal the polling loop to stop."""
        self._running = False
        logger.info("Queue consumer stopping")
