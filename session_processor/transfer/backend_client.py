"""Client for the backend endpoints around an upload.

Negotiates signed upload destinations and finalises uploads. Finalising
submits the transcription job; the backend owns the queue, so acceptance
only means the job was enqueued and its progress is observed on the
recording's progress record.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from session_processor.transfer.interface import SignedTransfer
from session_processor.utils.errors import TransferError

logger = logging.getLogger(__name__)


class BackendClient:
    """HTTP client for backend upload and job endpoints.

    Reads configuration from environment variables:
        BACKEND_API_URL, BACKEND_API_TOKEN
    """

    def __init__(
        self,
        api_url: str | None = None,
        api_token: str | None = None,
    ) -> None:
        self.api_url = (api_url or os.environ.get("BACKEND_API_URL", "")).rstrip("/")
        self.api_token = api_token or os.environ.get("BACKEND_API_TOKEN", "")

        if not self.api_url:
            raise TransferError("BACKEND_API_URL is required")

        self._client = httpx.AsyncClient(timeout=30.0)

    def _headers(self) -> dict[str, str]:
        """Build authentication headers for backend endpoints."""
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def _post(
        self, path: str, payload: dict[str, Any], recording_id: str, what: str
    ) -> httpx.Response:
        url = f"{self.api_url}{path}"
        try:
            response = await self._client.post(url, headers=self._headers(), json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransferError(
                f"{what} failed: HTTP {exc.response.status_code}",
                recording_id=recording_id,
                status=exc.response.status_code,
                response_text=exc.response.text,
            ) from exc
        except httpx.RequestError as exc:
            raise TransferError(
                f"{what} failed: {exc}", recording_id=recording_id
            ) from exc
        return response

    async def negotiate_signed_transfer(
        self,
        recording_id: str,
        file_name: str,
        file_size: int,
        content_type: str,
    ) -> SignedTransfer:
        """Request a signed upload URL for a recording.

        Raises:
            TransferError: If the call fails or the response is incomplete.
        """
        response = await self._post(
            "/transfers/sign",
            {
                "recordingId": recording_id,
                "fileName": file_name,
                "fileSize": file_size,
                "contentType": content_type,
            },
            recording_id,
            "Signed transfer negotiation",
        )
        body = response.json()
        try:
            return SignedTransfer(
                signed_url=body["signedUrl"],
                storage_path=body["storagePath"],
                final_destination=body["finalDestination"],
            )
        except (KeyError, TypeError) as exc:
            raise TransferError(
                f"Signed transfer response missing field: {exc}",
                recording_id=recording_id,
                status=response.status_code,
                response_text=response.text,
            ) from exc

    async def finalize_upload(
        self,
        recording_id: str,
        storage_path: str,
        file_name: str,
        file_size: int,
        transcription_mode: str = "fast",
        corrections: str | None = None,
    ) -> None:
        """Tell the backend an upload landed; it then submits the job.

        Raises:
            TransferError: If the call fails.
        """
        payload: dict[str, Any] = {
            "recordingId": recording_id,
            "storagePath": storage_path,
            "fileName": file_name,
            "fileSize": file_size,
            "transcriptionMode": transcription_mode,
        }
        if corrections:
            payload["corrections"] = corrections
        await self._post("/uploads/finalize", payload, recording_id, "Upload finalisation")
        logger.info("Upload finalised", extra={"recording_id": recording_id})
