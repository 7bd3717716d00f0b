"""HTTP client for the managed document store.

The document service owns persistence; this process reads and patches
documents through its REST API. Subscriptions are implemented by polling
the document and delivering a snapshot whenever it changes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable
from typing import Any

import httpx

from session_processor.storage.documents import (
    DELETE_FIELD,
    DocumentStore,
    Listener,
    Unsubscribe,
)
from session_processor.utils.errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2.0


class HttpDocumentStore(DocumentStore):
    """DocumentStore backed by the document service REST API.

    Reads configuration from environment variables:
        DOCUMENT_API_URL, DOCUMENT_API_SECRET
    """

    def __init__(
        self,
        api_url: str | None = None,
        api_secret: str | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.api_url = (api_url or os.environ.get("DOCUMENT_API_URL", "")).rstrip(
            "/"
        )
        self.api_secret = api_secret or os.environ.get("DOCUMENT_API_SECRET", "")
        self.poll_interval = poll_interval

        if not self.api_url:
            raise StorageError("DOCUMENT_API_URL is required", operation="init")
        if not self.api_secret:
            raise StorageError("DOCUMENT_API_SECRET is required", operation="init")

        self._client = httpx.AsyncClient(timeout=30.0)

    def _headers(self) -> dict[str, str]:
        """Build authentication headers for the document API."""
        return {
            "Authorization": f"Bearer {self.api_secret}",
            "Content-Type": "application/json",
        }

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, operation: str, **kwargs: Any
    ) -> httpx.Response:
        url = f"{self.api_url}{path}"
        try:
            response = await self._client.request(
                method, url, headers=self._headers(), **kwargs
            )
            if response.status_code == 404 and operation == "get":
                return response
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"Document {operation} failed for '{path}': "
                f"HTTP {exc.response.status_code}",
                operation=operation,
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(
                f"Document {operation} failed for '{path}': {exc}",
                operation=operation,
            ) from exc
        return response

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        """Fetch a document.

        Args:
            doc_id: Slash-separated document id.

        Returns:
            The document fields, or None when the service returns 404.

        Raises:
            StorageError: If the API call fails.
        """
        response = await self._request("GET", f"/documents/{doc_id}", "get")
        if response.status_code == 404:
            return None
        return response.json().get("data")

    async def patch(self, doc_id: str, delta: dict[str, Any]) -> None:
        """Merge a dotted-path delta into a document.

        DELETE_FIELD values are sent in a separate ``delete`` list.

        Raises:
            StorageError: If the API call fails.
        """
        fields = {k: v for k, v in delta.items() if v is not DELETE_FIELD}
        deletes = [k for k, v in delta.items() if v is DELETE_FIELD]
        payload: dict[str, Any] = {"fields": fields}
        if deletes:
            payload["delete"] = deletes
        await self._request("PATCH", f"/documents/{doc_id}", "patch", json=payload)

    async def delete(self, doc_id: str) -> None:
        """Delete a document.

        Raises:
            StorageError: If the API call fails.
        """
        await self._request("DELETE", f"/documents/{doc_id}", "delete")

    async def query(
        self, collection: str, field_path: str, values: Iterable[Any]
    ) -> list[tuple[str, dict[str, Any]]]:
        """Run an ``in`` query over one collection.

        Raises:
            StorageError: If the API call fails.
        """
        response = await self._request(
            "POST",
            "/query",
            "query",
            json={"collection": collection, "field": field_path, "in": list(values)},
        )
        results = response.json().get("results", [])
        return [(item["id"], item.get("data") or {}) for item in results]

    def subscribe(self, doc_id: str, listener: Listener) -> Unsubscribe:
        """Poll a document and deliver each distinct snapshot to ``listener``.

        Must be called from a running event loop.
        """
        task = asyncio.get_running_loop().create_task(
            self._poll_document(doc_id, listener)
        )

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _poll_document(self, doc_id: str, listener: Listener) -> None:
        sentinel = object()
        last: Any = sentinel
        while True:
            try:
                snapshot = await self.get(doc_id)
            except StorageError as exc:
                logger.warning("Subscription poll failed for %s: %s", doc_id, exc)
            else:
                if last is sentinel or snapshot != last:
                    last = snapshot
                    try:
                        listener(snapshot)
                    except Exception:
                        logger.error("Document listener raised", exc_info=True)
            await asyncio.sleep(self.poll_interval)
