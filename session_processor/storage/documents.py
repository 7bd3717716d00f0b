"""Document store interface shared by every reader and writer of recordings.

Documents are JSON-like dicts addressed by a slash-separated id such as
``recordings/<recording_id>``. Writes are last-writer-wins merges:
``patch()`` takes a delta whose keys are dotted field paths, so two
writers touching ``chunks.0`` and ``chunks.1`` never overwrite each other.
Readers either ``get()`` a snapshot or ``subscribe()`` for every change.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

RECORDINGS_COLLECTION = "recordings"
AI_SETTINGS_DOCUMENT = "settings/ai"

Snapshot = dict[str, Any] | None
Listener = Callable[[Snapshot], None]
Unsubscribe = Callable[[], None]


class _DeleteField:
    """Marker value that removes the field at its path when patched."""

    _instance: _DeleteField | None = None

    def __new__(cls) -> _DeleteField:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


def recording_path(recording_id: str) -> str:
    """Return the document id of a recording."""
    return f"{RECORDINGS_COLLECTION}/{recording_id}"


def get_field(document: dict[str, Any] | None, field_path: str) -> Any:
    """Read a dotted field path from a document, or None if absent."""
    value: Any = document
    for part in field_path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def apply_patch(document: dict[str, Any], delta: dict[str, Any]) -> dict[str, Any]:
    """Apply a dotted-path delta to a document in place.

    A key like ``chunks.3.status`` creates intermediate maps as needed and
    replaces only the leaf. The value DELETE_FIELD removes the leaf.

    Args:
        document: The document to modify.
        delta: Mapping of dotted field path to new value.

    Returns:
        The modified document.
    """
    for field_path, value in delta.items():
        parts = field_path.split(".")
        target = document
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    target = None
                    break
                child = {}
                target[part] = child
            target = child
        if target is None:
            continue
        if value is DELETE_FIELD:
            target.pop(parts[-1], None)
        else:
            target[parts[-1]] = copy.deepcopy(value)
    return document


class DocumentStore(ABC):
    """Abstract document store with publish/subscribe on single documents."""

    @abstractmethod
    async def get(self, doc_id: str) -> dict[str, Any] | None:
        """Return a snapshot of the document, or None if it does not exist."""

    @abstractmethod
    async def patch(self, doc_id: str, delta: dict[str, Any]) -> None:
        """Merge a dotted-path delta into the document, creating it if absent."""

    @abstractmethod
    async def delete(self, doc_id: str) -> None:
        """Remove the document. Subscribers receive None."""

    @abstractmethod
    async def query(
        self, collection: str, field_path: str, values: Iterable[Any]
    ) -> list[tuple[str, dict[str, Any]]]:
        """Return (doc_id, document) pairs whose field value is in ``values``."""

    @abstractmethod
    def subscribe(self, doc_id: str, listener: Listener) -> Unsubscribe:
        """Register a listener for every change of a document.

        The listener is called with the current snapshot, then again after
        each change. The returned callable stops delivery.
        """


class InMemoryDocumentStore(DocumentStore):
    """Process-local DocumentStore used by tests and single-node deployments."""

    def __init__(self, initial: dict[str, dict[str, Any]] | None = None) -> None:
        self._documents: dict[str, dict[str, Any]] = copy.deepcopy(initial or {})
        self._listeners: dict[str, list[Listener]] = {}

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        document = self._documents.get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def patch(self, doc_id: str, delta: dict[str, Any]) -> None:
        document = self._documents.setdefault(doc_id, {})
        apply_patch(document, delta)
        self._notify(doc_id)

    async def delete(self, doc_id: str) -> None:
        self._documents.pop(doc_id, None)
        self._notify(doc_id)

    async def query(
        self, collection: str, field_path: str, values: Iterable[Any]
    ) -> list[tuple[str, dict[str, Any]]]:
        wanted = list(values)
        prefix = f"{collection}/"
        return [
            (doc_id, copy.deepcopy(document))
            for doc_id, document in sorted(self._documents.items())
            if doc_id.startswith(prefix) and get_field(document, field_path) in wanted
        ]

    def subscribe(self, doc_id: str, listener: Listener) -> Unsubscribe:
        self._listeners.setdefault(doc_id, []).append(listener)
        self._deliver(listener, self._snapshot(doc_id))

        def unsubscribe() -> None:
            listeners = self._listeners.get(doc_id, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def _snapshot(self, doc_id: str) -> dict[str, Any] | None:
        document = self._documents.get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    def _notify(self, doc_id: str) -> None:
        for listener in list(self._listeners.get(doc_id, [])):
            self._deliver(listener, self._snapshot(doc_id))

    @staticmethod
    def _deliver(listener: Listener, snapshot: Snapshot) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.error("Document listener raised", exc_info=True)
