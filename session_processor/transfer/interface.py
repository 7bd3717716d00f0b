"""Data types and the host facility interface for recording transfers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

TransferOutcome = Literal["complete", "failed", "aborted"]


@dataclass
class SignedTransfer:
    """Short-lived upload destination negotiated with the backend."""

    signed_url: str
    storage_path: str
    final_destination: str


@dataclass
class UploadDestination:
    """Where a recording goes and what happens after it lands."""

    recording_id: str
    file_name: str
    content_type: str
    transcription_mode: str = "fast"
    corrections: str | None = None

    @property
    def storage_key(self) -> str:
        return f"recordings/{self.recording_id}/{self.file_name}"


@dataclass
class UploadOutcome:
    """Result of Uploader.upload(): which path carried the file."""

    is_background: bool
    transfer_id: str | None = None
    storage_path: str | None = None


@dataclass
class TransferMetadata:
    """Follow-up information persisted for a background transfer."""

    transfer_id: str
    recording_id: str
    storage_path: str
    final_destination: str
    file_name: str
    file_size: int
    transcription_mode: str = "fast"
    corrections: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TransferRequest:
    """An HTTP request handed to the background facility."""

    transfer_id: str
    method: str
    url: str
    file_path: str
    total_bytes: int
    headers: dict[str, str] = field(default_factory=dict)
    # The facility deletes the file once the outcome is recorded.
    remove_file: bool = False


@dataclass
class TransferNotification:
    """Completion notice emitted once per background transfer."""

    transfer_id: str
    outcome: TransferOutcome
    status: int | None = None
    status_text: str = ""
    response_text: str = ""


NotificationListener = Callable[[TransferNotification], Awaitable[Any]]


class BackgroundTransferFacility(ABC):
    """Host-level transfer mechanism that outlives the requesting process."""

    @abstractmethod
    def is_supported(self) -> bool:
        """Return False when this host has no durable transfer capability."""

    @abstractmethod
    async def register(self, request: TransferRequest) -> None:
        """Persist and schedule a transfer.

        Raises:
            BackgroundTransferUnavailableError: If the request was not
                accepted.
        """
