"""Recording transfer: background durable upload with foreground fallback."""

from session_processor.transfer.interface import UploadDestination, UploadOutcome
from session_processor.transfer.uploader import Uploader

__all__ = ["UploadDestination", "UploadOutcome", "Uploader"]
