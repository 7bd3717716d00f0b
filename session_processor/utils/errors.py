"""Custom exception hierarchy for the recording processing pipeline.

All exceptions inherit from PipelineError, enabling targeted handling
at the orchestrator boundary while preserving specific failure context.
"""


class PipelineError(Exception):
    """Base exception for all recording pipeline errors."""

    def __init__(self, message: str, recording_id: str | None = None) -> None:
        self.recording_id = recording_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.recording_id:
            return f"[recording={self.recording_id}] {super().__str__()}"
        return super().__str__()


class AudioValidationError(PipelineError):
    """Raised when an input file is rejected before any stage starts."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        content_type: str | None = None,
    ) -> None:
        self.content_type = content_type
        super().__init__(message, recording_id)


class UpstreamError(PipelineError):
    """Raised when an AI or HTTP upstream returns an error response.

    ``status`` is the numeric HTTP status and ``code`` the textual status
    reported by the upstream (e.g. "UNAVAILABLE").
    """

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        status: int | None = None,
        code: str | None = None,
    ) -> None:
        self.status = status
        self.code = code
        super().__init__(message, recording_id)


class PreconditionError(PipelineError):
    """Raised when a required resource or precondition is missing."""


class TranscodeError(PipelineError):
    """Raised when ffmpeg or ffprobe fails."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        input_path: str | None = None,
    ) -> None:
        self.input_path = input_path
        super().__init__(message, recording_id)


class CompressionError(PipelineError):
    """Raised when the compression encoder fails."""


class TransferError(PipelineError):
    """Raised when an upload fails. Keeps the response for diagnosis."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        status: int | None = None,
        response_text: str | None = None,
    ) -> None:
        self.status = status
        self.response_text = response_text
        super().__init__(message, recording_id)


class TransferInProgressError(PipelineError):
    """Raised when a second transfer is started for the same recording."""


class PipelineBusyError(PipelineError):
    """Raised when a run is requested for a recording that is in flight."""


class InvalidTransitionError(PipelineError):
    """Raised when a progress write would move a stage backwards."""


class StorageError(PipelineError):
    """Raised when object storage or document store operations fail."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, recording_id)


class AudioFetchError(PipelineError):
    """Raised when fetching recording audio from object storage fails."""

    def __init__(
        self, message: str, recording_id: str | None = None, key: str | None = None
    ) -> None:
        self.key = key
        super().__init__(message, recording_id)


class SynthesisError(PipelineError):
    """Raised when voice synthesis fails for a podcast segment."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        segment_index: int | None = None,
    ) -> None:
        self.segment_index = segment_index
        super().__init__(message, recording_id)


class BackgroundTransferUnavailableError(TransferError):
    """Raised when the durable background transfer path cannot be used.

    ``permanent`` is True when the host reports the capability as absent,
    as opposed to a failure that may succeed on a later attempt.
    """

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        permanent: bool = False,
    ) -> None:
        self.permanent = permanent
        super().__init__(message, recording_id)
