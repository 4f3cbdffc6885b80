# voice_intake/errors.py

from enum import Enum


class VoiceIntakeError(Exception):
    pass


class CaptureErrorKind(str, Enum):
    NO_MATCH = "no_match"
    SPEECH_TIMEOUT = "speech_timeout"
    BUSY = "busy"
    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    NETWORK = "network"
    CLIENT = "client"

    @property
    def recoverable(self) -> bool:
        return self in (CaptureErrorKind.NO_MATCH, CaptureErrorKind.SPEECH_TIMEOUT, CaptureErrorKind.BUSY)


class CaptureError(VoiceIntakeError):
    def __init__(self, kind: CaptureErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


class ExtractionErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    MALFORMED_RESPONSE = "malformed_response"
    CONTENT_FILTERED = "content_filtered"

    @property
    def retryable(self) -> bool:
        return self is not ExtractionErrorKind.CONTENT_FILTERED


class ExtractionError(VoiceIntakeError):
    """
    Raised by the extraction round. `transcript` keeps the operator's words
    so the round can be replayed without asking them to speak again.
    """

    def __init__(self, kind: ExtractionErrorKind, message: str = "", *, transcript: str | None = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.transcript = transcript

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class PersistenceError(VoiceIntakeError):
    pass


class TaskStateError(VoiceIntakeError):
    pass
