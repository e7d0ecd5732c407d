"""Exception hierarchy shared by the transcription and dispatch engines."""


class VoicePilotError(Exception):
    """Base class for all errors raised by this package."""
    pass


class InitializationError(VoicePilotError):
    """Raised when a model, vocabulary or filter table cannot be loaded."""
    pass


class ProcessingError(VoicePilotError):
    """Raised when an audio buffer cannot be turned into a transcript."""
    pass


class EngineBusyError(VoicePilotError):
    """Raised when a second request arrives while one is still in flight."""
    pass


class MalformedResponseError(VoicePilotError):
    """Raised when the generative model emits an unusable function call."""
    pass


class TransportError(VoicePilotError):
    """Raised when the generative runtime itself fails."""
    pass


class SessionError(VoicePilotError):
    """Raised when a generation session is misused (closed, or over its image cap)."""
    pass


class InformationServiceError(VoicePilotError):
    """Raised when a weather or time lookup fails."""

    def __init__(self, message: str = "Information service unavailable."):
        super().__init__(message)
