from .audio_data import AudioBuffer, SpectrogramMatrix
from .responses import (
    DispatchOutcome,
    DispatchResult,
    FunctionCall,
    ImageInput,
    ModelResponse,
    TextMessage,
)

__all__ = [
    "AudioBuffer",
    "SpectrogramMatrix",
    "DispatchOutcome",
    "DispatchResult",
    "FunctionCall",
    "ImageInput",
    "ModelResponse",
    "TextMessage",
]
