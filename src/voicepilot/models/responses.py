"""
Value types exchanged between the dispatch engine and the generative model.

A ModelResponse is either a FunctionCall or a TextMessage, never both.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    def get_string(self, key: str, default: str = "") -> str:
        value = self.args.get(key)
        if value is None:
            return default
        return str(value)


@dataclass(frozen=True)
class TextMessage:
    body: str


ModelResponse = Union[FunctionCall, TextMessage]


@dataclass(frozen=True)
class ImageInput:
    """Encoded image bytes attached to a multimodal request."""
    data: bytes
    mime_type: str = "image/png"


class DispatchOutcome(Enum):
    """How a dispatch round ended."""
    LOCAL_ACTION = "local_action"
    INFORMATION = "information"
    STREAMED = "streamed"
    CANCELLED = "cancelled"
    NOT_UNDERSTOOD = "not_understood"
    FAILED = "failed"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    function_name: Optional[str] = None
    message: Optional[str] = None
