"""
Generative model adapters (Google Gen AI SDK).

FunctionCallingModel turns one utterance into a ModelResponse: either a
structured FunctionCall or a plain TextMessage. GenerationSession carries the
prompt and at most one image for a single streamed multimodal answer; once
that exchange finishes or is cancelled the session is closed for good.
"""

import threading
from typing import Any, Iterator, List, Optional, Protocol

from google import genai
from google.genai import types

from voicepilot.app.tool_registry import ToolRegistry
from voicepilot.config import MAX_NUM_IMAGES, MAX_TOKENS, SYSTEM_INSTRUCTION
from voicepilot.models.responses import FunctionCall, ImageInput, ModelResponse, TextMessage
from voicepilot.utils.exceptions import (
    InitializationError,
    MalformedResponseError,
    SessionError,
    TransportError,
)
from voicepilot.utils import logger

logger = logger.get_logger("GenerativeModel")


# ============================================================================
# Interfaces
# ============================================================================

class FunctionModel(Protocol):
    def send_message(self, text: str) -> ModelResponse: ...


class StreamingSession(Protocol):
    def add_query(self, text: str) -> None: ...
    def add_image(self, image: ImageInput) -> None: ...
    def stream(self) -> Iterator[str]: ...
    def cancel(self) -> None: ...
    def close(self) -> None: ...


# ============================================================================
# Response Parsing
# ============================================================================

def parse_response(response: Any) -> ModelResponse:
    """
    Interpret the first part of the first candidate.

    Raises:
        MalformedResponseError: no candidates/parts, or a function call without a name
    """
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        raise MalformedResponseError("Model returned no candidates")

    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    if not parts:
        raise MalformedResponseError("Model returned no content parts")

    part = parts[0]
    function_call = getattr(part, "function_call", None)
    if function_call is not None:
        name = getattr(function_call, "name", None)
        if not name:
            raise MalformedResponseError("Function call without a name")
        args = getattr(function_call, "args", None) or {}
        if not isinstance(args, dict):
            raise MalformedResponseError(f"Function call arguments are not a map: {args!r}")
        return FunctionCall(name=name, args=dict(args))

    text = getattr(part, "text", None)
    if text is None:
        raise MalformedResponseError("Content part carries neither a function call nor text")
    return TextMessage(body=text)


def _make_client(api_key: Optional[str]) -> genai.Client:
    if not api_key:
        raise InitializationError("GEMINI_API_KEY not found in parameters or environment.")
    return genai.Client(api_key=api_key)


# ============================================================================
# Function Calling
# ============================================================================

class FunctionCallingModel:
    """Single-turn chat against a model that knows the tool registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        api_key: Optional[str] = None,
        model_id: str = "gemini-2.0-flash",
        client: Optional[genai.Client] = None,
        system_instruction: str = SYSTEM_INSTRUCTION,
    ) -> None:
        self.client = client or _make_client(api_key)
        self.model_id = model_id
        self.registry = registry
        self._config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            tools=[registry.to_genai_tool()],
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
            max_output_tokens=MAX_TOKENS,
        )

    def send_message(self, text: str) -> ModelResponse:
        try:
            response = self.client.models.generate_content(
                model=self.model_id,
                contents=text,
                config=self._config,
            )
        except Exception as exc:
            raise TransportError(f"Generative model call failed: {exc}") from exc

        parsed = parse_response(response)
        logger.debug(f"Model response: {parsed}")
        return parsed


# ============================================================================
# Multimodal Streaming Session
# ============================================================================

class GenerationSession:
    """One prompt, at most MAX_NUM_IMAGES images, one streamed answer."""

    def __init__(
        self,
        client: genai.Client,
        model_id: str,
        temperature: float = 1.0,
        top_k: int = 40,
        top_p: float = 0.9,
        max_images: int = MAX_NUM_IMAGES,
    ) -> None:
        self.client = client
        self.model_id = model_id
        self.max_images = max_images
        self._config = types.GenerateContentConfig(
            temperature=temperature,
            top_k=top_k,
            top_p=top_p,
            max_output_tokens=MAX_TOKENS,
        )
        self._queries: List[str] = []
        self._images: List[ImageInput] = []
        self._cancelled = threading.Event()
        self._closed = False
        self._started = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionError("Generation session is closed; create a new one")

    def add_query(self, text: str) -> None:
        self._ensure_open()
        self._queries.append(text)

    def add_image(self, image: ImageInput) -> None:
        self._ensure_open()
        if len(self._images) >= self.max_images:
            raise SessionError(f"A session accepts at most {self.max_images} image(s)")
        self._images.append(image)

    def _contents(self) -> list:
        contents: list = [types.Part.from_bytes(data=img.data, mime_type=img.mime_type) for img in self._images]
        contents.append("".join(self._queries))
        return contents

    def stream(self) -> Iterator[str]:
        """Yield text chunks in generation order until done or cancelled."""
        self._ensure_open()
        if self._started:
            raise SessionError("Generation session already produced its answer")
        self._started = True

        responses = None
        try:
            responses = self.client.models.generate_content_stream(
                model=self.model_id,
                contents=self._contents(),
                config=self._config,
            )
            for chunk in responses:
                if self._cancelled.is_set():
                    logger.info("Generation cancelled, dropping remaining chunks")
                    break
                text = chunk.text
                if text:
                    yield text
        except Exception as exc:
            raise TransportError(f"Streaming generation failed: {exc}") from exc
        finally:
            if responses is not None and hasattr(responses, "close"):
                responses.close()
            self.close()

    def cancel(self) -> None:
        self._cancelled.set()

    def close(self) -> None:
        self._closed = True


class SessionFactory:
    """Builds a fresh GenerationSession for each multimodal exchange."""

    def __init__(self, api_key: Optional[str] = None, model_id: str = "gemini-2.0-flash",
                 client: Optional[genai.Client] = None, **session_options) -> None:
        self.client = client or _make_client(api_key)
        self.model_id = model_id
        self.session_options = session_options

    def __call__(self) -> GenerationSession:
        return GenerationSession(self.client, self.model_id, **self.session_options)
