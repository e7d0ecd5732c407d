"""
Dispatch Engine

Sends one utterance (optionally with an image) to the generative model and
routes the reply to exactly one handler:

  FunctionCall  -> dispatch table (camera, gallery, weather, time, call)
  TextMessage   -> fallback extractor -> local action, or guidance notice
  image given   -> streamed multimodal answer, spoken in batches

Only one round runs at a time. Every exit path, including failures and
cancellation, returns the assistant to IDLE so the next utterance is never
blocked.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Awaitable, Callable, Dict, Optional

from voicepilot.app.fallback_extractor import extract_function_name
from voicepilot.app.generative_model import FunctionModel, StreamingSession
from voicepilot.app.streaming_aggregator import SpeechSynthesizer, StreamingAggregator, StreamTask
from voicepilot.app.tool_registry import (
    GET_CAMERA_IMAGE,
    GET_TIME,
    GET_WEATHER,
    MAKE_CALL,
    OPEN_PHONE_GALLERY,
    ToolRegistry,
    build_default_registry,
)
from voicepilot.config import DEFAULT_WEATHER_CITY, SPEECH_BATCH_SIZE, VISION_PROMPT_SUFFIX
from voicepilot.models.responses import (
    DispatchOutcome,
    DispatchResult,
    FunctionCall,
    ImageInput,
    ModelResponse,
    TextMessage,
)
from voicepilot.services.information_service import InformationService
from voicepilot.state_manager import AppState, StateManager
from voicepilot.utils.exceptions import (
    EngineBusyError,
    InformationServiceError,
    InitializationError,
    MalformedResponseError,
    VoicePilotError,
)
from voicepilot.utils import logger

logger = logger.get_logger("DispatchEngine")


# ============================================================================
# User-facing Messages
# ============================================================================

NO_FUNCTION_MESSAGE = (
    'No function to call, say something like "open the camera", '
    '"what\'s the weather", "what time is it", or "call someone"'
)
NOT_UNDERSTOOD_MESSAGE = "Sorry, I didn't understand that. Please try rephrasing your request."
APOLOGY_MESSAGE = "Sorry, something went wrong. Please try again."
EMPTY_UTTERANCE_MESSAGE = "I didn't hear anything. Please try again."

# Functions the free-text fallback may trigger
LOCAL_ACTIONS = (GET_CAMERA_IMAGE, OPEN_PHONE_GALLERY)

Handler = Callable[[FunctionCall], Awaitable[DispatchResult]]


class DispatchEngine:
    """Routes model replies to handlers and owns the single open generation session."""

    def __init__(
        self,
        model: FunctionModel,
        session_factory: Callable[[], StreamingSession],
        info_service: InformationService,
        synthesizer: SpeechSynthesizer,
        state: Optional[StateManager] = None,
        registry: Optional[ToolRegistry] = None,
        speech_batch_size: int = SPEECH_BATCH_SIZE,
    ) -> None:
        self.model = model
        self.session_factory = session_factory
        self.info_service = info_service
        self.synthesizer = synthesizer
        self.state = state or StateManager()
        self.registry = registry or build_default_registry()
        self.speech_batch_size = speech_batch_size

        self._handlers: Dict[str, Handler] = {
            GET_CAMERA_IMAGE: self._open_camera,
            OPEN_PHONE_GALLERY: self._open_gallery,
            GET_WEATHER: self._get_weather,
            GET_TIME: self._get_time,
            MAKE_CALL: self._make_call,
        }
        missing = [name for name in self.registry if name not in self._handlers]
        if missing:
            raise InitializationError(f"No handler for declared tool(s): {missing}")

        self._round_lock = threading.Lock()
        self._session_lock = threading.Lock()
        self._session: Optional[StreamingSession] = None
        self._stream_task: Optional[StreamTask] = None

    # ========================================================================
    # Public API
    # ========================================================================

    @property
    def busy(self) -> bool:
        return self._round_lock.locked()

    async def dispatch(self, utterance: str, image: Optional[ImageInput] = None) -> DispatchResult:
        """
        Handle one typed or already-transcribed utterance.

        Raises:
            EngineBusyError: another round is still active
        """
        self._begin_round()
        try:
            return await self._run_round(utterance, image)
        finally:
            self._end_round()

    async def transcribe_and_dispatch(self, audio_path: str, transcriber) -> DispatchResult:
        """
        Voice round: transcribe a finished recording, then dispatch the text.

        The previous transcript is only replaced once this round owns the engine.
        """
        self._begin_round()
        try:
            self.state.transition_to(AppState.TRANSCRIBING, notice=None)
            try:
                utterance = (await transcriber.transcribe_async(audio_path)).strip()
            except VoicePilotError as exc:
                logger.error(f"Transcription failed: {exc}", exc_info=True)
                self._notify(APOLOGY_MESSAGE)
                return DispatchResult(DispatchOutcome.FAILED, message=APOLOGY_MESSAGE)
            return await self._run_round(utterance, None)
        finally:
            self._end_round()

    async def describe_image(self, image: ImageInput, prompt: Optional[str] = None) -> DispatchResult:
        """Answer the last spoken prompt (or `prompt`) about a captured or picked image."""
        self._begin_round()
        try:
            text = prompt if prompt is not None else self.state.snapshot.user_prompt
            self.state.transition_to(
                AppState.DISPATCHING,
                user_prompt=text,
                result_text="",
                notice=None,
                camera_triggered=False,
                gallery_triggered=False,
            )
            return await self._guarded(self._stream_answer(text, image))
        finally:
            self._end_round()

    def stop_generating(self) -> bool:
        """Cancel a streamed answer. Safe to call at any time, any number of times."""
        task = self._stream_task
        if task is None:
            return False
        cancelled = task.cancel()
        if cancelled:
            logger.info("Stop requested for streamed answer")
        return cancelled

    def mark_speech_done(self) -> None:
        self.state.update(speaking=False)

    def speak(self, text: str) -> None:
        """Fire-and-forget speech; only raises the speaking indicator."""
        if not text:
            return
        self.state.update(speaking=True)
        try:
            self.synthesizer.speak(text)
        except Exception as e:
            logger.error(f"Speech synthesizer failed: {e}")
            self.state.update(speaking=False)

    # ========================================================================
    # Round Management
    # ========================================================================

    def _begin_round(self) -> None:
        if not self._round_lock.acquire(blocking=False):
            logger.warning("Rejected request: a dispatch round is already active")
            raise EngineBusyError("The assistant is still working on the previous request")

    def _end_round(self) -> None:
        try:
            if self.state.current_state != AppState.IDLE:
                self.state.transition_to(AppState.IDLE)
        finally:
            self._round_lock.release()

    async def _run_round(self, utterance: str, image: Optional[ImageInput]) -> DispatchResult:
        utterance = (utterance or "").strip()
        self.state.transition_to(
            AppState.DISPATCHING,
            user_prompt=utterance,
            result_text=utterance,
            notice=None,
        )

        if image is not None:
            return await self._guarded(self._stream_answer(utterance, image))

        if not utterance:
            self._notify(EMPTY_UTTERANCE_MESSAGE)
            return DispatchResult(DispatchOutcome.NOT_UNDERSTOOD, message=EMPTY_UTTERANCE_MESSAGE)

        return await self._guarded(self._call_model(utterance))

    async def _guarded(self, work: Awaitable[DispatchResult]) -> DispatchResult:
        """Absorb every recoverable failure at the dispatch boundary."""
        try:
            return await work
        except EngineBusyError:
            raise
        except MalformedResponseError as exc:
            logger.error(f"Function call parsing error: {exc}")
            self._notify(NOT_UNDERSTOOD_MESSAGE)
            return DispatchResult(DispatchOutcome.NOT_UNDERSTOOD, message=NOT_UNDERSTOOD_MESSAGE)
        except Exception as exc:
            logger.error(f"Dispatch failed: {exc}", exc_info=True)
            self._notify(APOLOGY_MESSAGE)
            return DispatchResult(DispatchOutcome.FAILED, message=APOLOGY_MESSAGE)

    async def _call_model(self, utterance: str) -> DispatchResult:
        response = await asyncio.to_thread(self.model.send_message, utterance)
        logger.info(f"Model response: {response}")
        return await self._route(response)

    async def _route(self, response: ModelResponse) -> DispatchResult:
        if isinstance(response, FunctionCall):
            handler = self._handlers.get(response.name)
            if handler is None:
                logger.error(f"No function to call: {response.name}")
                self._notify(NO_FUNCTION_MESSAGE)
                return DispatchResult(DispatchOutcome.NOT_UNDERSTOOD, response.name, NO_FUNCTION_MESSAGE)
            logger.info(f"Calling {response.name} with {response.args}")
            return await handler(response)

        if isinstance(response, TextMessage):
            name = extract_function_name(response.body)
            logger.info(f"Free-text reply, embedded function: {name or 'none'}")
            if name in LOCAL_ACTIONS:
                return await self._handlers[name](FunctionCall(name=name))
            self._notify(NO_FUNCTION_MESSAGE)
            return DispatchResult(DispatchOutcome.NOT_UNDERSTOOD, name, NO_FUNCTION_MESSAGE)

        raise MalformedResponseError(f"Unexpected response type: {type(response).__name__}")

    def _notify(self, message: str) -> None:
        self.state.update(notice=message)

    def _respond(self, message: str) -> None:
        """Append the answer to the visible transcript and speak it."""
        prompt = self.state.snapshot.user_prompt
        self.state.update(result_text=f"{prompt}\n\n{message}")
        self.speak(message)

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _open_camera(self, call: FunctionCall) -> DispatchResult:
        self.state.update(camera_triggered=True)
        return DispatchResult(DispatchOutcome.LOCAL_ACTION, call.name)

    async def _open_gallery(self, call: FunctionCall) -> DispatchResult:
        self.state.update(gallery_triggered=True)
        return DispatchResult(DispatchOutcome.LOCAL_ACTION, call.name)

    async def _get_weather(self, call: FunctionCall) -> DispatchResult:
        city = call.get_string("city") or DEFAULT_WEATHER_CITY
        self.state.transition_to(AppState.RESPONDING)
        try:
            message = await asyncio.to_thread(self.info_service.get_weather, city)
            logger.info(f"Weather result: {message}")
        except InformationServiceError as exc:
            logger.error(f"Weather error: {exc}")
            message = f"Sorry, I couldn't get the weather information for {city}. Please try again."
        self._respond(message)
        return DispatchResult(DispatchOutcome.INFORMATION, call.name, message)

    async def _get_time(self, call: FunctionCall) -> DispatchResult:
        self.state.transition_to(AppState.RESPONDING)
        try:
            message = await asyncio.to_thread(self.info_service.get_current_time)
            logger.info(f"Time result: {message}")
        except InformationServiceError as exc:
            logger.error(f"Time error: {exc}")
            message = "Sorry, I couldn't get the current time. Please try again."
        self._respond(message)
        return DispatchResult(DispatchOutcome.INFORMATION, call.name, message)

    async def _make_call(self, call: FunctionCall) -> DispatchResult:
        contact = call.get_string("contactName").strip()
        self.state.transition_to(AppState.RESPONDING)
        self.state.update(dialer_triggered=True, dialer_contact=contact)
        message = f"Opening phone app to search for {contact}" if contact else "Opening phone app"
        self._respond(message)
        return DispatchResult(DispatchOutcome.LOCAL_ACTION, call.name, message)

    # ========================================================================
    # Multimodal Streaming
    # ========================================================================

    def _release_session(self, session: StreamingSession) -> None:
        with self._session_lock:
            if self._session is session:
                self._session = None
        session.close()

    async def _stream_answer(self, prompt: str, image: ImageInput) -> DispatchResult:
        with self._session_lock:
            if self._session is not None:
                raise EngineBusyError("The previous generation session is still closing")
            session = self.session_factory()
            self._session = session

        task = None
        try:
            session.add_query(prompt + VISION_PROMPT_SUFFIX)
            session.add_image(image)
            self.state.transition_to(AppState.STREAMING)

            def show(text: str) -> None:
                self.state.update(result_text=f"{prompt}\n\n{text}")

            aggregator = StreamingAggregator(self, batch_size=self.speech_batch_size, on_progress=show)
            task = StreamTask(
                session.stream(),
                aggregator,
                on_cancel=session.cancel,
                on_drained=lambda: self._release_session(session),
            )
            self._stream_task = task
            completed = await task.run()
        finally:
            self._stream_task = None
            # A cancelled worker may still be blocked upstream; it releases the session on exit
            if task is None or task.drained.is_set():
                self._release_session(session)

        if completed:
            return DispatchResult(DispatchOutcome.STREAMED, message=aggregator.text)
        return DispatchResult(DispatchOutcome.CANCELLED, message=aggregator.text)
