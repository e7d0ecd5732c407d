from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Callable, Optional, Protocol, Tuple

import numpy as np

from voicepilot.app.feature_extractor import FeatureExtractor
from voicepilot.app.token_decoder import Vocabulary, decode
from voicepilot.input.wav_loader import wav_to_audio_buffer
from voicepilot.models.audio_data import AudioBuffer
from voicepilot.utils.exceptions import EngineBusyError, InitializationError, ProcessingError
from voicepilot.utils import logger

logger = logger.get_logger("SpeechToTextEngine")


class EngineState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    TRANSCRIBING = "transcribing"


class InferenceModel(Protocol):
    """Fixed-shape encoder/decoder: a mel buffer in, a token id buffer out."""
    input_shape: Tuple[int, ...]
    output_length: int

    def run(self, input_buffer: np.ndarray, output_buffer: np.ndarray) -> None: ...


ModelFactory = Callable[[str], InferenceModel]


class SpeechToTextEngine:
    """
    On-device speech-to-text: log-mel features, fixed-shape inference, token decoding.

    Input and output buffers are allocated once from the model's declared
    shapes and reused by every call. Only one transcription may be in flight;
    a concurrent call is rejected with EngineBusyError.
    """

    def __init__(
        self,
        model_factory: Optional[ModelFactory] = None,
        device: str = "cpu",
        lora_adapter: Optional[str] = None,
    ) -> None:
        self._model_factory = model_factory
        self._device = device
        self._lora_adapter = lora_adapter

        self._state = EngineState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._inflight = threading.Lock()

        self.model: Optional[InferenceModel] = None
        self.vocab: Optional[Vocabulary] = None
        self.feature_extractor: Optional[FeatureExtractor] = None
        self._input_buffer: Optional[np.ndarray] = None
        self._output_buffer: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        with self._state_lock:
            return self._state

    @property
    def is_initialized(self) -> bool:
        return self.state in (EngineState.READY, EngineState.TRANSCRIBING)

    def _transition_to(self, new_state: EngineState) -> None:
        with self._state_lock:
            if not self._is_valid_transition(self._state, new_state):
                raise ProcessingError(
                    f"Invalid engine transition {self._state.value} -> {new_state.value}"
                )
            logger.debug(f"Engine state: {self._state.value} -> {new_state.value}")
            self._state = new_state

    @staticmethod
    def _is_valid_transition(from_state: EngineState, to_state: EngineState) -> bool:
        """
        Valid transitions:
        - UNINITIALIZED -> LOADING
        - LOADING -> READY or UNINITIALIZED
        - READY -> TRANSCRIBING
        - TRANSCRIBING -> READY
        """
        valid_transitions = {
            EngineState.UNINITIALIZED: [EngineState.LOADING],
            EngineState.LOADING: [EngineState.READY, EngineState.UNINITIALIZED],
            EngineState.READY: [EngineState.TRANSCRIBING],
            EngineState.TRANSCRIBING: [EngineState.READY],
        }
        return to_state in valid_transitions.get(from_state, [])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _default_model_factory(self, multilingual: bool) -> ModelFactory:
        from voicepilot.app.whisper_inference import WhisperInferenceModel

        def build(model_path: str) -> InferenceModel:
            return WhisperInferenceModel(
                model_checkpoint=model_path,
                device=self._device,
                adapter_path=self._lora_adapter,
                multilingual=multilingual,
            )
        return build

    def initialize(self, model_path: str, vocab_path: str, multilingual: bool = False) -> bool:
        """
        Load the model and the filters/vocabulary table.

        Returns True when the engine is ready. On failure the engine stays
        uninitialized and every transcribe call fails fast.
        """
        if self.is_initialized:
            logger.info("Engine already initialized")
            return True

        self._transition_to(EngineState.LOADING)
        try:
            factory = self._model_factory or self._default_model_factory(multilingual)
            model = factory(model_path)
            vocab = Vocabulary.load(vocab_path, multilingual=multilingual)
        except InitializationError as exc:
            logger.error(f"Engine initialization failed: {exc}")
            self._transition_to(EngineState.UNINITIALIZED)
            return False
        except Exception as exc:
            logger.error(f"Failed to load speech model {model_path}: {exc}", exc_info=True)
            self._transition_to(EngineState.UNINITIALIZED)
            return False

        _, n_mel, n_frames = model.input_shape
        self.model = model
        self.vocab = vocab
        self.feature_extractor = FeatureExtractor(filters=vocab.filters, n_mel=n_mel, n_frames=n_frames)
        self._input_buffer = np.zeros(model.input_shape, dtype=np.float32)
        self._output_buffer = np.full(model.output_length, vocab.eot, dtype=np.int32)

        self._transition_to(EngineState.READY)
        logger.info(f"Speech engine ready (model={model_path}, multilingual={multilingual})")
        return True

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    def transcribe(self, audio_path: str) -> str:
        """Transcribe one WAV file (at most one fixed-length chunk of it)."""
        return self._guarded(lambda: self._load(audio_path))

    def transcribe_buffer(self, audio: AudioBuffer) -> str:
        """Transcribe samples that are already in memory."""
        return self._guarded(lambda: audio)

    async def transcribe_async(self, audio_path: str) -> str:
        """Run transcribe on a worker thread so the caller's loop never blocks."""
        return await asyncio.to_thread(self.transcribe, audio_path)

    def _load(self, audio_path: str) -> AudioBuffer:
        try:
            return wav_to_audio_buffer(audio_path)
        except Exception as exc:
            raise ProcessingError(f"Cannot read audio file {audio_path}: {exc}") from exc

    def _guarded(self, source: Callable[[], AudioBuffer]) -> str:
        if not self.is_initialized:
            raise InitializationError("Speech engine is not initialized")

        if not self._inflight.acquire(blocking=False):
            raise EngineBusyError("A transcription is already in progress")

        try:
            self._transition_to(EngineState.TRANSCRIBING)
            try:
                return self._run(source())
            finally:
                self._transition_to(EngineState.READY)
        finally:
            self._inflight.release()

    def _run(self, audio: AudioBuffer) -> str:
        logger.debug(f"Transcribing {audio.duration_s:.2f}s of audio")
        spectrogram = self.feature_extractor.extract(audio)
        if spectrogram.degraded:
            logger.warning("Running inference on a degraded (zero) spectrogram")

        np.copyto(self._input_buffer[0], spectrogram.data)
        self._output_buffer.fill(self.vocab.eot)

        try:
            self.model.run(self._input_buffer, self._output_buffer)
        except Exception as exc:
            raise ProcessingError(f"Speech inference failed: {exc}") from exc

        text = decode(self._output_buffer, self.vocab)
        logger.info(f"Transcription: {text.strip()!r}")
        return text
