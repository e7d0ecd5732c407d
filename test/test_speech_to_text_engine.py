import asyncio
import threading

import numpy as np
import pytest
import soundfile as sf

from voicepilot.app.speech_to_text_engine import EngineState, SpeechToTextEngine
from voicepilot.models.audio_data import AudioBuffer
from voicepilot.utils.exceptions import EngineBusyError, InitializationError, ProcessingError

SOT, NOT_TIMESTAMPS, EOT = 50257, 50362, 50256


class FakeWhisper:
    """Fixed-shape model that writes a canned token sequence"""

    def __init__(self, tokens=(SOT, NOT_TIMESTAMPS, 0, 1, EOT), n_frames=100, output_length=16):
        self.input_shape = (1, 80, n_frames)
        self.output_length = output_length
        self.tokens = list(tokens)
        self.calls = 0
        self.buffer_ids = []

    def run(self, input_buffer, output_buffer):
        self.calls += 1
        self.buffer_ids.append(id(input_buffer))
        assert input_buffer.shape == self.input_shape
        output_buffer[:len(self.tokens)] = self.tokens


def make_engine(model):
    return SpeechToTextEngine(model_factory=lambda path: model)


def silence(seconds=0.1):
    return AudioBuffer(np.zeros(int(16000 * seconds), dtype=np.float32), 16000)


@pytest.fixture
def ready_engine(write_vocab):
    model = FakeWhisper()
    engine = make_engine(model)
    assert engine.initialize("fake-model", write_vocab(["Hello", " world"]))
    return engine, model


def test_transcript_contains_no_special_tokens(ready_engine):
    engine, model = ready_engine
    assert engine.transcribe_buffer(silence()) == "Hello world"
    assert engine.state == EngineState.READY
    assert model.calls == 1


def test_input_buffer_is_reused(ready_engine):
    engine, model = ready_engine
    engine.transcribe_buffer(silence())
    engine.transcribe_buffer(silence())
    assert len(set(model.buffer_ids)) == 1


def test_output_buffer_reset_between_calls(ready_engine):
    engine, model = ready_engine
    engine.transcribe_buffer(silence())
    model.tokens = [1, EOT]
    assert engine.transcribe_buffer(silence()) == " world"


def test_missing_vocabulary_leaves_engine_uninitialized(tmp_path):
    model = FakeWhisper()
    engine = make_engine(model)

    assert engine.initialize("fake-model", str(tmp_path / "missing.bin")) is False
    assert engine.state == EngineState.UNINITIALIZED
    with pytest.raises(InitializationError):
        engine.transcribe_buffer(silence())
    assert model.calls == 0


def test_model_load_failure_returns_false(write_vocab):
    def broken_factory(path):
        raise RuntimeError("checkpoint not found")

    engine = SpeechToTextEngine(model_factory=broken_factory)
    assert engine.initialize("fake-model", write_vocab(["a"])) is False
    assert not engine.is_initialized


def test_concurrent_transcription_is_rejected(write_vocab):
    started = threading.Event()
    release = threading.Event()

    class BlockingWhisper(FakeWhisper):
        def run(self, input_buffer, output_buffer):
            started.set()
            release.wait(5)
            super().run(input_buffer, output_buffer)

    engine = make_engine(BlockingWhisper())
    assert engine.initialize("fake-model", write_vocab(["Hello", " world"]))

    results = []
    worker = threading.Thread(target=lambda: results.append(engine.transcribe_buffer(silence())))
    worker.start()
    try:
        assert started.wait(5)
        assert engine.state == EngineState.TRANSCRIBING
        with pytest.raises(EngineBusyError):
            engine.transcribe_buffer(silence())
    finally:
        release.set()
        worker.join(5)

    assert results == ["Hello world"]
    assert engine.state == EngineState.READY


def test_inference_failure_is_processing_error(ready_engine):
    engine, model = ready_engine

    def explode(input_buffer, output_buffer):
        raise RuntimeError("delegate crashed")

    model.run = explode
    with pytest.raises(ProcessingError):
        engine.transcribe_buffer(silence())
    assert engine.state == EngineState.READY


def test_transcribe_reads_wav_file(ready_engine, tmp_path):
    engine, _ = ready_engine
    path = tmp_path / "utterance.wav"
    sf.write(str(path), np.zeros(8000, dtype=np.float32), 16000)

    assert engine.transcribe(str(path)) == "Hello world"
    assert asyncio.run(engine.transcribe_async(str(path))) == "Hello world"


def test_unreadable_audio_is_processing_error(ready_engine, tmp_path):
    engine, _ = ready_engine
    with pytest.raises(ProcessingError):
        engine.transcribe(str(tmp_path / "missing.wav"))
    assert engine.state == EngineState.READY


def test_initialize_is_idempotent(ready_engine, write_vocab):
    engine, _ = ready_engine
    assert engine.initialize("other-model", write_vocab(["x"], name="other.bin"))
    assert engine.state == EngineState.READY
