"""
Push-to-talk microphone recorder.

Records 16kHz mono audio between start() and stop(), trims leading and
trailing non-speech with WebRTC VAD and writes the result as a WAV file for
the speech-to-text engine.
"""

import os
import time
from threading import Lock
from typing import List, Optional

import numpy as np
import sounddevice as sd
import soundfile as sf
import webrtcvad

from voicepilot.config import SAMPLE_RATE
from voicepilot.utils import logger

logger = logger.get_logger("Recorder")


class RecorderConfig:
    """Configuration for audio capture and trimming"""

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        channels: int = 1,
        frame_duration_ms: int = 30,
        vad_aggressiveness: int = 2,
        edge_padding_ms: int = 300,
        device: Optional[int] = None
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.frame_duration_ms = frame_duration_ms
        self.vad_aggressiveness = vad_aggressiveness
        self.edge_padding_ms = edge_padding_ms
        self.device = device

        # Derived parameters
        self.frame_size = int(sample_rate * frame_duration_ms / 1000)
        self.padding_frames = int(edge_padding_ms / frame_duration_ms)

    def validate(self) -> bool:
        """Validate configuration parameters"""
        valid_rates = [8000, 16000, 32000, 48000]
        if self.sample_rate not in valid_rates:
            logger.warning(f"Sample rate {self.sample_rate} not supported by WebRTC VAD. Use one of {valid_rates}")
            return False

        if self.frame_duration_ms not in [10, 20, 30]:
            logger.warning(f"Frame duration {self.frame_duration_ms}ms not supported by WebRTC VAD. Use 10, 20, or 30ms")
            return False

        return True


def trim_silence(samples: np.ndarray, config: RecorderConfig, vad: Optional[webrtcvad.Vad] = None) -> np.ndarray:
    """
    Drop non-speech frames before the first and after the last voiced frame,
    keeping `edge_padding_ms` of context on each side. Audio with no voiced
    frame at all is returned unchanged.
    """
    vad = vad or webrtcvad.Vad(config.vad_aggressiveness)
    frame = config.frame_size
    n_frames = len(samples) // frame
    if n_frames == 0:
        return samples

    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
    voiced = [
        vad.is_speech(pcm[i * frame:(i + 1) * frame].tobytes(), config.sample_rate)
        for i in range(n_frames)
    ]
    if not any(voiced):
        return samples

    first = voiced.index(True)
    last = n_frames - 1 - voiced[::-1].index(True)
    start = max(0, first - config.padding_frames) * frame
    end = min(n_frames, last + 1 + config.padding_frames) * frame
    return samples[start:end]


class Recorder:
    def __init__(self, output_dir: str = "recordings", config: Optional[RecorderConfig] = None):
        self.config = config or RecorderConfig()
        if not self.config.validate():
            raise ValueError("Invalid audio configuration")

        self.output_dir = output_dir
        os.makedirs(self.output_dir, exist_ok=True)
        self.vad = webrtcvad.Vad(self.config.vad_aggressiveness)
        self._frames: List[np.ndarray] = []
        self._lock = Lock()
        self.stream: Optional[sd.InputStream] = None

        self.stats = {
            'total_recordings': 0,
            'total_audio_seconds': 0.0,
            'stream_errors': 0
        }

    @property
    def is_recording(self) -> bool:
        return self.stream is not None

    def _audio_callback(self, indata, frames, time_info, status):
        if status:
            logger.warning(f"Audio stream status: {status}")
            self.stats['stream_errors'] += 1
        with self._lock:
            self._frames.append(indata[:, 0].copy())

    def start(self):
        if self.is_recording:
            logger.warning("Recorder already running")
            return

        with self._lock:
            self._frames = []
        try:
            self.stream = sd.InputStream(
                device=self.config.device,
                channels=self.config.channels,
                samplerate=self.config.sample_rate,
                blocksize=self.config.frame_size,
                dtype='float32',
                callback=self._audio_callback
            )
            self.stream.start()
            logger.info("Recording started")
        except Exception as e:
            logger.error(f"Failed to start audio stream: {e}")
            self.stream = None
            raise

    def stop(self) -> Optional[str]:
        """Close the stream and write the trimmed recording. Returns the WAV path."""
        if not self.is_recording:
            logger.warning("Recorder is not running")
            return None

        self.stream.stop()
        self.stream.close()
        self.stream = None

        with self._lock:
            frames, self._frames = self._frames, []
        if not frames:
            logger.warning("No audio captured")
            return None

        samples = trim_silence(np.concatenate(frames), self.config, self.vad)
        duration_s = len(samples) / self.config.sample_rate
        path = os.path.join(self.output_dir, f"recording-{int(time.time() * 1000)}.wav")
        sf.write(path, samples, self.config.sample_rate, subtype="PCM_16")

        self.stats['total_recordings'] += 1
        self.stats['total_audio_seconds'] += duration_s
        logger.info(f"Recording complete: {duration_s:.2f}s -> {path}")
        return path

    def get_stats(self) -> dict:
        return self.stats.copy()
