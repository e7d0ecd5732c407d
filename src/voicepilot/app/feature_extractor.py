from __future__ import annotations

from typing import Optional

import librosa
import numpy as np

from voicepilot.config import HOP_LENGTH, N_FFT, N_FRAMES, N_MEL, SAMPLE_RATE
from voicepilot.models.audio_data import AudioBuffer, SpectrogramMatrix
from voicepilot.utils import logger

logger = logger.get_logger("FeatureExtractor")


class FeatureExtractor:
    """Whisper-style log-mel spectrogram over one fixed-length audio chunk."""

    def __init__(
        self,
        filters: Optional[np.ndarray] = None,
        n_mel: int = N_MEL,
        n_frames: int = N_FRAMES,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self.n_mel = n_mel
        self.n_frames = n_frames
        self.sample_rate = sample_rate
        self.n_samples = n_frames * HOP_LENGTH

        if filters is None or filters.shape != (n_mel, N_FFT // 2 + 1):
            if filters is not None:
                logger.warning(f"Ignoring mel filters of shape {filters.shape}, rebuilding")
            filters = librosa.filters.mel(sr=sample_rate, n_fft=N_FFT, n_mels=n_mel)
        self.filters = np.asarray(filters, dtype=np.float32)

    @property
    def output_shape(self):
        return (self.n_mel, self.n_frames)

    def fit_to_chunk(self, samples: np.ndarray) -> np.ndarray:
        """Clip or zero-pad to exactly one chunk of samples."""
        chunk = np.zeros(self.n_samples, dtype=np.float32)
        count = min(len(samples), self.n_samples)
        chunk[:count] = samples[:count]
        return chunk

    def extract(self, audio: AudioBuffer) -> SpectrogramMatrix:
        """
        Compute the log-mel matrix for `audio`.

        A failure in the spectral computation is not fatal: a zero matrix
        flagged as degraded is returned and inference still runs on it.
        """
        if audio.sample_rate != self.sample_rate:
            logger.warning(
                f"Audio at {audio.sample_rate}Hz, expected {self.sample_rate}Hz; treating as {self.sample_rate}Hz"
            )

        try:
            chunk = self.fit_to_chunk(np.asarray(audio.samples, dtype=np.float32))
            mel = self._log_mel(chunk)
        except Exception as exc:
            logger.warning(f"Feature extraction degraded to zero matrix: {exc}", exc_info=True)
            return SpectrogramMatrix(np.zeros(self.output_shape, dtype=np.float32), degraded=True)

        return SpectrogramMatrix(mel)

    def _log_mel(self, chunk: np.ndarray) -> np.ndarray:
        stft = librosa.stft(
            chunk,
            n_fft=N_FFT,
            hop_length=HOP_LENGTH,
            window="hann",
            center=True,
            pad_mode="reflect",
        )
        # Drop the trailing frame so 30s of audio maps to exactly n_frames
        power = np.abs(stft[:, :-1]) ** 2
        mel = self.filters @ power
        log_spec = np.log10(np.maximum(mel, 1e-10))
        log_spec = np.maximum(log_spec, log_spec.max() - 8.0)
        log_spec = (log_spec + 4.0) / 4.0

        if log_spec.shape != self.output_shape:
            raise ValueError(f"unexpected spectrogram shape {log_spec.shape}")
        return log_spec.astype(np.float32)
