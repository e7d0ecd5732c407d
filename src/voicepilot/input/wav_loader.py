import numpy as np
import librosa
import soundfile as sf

from voicepilot.config import SAMPLE_RATE
from voicepilot.models.audio_data import AudioBuffer


def wav_to_audio_buffer(wav_path: str, target_sr: int = SAMPLE_RATE) -> AudioBuffer:
    """
    Load a WAV file and convert it to a mono float32 AudioBuffer.

    Args:
        wav_path (str): Path to the WAV file.
        target_sr (int): Sample rate the buffer is resampled to.

    Returns:
        AudioBuffer: Dataclass with `samples` (float32) and `sample_rate`.
    """
    samples, sample_rate = sf.read(wav_path, always_2d=False)

    # Ensure mono
    if samples.ndim > 1:
        samples = samples.mean(axis=1)

    if samples.dtype != np.float32:
        if samples.dtype == np.int16:
            samples = samples.astype(np.float32) / 32768.0
        elif samples.dtype == np.int32:
            samples = samples.astype(np.float32) / 2**31
        else:
            samples = samples.astype(np.float32)

    if sample_rate != target_sr:
        samples = librosa.resample(samples, orig_sr=sample_rate, target_sr=target_sr)
        sample_rate = target_sr

    return AudioBuffer(samples=np.ascontiguousarray(samples, dtype=np.float32), sample_rate=sample_rate)
