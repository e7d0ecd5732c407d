from dataclasses import dataclass

import numpy as np


@dataclass
class AudioBuffer:
    samples: np.ndarray   # float32 mono samples
    sample_rate: int      # sample rate in Hz

    @property
    def duration_s(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate


@dataclass(frozen=True)
class SpectrogramMatrix:
    data: np.ndarray      # (n_mel, n_frames) float32, read-only
    degraded: bool = False

    def __post_init__(self):
        self.data.setflags(write=False)

    @property
    def shape(self):
        return self.data.shape
