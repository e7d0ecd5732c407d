import os
import struct
import tempfile

import numpy as np
import pytest

# Keep test runs from writing voicepilot.log into the working tree
os.environ.setdefault("VOICEPILOT_LOG_FILE", os.path.join(tempfile.gettempdir(), "voicepilot-test.log"))

from voicepilot.app.token_decoder import VOCAB_MAGIC


def _write_vocab(path, words, n_mel=2, n_fft=3, magic=VOCAB_MAGIC):
    filters = np.arange(n_mel * n_fft, dtype="<f4")
    with open(path, "wb") as f:
        f.write(struct.pack("<I", magic))
        f.write(struct.pack("<ii", n_mel, n_fft))
        f.write(filters.tobytes())
        f.write(struct.pack("<i", len(words)))
        for word in words:
            encoded = word.encode("utf-8")
            f.write(struct.pack("<i", len(encoded)))
            f.write(encoded)
    return str(path)


@pytest.fixture
def write_vocab(tmp_path):
    """Factory writing a filters+vocab binary into tmp_path"""
    def write(words, name="vocab.bin", **kwargs):
        return _write_vocab(tmp_path / name, words, **kwargs)
    return write


class FakeSynthesizer:
    def __init__(self):
        self.spoken = []

    def speak(self, text):
        self.spoken.append(text)


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()
