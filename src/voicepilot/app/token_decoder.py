"""
Whisper vocabulary loading and token decoding.

The vocabulary ships together with the mel filter bank in a single
little-endian binary file:

    uint32   magic (0x5553454E)
    int32    n_mel
    int32    n_fft
    float32  filters[n_mel * n_fft]
    int32    n_vocab
    n_vocab x { int32 length, bytes word }

Ids past the stored words are special tokens (end-of-transcript, task and
language tags, timestamps) and get placeholder words.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

import numpy as np

from voicepilot.utils.exceptions import InitializationError
from voicepilot.utils import logger

logger = logger.get_logger("TokenDecoder")

VOCAB_MAGIC = 0x5553454E

N_VOCAB_ENGLISH = 51864
N_VOCAB_MULTILINGUAL = 51865


@dataclass(frozen=True)
class SpecialTokens:
    eot: int
    sot: int
    translate: int
    transcribe: int
    prev: int
    solm: int
    not_timestamps: int
    beg: int

    @classmethod
    def for_model(cls, multilingual: bool) -> "SpecialTokens":
        # Multilingual checkpoints insert one extra token before EOT
        shift = 1 if multilingual else 0
        return cls(
            eot=50256 + shift,
            sot=50257 + shift,
            translate=50358 + shift,
            transcribe=50359 + shift,
            prev=50360 + shift,
            solm=50361 + shift,
            not_timestamps=50362 + shift,
            beg=50363 + shift,
        )


@dataclass(frozen=True)
class Vocabulary:
    """Immutable id -> word table plus the mel filters stored alongside it."""
    words: Tuple[str, ...]
    special: SpecialTokens
    filters: Optional[np.ndarray] = None
    multilingual: bool = False

    def __post_init__(self):
        if self.filters is not None:
            self.filters.setflags(write=False)

    def __len__(self) -> int:
        return len(self.words)

    @property
    def eot(self) -> int:
        return self.special.eot

    def word(self, token: int) -> str:
        if 0 <= token < len(self.words):
            return self.words[token]
        return ""

    @classmethod
    def from_words(cls, words: Iterable[str], multilingual: bool = False,
                   filters: Optional[np.ndarray] = None) -> "Vocabulary":
        special = SpecialTokens.for_model(multilingual)
        table = _extend_with_special(list(words), special, multilingual)
        return cls(words=tuple(table), special=special, filters=filters, multilingual=multilingual)

    @classmethod
    def load(cls, path: str, multilingual: bool = False) -> "Vocabulary":
        """Read the filters+vocab binary. Raises InitializationError on any defect."""
        try:
            raw = Path(path).read_bytes()
        except OSError as exc:
            raise InitializationError(f"Cannot read vocabulary file {path}: {exc}") from exc

        try:
            return cls._parse(raw, multilingual)
        except (struct.error, ValueError, UnicodeDecodeError) as exc:
            raise InitializationError(f"Corrupt vocabulary file {path}: {exc}") from exc

    @classmethod
    def _parse(cls, raw: bytes, multilingual: bool) -> "Vocabulary":
        offset = 0
        (magic,) = struct.unpack_from("<I", raw, offset)
        offset += 4
        if magic != VOCAB_MAGIC:
            raise InitializationError(f"Bad vocabulary magic: {magic:#x}")

        n_mel, n_fft = struct.unpack_from("<ii", raw, offset)
        offset += 8
        count = n_mel * n_fft
        filters = np.frombuffer(raw, dtype="<f4", count=count, offset=offset)
        filters = filters.reshape(n_mel, n_fft).astype(np.float32)
        offset += count * 4

        (n_vocab,) = struct.unpack_from("<i", raw, offset)
        offset += 4
        words = []
        for _ in range(n_vocab):
            (length,) = struct.unpack_from("<i", raw, offset)
            offset += 4
            chunk = raw[offset:offset + length]
            if len(chunk) != length:
                raise ValueError("vocabulary entry runs past end of file")
            words.append(chunk.decode("utf-8", errors="replace"))
            offset += length

        logger.info(f"Loaded vocabulary: {n_vocab} words, filters {n_mel}x{n_fft}")
        return cls.from_words(words, multilingual=multilingual, filters=filters)


def _extend_with_special(words, special: SpecialTokens, multilingual: bool):
    total = N_VOCAB_MULTILINGUAL if multilingual else N_VOCAB_ENGLISH
    for token in range(len(words), total):
        if token > special.beg:
            word = f"[_TT_{token - special.beg}]"
        elif token == special.eot:
            word = "[_EOT_]"
        elif token == special.sot:
            word = "[_SOT_]"
        elif token == special.prev:
            word = "[_PREV_]"
        elif token == special.not_timestamps:
            word = "[_NOT_]"
        elif token == special.beg:
            word = "[_BEG_]"
        else:
            word = f"[_extra_token_{token}]"
        words.append(word)
    return words


def decode(tokens: Iterable[int], vocab: Vocabulary) -> str:
    """
    Turn model output ids into text.

    Stops at the first end-of-transcript id. Ids at or above it (task,
    language and timestamp tags) never produce text.
    """
    eot = vocab.eot
    pieces = []
    for token in tokens:
        token = int(token)
        if token == eot:
            break
        if 0 <= token < eot:
            pieces.append(vocab.word(token))
    return "".join(pieces)
