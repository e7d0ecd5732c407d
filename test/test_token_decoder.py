import numpy as np
import pytest

from voicepilot.app.token_decoder import (
    N_VOCAB_ENGLISH,
    N_VOCAB_MULTILINGUAL,
    SpecialTokens,
    Vocabulary,
    decode,
)
from voicepilot.utils.exceptions import InitializationError


def make_vocab(multilingual=False):
    return Vocabulary.from_words(["Hello", " world", "!"], multilingual=multilingual)


def test_decode_stops_at_end_of_transcript():
    vocab = make_vocab()
    assert decode([0, 1, vocab.eot, 2, 2], vocab) == "Hello world"


def test_decode_skips_special_and_timestamp_tokens():
    vocab = make_vocab()
    s = vocab.special
    tokens = [s.sot, s.transcribe, s.not_timestamps, 0, s.beg + 5, 2, s.eot]
    assert decode(tokens, vocab) == "Hello!"


def test_decode_ignores_out_of_range_ids():
    vocab = make_vocab()
    assert decode([-1, 999999, 0, vocab.eot], vocab) == "Hello"


def test_decode_accepts_numpy_buffer():
    vocab = make_vocab()
    buffer = np.full(8, vocab.eot, dtype=np.int32)
    buffer[:2] = [0, 1]
    assert decode(buffer, vocab) == "Hello world"


def test_decode_empty_when_buffer_starts_with_eot():
    vocab = make_vocab()
    assert decode([vocab.eot, 0, 1], vocab) == ""


def test_special_tokens_shift_for_multilingual():
    english = SpecialTokens.for_model(False)
    multi = SpecialTokens.for_model(True)
    assert english.eot == 50256
    assert english.beg == 50363
    assert multi.eot == 50257
    assert multi.transcribe == english.transcribe + 1


def test_vocabulary_is_extended_to_full_size():
    assert len(make_vocab()) == N_VOCAB_ENGLISH
    assert len(make_vocab(multilingual=True)) == N_VOCAB_MULTILINGUAL


def test_placeholder_words_for_special_ids():
    vocab = make_vocab()
    s = vocab.special
    assert vocab.word(s.eot) == "[_EOT_]"
    assert vocab.word(s.sot) == "[_SOT_]"
    assert vocab.word(s.beg + 1) == "[_TT_1]"
    assert vocab.word(len(vocab) + 10) == ""


def test_load_reads_words_and_filters(write_vocab):
    path = write_vocab(["Hello", " world"])
    vocab = Vocabulary.load(path)

    assert vocab.words[:2] == ("Hello", " world")
    assert vocab.filters.shape == (2, 3)
    assert vocab.filters[1, 2] == 5.0
    assert not vocab.filters.flags.writeable


def test_load_multilingual_uses_shifted_eot(write_vocab):
    vocab = Vocabulary.load(write_vocab(["a"]), multilingual=True)
    assert vocab.eot == 50257
    assert vocab.multilingual


def test_load_rejects_bad_magic(write_vocab):
    path = write_vocab(["a"], magic=0x12345678)
    with pytest.raises(InitializationError):
        Vocabulary.load(path)


def test_load_rejects_missing_file(tmp_path):
    with pytest.raises(InitializationError):
        Vocabulary.load(str(tmp_path / "nope.bin"))


def test_load_rejects_truncated_file(write_vocab, tmp_path):
    path = write_vocab(["Hello", " world"])
    with open(path, "rb") as f:
        raw = f.read()
    truncated = tmp_path / "truncated.bin"
    truncated.write_bytes(raw[:-3])

    with pytest.raises(InitializationError):
        Vocabulary.load(str(truncated))
