"""Unit tests for the FakeEngine itself."""

import time

import numpy as np
import pytest

from whispergate.constants import GGML_MAGIC, N_MEL
from whispergate.engine.abi import float_buffer, token_buffer
from whispergate.engine.fake import LANGUAGES, WORDS, FakeEngine
from whispergate.models import FullParams


@pytest.fixture
def handle(engine):
    return engine.init_from_buffer(GGML_MAGIC)


class TestFakeEngine:
    """Tests for the deterministic test engine."""

    def test_rejects_non_model(self, engine):
        """Buffers without the model magic should not create a context."""
        assert engine.init_from_buffer(b"RIFF....") is None
        assert engine.live_contexts == 0

    def test_handles_are_distinct(self, engine):
        """Every init should return a new handle."""
        assert engine.init_from_buffer(GGML_MAGIC) != engine.init_from_buffer(GGML_MAGIC)

    def test_double_free_detected(self, engine, handle):
        """Freeing a handle twice should raise."""
        engine.free(handle)
        with pytest.raises(RuntimeError, match="double free"):
            engine.free(handle)

    def test_use_after_free_detected(self, engine, handle):
        """Calls on a freed handle should raise."""
        engine.free(handle)
        with pytest.raises(RuntimeError, match="invalid handle"):
            engine.n_vocab(handle)

    def test_records_calls(self, engine, handle):
        """Engine calls should be recorded by name."""
        engine.n_vocab(handle)
        engine.token_eot(handle)
        assert engine.calls == ["init_from_buffer", "n_vocab", "token_eot"]

    def test_vocabulary_layout(self, engine, handle):
        """Special tokens should follow the byte and word tokens."""
        eot = engine.token_eot(handle)
        assert eot == 256 + len(WORDS)
        assert engine.token_sot(handle) == eot + 1
        assert engine.token_lang(handle, 0) == eot + 2
        assert engine.token_beg(handle) == engine.n_vocab(handle) - 1

    def test_tokenize_uses_words(self, engine, handle):
        """Known words should tokenize to word ids, the rest to bytes."""
        buffer = token_buffer(8)
        count = engine.tokenize(handle, b" hello x", buffer, 8)
        assert list(buffer[:count]) == [engine.word_token(" hello"), ord(" "), ord("x")]

    def test_tokenize_budget(self, engine, handle):
        """Exceeding the token budget should return -1."""
        assert engine.tokenize(handle, b"abc", token_buffer(2), 2) == -1

    def test_set_mel_band_check(self, engine, handle):
        """set_mel should reject band counts other than the model's."""
        data = np.zeros(N_MEL * 4, dtype=np.float32)
        assert engine.set_mel(handle, data, 4, N_MEL) == 0
        assert engine.set_mel(handle, data, 8, 40) == -1

    def test_lang_auto_detect_without_mel(self, engine, handle):
        """Detection without a spectrogram should fail."""
        assert engine.lang_auto_detect(handle, 0, 1, float_buffer(len(LANGUAGES))) == -1

    def test_lang_count_override(self):
        """The overridden language count should be reported."""
        engine = FakeEngine(lang_count_override=2)
        handle = engine.init_from_buffer(GGML_MAGIC)
        engine.pcm_to_mel(handle, np.ones(1600, dtype=np.float32), 1600, 1)
        assert engine.lang_auto_detect(handle, 0, 1, float_buffer(len(LANGUAGES))) == 2

    def test_transcription_deterministic(self, engine, handle, speech):
        """Segments should depend only on the audio."""
        audio = speech(2)
        engine.full(handle, FullParams(), audio, len(audio))
        first = [engine.full_get_segment_text(handle, i) for i in range(2)]
        engine.full(handle, FullParams(), audio, len(audio))
        second = [engine.full_get_segment_text(handle, i) for i in range(2)]
        assert first == second
        assert first[0] != first[1]

    def test_silence_has_no_segments(self, engine, handle, silence):
        """Silence should produce no segments."""
        audio = silence(2)
        assert engine.full(handle, FullParams(), audio, len(audio)) == 0
        assert engine.full_n_segments(handle) == 0

    def test_out_of_bounds_segment(self, engine, handle):
        """Out-of-bounds getters should raise instead of reading garbage."""
        with pytest.raises(RuntimeError, match="out-of-bounds"):
            engine.full_get_segment_t0(handle, 0)

    def test_failed_partition_still_succeeds(self, speech):
        """A failed partition should be skipped with a success status."""
        engine = FakeEngine(fail_partitions={0})
        handle = engine.init_from_buffer(GGML_MAGIC)
        audio = speech(2)
        assert engine.full_parallel(handle, FullParams(), audio, len(audio), 2) == 0
        assert engine.full_n_segments(handle) == 1
        assert engine.full_get_segment_t0(handle, 0) == 100

    def test_latency_simulation(self, speech):
        """Mutating calls should sleep for the configured latency."""
        engine = FakeEngine(latency_ms=50)
        handle = engine.init_from_buffer(GGML_MAGIC)
        audio = speech(1)
        start = time.monotonic()
        engine.full(handle, FullParams(), audio, len(audio))
        assert time.monotonic() - start >= 0.045

    def test_status_override(self):
        """Overridden statuses should be returned as-is."""
        engine = FakeEngine(status_overrides={"encode": 3})
        handle = engine.init_from_buffer(GGML_MAGIC)
        assert engine.encode(handle, 0, 1) == 3

    def test_fixed_transcript(self, speech):
        """A fixed transcript should replace the generated words."""
        engine = FakeEngine(transcript=" café")
        handle = engine.init_from_buffer(GGML_MAGIC)
        audio = speech(2)
        engine.full(handle, FullParams(), audio, len(audio))
        assert engine.full_get_segment_text(handle, 1) == " café".encode("utf-8")
        assert engine.full_get_token_text(handle, 0, 4) == b"\xc3"
