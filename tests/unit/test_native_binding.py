"""Unit tests for native library resolution; no whisper.cpp build needed."""

import ctypes

import pytest

from whispergate.constants import WHISPER_LIBRARY_ENV
from whispergate.engine import native
from whispergate.engine.abi import FullParamsStruct, TokenDataStruct
from whispergate.engine.native import NativeEngine, find_library
from whispergate.errors import InitializationError


class TestFindLibrary:
    """Tests for locating libwhisper."""

    def test_explicit_path_wins(self, monkeypatch):
        """An explicit library path should take precedence over the environment."""
        monkeypatch.setenv(WHISPER_LIBRARY_ENV, "/from/env/libwhisper.so")
        assert find_library("/explicit/libwhisper.so") == "/explicit/libwhisper.so"

    def test_environment_variable(self, monkeypatch):
        """The environment variable should be used when no path is given."""
        monkeypatch.setenv(WHISPER_LIBRARY_ENV, "/from/env/libwhisper.so")
        assert find_library() == "/from/env/libwhisper.so"

    def test_not_found(self, monkeypatch):
        """A missing library should raise InitializationError naming the variable."""
        monkeypatch.delenv(WHISPER_LIBRARY_ENV, raising=False)
        monkeypatch.setattr(native.ctypes.util, "find_library", lambda name: None)
        with pytest.raises(InitializationError, match=WHISPER_LIBRARY_ENV):
            find_library()

    def test_unloadable_library(self, tmp_path):
        """A file that is not a shared object should fail to load."""
        bogus = tmp_path / "libwhisper.so"
        bogus.write_bytes(b"not a shared object")
        with pytest.raises(InitializationError):
            NativeEngine(bogus)


class TestLayouts:
    """Tests for the ctypes struct layouts."""

    def test_token_data_timestamps_are_64_bit(self):
        """Token timestamps should be 64-bit and aligned."""
        assert TokenDataStruct.t0.size == 8
        assert TokenDataStruct.t0.offset % 8 == 0

    def test_full_params_prefix(self):
        """The params prefix should start with strategy then n_threads."""
        assert FullParamsStruct.strategy.offset == 0
        assert FullParamsStruct.n_threads.offset == ctypes.sizeof(ctypes.c_int)
        assert ctypes.sizeof(FullParamsStruct) > 1024
